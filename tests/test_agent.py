"""
Tests for agent wiring and the command line.
"""

import asyncio
import json

import pytest

from cartographer_agent.agent import Agent, build_parser, main
from cartographer_agent.credential_store import CredentialStore
from cartographer_agent.health_check import HealthCheckEngine
from cartographer_agent.progress import ProgressBroadcaster

from conftest import FakeARP, FakeEngine, FakeGateway, make_probe


@pytest.fixture
def agent(config, tmp_path):
    """Agent wired to in-memory fakes."""
    gateway = FakeGateway(grant_at=0)
    engine = FakeEngine()
    health_engine = HealthCheckEngine(
        config, ProgressBroadcaster("health"), probe=make_probe({}), arp=FakeARP(),
    )
    store = CredentialStore(tmp_path / "creds", machine_id="test-machine-id")
    agent = Agent(config, gateway=gateway, engine=engine, health_engine=health_engine,
                  credential_store=store)
    health_engine.uploader = agent.auth.cloud.upload_health
    return agent


@pytest.fixture(autouse=True)
def isolated_env(tmp_path, monkeypatch):
    monkeypatch.setenv("CARTOGRAPHER_STATE_DIR", str(tmp_path / "cli-state"))
    monkeypatch.setenv("CARTOGRAPHER_CLOUD_URL", "http://localhost:9/api")
    monkeypatch.delenv("CARTOGRAPHER_CONFIG", raising=False)


class TestParser:
    """Test command line parsing."""

    def test_scan_upload_flag(self):
        args = build_parser().parse_args(["scan", "--upload"])
        assert args.command == "scan"
        assert args.upload is True

    def test_daemon_interval(self):
        args = build_parser().parse_args(["--format", "json", "daemon", "--interval", "15"])
        assert args.interval == 15
        assert args.format == "json"

    def test_aliases(self):
        assert build_parser().parse_args(["login"]).command == "login"
        assert build_parser().parse_args(["logout"]).command == "logout"

    def test_command_required(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args([])


class TestAgentWiring:
    """Test the composed agent."""

    @pytest.mark.asyncio
    async def test_login_triggers_first_scan_and_upload(self, agent):
        """After login the agent scans immediately and uploads the result."""
        status = await agent.auth.login()
        assert status.authenticated

        task = agent.scheduler._scan_task
        assert task is not None
        outcome = await task

        assert outcome.status == "completed"
        assert outcome.result.synced_to_cloud is True
        assert agent.gateway.uploads[0][0] == "scan"
        assert agent.get_status().device_count == 3
        assert len(agent.get_devices()) == 3
        await agent.stop()

    @pytest.mark.asyncio
    async def test_health_check_uploads_through_session(self, agent):
        await agent.auth.login()
        await agent.scheduler._scan_task

        result = await agent.scheduler.health_check_now()

        assert result.synced_to_cloud is True
        assert [u[0] for u in agent.gateway.uploads] == ["scan", "health"]
        await agent.stop()

    @pytest.mark.asyncio
    async def test_logout_resets_state(self, agent):
        await agent.auth.login()
        await agent.scheduler._scan_task

        await agent.auth.logout()

        status = agent.get_status()
        assert not status.authenticated
        assert status.device_count == 0
        assert agent.scheduler.devices == []
        assert agent.credentials.load() is None
        await agent.stop()

    @pytest.mark.asyncio
    async def test_start_restores_session(self, agent, sample_credentials):
        agent.credentials.save(sample_credentials)

        await agent.start()
        await asyncio.sleep(0.05)

        assert agent.get_status().authenticated
        assert agent.engine.calls == 1
        await agent.stop()
        assert agent.gateway.closed

    @pytest.mark.asyncio
    async def test_start_unauthenticated_does_not_scan(self, agent):
        await agent.start()
        await asyncio.sleep(0.05)
        assert agent.engine.calls == 0
        await agent.stop()

    @pytest.mark.asyncio
    async def test_daemon_requires_login(self, agent):
        from cartographer_agent.exceptions import NotAuthenticated

        with pytest.raises(NotAuthenticated):
            await agent.run_daemon()


class TestCommandLine:
    """Test CLI commands end to end."""

    def test_config_json(self, capsys, tmp_path):
        with pytest.raises(SystemExit) as exc_info:
            main(["--format", "json", "config"])
        assert exc_info.value.code == 0

        data = json.loads(capsys.readouterr().out)
        assert data["config"]["cloud_api_url"] == "http://localhost:9/api"
        assert data["config"]["source"] == "environment"
        assert data["preferences"]["interval_minutes"] == 5

    def test_status_not_connected(self, capsys):
        with pytest.raises(SystemExit) as exc_info:
            main(["status"])
        assert exc_info.value.code == 0
        assert "not connected" in capsys.readouterr().out

    def test_invalid_interval(self, capsys):
        with pytest.raises(SystemExit) as exc_info:
            main(["daemon", "--interval", "7"])
        assert exc_info.value.code == 1
        assert "Error" in capsys.readouterr().err

    def test_daemon_without_login(self, capsys):
        with pytest.raises(SystemExit) as exc_info:
            main(["daemon"])
        assert exc_info.value.code == 1
        assert "connect" in capsys.readouterr().err

    def test_invalid_config_file(self, tmp_path, capsys):
        path = tmp_path / "bad.yaml"
        path.write_text("probe_workers: 0\n")
        with pytest.raises(SystemExit) as exc_info:
            main(["--config", str(path), "status"])
        assert exc_info.value.code == 2
