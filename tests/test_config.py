"""
Tests for configuration loading and schedule preferences.
"""

import pytest
from pydantic import ValidationError

from cartographer_agent.config import (
    ALLOWED_SCAN_INTERVALS,
    DEFAULT_CLOUD_URL,
    AgentConfig,
    ScheduleConfig,
    load_config,
)
from cartographer_agent.preferences import PreferencesStore
from cartographer_agent.state_db import AgentStateDB


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    """Keep the developer's environment out of config tests."""
    for var in (
        'CARTOGRAPHER_CONFIG', 'CARTOGRAPHER_CLOUD_URL', 'CARTOGRAPHER_DASHBOARD_URL',
        'CARTOGRAPHER_STATE_DIR', 'CARTOGRAPHER_LOG_LEVEL', 'CARTOGRAPHER_PROBE_TIMEOUT',
        'CARTOGRAPHER_PROBE_WORKERS', 'CARTOGRAPHER_REQUEST_TIMEOUT',
    ):
        monkeypatch.delenv(var, raising=False)


class TestAgentConfig:
    """Test config validation."""

    def test_defaults(self, tmp_path):
        config = AgentConfig(state_dir=tmp_path)
        assert config.cloud_api_url == DEFAULT_CLOUD_URL
        assert config.probe_timeout == 1.0
        assert config.degraded_threshold_ms == 100.0
        assert config.db_path == tmp_path / 'agent.db'

    def test_trailing_slash_stripped(self):
        assert AgentConfig(cloud_api_url='https://example.com/api/').cloud_api_url == 'https://example.com/api'

    def test_invalid_url(self):
        with pytest.raises(ValidationError):
            AgentConfig(cloud_api_url='ftp://example.com')

    def test_log_level_normalized(self):
        assert AgentConfig(log_level='debug').log_level == 'DEBUG'
        with pytest.raises(ValidationError):
            AgentConfig(log_level='LOUD')

    def test_unknown_field_rejected(self):
        with pytest.raises(ValidationError):
            AgentConfig(no_such_setting=True)

    def test_invalid_port(self):
        with pytest.raises(ValidationError):
            AgentConfig(tcp_probe_ports=[80, 70000])

    def test_dashboard_link(self):
        config = AgentConfig(dashboard_url='https://dash.example.com')
        assert config.dashboard_link('net-1') == 'https://dash.example.com/networks/net-1'
        assert config.dashboard_link() == 'https://dash.example.com'


class TestLoadConfig:
    """Test layered config loading."""

    def test_yaml_file(self, tmp_path):
        path = tmp_path / 'config.yaml'
        path.write_text(
            "cloud_api_url: https://staging.example.com/api\n"
            "probe_workers: 8\n"
            f"state_dir: {tmp_path / 'state'}\n"
        )
        config = load_config(path)
        assert config.cloud_api_url == 'https://staging.example.com/api'
        assert config.probe_workers == 8
        assert config.source == 'config_file'

    def test_environment_overrides_file(self, tmp_path, monkeypatch):
        path = tmp_path / 'config.yaml'
        path.write_text("probe_workers: 8\n")
        monkeypatch.setenv('CARTOGRAPHER_PROBE_WORKERS', '64')
        monkeypatch.setenv('CARTOGRAPHER_STATE_DIR', str(tmp_path / 'env-state'))

        config = load_config(path)

        assert config.probe_workers == 64
        assert config.state_dir == tmp_path / 'env-state'
        assert config.source == 'environment'

    def test_config_path_from_environment(self, tmp_path, monkeypatch):
        path = tmp_path / 'other.yaml'
        path.write_text("log_level: warning\n")
        monkeypatch.setenv('CARTOGRAPHER_CONFIG', str(path))
        assert load_config().log_level == 'WARNING'

    def test_non_mapping_rejected(self, tmp_path):
        path = tmp_path / 'config.yaml'
        path.write_text("- just\n- a list\n")
        with pytest.raises(ValueError):
            load_config(path)

    def test_invalid_value_rejected(self, tmp_path):
        path = tmp_path / 'config.yaml'
        path.write_text("probe_workers: 0\n")
        with pytest.raises(ValueError):
            load_config(path)


class TestScheduleConfig:
    """Test schedule preferences."""

    def test_defaults(self):
        schedule = ScheduleConfig()
        assert schedule.interval_minutes == 5
        assert schedule.health_check_interval_seconds == 60
        assert schedule.notifications_enabled is True

    @pytest.mark.parametrize("minutes", ALLOWED_SCAN_INTERVALS)
    def test_allowed_intervals(self, minutes):
        assert ScheduleConfig(interval_minutes=minutes).interval_minutes == minutes

    @pytest.mark.parametrize("minutes", [0, 3, 20, 90])
    def test_rejected_intervals(self, minutes):
        with pytest.raises(ValidationError):
            ScheduleConfig(interval_minutes=minutes)


class TestPreferencesStore:
    """Test persistence of schedule preferences."""

    @pytest.fixture
    def store(self, tmp_path):
        return PreferencesStore(AgentStateDB(tmp_path / 'agent.db'))

    def test_defaults_when_empty(self, store):
        assert store.load() == ScheduleConfig()

    def test_set_interval_persists(self, store):
        store.set_interval(30)
        assert store.load().interval_minutes == 30

    def test_invalid_interval_not_persisted(self, store):
        with pytest.raises(ValidationError):
            store.set_interval(7)
        assert store.load().interval_minutes == 5

    def test_notifications_toggle(self, store):
        store.set_notifications_enabled(False)
        assert store.load().notifications_enabled is False

    def test_corrupt_value_falls_back_to_defaults(self, store):
        store.db.set_preference('interval_minutes', 13)
        assert store.load() == ScheduleConfig()
