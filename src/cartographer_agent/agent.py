"""
Cartographer agent entry point.

Builds every long-lived component once (stores, cloud client, engines,
scheduler, authentication) and exposes them to the command line:

    cartographer-agent connect        Link this machine to a Cartographer network
    cartographer-agent scan           Run a discovery scan now
    cartographer-agent health         Check reachability of known devices
    cartographer-agent status         Show connection and scan status
    cartographer-agent disconnect     Log out and forget local state
    cartographer-agent daemon         Run scheduled scans until stopped
    cartographer-agent config         Show effective configuration
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import signal
import sys
from pathlib import Path
from typing import Any, Optional

from . import __version__
from ._types import AgentStatus, Device, HealthCheckResult, LoginFlowResponse, ScanResult
from .auth.device_flow import DeviceCodeAuth
from .cloud.client import CloudClient
from .cloud.gateway import CloudGateway
from .config import AgentConfig, load_config
from .credential_store import CredentialStore
from .discovery.arp_discovery import ARPDiscovery
from .discovery.engine import DiscoveryEngine
from .discovery.ping_sweep import ReachabilityProbe
from .exceptions import AgentError, NotAuthenticated
from .health_check import HealthCheckEngine
from .preferences import PreferencesStore
from .progress import ProgressBroadcaster
from .scheduler import Scheduler
from .state_db import AgentStateDB
from .status import StatusStore

logger = logging.getLogger(__name__)


class Agent:
    """
    Composition root of the agent process.

    Args:
        config: Agent configuration
        gateway: Cloud gateway (defaults to the HTTP client)
        engine: Discovery engine override
        health_engine: Health check engine override
    """

    def __init__(
        self,
        config: AgentConfig,
        gateway: Optional[CloudGateway] = None,
        engine: Optional[DiscoveryEngine] = None,
        health_engine: Optional[HealthCheckEngine] = None,
        credential_store: Optional[CredentialStore] = None,
    ):
        self.config = config
        self.db = AgentStateDB(config.db_path)
        self.preferences = PreferencesStore(self.db)
        self.status = StatusStore()
        self.credentials = credential_store or CredentialStore(config.credentials_dir)
        self.gateway = gateway or CloudClient(
            config.cloud_api_url,
            max_retries=config.max_retries,
            timeout=config.request_timeout,
        )
        self.auth = DeviceCodeAuth(self.gateway, self.credentials, self.status)

        arp = ARPDiscovery()
        probe = ReachabilityProbe(config.probe_timeout, config.tcp_probe_ports)
        self.engine = engine or DiscoveryEngine(
            config, ProgressBroadcaster("scan"), arp=arp, probe=probe
        )
        self.health_engine = health_engine or HealthCheckEngine(
            config, ProgressBroadcaster("health"), probe=probe, arp=arp,
            uploader=self.auth.cloud.upload_health,
        )
        self.scheduler = Scheduler(
            self.engine,
            self.health_engine,
            self.db,
            self.preferences,
            self.status,
            uploader=self.auth.cloud.upload_scan,
        )
        self.auth.on_authenticated = self.scheduler.on_authenticated
        self.auth.on_logout = self.scheduler.reset

        self._shutdown_event = asyncio.Event()

    def get_status(self) -> AgentStatus:
        return self.status.snapshot()

    def get_devices(self) -> list[Device]:
        return self.scheduler.devices

    async def start(self) -> None:
        """Restore the stored session and arm the scheduler."""
        logger.info(f"Starting Cartographer agent {__version__}")
        await self.auth.restore()
        await self.scheduler.start()

    async def stop(self) -> None:
        """Stop timers, cancel sessions and release resources."""
        await self.scheduler.stop()
        await self.gateway.close()
        self.engine.close()

    def request_shutdown(self) -> None:
        self._shutdown_event.set()

    async def run_daemon(self) -> None:
        """
        Run scheduled scans until a signal arrives or the session is lost.

        Raises:
            NotAuthenticated: If no valid session is stored
        """
        await self.auth.restore()
        if not self.status.authenticated:
            raise NotAuthenticated("Not connected. Run 'cartographer-agent connect' first.")

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, self.request_shutdown)

        def on_status(status: AgentStatus) -> None:
            if not status.authenticated:
                logger.warning("Session ended; stopping daemon")
                self.request_shutdown()

        self.status.add_listener(on_status)
        await self.scheduler.start()
        try:
            await self._shutdown_event.wait()
        finally:
            for sig in (signal.SIGTERM, signal.SIGINT):
                loop.remove_signal_handler(sig)
            await self.stop()


# =============================================================================
# Command line
# =============================================================================

def _print(args: argparse.Namespace, data: Any, text: str) -> None:
    if args.format == "json":
        print(json.dumps(data, indent=2, default=str))
    else:
        print(text)


def _format_status(status: AgentStatus) -> str:
    if not status.authenticated:
        lines = ["Status: not connected"]
    else:
        lines = [
            "Status: connected",
            f"  Account:  {status.user_email or '-'}",
            f"  Network:  {status.network_name or '-'} ({status.network_id})",
        ]
    lines += [
        f"  Devices:  {status.device_count}",
        f"  Last scan: {status.last_scan.isoformat() if status.last_scan else 'never'}",
        f"  Next scan: {status.next_scan.isoformat() if status.next_scan else '-'}",
    ]
    if status.last_error:
        lines.append(f"  Last error: {status.last_error}")
    return "\n".join(lines)


def _format_scan(result: ScanResult) -> str:
    lines = [f"Found {result.devices_found} devices on {result.network_info.subnet}:"]
    for d in result.devices:
        latency = f"{d.response_time_ms:.1f} ms" if d.response_time_ms else "passive"
        lines.append(
            f"  {d.ip:<15} {d.mac or '-':<17} {d.device_type.value:<9} "
            f"{latency:<10} {d.hostname or ''} {d.vendor or ''}".rstrip()
        )
    if result.synced_to_cloud:
        lines.append("Results uploaded to Cartographer.")
    return "\n".join(lines)


def _format_health(result: HealthCheckResult) -> str:
    lines = [
        f"{result.healthy} healthy, {result.degraded} degraded, {result.offline} offline "
        f"({result.total_devices} devices)",
    ]
    for r in result.results:
        latency = f"{r.response_time_ms:.1f} ms" if r.response_time_ms else "-"
        lines.append(f"  {r.ip:<15} {r.status.value:<9} {latency}")
    lines.append("Synced to cloud." if result.synced_to_cloud else "Not synced to cloud.")
    return "\n".join(lines)


async def _show_progress(broadcaster: ProgressBroadcaster) -> None:
    with broadcaster.subscribe() as sub:
        async for event in sub:
            percent = getattr(event, "percent", None)
            prefix = f"[{percent:3d}%] " if percent is not None else ""
            print(f"{prefix}{event.message}", file=sys.stderr)


async def _cmd_connect(agent: Agent, args: argparse.Namespace) -> int:
    status = await agent.auth.restore()
    if status.authenticated:
        _print(args, status.to_dict(), f"Already connected to {status.network_name}.")
        return 0

    # The daemon performs the first scan after connecting
    agent.auth.on_authenticated = None

    def show_code(flow: LoginFlowResponse) -> None:
        _print(args, flow.to_dict(),
               f"To connect this agent, visit:\n\n    {flow.verification_url}\n\n"
               f"and enter the code:  {flow.user_code}\n\nWaiting for approval...")

    status = await agent.auth.login(on_code=show_code)
    _print(args, status.to_dict(),
           f"Connected to {status.network_name} as {status.user_email}.\n"
           f"Dashboard: {agent.config.dashboard_link(status.network_id)}")
    return 0


async def _cmd_scan(agent: Agent, args: argparse.Namespace) -> int:
    if args.upload:
        await agent.auth.restore()
    else:
        agent.scheduler.uploader = None

    progress = None
    if args.format == "text":
        progress = asyncio.create_task(_show_progress(agent.scheduler.scan_events))
        await asyncio.sleep(0)
    try:
        result = await agent.scheduler.scan_now("cli")
    finally:
        if progress is not None:
            progress.cancel()
            await asyncio.gather(progress, return_exceptions=True)

    _print(args, {
        "devices": [d.to_dict() for d in result.devices],
        "network_info": result.network_info.to_dict(),
        "synced_to_cloud": result.synced_to_cloud,
    }, _format_scan(result))
    return 0


async def _cmd_health(agent: Agent, args: argparse.Namespace) -> int:
    await agent.auth.restore()
    result = await agent.scheduler.health_check_now("cli")
    _print(args, result.to_dict(), _format_health(result))
    return 0


async def _cmd_status(agent: Agent, args: argparse.Namespace) -> int:
    await agent.auth.restore()
    status = agent.get_status()
    _print(args, status.to_dict(), _format_status(status))
    return 0


async def _cmd_disconnect(agent: Agent, args: argparse.Namespace) -> int:
    await agent.auth.logout()
    _print(args, {"disconnected": True}, "Disconnected. Local credentials and scan data removed.")
    return 0


async def _cmd_daemon(agent: Agent, args: argparse.Namespace) -> int:
    if args.interval is not None:
        agent.scheduler.set_interval(args.interval)
    await agent.run_daemon()
    return 0


async def _cmd_config(agent: Agent, args: argparse.Namespace) -> int:
    data = {
        "config": agent.config.model_dump(mode="json"),
        "preferences": agent.preferences.load().model_dump(),
    }
    text = "\n".join(f"{k}: {v}" for section in data.values() for k, v in section.items())
    _print(args, data, text)
    return 0


_COMMANDS = {
    "connect": _cmd_connect,
    "login": _cmd_connect,
    "scan": _cmd_scan,
    "health": _cmd_health,
    "status": _cmd_status,
    "disconnect": _cmd_disconnect,
    "logout": _cmd_disconnect,
    "daemon": _cmd_daemon,
    "config": _cmd_config,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="cartographer-agent",
        description="Cartographer network discovery agent",
    )
    parser.add_argument("--config", type=Path, help="Path to YAML config file")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    parser.add_argument("--format", choices=["text", "json"], default="text", help="Output format")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")

    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("connect", aliases=["login"], help="Link this agent to a Cartographer network")
    scan = sub.add_parser("scan", help="Scan the local network now")
    scan.add_argument("--upload", action="store_true", help="Upload results to the cloud")
    sub.add_parser("health", help="Check reachability of known devices")
    sub.add_parser("status", help="Show agent status")
    sub.add_parser("disconnect", aliases=["logout"], help="Log out and clear local data")
    daemon = sub.add_parser("daemon", help="Run scheduled scans in the foreground")
    daemon.add_argument("--interval", type=int, help="Scan interval in minutes (1, 5, 10, 15, 30, 60)")
    sub.add_parser("config", help="Show effective configuration")
    return parser


async def _run(args: argparse.Namespace, config: AgentConfig) -> int:
    agent = Agent(config)
    try:
        return await _COMMANDS[args.command](agent, args)
    except (AgentError, ValueError) as e:
        logger.debug("Command failed", exc_info=True)
        print(f"Error: {e}", file=sys.stderr)
        return 1
    finally:
        await agent.stop()


def main(argv: Optional[list[str]] = None) -> None:
    """Entry point for the cartographer-agent command."""
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        config = load_config(args.config)
    except (OSError, ValueError) as e:
        print(f"Invalid configuration: {e}", file=sys.stderr)
        sys.exit(2)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else getattr(logging, config.log_level),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    try:
        code = asyncio.run(_run(args, config))
    except KeyboardInterrupt:
        logger.info("Interrupted")
        code = 130
    sys.exit(code)


if __name__ == "__main__":
    main()
