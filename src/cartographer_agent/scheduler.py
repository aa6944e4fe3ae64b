"""
Background scheduler for scans and health checks.

Owns every session the agent runs. Scans and health checks are separate
exclusion domains: at most one scan and at most one health check are active
at any time, but one of each may run concurrently. Both write to the
known-device cache only at the end of a session, as an IP-keyed merge.

Timer rules:
- A scheduled scan fires when now >= next_run_at, no scan is running and
  the agent is authenticated. At fire time next_run_at moves to
  fire time + interval.
- A completed or failed scan sets last_scan = now and
  next_run_at = now + interval.
- A cancelled scan leaves last_scan and next_run_at untouched.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Optional

from ._types import (
    AgentStatus,
    Device,
    HealthCheckProgress,
    HealthCheckResult,
    ScanProgress,
    ScanResult,
    SessionRecord,
    SyncResult,
    now_utc,
)
from .cancellation import CancelToken
from .config import ScheduleConfig
from .discovery.engine import DiscoveryEngine
from .exceptions import (
    AgentError,
    AuthError,
    CancellationRequested,
    CloudError,
    HealthCheckInProgress,
    ScanCancelled,
    ScanInProgress,
)
from .health_check import HealthCheckEngine, apply_health
from .preferences import PreferencesStore
from .progress import ProgressBroadcaster
from .state_db import AgentStateDB
from .status import StatusStore

logger = logging.getLogger(__name__)

ScanUploader = Callable[[ScanResult], Awaitable[SyncResult]]

# Upper bound on a single timer wait, so wall-clock jumps are noticed
MAX_TIMER_WAIT = 60.0
HEALTH_LOOP_INITIAL_DELAY = 10.0
SHUTDOWN_GRACE = 5.0


@dataclass
class ScanOutcome:
    """How a scan session ended."""
    status: str                        # completed, failed, cancelled
    result: Optional[ScanResult] = None
    error: Optional[BaseException] = None

    def unwrap(self) -> ScanResult:
        if self.error is not None:
            raise self.error
        if self.result is None:
            raise AgentError(f"Scan ended {self.status} without a result")
        return self.result


def merge_preserving_health(previous: list[Device], fresh: list[Device]) -> list[Device]:
    """
    Combine a fresh scan with the cached devices.

    The device set is exactly the fresh one. Hostname, vendor, health and a
    never-measured latency are filled in from the cache when the fresh scan
    has nothing for them.
    """
    old_by_ip = {d.ip: d for d in previous}
    merged = []
    for device in fresh:
        old = old_by_ip.get(device.ip)
        if old is None:
            merged.append(device)
            continue
        merged.append(device.with_updates(
            hostname=device.hostname or old.hostname,
            vendor=device.vendor or old.vendor,
            health=device.health or old.health,
            response_time_ms=(
                device.response_time_ms if device.response_time_ms is not None else old.response_time_ms
            ),
        ))
    return merged


def _log_task_result(task: asyncio.Task) -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None and not isinstance(exc, (AgentError, CancellationRequested)):
        logger.error(f"Session task {task.get_name()} crashed: {exc!r}")


class Scheduler:
    """
    Runs scans on an interval and on demand.

    Constructed once by the agent and shared with every caller.
    """

    def __init__(
        self,
        engine: DiscoveryEngine,
        health_engine: HealthCheckEngine,
        db: AgentStateDB,
        preferences: PreferencesStore,
        status: StatusStore,
        uploader: Optional[ScanUploader] = None,
        now: Callable[[], datetime] = now_utc,
    ):
        self.engine = engine
        self.health_engine = health_engine
        self.db = db
        self.preferences = preferences
        self.status = status
        self.uploader = uploader
        self.now = now

        self._schedule: ScheduleConfig = preferences.load()
        self._devices: list[Device] = db.get_devices()
        self._last_completed: Optional[datetime] = db.get_last_scan_time()
        self._next_run_at: Optional[datetime] = None

        self._scan_task: Optional[asyncio.Task] = None
        self._scan_token: Optional[CancelToken] = None
        self._health_task: Optional[asyncio.Task] = None
        self._health_token: Optional[CancelToken] = None

        # Guards the device cache and its database copy
        self._lock = asyncio.Lock()
        self._running = False
        self._wake = asyncio.Event()
        self._timer_task: Optional[asyncio.Task] = None
        self._health_timer_task: Optional[asyncio.Task] = None

        self.status.update(
            device_count=len(self._devices),
            last_scan=self._last_completed,
        )

    # =========================================================================
    # Read-only views
    # =========================================================================

    @property
    def scan_events(self) -> ProgressBroadcaster[ScanProgress]:
        return self.engine.broadcaster

    @property
    def health_events(self) -> ProgressBroadcaster[HealthCheckProgress]:
        return self.health_engine.broadcaster

    @property
    def devices(self) -> list[Device]:
        return list(self._devices)

    @property
    def schedule(self) -> ScheduleConfig:
        return self._schedule

    @property
    def interval(self) -> timedelta:
        return timedelta(minutes=self._schedule.interval_minutes)

    @property
    def next_run_at(self) -> Optional[datetime]:
        return self._next_run_at

    @property
    def last_completed_at(self) -> Optional[datetime]:
        return self._last_completed

    @property
    def scan_in_progress(self) -> bool:
        return self._scan_task is not None and not self._scan_task.done()

    @property
    def health_check_in_progress(self) -> bool:
        return self._health_task is not None and not self._health_task.done()

    def get_status(self) -> AgentStatus:
        return self.status.snapshot()

    def session_history(self, kind: Optional[str] = None, limit: int = 20) -> list[SessionRecord]:
        return self.db.get_session_history(kind=kind, limit=limit)

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def start(self) -> None:
        """Arm the timer loops."""
        if self._running:
            return
        self._running = True
        if self._next_run_at is None:
            if self._last_completed is not None:
                self._set_next_run(self._last_completed + self.interval)
            else:
                self._set_next_run(self.now())
        self._timer_task = asyncio.create_task(self._timer_loop(), name="scan-timer")
        self._health_timer_task = asyncio.create_task(self._health_loop(), name="health-timer")
        logger.info(f"Scheduler started (interval {self._schedule.interval_minutes} min)")

    async def stop(self) -> None:
        """Stop the timers and cancel in-flight sessions."""
        self._running = False
        self._wake.set()
        for task in (self._timer_task, self._health_timer_task):
            if task is not None and not task.done():
                task.cancel()
        await asyncio.gather(
            *(t for t in (self._timer_task, self._health_timer_task) if t is not None),
            return_exceptions=True,
        )
        self._timer_task = self._health_timer_task = None
        await self._cancel_sessions("shutdown")
        logger.info("Scheduler stopped")

    async def reset(self) -> None:
        """Cancel sessions and forget all devices and history (logout)."""
        await self._cancel_sessions("logout")
        async with self._lock:
            self._devices = []
            self._last_completed = None
            self._next_run_at = None
            self.db.clear_all()
        self.status.update(
            device_count=0,
            last_scan=None,
            next_scan=None,
            last_scan_status=None,
            last_error=None,
        )

    def on_authenticated(self) -> Optional[asyncio.Task]:
        """Start an immediate scan after login and wake the timer."""
        self._wake.set()
        return self.request_scan("login")

    async def _cancel_sessions(self, reason: str) -> None:
        tasks = []
        if self.scan_in_progress and self._scan_token is not None:
            self._scan_token.cancel(reason)
            tasks.append(self._scan_task)
        if self.health_check_in_progress and self._health_token is not None:
            self._health_token.cancel(reason)
            tasks.append(self._health_task)
        if not tasks:
            return
        _, pending = await asyncio.wait(tasks, timeout=SHUTDOWN_GRACE)
        for task in pending:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    # =========================================================================
    # Scans
    # =========================================================================

    def request_scan(self, triggered_by: str = "manual") -> Optional[asyncio.Task]:
        """
        Start a scan without waiting for it.

        Returns:
            The session task, or None if a scan is already running
        """
        if self.scan_in_progress:
            logger.info(f"Scan request ({triggered_by}) ignored: scan already running")
            return None
        token = CancelToken()
        session_id = uuid.uuid4().hex
        self._scan_token = token
        self._scan_task = asyncio.create_task(
            self._run_scan_session(token, session_id, triggered_by),
            name=f"scan-{session_id[:8]}",
        )
        self._scan_task.add_done_callback(_log_task_result)
        self.status.update(scanning_in_progress=True)
        return self._scan_task

    async def scan_now(self, triggered_by: str = "manual") -> ScanResult:
        """
        Run a scan and wait for it.

        Raises:
            ScanInProgress: A scan is already running
            ScanCancelled: The scan was cancelled
            NetworkUnavailable: No usable network
        """
        task = self.request_scan(triggered_by)
        if task is None:
            raise ScanInProgress("A scan is already running")
        outcome: ScanOutcome = await asyncio.shield(task)
        return outcome.unwrap()

    def cancel_scan(self) -> bool:
        """Cancel the running scan, if any."""
        if not self.scan_in_progress or self._scan_token is None:
            return False
        self._scan_token.cancel("cancelled by user")
        logger.info("Scan cancellation requested")
        return True

    async def _run_scan_session(self, token: CancelToken, session_id: str, triggered_by: str) -> ScanOutcome:
        self.db.create_session(session_id, "scan", self.now(), triggered_by)
        try:
            try:
                result = await self.engine.run_scan(token, session_id)
            except ScanCancelled as e:
                self.db.complete_session(session_id, status="cancelled", error_message=str(e))
                self.status.update(last_scan_status="cancelled", last_error=None)
                return ScanOutcome("cancelled", error=e)
            except asyncio.CancelledError:
                self.db.complete_session(session_id, status="cancelled", error_message="task cancelled")
                raise
            except Exception as e:
                logger.error(f"[Scheduler] Scan {session_id[:8]} failed: {e}")
                self.db.complete_session(session_id, status="failed", error_message=str(e))
                self._record_completion("failed", str(e))
                return ScanOutcome("failed", error=e)

            async with self._lock:
                self._devices = merge_preserving_health(self._devices, result.devices)
                result.devices = list(self._devices)
                self.db.replace_devices(self._devices)

            result.synced_to_cloud = await self._upload_scan(result)
            self._record_completion("completed")
            self.db.complete_session(
                session_id,
                status="completed",
                devices_found=result.devices_found,
                synced_to_cloud=result.synced_to_cloud,
            )
            return ScanOutcome("completed", result=result)
        finally:
            self.status.update(scanning_in_progress=False)
            self._wake.set()

    async def _upload_scan(self, result: ScanResult) -> bool:
        if self.uploader is None:
            return False
        try:
            sync = await self.uploader(result)
        except (AuthError, CloudError) as e:
            logger.warning(f"[Scheduler] Scan upload failed: {e}")
            return False
        return sync.accepted

    def _record_completion(self, outcome: str, error: Optional[str] = None) -> None:
        completed = self.now()
        self._last_completed = completed
        self.db.set_last_scan_time(completed)
        self._next_run_at = completed + self.interval
        self.status.update(
            last_scan=completed,
            next_scan=self._next_run_at,
            device_count=len(self._devices),
            last_scan_status=outcome,
            last_error=error,
        )

    def _set_next_run(self, when: Optional[datetime]) -> None:
        self._next_run_at = when
        self.status.update(next_scan=when)

    # =========================================================================
    # Health checks
    # =========================================================================

    async def health_check_now(self, triggered_by: str = "manual") -> HealthCheckResult:
        """
        Run a health check over the cached devices and wait for it.

        Raises:
            HealthCheckInProgress: A health check is already running
        """
        if self.health_check_in_progress:
            raise HealthCheckInProgress("A health check is already running")
        token = CancelToken()
        session_id = uuid.uuid4().hex
        self._health_token = token
        self._health_task = asyncio.create_task(
            self._run_health_session(token, session_id, triggered_by),
            name=f"health-{session_id[:8]}",
        )
        self._health_task.add_done_callback(_log_task_result)
        self.status.update(health_check_in_progress=True)
        return await asyncio.shield(self._health_task)

    async def _run_health_session(self, token: CancelToken, session_id: str, triggered_by: str) -> HealthCheckResult:
        self.db.create_session(session_id, "health", self.now(), triggered_by)
        try:
            try:
                result = await self.health_engine.run_health_check(list(self._devices), token, session_id)
            except (CancellationRequested, asyncio.CancelledError):
                self.db.complete_session(session_id, status="cancelled")
                raise
            except Exception as e:
                self.db.complete_session(session_id, status="failed", error_message=str(e))
                raise

            # The cache may have been replaced by a scan meanwhile
            async with self._lock:
                self._devices = apply_health(self._devices, result)
                self.db.replace_devices(self._devices)
            self.db.complete_session(
                session_id,
                status="completed",
                devices_found=result.total_devices,
                healthy_devices=result.healthy_devices,
                unreachable_devices=result.unreachable_devices,
                synced_to_cloud=result.synced_to_cloud,
            )
            return result
        finally:
            self.status.update(health_check_in_progress=False)

    # =========================================================================
    # Interval changes
    # =========================================================================

    def set_interval(self, minutes: int) -> Optional[datetime]:
        """
        Change the scan interval.

        The next run is recomputed from the last completed scan; a running
        session is not interrupted.

        Raises:
            ValueError: If minutes is not an allowed interval
        """
        self._schedule = self.preferences.set_interval(minutes)
        base = self._last_completed or self.now()
        self._set_next_run(base + self.interval)
        self._wake.set()
        logger.info(f"Scan interval set to {minutes} min; next scan at {self._next_run_at}")
        return self._next_run_at

    def set_health_check_interval(self, seconds: int) -> None:
        config = self.preferences.load()
        config.health_check_interval_seconds = seconds
        self.preferences.save(config)
        self._schedule = config

    # =========================================================================
    # Timers
    # =========================================================================

    def _seconds_until_due(self) -> Optional[float]:
        if self._next_run_at is None:
            return None
        return (self._next_run_at - self.now()).total_seconds()

    async def _wait_for_wake(self, timeout: float) -> None:
        try:
            await asyncio.wait_for(self._wake.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            pass

    async def _timer_loop(self) -> None:
        while self._running:
            self._wake.clear()
            due_in = self._seconds_until_due()

            if (
                due_in is not None
                and due_in <= 0
                and self.status.authenticated
                and not self.scan_in_progress
            ):
                fire_time = self.now()
                self._set_next_run(fire_time + self.interval)
                logger.info("[Scheduler] Scheduled scan due")
                self.request_scan("scheduled")
                continue

            if due_in is None or due_in <= 0:
                timeout = MAX_TIMER_WAIT
            else:
                timeout = min(due_in, MAX_TIMER_WAIT)
            await self._wait_for_wake(timeout)

    async def _health_loop(self) -> None:
        await asyncio.sleep(HEALTH_LOOP_INITIAL_DELAY)
        while self._running:
            interval = self._schedule.health_check_interval_seconds
            if (
                interval > 0
                and self.status.authenticated
                and self._devices
                and not self.health_check_in_progress
            ):
                try:
                    await self.health_check_now("scheduled")
                except (HealthCheckInProgress, CancellationRequested):
                    pass
                except Exception as e:
                    logger.error(f"[Scheduler] Health check failed: {e!r}")
                    self.status.update(last_error=f"Health check failed: {e}")
            await asyncio.sleep(interval if interval > 0 else MAX_TIMER_WAIT)
