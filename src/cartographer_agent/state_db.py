"""
Agent state database.

SQLite database under the agent state directory storing:
- The known-device cache from the last scan (with health data)
- Scan and health-check session history
- Agent key/value state (last scan time)
- User preferences

Uses WAL mode for crash safety and concurrent reads.
"""

from __future__ import annotations

import json
import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterator, Optional

from ._types import (
    Device,
    DeviceType,
    HealthStatus,
    SessionRecord,
    now_utc,
)

logger = logging.getLogger(__name__)


SCHEMA = """
-- Known devices from the most recent scan
CREATE TABLE IF NOT EXISTS devices (
    ip_address TEXT PRIMARY KEY,
    mac_address TEXT,
    hostname TEXT,
    vendor TEXT,
    device_type TEXT NOT NULL DEFAULT 'unknown',
    response_time_ms REAL,
    health TEXT,
    last_seen_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_devices_type ON devices(device_type);

-- Scan and health-check sessions
CREATE TABLE IF NOT EXISTS sessions (
    id TEXT PRIMARY KEY,
    kind TEXT NOT NULL,
    triggered_by TEXT NOT NULL DEFAULT 'scheduled',
    started_at TEXT NOT NULL,
    completed_at TEXT,
    status TEXT NOT NULL DEFAULT 'running',
    devices_found INTEGER DEFAULT 0,
    healthy_devices INTEGER DEFAULT 0,
    unreachable_devices INTEGER DEFAULT 0,
    synced_to_cloud BOOLEAN DEFAULT FALSE,
    error_message TEXT
);

CREATE INDEX IF NOT EXISTS idx_sessions_kind_started ON sessions(kind, started_at);

-- Agent state (last scan time, ...)
CREATE TABLE IF NOT EXISTS agent_state (
    key TEXT PRIMARY KEY,
    value TEXT
);

-- User preferences (JSON-encoded values)
CREATE TABLE IF NOT EXISTS preferences (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL
);
"""


def _iso_format(dt: Optional[datetime]) -> Optional[str]:
    """Format datetime as ISO string."""
    return dt.isoformat() if dt else None


def _parse_datetime(s: Optional[str]) -> Optional[datetime]:
    """Parse ISO datetime string (naive values are taken as UTC)."""
    if not s:
        return None
    try:
        dt = datetime.fromisoformat(s)
    except ValueError:
        return None
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)


class AgentStateDB:
    """
    SQLite store for agent state that must survive restarts.

    Each call opens its own connection, so the store may be used from the
    event loop and worker threads alike.
    """

    def __init__(self, db_path: Path | str):
        self.db_path = Path(db_path)
        self._ensure_directory()
        self._init_db()

    def _ensure_directory(self) -> None:
        """Ensure database directory exists."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

    def _init_db(self) -> None:
        """Initialize database with schema."""
        with self._get_connection() as conn:
            conn.executescript(SCHEMA)
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA synchronous=NORMAL")
            conn.commit()

    @contextmanager
    def _get_connection(self) -> Iterator[sqlite3.Connection]:
        """Get database connection with row factory."""
        conn = sqlite3.connect(str(self.db_path), timeout=30.0)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
        finally:
            conn.close()

    # -------------------------------------------------------------------------
    # Devices
    # -------------------------------------------------------------------------

    def replace_devices(self, devices: list[Device]) -> None:
        """Replace the cached device set in one transaction."""
        with self._get_connection() as conn:
            conn.execute("DELETE FROM devices")
            conn.executemany("""
                INSERT INTO devices (
                    ip_address, mac_address, hostname, vendor, device_type,
                    response_time_ms, health, last_seen_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """, [
                (
                    d.ip,
                    d.mac,
                    d.hostname,
                    d.vendor,
                    d.device_type.value,
                    d.response_time_ms,
                    d.health.value if d.health else None,
                    _iso_format(d.last_seen_at),
                )
                for d in devices
            ])
            conn.commit()
        logger.debug(f"Persisted {len(devices)} devices")

    def get_devices(self) -> list[Device]:
        """Get cached devices ordered by address."""
        with self._get_connection() as conn:
            rows = conn.execute("SELECT * FROM devices").fetchall()
        devices = [self._row_to_device(row) for row in rows]
        devices.sort(key=lambda d: d.ip_key)
        return devices

    def clear_devices(self) -> None:
        with self._get_connection() as conn:
            conn.execute("DELETE FROM devices")
            conn.commit()

    def _row_to_device(self, row: sqlite3.Row) -> Device:
        return Device(
            ip=row["ip_address"],
            mac=row["mac_address"],
            hostname=row["hostname"],
            vendor=row["vendor"],
            device_type=DeviceType(row["device_type"]),
            response_time_ms=row["response_time_ms"],
            health=HealthStatus(row["health"]) if row["health"] else None,
            last_seen_at=_parse_datetime(row["last_seen_at"]) or now_utc(),
        )

    # -------------------------------------------------------------------------
    # Session History
    # -------------------------------------------------------------------------

    def create_session(
        self,
        session_id: str,
        kind: str,
        started_at: datetime,
        triggered_by: str,
    ) -> None:
        """Create a new session history record."""
        with self._get_connection() as conn:
            conn.execute("""
                INSERT INTO sessions (id, kind, triggered_by, started_at, status)
                VALUES (?, ?, ?, ?, 'running')
            """, (session_id, kind, triggered_by, _iso_format(started_at)))
            conn.commit()

    def complete_session(
        self,
        session_id: str,
        status: str = "completed",
        devices_found: int = 0,
        healthy_devices: int = 0,
        unreachable_devices: int = 0,
        synced_to_cloud: bool = False,
        error_message: Optional[str] = None,
    ) -> None:
        """Mark a session finished with its outcome."""
        with self._get_connection() as conn:
            conn.execute("""
                UPDATE sessions SET
                    completed_at = ?,
                    status = ?,
                    devices_found = ?,
                    healthy_devices = ?,
                    unreachable_devices = ?,
                    synced_to_cloud = ?,
                    error_message = ?
                WHERE id = ?
            """, (
                _iso_format(now_utc()),
                status,
                devices_found,
                healthy_devices,
                unreachable_devices,
                synced_to_cloud,
                error_message,
                session_id,
            ))
            conn.commit()

    def get_session_history(self, kind: Optional[str] = None, limit: int = 50) -> list[SessionRecord]:
        """Get recent sessions, newest first."""
        query = "SELECT * FROM sessions"
        params: list[Any] = []
        if kind:
            query += " WHERE kind = ?"
            params.append(kind)
        query += " ORDER BY started_at DESC LIMIT ?"
        params.append(limit)

        with self._get_connection() as conn:
            rows = conn.execute(query, params).fetchall()
        return [
            SessionRecord(
                id=row["id"],
                kind=row["kind"],
                triggered_by=row["triggered_by"],
                started_at=_parse_datetime(row["started_at"]) or now_utc(),
                completed_at=_parse_datetime(row["completed_at"]),
                status=row["status"],
                devices_found=row["devices_found"] or 0,
                healthy_devices=row["healthy_devices"] or 0,
                unreachable_devices=row["unreachable_devices"] or 0,
                synced_to_cloud=bool(row["synced_to_cloud"]),
                error_message=row["error_message"],
            )
            for row in rows
        ]

    def get_latest_session(self, kind: Optional[str] = None) -> Optional[SessionRecord]:
        """Get the most recent session."""
        history = self.get_session_history(kind=kind, limit=1)
        return history[0] if history else None

    # -------------------------------------------------------------------------
    # Agent State
    # -------------------------------------------------------------------------

    def get_state(self, key: str) -> Optional[str]:
        with self._get_connection() as conn:
            row = conn.execute("SELECT value FROM agent_state WHERE key = ?", (key,)).fetchone()
        return row["value"] if row else None

    def set_state(self, key: str, value: Optional[str]) -> None:
        with self._get_connection() as conn:
            conn.execute("""
                INSERT INTO agent_state (key, value) VALUES (?, ?)
                ON CONFLICT(key) DO UPDATE SET value = excluded.value
            """, (key, value))
            conn.commit()

    def get_last_scan_time(self) -> Optional[datetime]:
        return _parse_datetime(self.get_state("last_scan_time"))

    def set_last_scan_time(self, when: Optional[datetime]) -> None:
        self.set_state("last_scan_time", _iso_format(when))

    # -------------------------------------------------------------------------
    # Preferences
    # -------------------------------------------------------------------------

    def get_preferences(self) -> dict[str, Any]:
        with self._get_connection() as conn:
            rows = conn.execute("SELECT key, value FROM preferences").fetchall()
        return {row["key"]: json.loads(row["value"]) for row in rows}

    def set_preference(self, key: str, value: Any) -> None:
        with self._get_connection() as conn:
            conn.execute("""
                INSERT INTO preferences (key, value) VALUES (?, ?)
                ON CONFLICT(key) DO UPDATE SET value = excluded.value
            """, (key, json.dumps(value)))
            conn.commit()

    # -------------------------------------------------------------------------
    # Maintenance
    # -------------------------------------------------------------------------

    def clear_all(self) -> None:
        """Forget devices, history and agent state (preferences are kept)."""
        with self._get_connection() as conn:
            conn.execute("DELETE FROM devices")
            conn.execute("DELETE FROM sessions")
            conn.execute("DELETE FROM agent_state")
            conn.commit()
        logger.info("Cleared agent state")
