"""
Agent status snapshots.

The scheduler owns the scan fields of AgentStatus and the authentication
layer owns the identity fields. Both update through this store, which swaps
in a new immutable snapshot under a lock so readers always see a consistent
view.
"""

from __future__ import annotations

import dataclasses
import logging
import threading
from typing import Any, Callable, Optional

from ._types import AgentStatus

logger = logging.getLogger(__name__)

_IDENTITY_FIELDS = ("authenticated", "user_email", "network_id", "network_name")


class StatusStore:
    """Holds the current AgentStatus and notifies listeners on change."""

    def __init__(self, initial: Optional[AgentStatus] = None):
        self._lock = threading.Lock()
        self._status = initial or AgentStatus()
        self._listeners: list[Callable[[AgentStatus], None]] = []

    def snapshot(self) -> AgentStatus:
        return self._status

    def update(self, **changes: Any) -> AgentStatus:
        """Apply changes atomically and return the new snapshot."""
        with self._lock:
            self._status = dataclasses.replace(self._status, **changes)
            status = self._status
        for listener in list(self._listeners):
            listener(status)
        return status

    def set_identity(
        self,
        authenticated: bool,
        user_email: Optional[str] = None,
        network_id: Optional[str] = None,
        network_name: Optional[str] = None,
    ) -> AgentStatus:
        return self.update(
            authenticated=authenticated,
            user_email=user_email,
            network_id=network_id,
            network_name=network_name,
        )

    def clear_identity(self) -> AgentStatus:
        return self.update(**{name: (False if name == "authenticated" else None) for name in _IDENTITY_FIELDS})

    def add_listener(self, listener: Callable[[AgentStatus], None]) -> None:
        self._listeners.append(listener)

    @property
    def authenticated(self) -> bool:
        return self._status.authenticated
