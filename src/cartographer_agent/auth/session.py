"""
Authenticated access to the cloud.

Every call reads the current credentials from the credential store, so a
refresh or logout takes effect for the very next request. A rejected token
triggers exactly one refresh and one retry; if that fails too the session is
considered lost and AuthExpired is raised.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional, TypeVar

from .._types import Credentials, HealthCheckResult, ScanResult, SyncResult
from ..cloud.gateway import CloudGateway
from ..credential_store import CredentialStore
from ..exceptions import AuthExpired, CloudAuthError, NotAuthenticated

logger = logging.getLogger(__name__)

T = TypeVar("T")


class AuthenticatedCloud:
    """Wraps a CloudGateway with credential loading and silent refresh."""

    def __init__(
        self,
        gateway: CloudGateway,
        store: CredentialStore,
        on_auth_lost: Optional[Callable[[], Awaitable[None]]] = None,
    ):
        self.gateway = gateway
        self.store = store
        self.on_auth_lost = on_auth_lost
        self._refresh_lock = asyncio.Lock()

    def _credentials(self) -> Credentials:
        credentials = self.store.load()
        if credentials is None:
            raise NotAuthenticated("Agent is not connected to a network")
        return credentials

    async def call(self, operation: Callable[[Credentials], Awaitable[T]]) -> T:
        """
        Run an authenticated operation.

        Raises:
            NotAuthenticated: No credentials are stored
            AuthExpired: The token was rejected and could not be refreshed
            CloudUnreachable: The cloud could not be reached
        """
        credentials = self._credentials()
        if credentials.is_expired():
            credentials = await self._refresh(credentials)

        try:
            return await operation(credentials)
        except CloudAuthError:
            logger.info("Access token rejected, attempting refresh")

        credentials = await self._refresh(credentials)
        try:
            return await operation(credentials)
        except CloudAuthError as e:
            await self._lose_auth()
            raise AuthExpired("Session rejected after refresh; please log in again") from e

    async def _refresh(self, stale: Credentials) -> Credentials:
        async with self._refresh_lock:
            current = self.store.load()
            if current is not None and current.access_token != stale.access_token:
                # Refreshed by a concurrent caller
                return current
            try:
                fresh = await self.gateway.refresh_token(stale)
            except CloudAuthError as e:
                await self._lose_auth()
                raise AuthExpired("Session expired; please log in again") from e
            self.store.save(fresh)
            logger.info("Access token refreshed")
            return fresh

    async def _lose_auth(self) -> None:
        logger.warning("Authentication lost")
        if self.on_auth_lost is not None:
            await self.on_auth_lost()
        else:
            self.store.clear()

    # =========================================================================
    # Operations
    # =========================================================================

    async def verify(self) -> dict[str, Any]:
        return await self.call(lambda c: self.gateway.verify_token(c.access_token))

    async def upload_scan(self, result: ScanResult) -> SyncResult:
        return await self.call(
            lambda c: self.gateway.upload_scan(c.access_token, c.network_id, result)
        )

    async def upload_health(self, result: HealthCheckResult) -> SyncResult:
        return await self.call(
            lambda c: self.gateway.upload_health(c.access_token, c.network_id, result)
        )
