"""
Device-code login state machine.

    Unauthenticated -> LoginRequested -> PollingForToken -> Authenticated
            ^                                 |                  |
            +---------- denied / expired -----+---- logout ------+

The agent shows the user a short code and a URL, then polls the token
endpoint until the user approves, rejects, or the code expires. Polling has
a hard deadline of expires_in seconds after polling starts; a poll in flight
at the deadline may finish, so a login never stays pending longer than
expires_in + poll_interval.
"""

from __future__ import annotations

import asyncio
import logging
import time
from enum import Enum
from typing import Awaitable, Callable, Optional

from .._types import AgentStatus, Credentials, LoginFlowResponse, TokenResult, TokenStatus
from ..cloud.gateway import CloudGateway
from ..credential_store import CredentialStore
from ..exceptions import AuthDenied, AuthError, AuthExpired, CloudError
from ..status import StatusStore
from .session import AuthenticatedCloud

logger = logging.getLogger(__name__)

# RFC 8628: increase the polling interval by 5 seconds on slow_down
SLOW_DOWN_INCREMENT = 5


class AuthState(str, Enum):
    UNAUTHENTICATED = "unauthenticated"
    LOGIN_REQUESTED = "login_requested"
    POLLING_FOR_TOKEN = "polling_for_token"
    AUTHENTICATED = "authenticated"


class DeviceCodeAuth:
    """
    Owns the authentication lifecycle of the agent.

    Args:
        gateway: Cloud gateway used for the login endpoints
        store: Credential store; the only persistent copy of tokens
        status: Status store receiving identity updates
        clock: Monotonic clock in seconds
        sleep: Async sleep; paired with clock so tests can fake time
        on_authenticated: Called after a successful login
        on_logout: Awaited on logout before credentials are cleared
    """

    def __init__(
        self,
        gateway: CloudGateway,
        store: CredentialStore,
        status: StatusStore,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        on_authenticated: Optional[Callable[[], None]] = None,
        on_logout: Optional[Callable[[], Awaitable[None]]] = None,
    ):
        self.gateway = gateway
        self.store = store
        self.status = status
        self.clock = clock
        self.sleep = sleep
        self.on_authenticated = on_authenticated
        self.on_logout = on_logout
        self.cloud = AuthenticatedCloud(gateway, store, on_auth_lost=self.handle_auth_lost)
        self._state = AuthState.UNAUTHENTICATED
        self._pending: Optional[LoginFlowResponse] = None

    @property
    def state(self) -> AuthState:
        return self._state

    @property
    def is_authenticated(self) -> bool:
        return self._state == AuthState.AUTHENTICATED

    @property
    def pending_login(self) -> Optional[LoginFlowResponse]:
        return self._pending

    # =========================================================================
    # Login
    # =========================================================================

    async def request_login(self) -> LoginFlowResponse:
        """Ask the cloud for a device code; does not wait for approval."""
        if self._state == AuthState.POLLING_FOR_TOKEN:
            raise AuthError("A login is already waiting for approval")
        flow = await self.gateway.request_device_code()
        self._pending = flow
        self._state = AuthState.LOGIN_REQUESTED
        logger.info(f"Login requested: visit {flow.verification_url} and enter {flow.user_code}")
        return flow

    async def complete_login(
        self,
        device_code: str,
        expires_in: int,
        poll_interval: int = 5,
    ) -> AgentStatus:
        """
        Poll until the login is approved, denied, or expires.

        Returns:
            Status snapshot with the new identity

        Raises:
            AuthDenied: The user rejected the request
            AuthExpired: The code expired before approval
        """
        if self._state == AuthState.POLLING_FOR_TOKEN:
            raise AuthError("A login is already waiting for approval")

        self._state = AuthState.POLLING_FOR_TOKEN
        interval = max(1, poll_interval)
        deadline = self.clock() + expires_in

        try:
            while True:
                if self.clock() >= deadline:
                    raise AuthExpired("Login code expired before it was approved")

                result = await self._poll_once(device_code, interval)
                if result is not None:
                    if result.status == TokenStatus.GRANTED and result.credentials:
                        return self._finish_login(result.credentials)
                    if result.status == TokenStatus.DENIED:
                        raise AuthDenied(result.message or "Login was rejected")
                    if result.status == TokenStatus.EXPIRED:
                        raise AuthExpired(result.message or "Login code expired")
                    if result.status == TokenStatus.SLOW_DOWN:
                        interval += SLOW_DOWN_INCREMENT
                        logger.debug(f"Token endpoint asked to slow down; interval now {interval}s")

                remaining = deadline - self.clock()
                if remaining <= 0:
                    raise AuthExpired("Login code expired before it was approved")
                await self.sleep(min(interval, remaining))
        except BaseException:
            if self._state == AuthState.POLLING_FOR_TOKEN:
                self._state = AuthState.UNAUTHENTICATED
                self._pending = None
            raise

    async def _poll_once(self, device_code: str, interval: int) -> Optional[TokenResult]:
        try:
            return await asyncio.wait_for(self.gateway.poll_token(device_code), timeout=interval)
        except asyncio.TimeoutError:
            logger.debug("Token poll timed out")
        except CloudError as e:
            logger.warning(f"Token poll failed, will retry: {e}")
        return None

    def _finish_login(self, credentials: Credentials) -> AgentStatus:
        self.store.save(credentials)
        self._state = AuthState.AUTHENTICATED
        self._pending = None
        snapshot = self.status.set_identity(
            True,
            user_email=credentials.user_email,
            network_id=credentials.network_id,
            network_name=credentials.network_name,
        )
        logger.info(f"Logged in as {credentials.user_email} (network {credentials.network_name})")
        if self.on_authenticated is not None:
            self.on_authenticated()
        return snapshot

    async def login(self, on_code: Optional[Callable[[LoginFlowResponse], None]] = None) -> AgentStatus:
        """Run the whole flow: request a code, show it, wait for approval."""
        flow = await self.request_login()
        if on_code is not None:
            on_code(flow)
        return await self.complete_login(flow.device_code, flow.expires_in, flow.poll_interval)

    # =========================================================================
    # Session lifecycle
    # =========================================================================

    async def restore(self) -> AgentStatus:
        """
        Resume a stored session at startup.

        A network failure keeps the stored identity; a rejected token goes
        through the refresh policy.
        """
        credentials = self.store.load()
        if credentials is None:
            self._state = AuthState.UNAUTHENTICATED
            return self.status.clear_identity()

        self._state = AuthState.AUTHENTICATED
        self.status.set_identity(
            True,
            user_email=credentials.user_email,
            network_id=credentials.network_id,
            network_name=credentials.network_name,
        )
        try:
            await self.cloud.verify()
        except AuthError as e:
            logger.warning(f"Stored session is no longer valid: {e}")
        except CloudError as e:
            logger.warning(f"Could not verify stored session, continuing offline: {e}")
        return self.status.snapshot()

    async def logout(self) -> AgentStatus:
        """Cancel sessions, forget credentials and identity."""
        if self.on_logout is not None:
            await self.on_logout()
        self.store.clear()
        self._state = AuthState.UNAUTHENTICATED
        self._pending = None
        logger.info("Logged out")
        return self.status.clear_identity()

    async def handle_auth_lost(self) -> None:
        """Forced transition to Unauthenticated after a failed refresh."""
        self.store.clear()
        self._state = AuthState.UNAUTHENTICATED
        self.status.clear_identity()
        logger.warning("Session expired; login required")
