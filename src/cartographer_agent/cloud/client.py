"""
Cartographer cloud API client.

Provides endpoints for:
- Device-code login (request code, poll for token, refresh, verify)
- Scan result upload
- Health check upload

Connection failures are retried with exponential backoff and then surface as
CloudUnreachable. HTTP 401/403 surface as CloudAuthError so the
authentication layer can refresh the session.
"""

from __future__ import annotations

import asyncio
import logging
import socket
import ssl
from datetime import timedelta
from typing import Any, Dict, Optional

import aiohttp

from .. import __version__
from .._types import (
    Credentials,
    HealthCheckResult,
    LoginFlowResponse,
    ScanResult,
    SyncResult,
    TokenResult,
    TokenStatus,
    now_utc,
)
from ..exceptions import CloudAuthError, CloudProtocolError, CloudUnreachable

logger = logging.getLogger(__name__)

DEVICE_CODE_GRANT = "urn:ietf:params:oauth:grant-type:device_code"

# RFC 8628 error codes returned while polling
_POLL_ERRORS = {
    "authorization_pending": TokenStatus.PENDING,
    "slow_down": TokenStatus.SLOW_DOWN,
    "access_denied": TokenStatus.DENIED,
    "expired_token": TokenStatus.EXPIRED,
}


def create_secure_ssl_context() -> ssl.SSLContext:
    """TLS 1.2+ context with certificate and hostname verification."""
    ctx = ssl.create_default_context()
    ctx.minimum_version = ssl.TLSVersion.TLSv1_2
    ctx.check_hostname = True
    ctx.verify_mode = ssl.CERT_REQUIRED
    return ctx


def _credentials_from(data: Dict[str, Any], fallback: Optional[Credentials] = None) -> Credentials:
    expires_at = None
    if data.get("expires_in"):
        expires_at = now_utc() + timedelta(seconds=int(data["expires_in"]))
    network_id = data.get("network_id") or (fallback.network_id if fallback else None)
    if not data.get("access_token") or not network_id:
        raise CloudProtocolError("Token response missing access_token or network_id")
    return Credentials(
        access_token=data["access_token"],
        network_id=str(network_id),
        network_name=data.get("network_name") or (fallback.network_name if fallback else None),
        user_email=data.get("user_email") or (fallback.user_email if fallback else None),
        refresh_token=data.get("refresh_token") or (fallback.refresh_token if fallback else None),
        expires_at=expires_at,
    )


class CloudClient:
    """
    HTTP client for the Cartographer cloud API.

    Authenticated calls take the bearer token explicitly; this client keeps
    no credentials of its own.
    """

    def __init__(
        self,
        base_url: str,
        max_retries: int = 3,
        timeout: int = 30,
        backoff_base: float = 1.0,
    ):
        """
        Initialize cloud client.

        Args:
            base_url: API base URL (e.g. https://cartographer.network/api)
            max_retries: Maximum attempts per request
            timeout: Request timeout in seconds
            backoff_base: First retry delay; doubles on each attempt
        """
        self.base_url = base_url.rstrip("/")
        self.max_retries = max_retries
        self.timeout = aiohttp.ClientTimeout(total=timeout)
        self.backoff_base = backoff_base
        self._session: Optional[aiohttp.ClientSession] = None

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create aiohttp session with TLS 1.2+ enforcement."""
        if self._session is None or self._session.closed:
            connector = aiohttp.TCPConnector(ssl=create_secure_ssl_context())
            self._session = aiohttp.ClientSession(
                connector=connector,
                timeout=self.timeout,
                headers={
                    "User-Agent": f"cartographer-agent/{__version__}",
                    "Content-Type": "application/json",
                },
            )
        return self._session

    async def close(self) -> None:
        """Close the client session."""
        if self._session and not self._session.closed:
            await self._session.close()

    async def _request(
        self,
        method: str,
        endpoint: str,
        json_data: Optional[Dict] = None,
        access_token: Optional[str] = None,
    ) -> tuple[int, Dict[str, Any]]:
        """
        Make HTTP request with retry logic.

        Returns:
            Tuple of (status_code, response_json)

        Raises:
            CloudUnreachable: If every attempt failed to connect
            CloudAuthError: On HTTP 401/403
        """
        url = f"{self.base_url}{endpoint}"
        headers = {"Authorization": f"Bearer {access_token}"} if access_token else None
        session = await self._get_session()
        last_error: Optional[Exception] = None

        for attempt in range(self.max_retries):
            try:
                async with session.request(method, url, json=json_data, headers=headers) as response:
                    try:
                        data = await response.json(content_type=None)
                    except ValueError:
                        data = {"error": await response.text()}
                    if not isinstance(data, dict):
                        data = {"data": data}

                    if response.status in (401, 403):
                        raise CloudAuthError(
                            f"{method} {endpoint} rejected: {data.get('error', response.status)}",
                            status=response.status,
                        )
                    return response.status, data

            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                last_error = e
                logger.warning(f"Request failed (attempt {attempt + 1}/{self.max_retries}): {e}")
                if attempt < self.max_retries - 1:
                    await asyncio.sleep(self.backoff_base * (2 ** attempt))

        logger.error(f"All retries failed for {method} {endpoint}: {last_error}")
        raise CloudUnreachable(f"{method} {endpoint}: {last_error}")

    # =========================================================================
    # Authentication
    # =========================================================================

    async def request_device_code(self) -> LoginFlowResponse:
        """Start a device-code login."""
        status, data = await self._request("POST", "/auth/device", {
            "client_name": socket.gethostname(),
            "agent_version": __version__,
        })
        if status not in (200, 201):
            raise CloudProtocolError(f"Device code request failed: {data.get('error', status)}", status)
        try:
            return LoginFlowResponse(
                verification_url=data.get("verification_uri") or data["verification_url"],
                user_code=data["user_code"],
                device_code=data["device_code"],
                expires_in=int(data["expires_in"]),
                poll_interval=int(data.get("interval") or data.get("poll_interval") or 5),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise CloudProtocolError(f"Malformed device code response: {e}") from e

    async def poll_token(self, device_code: str) -> TokenResult:
        """Poll once for the token of a pending device-code login."""
        try:
            status, data = await self._request("POST", "/auth/token", {
                "device_code": device_code,
                "grant_type": DEVICE_CODE_GRANT,
            })
        except CloudAuthError as e:
            return TokenResult(status=TokenStatus.DENIED, message=str(e))

        if status == 200:
            return TokenResult(status=TokenStatus.GRANTED, credentials=_credentials_from(data))

        error = data.get("error")
        token_status = _POLL_ERRORS.get(error) if isinstance(error, str) else None
        if token_status is None:
            raise CloudProtocolError(f"Unexpected token response {status}: {error}", status)
        return TokenResult(status=token_status, message=data.get("error_description"))

    async def refresh_token(self, credentials: Credentials) -> Credentials:
        """
        Exchange a refresh token for a new access token.

        Raises:
            CloudAuthError: If there is no refresh token or it was rejected
        """
        if not credentials.refresh_token:
            raise CloudAuthError("No refresh token available")
        status, data = await self._request("POST", "/auth/refresh", {
            "refresh_token": credentials.refresh_token,
        })
        if status in (400, 404):
            raise CloudAuthError(f"Refresh rejected: {data.get('error', status)}", status=status)
        if status != 200:
            raise CloudProtocolError(f"Refresh failed: {data.get('error', status)}", status)
        return _credentials_from(data, fallback=credentials)

    async def verify_token(self, access_token: str) -> Dict[str, Any]:
        """Check that an access token is still valid; returns identity info."""
        status, data = await self._request("GET", "/auth/verify", access_token=access_token)
        if status != 200:
            raise CloudProtocolError(f"Token verification failed: {data.get('error', status)}", status)
        return data

    # =========================================================================
    # Uploads
    # =========================================================================

    async def upload_scan(self, access_token: str, network_id: str, result: ScanResult) -> SyncResult:
        """Upload the device list of a completed scan."""
        payload = {
            "timestamp": result.completed_at.isoformat(),
            "scan_duration_ms": int(result.duration_seconds * 1000),
            "network_info": result.network_info.to_dict(),
            "devices": [d.to_dict() for d in result.devices],
        }
        status, data = await self._request(
            "POST", f"/networks/{network_id}/scans", payload, access_token=access_token
        )
        return self._sync_result("Scan upload", status, data)

    async def upload_health(self, access_token: str, network_id: str, result: HealthCheckResult) -> SyncResult:
        """Upload per-device health results."""
        payload = {
            "timestamp": result.completed_at.isoformat(),
            **result.to_dict(),
        }
        status, data = await self._request(
            "POST", f"/networks/{network_id}/health", payload, access_token=access_token
        )
        return self._sync_result("Health upload", status, data)

    @staticmethod
    def _sync_result(what: str, status: int, data: Dict[str, Any]) -> SyncResult:
        if status not in (200, 201, 202):
            raise CloudProtocolError(f"{what} failed: {data.get('error', status)}", status)
        logger.info(f"{what} accepted ({status})")
        return SyncResult(accepted=True, message=data.get("message"))
