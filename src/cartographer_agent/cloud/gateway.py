"""
Cloud sync interface.

The agent talks to the cloud only through this protocol, so tests and the
authentication layer can substitute their own implementation.
"""

from __future__ import annotations

from typing import Any, Protocol

from .._types import (
    Credentials,
    HealthCheckResult,
    LoginFlowResponse,
    ScanResult,
    SyncResult,
    TokenResult,
)


class CloudGateway(Protocol):
    """Operations the agent needs from the Cartographer cloud."""

    async def request_device_code(self) -> LoginFlowResponse:
        ...

    async def poll_token(self, device_code: str) -> TokenResult:
        ...

    async def refresh_token(self, credentials: Credentials) -> Credentials:
        ...

    async def verify_token(self, access_token: str) -> dict[str, Any]:
        ...

    async def upload_scan(self, access_token: str, network_id: str, result: ScanResult) -> SyncResult:
        ...

    async def upload_health(self, access_token: str, network_id: str, result: HealthCheckResult) -> SyncResult:
        ...

    async def close(self) -> None:
        ...
