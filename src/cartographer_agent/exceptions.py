"""
Exceptions raised by the Cartographer agent.

Per-target failures (a single probe or hostname lookup) are absorbed by the
engines and never reach callers. Everything that does propagate derives from
AgentError so the CLI and scheduler can catch one base type.
"""


class AgentError(Exception):
    """Base exception for agent errors."""


# ---------------------------------------------------------------------------
# Discovery
# ---------------------------------------------------------------------------

class NetworkUnavailable(AgentError):
    """No usable IPv4 interface or subnet could be determined."""


class PermissionDenied(AgentError):
    """The OS refused access to a discovery source (e.g. the ARP table)."""


class ProbeTimeout(AgentError):
    """A reachability probe did not answer within its timeout."""


class HostnameResolutionFailed(AgentError):
    """Reverse name lookup failed for a single address."""


class SubscriptionClosed(AgentError):
    """A progress subscription was closed while a consumer waited on it."""


class CancellationRequested(AgentError):
    """A session observed its cancel token and stopped."""


class ScanCancelled(CancellationRequested):
    """A discovery session was cancelled before completion."""


# ---------------------------------------------------------------------------
# Scheduling
# ---------------------------------------------------------------------------

class SessionInProgress(AgentError):
    """A session of the same kind is already running."""


class ScanInProgress(SessionInProgress):
    """A scan was requested while another scan is running."""


class HealthCheckInProgress(SessionInProgress):
    """A health check was requested while another one is running."""


# ---------------------------------------------------------------------------
# Authentication
# ---------------------------------------------------------------------------

class AuthError(AgentError):
    """Base class for authentication failures."""


class AuthDenied(AuthError):
    """The user rejected the login request."""


class AuthExpired(AuthError):
    """The login window or the stored session expired."""


class NotAuthenticated(AuthError):
    """An authenticated operation was attempted without credentials."""


# ---------------------------------------------------------------------------
# Cloud
# ---------------------------------------------------------------------------

class CloudError(AgentError):
    """Base class for cloud sync failures."""


class CloudUnreachable(CloudError):
    """The cloud endpoint could not be reached."""


class CloudAuthError(CloudError):
    """The cloud rejected the presented token (HTTP 401/403)."""

    def __init__(self, message: str, status: int = 401):
        super().__init__(message)
        self.status = status


class CloudProtocolError(CloudError):
    """The cloud returned an unexpected status or payload."""

    def __init__(self, message: str, status: int = 0):
        super().__init__(message)
        self.status = status
