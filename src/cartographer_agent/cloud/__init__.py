"""Cloud sync for the Cartographer agent."""

from .client import CloudClient, create_secure_ssl_context
from .gateway import CloudGateway

__all__ = ["CloudClient", "CloudGateway", "create_secure_ssl_context"]
