"""Authentication for the Cartographer agent."""

from .device_flow import AuthState, DeviceCodeAuth
from .session import AuthenticatedCloud

__all__ = ["AuthState", "DeviceCodeAuth", "AuthenticatedCloud"]
