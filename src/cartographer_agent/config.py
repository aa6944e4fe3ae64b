"""
Configuration management for the Cartographer agent.

Settings are layered: built-in defaults, then an optional YAML file, then
environment variables. Validates all settings and provides typed access.
"""

import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator

logger = logging.getLogger(__name__)

DEFAULT_CLOUD_URL = "https://cartographer.network/api"
DEFAULT_DASHBOARD_URL = "https://cartographer.network"
DEFAULT_CONFIG_PATH = Path.home() / ".config" / "cartographer" / "config.yaml"

# Scan intervals the scheduler accepts, in minutes
ALLOWED_SCAN_INTERVALS = (1, 5, 10, 15, 30, 60)


def _default_state_dir() -> Path:
    xdg = os.environ.get("XDG_DATA_HOME")
    base = Path(xdg) if xdg else Path.home() / ".local" / "share"
    return base / "cartographer-agent"


class AgentConfig(BaseModel):
    """Agent configuration loaded from defaults, YAML and environment."""

    # ========================================================================
    # Cloud
    # ========================================================================

    cloud_api_url: str = Field(
        default=DEFAULT_CLOUD_URL,
        description="Base URL of the Cartographer cloud API"
    )
    dashboard_url: str = Field(
        default=DEFAULT_DASHBOARD_URL,
        description="Base URL of the web dashboard"
    )
    request_timeout: int = Field(
        default=30, ge=1, le=300,
        description="HTTP request timeout in seconds"
    )
    max_retries: int = Field(
        default=3, ge=1, le=10,
        description="Attempts per cloud request before giving up"
    )

    # ========================================================================
    # Storage
    # ========================================================================

    state_dir: Path = Field(
        default_factory=_default_state_dir,
        description="Directory for the state database and credentials"
    )

    # ========================================================================
    # Discovery
    # ========================================================================

    probe_timeout: float = Field(
        default=1.0, gt=0, le=30,
        description="Per-probe reachability timeout in seconds"
    )
    probe_workers: int = Field(
        default=32, ge=1, le=256,
        description="Concurrent probes in flight during a sweep"
    )
    tcp_probe_ports: List[int] = Field(
        default_factory=lambda: [80, 443, 22, 445],
        description="Ports tried when ICMP gets no answer"
    )
    hostname_timeout: float = Field(
        default=1.5, gt=0, le=30,
        description="Per-device reverse lookup timeout in seconds"
    )
    hostname_workers: int = Field(
        default=32, ge=1, le=256,
        description="Concurrent hostname lookups"
    )
    max_sweep_hosts: int = Field(
        default=4096, ge=1, le=65536,
        description="Upper bound on addresses probed in one sweep"
    )

    # ========================================================================
    # Health checks
    # ========================================================================

    degraded_threshold_ms: float = Field(
        default=100.0, gt=0,
        description="Latency above which a reachable device is degraded"
    )

    # ========================================================================
    # Logging
    # ========================================================================

    log_level: str = Field(default="INFO", description="Logging level")

    # Where the effective settings came from (default, config_file, environment)
    source: str = Field(default="default", description="Settings origin")

    # ========================================================================
    # Validators
    # ========================================================================

    @field_validator('cloud_api_url', 'dashboard_url')
    @classmethod
    def validate_url(cls, v):
        if not v.startswith(('http://', 'https://')):
            raise ValueError(f'URL must start with http:// or https://: {v}')
        return v.rstrip('/')

    @field_validator('tcp_probe_ports')
    @classmethod
    def validate_ports(cls, v):
        for port in v:
            if not 0 < port < 65536:
                raise ValueError(f'Invalid TCP port: {port}')
        return v

    @field_validator('log_level')
    @classmethod
    def validate_log_level(cls, v):
        v = v.upper()
        if v not in ['DEBUG', 'INFO', 'WARNING', 'ERROR']:
            raise ValueError('log_level must be DEBUG, INFO, WARNING, or ERROR')
        return v

    @field_validator('state_dir')
    @classmethod
    def expand_state_dir(cls, v):
        return Path(v).expanduser()

    # ========================================================================
    # Parsed Properties
    # ========================================================================

    @property
    def db_path(self) -> Path:
        """SQLite state database path."""
        return self.state_dir / 'agent.db'

    @property
    def credentials_dir(self) -> Path:
        return self.state_dir / 'credentials'

    def dashboard_link(self, network_id: Optional[str] = None) -> str:
        if network_id:
            return f"{self.dashboard_url}/networks/{network_id}"
        return self.dashboard_url

    model_config = ConfigDict(
        validate_assignment=True,
        extra='forbid'
    )


class ScheduleConfig(BaseModel):
    """User preferences that drive the scheduler."""

    interval_minutes: int = Field(
        default=5,
        description="Minutes between scheduled scans"
    )
    health_check_interval_seconds: int = Field(
        default=60, ge=0, le=86400,
        description="Seconds between periodic health checks (0 disables)"
    )
    notifications_enabled: bool = Field(
        default=True,
        description="Whether desktop notifications are wanted"
    )

    @field_validator('interval_minutes')
    @classmethod
    def validate_interval(cls, v):
        if v not in ALLOWED_SCAN_INTERVALS:
            allowed = ', '.join(str(i) for i in ALLOWED_SCAN_INTERVALS)
            raise ValueError(f'interval_minutes must be one of {allowed}')
        return v

    model_config = ConfigDict(validate_assignment=True, extra='forbid')


# Environment variable -> (field, converter)
_ENV_MAP = {
    'CARTOGRAPHER_CLOUD_URL': ('cloud_api_url', str),
    'CARTOGRAPHER_DASHBOARD_URL': ('dashboard_url', str),
    'CARTOGRAPHER_STATE_DIR': ('state_dir', Path),
    'CARTOGRAPHER_LOG_LEVEL': ('log_level', str),
    'CARTOGRAPHER_PROBE_TIMEOUT': ('probe_timeout', float),
    'CARTOGRAPHER_PROBE_WORKERS': ('probe_workers', int),
    'CARTOGRAPHER_REQUEST_TIMEOUT': ('request_timeout', int),
}


def _load_yaml(path: Path) -> Dict[str, Any]:
    with open(path) as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError(f"Config file {path} must contain a mapping")
    return data


def load_config(path: Optional[Path] = None) -> AgentConfig:
    """
    Load configuration from YAML file and environment variables.

    Environment variables override values from the file, which override
    built-in defaults.

    Args:
        path: Explicit config file. Defaults to $CARTOGRAPHER_CONFIG or
            ~/.config/cartographer/config.yaml when present.

    Returns:
        AgentConfig: Validated configuration

    Raises:
        ValueError: If a setting is invalid
    """
    config_dict: Dict[str, Any] = {}
    source = 'default'

    if path is None and os.environ.get('CARTOGRAPHER_CONFIG'):
        path = Path(os.environ['CARTOGRAPHER_CONFIG'])
    if path is None and DEFAULT_CONFIG_PATH.exists():
        path = DEFAULT_CONFIG_PATH

    if path is not None:
        config_dict.update(_load_yaml(Path(path)))
        source = 'config_file'

    for env_var, (field_name, convert) in _ENV_MAP.items():
        value = os.environ.get(env_var)
        if value:
            config_dict[field_name] = convert(value)
            source = 'environment'

    config_dict['source'] = source
    config = AgentConfig(**config_dict)
    logger.debug(f"Loaded config from {source}: api={config.cloud_api_url}")
    return config
