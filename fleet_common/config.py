"""
Configuration helpers.

Every setting is resolved in priority order: command line argument,
environment variable, the ``config`` file in the data directory, then a
built-in default.

Environment Variables:
    FLEET_API_URL: Cloud API base URL (default: https://api.balena-cloud.com)
    FLEET_API_TOKEN: Cloud API session or API token
    FLEET_DATA_DIR: Data directory for config, cache and secrets (default: ~/.fleet)
    FLEET_BUILDER_URL: Legacy builder base URL (default: derived from the API URL)
    FLEET_API_RETRY_MIN_DELAY_MS: Minimum retry backoff (default: 1000)
    FLEET_API_RETRY_MAX_DELAY_MS: Maximum retry backoff (default: 60000)
    FLEET_API_RETRY_MAX_ATTEMPTS: Maximum attempts per API call (default: 7)
    FLEET_DEVICE_TIMEOUT: Device API timeout in seconds (default: 30)
    FLEET_DEBOUNCE_SECONDS: Livepush file-change debounce (default: 2.0)
    FLEET_SETTLE_INTERVAL: Device state polling interval (default: 1.0)

Config file format (~/.fleet/config):
    api_url=https://api.example.com
    api_token=abc123...
"""

import os
from dataclasses import dataclass
from pathlib import Path
from urllib.parse import urlparse

DEFAULT_API_URL = "https://api.balena-cloud.com"


def get_data_dir() -> Path:
    """Get the data directory from environment variable or default."""
    return Path(os.environ.get("FLEET_DATA_DIR", str(Path.home() / ".fleet")))


def read_config_value(key: str) -> str | None:
    """
    Read a ``key=value`` entry from the config file.

    Args:
        key: Entry name

    Returns:
        The value if the file exists and contains the key, None otherwise
    """
    config_path = get_data_dir() / "config"
    if not config_path.exists():
        return None
    try:
        content = config_path.read_text()
    except OSError:
        return None
    prefix = f"{key}="
    for line in content.splitlines():
        line = line.strip()
        if line.startswith(prefix):
            return line[len(prefix) :].strip()
    return None


def get_api_url(cli_arg: str | None = None) -> str:
    """Get the cloud API URL."""
    if cli_arg:
        return cli_arg.rstrip("/")
    env_url = os.environ.get("FLEET_API_URL")
    if env_url:
        return env_url.rstrip("/")
    return (read_config_value("api_url") or DEFAULT_API_URL).rstrip("/")


def get_api_token(cli_arg: str | None = None) -> str | None:
    """
    Get the cloud API token from multiple sources in priority order.

    Priority (highest to lowest):
    1. Command line argument (--token)
    2. Environment variable (FLEET_API_TOKEN)
    3. Config file (~/.fleet/config)
    """
    if cli_arg:
        return cli_arg
    env_token = os.environ.get("FLEET_API_TOKEN")
    if env_token:
        return env_token
    return read_config_value("api_token")


def get_builder_url(api_url: str | None = None) -> str:
    """
    Get the legacy builder URL.

    Defaults to the API host with its first label replaced by ``builder``,
    e.g. https://api.example.com -> https://builder.example.com.
    """
    env_url = os.environ.get("FLEET_BUILDER_URL")
    if env_url:
        return env_url.rstrip("/")
    parsed = urlparse(api_url or get_api_url())
    host = parsed.hostname or ""
    domain = host.split(".", 1)[1] if host.count(".") >= 2 else host
    return f"{parsed.scheme or 'https'}://builder.{domain}"


def get_device_timeout() -> float:
    return float(os.environ.get("FLEET_DEVICE_TIMEOUT", "30"))


def get_debounce_seconds() -> float:
    return float(os.environ.get("FLEET_DEBOUNCE_SECONDS", "2.0"))


def get_settle_interval() -> float:
    return float(os.environ.get("FLEET_SETTLE_INTERVAL", "1.0"))


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded exponential backoff settings for cloud API calls."""

    min_delay_ms: int = 1000
    max_delay_ms: int = 60000
    max_attempts: int = 7

    @classmethod
    def from_env(cls) -> "RetryPolicy":
        """Build a policy from FLEET_API_RETRY_* variables, falling back to defaults."""
        return cls(
            min_delay_ms=int(os.environ.get("FLEET_API_RETRY_MIN_DELAY_MS", "1000")),
            max_delay_ms=int(os.environ.get("FLEET_API_RETRY_MAX_DELAY_MS", "60000")),
            max_attempts=int(os.environ.get("FLEET_API_RETRY_MAX_ATTEMPTS", "7")),
        )
