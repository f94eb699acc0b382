"""
Server configuration for the API server.

Defines all configuration parameters read at startup. Values come from the
process environment, with the defaults below when a variable is unset.
"""

import os
import json
import logging
from dataclasses import dataclass, fields
from typing import Optional, Dict, Any, Mapping

from apiserver.errors import ConfigError


DEFAULT_PORT = 3012

# Environment variable -> config field
ENV_VARS = {
    'PORT': 'port',
    'HOST': 'host',
    'DATABASE_PATH': 'database_path',
    'WAIT_FOR_DATABASE': 'wait_for_database',
    'DB_CONNECT_TIMEOUT': 'db_connect_timeout',
    'DB_RETRY_ATTEMPTS': 'db_retry_attempts',
    'DB_RETRY_DELAY': 'db_retry_delay',
    'STARTUP_TIMEOUT': 'startup_timeout',
    'LOG_LEVEL': 'log_level',
}

_TRUE_VALUES = {'1', 'true', 'yes', 'on'}
_FALSE_VALUES = {'0', 'false', 'no', 'off'}


def _parse_bool(name: str, raw: str) -> bool:
    value = raw.strip().lower()
    if value in _TRUE_VALUES:
        return True
    if value in _FALSE_VALUES:
        return False
    raise ConfigError(f"{name} must be a boolean (true/false), got {raw!r}")


def _parse_int(name: str, raw: str) -> int:
    try:
        return int(raw.strip())
    except ValueError:
        raise ConfigError(f"{name} must be an integer, got {raw!r}") from None


def _parse_float(name: str, raw: str) -> float:
    try:
        return float(raw.strip())
    except ValueError:
        raise ConfigError(f"{name} must be a number, got {raw!r}") from None


@dataclass
class ServerConfig:
    """
    Configuration for the API server process.

    This includes the network binding, the storage location and the
    startup policy deciding how storage and listener readiness are ordered.
    """

    # Network settings
    port: int = DEFAULT_PORT
    host: str = "0.0.0.0"

    # Storage
    database_path: str = "apiserver.db"
    db_connect_timeout: float = 10.0  # seconds per attempt
    db_retry_attempts: int = 3
    db_retry_delay: float = 1.0  # base delay, doubled per attempt

    # Startup policy
    wait_for_database: bool = True  # bind only after storage is connected
    startup_timeout: Optional[float] = None  # seconds until listener must be ready

    # Logging
    log_level: str = "INFO"  # DEBUG, INFO, WARNING, ERROR

    def __post_init__(self):
        """Validate configuration values."""
        if isinstance(self.port, bool) or not isinstance(self.port, int):
            raise ConfigError(f"PORT must be an integer, got {self.port!r}")
        if not 0 < self.port < 65536:
            raise ConfigError(f"PORT must be between 1 and 65535, got {self.port}")

        if not self.host:
            raise ConfigError("HOST must not be empty")

        if not self.database_path:
            raise ConfigError("DATABASE_PATH must not be empty")

        if self.db_connect_timeout <= 0:
            raise ConfigError(
                f"DB_CONNECT_TIMEOUT must be positive, got {self.db_connect_timeout}"
            )
        if self.db_retry_attempts < 1:
            raise ConfigError(
                f"DB_RETRY_ATTEMPTS must be at least 1, got {self.db_retry_attempts}"
            )
        if self.db_retry_delay < 0:
            raise ConfigError(
                f"DB_RETRY_DELAY must not be negative, got {self.db_retry_delay}"
            )

        if self.startup_timeout is not None and self.startup_timeout <= 0:
            raise ConfigError(
                f"STARTUP_TIMEOUT must be positive, got {self.startup_timeout}"
            )

        self.log_level = self.log_level.upper()
        if not isinstance(logging.getLevelName(self.log_level), int):
            raise ConfigError(f"LOG_LEVEL is not a known level: {self.log_level!r}")

    def to_dict(self) -> Dict[str, Any]:
        """
        Convert config to dictionary.

        Returns:
            Configuration as dictionary
        """
        return {f.name: getattr(self, f.name) for f in fields(self)}

    @classmethod
    def from_dict(cls, config_dict: Dict[str, Any]) -> 'ServerConfig':
        """
        Create config from dictionary.

        Args:
            config_dict: Configuration dictionary

        Returns:
            ServerConfig instance

        Raises:
            ConfigError: If a key is unknown or a value is invalid
        """
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(config_dict) - known)
        if unknown:
            raise ConfigError(f"Unknown configuration keys: {', '.join(unknown)}")
        return cls(**config_dict)

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> 'ServerConfig':
        """
        Load config from environment variables.

        Unset or empty variables keep their defaults.

        Args:
            environ: Mapping to read from (default: os.environ)

        Returns:
            ServerConfig instance

        Raises:
            ConfigError: If a variable holds an invalid value
        """
        if environ is None:
            environ = os.environ

        values: Dict[str, Any] = {}
        for name, field_name in ENV_VARS.items():
            raw = environ.get(name)
            if raw is None or raw.strip() == "":
                continue

            if field_name in ('port', 'db_retry_attempts'):
                values[field_name] = _parse_int(name, raw)
            elif field_name in ('db_connect_timeout', 'db_retry_delay', 'startup_timeout'):
                values[field_name] = _parse_float(name, raw)
            elif field_name == 'wait_for_database':
                values[field_name] = _parse_bool(name, raw)
            else:
                values[field_name] = raw.strip()

        return cls.from_dict(values)

    @classmethod
    def from_json_file(cls, path: str) -> 'ServerConfig':
        """
        Load config from JSON file.

        Args:
            path: Path to JSON config file

        Returns:
            ServerConfig instance
        """
        with open(path, 'r') as f:
            config_dict = json.load(f)
        return cls.from_dict(config_dict)

    def __repr__(self) -> str:
        """String representation."""
        return (
            f"ServerConfig(host='{self.host}', port={self.port}, "
            f"database='{self.database_path}', "
            f"wait_for_database={self.wait_for_database})"
        )
