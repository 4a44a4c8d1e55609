"""Engine settings loaded from the environment.

Resource limits of the enrichment engine are sized once, at start-up:
- worker pool shared by every enrichment call in the process
- shared deadline for one call's endpoint fetches
- HTTP connection pool and per-phase timeouts
- location of the SQLite attribute store

Invalid values fail start-up with EngineSettingsError.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Final

logger = logging.getLogger(__name__)

ENV_WORKER_POOL_SIZE: Final[str] = "RESTCLAIM_WORKER_POOL_SIZE"
ENV_FETCH_DEADLINE_SECONDS: Final[str] = "RESTCLAIM_FETCH_DEADLINE_SECONDS"
ENV_HTTP_CONNECT_TIMEOUT_SECONDS: Final[str] = "RESTCLAIM_HTTP_CONNECT_TIMEOUT_SECONDS"
ENV_HTTP_READ_TIMEOUT_SECONDS: Final[str] = "RESTCLAIM_HTTP_READ_TIMEOUT_SECONDS"
ENV_HTTP_MAX_CONNECTIONS: Final[str] = "RESTCLAIM_HTTP_MAX_CONNECTIONS"
ENV_HTTP_MAX_KEEPALIVE_CONNECTIONS: Final[str] = "RESTCLAIM_HTTP_MAX_KEEPALIVE_CONNECTIONS"
ENV_ATTRIBUTE_DB_PATH: Final[str] = "RESTCLAIM_ATTRIBUTE_DB_PATH"

DEFAULT_WORKER_POOL_SIZE: Final[int] = 16
DEFAULT_FETCH_DEADLINE_SECONDS: Final[float] = 10.0
DEFAULT_HTTP_CONNECT_TIMEOUT_SECONDS: Final[float] = 5.0
DEFAULT_HTTP_READ_TIMEOUT_SECONDS: Final[float] = 10.0
DEFAULT_HTTP_MAX_CONNECTIONS: Final[int] = 50
DEFAULT_HTTP_MAX_KEEPALIVE_CONNECTIONS: Final[int] = 10
DEFAULT_ATTRIBUTE_DB_PATH: Final[str] = "./var/attributes/attributes.sqlite3"


class EngineSettingsError(Exception):
    """Raised when engine settings are invalid."""


@dataclass(frozen=True)
class EngineSettings:
    """Engine resource limits (immutable).

    Attributes:
        worker_pool_size: Maximum concurrent endpoint fetches, process-wide.
        fetch_deadline_seconds: Ceiling on one call's wait for its fetches.
        http_connect_timeout_seconds: TCP/TLS connect timeout.
        http_read_timeout_seconds: Response read timeout.
        http_max_connections: Connection pool size.
        http_max_keepalive_connections: Idle connections kept open.
        attribute_db_path: SQLite file backing the attribute store.
    """

    worker_pool_size: int = DEFAULT_WORKER_POOL_SIZE
    fetch_deadline_seconds: float = DEFAULT_FETCH_DEADLINE_SECONDS
    http_connect_timeout_seconds: float = DEFAULT_HTTP_CONNECT_TIMEOUT_SECONDS
    http_read_timeout_seconds: float = DEFAULT_HTTP_READ_TIMEOUT_SECONDS
    http_max_connections: int = DEFAULT_HTTP_MAX_CONNECTIONS
    http_max_keepalive_connections: int = DEFAULT_HTTP_MAX_KEEPALIVE_CONNECTIONS
    attribute_db_path: str = DEFAULT_ATTRIBUTE_DB_PATH

    def __post_init__(self) -> None:
        """Validate settings values."""
        for name in (
            "worker_pool_size",
            "fetch_deadline_seconds",
            "http_connect_timeout_seconds",
            "http_read_timeout_seconds",
            "http_max_connections",
        ):
            value = getattr(self, name)
            if value <= 0:
                raise EngineSettingsError(f"{name} must be positive, got {value}")
        if self.http_max_keepalive_connections < 0:
            raise EngineSettingsError(
                "http_max_keepalive_connections must not be negative, "
                f"got {self.http_max_keepalive_connections}"
            )


def _parse_positive_int(env_var: str, default: int) -> int:
    raw = os.environ.get(env_var)
    if raw is None or not raw.strip():
        return default

    try:
        value = int(raw.strip())
    except ValueError as e:
        raise EngineSettingsError(f"{env_var} must be a positive integer, got '{raw}'") from e

    if value <= 0:
        raise EngineSettingsError(f"{env_var} must be a positive integer, got {value}")
    return value


def _parse_positive_float(env_var: str, default: float) -> float:
    raw = os.environ.get(env_var)
    if raw is None or not raw.strip():
        return default

    try:
        value = float(raw.strip())
    except ValueError as e:
        raise EngineSettingsError(f"{env_var} must be a positive number, got '{raw}'") from e

    if value <= 0:
        raise EngineSettingsError(f"{env_var} must be a positive number, got {value}")
    return value


def load_engine_settings() -> EngineSettings:
    """Load engine settings from environment variables.

    Environment variables:
        RESTCLAIM_WORKER_POOL_SIZE: Worker threads (default: 16)
        RESTCLAIM_FETCH_DEADLINE_SECONDS: Shared fetch deadline (default: 10)
        RESTCLAIM_HTTP_CONNECT_TIMEOUT_SECONDS: Connect timeout (default: 5)
        RESTCLAIM_HTTP_READ_TIMEOUT_SECONDS: Read timeout (default: 10)
        RESTCLAIM_HTTP_MAX_CONNECTIONS: Connection pool size (default: 50)
        RESTCLAIM_HTTP_MAX_KEEPALIVE_CONNECTIONS: Keep-alive pool (default: 10)
        RESTCLAIM_ATTRIBUTE_DB_PATH: SQLite attribute store path

    Returns:
        EngineSettings with validated values.

    Raises:
        EngineSettingsError: If any value is invalid.
    """
    settings = EngineSettings(
        worker_pool_size=_parse_positive_int(ENV_WORKER_POOL_SIZE, DEFAULT_WORKER_POOL_SIZE),
        fetch_deadline_seconds=_parse_positive_float(
            ENV_FETCH_DEADLINE_SECONDS, DEFAULT_FETCH_DEADLINE_SECONDS
        ),
        http_connect_timeout_seconds=_parse_positive_float(
            ENV_HTTP_CONNECT_TIMEOUT_SECONDS, DEFAULT_HTTP_CONNECT_TIMEOUT_SECONDS
        ),
        http_read_timeout_seconds=_parse_positive_float(
            ENV_HTTP_READ_TIMEOUT_SECONDS, DEFAULT_HTTP_READ_TIMEOUT_SECONDS
        ),
        http_max_connections=_parse_positive_int(
            ENV_HTTP_MAX_CONNECTIONS, DEFAULT_HTTP_MAX_CONNECTIONS
        ),
        http_max_keepalive_connections=_parse_positive_int(
            ENV_HTTP_MAX_KEEPALIVE_CONNECTIONS, DEFAULT_HTTP_MAX_KEEPALIVE_CONNECTIONS
        ),
        attribute_db_path=os.environ.get(ENV_ATTRIBUTE_DB_PATH, DEFAULT_ATTRIBUTE_DB_PATH),
    )
    logger.debug("Loaded engine settings: %s", settings)
    return settings
