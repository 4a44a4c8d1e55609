"""Pytest configuration and fixtures for restclaim tests.

This module provides common fixtures and configuration for all tests.
"""

from __future__ import annotations

from collections.abc import Iterator
from concurrent.futures import ThreadPoolExecutor

import pytest

from restclaim.services.enrichment.orchestrator import create_worker_pool
from restclaim.settings import (
    ENV_ATTRIBUTE_DB_PATH,
    ENV_FETCH_DEADLINE_SECONDS,
    ENV_HTTP_CONNECT_TIMEOUT_SECONDS,
    ENV_HTTP_MAX_CONNECTIONS,
    ENV_HTTP_MAX_KEEPALIVE_CONNECTIONS,
    ENV_HTTP_READ_TIMEOUT_SECONDS,
    ENV_WORKER_POOL_SIZE,
)

_SETTINGS_ENV_VARS = (
    ENV_ATTRIBUTE_DB_PATH,
    ENV_FETCH_DEADLINE_SECONDS,
    ENV_HTTP_CONNECT_TIMEOUT_SECONDS,
    ENV_HTTP_MAX_CONNECTIONS,
    ENV_HTTP_MAX_KEEPALIVE_CONNECTIONS,
    ENV_HTTP_READ_TIMEOUT_SECONDS,
    ENV_WORKER_POOL_SIZE,
)


@pytest.fixture(autouse=True)
def clean_settings_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Start every test from default engine settings."""
    for name in _SETTINGS_ENV_VARS:
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def worker_pool() -> Iterator[ThreadPoolExecutor]:
    """Bounded worker pool; abandoned units are not awaited on teardown."""
    pool = create_worker_pool(4)
    yield pool
    pool.shutdown(wait=False, cancel_futures=True)
