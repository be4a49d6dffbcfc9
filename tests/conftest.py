"""Shared fixtures for search tests."""

import pytest

from searchlibs.common.config import SearchConfig

from .fakes import FakeClock


@pytest.fixture
def config() -> SearchConfig:
    """Search configuration with in-memory cache and short deadlines."""
    return SearchConfig(
        search_redis_url=None,
        search_deadline_ms=200,
        search_suggest_deadline_ms=100,
    )


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()
