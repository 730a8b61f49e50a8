"""
Pytest configuration and shared fixtures.
"""
from typing import Any, Dict, Optional

import pytest
from httpx import AsyncClient, ASGITransport

from yieldtrace.api.main import app, get_cache, get_datasource, get_settings
from yieldtrace.config import Settings
from yieldtrace.core.interfaces.cache import ICache
from yieldtrace.infrastructure.gateways.local_mock import LocalMockDataSource


class InMemoryCache(ICache):
    def __init__(self):
        self.store: Dict[str, Any] = {}
        self.sets = 0

    def get(self, key: str) -> Optional[Any]:
        return self.store.get(key)

    def set(self, key: str, value: Any, ttl_seconds: int = 60):
        self.sets += 1
        self.store[key] = value.model_dump(mode="json", by_alias=True) if hasattr(value, "model_dump") else value

    def delete(self, key: str):
        self.store.pop(key, None)


@pytest.fixture
def settings() -> Settings:
    return Settings(max_concurrent_reads=4, query_timeout_seconds=5.0)


@pytest.fixture
def datasource() -> LocalMockDataSource:
    return LocalMockDataSource()


@pytest.fixture
def cache() -> InMemoryCache:
    return InMemoryCache()


@pytest.fixture
async def client(datasource, settings, cache):
    """Async HTTP client for testing FastAPI endpoints against in-memory stores."""
    app.dependency_overrides[get_settings] = lambda: settings
    app.dependency_overrides[get_datasource] = lambda: datasource
    app.dependency_overrides[get_cache] = lambda: cache
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()
