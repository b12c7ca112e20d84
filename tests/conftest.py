"""
Global pytest configuration and fixtures for Cadenza tests
"""

import asyncio
import logging
import sys
from pathlib import Path
from typing import Any, List, Optional

import pytest

# Add the source directory to Python path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root / "src"))

from cadenza.core.config import PoolConfig, CacheConfig, QueueConfig, WorkerConfig
from cadenza.core.errors import (
    AuthenticationExpiredError, TransientExternalError, StoreError, ErrorCode
)
from cadenza.core.models import Credential
from cadenza.persistence import InMemoryStoreAdapter
from cadenza.pooling import CredentialStore, TenantResourcePool
from cadenza.providers.base import TokenGrant, TokenRefresher

# Configure logging for tests
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)


class FakeClock:
    """Manually advanced clock shared by the store and the components"""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeClient:
    """Stand-in for a per-tenant API client"""

    def __init__(self, tenant_id: str, credential: Optional[Credential]):
        self.tenant_id = tenant_id
        self.credential = credential
        self.closed = False
        self.calls: List[str] = []

    def update_credential(self, credential: Credential) -> None:
        self.credential = credential

    async def now_playing(self) -> dict:
        self.calls.append("now_playing")
        return {"track": "Clair de Lune", "token": self.credential.access_token if self.credential else None}

    async def skip(self) -> None:
        self.calls.append("skip")

    async def aclose(self) -> None:
        self.closed = True


class FakeTokenRefresher(TokenRefresher):
    """Token refresher with a scripted outcome: ok, expired or transient"""

    def __init__(self, outcome: str = "ok", expires_in: int = 3600, delay: float = 0.0):
        self.outcome = outcome
        self.expires_in = expires_in
        self.delay = delay
        self.calls: List[str] = []

    async def refresh(self, refresh_token: str) -> TokenGrant:
        self.calls.append(refresh_token)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.outcome == "expired":
            raise AuthenticationExpiredError("invalid_grant")
        if self.outcome == "transient":
            raise TransientExternalError("token endpoint returned 503")
        return TokenGrant(access_token=f"access-{len(self.calls)}", expires_in=self.expires_in)


class FailingStore(InMemoryStoreAdapter):
    """In-memory store whose reads and writes can be made to fail"""

    def __init__(self, clock=None):
        super().__init__(clock=clock)
        self.fail_reads = False
        self.fail_writes = False

    def _unavailable(self, op: str) -> StoreError:
        return StoreError(f"Store unavailable during {op}", code=ErrorCode.STORE_UNAVAILABLE)

    async def get(self, key: str) -> Optional[str]:
        if self.fail_reads:
            raise self._unavailable("get")
        return await super().get(key)

    async def set(self, key: str, value: str, ttl: int) -> None:
        if self.fail_writes:
            raise self._unavailable("set")
        await super().set(key, value, ttl)

    async def delete(self, *keys: str) -> int:
        if self.fail_writes:
            raise self._unavailable("delete")
        return await super().delete(*keys)

    async def scan_keys(self, prefix: str) -> List[str]:
        if self.fail_reads:
            raise self._unavailable("scan")
        return await super().scan_keys(prefix)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(clock):
    return InMemoryStoreAdapter(clock=clock)


@pytest.fixture
def failing_store(clock):
    return FailingStore(clock=clock)


@pytest.fixture
def credential_store(store, clock):
    return CredentialStore(store, clock=clock)


@pytest.fixture
def refresher():
    return FakeTokenRefresher()


@pytest.fixture
def make_pool(credential_store, refresher, clock):
    """Build pools over the shared credential store"""

    def factory(max_size: int = 10, max_idle_seconds: float = 1800, **kwargs: Any) -> TenantResourcePool:
        config = PoolConfig(max_size=max_size, max_idle_seconds=max_idle_seconds)
        return TenantResourcePool(
            credential_store,
            kwargs.pop("client_factory", FakeClient),
            token_refresher=kwargs.pop("token_refresher", refresher),
            config=config,
            clock=clock
        )

    return factory


@pytest.fixture
def save_tokens(credential_store):
    """Store a credential valid for `expires_in` seconds"""

    async def save(tenant_id: str, expires_in: int = 3600) -> Credential:
        return await credential_store.save_grant(
            tenant_id, f"access-{tenant_id}", f"refresh-{tenant_id}", expires_in
        )

    return save


@pytest.fixture
def queue_config():
    return QueueConfig()


@pytest.fixture
def worker_config():
    return WorkerConfig(concurrency=1, poll_interval_seconds=0.01, default_timeout_ms=1000)


@pytest.fixture
def cache_config():
    return CacheConfig()


# Custom markers for test categorization
def pytest_configure(config):
    """Configure custom pytest markers"""
    config.addinivalue_line("markers", "unit: Unit tests")
    config.addinivalue_line("markers", "integration: Integration tests")
    config.addinivalue_line("markers", "slow: Tests that take more than 5 seconds")
