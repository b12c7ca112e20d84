"""
Tenant Resource Pool

Bounded map of live per-tenant API clients backed by the credential store.

Eviction policy: capacity eviction is authoritative. When inserting a new
client would exceed `max_size`, the unleased client with the oldest
`last_used_at` is dropped first; the client being inserted is never a
candidate. The idle sweep only reclaims memory from clients idle longer
than `max_idle_seconds` and never touches leased clients. Eviction drops the
in-memory client only; credentials stay in the store.
"""

import asyncio
import inspect
import logging
import time
import weakref
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from .credentials import CredentialStore
from ..core.config import PoolConfig
from ..core.errors import (
    AuthenticationExpiredError, AuthenticationRequiredError, TransientExternalError,
    ResourceExhaustedError, ConfigurationError, ErrorCode
)
from ..core.models import Credential
from ..providers.base import ClientFactory, TokenRefresher

logger = logging.getLogger(__name__)


@dataclass
class TenantClient:
    """Live client for one tenant"""
    tenant_id: str
    client: Any
    credential: Optional[Credential]
    last_used_at: float
    in_use: int = 0
    closing: bool = False


class TenantResourcePool:
    """
    Pool of per-tenant clients

    Clients may implement `update_credential(credential)` to receive rotated
    tokens, and `aclose()` or `close()` to release resources on eviction.
    """

    def __init__(
        self,
        credential_store: CredentialStore,
        client_factory: ClientFactory,
        token_refresher: Optional[TokenRefresher] = None,
        config: Optional[PoolConfig] = None,
        clock: Callable[[], float] = time.time
    ):
        self.credential_store = credential_store
        self.client_factory = client_factory
        self.token_refresher = token_refresher
        self.config = config or PoolConfig()
        self._clock = clock

        self.clients: Dict[str, TenantClient] = {}
        # Per-tenant locks make get-or-create and refresh atomic per tenant;
        # a lock lives as long as somebody holds or waits on it
        self._tenant_locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()

        self.running = False
        self._sweep_task: Optional[asyncio.Task] = None

        self.metrics = {
            "clients_created": 0,
            "capacity_evictions": 0,
            "idle_evictions": 0,
            "invalidations": 0,
            "refreshes": 0,
            "refresh_failures": 0,
            "tenants_purged": 0,
        }

    # Lifecycle

    async def start(self) -> None:
        """Start the idle sweep"""
        if self.running:
            return
        self.config.validate()
        self.running = True
        self._sweep_task = asyncio.create_task(self._sweep_loop())
        logger.info(f"TenantResourcePool started (max_size={self.config.max_size})")

    async def close(self) -> None:
        """Stop the sweep and release every client"""
        self.running = False
        if self._sweep_task:
            self._sweep_task.cancel()
            try:
                await self._sweep_task
            except asyncio.CancelledError:
                pass
            self._sweep_task = None

        entries = list(self.clients.values())
        self.clients.clear()
        for entry in entries:
            await self._close_client(entry)
        logger.info(f"TenantResourcePool closed, released {len(entries)} clients")

    async def __aenter__(self) -> "TenantResourcePool":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    # Acquisition

    def _lock_for(self, tenant_id: str) -> asyncio.Lock:
        lock = self._tenant_locks.get(tenant_id)
        if lock is None:
            lock = asyncio.Lock()
            self._tenant_locks[tenant_id] = lock
        return lock

    def _needs_refresh(self, credential: Optional[Credential]) -> bool:
        return (
            credential is not None
            and self.token_refresher is not None
            and credential.is_expired(self._clock(), self.config.refresh_skew_seconds)
        )

    async def acquire(self, tenant_id: str, require_auth: bool = True) -> Any:
        """
        Get the live client for a tenant, creating it on first use

        Raises:
            AuthenticationRequiredError: no credential stored and require_auth is set
            AuthenticationExpiredError: an expired token could not be refreshed
            TransientExternalError: refresh hit a network problem
            ResourceExhaustedError: pool is full and every client is leased
        """
        entry = await self._acquire_entry(tenant_id, require_auth)
        return entry.client

    async def _acquire_entry(self, tenant_id: str, require_auth: bool) -> TenantClient:
        entry = self.clients.get(tenant_id)
        if entry and not self._needs_refresh(entry.credential):
            if require_auth and entry.credential is None:
                raise AuthenticationRequiredError(
                    f"Tenant {tenant_id} is not authenticated", data={"tenant_id": tenant_id}
                )
            entry.last_used_at = self._clock()
            return entry

        async with self._lock_for(tenant_id):
            # Re-check: another coroutine may have created or refreshed it
            entry = self.clients.get(tenant_id)
            if entry:
                credential = entry.credential
            else:
                credential = await self.credential_store.get(tenant_id)

            if credential is None and require_auth:
                raise AuthenticationRequiredError(
                    f"Tenant {tenant_id} is not authenticated", data={"tenant_id": tenant_id}
                )

            if self._needs_refresh(credential):
                logger.info(f"Access token for tenant {tenant_id} expired, refreshing")
                credential = await self._refresh_locked(tenant_id, credential)
                entry = self.clients.get(tenant_id)

            if entry is None:
                entry = await self._create_entry(tenant_id, credential)

            entry.last_used_at = self._clock()
            return entry

    async def _create_entry(self, tenant_id: str, credential: Optional[Credential]) -> TenantClient:
        client = self.client_factory(tenant_id, credential)
        if inspect.isawaitable(client):
            client = await client

        # From here to the insert nothing awaits, so the size check holds
        evicted: List[TenantClient] = []
        while len(self.clients) >= self.config.max_size:
            victim = self._least_recently_used()
            if victim is None:
                await self._close_client(TenantClient(tenant_id, client, credential, self._clock()))
                raise ResourceExhaustedError(
                    f"Tenant pool is full ({self.config.max_size}) and every client is in use",
                    code=ErrorCode.POOL_EXHAUSTED,
                    data={"max_size": self.config.max_size}
                )
            evicted.append(self.clients.pop(victim.tenant_id))
            self.metrics["capacity_evictions"] += 1
            logger.info(f"Evicted client for tenant {victim.tenant_id} (capacity)")

        entry = TenantClient(
            tenant_id=tenant_id,
            client=client,
            credential=credential,
            last_used_at=self._clock()
        )
        self.clients[tenant_id] = entry
        self.metrics["clients_created"] += 1
        logger.debug(f"Created client for tenant {tenant_id} (pool size {len(self.clients)})")

        for victim in evicted:
            await self._close_client(victim)
        return entry

    def _least_recently_used(self) -> Optional[TenantClient]:
        candidates = [entry for entry in self.clients.values() if entry.in_use == 0]
        if not candidates:
            return None
        return min(candidates, key=lambda entry: entry.last_used_at)

    @asynccontextmanager
    async def lease(self, tenant_id: str, require_auth: bool = True):
        """Hold a tenant's client; leased clients are never evicted"""
        entry = await self._acquire_entry(tenant_id, require_auth)
        entry.in_use += 1
        try:
            yield entry.client
        finally:
            entry.in_use -= 1
            entry.last_used_at = self._clock()
            if entry.closing and entry.in_use == 0:
                await self._close_client(entry)

    # Credential rotation

    async def refresh(self, tenant_id: str) -> Credential:
        """
        Rotate the tenant's access token using its refresh token

        Raises:
            AuthenticationExpiredError: refresh token rejected; the tenant was purged
            TransientExternalError: temporary failure; nothing was changed
        """
        async with self._lock_for(tenant_id):
            entry = self.clients.get(tenant_id)
            credential = entry.credential if entry and entry.credential else None
            if credential is None:
                credential = await self.credential_store.get(tenant_id)
            return await self._refresh_locked(tenant_id, credential)

    async def _refresh_locked(self, tenant_id: str, credential: Optional[Credential]) -> Credential:
        if credential is None:
            raise AuthenticationRequiredError(
                f"Tenant {tenant_id} has no refresh token", data={"tenant_id": tenant_id}
            )
        if self.token_refresher is None:
            raise ConfigurationError("Pool has no token refresher configured")

        try:
            grant = await self.token_refresher.refresh(credential.refresh_token)
        except AuthenticationExpiredError:
            self.metrics["refresh_failures"] += 1
            logger.warning(f"Refresh token for tenant {tenant_id} rejected, purging tenant")
            await self._purge(tenant_id)
            raise
        except TransientExternalError as e:
            self.metrics["refresh_failures"] += 1
            logger.warning(f"Transient failure refreshing tenant {tenant_id}: {e}")
            raise

        refreshed = Credential(
            tenant_id=tenant_id,
            access_token=grant.access_token,
            refresh_token=grant.refresh_token or credential.refresh_token,
            expires_at=self._clock() + grant.expires_in
        )
        await self.credential_store.save(refreshed)
        self._apply_credential(tenant_id, refreshed)
        self.metrics["refreshes"] += 1
        logger.info(f"Refreshed access token for tenant {tenant_id}, expires in {grant.expires_in}s")
        return refreshed

    def _apply_credential(self, tenant_id: str, credential: Credential) -> None:
        entry = self.clients.get(tenant_id)
        if entry is None:
            return
        entry.credential = credential
        if hasattr(entry.client, "update_credential"):
            entry.client.update_credential(credential)

    async def set_credentials(
        self,
        tenant_id: str,
        access_token: str,
        refresh_token: str,
        expires_in: int
    ) -> Credential:
        """Store a fresh grant (e.g. after the OAuth callback) and update a live client"""
        async with self._lock_for(tenant_id):
            credential = await self.credential_store.save_grant(
                tenant_id, access_token, refresh_token, expires_in
            )
            self._apply_credential(tenant_id, credential)
            return credential

    # Removal

    async def invalidate(self, tenant_id: str) -> None:
        """Drop the tenant's client and stored credential (logout)"""
        async with self._lock_for(tenant_id):
            await self._purge(tenant_id)
            self.metrics["invalidations"] += 1

    async def _purge(self, tenant_id: str) -> None:
        entry = self.clients.pop(tenant_id, None)
        await self.credential_store.delete(tenant_id)
        if entry:
            await self._close_client(entry)
        logger.info(f"Purged tenant {tenant_id} from pool and credential store")
        self.metrics["tenants_purged"] += 1

    async def sweep_idle(self) -> int:
        """Evict unleased clients idle longer than max_idle_seconds"""
        cutoff = self._clock() - self.config.max_idle_seconds
        idle = [
            tenant_id for tenant_id, entry in self.clients.items()
            if entry.in_use == 0 and entry.last_used_at < cutoff
        ]
        evicted = [self.clients.pop(tenant_id) for tenant_id in idle]
        for entry in evicted:
            await self._close_client(entry)
            logger.info(f"Evicted client for tenant {entry.tenant_id} (idle)")
        self.metrics["idle_evictions"] += len(evicted)
        return len(evicted)

    async def _sweep_loop(self) -> None:
        while self.running:
            try:
                await asyncio.sleep(self.config.sweep_interval_seconds)
                await self.sweep_idle()
            except Exception as e:
                logger.error(f"Idle sweep error: {e}")

    async def _close_client(self, entry: TenantClient) -> None:
        """Release a client, deferring until its last lease ends"""
        if entry.in_use > 0:
            entry.closing = True
            return
        closer = getattr(entry.client, "aclose", None) or getattr(entry.client, "close", None)
        if closer is None:
            return
        try:
            result = closer()
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            logger.warning(f"Error closing client for tenant {entry.tenant_id}: {e}")

    # Introspection

    def __len__(self) -> int:
        return len(self.clients)

    def __contains__(self, tenant_id: str) -> bool:
        return tenant_id in self.clients

    def get_stats(self) -> Dict[str, Any]:
        """Get pool statistics"""
        leased = sum(1 for entry in self.clients.values() if entry.in_use > 0)
        return {
            "size": len(self.clients),
            "max_size": self.config.max_size,
            "leased": leased,
            "idle": len(self.clients) - leased,
            "utilization": len(self.clients) / self.config.max_size,
            **self.metrics
        }
