"""
Durable per-tenant credential storage
"""

import logging
import time
from typing import Callable, Optional

from ..core.errors import StoreError
from ..core.models import Credential
from ..persistence.base import StoreAdapter

logger = logging.getLogger(__name__)


class CredentialStore:
    """
    TTL-bound storage of access/refresh tokens, one hash per tenant

    The store is the only writer of credentials; the pool reads copies.
    """

    def __init__(
        self,
        store: StoreAdapter,
        ttl_seconds: int = 30 * 24 * 60 * 60,
        key_prefix: str = "credentials",
        clock: Callable[[], float] = time.time
    ):
        self.store = store
        self.ttl_seconds = ttl_seconds
        self.key_prefix = key_prefix
        self._clock = clock

    def _key(self, tenant_id: str) -> str:
        return f"{self.key_prefix}:{tenant_id}"

    async def get(self, tenant_id: str) -> Optional[Credential]:
        """Load a tenant's credential, None if the tenant never authenticated"""
        record = await self.store.hgetall(self._key(tenant_id))
        if not record:
            return None
        try:
            return Credential.from_record(record)
        except StoreError as e:
            logger.error(f"Discarding corrupt credential for tenant {tenant_id}: {e}")
            await self.store.delete(self._key(tenant_id))
            return None

    async def save(self, credential: Credential) -> None:
        await self.store.hset(self._key(credential.tenant_id), credential.to_record(), ttl=self.ttl_seconds)
        logger.debug(f"Saved credential for tenant {credential.tenant_id}")

    async def save_grant(
        self,
        tenant_id: str,
        access_token: str,
        refresh_token: str,
        expires_in: int
    ) -> Credential:
        """Store tokens from an authorization grant"""
        credential = Credential(
            tenant_id=tenant_id,
            access_token=access_token,
            refresh_token=refresh_token,
            expires_at=self._clock() + expires_in
        )
        await self.save(credential)
        logger.info(f"Stored new credential for tenant {tenant_id}")
        return credential

    async def delete(self, tenant_id: str) -> bool:
        removed = await self.store.delete(self._key(tenant_id))
        if removed:
            logger.info(f"Deleted credential for tenant {tenant_id}")
        return bool(removed)

    async def has_valid_tokens(self, tenant_id: str) -> bool:
        """Check that both access and refresh tokens are present"""
        credential = await self.get(tenant_id)
        return bool(credential and credential.access_token and credential.refresh_token)
