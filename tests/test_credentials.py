"""
Tests for credential storage
"""

import pytest

from cadenza.core.models import Credential


class TestCredentialStore:

    @pytest.mark.asyncio
    async def test_save_grant_and_get(self, credential_store, clock):
        saved = await credential_store.save_grant("alice", "access", "refresh", 3600)

        loaded = await credential_store.get("alice")
        assert loaded == saved
        assert loaded.expires_at == clock() + 3600
        assert not loaded.is_expired(clock())

    @pytest.mark.asyncio
    async def test_missing_tenant_returns_none(self, credential_store):
        assert await credential_store.get("nobody") is None
        assert not await credential_store.has_valid_tokens("nobody")

    @pytest.mark.asyncio
    async def test_records_carry_a_ttl(self, credential_store, store):
        await credential_store.save_grant("alice", "access", "refresh", 3600)

        assert await store.ttl("credentials:alice") == 30 * 24 * 60 * 60

    @pytest.mark.asyncio
    async def test_records_expire(self, credential_store, clock):
        await credential_store.save_grant("alice", "access", "refresh", 3600)

        clock.advance(31 * 24 * 60 * 60)
        assert await credential_store.get("alice") is None

    @pytest.mark.asyncio
    async def test_corrupt_record_is_discarded(self, credential_store, store):
        await store.hset("credentials:alice", {"tenant_id": "alice", "expires_at": "soon"}, ttl=60)

        assert await credential_store.get("alice") is None
        assert not await store.exists("credentials:alice")

    @pytest.mark.asyncio
    async def test_delete(self, credential_store):
        await credential_store.save_grant("alice", "access", "refresh", 3600)

        assert await credential_store.delete("alice")
        assert not await credential_store.delete("alice")
        assert await credential_store.get("alice") is None

    @pytest.mark.asyncio
    async def test_has_valid_tokens(self, credential_store):
        await credential_store.save(Credential(
            tenant_id="alice", access_token="a", refresh_token="r", expires_at=0.0
        ))
        await credential_store.save(Credential(
            tenant_id="bob", access_token="a", refresh_token="", expires_at=0.0
        ))

        assert await credential_store.has_valid_tokens("alice")
        assert not await credential_store.has_valid_tokens("bob")


class TestCredentialExpiry:

    def test_is_expired_with_skew(self):
        credential = Credential(tenant_id="t", access_token="a", refresh_token="r", expires_at=1000.0)

        assert not credential.is_expired(now=900.0)
        assert credential.is_expired(now=900.0, skew=100.0)
        assert credential.is_expired(now=1000.0)
