"""Tests for the SQLAlchemy installation store."""

import os
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy import text
from sqlalchemy.exc import OperationalError

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("SECRET_KEY", "test-secret-key-for-testing-only")

from whoplytics.errors import MissingRequiredField, StoreUnavailable
from whoplytics.installations.store import InstallationStore
from whoplytics.security.encryption import FERNET_PREFIX


@pytest.fixture
def store(db_session):
    return InstallationStore(db_session)


class TestUpsert:

    @pytest.mark.asyncio
    async def test_create(self, store):
        record = await store.upsert(
            "biz_abc",
            {"experience_id": "exp_1", "access_token": "tok_1", "user_id": "user_1"},
        )
        assert record.tenant_id == "biz_abc"
        assert record.experience_id == "exp_1"
        assert record.access_token == "tok_1"
        assert record.plan == "free"

    @pytest.mark.asyncio
    async def test_create_requires_access_token(self, store):
        with pytest.raises(MissingRequiredField):
            await store.upsert("biz_new", {"user_id": "user_1"})
        assert await store.find_by_tenant_id("biz_new") is None

    @pytest.mark.asyncio
    async def test_update_keeps_unmentioned_fields(self, store):
        await store.upsert("biz_abc", {"access_token": "tok_1", "plan": "pro", "username": "alice"})
        record = await store.upsert("biz_abc", {"access_token": "tok_2"})
        assert record.access_token == "tok_2"
        assert record.plan == "pro"
        assert record.username == "alice"

    @pytest.mark.asyncio
    async def test_update_without_access_token(self, store):
        await store.upsert("biz_abc", {"access_token": "tok_1"})
        record = await store.upsert("biz_abc", {"plan": "business"})
        assert record.plan == "business"
        assert record.access_token == "tok_1"

    @pytest.mark.asyncio
    async def test_none_values_are_ignored(self, store):
        await store.upsert("biz_abc", {"access_token": "tok_1", "username": "alice"})
        record = await store.upsert("biz_abc", {"access_token": "tok_1", "username": None})
        assert record.username == "alice"

    @pytest.mark.asyncio
    async def test_unknown_field(self, store):
        with pytest.raises(ValueError):
            await store.upsert("biz_abc", {"access_token": "tok", "tenant_id": "biz_other"})

    @pytest.mark.asyncio
    async def test_experience_moves_between_tenants(self, store):
        await store.upsert("biz_a", {"access_token": "tok_a", "experience_id": "exp_1"})
        await store.upsert("biz_b", {"access_token": "tok_b", "experience_id": "exp_1"})

        assert (await store.find_by_experience_id("exp_1")).tenant_id == "biz_b"
        assert (await store.find_by_tenant_id("biz_a")).experience_id is None

    @pytest.mark.asyncio
    async def test_access_token_encrypted_at_rest(self, store, db_session):
        await store.upsert("biz_abc", {"access_token": "whop_plain_token"})
        result = await db_session.execute(
            text("SELECT access_token FROM installations WHERE tenant_id = :t"),
            {"t": "biz_abc"},
        )
        stored = result.scalar_one()
        assert stored != "whop_plain_token"
        assert stored.startswith(FERNET_PREFIX)


class TestLookups:

    @pytest.mark.asyncio
    async def test_tenant_isolation(self, store):
        for i in range(5):
            await store.upsert(f"biz_t{i}", {"access_token": f"tok_{i}", "experience_id": f"exp_{i}"})

        for i in range(5):
            record = await store.find_by_tenant_id(f"biz_t{i}")
            assert record.tenant_id == f"biz_t{i}"
            assert record.access_token == f"tok_{i}"

    @pytest.mark.asyncio
    async def test_missing_tenant(self, store):
        await store.upsert("biz_a", {"access_token": "tok"})
        assert await store.find_by_tenant_id("biz_b") is None

    @pytest.mark.asyncio
    async def test_empty_key_rejected(self, store):
        with pytest.raises(ValueError):
            await store.find_by_tenant_id("")
        with pytest.raises(ValueError):
            await store.find_by_experience_id("")

    @pytest.mark.asyncio
    async def test_find_by_experience(self, store):
        await store.upsert("biz_a", {"access_token": "tok", "experience_id": "exp_a"})
        assert (await store.find_by_experience_id("exp_a")).tenant_id == "biz_a"
        assert await store.find_by_experience_id("exp_unknown") is None

    @pytest.mark.asyncio
    async def test_latest_by_user(self, store):
        await store.upsert("biz_old", {"access_token": "tok", "user_id": "user_1"})
        await store.upsert("biz_new", {"access_token": "tok", "user_id": "user_1"})
        await store.upsert("biz_other", {"access_token": "tok", "user_id": "user_2"})

        record = await store.find_latest_by_user_id("user_1")
        assert record.tenant_id == "biz_new"
        assert await store.find_latest_by_user_id("user_3") is None

    @pytest.mark.asyncio
    async def test_latest_by_user_with_prefix(self, store):
        await store.upsert("biz_a", {"access_token": "tok", "user_id": "user_1"})
        await store.upsert("org_b", {"access_token": "tok", "user_id": "user_1"})
        record = await store.find_latest_by_user_id("user_1", tenant_prefix="biz_")
        assert record.tenant_id == "biz_a"


class TestOutage:
    """Database errors surface as StoreUnavailable, never as "not found"."""

    @pytest.fixture
    def broken_store(self):
        session = MagicMock()
        session.execute = AsyncMock(
            side_effect=OperationalError("SELECT 1", {}, Exception("connection refused"))
        )
        session.rollback = AsyncMock()
        return InstallationStore(session)

    @pytest.mark.asyncio
    async def test_lookup(self, broken_store):
        with pytest.raises(StoreUnavailable):
            await broken_store.find_by_tenant_id("biz_abc")

    @pytest.mark.asyncio
    async def test_experience_lookup(self, broken_store):
        with pytest.raises(StoreUnavailable):
            await broken_store.find_by_experience_id("exp_1")

    @pytest.mark.asyncio
    async def test_upsert(self, broken_store):
        with pytest.raises(StoreUnavailable):
            await broken_store.upsert("biz_abc", {"plan": "pro", "experience_id": "exp_1"})
        broken_store.session.rollback.assert_awaited()
