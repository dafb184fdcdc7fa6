"""
Unit tests for the privilege oracle.
"""

from unittest.mock import AsyncMock

import pytest

from service_ai_gateway.app.domain.privilege import PrivilegeOracle, is_sentinel
from service_ai_gateway.app.storage.memory import InMemoryDocumentStore


class TestPrivilegeOracle:
    """Test cases for PrivilegeOracle."""

    @pytest.fixture
    def store(self):
        return InMemoryDocumentStore()

    @pytest.fixture
    def oracle(self, store):
        return PrivilegeOracle(store, privileged_identities=["Owner@Example.com"])

    @pytest.mark.asyncio
    async def test_direct_identity_match_is_case_insensitive(self, oracle, store):
        assert await oracle.is_privileged("owner@example.com") is True
        assert store.reads == 0

    @pytest.mark.asyncio
    async def test_role_on_account_record(self, oracle, store):
        await store.set("users", "u-admin", {"role": "superadmin"})
        await store.set("users", "u-owner", {"role": "owner"})
        await store.set("users", "u-member", {"role": "member"})

        assert await oracle.is_privileged("u-admin") is True
        assert await oracle.is_privileged("u-owner") is True
        assert await oracle.is_privileged("u-member") is False
        assert await oracle.is_privileged("u-missing") is False

    @pytest.mark.asyncio
    async def test_sentinels_skip_lookup(self, oracle, store):
        for caller in (None, "", "unknown", "anonymous", "system", "public"):
            assert await oracle.is_privileged(caller) is False
        assert store.reads == 0

    @pytest.mark.asyncio
    async def test_lookup_failure_is_not_privileged(self):
        store = AsyncMock()
        store.get.side_effect = ConnectionError("store down")
        oracle = PrivilegeOracle(store)

        assert await oracle.is_privileged("u1") is False

    def test_is_sentinel(self):
        assert is_sentinel("Anonymous") is True
        assert is_sentinel("u1") is False
