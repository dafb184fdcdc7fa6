"""
Unit tests for the Redis document store.
"""

import json
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from service_ai_gateway.app.storage.redis_store import RedisDocumentStore
from shared.config import DEFAULT_INDEXED_FIELDS
from shared.errors import StoreUnavailableError


class TestRedisDocumentStore:
    """Test cases for RedisDocumentStore."""

    @pytest.fixture
    def mock_redis(self):
        client = MagicMock()
        client.hgetall = AsyncMock()
        client.zrange = AsyncMock(return_value=[])
        client.zrevrangebyscore = AsyncMock(return_value=[])
        client.ping = AsyncMock(return_value=True)
        client.close = AsyncMock()
        return client

    @pytest.fixture
    def mock_pipeline(self, mock_redis):
        pipe = MagicMock()
        pipe.execute = AsyncMock(return_value=[])
        mock_redis.pipeline.return_value.__aenter__.return_value = pipe
        mock_redis.pipeline.return_value.__aexit__.return_value = False
        return pipe

    @pytest.fixture
    def store(self, mock_redis):
        store = RedisDocumentStore("redis://localhost:6379/0", key_prefix="aigw", indexes=DEFAULT_INDEXED_FIELDS)
        store.redis = mock_redis
        return store

    @pytest.mark.asyncio
    async def test_get_decodes_flattened_fields(self, store, mock_redis):
        mock_redis.hgetall.return_value = {
            "tenant_id": json.dumps("t1"),
            "credits_used": "3",
            "usage_by_operation.image_generation": "4",
            "daily_usage": json.dumps([{"date": "2025-03-14", "credits": 3}]),
        }

        document = await store.get("ai_credit_usage", "t1")

        mock_redis.hgetall.assert_awaited_once_with("aigw:ai_credit_usage:t1")
        assert document == {
            "tenant_id": "t1",
            "credits_used": 3,
            "usage_by_operation": {"image_generation": 4},
            "daily_usage": [{"date": "2025-03-14", "credits": 3}],
        }

    @pytest.mark.asyncio
    async def test_get_missing_returns_none(self, store, mock_redis):
        mock_redis.hgetall.return_value = {}
        assert await store.get("projects", "p1") is None

    @pytest.mark.asyncio
    async def test_increment_uses_hincrby_in_transaction(self, store, mock_redis, mock_pipeline):
        mock_pipeline.execute.return_value = [5, 2, 1]

        totals = await store.increment(
            "ai_credit_usage", "t1",
            {"credits_used": 2, "usage_by_operation.ai_assistant_request": 2},
            fields={"last_updated": "2025-03-14T12:00:00+00:00"},
        )

        mock_redis.pipeline.assert_called_once_with(transaction=True)
        mock_pipeline.hincrby.assert_any_call("aigw:ai_credit_usage:t1", "credits_used", 2)
        mock_pipeline.hincrby.assert_any_call(
            "aigw:ai_credit_usage:t1", "usage_by_operation.ai_assistant_request", 2
        )
        mock_pipeline.hset.assert_called_once_with(
            "aigw:ai_credit_usage:t1",
            mapping={"last_updated": json.dumps("2025-03-14T12:00:00+00:00")},
        )
        assert totals == {"credits_used": 5, "usage_by_operation.ai_assistant_request": 2}

    @pytest.mark.asyncio
    async def test_create_sets_absent_fields_in_transaction(self, store, mock_redis, mock_pipeline):
        mock_pipeline.execute.return_value = [1, 1]

        created = await store.create("ai_credit_usage", "t1", {"credits_used": 0})

        assert created is True
        mock_redis.pipeline.assert_called_once_with(transaction=True)
        mock_pipeline.hsetnx.assert_any_call("aigw:ai_credit_usage:t1", "_created", "true")
        mock_pipeline.hsetnx.assert_any_call("aigw:ai_credit_usage:t1", "credits_used", "0")

    @pytest.mark.asyncio
    async def test_create_existing_returns_false(self, store, mock_pipeline):
        mock_pipeline.execute.return_value = [0, 0]
        assert await store.create("ai_credit_usage", "t1", {"credits_used": 0}) is False

    @pytest.mark.asyncio
    async def test_get_hides_created_marker(self, store, mock_redis):
        mock_redis.hgetall.return_value = {"_created": "true", "credits_used": "4"}
        assert await store.get("ai_credit_usage", "t1") == {"credits_used": 4}

    @pytest.mark.asyncio
    async def test_set_without_merge_replaces_document(self, store, mock_pipeline):
        await store.set("projects", "p1", {"plan_tier": "PRO", "ai_assistant_config": {"is_active": True}})

        mock_pipeline.delete.assert_called_once_with("aigw:projects:p1")
        mock_pipeline.hset.assert_called_once_with(
            "aigw:projects:p1",
            mapping={"plan_tier": '"PRO"', "ai_assistant_config.is_active": "true"},
        )

    @pytest.mark.asyncio
    async def test_set_with_merge_keeps_other_fields(self, store, mock_pipeline):
        await store.set("ai_credit_usage", "t1", {"credits_remaining": 10}, merge=True)
        mock_pipeline.delete.assert_not_called()

    @pytest.mark.asyncio
    async def test_add_indexes_by_timestamp(self, store, mock_pipeline):
        timestamp = "2025-03-14T12:00:00+00:00"

        doc_id = await store.add("api_usage", {"resource_id": "p1", "timestamp": timestamp})

        mock_pipeline.zadd.assert_called_once_with(
            "aigw:api_usage:_by:resource_id:p1",
            {doc_id: datetime(2025, 3, 14, 12, tzinfo=timezone.utc).timestamp()},
        )

    @pytest.mark.asyncio
    async def test_set_indexes_configured_fields_only(self, store, mock_pipeline):
        await store.set("tenant_memberships", "m1", {"user_id": "u1", "tenant_id": "acme"})
        await store.set("projects", "p1", {"owner_id": "u1"})

        mock_pipeline.zadd.assert_called_once()
        assert mock_pipeline.zadd.call_args.args[0] == "aigw:tenant_memberships:_by:user_id:u1"

    @pytest.mark.asyncio
    async def test_find_reads_index_and_skips_stale_entries(self, store, mock_redis, mock_pipeline):
        mock_redis.zrange.return_value = ["a", "b", "gone"]
        mock_pipeline.execute.return_value = [
            {"user_id": json.dumps("u1"), "tenant_id": json.dumps("acme")},
            {"user_id": json.dumps("u2"), "tenant_id": json.dumps("other")},
            {},
        ]

        results = await store.find("tenant_memberships", "user_id", "u1")

        mock_redis.zrange.assert_awaited_once_with("aigw:tenant_memberships:_by:user_id:u1", 0, -1)
        mock_redis.scan_iter.assert_not_called()
        assert results == [{"id": "a", "user_id": "u1", "tenant_id": "acme"}]

    @pytest.mark.asyncio
    async def test_find_recent_reads_score_range(self, store, mock_redis, mock_pipeline):
        since = datetime(2025, 3, 1, tzinfo=timezone.utc)
        mock_redis.zrevrangebyscore.return_value = ["c"]
        mock_pipeline.execute.return_value = [{
            "resource_id": json.dumps("p1"),
            "tokens_used": "12",
            "timestamp": json.dumps("2025-03-14T12:00:00+00:00"),
        }]

        results = await store.find_recent("api_usage", "resource_id", "p1", since=since, limit=1000)

        mock_redis.zrevrangebyscore.assert_awaited_once_with(
            "aigw:api_usage:_by:resource_id:p1", "+inf", since.timestamp(), start=0, num=1000
        )
        assert [r["id"] for r in results] == ["c"]
        assert results[0]["tokens_used"] == 12

    @pytest.mark.asyncio
    async def test_start_failure_raises_store_unavailable(self):
        store = RedisDocumentStore("redis://unreachable:6379/0")
        client = MagicMock()
        client.ping = AsyncMock(side_effect=ConnectionError("refused"))

        with patch("service_ai_gateway.app.storage.redis_store.redis.from_url", return_value=client):
            with pytest.raises(StoreUnavailableError):
                await store.start()

    @pytest.mark.asyncio
    async def test_health_check_reports_ping_failure(self, store, mock_redis):
        mock_redis.ping.side_effect = ConnectionError("down")
        assert await store.health_check() is False
