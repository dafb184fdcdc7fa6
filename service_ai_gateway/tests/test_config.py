"""
Unit tests for gateway configuration and store selection.
"""

import pytest
from pydantic import ValidationError

from service_ai_gateway.app.storage import InMemoryDocumentStore, RedisDocumentStore, create_store
from shared.config import DEFAULT_INDEXED_FIELDS
from shared.test_helpers import create_test_config


class TestRateLimitTiers:
    """Test cases for tier validation."""

    def test_tier_names_are_upper_cased(self):
        config = create_test_config(
            rate_limit_tiers={"free": {"per_minute": 3, "per_day": 30}},
            default_plan_tier="free",
        )

        assert config.rate_limit_tiers == {"FREE": {"per_minute": 3, "per_day": 30}}
        assert config.default_plan_tier == "FREE"

    def test_tier_without_daily_limit_is_rejected(self):
        with pytest.raises(ValidationError):
            create_test_config(rate_limit_tiers={"FREE": {"per_minute": 3}})

    def test_non_positive_limit_is_rejected(self):
        with pytest.raises(ValidationError):
            create_test_config(rate_limit_tiers={"FREE": {"per_minute": 0, "per_day": 30}})

    def test_default_tier_must_have_limits(self):
        with pytest.raises(ValidationError):
            create_test_config(
                rate_limit_tiers={"PRO": {"per_minute": 5, "per_day": 50}},
                default_plan_tier="FREE",
            )


class TestStoreBackend:
    """Test cases for store backend selection."""

    @pytest.mark.parametrize("env,expected", [
        ("local", "memory"),
        ("test", "memory"),
        ("staging", "redis"),
        ("production", "redis"),
    ])
    def test_default_backend_follows_environment(self, env, expected):
        assert create_test_config(env=env, store_backend=None).store_backend == expected

    def test_explicit_backend_is_kept(self):
        assert create_test_config(env="production", store_backend="memory").store_backend == "memory"

    def test_unknown_backend_is_rejected(self):
        with pytest.raises(ValidationError):
            create_test_config(store_backend="sqlite")

    def test_create_store_builds_indexed_redis_store(self):
        store = create_store(create_test_config(env="production", store_backend=None))

        assert isinstance(store, RedisDocumentStore)
        assert store.indexes == {name: tuple(fields) for name, fields in DEFAULT_INDEXED_FIELDS.items()}

    def test_create_store_memory(self):
        assert isinstance(create_store(create_test_config()), InMemoryDocumentStore)
