"""
Integration tests for the request flow through the AI gateway.
"""

import asyncio

import httpx
import pytest

from service_ai_gateway.app.main import GatewayService
from service_ai_gateway.app.metering.ledger import TRANSACTIONS
from service_ai_gateway.app.storage.memory import InMemoryDocumentStore
from shared.test_helpers import (
    FixedClock,
    TestDataFactory,
    create_mock_provider,
    create_test_config,
    seed_documents,
)

TIERS = {
    "FREE": {"per_minute": 3, "per_day": 100},
    "PRO": {"per_minute": 5, "per_day": 100},
}


class TestGatewayFlow:
    """End-to-end flow: resolve, admit, dispatch, meter."""

    @pytest.fixture
    def store(self):
        return InMemoryDocumentStore()

    @pytest.fixture
    def clock(self):
        return FixedClock()

    @pytest.fixture
    def provider(self):
        return create_mock_provider()

    @pytest.fixture
    def service(self, store, provider, clock):
        config = create_test_config(rate_limit_tiers=TIERS)
        return GatewayService(config=config, store=store, provider=provider, clock=clock)

    @pytest.fixture
    def client(self, service):
        transport = httpx.ASGITransport(app=service.app)
        return httpx.AsyncClient(transport=transport, base_url="http://gateway.test")

    @pytest.mark.asyncio
    async def test_member_usage_is_billed_to_tenant(self, service, store, client):
        await seed_documents(store, "users/u1/projects", {"site-1": TestDataFactory.project_record(plan_tier="PRO")})
        await store.add("tenant_memberships", {"user_id": "u1", "tenant_id": "acme"})

        async with client:
            response = await client.post("/api/v1/ai/generate", json={
                "projectId": "site-1", "prompt": "Summarize", "userId": "u1", "model": "gemini-2.5-pro"
            })
            assert response.status_code == 200
            assert response.headers["X-RateLimit-Remaining"] == "4"

            await service.ledger.drain()

            credits = (await client.get("/api/v1/credits/acme")).json()
            usage = (await client.get("/api/v1/ai/usage/site-1")).json()

        assert credits["credits_used"] == 3
        assert credits["credits_remaining"] == 27
        assert credits["credits_overage"] == 0
        assert credits["usage_by_operation"] == {"ai_assistant_complex": 3}
        assert len(credits["daily_usage"]) == 1

        assert usage["total_requests"] == 1
        assert usage["total_tokens"] == 120
        assert usage["usage"][0]["caller_id"] == "u1"

    @pytest.mark.asyncio
    async def test_privileged_caller_skips_quota_and_billing(self, service, store, client):
        body = {"projectId": "founder-lab", "prompt": "hi", "userId": "founder-lab"}
        await seed_documents(store, "users", {"founder-lab": {"role": "owner"}})

        async with client:
            for _ in range(10):
                response = await client.post("/api/v1/ai/generate", json=body)
                assert response.status_code == 200
                assert response.headers["X-RateLimit-Remaining"] == "1000"
            await service.ledger.drain()

        assert store.count(TRANSACTIONS) == 0

    @pytest.mark.asyncio
    async def test_minute_budget_then_recovery(self, service, clock, client):
        body = {"projectId": "template-blog", "prompt": "hi", "userId": "writer"}

        async with client:
            statuses = [(await client.post("/api/v1/ai/generate", json=body)).status_code for _ in range(4)]
            assert statuses == [200, 200, 200, 429]

            other = await client.post("/api/v1/ai/generate", json={**body, "userId": "editor"})
            assert other.status_code == 200

            clock.advance(seconds=61)
            assert (await client.post("/api/v1/ai/generate", json=body)).status_code == 200
            await service.ledger.drain()

    @pytest.mark.asyncio
    async def test_concurrent_first_charges_for_new_tenant(self, service, store, client):
        await seed_documents(store, "projects", {
            "shop-9": TestDataFactory.project_record(owner_id="merchant", plan_tier="PRO"),
        })
        body = {"projectId": "shop-9", "prompt": "hi", "model": "gemini-1.5-pro"}

        async with client:
            responses = await asyncio.gather(
                client.post("/api/v1/ai/generate", json=body),
                client.post("/api/v1/ai/generate", json=body),
            )
            assert [r.status_code for r in responses] == [200, 200]
            await service.ledger.drain()

            credits = (await client.get("/api/v1/credits/merchant")).json()

        assert credits["credits_used"] == 4
        assert store.count(TRANSACTIONS) == 2
