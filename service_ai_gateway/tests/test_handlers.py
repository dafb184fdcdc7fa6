"""
Unit tests for the gateway handlers.
"""

import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest

from service_ai_gateway.app.domain.handlers import GatewayHandlers, RequestTrace
from service_ai_gateway.app.domain.models import GenerateRequest, ImageRequest, RequestState
from service_ai_gateway.app.domain.privilege import PrivilegeOracle
from service_ai_gateway.app.domain.resolver import ResourceResolver
from service_ai_gateway.app.metering.ledger import TRANSACTIONS, USAGE_EVENTS, UsageMeteringLedger
from service_ai_gateway.app.ratelimit.fixed_window import MINUTE_COLLECTION, FixedWindowAdmissionController
from service_ai_gateway.app.storage.memory import InMemoryDocumentStore
from shared.config import DEFAULT_RATE_LIMIT_TIERS, DEFAULT_SYNTHETIC_PREFIXES
from shared.errors import (
    AdmissionDenied,
    ProviderError,
    ResolutionError,
    StoreUnavailableError,
    ValidationError,
)
from shared.test_helpers import FixedClock, TestDataFactory, create_mock_provider


class TestGatewayHandlers:
    """Test cases for GatewayHandlers."""

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
    def ledger(self, store, clock):
        return UsageMeteringLedger(store, PrivilegeOracle(store), clock=clock)

    @pytest.fixture
    def handlers(self, store, clock, provider, ledger):
        oracle = PrivilegeOracle(store, privileged_identities=["root@example.com"])
        resolver = ResourceResolver(store, synthetic_prefixes=DEFAULT_SYNTHETIC_PREFIXES)
        admission = FixedWindowAdmissionController(store, oracle, DEFAULT_RATE_LIMIT_TIERS, clock=clock)
        ledger.privilege = oracle
        return GatewayHandlers(resolver, admission, ledger, provider, default_timeout=5.0)

    @pytest.mark.asyncio
    async def test_generate_completes_and_meters(self, handlers, store, provider, ledger):
        await store.set("users/u1/projects", "p1", TestDataFactory.project_record(plan_tier="PRO"))

        result = await handlers.generate(GenerateRequest(projectId="p1", prompt="Hello", userId="u1"))

        assert result.state == RequestState.COMPLETED
        assert result.remaining == 49
        assert result.payload.metadata.tokens_used == 120
        assert result.payload.metadata.model == "gemini-2.5-flash"
        assert result.payload.response["usageMetadata"]["totalTokenCount"] == 120

        model, body = provider.generate_content.await_args.args
        assert model == "gemini-2.5-flash"
        assert body["contents"][0]["parts"] == [{"text": "Hello"}]
        assert body["generationConfig"]["maxOutputTokens"] == 8192
        assert len(body["safetySettings"]) == 4

        await ledger.drain()
        assert store.count(TRANSACTIONS) == 1
        assert (await ledger.get_aggregate("u1")).credits_used == 1

    @pytest.mark.asyncio
    async def test_generate_forwards_inline_images(self, handlers, provider):
        request = GenerateRequest(
            projectId="template-shop",
            prompt="Describe",
            userId="u1",
            images=[{"mimeType": "image/png", "data": "AAAA"}, {"mimeType": "text/plain", "data": "x"}],
        )

        await handlers.generate(request)

        parts = provider.generate_content.await_args.args[1]["contents"][0]["parts"]
        assert parts == [{"text": "Describe"}, {"inlineData": {"mimeType": "image/png", "data": "AAAA"}}]
        await handlers.ledger.drain()

    @pytest.mark.asyncio
    async def test_validation_failure_has_no_side_effects(self, handlers, store, provider):
        with pytest.raises(ValidationError):
            await handlers.generate(GenerateRequest(projectId="p1", prompt="hi", model="gpt-4"))

        assert store.reads == 0
        assert store.count(MINUTE_COLLECTION) == 0
        provider.generate_content.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_unknown_project_is_rejected(self, handlers, store):
        with pytest.raises(ResolutionError) as exc_info:
            await handlers.generate(GenerateRequest(projectId="p-missing", prompt="hi", userId="u1"))

        assert exc_info.value.kind == ResolutionError.NOT_FOUND
        assert exc_info.value.status_code == 404
        assert store.count(MINUTE_COLLECTION) == 0

    @pytest.mark.asyncio
    async def test_inactive_project_is_rejected(self, handlers, store):
        await store.set("projects", "p1", TestDataFactory.project_record(owner_id="o1", is_active=False))

        with pytest.raises(ResolutionError) as exc_info:
            await handlers.generate(GenerateRequest(projectId="p1", prompt="hi"))

        assert exc_info.value.kind == ResolutionError.INACTIVE
        assert exc_info.value.status_code == 403

    @pytest.mark.asyncio
    async def test_resolver_outage_is_store_unavailable(self, handlers):
        handlers.resolver.store = AsyncMock()
        handlers.resolver.store.get.side_effect = ConnectionError("down")

        with pytest.raises(StoreUnavailableError):
            await handlers.generate(GenerateRequest(projectId="p1", prompt="hi", userId="u1"))

    @pytest.mark.asyncio
    async def test_admission_denial_carries_reset_at(self, handlers, store, clock, provider):
        await store.set("projects", "p1", TestDataFactory.project_record(owner_id="o1"))
        for _ in range(10):
            await handlers.generate(GenerateRequest(projectId="p1", prompt="hi"))

        with pytest.raises(AdmissionDenied) as exc_info:
            await handlers.generate(GenerateRequest(projectId="p1", prompt="hi"))

        assert exc_info.value.code == AdmissionDenied.MINUTE_LIMIT
        assert exc_info.value.reset_at == clock.now + timedelta(seconds=60)
        assert exc_info.value.details["reset_at"] == exc_info.value.reset_at.isoformat()
        assert provider.generate_content.await_count == 10
        await handlers.ledger.drain()

    @pytest.mark.asyncio
    async def test_provider_error_is_not_charged(self, handlers, store, provider, ledger):
        provider.generate_content.side_effect = ProviderError("Provider API error", status_code=429)

        with pytest.raises(ProviderError) as exc_info:
            await handlers.generate(GenerateRequest(projectId="u1", prompt="hi", userId="u1"))

        assert exc_info.value.status_code == 429
        await ledger.drain()
        assert store.count(USAGE_EVENTS) == 0
        assert store.count(TRANSACTIONS) == 0

    @pytest.mark.asyncio
    async def test_provider_timeout(self, handlers, provider, store):
        async def slow(*args, **kwargs):
            await asyncio.sleep(5)

        provider.generate_content.side_effect = slow

        with pytest.raises(ProviderError) as exc_info:
            await handlers.generate(GenerateRequest(projectId="u1", prompt="hi", userId="u1", timeout=1))

        assert exc_info.value.status_code == 504
        assert exc_info.value.code == ProviderError.PROVIDER_TIMEOUT
        assert store.count(USAGE_EVENTS) == 0

    @pytest.mark.asyncio
    async def test_privileged_caller_is_admitted_and_not_billed(self, handlers, store, ledger):
        await store.set("users", "boss", {"role": "owner"})

        result = await handlers.generate(GenerateRequest(projectId="boss", prompt="hi", userId="boss"))

        assert result.remaining == 1000
        await ledger.drain()
        assert store.count(TRANSACTIONS) == 0
        assert store.count(USAGE_EVENTS) == 1

    @pytest.mark.asyncio
    async def test_native_image_generation(self, handlers, provider, store, ledger):
        provider.generate_content.return_value = TestDataFactory.native_image_response(data="IMG")

        result = await handlers.generate_image(ImageRequest(
            userId="u1",
            prompt="a red fox",
            referenceImages=["data:image/png;base64,REF"],
        ))

        assert result.payload.image == "IMG"
        assert result.remaining == 49
        model, body = provider.generate_content.await_args.args
        assert model == "gemini-3-pro-image-preview"
        assert body["generationConfig"]["responseModalities"] == ["IMAGE", "TEXT"]
        parts = body["contents"][0]["parts"]
        assert parts[0] == {"inlineData": {"mimeType": "image/png", "data": "REF"}}
        assert parts[1]["text"].startswith("Using the provided reference images")

        await ledger.drain()
        transactions = store.documents(TRANSACTIONS)
        assert transactions[0]["resource_id"] == "image-gen-u1"
        assert transactions[0]["credits_used"] == 4
        assert transactions[0]["operation"] == "image_generation"

    @pytest.mark.asyncio
    async def test_imagen_generation(self, handlers, provider):
        result = await handlers.generate_image(ImageRequest(
            userId="u1", prompt="a red fox", model="imagen-4.0-generate-001", resolution="4K"
        ))

        assert result.payload.image == "iVBORw0KGgo="
        model, body = provider.generate_images.await_args.args
        assert model == "imagen-4.0-generate-001"
        assert body["parameters"]["imageSize"] == "2K"
        provider.generate_content.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_image_missing_from_response(self, handlers, provider, store, ledger):
        provider.generate_content.return_value = TestDataFactory.text_response()

        with pytest.raises(ProviderError) as exc_info:
            await handlers.generate_image(ImageRequest(userId="u1", prompt="a red fox"))

        assert exc_info.value.status_code == 502
        await ledger.drain()
        assert store.count(TRANSACTIONS) == 0

    @pytest.mark.asyncio
    async def test_credits_for_unknown_tenant(self, handlers):
        with pytest.raises(ResolutionError):
            await handlers.credits("nobody")

    @pytest.mark.asyncio
    async def test_usage_rejects_malformed_project(self, handlers):
        with pytest.raises(ValidationError):
            await handlers.usage("bad project")


class TestRequestTrace:
    """Test cases for RequestTrace."""

    def test_terminal_states(self):
        trace = RequestTrace(MagicMock(), "generate")
        trace.finish(ValidationError(ValidationError.MISSING_FIELD))
        assert trace.state == RequestState.REJECTED

        trace.finish(ProviderError())
        assert trace.state == RequestState.FAILED

        trace.finish()
        assert trace.state == RequestState.COMPLETED
