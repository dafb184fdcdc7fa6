"""
AI Credit Gateway service.
"""

from typing import Callable, Dict, Optional
from datetime import datetime

from fastapi import Response

from shared.base_service import BaseService
from shared.config import ServiceConfig, get_config
from .adapters.provider_client import ProviderClient
from .domain.handlers import GatewayHandlers
from .domain.models import GenerateRequest, ImageRequest
from .domain.privilege import PrivilegeOracle
from .domain.resolver import ResourceResolver
from .metering.ledger import UsageMeteringLedger, utc_now
from .ratelimit.fixed_window import FixedWindowAdmissionController
from .storage import DocumentStore, create_store


class GatewayService(BaseService):
    """AI gateway service implementation."""

    def __init__(
        self,
        config: Optional[ServiceConfig] = None,
        store: Optional[DocumentStore] = None,
        provider: Optional[ProviderClient] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        super().__init__("gateway", 8000, config or get_config("gateway", 8000))

        self.store = store or create_store(self.config)
        self.provider = provider or ProviderClient(
            self.config.provider_base_url,
            self.config.provider_api_key,
            timeout=self.config.max_provider_timeout_seconds,
        )
        self.privilege = PrivilegeOracle(
            self.store,
            privileged_identities=self.config.privileged_identities,
            privileged_roles=self.config.privileged_roles,
        )
        self.resolver = ResourceResolver(
            self.store,
            synthetic_prefixes=self.config.synthetic_prefixes,
            default_plan_tier=self.config.default_plan_tier,
        )
        self.admission = FixedWindowAdmissionController(
            self.store,
            self.privilege,
            tiers=self.config.rate_limit_tiers,
            default_tier=self.config.default_plan_tier,
            partitioned_prefixes=self.config.partitioned_prefixes,
            privileged_remaining=self.config.privileged_remaining,
            metrics=self.metrics,
            clock=clock,
        )
        self.ledger = UsageMeteringLedger(
            self.store,
            self.privilege,
            metrics=self.metrics,
            credits_included=self.config.default_credits_included,
            daily_usage_window=self.config.daily_usage_window,
            billing_period_days=self.config.billing_period_days,
            clock=clock,
        )
        self.handlers = GatewayHandlers(
            self.resolver,
            self.admission,
            self.ledger,
            self.provider,
            metrics=self.metrics,
            default_timeout=self.config.provider_timeout_seconds,
            max_timeout=self.config.max_provider_timeout_seconds,
        )

        @self.app.on_event("startup")
        async def _startup():
            await self.store.start()
            await self.provider.start()

        @self.app.on_event("shutdown")
        async def _shutdown():
            await self.ledger.drain()
            await self.provider.stop()
            await self.store.stop()

        self._setup_gateway_routes()

        # Expose service instance via app state for introspection/testing
        self.app.state.gateway_service = self

    def _setup_gateway_routes(self):
        """Set up AI gateway routes."""

        @self.app.get("/")
        async def root():
            return {
                "service": "ai-credit-gateway",
                "message": "AI Credit Gateway is running",
                "store_backend": self.config.store_backend,
            }

        @self.app.post("/api/v1/ai/generate")
        async def generate(request: GenerateRequest, response: Response):
            """Generate content for a tenant project."""
            result = await self.handlers.generate(request)
            response.headers["X-RateLimit-Remaining"] = str(result.remaining)
            return result.payload.model_dump()

        @self.app.post("/api/v1/ai/images")
        async def generate_image(request: ImageRequest, response: Response):
            """Generate an image for a user."""
            result = await self.handlers.generate_image(request)
            response.headers["X-RateLimit-Remaining"] = str(result.remaining)
            return result.payload.model_dump()

        @self.app.get("/api/v1/ai/usage/{project_id}")
        async def usage(project_id: str):
            """Usage statistics for a project over the last 30 days."""
            summary = await self.handlers.usage(project_id)
            return summary.model_dump()

        @self.app.get("/api/v1/credits/{tenant_id}")
        async def credits(tenant_id: str):
            """Current credit usage aggregate for a tenant."""
            return await self.handlers.credits(tenant_id)

    async def _check_dependencies(self) -> Dict[str, str]:
        """Report document store health."""
        if not await self.store.health_check():
            raise RuntimeError("document store unavailable")
        return {"store": "ok"}


def create_app():
    """Create FastAPI application."""
    service = GatewayService()
    return service.app


if __name__ == "__main__":
    service = GatewayService()
    service.run()
