"""
Gateway request handlers.

Each request moves through RECEIVED -> VALIDATED -> RESOLVED -> ADMITTED ->
DISPATCHED and ends COMPLETED, REJECTED or FAILED. Metering is scheduled
after a successful provider call and never awaited on the request path.
"""

import asyncio
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Dict, Optional

from shared.errors import (
    AdmissionDenied,
    GatewayException,
    ProviderError,
    ResolutionError,
    StoreUnavailableError,
    ValidationError,
)
from shared.logging import get_logger, set_caller_context
from shared.metrics import MetricsCollector
from ..adapters.provider_client import ProviderClient
from ..metering.ledger import UsageMeteringLedger
from ..ratelimit.fixed_window import DAY_LIMIT, MINUTE_LIMIT, FixedWindowAdmissionController
from .models import (
    AdmissionDecision,
    CreditUsageAggregate,
    GenerateMetadata,
    GenerateRequest,
    GenerateResponse,
    ImageRequest,
    ImageResponse,
    RequestState,
    UsageSummary,
)
from .resolver import ResourceResolver
from .validation import (
    PROJECT_ID_PATTERN,
    SAFETY_SETTINGS,
    ValidatedImage,
    build_image_prompt,
    clamp_timeout,
    sanitize_string,
    validate_generate_request,
    validate_image_request,
)

IMAGE_PLAN_TIER = "PRO"

DENIAL_CODES = {
    MINUTE_LIMIT: AdmissionDenied.MINUTE_LIMIT,
    DAY_LIMIT: AdmissionDenied.DAY_LIMIT,
}


@dataclass
class HandlerResult:
    """Response body plus the admission headroom for the rate limit header."""
    payload: Any
    remaining: int
    state: RequestState = RequestState.COMPLETED


class RequestTrace:
    """Tracks and logs the state of one request."""

    def __init__(self, logger, operation: str):
        self.logger = logger
        self.operation = operation
        self.state = RequestState.RECEIVED

    def advance(self, state: RequestState, **fields):
        self.state = state
        self.logger.debug("Request state", operation=self.operation, state=state.value, **fields)

    def finish(self, error: Optional[GatewayException] = None):
        if error is None:
            self.advance(RequestState.COMPLETED)
        elif isinstance(error, (ValidationError, ResolutionError, AdmissionDenied)):
            self.advance(RequestState.REJECTED, code=error.code)
        else:
            self.advance(RequestState.FAILED, code=error.code)


class GatewayHandlers:
    """Orchestrates validation, resolution, admission, dispatch and metering."""

    def __init__(
        self,
        resolver: ResourceResolver,
        admission: FixedWindowAdmissionController,
        ledger: UsageMeteringLedger,
        provider: ProviderClient,
        metrics: Optional[MetricsCollector] = None,
        default_timeout: float = 60.0,
        max_timeout: float = 120.0,
    ):
        self.resolver = resolver
        self.admission = admission
        self.ledger = ledger
        self.provider = provider
        self.metrics = metrics
        self.default_timeout = default_timeout
        self.max_timeout = max_timeout
        self.logger = get_logger("gateway.handlers")

    async def generate(self, request: GenerateRequest) -> HandlerResult:
        """Text or multimodal generation against a tenant's project."""
        trace = RequestTrace(self.logger, "generate")
        try:
            validated = validate_generate_request(request)
            trace.advance(RequestState.VALIDATED, project_id=validated.project_id)
            set_caller_context(caller_id=validated.user_id)

            try:
                resolution = await self.resolver.resolve(validated.project_id, validated.user_id)
            except Exception as e:
                self.logger.error("Project lookup failed", project_id=validated.project_id, error=str(e))
                raise StoreUnavailableError(details={"project_id": validated.project_id})

            if not resolution.found:
                raise ResolutionError(
                    ResolutionError.NOT_FOUND,
                    details={
                        "projectId": validated.project_id,
                        "userId": "provided" if validated.user_id else "missing",
                    },
                )
            context = resolution.context
            if not context.is_active:
                raise ResolutionError(ResolutionError.INACTIVE, details={"projectId": validated.project_id})
            trace.advance(RequestState.RESOLVED, owner_id=context.owner_id, source=context.source.value)
            set_caller_context(tenant_id=context.owner_id)

            decision = await self.admission.check(validated.project_id, context.owner_id, context.plan_tier)
            self._raise_if_denied(decision)
            trace.advance(RequestState.ADMITTED, remaining=decision.remaining)

            parts = [{"text": validated.prompt}]
            parts.extend({"inlineData": image} for image in validated.images)
            body = {
                "contents": [{"parts": parts}],
                "generationConfig": validated.generation_config,
                "safetySettings": SAFETY_SETTINGS,
            }

            trace.advance(RequestState.DISPATCHED, model=validated.model, images=len(validated.images))
            data = await self._dispatch(
                validated.model,
                self.provider.generate_content(validated.model, body),
                validated.timeout,
            )

            tokens_used = int((data.get("usageMetadata") or {}).get("totalTokenCount") or 0)
            self.ledger.charge_in_background(
                None, context.owner_id, validated.project_id, validated.model, tokens_used
            )
        except GatewayException as e:
            trace.finish(e)
            raise

        trace.finish()
        return HandlerResult(
            payload=GenerateResponse(
                response=data,
                metadata=GenerateMetadata(
                    tokens_used=tokens_used,
                    model=validated.model,
                    remaining=decision.remaining,
                ),
            ),
            remaining=decision.remaining,
        )

    async def generate_image(self, request: ImageRequest) -> HandlerResult:
        """Image generation billed to the requesting user."""
        trace = RequestTrace(self.logger, "generate_image")
        try:
            image = validate_image_request(request)
            trace.advance(RequestState.VALIDATED, model=image.model)
            set_caller_context(caller_id=image.user_id, tenant_id=image.user_id)

            scope = f"image-gen-{image.user_id}"
            decision = await self.admission.check(scope, image.user_id, IMAGE_PLAN_TIER)
            self._raise_if_denied(decision)
            trace.advance(RequestState.ADMITTED, remaining=decision.remaining)

            prompt = build_image_prompt(image)
            trace.advance(RequestState.DISPATCHED, model=image.model, references=len(image.reference_images))
            if image.is_imagen:
                image_data, mime_type = await self._generate_imagen(image, prompt)
            else:
                image_data, mime_type = await self._generate_native_image(image, prompt)

            if not image_data:
                self.logger.error("No image in provider response", model=image.model)
                raise ProviderError(
                    "No image generated",
                    status_code=502,
                    details={"reason": "The model did not return an image"},
                )

            self.ledger.charge_in_background(None, image.user_id, scope, image.model, 1)
        except GatewayException as e:
            trace.finish(e)
            raise

        trace.finish()
        return HandlerResult(
            payload=ImageResponse(
                image=image_data,
                mime_type=mime_type,
                metadata={
                    "model": image.model,
                    "aspect_ratio": image.aspect_ratio,
                    "style": image.style,
                    "resolution": image.resolution,
                    "thinking_level": image.thinking_level,
                    "remaining": decision.remaining,
                },
            ),
            remaining=decision.remaining,
        )

    async def usage(self, project_id: str) -> UsageSummary:
        project_id = sanitize_string(project_id, 100)
        if not project_id or not PROJECT_ID_PATTERN.match(project_id):
            raise ValidationError(ValidationError.MALFORMED_FIELD, "Valid Project ID required", {"field": "projectId"})
        try:
            return await self.ledger.usage_summary(project_id)
        except Exception as e:
            self.logger.error("Usage stats error", project_id=project_id, error=str(e))
            raise StoreUnavailableError(details={"project_id": project_id})

    async def credits(self, tenant_id: str) -> Dict[str, Any]:
        tenant_id = sanitize_string(tenant_id, 128)
        if not tenant_id:
            raise ValidationError(ValidationError.MISSING_FIELD, "Tenant ID required", {"field": "tenantId"})
        try:
            aggregate: Optional[CreditUsageAggregate] = await self.ledger.get_aggregate(tenant_id)
        except Exception as e:
            self.logger.error("Credit usage lookup failed", tenant_id=tenant_id, error=str(e))
            raise StoreUnavailableError(details={"tenant_id": tenant_id})
        if aggregate is None:
            raise ResolutionError(
                ResolutionError.NOT_FOUND,
                "No credit usage recorded for tenant",
                {"tenantId": tenant_id},
            )
        return aggregate.to_document()

    def _raise_if_denied(self, decision: AdmissionDecision):
        if decision.allowed:
            return
        code = DENIAL_CODES.get(decision.reason, AdmissionDenied.STORE_UNAVAILABLE)
        raise AdmissionDenied(
            code,
            decision.message or "Rate limit exceeded",
            reset_at=decision.reset_at,
            details={"limit": decision.limit} if decision.limit is not None else None,
        )

    async def _dispatch(self, model: str, call: Awaitable[Dict[str, Any]], timeout: Optional[float]) -> Dict[str, Any]:
        """Await a provider call under the request timeout."""
        seconds = clamp_timeout(timeout, self.default_timeout, self.max_timeout)
        start = time.time()
        outcome = "error"
        try:
            data = await asyncio.wait_for(call, timeout=seconds)
            outcome = "success"
            return data
        except asyncio.TimeoutError:
            outcome = "timeout"
            self.logger.error("Provider call timed out", model=model, timeout_seconds=seconds)
            raise ProviderError(
                "Provider request timed out",
                status_code=504,
                code=ProviderError.PROVIDER_TIMEOUT,
                details={"model": model, "timeout_seconds": seconds},
            )
        finally:
            if self.metrics:
                self.metrics.observe_histogram(
                    "provider_request_duration_seconds",
                    time.time() - start,
                    model=model,
                    outcome=outcome,
                )

    async def _generate_imagen(self, image: ValidatedImage, prompt: str):
        body = {
            "instances": [{"prompt": prompt}],
            "parameters": {
                "sampleCount": 1,
                "aspectRatio": image.aspect_ratio,
                "personGeneration": image.person_generation,
                "imageSize": "2K" if image.resolution in ("2K", "4K") else "1K",
            },
        }
        data = await self._dispatch(image.model, self.provider.generate_images(image.model, body), image.timeout)
        predictions = data.get("predictions") or []
        if predictions and predictions[0].get("bytesBase64Encoded"):
            return predictions[0]["bytesBase64Encoded"], predictions[0].get("mimeType") or "image/png"
        return None, None

    async def _generate_native_image(self, image: ValidatedImage, prompt: str):
        parts = [{"inlineData": reference} for reference in image.reference_images]
        if image.reference_images:
            parts.append({"text": f"Using the provided reference images as style guide, generate an image: {prompt}"})
        else:
            parts.append({"text": f"Generate an image: {prompt}"})

        generation_config: Dict[str, Any] = {
            "responseModalities": ["IMAGE", "TEXT"],
            "temperature": image.temperature,
        }
        if image.thinking_level and image.thinking_level != "none":
            generation_config["thinkingConfig"] = {"thinkingLevel": image.thinking_level}

        body = {"contents": [{"role": "user", "parts": parts}], "generationConfig": generation_config}
        data = await self._dispatch(image.model, self.provider.generate_content(image.model, body), image.timeout)

        candidates = data.get("candidates") or []
        if candidates:
            for part in (candidates[0].get("content") or {}).get("parts") or []:
                inline = part.get("inlineData") or {}
                if inline.get("data"):
                    return inline["data"], inline.get("mimeType") or "image/png"
        return None, None
