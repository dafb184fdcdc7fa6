"""
Domain models for the AI Credit Gateway.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class RequestState(str, Enum):
    """Lifecycle of a gateway request."""
    RECEIVED = "received"
    VALIDATED = "validated"
    RESOLVED = "resolved"
    ADMITTED = "admitted"
    DISPATCHED = "dispatched"
    COMPLETED = "completed"
    REJECTED = "rejected"
    FAILED = "failed"


class ResolutionSource(str, Enum):
    """Where a tenant context was found."""
    SYNTHETIC = "synthetic"
    CALLER_SCOPED = "caller_scoped"
    GLOBAL = "global"
    PUBLIC = "public"


@dataclass
class TenantContext:
    """Normalized owner of a resource. Never persisted."""
    owner_id: str
    plan_tier: str = "FREE"
    is_active: bool = True
    resource_id: Optional[str] = None
    source: Optional[ResolutionSource] = None


@dataclass
class ResolutionResult:
    found: bool
    context: Optional[TenantContext] = None

    @classmethod
    def not_found(cls) -> "ResolutionResult":
        return cls(found=False)


@dataclass
class AdmissionDecision:
    """Outcome of a rate limit check."""
    allowed: bool
    remaining: int = 0
    reset_at: Optional[datetime] = None
    reason: Optional[str] = None
    message: Optional[str] = None
    limit: Optional[int] = None


@dataclass(frozen=True)
class CreditTransaction:
    """One completed charge. Immutable once written.

    ``tokens_input`` and ``tokens_output`` are an estimated split of the total
    unit count, not figures reported by the provider.
    """
    tenant_id: str
    caller_id: str
    resource_id: str
    operation: str
    credits_used: int
    model: str
    tokens_input: int
    tokens_output: int
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_document(self) -> Dict[str, Any]:
        return {
            "tenant_id": self.tenant_id,
            "caller_id": self.caller_id,
            "resource_id": self.resource_id,
            "operation": self.operation,
            "credits_used": self.credits_used,
            "model": self.model,
            "tokens_input": self.tokens_input,
            "tokens_output": self.tokens_output,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass
class DailyUsage:
    date: str
    credits: int

    def to_document(self) -> Dict[str, Any]:
        return {"date": self.date, "credits": self.credits}


@dataclass
class CreditUsageAggregate:
    """Per-tenant rolling credit usage.

    Remaining and overage are derived from ``credits_included`` and
    ``credits_used`` so they always satisfy
    ``remaining = max(0, included - used)`` and
    ``overage = max(0, used - included)``.
    """
    tenant_id: str
    period_start: datetime
    period_end: datetime
    credits_included: int
    credits_used: int = 0
    usage_by_operation: Dict[str, int] = field(default_factory=dict)
    daily_usage: List[DailyUsage] = field(default_factory=list)

    @property
    def credits_remaining(self) -> int:
        return max(0, self.credits_included - self.credits_used)

    @property
    def credits_overage(self) -> int:
        return max(0, self.credits_used - self.credits_included)

    def to_document(self) -> Dict[str, Any]:
        return {
            "tenant_id": self.tenant_id,
            "period_start": self.period_start.isoformat(),
            "period_end": self.period_end.isoformat(),
            "credits_included": self.credits_included,
            "credits_used": self.credits_used,
            "credits_remaining": self.credits_remaining,
            "credits_overage": self.credits_overage,
            "usage_by_operation": dict(self.usage_by_operation),
            "daily_usage": [entry.to_document() for entry in self.daily_usage],
        }

    @classmethod
    def from_document(cls, tenant_id: str, document: Dict[str, Any]) -> "CreditUsageAggregate":
        return cls(
            tenant_id=document.get("tenant_id", tenant_id),
            period_start=_parse_datetime(document.get("period_start")),
            period_end=_parse_datetime(document.get("period_end")),
            credits_included=int(document.get("credits_included", 0) or 0),
            credits_used=int(document.get("credits_used", 0) or 0),
            usage_by_operation={
                key: int(value) for key, value in (document.get("usage_by_operation") or {}).items()
            },
            daily_usage=[
                DailyUsage(date=entry["date"], credits=int(entry.get("credits", 0)))
                for entry in document.get("daily_usage") or []
            ],
        )


def _parse_datetime(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value
    if isinstance(value, str) and value:
        return datetime.fromisoformat(value)
    return datetime.now(timezone.utc)


class InlineImage(BaseModel):
    """Base64 image attached to a generation request."""
    model_config = ConfigDict(populate_by_name=True)

    mime_type: Optional[str] = Field(None, alias="mimeType")
    data: Optional[str] = None


class GenerateRequest(BaseModel):
    """Text or multimodal generation request.

    Every field may be omitted or null. A value of the wrong JSON type is
    rejected as MALFORMED_FIELD before ``validation`` trims, caps and checks
    formats.
    """
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    project_id: Optional[str] = Field(None, alias="projectId")
    prompt: Optional[str] = None
    user_id: Optional[str] = Field(None, alias="userId")
    model: Optional[str] = None
    config: Optional[Dict[str, Any]] = None
    images: Optional[List[Any]] = None
    timeout: Optional[float] = None


class ImageRequest(BaseModel):
    """Image generation request."""
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    user_id: Optional[str] = Field(None, alias="userId")
    prompt: Optional[str] = None
    model: Optional[str] = None
    aspect_ratio: Optional[str] = Field(None, alias="aspectRatio")
    style: Optional[str] = None
    resolution: Optional[str] = None
    thinking_level: Optional[str] = Field(None, alias="thinkingLevel")
    person_generation: Optional[str] = Field(None, alias="personGeneration")
    temperature: Optional[float] = None
    negative_prompt: Optional[str] = Field(None, alias="negativePrompt")
    reference_images: Optional[List[Any]] = Field(None, alias="referenceImages")
    config: Optional[Dict[str, Any]] = None
    timeout: Optional[float] = None


class GenerateMetadata(BaseModel):
    tokens_used: int
    model: str
    remaining: int


class GenerateResponse(BaseModel):
    """Provider payload plus gateway metadata."""
    response: Dict[str, Any]
    metadata: GenerateMetadata


class ImageResponse(BaseModel):
    success: bool = True
    image: str
    mime_type: str = "image/png"
    metadata: Dict[str, Any] = Field(default_factory=dict)


class UsageSummary(BaseModel):
    """Per-project usage over the trailing window."""
    project_id: str
    period: str = "30days"
    total_requests: int
    total_tokens: int
    average_tokens_per_request: int
    usage: List[Dict[str, Any]] = Field(default_factory=list)
