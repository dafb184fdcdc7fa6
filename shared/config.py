"""
Shared configuration management for the AI Credit Gateway.
"""

from typing import Dict, List, Optional

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


DEFAULT_RATE_LIMIT_TIERS: Dict[str, Dict[str, int]] = {
    "FREE": {"per_minute": 10, "per_day": 1000},
    "PRO": {"per_minute": 50, "per_day": 10000},
    "ENTERPRISE": {"per_minute": 200, "per_day": 100000},
}

# Fields looked up by value in each collection; the Redis store keeps an index for them.
DEFAULT_INDEXED_FIELDS: Dict[str, List[str]] = {
    "api_usage": ["resource_id"],
    "ai_credit_transactions": ["tenant_id"],
    "tenant_memberships": ["user_id"],
}

# Environments where per-process state is acceptable.
IN_PROCESS_ENVS = ("local", "test")

DEFAULT_SYNTHETIC_PREFIXES: List[str] = [
    "template-",
    "assistant-",
    "global-",
    "onboarding-",
    "cms-",
    "leads-",
    "finance-",
    "domain-",
    "appointment-",
    "content-",
    "enhance-",
    "ai-",
    "chatbot-",
    "quimera-chat-",
]


class BaseConfig(BaseSettings):
    """Base configuration class with common settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="AIGW_",
        case_sensitive=False,
        extra="ignore",
    )

    # Environment
    env: str = Field(default="local")
    log_level: str = Field(default="info")

    # Storage
    store_backend: Optional[str] = Field(
        default=None,
        description="memory | redis; defaults to memory only for local and test environments",
    )
    redis_url: str = Field(default="redis://localhost:6379/0")
    redis_key_prefix: str = Field(default="aigw")
    redis_indexed_fields: Dict[str, List[str]] = Field(
        default_factory=lambda: {k: list(v) for k, v in DEFAULT_INDEXED_FIELDS.items()}
    )

    # Provider
    provider_base_url: str = Field(default="https://generativelanguage.googleapis.com/v1beta")
    provider_api_key: Optional[str] = Field(default=None)
    provider_timeout_seconds: float = Field(default=60.0)
    max_provider_timeout_seconds: float = Field(default=120.0)

    # Admission control
    rate_limit_tiers: Dict[str, Dict[str, int]] = Field(
        default_factory=lambda: {k: dict(v) for k, v in DEFAULT_RATE_LIMIT_TIERS.items()}
    )
    default_plan_tier: str = Field(default="FREE")
    partitioned_prefixes: List[str] = Field(default_factory=lambda: ["template-"])
    privileged_remaining: int = Field(default=1000)

    # Privilege
    privileged_identities: List[str] = Field(default_factory=list)
    privileged_roles: List[str] = Field(default_factory=lambda: ["owner", "superadmin"])

    # Resolution
    synthetic_prefixes: List[str] = Field(default_factory=lambda: list(DEFAULT_SYNTHETIC_PREFIXES))

    # Metering
    default_credits_included: int = Field(default=30)
    daily_usage_window: int = Field(default=30)
    billing_period_days: int = Field(default=30)

    # HTTP
    cors_allow_origins: List[str] = Field(default_factory=lambda: ["*"])

    @field_validator("rate_limit_tiers")
    @classmethod
    def validate_rate_limit_tiers(cls, tiers: Dict[str, Dict[str, int]]) -> Dict[str, Dict[str, int]]:
        normalized = {}
        for name, limits in tiers.items():
            for key in ("per_minute", "per_day"):
                if not isinstance(limits.get(key), int) or limits[key] < 1:
                    raise ValueError(f"rate limit tier {name} needs a positive integer {key}")
            normalized[name.upper()] = limits
        return normalized

    @model_validator(mode="after")
    def resolve_defaults(self):
        self.default_plan_tier = self.default_plan_tier.upper()
        if self.default_plan_tier not in self.rate_limit_tiers:
            raise ValueError(f"default plan tier {self.default_plan_tier} has no rate limits")
        if self.store_backend is None:
            self.store_backend = "memory" if self.env in IN_PROCESS_ENVS else "redis"
        if self.store_backend not in ("memory", "redis"):
            raise ValueError(f"unknown store backend {self.store_backend}")
        return self


class ServiceConfig(BaseConfig):
    """Service-specific configuration."""

    service_name: str
    port: int
    host: str = "0.0.0.0"

    def __init__(self, service_name: str, port: int, **kwargs):
        super().__init__(service_name=service_name, port=port, **kwargs)


def get_config(service_name: str, port: int, **overrides) -> ServiceConfig:
    """Get configuration for a specific service."""
    return ServiceConfig(service_name=service_name, port=port, **overrides)
