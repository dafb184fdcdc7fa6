"""
Resource resolver.

Maps a resource id (and optional caller id) to the tenant context that owns
it. Locations are checked in a fixed order and the first match wins:

1. synthetic namespaces (no storage lookup)
2. the caller's own projects
3. the global project collection
4. the published/public collection
"""

from typing import Any, Dict, Iterable, Optional, Tuple

from shared.logging import get_logger
from ..storage.base import DocumentStore, get_path
from .models import ResolutionResult, ResolutionSource, TenantContext

GLOBAL_PROJECTS = "projects"
PUBLIC_PROJECTS = "public_projects"
ANONYMOUS_OWNER = "anonymous"

# Legacy records use camelCase, newer ones snake_case.
OWNER_FIELDS = ("owner_id", "userId", "user_id")
PLAN_FIELDS = ("plan_tier", "planType", "plan_type")
ACTIVE_FIELDS = ("ai_assistant_config.is_active", "aiAssistantConfig.isActive")


def caller_projects_collection(caller_id: str) -> str:
    return f"users/{caller_id}/projects"


def _first(record: Dict[str, Any], paths: Tuple[str, ...]) -> Any:
    for path in paths:
        value = get_path(record, path)
        if value is not None:
            return value
    return None


class ResourceResolver:
    """Resolve resource ids to tenant contexts."""

    def __init__(
        self,
        store: DocumentStore,
        synthetic_prefixes: Iterable[str] = (),
        default_plan_tier: str = "FREE",
    ):
        self.store = store
        self.synthetic_prefixes = tuple(synthetic_prefixes)
        self.default_plan_tier = default_plan_tier
        self.logger = get_logger("gateway.resolver")

    def is_synthetic(self, resource_id: str, caller_id: Optional[str] = None) -> bool:
        if resource_id == ANONYMOUS_OWNER:
            return True
        if caller_id and resource_id == caller_id:
            return True
        return resource_id.startswith(self.synthetic_prefixes)

    async def resolve(self, resource_id: str, caller_id: Optional[str] = None) -> ResolutionResult:
        """Find the owning tenant context for ``resource_id``.

        Storage errors propagate to the caller.
        """
        if self.is_synthetic(resource_id, caller_id):
            return ResolutionResult(
                found=True,
                context=TenantContext(
                    owner_id=caller_id or ANONYMOUS_OWNER,
                    plan_tier=self.default_plan_tier,
                    is_active=True,
                    resource_id=resource_id,
                    source=ResolutionSource.SYNTHETIC,
                ),
            )

        if caller_id:
            record = await self.store.get(caller_projects_collection(caller_id), resource_id)
            if record is not None:
                return self._found(resource_id, record, ResolutionSource.CALLER_SCOPED, owner=caller_id)

        record = await self.store.get(GLOBAL_PROJECTS, resource_id)
        if record is not None:
            return self._found(resource_id, record, ResolutionSource.GLOBAL, fallback_owner="unknown")

        record = await self.store.get(PUBLIC_PROJECTS, resource_id)
        if record is not None:
            return self._found(resource_id, record, ResolutionSource.PUBLIC, fallback_owner="public")

        self.logger.info("Resource not found", resource_id=resource_id, caller_provided=bool(caller_id))
        return ResolutionResult.not_found()

    def _found(
        self,
        resource_id: str,
        record: Dict[str, Any],
        source: ResolutionSource,
        owner: Optional[str] = None,
        fallback_owner: str = "unknown",
    ) -> ResolutionResult:
        owner_id = owner or _first(record, OWNER_FIELDS) or fallback_owner
        plan_tier = _first(record, PLAN_FIELDS) or self.default_plan_tier
        is_active = _first(record, ACTIVE_FIELDS)

        context = TenantContext(
            owner_id=owner_id,
            plan_tier=str(plan_tier).upper(),
            # Records written before the flag existed are enabled.
            is_active=True if is_active is None else bool(is_active),
            resource_id=resource_id,
            source=source,
        )
        self.logger.debug(
            "Resource resolved",
            resource_id=resource_id,
            source=source.value,
            owner_id=owner_id,
            plan_tier=context.plan_tier,
        )
        return ResolutionResult(found=True, context=context)
