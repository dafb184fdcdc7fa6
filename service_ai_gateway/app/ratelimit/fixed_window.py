"""
Fixed-window admission controller.

Counts requests per (scope, minute) and (scope, day) in the document store.
The check reads both counters before incrementing them, so a burst arriving
exactly at the limit can be admitted slightly past the cap.
"""

from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Iterable, Optional

from shared.logging import get_logger
from shared.metrics import MetricsCollector
from ..domain.models import AdmissionDecision
from ..domain.privilege import PrivilegeOracle
from ..storage.base import DocumentStore

MINUTE_COLLECTION = "rate_limits_minutes"
DAY_COLLECTION = "rate_limits_days"

MINUTE_LIMIT = "MINUTE_LIMIT"
DAY_LIMIT = "DAY_LIMIT"
STORE_UNAVAILABLE = "STORE_UNAVAILABLE"
PRIVILEGED = "PRIVILEGED"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def minute_window(now: datetime) -> str:
    return now.strftime("%Y%m%d%H%M")


def day_window(now: datetime) -> str:
    return now.strftime("%Y%m%d")


def next_midnight(now: datetime) -> datetime:
    tomorrow = now + timedelta(days=1)
    return tomorrow.replace(hour=0, minute=0, second=0, microsecond=0)


class FixedWindowAdmissionController:
    """Minute and day request budgets per scope, keyed by plan tier."""

    def __init__(
        self,
        store: DocumentStore,
        privilege: PrivilegeOracle,
        tiers: Dict[str, Dict[str, int]],
        default_tier: str = "FREE",
        partitioned_prefixes: Iterable[str] = ("template-",),
        privileged_remaining: int = 1000,
        metrics: Optional[MetricsCollector] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.store = store
        self.privilege = privilege
        self.tiers = tiers
        self.default_tier = default_tier
        self.partitioned_prefixes = tuple(partitioned_prefixes)
        self.privileged_remaining = privileged_remaining
        self.metrics = metrics
        self.clock = clock
        self.logger = get_logger("gateway.admission")

    def limits_for(self, plan_tier: Optional[str]) -> Dict[str, int]:
        tier = (plan_tier or self.default_tier).upper()
        return self.tiers.get(tier) or self.tiers[self.default_tier]

    def effective_scope(self, scope_key: str, caller_id: Optional[str]) -> str:
        """Shared scopes are counted per caller so one caller cannot drain them."""
        if scope_key.startswith(self.partitioned_prefixes):
            return f"{scope_key}_{caller_id or 'anonymous'}"
        return scope_key

    async def check(self, scope_key: str, caller_id: Optional[str], plan_tier: Optional[str] = None) -> AdmissionDecision:
        """Decide whether one more request fits in the current windows.

        Any storage or tier lookup failure denies the request.
        """
        if await self.privilege.is_privileged(caller_id):
            decision = AdmissionDecision(allowed=True, remaining=self.privileged_remaining, reason=PRIVILEGED)
            self._record(decision)
            return decision

        now = self.clock()
        scope = self.effective_scope(scope_key, caller_id)
        minute_key = f"{scope}_{minute_window(now)}"
        day_key = f"{scope}_{day_window(now)}"

        try:
            limits = self.limits_for(plan_tier)
            per_minute = limits["per_minute"]
            per_day = limits["per_day"]

            minute_doc = await self.store.get(MINUTE_COLLECTION, minute_key)
            minute_count = int((minute_doc or {}).get("count", 0) or 0)
            if minute_count >= per_minute:
                decision = AdmissionDecision(
                    allowed=False,
                    remaining=0,
                    reset_at=now + timedelta(seconds=60),
                    reason=MINUTE_LIMIT,
                    message="Rate limit exceeded: Too many requests per minute",
                    limit=per_minute,
                )
                return self._deny(decision, scope, minute_count)

            day_doc = await self.store.get(DAY_COLLECTION, day_key)
            day_count = int((day_doc or {}).get("count", 0) or 0)
            if day_count >= per_day:
                decision = AdmissionDecision(
                    allowed=False,
                    remaining=0,
                    reset_at=next_midnight(now),
                    reason=DAY_LIMIT,
                    message="Rate limit exceeded: Daily quota exhausted",
                    limit=per_day,
                )
                return self._deny(decision, scope, day_count)

            fields = {"scope_key": scope, "caller_id": caller_id, "updated_at": now.isoformat()}
            await self.store.increment(MINUTE_COLLECTION, minute_key, {"count": 1}, fields={**fields, "window": minute_window(now)})
            await self.store.increment(DAY_COLLECTION, day_key, {"count": 1}, fields={**fields, "window": day_window(now)})

        except Exception as e:
            self.logger.error("Rate limit check error", scope_key=scope, error=str(e))
            decision = AdmissionDecision(
                allowed=False,
                remaining=0,
                reason=STORE_UNAVAILABLE,
                message="Rate limit service unavailable. Please try again later.",
            )
            self._record(decision)
            return decision

        decision = AdmissionDecision(
            allowed=True,
            remaining=max(0, per_minute - minute_count - 1),
            limit=per_minute,
        )
        self._record(decision)
        return decision

    def _deny(self, decision: AdmissionDecision, scope: str, count: int) -> AdmissionDecision:
        self.logger.warning(
            "Rate limit exceeded",
            scope_key=scope,
            reason=decision.reason,
            current_count=count,
            limit=decision.limit,
        )
        self._record(decision)
        return decision

    def _record(self, decision: AdmissionDecision):
        if self.metrics:
            self.metrics.record_admission(decision.allowed, decision.reason)
