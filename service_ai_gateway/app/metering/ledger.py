"""
Usage metering ledger.

Turns a completed provider call into a credit charge: a usage event, an
immutable transaction and an update of the tenant's rolling aggregate.
Charging runs off the request path and never raises to the caller.
"""

import asyncio
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Set

from shared.errors import MeteringError
from shared.logging import get_logger
from shared.metrics import MetricsCollector
from ..domain.models import CreditTransaction, CreditUsageAggregate, DailyUsage, UsageSummary
from ..domain.privilege import PrivilegeOracle, is_sentinel
from ..storage.base import DocumentStore
from .pricing import classify_operation, credits_for

USAGE_EVENTS = "api_usage"
TRANSACTIONS = "ai_credit_transactions"
AGGREGATES = "ai_credit_usage"
MEMBERSHIPS = "tenant_memberships"
USERS = "users"

# Share of total tokens attributed to input when the provider gives no split.
INPUT_TOKEN_SHARE = 0.3
OUTPUT_TOKEN_SHARE = 0.7


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def split_tokens(units: int) -> Dict[str, int]:
    """Estimated input/output split of a total token count."""
    return {
        "tokens_input": int(units * INPUT_TOKEN_SHARE),
        "tokens_output": int(units * OUTPUT_TOKEN_SHARE),
    }


def update_daily_usage(entries: List[DailyUsage], day: str, credits: int, window: int = 30) -> List[DailyUsage]:
    """Add ``credits`` to ``day`` and keep only the most recent ``window`` days, oldest first."""
    entries = [DailyUsage(date=entry.date, credits=entry.credits) for entry in entries]
    for entry in entries:
        if entry.date == day:
            entry.credits += credits
            break
    else:
        entries.append(DailyUsage(date=day, credits=credits))

    entries.sort(key=lambda entry: entry.date)
    return entries[-window:]


class UsageMeteringLedger:
    """Credit ledger backed by the document store."""

    def __init__(
        self,
        store: DocumentStore,
        privilege: PrivilegeOracle,
        metrics: Optional[MetricsCollector] = None,
        credits_included: int = 30,
        daily_usage_window: int = 30,
        billing_period_days: int = 30,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.store = store
        self.privilege = privilege
        self.metrics = metrics
        self.credits_included = credits_included
        self.daily_usage_window = daily_usage_window
        self.billing_period_days = billing_period_days
        self.clock = clock
        self.logger = get_logger("gateway.metering")
        self._tasks: Set[asyncio.Task] = set()

    @contextmanager
    def _stage(self, stage: str):
        try:
            yield
        except MeteringError:
            raise
        except Exception as e:
            raise MeteringError(stage, str(e)) from e

    async def charge(
        self,
        tenant_id_hint: Optional[str],
        caller_id: Optional[str],
        resource_id: str,
        model: str,
        units: int,
        operation: Optional[str] = None,
    ) -> Optional[CreditTransaction]:
        """Record a completed call.

        Returns the written transaction, or None when nothing was billed
        (privileged caller, no resolvable tenant, or a metering failure).
        """
        credits = credits_for(model)
        operation = operation or classify_operation(model)
        now = self.clock()

        try:
            with self._stage("usage_event"):
                await self.record_usage_event(resource_id, caller_id, units, model, credits, now)

            with self._stage("privilege"):
                privileged = await self.privilege.is_privileged(caller_id)
            if privileged:
                self.logger.info("Bypassing credit consumption for privileged caller", caller_id=caller_id)
                return None

            tenant_id = await self.resolve_tenant(caller_id, tenant_id_hint)
            if not tenant_id:
                self.logger.info("No billable tenant for caller", caller_id=caller_id, resource_id=resource_id)
                return None

            transaction = CreditTransaction(
                tenant_id=tenant_id,
                caller_id=caller_id or "",
                resource_id=resource_id,
                operation=operation,
                credits_used=credits,
                model=model,
                timestamp=now,
                **split_tokens(units),
            )
            with self._stage("transaction"):
                await self.store.add(TRANSACTIONS, transaction.to_document())

            with self._stage("aggregate"):
                await self._update_aggregate(tenant_id, credits, operation, now)

        except MeteringError as e:
            self.logger.error(
                "Metering failed",
                stage=e.stage,
                error=e.message,
                caller_id=caller_id,
                resource_id=resource_id,
                model=model,
            )
            if self.metrics:
                self.metrics.increment_counter("metering_failures_total", stage=e.stage)
            return None

        if self.metrics:
            self.metrics.record_credits(operation, credits)
        self.logger.info(
            "Credits charged",
            tenant_id=tenant_id,
            caller_id=caller_id,
            operation=operation,
            credits=credits,
            model=model,
        )
        return transaction

    def charge_in_background(self, *args: Any, **kwargs: Any) -> asyncio.Task:
        """Schedule ``charge`` without waiting for it."""
        task = asyncio.create_task(self.charge(*args, **kwargs))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self):
        """Wait for scheduled charges to finish."""
        if self._tasks:
            self.logger.info("Draining metering tasks", pending=len(self._tasks))
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def record_usage_event(
        self,
        resource_id: str,
        caller_id: Optional[str],
        units: int,
        model: str,
        credits: int,
        now: Optional[datetime] = None,
    ) -> str:
        return await self.store.add(USAGE_EVENTS, {
            "resource_id": resource_id,
            "caller_id": caller_id,
            "tokens_used": units,
            "model": model,
            "credits_used": credits,
            "timestamp": (now or self.clock()).isoformat(),
            "type": "gateway",
        })

    async def resolve_tenant(self, caller_id: Optional[str], tenant_id_hint: Optional[str] = None) -> Optional[str]:
        """Tenant billed for the caller's usage.

        Order: explicit hint, membership record, the account's tenant field,
        then the caller id itself. Lookup failures resolve to None.
        """
        if tenant_id_hint:
            return tenant_id_hint
        if is_sentinel(caller_id):
            return None

        try:
            memberships = await self.store.find(MEMBERSHIPS, "user_id", caller_id, limit=1)
            if memberships and memberships[0].get("tenant_id"):
                return memberships[0]["tenant_id"]

            account = await self.store.get(USERS, caller_id)
            if account:
                tenant_id = account.get("tenant_id") or account.get("tenantId")
                if tenant_id:
                    return tenant_id
        except Exception as e:
            self.logger.error("Error getting tenant for caller", caller_id=caller_id, error=str(e))
            return None

        return caller_id

    async def _update_aggregate(self, tenant_id: str, credits: int, operation: str, now: datetime):
        # Creation and the daily_usage splice are read-modify-write; only the
        # credit counters are atomic.
        await self.store.create(AGGREGATES, tenant_id, {
            "tenant_id": tenant_id,
            "period_start": now.isoformat(),
            "period_end": (now + timedelta(days=self.billing_period_days)).isoformat(),
            "credits_included": self.credits_included,
            "credits_used": 0,
        })

        await self.store.increment(
            AGGREGATES,
            tenant_id,
            {"credits_used": credits, f"usage_by_operation.{operation}": credits},
            fields={"last_updated": now.isoformat()},
        )

        document = await self.store.get(AGGREGATES, tenant_id) or {}
        aggregate = CreditUsageAggregate.from_document(tenant_id, document)
        daily_usage = update_daily_usage(
            aggregate.daily_usage, now.date().isoformat(), credits, self.daily_usage_window
        )

        await self.store.set(AGGREGATES, tenant_id, {
            "credits_remaining": aggregate.credits_remaining,
            "credits_overage": aggregate.credits_overage,
            "daily_usage": [entry.to_document() for entry in daily_usage],
        }, merge=True)

    async def get_aggregate(self, tenant_id: str) -> Optional[CreditUsageAggregate]:
        document = await self.store.get(AGGREGATES, tenant_id)
        if document is None:
            return None
        return CreditUsageAggregate.from_document(tenant_id, document)

    async def usage_summary(
        self,
        resource_id: str,
        days: int = 30,
        max_events: int = 1000,
        page_size: int = 100,
    ) -> UsageSummary:
        """Request and token totals for a resource over the trailing ``days``."""
        cutoff = self.clock() - timedelta(days=days)
        events = await self.store.find_recent(
            USAGE_EVENTS, "resource_id", resource_id, since=cutoff, limit=max_events
        )

        total_requests = len(events)
        total_tokens = sum(int(event.get("tokens_used") or 0) for event in events)
        return UsageSummary(
            project_id=resource_id,
            period=f"{days}days",
            total_requests=total_requests,
            total_tokens=total_tokens,
            average_tokens_per_request=round(total_tokens / total_requests) if total_requests else 0,
            usage=events[:page_size],
        )
