"""Admission control for task submission.

Two independent checks run before a task is persisted:

- Rate limit: fixed window counter per tenant (N submissions per
  window). The counter key expires with the window, which resets it.
- Quota: monthly counter per tenant + task type + billing period,
  capped by the tenant's subscription tier. ``-1`` means unlimited.

Both use atomic increments on the result store, so concurrent
submitters cannot overshoot a limit.
"""

from typing import Awaitable, Callable, Optional, Union

import structlog

from core.constants import SubscriptionTier, TaskType
from core.exceptions import QuotaExceededError, RateLimitedError
from core.result_store import ResultStore, rate_limit_key, tenant_tier_key, usage_key
from core.utils import month_key

logger = structlog.get_logger(__name__)

UNLIMITED = -1

# ─── Quota configuration ──────────────────────────────────────────────────
# Format: { tier: { task_type: monthly_limit } }
TIER_QUOTAS: dict[str, dict[str, int]] = {
    SubscriptionTier.FREE.value: {
        TaskType.ARCHITECT.value: 10,
        TaskType.DESIGN.value: 10,
        TaskType.CODE.value: 5,
        TaskType.ANALYZE.value: 5,
        TaskType.DEPLOY.value: 1,
        TaskType.EXPORT.value: 5,
    },
    SubscriptionTier.STARTER.value: {
        TaskType.ARCHITECT.value: 100,
        TaskType.DESIGN.value: 100,
        TaskType.CODE.value: 50,
        TaskType.ANALYZE.value: 50,
        TaskType.DEPLOY.value: 10,
        TaskType.EXPORT.value: 50,
    },
    SubscriptionTier.PROFESSIONAL.value: {
        TaskType.ARCHITECT.value: 500,
        TaskType.DESIGN.value: 500,
        TaskType.CODE.value: 250,
        TaskType.ANALYZE.value: 250,
        TaskType.DEPLOY.value: 50,
        TaskType.EXPORT.value: 250,
    },
    SubscriptionTier.ENTERPRISE.value: {
        TaskType.ARCHITECT.value: UNLIMITED,
        TaskType.DESIGN.value: UNLIMITED,
        TaskType.CODE.value: UNLIMITED,
        TaskType.ANALYZE.value: UNLIMITED,
        TaskType.DEPLOY.value: UNLIMITED,
        TaskType.EXPORT.value: UNLIMITED,
    },
}

TierResolver = Callable[[str], Awaitable[str]]


class FixedWindowRateLimiter:
    """Per-tenant submission counter reset every ``window_seconds``."""

    def __init__(self, store: ResultStore, max_requests: int = 100, window_seconds: int = 60):
        self._store = store
        self.max_requests = max_requests
        self.window_seconds = window_seconds

    async def check(self, tenant_id: str) -> int:
        """Count one submission and raise if the window is exhausted.

        Returns:
            The submission count within the current window.

        Raises:
            RateLimitedError: the tenant is over its limit.
        """
        current = await self._store.incr(rate_limit_key(tenant_id), ttl=self.window_seconds)
        if current > self.max_requests:
            logger.warning(
                "Rate limit exceeded",
                tenant_id=tenant_id,
                count=current,
                limit=self.max_requests,
            )
            raise RateLimitedError(tenant_id, retry_after=self.window_seconds)
        return current

    async def refund(self, tenant_id: str) -> None:
        """Give back a submission counted by ``check`` that was then refused."""
        key = rate_limit_key(tenant_id)
        # An expired window has nothing left to give back
        if await self._store.get(key) is None:
            return
        await self._store.decr(key)


class QuotaManager:
    """Monthly per-tenant, per-task-type admission quota."""

    def __init__(
        self,
        store: ResultStore,
        tier_resolver: Optional[TierResolver] = None,
        default_tier: str = SubscriptionTier.FREE.value,
        default_limit: int = UNLIMITED,
        usage_ttl: int = 2678400,
        quotas: Optional[dict[str, dict[str, int]]] = None,
    ):
        self._store = store
        self._tier_resolver = tier_resolver or self._tier_from_store
        self.default_tier = default_tier
        self.default_limit = default_limit
        self.usage_ttl = usage_ttl
        self.quotas = quotas or TIER_QUOTAS

    async def _tier_from_store(self, tenant_id: str) -> str:
        return await self._store.get(tenant_tier_key(tenant_id)) or self.default_tier

    async def set_tier(self, tenant_id: str, tier: Union[str, SubscriptionTier]) -> None:
        """Record a tenant's tier for the default store-backed resolver."""
        value = tier.value if isinstance(tier, SubscriptionTier) else tier
        await self._store.put(tenant_tier_key(tenant_id), value)

    async def get_limit(self, tenant_id: str, task_type: str) -> int:
        tier = await self._tier_resolver(tenant_id)
        tier_quotas = self.quotas.get(tier)
        if tier_quotas is None:
            # Unknown tier: treat like the most restrictive default
            tier_quotas = self.quotas.get(self.default_tier, {})
        return tier_quotas.get(task_type, self.default_limit)

    async def get_usage(self, tenant_id: str, task_type: str) -> int:
        raw = await self._store.get(usage_key(tenant_id, task_type, month_key()))
        return int(raw) if raw else 0

    async def reserve(self, tenant_id: str, task_type: str) -> bool:
        """Consume one unit of quota.

        Returns:
            True if a unit was counted, False if the type is unlimited
            (nothing to release later).

        Raises:
            QuotaExceededError: the billing period's limit is reached.
        """
        limit = await self.get_limit(tenant_id, task_type)
        if limit == UNLIMITED:
            return False

        key = usage_key(tenant_id, task_type, month_key())
        usage = await self._store.incr(key, ttl=self.usage_ttl)
        if usage > limit:
            await self._store.decr(key)
            logger.warning(
                "Quota exceeded",
                tenant_id=tenant_id,
                task_type=task_type,
                limit=limit,
            )
            raise QuotaExceededError(tenant_id, task_type, limit)
        return True

    async def release(self, tenant_id: str, task_type: str) -> None:
        """Give back a unit taken by ``reserve`` (admission rolled back)."""
        await self._store.decr(usage_key(tenant_id, task_type, month_key()))
