"""Budget scopes, limits, spend aggregates and the ledger that enforces them.

A request is checked against a stack of scopes (its user, then its project and
organization when present). Each scope may carry one active limit per period
type. Limits and spend figures are cached independently with their own TTLs
and are also invalidated explicitly, per (scope, period), whenever they change.
"""

import logging
import time
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeoutError
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional, Protocol, Tuple, Union

from spendguard.core.cache import TTLCache
from spendguard.utils.helpers import format_cost, to_decimal, utcnow

logger = logging.getLogger(__name__)

DEFAULT_ALERT_THRESHOLDS: Tuple[int, ...] = (80, 95, 100)


class ScopeType(str, Enum):
    USER = "user"
    PROJECT = "project"
    ORGANIZATION = "organization"


class PeriodType(str, Enum):
    """Window a limit applies to. Per-request limits have no aggregate."""

    PER_REQUEST = "per_request"
    DAILY = "daily"
    MONTHLY = "monthly"

    @property
    def accumulates(self) -> bool:
        return self is not PeriodType.PER_REQUEST


ACCUMULATING_PERIODS: Tuple[PeriodType, ...] = (PeriodType.DAILY, PeriodType.MONTHLY)


@dataclass(frozen=True)
class BudgetScope:
    """Subject of enforcement."""

    scope_type: ScopeType
    scope_id: str

    def __str__(self) -> str:
        return f"{self.scope_type.value}:{self.scope_id}"

    @classmethod
    def user(cls, scope_id: Any) -> "BudgetScope":
        return cls(ScopeType.USER, str(scope_id))

    @classmethod
    def project(cls, scope_id: Any) -> "BudgetScope":
        return cls(ScopeType.PROJECT, str(scope_id))

    @classmethod
    def organization(cls, scope_id: Any) -> "BudgetScope":
        return cls(ScopeType.ORGANIZATION, str(scope_id))


@dataclass(frozen=True)
class ScopeStack:
    """Ordered scopes a single request is checked against."""

    scopes: Tuple[BudgetScope, ...]

    def __post_init__(self) -> None:
        if not self.scopes:
            raise ValueError("A scope stack needs at least one scope")

    @classmethod
    def for_request(
        cls,
        user_id: Any,
        project_id: Optional[Any] = None,
        organization_id: Optional[Any] = None,
    ) -> "ScopeStack":
        scopes = [BudgetScope.user(user_id)]
        if project_id is not None:
            scopes.append(BudgetScope.project(project_id))
        if organization_id is not None:
            scopes.append(BudgetScope.organization(organization_id))
        return cls(tuple(scopes))

    @property
    def primary(self) -> BudgetScope:
        return self.scopes[0]

    def __iter__(self) -> Iterator[BudgetScope]:
        return iter(self.scopes)

    def __len__(self) -> int:
        return len(self.scopes)


@dataclass(frozen=True)
class BudgetLimit:
    """Configured spending limit for one (scope, period_type)."""

    scope: BudgetScope
    period_type: PeriodType
    limit_amount: Decimal
    currency: str = "USD"
    alert_thresholds: Tuple[int, ...] = DEFAULT_ALERT_THRESHOLDS
    is_active: bool = True

    def __post_init__(self) -> None:
        amount = to_decimal(self.limit_amount)
        if amount < 0:
            raise ValueError(f"limit_amount cannot be negative: {amount}")
        thresholds = tuple(sorted({int(t) for t in self.alert_thresholds}))
        if any(t <= 0 for t in thresholds):
            raise ValueError(f"alert thresholds must be positive percentages: {thresholds}")
        object.__setattr__(self, "limit_amount", amount)
        object.__setattr__(self, "alert_thresholds", thresholds)

    @property
    def warning_threshold(self) -> int:
        return self.alert_thresholds[0] if self.alert_thresholds else 80

    @property
    def critical_threshold(self) -> int:
        below_full = [t for t in self.alert_thresholds if self.warning_threshold < t < 100]
        return below_full[-1] if below_full else 100


@dataclass(frozen=True)
class SpendAggregate:
    """Accumulated spend for one (scope, period_type, period)."""

    scope: BudgetScope
    period_type: PeriodType
    period_start: datetime
    period_end: datetime
    accumulated_amount: Decimal = Decimal(0)


@dataclass(frozen=True)
class BudgetStatus:
    """Snapshot of a limit against its current spend."""

    scope: BudgetScope
    period_type: PeriodType
    limit_amount: Optional[Decimal]
    spent: Decimal
    remaining: Optional[Decimal]
    percentage: Optional[Decimal]
    level: str

    @property
    def exists(self) -> bool:
        return self.limit_amount is not None


@dataclass(frozen=True)
class Allow:
    """Admission decision: the call may proceed.

    ``degraded`` marks allows granted because the check itself failed.
    """

    estimated_cost: Optional[Decimal] = None
    degraded: bool = False

    allowed = True


@dataclass(frozen=True)
class Deny:
    """Admission decision: the call would exceed a limit."""

    reason: str
    scope: BudgetScope
    period_type: PeriodType
    limit: Decimal
    current_spend: Decimal
    estimated_cost: Decimal
    currency: str = "USD"

    allowed = False
    status_code = 429

    def to_payload(self) -> Dict[str, Any]:
        """Structured denial suitable for a rate-limit style error response."""
        return {
            "error": {
                "type": "budget_exceeded",
                "message": self.reason,
                "scope": str(self.scope),
                "period_type": self.period_type.value,
                "current_spend": str(self.current_spend),
                "limit": str(self.limit),
                "estimated_cost": str(self.estimated_cost),
                "currency": self.currency,
            }
        }

    def raise_error(self) -> None:
        """Raise this denial as BudgetExceededError."""
        raise BudgetExceededError(self)


Decision = Union[Allow, Deny]


class BudgetExceededError(Exception):
    """Exception form of a Deny, for callers that prefer raising."""

    def __init__(self, denial: Deny):
        self.denial = denial
        super().__init__(denial.reason)


class StoreTimeoutError(TimeoutError):
    """A budget store read took longer than the hot-path budget."""


def period_bounds(period_type: PeriodType, at: datetime) -> Tuple[datetime, datetime]:
    """Return [start, end) of the UTC calendar period containing ``at``.

    Raises:
        ValueError: For per-request periods, which have no window
    """
    if at.tzinfo is None:
        at = at.replace(tzinfo=timezone.utc)
    at = at.astimezone(timezone.utc)

    if period_type is PeriodType.DAILY:
        start = at.replace(hour=0, minute=0, second=0, microsecond=0)
        return start, start + timedelta(days=1)
    if period_type is PeriodType.MONTHLY:
        start = at.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
        if start.month == 12:
            end = start.replace(year=start.year + 1, month=1)
        else:
            end = start.replace(month=start.month + 1)
        return start, end
    raise ValueError(f"{period_type.value} has no accumulation window")


class BudgetStore(Protocol):
    """Persistent budget collaborator. ``apply_spend`` must be an atomic,
    request-id keyed increment at the storage layer."""

    def get_limit(self, scope: BudgetScope, period_type: PeriodType) -> Optional[BudgetLimit]:
        ...

    def upsert_limit(self, limit: BudgetLimit) -> BudgetLimit:
        ...

    def get_aggregate(
        self, scope: BudgetScope, period_type: PeriodType, period_start: datetime
    ) -> Optional[SpendAggregate]:
        ...

    def apply_spend(
        self,
        request_id: str,
        scope: BudgetScope,
        period_type: PeriodType,
        period_start: datetime,
        period_end: datetime,
        amount: Decimal,
    ) -> Tuple[SpendAggregate, bool]:
        """Returns the aggregate after the call and whether the amount was applied
        (False when ``request_id`` was already recorded for this aggregate)."""
        ...


LimitKey = Tuple[BudgetScope, PeriodType]
SpendKey = Tuple[BudgetScope, PeriodType, datetime]


@dataclass
class SpendUpdate:
    """Result of recording one request against one aggregate."""

    aggregate: SpendAggregate
    applied: bool


class BudgetLedger:
    """Per-scope limits and accumulated spend, with cached reads.

    ``check`` is the pre-request admission check. Store reads on that path run
    on a small bounded pool and give up after ``store_timeout_seconds``.
    ``record_spend`` is the post-response increment; it is additive and
    idempotent per request id.
    """

    def __init__(
        self,
        store: BudgetStore,
        limit_cache_ttl: float = 300.0,
        spend_cache_ttl: float = 60.0,
        store_timeout_seconds: Optional[float] = 0.25,
        pool_size: int = 4,
        clock: Callable[[], datetime] = utcnow,
    ):
        """Initialize the ledger.

        Args:
            store: Persistent budget store
            limit_cache_ttl: Freshness window for limits (seconds)
            spend_cache_ttl: Freshness window for spend figures (seconds)
            store_timeout_seconds: Hot-path read budget; None disables it
            pool_size: Worker threads for timed reads
            clock: Current UTC time source
        """
        self.store = store
        self.store_timeout_seconds = store_timeout_seconds
        self._clock = clock
        self.limits: TTLCache[LimitKey, Optional[BudgetLimit]] = TTLCache(limit_cache_ttl)
        self.spend: TTLCache[SpendKey, Decimal] = TTLCache(spend_cache_ttl)
        self._executor = ThreadPoolExecutor(max_workers=pool_size, thread_name_prefix="spendguard-ledger")

    def now(self) -> datetime:
        return self._clock()

    def _deadline(self) -> Optional[float]:
        if self.store_timeout_seconds is None:
            return None
        return time.monotonic() + self.store_timeout_seconds

    def _timed(self, fn: Callable[..., Any], *args: Any, deadline: Optional[float] = None) -> Any:
        """Run a store read on the pool, giving up at ``deadline``.

        Without a deadline the read gets the full ``store_timeout_seconds``.
        """
        if self.store_timeout_seconds is None:
            return fn(*args)
        if deadline is None:
            deadline = self._deadline()
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            raise StoreTimeoutError(f"budget store reads exceeded {self.store_timeout_seconds}s")
        future = self._executor.submit(fn, *args)
        try:
            return future.result(timeout=remaining)
        except FutureTimeoutError:
            future.cancel()
            raise StoreTimeoutError(
                f"budget store reads exceeded {self.store_timeout_seconds}s"
            ) from None

    # --- Reads ---

    def get_limit(
        self, scope: BudgetScope, period_type: PeriodType, deadline: Optional[float] = None
    ) -> Optional[BudgetLimit]:
        """Active limit for (scope, period_type), or None."""
        limit = self.limits.get_or_load(
            (scope, period_type),
            lambda: self._timed(self.store.get_limit, scope, period_type, deadline=deadline),
        )
        if limit is None or not limit.is_active:
            return None
        return limit

    def current_spend(
        self,
        scope: BudgetScope,
        period_type: PeriodType,
        at: Optional[datetime] = None,
        deadline: Optional[float] = None,
    ) -> Decimal:
        """Accumulated spend for the period containing ``at`` (default: now)."""
        if not period_type.accumulates:
            return Decimal(0)
        period_start, _ = period_bounds(period_type, at or self.now())

        def load() -> Decimal:
            aggregate = self._timed(
                self.store.get_aggregate, scope, period_type, period_start, deadline=deadline
            )
            return aggregate.accumulated_amount if aggregate is not None else Decimal(0)

        return self.spend.get_or_load((scope, period_type, period_start), load)

    def warm(self, scopes: Iterable[BudgetScope], period_types: Optional[Iterable[PeriodType]] = None) -> int:
        """Load limits and current spend of ``scopes`` into the caches.

        A read that fails is logged and skipped; the entry then loads on first use.

        Returns:
            Number of cache entries loaded
        """
        period_types = list(period_types) if period_types is not None else list(PeriodType)
        warmed = 0
        for scope in scopes:
            for period_type in period_types:
                try:
                    self.get_limit(scope, period_type)
                    warmed += 1
                    if period_type.accumulates:
                        self.current_spend(scope, period_type)
                        warmed += 1
                except Exception as e:
                    logger.warning("Cache warm-up failed for %s %s: %s", scope, period_type.value, e)
        logger.info("Budget cache warm-up loaded %d entries", warmed)
        return warmed

    # --- Pre-request check ---

    def check(
        self,
        scopes: ScopeStack,
        estimated_cost: Decimal,
        per_request_override: Optional[Decimal] = None,
        at: Optional[datetime] = None,
    ) -> Decision:
        """Admission check for a request with ``estimated_cost``.

        The first (scope, period) whose ``current_spend + estimated_cost``
        exceeds its limit denies the request. All store reads of one check share
        a single ``store_timeout_seconds`` budget. Store failures propagate; the
        enforcement gate decides what to do with them.

        Args:
            scopes: Scope stack of the request
            estimated_cost: Estimated cost of the request
            per_request_override: Extra per-request limit for the primary scope
            at: Evaluation time (default: now)
        """
        estimated_cost = to_decimal(estimated_cost)
        at = at or self.now()
        deadline = self._deadline()

        for scope in scopes:
            for period_type in PeriodType:
                limit = self.get_limit(scope, period_type, deadline)
                limit_amount = limit.limit_amount if limit is not None else None
                currency = limit.currency if limit is not None else "USD"

                if (
                    period_type is PeriodType.PER_REQUEST
                    and scope == scopes.primary
                    and per_request_override is not None
                ):
                    override = to_decimal(per_request_override)
                    if limit_amount is None or override < limit_amount:
                        limit_amount = override

                if limit_amount is None:
                    continue

                current = self.current_spend(scope, period_type, at, deadline)
                if current + estimated_cost > limit_amount:
                    reason = (
                        f"Estimated cost {format_cost(estimated_cost, currency)} would exceed the "
                        f"{period_type.value} limit {format_cost(limit_amount, currency)} for {scope} "
                        f"(current spend {format_cost(current, currency)})"
                    )
                    return Deny(
                        reason=reason,
                        scope=scope,
                        period_type=period_type,
                        limit=limit_amount,
                        current_spend=current,
                        estimated_cost=estimated_cost,
                        currency=currency,
                    )

        return Allow(estimated_cost=estimated_cost)

    # --- Post-response recording ---

    def record_spend(
        self,
        request_id: str,
        scopes: ScopeStack,
        actual_cost: Decimal,
        at: Optional[datetime] = None,
    ) -> List[SpendUpdate]:
        """Add ``actual_cost`` to every accumulating aggregate of every scope.

        Replays of the same ``request_id`` are no-ops per aggregate, so a
        partially failed call can be retried as a whole. Each aggregate that
        changed has exactly its spend cache entry invalidated.

        Returns:
            One SpendUpdate per (scope, period), in stack order
        """
        actual_cost = to_decimal(actual_cost)
        if actual_cost < 0:
            raise ValueError(f"actual_cost cannot be negative: {actual_cost}")
        at = at or self.now()

        updates: List[SpendUpdate] = []
        for scope in scopes:
            for period_type in ACCUMULATING_PERIODS:
                period_start, period_end = period_bounds(period_type, at)
                aggregate, applied = self.store.apply_spend(
                    request_id, scope, period_type, period_start, period_end, actual_cost
                )
                if applied:
                    self.spend.invalidate((scope, period_type, period_start))
                else:
                    logger.debug(
                        "Request %s already recorded for %s %s", request_id, scope, period_type.value
                    )
                updates.append(SpendUpdate(aggregate=aggregate, applied=applied))
        return updates

    # --- Limit configuration ---

    def upsert_limit(self, limit: BudgetLimit) -> BudgetLimit:
        """Create or replace the limit for (scope, period_type) and invalidate it."""
        stored = self.store.upsert_limit(limit)
        self.invalidate_limit(limit.scope, limit.period_type)
        logger.info(
            "Budget limit for %s %s set to %s (active=%s)",
            limit.scope,
            limit.period_type.value,
            limit.limit_amount,
            limit.is_active,
        )
        return stored

    def invalidate_limit(self, scope: BudgetScope, period_type: PeriodType) -> None:
        self.limits.invalidate((scope, period_type))

    # --- Status ---

    def status(
        self,
        scope: BudgetScope,
        period_type: PeriodType,
        at: Optional[datetime] = None,
    ) -> BudgetStatus:
        """Limit, spend, remaining and level for (scope, period_type)."""
        limit = self.get_limit(scope, period_type)
        spent = self.current_spend(scope, period_type, at)
        if limit is None:
            return BudgetStatus(scope, period_type, None, spent, None, None, "none")

        remaining = max(Decimal(0), limit.limit_amount - spent)
        if limit.limit_amount > 0:
            percentage = spent / limit.limit_amount * 100
        else:
            percentage = Decimal(100) if spent > 0 else Decimal(0)

        if percentage >= limit.critical_threshold:
            level = "critical"
        elif percentage >= limit.warning_threshold:
            level = "warning"
        else:
            level = "normal"
        return BudgetStatus(scope, period_type, limit.limit_amount, spent, remaining, percentage, level)

    def close(self) -> None:
        self._executor.shutdown(wait=False)
