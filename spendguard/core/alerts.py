"""Threshold alerts on spend aggregates."""

import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Callable, Dict, Iterable, List, Optional, Protocol, Set, Tuple

from spendguard.core.budget import BudgetLedger, BudgetScope, PeriodType, SpendAggregate, SpendUpdate
from spendguard.utils.helpers import format_percentage, utcnow

logger = logging.getLogger(__name__)

AggregateKey = Tuple[BudgetScope, PeriodType, datetime]


class AlertSeverity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @classmethod
    def for_threshold(cls, threshold_percentage: int) -> "AlertSeverity":
        if threshold_percentage >= 100:
            return cls.CRITICAL
        if threshold_percentage >= 90:
            return cls.HIGH
        if threshold_percentage >= 80:
            return cls.MEDIUM
        return cls.LOW


@dataclass(frozen=True)
class AlertEvent:
    """A threshold crossing. Written once per (scope, period_type, period, threshold).

    ``request_id`` is the request whose recorded spend crossed the threshold.
    """

    scope: BudgetScope
    period_type: PeriodType
    period_start: datetime
    threshold_percentage: int
    spend_at_trigger: Decimal
    limit_at_trigger: Decimal
    timestamp: datetime
    severity: AlertSeverity
    request_id: Optional[str] = None

    @property
    def percentage(self) -> Decimal:
        if self.limit_at_trigger == 0:
            return Decimal(100)
        return self.spend_at_trigger / self.limit_at_trigger * 100


class AlertStore(Protocol):
    """Side table of fired thresholds."""

    def fired_thresholds(
        self, scope: BudgetScope, period_type: PeriodType, period_start: datetime
    ) -> Set[int]:
        ...

    def record_alert(self, event: AlertEvent) -> bool:
        """Persist ``event``; False if that threshold already fired this period."""
        ...

    def alerts_for_request(self, request_id: str) -> List[AlertEvent]:
        """Persisted events whose crossing was caused by ``request_id``."""
        ...


class AlertDispatcher:
    """Compares aggregates with their limits and produces unfired AlertEvents."""

    def __init__(
        self,
        store: AlertStore,
        ledger: BudgetLedger,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.ledger = ledger
        self._clock = clock

    def evaluate(self, aggregate: SpendAggregate, request_id: Optional[str] = None) -> List[AlertEvent]:
        """Fire every crossed, not yet fired threshold for ``aggregate``.

        Args:
            aggregate: Aggregate after the spend update
            request_id: Request whose spend produced ``aggregate``, if known

        Returns:
            New events in ascending threshold order
        """
        limit = self.ledger.get_limit(aggregate.scope, aggregate.period_type)
        if limit is None or not limit.alert_thresholds:
            return []

        if limit.limit_amount > 0:
            percentage = aggregate.accumulated_amount / limit.limit_amount * 100
        elif aggregate.accumulated_amount > 0:
            percentage = Decimal("Infinity")
        else:
            return []

        crossed = [t for t in limit.alert_thresholds if percentage >= t]
        if not crossed:
            return []

        already_fired = self.store.fired_thresholds(
            aggregate.scope, aggregate.period_type, aggregate.period_start
        )
        events: List[AlertEvent] = []
        for threshold in crossed:
            if threshold in already_fired:
                continue
            event = AlertEvent(
                scope=aggregate.scope,
                period_type=aggregate.period_type,
                period_start=aggregate.period_start,
                threshold_percentage=threshold,
                spend_at_trigger=aggregate.accumulated_amount,
                limit_at_trigger=limit.limit_amount,
                timestamp=self._clock(),
                severity=AlertSeverity.for_threshold(threshold),
                request_id=request_id,
            )
            if not self.store.record_alert(event):
                continue
            logger.info(
                "Budget threshold %s%% crossed for %s %s (%s used)",
                threshold,
                aggregate.scope,
                aggregate.period_type.value,
                format_percentage(percentage) if percentage.is_finite() else "inf",
            )
            events.append(event)
        return events

    def evaluate_updates(
        self, updates: Iterable[SpendUpdate], request_id: Optional[str] = None
    ) -> List[AlertEvent]:
        """Evaluate every aggregate touched by a recording, replays included.

        With a ``request_id`` the result is every persisted event that request
        caused, not only the ones fired by this call. A recording attempt that
        persisted alerts and then failed hands them to its retry this way.

        Returns:
            Events in update order, ascending threshold within an aggregate
        """
        updates = list(updates)
        events: List[AlertEvent] = []
        for update in updates:
            events.extend(self.evaluate(update.aggregate, request_id))
        if request_id is None:
            return events

        caused: Dict[AggregateKey, List[AlertEvent]] = {}
        for event in self.store.alerts_for_request(request_id):
            key = (event.scope, event.period_type, event.period_start)
            caused.setdefault(key, []).append(event)

        ordered: List[AlertEvent] = []
        for update in updates:
            aggregate = update.aggregate
            found = caused.pop((aggregate.scope, aggregate.period_type, aggregate.period_start), [])
            ordered.extend(sorted(found, key=lambda event: event.threshold_percentage))
        return ordered
