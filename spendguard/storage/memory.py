"""In-memory stores. Thread-safe; state is lost when the process exits."""

import threading
from dataclasses import replace
from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Optional, Set, Tuple

from spendguard.core.alerts import AlertEvent
from spendguard.core.budget import BudgetLimit, BudgetScope, PeriodType, ScopeStack, SpendAggregate
from spendguard.core.calculator import CostBreakdown, UsageRecord
from spendguard.core.pricing import PriceEntry, PriceSource, validate_price_entry

AggregateKey = Tuple[BudgetScope, PeriodType, datetime]


class InMemoryPriceStore:
    """Price table held in a dict, keyed by (provider, model)."""

    def __init__(self) -> None:
        self._prices: Dict[Tuple[str, str], PriceEntry] = {}
        self._lock = threading.Lock()

    def get_current_price(self, provider: str, model: str) -> Optional[PriceEntry]:
        with self._lock:
            return self._prices.get((provider.lower(), model))

    def save_price(self, entry: PriceEntry) -> None:
        validate_price_entry(entry)
        stored = replace(entry, provider=entry.provider.lower(), source=PriceSource.DATABASE)
        with self._lock:
            self._prices[stored.key] = stored


class InMemoryBudgetStore:
    """Limits, aggregates and fired alerts behind one lock.

    The lock makes ``apply_spend`` the same atomic check-and-increment the SQL
    store gets from its transaction.
    """

    def __init__(self) -> None:
        self._limits: Dict[Tuple[BudgetScope, PeriodType], BudgetLimit] = {}
        self._aggregates: Dict[AggregateKey, SpendAggregate] = {}
        self._entries: Set[Tuple[str, BudgetScope, PeriodType, datetime]] = set()
        self._alerts: Dict[AggregateKey, Dict[int, AlertEvent]] = {}
        self._lock = threading.Lock()

    def get_limit(self, scope: BudgetScope, period_type: PeriodType) -> Optional[BudgetLimit]:
        with self._lock:
            return self._limits.get((scope, period_type))

    def upsert_limit(self, limit: BudgetLimit) -> BudgetLimit:
        with self._lock:
            self._limits[(limit.scope, limit.period_type)] = limit
        return limit

    def get_aggregate(
        self, scope: BudgetScope, period_type: PeriodType, period_start: datetime
    ) -> Optional[SpendAggregate]:
        with self._lock:
            return self._aggregates.get((scope, period_type, period_start))

    def apply_spend(
        self,
        request_id: str,
        scope: BudgetScope,
        period_type: PeriodType,
        period_start: datetime,
        period_end: datetime,
        amount: Decimal,
    ) -> Tuple[SpendAggregate, bool]:
        key = (scope, period_type, period_start)
        with self._lock:
            current = self._aggregates.get(key) or SpendAggregate(
                scope, period_type, period_start, period_end, Decimal(0)
            )
            entry = (request_id, scope, period_type, period_start)
            if entry in self._entries:
                return current, False
            self._entries.add(entry)
            updated = replace(current, accumulated_amount=current.accumulated_amount + amount)
            self._aggregates[key] = updated
            return updated, True

    def fired_thresholds(
        self, scope: BudgetScope, period_type: PeriodType, period_start: datetime
    ) -> Set[int]:
        with self._lock:
            return set(self._alerts.get((scope, period_type, period_start), {}))

    def record_alert(self, event: AlertEvent) -> bool:
        key = (event.scope, event.period_type, event.period_start)
        with self._lock:
            fired = self._alerts.setdefault(key, {})
            if event.threshold_percentage in fired:
                return False
            fired[event.threshold_percentage] = event
            return True

    def alerts_for_request(self, request_id: str) -> List[AlertEvent]:
        with self._lock:
            return [
                event
                for fired in self._alerts.values()
                for event in fired.values()
                if event.request_id == request_id
            ]

    def alert_events(self) -> List[AlertEvent]:
        with self._lock:
            return [event for fired in self._alerts.values() for event in fired.values()]


class InMemoryCostRecordStore:
    """Cost records keyed by request id."""

    def __init__(self) -> None:
        self._records: Dict[str, Tuple[UsageRecord, CostBreakdown, ScopeStack, datetime]] = {}
        self._lock = threading.Lock()

    def save_cost_record(
        self,
        request_id: str,
        usage: UsageRecord,
        breakdown: CostBreakdown,
        scopes: ScopeStack,
        recorded_at: datetime,
    ) -> bool:
        with self._lock:
            if request_id in self._records:
                return False
            self._records[request_id] = (usage, breakdown, scopes, recorded_at)
            return True

    def get_recorded(self, request_id: str) -> Optional[Tuple[CostBreakdown, datetime]]:
        with self._lock:
            record = self._records.get(request_id)
        if record is None:
            return None
        return record[1], record[3]

    def get_breakdown(self, request_id: str) -> Optional[CostBreakdown]:
        with self._lock:
            record = self._records.get(request_id)
        return record[1] if record is not None else None

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)
