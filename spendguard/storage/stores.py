"""SQLAlchemy-backed price, budget, alert and cost record stores."""

from datetime import date, datetime
from decimal import Decimal
from typing import List, Optional, Set, Tuple

from sqlalchemy import literal, update

from spendguard.core.alerts import AlertEvent, AlertSeverity
from spendguard.core.budget import (
    BudgetLimit,
    BudgetScope,
    PeriodType,
    ScopeStack,
    ScopeType,
    SpendAggregate,
)
from spendguard.core.calculator import CostBreakdown, UsageRecord
from spendguard.core.pricing import PriceEntry, PriceSource, validate_price_entry
from spendguard.core.units import BillingModel, PricingUnit
from spendguard.storage.database import (
    AlertEventRecord,
    BudgetLimitRecord,
    CostRecord,
    DatabaseManager,
    Money,
    PriceRecord,
    SpendAggregateRecord,
    SpendEntryRecord,
    aware_utc,
    naive_utc,
)
from spendguard.utils.helpers import utcnow


class SqlPriceStore:
    """Persistent price table."""

    def __init__(self, database_manager: DatabaseManager):
        self.db_manager = database_manager

    def get_current_price(self, provider: str, model: str) -> Optional[PriceEntry]:
        """Latest entry whose effective date has been reached, or None."""
        today = utcnow().date()
        with self.db_manager.get_session() as session:
            record = (
                session.query(PriceRecord)
                .filter(
                    PriceRecord.provider == provider.lower(),
                    PriceRecord.model == model,
                    PriceRecord.effective_date <= today,
                )
                .order_by(PriceRecord.effective_date.desc())
                .first()
            )
            if record is None:
                return None
            return PriceEntry(
                provider=record.provider,
                model=record.model,
                unit=PricingUnit(record.unit),
                input_rate=record.input_rate,
                output_rate=record.output_rate,
                flat_rate=record.flat_rate,
                currency=record.currency,
                billing_model=BillingModel(record.billing_model),
                effective_date=record.effective_date,
                source=PriceSource.DATABASE,
            )

    def save_price(self, entry: PriceEntry) -> None:
        """Insert or replace the row for (provider, model, effective_date)."""
        validate_price_entry(entry)
        effective = entry.effective_date or utcnow().date()
        with self.db_manager.get_session() as session:
            record = (
                session.query(PriceRecord)
                .filter(
                    PriceRecord.provider == entry.provider.lower(),
                    PriceRecord.model == entry.model,
                    PriceRecord.effective_date == effective,
                )
                .one_or_none()
            )
            if record is None:
                record = PriceRecord(
                    provider=entry.provider.lower(),
                    model=entry.model,
                    effective_date=effective,
                )
                session.add(record)
            record.unit = entry.unit.value
            record.input_rate = entry.input_rate
            record.output_rate = entry.output_rate
            record.flat_rate = entry.flat_rate
            record.currency = entry.currency
            record.billing_model = entry.billing_model.value

    def list_prices(self, provider: Optional[str] = None) -> List[Tuple[str, str, date]]:
        """(provider, model, effective_date) of every stored row."""
        with self.db_manager.get_session() as session:
            query = session.query(PriceRecord.provider, PriceRecord.model, PriceRecord.effective_date)
            if provider:
                query = query.filter(PriceRecord.provider == provider.lower())
            return [tuple(row) for row in query.order_by(PriceRecord.provider, PriceRecord.model).all()]


class SqlBudgetStore:
    """Limits, spend aggregates and fired alerts.

    ``apply_spend`` inserts a spend entry keyed by request id and, only when
    that insert happened, increments the aggregate with a single
    ``UPDATE ... SET accumulated_amount = accumulated_amount + :delta`` in the
    same transaction.
    """

    def __init__(self, database_manager: DatabaseManager):
        self.db_manager = database_manager

    # --- Limits ---

    def get_limit(self, scope: BudgetScope, period_type: PeriodType) -> Optional[BudgetLimit]:
        with self.db_manager.get_session() as session:
            record = (
                session.query(BudgetLimitRecord)
                .filter(
                    BudgetLimitRecord.scope_type == scope.scope_type.value,
                    BudgetLimitRecord.scope_id == scope.scope_id,
                    BudgetLimitRecord.period_type == period_type.value,
                )
                .one_or_none()
            )
            if record is None:
                return None
            return BudgetLimit(
                scope=scope,
                period_type=period_type,
                limit_amount=record.limit_amount,
                currency=record.currency,
                alert_thresholds=tuple(record.alert_thresholds or ()),
                is_active=record.is_active,
            )

    def upsert_limit(self, limit: BudgetLimit) -> BudgetLimit:
        with self.db_manager.get_session() as session:
            record = (
                session.query(BudgetLimitRecord)
                .filter(
                    BudgetLimitRecord.scope_type == limit.scope.scope_type.value,
                    BudgetLimitRecord.scope_id == limit.scope.scope_id,
                    BudgetLimitRecord.period_type == limit.period_type.value,
                )
                .one_or_none()
            )
            if record is None:
                record = BudgetLimitRecord(
                    scope_type=limit.scope.scope_type.value,
                    scope_id=limit.scope.scope_id,
                    period_type=limit.period_type.value,
                )
                session.add(record)
            record.limit_amount = limit.limit_amount
            record.currency = limit.currency
            record.alert_thresholds = list(limit.alert_thresholds)
            record.is_active = limit.is_active
        return limit

    # --- Aggregates ---

    def get_aggregate(
        self, scope: BudgetScope, period_type: PeriodType, period_start: datetime
    ) -> Optional[SpendAggregate]:
        with self.db_manager.get_session() as session:
            record = self._aggregate_query(session, scope, period_type, period_start).one_or_none()
            return self._to_aggregate(scope, period_type, record) if record is not None else None

    def apply_spend(
        self,
        request_id: str,
        scope: BudgetScope,
        period_type: PeriodType,
        period_start: datetime,
        period_end: datetime,
        amount: Decimal,
    ) -> Tuple[SpendAggregate, bool]:
        start = naive_utc(period_start)
        key = {
            "scope_type": scope.scope_type.value,
            "scope_id": scope.scope_id,
            "period_type": period_type.value,
            "period_start": start,
        }
        with self.db_manager.get_session() as session:
            applied = self.db_manager.insert_ignore(
                session,
                SpendEntryRecord,
                dict(key, request_id=request_id, amount=amount, created_at=naive_utc(utcnow())),
            )
            if applied:
                self.db_manager.insert_ignore(
                    session,
                    SpendAggregateRecord,
                    dict(
                        key,
                        period_end=naive_utc(period_end),
                        accumulated_amount=Decimal(0),
                        updated_at=naive_utc(utcnow()),
                    ),
                )
                session.execute(
                    update(SpendAggregateRecord)
                    .where(
                        SpendAggregateRecord.scope_type == key["scope_type"],
                        SpendAggregateRecord.scope_id == key["scope_id"],
                        SpendAggregateRecord.period_type == key["period_type"],
                        SpendAggregateRecord.period_start == start,
                    )
                    .values(
                        accumulated_amount=SpendAggregateRecord.accumulated_amount
                        + literal(amount, Money()),
                        updated_at=naive_utc(utcnow()),
                    )
                    .execution_options(synchronize_session=False)
                )
            record = self._aggregate_query(session, scope, period_type, period_start).one_or_none()
            if record is None:
                aggregate = SpendAggregate(scope, period_type, period_start, period_end, Decimal(0))
            else:
                aggregate = self._to_aggregate(scope, period_type, record)
        return aggregate, applied

    def _aggregate_query(self, session, scope: BudgetScope, period_type: PeriodType, period_start: datetime):
        return session.query(SpendAggregateRecord).filter(
            SpendAggregateRecord.scope_type == scope.scope_type.value,
            SpendAggregateRecord.scope_id == scope.scope_id,
            SpendAggregateRecord.period_type == period_type.value,
            SpendAggregateRecord.period_start == naive_utc(period_start),
        )

    @staticmethod
    def _to_aggregate(
        scope: BudgetScope, period_type: PeriodType, record: SpendAggregateRecord
    ) -> SpendAggregate:
        return SpendAggregate(
            scope=scope,
            period_type=period_type,
            period_start=aware_utc(record.period_start),
            period_end=aware_utc(record.period_end),
            accumulated_amount=record.accumulated_amount,
        )

    # --- Alerts ---

    def fired_thresholds(
        self, scope: BudgetScope, period_type: PeriodType, period_start: datetime
    ) -> Set[int]:
        with self.db_manager.get_session() as session:
            rows = (
                session.query(AlertEventRecord.threshold_percentage)
                .filter(
                    AlertEventRecord.scope_type == scope.scope_type.value,
                    AlertEventRecord.scope_id == scope.scope_id,
                    AlertEventRecord.period_type == period_type.value,
                    AlertEventRecord.period_start == naive_utc(period_start),
                )
                .all()
            )
            return {row[0] for row in rows}

    def record_alert(self, event: AlertEvent) -> bool:
        with self.db_manager.get_session() as session:
            return self.db_manager.insert_ignore(
                session,
                AlertEventRecord,
                {
                    "scope_type": event.scope.scope_type.value,
                    "scope_id": event.scope.scope_id,
                    "period_type": event.period_type.value,
                    "period_start": naive_utc(event.period_start),
                    "threshold_percentage": event.threshold_percentage,
                    "spend_at_trigger": event.spend_at_trigger,
                    "limit_at_trigger": event.limit_at_trigger,
                    "severity": event.severity.value,
                    "request_id": event.request_id,
                    "created_at": naive_utc(event.timestamp),
                },
            )

    def alerts_for_request(self, request_id: str) -> List[AlertEvent]:
        with self.db_manager.get_session() as session:
            records = (
                session.query(AlertEventRecord)
                .filter(AlertEventRecord.request_id == request_id)
                .order_by(AlertEventRecord.threshold_percentage)
                .all()
            )
            return [
                AlertEvent(
                    scope=BudgetScope(ScopeType(r.scope_type), r.scope_id),
                    period_type=PeriodType(r.period_type),
                    period_start=aware_utc(r.period_start),
                    threshold_percentage=r.threshold_percentage,
                    spend_at_trigger=r.spend_at_trigger,
                    limit_at_trigger=r.limit_at_trigger,
                    timestamp=aware_utc(r.created_at),
                    severity=AlertSeverity(r.severity),
                    request_id=r.request_id,
                )
                for r in records
            ]


class SqlCostRecordStore:
    """One cost record per request id."""

    def __init__(self, database_manager: DatabaseManager):
        self.db_manager = database_manager

    def save_cost_record(
        self,
        request_id: str,
        usage: UsageRecord,
        breakdown: CostBreakdown,
        scopes: ScopeStack,
        recorded_at: datetime,
    ) -> bool:
        """Persist the record; False if ``request_id`` was already recorded."""
        with self.db_manager.get_session() as session:
            return self.db_manager.insert_ignore(
                session,
                CostRecord,
                {
                    "request_id": request_id,
                    "provider": usage.provider,
                    "model": usage.model,
                    "input_units": usage.input_units,
                    "output_units": usage.output_units,
                    "input_cost": breakdown.input_cost,
                    "output_cost": breakdown.output_cost,
                    "total_cost": breakdown.total_cost,
                    "currency": breakdown.currency,
                    "unit": breakdown.unit.value,
                    "price_source": breakdown.source.value,
                    "scopes": [str(scope) for scope in scopes],
                    "recorded_at": naive_utc(recorded_at),
                },
            )

    def get_recorded(self, request_id: str) -> Optional[Tuple[CostBreakdown, datetime]]:
        """Stored breakdown and recording time for ``request_id``, or None."""
        with self.db_manager.get_session() as session:
            record = session.query(CostRecord).filter(CostRecord.request_id == request_id).one_or_none()
            if record is None:
                return None
            breakdown = CostBreakdown(
                input_cost=record.input_cost,
                output_cost=record.output_cost,
                total_cost=record.total_cost,
                currency=record.currency,
                unit=PricingUnit(record.unit),
                source=PriceSource(record.price_source),
            )
            return breakdown, aware_utc(record.recorded_at)

    def get_cost_record(self, request_id: str) -> Optional[CostRecord]:
        with self.db_manager.get_session() as session:
            record = session.query(CostRecord).filter(CostRecord.request_id == request_id).one_or_none()
            if record is not None:
                session.expunge(record)
            return record

    def total_cost(self, scope: Optional[BudgetScope] = None) -> Decimal:
        """Sum of recorded totals, optionally for records that include ``scope``."""
        with self.db_manager.get_session() as session:
            records = session.query(CostRecord).all()
            wanted = str(scope) if scope is not None else None
            return sum(
                (r.total_cost for r in records if wanted is None or wanted in (r.scopes or [])),
                Decimal(0),
            )

