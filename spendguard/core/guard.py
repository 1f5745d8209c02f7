"""SpendGuard: the assembled enforcement and recording pipeline."""

import asyncio
import inspect
import logging
from datetime import datetime
from decimal import Decimal
from typing import Any, Callable, Iterable, List, Optional, Sequence, Tuple, Union

from spendguard.config.settings import Settings
from spendguard.core.alerts import AlertDispatcher
from spendguard.core.budget import (
    BudgetLedger,
    BudgetLimit,
    BudgetScope,
    BudgetStatus,
    Decision,
    Deny,
    PeriodType,
    ScopeStack,
)
from spendguard.core.calculator import CostBreakdown, CostCalculator, UsageRecord
from spendguard.core.estimator import TokenEstimator
from spendguard.core.pipeline import EnforcementGate, NextStage, Pipeline, RequestContext, Stage
from spendguard.core.pricing import DriverPricingTable, PriceEntry, PricingResolver
from spendguard.core.recorder import CostEventSink, CostRecorder, ErrorReporter, ResponseReceived
from spendguard.storage.database import DatabaseManager
from spendguard.storage.memory import InMemoryBudgetStore, InMemoryCostRecordStore, InMemoryPriceStore
from spendguard.storage.stores import SqlBudgetStore, SqlCostRecordStore, SqlPriceStore
from spendguard.utils.helpers import to_decimal

logger = logging.getLogger(__name__)


class SpendGuard:
    """Wires resolver, calculator, ledger, gate, recorder and alerts together.

    Typical use from async code::

        guard = SpendGuard(settings)
        context = RequestContext.create("openai", "gpt-4", user_id=42)
        result = await guard.run(context, call_provider, usage_of)

    ``run`` returns a Deny without calling the provider when the estimate
    would exceed a limit; otherwise it returns the provider result and
    queues the actual usage for recording.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        database_manager: Optional[DatabaseManager] = None,
        sinks: Sequence[CostEventSink] = (),
        error_reporter: Optional[ErrorReporter] = None,
        stages: Iterable[Stage] = (),
    ):
        """Initialize the guard.

        Args:
            settings: Settings instance (creates default if None)
            database_manager: Database manager (created from settings if None)
            sinks: Consumers of CostRecorded and threshold events
            error_reporter: Receives costs that could not be recorded
            stages: Extra pipeline stages run after the enforcement gate
        """
        self.settings = settings or Settings()
        self.db_manager: Optional[DatabaseManager] = None

        if self.settings.storage_backend == "memory":
            price_store = InMemoryPriceStore()
            budget_store = InMemoryBudgetStore()
            cost_store = InMemoryCostRecordStore()
        else:
            self.db_manager = database_manager or DatabaseManager(
                str(self.settings.get_database_path()),
                database_url=self.settings.database_url,
            )
            self.db_manager.init_db()
            price_store = SqlPriceStore(self.db_manager)
            budget_store = SqlBudgetStore(self.db_manager)
            cost_store = SqlCostRecordStore(self.db_manager)

        self.price_store = price_store
        self.budget_store = budget_store
        self.cost_store = cost_store

        self.resolver = PricingResolver(
            store=price_store,
            driver_table=DriverPricingTable.from_file(self.settings.pricing_file_path),
            cache_ttl_seconds=self.settings.price_cache_ttl_seconds,
            store_timeout_seconds=self.settings.store_timeout_seconds,
            fallback_input_rate=to_decimal(self.settings.fallback_input_rate),
            fallback_output_rate=to_decimal(self.settings.fallback_output_rate),
            currency=self.settings.currency,
        )
        self.calculator = CostCalculator(precision=self.settings.cost_precision)
        self.estimator = TokenEstimator(
            estimation_mode=self.settings.token_estimation_mode,
            chars_per_token=self.settings.chars_per_token,
            output_ratio=self.settings.default_output_ratio,
        )
        self.ledger = BudgetLedger(
            budget_store,
            limit_cache_ttl=self.settings.limit_cache_ttl_seconds,
            spend_cache_ttl=self.settings.spend_cache_ttl_seconds,
            store_timeout_seconds=self.settings.store_timeout_seconds,
            pool_size=self.settings.store_pool_size,
        )
        self.alerts = AlertDispatcher(budget_store, self.ledger)
        self.gate = EnforcementGate(
            self.resolver,
            self.calculator,
            self.estimator,
            self.ledger,
            enabled=self.settings.enforcement_enabled,
        )
        self.pipeline = Pipeline([self.gate, *stages])
        self.recorder = CostRecorder(
            self.resolver,
            self.calculator,
            self.ledger,
            cost_store,
            self.alerts,
            sinks=sinks,
            error_reporter=error_reporter,
            workers=self.settings.recorder_workers,
            queue_size=self.settings.recorder_queue_size,
            max_retries=self.settings.recorder_max_retries,
            backoff_base=self.settings.recorder_backoff_base,
            backoff_max=self.settings.recorder_backoff_max,
            timeout_seconds=self.settings.recorder_timeout_seconds,
        )
        logger.debug(
            "SpendGuard ready (%s storage, enforcement %s)",
            self.settings.storage_backend,
            "on" if self.settings.enforcement_enabled else "off",
        )

    # --- Request path ---

    def check(self, context: RequestContext) -> Decision:
        """Pre-call decision for ``context`` without running the pipeline."""
        return self.gate.evaluate(context)

    def execute(self, context: RequestContext, call: NextStage) -> Any:
        """Run ``call`` through the pipeline. Returns a Deny or call's result."""
        return self.pipeline.handle(context, call)

    async def run(
        self,
        context: RequestContext,
        call: NextStage,
        usage_of: Callable[[Any], Optional[UsageRecord]],
    ) -> Any:
        """Gate, call the provider, then queue the actual usage for recording.

        Args:
            context: Request context
            call: Provider call; may return an awaitable. A plain callable
                runs in a worker thread, like the pipeline stages.
            usage_of: Extracts the UsageRecord from the provider result

        Returns:
            The provider result, or a Deny if the call was not made
        """
        # The gate may block on store reads; keep them off the event loop.
        result = await asyncio.to_thread(self.execute, context, call)
        if isinstance(result, Deny):
            return result
        if inspect.isawaitable(result):
            result = await result

        usage = usage_of(result)
        if usage is not None:
            await self.report_usage(
                context.request_id,
                context.scopes,
                usage,
                estimated_cost=context.state.get("estimated_cost"),
            )
        return result

    # --- Recording path ---

    async def start(self) -> None:
        await self.recorder.start()

    async def report_usage(
        self,
        request_id: str,
        scopes: ScopeStack,
        usage: UsageRecord,
        estimated_cost: Optional[Decimal] = None,
        occurred_at: Optional[datetime] = None,
    ) -> None:
        """Queue the actual usage of a finished request."""
        await self.recorder.on_response_received(
            ResponseReceived(
                request_id=request_id,
                scopes=scopes,
                usage=usage,
                estimated_cost=estimated_cost,
                occurred_at=occurred_at,
            )
        )

    async def drain(self) -> None:
        await self.recorder.drain()

    # --- Configuration ---

    def set_limit(
        self,
        scope: BudgetScope,
        period_type: Union[PeriodType, str],
        limit_amount: Union[Decimal, int, float, str],
        alert_thresholds: Optional[Sequence[int]] = None,
        is_active: bool = True,
    ) -> BudgetLimit:
        """Create or replace the limit for (scope, period_type)."""
        limit = BudgetLimit(
            scope=scope,
            period_type=PeriodType(period_type),
            limit_amount=to_decimal(limit_amount),
            currency=self.settings.currency,
            alert_thresholds=tuple(
                alert_thresholds if alert_thresholds is not None else self.settings.default_alert_thresholds
            ),
            is_active=is_active,
        )
        return self.ledger.upsert_limit(limit)

    def set_price(self, entry: PriceEntry) -> PriceEntry:
        """Persist a price and drop the cached entry for its (provider, model)."""
        return self.resolver.store_price(entry)

    def status(self, scope: BudgetScope, period_type: Union[PeriodType, str]) -> BudgetStatus:
        return self.ledger.status(scope, PeriodType(period_type))

    def statuses(self, scopes: ScopeStack) -> List[BudgetStatus]:
        """Status of every configured limit across ``scopes``."""
        found = []
        for scope in scopes:
            for period_type in PeriodType:
                status = self.ledger.status(scope, period_type)
                if status.exists:
                    found.append(status)
        return found

    def cost_of(self, usage: UsageRecord) -> CostBreakdown:
        """Actual cost of ``usage`` at the currently resolved price."""
        return self.calculator.calculate(self.resolver.resolve(usage.provider, usage.model), usage)

    def warm(
        self,
        scopes: Iterable[BudgetScope] = (),
        price_pairs: Optional[Iterable[Tuple[str, str]]] = None,
    ) -> None:
        """Pre-load prices and the limits and spend of ``scopes``.

        Args:
            scopes: Scopes expected to send requests soon
            price_pairs: (provider, model) pairs; all driver defaults if None
        """
        self.resolver.warm(price_pairs)
        self.ledger.warm(scopes)

    # --- Lifecycle ---

    async def close(self) -> None:
        """Stop the recorder (after draining) and release resources."""
        await self.recorder.stop()
        self.resolver.close()
        self.ledger.close()
        if self.db_manager is not None:
            self.db_manager.dispose()
