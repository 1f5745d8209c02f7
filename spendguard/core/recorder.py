"""Post-response cost recording.

Responses are queued and recorded by a small pool of asyncio workers, off the
caller's path. Store work runs in threads with its own timeout. Transient
failures are retried with exponential backoff; a record that still cannot be
written is handed to an ErrorReporter instead of being dropped.
"""

import asyncio
import logging
from dataclasses import dataclass, replace
from datetime import datetime
from decimal import Decimal
from typing import Awaitable, Callable, List, Optional, Protocol, Sequence, Tuple

from spendguard.core.alerts import AlertDispatcher, AlertEvent
from spendguard.core.budget import BudgetLedger, ScopeStack, SpendAggregate, SpendUpdate
from spendguard.core.calculator import (
    CostBreakdown,
    CostCalculator,
    UsageRecord,
    calculate_error_percent,
)
from spendguard.core.pricing import PricingResolver
from spendguard.utils.helpers import format_cost, utcnow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ResponseReceived:
    """Signal from the provider-call side: the call finished with ``usage``."""

    request_id: str
    scopes: ScopeStack
    usage: UsageRecord
    estimated_cost: Optional[Decimal] = None
    occurred_at: Optional[datetime] = None


@dataclass(frozen=True)
class CostRecorded:
    """Signal to analytics consumers: the actual cost of a request is known.

    ``duplicate`` is True when the request had already been fully recorded
    and nothing changed; ``breakdown`` is then the persisted one.
    """

    request_id: str
    scopes: ScopeStack
    usage: UsageRecord
    breakdown: CostBreakdown
    updates: Tuple[SpendUpdate, ...]
    recorded_at: datetime
    estimate_error_percent: Optional[float] = None
    duplicate: bool = False

    @property
    def provider(self) -> str:
        return self.usage.provider

    @property
    def model(self) -> str:
        return self.usage.model

    @property
    def aggregates(self) -> List[SpendAggregate]:
        return [update.aggregate for update in self.updates]


class CostEventSink(Protocol):
    """Consumer of recorder output. Delivery is at-least-once.

    Threshold events caused by a request are sent again whenever that request
    is recorded again, so a retry never loses them.
    """

    async def on_cost_recorded(self, event: CostRecorded) -> None:
        ...

    async def on_threshold_crossed(self, event: AlertEvent) -> None:
        ...


class ErrorReporter(Protocol):
    def report(self, error: Exception, event: ResponseReceived) -> None:
        ...


class LoggingErrorReporter:
    """Reports unrecordable costs to the log at ERROR level."""

    def report(self, error: Exception, event: ResponseReceived) -> None:
        logger.error(
            "Cost for request %s (%s/%s, %d in / %d out) was not recorded: %s",
            event.request_id,
            event.usage.provider,
            event.usage.model,
            event.usage.input_units,
            event.usage.output_units,
            error,
            exc_info=error,
        )


class CostRecordStore(Protocol):
    def save_cost_record(
        self,
        request_id: str,
        usage: UsageRecord,
        breakdown: CostBreakdown,
        scopes: ScopeStack,
        recorded_at: datetime,
    ) -> bool:
        """Persist a cost record; False if ``request_id`` was already recorded."""
        ...

    def get_recorded(self, request_id: str) -> Optional[Tuple[CostBreakdown, datetime]]:
        """Stored breakdown and recording time for ``request_id``, or None."""
        ...


class RecordingFailedError(Exception):
    """Raised when a cost record could not be written after all retries."""

    def __init__(self, request_id: str, attempts: int, cause: Optional[BaseException]):
        self.request_id = request_id
        self.attempts = attempts
        self.cause = cause
        super().__init__(f"Recording request {request_id} failed after {attempts} attempt(s): {cause}")


# Programming errors, not storage hiccups.
NON_RETRYABLE_ERRORS = (ValueError, TypeError)


def _stamped(event: ResponseReceived) -> ResponseReceived:
    # Every attempt must charge the same periods.
    if event.occurred_at is not None:
        return event
    return replace(event, occurred_at=utcnow())


class CostRecorder:
    """Turns ResponseReceived signals into cost records, spend and alerts."""

    def __init__(
        self,
        resolver: PricingResolver,
        calculator: CostCalculator,
        ledger: BudgetLedger,
        store: CostRecordStore,
        alerts: AlertDispatcher,
        sinks: Sequence[CostEventSink] = (),
        error_reporter: Optional[ErrorReporter] = None,
        workers: int = 2,
        queue_size: int = 1000,
        max_retries: int = 5,
        backoff_base: float = 0.1,
        backoff_max: float = 5.0,
        timeout_seconds: Optional[float] = 5.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        """Initialize the recorder.

        Args:
            resolver: Pricing resolver (shared with the gate)
            calculator: Cost calculator
            ledger: Budget ledger receiving the spend
            store: Cost record store
            alerts: Alert dispatcher run after each spend update
            sinks: Consumers of CostRecorded and threshold events
            error_reporter: Receives records that could not be written
            workers: Number of queue consumers
            queue_size: Queue bound (0 = unbounded); producers wait when full
            max_retries: Attempts per record, first one included
            backoff_base: First retry delay in seconds
            backoff_max: Cap on a single retry delay
            timeout_seconds: Bound on one recording attempt; None waits
            sleep: Delay function (tests)
        """
        if workers < 1:
            raise ValueError("workers must be at least 1")
        if max_retries < 1:
            raise ValueError("max_retries must be at least 1")
        self.resolver = resolver
        self.calculator = calculator
        self.ledger = ledger
        self.store = store
        self.alerts = alerts
        self.sinks = list(sinks)
        self.error_reporter = error_reporter or LoggingErrorReporter()
        self.workers = workers
        self.queue_size = queue_size
        self.max_retries = max_retries
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max
        self.timeout_seconds = timeout_seconds
        self._sleep = sleep
        self._queue: Optional[asyncio.Queue] = None
        self._tasks: List[asyncio.Task] = []

    @property
    def running(self) -> bool:
        return bool(self._tasks)

    def add_sink(self, sink: CostEventSink) -> None:
        self.sinks.append(sink)

    async def start(self) -> None:
        """Start the worker tasks on the running event loop."""
        if self.running:
            return
        self._queue = asyncio.Queue(maxsize=self.queue_size)
        self._tasks = [
            asyncio.create_task(self._worker(), name=f"spendguard-recorder-{i}")
            for i in range(self.workers)
        ]
        logger.debug("Cost recorder started with %d worker(s)", self.workers)

    async def on_response_received(self, event: ResponseReceived) -> None:
        """Queue ``event`` for recording. Waits only if the queue is full."""
        if not self.running:
            await self.start()
        await self._queue.put(_stamped(event))

    async def drain(self) -> None:
        """Wait until every queued event has been processed."""
        if self._queue is not None:
            await self._queue.join()

    async def stop(self) -> None:
        """Drain the queue, then stop the workers."""
        if not self.running:
            return
        await self.drain()
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        self._queue = None
        logger.debug("Cost recorder stopped")

    async def _worker(self) -> None:
        while True:
            event = await self._queue.get()
            try:
                await self.process(event)
            finally:
                self._queue.task_done()

    def backoff_delay(self, attempt: int) -> float:
        """Delay before retry number ``attempt`` (1-based)."""
        return min(self.backoff_max, self.backoff_base * (2 ** (attempt - 1)))

    async def process(self, event: ResponseReceived) -> Optional[CostRecorded]:
        """Record ``event`` with retries and notify sinks.

        Returns:
            The CostRecorded signal, or None if recording failed for good
        """
        event = _stamped(event)
        last_error: Optional[BaseException] = None
        attempts = 0
        for attempt in range(1, self.max_retries + 1):
            attempts = attempt
            try:
                recorded, alerts = await self._attempt(event)
            except NON_RETRYABLE_ERRORS as e:
                last_error = e
                break
            except Exception as e:
                last_error = e
                if attempt == self.max_retries:
                    break
                delay = self.backoff_delay(attempt)
                logger.warning(
                    "Recording request %s failed (attempt %d/%d), retrying in %.2fs: %s",
                    event.request_id,
                    attempt,
                    self.max_retries,
                    delay,
                    e,
                )
                await self._sleep(delay)
            else:
                await self._emit(recorded, alerts)
                return recorded

        error = RecordingFailedError(event.request_id, attempts, last_error)
        error.__cause__ = last_error
        logger.error("%s", error)
        self.error_reporter.report(error, event)
        return None

    async def _attempt(self, event: ResponseReceived) -> Tuple[CostRecorded, List[AlertEvent]]:
        work = asyncio.to_thread(self._record_once, event)
        if self.timeout_seconds is None:
            return await work
        return await asyncio.wait_for(work, timeout=self.timeout_seconds)

    def _record_once(self, event: ResponseReceived) -> Tuple[CostRecorded, List[AlertEvent]]:
        usage = event.usage
        # A replay charges what was persisted, at the time it was persisted.
        stored = self.store.get_recorded(event.request_id)
        inserted = False
        if stored is None:
            price = self.resolver.resolve(usage.provider, usage.model)
            breakdown = self.calculator.calculate(price, usage)
            recorded_at = event.occurred_at or utcnow()
            inserted = self.store.save_cost_record(
                event.request_id, usage, breakdown, event.scopes, recorded_at
            )
            if not inserted:
                stored = self.store.get_recorded(event.request_id)
        if stored is not None:
            breakdown, recorded_at = stored

        updates = self.ledger.record_spend(
            event.request_id, event.scopes, breakdown.total_cost, at=recorded_at
        )
        alerts = self.alerts.evaluate_updates(updates, request_id=event.request_id)

        duplicate = not inserted and not any(update.applied for update in updates)
        if duplicate:
            logger.debug("Request %s was already recorded", event.request_id)
        else:
            logger.debug(
                "Recorded %s for request %s (%s/%s)",
                format_cost(breakdown.total_cost, breakdown.currency),
                event.request_id,
                usage.provider,
                usage.model,
            )

        error_percent = None
        if event.estimated_cost is not None:
            error_percent = calculate_error_percent(event.estimated_cost, breakdown.total_cost)

        recorded = CostRecorded(
            request_id=event.request_id,
            scopes=event.scopes,
            usage=usage,
            breakdown=breakdown,
            updates=tuple(updates),
            recorded_at=recorded_at,
            estimate_error_percent=error_percent,
            duplicate=duplicate,
        )
        return recorded, alerts

    async def _emit(self, recorded: CostRecorded, alerts: List[AlertEvent]) -> None:
        for sink in self.sinks:
            try:
                await sink.on_cost_recorded(recorded)
                for alert in alerts:
                    await sink.on_threshold_crossed(alert)
            except Exception:
                logger.exception("Cost event sink %r failed for request %s", sink, recorded.request_id)
