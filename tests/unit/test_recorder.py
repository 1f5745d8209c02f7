"""Unit tests for the asynchronous cost recorder."""

import asyncio
from datetime import datetime, timezone
from decimal import Decimal
from unittest.mock import Mock, patch

import pytest

from spendguard.core.alerts import AlertDispatcher
from spendguard.core.budget import BudgetLedger, BudgetLimit, PeriodType, ScopeStack
from spendguard.core.calculator import CostCalculator, UsageRecord
from spendguard.core.pricing import DriverPricingTable, PricingResolver
from spendguard.core.recorder import (
    CostRecorder,
    LoggingErrorReporter,
    RecordingFailedError,
    ResponseReceived,
)
from spendguard.storage.memory import InMemoryBudgetStore, InMemoryCostRecordStore

NOW = datetime(2025, 3, 15, 12, 0, tzinfo=timezone.utc)


class CollectingSink:
    def __init__(self):
        self.recorded = []
        self.alerts = []

    async def on_cost_recorded(self, event):
        self.recorded.append(event)

    async def on_threshold_crossed(self, event):
        self.alerts.append(event)


class FlakyCostStore(InMemoryCostRecordStore):
    """Fails the first ``failures`` writes."""

    def __init__(self, failures, error=RuntimeError("database is locked")):
        super().__init__()
        self.failures = failures
        self.error = error
        self.calls = 0

    def save_cost_record(self, *args, **kwargs):
        self.calls += 1
        if self.calls <= self.failures:
            raise self.error
        return super().save_cost_record(*args, **kwargs)


class FlakyAlertStore(InMemoryBudgetStore):
    """Fails the ``fail_on``-th alert write, once."""

    def __init__(self, fail_on):
        super().__init__()
        self.fail_on = fail_on
        self.writes = 0

    def record_alert(self, event):
        self.writes += 1
        if self.writes == self.fail_on:
            raise RuntimeError("alert table locked")
        return super().record_alert(event)


@pytest.fixture
def resolver():
    table = DriverPricingTable.from_dict(
        {"providers": {"openai": {"gpt-4": {"input": "0.03", "output": "0.06", "unit": "1k_tokens"}}}}
    )
    resolver = PricingResolver(store=None, driver_table=table)
    yield resolver
    resolver.close()


@pytest.fixture
def budget_store():
    return InMemoryBudgetStore()


@pytest.fixture
def ledger(budget_store):
    ledger = BudgetLedger(budget_store, clock=lambda: NOW)
    yield ledger
    ledger.close()


@pytest.fixture
def scopes():
    return ScopeStack.for_request(user_id=42)


@pytest.fixture
def sink():
    return CollectingSink()


@pytest.fixture
def delays():
    return []


@pytest.fixture
def make_recorder(resolver, ledger, budget_store, sink, delays):
    async def fake_sleep(delay):
        delays.append(delay)

    def make(cost_store=None, **kwargs):
        kwargs.setdefault("sleep", fake_sleep)
        return CostRecorder(
            resolver,
            CostCalculator(),
            ledger,
            cost_store if cost_store is not None else InMemoryCostRecordStore(),
            AlertDispatcher(budget_store, ledger, clock=lambda: NOW),
            sinks=[sink],
            **kwargs,
        )

    return make


def response(request_id, scopes, input_units=1000, output_units=500, estimated_cost=None):
    return ResponseReceived(
        request_id=request_id,
        scopes=scopes,
        usage=UsageRecord("openai", "gpt-4", input_units, output_units),
        estimated_cost=estimated_cost,
        occurred_at=NOW,
    )


def test_process_records_cost_and_spend(make_recorder, ledger, scopes, sink):
    cost_store = InMemoryCostRecordStore()
    recorder = make_recorder(cost_store)

    recorded = asyncio.run(recorder.process(response("r1", scopes, estimated_cost=Decimal("0.075"))))

    assert recorded.breakdown.total_cost == Decimal("0.06")
    assert recorded.provider == "openai"
    assert recorded.estimate_error_percent == pytest.approx(25.0)
    assert not recorded.duplicate
    assert len(recorded.aggregates) == 2
    assert cost_store.get_breakdown("r1") == recorded.breakdown
    assert ledger.current_spend(scopes.primary, PeriodType.DAILY) == Decimal("0.06")
    assert sink.recorded == [recorded]


def test_duplicate_response_is_a_no_op(make_recorder, ledger, scopes, sink):
    recorder = make_recorder()

    async def run():
        await recorder.process(response("r1", scopes))
        return await recorder.process(response("r1", scopes))

    second = asyncio.run(run())

    assert second.duplicate
    assert ledger.current_spend(scopes.primary, PeriodType.MONTHLY) == Decimal("0.06")
    assert len(sink.recorded) == 2


def test_transient_failures_are_retried_with_backoff(make_recorder, ledger, scopes, delays):
    cost_store = FlakyCostStore(failures=2)
    recorder = make_recorder(cost_store, backoff_base=0.1, backoff_max=5.0)

    recorded = asyncio.run(recorder.process(response("r1", scopes)))

    assert recorded is not None
    assert cost_store.calls == 3
    assert delays == [0.1, 0.2]
    assert ledger.current_spend(scopes.primary, PeriodType.DAILY) == Decimal("0.06")


def test_exhausted_retries_are_reported(make_recorder, scopes, sink):
    reporter = Mock()
    recorder = make_recorder(FlakyCostStore(failures=100), max_retries=3, error_reporter=reporter)
    event = response("r1", scopes)

    assert asyncio.run(recorder.process(event)) is None

    reporter.report.assert_called_once()
    error, reported_event = reporter.report.call_args[0]
    assert isinstance(error, RecordingFailedError)
    assert error.attempts == 3
    assert error.request_id == "r1"
    assert reported_event is event
    assert sink.recorded == []


def test_programming_errors_are_not_retried(make_recorder, scopes, delays):
    reporter = Mock()
    cost_store = FlakyCostStore(failures=100, error=ValueError("bad record"))
    recorder = make_recorder(cost_store, error_reporter=reporter)

    asyncio.run(recorder.process(response("r1", scopes)))

    assert cost_store.calls == 1
    assert delays == []
    assert reporter.report.call_args[0][0].attempts == 1


def test_backoff_delay_is_capped(make_recorder):
    recorder = make_recorder(backoff_base=1.0, backoff_max=3.0)
    assert [recorder.backoff_delay(n) for n in (1, 2, 3, 4)] == [1.0, 2.0, 3.0, 3.0]


def test_threshold_alerts_reach_sinks(make_recorder, ledger, scopes, sink):
    ledger.upsert_limit(
        BudgetLimit(scope=scopes.primary, period_type=PeriodType.DAILY, limit_amount=Decimal("0.10"))
    )
    recorder = make_recorder()

    async def run():
        await recorder.process(response("r1", scopes))
        await recorder.process(response("r2", scopes))

    asyncio.run(run())

    assert [a.threshold_percentage for a in sink.alerts] == [80, 95, 100]


def test_sink_failure_does_not_fail_recording(make_recorder, ledger, scopes):
    broken = Mock()

    async def explode(event):
        raise RuntimeError("sink down")

    broken.on_cost_recorded = explode
    recorder = make_recorder()
    recorder.add_sink(broken)

    assert asyncio.run(recorder.process(response("r1", scopes))) is not None
    assert ledger.current_spend(scopes.primary, PeriodType.DAILY) == Decimal("0.06")


def test_workers_drain_queue(make_recorder, ledger, scopes, sink):
    recorder = make_recorder(workers=3, queue_size=5)

    async def run():
        await recorder.start()
        for i in range(20):
            await recorder.on_response_received(response(f"r{i}", scopes))
        await recorder.stop()

    asyncio.run(run())

    assert not recorder.running
    assert len(sink.recorded) == 20
    assert ledger.current_spend(scopes.primary, PeriodType.DAILY) == Decimal("1.20")


def test_on_response_received_starts_workers(make_recorder, scopes, sink):
    recorder = make_recorder()

    async def run():
        await recorder.on_response_received(response("r1", scopes))
        assert recorder.running
        await recorder.drain()
        await recorder.stop()

    asyncio.run(run())
    assert len(sink.recorded) == 1


def test_invalid_configuration(make_recorder):
    with pytest.raises(ValueError):
        make_recorder(workers=0)
    with pytest.raises(ValueError):
        make_recorder(max_retries=0)


def test_logging_error_reporter(scopes, caplog):
    event = response("r1", scopes)
    LoggingErrorReporter().report(RecordingFailedError("r1", 5, RuntimeError("down")), event)
    assert "r1" in caplog.text
    assert "not recorded" in caplog.text


def test_retry_after_midnight_charges_the_original_day(resolver, scopes, sink):
    store = FlakyAlertStore(fail_on=2)
    ledger = BudgetLedger(store, clock=lambda: NOW)
    ledger.upsert_limit(
        BudgetLimit(
            scope=scopes.primary,
            period_type=PeriodType.DAILY,
            limit_amount=Decimal("0.06"),
            alert_thresholds=(80, 95),
        )
    )
    recorder = CostRecorder(
        resolver,
        CostCalculator(),
        ledger,
        InMemoryCostRecordStore(),
        AlertDispatcher(store, ledger, clock=lambda: NOW),
        sinks=[sink],
        sleep=lambda delay: asyncio.sleep(0),
    )
    before_midnight = datetime(2025, 3, 15, 23, 59, 59, tzinfo=timezone.utc)
    after_midnight = datetime(2025, 3, 16, 0, 0, 1, tzinfo=timezone.utc)
    event = ResponseReceived(
        request_id="r1",
        scopes=scopes,
        usage=UsageRecord("openai", "gpt-4", 1000, 500),
    )

    with patch("spendguard.core.recorder.utcnow", side_effect=[before_midnight, after_midnight]):
        recorded = asyncio.run(recorder.process(event))

    assert recorded.recorded_at == before_midnight
    day_one = ledger.current_spend(scopes.primary, PeriodType.DAILY, at=before_midnight)
    day_two = ledger.current_spend(scopes.primary, PeriodType.DAILY, at=after_midnight)
    assert day_one == Decimal("0.06")
    assert day_two == Decimal("0")
    ledger.close()


def test_alerts_persisted_by_a_failed_attempt_are_delivered(resolver, scopes, sink):
    store = FlakyAlertStore(fail_on=2)
    ledger = BudgetLedger(store, clock=lambda: NOW)
    ledger.upsert_limit(
        BudgetLimit(
            scope=scopes.primary,
            period_type=PeriodType.DAILY,
            limit_amount=Decimal("0.06"),
            alert_thresholds=(80, 95),
        )
    )
    recorder = CostRecorder(
        resolver,
        CostCalculator(),
        ledger,
        InMemoryCostRecordStore(),
        AlertDispatcher(store, ledger, clock=lambda: NOW),
        sinks=[sink],
        sleep=lambda delay: asyncio.sleep(0),
    )

    recorded = asyncio.run(recorder.process(response("r1", scopes)))

    assert recorded is not None
    assert sorted(e.threshold_percentage for e in store.alert_events()) == [80, 95]
    assert [a.threshold_percentage for a in sink.alerts] == [80, 95]
    assert all(a.request_id == "r1" for a in sink.alerts)
    ledger.close()


def test_replay_reports_the_persisted_breakdown(make_recorder, scopes):
    cost_store = InMemoryCostRecordStore()
    first = asyncio.run(make_recorder(cost_store).process(response("r1", scopes)))

    replaying = make_recorder(cost_store)
    replaying.calculator = Mock()
    replayed = asyncio.run(
        replaying.process(response("r1", scopes, input_units=9000, output_units=9000))
    )

    assert replayed.duplicate
    assert replayed.breakdown == first.breakdown
    assert replayed.recorded_at == first.recorded_at
    replaying.calculator.calculate.assert_not_called()
