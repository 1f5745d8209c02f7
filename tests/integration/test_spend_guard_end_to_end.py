"""Integration tests for end-to-end enforcement and recording workflows."""

import asyncio
import threading
import time
from datetime import date
from decimal import Decimal
from pathlib import Path
from tempfile import TemporaryDirectory
from unittest.mock import Mock

import pytest

from spendguard.config.settings import Settings
from spendguard.core.budget import BudgetScope, Deny, PeriodType
from spendguard.core.calculator import UsageRecord
from spendguard.core.guard import SpendGuard
from spendguard.core.pipeline import RequestContext, latency_stage
from spendguard.core.pricing import PriceEntry, PriceSource
from spendguard.core.units import PricingUnit


@pytest.fixture
def temp_db():
    """Create a temporary database for testing."""
    with TemporaryDirectory() as tmpdir:
        db_path = Path(tmpdir) / "test.db"
        yield str(db_path)


@pytest.fixture
def settings(temp_db):
    """Create test settings."""
    return Settings(database_path=temp_db, recorder_backoff_base=0.0, store_timeout_seconds=2.0)


class CollectingSink:
    def __init__(self):
        self.recorded = []
        self.alerts = []

    async def on_cost_recorded(self, event):
        self.recorded.append(event)

    async def on_threshold_crossed(self, event):
        self.alerts.append(event)


def gpt4_context(user_id=42, **options):
    options.setdefault("estimated_prompt_length", 4000)
    options.setdefault("max_output_tokens", 1000)
    return RequestContext.create("openai", "gpt-4", user_id=user_id, project_id="apollo", **options)


def usage_of(result):
    return UsageRecord("openai", "gpt-4", result["prompt_tokens"], result["completion_tokens"])


def test_settings_defaults(temp_db):
    settings = Settings(database_path=temp_db)
    assert settings.storage_backend == "sqlite"
    assert settings.store_timeout_seconds == 0.25
    assert settings.default_alert_thresholds == [80, 95, 100]


def test_settings_load_from_yaml(tmp_path):
    config_file = tmp_path / "spendguard.yaml"
    config_file.write_text("storage_backend: memory\nrecorder_workers: 4\ncurrency: eur\n", encoding="utf-8")

    settings = Settings.load_from_file(str(config_file))

    assert settings.storage_backend == "memory"
    assert settings.recorder_workers == 4
    assert settings.currency == "EUR"


def test_settings_reject_invalid_values():
    with pytest.raises(ValueError):
        Settings(storage_backend="redis")
    with pytest.raises(ValueError):
        Settings(cost_precision=2)


def test_full_workflow_records_and_then_denies(settings):
    """Allow -> provider call -> async recording -> the next request is denied."""
    sink = CollectingSink()

    async def scenario():
        guard = SpendGuard(settings, sinks=[sink])
        try:
            user = BudgetScope.user(42)
            guard.set_limit(user, PeriodType.DAILY, "0.10")

            provider = Mock(return_value={"prompt_tokens": 1000, "completion_tokens": 500})
            first = gpt4_context()

            result = await guard.run(first, provider, usage_of)
            await guard.drain()

            assert result == {"prompt_tokens": 1000, "completion_tokens": 500}
            assert first.state["estimated_cost"] == Decimal("0.09")

            status = guard.status(user, PeriodType.DAILY)
            assert status.spent == Decimal("0.06")
            assert status.remaining == Decimal("0.04")

            denied = await guard.run(gpt4_context(), provider, usage_of)
            assert isinstance(denied, Deny)
            assert denied.scope == user
            assert provider.call_count == 1
            return guard.statuses(first.scopes)
        finally:
            await guard.close()

    statuses = asyncio.run(scenario())

    assert len(sink.recorded) == 1
    recorded = sink.recorded[0]
    assert recorded.breakdown.total_cost == Decimal("0.06")
    assert recorded.estimate_error_percent == pytest.approx(50.0)
    assert [s.level for s in statuses] == ["normal"]


def test_async_provider_call(settings):
    async def scenario():
        guard = SpendGuard(settings)
        try:
            async def provider(context):
                await asyncio.sleep(0)
                return {"prompt_tokens": 2500, "completion_tokens": 0}

            result = await guard.run(gpt4_context(), provider, usage_of)
            await guard.drain()
            return result, guard.status(BudgetScope.project("apollo"), "monthly")
        finally:
            await guard.close()

    result, status = asyncio.run(scenario())

    assert result["prompt_tokens"] == 2500
    assert status.spent == Decimal("0.075")
    assert not status.exists


def test_replayed_usage_is_counted_once(settings):
    async def scenario():
        guard = SpendGuard(settings)
        try:
            context = gpt4_context()
            usage = UsageRecord("openai", "gpt-4", 1000, 1000)
            for _ in range(3):
                await guard.report_usage(context.request_id, context.scopes, usage)
            await guard.drain()
            return guard.status(context.scopes.primary, PeriodType.DAILY).spent
        finally:
            await guard.close()

    assert asyncio.run(scenario()) == Decimal("0.09")


def test_alerts_fire_once_per_period(settings):
    sink = CollectingSink()

    async def scenario():
        guard = SpendGuard(settings, sinks=[sink])
        try:
            guard.set_limit(BudgetScope.project("apollo"), PeriodType.MONTHLY, "0.10", alert_thresholds=[50, 80])
            for user_id in (1, 2, 3):
                context = gpt4_context(user_id=user_id)
                await guard.report_usage(
                    context.request_id, context.scopes, UsageRecord("openai", "gpt-4", 500, 250)
                )
                await guard.drain()
        finally:
            await guard.close()

    asyncio.run(scenario())

    # 0.03 -> 0.06 -> 0.09 on a 0.10 limit
    assert [a.threshold_percentage for a in sink.alerts] == [50, 80]


def test_set_price_overrides_driver_default(settings):
    async def scenario():
        guard = SpendGuard(settings)
        try:
            before = guard.resolver.resolve("openai", "gpt-4")
            guard.set_price(
                PriceEntry(
                    provider="openai",
                    model="gpt-4",
                    unit=PricingUnit.PER_1K_TOKENS,
                    input_rate=Decimal("0.01"),
                    output_rate=Decimal("0.02"),
                    effective_date=date(2025, 1, 1),
                )
            )
            after = guard.resolver.resolve("openai", "gpt-4")
            cost = guard.cost_of(UsageRecord("openai", "gpt-4", 1000, 1000))
            return before, after, cost
        finally:
            await guard.close()

    before, after, cost = asyncio.run(scenario())

    assert before.source == PriceSource.DRIVER_DEFAULT
    assert after.source == PriceSource.DATABASE
    assert cost.total_cost == Decimal("0.03")


def test_unknown_model_uses_universal_fallback(settings):
    async def scenario():
        guard = SpendGuard(settings)
        try:
            context = RequestContext.create("acme", "mystery", user_id=1, estimated_prompt_length=4000)
            return guard.check(context)
        finally:
            await guard.close()

    decision = asyncio.run(scenario())

    # 1000 in * 0.015/1K + 600 out * 0.075/1K
    assert decision.allowed
    assert decision.estimated_cost == Decimal("0.06")


def test_memory_backend_with_extra_stage():
    settings = Settings(storage_backend="memory")

    async def scenario():
        guard = SpendGuard(settings, stages=[latency_stage])
        try:
            guard.set_limit(BudgetScope.user(42), "per_request", "0.05")
            provider = Mock(return_value={"prompt_tokens": 1, "completion_tokens": 1})
            denied = guard.execute(gpt4_context(), provider)
            allowed = guard.execute(gpt4_context(max_output_tokens=0, estimated_prompt_length=400), provider)
            return denied, allowed, provider
        finally:
            await guard.close()

    denied, allowed, provider = asyncio.run(scenario())

    assert isinstance(denied, Deny)
    assert denied.period_type == PeriodType.PER_REQUEST
    assert allowed == {"prompt_tokens": 1, "completion_tokens": 1}
    provider.assert_called_once()


def test_enforcement_disabled(temp_db):
    settings = Settings(database_path=temp_db, enforcement_enabled=False)

    async def scenario():
        guard = SpendGuard(settings)
        try:
            guard.set_limit(BudgetScope.user(42), PeriodType.DAILY, "0")
            return guard.check(gpt4_context())
        finally:
            await guard.close()

    assert asyncio.run(scenario()).allowed


def test_run_keeps_the_event_loop_free():
    """A slow pipeline runs in a worker thread while other coroutines proceed."""
    settings = Settings(storage_backend="memory")
    threads = []

    def slow_stage(context, next_stage):
        threads.append(threading.current_thread())
        time.sleep(0.2)
        return next_stage(context)

    async def scenario():
        guard = SpendGuard(settings, stages=[slow_stage])
        ticks = 0

        async def ticker():
            nonlocal ticks
            while True:
                await asyncio.sleep(0.01)
                ticks += 1

        ticking = asyncio.create_task(ticker())
        try:
            provider = Mock(return_value={"prompt_tokens": 10, "completion_tokens": 10})
            await guard.run(gpt4_context(), provider, usage_of)
            await guard.drain()
            return ticks
        finally:
            ticking.cancel()
            await guard.close()

    ticks = asyncio.run(scenario())

    assert threads and threads[0] is not threading.main_thread()
    assert ticks >= 5


def test_warm_fills_price_and_budget_caches():
    settings = Settings(storage_backend="memory")

    async def scenario():
        guard = SpendGuard(settings)
        try:
            user = BudgetScope.user(42)
            guard.set_limit(user, PeriodType.DAILY, "1.00")
            guard.warm([user], price_pairs=[("openai", "gpt-4")])
            return guard
        finally:
            await guard.close()

    guard = asyncio.run(scenario())

    assert ("openai", "gpt-4") in guard.resolver.cache
    assert (BudgetScope.user(42), PeriodType.DAILY) in guard.ledger.limits
