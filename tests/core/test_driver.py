"""
Unit Tests for ExecutionDriver

Tests cover:
- Dispatch per execution type (payment, effect, completion)
- Retry budget, timeouts and failure summaries
- Effect fail-fast (no provider, unavailable provider, open breaker)
- Breaker bookkeeping for half-open test calls
- Effect application after generation
- Persistence errors leave records pending
- Concurrency bound and single terminal write under concurrent drivers
"""

import asyncio
from datetime import timedelta
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest

from execution_engine.config import EngineSettings
from execution_engine.core.circuit_breaker import CircuitBreaker, CircuitBreakerState
from execution_engine.core.driver import CycleSummary, ExecutionDriver, Outcome, summarize_failure
from execution_engine.core.exceptions import (
    EffectApplicationError,
    GenerationError,
    PersistenceError,
    RetriesExhaustedError,
    SchemaViolationError,
    TransferError,
)
from execution_engine.core.execution_record import ExecutionStatus, ExecutionType
from execution_engine.core.providers.generation_provider import GenerationProvider
from execution_engine.core.stores import InMemoryExecutionStore, SQLExecutionStore
from execution_engine.core.timeouts import RetryPolicy


@pytest.fixture
def make_driver(memory_store, clock, fast_policies):
    def factory(**kwargs):
        kwargs.setdefault("store", memory_store)
        kwargs.setdefault("clock", clock)
        kwargs.setdefault("policies", fast_policies)
        kwargs.setdefault("worker_id", "test-worker")
        return ExecutionDriver(**kwargs)
    return factory


class FailingSaveStore(InMemoryExecutionStore):
    """save_record always fails, as if the database went away mid-cycle"""

    async def save_record(self, record, token):
        raise PersistenceError("connection lost", execution_id=record.id)


class CapabilityLessProvider(GenerationProvider):
    name = "text-only"

    async def is_available(self):
        return True

    def describe(self):
        return {"name": self.name, "version": "1", "limits": {}}


# ============================================================================
# PAYMENT
# ============================================================================

@pytest.mark.unit
@pytest.mark.asyncio
async def test_payment_executes_transfer(make_driver, memory_store, make_payment, now):
    record = await memory_store.create(make_payment(project_id=7, installment=2, total=4, amount="250.00"))
    transfer = AsyncMock(return_value=Decimal("0"))

    summary = await make_driver(transfer=transfer).run_cycle()

    transfer.assert_awaited_once_with(7, Decimal("250.00"), 2, execution_id=record.id)
    stored = await memory_store.get(record.id)
    assert stored.status == ExecutionStatus.EXECUTED
    assert stored.executed_at == now
    assert stored.installment_number == 2
    assert stored.total_installments == 4
    assert summary.due == 1
    assert summary.executed == 1
    assert summary.claimed == 1


@pytest.mark.unit
@pytest.mark.asyncio
async def test_records_not_yet_due_are_untouched(make_driver, memory_store, make_payment, now):
    record = await memory_store.create(make_payment(scheduled_for=now + timedelta(minutes=1)))
    transfer = AsyncMock()

    summary = await make_driver(transfer=transfer).run_cycle()

    assert summary.due == 0
    transfer.assert_not_awaited()
    assert (await memory_store.get(record.id)).is_pending


@pytest.mark.unit
@pytest.mark.asyncio
async def test_payment_retries_then_fails(make_driver, memory_store, make_payment):
    record = await memory_store.create(make_payment())
    transfer = AsyncMock(side_effect=TransferError("database error", project_id=1))

    summary = await make_driver(transfer=transfer).run_cycle()

    assert transfer.await_count == 3
    stored = await memory_store.get(record.id)
    assert stored.status == ExecutionStatus.FAILED
    assert stored.error_message == "Failed after 3 attempt(s): TransferError: database error"
    assert summary.failed == 1


@pytest.mark.unit
@pytest.mark.asyncio
async def test_non_retryable_transfer_error_fails_after_one_attempt(make_driver, memory_store, make_payment):
    record = await memory_store.create(make_payment())
    transfer = AsyncMock(side_effect=TransferError("Project 1 not found", project_id=1, retry_allowed=False))

    await make_driver(transfer=transfer).run_cycle()

    assert transfer.await_count == 1
    stored = await memory_store.get(record.id)
    assert stored.status == ExecutionStatus.FAILED
    assert stored.error_message == "TransferError: Project 1 not found"


@pytest.mark.unit
@pytest.mark.asyncio
async def test_payment_without_collaborator_fails(make_driver, memory_store, make_payment):
    record = await memory_store.create(make_payment())

    await make_driver().run_cycle()

    stored = await memory_store.get(record.id)
    assert stored.status == ExecutionStatus.FAILED
    assert "No funds-transfer collaborator configured" in stored.error_message


# ============================================================================
# EFFECT
# ============================================================================

@pytest.mark.unit
@pytest.mark.asyncio
async def test_effect_populates_effects(make_driver, make_provider, memory_store, make_record, effect_payload, now):
    record = await memory_store.create(make_record(ExecutionType.EFFECT))
    provider = make_provider([effect_payload])

    await make_driver(provider=provider).run_cycle()

    stored = await memory_store.get(record.id)
    assert stored.status == ExecutionStatus.EXECUTED
    assert stored.executed_at == now
    assert stored.economic_effects == effect_payload.economic_effects
    assert stored.social_effects == effect_payload.social_effects
    assert stored.error_message is None


@pytest.mark.unit
@pytest.mark.asyncio
async def test_effect_prompt_uses_project_snapshot(make_driver, make_provider, memory_store, make_record, effect_payload):
    await memory_store.create(make_record(ExecutionType.EFFECT, project_id=5))
    provider = make_provider([effect_payload])
    loader = AsyncMock(return_value={"refined_project": {"name": "Hospital Sul"}, "analysis_data": {}})

    await make_driver(provider=provider, project_loader=loader).run_cycle()

    loader.assert_awaited_once_with(5)
    assert "Hospital Sul" in provider.prompts[0]


@pytest.mark.unit
@pytest.mark.asyncio
async def test_effect_accepts_plain_mapping(make_driver, make_provider, memory_store, make_record):
    record = await memory_store.create(make_record(ExecutionType.EFFECT))
    provider = make_provider([{"economic_effects": {"gdp": 3}, "social_effects": {}}])

    await make_driver(provider=provider).run_cycle()

    stored = await memory_store.get(record.id)
    assert stored.economic_effects == {"gdp": 3.0}
    assert stored.social_effects == {}


@pytest.mark.unit
@pytest.mark.asyncio
async def test_effect_fails_twice_then_succeeds(make_driver, make_provider, memory_store, make_record, effect_payload):
    record = await memory_store.create(make_record(ExecutionType.EFFECT))
    provider = make_provider([GenerationError("overloaded"), GenerationError("overloaded"), effect_payload])

    await make_driver(provider=provider).run_cycle()

    assert provider.calls == 3
    stored = await memory_store.get(record.id)
    assert stored.status == ExecutionStatus.EXECUTED
    assert stored.economic_effects == effect_payload.economic_effects


@pytest.mark.unit
@pytest.mark.asyncio
async def test_effect_schema_violations_exhaust_retries(make_driver, make_provider, memory_store, make_record):
    record = await memory_store.create(make_record(ExecutionType.EFFECT))
    provider = make_provider([SchemaViolationError("invalid fields: gdp", provider="fake")])

    await make_driver(provider=provider).run_cycle()

    assert provider.calls == 3
    stored = await memory_store.get(record.id)
    assert stored.status == ExecutionStatus.FAILED
    assert stored.error_message.startswith("Failed after 3 attempt(s): SchemaViolationError")
    assert stored.economic_effects is None
    assert stored.social_effects is None


@pytest.mark.unit
@pytest.mark.asyncio
async def test_effect_timeout_marks_failed(make_driver, make_provider, memory_store, make_record, effect_payload):
    record = await memory_store.create(make_record(ExecutionType.EFFECT))
    provider = make_provider([effect_payload], delay=5.0)
    policies = {ExecutionType.EFFECT: RetryPolicy(max_attempts=1, base_delay=0.0, timeout=0.1)}

    await make_driver(provider=provider, policies=policies).run_cycle()

    stored = await memory_store.get(record.id)
    assert stored.status == ExecutionStatus.FAILED
    assert "TimeoutExceededError" in stored.error_message
    assert stored.economic_effects is None


@pytest.mark.unit
@pytest.mark.asyncio
async def test_unavailable_provider_fails_fast(make_driver, make_provider, memory_store, make_record, effect_payload):
    record = await memory_store.create(make_record(ExecutionType.EFFECT))
    provider = make_provider([effect_payload], available=False)

    await make_driver(provider=provider).run_cycle()

    assert provider.calls == 0
    stored = await memory_store.get(record.id)
    assert stored.status == ExecutionStatus.FAILED
    assert stored.error_message.startswith("ProviderUnavailableError")


@pytest.mark.unit
@pytest.mark.asyncio
async def test_missing_provider_fails_fast(make_driver, memory_store, make_record):
    record = await memory_store.create(make_record(ExecutionType.EFFECT))

    await make_driver().run_cycle()

    stored = await memory_store.get(record.id)
    assert stored.status == ExecutionStatus.FAILED
    assert "No generation provider configured" in stored.error_message


@pytest.mark.unit
@pytest.mark.asyncio
async def test_open_breaker_fails_fast(make_driver, make_provider, memory_store, make_record, effect_payload):
    record = await memory_store.create(make_record(ExecutionType.EFFECT))
    provider = make_provider([effect_payload])
    breaker = CircuitBreaker(failure_threshold=1, timeout=300)
    breaker.record_failure()

    await make_driver(provider=provider, breaker=breaker).run_cycle()

    assert provider.calls == 0
    stored = await memory_store.get(record.id)
    assert "circuit breaker is open" in stored.error_message


@pytest.mark.unit
@pytest.mark.asyncio
async def test_exhausted_effect_trips_breaker(make_driver, make_provider, memory_store, make_record):
    await memory_store.create(make_record(ExecutionType.EFFECT))
    provider = make_provider([GenerationError("down")])
    breaker = CircuitBreaker(failure_threshold=1, timeout=300)

    await make_driver(provider=provider, breaker=breaker).run_cycle()

    assert breaker.is_open()


@pytest.mark.unit
@pytest.mark.asyncio
async def test_missing_capability_is_not_retried(make_driver, memory_store, make_record):
    record = await memory_store.create(make_record(ExecutionType.EFFECT))

    await make_driver(provider=CapabilityLessProvider()).run_cycle()

    stored = await memory_store.get(record.id)
    assert stored.status == ExecutionStatus.FAILED
    assert stored.error_message.startswith("CapabilityNotImplementedError")


@pytest.fixture
def half_open_breaker():
    """Breaker that tripped and whose timeout has passed: the next call is a test call"""
    ticks = [1000.0]
    breaker = CircuitBreaker(name="fake", failure_threshold=1, timeout=300, clock=lambda: ticks[0])
    breaker.record_failure()
    ticks[0] += 301
    breaker.ticks = ticks
    return breaker


@pytest.mark.unit
@pytest.mark.asyncio
async def test_unavailable_test_call_reopens_breaker_then_recovers(
    make_driver, make_provider, memory_store, make_record, effect_payload, half_open_breaker
):
    provider = make_provider([effect_payload], available=False)
    driver = make_driver(provider=provider, breaker=half_open_breaker)

    first = await memory_store.create(make_record(ExecutionType.EFFECT))
    await driver.process_record(first.id)

    assert (await memory_store.get(first.id)).status == ExecutionStatus.FAILED
    assert half_open_breaker.state == CircuitBreakerState.OPEN

    # Next test call after another timeout succeeds
    half_open_breaker.ticks[0] += 301
    provider.available = True
    second = await memory_store.create(make_record(ExecutionType.EFFECT))
    await driver.process_record(second.id)

    assert (await memory_store.get(second.id)).status == ExecutionStatus.EXECUTED
    assert half_open_breaker.is_closed()


@pytest.mark.unit
@pytest.mark.asyncio
async def test_non_retryable_test_call_failure_reopens_breaker(
    make_driver, memory_store, make_record, half_open_breaker
):
    await memory_store.create(make_record(ExecutionType.EFFECT))

    await make_driver(provider=CapabilityLessProvider(), breaker=half_open_breaker).run_cycle()

    assert half_open_breaker.state == CircuitBreakerState.OPEN


@pytest.mark.unit
@pytest.mark.asyncio
async def test_cancelled_test_call_returns_half_open_slot(
    make_driver, make_provider, memory_store, make_record, effect_payload, half_open_breaker
):
    record = await memory_store.create(make_record(ExecutionType.EFFECT))
    provider = make_provider([effect_payload], delay=5.0)
    policies = {ExecutionType.EFFECT: RetryPolicy(max_attempts=1, base_delay=0.0, timeout=10.0)}
    driver = make_driver(provider=provider, breaker=half_open_breaker, policies=policies)

    task = asyncio.ensure_future(driver.process_record(record.id))
    await asyncio.sleep(0.1)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert (await memory_store.get(record.id)).is_pending
    assert half_open_breaker.is_half_open()
    # The slot is free again, so a new test call is let through
    assert not half_open_breaker.is_open()


@pytest.mark.unit
@pytest.mark.asyncio
async def test_effect_applies_generated_effects(make_driver, make_provider, memory_store, make_record, effect_payload):
    record = await memory_store.create(make_record(ExecutionType.EFFECT, project_id=4))
    apply_effects = AsyncMock(return_value={})

    await make_driver(provider=make_provider([effect_payload]), apply_effects=apply_effects).run_cycle()

    apply_effects.assert_awaited_once_with(
        4, effect_payload.economic_effects, effect_payload.social_effects, execution_id=record.id
    )
    assert (await memory_store.get(record.id)).status == ExecutionStatus.EXECUTED


@pytest.mark.unit
@pytest.mark.asyncio
async def test_effect_application_failure_does_not_trip_breaker(
    make_driver, make_provider, memory_store, make_record, effect_payload
):
    record = await memory_store.create(make_record(ExecutionType.EFFECT))
    apply_effects = AsyncMock(
        side_effect=EffectApplicationError("State for user 1 not found", project_id=1, retry_allowed=False)
    )
    breaker = CircuitBreaker(failure_threshold=1, timeout=300)

    await make_driver(
        provider=make_provider([effect_payload]), apply_effects=apply_effects, breaker=breaker
    ).run_cycle()

    stored = await memory_store.get(record.id)
    assert stored.status == ExecutionStatus.FAILED
    assert stored.error_message == "EffectApplicationError: State for user 1 not found"
    assert stored.economic_effects is None
    assert breaker.is_closed()


@pytest.mark.unit
@pytest.mark.asyncio
async def test_backoff_uses_sleep_and_deadlines_use_timer(make_driver, memory_store, make_payment, recorded_sleep):
    record = await memory_store.create(make_payment())
    transfer = AsyncMock(side_effect=[TransferError("busy"), TransferError("busy"), Decimal("0")])
    policies = {ExecutionType.PAYMENT: RetryPolicy(max_attempts=3, base_delay=1.0, timeout=0.5)}

    await make_driver(transfer=transfer, policies=policies, sleep=recorded_sleep).run_cycle()

    assert transfer.await_count == 3
    assert recorded_sleep.delays == [1.0, 2.0]
    assert (await memory_store.get(record.id)).status == ExecutionStatus.EXECUTED


# ============================================================================
# COMPLETION
# ============================================================================

@pytest.mark.unit
@pytest.mark.asyncio
async def test_completion_finalizes_project(make_driver, memory_store, make_record):
    record = await memory_store.create(make_record(ExecutionType.COMPLETION, project_id=3))
    finalize = AsyncMock(return_value=None)

    await make_driver(finalize_project=finalize).run_cycle()

    finalize.assert_awaited_once_with(3)
    assert (await memory_store.get(record.id)).status == ExecutionStatus.EXECUTED


# ============================================================================
# CYCLE BEHAVIOR
# ============================================================================

@pytest.mark.unit
@pytest.mark.asyncio
async def test_mixed_cycle_summary(make_driver, make_provider, memory_store, make_payment, make_record, effect_payload):
    await memory_store.create(make_payment())
    await memory_store.create(make_record(ExecutionType.EFFECT))
    await memory_store.create(make_record(ExecutionType.COMPLETION))

    summary = await make_driver(
        transfer=AsyncMock(),
        provider=make_provider([effect_payload], available=False),
        finalize_project=AsyncMock(),
    ).run_cycle()

    assert isinstance(summary, CycleSummary)
    assert (summary.due, summary.executed, summary.failed) == (3, 2, 1)
    data = summary.to_dict()
    assert data["claimed"] == 3
    assert set(summary.outcomes.values()) == {Outcome.EXECUTED, Outcome.FAILED}


@pytest.mark.unit
@pytest.mark.asyncio
async def test_failed_records_are_not_requeued(make_driver, memory_store, make_payment):
    await memory_store.create(make_payment())
    transfer = AsyncMock(side_effect=TransferError("nope", retry_allowed=False))
    driver = make_driver(transfer=transfer)

    await driver.run_cycle()
    second = await driver.run_cycle()

    assert second.due == 0
    assert transfer.await_count == 1


@pytest.mark.unit
@pytest.mark.asyncio
async def test_persistence_error_leaves_record_pending(clock, fast_policies, make_payment):
    store = FailingSaveStore()
    record = await store.create(make_payment())
    driver = ExecutionDriver(store=store, transfer=AsyncMock(), clock=clock, policies=fast_policies)

    summary = await driver.run_cycle()

    assert summary.aborted == 1
    stored = await store.get(record.id)
    assert stored.is_pending
    assert stored.error_message is None
    # Claim released: selectable again next cycle
    assert [r.id for r in await store.load_due_records(clock())] == [record.id]


@pytest.mark.unit
@pytest.mark.asyncio
async def test_load_failure_propagates(clock):
    store = InMemoryExecutionStore()
    store.load_due_records = AsyncMock(side_effect=PersistenceError("db down"))

    with pytest.raises(PersistenceError):
        await ExecutionDriver(store=store, clock=clock).run_cycle()


@pytest.mark.unit
@pytest.mark.asyncio
async def test_max_concurrency_bounds_in_flight_records(make_driver, make_provider, memory_store, make_record, effect_payload):
    for _ in range(5):
        await memory_store.create(make_record(ExecutionType.EFFECT))
    provider = make_provider([effect_payload], delay=0.05)

    summary = await make_driver(provider=provider, max_concurrency=2).run_cycle()

    assert summary.executed == 5
    assert provider.peak == 2


@pytest.mark.unit
@pytest.mark.asyncio
async def test_records_run_concurrently_without_bound(make_driver, make_provider, memory_store, make_record, effect_payload):
    for _ in range(4):
        await memory_store.create(make_record(ExecutionType.EFFECT))
    provider = make_provider([effect_payload], delay=0.05)

    await make_driver(provider=provider).run_cycle()

    assert provider.peak == 4


@pytest.mark.unit
@pytest.mark.asyncio
async def test_batch_size_limits_due_records(make_driver, memory_store, make_payment):
    for i in range(1, 4):
        await memory_store.create(make_payment(installment=i))

    summary = await make_driver(transfer=AsyncMock(), batch_size=2).run_cycle()

    assert summary.due == 2


@pytest.mark.unit
@pytest.mark.asyncio
async def test_concurrent_drivers_write_once(memory_store, clock, fast_policies, make_provider, make_record, effect_payload):
    """Two drivers dispatching the same due record produce one terminal write"""
    record = await memory_store.create(make_record(ExecutionType.EFFECT))
    provider = make_provider([effect_payload], delay=0.05)
    drivers = [
        ExecutionDriver(store=memory_store, provider=provider, clock=clock, policies=fast_policies, worker_id=name)
        for name in ("worker-a", "worker-b")
    ]

    outcomes = await asyncio.gather(*(driver.process_record(record.id) for driver in drivers))

    assert sorted(outcomes) == [Outcome.EXECUTED, Outcome.SKIPPED]
    assert provider.calls == 1
    assert (await memory_store.get(record.id)).status == ExecutionStatus.EXECUTED


# ============================================================================
# process_record / helpers
# ============================================================================

@pytest.mark.unit
@pytest.mark.asyncio
async def test_process_record_skips_records_not_due(make_driver, memory_store, make_payment, now):
    record = await memory_store.create(make_payment(scheduled_for=now + timedelta(days=1)))

    assert await make_driver(transfer=AsyncMock()).process_record(record.id) == Outcome.SKIPPED
    assert await make_driver().process_record(12345) == Outcome.SKIPPED


@pytest.mark.unit
@pytest.mark.asyncio
async def test_process_record_executes_due_record(make_driver, memory_store, make_payment):
    record = await memory_store.create(make_payment())

    assert await make_driver(transfer=AsyncMock()).process_record(record.id) == Outcome.EXECUTED


@pytest.mark.unit
def test_summarize_failure_is_bounded():
    error = RetriesExhaustedError(3, GenerationError("line one\nline two " + "x" * 1000))

    summary = summarize_failure(error)

    assert summary.startswith("Failed after 3 attempt(s): GenerationError: line one line two")
    assert "\n" not in summary
    assert len(summary) <= 500


@pytest.mark.unit
def test_from_settings_wires_sql_collaborators(session_factory, monkeypatch):
    monkeypatch.delenv("GROQ_API_KEY", raising=False)

    driver = ExecutionDriver.from_settings(EngineSettings(lease_seconds=600), session_factory=session_factory)

    assert isinstance(driver.store, SQLExecutionStore)
    assert driver.store.lease_seconds == 600
    assert driver.provider.describe()["name"] == "groq"
    assert driver.breaker is not None
    assert driver.transfer is not None
    assert driver.finalize_project is not None


@pytest.mark.unit
def test_from_settings_shares_breaker_per_provider(session_factory, monkeypatch):
    monkeypatch.delenv("GROQ_API_KEY", raising=False)
    settings = EngineSettings(lease_seconds=600)

    first = ExecutionDriver.from_settings(settings, session_factory=session_factory)
    second = ExecutionDriver.from_settings(settings, session_factory=session_factory)

    assert first.breaker is second.breaker
    assert first.apply_effects is not None
