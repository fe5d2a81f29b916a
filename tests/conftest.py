"""
Pytest fixtures for execution engine tests

This module provides shared fixtures for all tests:
- Fixed clock and fast retry policies
- In-memory and SQLite-backed stores
- Fake generation provider
- Sample projects and execution records
"""

import asyncio
import pytest
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, List

from execution_engine.core.effects import EffectPayload
from execution_engine.core.execution_record import ExecutionRecord, ExecutionType
from execution_engine.core.providers.generation_provider import GenerationProvider
from execution_engine.core.circuit_breaker import clear_circuit_breakers
from execution_engine.core.providers.registry import ProviderRegistry
from execution_engine.core.stores import InMemoryExecutionStore
from execution_engine.core.timeouts import RetryPolicy
from execution_engine.database import create_session_factory
from execution_engine.models import Base, GovernmentProject, ProjectStatus, State


NOW = datetime(2025, 6, 1, 12, 0, 0)


# ============================================================================
# CLOCK & POLICY FIXTURES
# ============================================================================

@pytest.fixture
def now():
    return NOW


@pytest.fixture
def clock():
    """Fixed clock for drivers"""
    return lambda: NOW


@pytest.fixture
def fast_policies():
    """Real-time policies small enough for unit tests"""
    policy = RetryPolicy(max_attempts=3, base_delay=0.01, timeout=0.5)
    return {execution_type: policy for execution_type in ExecutionType.ALL}


@pytest.fixture
def recorded_sleep():
    """
    Backoff sleep that records delays and returns immediately.
    Pass as `sleep` only; deadlines keep using the real timer.
    """
    delays: List[float] = []

    async def sleep(delay: float):
        delays.append(delay)

    sleep.delays = delays
    return sleep


# ============================================================================
# STORE FIXTURES
# ============================================================================

@pytest.fixture
def memory_store():
    return InMemoryExecutionStore(lease_seconds=900)


@pytest.fixture(scope="function")
def session_factory(tmp_path):
    """
    File-based SQLite database (executor threads each get a connection).
    Each test gets a fresh database.
    """
    factory = create_session_factory(f"sqlite:///{tmp_path / 'engine.db'}")
    engine = factory.kw["bind"]
    Base.metadata.create_all(engine)

    try:
        yield factory
    finally:
        engine.dispose()


@pytest.fixture
def project_id(session_factory):
    """Approved project owned by user 1, whose state has a 1,000,000 budget"""
    with session_factory() as db:
        project = GovernmentProject(
            user_id=1,
            status=ProjectStatus.IN_EXECUTION,
            refined_project={"name": "Ponte Norte", "description": "New bridge over the river"},
            analysis_data={
                "total_cost": 300000,
                "economic_return_projection": "moderate",
                "social_impact_projection": "high",
                "estimated_duration_months": 6,
            },
            processing_logs=[],
        )
        db.add(project)
        db.add(State(user_id=1, budget=Decimal("1000000.00")))
        db.commit()
        return project.id


# ============================================================================
# RECORD FACTORIES
# ============================================================================

@pytest.fixture
def make_payment():
    def factory(project_id: int = 1, installment: int = 1, total: int = 3,
                amount: str = "100.00", scheduled_for: datetime = None) -> ExecutionRecord:
        return ExecutionRecord(
            project_id=project_id,
            execution_type=ExecutionType.PAYMENT,
            scheduled_for=scheduled_for or NOW - timedelta(hours=1),
            payment_amount=Decimal(amount),
            installment_number=installment,
            total_installments=total,
        )
    return factory


@pytest.fixture
def make_record():
    def factory(execution_type: str, project_id: int = 1, scheduled_for: datetime = None) -> ExecutionRecord:
        return ExecutionRecord(
            project_id=project_id,
            execution_type=execution_type,
            scheduled_for=scheduled_for or NOW - timedelta(hours=1),
        )
    return factory


@pytest.fixture
def effect_payload():
    return EffectPayload(
        economic_effects={"gdp": 1500000.0, "unemployment_rate": -0.3},
        social_effects={"approval_rating": 2.5},
    )


# ============================================================================
# PROVIDER FIXTURES
# ============================================================================

class FakeProvider(GenerationProvider):
    """
    Scripted provider.

    responses: consumed in order; the last one repeats. Exceptions are
    raised, anything else is returned.
    """

    name = "fake"

    def __init__(self, responses: List[Any] = None, available: bool = True, delay: float = 0.0):
        self.responses = list(responses or [])
        self.available = available
        self.delay = delay
        self.calls = 0
        self.active = 0
        self.peak = 0
        self.prompts: List[str] = []

    async def generate_structured(self, prompt, schema, options=None):
        self.calls += 1
        self.prompts.append(prompt)
        self.active += 1
        self.peak = max(self.peak, self.active)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            response = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
            if isinstance(response, BaseException):
                raise response
            return response
        finally:
            self.active -= 1

    async def is_available(self) -> bool:
        return self.available

    def describe(self) -> Dict[str, Any]:
        return {"name": self.name, "version": "test", "limits": {}}


@pytest.fixture
def make_provider():
    return FakeProvider


@pytest.fixture(autouse=True)
def clear_shared_instances():
    """Providers and breakers are process-wide; start each test clean"""
    ProviderRegistry.clear_cache()
    clear_circuit_breakers()
    yield
    ProviderRegistry.clear_cache()
    clear_circuit_breakers()
