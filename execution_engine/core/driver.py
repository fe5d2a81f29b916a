"""
Execution Driver - advances due execution records through their lifecycle.

One due-check cycle:
1. Load pending records with scheduled_for <= now
2. For each record, concurrently:
   a. Claim it (at most one worker holds a record at a time)
   b. Dispatch by type through run_bounded():
      - payment    -> transfer(project_id, amount, installment_number)
      - effect     -> provider.generate_structured(prompt, EffectPayload),
                      then apply_effects(project_id, economic, social)
      - completion -> finalize_project(project_id)
   c. Mark executed / failed and save once

Latency bound per record (see config.latency_bound()):
    bounded run = max_attempts * timeout + base_delay * (1 + 2 + ... + (max_attempts - 1))
    payment, completion: one bounded run (93s with 3 attempts, 1s, 30s)
    effect: availability check timeout + generation run + application run
            (60 + 186 + 186 = 432s with 3 attempts, 2s, 60s)
Claim leases must exceed these.

Failure semantics:
- Any error surfaced by the runner is terminal for the cycle: the record is
  marked failed and never re-queued by the driver.
- Store errors abort the transition: the record stays pending and the claim
  is released, so a later cycle can select it again.
"""

import asyncio
import logging
import os
import socket
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Optional

from pydantic import ValidationError

from .circuit_breaker import CircuitBreaker, get_circuit_breaker
from .effects import EffectPayload, build_effect_prompt
from .exceptions import (
    CollaboratorError,
    EngineException,
    PersistenceError,
    ProviderUnavailableError,
    RetriesExhaustedError,
    SchemaViolationError,
    StaleClaimError,
    describe_error,
)
from .execution_record import ExecutionRecord, ExecutionStatus, ExecutionType, utcnow
from .logging_config import set_cycle_id, set_execution_id
from .providers.generation_provider import GenerationProvider
from .stores.base import ExecutionStore
from .timeouts import RetryPolicy, Sleeper, run_bounded, run_with_timeout
from ..config import DEFAULT_POLICIES, EngineSettings

logger = logging.getLogger(__name__)

# transfer(project_id, amount, installment_number, execution_id=...)
TransferFn = Callable[..., Awaitable[Any]]
# apply_effects(project_id, economic_effects, social_effects, execution_id=...)
ApplyEffectsFn = Callable[..., Awaitable[Any]]
FinalizeFn = Callable[[int], Awaitable[Any]]
ProjectLoaderFn = Callable[[int], Awaitable[Optional[Dict[str, Any]]]]

ERROR_MESSAGE_LIMIT = 500


class Outcome:
    """Per-record result of a dispatch"""
    EXECUTED = "executed"
    FAILED = "failed"
    SKIPPED = "skipped"  # Claimed by someone else, or no longer due
    ABORTED = "aborted"  # Store error; record left pending


@dataclass
class CycleSummary:
    """Result of one run_cycle() call"""
    cycle_id: str
    started_at: datetime
    due: int = 0
    executed: int = 0
    failed: int = 0
    skipped: int = 0
    aborted: int = 0
    duration_ms: float = 0.0
    outcomes: Dict[int, str] = field(default_factory=dict)

    @property
    def claimed(self) -> int:
        """Records this worker held a claim on"""
        return self.executed + self.failed + self.aborted

    def record(self, execution_id: int, outcome: str):
        self.outcomes[execution_id] = outcome
        setattr(self, outcome, getattr(self, outcome) + 1)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "cycle_id": self.cycle_id,
            "started_at": self.started_at.isoformat(),
            "due": self.due,
            "claimed": self.claimed,
            "executed": self.executed,
            "failed": self.failed,
            "skipped": self.skipped,
            "aborted": self.aborted,
            "duration_ms": round(self.duration_ms, 2),
        }


def summarize_failure(error: BaseException) -> str:
    """error_message for a failed record: concise, no payloads or tracebacks."""
    if isinstance(error, RetriesExhaustedError):
        prefix = f"Failed after {error.attempts} attempt(s): "
        return prefix + describe_error(error.last_error, limit=ERROR_MESSAGE_LIMIT - len(prefix))
    return describe_error(error, limit=ERROR_MESSAGE_LIMIT)


class ExecutionDriver:
    """
    Selects due execution records and moves each one to a terminal state.

    Collaborators are injected:
        store: ExecutionStore (persistence boundary)
        provider: GenerationProvider for effect records
        transfer: async (project_id, amount, installment_number, execution_id=) for payments
        apply_effects: optional async (project_id, economic, social, execution_id=)
            applying generated effects to the state
        finalize_project: async (project_id) for completions
        project_loader: optional async (project_id) -> project snapshot for prompts

    The provider instance is shared by every concurrent task of a cycle.
    """

    def __init__(
        self,
        store: ExecutionStore,
        provider: Optional[GenerationProvider] = None,
        transfer: Optional[TransferFn] = None,
        finalize_project: Optional[FinalizeFn] = None,
        apply_effects: Optional[ApplyEffectsFn] = None,
        project_loader: Optional[ProjectLoaderFn] = None,
        policies: Optional[Dict[str, RetryPolicy]] = None,
        breaker: Optional[CircuitBreaker] = None,
        max_concurrency: Optional[int] = None,
        batch_size: Optional[int] = None,
        generation_options: Optional[Dict[str, Any]] = None,
        clock: Callable[[], datetime] = utcnow,
        sleep: Sleeper = asyncio.sleep,
        timer: Sleeper = asyncio.sleep,
        worker_id: Optional[str] = None,
    ):
        self.store = store
        self.provider = provider
        self.transfer = transfer
        self.finalize_project = finalize_project
        self.apply_effects = apply_effects
        self.project_loader = project_loader
        self.policies = {**DEFAULT_POLICIES, **(policies or {})}
        self.breaker = breaker
        self.max_concurrency = max_concurrency
        self.batch_size = batch_size
        self.generation_options = generation_options or {}
        self.clock = clock
        self.sleep = sleep  # backoff between attempts
        self.timer = timer  # per-attempt deadlines
        self.worker_id = worker_id or f"{socket.gethostname()}:{os.getpid()}"

    # ------------------------------------------------------------------
    # Cycle
    # ------------------------------------------------------------------

    async def run_cycle(self) -> CycleSummary:
        """
        Run one due-check cycle.

        Returns:
            CycleSummary with per-outcome counts

        Raises:
            PersistenceError: If due records could not be loaded
        """
        cycle_id = uuid.uuid4().hex[:12]
        set_cycle_id(cycle_id)
        start = time.monotonic()
        now = self.clock()
        summary = CycleSummary(cycle_id=cycle_id, started_at=now)

        try:
            due = await self.store.load_due_records(now, limit=self.batch_size)
            summary.due = len(due)
            logger.info(f"Found {len(due)} due execution(s)", extra={"due": len(due)})

            if due:
                semaphore = asyncio.Semaphore(self.max_concurrency) if self.max_concurrency else None

                async def bounded(record: ExecutionRecord) -> str:
                    if semaphore is None:
                        return await self._process_guarded(record)
                    async with semaphore:
                        return await self._process_guarded(record)

                outcomes = await asyncio.gather(*(bounded(record) for record in due))
                for record, outcome in zip(due, outcomes):
                    summary.record(record.id, outcome)

            summary.duration_ms = (time.monotonic() - start) * 1000
            logger.info("Execution cycle finished", extra=summary.to_dict())
            return summary
        finally:
            set_cycle_id(None)

    async def process_record(self, record_id: int) -> str:
        """
        Process one specific record if it is due (manual trigger).

        Returns:
            Outcome value
        """
        record = await self.store.get(record_id)
        if record is None or not record.is_due(self.clock()):
            logger.info(f"Execution {record_id} is not due, nothing to do")
            return Outcome.SKIPPED
        return await self._process_guarded(record)

    async def _process_guarded(self, record: ExecutionRecord) -> str:
        """Run _process() and keep one record's crash from failing the cycle."""
        set_execution_id(record.id)
        try:
            return await self._process(record)
        except Exception:
            logger.exception(f"Unexpected error while processing execution {record.id}; left pending")
            return Outcome.ABORTED

    async def _process(self, record: ExecutionRecord) -> str:
        token = f"{self.worker_id}:{uuid.uuid4().hex}"

        try:
            claimed = await self.store.try_claim(record.id, token, self.clock())
        except PersistenceError as e:
            logger.error(f"Could not claim execution {record.id}: {e}")
            return Outcome.SKIPPED

        if not claimed:
            logger.info(f"Execution {record.id} already claimed elsewhere, skipping")
            return Outcome.SKIPPED

        logger.info(
            f"Processing execution {record.id} - type: {record.execution_type}",
            extra={"project_id": record.project_id, "execution_type": record.execution_type},
        )

        try:
            finished = await self._execute(record)
        except BaseException:
            await self._release(record.id, token)
            raise

        try:
            await self.store.save_record(finished, token)
        except StaleClaimError as e:
            logger.error(f"Execution {record.id} lost its claim, result discarded: {e}")
            return Outcome.ABORTED
        except PersistenceError as e:
            logger.error(f"Could not save execution {record.id}, left pending: {e}")
            await self._release(record.id, token)
            return Outcome.ABORTED

        if finished.status == ExecutionStatus.EXECUTED:
            logger.info(f"Execution {record.id} executed")
        else:
            logger.warning(f"Execution {record.id} failed: {finished.error_message}")
        return finished.status

    async def _release(self, record_id: int, token: str):
        try:
            await self.store.release_claim(record_id, token)
        except PersistenceError as e:
            logger.warning(f"Could not release claim on execution {record_id} (lease will expire): {e}")

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    async def _execute(self, record: ExecutionRecord) -> ExecutionRecord:
        """Do the work for a claimed record and return its terminal copy."""
        policy = self.policies[record.execution_type]

        try:
            if record.execution_type == ExecutionType.PAYMENT:
                await self._run_payment(record, policy)
                return record.mark_executed(self.clock())

            if record.execution_type == ExecutionType.EFFECT:
                payload = await self._run_effect(record, policy)
                return record.mark_executed(
                    self.clock(),
                    economic_effects=payload.economic_effects,
                    social_effects=payload.social_effects,
                )

            await self._run_completion(record, policy)
            return record.mark_executed(self.clock())

        except EngineException as e:
            return record.mark_failed(self.clock(), summarize_failure(e))

    async def _run_payment(self, record: ExecutionRecord, policy: RetryPolicy):
        if self.transfer is None:
            raise CollaboratorError("No funds-transfer collaborator configured", retry_allowed=False)

        logger.info(
            f"Paying installment {record.installment_number}/{record.total_installments} "
            f"of project {record.project_id}: {record.payment_amount}"
        )
        # Worst case: policy.worst_case_latency() seconds
        await run_bounded(
            lambda: self.transfer(
                record.project_id, record.payment_amount, record.installment_number, execution_id=record.id
            ),
            policy,
            label=f"payment of execution {record.id}",
            sleep=self.sleep,
            timer=self.timer,
        )

    async def _run_completion(self, record: ExecutionRecord, policy: RetryPolicy):
        if self.finalize_project is None:
            raise CollaboratorError("No completion collaborator configured", retry_allowed=False)

        # Worst case: policy.worst_case_latency() seconds
        await run_bounded(
            lambda: self.finalize_project(record.project_id),
            policy,
            label=f"completion of execution {record.id}",
            sleep=self.sleep,
            timer=self.timer,
        )

    async def _run_effect(self, record: ExecutionRecord, policy: RetryPolicy) -> EffectPayload:
        """
        Generate effects for an effect record, then apply them to the state.

        Application failures fail the record but are not held against the
        provider's breaker.
        """
        payload = await self._generate_effects(record, policy)

        if self.apply_effects is not None:
            # Worst case: policy.worst_case_latency() seconds
            await run_bounded(
                lambda: self.apply_effects(
                    record.project_id, payload.economic_effects, payload.social_effects, execution_id=record.id
                ),
                policy,
                label=f"effect application of execution {record.id}",
                sleep=self.sleep,
                timer=self.timer,
            )
        return payload

    async def _generate_effects(self, record: ExecutionRecord, policy: RetryPolicy) -> EffectPayload:
        """
        Fails fast (no retries) when no provider is configured, the breaker is
        open, or the provider reports itself unavailable.

        Once the breaker lets the call through (possibly as its HALF_OPEN test
        call), every outcome is reported back to it.
        """
        provider = self.provider
        if provider is None:
            raise ProviderUnavailableError("No generation provider configured")

        name = provider.describe().get("name", type(provider).__name__)
        breaker = self.breaker

        if breaker is not None and breaker.is_open():
            raise ProviderUnavailableError(f"{name} circuit breaker is open", provider=name)

        async def attempt() -> EffectPayload:
            project = await self.project_loader(record.project_id) if self.project_loader else None
            prompt = build_effect_prompt(record, project)
            result = await provider.generate_structured(prompt, EffectPayload, self.generation_options)
            if isinstance(result, EffectPayload):
                return result
            try:
                return EffectPayload.model_validate(result)
            except ValidationError:
                raise SchemaViolationError(
                    "Provider returned an object that does not match EffectPayload",
                    provider=name,
                    schema_name="EffectPayload",
                )

        try:
            if not await self._check_available(provider, policy):
                raise ProviderUnavailableError(f"{name} reported itself unavailable", provider=name)

            # Worst case: policy.timeout + policy.worst_case_latency() seconds
            payload = await run_bounded(
                attempt,
                policy,
                label=f"effect generation of execution {record.id}",
                sleep=self.sleep,
                timer=self.timer,
            )
        except Exception:
            if breaker is not None:
                breaker.record_failure()
            raise
        except BaseException:
            if breaker is not None:
                breaker.release()
            raise

        if breaker is not None:
            breaker.record_success()
        return payload

    async def _check_available(self, provider: GenerationProvider, policy: RetryPolicy) -> bool:
        """is_available() bounded by one attempt timeout; any doubt means False."""
        try:
            available = await run_with_timeout(
                provider.is_available, policy.timeout, label="availability check", sleep=self.timer
            )
            return bool(available)
        except Exception as e:
            logger.warning(f"Availability check failed: {describe_error(e)}")
            return False

    # ------------------------------------------------------------------
    # Construction from settings
    # ------------------------------------------------------------------

    @classmethod
    def from_settings(
        cls,
        settings: EngineSettings,
        session_factory=None,
        breaker: Optional[CircuitBreaker] = None,
    ) -> "ExecutionDriver":
        """
        Build a driver backed by SQL persistence and the configured provider.

        Args:
            settings: EngineSettings (usually EngineSettings.from_env())
            session_factory: Optional sessionmaker (defaults to DATABASE_URL)
            breaker: Optional breaker (defaults to the process-wide breaker
                of the configured provider)
        """
        from ..database import create_session_factory, get_session_factory
        from .ledger import SQLEffectApplier, SQLProjectFinalizer, SQLProjectLoader, SQLTreasury
        from .providers.registry import ProviderRegistry
        from .stores.sql import SQLExecutionStore

        if session_factory is None:
            session_factory = (
                create_session_factory(settings.database_url) if settings.database_url else get_session_factory()
            )

        provider = ProviderRegistry.get_provider(settings.generation_provider, settings.generation_model)
        if breaker is None:
            breaker = get_circuit_breaker(
                settings.generation_provider,
                failure_threshold=settings.breaker_failure_threshold,
                timeout=settings.breaker_timeout,
            )

        return cls(
            store=SQLExecutionStore(session_factory, lease_seconds=settings.lease_seconds),
            provider=provider,
            transfer=SQLTreasury(session_factory).transfer,
            finalize_project=SQLProjectFinalizer(session_factory).finalize_project,
            apply_effects=SQLEffectApplier(session_factory).apply_effects,
            project_loader=SQLProjectLoader(session_factory).load,
            policies=settings.policies,
            breaker=breaker,
            max_concurrency=settings.max_concurrency,
            batch_size=settings.batch_size,
        )
