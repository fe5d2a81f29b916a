"""
Engine configuration

All settings come from environment variables (a .env file is loaded if
present). Each execution type has its own retry budget:

    PAYMENT_MAX_ATTEMPTS / PAYMENT_BASE_DELAY / PAYMENT_TIMEOUT
    EFFECT_MAX_ATTEMPTS / EFFECT_BASE_DELAY / EFFECT_TIMEOUT
    COMPLETION_MAX_ATTEMPTS / COMPLETION_BASE_DELAY / COMPLETION_TIMEOUT

Delays and timeouts are in seconds.
"""

import os
from dataclasses import dataclass, field
from typing import Dict, Optional

from dotenv import load_dotenv

from .core.execution_record import ExecutionType
from .core.timeouts import RetryPolicy

load_dotenv()

# Generation calls are slower than database work, so effects get a longer
# per-attempt timeout and backoff.
DEFAULT_POLICIES: Dict[str, RetryPolicy] = {
    ExecutionType.PAYMENT: RetryPolicy(max_attempts=3, base_delay=1.0, timeout=30.0),
    ExecutionType.EFFECT: RetryPolicy(max_attempts=3, base_delay=2.0, timeout=60.0),
    ExecutionType.COMPLETION: RetryPolicy(max_attempts=3, base_delay=1.0, timeout=30.0),
}


def latency_bound(execution_type: str, policy: RetryPolicy) -> float:
    """
    Longest time one record of this type can stay claimed.

    Effects spend one attempt timeout on the availability check before
    generation, then a second bounded run applying the generated effects.

    Example:
        >>> latency_bound(ExecutionType.EFFECT, DEFAULT_POLICIES[ExecutionType.EFFECT])
        432.0
    """
    bound = policy.worst_case_latency()
    if execution_type == ExecutionType.EFFECT:
        bound = policy.timeout + 2 * bound
    return bound


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    return float(value) if value not in (None, "") else default


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    return int(value) if value not in (None, "") else default


def _policy_from_env(execution_type: str) -> RetryPolicy:
    prefix = execution_type.upper()
    default = DEFAULT_POLICIES[execution_type]
    return RetryPolicy(
        max_attempts=_env_int(f"{prefix}_MAX_ATTEMPTS", default.max_attempts),
        base_delay=_env_float(f"{prefix}_BASE_DELAY", default.base_delay),
        timeout=_env_float(f"{prefix}_TIMEOUT", default.timeout),
    )


@dataclass
class EngineSettings:
    """
    Runtime settings.

    Attributes:
        database_url: SQLAlchemy URL of the executions database
        redis_url: Celery broker/result backend
        generation_provider: Registry name of the generation backend
        generation_model: Optional model override for that backend
        policies: Retry budget per execution type
        lease_seconds: Age after which an in-flight claim is considered abandoned
        max_concurrency: Max records processed at once per cycle (None = unbounded)
        batch_size: Max due records loaded per cycle (None = all)
        breaker_failure_threshold: Consecutive failed effect executions before fast-failing
        breaker_timeout: Seconds the breaker stays open
    """
    database_url: Optional[str] = None
    redis_url: Optional[str] = None
    generation_provider: str = "groq"
    generation_model: Optional[str] = None
    policies: Dict[str, RetryPolicy] = field(default_factory=lambda: dict(DEFAULT_POLICIES))
    lease_seconds: float = 900
    max_concurrency: Optional[int] = 10
    batch_size: Optional[int] = None
    breaker_failure_threshold: int = 5
    breaker_timeout: float = 300

    def __post_init__(self):
        missing = set(ExecutionType.ALL) - set(self.policies)
        for execution_type in missing:
            self.policies[execution_type] = DEFAULT_POLICIES[execution_type]

        # A claim must outlive the slowest possible attempt sequence, or a
        # second worker could take over a record that is still in flight.
        slowest = max(latency_bound(t, policy) for t, policy in self.policies.items())
        if self.lease_seconds <= slowest:
            raise ValueError(
                f"lease_seconds ({self.lease_seconds}) must exceed the worst-case "
                f"execution latency ({slowest}s)"
            )

    def policy_for(self, execution_type: str) -> RetryPolicy:
        return self.policies[execution_type]

    @classmethod
    def from_env(cls) -> "EngineSettings":
        max_concurrency = _env_int("MAX_CONCURRENCY", 10)
        batch_size = _env_int("BATCH_SIZE", 0)
        return cls(
            database_url=os.getenv("DATABASE_URL"),
            redis_url=os.getenv("REDIS_URL"),
            generation_provider=os.getenv("GENERATION_PROVIDER", "groq"),
            generation_model=os.getenv("GENERATION_MODEL") or None,
            policies={t: _policy_from_env(t) for t in ExecutionType.ALL},
            lease_seconds=_env_float("CLAIM_LEASE_SECONDS", 900),
            max_concurrency=max_concurrency if max_concurrency > 0 else None,
            batch_size=batch_size if batch_size > 0 else None,
            breaker_failure_threshold=_env_int("BREAKER_FAILURE_THRESHOLD", 5),
            breaker_timeout=_env_float("BREAKER_TIMEOUT", 300),
        )
