"""
Execution statistics

Provides:
- Record counts per execution type and status
- Success rate of finished records
- Generation circuit breaker status
"""

import logging
from typing import Any, Dict, Optional

from .circuit_breaker import CircuitBreaker, CircuitBreakerState
from .exceptions import PersistenceError
from .execution_record import ExecutionStatus, ExecutionType, utcnow
from .stores.base import ExecutionStore

logger = logging.getLogger(__name__)


def _empty_counts() -> Dict[str, int]:
    return {status: 0 for status in ExecutionStatus.ALL}


class ExecutionMetrics:
    """Aggregates execution statistics from a store."""

    def __init__(self, store: ExecutionStore, breaker: Optional[CircuitBreaker] = None):
        self.store = store
        self.breaker = breaker

    async def get_execution_stats(self) -> Dict[str, Any]:
        """
        Counts per type and status, plus totals.

        Returns:
            {
                "payment": {"pending": 0, "executed": 0, "failed": 0},
                "effect": {...},
                "completion": {...},
                "total": {...},
                "success_rate": 100.0  # executed / finished, in %
            }
        """
        try:
            counts = await self.store.count_by_type_and_status()
        except PersistenceError as e:
            logger.error(f"Failed to get execution stats: {e}")
            raise

        result: Dict[str, Any] = {t: _empty_counts() for t in ExecutionType.ALL}
        total = _empty_counts()
        for execution_type, by_status in counts.items():
            bucket = result.setdefault(execution_type, _empty_counts())
            for status, count in by_status.items():
                bucket[status] = bucket.get(status, 0) + count
                total[status] = total.get(status, 0) + count
        result["total"] = total

        finished = total[ExecutionStatus.EXECUTED] + total[ExecutionStatus.FAILED]
        result["success_rate"] = (
            round(total[ExecutionStatus.EXECUTED] / finished * 100, 2) if finished else 0.0
        )
        return result

    def get_circuit_breaker_status(self) -> Dict[str, Any]:
        if self.breaker is None:
            return {"state": "not_configured", "is_healthy": True}

        status = self.breaker.get_status()
        return {
            "state": status["state"],
            "failure_count": status["failure_count"],
            "failure_threshold": status["failure_threshold"],
            "is_healthy": status["state"] == CircuitBreakerState.CLOSED,
        }

    async def get_all_metrics(self) -> Dict[str, Any]:
        return {
            "timestamp": utcnow().isoformat() + "Z",
            "executions": await self.get_execution_stats(),
            "circuit_breaker": self.get_circuit_breaker_status(),
        }
