"""
Celery Tasks for the execution engine

Main Tasks:
- process_due_executions_task: run one due-check cycle (beat, hourly)
- process_execution_task: process one specific due record (manual trigger)
- get_execution_stats_task: record counts and generation breaker status

Tasks build a fresh driver per run and drive it with asyncio.run(). The
generation breaker is shared by every driver of the worker process.
Per-record failures are recorded on the records themselves; only a failure
to load due records makes the task fail (and be retried by Celery).
"""

import asyncio
import logging
from typing import Any, Dict

from .celery_app import celery_app
from ..config import EngineSettings
from ..core.driver import ExecutionDriver
from ..core.exceptions import PersistenceError
from ..core.metrics import ExecutionMetrics

logger = logging.getLogger(__name__)


def build_driver() -> ExecutionDriver:
    return ExecutionDriver.from_settings(EngineSettings.from_env())


@celery_app.task(
    bind=True,
    name="process_due_executions_task",
    max_retries=3,
    default_retry_delay=60,
)
def process_due_executions_task(self) -> Dict[str, Any]:
    """
    Run one due-check cycle.

    Returns:
        CycleSummary as dict:
        {
            "cycle_id": "3f2a...",
            "due": 4,
            "claimed": 4,
            "executed": 3,
            "failed": 1,
            "skipped": 0,
            "aborted": 0,
            ...
        }
    """
    task_id = self.request.id
    logger.info(f"Task {task_id}: Starting due-check cycle")

    try:
        driver = build_driver()
        summary = asyncio.run(driver.run_cycle())
    except PersistenceError as e:
        logger.error(f"Task {task_id}: Could not load due executions: {e}")
        raise self.retry(exc=e)

    logger.info(
        f"Task {task_id}: Cycle finished - {summary.executed} executed, "
        f"{summary.failed} failed, {summary.skipped} skipped, {summary.aborted} aborted"
    )
    return summary.to_dict()


@celery_app.task(bind=True, name="process_execution_task")
def process_execution_task(self, execution_id: int) -> Dict[str, Any]:
    """
    Process one execution record now, if it is due.

    Returns:
        {"execution_id": 12, "outcome": "executed"}
    """
    task_id = self.request.id
    logger.info(f"Task {task_id}: Processing execution {execution_id}")

    driver = build_driver()
    outcome = asyncio.run(driver.process_record(execution_id))

    logger.info(f"Task {task_id}: Execution {execution_id} -> {outcome}")
    return {"execution_id": execution_id, "outcome": outcome}


@celery_app.task(bind=True, name="get_execution_stats_task")
def get_execution_stats_task(self) -> Dict[str, Any]:
    """
    Report execution statistics.

    Returns:
        ExecutionMetrics.get_all_metrics() output:
        {"timestamp": ..., "executions": {...}, "circuit_breaker": {...}}
    """
    driver = build_driver()
    metrics = asyncio.run(ExecutionMetrics(driver.store, driver.breaker).get_all_metrics())

    total = metrics["executions"]["total"]
    logger.info(
        f"Task {self.request.id}: {total['pending']} pending, {total['executed']} executed, "
        f"{total['failed']} failed; breaker {metrics['circuit_breaker']['state']}"
    )
    return metrics
