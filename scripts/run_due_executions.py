"""
Run one due-check cycle from the command line (no Celery needed)

Usage:
    python scripts/run_due_executions.py            # all due records
    python scripts/run_due_executions.py 42         # only execution 42
    python scripts/run_due_executions.py --stats    # counts and breaker status, no processing
"""

import asyncio
import json
import os
import sys

# Add project root to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from execution_engine.config import EngineSettings  # noqa: E402
from execution_engine.core.driver import ExecutionDriver  # noqa: E402
from execution_engine.core.logging_config import setup_logging  # noqa: E402
from execution_engine.core.metrics import ExecutionMetrics  # noqa: E402


async def main():
    setup_logging()
    driver = ExecutionDriver.from_settings(EngineSettings.from_env())
    args = sys.argv[1:]

    if "--stats" in args:
        metrics = await ExecutionMetrics(driver.store, driver.breaker).get_all_metrics()
        print(json.dumps(metrics, indent=2))
        return

    if args:
        execution_id = int(args[0])
        outcome = await driver.process_record(execution_id)
        print(f"Execution {execution_id}: {outcome}")
        return

    summary = await driver.run_cycle()
    print(json.dumps(summary.to_dict(), indent=2))


if __name__ == "__main__":
    asyncio.run(main())
