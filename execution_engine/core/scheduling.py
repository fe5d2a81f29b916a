"""
Execution scheduling

Creates the pending records that the driver later picks up when a project is
approved:
- one payment per installment, monthly from the approval date
- one effect record at the end of the estimated duration
- one completion record a month after that
"""

import calendar
import logging
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from .execution_record import ExecutionRecord, ExecutionType, utcnow
from .stores.base import ExecutionStore

logger = logging.getLogger(__name__)


def add_months(start: datetime, months: int) -> datetime:
    """
    Shift a timestamp by whole calendar months.

    The day is clamped to the last day of the target month
    (Jan 31 + 1 month -> Feb 28/29).
    """
    month_index = start.month - 1 + months
    year = start.year + month_index // 12
    month = month_index % 12 + 1
    day = min(start.day, calendar.monthrange(year, month)[1])
    return start.replace(year=year, month=month, day=day)


class ExecutionScheduler:
    """Builds and persists the execution records of a project."""

    def __init__(self, store: ExecutionStore):
        self.store = store

    async def schedule_installments(
        self,
        project_id: int,
        number_of_installments: int,
        installment_amount: Decimal,
        start: Optional[datetime] = None,
    ) -> List[ExecutionRecord]:
        """
        Schedule monthly payment records.

        Installment i (1-based) is due i months after `start`.

        Raises:
            ValueError: number_of_installments < 1
        """
        if number_of_installments < 1:
            raise ValueError(f"number_of_installments must be >= 1, got {number_of_installments}")

        start = start or utcnow()
        records = [
            ExecutionRecord(
                project_id=project_id,
                execution_type=ExecutionType.PAYMENT,
                scheduled_for=add_months(start, i),
                payment_amount=installment_amount,
                installment_number=i,
                total_installments=number_of_installments,
            )
            for i in range(1, number_of_installments + 1)
        ]

        created = await self.store.bulk_create(records)
        logger.info(f"Scheduled {len(created)} installment(s) of {installment_amount} for project {project_id}")
        return created

    async def schedule_effects(
        self,
        project_id: int,
        duration_months: int,
        start: Optional[datetime] = None,
    ) -> ExecutionRecord:
        """Schedule the effect record at the end of the estimated duration."""
        start = start or utcnow()
        record = await self.store.create(
            ExecutionRecord(
                project_id=project_id,
                execution_type=ExecutionType.EFFECT,
                scheduled_for=add_months(start, duration_months),
            )
        )
        logger.info(f"Effects of project {project_id} scheduled for {record.scheduled_for.date()}")
        return record

    async def schedule_completion(
        self,
        project_id: int,
        duration_months: int,
        start: Optional[datetime] = None,
    ) -> ExecutionRecord:
        """Schedule completion one month after the estimated duration."""
        start = start or utcnow()
        record = await self.store.create(
            ExecutionRecord(
                project_id=project_id,
                execution_type=ExecutionType.COMPLETION,
                scheduled_for=add_months(start, duration_months + 1),
            )
        )
        logger.info(f"Completion of project {project_id} scheduled for {record.scheduled_for.date()}")
        return record

    async def schedule_project(
        self,
        project_id: int,
        number_of_installments: int,
        installment_amount: Decimal,
        duration_months: int,
        start: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        """
        Schedule every record of an approved project from one start date.

        Returns:
            {"payments": [...], "effect": record, "completion": record}
        """
        start = start or utcnow()
        payments = await self.schedule_installments(project_id, number_of_installments, installment_amount, start)
        effect = await self.schedule_effects(project_id, duration_months, start)
        completion = await self.schedule_completion(project_id, duration_months, start)
        return {"payments": payments, "effect": effect, "completion": completion}
