"""
SQLAlchemy execution store.

Session work is synchronous and runs in the default executor; every call
opens its own session so concurrent tasks never share one.
"""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, TypeVar

from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from .base import ExecutionStore
from ..exceptions import ExecutionRecordError, PersistenceError, StaleClaimError, describe_error
from ..execution_record import ExecutionRecord, ExecutionStatus, utcnow
from ...database import get_db
from ...models.project_execution import ProjectExecution

logger = logging.getLogger(__name__)

T = TypeVar("T")


class SQLExecutionStore(ExecutionStore):
    """
    ExecutionStore over the project_executions table.

    try_claim() and save_record() are single conditional UPDATE statements,
    so the claim check and the write happen atomically in the database.
    """

    def __init__(self, session_factory: sessionmaker, lease_seconds: float = 900):
        super().__init__(lease_seconds=lease_seconds)
        self.session_factory = session_factory

    async def _run(self, fn: Callable[[Session], T], description: str) -> T:
        def work() -> T:
            with get_db(self.session_factory) as db:
                return fn(db)

        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(None, work)
        except SQLAlchemyError as e:
            logger.error(f"Database error while {description}: {e}")
            raise PersistenceError(f"Database error while {description}: {type(e).__name__}")

    async def create(self, record: ExecutionRecord) -> ExecutionRecord:
        created = await self.bulk_create([record])
        return created[0]

    async def bulk_create(self, records: List[ExecutionRecord]) -> List[ExecutionRecord]:
        def work(db: Session) -> List[ExecutionRecord]:
            rows = [ProjectExecution.from_record(r) for r in records]
            db.add_all(rows)
            db.commit()
            return [row.to_record() for row in rows]

        return await self._run(work, "creating executions")

    async def get(self, record_id: int) -> Optional[ExecutionRecord]:
        def work(db: Session) -> Optional[ExecutionRecord]:
            row = db.get(ProjectExecution, record_id)
            return row.to_record() if row else None

        return await self._run(work, f"loading execution {record_id}")

    async def find_by_project(self, project_id: int) -> List[ExecutionRecord]:
        def work(db: Session) -> List[ExecutionRecord]:
            rows = db.scalars(
                select(ProjectExecution)
                .where(ProjectExecution.project_id == project_id)
                .order_by(ProjectExecution.scheduled_for, ProjectExecution.id)
            ).all()
            return [row.to_record() for row in rows]

        return await self._run(work, f"loading executions of project {project_id}")

    async def load_due_records(self, now: datetime, limit: Optional[int] = None) -> List[ExecutionRecord]:
        def work(db: Session) -> List[ExecutionRecord]:
            query = (
                select(ProjectExecution)
                .where(
                    ProjectExecution.status == ExecutionStatus.PENDING,
                    ProjectExecution.scheduled_for <= now,
                    self._claim_is_free(now),
                )
                .order_by(ProjectExecution.scheduled_for, ProjectExecution.id)
            )
            if limit is not None:
                query = query.limit(limit)

            records: List[ExecutionRecord] = []
            rejected = 0
            for row in db.scalars(query).all():
                try:
                    records.append(row.to_record())
                except ExecutionRecordError as e:
                    rejected += self._fail_malformed_row(db, row.id, now, e)
            if rejected:
                db.commit()
            return records

        return await self._run(work, "loading due executions")

    async def try_claim(self, record_id: int, token: str, now: datetime) -> bool:
        def work(db: Session) -> bool:
            result = db.execute(
                update(ProjectExecution)
                .where(
                    ProjectExecution.id == record_id,
                    ProjectExecution.status == ExecutionStatus.PENDING,
                    self._claim_is_free(now),
                )
                .values(claim_token=token, claimed_at=now)
                .execution_options(synchronize_session=False)
            )
            db.commit()
            return result.rowcount == 1

        return await self._run(work, f"claiming execution {record_id}")

    async def save_record(self, record: ExecutionRecord, token: str) -> None:
        def work(db: Session) -> int:
            result = db.execute(
                update(ProjectExecution)
                .where(
                    ProjectExecution.id == record.id,
                    ProjectExecution.status == ExecutionStatus.PENDING,
                    ProjectExecution.claim_token == token,
                )
                .values(
                    status=record.status,
                    executed_at=record.executed_at,
                    economic_effects=record.economic_effects,
                    social_effects=record.social_effects,
                    error_message=record.error_message,
                    claim_token=None,
                    claimed_at=None,
                    updated_at=utcnow(),
                )
                .execution_options(synchronize_session=False)
            )
            db.commit()
            return result.rowcount

        updated = await self._run(work, f"saving execution {record.id}")
        if updated != 1:
            raise StaleClaimError(
                f"Execution {record.id} is not claimed by {token}", execution_id=record.id
            )

    async def release_claim(self, record_id: int, token: str) -> None:
        def work(db: Session) -> None:
            db.execute(
                update(ProjectExecution)
                .where(ProjectExecution.id == record_id, ProjectExecution.claim_token == token)
                .values(claim_token=None, claimed_at=None)
                .execution_options(synchronize_session=False)
            )
            db.commit()

        await self._run(work, f"releasing claim on execution {record_id}")

    async def count_by_type_and_status(self) -> Dict[str, Dict[str, int]]:
        def work(db: Session) -> Dict[str, Dict[str, int]]:
            rows = db.execute(
                select(
                    ProjectExecution.execution_type,
                    ProjectExecution.status,
                    func.count(ProjectExecution.id),
                ).group_by(ProjectExecution.execution_type, ProjectExecution.status)
            ).all()

            counts: Dict[str, Dict[str, int]] = {}
            for execution_type, status, count in rows:
                counts.setdefault(execution_type, {})[status] = count
            return counts

        return await self._run(work, "counting executions")

    def _fail_malformed_row(self, db: Session, row_id: int, now: datetime, error: ExecutionRecordError) -> int:
        """
        Mark a pending row that does not form a valid record as failed, so it
        stops being selected. Returns the number of rows updated (0 or 1).
        """
        message = describe_error(error)
        logger.error(f"Execution {row_id} is malformed, marking failed: {message}")
        result = db.execute(
            update(ProjectExecution)
            .where(
                ProjectExecution.id == row_id,
                ProjectExecution.status == ExecutionStatus.PENDING,
                self._claim_is_free(now),
            )
            .values(
                status=ExecutionStatus.FAILED,
                executed_at=now,
                error_message=message,
                updated_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount

    def _claim_is_free(self, now: datetime):
        stale_before = now - timedelta(seconds=self.lease_seconds)
        return or_(ProjectExecution.claim_token.is_(None), ProjectExecution.claimed_at < stale_before)

