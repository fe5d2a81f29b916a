"""
SQL-backed collaborators for payment, effect and completion executions.

- SQLTreasury.transfer(): draws an installment from the owning user's state budget
- SQLEffectApplier.apply_effects(): adds generated effects to the owner's state
- SQLProjectFinalizer.finalize_project(): marks the project completed

All three are idempotent per execution: each applied operation is recorded
in the project's processing_logs inside the same transaction, and a repeated
call finds the entry and returns without applying it twice. The project row
is write-locked before the logs are read, so two overlapping calls (a retry
racing a timed-out attempt whose thread is still running) serialize and the
second one sees the first one's entry.
"""

import asyncio
import logging
from decimal import Decimal
from typing import Any, Callable, Dict, List, Mapping, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from .exceptions import CompletionError, EffectApplicationError, TransferError
from .execution_record import utcnow
from ..database import get_db
from ..models.project import GovernmentProject, ProjectStatus
from ..models.state import State

logger = logging.getLogger(__name__)

APPROVAL_MIN = Decimal("0")
APPROVAL_MAX = Decimal("100")


def _log_entry(kind: str, message: str, **fields: Any) -> Dict[str, Any]:
    return {"timestamp": utcnow().isoformat(), "type": kind, "message": message, **fields}


def _has_entry(logs: Optional[List[Dict[str, Any]]], kind: str, **fields: Any) -> bool:
    for entry in logs or []:
        if entry.get("type") == kind and all(entry.get(k) == v for k, v in fields.items()):
            return True
    return False


def _lock_project(db: Session, project_id: int) -> Optional[GovernmentProject]:
    """
    Write-lock a project row and load it.

    The lock is taken with an UPDATE of updated_at: a row lock on
    PostgreSQL and the database write lock on SQLite. Returns None if the
    project does not exist.
    """
    touched = db.execute(
        update(GovernmentProject)
        .where(GovernmentProject.id == project_id)
        .values(updated_at=utcnow())
        .execution_options(synchronize_session=False)
    ).rowcount
    if not touched:
        return None
    return db.get(GovernmentProject, project_id, populate_existing=True)


def _owner_state(db: Session, project: GovernmentProject) -> Optional[State]:
    return db.scalars(
        select(State).where(State.user_id == project.user_id).with_for_update()
    ).first()


def _as_decimal(value: Any) -> Decimal:
    return Decimal(str(value)) if value is not None else Decimal("0")


async def _run_in_session(session_factory: sessionmaker, fn: Callable[[Session], Any]) -> Any:
    def work():
        with get_db(session_factory) as db:
            return fn(db)

    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(None, work)


class SQLTreasury:
    """Funds-transfer collaborator for payment executions."""

    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    async def transfer(
        self,
        project_id: int,
        amount: Decimal,
        installment_number: Optional[int],
        execution_id: Optional[int] = None,
    ) -> Decimal:
        """
        Deduct `amount` from the state budget of the project's owner.

        Args:
            project_id: Project paying the installment
            amount: Installment amount
            installment_number: Installment index (None for single payments)
            execution_id: Payment execution; the idempotency key when given.
                Without it the installment number is the key, and a payment
                with neither is always applied.

        Returns:
            Budget after the transfer

        Raises:
            TransferError: Project or state not found (not retryable) or
                database failure (retryable)
        """
        amount = Decimal(str(amount))
        if execution_id is not None:
            key: Optional[Dict[str, Any]] = {"execution_id": execution_id}
        elif installment_number is not None:
            key = {"installment_number": installment_number}
        else:
            key = None

        def work(db: Session) -> Decimal:
            project = _lock_project(db, project_id)
            if project is None:
                raise TransferError(f"Project {project_id} not found", project_id=project_id, retry_allowed=False)

            state = _owner_state(db, project)
            if state is None:
                raise TransferError(
                    f"State for user {project.user_id} not found", project_id=project_id, retry_allowed=False
                )

            if key is not None and _has_entry(project.processing_logs, "payment", **key):
                logger.info(f"Payment {key} of project {project_id} already applied, skipping")
                return Decimal(state.budget)

            state.budget = Decimal(state.budget) - amount
            project.processing_logs = list(project.processing_logs or []) + [
                _log_entry(
                    "payment",
                    f"Installment {installment_number} paid",
                    execution_id=execution_id,
                    installment_number=installment_number,
                    amount=str(amount),
                )
            ]
            db.commit()
            return Decimal(state.budget)

        try:
            new_budget = await _run_in_session(self.session_factory, work)
        except SQLAlchemyError as e:
            logger.error(f"Transfer for project {project_id} failed: {e}")
            raise TransferError(f"Database error during transfer: {type(e).__name__}", project_id=project_id)

        logger.info(
            f"Payment of {amount} for project {project_id} (installment {installment_number}) done, "
            f"budget now {new_budget}"
        )
        return new_budget


class SQLEffectApplier:
    """
    Applies the generated effects of an effect execution to the owner's state.

    Recognized keys (deltas):
        economic_effects: gdp, budget
        social_effects: approval_rating (result kept within 0-100)
    Other keys stay on the execution record only.
    """

    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    async def apply_effects(
        self,
        project_id: int,
        economic_effects: Mapping[str, float],
        social_effects: Mapping[str, float],
        execution_id: Optional[int] = None,
    ) -> Dict[str, Decimal]:
        """
        Add effect deltas to the owner's state.

        Returns:
            {"gdp": ..., "budget": ..., "approval_rating": ...} after the update

        Raises:
            EffectApplicationError: Project or state not found (not retryable)
                or database failure (retryable)
        """
        key = {"execution_id": execution_id} if execution_id is not None else {}

        def work(db: Session) -> Dict[str, Decimal]:
            project = _lock_project(db, project_id)
            if project is None:
                raise EffectApplicationError(
                    f"Project {project_id} not found", project_id=project_id, retry_allowed=False
                )

            state = _owner_state(db, project)
            if state is None:
                raise EffectApplicationError(
                    f"State for user {project.user_id} not found", project_id=project_id, retry_allowed=False
                )

            if not _has_entry(project.processing_logs, "effect", **key):
                if "gdp" in economic_effects:
                    state.gdp = _as_decimal(state.gdp) + _as_decimal(economic_effects["gdp"])
                if "budget" in economic_effects:
                    state.budget = _as_decimal(state.budget) + _as_decimal(economic_effects["budget"])
                if "approval_rating" in social_effects:
                    approval = _as_decimal(state.approval_rating) + _as_decimal(social_effects["approval_rating"])
                    state.approval_rating = min(APPROVAL_MAX, max(APPROVAL_MIN, approval))

                project.processing_logs = list(project.processing_logs or []) + [
                    _log_entry("effect", "Project effects applied", execution_id=execution_id)
                ]
                db.commit()
            else:
                logger.info(f"Effects of project {project_id} already applied, skipping")

            return {
                "gdp": _as_decimal(state.gdp),
                "budget": _as_decimal(state.budget),
                "approval_rating": _as_decimal(state.approval_rating),
            }

        try:
            result = await _run_in_session(self.session_factory, work)
        except SQLAlchemyError as e:
            logger.error(f"Applying effects of project {project_id} failed: {e}")
            raise EffectApplicationError(
                f"Database error while applying effects: {type(e).__name__}", project_id=project_id
            )

        logger.info(
            f"Effects of project {project_id} applied: gdp {result['gdp']}, "
            f"approval {result['approval_rating']}"
        )
        return result


class SQLProjectFinalizer:
    """Completion collaborator for completion executions."""

    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    async def finalize_project(self, project_id: int) -> None:
        """
        Mark a project completed and append a completion log entry.

        Raises:
            CompletionError: Project not found (not retryable) or database
                failure (retryable)
        """
        def work(db: Session) -> None:
            project = _lock_project(db, project_id)
            if project is None:
                raise CompletionError(f"Project {project_id} not found", project_id=project_id, retry_allowed=False)

            if project.status == ProjectStatus.COMPLETED:
                logger.info(f"Project {project_id} already completed, skipping")
                return

            project.status = ProjectStatus.COMPLETED
            project.completed_at = utcnow()
            project.processing_logs = list(project.processing_logs or []) + [
                _log_entry("completion", "Project completed successfully")
            ]
            db.commit()

        try:
            await _run_in_session(self.session_factory, work)
        except SQLAlchemyError as e:
            logger.error(f"Completion of project {project_id} failed: {e}")
            raise CompletionError(f"Database error during completion: {type(e).__name__}", project_id=project_id)

        logger.info(f"Project {project_id} completed")


class SQLProjectLoader:
    """Loads the project snapshot used to build effect prompts."""

    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    async def load(self, project_id: int) -> Optional[Dict[str, Any]]:
        def work(db: Session) -> Optional[Dict[str, Any]]:
            project = db.get(GovernmentProject, project_id)
            return project.to_dict() if project else None

        return await _run_in_session(self.session_factory, work)
