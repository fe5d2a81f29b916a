"""
ExecutionRecord - one scheduled, time-triggered unit of work for a project.

Lifecycle:
    pending --mark_executed()--> executed
    pending --mark_failed()----> failed

Terminal records are the audit trail: they are never transitioned again and
never deleted.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from decimal import Decimal
from typing import Dict, Optional

from .exceptions import ExecutionRecordError, InvalidTransitionError


class ExecutionType:
    """Execution types"""
    PAYMENT = "payment"  # Budget installment
    EFFECT = "effect"  # Generated economic/social effects
    COMPLETION = "completion"  # Project completion bookkeeping

    ALL = (PAYMENT, EFFECT, COMPLETION)


class ExecutionStatus:
    """Execution statuses"""
    PENDING = "pending"
    EXECUTED = "executed"
    FAILED = "failed"

    ALL = (PENDING, EXECUTED, FAILED)
    TERMINAL = (EXECUTED, FAILED)


def utcnow() -> datetime:
    """Naive UTC timestamp (matches the DateTime columns)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


@dataclass
class ExecutionRecord:
    """
    Scheduled execution of a project obligation.

    Attributes:
        project_id: Owning project
        execution_type: payment | effect | completion (fixed at creation)
        scheduled_for: When the record becomes due
        id: Store-assigned identifier (None until created)
        status: pending | executed | failed
        executed_at: Set exactly once, when leaving pending
        payment_amount: Installment amount (payment only)
        installment_number: 1-based installment index (payment only)
        total_installments: Number of installments (payment only)
        economic_effects: Generated economic effects (effect only)
        social_effects: Generated social effects (effect only)
        error_message: Failure summary (failed only)
    """
    project_id: int
    execution_type: str
    scheduled_for: datetime
    id: Optional[int] = None
    status: str = ExecutionStatus.PENDING
    executed_at: Optional[datetime] = None
    payment_amount: Optional[Decimal] = None
    installment_number: Optional[int] = None
    total_installments: Optional[int] = None
    economic_effects: Optional[Dict[str, float]] = None
    social_effects: Optional[Dict[str, float]] = None
    error_message: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)

    def __post_init__(self):
        """Validate type-specific fields and lifecycle consistency"""
        if self.execution_type not in ExecutionType.ALL:
            raise ExecutionRecordError(
                f"Unknown execution type: '{self.execution_type}'", execution_id=self.id
            )
        if self.status not in ExecutionStatus.ALL:
            raise ExecutionRecordError(f"Unknown status: '{self.status}'", execution_id=self.id)

        if self.payment_amount is not None and not isinstance(self.payment_amount, Decimal):
            self.payment_amount = Decimal(str(self.payment_amount))

        self._validate_payment_fields()
        self._validate_effect_fields()

        if (self.executed_at is None) != (self.status == ExecutionStatus.PENDING):
            raise ExecutionRecordError(
                f"executed_at must be set iff status != pending (status={self.status})",
                execution_id=self.id,
            )
        if self.error_message and self.status != ExecutionStatus.FAILED:
            raise ExecutionRecordError(
                "error_message is only allowed on failed records", execution_id=self.id
            )

    def _validate_payment_fields(self):
        has_number = self.installment_number is not None
        has_total = self.total_installments is not None

        if self.execution_type != ExecutionType.PAYMENT:
            if has_number or has_total or self.payment_amount is not None:
                raise ExecutionRecordError(
                    f"Payment fields are not allowed on '{self.execution_type}' records",
                    execution_id=self.id,
                )
            return

        if has_number != has_total:
            raise ExecutionRecordError(
                "installment_number and total_installments must be set together",
                execution_id=self.id,
            )
        if has_number:
            if self.payment_amount is None:
                raise ExecutionRecordError(
                    "payment_amount is required when installment_number is set",
                    execution_id=self.id,
                )
            if not 1 <= self.installment_number <= self.total_installments:
                raise ExecutionRecordError(
                    f"Installment {self.installment_number}/{self.total_installments} out of range",
                    execution_id=self.id,
                )
        if self.payment_amount is not None and self.payment_amount < 0:
            raise ExecutionRecordError(
                f"payment_amount must be non-negative, got {self.payment_amount}",
                execution_id=self.id,
            )

    def _validate_effect_fields(self):
        has_effects = self.economic_effects is not None or self.social_effects is not None
        if has_effects and self.execution_type != ExecutionType.EFFECT:
            raise ExecutionRecordError(
                f"Effect payloads are not allowed on '{self.execution_type}' records",
                execution_id=self.id,
            )

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------

    @property
    def is_pending(self) -> bool:
        return self.status == ExecutionStatus.PENDING

    @property
    def is_terminal(self) -> bool:
        return self.status in ExecutionStatus.TERMINAL

    def is_due(self, now: datetime) -> bool:
        """Pending and scheduled at or before `now`."""
        return self.is_pending and self.scheduled_for <= now

    def mark_executed(
        self,
        executed_at: datetime,
        economic_effects: Optional[Dict[str, float]] = None,
        social_effects: Optional[Dict[str, float]] = None,
    ) -> "ExecutionRecord":
        """
        Return a copy transitioned pending -> executed.

        Effect payloads are only accepted on effect records, and must be
        supplied together.

        Raises:
            InvalidTransitionError: If the record is already terminal
        """
        self._check_transition(ExecutionStatus.EXECUTED)

        if (economic_effects is None) != (social_effects is None):
            raise ExecutionRecordError(
                "economic_effects and social_effects must be supplied together",
                execution_id=self.id,
            )

        return replace(
            self,
            status=ExecutionStatus.EXECUTED,
            executed_at=executed_at,
            economic_effects=dict(economic_effects) if economic_effects is not None else self.economic_effects,
            social_effects=dict(social_effects) if social_effects is not None else self.social_effects,
            error_message=None,
        )

    def mark_failed(self, executed_at: datetime, error_message: str) -> "ExecutionRecord":
        """
        Return a copy transitioned pending -> failed.

        Any effect payload is dropped: a failed record never carries partial
        generation output.

        Raises:
            InvalidTransitionError: If the record is already terminal
        """
        self._check_transition(ExecutionStatus.FAILED)

        return replace(
            self,
            status=ExecutionStatus.FAILED,
            executed_at=executed_at,
            economic_effects=None,
            social_effects=None,
            error_message=error_message or "Execution failed",
        )

    def _check_transition(self, target: str):
        if not self.is_pending:
            raise InvalidTransitionError(self.id, self.status, target)

    def to_dict(self) -> Dict:
        """Serializable view (for logs, task results and the API layer)"""
        return {
            "id": self.id,
            "project_id": self.project_id,
            "execution_type": self.execution_type,
            "scheduled_for": self.scheduled_for.isoformat(),
            "executed_at": self.executed_at.isoformat() if self.executed_at else None,
            "payment_amount": str(self.payment_amount) if self.payment_amount is not None else None,
            "installment_number": self.installment_number,
            "total_installments": self.total_installments,
            "economic_effects": self.economic_effects,
            "social_effects": self.social_effects,
            "status": self.status,
            "error_message": self.error_message,
        }

    def __repr__(self):
        return (
            f"<ExecutionRecord(id={self.id}, project_id={self.project_id}, "
            f"type='{self.execution_type}', status='{self.status}')>"
        )
