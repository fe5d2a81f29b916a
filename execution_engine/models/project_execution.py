"""
ProjectExecution Model
Database model for scheduled project executions
"""

from sqlalchemy import Column, Integer, String, Text, JSON, DateTime, Numeric, ForeignKey, Index
from sqlalchemy.orm import relationship

from . import Base
from ..core.execution_record import ExecutionRecord, utcnow


class ProjectExecution(Base):
    """
    ProjectExecution Model

    One scheduled payment installment, effect computation or completion
    event of a government project. Rows are never deleted: terminal rows
    are the audit trail.
    """
    __tablename__ = "project_executions"

    id = Column(Integer, primary_key=True, index=True)
    project_id = Column(Integer, ForeignKey("government_projects.id"), nullable=False, index=True)

    # payment, effect, completion
    execution_type = Column(String(20), nullable=False)
    scheduled_for = Column(DateTime, nullable=False)
    executed_at = Column(DateTime, nullable=True)

    # Payment fields
    payment_amount = Column(Numeric(15, 2), nullable=True)
    installment_number = Column(Integer, nullable=True)
    total_installments = Column(Integer, nullable=True)

    # Effect fields
    # Example: {"gdp": 1500000.0, "unemployment_rate": -0.3}
    economic_effects = Column(JSON, nullable=True)
    social_effects = Column(JSON, nullable=True)

    # Status: pending, executed, failed
    status = Column(String(20), nullable=False, default="pending", index=True)
    error_message = Column(Text, nullable=True)

    # In-flight claim (status stays pending while claimed)
    claim_token = Column(String(255), nullable=True)
    claimed_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    project = relationship("GovernmentProject", back_populates="executions")

    __table_args__ = (
        Index("ix_project_executions_status_scheduled_for", "status", "scheduled_for"),
    )

    @classmethod
    def from_record(cls, record: ExecutionRecord) -> "ProjectExecution":
        return cls(
            id=record.id,
            project_id=record.project_id,
            execution_type=record.execution_type,
            scheduled_for=record.scheduled_for,
            executed_at=record.executed_at,
            payment_amount=record.payment_amount,
            installment_number=record.installment_number,
            total_installments=record.total_installments,
            economic_effects=record.economic_effects,
            social_effects=record.social_effects,
            status=record.status,
            error_message=record.error_message,
            created_at=record.created_at,
        )

    def to_record(self) -> ExecutionRecord:
        return ExecutionRecord(
            id=self.id,
            project_id=self.project_id,
            execution_type=self.execution_type,
            scheduled_for=self.scheduled_for,
            executed_at=self.executed_at,
            payment_amount=self.payment_amount,
            installment_number=self.installment_number,
            total_installments=self.total_installments,
            economic_effects=self.economic_effects,
            social_effects=self.social_effects,
            status=self.status,
            error_message=self.error_message,
            created_at=self.created_at,
        )

    def __repr__(self):
        return (
            f"<ProjectExecution(id={self.id}, project_id={self.project_id}, "
            f"type='{self.execution_type}', status='{self.status}')>"
        )
