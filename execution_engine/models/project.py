"""
GovernmentProject Model
Projects that own scheduled executions (only the fields the engine uses)
"""

from sqlalchemy import Column, Integer, String, JSON, DateTime
from sqlalchemy.orm import relationship

from . import Base
from ..core.execution_record import utcnow


class ProjectStatus:
    """Project statuses"""
    DRAFT = "draft"
    PENDING_APPROVAL = "pending_approval"
    APPROVED = "approved"
    REJECTED = "rejected"
    IN_EXECUTION = "in_execution"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class GovernmentProject(Base):
    """
    GovernmentProject Model

    refined_project: {"name": ..., "description": ...}
    analysis_data: {"total_cost": ..., "estimated_duration_months": ...,
                    "economic_return_projection": {...},
                    "social_impact_projection": {...}}
    processing_logs: [{"timestamp": "...", "message": "..."}]
    """
    __tablename__ = "government_projects"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, nullable=False, index=True)
    status = Column(String(30), nullable=False, default=ProjectStatus.DRAFT, index=True)

    refined_project = Column(JSON, nullable=True)
    analysis_data = Column(JSON, nullable=True)
    processing_logs = Column(JSON, nullable=True)

    completed_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    executions = relationship("ProjectExecution", back_populates="project")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "status": self.status,
            "refined_project": self.refined_project,
            "analysis_data": self.analysis_data,
        }

    def __repr__(self):
        return f"<GovernmentProject(id={self.id}, status='{self.status}')>"
