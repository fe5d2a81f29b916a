"""
State Model
Simulated state owned by a user; payments are drawn from its budget
"""

from sqlalchemy import Column, Integer, Numeric, DateTime

from . import Base
from ..core.execution_record import utcnow


class State(Base):
    """State Model (budget and headline indicators)"""
    __tablename__ = "states"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, nullable=False, unique=True, index=True)

    budget = Column(Numeric(18, 2), nullable=False, default=0)
    gdp = Column(Numeric(18, 2), nullable=True)
    approval_rating = Column(Numeric(5, 2), nullable=True)

    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    def __repr__(self):
        return f"<State(id={self.id}, user_id={self.user_id}, budget={self.budget})>"
