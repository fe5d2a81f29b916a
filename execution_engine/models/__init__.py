"""
Models module - SQLAlchemy database models
"""

from sqlalchemy.orm import declarative_base

Base = declarative_base()

# Import models after Base is defined to avoid circular imports
from .project import GovernmentProject, ProjectStatus  # noqa: E402
from .state import State  # noqa: E402
from .project_execution import ProjectExecution  # noqa: E402

__all__ = ["Base", "GovernmentProject", "ProjectStatus", "State", "ProjectExecution"]
