"""
Execution stores

Persistence boundary of the engine: ExecutionStore contract plus in-memory
and SQLAlchemy implementations.
"""

from .base import ExecutionStore
from .memory import InMemoryExecutionStore
from .sql import SQLExecutionStore

__all__ = ["ExecutionStore", "InMemoryExecutionStore", "SQLExecutionStore"]
