"""
Execution Store Interface

Persistence contract for execution records. The driver only needs
load_due_records(), try_claim(), save_record() and release_claim(); the rest
serves scheduling and reporting.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Dict, List, Optional

from ..execution_record import ExecutionRecord


class ExecutionStore(ABC):
    """
    Persistence contract for execution records.

    Claims:
        A claim marks a pending record as in flight for one worker without
        changing its status. try_claim() is an atomic compare-and-set: it only
        succeeds when the record is pending and unclaimed (or its claim is
        older than `lease_seconds`). save_record() only writes when the
        caller still holds the claim, so a record is finalized at most once.
        A worker that crashes mid-attempt leaves the record pending; the
        lease then expires and the record can be selected again.
    """

    def __init__(self, lease_seconds: float = 900):
        self.lease_seconds = lease_seconds

    @abstractmethod
    async def create(self, record: ExecutionRecord) -> ExecutionRecord:
        """Persist a new record and return it with its id."""
        raise NotImplementedError

    @abstractmethod
    async def bulk_create(self, records: List[ExecutionRecord]) -> List[ExecutionRecord]:
        """Persist several records in one transaction."""
        raise NotImplementedError

    @abstractmethod
    async def get(self, record_id: int) -> Optional[ExecutionRecord]:
        """Fetch a record by id. Returns None if not found."""
        raise NotImplementedError

    @abstractmethod
    async def find_by_project(self, project_id: int) -> List[ExecutionRecord]:
        """All records of a project, ordered by scheduled_for."""
        raise NotImplementedError

    @abstractmethod
    async def load_due_records(self, now: datetime, limit: Optional[int] = None) -> List[ExecutionRecord]:
        """
        Pending records with scheduled_for <= now that are not held by a live
        claim, ordered by scheduled_for.
        """
        raise NotImplementedError

    @abstractmethod
    async def try_claim(self, record_id: int, token: str, now: datetime) -> bool:
        """Atomically claim a pending record. Returns True if claimed."""
        raise NotImplementedError

    @abstractmethod
    async def save_record(self, record: ExecutionRecord, token: str) -> None:
        """
        Persist a terminal record and drop its claim.

        Raises:
            StaleClaimError: The claim is no longer held or the stored record
                is not pending anymore
            PersistenceError: The write failed
        """
        raise NotImplementedError

    @abstractmethod
    async def release_claim(self, record_id: int, token: str) -> None:
        """Drop a claim without changing the record (best effort)."""
        raise NotImplementedError

    @abstractmethod
    async def count_by_type_and_status(self) -> Dict[str, Dict[str, int]]:
        """
        Record counts grouped by execution type and status.

        Returns:
            {"payment": {"pending": 2, "executed": 1}, "effect": {...}, ...}
        """
        raise NotImplementedError
