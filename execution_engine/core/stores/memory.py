"""
In-memory execution store (local runs and tests).
"""

import copy
import itertools
import logging
import threading
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Tuple

from .base import ExecutionStore
from ..exceptions import StaleClaimError
from ..execution_record import ExecutionRecord

logger = logging.getLogger(__name__)


class InMemoryExecutionStore(ExecutionStore):
    """
    Dict-backed ExecutionStore.

    Records are copied on the way in and out so callers never share mutable
    state with the store.
    """

    def __init__(self, lease_seconds: float = 900):
        super().__init__(lease_seconds=lease_seconds)
        self._records: Dict[int, ExecutionRecord] = {}
        self._claims: Dict[int, Tuple[str, datetime]] = {}
        self._ids = itertools.count(1)
        self._lock = threading.Lock()

    async def create(self, record: ExecutionRecord) -> ExecutionRecord:
        with self._lock:
            return self._insert(record)

    async def bulk_create(self, records: List[ExecutionRecord]) -> List[ExecutionRecord]:
        with self._lock:
            return [self._insert(record) for record in records]

    def _insert(self, record: ExecutionRecord) -> ExecutionRecord:
        stored = copy.deepcopy(record)
        stored.id = next(self._ids)
        self._records[stored.id] = stored
        return copy.deepcopy(stored)

    async def get(self, record_id: int) -> Optional[ExecutionRecord]:
        with self._lock:
            record = self._records.get(record_id)
            return copy.deepcopy(record) if record else None

    async def find_by_project(self, project_id: int) -> List[ExecutionRecord]:
        with self._lock:
            records = [r for r in self._records.values() if r.project_id == project_id]
            return [copy.deepcopy(r) for r in sorted(records, key=lambda r: r.scheduled_for)]

    async def load_due_records(self, now: datetime, limit: Optional[int] = None) -> List[ExecutionRecord]:
        with self._lock:
            due = [
                r for r in self._records.values()
                if r.is_due(now) and not self._has_live_claim(r.id, now)
            ]
            due.sort(key=lambda r: r.scheduled_for)
            if limit is not None:
                due = due[:limit]
            return [copy.deepcopy(r) for r in due]

    async def try_claim(self, record_id: int, token: str, now: datetime) -> bool:
        with self._lock:
            record = self._records.get(record_id)
            if record is None or not record.is_pending or self._has_live_claim(record_id, now):
                return False
            self._claims[record_id] = (token, now)
            return True

    async def save_record(self, record: ExecutionRecord, token: str) -> None:
        with self._lock:
            stored = self._records.get(record.id)
            claim = self._claims.get(record.id)
            if stored is None or not stored.is_pending or claim is None or claim[0] != token:
                raise StaleClaimError(
                    f"Execution {record.id} is not claimed by {token}", execution_id=record.id
                )
            self._records[record.id] = copy.deepcopy(record)
            del self._claims[record.id]

    async def release_claim(self, record_id: int, token: str) -> None:
        with self._lock:
            claim = self._claims.get(record_id)
            if claim is not None and claim[0] == token:
                del self._claims[record_id]

    async def count_by_type_and_status(self) -> Dict[str, Dict[str, int]]:
        with self._lock:
            counts: Dict[str, Dict[str, int]] = {}
            for record in self._records.values():
                by_status = counts.setdefault(record.execution_type, {})
                by_status[record.status] = by_status.get(record.status, 0) + 1
            return counts

    def _has_live_claim(self, record_id: int, now: datetime) -> bool:
        claim = self._claims.get(record_id)
        if claim is None:
            return False
        return claim[1] > now - timedelta(seconds=self.lease_seconds)
