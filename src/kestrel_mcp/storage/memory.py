"""Process-local record store used when Chroma is unavailable."""

from __future__ import annotations

import copy
import threading
from datetime import datetime, timezone
from typing import Any, Callable, Iterable

from .models import LifecycleRecord


class MemoryRecordStore:
    """Dictionary-backed drop-in for :class:`ChromaRecordStore`. Nothing survives a restart."""

    def __init__(self, *, clock: Callable[[], datetime] | None = None) -> None:
        self._records: dict[str, LifecycleRecord] = {}
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._lock = threading.Lock()

    def ping(self) -> bool:
        return True

    def get_record(self, record_id: str) -> LifecycleRecord | None:
        with self._lock:
            record = self._records.get(record_id)
            return copy.deepcopy(record) if record else None

    def set_record(self, record_id: str, patch: dict[str, Any]) -> LifecycleRecord:
        with self._lock:
            record = self._records.get(record_id) or LifecycleRecord(id=record_id, status="pending")
            if "status" in patch:
                record.status = patch["status"]
            if "data" in patch:
                record.data = copy.deepcopy(dict(patch["data"] or {}))
            if "result" in patch:
                record.result = copy.deepcopy(patch["result"])
            record.updated_at = self._clock()
            self._records[record_id] = record
            return copy.deepcopy(record)

    def list_records(self, *, status: str | None = None, states: Iterable[str] | None = None) -> list[LifecycleRecord]:
        wanted = set(states) if states is not None else None
        with self._lock:
            records = [
                copy.deepcopy(record)
                for record in self._records.values()
                if (status is None or record.status == status)
                and (wanted is None or record.state in wanted)
            ]
        records.sort(key=lambda record: record.updated_at or datetime.min.replace(tzinfo=timezone.utc))
        return records


__all__ = ["MemoryRecordStore"]
