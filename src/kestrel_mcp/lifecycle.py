"""Async access to lifecycle records and the session event journal."""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from typing import Any, Iterable, Protocol

from .background import BackgroundTasks
from .storage import ACTIVE_STATES, FINAL_STATES, ChromaStore, LifecycleRecord

logger = logging.getLogger(__name__)


class RecordStore(Protocol):
    def get_record(self, record_id: str) -> LifecycleRecord | None:
        ...

    def set_record(self, record_id: str, patch: dict[str, Any]) -> LifecycleRecord:
        ...

    def list_records(
        self, *, status: str | None = None, states: Iterable[str] | None = None
    ) -> list[LifecycleRecord]:
        ...


class LifecycleRecorder:
    """Reads and writes lifecycle records off the event loop.

    :meth:`update_if_active` is the guarded write used for every
    asynchronous session event: it re-reads the record and applies the
    patch only while the outer status is still ``confirmed``.
    """

    def __init__(
        self,
        store: RecordStore,
        *,
        journal: ChromaStore | None = None,
        tasks: BackgroundTasks | None = None,
    ) -> None:
        self._store = store
        self._journal = journal
        self._tasks = tasks or BackgroundTasks()
        self._locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    @property
    def store(self) -> RecordStore:
        return self._store

    async def get(self, record_id: str) -> LifecycleRecord | None:
        return await asyncio.to_thread(self._store.get_record, record_id)

    async def set(self, record_id: str, patch: dict[str, Any]) -> LifecycleRecord:
        async with self._locks[record_id]:
            return await asyncio.to_thread(self._store.set_record, record_id, patch)

    async def update_if_active(
        self,
        record_id: str,
        data: dict[str, Any],
        *,
        status: str | None = None,
        from_states: Iterable[str] | None = None,
    ) -> bool:
        """Merge ``data`` into the record's payload if it is still confirmed.

        Records in a final state (merged, rejected, stopped, error) are never
        rewritten. With ``from_states`` the write also requires the current
        state to be one of them. Returns ``False`` when the write was dropped.
        """

        async with self._locks[record_id]:
            record = await asyncio.to_thread(self._store.get_record, record_id)
            reason = None
            if record is None or record.status != "confirmed":
                reason = "inactive"
            elif record.state in FINAL_STATES:
                reason = "final"
            elif from_states is not None and record.state not in set(from_states):
                reason = "unexpected state"
            if reason is not None:
                logger.info(
                    "Dropping write to %s record",
                    reason,
                    extra={
                        "record_id": record_id,
                        "status": record.status if record else None,
                        "current_state": record.state if record else None,
                        "state": data.get("state"),
                    },
                )
                return False

            patch: dict[str, Any] = {"data": {**record.data, **data}}
            if status is not None:
                patch["status"] = status
            await asyncio.to_thread(self._store.set_record, record_id, patch)
            return True

    async def list_active(self) -> list[LifecycleRecord]:
        """Confirmed records whose state claims a live session."""

        return await asyncio.to_thread(
            self._store.list_records, status="confirmed", states=ACTIVE_STATES
        )

    async def list_records(self, *, status: str | None = None) -> list[LifecycleRecord]:
        return await asyncio.to_thread(self._store.list_records, status=status)

    async def drain(self) -> None:
        await self._tasks.drain()

    def journal(self, session_id: str, event_type: str, body: Any, metadata: dict[str, Any] | None = None) -> None:
        """Append to the event journal in the background, if one is configured."""

        if self._journal is None:
            return
        self._tasks.spawn(
            asyncio.to_thread(
                self._journal.record_event,
                session_id=session_id,
                event_type=event_type,
                body=body,
                metadata=metadata,
            ),
            description="journal write",
            session_id=session_id,
            event_type=event_type,
        )


__all__ = ["LifecycleRecorder", "RecordStore"]
