"""In-memory registry of live agent sessions."""

from __future__ import annotations

import threading
from typing import Iterator

from .claude.runner import AgentSession


class SessionAlreadyActiveError(RuntimeError):
    """Raised when a session id already holds a live or reserved slot."""


class PendingSession(AgentSession):
    """Placeholder occupying a slot while the workspace and process are prepared."""

    async def send_message(self, text: str) -> bool:
        return False

    def close_input(self) -> None:
        return None

    def kill(self) -> None:
        self.killed = True


class SessionRegistry:
    """Map of session id to handle, striped so unrelated ids never share a lock.

    None of the operations block on I/O; each one holds a single stripe lock
    for a dictionary lookup or mutation.
    """

    def __init__(self, stripes: int = 16) -> None:
        if stripes < 1:
            raise ValueError("stripes must be >= 1")
        self._locks = [threading.Lock() for _ in range(stripes)]
        self._buckets: list[dict[str, AgentSession]] = [{} for _ in range(stripes)]

    def _stripe(self, session_id: str) -> tuple[threading.Lock, dict[str, AgentSession]]:
        index = hash(session_id) % len(self._locks)
        return self._locks[index], self._buckets[index]

    def reserve(self, session_id: str) -> PendingSession:
        """Claim ``session_id`` or raise :class:`SessionAlreadyActiveError`."""

        lock, bucket = self._stripe(session_id)
        with lock:
            if session_id in bucket:
                raise SessionAlreadyActiveError(f"Session {session_id} is already active")
            placeholder = PendingSession(session_id)
            bucket[session_id] = placeholder
            return placeholder

    def commit(self, session_id: str, handle: AgentSession, placeholder: PendingSession) -> bool:
        """Swap the placeholder for the live handle.

        Returns ``False`` when the reservation was released or killed in the
        meantime, in which case the caller owns ``handle`` and must dispose of it.
        """

        lock, bucket = self._stripe(session_id)
        with lock:
            if bucket.get(session_id) is not placeholder or placeholder.killed:
                return False
            bucket[session_id] = handle
            return True

    def get(self, session_id: str) -> AgentSession | None:
        lock, bucket = self._stripe(session_id)
        with lock:
            return bucket.get(session_id)

    def remove(self, session_id: str, handle: AgentSession | None = None) -> AgentSession | None:
        """Drop the entry; with ``handle`` given, only if it is still the registered one."""

        lock, bucket = self._stripe(session_id)
        with lock:
            current = bucket.get(session_id)
            if current is None or (handle is not None and current is not handle):
                return None
            del bucket[session_id]
            return current

    def holds(self, session_id: str, handle: AgentSession) -> bool:
        return self.get(session_id) is handle

    def active_ids(self) -> list[str]:
        ids: list[str] = []
        for lock, bucket in zip(self._locks, self._buckets):
            with lock:
                ids.extend(bucket)
        return sorted(ids)

    def __contains__(self, session_id: object) -> bool:
        return isinstance(session_id, str) and self.get(session_id) is not None

    def __iter__(self) -> Iterator[str]:
        return iter(self.active_ids())

    def __len__(self) -> int:
        return len(self.active_ids())


__all__ = ["PendingSession", "SessionAlreadyActiveError", "SessionRegistry"]
