"""Chroma-based persistence layer."""

from __future__ import annotations

import json
import threading
import uuid
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Iterable, Protocol

from .models import LifecycleRecord


class ChromaUnavailableError(RuntimeError):
    """Raised when the Chroma client cannot be constructed."""


class CollectionProtocol(Protocol):
    """Protocol for the minimal Chroma collection API used by Kestrel."""

    def add(
        self,
        *,
        documents: Iterable[str],
        metadatas: Iterable[dict[str, Any]],
        ids: Iterable[str],
    ) -> None:
        ...

    def upsert(
        self,
        *,
        documents: Iterable[str],
        metadatas: Iterable[dict[str, Any]],
        ids: Iterable[str],
    ) -> None:
        ...

    def get(
        self,
        *,
        ids: Iterable[str] | None = None,
        where: dict[str, Any] | None = None,
        limit: int | None = None,
    ) -> dict[str, list[Any]]:
        ...


class ClientProtocol(Protocol):
    """Protocol for the minimal Chroma client API used by Kestrel."""

    def get_or_create_collection(self, name: str) -> CollectionProtocol:
        ...


def persistent_client_factory(path: Path) -> Callable[[], ClientProtocol]:
    """Return a factory that opens one shared ``chromadb.PersistentClient`` at ``path``."""

    client: ClientProtocol | None = None

    def factory() -> ClientProtocol:
        nonlocal client
        if client is None:
            try:
                import chromadb
            except ImportError as exc:  # pragma: no cover - depends on environment
                raise ChromaUnavailableError(
                    "chromadb package is not installed; install kestrel-mcp with its dependencies"
                ) from exc
            try:
                client = chromadb.PersistentClient(path=str(path))
            except Exception as exc:  # pragma: no cover - depends on environment
                raise ChromaUnavailableError(f"Could not open Chroma at {path}: {exc}") from exc
        return client

    return factory


def _scalar_metadata(metadata: dict[str, Any]) -> dict[str, Any]:
    # Chroma metadata only accepts non-null scalars.
    cleaned: dict[str, Any] = {}
    for key, value in metadata.items():
        if value is None:
            continue
        if isinstance(value, (str, int, float, bool)):
            cleaned[key] = value
        else:
            cleaned[key] = json.dumps(value)
    return cleaned


class _ChromaBacked:
    def __init__(
        self,
        path: Path,
        *,
        collection_name: str,
        client_factory: Callable[[], ClientProtocol] | None,
        clock: Callable[[], datetime] | None,
    ) -> None:
        self._path = Path(path)
        self._collection_name = collection_name
        self._client_factory = client_factory or persistent_client_factory(self._path)
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._client: ClientProtocol | None = None
        self._collection: CollectionProtocol | None = None

    @property
    def collection_name(self) -> str:
        return self._collection_name

    def _ensure_collection(self) -> CollectionProtocol:
        if self._collection is None:
            client = self._client or self._client_factory()
            self._client = client
            self._collection = client.get_or_create_collection(self._collection_name)
        return self._collection

    def ping(self) -> bool:
        """Verify that the underlying collection can be obtained."""

        self._ensure_collection()
        return True


@dataclass(slots=True)
class ChromaEvent:
    """Represents a stored journal event in Chroma."""

    id: str
    session_id: str
    event_type: str
    document: str
    metadata: dict[str, Any]
    timestamp: datetime


class ChromaStore(_ChromaBacked):
    """Append-only journal of session events."""

    def __init__(
        self,
        path: Path,
        *,
        collection_name: str = "kestrel_events",
        client_factory: Callable[[], ClientProtocol] | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        super().__init__(path, collection_name=collection_name, client_factory=client_factory, clock=clock)
        self._counters: dict[str, int] = defaultdict(int)
        self._lock = threading.Lock()

    def _convert_result(self, result: dict[str, list[Any]]) -> list[ChromaEvent]:
        events: list[ChromaEvent] = []
        ids = result.get("ids", [])
        documents = result.get("documents", [])
        metadatas = result.get("metadatas", [])
        for event_id, document, metadata in zip(ids, documents, metadatas):
            timestamp_raw = metadata.get("timestamp")
            timestamp = (
                datetime.fromisoformat(timestamp_raw)
                if isinstance(timestamp_raw, str)
                else self._clock()
            )
            events.append(
                ChromaEvent(
                    id=event_id,
                    session_id=metadata.get("session_id", ""),
                    event_type=metadata.get("event_type", ""),
                    document=document,
                    metadata=metadata,
                    timestamp=timestamp,
                )
            )
        events.sort(key=lambda event: (event.timestamp, event.metadata.get("sequence", 0)))
        return events

    def record_event(
        self,
        *,
        session_id: str,
        event_type: str,
        body: Any,
        metadata: dict[str, Any] | None = None,
    ) -> ChromaEvent:
        collection = self._ensure_collection()
        with self._lock:
            counter = self._counters[session_id] = self._counters[session_id] + 1
        event_id = f"{session_id}:{uuid.uuid4().hex}"
        timestamp = self._clock()

        document = body if isinstance(body, str) else json.dumps(body)
        record_metadata: dict[str, Any] = {}
        if metadata:
            record_metadata.update(metadata)
        record_metadata.update(
            {
                "session_id": session_id,
                "event_type": event_type,
                "timestamp": timestamp.isoformat(),
                "sequence": counter,
            }
        )
        record_metadata = _scalar_metadata(record_metadata)

        collection.add(
            documents=[document],
            metadatas=[record_metadata],
            ids=[event_id],
        )

        return ChromaEvent(
            id=event_id,
            session_id=session_id,
            event_type=event_type,
            document=document,
            metadata=record_metadata,
            timestamp=timestamp,
        )

    def fetch_session_events(self, session_id: str, *, limit: int | None = None) -> list[ChromaEvent]:
        collection = self._ensure_collection()
        result = collection.get(where={"session_id": session_id})
        events = self._convert_result(result)
        return events[:limit] if limit else events


class ChromaRecordStore(_ChromaBacked):
    """Lifecycle records, one upserted document per record id."""

    def __init__(
        self,
        path: Path,
        *,
        collection_name: str = "kestrel_sessions",
        client_factory: Callable[[], ClientProtocol] | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        super().__init__(path, collection_name=collection_name, client_factory=client_factory, clock=clock)
        self._lock = threading.Lock()

    def _decode(self, document: str) -> LifecycleRecord:
        raw = json.loads(document)
        updated_raw = raw.get("updated_at")
        return LifecycleRecord(
            id=raw["id"],
            status=raw.get("status", "pending"),
            data=raw.get("data") or {},
            result=raw.get("result"),
            updated_at=datetime.fromisoformat(updated_raw) if isinstance(updated_raw, str) else None,
        )

    def _read(self, record_id: str) -> LifecycleRecord | None:
        result = self._ensure_collection().get(ids=[record_id])
        documents = result.get("documents") or []
        if not documents or documents[0] is None:
            return None
        return self._decode(documents[0])

    def get_record(self, record_id: str) -> LifecycleRecord | None:
        with self._lock:
            return self._read(record_id)

    def set_record(self, record_id: str, patch: dict[str, Any]) -> LifecycleRecord:
        """Apply ``patch`` (any of ``status``, ``data``, ``result``) and return the stored record."""

        with self._lock:
            record = self._read(record_id) or LifecycleRecord(id=record_id, status="pending")
            if "status" in patch:
                record.status = patch["status"]
            if "data" in patch:
                record.data = dict(patch["data"] or {})
            if "result" in patch:
                record.result = patch["result"]
            record.updated_at = self._clock()

            self._ensure_collection().upsert(
                documents=[json.dumps(record.to_dict())],
                metadatas=[
                    _scalar_metadata(
                        {
                            "record_id": record.id,
                            "status": record.status,
                            "state": record.data.get("state") or "",
                            "session_id": record.data.get("sessionId") or "",
                            "updated_at": record.updated_at.isoformat(),
                        }
                    )
                ],
                ids=[record.id],
            )
            return record

    def list_records(self, *, status: str | None = None, states: Iterable[str] | None = None) -> list[LifecycleRecord]:
        where = {"status": status} if status else None
        result = self._ensure_collection().get(where=where)
        records = [self._decode(document) for document in result.get("documents") or [] if document]
        if states is not None:
            wanted = set(states)
            records = [record for record in records if record.state in wanted]
        records.sort(key=lambda record: record.updated_at or datetime.min.replace(tzinfo=timezone.utc))
        return records


__all__ = [
    "ChromaEvent",
    "ChromaRecordStore",
    "ChromaStore",
    "ChromaUnavailableError",
    "ClientProtocol",
    "CollectionProtocol",
    "persistent_client_factory",
]
