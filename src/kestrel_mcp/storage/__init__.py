"""Storage abstractions for Kestrel MCP."""

from .chroma import (
    ChromaEvent,
    ChromaRecordStore,
    ChromaStore,
    ChromaUnavailableError,
    persistent_client_factory,
)
from .memory import MemoryRecordStore
from .models import ACTIVE_STATES, AUTONOMOUS_STATES, FINAL_STATES, LifecycleRecord, SessionPayload, derive_mode

__all__ = [
    "ACTIVE_STATES",
    "AUTONOMOUS_STATES",
    "FINAL_STATES",
    "ChromaEvent",
    "ChromaRecordStore",
    "ChromaStore",
    "ChromaUnavailableError",
    "LifecycleRecord",
    "MemoryRecordStore",
    "SessionPayload",
    "derive_mode",
    "persistent_client_factory",
]
