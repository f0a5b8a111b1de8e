from __future__ import annotations
from typing import Dict, Any
from datetime import datetime, timezone
from observability.logging import structured_log
from .models import EventLogEntry, new_id
from .repository import StateStore


def log(store: StateStore, kind: str, correlation_id: str, actor: str, data: Dict[str, Any]) -> EventLogEntry:
    entry = EventLogEntry(
        id=new_id(),
        timestamp=datetime.now(timezone.utc),
        correlation_id=correlation_id,
        actor=actor,
        kind=kind,
        data=data,
    )
    store.append_event(entry)
    structured_log(kind, correlation_id, data)
    return entry
