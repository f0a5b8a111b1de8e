from __future__ import annotations
from typing import Dict, Optional
from datetime import datetime, timezone
import threading
from dataclasses import dataclass, field


@dataclass
class IdempotencyRecord:
    key: str
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    data: Dict = field(default_factory=dict)


class IdempotencyKeys:
    """First-writer-wins registry of processed keys (event ids, intent keys).

    Keys are kept for a retention window; a redelivery older than the window
    is treated as a new event.
    """

    def __init__(self):
        self._records: Dict[str, IdempotencyRecord] = {}
        self._lock = threading.Lock()

    def check_and_record(self, key: str, data: Optional[dict] = None) -> bool:
        with self._lock:
            if key in self._records:
                return False
            self._records[key] = IdempotencyRecord(key=key, data=data or {})
            return True

    def forget(self, key: str):
        with self._lock:
            self._records.pop(key, None)

    def prune(self, cutoff: datetime) -> int:
        """Drop keys recorded at or before ``cutoff``. Returns how many were dropped."""
        with self._lock:
            stale = [key for key, record in self._records.items() if record.created_at <= cutoff]
            for key in stale:
                del self._records[key]
        return len(stale)
