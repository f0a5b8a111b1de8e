from __future__ import annotations
from collections import defaultdict
import threading

_COUNTERS = defaultdict(int)
_LOCK = threading.Lock()


def inc(name: str, value: int = 1):
    with _LOCK:
        _COUNTERS[name] += value


def snapshot():
    with _LOCK:
        return dict(_COUNTERS)


def reset():
    with _LOCK:
        _COUNTERS.clear()
