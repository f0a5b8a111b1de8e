from __future__ import annotations
from typing import Any, Callable, Dict, List, NamedTuple, Optional, Protocol, TypeVar
import functools
import logging
import threading
from anyio import to_thread
from psycopg_pool import ConnectionPool
from psycopg.types.json import Json
from psycopg.rows import dict_row
from errors import Contention, NotFound
from .models import (
    EventLogEntry,
    Request,
    Volunteer,
    record_from_dict,
    record_to_dict,
    request_key,
    volunteer_key,
)

T = TypeVar("T")


class Versioned(NamedTuple):
    record: Any
    version: int


class StateStore(Protocol):
    """Keyed store contract used by the matching core.

    Versions start at 1 for a freshly inserted key and grow by exactly one on
    every successful swap. ``expected_version=0`` means "key must be absent".
    """

    def get(self, key: str) -> Optional[Versioned]:
        ...

    def compare_and_swap(self, key: str, expected_version: int, record: Any) -> bool:
        ...

    def keys(self, prefix: str) -> List[str]:
        ...

    def append_event(self, entry: EventLogEntry) -> None:
        ...


class InMemoryStateStore:
    def __init__(self):
        self._records: Dict[str, Versioned] = {}
        self.event_log: List[EventLogEntry] = []
        self._lock = threading.RLock()

    def get(self, key: str) -> Optional[Versioned]:
        with self._lock:
            return self._records.get(key)

    def compare_and_swap(self, key: str, expected_version: int, record: Any) -> bool:
        with self._lock:
            current = self._records.get(key)
            current_version = current.version if current else 0
            if current_version != expected_version:
                return False
            self._records[key] = Versioned(record, current_version + 1)
            return True

    def keys(self, prefix: str) -> List[str]:
        with self._lock:
            return sorted(k for k in self._records if k.startswith(prefix))

    def append_event(self, entry: EventLogEntry) -> None:
        with self._lock:
            self.event_log.append(entry)

    def clear(self):
        with self._lock:
            self._records.clear()
            self.event_log.clear()


class PostgresStateStore:
    """Store backed by a single ``entity_state`` table.

    CAS is a conditional insert/update on the ``version`` column, so the row
    lock Postgres takes for the statement is the only serialization point.
    """

    def __init__(self, conninfo: str):
        self._logger = logging.getLogger("state.postgres")
        self._pool = ConnectionPool(
            conninfo,
            min_size=1,
            max_size=5,
            kwargs={"autocommit": True},
        )
        self.ensure_schema()

    def ensure_schema(self) -> None:
        with self._pool.connection() as conn, conn.cursor() as cur:
            cur.execute(
                """
                create table if not exists entity_state (
                    key text primary key,
                    version bigint not null,
                    body jsonb not null,
                    updated_at timestamptz not null default now()
                )
                """
            )
            cur.execute(
                """
                create table if not exists event_log (
                    id text primary key,
                    ts timestamptz not null,
                    correlation_id text not null,
                    actor text not null,
                    kind text not null,
                    data jsonb not null
                )
                """
            )

    def get(self, key: str) -> Optional[Versioned]:
        with self._pool.connection() as conn, conn.cursor(row_factory=dict_row) as cur:
            cur.execute("select body, version from entity_state where key = %s", (key,))
            row = cur.fetchone()
        if not row:
            return None
        return Versioned(record_from_dict(row["body"]), int(row["version"]))

    def compare_and_swap(self, key: str, expected_version: int, record: Any) -> bool:
        body = Json(record_to_dict(record))
        with self._pool.connection() as conn, conn.cursor() as cur:
            if expected_version == 0:
                cur.execute(
                    """
                    insert into entity_state (key, version, body)
                    values (%s, 1, %s)
                    on conflict (key) do nothing
                    """,
                    (key, body),
                )
            else:
                cur.execute(
                    """
                    update entity_state
                    set version = version + 1, body = %s, updated_at = now()
                    where key = %s and version = %s
                    """,
                    (body, key, expected_version),
                )
            swapped = cur.rowcount == 1
        if not swapped:
            self._logger.debug("CAS lost on %s at version %s", key, expected_version)
        return swapped

    def keys(self, prefix: str) -> List[str]:
        with self._pool.connection() as conn, conn.cursor() as cur:
            cur.execute(
                "select key from entity_state where key like %s order by key",
                (prefix.replace("%", r"\%").replace("_", r"\_") + "%",),
            )
            return [row[0] for row in cur.fetchall()]

    def append_event(self, entry: EventLogEntry) -> None:
        with self._pool.connection() as conn, conn.cursor() as cur:
            cur.execute(
                """
                insert into event_log (id, ts, correlation_id, actor, kind, data)
                values (%s, %s, %s, %s, %s, %s)
                on conflict (id) do nothing
                """,
                (entry.id, entry.timestamp, entry.correlation_id, entry.actor, entry.kind, Json(entry.data)),
            )


# Typed accessors

def _kind_of(key: str) -> str:
    return key.split(":", 1)[0]


def load(store: StateStore, key: str) -> Versioned:
    current = store.get(key)
    if current is None:
        raise NotFound(_kind_of(key), key.split(":", 1)[-1])
    return current


def get_volunteer(store: StateStore, volunteer_id: str) -> Volunteer:
    return load(store, volunteer_key(volunteer_id)).record


def get_request(store: StateStore, request_id: str) -> Request:
    return load(store, request_key(request_id)).record


def update(store: StateStore, key: str, mutate: Callable[[T], T], *, retries: int = 3) -> T:
    """Read-modify-CAS loop.

    ``mutate`` returns the replacement record, or the record it was given to
    skip the write. Exceptions raised by ``mutate`` (e.g. InvalidTransition)
    propagate untouched.
    """
    for _ in range(max(1, retries)):
        record, version = load(store, key)
        new_record = mutate(record)
        if new_record is record:
            return record
        if store.compare_and_swap(key, version, new_record):
            return new_record
    raise Contention(f"gave up updating {key} after {retries} attempts", entity_id=key)


async def offload(fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
    """Run a blocking store call on a worker thread, off the event loop."""
    return await to_thread.run_sync(functools.partial(fn, *args, **kwargs))


def initialise_store(conninfo: Optional[str]) -> StateStore:
    logger = logging.getLogger("state.repository")
    if conninfo:
        try:
            logger.info("Using PostgresStateStore")
            return PostgresStateStore(conninfo)
        except Exception:  # noqa: BLE001
            logger.exception("Unable to initialise PostgresStateStore; falling back to in-memory store")
    else:
        logger.info("DATABASE_URL not set; using in-memory store")
    return InMemoryStateStore()
