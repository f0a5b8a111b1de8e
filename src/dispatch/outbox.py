"""Outbox of outbound intents and the relay that delivers them.

The coordinator only ever records intents here (cheap, synchronous,
idempotent). Delivery to the egress webhook happens in ``OutboxRelay`` with
bounded exponential backoff (tenacity), so a slow or failing external API
never stalls matching. Delivered and abandoned items are pruned after the
dedup retention window.
"""

from __future__ import annotations
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, Dict, List, Optional
import asyncio
import logging
import threading
import httpx
from tenacity import AsyncRetrying, RetryCallState, retry_if_exception, stop_after_attempt, wait_exponential
from observability import metrics
from state.idempotency import IdempotencyKeys
from state.models import MessageOutboxItem, new_id
from .intents import Intent

LOGGER = logging.getLogger(__name__)

SleepFn = Callable[[float], Awaitable[None]]


class EgressRejected(Exception):
    """The egress webhook answered with a non-2xx status."""

    def __init__(self, status_code: int, body: str):
        super().__init__(f"egress_http_{status_code}:{body}")
        self.status_code = status_code

    @property
    def retryable(self) -> bool:
        return self.status_code >= 500 or self.status_code == 429


def _should_retry(exc: BaseException) -> bool:
    if isinstance(exc, EgressRejected):
        return exc.retryable
    return isinstance(exc, httpx.HTTPError)


class Outbox:
    def __init__(self, keys: Optional[IdempotencyKeys] = None):
        self._keys = keys or IdempotencyKeys()
        self._items: Dict[str, MessageOutboxItem] = {}
        self._given_up: set[str] = set()
        self._lock = threading.Lock()

    def publish(self, intent: Intent) -> bool:
        key = intent.idempotency_key()
        if not self._keys.check_and_record(key, {"kind": intent.kind}):
            metrics.inc("outbox_duplicates")
            return False
        item = MessageOutboxItem(
            id=new_id(),
            kind=intent.kind,
            payload=intent.model_dump(mode="json"),
            idempotency_key=key,
        )
        with self._lock:
            self._items[item.id] = item
        metrics.inc(f"intent_{intent.kind}")
        LOGGER.info("Outbox recorded %s (%s)", intent.kind, key)
        return True

    def items(self, kind: Optional[str] = None) -> List[MessageOutboxItem]:
        with self._lock:
            items = list(self._items.values())
        items.sort(key=lambda i: i.created_at)
        return [i for i in items if kind is None or i.kind == kind]

    def pending(self) -> List[MessageOutboxItem]:
        return [i for i in self.items() if i.delivered_at is None and i.id not in self._given_up]

    def mark_attempt(self, item_id: str, error: Optional[str] = None):
        with self._lock:
            item = self._items[item_id]
            item.attempts += 1
            item.last_error = error

    def mark_delivered(self, item_id: str):
        with self._lock:
            self._items[item_id].delivered_at = datetime.now(timezone.utc)

    def give_up(self, item_id: str):
        with self._lock:
            self._given_up.add(item_id)

    def prune(self, cutoff: datetime) -> int:
        """Forget items delivered, or abandoned, before ``cutoff``."""
        with self._lock:
            stale = [
                item
                for item in self._items.values()
                if (item.delivered_at is not None and item.delivered_at < cutoff)
                or (item.id in self._given_up and item.created_at < cutoff)
            ]
            for item in stale:
                del self._items[item.id]
                self._given_up.discard(item.id)
        for item in stale:
            self._keys.forget(item.idempotency_key)
        return len(stale)


class OutboxRelay:
    """Posts pending outbox items to the egress webhook."""

    def __init__(
        self,
        outbox: Outbox,
        url: str,
        *,
        max_attempts: int = 5,
        backoff_seconds: float = 0.5,
        poll_interval: float = 0.5,
        retention_seconds: float = 86400.0,
        client: Optional[httpx.AsyncClient] = None,
        sleep_fn: SleepFn = asyncio.sleep,
    ) -> None:
        self._outbox = outbox
        self._url = url
        self._max_attempts = max(1, max_attempts)
        self._backoff = backoff_seconds
        self._poll_interval = poll_interval
        self._retention = timedelta(seconds=retention_seconds)
        self._client = client
        self._owns_client = client is None
        self._sleep = sleep_fn
        self._task: Optional[asyncio.Task] = None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=10.0)
        return self._client

    async def _post(self, item: MessageOutboxItem, body: dict):
        try:
            resp = await self._get_client().post(
                self._url,
                json=body,
                headers={"Idempotency-Key": item.idempotency_key},
            )
        except httpx.HTTPError as e:
            self._record_failure(item, f"egress_call_failed:{e}")
            raise
        if resp.status_code >= 300:
            error = EgressRejected(resp.status_code, resp.text[:120])
            self._record_failure(item, str(error))
            raise error
        self._outbox.mark_attempt(item.id)

    def _record_failure(self, item: MessageOutboxItem, error: str):
        self._outbox.mark_attempt(item.id, error)
        metrics.inc("egress_failures")

    async def deliver(self, item: MessageOutboxItem) -> bool:
        body = {
            "id": item.id,
            "kind": item.kind,
            "idempotency_key": item.idempotency_key,
            "payload": item.payload,
        }

        def _log_retry(retry_state: RetryCallState):
            LOGGER.warning(
                "Delivery of %s failed (%s); retrying in %.2fs",
                item.idempotency_key,
                retry_state.outcome.exception(),
                retry_state.next_action.sleep,
            )

        retrying = AsyncRetrying(
            stop=stop_after_attempt(self._max_attempts),
            wait=wait_exponential(multiplier=self._backoff),
            retry=retry_if_exception(_should_retry),
            sleep=self._sleep,
            before_sleep=_log_retry,
            reraise=True,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    await self._post(item, body)
        except (EgressRejected, httpx.HTTPError):
            self._outbox.give_up(item.id)
            metrics.inc("egress_gave_up")
            LOGGER.error("Giving up on %s after %d attempts", item.idempotency_key, item.attempts)
            return False
        self._outbox.mark_delivered(item.id)
        metrics.inc("egress_delivered")
        return True

    async def drain(self) -> int:
        delivered = 0
        for item in self._outbox.pending():
            if await self.deliver(item):
                delivered += 1
        return delivered

    async def run(self):
        while True:
            try:
                await self.drain()
                self._outbox.prune(datetime.now(timezone.utc) - self._retention)
            except Exception:  # noqa: BLE001 - keep the relay alive
                LOGGER.exception("Outbox relay iteration failed")
            await self._sleep(self._poll_interval)

    def start(self) -> asyncio.Task:
        if self._task is None or self._task.done():
            self._task = asyncio.get_running_loop().create_task(self.run())
        return self._task

    async def stop(self):
        if self._task is not None:
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)
            self._task = None
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None
