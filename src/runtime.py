from __future__ import annotations
from dataclasses import dataclass
from typing import Optional
import logging
from dispatch.coordinator import DispatchCoordinator
from dispatch.outbox import Outbox, OutboxRelay
from ingress.handler import EventHandler
from matching.engine import MatchingEngine, NowFn
from settings import Settings
from state.models import _now
from state.repository import StateStore, initialise_store

LOGGER = logging.getLogger(__name__)


@dataclass
class Runtime:
    settings: Settings
    store: StateStore
    outbox: Outbox
    engine: MatchingEngine
    coordinator: DispatchCoordinator
    handler: EventHandler
    relay: Optional[OutboxRelay] = None

    async def startup(self):
        await self.coordinator.resume()
        if self.relay is not None:
            self.relay.start()
            LOGGER.info("Outbox relay started")

    async def shutdown(self):
        await self.coordinator.shutdown()
        if self.relay is not None:
            await self.relay.stop()


def build_runtime(
    settings: Settings,
    *,
    store: Optional[StateStore] = None,
    now_fn: NowFn = _now,
) -> Runtime:
    store = store if store is not None else initialise_store(settings.database_url)
    outbox = Outbox()
    engine = MatchingEngine(store, settings, now_fn=now_fn)
    coordinator = DispatchCoordinator(store, engine, outbox, settings, now_fn=now_fn)
    handler = EventHandler(
        store, engine, coordinator, outbox, retention_seconds=settings.dedup_retention_seconds
    )
    relay = None
    if settings.egress_url:
        relay = OutboxRelay(
            outbox,
            settings.egress_url,
            max_attempts=settings.egress_max_attempts,
            backoff_seconds=settings.egress_backoff_seconds,
            retention_seconds=settings.dedup_retention_seconds,
        )
    return Runtime(
        settings=settings,
        store=store,
        outbox=outbox,
        engine=engine,
        coordinator=coordinator,
        handler=handler,
        relay=relay,
    )
