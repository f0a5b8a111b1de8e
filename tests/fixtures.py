from __future__ import annotations
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
import asyncio
from dispatch.coordinator import DispatchCoordinator
from dispatch.outbox import Outbox
from matching.engine import MatchingEngine
from settings import Settings
from state.models import Request, Volunteer, request_key, volunteer_key
from state.repository import InMemoryStateStore


class FakeClock:
    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float):
        self.now += timedelta(seconds=seconds)


def make_settings(**overrides) -> Settings:
    values = dict(ack_timeout_seconds=5.0, cooldown_seconds=600.0, max_offer_rounds=3)
    values.update(overrides)
    return Settings(**values)


@dataclass
class Harness:
    store: InMemoryStateStore
    clock: FakeClock
    settings: Settings
    engine: MatchingEngine
    outbox: Outbox
    coordinator: DispatchCoordinator

    def request(self, request_id: str) -> Request:
        return self.store.get(request_key(request_id)).record

    def volunteer(self, volunteer_id: str) -> Volunteer:
        return self.store.get(volunteer_key(volunteer_id)).record

    def offers(self):
        return [item.payload for item in self.outbox.items("notify_offer")]


def build_harness(store: InMemoryStateStore | None = None, **overrides) -> Harness:
    store = store if store is not None else InMemoryStateStore()
    clock = FakeClock()
    settings = make_settings(**overrides)
    engine = MatchingEngine(store, settings, now_fn=clock)
    outbox = Outbox()
    coordinator = DispatchCoordinator(store, engine, outbox, settings, now_fn=clock)
    return Harness(store, clock, settings, engine, outbox, coordinator)


def bring_online(h: Harness, volunteer_id: str, tags, advance: float = 1.0):
    """Register a volunteer and mark them available; returns any proposal made."""
    h.engine.register_volunteer(volunteer_id, tags)
    h.clock.advance(advance)
    return h.engine.on_volunteer_available(volunteer_id)


async def eventually(predicate, timeout: float = 2.0, interval: float = 0.01) -> bool:
    """Poll ``predicate`` while background dispatch tasks run."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() >= deadline:
            return False
        await asyncio.sleep(interval)
    return True
