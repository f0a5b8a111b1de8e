from __future__ import annotations
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional
import logging
from dispatch.coordinator import DispatchCoordinator
from dispatch.intents import EgressPort, NotifyOperator
from errors import SURFACED, Contention, MatchingError
from matching.engine import MatchingEngine
from observability import metrics
from state import event_log
from state.idempotency import IdempotencyKeys
from state.models import MatchDecision, VolunteerStatus, new_id
from state.repository import StateStore, offload
from .events import (
    InboundEvent,
    OfferAcknowledged,
    RequestCancelled,
    RequestFulfilled,
    RequestOpened,
    VolunteerAvailable,
    VolunteerRegistered,
    VolunteerUnavailable,
)

LOGGER = logging.getLogger(__name__)


def _match_data(decision: Optional[MatchDecision]) -> Dict[str, Any] | None:
    if decision is None:
        return None
    return {"request_id": decision.request_id, "volunteer_id": decision.volunteer_id}


class EventHandler:
    """Applies inbound events to the core.

    Events are delivered at least once, so every event id is recorded and
    redeliveries are answered without touching state. Surfaced errors are
    returned to the caller and copied to the operator channel; they never
    stop processing of other events.
    """

    def __init__(
        self,
        store: StateStore,
        engine: MatchingEngine,
        coordinator: DispatchCoordinator,
        egress: EgressPort,
        keys: Optional[IdempotencyKeys] = None,
        *,
        retention_seconds: float = 86400.0,
    ):
        self.store = store
        self.engine = engine
        self.coordinator = coordinator
        self.egress = egress
        self.keys = keys or IdempotencyKeys()
        self._retention = timedelta(seconds=retention_seconds)
        self._next_prune = datetime.now(timezone.utc) + self._retention

    async def handle(self, event: InboundEvent) -> Dict[str, Any]:
        self._prune_keys()
        correlation_id = event.event_id or new_id()
        dedup_key = f"event:{event.event_id}" if event.event_id else None
        if dedup_key and not self.keys.check_and_record(dedup_key, {"type": event.type}):
            metrics.inc("events_duplicate")
            LOGGER.info("Duplicate delivery of %s (%s) dropped", event.event_id, event.type)
            return {"ok": True, "correlation_id": correlation_id, "duplicate": True}

        metrics.inc(f"events_{event.type}")
        try:
            data = await self._apply(event)
            await offload(
                event_log.log,
                self.store,
                f"event_{event.type}",
                correlation_id,
                event.user_id or "ingress",
                event.model_dump(mode="json", exclude={"contact"}),
            )
        except SURFACED as e:
            self._surface(e, correlation_id)
            return {"ok": False, "correlation_id": correlation_id, "error": e.code, "detail": str(e)}
        except Contention as e:
            # redelivery may succeed once the competing writer is done
            if dedup_key:
                self.keys.forget(dedup_key)
            LOGGER.warning("Contention applying %s: %s", event.type, e)
            return {"ok": False, "correlation_id": correlation_id, "error": e.code, "detail": str(e)}
        except Exception:
            # not applied: the transport's redelivery must get through
            if dedup_key:
                self.keys.forget(dedup_key)
            raise

        return {"ok": True, "correlation_id": correlation_id, **data}

    async def _apply(self, event: InboundEvent) -> Dict[str, Any]:
        if isinstance(event, VolunteerRegistered):
            volunteer = await offload(
                self.engine.register_volunteer,
                event.volunteer_id,
                event.tags,
                help_kinds=event.help_kinds,
                contact=event.contact.to_contact() if event.contact else None,
            )
            decision = None
            if volunteer.is_available():
                # tags may have changed: look again for work this volunteer fits
                decision = await offload(self.engine.propose_for_volunteer, volunteer.id)
                await self.coordinator.start(decision)
            return {"volunteer_status": volunteer.status.value, "match": _match_data(decision)}

        if isinstance(event, VolunteerAvailable):
            decision = await offload(self.engine.on_volunteer_available, event.volunteer_id)
            await self.coordinator.start(decision)
            return {"match": _match_data(decision)}

        if isinstance(event, VolunteerUnavailable):
            volunteer = await offload(self.engine.on_volunteer_unavailable, event.volunteer_id)
            withdrawn = False
            if volunteer.status == VolunteerStatus.RESERVED:
                withdrawn = await self.coordinator.withdraw(volunteer)
            return {"volunteer_status": volunteer.status.value, "offer_withdrawn": withdrawn}

        if isinstance(event, RequestOpened):
            decision = await offload(
                self.engine.open_request,
                event.request_id,
                event.tags,
                priority=event.priority,
                help_kind=event.help_kind,
                contact=event.contact.to_contact() if event.contact else None,
            )
            await self.coordinator.start(decision)
            return {"match": _match_data(decision)}

        if isinstance(event, RequestCancelled):
            request = await self.coordinator.cancel(event.request_id)
            return {"request_status": request.status.value}

        if isinstance(event, RequestFulfilled):
            request = await self.coordinator.complete(event.request_id)
            return {"request_status": request.status.value}

        if isinstance(event, OfferAcknowledged):
            applied = await self.coordinator.acknowledge(
                event.request_id,
                event.volunteer_id,
                accepted=event.decision == "accept",
            )
            return {"applied": applied}

        raise TypeError(f"unhandled event type {type(event).__name__}")

    def _surface(self, error: MatchingError, correlation_id: str):
        metrics.inc(f"errors_{error.code}")
        LOGGER.warning("Surfacing %s: %s", error.code, error)
        self.egress.publish(NotifyOperator.from_error(error, correlation_id))

    def _prune_keys(self):
        now = datetime.now(timezone.utc)
        if now < self._next_prune:
            return
        dropped = self.keys.prune(now - self._retention)
        self._next_prune = now + self._retention / 10
        if dropped:
            LOGGER.info("Pruned %d processed event ids", dropped)
