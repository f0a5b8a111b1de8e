"""Offer dispatch, acknowledgement tracking and retry/escalation.

The coordinator never holds a lock while an offer is outstanding: the
reservation itself (request ``matching``, volunteer ``reserved``) is the only
held state and it is already persisted, together with the offer deadline, so
``resume`` can re-arm waiters after a restart.

Store round-trips run on worker threads through ``offload``; waiters, timers
and task bookkeeping stay on the event loop.

Settling an offer writes the volunteer first. That write is the claim: a
confirm moves the volunteer ``reserved -> busy`` and a release moves it back
to ``available``/``offline``, so only one of the two can win. The request
write follows and is guarded on the request still being held by the same
volunteer. A crash between the two writes leaves a state ``resume`` can
finish from the volunteer side.
"""

from __future__ import annotations
from dataclasses import replace
from datetime import timedelta
from enum import Enum
from typing import Dict, List, Optional, Set, Tuple
import asyncio
import logging
from errors import DispatchTimeout, InvalidTransition, RetryExhausted
from lifecycle.tracker import transition_request, transition_request_path, transition_volunteer
from matching.engine import MatchingEngine, NowFn
from observability import metrics
from settings import Settings
from state import event_log
from state.models import (
    REQUEST_PREFIX,
    MatchDecision,
    Request,
    RequestStatus,
    Volunteer,
    VolunteerStatus,
    _now,
    request_key,
    volunteer_key,
)
from state.repository import StateStore, get_request, offload, update
from .intents import EgressPort, NotifyAssignmentConfirmed, NotifyEscalation, NotifyOffer, NotifyOperator

LOGGER = logging.getLogger(__name__)

_HOLDING = (VolunteerStatus.RESERVED, VolunteerStatus.BUSY)


class DispatchOutcome(str, Enum):
    CONFIRMED = "confirmed"
    DECLINED = "declined"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"


class DispatchCoordinator:
    def __init__(
        self,
        store: StateStore,
        engine: MatchingEngine,
        egress: EgressPort,
        settings: Settings,
        *,
        now_fn: NowFn = _now,
    ) -> None:
        self._store = store
        self._engine = engine
        self._egress = egress
        self._settings = settings
        self._now = now_fn
        self._waiters: Dict[str, asyncio.Future] = {}
        self._tasks: Set[asyncio.Task] = set()
        self._cooldown_timers: Dict[str, asyncio.TimerHandle] = {}

    # ---- Offers ----

    async def dispatch(self, decision: MatchDecision) -> DispatchOutcome:
        """Offer the pair and wait for the outcome of this one round."""
        waiter = await self._arm(decision, send_offer=True)
        return await self._await_outcome(decision, waiter, self._settings.ack_timeout_seconds)

    async def start(self, decision: Optional[MatchDecision]) -> Optional[asyncio.Task]:
        """Send the offer, then wait for its acknowledgement in the background."""
        if decision is None:
            return None
        waiter = await self._arm(decision, send_offer=True)
        return self._spawn(
            self._await_outcome(decision, waiter, self._settings.ack_timeout_seconds),
            f"dispatch:{decision.request_id}",
        )

    async def _arm(self, decision: MatchDecision, *, send_offer: bool) -> asyncio.Future:
        previous = self._waiters.pop(decision.request_id, None)
        if previous is not None and not previous.done():
            previous.cancel()
        waiter = asyncio.get_running_loop().create_future()
        self._waiters[decision.request_id] = waiter
        if send_offer:
            await offload(self._send_offer, decision)
        return waiter

    def _send_offer(self, decision: MatchDecision) -> bool:
        expires_at = self._now() + timedelta(seconds=self._settings.ack_timeout_seconds)

        def _stamp(current: Request) -> Request:
            if current.status != RequestStatus.MATCHING or current.assigned_volunteer_id != decision.volunteer_id:
                return current
            return replace(current, offer_expires_at=expires_at)

        request = update(
            self._store,
            request_key(decision.request_id),
            _stamp,
            retries=self._settings.mutation_retries,
        )
        if request.offer_expires_at != expires_at:
            LOGGER.info("Reservation %s/%s no longer held; offer not sent", decision.request_id, decision.volunteer_id)
            return False
        self._egress.publish(
            NotifyOffer(
                request_id=decision.request_id,
                volunteer_id=decision.volunteer_id,
                round=request.offer_rounds + 1,
                expires_at=expires_at,
            )
        )
        metrics.inc("offers_sent")
        return True

    async def _wait_for_ack(self, decision: MatchDecision, waiter: asyncio.Future, timeout: float) -> DispatchOutcome:
        try:
            return await asyncio.wait_for(waiter, timeout=max(0.0, timeout))
        except asyncio.TimeoutError as e:
            raise DispatchTimeout(
                f"no acknowledgement from {decision.volunteer_id} within {timeout:.1f}s",
                entity_id=decision.request_id,
            ) from e

    async def _await_outcome(self, decision: MatchDecision, waiter: asyncio.Future, timeout: float) -> DispatchOutcome:
        try:
            outcome = await self._wait_for_ack(decision, waiter, timeout)
        except DispatchTimeout as e:
            LOGGER.info("Offer %s/%s timed out: %s", decision.request_id, decision.volunteer_id, e)
            outcome = DispatchOutcome.TIMED_OUT
        finally:
            if self._waiters.get(decision.request_id) is waiter:
                del self._waiters[decision.request_id]
        # acknowledgements and cancels settle on their own path
        if outcome == DispatchOutcome.TIMED_OUT:
            await self.settle(decision, outcome)
        return outcome

    def _spawn(self, coro, name: str) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._on_task_done)
        return task

    def _on_task_done(self, task: asyncio.Task):
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            # one request's failure must not take the others down
            LOGGER.error("Dispatch task %s failed", task.get_name(), exc_info=exc)
            metrics.inc("dispatch_failures")

    async def acknowledge(self, request_id: str, volunteer_id: Optional[str], accepted: bool) -> bool:
        """Feed an OfferAcknowledged event and settle the offer it answers.

        Returns False for stale acknowledgements and for offers another
        writer settled first.
        """
        request = await offload(get_request, self._store, request_id)
        if request.status != RequestStatus.MATCHING or (
            volunteer_id is not None and request.assigned_volunteer_id != volunteer_id
        ):
            LOGGER.info("Stale acknowledgement for %s from %s ignored", request_id, volunteer_id)
            metrics.inc("stale_acknowledgements")
            return False
        outcome = DispatchOutcome.CONFIRMED if accepted else DispatchOutcome.DECLINED
        waiter = self._waiters.pop(request_id, None)
        if waiter is not None and not waiter.done():
            waiter.set_result(outcome)
        decision = MatchDecision(request_id, request.assigned_volunteer_id, request.last_transition_at)
        return await self.settle(decision, outcome) is not None

    async def withdraw(self, volunteer: Volunteer) -> bool:
        """The reserved volunteer went away: treat the outstanding offer as declined."""
        if volunteer.status != VolunteerStatus.RESERVED or not volunteer.current_assignment:
            return False
        return await self.acknowledge(volunteer.current_assignment, volunteer.id, accepted=False)

    # ---- Settlement ----

    async def settle(self, decision: MatchDecision, outcome: DispatchOutcome) -> Optional[Request]:
        """Apply one offer outcome. Returns None when the offer was already settled."""
        if outcome == DispatchOutcome.CONFIRMED:
            return await offload(self._confirm, decision)
        settled = await offload(self._release_and_reopen, decision, outcome)
        if settled is None:
            return None
        request, volunteer = settled
        if request.status == RequestStatus.OPEN:
            await self._rematch(request.id)
        if volunteer.is_available():
            await self.start(await offload(self._engine.propose_for_volunteer, volunteer.id))
        return request

    def _record_outcome(self, decision: MatchDecision, outcome: DispatchOutcome):
        metrics.inc(f"outcome_{outcome.value}")
        event_log.log(
            self._store,
            "offer_settled",
            decision.request_id,
            "dispatch",
            {"volunteer_id": decision.volunteer_id, "outcome": outcome.value},
        )

    def _confirm(self, decision: MatchDecision) -> Optional[Request]:
        rid, vid = decision.request_id, decision.volunteer_id

        def _claim(current: Volunteer) -> Volunteer:
            if current.current_assignment != rid or current.status != VolunteerStatus.RESERVED:
                return current
            return transition_volunteer(current, VolunteerStatus.BUSY)

        volunteer = update(self._store, volunteer_key(vid), _claim, retries=self._settings.mutation_retries)
        self._engine.track_volunteer(volunteer)
        if volunteer.current_assignment != rid or volunteer.status != VolunteerStatus.BUSY:
            LOGGER.info("Offer %s/%s already released; confirmation ignored", rid, vid)
            return None
        return self._finish_confirm(decision)

    def _finish_confirm(self, decision: MatchDecision) -> Optional[Request]:
        """Request side of a confirmation whose volunteer is already busy with it."""
        rid, vid = decision.request_id, decision.volunteer_id
        now = self._now()
        applied = []

        def _assign(current: Request) -> Request:
            applied.clear()
            if current.status != RequestStatus.MATCHING or current.assigned_volunteer_id != vid:
                return current
            applied.append(True)
            return transition_request(current, RequestStatus.ASSIGNED, now, offer_expires_at=None)

        request = update(self._store, request_key(rid), _assign, retries=self._settings.mutation_retries)
        if not applied:
            LOGGER.info("Offer %s/%s already settled", rid, vid)
            return None
        self._engine.track_request(request)
        self._record_outcome(decision, DispatchOutcome.CONFIRMED)
        self._egress.publish(NotifyAssignmentConfirmed(request_id=rid, volunteer_id=vid))
        return request

    def _release_volunteer(self, volunteer_id: str, request_id: str, holding=_HOLDING) -> Optional[Volunteer]:
        """Free the volunteer from the request.

        Returns None when the volunteer still holds the request in a status
        outside ``holding``, i.e. another writer confirmed the offer.
        """

        def _apply(current: Volunteer) -> Volunteer:
            if current.current_assignment != request_id or current.status not in holding:
                return current
            target = VolunteerStatus.OFFLINE if current.offline_requested else VolunteerStatus.AVAILABLE
            return transition_volunteer(current, target, current_assignment=None, offline_requested=False)

        volunteer = update(self._store, volunteer_key(volunteer_id), _apply, retries=self._settings.mutation_retries)
        self._engine.track_volunteer(volunteer)
        if volunteer.current_assignment == request_id:
            return None
        return volunteer

    def _release_and_reopen(
        self, decision: MatchDecision, outcome: DispatchOutcome
    ) -> Optional[Tuple[Request, Volunteer]]:
        rid, vid = decision.request_id, decision.volunteer_id
        volunteer = self._release_volunteer(vid, rid, holding=(VolunteerStatus.RESERVED,))
        if volunteer is None:
            LOGGER.info("Offer %s/%s was confirmed; %s ignored", rid, vid, outcome.value)
            return None
        now = self._now()
        cooldown_end = now + timedelta(seconds=self._settings.cooldown_seconds)
        max_rounds = self._settings.max_offer_rounds
        applied = []

        def _apply(current: Request) -> Request:
            applied.clear()
            if current.status != RequestStatus.MATCHING or current.assigned_volunteer_id != vid:
                return current
            applied.append(True)
            rounds = current.offer_rounds + 1
            excluded = dict(current.excluded_until)
            excluded[vid] = cooldown_end
            changes = dict(
                assigned_volunteer_id=None,
                offer_rounds=rounds,
                excluded_until=excluded,
                offer_expires_at=None,
            )
            if rounds >= max_rounds:
                return transition_request_path(
                    current,
                    [RequestStatus.OPEN, RequestStatus.UNMATCHED_ESCALATED],
                    now,
                    **changes,
                )
            return transition_request(current, RequestStatus.OPEN, now, **changes)

        request = update(self._store, request_key(rid), _apply, retries=self._settings.mutation_retries)
        if not applied:
            LOGGER.info("Offer %s/%s already settled", rid, vid)
            return None
        self._engine.track_request(request)
        self._record_outcome(decision, outcome)
        if request.status == RequestStatus.UNMATCHED_ESCALATED:
            self._escalate(request)
        return request, volunteer

    def _escalate(self, request: Request):
        metrics.inc("requests_escalated")
        error = RetryExhausted(
            f"{request.id} unmatched after {request.offer_rounds} offer rounds",
            entity_id=request.id,
        )
        LOGGER.warning("Escalating request: %s", error)
        event_log.log(self._store, "request_escalated", request.id, "dispatch", {"offer_rounds": request.offer_rounds})
        self._egress.publish(NotifyEscalation(request_id=request.id, offer_rounds=request.offer_rounds))
        self._egress.publish(NotifyOperator.from_error(error, correlation_id=request.id))

    # ---- Cool-down expiry ----

    async def _rematch(self, request_id: str):
        """Offer the request again, or wait for its earliest cool-down to lapse."""
        decision = await offload(self._engine.propose, request_id)
        if decision is not None:
            await self.start(decision)
            return
        request = self._engine.index.request(request_id)
        if request is not None:
            self._schedule_cooldown_expiry(request)

    def _schedule_cooldown_expiry(self, request: Request):
        now = self._now()
        pending = [until for until in request.excluded_until.values() if until > now]
        if not pending:
            return
        delay = (min(pending) - now).total_seconds()
        self._cancel_cooldown_timer(request.id)
        self._cooldown_timers[request.id] = asyncio.get_running_loop().call_later(
            delay, self._on_cooldown_expired, request.id
        )

    def _on_cooldown_expired(self, request_id: str):
        self._cooldown_timers.pop(request_id, None)
        self._spawn(self._rematch(request_id), f"rematch:{request_id}")

    def _cancel_cooldown_timer(self, request_id: str):
        handle = self._cooldown_timers.pop(request_id, None)
        if handle is not None:
            handle.cancel()

    # ---- Cancellation / fulfilment ----

    async def cancel(self, request_id: str) -> Request:
        """Cancel the request, releasing any held volunteer before acknowledging."""
        request = await offload(get_request, self._store, request_id)
        if request.status == RequestStatus.CANCELLED:
            return request
        if request.status not in (RequestStatus.OPEN, RequestStatus.MATCHING, RequestStatus.ASSIGNED):
            raise InvalidTransition(request_id, request.status.value, RequestStatus.CANCELLED.value)

        released: Optional[Volunteer] = None
        if request.assigned_volunteer_id:
            released = await offload(self._release_volunteer, request.assigned_volunteer_id, request_id)

        request = await offload(self._mark_cancelled, request_id)
        self._engine.forget(request_id)
        self._cancel_cooldown_timer(request_id)
        waiter = self._waiters.pop(request_id, None)
        if waiter is not None and not waiter.done():
            waiter.set_result(DispatchOutcome.CANCELLED)
        if released is not None and released.is_available():
            await self.start(await offload(self._engine.propose_for_volunteer, released.id))
        return request

    def _mark_cancelled(self, request_id: str) -> Request:
        now = self._now()
        request = update(
            self._store,
            request_key(request_id),
            lambda r: r if r.status == RequestStatus.CANCELLED else transition_request(
                r, RequestStatus.CANCELLED, now, assigned_volunteer_id=None, offer_expires_at=None
            ),
            retries=self._settings.mutation_retries,
        )
        event_log.log(self._store, "request_cancelled", request_id, "dispatch", {})
        metrics.inc("requests_cancelled")
        return request

    async def complete(self, request_id: str) -> Request:
        """Mark an assigned request fulfilled and free its volunteer."""
        request = await offload(self._mark_fulfilled, request_id)
        if request.assigned_volunteer_id:
            released = await offload(self._release_volunteer, request.assigned_volunteer_id, request_id)
            if released is not None and released.is_available():
                await self.start(await offload(self._engine.propose_for_volunteer, released.id))
        return request

    def _mark_fulfilled(self, request_id: str) -> Request:
        now = self._now()
        request = update(
            self._store,
            request_key(request_id),
            lambda r: transition_request(r, RequestStatus.FULFILLED, now),
            retries=self._settings.mutation_retries,
        )
        event_log.log(
            self._store, "request_fulfilled", request_id, "dispatch", {"volunteer_id": request.assigned_volunteer_id}
        )
        metrics.inc("requests_fulfilled")
        return request

    # ---- Recovery / shutdown ----

    def _outstanding_offers(self) -> List[Tuple[Request, Optional[Volunteer]]]:
        found = []
        for key in self._store.keys(REQUEST_PREFIX):
            current = self._store.get(key)
            if current is None:
                continue
            request: Request = current.record
            if request.status != RequestStatus.MATCHING or not request.assigned_volunteer_id:
                continue
            held = self._store.get(volunteer_key(request.assigned_volunteer_id))
            found.append((request, held.record if held is not None else None))
        return found

    async def resume(self) -> int:
        """Rebuild the index, re-arm outstanding offers and re-match open requests.

        Offers interrupted half-way through settlement are finished from the
        volunteer side first.
        """
        await offload(self._engine.rebuild)
        outstanding = await offload(self._outstanding_offers)
        rearmed = 0
        now = self._now()
        for request, volunteer in outstanding:
            decision = MatchDecision(request.id, request.assigned_volunteer_id, request.last_transition_at)
            if volunteer is None:
                LOGGER.warning("Request %s held by unknown volunteer %s", request.id, decision.volunteer_id)
                continue
            if volunteer.current_assignment == request.id and volunteer.status == VolunteerStatus.BUSY:
                await offload(self._finish_confirm, decision)
                continue
            if volunteer.current_assignment != request.id:
                await self.settle(decision, DispatchOutcome.TIMED_OUT)
                continue
            if request.offer_expires_at is None:
                # reserved but the offer never went out
                await self.start(decision)
            else:
                remaining = (request.offer_expires_at - now).total_seconds()
                waiter = await self._arm(decision, send_offer=False)
                self._spawn(self._await_outcome(decision, waiter, remaining), f"dispatch:{request.id}")
            rearmed += 1
        for request_id in self._engine.index.open_request_ids():
            await self._rematch(request_id)
        LOGGER.info("Resumed %d outstanding offers", rearmed)
        return rearmed

    def pending_offers(self) -> Set[str]:
        return {rid for rid, waiter in self._waiters.items() if not waiter.done()}

    async def shutdown(self):
        for handle in self._cooldown_timers.values():
            handle.cancel()
        self._cooldown_timers.clear()
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._waiters.clear()
