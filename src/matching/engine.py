"""Greedy volunteer/request matching with CAS-confirmed reservations.

Each trigger (request opened, volunteer available) runs one scan of the
opposite index and tries to reserve the best pair. A lost CAS refreshes the
touched entities and rescans a bounded number of times; after that the engine
gives up and leaves both entities as they were.
"""

from __future__ import annotations
from dataclasses import replace
from datetime import datetime
from typing import Callable, Iterable, Optional
import logging
from errors import Contention, InvalidTransition
from lifecycle.tracker import is_terminal, transition_request, transition_volunteer
from observability import metrics
from settings import Settings
from state import event_log
from state.models import (
    REQUEST_PREFIX,
    VOLUNTEER_PREFIX,
    Contact,
    HelpKind,
    MatchDecision,
    Request,
    RequestStatus,
    Volunteer,
    VolunteerStatus,
    _now,
    normalize_tags,
    request_key,
    volunteer_key,
)
from state.repository import StateStore, load, update
from .index import MatchIndex

LOGGER = logging.getLogger(__name__)

NowFn = Callable[[], datetime]


class MatchingEngine:
    def __init__(
        self,
        store: StateStore,
        settings: Settings,
        *,
        now_fn: NowFn = _now,
        index: Optional[MatchIndex] = None,
    ) -> None:
        self._store = store
        self._settings = settings
        self._now = now_fn
        self.index = index or MatchIndex()

    # ---- Intake ----

    def register_volunteer(
        self,
        volunteer_id: str,
        tags: Iterable[str] = (),
        *,
        help_kinds: Iterable[HelpKind] = (),
        contact: Optional[Contact] = None,
    ) -> Volunteer:
        """Create the volunteer (offline) or refresh its profile on re-registration."""
        key = volunteer_key(volunteer_id)
        help_kinds = frozenset(HelpKind(k) for k in help_kinds)
        all_tags = normalize_tags(tags, help_kinds)
        if self._store.get(key) is None:
            volunteer = Volunteer(
                id=volunteer_id,
                tags=all_tags,
                registered_at=self._now(),
                help_kinds=help_kinds,
                contact=contact,
            )
            if self._store.compare_and_swap(key, 0, volunteer):
                event_log.log(self._store, "volunteer_registered", volunteer_id, "matching", {"tags": sorted(all_tags)})
                return volunteer
            # a concurrent registration won the insert; update it instead

        def _apply(current: Volunteer) -> Volunteer:
            changed = replace(current, tags=all_tags, help_kinds=help_kinds, contact=contact or current.contact)
            return current if changed == current else changed

        volunteer = update(self._store, key, _apply, retries=self._settings.mutation_retries)
        self.index.apply_volunteer(volunteer)
        return volunteer

    def on_volunteer_available(self, volunteer_id: str) -> Optional[MatchDecision]:
        """Mark the volunteer available and look for an open request for them.

        Replays for a volunteer that is already available, reserved or busy do
        not change state and do not produce a proposal.
        """
        came_online = []

        def _apply(current: Volunteer) -> Volunteer:
            came_online.clear()
            if current.status == VolunteerStatus.OFFLINE:
                came_online.append(True)
                return transition_volunteer(current, VolunteerStatus.AVAILABLE, offline_requested=False)
            if current.offline_requested:
                return replace(current, offline_requested=False)
            return current

        volunteer = update(self._store, volunteer_key(volunteer_id), _apply, retries=self._settings.mutation_retries)
        self.index.apply_volunteer(volunteer)
        if not came_online:
            return None
        event_log.log(self._store, "volunteer_available", volunteer_id, "matching", {})
        return self.propose_for_volunteer(volunteer_id)

    def on_volunteer_unavailable(self, volunteer_id: str) -> Volunteer:
        """Take the volunteer offline, or flag them to go offline once released."""

        def _apply(current: Volunteer) -> Volunteer:
            if current.status == VolunteerStatus.AVAILABLE:
                return transition_volunteer(current, VolunteerStatus.OFFLINE)
            if current.status in (VolunteerStatus.RESERVED, VolunteerStatus.BUSY) and not current.offline_requested:
                return replace(current, offline_requested=True)
            return current

        volunteer = update(self._store, volunteer_key(volunteer_id), _apply, retries=self._settings.mutation_retries)
        self.index.apply_volunteer(volunteer)
        event_log.log(self._store, "volunteer_unavailable", volunteer_id, "matching", {"status": volunteer.status.value})
        return volunteer

    def open_request(
        self,
        request_id: str,
        required_tags: Iterable[str] = (),
        *,
        priority: int = 0,
        help_kind: Optional[HelpKind] = None,
        contact: Optional[Contact] = None,
    ) -> Optional[MatchDecision]:
        """Create a request in ``open`` and try to match it.

        A duplicate for a live request is a no-op; reopening a request that
        already reached a terminal state is rejected.
        """
        key = request_key(request_id)
        existing = self._store.get(key)
        if existing is not None:
            status = existing.record.status
            if is_terminal(status):
                raise InvalidTransition(request_id, status.value, RequestStatus.OPEN.value)
            LOGGER.info("Duplicate request_opened for %s ignored (status=%s)", request_id, status.value)
            return None
        now = self._now()
        request = Request(
            id=request_id,
            required_tags=normalize_tags(required_tags, [help_kind] if help_kind else []),
            priority=priority,
            created_at=now,
            last_transition_at=now,
            help_kind=HelpKind(help_kind) if help_kind else None,
            contact=contact,
        )
        if not self._store.compare_and_swap(key, 0, request):
            LOGGER.info("Concurrent request_opened for %s ignored", request_id)
            return None
        event_log.log(
            self._store,
            "request_opened",
            request_id,
            "matching",
            {"tags": sorted(request.required_tags), "priority": priority},
        )
        return self.on_request_opened(request_id)

    # ---- Matching ----

    def on_request_opened(self, request_id: str) -> Optional[MatchDecision]:
        self._refresh_request(request_id)
        return self.propose(request_id)

    def propose_match(self, request_id: str) -> Optional[str]:
        decision = self.propose(request_id)
        return decision.volunteer_id if decision else None

    def propose(self, request_id: str) -> Optional[MatchDecision]:
        """Find and reserve a volunteer for an open request."""
        volunteer_id = None
        for attempt in range(self._settings.cas_retries + 1):
            if attempt:
                metrics.inc("match_retries")
            request = self.index.request(request_id)
            if request is None:
                return None
            now = self._now()
            volunteer_id = self.index.best_volunteer_for(request, now)
            if volunteer_id is None:
                return None
            try:
                return self._reserve(request_id, volunteer_id, now)
            except Contention:
                self._refresh_request(request_id)
                self._refresh_volunteer(volunteer_id)
        self._report_contention(request_id, volunteer_id)
        return None

    def propose_for_volunteer(self, volunteer_id: str) -> Optional[MatchDecision]:
        """Find and reserve the most urgent open request this volunteer can serve."""
        request_id = None
        for attempt in range(self._settings.cas_retries + 1):
            if attempt:
                metrics.inc("match_retries")
            volunteer = self.index.volunteer(volunteer_id)
            if volunteer is None:
                return None
            now = self._now()
            request_id = self.index.best_request_for(volunteer, now)
            if request_id is None:
                return None
            try:
                return self._reserve(request_id, volunteer_id, now)
            except Contention:
                self._refresh_request(request_id)
                self._refresh_volunteer(volunteer_id)
        self._report_contention(request_id, volunteer_id)
        return None

    def _reserve(self, request_id: str, volunteer_id: str, now: datetime) -> MatchDecision:
        rkey, vkey = request_key(request_id), volunteer_key(volunteer_id)
        request, request_version = load(self._store, rkey)
        volunteer, volunteer_version = load(self._store, vkey)
        if (
            not request.is_open()
            or not volunteer.is_available()
            or not request.required_tags <= volunteer.tags
            or request.is_excluded(volunteer_id, now)
        ):
            raise Contention("snapshot is stale", entity_id=request_id)

        # request side first, volunteer side last: a volunteer never points at
        # a request that does not point back
        reserved_request = transition_request(
            request,
            RequestStatus.MATCHING,
            now,
            assigned_volunteer_id=volunteer_id,
            offer_expires_at=None,
        )
        if not self._store.compare_and_swap(rkey, request_version, reserved_request):
            raise Contention("request changed during reservation", entity_id=request_id)

        reserved_volunteer = transition_volunteer(volunteer, VolunteerStatus.RESERVED, current_assignment=request_id)
        if not self._store.compare_and_swap(vkey, volunteer_version, reserved_volunteer):
            rollback = transition_request(reserved_request, RequestStatus.OPEN, now, assigned_volunteer_id=None)
            if not self._store.compare_and_swap(rkey, request_version + 1, rollback):
                LOGGER.warning("Rollback of %s skipped; request changed concurrently", request_id)
            raise Contention("volunteer changed during reservation", entity_id=volunteer_id)

        self.index.discard_request(request_id)
        self.index.discard_volunteer(volunteer_id)
        metrics.inc("matches_reserved")
        event_log.log(self._store, "match_reserved", request_id, "matching", {"volunteer_id": volunteer_id})
        return MatchDecision(request_id=request_id, volunteer_id=volunteer_id, decided_at=now)

    def _report_contention(self, request_id: Optional[str], volunteer_id: Optional[str]):
        metrics.inc("match_contention")
        LOGGER.warning("Contention matching request=%s volunteer=%s; leaving both untouched", request_id, volunteer_id)
        event_log.log(
            self._store,
            "match_contention",
            request_id or "",
            "matching",
            {"request_id": request_id, "volunteer_id": volunteer_id},
        )

    # ---- Index maintenance ----

    def _refresh_request(self, request_id: str):
        current = self._store.get(request_key(request_id))
        if current is None:
            self.index.discard_request(request_id)
        else:
            self.index.apply_request(current.record)

    def _refresh_volunteer(self, volunteer_id: str):
        current = self._store.get(volunteer_key(volunteer_id))
        if current is None:
            self.index.discard_volunteer(volunteer_id)
        else:
            self.index.apply_volunteer(current.record)

    def track_request(self, request: Request):
        self.index.apply_request(request)

    def track_volunteer(self, volunteer: Volunteer):
        self.index.apply_volunteer(volunteer)

    def forget(self, request_id: str):
        self.index.discard_request(request_id)

    def rebuild(self):
        """Reload both indices from the store (startup / recovery)."""
        self.index.clear()
        for key in self._store.keys(VOLUNTEER_PREFIX):
            current = self._store.get(key)
            if current is not None:
                self.index.apply_volunteer(current.record)
        for key in self._store.keys(REQUEST_PREFIX):
            current = self._store.get(key)
            if current is not None:
                self.index.apply_request(current.record)
        LOGGER.info("Match index rebuilt: %d open requests", len(self.index.open_request_ids()))
