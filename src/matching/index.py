from __future__ import annotations
from bisect import insort
from collections import defaultdict
from datetime import datetime
from typing import Dict, List, Optional, Set, Tuple
import threading
from state.models import Request, Volunteer

# (-priority, created_at, request_id): ascending order is "most urgent first".
RequestOrder = Tuple[int, datetime, str]


def request_order(request: Request) -> RequestOrder:
    return (-request.priority, request.created_at, request.id)


class MatchIndex:
    """In-memory view of available volunteers and open requests.

    The index is only a hint: it may lag the store. Reservations re-read the
    store and confirm through CAS, so a stale entry costs a retry, never a
    double assignment.
    """

    def __init__(self):
        self._lock = threading.RLock()
        self._volunteers: Dict[str, Volunteer] = {}
        self._volunteers_by_tag: Dict[str, Set[str]] = defaultdict(set)
        self._requests: Dict[str, Request] = {}
        self._request_order: Dict[str, RequestOrder] = {}
        self._requests_by_tag: Dict[str, List[RequestOrder]] = defaultdict(list)
        self._untagged_requests: List[RequestOrder] = []

    # Volunteers
    def apply_volunteer(self, volunteer: Volunteer):
        with self._lock:
            self.discard_volunteer(volunteer.id)
            if not volunteer.is_available():
                return
            self._volunteers[volunteer.id] = volunteer
            for tag in volunteer.tags:
                self._volunteers_by_tag[tag].add(volunteer.id)

    def discard_volunteer(self, volunteer_id: str):
        with self._lock:
            previous = self._volunteers.pop(volunteer_id, None)
            if previous is None:
                return
            for tag in previous.tags:
                bucket = self._volunteers_by_tag.get(tag)
                if bucket is not None:
                    bucket.discard(volunteer_id)
                    if not bucket:
                        del self._volunteers_by_tag[tag]

    def volunteer(self, volunteer_id: str) -> Optional[Volunteer]:
        return self._volunteers.get(volunteer_id)

    # Requests
    def apply_request(self, request: Request):
        with self._lock:
            self.discard_request(request.id)
            if not request.is_open():
                return
            order = request_order(request)
            self._requests[request.id] = request
            self._request_order[request.id] = order
            if request.required_tags:
                for tag in request.required_tags:
                    insort(self._requests_by_tag[tag], order)
            else:
                insort(self._untagged_requests, order)

    def discard_request(self, request_id: str):
        with self._lock:
            previous = self._requests.pop(request_id, None)
            order = self._request_order.pop(request_id, None)
            if previous is None or order is None:
                return
            buckets = [self._requests_by_tag[t] for t in previous.required_tags] or [self._untagged_requests]
            for bucket in buckets:
                if order in bucket:
                    bucket.remove(order)
            for tag in previous.required_tags:
                if not self._requests_by_tag.get(tag):
                    self._requests_by_tag.pop(tag, None)

    def request(self, request_id: str) -> Optional[Request]:
        return self._requests.get(request_id)

    def open_request_ids(self) -> List[str]:
        with self._lock:
            return [order[2] for order in sorted(self._request_order.values())]

    def clear(self):
        with self._lock:
            self._volunteers.clear()
            self._volunteers_by_tag.clear()
            self._requests.clear()
            self._request_order.clear()
            self._requests_by_tag.clear()
            self._untagged_requests.clear()

    # Candidate selection
    def best_volunteer_for(self, request: Request, now: datetime) -> Optional[str]:
        with self._lock:
            if request.required_tags:
                buckets = sorted(
                    (self._volunteers_by_tag.get(tag, set()) for tag in request.required_tags),
                    key=len,
                )
                ids = set(buckets[0]).intersection(*buckets[1:])
            else:
                ids = set(self._volunteers)
            candidates = [
                self._volunteers[vid]
                for vid in ids
                if vid in self._volunteers and not request.is_excluded(vid, now)
            ]
        if not candidates:
            return None
        best = min(candidates, key=lambda v: (v.registered_at, v.id))
        return best.id

    def best_request_for(self, volunteer: Volunteer, now: datetime) -> Optional[str]:
        with self._lock:
            buckets = [list(self._requests_by_tag.get(tag, ())) for tag in volunteer.tags]
            buckets.append(list(self._untagged_requests))
            requests = dict(self._requests)
        best: Optional[RequestOrder] = None
        for bucket in buckets:
            # each bucket is already in priority order; the first fit is the bucket's best
            for order in bucket:
                if best is not None and order >= best:
                    break
                request = requests.get(order[2])
                if request is None:
                    continue
                if request.required_tags <= volunteer.tags and not request.is_excluded(volunteer.id, now):
                    best = order
                    break
        return best[2] if best else None
