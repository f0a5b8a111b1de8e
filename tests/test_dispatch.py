from dataclasses import replace
from datetime import timedelta
import asyncio
import logging
import pytest

from dispatch.coordinator import DispatchOutcome
from errors import DispatchTimeout, InvalidTransition
from observability import metrics
from state.models import MatchDecision, RequestStatus, VolunteerStatus, request_key, volunteer_key
from state.repository import InMemoryStateStore, update
from tests.fixtures import bring_online, build_harness, eventually


class FailingStore(InMemoryStateStore):
    """Fails the next swap whose key and new record match ``when``, as a dropped connection would."""

    def __init__(self, when):
        super().__init__()
        self.when = when
        self.armed = False

    def compare_and_swap(self, key, expected_version, record):
        if self.armed and self.when(key, record):
            self.armed = False
            raise ConnectionError("store connection lost")
        return super().compare_and_swap(key, expected_version, record)


def test_decline_moves_offer_to_next_volunteer(harness):
    async def scenario():
        bring_online(harness, "v1", ["medical"])
        decision = harness.engine.open_request("r1", ["medical"], priority=5)
        task = await harness.coordinator.start(decision)
        assert harness.offers()[0]["volunteer_id"] == "v1"

        assert await harness.coordinator.acknowledge("r1", "v1", accepted=False)
        assert await task == DispatchOutcome.DECLINED

        r = harness.request("r1")
        assert r.status == RequestStatus.OPEN
        assert r.offer_rounds == 1
        assert r.excluded_until["v1"] == harness.clock() + timedelta(seconds=600)
        assert harness.volunteer("v1").status == VolunteerStatus.AVAILABLE

        # v1 is still cooling down for r1, v2 is not
        assert bring_online(harness, "v2", ["medical"]) is not None
        r = harness.request("r1")
        assert r.status == RequestStatus.MATCHING
        assert r.assigned_volunteer_id == "v2"
        await harness.coordinator.shutdown()

    asyncio.run(scenario())


def test_decline_reoffers_immediately_when_another_volunteer_waits(harness):
    async def scenario():
        bring_online(harness, "v1", ["medical"])
        bring_online(harness, "v2", ["medical"])
        task = await harness.coordinator.start(harness.engine.open_request("r1", ["medical"]))
        await harness.coordinator.acknowledge("r1", "v1", accepted=False)
        await task

        offers = harness.offers()
        assert [(o["volunteer_id"], o["round"]) for o in offers] == [("v1", 1), ("v2", 2)]
        assert harness.coordinator.pending_offers() == {"r1"}
        assert harness.volunteer("v1").status == VolunteerStatus.AVAILABLE
        await harness.coordinator.shutdown()

    asyncio.run(scenario())


def test_accept_confirms_assignment(harness):
    async def scenario():
        bring_online(harness, "v1", ["medical"])
        task = await harness.coordinator.start(harness.engine.open_request("r1", ["medical"]))
        assert await harness.coordinator.acknowledge("r1", None, accepted=True)
        assert await task == DispatchOutcome.CONFIRMED

    asyncio.run(scenario())
    r = harness.request("r1")
    v = harness.volunteer("v1")
    assert r.status == RequestStatus.ASSIGNED and r.assigned_volunteer_id == "v1"
    assert v.status == VolunteerStatus.BUSY and v.current_assignment == "r1"
    confirmed = harness.outbox.items("notify_assignment_confirmed")
    assert [i.payload["volunteer_id"] for i in confirmed] == ["v1"]


def test_stale_acknowledgement_is_ignored(harness):
    async def scenario():
        bring_online(harness, "v1", ["medical"])
        bring_online(harness, "v2", ["medical"])
        task = await harness.coordinator.start(harness.engine.open_request("r1", ["medical"]))
        assert not await harness.coordinator.acknowledge("r1", "v2", accepted=True)
        assert await harness.coordinator.acknowledge("r1", "v1", accepted=True)
        await task

    asyncio.run(scenario())
    assert harness.request("r1").assigned_volunteer_id == "v1"
    assert harness.volunteer("v2").status == VolunteerStatus.AVAILABLE
    assert metrics.snapshot()["stale_acknowledgements"] == 1


def test_unanswered_offer_times_out(caplog):
    caplog.set_level(logging.INFO, logger="dispatch.coordinator")
    h = build_harness(ack_timeout_seconds=0.01)

    async def scenario():
        bring_online(h, "v1", ["medical"])
        task = await h.coordinator.start(h.engine.open_request("r1", ["medical"]))
        outcome = await task
        await h.coordinator.shutdown()
        return outcome

    assert asyncio.run(scenario()) == DispatchOutcome.TIMED_OUT
    r = h.request("r1")
    assert r.status == RequestStatus.OPEN
    assert r.offer_rounds == 1
    assert r.offer_expires_at is None
    assert h.volunteer("v1").is_available()
    assert "no acknowledgement from v1" in caplog.text


def test_escalates_after_max_offer_rounds(harness):
    async def scenario():
        for vid in ("v1", "v2", "v3", "v4"):
            bring_online(harness, vid, ["medical"])
        task = await harness.coordinator.start(harness.engine.open_request("r1", ["medical"]))
        for vid in ("v1", "v2", "v3"):
            assert harness.request("r1").assigned_volunteer_id == vid
            await harness.coordinator.acknowledge("r1", vid, accepted=False)
        await task
        await harness.coordinator.shutdown()

    asyncio.run(scenario())
    r = harness.request("r1")
    assert r.status == RequestStatus.UNMATCHED_ESCALATED
    assert r.offer_rounds == 3
    assert r.assigned_volunteer_id is None
    escalations = harness.outbox.items("notify_escalation")
    assert [i.payload["request_id"] for i in escalations] == ["r1"]
    operator = harness.outbox.items("notify_operator")
    assert [(i.payload["code"], i.payload["entity_id"]) for i in operator] == [("retry_exhausted", "r1")]
    # v4 was never offered r1
    assert harness.volunteer("v4").status == VolunteerStatus.AVAILABLE
    assert metrics.snapshot()["requests_escalated"] == 1


def test_escalated_request_is_never_reopened(harness):
    async def scenario():
        for vid in ("v1", "v2", "v3"):
            bring_online(harness, vid, ["medical"])
        await harness.coordinator.start(harness.engine.open_request("r1", ["medical"]))
        for vid in ("v1", "v2", "v3"):
            await harness.coordinator.acknowledge("r1", vid, accepted=False)
        assert harness.request("r1").status == RequestStatus.UNMATCHED_ESCALATED

        # every cool-down has lapsed and a fresh volunteer shows up
        harness.clock.advance(3600)
        assert bring_online(harness, "v5", ["medical"]) is None
        assert await harness.coordinator.resume() == 0
        assert harness.coordinator.pending_offers() == set()
        await harness.coordinator.shutdown()

    asyncio.run(scenario())
    assert harness.request("r1").status == RequestStatus.UNMATCHED_ESCALATED
    assert len(harness.offers()) == 3
    assert harness.volunteer("v5").status == VolunteerStatus.AVAILABLE


def test_request_is_reoffered_when_cooldown_lapses():
    h = build_harness(cooldown_seconds=0.05)

    async def scenario():
        bring_online(h, "v1", ["medical"])
        task = await h.coordinator.start(h.engine.open_request("r1", ["medical"]))
        await h.coordinator.acknowledge("r1", "v1", accepted=False)
        assert await task == DispatchOutcome.DECLINED
        assert h.request("r1").status == RequestStatus.OPEN

        # no further trigger arrives: the lapsed cool-down alone re-offers
        h.clock.advance(1)
        assert await eventually(lambda: len(h.offers()) == 2)
        await h.coordinator.shutdown()

    asyncio.run(scenario())
    assert [(o["volunteer_id"], o["round"]) for o in h.offers()] == [("v1", 1), ("v1", 2)]
    r = h.request("r1")
    assert r.status == RequestStatus.MATCHING and r.assigned_volunteer_id == "v1"


def test_resume_rearms_cooldown_expiry():
    store = InMemoryStateStore()
    before = build_harness(store, cooldown_seconds=0.05)

    async def decline():
        bring_online(before, "v1", ["medical"])
        await before.coordinator.start(before.engine.open_request("r1", ["medical"]))
        await before.coordinator.acknowledge("r1", "v1", accepted=False)
        await before.coordinator.shutdown()

    asyncio.run(decline())
    assert before.request("r1").status == RequestStatus.OPEN

    after = build_harness(store, cooldown_seconds=0.05)
    after.clock.now = before.clock.now

    async def restart():
        await after.coordinator.resume()
        assert after.offers() == []
        after.clock.advance(1)
        assert await eventually(lambda: len(after.offers()) == 1)
        await after.coordinator.shutdown()

    asyncio.run(restart())
    assert after.offers()[0]["volunteer_id"] == "v1"
    assert after.request("r1").status == RequestStatus.MATCHING


def test_cancel_releases_volunteer_before_acknowledging(harness):
    async def scenario():
        bring_online(harness, "v1", ["medical"])
        task = await harness.coordinator.start(harness.engine.open_request("r1", ["medical"]))
        harness.clock.advance(1)
        harness.engine.open_request("r2", ["medical"])

        cancelled = await harness.coordinator.cancel("r1")
        assert cancelled.status == RequestStatus.CANCELLED
        assert await task == DispatchOutcome.CANCELLED
        # a second cancel is a no-op
        assert (await harness.coordinator.cancel("r1")).status == RequestStatus.CANCELLED
        await harness.coordinator.shutdown()

    asyncio.run(scenario())
    assert harness.request("r1").assigned_volunteer_id is None
    # released volunteer is handed the next open request
    assert harness.request("r2").assigned_volunteer_id == "v1"
    assert harness.volunteer("v1").current_assignment == "r2"


def test_cancel_terminal_request_is_rejected(harness):
    harness.engine.open_request("r1", ["medical"])
    update(
        harness.store,
        request_key("r1"),
        lambda r: replace(r, status=RequestStatus.UNMATCHED_ESCALATED),
    )
    with pytest.raises(InvalidTransition):
        asyncio.run(harness.coordinator.cancel("r1"))


def test_unavailable_while_busy_goes_offline_after_fulfilment(harness):
    async def scenario():
        bring_online(harness, "v1", ["medical"])
        task = await harness.coordinator.start(harness.engine.open_request("r1", ["medical"]))
        await harness.coordinator.acknowledge("r1", "v1", accepted=True)
        await task

        v = harness.engine.on_volunteer_unavailable("v1")
        assert v.status == VolunteerStatus.BUSY and v.offline_requested
        return await harness.coordinator.complete("r1")

    done = asyncio.run(scenario())
    assert done.status == RequestStatus.FULFILLED
    v = harness.volunteer("v1")
    assert v.status == VolunteerStatus.OFFLINE
    assert v.current_assignment is None
    assert not v.offline_requested


def test_complete_requires_assignment(harness):
    harness.engine.open_request("r1", ["medical"])
    with pytest.raises(InvalidTransition):
        asyncio.run(harness.coordinator.complete("r1"))


def test_timeout_after_confirmation_is_ignored(harness):
    async def scenario():
        bring_online(harness, "v1", ["medical"])
        decision = harness.engine.open_request("r1", ["medical"])
        await harness.coordinator.start(decision)
        await harness.coordinator.acknowledge("r1", "v1", accepted=True)
        # a late timeout for the same offer loses against the confirmation
        assert await harness.coordinator.settle(decision, DispatchOutcome.TIMED_OUT) is None
        await harness.coordinator.shutdown()

    asyncio.run(scenario())
    assert harness.request("r1").status == RequestStatus.ASSIGNED
    assert harness.volunteer("v1").status == VolunteerStatus.BUSY
    assert "outcome_timed_out" not in metrics.snapshot()


def test_failed_volunteer_claim_leaves_offer_outstanding():
    store = FailingStore(lambda key, record: key == volunteer_key("v1") and record.status == VolunteerStatus.BUSY)
    h = build_harness(store)

    async def scenario():
        bring_online(h, "v1", ["medical"])
        await h.coordinator.start(h.engine.open_request("r1", ["medical"]))
        store.armed = True
        with pytest.raises(ConnectionError):
            await h.coordinator.acknowledge("r1", "v1", accepted=True)

        r, v = h.request("r1"), h.volunteer("v1")
        assert r.status == RequestStatus.MATCHING and r.assigned_volunteer_id == "v1"
        assert v.status == VolunteerStatus.RESERVED and v.current_assignment == "r1"
        assert h.outbox.items("notify_assignment_confirmed") == []

        # the redelivered acknowledgement completes it
        assert await h.coordinator.acknowledge("r1", "v1", accepted=True)
        await h.coordinator.shutdown()

    asyncio.run(scenario())
    assert h.request("r1").status == RequestStatus.ASSIGNED
    assert h.volunteer("v1").status == VolunteerStatus.BUSY
    assert len(h.outbox.items("notify_assignment_confirmed")) == 1


def test_interrupted_confirmation_is_finished_on_resume():
    store = FailingStore(lambda key, record: key == request_key("r1") and record.status == RequestStatus.ASSIGNED)
    before = build_harness(store)

    async def crash():
        bring_online(before, "v1", ["medical"])
        await before.coordinator.start(before.engine.open_request("r1", ["medical"]))
        store.armed = True
        with pytest.raises(ConnectionError):
            await before.coordinator.acknowledge("r1", "v1", accepted=True)
        await before.coordinator.shutdown()

    asyncio.run(crash())
    # the volunteer claim landed, the request write did not
    assert before.volunteer("v1").status == VolunteerStatus.BUSY
    assert before.request("r1").status == RequestStatus.MATCHING
    assert before.outbox.items("notify_assignment_confirmed") == []

    after = build_harness(store)

    async def restart():
        assert await after.coordinator.resume() == 0
        assert after.coordinator.pending_offers() == set()
        await after.coordinator.shutdown()

    asyncio.run(restart())
    r = after.request("r1")
    assert r.status == RequestStatus.ASSIGNED and r.assigned_volunteer_id == "v1"
    assert [i.payload["volunteer_id"] for i in after.outbox.items("notify_assignment_confirmed")] == ["v1"]


def test_resume_sends_offer_that_never_went_out():
    store = InMemoryStateStore()
    before = build_harness(store)
    bring_online(before, "v1", ["medical"])
    # reserved synchronously, process "crashes" before dispatching
    before.engine.open_request("r1", ["medical"])

    after = build_harness(store)

    async def scenario():
        assert await after.coordinator.resume() == 1
        assert after.coordinator.pending_offers() == {"r1"}
        assert await after.coordinator.acknowledge("r1", "v1", accepted=True)
        await after.coordinator.shutdown()

    asyncio.run(scenario())
    assert [o["volunteer_id"] for o in after.offers()] == ["v1"]
    assert after.request("r1").status == RequestStatus.ASSIGNED


def test_resume_settles_expired_offer():
    store = InMemoryStateStore()
    before = build_harness(store)
    bring_online(before, "v1", ["medical"])
    before.engine.open_request("r1", ["medical"])
    expired = before.clock() - timedelta(seconds=1)
    update(store, request_key("r1"), lambda r: replace(r, offer_expires_at=expired))

    after = build_harness(store)

    async def scenario():
        await after.coordinator.resume()
        assert await eventually(lambda: after.request("r1").status == RequestStatus.OPEN)
        await after.coordinator.shutdown()

    asyncio.run(scenario())
    r = after.request("r1")
    assert r.offer_rounds == 1
    # an already-sent offer is not sent again
    assert after.offers() == []


def test_wait_for_ack_raises_dispatch_timeout(harness):
    async def scenario():
        waiter = asyncio.get_running_loop().create_future()
        decision = MatchDecision("r1", "v1", harness.clock())
        with pytest.raises(DispatchTimeout) as info:
            await harness.coordinator._wait_for_ack(decision, waiter, 0.01)
        assert info.value.entity_id == "r1"

    asyncio.run(scenario())
