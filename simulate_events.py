#!/usr/bin/env python3
"""Replay a short volunteer/request scenario and show the resulting state and logs"""
import sys
import json
import asyncio
sys.path.insert(0, 'src')

from ingress.events import parse_event
from observability.logging import configure_logging
from runtime import build_runtime
from settings import load_settings
from state.models import request_to_dict, volunteer_to_dict
from state.repository import InMemoryStateStore, get_request, get_volunteer

SCENARIO = [
    {"event_id": "e1", "type": "volunteer_registered", "volunteer_id": "V1", "tags": ["medical"]},
    {"event_id": "e2", "type": "volunteer_available", "volunteer_id": "V1"},
    {"event_id": "e3", "type": "request_opened", "request_id": "R1", "tags": ["medical"], "priority": 5},
    {"event_id": "e4", "type": "offer_acknowledged", "request_id": "R1", "volunteer_id": "V1", "decision": "decline"},
    {"event_id": "e5", "type": "volunteer_registered", "volunteer_id": "V2", "tags": ["medical"]},
    {"event_id": "e6", "type": "volunteer_available", "volunteer_id": "V2"},
    {"event_id": "e7", "type": "offer_acknowledged", "request_id": "R1", "volunteer_id": "V2", "decision": "accept"},
    {"event_id": "e8", "type": "request_opened", "request_id": "R2", "tags": ["legal"]},
]


async def main():
    settings = load_settings()
    configure_logging(settings.log_level)
    runtime = build_runtime(settings, store=InMemoryStateStore())
    await runtime.startup()

    print("=" * 60)
    print("INBOUND EVENTS")
    print("=" * 60)
    for payload in SCENARIO:
        result = await runtime.handler.handle(parse_event(payload))
        print(f"{payload['event_id']} {payload['type']}: {json.dumps(result, default=str)}")
    print()

    print("=" * 60)
    print("FINAL STATE")
    print("=" * 60)
    for request_id in ("R1", "R2"):
        print(json.dumps(request_to_dict(get_request(runtime.store, request_id)), indent=2))
    for volunteer_id in ("V1", "V2"):
        print(json.dumps(volunteer_to_dict(get_volunteer(runtime.store, volunteer_id)), indent=2))
    print()

    print("=" * 60)
    print("OUTBOX")
    print("=" * 60)
    for item in runtime.outbox.items():
        print(f"  {item.kind} [{item.idempotency_key}]")
    print()

    print("=" * 60)
    print("SYSTEM BACKGROUND LOGS")
    print("=" * 60)
    for i, event in enumerate(runtime.store.event_log, 1):
        print(f"[Log Entry {i}]")
        print(f"  Event Type: {event.kind}")
        print(f"  Timestamp: {event.timestamp.isoformat()}")
        print(f"  Correlation ID: {event.correlation_id}")
        print(f"  Actor: {event.actor}")
        print(f"  Data: {json.dumps(event.data, indent=4, default=str)}")
        print()

    await runtime.shutdown()


if __name__ == "__main__":
    asyncio.run(main())
