from __future__ import annotations
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Optional
from fastapi import FastAPI, HTTPException, Request as HttpRequest
from pydantic import BaseModel
from errors import NotFound
from ingress.events import InboundEvent
from observability import metrics
from observability.logging import configure_logging
from runtime import Runtime, build_runtime
from settings import load_settings
from state.models import request_to_dict, volunteer_to_dict
from state.repository import get_request, get_volunteer

# error code -> HTTP status for results returned by the event handler
_ERROR_STATUS = {
    "not_found": 404,
    "invalid_transition": 409,
    "retry_exhausted": 409,
    "contention": 409,
}


class EventResponse(BaseModel):
    ok: bool
    correlation_id: str
    duplicate: bool = False
    data: Dict[str, Any] = {}


def create_app(runtime: Optional[Runtime] = None) -> FastAPI:
    if runtime is None:
        settings = load_settings()
        configure_logging(settings.log_level)
        runtime = build_runtime(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await runtime.startup()
        try:
            yield
        finally:
            await runtime.shutdown()

    app = FastAPI(title="Connect Volunteers Bot", lifespan=lifespan)
    app.state.runtime = runtime

    def _runtime(req: HttpRequest) -> Runtime:
        return req.app.state.runtime

    @app.post("/events", response_model=EventResponse)
    async def post_event(event: InboundEvent, req: HttpRequest):
        result = await _runtime(req).handler.handle(event)
        if not result["ok"]:
            raise HTTPException(
                status_code=_ERROR_STATUS.get(result["error"], 400),
                detail={"error": result["error"], "detail": result.get("detail"), "correlation_id": result["correlation_id"]},
            )
        data = {k: v for k, v in result.items() if k not in ("ok", "correlation_id", "duplicate")}
        return EventResponse(
            ok=True,
            correlation_id=result["correlation_id"],
            duplicate=result.get("duplicate", False),
            data=data,
        )

    @app.get("/requests/{request_id}")
    def read_request(request_id: str, req: HttpRequest):
        try:
            return request_to_dict(get_request(_runtime(req).store, request_id))
        except NotFound as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc

    @app.get("/volunteers/{volunteer_id}")
    def read_volunteer(volunteer_id: str, req: HttpRequest):
        try:
            return volunteer_to_dict(get_volunteer(_runtime(req).store, volunteer_id))
        except NotFound as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc

    @app.get("/outbox")
    def read_outbox(req: HttpRequest, kind: Optional[str] = None):
        return [
            {
                "id": item.id,
                "kind": item.kind,
                "payload": item.payload,
                "attempts": item.attempts,
                "delivered": item.delivered_at is not None,
            }
            for item in _runtime(req).outbox.items(kind)
        ]

    @app.get("/metrics")
    def read_metrics():
        return metrics.snapshot()

    @app.get("/health")
    def health():
        return {"ok": True, "time": datetime.now(timezone.utc).isoformat()}

    return app


app = create_app()
