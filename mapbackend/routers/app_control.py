from __future__ import annotations

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse, StreamingResponse

from mapbackend.models.messages import AppControlResponse, AppControlUpdate
from mapbackend.proxy.endpoint import json_object, require_admin
from mapbackend.proxy.errors import MalformedRequest
from mapbackend.services.app_control import status_events, utc_now_iso

router = APIRouter(prefix="/api", tags=["app-control"])


@router.get("/app-control", response_model=AppControlResponse)
async def http_get_app_status(request: Request):
    require_admin(request, resource="app-control")
    status = await request.app.state.app_status.current()
    return AppControlResponse(status=status, timestamp=utc_now_iso())


@router.post("/app-control", response_model=AppControlResponse)
async def http_set_app_status(request: Request):
    identity = require_admin(request, resource="app-control")
    body = AppControlUpdate.model_validate(await json_object(request))

    if not isinstance(body.active, bool):
        raise MalformedRequest("Invalid request: active field must be boolean")
    reason = body.reason if isinstance(body.reason, str) else None

    status = await request.app.state.app_status.update(body.active, reason, identity.username)
    return AppControlResponse(
        status=status,
        message=f"App status updated to {'ACTIVE' if body.active else 'INACTIVE'}",
        timestamp=utc_now_iso(),
    )


@router.get("/app-status-stream")
async def http_app_status_stream(request: Request):
    if "text/event-stream" not in request.headers.get("accept", ""):
        return JSONResponse({"error": "This endpoint requires SSE support"}, status_code=400)

    state = request.app.state
    return StreamingResponse(
        status_events(
            state.app_status,
            state.settings.app_status_stream_interval,
            request.is_disconnected,
        ),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "Connection": "keep-alive"},
    )
