from __future__ import annotations

from fastapi import APIRouter, Request

from mapbackend.models.messages import AdminActionResponse
from mapbackend.proxy.endpoint import json_object, require_admin
from mapbackend.security.rate_limit import WindowClass

router = APIRouter(prefix="/api/admin", tags=["admin"])


@router.post("/verify-password", response_model=AdminActionResponse, response_model_exclude_none=True)
async def http_verify_admin_password(request: Request):
    # password guessing is throttled like login
    identity = require_admin(request, WindowClass.LOGIN, "admin")
    body = await json_object(request)
    await request.app.state.user_admin.verify_admin_password(identity, body.get("password"), request)
    return AdminActionResponse(message="Password verified")


@router.post("/delete-all-addresses", response_model=AdminActionResponse)
async def http_delete_all_addresses(request: Request):
    identity = require_admin(request, WindowClass.CONTROL, "admin")
    body = await json_object(request)
    deleted = await request.app.state.user_admin.delete_all_addresses(
        identity, body.get("password"), request
    )
    return AdminActionResponse(message="All addresses deleted", deletedCount=deleted)
