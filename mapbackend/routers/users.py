from __future__ import annotations

from fastapi import APIRouter, Request

from mapbackend.models.messages import UserListResponse, UserRecord, UserResponse
from mapbackend.proxy.endpoint import json_object, require_admin
from mapbackend.security.rate_limit import WindowClass

router = APIRouter(prefix="/api/users", tags=["users"])


@router.get("", response_model=UserListResponse)
async def http_list_users(request: Request):
    identity = require_admin(request, WindowClass.API, "users")
    users = await request.app.state.user_admin.list_users(identity)
    return UserListResponse(users=[UserRecord(**u) for u in users])


@router.post("", response_model=UserResponse, status_code=201)
async def http_create_user(request: Request):
    identity = require_admin(request, WindowClass.API, "users")
    body = await json_object(request)
    user = await request.app.state.user_admin.create_user(identity, body, request)
    return UserResponse(message="User created", user=UserRecord(**user))


@router.put("/{user_id}", response_model=UserResponse)
async def http_update_user(user_id: str, request: Request):
    identity = require_admin(request, WindowClass.API, "users")
    body = await json_object(request)
    user = await request.app.state.user_admin.update_user(identity, user_id, body, request)
    return UserResponse(message="User updated", user=UserRecord(**user))


@router.delete("/{user_id}", response_model=UserResponse, response_model_exclude_none=True)
async def http_delete_user(user_id: str, request: Request):
    identity = require_admin(request, WindowClass.API, "users")
    await request.app.state.user_admin.delete_user(identity, user_id, request)
    return UserResponse(message="User deleted")
