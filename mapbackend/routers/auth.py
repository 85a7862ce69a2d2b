from __future__ import annotations

import asyncio
import logging

from fastapi import APIRouter, Request
from postgrest.exceptions import APIError

from mapbackend.logging_utils import log_security_event
from mapbackend.models.messages import LoginResponse, LoginUser
from mapbackend.proxy.endpoint import enforce_rate_limit
from mapbackend.proxy.errors import MalformedRequest, Unauthenticated
from mapbackend.security.auth import Role, dummy_password_hash, verify_password
from mapbackend.security.rate_limit import WindowClass
from mapbackend.security.sanitize import contains_markup, sanitize_string

router = APIRouter(prefix="/api/auth", tags=["auth"])
logger = logging.getLogger(__name__)

INVALID_LOGIN = "Invalid username or password"


def _lookup_user(clients, username: str) -> dict | None:
    try:
        res = (
            clients.elevated.table("users")
            .select("id, username, password, role, full_name")
            .eq("username", username)
            .single()
            .execute()
        )
    except APIError as e:
        # PGRST116: zero (or several) rows
        logger.info("login lookup returned no single user: %s", e.code)
        return None
    return res.data or None


@router.post("/login", response_model=LoginResponse)
async def http_login(request: Request):
    state = request.app.state
    enforce_rate_limit(
        state.rate_limiter,
        request,
        WindowClass.LOGIN,
        state.settings.trust_proxy_headers,
        message="Too many login attempts. Please try again later.",
        event="LOGIN_RATE_LIMIT_EXCEEDED",
    )

    try:
        body = await request.json()
    except ValueError:
        raise MalformedRequest("Invalid request format", event="INVALID_LOGIN_JSON")
    if not isinstance(body, dict):
        raise MalformedRequest("Invalid request format", event="INVALID_LOGIN_JSON")

    username = body.get("username")
    password = body.get("password")
    if not isinstance(username, str) or not isinstance(password, str):
        raise MalformedRequest("Invalid credential format", event="INVALID_LOGIN_CREDENTIALS")
    if not username.strip() or not password.strip():
        raise MalformedRequest(
            "Username and password are required", event="INVALID_LOGIN_CREDENTIALS"
        )
    if contains_markup(username) or contains_markup(password):
        raise MalformedRequest(
            "Invalid characters detected",
            event="INVALID_LOGIN_CREDENTIALS",
            log_details={"username": username[:10]},
        )

    # password is compared as sent; only the lookup key is cleaned
    clean_username = sanitize_string(username)
    user = await asyncio.to_thread(_lookup_user, state.clients, clean_username)
    if user is None:
        # same bcrypt cost as a wrong password
        await asyncio.to_thread(verify_password, password, dummy_password_hash())
        raise Unauthenticated(
            INVALID_LOGIN,
            event="FAILED_LOGIN_ATTEMPT",
            log_details={"username": clean_username, "reason": "user_not_found"},
        )

    stored = user.get("password") or ""
    ok = await asyncio.to_thread(verify_password, password, stored)
    role = Role.parse(user.get("role"))
    if not ok or role is None:
        raise Unauthenticated(
            INVALID_LOGIN,
            event="FAILED_LOGIN_ATTEMPT",
            log_details={
                "username": clean_username,
                "reason": "invalid_password" if not ok else "invalid_role",
            },
        )

    token = state.tokens.issue(user["id"], user["username"], role)
    log_security_event(
        "SUCCESSFUL_LOGIN",
        {"userId": user["id"], "username": user["username"], "role": role.value},
        request,
    )
    return LoginResponse(
        token=token,
        user=LoginUser(
            id=user["id"],
            username=user["username"],
            role=role.value,
            fullName=user.get("full_name") or user["username"],
        ),
    )
