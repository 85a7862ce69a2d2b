# mapbackend/services/user_admin.py
"""
Admin-only account management over the ``users`` table, plus the two
dangerous admin actions (password re-verification and wiping ``addresses``).

Every call runs with the elevated store client and starts by re-reading the
caller's role from the store by id; a token minted before a demotion is not
enough. Mutations leave an audit row in ``logs``.
"""
from __future__ import annotations

import asyncio
import logging
import re
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from postgrest.exceptions import APIError
from postgrest.types import CountMethod
from starlette.requests import Request

from mapbackend.logging_utils import log_security_event
from mapbackend.proxy.descriptor import free_text
from mapbackend.proxy.errors import (
    Conflict,
    MalformedRequest,
    NotFound,
    StoreOperationFailed,
    Unauthenticated,
    Unauthorized,
)
from mapbackend.security.auth import (
    Identity,
    Role,
    hash_password,
    password_problems,
    verify_password,
)
from mapbackend.tools.create_user import build_user_row

logger = logging.getLogger(__name__)

USER_COLUMNS = "id, username, full_name, role, city, created_at, updated_at"
# admins are provisioned with the CLI only
ASSIGNABLE_ROLES = (Role.NORMAL.value, Role.EDITOR.value)
_USERNAME_RE = re.compile(r"^[A-Za-z0-9_]+$")


def user_out(row: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": row.get("id"),
        "username": row.get("username"),
        "fullName": row.get("full_name"),
        "role": row.get("role"),
        "city": row.get("city"),
        "createdAt": row.get("created_at"),
        "updatedAt": row.get("updated_at"),
    }


def _text(body: Dict[str, Any], key: str, label: str, min_len: int) -> str:
    value = body.get(key)
    if not isinstance(value, str) or len(value.strip()) < min_len:
        raise MalformedRequest(f"{label} must be at least {min_len} characters")
    return free_text(value.strip(), key)


def validate_user_fields(body: Dict[str, Any]) -> Dict[str, str]:
    """Checks shared by create and update; returns the cleaned store columns."""
    username = _text(body, "username", "username", 3)
    if not _USERNAME_RE.match(username):
        raise MalformedRequest("username may contain only letters, digits and underscores")
    role = body.get("role")
    if role not in ASSIGNABLE_ROLES:
        raise MalformedRequest("role must be normal or editor")
    return {
        "username": username,
        "full_name": _text(body, "fullName", "fullName", 2),
        "role": role,
        "city": _text(body, "city", "city", 2),
    }


class UserAdminService:
    def __init__(self, clients):
        self.clients = clients

    # ------------------------------------------------------------------
    # plumbing
    # ------------------------------------------------------------------
    async def _run(self, builder):
        return await asyncio.to_thread(self._exec, builder)

    @staticmethod
    def _exec(builder):
        try:
            return builder.execute()
        except APIError as e:
            logger.warning("user admin store error: %s (%s)", e.message, e.code)
            raise StoreOperationFailed(
                e.message or "Database operation failed",
                details=e.details,
                hint=e.hint,
                code=str(e.code) if e.code else None,
            )

    def _users(self):
        return self.clients.elevated.table("users")

    async def _find(self, column: str, value: Any, columns: str) -> Optional[Dict[str, Any]]:
        res = await self._run(self._users().select(columns).eq(column, value).limit(1))
        rows = res.data or []
        return rows[0] if rows else None

    async def _audit(
        self, identity: Identity, action: str, details: str, request: Optional[Request]
    ) -> None:
        row = {
            "user_id": identity.user_id,
            "username": identity.username,
            "action": action,
            "details": details,
            "user_agent": request.headers.get("user-agent") if request is not None else None,
        }
        try:
            await asyncio.to_thread(
                self.clients.elevated.table("logs").insert(row).execute
            )
        except APIError as e:
            # audit rows are best effort
            logger.warning("audit write failed for %s: %s", action, e.message)

    async def require_admin(self, identity: Identity) -> Dict[str, Any]:
        row = await self._find("id", identity.user_id, "id, username, role")
        if row is None or row.get("role") != Role.ADMIN.value:
            raise Unauthorized(
                "Access denied: admin role required",
                log_details={"user": identity.username, "reason": "store_role_mismatch"},
            )
        return row

    # ------------------------------------------------------------------
    # users
    # ------------------------------------------------------------------
    async def list_users(self, identity: Identity) -> List[Dict[str, Any]]:
        await self.require_admin(identity)
        res = await self._run(self._users().select(USER_COLUMNS).order("created_at", desc=True))
        return [user_out(r) for r in res.data or []]

    async def create_user(
        self, identity: Identity, body: Dict[str, Any], request: Optional[Request] = None
    ) -> Dict[str, Any]:
        await self.require_admin(identity)
        fields = validate_user_fields(body)
        password = body.get("password")
        if not isinstance(password, str):
            raise MalformedRequest("password is required")
        problems = password_problems(password)
        if problems:
            raise MalformedRequest("password needs " + ", ".join(problems))

        if await self._find("username", fields["username"], "id") is not None:
            raise Conflict("username is already taken")

        hashed = await asyncio.to_thread(hash_password, password)
        row = build_user_row(fields["username"], hashed, Role(fields["role"]), fields["full_name"])
        row["city"] = fields["city"]
        res = await self._run(self._users().insert(row))
        created = (res.data or [row])[0]

        await self._audit(
            identity,
            "USER_CREATED",
            f"Admin created new user: {fields['username']} ({fields['role']}) in {fields['city']}",
            request,
        )
        return user_out(created)

    async def update_user(
        self,
        identity: Identity,
        user_id: str,
        body: Dict[str, Any],
        request: Optional[Request] = None,
    ) -> Dict[str, Any]:
        await self.require_admin(identity)
        fields = validate_user_fields(body)
        fields["username"] = fields["username"].lower()

        target = await self._find("id", user_id, "id, username, role")
        if target is None:
            raise NotFound("User not found")
        if target.get("role") == Role.ADMIN.value:
            raise Unauthorized("Admin users cannot be edited", log_details={"target": user_id})

        if fields["username"] != target.get("username"):
            if await self._find("username", fields["username"], "id") is not None:
                raise Conflict("username is already taken")

        changes = {**fields, "updated_at": datetime.now(timezone.utc).isoformat()}
        res = await self._run(self._users().update(changes).eq("id", user_id))
        updated = (res.data or [{**target, **changes}])[0]

        await self._audit(
            identity,
            "USER_UPDATED",
            f"Admin updated user: {target.get('username')} -> username: {fields['username']}, "
            f"role: {fields['role']}, city: {fields['city']}",
            request,
        )
        return user_out(updated)

    async def delete_user(
        self, identity: Identity, user_id: str, request: Optional[Request] = None
    ) -> None:
        await self.require_admin(identity)
        target = await self._find("id", user_id, "id, username, full_name, role")
        if target is None:
            raise NotFound("User not found")
        if target.get("role") == Role.ADMIN.value:
            raise Unauthorized("Admin users cannot be deleted", log_details={"target": user_id})
        if str(target.get("id")) == str(identity.user_id):
            raise Unauthorized("You cannot delete your own account")

        await self._run(self._users().delete().eq("id", user_id))
        await self._audit(
            identity,
            "USER_DELETED",
            f"Admin deleted user: {target.get('username')} ({target.get('full_name')})",
            request,
        )

    # ------------------------------------------------------------------
    # admin actions
    # ------------------------------------------------------------------
    async def verify_admin_password(
        self, identity: Identity, password: Any, request: Optional[Request] = None
    ) -> None:
        if not isinstance(password, str) or not password:
            raise MalformedRequest("password is required")
        row = await self._find("id", identity.user_id, "id, username, password, role")
        if row is None or row.get("role") != Role.ADMIN.value:
            raise Unauthorized(
                "Admin user not found",
                event="FAILED_ADMIN_VERIFICATION",
                log_details={"userId": identity.user_id, "reason": "admin_user_not_found"},
            )
        ok = await asyncio.to_thread(verify_password, password, row.get("password") or "")
        if not ok:
            raise Unauthenticated(
                "Invalid password",
                event="FAILED_ADMIN_PASSWORD_VERIFICATION",
                log_details={"userId": identity.user_id, "username": row.get("username")},
            )
        log_security_event(
            "SUCCESSFUL_ADMIN_VERIFICATION",
            {"userId": identity.user_id, "username": row.get("username")},
            request,
        )

    async def delete_all_addresses(
        self, identity: Identity, password: Any, request: Optional[Request] = None
    ) -> int:
        await self.verify_admin_password(identity, password, request)
        addresses = self.clients.elevated.table("addresses")
        counted = await self._run(addresses.select("id", count=CountMethod.exact).limit(1))
        deleted = counted.count or 0

        # PostgREST refuses an unfiltered DELETE; every row has an id
        await self._run(self.clients.elevated.table("addresses").delete().not_.is_("id", "null"))
        log_security_event(
            "ADMIN_DELETE_ALL_ADDRESSES",
            {
                "adminUserId": identity.user_id,
                "adminUsername": identity.username,
                "deletedCount": deleted,
            },
            request,
        )
        return deleted
