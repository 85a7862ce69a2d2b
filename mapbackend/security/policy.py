# mapbackend/security/policy.py
"""
Static table access policy for the data proxy.

Every table the proxy may touch is listed here. For each one we know, as two
independent flags, whether SELECT is public and whether the store must be
called with the elevated (service-role) credential. Write rules are per
table and per method.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, FrozenSet, Iterable, Mapping, Optional

from mapbackend.security.auth import Identity, Role


class Method(str, Enum):
    SELECT = "SELECT"
    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"
    UPSERT = "UPSERT"

    @classmethod
    def parse(cls, value: Any) -> Optional["Method"]:
        if not isinstance(value, str):
            return None
        try:
            return cls(value.strip().upper())
        except ValueError:
            return None

    @property
    def is_write(self) -> bool:
        return self is not Method.SELECT


PRIVILEGED: FrozenSet[Role] = frozenset({Role.EDITOR, Role.ADMIN})
ADMIN_ONLY: FrozenSet[Role] = frozenset({Role.ADMIN})


@dataclass(frozen=True)
class TablePolicy:
    name: str
    public_select: bool = False
    elevated: bool = False
    # method -> roles allowed; a write method not listed only needs authentication
    write_roles: Mapping[Method, FrozenSet[Role]] = field(default_factory=dict)
    hidden_columns: FrozenSet[str] = frozenset()

    def is_public(self, method: Optional[Method]) -> bool:
        return self.public_select and method is Method.SELECT

    def allowed_roles(self, method: Method) -> Optional[FrozenSet[Role]]:
        return self.write_roles.get(method)


@dataclass(frozen=True)
class AccessDecision:
    authenticated: bool
    authorized: bool
    uses_elevated_credential: bool


TABLE_POLICIES: Dict[str, TablePolicy] = {
    p.name: p
    for p in (
        TablePolicy(
            "addresses",
            public_select=True,
            write_roles={
                Method.INSERT: PRIVILEGED,
                Method.UPDATE: PRIVILEGED,
                Method.UPSERT: PRIVILEGED,
                Method.DELETE: ADMIN_ONLY,
            },
        ),
        TablePolicy("main_categories", public_select=True, elevated=True),
        TablePolicy("sub_categories", public_select=True, elevated=True),
        TablePolicy(
            "users",
            elevated=True,
            write_roles={m: ADMIN_ONLY for m in Method if m.is_write},
            hidden_columns=frozenset({"password"}),
        ),
        TablePolicy("logs", elevated=True),
        TablePolicy("api_keys", elevated=True),
    )
}


class TableNotAllowed(ValueError):
    pass


def normalize_table_name(name: Any) -> str:
    if not isinstance(name, str):
        raise TableNotAllowed("table must be a string")
    # path traversal / schema-qualified names never reach the whitelist lookup
    if "/" in name or "\\" in name or ".." in name:
        raise TableNotAllowed(f"invalid table name: {name!r}")
    return name.strip().lower()


def get_table_policy(name: Any) -> TablePolicy:
    key = normalize_table_name(name)
    policy = TABLE_POLICIES.get(key)
    if policy is None:
        raise TableNotAllowed(f"table {name!r} is not allowed")
    return policy


def role_allows(policy: TablePolicy, method: Method, identity: Identity) -> bool:
    allowed = policy.allowed_roles(method)
    return allowed is None or identity.role in allowed


def decide(
    policy: TablePolicy, method: Optional[Method], identity: Optional[Identity]
) -> AccessDecision:
    """
    Rule order: whitelist (already passed to have a policy) -> public-read
    shortcut -> authentication -> role.
    """
    if policy.is_public(method):
        return AccessDecision(
            authenticated=identity is not None,
            authorized=True,
            uses_elevated_credential=policy.elevated,
        )
    if identity is None:
        return AccessDecision(False, False, policy.elevated)
    authorized = True
    if method is not None and method.is_write:
        authorized = role_allows(policy, method, identity)
    return AccessDecision(True, authorized, policy.elevated)


def strip_hidden(policy: TablePolicy, rows: Any) -> Any:
    """Remove hidden columns from a row or list of rows."""
    if not policy.hidden_columns:
        return rows
    if isinstance(rows, dict):
        return {k: v for k, v in rows.items() if k not in policy.hidden_columns}
    if isinstance(rows, list):
        return [strip_hidden(policy, r) for r in rows]
    return rows


def hidden_in(policy: TablePolicy, columns: Iterable[str]) -> Optional[str]:
    for c in columns:
        if c in policy.hidden_columns:
            return c
    return None
