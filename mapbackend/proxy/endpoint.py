# mapbackend/proxy/endpoint.py
"""
Request orchestration for the data proxy.

POST runs the stages strictly in this order; the first failing stage ends
the request with its classified error:

    rate limit -> parse JSON -> table presence/type -> table whitelist
    -> public-read eligibility -> sanitize table name -> authenticate
    -> authorize role (writes) -> method presence -> execution credential
    -> translate & execute -> normalize

GET is the read-only variant (table + select from the query string).
"""
from __future__ import annotations

from typing import Any, Dict, Optional, Tuple

from starlette.requests import Request

from mapbackend.proxy.descriptor import (
    MAX_ROWS,
    PageRange,
    RequestDescriptor,
    SelectClause,
    build_descriptor,
    identifier,
    parse_select,
)
from mapbackend.proxy.errors import (
    InvalidTable,
    MalformedRequest,
    RateLimitExceeded,
    Unauthenticated,
    Unauthorized,
    UnsupportedMethod,
)
from mapbackend.proxy.translator import QueryTranslator
from mapbackend.security.auth import Identity, Role, TokenService, extract_bearer
from mapbackend.security.policy import (
    Method,
    TableNotAllowed,
    TablePolicy,
    decide,
    get_table_policy,
)
from mapbackend.security.rate_limit import (
    FixedWindowRateLimiter,
    RateLimitDecision,
    WindowClass,
    client_key_from_headers,
)


def resolve_client_key(request: Request, trust_proxy: bool = True) -> str:
    key = getattr(request.state, "client_key", None)
    if key:
        return key
    peer = request.client.host if request.client else None
    key = client_key_from_headers(request.headers, fallback=peer, trust_proxy=trust_proxy)
    request.state.client_key = key
    return key


def enforce_rate_limit(
    limiter: FixedWindowRateLimiter,
    request: Request,
    window_class: WindowClass,
    trust_proxy: bool = True,
    message: str = "Too many requests, please try again later",
    event: str | None = None,
) -> RateLimitDecision:
    decision = limiter.check(resolve_client_key(request, trust_proxy), window_class)
    if not decision.allowed:
        raise RateLimitExceeded(
            message,
            event=event,
            headers=decision.headers(),
            log_details={"window": window_class.value, "limit": decision.limit},
        )
    return decision


def authenticate(tokens: TokenService, request: Request, table: str) -> Identity:
    token = extract_bearer(request.headers.get("authorization"))
    if token is None:
        raise Unauthenticated(
            "Authentication required", log_details={"table": table, "reason": "missing"}
        )
    identity = tokens.verify(token)
    if identity is None:
        raise Unauthenticated(
            "Invalid or expired token", log_details={"table": table, "reason": "invalid"}
        )
    request.state.identity = identity
    return identity


def require_admin(
    request: Request, window_class: WindowClass = WindowClass.CONTROL, resource: str = "admin"
) -> Identity:
    """Rate limit, authenticate and demand the admin role, for the control and user routes."""
    state = request.app.state
    enforce_rate_limit(
        state.rate_limiter, request, window_class, state.settings.trust_proxy_headers
    )
    identity = authenticate(state.tokens, request, resource)
    if identity.role is not Role.ADMIN:
        raise Unauthorized(
            "Access denied: admin role required",
            log_details={"user": identity.username, "role": identity.role.value},
        )
    return identity


async def json_object(request: Request) -> Dict[str, Any]:
    try:
        body = await request.json()
    except ValueError:
        raise MalformedRequest("Invalid JSON body")
    if not isinstance(body, dict):
        raise MalformedRequest("Request body must be a JSON object")
    return body


class ProxyEndpoint:
    def __init__(
        self,
        *,
        rate_limiter: FixedWindowRateLimiter,
        tokens: TokenService,
        translator: QueryTranslator,
        trust_proxy: bool = True,
    ):
        self.rate_limiter = rate_limiter
        self.tokens = tokens
        self.translator = translator
        self.trust_proxy = trust_proxy

    # ------------------------------------------------------------------
    # stages shared by POST and GET
    # ------------------------------------------------------------------
    @staticmethod
    def _whitelisted(table: Any) -> TablePolicy:
        try:
            return get_table_policy(table)
        except TableNotAllowed:
            raise InvalidTable(
                f"Invalid table name: {table}", log_details={"table": str(table)[:200]}
            )

    @staticmethod
    def _relation_policies(select: SelectClause) -> list[TablePolicy]:
        return [get_table_policy(r.relation) for r in select.relations]

    def _public(
        self, policy: TablePolicy, method: Optional[Method], select: SelectClause
    ) -> bool:
        if not policy.is_public(method):
            return False
        # embedded relations are SELECTs on their own tables
        return all(p.is_public(Method.SELECT) for p in self._relation_policies(select))

    def _elevated(self, policy: TablePolicy, select: SelectClause) -> bool:
        return policy.elevated or any(p.elevated for p in self._relation_policies(select))

    def _authorize(
        self, policy: TablePolicy, method: Optional[Method], identity: Optional[Identity]
    ) -> None:
        if method is None or identity is None:
            return
        if not decide(policy, method, identity).authorized:
            raise Unauthorized(
                f"Insufficient permissions for {method.value} on {policy.name}",
                log_details={
                    "table": policy.name,
                    "method": method.value,
                    "role": identity.role.value,
                    "user": identity.username,
                },
            )

    @staticmethod
    def _parse_method(raw: Any) -> Optional[Method]:
        if raw is None or (isinstance(raw, str) and not raw.strip()):
            return None
        method = Method.parse(raw)
        if method is None:
            raise UnsupportedMethod(
                f"Invalid method: {raw}", log_details={"method": str(raw)[:50]}
            )
        return method

    # ------------------------------------------------------------------
    # POST /api/supabase
    # ------------------------------------------------------------------
    async def handle_post(self, request: Request) -> Tuple[Dict[str, Any], RateLimitDecision]:
        decision = enforce_rate_limit(
            self.rate_limiter, request, WindowClass.API, self.trust_proxy
        )

        try:
            body = await request.json()
        except ValueError:
            raise MalformedRequest("Invalid JSON body")
        if not isinstance(body, dict):
            raise MalformedRequest("Request body must be a JSON object")

        table = body.get("table")
        if not table or not isinstance(table, str):
            raise MalformedRequest("Table and method are required")

        policy = self._whitelisted(table)

        raw_method = body.get("method")
        method = Method.parse(raw_method)
        select = parse_select(body.get("select"), policy.name)
        public = self._public(policy, method, select)

        table_name = identifier(policy.name, "table")

        identity: Optional[Identity] = None
        if not public:
            identity = authenticate(self.tokens, request, table_name)

        self._authorize(policy, method, identity)

        method = self._parse_method(raw_method)
        if method is None:
            raise MalformedRequest("Table and method are required")

        elevated = self._elevated(policy, select)

        descriptor = build_descriptor(table_name, method, body)
        result = await self.translator.execute(descriptor, elevated=elevated)
        return result, decision

    # ------------------------------------------------------------------
    # GET /api/supabase?table=&select=
    # ------------------------------------------------------------------
    async def handle_get(
        self, request: Request, table: Optional[str], select_raw: Optional[str]
    ) -> Tuple[Dict[str, Any], RateLimitDecision]:
        decision = enforce_rate_limit(
            self.rate_limiter, request, WindowClass.API, self.trust_proxy
        )
        if not table:
            raise MalformedRequest("Table parameter is required")

        policy = self._whitelisted(table)
        select = parse_select(select_raw, policy.name)
        table_name = identifier(policy.name, "table")

        if not self._public(policy, Method.SELECT, select):
            authenticate(self.tokens, request, table_name)

        descriptor = RequestDescriptor(
            table=table_name,
            method=Method.SELECT,
            select=select,
            select_given=bool(select_raw),
            page=PageRange(0, MAX_ROWS - 1),
        )
        result = await self.translator.execute(
            descriptor, elevated=self._elevated(policy, select)
        )
        return result, decision
