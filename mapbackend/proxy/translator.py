# mapbackend/proxy/translator.py
from __future__ import annotations

import asyncio
import logging
import time
from datetime import datetime, timezone
from typing import Any, Dict, List

from postgrest.exceptions import APIError
from postgrest.types import CountMethod

from mapbackend.proxy.descriptor import FilterOperator, RequestDescriptor, SelectClause
from mapbackend.proxy.errors import (
    MalformedRequest,
    StoreOperationFailed,
    UnsupportedMethod,
)
from mapbackend.security.policy import (
    Method,
    TablePolicy,
    get_table_policy,
    hidden_in,
    strip_hidden,
)

logger = logging.getLogger("proxy.query")

SINGLE_ROW_CODE = "PGRST116"


def _log_event(action: str, d: RequestDescriptor, extra: Dict[str, Any]) -> None:
    payload = {
        "action": action,
        "table": d.table,
        "method": d.method.value,
        **(extra or {}),
    }
    logger.info("proxy.query", extra={"event": payload})


def apply_filters(q, d: RequestDescriptor):
    for f in d.filters:
        if f.operator is FilterOperator.IN:
            q = q.in_(f.column, f.value)
        else:
            q = getattr(q, f.operator.value)(f.column, f.value)
    return q


def _project_rows(rows: List[dict], select: SelectClause) -> List[dict]:
    if not rows or select.star or not select.projection:
        return rows
    return [{out: r.get(src) for out, src in select.projection} for r in rows]


def _scrub(value: Any, keyed: Dict[str, TablePolicy]) -> Any:
    """Strip hidden columns inside embedded relation payloads, at any depth."""
    if isinstance(value, list):
        return [_scrub(v, keyed) for v in value]
    if isinstance(value, dict):
        out = {}
        for k, v in value.items():
            if k in keyed:
                v = strip_hidden(keyed[k], v)
            out[k] = _scrub(v, keyed)
        return out
    return value


class QueryTranslator:
    """
    Turns one validated RequestDescriptor into one store operation. A SELECT
    is one ranged read over its window; a write echo with embedded relations
    is re-read by id.

    The supabase-py builder is synchronous; execute() runs in a worker thread.
    """

    def __init__(self, clients):
        self.clients = clients

    async def execute(self, d: RequestDescriptor, *, elevated: bool) -> Dict[str, Any]:
        handler = {
            Method.SELECT: self._select,
            Method.INSERT: self._insert,
            Method.UPSERT: self._insert,
            Method.UPDATE: self._update,
            Method.DELETE: self._delete,
        }.get(d.method)
        if handler is None:
            raise UnsupportedMethod(f"Invalid method: {d.method}")

        policy = get_table_policy(d.table)
        self._check_hidden_usage(policy, d)

        client = self.clients.for_credential(elevated)
        started = time.perf_counter()
        data, count, status = await handler(client, d)
        data = self._strip(policy, d.select, data)

        rows = len(data) if isinstance(data, list) else (0 if data is None else 1)
        _log_event(
            "ok",
            d,
            {
                "rows": rows,
                "elevated": elevated,
                "latency_ms": int((time.perf_counter() - started) * 1000),
            },
        )
        return {"data": data, "count": count, "status": status}

    # ------------------------------------------------------------------
    # plumbing
    # ------------------------------------------------------------------
    async def _run(self, builder, d: RequestDescriptor):
        return await asyncio.to_thread(self._exec, builder, d)

    @staticmethod
    def _exec(builder, d: RequestDescriptor):
        try:
            return builder.execute()
        except APIError as e:
            code = str(e.code) if e.code else None
            _log_event(
                "store_error",
                d,
                {
                    "code": code,
                    "message": e.message,
                    "timestamp": datetime.now(timezone.utc).isoformat(),
                },
            )
            if code == SINGLE_ROW_CODE:
                raise StoreOperationFailed(
                    "Expected exactly one row",
                    details=e.details,
                    hint=e.hint,
                    code="SINGLE_ROW_EXPECTED",
                )
            raise StoreOperationFailed(
                e.message or "Database operation failed",
                details=e.details,
                hint=e.hint,
                code=code,
            )

    @staticmethod
    def _check_hidden_usage(policy: TablePolicy, d: RequestDescriptor) -> None:
        """Filter/order keys are ``column`` or ``relation.column`` of an embedded relation."""
        scopes: Dict[str, TablePolicy] = {}
        for rel in d.select.relations:
            rel_policy = get_table_policy(rel.relation)
            scopes[rel.relation] = rel_policy
            if rel.alias:
                scopes[rel.alias] = rel_policy

        for key in d.filter_columns + d.order_columns:
            prefix, _, column = key.rpartition(".")
            if not prefix:
                scope = policy
            elif prefix in scopes:
                scope = scopes[prefix]
            else:
                raise MalformedRequest(f"'{key}' does not refer to an embedded relation")
            if hidden_in(scope, [column]):
                raise MalformedRequest(f"column '{key}' cannot be used in filter or orderBy")

    @staticmethod
    def _strip(policy: TablePolicy, select: SelectClause, data: Any) -> Any:
        data = strip_hidden(policy, data)
        keyed: Dict[str, TablePolicy] = {}
        for rel in select.relations:
            rel_policy = get_table_policy(rel.relation)
            if rel_policy.hidden_columns:
                keyed[rel.alias or rel.relation] = rel_policy
        return _scrub(data, keyed) if keyed else data

    @staticmethod
    def _require_filter(d: RequestDescriptor) -> None:
        if not d.filters:
            raise MalformedRequest(
                f"Filters are required for {d.method.value} operations for security"
            )

    # ------------------------------------------------------------------
    # operations
    # ------------------------------------------------------------------
    def _select_builder(self, client, d: RequestDescriptor):
        count = CountMethod(d.count) if d.count else None
        q = client.table(d.table).select(d.select.text, count=count)
        q = apply_filters(q, d)
        for o in d.order:
            q = q.order(o.column, desc=not o.ascending)
        return q

    async def _select(self, client, d: RequestDescriptor):
        if d.single:
            res = await self._run(self._select_builder(client, d).single(), d)
            return res.data, getattr(res, "count", None), 200

        q = self._select_builder(client, d).range(d.page.start, d.page.end)
        res = await self._run(q, d)
        return res.data or [], getattr(res, "count", None), 200

    async def _insert(self, client, d: RequestDescriptor):
        data = d.data
        if isinstance(data, list):
            if not data or not all(isinstance(r, dict) for r in data):
                raise MalformedRequest(
                    f"Data for {d.method.value} must be an object or a non-empty array of objects"
                )
        elif not isinstance(data, dict) or not data:
            raise MalformedRequest(f"Data is required for {d.method.value}")

        tbl = client.table(d.table)
        if d.method is Method.UPSERT:
            kwargs = {"on_conflict": d.on_conflict} if d.on_conflict else {}
            q = tbl.upsert(data, **kwargs)
        else:
            q = tbl.insert(data)
        res = await self._run(q, d)
        return await self._echo(client, d, res.data or []), getattr(res, "count", None), 201

    async def _update(self, client, d: RequestDescriptor):
        if not isinstance(d.data, dict) or not d.data:
            raise MalformedRequest("Data is required for UPDATE")
        self._require_filter(d)
        q = apply_filters(client.table(d.table).update(d.data), d)
        res = await self._run(q, d)
        return await self._echo(client, d, res.data or []), getattr(res, "count", None), 200

    async def _delete(self, client, d: RequestDescriptor):
        if d.data is not None:
            raise MalformedRequest("Data is not accepted for DELETE")
        if d.select.has_embedded:
            raise MalformedRequest("Embedded relations are not supported for DELETE")
        self._require_filter(d)
        q = apply_filters(client.table(d.table).delete(), d)
        res = await self._run(q, d)
        return _project_rows(res.data or [], d.select), getattr(res, "count", None), 200

    async def _echo(self, client, d: RequestDescriptor, rows: List[dict]) -> List[dict]:
        """Shape written rows like a SELECT with the requested clause."""
        if not d.select_given or not d.select.has_embedded:
            return _project_rows(rows, d.select)
        ids = [r.get("id") for r in rows if r.get("id") is not None]
        if not ids:
            return _project_rows(rows, d.select)
        q = client.table(d.table).select(d.select.text).in_("id", ids)
        res = await self._run(q, d)
        by_id = {r.get("id"): r for r in (res.data or []) if r.get("id") is not None}
        return [by_id[i] for i in ids if i in by_id]
