# mapbackend/proxy/descriptor.py
"""
Parsing of the declarative request body into a validated RequestDescriptor.

Every identifier (filter keys, order columns, select items, onConflict) goes
through ``sanitize_sql``; every string value (filter values, write payloads)
through ``sanitize_string``. Anything that does not fit the shapes below is a
MalformedRequest.

    filter:  {"status": "ok"}                                   -> eq
             {"name": {"operator": "ilike", "value": "%kafe%"}} -> ilike
             {"id": {"operator": "in", "value": [1, 2, 3]}}      -> in
    orderBy: {"column": "created_at", "ascending": false} | [ ... ]
    range:   {"from": 0, "to": 99}
    select:  "*, main_category:main_categories(id,name)"
"""
from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple, Union

from mapbackend.proxy.errors import (
    InvalidTable,
    MaliciousIdentifier,
    MaliciousInput,
    MalformedRequest,
)
from mapbackend.security.policy import Method, TableNotAllowed, TablePolicy, get_table_policy
from mapbackend.security.sanitize import (
    MaliciousInputError,
    MaliciousSQLError,
    sanitize_data,
    sanitize_sql,
    sanitize_string,
)

MAX_ROWS = 50000
_ALLOWED_COUNTS = {"exact", "planned", "estimated"}
_IDENT_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


class FilterOperator(str, Enum):
    EQ = "eq"
    ILIKE = "ilike"
    GT = "gt"
    LT = "lt"
    GTE = "gte"
    LTE = "lte"
    IN = "in"


Scalar = Union[str, int, float, bool]


@dataclass(frozen=True)
class LiteralFilter:
    column: str
    value: Scalar

    @property
    def operator(self) -> FilterOperator:
        return FilterOperator.EQ


@dataclass(frozen=True)
class OperatorFilter:
    column: str
    operator: FilterOperator
    value: Any  # list for IN, scalar otherwise


Filter = Union[LiteralFilter, OperatorFilter]


@dataclass(frozen=True)
class OrderSpec:
    column: str
    ascending: bool = True


@dataclass(frozen=True)
class PageRange:
    start: int
    end: int


@dataclass(frozen=True)
class EmbeddedRelation:
    relation: str
    alias: Optional[str] = None
    hint: Optional[str] = None


@dataclass(frozen=True)
class SelectClause:
    text: str
    # top-level (output name, source column) pairs
    projection: List[Tuple[str, str]] = field(default_factory=list)
    relations: List[EmbeddedRelation] = field(default_factory=list)  # nested too
    star: bool = False

    @property
    def has_embedded(self) -> bool:
        return bool(self.relations)


DEFAULT_SELECT = SelectClause(text="*", star=True)


@dataclass
class RequestDescriptor:
    table: str
    method: Method
    data: Any = None
    filters: List[Filter] = field(default_factory=list)
    select: SelectClause = DEFAULT_SELECT
    select_given: bool = False
    order: List[OrderSpec] = field(default_factory=list)
    page: Optional[PageRange] = None
    single: bool = False
    count: Optional[str] = None
    on_conflict: Optional[str] = None

    @property
    def filter_columns(self) -> List[str]:
        return [f.column for f in self.filters]

    @property
    def order_columns(self) -> List[str]:
        return [o.column for o in self.order]


# ---------------------------------------------------------------------------
# sanitizer adapters
# ---------------------------------------------------------------------------


def identifier(value: Any, what: str = "identifier") -> str:
    if not isinstance(value, str) or not value.strip():
        raise MalformedRequest(f"{what} must be a non-empty string")
    try:
        return sanitize_sql(value)
    except MaliciousSQLError:
        raise MaliciousIdentifier(log_details={"field": what, "value": value[:200]})


def free_text(value: str, what: str = "value") -> str:
    try:
        return sanitize_string(value)
    except MaliciousInputError:
        raise MaliciousInput(log_details={"field": what, "value": value[:200]})


def column_ref(value: Any, what: str) -> str:
    """``column`` or ``relation.column``, each part a plain identifier."""
    name = identifier(value, what).strip()
    parts = name.split(".")
    if len(parts) > 2 or not all(_IDENT_RE.match(p) for p in parts):
        raise MalformedRequest(f"{what} '{name}' must be a column or relation.column")
    return name


def _scalar(value: Any, what: str) -> Scalar:
    if isinstance(value, str):
        return free_text(value, what)
    if isinstance(value, (bool, int, float)):
        return value
    raise MalformedRequest(f"{what} must be a string, number or boolean")


def payload_data(value: Any) -> Any:
    try:
        return sanitize_data(value)
    except MaliciousInputError:
        raise MaliciousInput(log_details={"field": "data"})


# ---------------------------------------------------------------------------
# filter / order / pagination
# ---------------------------------------------------------------------------


def parse_filters(raw: Any) -> List[Filter]:
    if raw is None:
        return []
    if not isinstance(raw, dict):
        raise MalformedRequest("filter must be an object")

    out: List[Filter] = []
    for key, value in raw.items():
        column = column_ref(key, "filter key")
        if value is None:
            continue
        if isinstance(value, dict):
            f = _operator_filter(column, value)
            if f is not None:
                out.append(f)
            continue
        if isinstance(value, list):
            raise MalformedRequest(
                f"filter '{column}': use {{\"operator\": \"in\", \"value\": [...]}} for lists"
            )
        out.append(LiteralFilter(column, _scalar(value, f"filter '{column}'")))
    return out


def _operator_filter(column: str, spec: Dict[str, Any]) -> Optional[OperatorFilter]:
    raw_op = spec.get("operator")
    if not isinstance(raw_op, str):
        raise MalformedRequest(f"filter '{column}': operator is required")
    try:
        op = FilterOperator(raw_op.strip().lower())
    except ValueError:
        raise MalformedRequest(f"filter '{column}': unknown operator '{raw_op}'")

    value = spec.get("value")
    if value is None:
        return None
    if op is FilterOperator.IN:
        if not isinstance(value, list):
            raise MalformedRequest(f"filter '{column}': 'in' requires an array value")
        items = [_scalar(v, f"filter '{column}'") for v in value if v is not None]
        return OperatorFilter(column, op, items)
    return OperatorFilter(column, op, _scalar(value, f"filter '{column}'"))


def parse_order(raw: Any) -> List[OrderSpec]:
    if raw is None:
        return []
    items = raw if isinstance(raw, list) else [raw]
    out: List[OrderSpec] = []
    for it in items:
        if not isinstance(it, dict):
            raise MalformedRequest("orderBy entries must be objects with a column")
        column = column_ref(it.get("column"), "orderBy column")
        ascending = it.get("ascending", True)
        if ascending is None:
            ascending = True
        if not isinstance(ascending, bool):
            raise MalformedRequest("orderBy.ascending must be a boolean")
        out.append(OrderSpec(column, ascending))
    return out


def _int(value: Any, what: str) -> int:
    # bool is an int subclass; reject it explicitly
    if isinstance(value, bool) or not isinstance(value, int):
        raise MalformedRequest(f"{what} must be an integer")
    return value


def resolve_page(limit: Any = None, range_: Any = None) -> PageRange:
    """
    Explicit range wins (span capped at MAX_ROWS), else limit -> [0, n-1],
    else the full [0, MAX_ROWS-1] window.
    """
    if range_ is not None:
        if not isinstance(range_, dict):
            raise MalformedRequest("range must be an object with from/to")
        start = _int(range_.get("from"), "range.from")
        end = _int(range_.get("to"), "range.to")
        if start < 0 or end < start:
            raise MalformedRequest("range must satisfy 0 <= from <= to")
        return PageRange(start, min(end, start + MAX_ROWS - 1))
    if limit is not None:
        n = max(1, min(_int(limit, "limit"), MAX_ROWS))
        return PageRange(0, n - 1)
    return PageRange(0, MAX_ROWS - 1)


def parse_count(raw: Any) -> Optional[str]:
    if raw is None:
        return None
    if not isinstance(raw, str) or raw.strip().lower() not in _ALLOWED_COUNTS:
        raise MalformedRequest("count must be one of exact|planned|estimated")
    return raw.strip().lower()


def parse_on_conflict(raw: Any) -> Optional[str]:
    if raw is None:
        return None
    if isinstance(raw, list):
        raw = ",".join(str(c) for c in raw)
    cols = [identifier(c.strip(), "onConflict") for c in str(raw).split(",") if c.strip()]
    for c in cols:
        if not _IDENT_RE.match(c):
            raise MalformedRequest(f"onConflict column '{c}' is not a plain column name")
    return ",".join(cols) or None


# ---------------------------------------------------------------------------
# select clause grammar
# ---------------------------------------------------------------------------


def _split_top_level(clause: str) -> List[str]:
    parts: List[str] = []
    depth = 0
    buf: List[str] = []
    for ch in clause:
        if ch == "(":
            depth += 1
        elif ch == ")":
            depth -= 1
            if depth < 0:
                raise MalformedRequest("select: unbalanced parentheses")
        if ch == "," and depth == 0:
            parts.append("".join(buf))
            buf = []
        else:
            buf.append(ch)
    if depth != 0:
        raise MalformedRequest("select: unbalanced parentheses")
    parts.append("".join(buf))
    return [p.strip() for p in parts]


def _plain_name(name: str, what: str) -> str:
    name = name.strip()
    if not _IDENT_RE.match(name):
        raise MalformedRequest(f"select: invalid {what} '{name}'")
    return name


def _visible_column(name: str, scope: Optional[TablePolicy]) -> str:
    col = _plain_name(name, "column")
    if scope is not None and col in scope.hidden_columns:
        raise MalformedRequest(
            f"select: column '{col}' of {scope.name} cannot be selected",
            log_details={"table": scope.name, "column": col},
        )
    return col


def _parse_items(
    clause: str,
    projection: List[Tuple[str, str]],
    relations: List[EmbeddedRelation],
    depth: int,
    scope: Optional[TablePolicy] = None,
) -> tuple[str, bool]:
    rendered: List[str] = []
    star = False
    for item in _split_top_level(clause):
        if not item:
            raise MalformedRequest("select: empty item")
        if item == "*":
            star = True
            rendered.append("*")
            continue

        if "(" in item:
            if not item.endswith(")"):
                raise MalformedRequest(f"select: invalid embedded item '{item}'")
            head, inner = item[:-1].split("(", 1)
            alias = None
            if ":" in head:
                alias_raw, head = head.split(":", 1)
                alias = _plain_name(alias_raw, "alias")
            hint = None
            if "!" in head:
                head, hint_raw = head.split("!", 1)
                hint = _plain_name(hint_raw, "relation hint")
            relation = _plain_name(head, "relation")
            try:
                rel_policy = get_table_policy(relation)
            except TableNotAllowed:
                raise InvalidTable(
                    f"Invalid table name: {relation}",
                    log_details={"embedded_relation": relation},
                )
            relation = rel_policy.name
            relations.append(EmbeddedRelation(relation, alias, hint))
            inner_text, _ = _parse_items(inner, [], relations, depth + 1, rel_policy)
            seg = relation if hint is None else f"{relation}!{hint}"
            if alias:
                seg = f"{alias}:{seg}"
            rendered.append(f"{seg}({inner_text})")
            continue

        if ":" in item:
            alias_raw, col_raw = item.split(":", 1)
            alias = _plain_name(alias_raw, "alias")
            col = _visible_column(col_raw, scope)
            rendered.append(f"{alias}:{col}")
            if depth == 0:
                projection.append((alias, col))
            continue

        col = _visible_column(item, scope)
        rendered.append(col)
        if depth == 0:
            projection.append((col, col))
    return ",".join(rendered), star


def parse_select(raw: Any, table: Optional[str] = None) -> SelectClause:
    """
    Grammar: comma list of ``*``, ``column``, ``alias:column`` and
    ``[alias:]relation[!hint](clause)`` where relation is a whitelisted table.

    Hidden columns of ``table`` (and of each embedded relation) may not be
    named, under any alias; ``*`` rows are stripped after execution instead.
    """
    if raw is None:
        return DEFAULT_SELECT
    if isinstance(raw, list):
        raw = ",".join(str(s) for s in raw)
    if not isinstance(raw, str):
        raise MalformedRequest("select must be a string")
    if not raw.strip():
        return DEFAULT_SELECT
    cleaned = identifier(raw, "select")
    projection: List[Tuple[str, str]] = []
    relations: List[EmbeddedRelation] = []
    scope = get_table_policy(table) if table else None
    text, star = _parse_items(cleaned, projection, relations, 0, scope)
    return SelectClause(text=text, projection=projection, relations=relations, star=star)


# ---------------------------------------------------------------------------
# descriptor
# ---------------------------------------------------------------------------


def build_descriptor(table: str, method: Method, body: Dict[str, Any]) -> RequestDescriptor:
    """Validate and sanitize every descriptor field; no store access."""
    select_raw = body.get("select")
    single = body.get("single", False)
    if single is None:
        single = False
    if not isinstance(single, bool):
        raise MalformedRequest("single must be a boolean")

    data = body.get("data")
    if data is not None:
        data = payload_data(data)

    return RequestDescriptor(
        table=table,
        method=method,
        data=data,
        filters=parse_filters(body.get("filter")),
        select=parse_select(select_raw, table),
        select_given=bool(isinstance(select_raw, (str, list)) and select_raw),
        order=parse_order(body.get("orderBy")),
        page=None if single else resolve_page(body.get("limit"), body.get("range")),
        single=single,
        count=parse_count(body.get("count")),
        on_conflict=parse_on_conflict(body.get("onConflict")),
    )
