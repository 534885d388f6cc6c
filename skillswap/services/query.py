"""Query grammar for the hosted store.

A ``Filter`` is an immutable conjunction of ``Predicate`` clauses and
``AnyOf`` disjunctions.  The same value renders to PostgREST query
parameters (``to_params``) for the gateway and evaluates locally
(``matches``) so change-feed transports can route events with exactly the
semantics the store applies to reads.

Usage::

    f = Filter().eq("user_id", user_id).neq("status", "archived")
    rows = await gateway.fetch("notifications", f, Order("created_at"))
"""
from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Literal, Union

from skillswap.contracts.json_types import JSONValue, Record

Operator = Literal["eq", "neq", "gt", "gte", "lt", "lte", "like", "ilike", "in", "is"]

# Characters that force a value inside ``in.(...)`` / ``or=(...)`` to be quoted.
_RESERVED = re.compile(r'[,()":\s]')


def _render_scalar(value: JSONValue) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _quote(value: JSONValue) -> str:
    text = _render_scalar(value)
    if _RESERVED.search(text):
        return '"' + text.replace('"', '\\"') + '"'
    return text


def _same(a: JSONValue, b: JSONValue) -> bool:
    """Equality the way the store compares a column to a rendered literal."""
    if a == b:
        return True
    if a is None or b is None:
        return False
    return _render_scalar(a) == _render_scalar(b)


def _pattern_to_regex(pattern: str, case_insensitive: bool) -> re.Pattern[str]:
    parts: list[str] = []
    for ch in pattern:
        if ch in ("%", "*"):
            parts.append(".*")
        elif ch == "_":
            parts.append(".")
        else:
            parts.append(re.escape(ch))
    return re.compile("^" + "".join(parts) + "$", re.IGNORECASE | re.DOTALL if case_insensitive else re.DOTALL)


@dataclass(frozen=True)
class Predicate:
    """A single ``<field> <op> <value>`` clause."""

    field: str
    op: Operator
    value: JSONValue | tuple[JSONValue, ...]

    def render(self) -> str:
        """Render as ``op.value`` (the right-hand side of a query parameter)."""
        if self.op == "in":
            values = self.value if isinstance(self.value, tuple) else (self.value,)
            return "in.(" + ",".join(_quote(v) for v in values) + ")"
        return f"{self.op}.{_render_scalar(self.value)}"  # type: ignore[arg-type]

    def matches(self, record: Record) -> bool:
        actual = record.get(self.field)
        op = self.op
        if op == "eq":
            return _same(actual, self.value)  # type: ignore[arg-type]
        if op == "neq":
            return actual is not None and not _same(actual, self.value)  # type: ignore[arg-type]
        if op == "is":
            return actual is self.value or _same(actual, self.value)  # type: ignore[arg-type]
        if op == "in":
            values = self.value if isinstance(self.value, tuple) else (self.value,)
            return any(_same(actual, v) for v in values)
        if op in ("like", "ilike"):
            if not isinstance(actual, str):
                return False
            regex = _pattern_to_regex(str(self.value), case_insensitive=op == "ilike")
            return regex.match(actual) is not None
        if actual is None or self.value is None:
            return False
        try:
            if op == "gt":
                return actual > self.value  # type: ignore[operator]
            if op == "gte":
                return actual >= self.value  # type: ignore[operator]
            if op == "lt":
                return actual < self.value  # type: ignore[operator]
            if op == "lte":
                return actual <= self.value  # type: ignore[operator]
        except TypeError:
            return False
        raise ValueError(f"Unknown operator: {op}")


@dataclass(frozen=True)
class AnyOf:
    """Disjunction of predicates, rendered as PostgREST ``or=(...)``."""

    predicates: tuple[Predicate, ...]

    def render(self) -> str:
        return "(" + ",".join(f"{p.field}.{p.render()}" for p in self.predicates) + ")"

    def matches(self, record: Record) -> bool:
        return any(p.matches(record) for p in self.predicates)


Clause = Union[Predicate, AnyOf]


@dataclass(frozen=True)
class Filter:
    """Immutable conjunction of clauses.  Builder methods return a new Filter."""

    clauses: tuple[Clause, ...] = field(default_factory=tuple)

    def where(self, field_name: str, op: Operator, value: JSONValue | tuple[JSONValue, ...]) -> Filter:
        return Filter(self.clauses + (Predicate(field_name, op, value),))

    def eq(self, field_name: str, value: JSONValue) -> Filter:
        return self.where(field_name, "eq", value)

    def neq(self, field_name: str, value: JSONValue) -> Filter:
        return self.where(field_name, "neq", value)

    def ilike(self, field_name: str, pattern: str) -> Filter:
        return self.where(field_name, "ilike", pattern)

    def in_(self, field_name: str, values: list[JSONValue] | tuple[JSONValue, ...]) -> Filter:
        return self.where(field_name, "in", tuple(values))

    def any_of(self, *predicates: Predicate) -> Filter:
        return Filter(self.clauses + (AnyOf(tuple(predicates)),))

    def to_params(self) -> list[tuple[str, str]]:
        """PostgREST query parameters for this filter, in clause order."""
        params: list[tuple[str, str]] = []
        for clause in self.clauses:
            if isinstance(clause, AnyOf):
                params.append(("or", clause.render()))
            else:
                params.append((clause.field, clause.render()))
        return params

    def matches(self, record: Record) -> bool:
        return all(clause.matches(record) for clause in self.clauses)

    def matches_partial(self, record: Record) -> bool:
        """Like ``matches`` but clauses on fields absent from *record* pass.

        Delete events often carry only the primary key of the old row.
        """
        for clause in self.clauses:
            predicates = clause.predicates if isinstance(clause, AnyOf) else (clause,)
            if any(p.field not in record for p in predicates):
                continue
            if not clause.matches(record):
                return False
        return True

    def __bool__(self) -> bool:
        return bool(self.clauses)

    def __str__(self) -> str:
        return "&".join(f"{k}={v}" for k, v in self.to_params()) or "*"


@dataclass(frozen=True)
class Order:
    """Sort specification: one field plus direction (default newest first)."""

    field: str = "created_at"
    ascending: bool = False

    def to_param(self) -> str:
        return f"{self.field}.{'asc' if self.ascending else 'desc'}"


# Shared empty filter
ALL = Filter()
