from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Iterable

# Characters that force a PostgREST value to be double-quoted inside in.() / or=().
_RESERVED_CHARS = set(',.:()"\\ ')


@dataclass(slots=True, frozen=True)
class Filter:
    column: str
    operator: str
    value: Any = None

    def render_value(self) -> str:
        if self.operator == "in":
            return f"({','.join(_quote(item) for item in self.value)})"
        if self.operator == "ilike":
            return f"*{self.value}*"
        if self.operator == "is":
            return "null" if self.value is None else str(self.value).lower()
        return _format_scalar(self.value)

    def render_nested(self) -> str:
        value = self.render_value()
        if self.operator not in ("in", "is"):
            value = _quote(value)
        return f"{self.column}.{self.operator}.{value}"


def _format_scalar(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, datetime):
        return value.isoformat()
    return str(value)


def _quote(value: Any) -> str:
    text = _format_scalar(value)
    if any(char in _RESERVED_CHARS for char in text):
        escaped = text.replace("\\", "\\\\").replace('"', '\\"')
        return f'"{escaped}"'
    return text


@dataclass(slots=True)
class Query:
    """Chainable row filter for one table of the data service."""

    table: str
    columns: str = "*"
    filters: list[Filter] = field(default_factory=list)
    any_of: list[list[Filter]] = field(default_factory=list)
    ordering: list[tuple[str, bool]] = field(default_factory=list)
    row_limit: int | None = None

    def select(self, columns: str) -> Query:
        self.columns = columns
        return self

    def eq(self, column: str, value: Any) -> Query:
        self.filters.append(Filter(column, "eq", value))
        return self

    def ilike(self, column: str, fragment: str) -> Query:
        self.filters.append(Filter(column, "ilike", fragment))
        return self

    def in_(self, column: str, values: Iterable[Any]) -> Query:
        self.filters.append(Filter(column, "in", tuple(values)))
        return self

    def gte(self, column: str, value: Any) -> Query:
        self.filters.append(Filter(column, "gte", value))
        return self

    def lte(self, column: str, value: Any) -> Query:
        self.filters.append(Filter(column, "lte", value))
        return self

    def is_null(self, column: str) -> Query:
        self.filters.append(Filter(column, "is", None))
        return self

    def or_(self, *alternatives: Filter) -> Query:
        if not alternatives:
            raise ValueError("or_() needs at least one alternative")
        self.any_of.append(list(alternatives))
        return self

    def order(self, column: str, *, ascending: bool = True) -> Query:
        self.ordering.append((column, ascending))
        return self

    def limit(self, count: int) -> Query:
        if count < 0:
            raise ValueError("limit must be >= 0")
        self.row_limit = count
        return self

    def to_params(self, *, include_select: bool = True) -> list[tuple[str, str]]:
        params: list[tuple[str, str]] = []
        if include_select:
            params.append(("select", self.columns))
        for item in self.filters:
            params.append((item.column, f"{item.operator}.{item.render_value()}"))
        for alternatives in self.any_of:
            rendered = ",".join(item.render_nested() for item in alternatives)
            params.append(("or", f"({rendered})"))
        if self.ordering:
            params.append(
                (
                    "order",
                    ",".join(f"{column}.{'asc' if ascending else 'desc'}" for column, ascending in self.ordering),
                )
            )
        if self.row_limit is not None:
            params.append(("limit", str(self.row_limit)))
        return params


def table(name: str) -> Query:
    text = name.strip()
    if not text:
        raise ValueError("table name must not be empty")
    return Query(table=text)
