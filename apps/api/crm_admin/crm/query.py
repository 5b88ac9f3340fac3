"""Filtering, sorting and pagination shared by every list endpoint.

Query parameters arrive as raw strings and are parsed leniently: bad page
numbers fall back to defaults, unknown sort fields fall back to the resource
default and unparsable timestamps drop the filter instead of failing.
"""

from __future__ import annotations

import math
import re
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Generic, TypeVar

from sqlalchemy import Select, func, or_, select
from sqlalchemy.orm import Session
from sqlalchemy.sql.elements import ColumnElement


T = TypeVar("T")

DEFAULT_PAGE = 1
DEFAULT_PAGE_SIZE = 20
MAX_PAGE_SIZE = 100
# ids and numeric filters are stored in 32-bit INTEGER columns
MAX_INT = 2_147_483_647

_INT_RE = re.compile(r"^[+-]?\d+$")
_RFC3339_RE = re.compile(
    r"^\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}(\.\d+)?(Z|[+-]\d{2}:\d{2})$"
)


def parse_int(raw: Any) -> int | None:
    """Parse an integer, returning ``None`` for junk and values outside ``MAX_INT``."""
    if raw is None or isinstance(raw, bool):
        return None
    if isinstance(raw, int):
        value = raw
    else:
        text = str(raw).strip()
        if not _INT_RE.match(text):
            return None
        value = int(text)
    if abs(value) > MAX_INT:
        return None
    return value


def parse_decimal(raw: Any) -> Decimal | None:
    if raw is None:
        return None
    try:
        value = Decimal(str(raw).strip())
    except InvalidOperation:
        return None
    if not value.is_finite():
        return None
    return value


def parse_timestamp(raw: str | None) -> datetime | None:
    """Parse an RFC 3339 timestamp, returning ``None`` for anything else."""
    if not raw:
        return None
    text = raw.strip()
    if not _RFC3339_RE.match(text):
        return None
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    return parsed.astimezone(timezone.utc)


def parse_id_list(raw: str | None) -> list[int]:
    if not raw:
        return []
    values: list[int] = []
    for chunk in raw.split(","):
        value = parse_int(chunk)
        if value is not None and value > 0 and value not in values:
            values.append(value)
    return values


def parse_csv(raw: str | None) -> list[str]:
    if not raw:
        return []
    return [chunk.strip() for chunk in raw.split(",") if chunk.strip()]


@dataclass(frozen=True)
class PageRequest:
    page: int = DEFAULT_PAGE
    page_size: int = DEFAULT_PAGE_SIZE

    @classmethod
    def from_raw(cls, page: Any = None, page_size: Any = None) -> PageRequest:
        parsed_page = parse_int(page)
        if parsed_page is None or parsed_page < 1:
            parsed_page = DEFAULT_PAGE

        parsed_size = parse_int(page_size)
        if parsed_size is None:
            parsed_size = DEFAULT_PAGE_SIZE
        parsed_size = min(max(parsed_size, 1), MAX_PAGE_SIZE)
        return cls(page=parsed_page, page_size=parsed_size)

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.page_size


@dataclass(frozen=True)
class SortSpec:
    field: str
    order: str

    @classmethod
    def resolve(
        cls,
        raw_field: str | None,
        raw_order: str | None,
        *,
        allowed: Iterable[str],
        default_field: str,
        default_order: str = "desc",
    ) -> SortSpec:
        field = (raw_field or "").strip()
        if field not in set(allowed):
            field = default_field
        order = (raw_order or "").strip().lower()
        if order not in {"asc", "desc"}:
            order = default_order
        return cls(field=field, order=order)

    def apply(self, stmt: Select, columns: Mapping[str, Any], tie_breaker: Any | None = None) -> Select:
        column = columns[self.field]
        ordered = stmt.order_by(column.asc() if self.order == "asc" else column.desc())
        if tie_breaker is not None:
            ordered = ordered.order_by(tie_breaker.asc() if self.order == "asc" else tie_breaker.desc())
        return ordered


def ilike_any(columns: Sequence[Any], term: str | None) -> ColumnElement[bool] | None:
    if not term or not term.strip():
        return None
    pattern = f"%{term.strip()}%"
    return or_(*(column.ilike(pattern) for column in columns))


@dataclass
class Page(Generic[T]):
    items: list[T]
    total: int
    page: int
    page_size: int

    @property
    def total_pages(self) -> int:
        if self.total <= 0:
            return 0
        return math.ceil(self.total / self.page_size)

    def map(self, convert) -> dict[str, Any]:  # type: ignore[no-untyped-def]
        return {
            "items": [convert(item) for item in self.items],
            "total": self.total,
            "page": self.page,
            "page_size": self.page_size,
            "total_pages": self.total_pages,
        }


def paginate(
    session: Session,
    stmt: Select,
    page_request: PageRequest,
    *,
    options: Sequence[Any] = (),
) -> Page[Any]:
    """Count and slice the same filtered statement.

    ``stmt`` must already carry its filters and ordering; loader ``options``
    are attached only to the slice query.
    """
    count_stmt = select(func.count()).select_from(stmt.order_by(None).subquery())
    total = int(session.scalar(count_stmt) or 0)

    sliced = stmt.limit(page_request.page_size).offset(page_request.offset)
    if options:
        sliced = sliced.options(*options)
    items = list(session.scalars(sliced).all())
    return Page(items=items, total=total, page=page_request.page, page_size=page_request.page_size)
