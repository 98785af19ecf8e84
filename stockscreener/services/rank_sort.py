"""
Rank & sort engine.

Orders table rows by one column with a fixed null policy and decides where
the sort happens:

  - derived columns (computed in derived_metrics) are always sorted here,
    after the full candidate page has been materialized
  - every other column may be delegated to the fundamentals source; when the
    source already sorted the page, its order is passed through unmodified

Ordering rules:
  - key coercion: native number → as is; decorated numeral string
    ("$1,234", "12.5 %") → number; anything else → case-sensitive string
  - numbers come before strings, nulls come last, in both directions
  - stable: ties keep their prior relative order

Row identity is the upper-cased symbol; merge_by_symbol keeps the same symbol
resolving to the same logical row across soft refreshes.
"""

from __future__ import annotations

import logging
import math
import re
from dataclasses import dataclass
from typing import Any, Literal

from stockscreener.services.columns import get_column, is_derived_column, wire_id

logger = logging.getLogger(__name__)

SortDirection = Literal["asc", "desc"]

_DECORATION = re.compile(r"[\s$,%]")
_NUMERAL = re.compile(r"[-+]?(?:\d+\.?\d*|\.\d+)(?:[eE][-+]?\d+)?")


@dataclass(frozen=True)
class SortSpec:
    column_id: str
    direction: SortDirection = "desc"
    is_derived_sort: bool = False


# ---------------------------------------------------------------------------
# Key coercion
# ---------------------------------------------------------------------------

def coerce_sort_key(value: Any) -> float | str | None:
    """None | finite float | str. Blank strings and non-finite numbers are None."""
    if value is None:
        return None
    if isinstance(value, (int, float)):
        f = float(value)
        return f if math.isfinite(f) else None
    if isinstance(value, str):
        if not value.strip():
            return None
        cleaned = _DECORATION.sub("", value)
        if _NUMERAL.fullmatch(cleaned):
            f = float(cleaned)
            return f if math.isfinite(f) else None
        return value
    return str(value)


# ---------------------------------------------------------------------------
# Sorting
# ---------------------------------------------------------------------------

def sort_rows(rows: list[dict[str, Any]], spec: SortSpec) -> list[dict[str, Any]]:
    """
    Stable sort by spec.column_id. Returns a new list.

    Rows are partitioned into numbers, strings and nulls; each partition is
    sorted on its own (Python's sort stays stable with reverse=True) and the
    partitions are concatenated in that order, so nulls are last either way.
    """
    descending = spec.direction == "desc"
    numbers: list[tuple[float, dict]] = []
    strings: list[tuple[str, dict]] = []
    nulls: list[dict] = []

    for row in rows:
        key = coerce_sort_key(row.get(spec.column_id))
        if key is None:
            nulls.append(row)
        elif isinstance(key, str):
            strings.append((key, row))
        else:
            numbers.append((key, row))

    numbers.sort(key=lambda p: p[0], reverse=descending)
    strings.sort(key=lambda p: p[0], reverse=descending)
    return [r for _, r in numbers] + [r for _, r in strings] + nulls


def order_rows(
    rows: list[dict[str, Any]],
    spec: SortSpec | None,
    server_sorted: bool = True,
) -> list[dict[str, Any]]:
    """Apply the hybrid policy: local sort for derived columns, pass-through otherwise."""
    if spec is None:
        return list(rows)
    if spec.is_derived_sort or not server_sorted:
        return sort_rows(rows, spec)
    return list(rows)


# ---------------------------------------------------------------------------
# Sort spec handling
# ---------------------------------------------------------------------------

def default_direction(column_id: str) -> SortDirection:
    """Descending for higher-is-better metrics, ascending otherwise."""
    column = get_column(column_id)
    if column is None:
        return "asc"
    return "desc" if column.higher_is_better else "asc"


def build_sort_spec(column_id: str, direction: str | None = None) -> SortSpec:
    if direction is None:
        direction = default_direction(column_id)
    direction = direction.lower()
    if direction not in ("asc", "desc"):
        raise ValueError(f"invalid sort direction: {direction!r}")
    return SortSpec(
        column_id=column_id,
        direction=direction,  # type: ignore[arg-type]
        is_derived_sort=is_derived_column(column_id),
    )


def next_sort_spec(current: SortSpec | None, column_id: str) -> SortSpec:
    """Header click: first click uses the column default, repeated clicks toggle."""
    if current is not None and current.column_id == column_id:
        flipped = "asc" if current.direction == "desc" else "desc"
        return SortSpec(column_id, flipped, current.is_derived_sort)
    return build_sort_spec(column_id)


def fetch_sort_params(spec: SortSpec | None) -> dict[str, str]:
    """Query params for the fundamentals source. Derived sorts are never sent."""
    if spec is None or spec.is_derived_sort:
        return {}
    return {"sortBy": wire_id(spec.column_id), "sortOrder": spec.direction}


# ---------------------------------------------------------------------------
# Ranking / pagination
# ---------------------------------------------------------------------------

def assign_ranks(rows: list[dict[str, Any]], offset: int = 0) -> list[dict[str, Any]]:
    """rank = offset + index + 1, on copies of the rows."""
    return [{**row, "rank": offset + i + 1} for i, row in enumerate(rows)]


def paginate(rows: list[dict[str, Any]], page: int, limit: int) -> list[dict[str, Any]]:
    if limit <= 0:
        return []
    start = max(page, 0) * limit
    return rows[start:start + limit]


def _symbol_key(row: dict[str, Any]) -> str | None:
    symbol = row.get("symbol")
    if not isinstance(symbol, str) or not symbol.strip():
        return None
    return symbol.strip().upper()


def merge_by_symbol(
    previous: list[dict[str, Any]],
    fresh: list[dict[str, Any]],
) -> list[dict[str, Any]]:
    """
    Soft refresh keyed by symbol. Order follows `fresh`, fresh values win,
    fields only the previous row carried are kept, duplicate symbols collapse
    to their first occurrence. Rows without a symbol pass through untouched.
    """
    by_symbol: dict[str, dict[str, Any]] = {}
    for row in previous:
        key = _symbol_key(row)
        if key is not None:
            by_symbol.setdefault(key, row)

    merged: list[dict[str, Any]] = []
    seen: set[str] = set()
    dropped = 0
    for row in fresh:
        key = _symbol_key(row)
        if key is None:
            merged.append(dict(row))
            continue
        if key in seen:
            dropped += 1
            continue
        seen.add(key)
        merged.append({**by_symbol.get(key, {}), **row})

    if dropped:
        logger.debug("[RankSort] collapsed %d duplicate symbols on refresh", dropped)
    return merged
