"""
Acceptance tests: rank & sort engine

Rules:
  - nulls sort strictly after every non-null value, ascending and descending
  - stable for equal keys
  - derived sorts always run locally; server-sorted pages pass through
  - first click uses the column default, repeated clicks toggle
  - symbol is the row identity across soft refreshes
"""

import random

import pytest

from stockscreener.services.rank_sort import (
    SortSpec,
    assign_ranks,
    build_sort_spec,
    coerce_sort_key,
    default_direction,
    fetch_sort_params,
    merge_by_symbol,
    next_sort_spec,
    order_rows,
    paginate,
    sort_rows,
)


def _rows(values, key="v"):
    return [{"symbol": f"S{i}", key: v} for i, v in enumerate(values)]


# ---------------------------------------------------------------------------
# Key coercion
# ---------------------------------------------------------------------------

@pytest.mark.parametrize("raw,expected", [
    (5, 5.0),
    (2.5, 2.5),
    ("$1,234", 1234.0),
    ("12.5 %", 12.5),
    (" -3 ", -3.0),
    ("Apple", "Apple"),
    ("", None),
    (None, None),
    (float("nan"), None),
])
def test_coerce_sort_key(raw, expected):
    assert coerce_sort_key(raw) == expected


# ---------------------------------------------------------------------------
# Null policy
# ---------------------------------------------------------------------------

@pytest.mark.parametrize("direction", ["asc", "desc"])
def test_nulls_always_last(direction):
    rng = random.Random(7)
    values = [rng.choice([None, rng.uniform(-100, 100)]) for _ in range(200)]
    out = sort_rows(_rows(values), SortSpec("v", direction))
    keys = [r["v"] for r in out]
    first_null = next(i for i, k in enumerate(keys) if k is None)
    assert all(k is None for k in keys[first_null:])
    assert all(k is not None for k in keys[:first_null])


def test_ascending_and_descending_order():
    rows = _rows([3, None, 1, 2])
    assert [r["v"] for r in sort_rows(rows, SortSpec("v", "asc"))] == [1, 2, 3, None]
    assert [r["v"] for r in sort_rows(rows, SortSpec("v", "desc"))] == [3, 2, 1, None]


def test_numbers_before_strings_then_nulls():
    rows = _rows(["beta", None, "$5", 1, "Alpha"])
    out = [r["v"] for r in sort_rows(rows, SortSpec("v", "asc"))]
    assert out == [1, "$5", "Alpha", "beta", None]


def test_sort_is_stable_in_both_directions():
    rows = _rows([1, 2, 1, 2, 1])
    asc = [r["symbol"] for r in sort_rows(rows, SortSpec("v", "asc"))]
    desc = [r["symbol"] for r in sort_rows(rows, SortSpec("v", "desc"))]
    assert asc == ["S0", "S2", "S4", "S1", "S3"]
    assert desc == ["S1", "S3", "S0", "S2", "S4"]


def test_sort_does_not_mutate_input():
    rows = _rows([2, 1])
    sort_rows(rows, SortSpec("v", "asc"))
    assert [r["v"] for r in rows] == [2, 1]


# ---------------------------------------------------------------------------
# Hybrid policy
# ---------------------------------------------------------------------------

def test_server_sorted_order_is_trusted_for_stored_columns():
    rows = _rows([1, 3, 2], key="market_cap")
    spec = build_sort_spec("market_cap", "desc")
    assert order_rows(rows, spec, server_sorted=True) == rows


def test_derived_sort_always_runs_locally():
    rows = _rows([1, 3, None, 2], key="roic_stability_score")
    spec = build_sort_spec("roic_stability_score", "desc")
    assert spec.is_derived_sort
    out = order_rows(rows, spec, server_sorted=True)
    assert [r["roic_stability_score"] for r in out] == [3, 2, 1, None]


def test_fetch_params_omit_derived_sort():
    assert fetch_sort_params(build_sort_spec("projected_revenue_5y")) == {}
    assert fetch_sort_params(None) == {}
    assert fetch_sort_params(build_sort_spec("revenue_growth_10y", "asc")) == {
        "sortBy": "revenueGrowth10Y", "sortOrder": "asc",
    }
    assert fetch_sort_params(build_sort_spec("return_10y", "desc"))["sortBy"] == "return10Year"


# ---------------------------------------------------------------------------
# Click behavior
# ---------------------------------------------------------------------------

def test_default_directions():
    assert default_direction("return_10y") == "desc"
    assert default_direction("ar_mdd_ratio_10y") == "desc"
    assert default_direction("name") == "asc"
    assert default_direction("max_drawdown_10y") == "asc"
    assert default_direction("pe_ratio") == "asc"


def test_repeated_click_toggles():
    first = next_sort_spec(None, "return_5y")
    assert first.direction == "desc"
    second = next_sort_spec(first, "return_5y")
    assert second.direction == "asc"
    third = next_sort_spec(second, "return_5y")
    assert third.direction == "desc"


def test_click_other_column_resets_to_default():
    spec = next_sort_spec(SortSpec("return_5y", "asc"), "name")
    assert spec == SortSpec("name", "asc", False)


def test_build_sort_spec_rejects_bad_direction():
    with pytest.raises(ValueError):
        build_sort_spec("name", "sideways")


# ---------------------------------------------------------------------------
# Ranks / pagination / identity
# ---------------------------------------------------------------------------

def test_assign_ranks_from_page_offset():
    ranked = assign_ranks(_rows([1, 2, 3]), offset=50)
    assert [r["rank"] for r in ranked] == [51, 52, 53]


def test_paginate():
    rows = _rows(range(7))
    assert [r["v"] for r in paginate(rows, 1, 3)] == [3, 4, 5]
    assert [r["v"] for r in paginate(rows, 2, 3)] == [6]
    assert paginate(rows, 5, 3) == []
    assert paginate(rows, 0, 0) == []


def test_merge_by_symbol_keeps_identity_and_fresh_order():
    previous = [
        {"symbol": "AAPL", "price": 1.0, "is_watched": True},
        {"symbol": "MSFT", "price": 2.0},
    ]
    fresh = [
        {"symbol": "MSFT", "price": 3.0},
        {"symbol": "AAPL", "price": 4.0},
        {"symbol": "msft", "price": 9.0},
    ]
    merged = merge_by_symbol(previous, fresh)
    assert [r["symbol"] for r in merged] == ["MSFT", "AAPL"]
    assert merged[0]["price"] == 3.0
    assert merged[1] == {"symbol": "AAPL", "price": 4.0, "is_watched": True}
