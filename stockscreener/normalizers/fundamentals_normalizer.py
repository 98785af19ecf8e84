"""
Fundamentals normalizer.

Maps raw company rows (any casing, aliased field names, decorated numeric
strings) into the canonical FundamentalsRecord dict used by the rest of the
engine. Resolution happens once, at ingestion; nothing downstream looks at
raw field names again.

Key behaviors:
  - FIELD_ALIASES: ordered alias list per canonical field, first match wins
  - a field "matches" when the key is present with a non-null, non-blank value
    (same as `row.marketCap ?? row.market_cap` in the dashboard client)
  - exact key lookup first, then a loose lookup that ignores case, "_", "-"
    and spaces, so revenueY1 / revenue_y1 / REVENUE-Y1 all resolve
  - numeric strings are stripped of currency symbols, percent signs and
    thousands separators before coercion; failure → None
  - never raises
"""

import logging
import math
import re
from collections.abc import Iterable, Mapping
from typing import Any

logger = logging.getLogger(__name__)

SERIES_YEARS = 10

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

_NON_NUMERIC = re.compile(r"[^0-9.+\-]")
# an exponent marker only counts when digits sit on both sides of it
_EXPONENT = re.compile(r"(?<=\d)[eE](?=[-+]?\d)")


def parse_numeric(v: Any) -> float | None:
    """
    Return a finite float or None.

    "$1,234.50" → 1234.5, "12.5%" → 12.5, " -3 " → -3.0, "N/A" → None.
    Booleans are not numbers here.
    """
    if v is None or isinstance(v, bool):
        return None
    if isinstance(v, (int, float)):
        f = float(v)
        return f if math.isfinite(f) else None
    if isinstance(v, str):
        cleaned = "e".join(_NON_NUMERIC.sub("", part) for part in _EXPONENT.split(v))
        if not cleaned:
            return None
        try:
            f = float(cleaned)
        except ValueError:
            return None
        return f if math.isfinite(f) else None
    return None


def _parse_text(v: Any) -> str | None:
    if v is None or isinstance(v, (dict, list)):
        return None
    s = str(v).strip()
    return s or None


def _parse_symbol(v: Any) -> str | None:
    s = _parse_text(v)
    return s.upper() if s else None


def _parse_bool(v: Any) -> bool | None:
    if isinstance(v, bool):
        return v
    if isinstance(v, (int, float)) and v in (0, 1):
        return bool(v)
    if isinstance(v, str):
        s = v.strip().lower()
        if s in ("true", "1", "yes"):
            return True
        if s in ("false", "0", "no"):
            return False
    return None


def _loose(key: str) -> str:
    return re.sub(r"[_\-\s]", "", key).lower()


def _is_blank(v: Any) -> bool:
    return v is None or (isinstance(v, str) and not v.strip())


# ---------------------------------------------------------------------------
# Alias table
# Canonical name first; loose matching already covers the camelCase spelling
# of every canonical name, so only genuinely different names are listed.
# ---------------------------------------------------------------------------

FIELD_ALIASES: dict[str, tuple[str, ...]] = {
    # identity
    "symbol": ("symbol", "ticker", "company_symbol", "ticker_symbol"),
    "name": ("name", "company_name", "companyName", "shortName"),
    "rank": ("rank",),
    "country": ("country",),
    "logo_url": ("logo_url", "logo"),
    "is_watched": ("is_watched",),
    # valuation
    "market_cap": ("market_cap", "marketCapitalization", "mktCap"),
    "price": ("price", "current_price", "close"),
    "pe_ratio": ("pe_ratio", "pe", "peTTM"),
    "price_to_sales_ratio": ("price_to_sales_ratio", "ps_ratio", "psRatio"),
    "dividend_yield": ("dividend_yield",),
    # income statement
    "revenue": ("revenue", "total_revenue", "revenue_ttm"),
    "net_income": ("net_income", "earnings", "net_income_ttm"),
    "net_profit_margin": ("net_profit_margin", "profit_margin"),
    "free_cash_flow": ("free_cash_flow", "fcf", "fcf_ttm"),
    "latest_fcf": ("latest_fcf", "latest_free_cash_flow"),
    # balance sheet
    "total_assets": ("total_assets",),
    "total_equity": ("total_equity", "stockholder_equity", "stockholders_equity", "shareholder_equity"),
    "total_debt": ("total_debt",),
    # returns on capital
    "roic": ("roic", "roic_latest"),
    "roic_10y_avg": ("roic_10y_avg", "roic_avg_10y"),
    "roic_10y_std": ("roic_10y_std", "roic_std_10y"),
    "roic_stability": ("roic_stability",),
    "roic_stability_score": ("roic_stability_score",),
    # cash flow quality
    "fcf_margin": ("fcf_margin", "free_cash_flow_margin"),
    "fcf_margin_median_10y": ("fcf_margin_median_10y", "fcf_margin_10y_median"),
    # dcf
    "dcf_implied_growth": ("dcf_implied_growth", "implied_growth"),
    "dcf_enterprise_value": ("dcf_enterprise_value", "dcf_value"),
    "margin_of_safety": ("margin_of_safety", "mos"),
    # growth
    "revenue_growth_3y": ("revenue_growth_3y", "revenue_cagr_3y"),
    "revenue_growth_5y": ("revenue_growth_5y", "revenue_cagr_5y"),
    "revenue_growth_10y": ("revenue_growth_10y", "revenue_cagr_10y"),
    # price performance
    "return_3y": ("return_3y", "return_3_year", "return3Year"),
    "return_5y": ("return_5y", "return_5_year", "return5Year"),
    "return_10y": ("return_10y", "return_10_year", "return10Year"),
    "max_drawdown_3y": ("max_drawdown_3y", "max_drawdown_3_year", "maxDrawdown3Year"),
    "max_drawdown_5y": ("max_drawdown_5y", "max_drawdown_5_year", "maxDrawdown5Year"),
    "max_drawdown_10y": ("max_drawdown_10y", "max_drawdown_10_year", "maxDrawdown10Year"),
    "ar_mdd_ratio_3y": ("ar_mdd_ratio_3y", "ar_mdd_ratio_3_year", "arMddRatio3Year"),
    "ar_mdd_ratio_5y": ("ar_mdd_ratio_5y", "ar_mdd_ratio_5_year", "arMddRatio5Year"),
    "ar_mdd_ratio_10y": ("ar_mdd_ratio_10y", "ar_mdd_ratio_10_year", "arMddRatio10Year"),
    # dupont
    "asset_turnover": ("asset_turnover",),
    "financial_leverage": ("financial_leverage", "equity_multiplier"),
    "roe": ("roe", "return_on_equity"),
}

# Point-in-time series, Y1 = latest fiscal year, Y10 = oldest.
for _n in range(1, SERIES_YEARS + 1):
    FIELD_ALIASES[f"revenue_y{_n}"] = (
        f"revenue_y{_n}", f"revenue_year{_n}", f"revenue_year_{_n}",
    )
    FIELD_ALIASES[f"free_cash_flow_y{_n}"] = (
        f"free_cash_flow_y{_n}", f"fcf_y{_n}", f"free_cash_flow_year{_n}",
        f"free_cash_flow_year_{_n}", f"fcf_year{_n}",
    )
    FIELD_ALIASES[f"roic_y{_n}"] = (f"roic_y{_n}", f"roic_year{_n}", f"roic_year_{_n}")

TEXT_FIELDS = frozenset(["name", "country", "logo_url"])
BOOL_FIELDS = frozenset(["is_watched"])
INT_FIELDS = frozenset(["rank"])
CANONICAL_FIELDS: tuple[str, ...] = tuple(FIELD_ALIASES)

MEMBERSHIP_ALIASES: dict[str, tuple[str, ...]] = {
    "symbol": ("symbol", "company_symbol", "ticker"),
    "watchlist_id": ("watchlist_id", "list_id", "watchlist"),
}

# Reverse lookup used for wire sort keys → canonical column id.
_LOOSE_TO_CANONICAL: dict[str, str] = {}
for _field, _aliases in FIELD_ALIASES.items():
    for _alias in _aliases:
        _LOOSE_TO_CANONICAL.setdefault(_loose(_alias), _field)


def _pick(raw: Mapping[str, Any], loose_index: dict[str, list[str]], aliases: Iterable[str]) -> Any:
    """Return the raw value of the first alias present with a non-blank value."""
    for alias in aliases:
        if alias in raw and not _is_blank(raw[alias]):
            return raw[alias]
        # several raw spellings can share one loose form ("revenue_y1", "revenueY1")
        for key in loose_index.get(_loose(alias), ()):
            if not _is_blank(raw[key]):
                return raw[key]
    return None


def _loose_index(raw: Mapping[str, Any]) -> dict[str, list[str]]:
    index: dict[str, list[str]] = {}
    for k in raw:
        if isinstance(k, str):
            index.setdefault(_loose(k), []).append(k)
    return index


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def normalize_record(raw: Any) -> dict[str, Any]:
    """
    Produce a canonical FundamentalsRecord from one raw row.

    Every canonical field is present in the output; unresolved fields are None.
    The input is never mutated.
    """
    record: dict[str, Any] = dict.fromkeys(CANONICAL_FIELDS)
    if not isinstance(raw, Mapping):
        logger.debug("[Normalizer] non-mapping row ignored: %r", type(raw).__name__)
        return record

    index = _loose_index(raw)
    for field, aliases in FIELD_ALIASES.items():
        value = _pick(raw, index, aliases)
        if value is None:
            continue
        if field == "symbol":
            record[field] = _parse_symbol(value)
        elif field in TEXT_FIELDS:
            record[field] = _parse_text(value)
        elif field in BOOL_FIELDS:
            record[field] = _parse_bool(value)
        elif field in INT_FIELDS:
            n = parse_numeric(value)
            record[field] = int(n) if n is not None else None
        else:
            record[field] = parse_numeric(value)
    return record


def normalize_records(raws: Iterable[Any] | None) -> list[dict[str, Any]]:
    """Normalize a page of raw rows, preserving order."""
    if raws is None:
        return []
    out = [normalize_record(r) for r in raws]
    missing = sum(1 for r in out if r["symbol"] is None)
    if missing:
        logger.warning("[Normalizer] %d/%d rows have no resolvable symbol", missing, len(out))
    return out


def normalize_membership(raw: Any) -> dict[str, Any] | None:
    """
    Normalize one membership entry to {"symbol": str, "watchlist_id": int | None}.
    Returns None for entries with no symbol.
    """
    if not isinstance(raw, Mapping):
        return None
    index = _loose_index(raw)
    symbol = _parse_symbol(_pick(raw, index, MEMBERSHIP_ALIASES["symbol"]))
    if symbol is None:
        return None
    wl = parse_numeric(_pick(raw, index, MEMBERSHIP_ALIASES["watchlist_id"]))
    return {"symbol": symbol, "watchlist_id": int(wl) if wl is not None else None}


def resolve_column_id(name: Any) -> str | None:
    """Map a wire field/sort key (e.g. "revenueGrowth10Y") to its canonical field name."""
    if not isinstance(name, str) or not name.strip():
        return None
    return _LOOSE_TO_CANONICAL.get(_loose(name))
