"""
Column registry and preset layouts for the analytics table.

Column ids are canonical snake_case field names (see fundamentals_normalizer),
plus the derived fields produced by derived_metrics and the pseudo-column
"watchlist".

Premium columns are locked for free tiers outside the free dataset; the gate
logic itself lives in access_gate so this module stays a plain registry.

Layouts come in two kinds: fixed presets (PRESET_LAYOUTS) and user-defined
bundles (CustomLayout, keyed "custom:<id>") stored per user.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from stockscreener import config

logger = logging.getLogger(__name__)

PAID_TIERS = frozenset(["paid", "quarterly", "annual", "lifetime"])

# watchlist / rank / name can never be locked or hidden.
NEVER_LOCKED = frozenset(["watchlist", "rank", "name"])


@dataclass(frozen=True)
class ColumnDescriptor:
    id: str
    label: str
    default_visible: bool = False
    is_derived: bool = False
    premium: bool = False
    higher_is_better: bool = True

    def is_locked(self, tier: str | None, dataset: str, allow_override: bool = False) -> bool:
        if self.id in NEVER_LOCKED or not self.premium:
            return False
        if allow_override or dataset == config.FREE_DATASET:
            return False
        return (tier or "").lower() not in PAID_TIERS


def _col(id: str, label: str, visible: bool = False, **kw) -> ColumnDescriptor:
    return ColumnDescriptor(id=id, label=label, default_visible=visible, **kw)


ALL_COLUMNS: tuple[ColumnDescriptor, ...] = (
    _col("watchlist", "Watchlist", True, higher_is_better=False),
    _col("rank", "Rank", True, higher_is_better=False),
    _col("name", "Company Name", True, higher_is_better=False),
    _col("market_cap", "Market Cap", True),
    _col("price", "Price", True),
    _col("revenue", "Revenue", True),
    _col("net_income", "Earnings", True),
    _col("pe_ratio", "P/E Ratio", True, higher_is_better=False),
    _col("price_to_sales_ratio", "P/S Ratio", higher_is_better=False),
    _col("dividend_yield", "Dividend Yield", True),
    _col("net_profit_margin", "Net Profit Margin"),
    _col("free_cash_flow", "Free Cash Flow", True),
    _col("revenue_growth_3y", "Rev G 3Y"),
    _col("revenue_growth_5y", "Rev G 5Y"),
    _col("revenue_growth_10y", "Rev G 10Y", True),
    _col("return_3y", "3Y Return", True),
    _col("return_5y", "5Y Return", True),
    _col("return_10y", "10Y Return", True),
    _col("max_drawdown_3y", "3Y Max Drawdown", higher_is_better=False),
    _col("max_drawdown_5y", "5Y Max Drawdown", premium=True, higher_is_better=False),
    _col("max_drawdown_10y", "10Y Max Drawdown", True, premium=True, higher_is_better=False),
    _col("ar_mdd_ratio_3y", "3Y AR/MDD Ratio", premium=True),
    _col("ar_mdd_ratio_5y", "5Y AR/MDD Ratio", premium=True),
    _col("ar_mdd_ratio_10y", "10Y AR/MDD Ratio", True, premium=True),
    _col("dcf_enterprise_value", "DCF Enterprise Value", True, premium=True),
    _col("margin_of_safety", "Margin of Safety", True, premium=True),
    _col("dcf_implied_growth", "DCF Implied Growth", True, premium=True),
    _col("asset_turnover", "Asset Turnover", True, premium=True),
    _col("financial_leverage", "Financial Leverage", True, premium=True, higher_is_better=False),
    _col("roe", "ROE %", True, premium=True),
    # computed locally, never sortable by the fundamentals source
    _col("roic_stability", "ROIC Stability", is_derived=True),
    _col("roic_stability_score", "ROIC Stability Score", is_derived=True),
    _col("fcf_margin", "FCF Margin", is_derived=True),
    _col("revenue_growth_1y", "Rev G 1Y", is_derived=True),
    _col("projected_revenue_5y", "Proj. Revenue 5Y", is_derived=True),
    _col("projected_revenue_10y", "Proj. Revenue 10Y", is_derived=True),
    _col("projected_earnings_5y", "Proj. Earnings 5Y", is_derived=True),
    _col("projected_earnings_10y", "Proj. Earnings 10Y", is_derived=True),
    _col("market_cap_to_earnings_5y", "MCap / Earnings 5Y", is_derived=True, higher_is_better=False),
    _col("market_cap_to_earnings_10y", "MCap / Earnings 10Y", is_derived=True, higher_is_better=False),
    _col("dcf_verdict", "DCF Verdict", is_derived=True, premium=True),
)

COLUMNS_BY_ID: dict[str, ColumnDescriptor] = {c.id: c for c in ALL_COLUMNS}
PREMIUM_COLUMN_IDS = frozenset(c.id for c in ALL_COLUMNS if c.premium)
DERIVED_COLUMN_IDS = frozenset(c.id for c in ALL_COLUMNS if c.is_derived)

# Sortable ids that are not table columns but are still valid sort keys.
EXTRA_SORT_KEYS = frozenset(["symbol"])


def get_column(column_id: str) -> ColumnDescriptor | None:
    return COLUMNS_BY_ID.get(column_id)


def is_derived_column(column_id: str | None) -> bool:
    return column_id in DERIVED_COLUMN_IDS


# ---------------------------------------------------------------------------
# Preset layouts
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class LayoutPreset:
    key: str
    name: str
    columns: tuple[str, ...]
    premium: bool = True
    description: str = ""


_IDENTITY = ("watchlist", "rank", "name")

PRESET_LAYOUTS: dict[str, LayoutPreset] = {
    "returnOnRisk": LayoutPreset(
        key="returnOnRisk",
        name="Return on Risk (3, 5, 10 Years)",
        columns=_IDENTITY + (
            "market_cap", "price",
            "return_10y", "max_drawdown_10y", "ar_mdd_ratio_10y",
            "return_5y", "max_drawdown_5y", "ar_mdd_ratio_5y",
            "return_3y", "max_drawdown_3y", "ar_mdd_ratio_3y",
        ),
        description="Annualized return against maximum drawdown; higher AR/MDD is better.",
    ),
    "dcfValuation": LayoutPreset(
        key="dcfValuation",
        name="DCF Valuation",
        columns=_IDENTITY + (
            "market_cap", "price", "revenue", "revenue_growth_10y",
            "dcf_enterprise_value", "margin_of_safety",
        ),
        description="Intrinsic value from discounted free cash flow and the margin of safety.",
    ),
    "reverseDcf": LayoutPreset(
        key="reverseDcf",
        name="Reverse DCF",
        columns=_IDENTITY + (
            "market_cap", "price", "revenue", "revenue_growth_10y",
            "dcf_implied_growth", "dcf_verdict",
        ),
        description="Growth priced into the stock compared with the 10Y revenue track record.",
    ),
    "dupontRoe": LayoutPreset(
        key="dupontRoe",
        name="DuPont ROE Decomposition",
        columns=_IDENTITY + (
            "market_cap", "revenue", "net_income", "net_profit_margin",
            "asset_turnover", "financial_leverage", "roe",
        ),
        description="ROE split into profitability, efficiency and leverage.",
    ),
    "quality": LayoutPreset(
        key="quality",
        name="Quality",
        columns=_IDENTITY + (
            "market_cap", "roic_stability", "roic_stability_score",
            "fcf_margin", "revenue_growth_1y", "revenue_growth_10y",
        ),
        premium=False,
        description="Capital efficiency and cash generation computed from the fundamentals.",
    ),
    "projections": LayoutPreset(
        key="projections",
        name="Growth Projections",
        columns=_IDENTITY + (
            "market_cap", "revenue", "projected_revenue_5y", "projected_revenue_10y",
            "projected_earnings_5y", "projected_earnings_10y",
            "market_cap_to_earnings_5y", "market_cap_to_earnings_10y",
        ),
        premium=False,
    ),
}


def layout_visibility(preset: LayoutPreset) -> dict[str, bool]:
    """Visibility map for a preset: identity columns always on, the rest per preset."""
    return {
        c.id: (c.id in NEVER_LOCKED or c.id in preset.columns)
        for c in ALL_COLUMNS
    }


# ---------------------------------------------------------------------------
# User-defined layouts
# ---------------------------------------------------------------------------

CUSTOM_LAYOUT_PREFIX = "custom:"


@dataclass(frozen=True)
class CustomLayout:
    """A named column bundle saved by a user. Identity columns always lead."""

    name: str
    columns: tuple[str, ...]
    id: int | None = None

    @property
    def key(self) -> str:
        return f"{CUSTOM_LAYOUT_PREFIX}{self.id}"


def clean_layout_columns(columns) -> tuple[str, ...]:
    """watchlist/rank/name first, then known columns in the given order, deduplicated."""
    out = list(_IDENTITY)
    for column_id in columns or ():
        if column_id in out:
            continue
        if column_id not in COLUMNS_BY_ID:
            logger.warning("[Columns] unknown column %r dropped from layout", column_id)
            continue
        out.append(column_id)
    return tuple(out)


def build_custom_layout(name: str, columns, id: int | None = None) -> CustomLayout:
    """Raises ValueError for a blank name."""
    name = (name or "").strip()
    if not name:
        raise ValueError("layout name is required")
    return CustomLayout(name=name, columns=clean_layout_columns(columns), id=id)


def parse_custom_layout_key(key: str | None) -> int | None:
    """"custom:12" → 12; anything else → None."""
    if not key or not key.startswith(CUSTOM_LAYOUT_PREFIX):
        return None
    raw = key[len(CUSTOM_LAYOUT_PREFIX):]
    return int(raw) if raw.isdigit() else None


_YEAR_SUFFIXED = ("return_", "max_drawdown_", "ar_mdd_ratio_")


def wire_id(column_id: str) -> str:
    """
    camelCase key the fundamentals source expects for sortBy.
    revenue_growth_10y → revenueGrowth10Y, return_10y → return10Year.
    """
    parts = column_id.split("_")
    head, rest = parts[0], parts[1:]
    out = [head]
    for part in rest:
        out.append(part.upper() if part[:1].isdigit() else part.capitalize())
    key = "".join(out)
    if column_id.startswith(_YEAR_SUFFIXED) and key.endswith("Y"):
        key = key + "ear"
    return key
