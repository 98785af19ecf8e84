"""
Derived metrics calculator.

Every metric is an independent pure function over a canonical
FundamentalsRecord and follows the same fallback chain:

    persisted value (populated upstream) → dynamic computation → None

Key formulas:
  ROIC stability        = roic_10y_avg / roic_10y_std          (std finite and > 0)
  ROIC stability score  = clamp(stability * 30, 0, 100)
  FCF margin            = fcf_y1 / revenue_y1, else fcf / revenue (trailing)
  Revenue growth 1Y     = (revenue_y1 - revenue_y2) / revenue_y2  (revenue_y2 > 0)
  Effective growth      = first non-null of growth 10Y, 5Y, 1Y
  Projected revenue N   = revenue * (1 + g)^N                   N in {5, 10}
  Projected earnings N  = projected revenue N * net_profit_margin
  Market cap / earn. N  = market_cap / projected earnings N     (both > 0)
  DCF verdict           = implied growth vs revenue_growth_10y / 100, ±0.03 band

Rules:
  - Null inputs propagate as null, never coerced to 0.
  - Nothing here raises; consumers treat None as "not displayable".
"""

from __future__ import annotations

import logging
import math
import statistics
from dataclasses import asdict, dataclass, field
from typing import Any, Literal

from stockscreener import config

logger = logging.getLogger(__name__)

DcfVerdict = Literal["FairlyValued", "Undervalued", "Overvalued"]
StabilityBand = Literal["high", "medium", "low"]

PROJECTION_YEARS = (5, 10)
_BAND_EPSILON = 1e-9


# ---------------------------------------------------------------------------
# Numeric helpers
# ---------------------------------------------------------------------------

def _is_num(v: Any) -> bool:
    return isinstance(v, (int, float)) and not isinstance(v, bool) and math.isfinite(v)


def _safe_div(a: Any, b: Any) -> float | None:
    """Return a/b or None if either is non-numeric or b == 0."""
    if not _is_num(a) or not _is_num(b) or b == 0:
        return None
    result = a / b
    return result if _is_num(result) else None


def _clamp(x: float, lo: float, hi: float) -> float:
    return max(lo, min(hi, x))


def _persisted(record: dict[str, Any], key: str) -> float | None:
    v = record.get(key)
    return float(v) if _is_num(v) else None


def _series(record: dict[str, Any], prefix: str, years: int = 10) -> list[float | None]:
    """Y1..Yn values for a series field; non-numeric entries become None."""
    out: list[float | None] = []
    for n in range(1, years + 1):
        v = record.get(f"{prefix}_y{n}")
        out.append(float(v) if _is_num(v) else None)
    return out


# ---------------------------------------------------------------------------
# Registry: one entry per derived field
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class DerivedMetricSpec:
    field: str
    formula: str
    fallback_sources: list[str] = field(default_factory=list)
    description: str = ""


DERIVED_METRIC_REGISTRY: dict[str, DerivedMetricSpec] = {
    "roic_stability": DerivedMetricSpec(
        field="roic_stability",
        formula="roic_10y_avg / roic_10y_std",
        fallback_sources=["persisted roic_stability", "mean/stdev of roic_y1..roic_y10"],
        description="Null unless std is finite and > 0.",
    ),
    "roic_stability_score": DerivedMetricSpec(
        field="roic_stability_score",
        formula="clamp(roic_stability * 30, 0, 100)",
        fallback_sources=["persisted roic_stability_score"],
    ),
    "fcf_margin": DerivedMetricSpec(
        field="fcf_margin",
        formula="free_cash_flow_y1 / revenue_y1",
        fallback_sources=["persisted fcf_margin", "free_cash_flow / revenue (trailing)"],
        description="Latest full fiscal year preferred over trailing figures.",
    ),
    "fcf_margin_median_10y": DerivedMetricSpec(
        field="fcf_margin_median_10y",
        formula="median(free_cash_flow_yN / revenue_yN)",
        fallback_sources=["persisted fcf_margin_median_10y"],
        description="Requires at least 3 valid fiscal years.",
    ),
    "revenue_growth_1y": DerivedMetricSpec(
        field="revenue_growth_1y",
        formula="(revenue_y1 - revenue_y2) / revenue_y2",
        description="Null unless revenue_y2 > 0. Decimal.",
    ),
    "projected_revenue": DerivedMetricSpec(
        field="projected_revenue_{5,10}y",
        formula="revenue * (1 + growth)^N",
        fallback_sources=["growth: revenue_growth_10y", "revenue_growth_5y", "revenue_growth_1y"],
    ),
    "projected_earnings": DerivedMetricSpec(
        field="projected_earnings_{5,10}y",
        formula="projected_revenue_N * net_profit_margin",
        fallback_sources=["margin: net_income / revenue"],
    ),
    "market_cap_to_earnings": DerivedMetricSpec(
        field="market_cap_to_earnings_{5,10}y",
        formula="market_cap / projected_earnings_N",
        description="Null when projected earnings <= 0 or market cap <= 0.",
    ),
    "dcf_verdict": DerivedMetricSpec(
        field="dcf_verdict",
        formula="dcf_implied_growth vs revenue_growth_10y / 100 (±0.03 band)",
        description="Undervalued when the market prices in less growth than the 10Y track record.",
    ),
    "dupont": DerivedMetricSpec(
        field="asset_turnover / financial_leverage / roe",
        formula="revenue / total_assets, total_assets / total_equity, net_income / total_equity",
        fallback_sources=["persisted values"],
    ),
}

DERIVED_FIELDS: tuple[str, ...] = (
    "roic_stability",
    "roic_stability_score",
    "roic_stability_band",
    "fcf_margin",
    "fcf_margin_median_10y",
    "revenue_growth_1y",
    "effective_growth_rate",
    "projected_revenue_5y",
    "projected_revenue_10y",
    "projected_earnings_5y",
    "projected_earnings_10y",
    "market_cap_to_earnings_5y",
    "market_cap_to_earnings_10y",
    "dcf_verdict",
    "asset_turnover",
    "financial_leverage",
    "roe",
)


# ---------------------------------------------------------------------------
# ROIC stability
# ---------------------------------------------------------------------------

def roic_10y_stats(record: dict[str, Any]) -> tuple[float | None, float | None]:
    """
    (avg, std) of ROIC over 10 years.
    Persisted roic_10y_avg / roic_10y_std win; otherwise computed from the
    roic_y1..roic_y10 series (sample stdev, at least 3 points).
    """
    avg = _persisted(record, "roic_10y_avg")
    std = _persisted(record, "roic_10y_std")
    if avg is not None and std is not None:
        return avg, std

    points = [v for v in _series(record, "roic") if v is not None]
    if len(points) < 3:
        return avg, std
    if avg is None:
        avg = statistics.fmean(points)
    if std is None:
        std = statistics.stdev(points)
    return avg, std


def roic_stability(record: dict[str, Any]) -> float | None:
    persisted = _persisted(record, "roic_stability")
    if persisted is not None:
        return persisted
    avg, std = roic_10y_stats(record)
    if not _is_num(avg) or not _is_num(std) or std <= 0:
        return None
    return _safe_div(avg, std)


def roic_stability_score(record: dict[str, Any]) -> float | None:
    persisted = _persisted(record, "roic_stability_score")
    if persisted is not None:
        return persisted
    stability = roic_stability(record)
    if stability is None:
        return None
    return _clamp(stability * config.ROIC_STABILITY_MULTIPLIER, 0.0, 100.0)


def roic_stability_band(score: float | None) -> StabilityBand | None:
    """Bucket a 0-100 stability score: high >= 70, medium >= 30, else low."""
    if not _is_num(score):
        return None
    if score >= config.ROIC_STABILITY_HIGH_BAND:
        return "high"
    if score >= config.ROIC_STABILITY_MEDIUM_BAND:
        return "medium"
    return "low"


# ---------------------------------------------------------------------------
# Cash flow quality
# ---------------------------------------------------------------------------

def fcf_margin(record: dict[str, Any]) -> float | None:
    persisted = _persisted(record, "fcf_margin")
    if persisted is not None:
        return persisted
    latest = _safe_div(record.get("free_cash_flow_y1"), record.get("revenue_y1"))
    if latest is not None:
        return latest
    return _safe_div(record.get("free_cash_flow"), record.get("revenue"))


def fcf_margin_median_10y(record: dict[str, Any]) -> float | None:
    persisted = _persisted(record, "fcf_margin_median_10y")
    if persisted is not None:
        return persisted
    margins = [
        m for m in (
            _safe_div(f, r)
            for f, r in zip(_series(record, "free_cash_flow"), _series(record, "revenue"))
        )
        if m is not None
    ]
    if len(margins) < 3:
        return None
    return statistics.median(margins)


# ---------------------------------------------------------------------------
# Growth and projections
# ---------------------------------------------------------------------------

def revenue_growth_1y(record: dict[str, Any]) -> float | None:
    y1 = record.get("revenue_y1")
    y2 = record.get("revenue_y2")
    if not _is_num(y1) or not _is_num(y2) or y2 <= 0:
        return None
    return (y1 - y2) / y2


def effective_growth_rate(record: dict[str, Any]) -> float | None:
    """10Y growth is preferred as the most stable, then 5Y, then computed 1Y."""
    for candidate in (
        record.get("revenue_growth_10y"),
        record.get("revenue_growth_5y"),
    ):
        if _is_num(candidate):
            return float(candidate)
    return revenue_growth_1y(record)


def projected_revenue(record: dict[str, Any], years: int) -> float | None:
    revenue = record.get("revenue")
    growth = effective_growth_rate(record)
    if not _is_num(revenue) or not _is_num(growth):
        return None
    try:
        result = revenue * math.pow(1 + growth, years)
    except (OverflowError, ValueError):
        return None
    return result if _is_num(result) else None


def _profit_margin(record: dict[str, Any]) -> float | None:
    margin = record.get("net_profit_margin")
    if _is_num(margin):
        return float(margin)
    return _safe_div(record.get("net_income"), record.get("revenue"))


def projected_earnings(record: dict[str, Any], years: int) -> float | None:
    revenue_n = projected_revenue(record, years)
    margin = _profit_margin(record)
    if revenue_n is None or margin is None:
        return None
    result = revenue_n * margin
    return result if _is_num(result) else None


def market_cap_to_earnings(record: dict[str, Any], years: int) -> float | None:
    """Negative or zero multiples are meaningless and return None."""
    earnings_n = projected_earnings(record, years)
    market_cap = record.get("market_cap")
    if earnings_n is None or earnings_n <= 0:
        return None
    if not _is_num(market_cap) or market_cap <= 0:
        return None
    return _safe_div(market_cap, earnings_n)


# ---------------------------------------------------------------------------
# DCF verdict
# ---------------------------------------------------------------------------

def dcf_verdict(record: dict[str, Any]) -> DcfVerdict | None:
    """
    Compare reverse-DCF implied growth (decimal) to the 10Y revenue growth
    track record (stored in percent, converted to decimal here).
    """
    implied = record.get("dcf_implied_growth")
    historical_pct = record.get("revenue_growth_10y")
    if not _is_num(implied) or not _is_num(historical_pct):
        return None
    historical = historical_pct / 100
    if abs(implied - historical) <= config.FAIR_VALUE_BAND + _BAND_EPSILON:
        return "FairlyValued"
    if implied < historical:
        return "Undervalued"
    return "Overvalued"


# ---------------------------------------------------------------------------
# DuPont decomposition
# ---------------------------------------------------------------------------

def asset_turnover(record: dict[str, Any]) -> float | None:
    persisted = _persisted(record, "asset_turnover")
    if persisted is not None:
        return persisted
    return _safe_div(record.get("revenue"), record.get("total_assets"))


def financial_leverage(record: dict[str, Any]) -> float | None:
    persisted = _persisted(record, "financial_leverage")
    if persisted is not None:
        return persisted
    return _safe_div(record.get("total_assets"), record.get("total_equity"))


def roe(record: dict[str, Any]) -> float | None:
    persisted = _persisted(record, "roe")
    if persisted is not None:
        return persisted
    return _safe_div(record.get("net_income"), record.get("total_equity"))


# ---------------------------------------------------------------------------
# View
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class DerivedMetricsView:
    """Read-only overlay of computed fields for one FundamentalsRecord."""

    roic_stability: float | None = None
    roic_stability_score: float | None = None
    roic_stability_band: StabilityBand | None = None
    fcf_margin: float | None = None
    fcf_margin_median_10y: float | None = None
    revenue_growth_1y: float | None = None
    effective_growth_rate: float | None = None
    projected_revenue_5y: float | None = None
    projected_revenue_10y: float | None = None
    projected_earnings_5y: float | None = None
    projected_earnings_10y: float | None = None
    market_cap_to_earnings_5y: float | None = None
    market_cap_to_earnings_10y: float | None = None
    dcf_verdict: DcfVerdict | None = None
    asset_turnover: float | None = None
    financial_leverage: float | None = None
    roe: float | None = None

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


def derive_metrics(record: dict[str, Any]) -> DerivedMetricsView:
    """Compute every derived metric for a record. Deterministic, never raises."""
    score = roic_stability_score(record)
    projections: dict[str, float | None] = {}
    for n in PROJECTION_YEARS:
        projections[f"projected_revenue_{n}y"] = projected_revenue(record, n)
        projections[f"projected_earnings_{n}y"] = projected_earnings(record, n)
        projections[f"market_cap_to_earnings_{n}y"] = market_cap_to_earnings(record, n)

    return DerivedMetricsView(
        roic_stability=roic_stability(record),
        roic_stability_score=score,
        roic_stability_band=roic_stability_band(score),
        fcf_margin=fcf_margin(record),
        fcf_margin_median_10y=fcf_margin_median_10y(record),
        revenue_growth_1y=revenue_growth_1y(record),
        effective_growth_rate=effective_growth_rate(record),
        dcf_verdict=dcf_verdict(record),
        asset_turnover=asset_turnover(record),
        financial_leverage=financial_leverage(record),
        roe=roe(record),
        **projections,
    )


def enrich_record(record: dict[str, Any]) -> dict[str, Any]:
    """Return a new row: the record with its derived fields laid over it."""
    return {**record, **derive_metrics(record).as_dict()}


def enrich_records(records: list[dict[str, Any]]) -> list[dict[str, Any]]:
    rows = [enrich_record(r) for r in records]
    logger.debug("[DerivedMetrics] enriched %d rows", len(rows))
    return rows
