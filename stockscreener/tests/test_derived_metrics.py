"""
Acceptance tests: derived metrics calculator

Rules:
  - every metric: persisted value → computed → None
  - null inputs propagate as None, never as 0
  - derive_metrics is a pure function of the record
  - 10Y growth always wins the projection growth fallback
"""

import math

import pytest

from stockscreener.services import derived_metrics as dm
from stockscreener.services.derived_metrics import DerivedMetricsView, derive_metrics, enrich_record


def _record(**kw):
    return dict(kw)


# ---------------------------------------------------------------------------
# Scenarios
# ---------------------------------------------------------------------------

def test_projected_revenue_5y_scenario():
    """revenue=100, growth10Y=0.10 → 100 * 1.1^5 ≈ 161.05"""
    rec = _record(revenue=100.0, revenue_growth_10y=0.10)
    assert dm.projected_revenue(rec, 5) == pytest.approx(161.051, rel=1e-9)
    assert derive_metrics(rec).projected_revenue_5y == pytest.approx(161.05, abs=0.01)


def test_roic_stability_scenario_clamps_score():
    """avg=0.20, std=0.05 → stability 4.0, score clamped from 120 to 100."""
    rec = _record(roic_10y_avg=0.20, roic_10y_std=0.05)
    view = derive_metrics(rec)
    assert view.roic_stability == pytest.approx(4.0)
    assert view.roic_stability_score == 100.0
    assert view.roic_stability_band == "high"


def test_dcf_verdict_undervalued_scenario():
    """implied 0.08 vs 10Y growth 12% → |0.08-0.12| = 0.04 > 0.03, implied < historical."""
    rec = _record(dcf_implied_growth=0.08, revenue_growth_10y=12)
    assert dm.dcf_verdict(rec) == "Undervalued"


# ---------------------------------------------------------------------------
# Determinism
# ---------------------------------------------------------------------------

@pytest.mark.parametrize("rec", [
    {},
    {"revenue": 100.0, "revenue_growth_5y": 0.07, "net_profit_margin": 0.2, "market_cap": 500.0},
    {"roic_y1": 0.1, "roic_y2": 0.12, "roic_y3": 0.14, "free_cash_flow": 5.0, "revenue": 50.0},
    {"dcf_implied_growth": 0.2, "revenue_growth_10y": 3.0, "total_assets": 10.0, "total_equity": 0.0},
])
def test_derive_metrics_is_deterministic(rec):
    before = dict(rec)
    assert derive_metrics(rec) == derive_metrics(rec)
    assert rec == before


def test_enrich_record_returns_new_dict():
    rec = {"symbol": "X", "revenue": 100.0, "revenue_growth_10y": 0.1}
    out = enrich_record(rec)
    assert out is not rec
    assert "projected_revenue_5y" not in rec
    assert out["symbol"] == "X"
    assert set(DerivedMetricsView().as_dict()) <= set(out)


# ---------------------------------------------------------------------------
# ROIC stability
# ---------------------------------------------------------------------------

def test_roic_stability_none_when_std_zero_or_missing():
    assert dm.roic_stability(_record(roic_10y_avg=0.2, roic_10y_std=0.0)) is None
    assert dm.roic_stability(_record(roic_10y_avg=0.2)) is None
    assert dm.roic_stability_score(_record(roic_10y_avg=0.2)) is None


def test_roic_stability_prefers_persisted_value():
    rec = _record(roic_stability=1.5, roic_10y_avg=0.2, roic_10y_std=0.05)
    assert dm.roic_stability(rec) == 1.5
    assert dm.roic_stability_score(rec) == pytest.approx(45.0)


def test_roic_stability_computed_from_series_when_stats_absent():
    rec = {f"roic_y{n}": v for n, v in enumerate([0.10, 0.12, 0.14], start=1)}
    # mean 0.12, sample stdev 0.02
    assert dm.roic_stability(rec) == pytest.approx(6.0)


def test_roic_series_needs_three_points():
    rec = {"roic_y1": 0.1, "roic_y2": 0.2}
    assert dm.roic_stability(rec) is None


def test_negative_stability_clamps_to_zero():
    rec = _record(roic_10y_avg=-0.1, roic_10y_std=0.05)
    assert dm.roic_stability_score(rec) == 0.0
    assert dm.roic_stability_band(0.0) == "low"


@pytest.mark.parametrize("score,band", [(70, "high"), (69.9, "medium"), (30, "medium"), (29.9, "low"), (None, None)])
def test_stability_bands(score, band):
    assert dm.roic_stability_band(score) == band


# ---------------------------------------------------------------------------
# FCF margin
# ---------------------------------------------------------------------------

def test_fcf_margin_prefers_latest_fiscal_year():
    rec = _record(free_cash_flow_y1=20.0, revenue_y1=100.0, free_cash_flow=1.0, revenue=2.0)
    assert dm.fcf_margin(rec) == pytest.approx(0.2)


def test_fcf_margin_falls_back_to_trailing():
    rec = _record(free_cash_flow_y1=20.0, revenue_y1=0.0, free_cash_flow=5.0, revenue=50.0)
    assert dm.fcf_margin(rec) == pytest.approx(0.1)


def test_fcf_margin_persisted_wins():
    assert dm.fcf_margin(_record(fcf_margin=0.33, free_cash_flow=5.0, revenue=50.0)) == 0.33


def test_fcf_margin_none_without_inputs():
    assert dm.fcf_margin(_record(free_cash_flow=5.0)) is None


def test_fcf_margin_median_needs_three_years():
    rec = {"free_cash_flow_y1": 10.0, "revenue_y1": 100.0,
           "free_cash_flow_y2": 30.0, "revenue_y2": 100.0}
    assert dm.fcf_margin_median_10y(rec) is None
    rec.update({"free_cash_flow_y3": 20.0, "revenue_y3": 100.0})
    assert dm.fcf_margin_median_10y(rec) == pytest.approx(0.2)


# ---------------------------------------------------------------------------
# Growth fallback chain
# ---------------------------------------------------------------------------

def test_revenue_growth_1y_requires_positive_prior_year():
    assert dm.revenue_growth_1y(_record(revenue_y1=110.0, revenue_y2=100.0)) == pytest.approx(0.1)
    assert dm.revenue_growth_1y(_record(revenue_y1=110.0, revenue_y2=0.0)) is None
    assert dm.revenue_growth_1y(_record(revenue_y1=110.0, revenue_y2=-5.0)) is None


@pytest.mark.parametrize("g5,y1,y2", [(0.5, 200.0, 100.0), (None, 10.0, 100.0), (-0.3, None, None)])
def test_10y_growth_always_chosen_when_present(g5, y1, y2):
    rec = _record(revenue_growth_10y=0.04, revenue_growth_5y=g5, revenue_y1=y1, revenue_y2=y2)
    assert dm.effective_growth_rate(rec) == 0.04


def test_growth_falls_back_to_5y_then_1y():
    assert dm.effective_growth_rate(_record(revenue_growth_5y=0.07)) == 0.07
    assert dm.effective_growth_rate(_record(revenue_y1=120.0, revenue_y2=100.0)) == pytest.approx(0.2)
    assert dm.effective_growth_rate(_record()) is None


def test_projection_none_when_revenue_or_growth_missing():
    assert dm.projected_revenue(_record(revenue_growth_10y=0.1), 5) is None
    assert dm.projected_revenue(_record(revenue=100.0), 5) is None


# ---------------------------------------------------------------------------
# Earnings projections / multiples
# ---------------------------------------------------------------------------

def test_projected_earnings_uses_margin_then_net_income_ratio():
    rec = _record(revenue=100.0, revenue_growth_10y=0.0, net_profit_margin=0.25)
    assert dm.projected_earnings(rec, 10) == pytest.approx(25.0)
    rec = _record(revenue=100.0, revenue_growth_10y=0.0, net_income=10.0)
    assert dm.projected_earnings(rec, 10) == pytest.approx(10.0)


def test_projected_earnings_none_without_margin():
    rec = _record(revenue=100.0, revenue_growth_10y=0.1)
    assert dm.projected_earnings(rec, 5) is None


def test_market_cap_to_earnings():
    rec = _record(revenue=100.0, revenue_growth_10y=0.0, net_profit_margin=0.1, market_cap=200.0)
    assert dm.market_cap_to_earnings(rec, 5) == pytest.approx(20.0)


def test_market_cap_to_earnings_none_for_negative_earnings_or_cap():
    losing = _record(revenue=100.0, revenue_growth_10y=0.0, net_profit_margin=-0.1, market_cap=200.0)
    assert dm.market_cap_to_earnings(losing, 5) is None
    no_cap = _record(revenue=100.0, revenue_growth_10y=0.0, net_profit_margin=0.1, market_cap=0.0)
    assert dm.market_cap_to_earnings(no_cap, 5) is None


def test_huge_growth_overflow_is_none():
    rec = _record(revenue=1e300, revenue_growth_10y=1e10)
    assert dm.projected_revenue(rec, 10) is None


# ---------------------------------------------------------------------------
# DCF verdict
# ---------------------------------------------------------------------------

def test_dcf_verdict_fair_inside_band():
    assert dm.dcf_verdict(_record(dcf_implied_growth=0.10, revenue_growth_10y=12)) == "FairlyValued"


def test_dcf_verdict_band_edge_is_fair():
    assert dm.dcf_verdict(_record(dcf_implied_growth=0.15, revenue_growth_10y=12)) == "FairlyValued"


def test_dcf_verdict_overvalued():
    assert dm.dcf_verdict(_record(dcf_implied_growth=0.20, revenue_growth_10y=12)) == "Overvalued"


def test_dcf_verdict_none_on_missing_or_non_finite():
    assert dm.dcf_verdict(_record(dcf_implied_growth=0.1)) is None
    assert dm.dcf_verdict(_record(dcf_implied_growth=math.nan, revenue_growth_10y=5)) is None


# ---------------------------------------------------------------------------
# DuPont
# ---------------------------------------------------------------------------

def test_dupont_fallbacks():
    rec = _record(revenue=50.0, net_income=5.0, total_assets=100.0, total_equity=40.0)
    assert dm.asset_turnover(rec) == pytest.approx(0.5)
    assert dm.financial_leverage(rec) == pytest.approx(2.5)
    assert dm.roe(rec) == pytest.approx(0.125)


def test_dupont_persisted_and_zero_equity():
    assert dm.roe(_record(roe=0.3, net_income=5.0, total_equity=40.0)) == 0.3
    assert dm.financial_leverage(_record(total_assets=100.0, total_equity=0.0)) is None
