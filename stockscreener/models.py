from datetime import datetime, timezone

from sqlalchemy import JSON, Column, DateTime, Float, Integer, String, UniqueConstraint

from stockscreener.database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CompanySnapshot(Base):
    """
    Latest fundamentals for one company in one dataset.

    `payload` holds the canonical FundamentalsRecord; the columns below are
    promoted copies used for lookups and for the persisted head of the
    derived-metric fallback chains.
    """

    __tablename__ = "company_snapshots"
    __table_args__ = (UniqueConstraint("dataset", "symbol", name="uq_company_snapshots_dataset_symbol"),)

    id = Column(Integer, primary_key=True, index=True)
    dataset = Column(String, nullable=False, index=True)
    symbol = Column(String, nullable=False, index=True)
    name = Column(String)
    market_cap = Column(Float)
    payload = Column(JSON, nullable=False, default=dict)

    # persisted derived metrics
    roic_stability = Column(Float)
    roic_stability_score = Column(Float)
    fcf_margin = Column(Float)
    fcf_margin_median_10y = Column(Float)

    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)


class UserLayout(Base):
    """A user's saved column bundle. `columns` is an ordered list of column ids."""

    __tablename__ = "user_layouts"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String, nullable=False, index=True)
    name = Column(String, nullable=False)
    columns = Column(JSON, nullable=False, default=list)
    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)
