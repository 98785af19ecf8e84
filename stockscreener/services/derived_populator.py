"""
Derived metrics population job.

Recomputes the persistable derived metrics for every company in a dataset
from its stored payload and writes them to the CompanySnapshot columns,
so later reads hit the "persisted value" head of each fallback chain.

Persisted: roic_stability, roic_stability_score, fcf_margin, fcf_margin_median_10y
Rules:
  - computed from the raw payload only; previously persisted values are ignored
  - a metric that cannot be computed leaves its column untouched
  - one failing company never stops the run

Usage:
    python -m stockscreener.services.derived_populator [dataset ...]
"""

import logging
import sys
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from stockscreener import config
from stockscreener.models import CompanySnapshot
from stockscreener.repositories import companies_repo
from stockscreener.services import derived_metrics

logger = logging.getLogger(__name__)


def compute_persistable(payload: dict[str, Any]) -> dict[str, Any]:
    record = {k: v for k, v in payload.items() if k not in companies_repo.PERSISTED_DERIVED_FIELDS}
    return {
        "roic_stability": derived_metrics.roic_stability(record),
        "roic_stability_score": derived_metrics.roic_stability_score(record),
        "fcf_margin": derived_metrics.fcf_margin(record),
        "fcf_margin_median_10y": derived_metrics.fcf_margin_median_10y(record),
    }


def populate_dataset(db: Session, dataset: str) -> dict[str, Any]:
    rows = db.scalars(select(CompanySnapshot).where(CompanySnapshot.dataset == dataset)).all()
    summary = {"dataset": dataset, "processed": 0, "updated": 0, "skipped": 0, "failed": 0}

    for row in rows:
        summary["processed"] += 1
        values = compute_persistable(row.payload or {})
        if all(v is None for v in values.values()):
            summary["skipped"] += 1
            continue
        if companies_repo.save_derived(db, dataset, row.symbol, values):
            summary["updated"] += 1
        else:
            summary["failed"] += 1

    logger.info(
        "[DB][Companies] %s derived metrics: processed=%d updated=%d skipped=%d failed=%d",
        dataset, summary["processed"], summary["updated"], summary["skipped"], summary["failed"],
    )
    return summary


def populate_all(db: Session, datasets: list[str] | None = None) -> list[dict[str, Any]]:
    return [populate_dataset(db, ds) for ds in (datasets or list(config.DATASET_ENDPOINTS))]


if __name__ == "__main__":
    from stockscreener.database import Base, SessionLocal, engine

    logging.basicConfig(level=logging.INFO, format="%(levelname)s: %(message)s")
    Base.metadata.create_all(bind=engine)
    with SessionLocal() as session:
        populate_all(session, sys.argv[1:] or None)
