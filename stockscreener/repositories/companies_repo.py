"""
Companies repository.

Idempotency key: (dataset, symbol), one CompanySnapshot per company per dataset.

Upsert behavior:
  - incoming records are canonical FundamentalsRecords (already normalized)
  - only non-null incoming values overwrite the stored payload
  - promoted columns (name, market_cap) follow the merged payload
  - each record commits on its own; a failure rolls back, logs, and continues

Reads overlay the persisted derived columns on top of the payload so that the
derived-metric fallback chains find them first.
"""

import logging
from typing import Any

from sqlalchemy import and_, select
from sqlalchemy.orm import Session

from stockscreener.models import CompanySnapshot
from stockscreener.services.rank_sort import SortSpec, sort_rows

logger = logging.getLogger(__name__)

PERSISTED_DERIVED_FIELDS = ("roic_stability", "roic_stability_score", "fcf_margin", "fcf_margin_median_10y")


def _get(db: Session, dataset: str, symbol: str) -> CompanySnapshot | None:
    return db.scalars(
        select(CompanySnapshot).where(
            and_(CompanySnapshot.dataset == dataset, CompanySnapshot.symbol == symbol)
        )
    ).first()


def _row_to_record(row: CompanySnapshot) -> dict[str, Any]:
    record = dict(row.payload or {})
    record["symbol"] = row.symbol
    for field in PERSISTED_DERIVED_FIELDS:
        value = getattr(row, field)
        if value is not None:
            record[field] = value
    return record


def upsert_companies(db: Session, dataset: str, records: list[dict[str, Any]]) -> int:
    """Insert or patch CompanySnapshot rows. Returns number of rows written."""
    upserted = 0
    for record in records:
        symbol = record.get("symbol")
        if not symbol:
            continue

        clean = {k: v for k, v in record.items() if v is not None}
        existing = _get(db, dataset, symbol)

        if existing:
            payload = {**(existing.payload or {}), **clean}
            existing.payload = payload
            existing.name = payload.get("name")
            existing.market_cap = payload.get("market_cap")
            try:
                db.commit()
                upserted += 1
            except Exception as exc:
                db.rollback()
                logger.error("[DB][Companies] update failed for %s/%s: %s", dataset, symbol, exc)
        else:
            obj = CompanySnapshot(
                dataset=dataset,
                symbol=symbol,
                name=clean.get("name"),
                market_cap=clean.get("market_cap"),
                payload=clean,
            )
            try:
                db.add(obj)
                db.commit()
                upserted += 1
            except Exception as exc:
                db.rollback()
                logger.error("[DB][Companies] insert failed for %s/%s: %s", dataset, symbol, exc)

    logger.info("[DB][Companies] %s: upserted %d/%d records", dataset, upserted, len(records))
    return upserted


def get_company_records(db: Session, dataset: str) -> list[dict[str, Any]]:
    rows = db.scalars(
        select(CompanySnapshot)
        .where(CompanySnapshot.dataset == dataset)
        .order_by(CompanySnapshot.market_cap.desc().nulls_last(), CompanySnapshot.symbol)
    ).all()
    return [_row_to_record(r) for r in rows]


def dataset_exists(db: Session, dataset: str) -> bool:
    row = db.scalars(
        select(CompanySnapshot.id).where(CompanySnapshot.dataset == dataset).limit(1)
    ).first()
    return row is not None


def _matches(record: dict[str, Any], needle: str) -> bool:
    for field in ("symbol", "name"):
        value = record.get(field)
        if isinstance(value, str) and needle in value.lower():
            return True
    return False


def list_page(
    db: Session,
    dataset: str,
    offset: int = 0,
    limit: int = 50,
    sort: SortSpec | None = None,
    search: str | None = None,
) -> dict[str, Any]:
    """
    Fundamentals source contract: {companies, total, hasMore}.
    Default order is market cap descending.
    """
    records = get_company_records(db, dataset)
    needle = (search or "").strip().lower()
    if needle:
        records = [r for r in records if _matches(r, needle)]
    if sort is not None:
        records = sort_rows(records, sort)

    offset = max(offset, 0)
    page = records[offset:offset + max(limit, 0)]
    return {
        "companies": page,
        "total": len(records),
        "hasMore": offset + len(page) < len(records),
    }


def save_derived(db: Session, dataset: str, symbol: str, values: dict[str, Any]) -> bool:
    """Write persisted derived columns for one company. None values leave the column untouched."""
    row = _get(db, dataset, symbol)
    if row is None:
        return False
    for field in PERSISTED_DERIVED_FIELDS:
        value = values.get(field)
        if value is not None:
            setattr(row, field, value)
    try:
        db.commit()
    except Exception as exc:
        db.rollback()
        logger.error("[DB][Companies] derived update failed for %s/%s: %s", dataset, symbol, exc)
        return False
    return True
