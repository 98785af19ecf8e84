import csv
import logging
import sys
from pathlib import Path

from sqlalchemy.orm import Session

from stockscreener import config
from stockscreener.database import Base, SessionLocal, engine
from stockscreener.normalizers.fundamentals_normalizer import normalize_records
from stockscreener.repositories import companies_repo

logging.basicConfig(level=logging.INFO, format="%(levelname)s: %(message)s")
logger = logging.getLogger(__name__)

NULL_VALUES = {"", "null", "none", "na", "nan", "n/a"}


def read_rows(csv_path: Path) -> list[dict[str, str | None]]:
    """CSV rows with the usual null spellings turned into None."""
    rows = []
    with csv_path.open("r", encoding="utf-8-sig", newline="") as handle:
        for row in csv.DictReader(handle):
            rows.append({
                k: (None if v is None or v.strip().lower() in NULL_VALUES else v)
                for k, v in row.items()
                if k
            })
    return rows


def import_csv(session: Session, csv_path: Path, dataset: str) -> tuple[int, int]:
    records = normalize_records(read_rows(csv_path))
    valid = [r for r in records if r["symbol"]]
    skipped_count = len(records) - len(valid)
    if skipped_count:
        logger.warning("%s: skipped %d rows with no symbol", csv_path.name, skipped_count)
    imported_count = companies_repo.upsert_companies(session, dataset, valid)
    return imported_count, skipped_count + (len(valid) - imported_count)


def run_import(export_dir: Path | None = None) -> None:
    """Import <dataset>.csv for every known dataset found in export_dir."""
    Base.metadata.create_all(bind=engine)
    export_dir = export_dir or Path(__file__).resolve().parents[2] / "data_exports"

    with SessionLocal() as session:
        for dataset in config.DATASET_ENDPOINTS:
            csv_path = export_dir / f"{dataset}.csv"
            if not csv_path.exists():
                logger.warning("Missing export file: %s", csv_path)
                continue

            imported_count, skipped_count = import_csv(session, csv_path, dataset)
            logger.info("%s -> imported=%s skipped=%s", csv_path.name, imported_count, skipped_count)


if __name__ == "__main__":
    run_import(Path(sys.argv[1]) if len(sys.argv) > 1 else None)
