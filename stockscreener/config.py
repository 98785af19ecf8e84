"""
Runtime configuration.

Loads .env from the repo root (never overriding values already exported in
the shell), then exposes module-level constants read from os.environ.

Business thresholds below are product decisions carried over from the
dashboard UI. They are tunable, not derived from first principles.
"""

import os
from pathlib import Path

from dotenv import load_dotenv

_env_path = Path(__file__).resolve().parent.parent / ".env"
load_dotenv(_env_path, override=False)


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError:
        return default


# ---------------------------------------------------------------------------
# Remote sources
# ---------------------------------------------------------------------------
API_BASE_URL: str = os.environ.get(
    "STOCKSCREENER_API_BASE_URL", "https://findgreatstocks-production.up.railway.app"
)
HTTP_TIMEOUT_SECONDS: float = _env_float("STOCKSCREENER_HTTP_TIMEOUT", 30.0)
HTTP_MAX_RETRIES: int = _env_int("STOCKSCREENER_HTTP_MAX_RETRIES", 3)

# ---------------------------------------------------------------------------
# Service-side snapshot store
# ---------------------------------------------------------------------------
_DB_PATH = Path(__file__).resolve().parent / "stockscreener.db"
DATABASE_URL: str = os.environ.get("STOCKSCREENER_DATABASE_URL", f"sqlite:///{_DB_PATH}")

# ---------------------------------------------------------------------------
# Datasets / table
# ---------------------------------------------------------------------------
DATASET_ENDPOINTS: dict[str, str] = {
    "sp500": "/api/sp500",
    "nasdaq100": "/api/nasdaq100",
    "dowjones": "/api/dowjones",
    "ftse100": "/api/ftse100",
}
DEFAULT_ENDPOINT: str = "/api/companies"

# One universe stays fully free regardless of tier.
FREE_DATASET: str = os.environ.get("STOCKSCREENER_FREE_DATASET", "dowjones")

PAGE_LIMIT: int = _env_int("STOCKSCREENER_PAGE_LIMIT", 50)
# Size of the unsorted page fetched when sorting by a derived column locally.
DERIVED_FETCH_LIMIT: int = _env_int("STOCKSCREENER_DERIVED_FETCH_LIMIT", 1000)
CACHE_TTL_SECONDS: float = _env_float("STOCKSCREENER_CACHE_TTL_SECONDS", 300.0)

# ---------------------------------------------------------------------------
# Business thresholds
# ---------------------------------------------------------------------------
FAIR_VALUE_BAND: float = 0.03           # |implied - historical| <= 3 pts → fairly valued
ROIC_STABILITY_MULTIPLIER: float = 30.0
ROIC_STABILITY_HIGH_BAND: float = 70.0
ROIC_STABILITY_MEDIUM_BAND: float = 30.0

# ---------------------------------------------------------------------------
# Access gate
# ---------------------------------------------------------------------------
# Feature flag that unlocks premium columns/layouts for a user regardless of tier.
PREMIUM_OVERRIDE_FLAG: str = os.environ.get("STOCKSCREENER_PREMIUM_OVERRIDE_FLAG", "premiumPreview")
