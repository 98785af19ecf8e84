"""
Fundamentals source client.

GET {base}{endpoint}?offset&limit[&sortBy&sortOrder][&search]
  → {companies | rows: [...], total, hasMore}

Rows are normalized on arrival; nothing downstream sees wire field names.
Derived sort keys never reach the wire (rank_sort.fetch_sort_params).
"""

import logging
from typing import Any

from stockscreener import config
from stockscreener.api_clients._http import ApiClient
from stockscreener.normalizers.fundamentals_normalizer import normalize_records, parse_numeric
from stockscreener.services.rank_sort import SortSpec, fetch_sort_params

logger = logging.getLogger(__name__)

_ROW_KEYS = ("companies", "rows", "data", "items")


def endpoint_for(dataset: str) -> str:
    return config.DATASET_ENDPOINTS.get(dataset, config.DEFAULT_ENDPOINT)


def parse_page(payload: Any, offset: int) -> dict[str, Any]:
    """Normalize a page payload into {"rows", "total", "has_more"}."""
    raw_rows: Any = None
    total: Any = None
    has_more: Any = None

    if isinstance(payload, list):
        raw_rows = payload
    elif isinstance(payload, dict):
        for key in _ROW_KEYS:
            if isinstance(payload.get(key), list):
                raw_rows = payload[key]
                break
        total = parse_numeric(payload.get("total"))
        has_more = payload.get("hasMore", payload.get("has_more"))

    rows = normalize_records(raw_rows or [])
    total_n = int(total) if total is not None else offset + len(rows)
    if not isinstance(has_more, bool):
        has_more = offset + len(rows) < total_n
    return {"rows": rows, "total": total_n, "has_more": has_more}


class FundamentalsClient(ApiClient):
    async def fetch_page(
        self,
        dataset: str,
        offset: int = 0,
        limit: int | None = None,
        sort: SortSpec | None = None,
        search: str | None = None,
    ) -> dict[str, Any]:
        limit = limit if limit is not None else config.PAGE_LIMIT
        params: dict[str, Any] = {"offset": offset, "limit": limit}
        params.update(fetch_sort_params(sort))
        if search and search.strip():
            params["search"] = search.strip()

        path = endpoint_for(dataset)
        payload = await self._request("GET", path, params=params)
        page = parse_page(payload, offset)
        logger.info(
            "[Fundamentals] %s offset=%d limit=%d sort=%s → %d rows (total=%d)",
            dataset, offset, limit, params.get("sortBy"), len(page["rows"]), page["total"],
        )
        return page
