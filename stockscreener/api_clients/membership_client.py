"""
Membership source client (remote watchlist CRUD, bearer-token auth).

  GET    /api/watchlist                          → [{companySymbol, watchlistId}, ...]
  POST   /api/watchlist       {companySymbol, watchlistId?}
  DELETE /api/watchlist/{symbol}?watchlistId=
  POST   /api/watchlist/move  {companySymbol, fromWatchlistId, toWatchlistId}
  POST   /api/watchlist/copy  {companySymbol, fromWatchlistId, toWatchlistId}
"""

import logging
from typing import Any
from urllib.parse import quote

from stockscreener.api_clients._http import ApiClient
from stockscreener.normalizers.fundamentals_normalizer import normalize_membership

logger = logging.getLogger(__name__)


class MembershipClient(ApiClient):
    async def list_memberships(self) -> list[dict[str, Any]]:
        payload = await self._request("GET", "/api/watchlist")
        if isinstance(payload, dict):
            payload = payload.get("watchlist") or payload.get("items") or []
        if not isinstance(payload, list):
            return []
        entries = [e for e in (normalize_membership(raw) for raw in payload) if e is not None]
        logger.debug("[Membership] %d entries", len(entries))
        return entries

    async def add(self, symbol: str, watchlist_id: int | None = None) -> Any:
        body: dict[str, Any] = {"companySymbol": symbol}
        if watchlist_id is not None:
            body["watchlistId"] = watchlist_id
        return await self._request("POST", "/api/watchlist", json=body)

    async def remove(self, symbol: str, watchlist_id: int | None = None) -> Any:
        params = {"watchlistId": watchlist_id} if watchlist_id is not None else None
        return await self._request("DELETE", f"/api/watchlist/{quote(symbol, safe='')}", params=params)

    async def move(self, symbol: str, from_id: int, to_id: int) -> Any:
        body = {"companySymbol": symbol, "fromWatchlistId": from_id, "toWatchlistId": to_id}
        return await self._request("POST", "/api/watchlist/move", json=body)

    async def copy(self, symbol: str, from_id: int, to_id: int) -> Any:
        body = {"companySymbol": symbol, "fromWatchlistId": from_id, "toWatchlistId": to_id}
        return await self._request("POST", "/api/watchlist/copy", json=body)
