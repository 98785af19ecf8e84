"""
Tier / flag source client.

  GET /api/auth/user → {subscriptionTier, ...}
  GET /api/config    → {flags: {key: {enabled?, rolloutPercent?}}}

Anonymous users (no token, 401) resolve to the free tier. Flags fall back to
an empty set when the config endpoint is unavailable.
"""

import logging

from stockscreener.api_clients._http import ApiClient
from stockscreener.services.access_gate import AccessContext, FeatureFlags
from stockscreener.services.errors import SourceFetchError

logger = logging.getLogger(__name__)

FREE_TIER = "free"


class AccountClient(ApiClient):
    async def fetch_tier(self) -> str:
        if not self.token:
            return FREE_TIER
        try:
            payload = await self._request("GET", "/api/auth/user")
        except SourceFetchError as exc:
            if exc.status_code in (401, 403):
                return FREE_TIER
            raise
        tier = payload.get("subscriptionTier") if isinstance(payload, dict) else None
        return tier if isinstance(tier, str) and tier.strip() else FREE_TIER

    async def fetch_flags(self) -> FeatureFlags:
        try:
            payload = await self._request("GET", "/api/config")
        except SourceFetchError as exc:
            logger.warning("[Account] flags unavailable, using defaults: %s", exc)
            return FeatureFlags()
        return FeatureFlags.from_payload(payload)

    async def access_context(self) -> AccessContext:
        tier = await self.fetch_tier()
        flags = await self.fetch_flags()
        return AccessContext.from_account(tier, flags)
