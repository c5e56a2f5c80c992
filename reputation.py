import asyncio
import logging
from typing import Any, Dict, Optional

import httpx

from errors import FetchFailure
from schemas import ProfileAttributes

logger = logging.getLogger("gate.reputation")

# ======================================================
# Tunables
# ======================================================

CSGO_APP_ID = 730
REQUEST_TIMEOUT = 5.0        # per upstream call (seconds)
MAX_CONNECTIONS = 20
KEEPALIVE_CONNECTIONS = 5


class _NotFound(Exception):
    pass


class SteamReputationFetcher:
    """
    Looks up a player's Steam level, CS:GO playtime and rating.

    The three lookups run concurrently. A lookup that fails only
    blanks its own attribute; FetchFailure is raised when none
    of them produced a usable answer.
    """

    def __init__(
        self,
        *,
        steam_api_base_url: str,
        steam_api_key: str,
        rating_api_base_url: str,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self._steam_base = steam_api_base_url.rstrip("/")
        self._steam_key = steam_api_key
        self._rating_base = rating_api_base_url.rstrip("/")
        self._client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(REQUEST_TIMEOUT),
            limits=httpx.Limits(
                max_connections=MAX_CONNECTIONS,
                max_keepalive_connections=KEEPALIVE_CONNECTIONS,
            ),
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    # --------------------------------------------------
    # Public API
    # --------------------------------------------------

    async def fetch(self, steam_id64: str) -> ProfileAttributes:
        lookups = {
            "account_level": self._steam_level(steam_id64),
            "playtime_minutes": self._playtime_minutes(steam_id64),
            "rating": self._rating(steam_id64),
        }
        results = await asyncio.gather(*lookups.values(), return_exceptions=True)

        values: Dict[str, Any] = {}
        failures = []
        for name, result in zip(lookups, results):
            if isinstance(result, BaseException):
                logger.warning(f"{name} lookup failed for {steam_id64}: {type(result).__name__}: {result}")
                failures.append(name)
                values[name] = None
            else:
                values[name] = result

        if len(failures) == len(lookups):
            raise FetchFailure(f"All reputation lookups failed for {steam_id64}")

        return ProfileAttributes(**values)

    # --------------------------------------------------
    # Upstream calls
    # --------------------------------------------------

    async def _get_json(self, url: str, params: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
        resp = await self._client.get(url, params=params)
        if resp.status_code == 404:
            raise _NotFound(url)
        resp.raise_for_status()

        data = resp.json()
        if not isinstance(data, dict):
            raise FetchFailure(f"Malformed response from {url}")
        return data

    async def _steam_level(self, steam_id64: str) -> Optional[int]:
        data = await self._get_json(
            f"{self._steam_base}/IPlayerService/GetSteamLevel/v1/",
            params={"key": self._steam_key, "steamid": steam_id64},
        )
        level = data.get("response", {}).get("player_level")
        return int(level) if level is not None else None

    async def _playtime_minutes(self, steam_id64: str) -> Optional[int]:
        data = await self._get_json(
            f"{self._steam_base}/IPlayerService/GetOwnedGames/v0001/",
            params={"key": self._steam_key, "steamid": steam_id64, "format": "json"},
        )
        games = data.get("response", {}).get("games")
        if games is None:
            # Private profile: library not visible
            return None

        for game in games:
            if game.get("appid") == CSGO_APP_ID:
                return int(game.get("playtime_forever", 0))
        return 0

    async def _rating(self, steam_id64: str) -> Optional[float]:
        try:
            data = await self._get_json(f"{self._rating_base}/api/v1/players/{steam_id64}")
        except _NotFound:
            return None

        rating = data.get("rating")
        return float(rating) if rating is not None else None
