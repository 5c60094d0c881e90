"""Reverse geocoding of post coordinates into a neighbourhood label."""
from __future__ import annotations

import asyncio
import logging
from typing import Optional
from urllib.parse import quote

import aiohttp

_log = logging.getLogger(__name__)

UNKNOWN_LOCATION = "Unknown Location"
DEFAULT_USER_AGENT = "CommunityExchangeBot/1.0 (Discord Exchange Platform)"


def maps_url(label: str, lat: float, lon: float) -> str:
    return f"https://www.google.com/maps/search/{quote(label)}/@{lat},{lon},15z"


class NeighborhoodResolver:
    """Client for the OpenStreetMap Nominatim reverse endpoint."""

    def __init__(
        self,
        base_url: str = "https://nominatim.openstreetmap.org",
        *,
        user_agent: str = DEFAULT_USER_AGENT,
        request_timeout: float = 5.0,
        session: Optional[aiohttp.ClientSession] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.user_agent = user_agent
        self.request_timeout = request_timeout
        self._session = session
        self._owns_session = session is None

    async def close(self) -> None:
        if self._owns_session and self._session is not None:
            await self._session.close()

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None:
            self._session = aiohttp.ClientSession()
        return self._session

    async def reverse(self, lat: float, lon: float) -> str:
        """Return ``"<area>, <city>"`` for the coordinates.

        Lookup failures never reach the caller; they collapse to
        ``Unknown Location`` so a post can still be published.
        """

        params = {"lat": str(lat), "lon": str(lon), "format": "json"}
        try:
            async with self._get_session().get(
                f"{self.base_url}/reverse",
                params=params,
                headers={"User-Agent": self.user_agent},
                timeout=self.request_timeout,
            ) as resp:
                if resp.status != 200:
                    _log.warning("Reverse geocoding %s,%s returned HTTP %s", lat, lon, resp.status)
                    return UNKNOWN_LOCATION
                payload = await resp.json()
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError):
            _log.warning("Reverse geocoding %s,%s failed", lat, lon, exc_info=True)
            return UNKNOWN_LOCATION

        address = payload.get("address") if isinstance(payload, dict) else None
        if not isinstance(address, dict):
            return UNKNOWN_LOCATION

        parts = [
            address.get("suburb") or address.get("neighbourhood") or address.get("hamlet"),
            address.get("city") or address.get("town") or address.get("village"),
            address.get("state") or address.get("province"),
            address.get("country"),
        ]
        parts = [part for part in parts if part]
        if not parts:
            return UNKNOWN_LOCATION
        return ", ".join(parts[:2])
