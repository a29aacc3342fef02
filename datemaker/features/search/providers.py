"""
Upstream search providers: Google Maps (geocode, nearby search, photos)
and Ticketmaster (events).

Thin httpx clients. Every call is bounded by the configured timeout and
transport failures surface as ProviderUnavailableError.
"""
import logging
from typing import Any, Dict, List, Optional, Tuple

import httpx

from datemaker.core.errors import ProviderUnavailableError

logger = logging.getLogger("datemaker")

GOOGLE_GEOCODE_URL = "https://maps.googleapis.com/maps/api/geocode/json"
GOOGLE_NEARBY_URL = "https://maps.googleapis.com/maps/api/place/nearbysearch/json"
GOOGLE_PHOTO_URL = "https://maps.googleapis.com/maps/api/place/photo"
TICKETMASTER_EVENTS_URL = "https://app.ticketmaster.com/discovery/v2/events.json"

DEFAULT_RADIUS_METERS = 10000
PHOTO_MAX_WIDTH = 800


class _HttpProvider:
    name = "provider"

    def __init__(self, api_key: Optional[str], timeout_seconds: float = 10.0, client: Optional[httpx.AsyncClient] = None):
        self.api_key = api_key
        self.timeout = httpx.Timeout(timeout_seconds)
        self._client = client

    @property
    def configured(self) -> bool:
        return bool(self.api_key)

    def _require_key(self) -> str:
        if not self.api_key:
            raise ProviderUnavailableError(f"{self.name} API key not configured", provider=self.name)
        return self.api_key

    async def _get(self, url: str, params: Optional[Dict[str, Any]] = None) -> httpx.Response:
        try:
            if self._client is not None:
                response = await self._client.get(url, params=params, timeout=self.timeout, follow_redirects=True)
            else:
                async with httpx.AsyncClient(timeout=self.timeout, follow_redirects=True) as client:
                    response = await client.get(url, params=params)
            response.raise_for_status()
        except httpx.HTTPError as e:
            logger.warning("provider.request_failed", extra={"provider": self.name, "reason": e.__class__.__name__})
            raise ProviderUnavailableError(f"{self.name} request failed", provider=self.name)
        return response

    async def _get_json(self, url: str, params: Dict[str, Any]) -> Dict[str, Any]:
        response = await self._get(url, params)
        try:
            data = response.json()
        except ValueError:
            raise ProviderUnavailableError(f"{self.name} returned invalid JSON", provider=self.name)
        if not isinstance(data, dict):
            raise ProviderUnavailableError(f"{self.name} returned invalid JSON", provider=self.name)
        return data


class GoogleMapsClient(_HttpProvider):
    name = "google_maps"

    async def geocode(self, address: str) -> Dict[str, Any]:
        return await self._get_json(GOOGLE_GEOCODE_URL, {"address": address, "key": self._require_key()})

    async def nearby_search(
        self,
        lat: float,
        lng: float,
        radius: Optional[int] = None,
        keyword: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        params: Dict[str, Any] = {
            "location": f"{lat},{lng}",
            "radius": radius or DEFAULT_RADIUS_METERS,
            "key": self._require_key(),
        }
        if keyword:
            params["keyword"] = keyword
        data = await self._get_json(GOOGLE_NEARBY_URL, params)
        return list(data.get("results") or [])

    def photo_url(self, photo_reference: str, max_width: int = PHOTO_MAX_WIDTH) -> str:
        request = httpx.Request(
            "GET",
            GOOGLE_PHOTO_URL,
            params={"maxwidth": max_width, "photoreference": photo_reference, "key": self._require_key()},
        )
        return str(request.url)

    async def fetch_photo(self, url: str) -> Tuple[bytes, str]:
        response = await self._get(url)
        return response.content, response.headers.get("content-type", "image/jpeg")


class TicketmasterClient(_HttpProvider):
    name = "ticketmaster"

    async def search_events(self, params: Dict[str, Any]) -> List[Dict[str, Any]]:
        query = dict(params)
        query["apikey"] = self._require_key()
        data = await self._get_json(TICKETMASTER_EVENTS_URL, query)
        return list((data.get("_embedded") or {}).get("events") or [])
