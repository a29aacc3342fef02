"""
Cached search: geocoding, nearby places (with optional events) and photos.

Cache keys are built from every parameter that affects the result and
never from caller identity, so identical queries from different clients
share one upstream call.
"""
import calendar
import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple

from datemaker.core.cache import (
    EVENTS_TTL,
    GEOCODE_TTL,
    PHOTO_TTL,
    PLACES_TTL,
    ReadThroughCache,
    cache_key,
)
from datemaker.core.errors import ProviderUnavailableError, ValidationError
from datemaker.features.ledger.models import utcnow
from datemaker.features.search.providers import GoogleMapsClient, TicketmasterClient

logger = logging.getLogger("datemaker")

MIN_KEYWORD_LENGTH = 3
EVENT_RADIUS_MILES = 25
EVENT_PAGE_SIZE = 20
DATE_RANGES = {"today", "thisweek", "thismonth", "custom"}

_TM_FORMAT = "%Y-%m-%dT%H:%M:%SZ"


def split_keywords(keyword: Optional[str]) -> List[str]:
    if not keyword:
        return []
    return [word for word in keyword.split(" ") if len(word) >= MIN_KEYWORD_LENGTH]


def event_window(date_range: Optional[str], selected_date: Optional[str], now: datetime) -> Dict[str, str]:
    """Ticketmaster start/end filters for a named date range."""
    if date_range == "today":
        day = now.strftime("%Y-%m-%d")
        return {"startDateTime": f"{day}T00:00:00Z", "endDateTime": f"{day}T23:59:59Z"}
    if date_range == "thisweek":
        return {"startDateTime": now.strftime(_TM_FORMAT), "endDateTime": (now + timedelta(days=7)).strftime(_TM_FORMAT)}
    if date_range == "thismonth":
        last_day = calendar.monthrange(now.year, now.month)[1]
        month_end = now.replace(day=last_day, hour=23, minute=59, second=59)
        return {"startDateTime": now.strftime(_TM_FORMAT), "endDateTime": month_end.strftime(_TM_FORMAT)}
    if date_range == "custom" and selected_date:
        return {"startDateTime": f"{selected_date}T00:00:00Z", "endDateTime": f"{selected_date}T23:59:59Z"}
    return {}


def _to_float(value: Any, default: float) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def event_to_place(event: Dict[str, Any], lat: float, lng: float) -> Dict[str, Any]:
    """Shape a Ticketmaster event like a nearby-search place result."""
    venues = (event.get("_embedded") or {}).get("venues") or [{}]
    venue = venues[0] or {}
    location = venue.get("location") or {}
    images = event.get("images") or []
    prices = event.get("priceRanges") or []
    start = (event.get("dates") or {}).get("start") or {}

    price_range = None
    if prices:
        price_range = f"${prices[0].get('min')}-${prices[0].get('max')}"

    return {
        "place_id": f"ticketmaster_{event.get('id')}",
        "name": event.get("name"),
        "vicinity": (venue.get("address") or {}).get("line1") or venue.get("name") or "",
        "geometry": {
            "location": {
                "lat": _to_float(location.get("latitude"), lat),
                "lng": _to_float(location.get("longitude"), lng),
            }
        },
        "rating": None,
        "photos": [{"photo_reference": images[0].get("url"), "isDirectUrl": True}] if images else [],
        "types": ["event"],
        "isEvent": True,
        "eventDate": start.get("localDate"),
        "eventTime": start.get("localTime"),
        "priceRange": price_range,
        "website": event.get("url"),
        "venueName": venue.get("name"),
    }


class SearchService:
    def __init__(
        self,
        cache: ReadThroughCache,
        maps: GoogleMapsClient,
        events: TicketmasterClient,
        now_fn: Optional[Callable[[], datetime]] = None,
    ):
        self.cache = cache
        self.maps = maps
        self.events = events
        self.now_fn = now_fn or utcnow

    async def geocode(self, address: Optional[str]) -> Dict[str, Any]:
        if not address or not address.strip():
            raise ValidationError("Address is required")
        key = cache_key("geocode", address.strip().lower())
        return await self.cache.get_or_compute(key, GEOCODE_TTL, lambda: self.maps.geocode(address))

    async def search_places(
        self,
        lat: float,
        lng: float,
        radius: Optional[int] = None,
        keyword: Optional[str] = None,
        include_events: bool = False,
        date_range: Optional[str] = None,
        selected_date: Optional[str] = None,
        refresh: bool = False,
    ) -> Dict[str, Any]:
        keyword = keyword.strip() if keyword else None
        if date_range and date_range not in DATE_RANGES:
            raise ValidationError(f"Unknown dateRange: {date_range}")

        key = cache_key(
            "places", lat, lng, radius, keyword, include_events, date_range, selected_date, refresh=refresh
        )

        async def compute() -> Dict[str, Any]:
            results = await self._nearby(lat, lng, radius, keyword)
            if include_events:
                results.extend(await self._events(lat, lng, keyword, date_range, selected_date, refresh))
            logger.info("search.places_fetched", extra={"result_count": len(results), "refresh": refresh})
            return {"results": results}

        return await self.cache.get_or_compute(key, PLACES_TTL, compute)

    async def _nearby(self, lat: float, lng: float, radius: Optional[int], keyword: Optional[str]) -> List[Dict[str, Any]]:
        keywords = split_keywords(keyword)
        if not keywords:
            return await self.maps.nearby_search(lat, lng, radius)

        seen = set()
        results: List[Dict[str, Any]] = []
        failures = 0
        for word in keywords:
            try:
                places = await self.maps.nearby_search(lat, lng, radius, word)
            except ProviderUnavailableError:
                failures += 1
                logger.warning("search.keyword_failed", extra={"keyword": word})
                continue
            for place in places:
                place_id = place.get("place_id")
                if place_id in seen:
                    continue
                seen.add(place_id)
                results.append(place)

        if failures == len(keywords):
            # Nothing succeeded; do not let an empty result get cached
            raise ProviderUnavailableError("Failed to search places", provider=self.maps.name)
        return results

    async def _events(
        self,
        lat: float,
        lng: float,
        keyword: Optional[str],
        date_range: Optional[str],
        selected_date: Optional[str],
        refresh: bool,
    ) -> List[Dict[str, Any]]:
        if not self.events.configured:
            return []

        key = cache_key("events", lat, lng, keyword, date_range, selected_date, refresh=refresh)

        async def compute() -> List[Dict[str, Any]]:
            params: Dict[str, Any] = {
                "latlong": f"{lat},{lng}",
                "radius": EVENT_RADIUS_MILES,
                "unit": "miles",
                "size": EVENT_PAGE_SIZE,
                "sort": "date,asc",
            }
            if keyword:
                params["keyword"] = keyword
            params.update(event_window(date_range, selected_date, self.now_fn()))
            raw = await self.events.search_events(params)
            return [event_to_place(event, lat, lng) for event in raw]

        try:
            return await self.cache.get_or_compute(key, EVENTS_TTL, compute)
        except ProviderUnavailableError:
            # Places are still useful without events
            logger.warning("search.events_failed")
            return []

    async def photo(self, photo_reference: Optional[str]) -> Tuple[bytes, str]:
        if not photo_reference:
            raise ValidationError("Photo reference is required")

        async def compute() -> Dict[str, str]:
            return {"url": self.maps.photo_url(photo_reference)}

        cached = await self.cache.get_or_compute(cache_key("photo", photo_reference), PHOTO_TTL, compute)
        return await self.maps.fetch_photo(cached["url"])
