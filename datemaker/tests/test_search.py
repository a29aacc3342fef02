"""Cached search over Google Maps and Ticketmaster (httpx mock transport)."""
from datetime import datetime, timezone

import httpx
import pytest
from fastapi.testclient import TestClient

from datemaker.core.cache import CacheAvailability, ReadThroughCache, RedisCacheStore
from datemaker.core.errors import ProviderUnavailableError, ValidationError
from datemaker.features.search.providers import GoogleMapsClient, TicketmasterClient
from datemaker.features.search.service import (
    SearchService,
    event_to_place,
    event_window,
    split_keywords,
)
from datemaker.tests.mocks import FakeRedis, build_test_app

NOW = datetime(2026, 1, 15, 12, 0, 0, tzinfo=timezone.utc)

TM_EVENT = {
    "id": "ev1",
    "name": "Jazz Night",
    "url": "https://tickets.test/ev1",
    "images": [{"url": "https://img.test/ev1.jpg"}],
    "priceRanges": [{"min": 20, "max": 45}],
    "dates": {"start": {"localDate": "2026-01-16", "localTime": "20:00:00"}},
    "_embedded": {
        "venues": [
            {"name": "Blue Room", "address": {"line1": "1 Main St"}, "location": {"latitude": "40.1", "longitude": "-73.9"}}
        ]
    },
}


class UpstreamStub:
    """Routes requests by path and records every call."""

    def __init__(self):
        self.calls = []
        self.fail_nearby = False
        self.fail_events = False

    def count(self, fragment):
        return sum(1 for url in self.calls if fragment in url.path)

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.calls.append(request.url)
        path = request.url.path
        if path.endswith("/geocode/json"):
            return httpx.Response(200, json={"status": "OK", "results": [{"formatted_address": request.url.params["address"]}]})
        if path.endswith("/nearbysearch/json"):
            if self.fail_nearby:
                return httpx.Response(500, json={"status": "UNKNOWN_ERROR"})
            keyword = request.url.params.get("keyword", "all")
            return httpx.Response(200, json={"results": [{"place_id": f"p_{keyword}"}, {"place_id": "shared"}]})
        if path.endswith("/place/photo"):
            return httpx.Response(200, content=b"\x89PNG", headers={"content-type": "image/png"})
        if path.endswith("/events.json"):
            if self.fail_events:
                raise httpx.ReadTimeout("timed out", request=request)
            return httpx.Response(200, json={"_embedded": {"events": [TM_EVENT]}})
        return httpx.Response(404)


@pytest.fixture
def upstream():
    return UpstreamStub()


@pytest.fixture
def redis():
    return FakeRedis()


def _service(upstream, redis, ticketmaster_key="tm-key"):
    client = httpx.AsyncClient(transport=httpx.MockTransport(upstream))
    cache = ReadThroughCache(RedisCacheStore(redis, CacheAvailability()))
    return SearchService(
        cache,
        GoogleMapsClient("maps-key", client=client),
        TicketmasterClient(ticketmaster_key, client=client),
        now_fn=lambda: NOW,
    )


@pytest.mark.asyncio
async def test_identical_queries_share_one_upstream_call(upstream, redis):
    service = _service(upstream, redis)

    first = await service.search_places(40.0, -74.0, radius=5000, keyword="sushi")
    second = await service.search_places(40.0, -74.0, radius=5000, keyword="sushi")

    assert first == second
    assert upstream.count("nearbysearch") == 1


@pytest.mark.asyncio
async def test_refresh_bypasses_cache_without_evicting(upstream, redis):
    service = _service(upstream, redis)

    await service.search_places(40.0, -74.0)
    await service.search_places(40.0, -74.0, refresh=True)
    assert upstream.count("nearbysearch") == 2

    await service.search_places(40.0, -74.0)
    assert upstream.count("nearbysearch") == 2


@pytest.mark.asyncio
async def test_keywords_are_split_and_deduplicated(upstream, redis):
    service = _service(upstream, redis)

    result = await service.search_places(40.0, -74.0, keyword="sushi bar ab")

    ids = [place["place_id"] for place in result["results"]]
    assert ids == ["p_sushi", "shared", "p_bar"]
    assert upstream.count("nearbysearch") == 2


@pytest.mark.asyncio
async def test_short_keywords_fall_back_to_general_search(upstream, redis):
    service = _service(upstream, redis)

    result = await service.search_places(40.0, -74.0, keyword="ab")

    assert [p["place_id"] for p in result["results"]] == ["p_all", "shared"]


@pytest.mark.asyncio
async def test_failed_search_is_not_cached(upstream, redis):
    service = _service(upstream, redis)
    upstream.fail_nearby = True

    with pytest.raises(ProviderUnavailableError):
        await service.search_places(40.0, -74.0, keyword="sushi")
    assert redis.store == {}

    upstream.fail_nearby = False
    result = await service.search_places(40.0, -74.0, keyword="sushi")
    assert result["results"]


@pytest.mark.asyncio
async def test_events_are_merged_as_places(upstream, redis):
    service = _service(upstream, redis)

    result = await service.search_places(40.0, -74.0, include_events=True, date_range="today")

    event = result["results"][-1]
    assert event["place_id"] == "ticketmaster_ev1"
    assert event["isEvent"] is True
    assert event["priceRange"] == "$20-$45"
    tm_request = next(url for url in upstream.calls if url.path.endswith("/events.json"))
    assert tm_request.params["startDateTime"] == "2026-01-15T00:00:00Z"
    assert tm_request.params["apikey"] == "tm-key"
    assert any(key.startswith("events:") for key in redis.store)


@pytest.mark.asyncio
async def test_event_failure_still_returns_places(upstream, redis):
    service = _service(upstream, redis)
    upstream.fail_events = True

    result = await service.search_places(40.0, -74.0, include_events=True)

    assert [p["place_id"] for p in result["results"]] == ["p_all", "shared"]


@pytest.mark.asyncio
async def test_events_skipped_without_api_key(upstream, redis):
    service = _service(upstream, redis, ticketmaster_key=None)

    await service.search_places(40.0, -74.0, include_events=True)

    assert upstream.count("events.json") == 0


@pytest.mark.asyncio
async def test_unknown_date_range_is_rejected(upstream, redis):
    service = _service(upstream, redis)
    with pytest.raises(ValidationError):
        await service.search_places(40.0, -74.0, date_range="nextyear")


@pytest.mark.asyncio
async def test_geocode_normalizes_address_for_cache(upstream, redis):
    service = _service(upstream, redis)

    await service.geocode("New York")
    await service.geocode("  new york ")

    assert upstream.count("geocode") == 1
    assert "geocode:new york" in redis.store
    with pytest.raises(ValidationError):
        await service.geocode("   ")


@pytest.mark.asyncio
async def test_photo_url_is_cached_and_bytes_proxied(upstream, redis):
    service = _service(upstream, redis)

    content, content_type = await service.photo("ref123")

    assert content == b"\x89PNG"
    assert content_type == "image/png"
    assert "ref123" in redis.store["photo:ref123"]


def test_helpers():
    assert split_keywords("wine & cheese") == ["wine", "cheese"]
    assert split_keywords(None) == []
    assert event_window("thismonth", None, NOW)["endDateTime"] == "2026-01-31T23:59:59Z"
    assert event_window("custom", "2026-02-14", NOW) == {
        "startDateTime": "2026-02-14T00:00:00Z",
        "endDateTime": "2026-02-14T23:59:59Z",
    }
    assert event_window(None, None, NOW) == {}
    place = event_to_place({"id": "x"}, 1.0, 2.0)
    assert place["geometry"]["location"] == {"lat": 1.0, "lng": 2.0}
    assert place["photos"] == []


# ---- routes --------------------------------------------------------------


def test_places_route_validates_selected_date():
    client = TestClient(build_test_app())

    resp = client.get("/api/places", params={"lat": 40.0, "lng": -74.0, "selectedDate": "14/02/2026"})

    assert resp.status_code == 400
    assert resp.json()["error"]["code"] == "validation_error"


def test_places_route_uses_shared_cache(upstream, redis):
    app = build_test_app()
    app.state.services.search = _service(upstream, redis)
    client = TestClient(app)

    for _ in range(2):
        resp = client.get("/api/places", params={"lat": 40.0, "lng": -74.0, "keyword": "tacos"})
        assert resp.status_code == 200
    assert upstream.count("nearbysearch") == 1


def test_photo_route_sets_cache_headers(upstream, redis):
    app = build_test_app()
    app.state.services.search = _service(upstream, redis)
    client = TestClient(app)

    resp = client.get("/api/photo", params={"photoreference": "ref123"})

    assert resp.status_code == 200
    assert resp.content == b"\x89PNG"
    assert resp.headers["Cache-Control"] == "public, max-age=86400"


def test_photo_route_requires_reference():
    client = TestClient(build_test_app())
    resp = client.get("/api/photo")
    assert resp.status_code == 400
