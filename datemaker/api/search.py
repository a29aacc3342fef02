"""Read-through search routes backed by Google Maps and Ticketmaster."""
from typing import Optional

from fastapi import APIRouter, Depends, Query
from fastapi.responses import Response

from datemaker.core.dependencies import Services, get_services


router = APIRouter(tags=["search"])

PHOTO_CLIENT_MAX_AGE = 24 * 60 * 60


@router.get("/geocode")
async def geocode(address: Optional[str] = Query(None), services: Services = Depends(get_services)):
    """Geocode an address (cached for 30 days)."""
    return await services.search.geocode(address)


@router.get("/places")
async def places(
    lat: float = Query(...),
    lng: float = Query(...),
    radius: Optional[int] = Query(None, gt=0, le=50000),
    keyword: Optional[str] = Query(None),
    include_events: bool = Query(False, alias="includeEvents"),
    date_range: Optional[str] = Query(None, alias="dateRange"),
    selected_date: Optional[str] = Query(None, alias="selectedDate", pattern=r"^\d{4}-\d{2}-\d{2}$"),
    refresh: bool = Query(False),
    services: Services = Depends(get_services),
):
    """
    Nearby places for date generation, optionally merged with events.

    Results are shared across callers for 24 hours; refresh=true forces
    fresh upstream data.
    """
    return await services.search.search_places(
        lat,
        lng,
        radius=radius,
        keyword=keyword,
        include_events=include_events,
        date_range=date_range,
        selected_date=selected_date,
        refresh=refresh,
    )


@router.get("/photo")
async def photo(photoreference: Optional[str] = Query(None), services: Services = Depends(get_services)):
    content, content_type = await services.search.photo(photoreference)
    return Response(
        content=content,
        media_type=content_type,
        headers={"Cache-Control": f"public, max-age={PHOTO_CLIENT_MAX_AGE}"},
    )
