"""Route imagery explorer backend service.

Exposes endpoints for fetching street-level slideshow imagery along driving
routes, polling a running route's progress, and cancelling routes in flight.
"""

import asyncio
import logging
import os

import aiohttp
import googlemaps
from fastapi import FastAPI, HTTPException

import route_images
from image_matching import ImageMatcher
from models import (
    CancelResponse,
    RouteImageSnapshot,
    RouteImagesRequest,
    RouteImagesResponse,
)

logging.basicConfig(level=logging.INFO)

app = FastAPI(
    title="Route Imagery Explorer Backend",
    description="Street-level photo slideshows sampled along driving routes.",
    version="0.1.0",
)

# Routes whose imagery is pending or being fetched, across all requests.
registry = route_images.CancellationRegistry()
# Requests queue here so only one route at a time hits the imagery provider.
session_lock = asyncio.Lock()


@app.get("/health")
async def health() -> dict[str, str]:
    """Health check endpoint used to verify the service is live."""
    return {"status": "ok"}


@app.post("/route-images", response_model=RouteImagesResponse)
async def fetch_route_images(request: RouteImagesRequest) -> RouteImagesResponse:
    """Fetches slideshow imagery for each requested route, one route at a time.

    For every route:
    1. Google Directions provides the decoded driving path.
    2. The path is sampled at evenly spaced, heading-aware points.
    3. Mapillary images are matched to the points in paced batches.
    4. Images are deduplicated by id and capture location and capped.

    Requests queue behind each other. Progress of the route being fetched is available from
    ``GET /routes/{route_id}/progress`` while this request runs.

    Args:
        request: ``RouteImagesRequest`` with the route endpoints and the
            number of sampling points per route.

    Returns:
        ``RouteImagesResponse`` with one result per route, in request order.
        Routes whose path could not be fetched are reported as ``failed``.

    Raises:
        HTTPException 400: If no routes are given or route ids repeat.
        HTTPException 409: If any route is already pending or being fetched
            by another request. No route is fetched in that case.
        HTTPException 502: If API credentials are not configured.
    """
    if not request.routes:
        raise HTTPException(status_code=400, detail="routes must not be empty.")
    route_ids = [route.route_id for route in request.routes]
    if len(set(route_ids)) != len(route_ids):
        raise HTTPException(status_code=400, detail="route_id values must be unique.")

    maps_key = os.environ.get("GOOGLE_MAPS_API_KEY", "")
    mapillary_token = os.environ.get("MAPILLARY_ACCESS_TOKEN", "")
    if not maps_key or not mapillary_token:
        logging.error("GOOGLE_MAPS_API_KEY or MAPILLARY_ACCESS_TOKEN is not set")
        raise HTTPException(
            status_code=502,
            detail="Imagery providers are not configured.",
        )

    try:
        maps_client = googlemaps.Client(key=maps_key)
    except ValueError as exc:
        logging.exception("googlemaps client creation failed")
        raise HTTPException(
            status_code=502,
            detail="Imagery providers are not configured.",
        ) from exc

    async with aiohttp.ClientSession() as session:
        matcher = ImageMatcher(session, mapillary_token)
        try:
            results = await route_images.explore_routes(
                request.routes,
                maps_client,
                matcher,
                registry,
                sample_count=request.sample_count,
                lock=session_lock,
            )
        except route_images.RouteBusyError as exc:
            raise HTTPException(status_code=409, detail=str(exc)) from exc
    return RouteImagesResponse(routes=results)


@app.get("/routes/{route_id}/progress", response_model=RouteImageSnapshot)
async def route_progress(route_id: str) -> RouteImageSnapshot:
    """Returns the latest image snapshot of a route that is still being fetched.

    Raises:
        HTTPException 404: If the route is not currently being fetched.
    """
    snapshot = registry.latest_snapshot(route_id)
    if snapshot is None:
        raise HTTPException(
            status_code=404,
            detail=f"Route {route_id!r} is not being fetched.",
        )
    return snapshot


@app.post("/routes/cancel-all")
async def cancel_all_routes() -> dict[str, int]:
    """Stops every route currently being fetched, e.g. when leaving the explorer."""
    return {"cancelled": registry.cancel_all()}


@app.post("/routes/{route_id}/cancel", response_model=CancelResponse)
async def cancel_route(route_id: str) -> CancelResponse:
    """Asks a running route to stop before its next batch.

    Images gathered so far are kept. Cancelling a route that already finished
    has no effect and reports ``cancelled=False``.
    """
    return CancelResponse(route_id=route_id, cancelled=registry.cancel(route_id))
