"""Route imagery aggregation and the sequential multi-route session.

Pipeline for one route:
  1.  Sample the decoded driving path at evenly spaced, bearing-aware points.
  2.  Match each point to a Mapillary image, in paced concurrent batches.
  3.  Aggregate batch results in path order: drop duplicate ids and images
      captured too close to an already accepted one, stop at the per-route
      cap, and honour cancellation between batches.
  4.  Push an immutable snapshot to the progress callback after every batch.

Routes are processed one at a time so that the shared imagery provider only
ever sees a single route's batch of requests. A session reserves all of its
route ids before the first one starts.
"""

import asyncio
import contextlib
import logging
from enum import Enum
from typing import Any, AsyncIterator, Awaitable, Callable, Iterator, Sequence

import googlemaps

from batch_fetching import BATCH_PACING_S, DEFAULT_BATCH_SIZE, fetch_batched
from image_matching import ImageMatcher
from models import (
    GeoPoint,
    MatchedImage,
    RouteEndpoints,
    RouteImage,
    RouteImageSnapshot,
    RouteImagesResult,
    RouteStatus,
)
from path_sampling import generate_evenly_spaced_points, haversine_km
from route_geometry import RouteGeometryError, describe_location, get_route_path

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Aggregation rules
# ---------------------------------------------------------------------------

MAX_IMAGES_PER_ROUTE: int = 100
# Accepted images must be at least this far (haversine) from each other.
MIN_IMAGE_DISTANCE_KM: float = 0.03
# Sampling points placed along each route.
DEFAULT_SAMPLE_COUNT: int = 50
# Routes with fewer images than this are not worth a slideshow.
MIN_IMAGES_TO_DISPLAY: int = 5

ProgressCallback = Callable[[RouteImageSnapshot], None]


# ---------------------------------------------------------------------------
# Cancellation
# ---------------------------------------------------------------------------


class CancellationToken:
    """Per-route stop request, polled between batches.

    Once cancelled a token stays cancelled. It does not interrupt requests
    already in flight.
    """

    def __init__(self) -> None:
        self._cancelled = False

    def cancel(self) -> None:
        self._cancelled = True

    @property
    def cancelled(self) -> bool:
        return self._cancelled


class _ActiveRoute:
    def __init__(self, route_id: str) -> None:
        self.token = CancellationToken()
        self.snapshot = RouteImageSnapshot(route_id=route_id)


class RouteBusyError(ValueError):
    """Raised when a route id is already reserved by another session."""

    def __init__(self, route_ids: Sequence[str]):
        self.route_ids = list(route_ids)
        super().__init__(
            f"Routes already being fetched: {', '.join(self.route_ids)}"
        )


class CancellationRegistry:
    """Tracks the routes whose imagery is pending or being fetched.

    A session reserves all of its route ids at once with ``reserve()``, so two
    sessions can never claim the same route. An entry disappears when its
    route finishes (``release()``) or when the reservation ends; cancelling
    or polling a route without an entry is a no-op.
    """

    def __init__(self) -> None:
        self._active: dict[str, _ActiveRoute] = {}

    @contextlib.contextmanager
    def reserve(
        self, route_ids: Sequence[str]
    ) -> Iterator[dict[str, CancellationToken]]:
        """Registers every id in ``route_ids`` and yields their tokens.

        Either all ids are reserved or none are.

        Raises:
            ValueError: If ``route_ids`` contains duplicates.
            RouteBusyError: If any id is already reserved.
        """
        if len(set(route_ids)) != len(route_ids):
            raise ValueError("route ids must be unique.")
        busy = [route_id for route_id in route_ids if route_id in self._active]
        if busy:
            raise RouteBusyError(busy)

        entries = {route_id: _ActiveRoute(route_id) for route_id in route_ids}
        self._active.update(entries)
        try:
            yield {route_id: entry.token for route_id, entry in entries.items()}
        finally:
            for route_id, entry in entries.items():
                if self._active.get(route_id) is entry:
                    del self._active[route_id]

    @contextlib.contextmanager
    def track(self, route_id: str) -> Iterator[CancellationToken]:
        """Reserves a single route and yields its token."""
        with self.reserve([route_id]) as tokens:
            yield tokens[route_id]

    def release(self, route_id: str) -> None:
        """Drops the entry of a route that has finished."""
        self._active.pop(route_id, None)

    def is_active(self, route_id: str) -> bool:
        return route_id in self._active

    def cancel(self, route_id: str) -> bool:
        """Requests ``route_id`` to stop. Returns False if it is not running."""
        entry = self._active.get(route_id)
        if entry is None:
            return False
        entry.token.cancel()
        logger.info("Cancellation requested for route %s", route_id)
        return True

    def cancel_all(self) -> int:
        """Cancels every running route and returns how many there were."""
        for entry in self._active.values():
            entry.token.cancel()
        return len(self._active)

    def record(self, snapshot: RouteImageSnapshot) -> None:
        entry = self._active.get(snapshot.route_id)
        if entry is not None:
            entry.snapshot = snapshot

    def latest_snapshot(self, route_id: str) -> RouteImageSnapshot | None:
        entry = self._active.get(route_id)
        return entry.snapshot if entry is not None else None


# ---------------------------------------------------------------------------
# Aggregation
# ---------------------------------------------------------------------------


class StopReason(str, Enum):
    EXHAUSTED = "exhausted"
    CAP_REACHED = "cap_reached"
    CANCELLED = "cancelled"


class RouteImageResult:
    """Accepted images for one route, owned by that route's aggregation loop.

    Append-only. Only images that are new by id and at least
    ``min_distance_km`` from every accepted location get in, and never more
    than ``max_images`` of them.
    """

    def __init__(
        self,
        route_id: str,
        max_images: int = MAX_IMAGES_PER_ROUTE,
        min_distance_km: float = MIN_IMAGE_DISTANCE_KM,
    ):
        self.route_id = route_id
        self.max_images = max_images
        self.min_distance_km = min_distance_km
        self.accepted_images: list[RouteImage] = []
        self.accepted_ids: set[str] = set()
        self.accepted_locations: list[GeoPoint] = []
        self.stop_reason: StopReason | None = None

    @property
    def is_full(self) -> bool:
        return len(self.accepted_images) >= self.max_images

    def _too_close(self, coordinate: GeoPoint) -> bool:
        return any(
            haversine_km(coordinate, used) < self.min_distance_km
            for used in self.accepted_locations
        )

    def offer(self, image: MatchedImage) -> bool:
        """Accepts ``image`` if it passes the dedup rules and fits under the cap."""
        if self.stop_reason is not None:
            raise RuntimeError("Result is frozen; no further images accepted.")
        if self.is_full or image.id in self.accepted_ids:
            return False
        if self._too_close(image.coordinate):
            return False
        self.accepted_images.append(
            RouteImage(thumb_url=image.thumb_url, coordinate=image.coordinate)
        )
        self.accepted_ids.add(image.id)
        self.accepted_locations.append(image.coordinate)
        return True

    def freeze(self, reason: StopReason) -> None:
        self.stop_reason = reason

    def snapshot(self) -> RouteImageSnapshot:
        return RouteImageSnapshot(
            route_id=self.route_id,
            images=tuple(self.accepted_images),
            locations=tuple(self.accepted_locations),
            image_count=len(self.accepted_images),
        )


async def accumulate_route_images(
    route_id: str,
    batches: AsyncIterator[list[MatchedImage | None]],
    on_progress: ProgressCallback,
    token: CancellationToken,
    *,
    max_images: int = MAX_IMAGES_PER_ROUTE,
    min_distance_km: float = MIN_IMAGE_DISTANCE_KM,
) -> RouteImageResult:
    """Folds batched match results into a deduplicated, capped image list.

    The token and the cap are checked before each batch is pulled, so neither
    a cancelled nor a full route triggers any further provider traffic. A
    snapshot is pushed to ``on_progress`` after every processed batch.

    Returns:
        The frozen result, with ``stop_reason`` saying why aggregation ended.
    """
    result = RouteImageResult(route_id, max_images, min_distance_km)
    batch_count = 0
    reason = StopReason.EXHAUSTED

    async with contextlib.aclosing(batches) as stream:
        while True:
            if token.cancelled:
                reason = StopReason.CANCELLED
                break
            if result.is_full:
                reason = StopReason.CAP_REACHED
                break
            try:
                batch = await stream.__anext__()
            except StopAsyncIteration:
                # The stream may end early because the token was set while it
                # paused between batches.
                if token.cancelled:
                    reason = StopReason.CANCELLED
                break

            batch_count += 1
            accepted = 0
            for image in batch:
                if result.is_full:
                    break
                if image is not None and result.offer(image):
                    accepted += 1

            logger.debug(
                "Route %s batch %d: accepted %d of %d",
                route_id,
                batch_count,
                accepted,
                len(batch),
            )
            on_progress(result.snapshot())

    result.freeze(reason)
    logger.info(
        "Route %s: %d images after %d batches (%s)",
        route_id,
        len(result.accepted_images),
        batch_count,
        reason.value,
    )
    return result


async def fetch_images_for_route(
    route_id: str,
    path: Sequence[GeoPoint],
    matcher: ImageMatcher,
    on_progress: ProgressCallback,
    token: CancellationToken,
    *,
    sample_count: int = DEFAULT_SAMPLE_COUNT,
    batch_size: int = DEFAULT_BATCH_SIZE,
    pacing_s: float = BATCH_PACING_S,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> RouteImageResult:
    """Runs sampling, batched matching, and aggregation for one route path.

    The token is checked both before each batch is pulled and again after
    the pause in front of it, so a cancel that lands during the pause never
    starts the next batch.
    """
    points = generate_evenly_spaced_points(path, sample_count)
    logger.info("Route %s: fetching images for %d points", route_id, len(points))
    batches = fetch_batched(
        points,
        matcher.match,
        batch_size,
        pacing_s=pacing_s,
        sleep=sleep,
        should_continue=lambda: not token.cancelled,
    )
    return await accumulate_route_images(route_id, batches, on_progress, token)


# ---------------------------------------------------------------------------
# Multi-route session
# ---------------------------------------------------------------------------


def _to_result(
    route: RouteEndpoints,
    status: RouteStatus,
    snapshot: RouteImageSnapshot,
    origin_address: str,
    destination_address: str,
) -> RouteImagesResult:
    return RouteImagesResult(
        route_id=route.route_id,
        status=status,
        images=[image.thumb_url for image in snapshot.images],
        coordinates=list(snapshot.locations),
        image_count=snapshot.image_count,
        origin_address=origin_address,
        destination_address=destination_address,
        displayable=snapshot.image_count >= MIN_IMAGES_TO_DISPLAY,
    )


async def _explore_reserved(
    route: RouteEndpoints,
    maps_client: googlemaps.Client,
    matcher: ImageMatcher,
    registry: CancellationRegistry,
    token: CancellationToken,
    *,
    sample_count: int,
    on_progress: ProgressCallback | None,
) -> RouteImagesResult:
    """Fetches one route whose id the caller has already reserved."""
    origin_address = describe_location(maps_client, route.origin)
    destination_address = describe_location(maps_client, route.destination)
    empty = RouteImageSnapshot(route_id=route.route_id)

    if token.cancelled:
        logger.info("Route %s: cancelled before it started", route.route_id)
        return _to_result(
            route, RouteStatus.CANCELLED, empty, origin_address, destination_address
        )

    def _progress(snapshot: RouteImageSnapshot) -> None:
        registry.record(snapshot)
        if on_progress is not None:
            on_progress(snapshot)

    try:
        path = await get_route_path(maps_client, route.origin, route.destination)
    except RouteGeometryError:
        logger.exception("Route %s: could not fetch driving path", route.route_id)
        return _to_result(
            route, RouteStatus.FAILED, empty, origin_address, destination_address
        )

    if not path:
        return _to_result(
            route, RouteStatus.LOADED, empty, origin_address, destination_address
        )

    result = await fetch_images_for_route(
        route.route_id,
        path,
        matcher,
        _progress,
        token,
        sample_count=sample_count,
    )
    status = (
        RouteStatus.CANCELLED
        if result.stop_reason is StopReason.CANCELLED
        else RouteStatus.LOADED
    )
    return _to_result(
        route, status, result.snapshot(), origin_address, destination_address
    )


async def explore_route(
    route: RouteEndpoints,
    maps_client: googlemaps.Client,
    matcher: ImageMatcher,
    registry: CancellationRegistry,
    *,
    sample_count: int = DEFAULT_SAMPLE_COUNT,
    on_progress: ProgressCallback | None = None,
) -> RouteImagesResult:
    """Fetches the path and imagery for a single route.

    Route-geometry failures are reported as a ``failed`` route rather than
    raised, so one broken route never stops a session.

    Raises:
        RouteBusyError: If the route is already being fetched.
    """
    with registry.track(route.route_id) as token:
        return await _explore_reserved(
            route,
            maps_client,
            matcher,
            registry,
            token,
            sample_count=sample_count,
            on_progress=on_progress,
        )


async def explore_routes(
    routes: Sequence[RouteEndpoints],
    maps_client: googlemaps.Client,
    matcher: ImageMatcher,
    registry: CancellationRegistry,
    *,
    sample_count: int = DEFAULT_SAMPLE_COUNT,
    on_progress: ProgressCallback | None = None,
    lock: asyncio.Lock | None = None,
) -> list[RouteImagesResult]:
    """Fetches imagery for ``routes`` strictly one route after another.

    Every route id is reserved before the first route starts, so an
    overlapping session asking for any of them is refused up front instead
    of colliding half way through. Each route's entry is released as soon as
    that route finishes. A route cancelled while still waiting its turn is
    reported ``cancelled`` without any provider traffic.

    Sessions sharing ``lock`` run one after another, which keeps the imagery
    provider down to a single route's batch at a time across requests.

    Raises:
        RouteBusyError: If any route is already reserved by another session.
            Nothing has been fetched when this is raised.
    """
    route_ids = [route.route_id for route in routes]
    results: list[RouteImagesResult] = []
    with registry.reserve(route_ids) as tokens:
        async with lock if lock is not None else contextlib.nullcontext():
            for index, route in enumerate(routes):
                logger.info(
                    "Fetching route %d of %d (%s)",
                    index + 1,
                    len(routes),
                    route.route_id,
                )
                try:
                    results.append(
                        await _explore_reserved(
                            route,
                            maps_client,
                            matcher,
                            registry,
                            tokens[route.route_id],
                            sample_count=sample_count,
                            on_progress=on_progress,
                        )
                    )
                finally:
                    registry.release(route.route_id)
    return results
