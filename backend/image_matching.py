"""Street-level image matching against the Mapillary Graph API.

For one sampling point the matcher asks Mapillary for images inside a tiny
bounding box around the point, drops anything that cannot be shown as a
forward-facing slideshow frame, and picks the candidate whose heading and
position best fit the point.

Throttling (HTTP 429) is expected under load and is retried with exponential
backoff. Every other failure degrades to "no image for this point" so a single
bad request never aborts a route.
"""

import asyncio
import logging
import math
import os
from typing import Any, Awaitable, Callable, Sequence

import aiohttp

from models import GeoPoint, ImageCandidate, MatchedImage, SamplingPoint
from path_sampling import angle_difference

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Matching rules — all tuneable constants in one place.
# ---------------------------------------------------------------------------

MAPILLARY_IMAGES_URL: str = "https://graph.mapillary.com/images"
MAPILLARY_FIELDS: str = (
    "id,computed_compass_angle,geometry,captured_at,is_pano,thumb_2048_url"
)
# Half-size of the query bounding box and the maximum candidate offset, in
# degrees (~20m).
SEARCH_HALF_SIZE_DEG: float = 0.0002
MAX_CANDIDATE_DISTANCE_DEG: float = 0.0002
QUERY_RESULT_LIMIT: int = 50
# Candidates looking more than this far off the route heading are dropped.
MAX_HEADING_DIFF_DEG: float = 30.0
# score = angle_diff * ANGLE_WEIGHT + degree_distance * DISTANCE_WEIGHT
ANGLE_WEIGHT: float = 3.0
DISTANCE_WEIGHT: float = 10000.0
# Retries after HTTP 429; the delay before retry n is 2**n seconds.
MAX_RATE_LIMIT_RETRIES: int = 3
BACKOFF_BASE_S: float = 1.0
REQUEST_TIMEOUT_S: float = 15.0

SleepFunc = Callable[[float], Awaitable[Any]]


def parse_candidate(row: dict[str, Any]) -> ImageCandidate:
    """Converts one Mapillary ``data`` row into an ``ImageCandidate``.

    Mapillary GeoJSON geometry is ``[lng, lat]``. Missing or malformed
    geometry leaves ``coordinate`` unset rather than failing the row.
    """
    coordinate = None
    coords = (row.get("geometry") or {}).get("coordinates")
    if isinstance(coords, (list, tuple)) and len(coords) >= 2:
        coordinate = GeoPoint(lat=float(coords[1]), lng=float(coords[0]))

    angle = row.get("computed_compass_angle")
    return ImageCandidate(
        id=str(row["id"]),
        thumb_url=row.get("thumb_2048_url") or "",
        coordinate=coordinate,
        compass_angle=float(angle) if angle is not None else None,
        is_pano=bool(row.get("is_pano", False)),
    )


def degree_distance(a: GeoPoint, b: GeoPoint) -> float:
    """Returns the planar distance between two points in raw degrees."""
    return math.sqrt((a.lat - b.lat) ** 2 + (a.lng - b.lng) ** 2)


def score_candidate(point: SamplingPoint, candidate: ImageCandidate) -> float | None:
    """Returns the match score for ``candidate`` (lower is better).

    Returns None if the candidate is not usable for this point at all.
    """
    if candidate.is_pano or not candidate.thumb_url:
        return None
    if candidate.compass_angle is None or candidate.coordinate is None:
        return None

    distance = degree_distance(candidate.coordinate, point.coordinate)
    if distance > MAX_CANDIDATE_DISTANCE_DEG:
        return None

    angle_diff = angle_difference(candidate.compass_angle, point.bearing)
    if angle_diff > MAX_HEADING_DIFF_DEG:
        return None

    return angle_diff * ANGLE_WEIGHT + distance * DISTANCE_WEIGHT


def select_best_candidate(
    point: SamplingPoint, candidates: Sequence[ImageCandidate]
) -> MatchedImage | None:
    """Returns the lowest-scoring usable candidate, or None.

    Heading alignment dominates: one degree of heading mismatch weighs about
    as much as 0.0003° of position offset. Ties keep the earlier candidate.
    """
    best: ImageCandidate | None = None
    best_score = math.inf
    for candidate in candidates:
        score = score_candidate(point, candidate)
        if score is not None and score < best_score:
            best, best_score = candidate, score

    if best is None:
        return None
    return MatchedImage(
        id=best.id,
        thumb_url=best.thumb_url,
        coordinate=best.coordinate,
        compass_angle=best.compass_angle,
    )


def _bbox(point: GeoPoint) -> str:
    return ",".join(
        str(v)
        for v in (
            point.lng - SEARCH_HALF_SIZE_DEG,
            point.lat - SEARCH_HALF_SIZE_DEG,
            point.lng + SEARCH_HALF_SIZE_DEG,
            point.lat + SEARCH_HALF_SIZE_DEG,
        )
    )


class RateLimited(Exception):
    """Raised internally when Mapillary answers HTTP 429."""


class ImageMatcher:
    """Finds the best Mapillary image for individual sampling points.

    Args:
        session: Shared aiohttp session used for all queries.
        access_token: Mapillary client token. Read from
            ``MAPILLARY_ACCESS_TOKEN`` if omitted.
        sleep: Coroutine used for backoff delays. Tests pass a fake to run
            on simulated time.
    """

    def __init__(
        self,
        session: aiohttp.ClientSession,
        access_token: str | None = None,
        *,
        sleep: SleepFunc = asyncio.sleep,
    ):
        self._session = session
        self._token = (
            access_token
            if access_token is not None
            else os.environ.get("MAPILLARY_ACCESS_TOKEN", "")
        )
        self._sleep = sleep

    async def match(
        self, point: SamplingPoint, attempt: int = 0
    ) -> MatchedImage | None:
        """Returns the best image for ``point``, or None.

        Never raises for provider problems. A 429 response is retried after
        1s, 2s and 4s (for attempts 0, 1, 2); once those retries are used up
        the point is skipped.
        """
        while True:
            try:
                rows = await self._query(point.coordinate)
            except RateLimited:
                if attempt >= MAX_RATE_LIMIT_RETRIES:
                    logger.warning(
                        "Mapillary still rate limiting after %d retries; "
                        "skipping point (%f, %f)",
                        MAX_RATE_LIMIT_RETRIES,
                        point.coordinate.lat,
                        point.coordinate.lng,
                    )
                    return None
                delay = BACKOFF_BASE_S * 2**attempt
                logger.info(
                    "Mapillary rate limited; retrying in %.0fs (attempt %d)",
                    delay,
                    attempt + 1,
                )
                await self._sleep(delay)
                attempt += 1
                continue
            except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
                logger.debug("Mapillary request failed: %s", exc)
                return None

            if rows is None:
                return None
            candidates: list[ImageCandidate] = []
            for row in rows:
                try:
                    candidates.append(parse_candidate(row))
                except (AttributeError, KeyError, TypeError, ValueError) as exc:
                    logger.debug("Skipping malformed Mapillary row: %s", exc)
            return select_best_candidate(point, candidates)

    async def _query(self, coordinate: GeoPoint) -> list[dict[str, Any]] | None:
        """Fetches raw candidate rows around ``coordinate``.

        Returns None for non-2xx responses and malformed bodies.

        Raises:
            RateLimited: On HTTP 429.
            aiohttp.ClientError: On network failures.
        """
        params = {
            "fields": MAPILLARY_FIELDS,
            "bbox": _bbox(coordinate),
            "limit": str(QUERY_RESULT_LIMIT),
        }
        headers = {"Authorization": f"OAuth {self._token}"}
        async with self._session.get(
            MAPILLARY_IMAGES_URL,
            params=params,
            headers=headers,
            timeout=aiohttp.ClientTimeout(total=REQUEST_TIMEOUT_S),
        ) as response:
            if response.status == 429:
                raise RateLimited()
            if not 200 <= response.status < 300:
                logger.debug("Mapillary returned HTTP %d", response.status)
                return None
            try:
                body = await response.json()
            except ValueError as exc:
                logger.debug("Mapillary returned invalid JSON: %s", exc)
                return None

        data = body.get("data") if isinstance(body, dict) else None
        if not isinstance(data, list):
            return None
        return data
