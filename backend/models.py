"""Pydantic data models and request/response bodies for the route imagery backend."""

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class GeoPoint(BaseModel):
    """A latitude/longitude pair in degrees (WGS-84)."""

    model_config = ConfigDict(frozen=True)

    lat: float
    lng: float


class SamplingPoint(BaseModel):
    """A point along a route with the forward bearing of travel there."""

    model_config = ConfigDict(frozen=True)

    coordinate: GeoPoint
    bearing: float
    """Compass heading in degrees, clockwise from north, in [0, 360)."""


# ---------------------------------------------------------------------------
# Imagery models
# ---------------------------------------------------------------------------


class ImageCandidate(BaseModel):
    """One image row returned by the Mapillary images endpoint."""

    id: str
    thumb_url: str = ""
    coordinate: GeoPoint | None = None
    compass_angle: float | None = None
    is_pano: bool = False


class MatchedImage(BaseModel):
    """The candidate selected for a single sampling point."""

    model_config = ConfigDict(frozen=True)

    id: str
    thumb_url: str
    coordinate: GeoPoint
    compass_angle: float


class RouteImage(BaseModel):
    """A single accepted slideshow frame."""

    model_config = ConfigDict(frozen=True)

    thumb_url: str
    coordinate: GeoPoint


class RouteImageSnapshot(BaseModel):
    """Complete, immutable view of a route's accepted images at one moment.

    Every snapshot replaces the previous one; consumers never have to merge
    deltas and may keep a snapshot around indefinitely.
    """

    model_config = ConfigDict(frozen=True)

    route_id: str
    images: tuple[RouteImage, ...] = ()
    locations: tuple[GeoPoint, ...] = ()
    image_count: int = 0


# ---------------------------------------------------------------------------
# Route session models
# ---------------------------------------------------------------------------


class RouteStatus(str, Enum):
    """Outcome of fetching imagery for one route."""

    LOADED = "loaded"
    FAILED = "failed"
    CANCELLED = "cancelled"


class RouteEndpoints(BaseModel):
    """Origin and destination of one route to explore."""

    route_id: str
    origin: GeoPoint
    destination: GeoPoint


class RouteImagesRequest(BaseModel):
    """Request body for the /route-images endpoint."""

    routes: list[RouteEndpoints]

    sample_count: int = Field(default=50, ge=1, le=500)
    """How many evenly spaced sampling points to place along each route."""


class RouteImagesResult(BaseModel):
    """Final imagery for one route."""

    route_id: str
    status: RouteStatus
    images: list[str] = Field(default_factory=list)
    """Thumbnail URLs in path order."""

    coordinates: list[GeoPoint] = Field(default_factory=list)
    """Capture location of each image, index-aligned with ``images``."""

    image_count: int = 0
    origin_address: str = ""
    destination_address: str = ""
    displayable: bool = False
    """Whether the route has enough images to be worth showing."""


class RouteImagesResponse(BaseModel):
    """Response from the /route-images endpoint."""

    routes: list[RouteImagesResult]


class CancelResponse(BaseModel):
    """Response from the /routes/{route_id}/cancel endpoint."""

    route_id: str
    cancelled: bool
