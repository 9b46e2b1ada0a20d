"""Driving-path retrieval and endpoint labelling via the Google Maps client.

The imagery pipeline only needs an ordered list of coordinates along the
road. This module asks the Directions API for a driving route, stitches the
step-level polylines (which follow the road far more closely than the
simplified overview polyline) into one decoded path, and produces short
human-readable labels for route endpoints.
"""

import logging
from typing import Any

import googlemaps
import googlemaps.convert

from models import GeoPoint

logger = logging.getLogger(__name__)

# Address components tried, in order, for the street and the town part of an
# endpoint label.
_STREET_COMPONENTS = ("route", "neighborhood", "sublocality")
_TOWN_COMPONENTS = ("locality", "postal_town", "administrative_area_level_2")


class RouteGeometryError(RuntimeError):
    """Raised when no usable driving path could be retrieved for a route."""


def _decode(encoded: str) -> list[GeoPoint]:
    return [
        GeoPoint(lat=float(p["lat"]), lng=float(p["lng"]))
        for p in googlemaps.convert.decode_polyline(encoded)
    ]


def _path_from_directions(route: dict[str, Any]) -> list[GeoPoint]:
    """Builds a detailed path from a single Directions API route dict.

    Falls back to the overview polyline if no step polylines are present.
    """
    points: list[GeoPoint] = []
    for leg in route.get("legs", []):
        for step in leg.get("steps", []):
            encoded = step.get("polyline", {}).get("points", "")
            if not encoded:
                continue
            step_points = _decode(encoded)
            # Consecutive steps share their boundary vertex.
            if points and step_points and step_points[0] == points[-1]:
                step_points = step_points[1:]
            points.extend(step_points)

    if points:
        return points

    overview = route.get("overview_polyline", {}).get("points", "")
    return _decode(overview) if overview else []


async def get_route_path(
    maps_client: googlemaps.Client,
    origin: GeoPoint,
    destination: GeoPoint,
) -> list[GeoPoint]:
    """Returns the decoded driving path from ``origin`` to ``destination``.

    Returns:
        Ordered path vertices, or an empty list if no route exists.

    Raises:
        RouteGeometryError: If the Directions request fails or the response
            cannot be decoded. No partial path is ever returned.
    """
    try:
        result = maps_client.directions(
            origin=(origin.lat, origin.lng),
            destination=(destination.lat, destination.lng),
            mode="driving",
        )
    except Exception as exc:  # noqa: BLE001
        logger.error("Directions API error: %s", exc)
        raise RouteGeometryError(f"Directions API error: {exc}") from exc

    if not result:
        logger.info(
            "No driving route between (%f, %f) and (%f, %f)",
            origin.lat,
            origin.lng,
            destination.lat,
            destination.lng,
        )
        return []

    try:
        path = _path_from_directions(result[0])
    except (AttributeError, KeyError, TypeError, ValueError, IndexError) as exc:
        raise RouteGeometryError(f"Malformed Directions response: {exc}") from exc

    logger.info("Directions returned a path of %d vertices", len(path))
    return path


def format_coordinates(point: GeoPoint) -> str:
    """Returns a compact coordinate label such as ``"52.370°, 4.895°"``."""
    return f"{point.lat:.3f}°, {point.lng:.3f}°"


def _first_component(
    components: list[dict[str, Any]], types: tuple[str, ...]
) -> str:
    for wanted in types:
        for component in components:
            if wanted in component.get("types", []):
                return component.get("long_name", "")
    return ""


def describe_location(maps_client: googlemaps.Client, point: GeoPoint) -> str:
    """Returns a short "street, town" label for ``point``.

    Best effort: falls back to the first two parts of the formatted address,
    then to the coordinates themselves if reverse geocoding fails.
    """
    try:
        results = maps_client.reverse_geocode((point.lat, point.lng))
    except Exception:  # noqa: BLE001
        logger.debug("Reverse geocoding failed for (%f, %f)", point.lat, point.lng)
        return format_coordinates(point)

    if not results:
        return format_coordinates(point)

    first = results[0]
    components = first.get("address_components", [])
    parts = [
        part
        for part in (
            _first_component(components, _STREET_COMPONENTS),
            _first_component(components, _TOWN_COMPONENTS),
        )
        if part
    ]
    if parts:
        return ", ".join(parts)

    formatted = first.get("formatted_address", "")
    if formatted:
        return ",".join(formatted.split(",")[:2]).strip()
    return format_coordinates(point)
