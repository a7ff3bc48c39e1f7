"""Geographic containment checks for buyer search areas"""

import logging
import math
from typing import Dict, List, Optional, Sequence, Tuple

from casamatch.core.config import settings
from casamatch.core.exceptions import MalformedGeometryError

logger = logging.getLogger(__name__)

# Internal coordinate order is always (lat, lng)
LatLng = Tuple[float, float]

# Boundary tolerance in degrees (~1 cm)
BOUNDARY_EPSILON = 1e-9


def haversine_distance_meters(lat1: float, lng1: float, lat2: float, lng2: float,
                              earth_radius_km: float = 6371.0) -> float:
    """
    Great-circle distance between two points.

    Args:
        lat1: Latitude of point 1 (decimal degrees)
        lng1: Longitude of point 1 (decimal degrees)
        lat2: Latitude of point 2 (decimal degrees)
        lng2: Longitude of point 2 (decimal degrees)
        earth_radius_km: Earth radius used for the sphere

    Returns:
        Distance in meters.
    """
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    dphi = math.radians(lat2 - lat1)
    dlmb = math.radians(lng2 - lng1)
    a = math.sin(dphi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(dlmb / 2) ** 2
    return 2 * earth_radius_km * 1000.0 * math.asin(min(1.0, math.sqrt(a)))


def _finite(value) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise MalformedGeometryError(f"Coordinate is not a number: {value!r}")
    if not math.isfinite(number):
        raise MalformedGeometryError(f"Coordinate is not finite: {value!r}")
    return number


def parse_point(point) -> LatLng:
    """
    Parse a listing location into (lat, lng).

    Accepts {lat, lng}, {latitude, longitude} or a (lat, lng) pair.

    Raises:
        MalformedGeometryError: missing, non-numeric or out-of-range coordinates
    """
    if point is None:
        raise MalformedGeometryError("Point is missing")

    if isinstance(point, dict):
        lat = point.get('lat', point.get('latitude'))
        lng = point.get('lng', point.get('longitude'))
    elif isinstance(point, (list, tuple)) and len(point) == 2:
        lat, lng = point
    else:
        raise MalformedGeometryError(f"Unsupported point format: {point!r}")

    lat, lng = _finite(lat), _finite(lng)
    if not (-90 <= lat <= 90) or not (-180 <= lng <= 180):
        raise MalformedGeometryError(f"Point out of range: ({lat}, {lng})")
    return lat, lng


def normalize_ring(ring: Sequence[Sequence[float]]) -> List[LatLng]:
    """
    Convert a GeoJSON [lng, lat] ring to (lat, lng) vertices.

    This is the only place where coordinate order is flipped. The closing
    vertex (if present) is dropped.

    Raises:
        MalformedGeometryError: fewer than 3 distinct vertices or bad coordinates
    """
    if not isinstance(ring, (list, tuple)):
        raise MalformedGeometryError("Polygon ring is not a list")

    vertices = []
    for position in ring:
        if not isinstance(position, (list, tuple)) or len(position) < 2:
            raise MalformedGeometryError(f"Bad polygon position: {position!r}")
        lng, lat = _finite(position[0]), _finite(position[1])
        vertices.append((lat, lng))

    if len(vertices) > 1 and vertices[0] == vertices[-1]:
        vertices = vertices[:-1]

    if len(vertices) < 3:
        raise MalformedGeometryError(f"Polygon needs at least 3 vertices, got {len(vertices)}")
    return vertices


def _on_segment(lat: float, lng: float, a: LatLng, b: LatLng) -> bool:
    (y1, x1), (y2, x2) = a, b
    cross = (lng - x1) * (y2 - y1) - (lat - y1) * (x2 - x1)
    if abs(cross) > BOUNDARY_EPSILON:
        return False
    return (min(x1, x2) - BOUNDARY_EPSILON <= lng <= max(x1, x2) + BOUNDARY_EPSILON
            and min(y1, y2) - BOUNDARY_EPSILON <= lat <= max(y1, y2) + BOUNDARY_EPSILON)


def point_in_ring(lat: float, lng: float, vertices: List[LatLng]) -> bool:
    """Ray casting over (lat, lng) vertices; points on the boundary count as inside."""
    inside = False
    j = len(vertices) - 1
    for i in range(len(vertices)):
        if _on_segment(lat, lng, vertices[j], vertices[i]):
            return True
        yi, xi = vertices[i]
        yj, xj = vertices[j]
        if (yi > lat) != (yj > lat):
            x_intersect = (xj - xi) * (lat - yi) / (yj - yi) + xi
            if lng < x_intersect:
                inside = not inside
        j = i
    return inside


class Circle:
    def __init__(self, center: LatLng, radius_meters: float):
        self.center = center
        self.radius_meters = radius_meters

    def contains(self, lat: float, lng: float, earth_radius_km: float) -> bool:
        distance = haversine_distance_meters(lat, lng, self.center[0], self.center[1], earth_radius_km)
        return distance <= self.radius_meters


class Polygon:
    def __init__(self, outer: List[LatLng], holes: Optional[List[List[LatLng]]] = None):
        self.outer = outer
        self.holes = holes or []

    def contains(self, lat: float, lng: float, earth_radius_km: float) -> bool:
        if not point_in_ring(lat, lng, self.outer):
            return False
        for hole in self.holes:
            # Hole boundary still belongs to the polygon
            if point_in_ring(lat, lng, hole) and not any(
                _on_segment(lat, lng, hole[k - 1], hole[k]) for k in range(len(hole))
            ):
                return False
        return True


class Zones:
    """Union of several shapes (MultiPolygon / FeatureCollection)"""

    def __init__(self, shapes: List):
        self.shapes = shapes

    def contains(self, lat: float, lng: float, earth_radius_km: float) -> bool:
        return any(shape.contains(lat, lng, earth_radius_km) for shape in self.shapes)


def _parse_polygon_coordinates(coordinates) -> Polygon:
    if not isinstance(coordinates, (list, tuple)) or not coordinates:
        raise MalformedGeometryError("Polygon has no coordinates")
    rings = [normalize_ring(ring) for ring in coordinates]
    return Polygon(rings[0], rings[1:])


def _parse_radius(value) -> float:
    radius = _finite(value)
    if radius <= 0:
        raise MalformedGeometryError(f"Radius must be positive, got {radius}")
    return radius


def parse_search_area(area: Dict, default_radius_meters: Optional[float] = None):
    """
    Parse a buyer search area into a shape with a ``contains`` method.

    Supported formats:
    - circle: ``{"center": {"lat", "lng"}, "radiusMeters": r}`` (``radius`` also accepted)
    - GeoJSON ``Polygon`` / ``MultiPolygon`` / ``Point`` geometry
    - GeoJSON ``Feature`` wrapping one of the above
    - GeoJSON ``FeatureCollection`` (inside any zone counts)

    ``Point`` zones use ``default_radius_meters``.

    Raises:
        MalformedGeometryError: the area cannot be used for containment checks
    """
    if default_radius_meters is None:
        default_radius_meters = settings.default_search_radius_meters

    if not isinstance(area, dict):
        raise MalformedGeometryError(f"Search area must be an object, got {type(area).__name__}")

    if 'center' in area:
        center = parse_point(area.get('center'))
        radius = area.get('radiusMeters', area.get('radius'))
        return Circle(center, _parse_radius(radius))

    geometry_type = area.get('type')

    if geometry_type == 'Polygon':
        return _parse_polygon_coordinates(area.get('coordinates'))

    if geometry_type == 'MultiPolygon':
        polygons = area.get('coordinates') or []
        if not polygons:
            raise MalformedGeometryError("MultiPolygon has no polygons")
        return Zones([_parse_polygon_coordinates(p) for p in polygons])

    if geometry_type == 'Point':
        coordinates = area.get('coordinates') or []
        if len(coordinates) < 2:
            raise MalformedGeometryError("Point has no coordinates")
        center = parse_point((coordinates[1], coordinates[0]))
        radius = area.get('radiusMeters', default_radius_meters)
        return Circle(center, _parse_radius(radius))

    if geometry_type == 'Feature':
        geometry = dict(area.get('geometry') or {})
        properties = area.get('properties') or {}
        if 'radiusMeters' in properties:
            geometry.setdefault('radiusMeters', properties['radiusMeters'])
        return parse_search_area(geometry, default_radius_meters)

    if geometry_type == 'FeatureCollection':
        features = area.get('features') or []
        if not features:
            raise MalformedGeometryError("FeatureCollection has no features")
        return Zones([parse_search_area(f, default_radius_meters) for f in features])

    raise MalformedGeometryError(f"Unsupported search area type: {geometry_type!r}")


class GeoFilter:
    """
    Decide whether a point lies inside a buyer's search area.

    Fail-closed: unusable geometry on either side excludes the point
    instead of raising. Instances hold only configuration and are safe
    to share between threads.
    """

    def __init__(self, earth_radius_km: Optional[float] = None,
                 default_radius_meters: Optional[float] = None):
        self.earth_radius_km = earth_radius_km if earth_radius_km is not None else settings.earth_radius_km
        self.default_radius_meters = (
            default_radius_meters if default_radius_meters is not None
            else settings.default_search_radius_meters
        )

    def contains(self, point, area) -> bool:
        """
        Check if point is inside area (boundary inclusive).

        Args:
            point: Listing location ({lat, lng})
            area: Buyer search area (circle or GeoJSON)

        Returns:
            True if inside, False if outside or if either geometry is malformed
        """
        try:
            lat, lng = parse_point(point)
            shape = parse_search_area(area, self.default_radius_meters)
        except MalformedGeometryError as e:
            logger.warning(f"[GeoFilter] Malformed geometry, excluding point, error: {e}")
            return False

        return shape.contains(lat, lng, self.earth_radius_km)
