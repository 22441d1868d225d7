"""Geometry value types shared by every pipeline stage.

Geometries are modelled as a small closed set of frozen dataclasses
(``Point``, ``MultiPoint``, ``Polygon``, ``MultiPolygon``) wrapped in a
``Geometry`` that carries the spatial reference identifier. Stages dispatch
on the variant with ``match`` statements, so adding a variant forces every
stage to handle it.

Coordinates are plain ``(x, y)`` float tuples. Any Z/M ordinates present in
the source are dropped by the readers before a ``Geometry`` is built.

Example:
    Build a closed polygon in JGD2011 and encode it for PostGIS:
        >>> from geoloader.utils import geometry
        >>> ring = ((136.7, 35.4), (136.8, 35.4), (136.8, 35.5),
        ...         (136.7, 35.5), (136.7, 35.4))
        >>> geom = geometry.Geometry(geometry.Polygon((ring,)), srid=6668)
        >>> geom.kind
        <GeometryKind.POLYGON: 'Polygon'>
        >>> wkb = geometry.to_wkb(geom)
"""

from __future__ import annotations

import dataclasses
import enum
from typing import TYPE_CHECKING

import shapely
import shapely.geometry

if TYPE_CHECKING:
    from collections.abc import Iterator, Sequence

Coordinate = tuple[float, float]
Ring = tuple[Coordinate, ...]
PolygonRings = tuple[Ring, ...]

WEB_MERCATOR_SRID = 3857
WGS84_SRID = 4326


class GeometryKind(enum.StrEnum):
    """Geometry kinds the pipeline recognizes (GeoJSON type names)."""

    POINT = "Point"
    MULTI_POINT = "MultiPoint"
    POLYGON = "Polygon"
    MULTI_POLYGON = "MultiPolygon"


@dataclasses.dataclass(frozen=True)
class Point:
    coordinates: Coordinate

    @property
    def kind(self) -> GeometryKind:
        return GeometryKind.POINT


@dataclasses.dataclass(frozen=True)
class MultiPoint:
    points: tuple[Coordinate, ...]

    @property
    def kind(self) -> GeometryKind:
        return GeometryKind.MULTI_POINT


@dataclasses.dataclass(frozen=True)
class Polygon:
    """A polygon as an exterior ring followed by zero or more holes."""

    rings: PolygonRings

    @property
    def kind(self) -> GeometryKind:
        return GeometryKind.POLYGON


@dataclasses.dataclass(frozen=True)
class MultiPolygon:
    polygons: tuple[PolygonRings, ...]

    @property
    def kind(self) -> GeometryKind:
        return GeometryKind.MULTI_POLYGON


Shape = Point | MultiPoint | Polygon | MultiPolygon


@dataclasses.dataclass(frozen=True)
class Geometry:
    """A shape tagged with the spatial reference its coordinates are in.

    Attributes:
        shape: One of the geometry variants.
        srid: EPSG code of the coordinate reference system.
    """

    shape: Shape
    srid: int

    @property
    def kind(self) -> GeometryKind:
        return self.shape.kind


def iter_rings(shape: Shape) -> Iterator[tuple[int, int, Ring]]:
    """Yield ``(polygon_index, ring_index, ring)`` for every polygon ring.

    Point variants have no rings and yield nothing.
    """
    match shape:
        case Point() | MultiPoint():
            return
        case Polygon(rings=rings):
            for ring_index, ring in enumerate(rings):
                yield 0, ring_index, ring
        case MultiPolygon(polygons=polygons):
            for polygon_index, rings in enumerate(polygons):
                for ring_index, ring in enumerate(rings):
                    yield polygon_index, ring_index, ring


def flatten(shape: Shape) -> list[Coordinate]:
    """Return every coordinate of a shape in traversal order."""
    match shape:
        case Point(coordinates=coordinates):
            return [coordinates]
        case MultiPoint(points=points):
            return list(points)
        case Polygon() | MultiPolygon():
            return [point for _, _, ring in iter_rings(shape) for point in ring]


def rebuild(shape: Shape, coordinates: Sequence[Coordinate]) -> Shape:
    """Rebuild ``shape`` with new coordinates in ``flatten`` order.

    The nesting (point count per ring, ring count per polygon) is copied from
    ``shape``; only coordinate values change.

    Raises:
        ValueError: If the number of coordinates does not match the shape.
    """
    expected = len(flatten(shape))
    if len(coordinates) != expected:
        raise ValueError(
            f"expected {expected} coordinates, got {len(coordinates)}"
        )

    position = 0

    def take_ring(ring: Ring) -> Ring:
        nonlocal position
        start = position
        position += len(ring)
        return tuple(coordinates[start:position])

    match shape:
        case Point():
            return Point(coordinates[0])
        case MultiPoint():
            return MultiPoint(tuple(coordinates))
        case Polygon(rings=rings):
            return Polygon(tuple(take_ring(ring) for ring in rings))
        case MultiPolygon(polygons=polygons):
            return MultiPolygon(
                tuple(
                    tuple(take_ring(ring) for ring in rings)
                    for rings in polygons
                )
            )


def from_geojson(geometry_type: str, coordinates: object) -> Shape:
    """Build a shape from a GeoJSON-style type name and coordinate array.

    Raises:
        KeyError: If ``geometry_type`` is not a recognized kind.
        TypeError, ValueError, IndexError: If the coordinate array does not
            have the nesting the type requires.
    """
    try:
        kind = GeometryKind(geometry_type)
    except ValueError:
        raise KeyError(geometry_type) from None

    def pair(position: object) -> Coordinate:
        values = list(position)  # type: ignore[call-overload]
        if len(values) < 2:
            raise ValueError(f"coordinate has {len(values)} ordinates")
        return (float(values[0]), float(values[1]))

    def ring(positions: object) -> Ring:
        return tuple(pair(p) for p in positions)  # type: ignore[attr-defined]

    def rings(polygon: object) -> PolygonRings:
        return tuple(ring(r) for r in polygon)  # type: ignore[attr-defined]

    match kind:
        case GeometryKind.POINT:
            return Point(pair(coordinates))
        case GeometryKind.MULTI_POINT:
            return MultiPoint(ring(coordinates))
        case GeometryKind.POLYGON:
            return Polygon(rings(coordinates))
        case GeometryKind.MULTI_POLYGON:
            return MultiPolygon(
                tuple(rings(p) for p in coordinates)  # type: ignore[attr-defined]
            )


def to_shapely(shape: Shape) -> shapely.Geometry:
    """Convert a shape to the equivalent shapely geometry."""
    match shape:
        case Point(coordinates=coordinates):
            return shapely.geometry.Point(coordinates)
        case MultiPoint(points=points):
            return shapely.geometry.MultiPoint(points)
        case Polygon(rings=rings):
            return shapely.geometry.Polygon(rings[0], rings[1:])
        case MultiPolygon(polygons=polygons):
            return shapely.geometry.MultiPolygon(
                [(rings[0], rings[1:]) for rings in polygons]
            )


def to_wkb(geometry: Geometry) -> bytes:
    """Encode a geometry as ISO WKB for ``ST_GeomFromWKB``.

    The SRID is not embedded; callers pass it to PostGIS alongside the WKB.
    """
    return shapely.to_wkb(to_shapely(geometry.shape), hex=False)
