"""Shape validation for reprojected geometries.

The validator only inspects; it never closes rings, drops points or
otherwise repairs a geometry. Checks run in a fixed order so the reported
reason is deterministic:

1. its kind is the kind the target table stores (``kind_mismatch``),
2. the geometry is in EPSG:3857 (``wrong_srid``),
3. it is not empty (``empty_geometry``),
4. every coordinate is finite (``non_finite_coordinate``),
5. every ring ends on its first point (``ring_not_closed``),
6. every ring has at least four points (``too_few_points``).
"""

from __future__ import annotations

import math

from geoloader.core import errors
from geoloader.utils import geometry

MIN_RING_POINTS = 4


def _check_finite(
    points: tuple[geometry.Coordinate, ...],
    record_index: int | None,
    polygon_index: int | None = None,
    ring_index: int | None = None,
) -> None:
    for point_index, (x, y) in enumerate(points):
        if not (math.isfinite(x) and math.isfinite(y)):
            raise errors.GeometryValidationError(
                "non_finite_coordinate",
                f"coordinate ({x}, {y}) is not finite",
                polygon_index=polygon_index,
                ring_index=ring_index,
                point_index=point_index,
                record_index=record_index,
            )


def _check_rings(
    polygons: tuple[geometry.PolygonRings, ...],
    record_index: int | None,
    multi: bool,
) -> None:
    for polygon_index, rings in enumerate(polygons):
        reported_polygon = polygon_index if multi else None
        if not rings:
            raise errors.GeometryValidationError(
                "empty_geometry",
                "polygon has no rings",
                polygon_index=reported_polygon,
                record_index=record_index,
            )
        for ring_index, ring in enumerate(rings):
            _check_finite(ring, record_index, reported_polygon, ring_index)
            if ring and ring[0] != ring[-1]:
                raise errors.GeometryValidationError(
                    "ring_not_closed",
                    f"first point {ring[0]} differs from last point {ring[-1]}",
                    polygon_index=reported_polygon,
                    ring_index=ring_index,
                    point_index=len(ring) - 1,
                    record_index=record_index,
                )
            if len(ring) < MIN_RING_POINTS:
                raise errors.GeometryValidationError(
                    "too_few_points",
                    f"ring has {len(ring)} points, "
                    f"at least {MIN_RING_POINTS} are required",
                    polygon_index=reported_polygon,
                    ring_index=ring_index,
                    record_index=record_index,
                )


def validate_geometry(
    candidate: geometry.Geometry,
    expected_kind: geometry.GeometryKind,
    *,
    record_index: int | None = None,
) -> geometry.Geometry:
    """Confirm ``candidate`` satisfies every shape invariant.

    Args:
        candidate: Reprojected geometry.
        expected_kind: The kind the target table stores.
        record_index: Source record position, for error context.

    Returns:
        ``candidate`` itself, unchanged.

    Raises:
        GeometryValidationError: Naming the violated invariant and the
            polygon/ring/point where it was found.
    """
    if candidate.kind is not expected_kind:
        raise errors.GeometryValidationError(
            "kind_mismatch",
            f"expected {expected_kind.value}, got {candidate.kind.value}",
            record_index=record_index,
        )
    if candidate.srid != geometry.WEB_MERCATOR_SRID:
        raise errors.GeometryValidationError(
            "wrong_srid",
            f"geometry is in EPSG:{candidate.srid}, "
            f"expected EPSG:{geometry.WEB_MERCATOR_SRID}",
            record_index=record_index,
        )

    match candidate.shape:
        case geometry.Point(coordinates=coordinates):
            _check_finite((coordinates,), record_index)
        case geometry.MultiPoint(points=points):
            if not points:
                raise errors.GeometryValidationError(
                    "empty_geometry",
                    "multipoint has no points",
                    record_index=record_index,
                )
            _check_finite(points, record_index)
        case geometry.Polygon(rings=rings):
            _check_rings((rings,), record_index, multi=False)
        case geometry.MultiPolygon(polygons=polygons):
            if not polygons:
                raise errors.GeometryValidationError(
                    "empty_geometry",
                    "multipolygon has no polygons",
                    record_index=record_index,
                )
            _check_rings(polygons, record_index, multi=True)

    return candidate
