"""Tests for geometry shape validation.

This module verifies that the validator:
    - Accepts well-formed points, polygons with holes and multi variants,
    - Always rejects open rings, whatever their size,
    - Always rejects a kind that differs from the target table's kind,
    - Rejects rings under four points, empty geometries, non-finite
      coordinates and geometries not in EPSG:3857,
    - Never modifies what it is given.

See Also:
    - backend/geoloader/services/validation.py for the implementation.
"""

from __future__ import annotations

import math

import pytest

from geoloader.core import errors
from geoloader.services import validation
from geoloader.utils import geometry

SQUARE = ((0.0, 0.0), (10.0, 0.0), (10.0, 10.0), (0.0, 10.0), (0.0, 0.0))
HOLE = ((2.0, 2.0), (4.0, 2.0), (4.0, 4.0), (2.0, 2.0))
POLYGON = geometry.GeometryKind.POLYGON


def _mercator(shape: geometry.Shape) -> geometry.Geometry:
    return geometry.Geometry(shape, geometry.WEB_MERCATOR_SRID)


def _reason(
    candidate: geometry.Geometry,
    expected: geometry.GeometryKind,
) -> errors.GeometryValidationError:
    with pytest.raises(errors.GeometryValidationError) as excinfo:
        validation.validate_geometry(candidate, expected, record_index=0)
    return excinfo.value


def test_valid_polygon_is_returned_unchanged() -> None:
    """Test a closed polygon with a hole passes untouched."""
    candidate = _mercator(geometry.Polygon((SQUARE, HOLE)))
    assert validation.validate_geometry(candidate, POLYGON) is candidate


def test_valid_point_and_multi_variants() -> None:
    """Test points and multi variants pass for their own kinds."""
    point = _mercator(geometry.Point((1.0, 2.0)))
    multipoint = _mercator(geometry.MultiPoint(((1.0, 2.0), (3.0, 4.0))))
    multipolygon = _mercator(geometry.MultiPolygon(((SQUARE,), (SQUARE, HOLE))))
    assert validation.validate_geometry(point, geometry.GeometryKind.POINT) is point
    assert (
        validation.validate_geometry(multipoint, geometry.GeometryKind.MULTI_POINT)
        is multipoint
    )
    assert (
        validation.validate_geometry(multipolygon, geometry.GeometryKind.MULTI_POLYGON)
        is multipolygon
    )


@pytest.mark.parametrize(
    "ring",
    [
        SQUARE[:-1],
        ((0.0, 0.0), (1.0, 0.0), (1.0, 1.0)),
        ((0.0, 0.0), (1.0, 0.0)),
        SQUARE[:-1] + ((0.0, 1e-9),),
    ],
    ids=["four-open", "three-open", "two-open", "almost-closed"],
)
def test_open_ring_always_rejected(ring: geometry.Ring) -> None:
    """Test an open ring is reported as not closed regardless of size."""
    error = _reason(_mercator(geometry.Polygon((ring,))), POLYGON)
    assert error.reason == "ring_not_closed"
    assert error.ring_index == 0
    assert error.point_index == len(ring) - 1


def test_open_hole_names_ring_and_polygon() -> None:
    """Test the failing hole and polygon are identified in multi-polygons."""
    open_hole = HOLE[:-1]
    candidate = _mercator(geometry.MultiPolygon(((SQUARE,), (SQUARE, open_hole))))
    error = _reason(candidate, geometry.GeometryKind.MULTI_POLYGON)
    assert error.reason == "ring_not_closed"
    assert error.polygon_index == 1
    assert error.ring_index == 1
    assert "polygon 1, ring 1" in str(error)


@pytest.mark.parametrize(
    ("shape", "expected"),
    [
        (geometry.Point((0.0, 0.0)), POLYGON),
        (geometry.MultiPolygon(((SQUARE,),)), POLYGON),
        (geometry.Polygon((SQUARE,)), geometry.GeometryKind.POINT),
        (geometry.MultiPoint(((0.0, 0.0),)), geometry.GeometryKind.POINT),
        (geometry.Polygon((SQUARE[:-1],)), geometry.GeometryKind.POINT),
    ],
)
def test_kind_mismatch_always_rejected(
    shape: geometry.Shape,
    expected: geometry.GeometryKind,
) -> None:
    """Test a kind other than the table's kind is rejected first."""
    error = _reason(_mercator(shape), expected)
    assert error.reason == "kind_mismatch"


def test_closed_ring_with_too_few_points() -> None:
    """Test a closed three-point ring is too small to be a polygon."""
    ring = ((0.0, 0.0), (1.0, 1.0), (0.0, 0.0))
    error = _reason(_mercator(geometry.Polygon((ring,))), POLYGON)
    assert error.reason == "too_few_points"


def test_wrong_srid() -> None:
    """Test geometries outside EPSG:3857 are rejected."""
    candidate = geometry.Geometry(geometry.Polygon((SQUARE,)), 4326)
    assert _reason(candidate, POLYGON).reason == "wrong_srid"


def test_empty_geometries() -> None:
    """Test polygons without rings and empty multi variants are rejected."""
    assert _reason(_mercator(geometry.Polygon(())), POLYGON).reason == "empty_geometry"
    assert (
        _reason(
            _mercator(geometry.MultiPolygon(())), geometry.GeometryKind.MULTI_POLYGON
        ).reason
        == "empty_geometry"
    )
    assert (
        _reason(
            _mercator(geometry.MultiPoint(())), geometry.GeometryKind.MULTI_POINT
        ).reason
        == "empty_geometry"
    )


@pytest.mark.parametrize("value", [math.nan, math.inf, -math.inf])
def test_non_finite_coordinates(value: float) -> None:
    """Test NaN and infinite ordinates are rejected with their position."""
    ring = (SQUARE[0], (value, 0.0)) + SQUARE[2:]
    error = _reason(_mercator(geometry.Polygon((ring,))), POLYGON)
    assert error.reason == "non_finite_coordinate"
    assert error.point_index == 1

    point_error = _reason(_mercator(geometry.Point((0.0, value))), geometry.GeometryKind.POINT)
    assert point_error.reason == "non_finite_coordinate"


def test_kind_is_checked_before_srid() -> None:
    """Test a wrong kind in the wrong SRID reports the kind."""
    candidate = geometry.Geometry(geometry.Point((136.7, 35.4)), 4326)
    assert _reason(candidate, POLYGON).reason == "kind_mismatch"


def test_non_finite_is_checked_before_closure() -> None:
    """Test a NaN in an open ring reports the coordinate first."""
    ring = ((0.0, 0.0), (math.nan, 0.0), (1.0, 1.0))
    error = _reason(_mercator(geometry.Polygon((ring,))), POLYGON)
    assert error.reason == "non_finite_coordinate"
    assert error.point_index == 1
