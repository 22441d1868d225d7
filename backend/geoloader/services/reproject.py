"""Coordinate reprojection into the canonical Web Mercator reference.

pyproj keeps CRS definitions and transformation pipelines in PROJ contexts
that must not be shared between threads. ``ProjectionContext`` scopes those
objects to one run: it is opened once, hands each worker thread its own
``Transformer`` per (source, target) pair, and drops everything when the run
leaves the ``with`` block, whether it succeeded or failed.

Every coordinate of a geometry goes through a single ``transform`` call.
PROJ applies the same operation to each element of the batch, so results
are identical to transforming the points one at a time.

Example:
    Reproject a JGD2011 point to EPSG:3857:
        >>> from geoloader.services import reproject
        >>> from geoloader.utils import geometry
        >>> point = geometry.Geometry(geometry.Point((136.76, 35.39)), 6668)
        >>> with reproject.ProjectionContext() as context:
        ...     projected = reproject.reproject(point, context)
        >>> projected.srid
        3857
"""

from __future__ import annotations

import logging
import math
import threading
import types

import pyproj
import pyproj.exceptions

from geoloader.core import errors
from geoloader.utils import geometry

logger = logging.getLogger(__name__)


class ProjectionContext:
    """Run-scoped cache of CRS definitions and per-thread transformers."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._crs: dict[int, pyproj.CRS] = {}
        self._local = threading.local()
        self._closed = False

    def __enter__(self) -> ProjectionContext:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: types.TracebackType | None,
    ) -> None:
        self.close()

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        """Release every cached CRS and transformer."""
        with self._lock:
            self._closed = True
            self._crs.clear()
            self._local = threading.local()

    def _check_open(self) -> None:
        if self._closed:
            raise errors.ProjectionError("projection context is closed")

    def crs(self, srid: int) -> pyproj.CRS:
        """Resolve an EPSG code, caching the definition for the run.

        Raises:
            ProjectionError: If the code is unknown to PROJ.
        """
        self._check_open()
        with self._lock:
            cached = self._crs.get(srid)
            if cached is not None:
                return cached
            try:
                resolved = pyproj.CRS.from_epsg(srid)
            except pyproj.exceptions.CRSError as exc:
                raise errors.ProjectionError(
                    f"cannot resolve SRID {srid}: {exc}"
                ) from exc
            self._crs[srid] = resolved
            return resolved

    def transformer(self, source_srid: int, target_srid: int) -> pyproj.Transformer:
        """Return the calling thread's transformer for a pair of SRIDs."""
        self._check_open()
        cache: dict[tuple[int, int], pyproj.Transformer] | None = getattr(
            self._local, "transformers", None
        )
        if cache is None:
            cache = self._local.transformers = {}
        key = (source_srid, target_srid)
        transformer = cache.get(key)
        if transformer is None:
            try:
                transformer = pyproj.Transformer.from_crs(
                    self.crs(source_srid),
                    self.crs(target_srid),
                    always_xy=True,
                )
            except pyproj.exceptions.ProjError as exc:
                raise errors.ProjectionError(
                    f"no transformation from EPSG:{source_srid} "
                    f"to EPSG:{target_srid}: {exc}"
                ) from exc
            logger.debug(
                "created transformer source=%d target=%d thread=%s",
                source_srid,
                target_srid,
                threading.current_thread().name,
            )
            cache[key] = transformer
        return transformer


def reproject(
    source: geometry.Geometry,
    context: ProjectionContext,
    target_srid: int = geometry.WEB_MERCATOR_SRID,
    *,
    record_index: int | None = None,
) -> geometry.Geometry:
    """Transform every coordinate of ``source`` into ``target_srid``.

    Point count, ring count and nesting are preserved; only coordinate
    values change. When the geometry is already in ``target_srid`` it is
    returned as an equal copy without touching PROJ.

    Args:
        source: Geometry tagged with its source SRID.
        context: The run's projection context.
        target_srid: EPSG code to transform into.
        record_index: Source record position, for error context.

    Returns:
        A new geometry tagged with ``target_srid``.

    Raises:
        ProjectionError: If an SRID cannot be resolved or any coordinate
            leaves the valid domain of the transformation.
    """
    if source.srid == target_srid:
        return geometry.Geometry(source.shape, target_srid)

    transformer = context.transformer(source.srid, target_srid)
    coordinates = geometry.flatten(source.shape)
    if not coordinates:
        return geometry.Geometry(source.shape, target_srid)
    xs = [x for x, _ in coordinates]
    ys = [y for _, y in coordinates]
    try:
        tx, ty = transformer.transform(xs, ys, errcheck=True)
    except pyproj.exceptions.ProjError as exc:
        raise errors.ProjectionError(
            f"transform EPSG:{source.srid} -> EPSG:{target_srid} failed: {exc}",
            record_index=record_index,
        ) from exc

    projected: list[geometry.Coordinate] = []
    for point_index, (x, y) in enumerate(zip(tx, ty, strict=True)):
        if not (math.isfinite(x) and math.isfinite(y)):
            raise errors.ProjectionError(
                f"point {point_index} ({xs[point_index]}, {ys[point_index]}) "
                f"falls outside the domain of EPSG:{source.srid} -> "
                f"EPSG:{target_srid}",
                record_index=record_index,
            )
        projected.append((float(x), float(y)))

    return geometry.Geometry(
        geometry.rebuild(source.shape, projected),
        target_srid,
    )
