"""Source readers that turn container files into raw records.

Two container formats are supported, each by a plain generator function:

- ``shapefile``: an ESRI shapefile (``.shp`` geometry file with companion
  ``.shx`` index and ``.dbf`` attribute table), read with fiona.
- ``geojson``: a GeoJSON FeatureCollection, read with the json module.

The reader for a run is chosen once from ``READERS`` by the declared
``SourceFormat`` tag. Readers are lazy and single-pass: nothing is opened
until the first record is requested, and file handles are released when
the iterator is exhausted, fails, or is closed early.

Attribute values are yielded as the raw bytes found in the container so the
decoding stage sees exactly what the publisher wrote. Shapefiles are opened
with an 8-bit transparent codec for that reason; GeoJSON strings are
re-encoded as UTF-8, the only encoding GeoJSON allows.

Example:
    Stream the records of an MLIT post office shapefile:
        >>> import pathlib
        >>> from geoloader.services import sources
        >>> path = pathlib.Path("P30-13_21.shp")
        >>> records = sources.open_records(
        ...     path, sources.SourceFormat.SHAPEFILE, srid=4612
        ... )
        >>> first = next(records)
        >>> name_bytes = first.attributes["P30_005"]  # still cp932-encoded
"""

from __future__ import annotations

import dataclasses
import enum
import json
import logging
import re
from typing import TYPE_CHECKING, Any, Protocol

import fiona
import fiona.errors

from geoloader.core import errors
from geoloader.utils import geometry

if TYPE_CHECKING:
    import pathlib
    from collections.abc import Generator, Mapping

logger = logging.getLogger(__name__)

# ISO-8859-1 maps every byte to the code point of the same value, so encoding
# the decoded text with it again restores the DBF bytes exactly.
_PASSTHROUGH_ENCODING = "iso-8859-1"

_SHAPEFILE_COMPANIONS = (".shx", ".dbf")

_CRS_NAME = re.compile(
    r"^(?:urn:ogc:def:crs:EPSG:[0-9.]*:|EPSG:)(?P<code>\d+)$",
    re.IGNORECASE,
)
_CRS84_NAMES = frozenset(
    {"urn:ogc:def:crs:OGC:1.3:CRS84", "urn:ogc:def:crs:OGC::CRS84"}
)


class SourceFormat(enum.StrEnum):
    SHAPEFILE = "shapefile"
    GEOJSON = "geojson"


@dataclasses.dataclass(frozen=True)
class RawRecord:
    """One feature as read from its container.

    Attributes:
        index: Zero-based position of the feature in the container.
        attributes: Field name to raw bytes, ``None`` for null fields, in
            the container's field order.
        geometry: The feature geometry in source coordinates.
    """

    index: int
    attributes: Mapping[str, bytes | None]
    geometry: geometry.Geometry


class RecordReader(Protocol):
    """Capability shared by every format variant: produce raw records."""

    def __call__(
        self,
        path: pathlib.Path,
        srid: int | None = None,
    ) -> Generator[RawRecord, None, None]: ...


def detect_format(path: pathlib.Path) -> SourceFormat:
    """Infer the container format from a file suffix.

    Raises:
        SourceFormatError: If the suffix is not a supported container.
    """
    suffix = path.suffix.lower()
    if suffix == ".shp":
        return SourceFormat.SHAPEFILE
    if suffix in (".geojson", ".json"):
        return SourceFormat.GEOJSON
    raise errors.SourceFormatError(
        f"cannot infer source format from {path.name!r}"
    )


def _build_geometry(
    geometry_type: str | None,
    coordinates: object,
    srid: int,
    index: int,
) -> geometry.Geometry:
    """Convert a GeoJSON-like type and coordinates to a ``Geometry``."""
    if geometry_type is None:
        raise errors.UnsupportedGeometryTypeError(None, record_index=index)
    try:
        shape = geometry.from_geojson(geometry_type, coordinates)
    except KeyError:
        raise errors.UnsupportedGeometryTypeError(
            geometry_type, record_index=index
        ) from None
    except (TypeError, ValueError, IndexError) as exc:
        raise errors.SourceFormatError(
            f"malformed {geometry_type} coordinates: {exc}",
            record_index=index,
        ) from exc
    return geometry.Geometry(shape, srid)


def _shapefile_srid(collection: Any, path: pathlib.Path) -> int:
    crs = collection.crs
    epsg = crs.to_epsg() if crs else None
    if epsg is None:
        raise errors.ProjectionError(
            f"no EPSG code can be derived from the .prj of {path.name!r}; "
            "declare the source SRID explicitly"
        )
    return int(epsg)


def _shapefile_value(value: object) -> bytes | None:
    if value is None:
        return None
    if isinstance(value, str):
        return value.encode(_PASSTHROUGH_ENCODING)
    return str(value).encode("ascii")


def read_shapefile(
    path: pathlib.Path,
    srid: int | None = None,
) -> Generator[RawRecord, None, None]:
    """Yield raw records from an ESRI shapefile.

    Args:
        path: Path to the ``.shp`` file. The ``.shx`` and ``.dbf`` files
            must sit next to it with the same stem.
        srid: Source SRID. Detected from the ``.prj`` file when omitted.

    Yields:
        RawRecord for every feature, in file order.

    Raises:
        SourceFormatError: If a file is missing, truncated or unreadable.
        UnsupportedGeometryTypeError: If a feature has a null geometry or a
            kind other than (Multi)Point or (Multi)Polygon.
        ProjectionError: If ``srid`` is omitted and cannot be detected.
    """
    if not path.is_file():
        raise errors.SourceFormatError(f"shapefile not found: {path}")
    for suffix in _SHAPEFILE_COMPANIONS:
        siblings = (path.with_suffix(suffix), path.with_suffix(suffix.upper()))
        if not any(sibling.is_file() for sibling in siblings):
            raise errors.SourceFormatError(
                f"shapefile {path.name!r} has no companion {suffix} file"
            )

    try:
        collection = fiona.open(path, encoding=_PASSTHROUGH_ENCODING)
    except fiona.errors.FionaError as exc:
        raise errors.SourceFormatError(
            f"cannot open shapefile {path.name!r}: {exc}"
        ) from exc

    with collection:
        source_srid = srid if srid is not None else _shapefile_srid(collection, path)
        logger.debug(
            "reading shapefile path=%s features=%d srid=%d",
            path,
            len(collection),
            source_srid,
        )
        features = iter(collection)
        index = 0
        while True:
            try:
                feature = next(features)
            except StopIteration:
                return
            except fiona.errors.FionaError as exc:
                raise errors.SourceFormatError(
                    f"cannot read feature: {exc}", record_index=index
                ) from exc

            shape = feature.geometry
            yield RawRecord(
                index=index,
                attributes={
                    name: _shapefile_value(value)
                    for name, value in feature.properties.items()
                },
                geometry=_build_geometry(
                    shape.type if shape is not None else None,
                    shape.coordinates if shape is not None else None,
                    source_srid,
                    index,
                ),
            )
            index += 1


def _geojson_srid(document: Mapping[str, Any], path: pathlib.Path) -> int:
    """Read the legacy ``crs`` member, defaulting to WGS84 (RFC 7946)."""
    crs = document.get("crs")
    if crs is None:
        return geometry.WGS84_SRID
    name = None
    if isinstance(crs, dict) and isinstance(crs.get("properties"), dict):
        name = crs["properties"].get("name")
    if not isinstance(name, str):
        raise errors.ProjectionError(
            f"unrecognized crs member in {path.name!r}: {crs!r}"
        )
    if name in _CRS84_NAMES:
        return geometry.WGS84_SRID
    match = _CRS_NAME.match(name)
    if match is None:
        raise errors.ProjectionError(
            f"unrecognized crs name {name!r} in {path.name!r}"
        )
    return int(match.group("code"))


def _geojson_value(value: object) -> bytes | None:
    if value is None:
        return None
    if isinstance(value, str):
        return value.encode("utf-8")
    return json.dumps(value, ensure_ascii=False).encode("utf-8")


def read_geojson(
    path: pathlib.Path,
    srid: int | None = None,
) -> Generator[RawRecord, None, None]:
    """Yield raw records from a GeoJSON FeatureCollection.

    Args:
        path: Path to the GeoJSON file.
        srid: Source SRID. Taken from the legacy ``crs`` member when
            omitted, or EPSG:4326 when the file has none.

    Yields:
        RawRecord for every feature, in document order.

    Raises:
        SourceFormatError: If the file is missing, is not valid JSON, is
            not a FeatureCollection, or holds a malformed feature.
        UnsupportedGeometryTypeError: If a feature has a null geometry or an
            unsupported geometry type.
        ProjectionError: If the ``crs`` member cannot be interpreted.
    """
    if not path.is_file():
        raise errors.SourceFormatError(f"GeoJSON file not found: {path}")
    try:
        with path.open("rb") as stream:
            document = json.load(stream)
    except ValueError as exc:
        raise errors.SourceFormatError(
            f"{path.name!r} is not valid JSON: {exc}"
        ) from exc

    if not isinstance(document, dict) or document.get("type") != "FeatureCollection":
        raise errors.SourceFormatError(
            f"{path.name!r} is not a GeoJSON FeatureCollection"
        )
    features = document.get("features")
    if not isinstance(features, list):
        raise errors.SourceFormatError(
            f"{path.name!r} has no features array"
        )

    source_srid = srid if srid is not None else _geojson_srid(document, path)
    logger.debug(
        "reading geojson path=%s features=%d srid=%d",
        path,
        len(features),
        source_srid,
    )
    for index, feature in enumerate(features):
        if not isinstance(feature, dict) or feature.get("type") != "Feature":
            raise errors.SourceFormatError(
                "entry is not a GeoJSON Feature", record_index=index
            )
        if "geometry" not in feature:
            raise errors.SourceFormatError(
                "feature has no geometry member", record_index=index
            )
        properties = feature.get("properties") or {}
        if not isinstance(properties, dict):
            raise errors.SourceFormatError(
                "feature properties is not an object", record_index=index
            )
        shape = feature["geometry"]
        if shape is not None and not isinstance(shape, dict):
            raise errors.SourceFormatError(
                "feature geometry is not an object", record_index=index
            )
        yield RawRecord(
            index=index,
            attributes={
                name: _geojson_value(value)
                for name, value in properties.items()
            },
            geometry=_build_geometry(
                shape.get("type") if shape is not None else None,
                shape.get("coordinates") if shape is not None else None,
                source_srid,
                index,
            ),
        )


READERS: dict[SourceFormat, RecordReader] = {
    SourceFormat.SHAPEFILE: read_shapefile,
    SourceFormat.GEOJSON: read_geojson,
}

# Attribute encoding fixed by the container format, if any.
FORMAT_ENCODINGS: dict[SourceFormat, str] = {
    SourceFormat.GEOJSON: "utf-8",
}


def open_records(
    path: pathlib.Path,
    source_format: SourceFormat,
    srid: int | None = None,
) -> Generator[RawRecord, None, None]:
    """Return the lazy record stream for ``path`` in the declared format."""
    return READERS[source_format](path, srid)
