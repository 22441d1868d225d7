"""Error taxonomy for the registration pipeline.

Every failure the pipeline can report derives from ``GeoLoaderError`` and
carries a stable ``error_code`` plus the index of the source record it
concerns (``None`` for run-level failures such as a store outage). The
pipeline is fail-fast: the first error raised by any stage aborts the run
before anything is committed.

Example:
    Report a failure with its context:
        >>> from geoloader.core import errors
        >>> try:
        ...     raise errors.MissingFieldError("P30_005", record_index=3)
        ... except errors.GeoLoaderError as exc:
        ...     print(exc.error_code, exc)
        MISSING_FIELD record 3: required field 'P30_005' is absent or empty
"""

from __future__ import annotations


class GeoLoaderError(Exception):
    """Base class for pipeline failures."""

    error_code = "GEOLOADER_ERROR"

    def __init__(self, message: str, *, record_index: int | None = None):
        self.record_index = record_index
        if record_index is not None:
            message = f"record {record_index}: {message}"
        super().__init__(message)


class SourceFormatError(GeoLoaderError):
    """Raised for missing, truncated or malformed source containers."""

    error_code = "SOURCE_FORMAT"


class UnsupportedGeometryTypeError(GeoLoaderError):
    """Raised when a record's geometry kind is not recognized."""

    error_code = "UNSUPPORTED_GEOMETRY"

    def __init__(self, geometry_type: str | None, *, record_index: int | None = None):
        self.geometry_type = geometry_type
        super().__init__(
            f"unsupported geometry type {geometry_type!r}",
            record_index=record_index,
        )


class EncodingError(GeoLoaderError):
    """Raised when bytes are invalid for the declared text encoding."""

    error_code = "ENCODING"

    def __init__(
        self,
        message: str,
        *,
        field: str | None = None,
        record_index: int | None = None,
    ):
        self.field = field
        if field is not None:
            message = f"field {field!r}: {message}"
        super().__init__(message, record_index=record_index)


class ProjectionError(GeoLoaderError):
    """Raised for unresolvable SRIDs or transforms that diverge."""

    error_code = "PROJECTION"


class GeometryValidationError(GeoLoaderError):
    """Raised when a geometry breaks a shape invariant.

    Attributes:
        reason: Which invariant failed (``kind_mismatch``, ``wrong_srid``,
            ``empty_geometry``, ``non_finite_coordinate``,
            ``too_few_points`` or ``ring_not_closed``).
        polygon_index: Polygon position within a multi-polygon.
        ring_index: Ring position within its polygon (0 is the exterior).
        point_index: Coordinate position within its ring or point list.
    """

    error_code = "GEOMETRY_VALIDATION"

    def __init__(
        self,
        reason: str,
        message: str,
        *,
        polygon_index: int | None = None,
        ring_index: int | None = None,
        point_index: int | None = None,
        record_index: int | None = None,
    ):
        self.reason = reason
        self.polygon_index = polygon_index
        self.ring_index = ring_index
        self.point_index = point_index
        location = [
            f"{name} {value}"
            for name, value in (
                ("polygon", polygon_index),
                ("ring", ring_index),
                ("point", point_index),
            )
            if value is not None
        ]
        if location:
            message = f"{message} at {', '.join(location)}"
        super().__init__(f"{reason}: {message}", record_index=record_index)


class MappingError(GeoLoaderError):
    """Base class for attribute-to-entity mapping failures."""

    error_code = "MAPPING"

    def __init__(
        self,
        field: str,
        message: str,
        *,
        record_index: int | None = None,
    ):
        self.field = field
        super().__init__(message, record_index=record_index)


class MissingFieldError(MappingError):
    """Raised when a required code or name field is absent or empty."""

    error_code = "MISSING_FIELD"

    def __init__(self, field: str, *, record_index: int | None = None):
        super().__init__(
            field,
            f"required field {field!r} is absent or empty",
            record_index=record_index,
        )


class CodeFormatError(MappingError):
    """Raised when a fixed-width code has the wrong length or characters."""

    error_code = "CODE_FORMAT"

    def __init__(
        self,
        field: str,
        value: str,
        width: int,
        *,
        record_index: int | None = None,
    ):
        self.value = value
        self.width = width
        super().__init__(
            field,
            f"field {field!r} value {value!r} is not a {width}-digit code",
            record_index=record_index,
        )


class FieldLengthError(MappingError):
    """Raised when a text value does not fit its target column."""

    error_code = "FIELD_LENGTH"

    def __init__(
        self,
        field: str,
        length: int,
        limit: int,
        *,
        record_index: int | None = None,
    ):
        self.length = length
        self.limit = limit
        super().__init__(
            field,
            f"field {field!r} has {length} characters, limit is {limit}",
            record_index=record_index,
        )


class StoreError(GeoLoaderError):
    """Raised for constraint violations, connectivity loss or aborts.

    The enclosing transaction has always been rolled back when this is
    raised. It is never retried automatically.
    """

    error_code = "STORE"


class TargetNotEmptyError(StoreError):
    """Raised when the target table already holds rows in the run's scope."""

    error_code = "TARGET_NOT_EMPTY"

    def __init__(self, table: str, count: int, scope_code: str | None):
        self.table = table
        self.count = count
        self.scope_code = scope_code
        scope = f" for code {scope_code!r}" if scope_code else ""
        super().__init__(
            f"table {table!r} already holds {count} row(s){scope}; "
            "re-run with replace to clear them first"
        )
