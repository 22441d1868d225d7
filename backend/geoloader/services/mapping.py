"""Mapping of decoded source records onto domain entities.

Source attribute names follow the MLIT National Land Numerical Information
datasets by default:

- N03 (administrative areas). A feature is prefecture-level when its
  branch office, county and municipality fields (``N03_002``-``N03_004``)
  are all empty; otherwise it is a city. Prefecture features carry no code
  of their own, so the run's administrative code is used.
- P30 (post offices). ``P30_001``-``P30_004`` hold the city, category,
  subcategory and post office codes; ``P30_005`` the name and ``P30_006``
  the address.

Pass a different ``FieldMapping`` to load a dataset version that renamed
its fields.
"""

from __future__ import annotations

import dataclasses
import uuid
from typing import TYPE_CHECKING

from geoloader.core import errors
from geoloader.db import models as db_models
from geoloader.utils import geometry

if TYPE_CHECKING:
    from geoloader.services import decoding


@dataclasses.dataclass(frozen=True)
class FieldMapping:
    """Source attribute names for every dataset."""

    prefecture_name: str = "N03_001"
    district_fields: tuple[str, ...] = ("N03_002", "N03_003", "N03_004")
    city_code: str = "N03_007"
    city_area: str = "N03_003"
    city_name: str = "N03_004"
    post_office_city_code: str = "P30_001"
    post_office_category_code: str = "P30_002"
    post_office_subcategory_code: str = "P30_003"
    post_office_code: str = "P30_004"
    post_office_name: str = "P30_005"
    post_office_address: str = "P30_006"


MLIT_FIELDS = FieldMapping()

_ADMIN_CODE_FIELD = "code"


def is_prefecture_code(code: str) -> bool:
    """Whether ``code`` is one of the 47 JIS X 0401 prefecture codes."""
    return (
        len(code) == db_models.PREFECTURE_CODE_WIDTH
        and code.isascii()
        and code.isdigit()
        and "01" <= code <= "47"
    )


def check_admin_code(
    dataset: db_models.DatasetKind,
    code: str | None,
) -> str | None:
    """Validate the run's administrative code filter for ``dataset``.

    Prefecture runs require a prefecture code. City and post office runs
    accept none, a prefecture code, or a full 5-digit city code.

    Raises:
        MissingFieldError: If a prefecture run has no code.
        CodeFormatError: If the code is malformed.
    """
    if code is None or code == "":
        if dataset is db_models.DatasetKind.PREFECTURE:
            raise errors.MissingFieldError(_ADMIN_CODE_FIELD)
        return None
    if dataset is db_models.DatasetKind.PREFECTURE or len(code) != db_models.CITY_CODE_WIDTH:
        if not is_prefecture_code(code):
            raise errors.CodeFormatError(
                _ADMIN_CODE_FIELD, code, db_models.PREFECTURE_CODE_WIDTH
            )
        return code
    if not (code.isascii() and code.isdigit()) or not is_prefecture_code(code[:2]):
        raise errors.CodeFormatError(
            _ADMIN_CODE_FIELD, code, db_models.CITY_CODE_WIDTH
        )
    return code


def _trimmed(record: decoding.DecodedRecord, field: str) -> str | None:
    """Return a trimmed attribute value, ``None`` when absent or blank.

    DBF text columns are padded with spaces or NULs; only that padding is
    removed.
    """
    value = record.attributes.get(field)
    if value is None:
        return None
    value = value.strip(" \t\r\n\x00　")
    return value or None


def _text(record: decoding.DecodedRecord, field: str) -> str | None:
    value = _trimmed(record, field)
    if value is None:
        return None
    if "\x00" in value:
        raise errors.MappingError(
            field,
            f"field {field!r} contains an embedded NUL character",
            record_index=record.index,
        )
    return value


def _required(
    record: decoding.DecodedRecord,
    field: str,
    limit: int | None = None,
) -> str:
    value = _optional(record, field, limit)
    if value is None:
        raise errors.MissingFieldError(field, record_index=record.index)
    return value


def _optional(
    record: decoding.DecodedRecord,
    field: str,
    limit: int | None = None,
) -> str | None:
    value = _text(record, field)
    if value is not None and limit is not None and len(value) > limit:
        raise errors.FieldLengthError(
            field, len(value), limit, record_index=record.index
        )
    return value


def _code(record: decoding.DecodedRecord, field: str, width: int) -> str:
    value = _trimmed(record, field)
    if value is None:
        raise errors.MissingFieldError(field, record_index=record.index)
    # An embedded NUL fails the digit check.
    if len(value) != width or not (value.isascii() and value.isdigit()):
        raise errors.CodeFormatError(
            field, value, width, record_index=record.index
        )
    return value


def _require_kind(
    validated: geometry.Geometry,
    dataset: db_models.DatasetKind,
    record_index: int,
) -> geometry.Geometry:
    expected = db_models.TABLES[dataset].geometry_kind
    match validated.shape:
        case geometry.Polygon() if expected is geometry.GeometryKind.POLYGON:
            return validated
        case geometry.Point() if expected is geometry.GeometryKind.POINT:
            return validated
        case geometry.Point() | geometry.MultiPoint() | geometry.Polygon() | geometry.MultiPolygon():
            raise errors.GeometryValidationError(
                "kind_mismatch",
                f"{dataset.value} needs {expected.value}, "
                f"got {validated.kind.value}",
                record_index=record_index,
            )


def is_city_level(
    record: decoding.DecodedRecord,
    mapping: FieldMapping = MLIT_FIELDS,
) -> bool:
    """Whether an N03 feature describes a city rather than a prefecture."""
    return any(_text(record, field) for field in mapping.district_fields)


def selects(
    record: decoding.DecodedRecord,
    dataset: db_models.DatasetKind,
    admin_code: str | None = None,
    mapping: FieldMapping = MLIT_FIELDS,
) -> bool:
    """Whether ``record`` belongs to a run over ``dataset``.

    Records whose filter field is missing are selected so that the mapper
    reports them instead of silently dropping them.
    """
    match dataset:
        case db_models.DatasetKind.PREFECTURE:
            return not is_city_level(record, mapping)
        case db_models.DatasetKind.CITY:
            if not is_city_level(record, mapping):
                return False
            scope_field = mapping.city_code
        case db_models.DatasetKind.POST_OFFICE:
            scope_field = mapping.post_office_city_code

    if admin_code is None:
        return True
    value = _trimmed(record, scope_field)
    return value is None or value.startswith(admin_code)


def map_record(
    record: decoding.DecodedRecord,
    validated: geometry.Geometry,
    dataset: db_models.DatasetKind,
    *,
    admin_code: str | None = None,
    mapping: FieldMapping = MLIT_FIELDS,
) -> db_models.DomainEntity:
    """Build the domain entity for one record.

    Args:
        record: Decoded source record.
        validated: The record's geometry after reprojection and validation.
        dataset: Target dataset.
        admin_code: The run's administrative code; becomes the code of a
            prefecture entity.
        mapping: Source attribute names.

    Returns:
        An ``AdministrativeArea`` or ``Facility`` with a fresh ``uuid4`` id.

    Raises:
        MissingFieldError: If a required code or name is absent or empty.
        CodeFormatError: If a code is not exactly its width in digits.
        FieldLengthError: If a text value exceeds its column length.
        GeometryValidationError: If the geometry kind does not fit the table.
    """
    index = record.index
    geom = _require_kind(validated, dataset, index)

    match dataset:
        case db_models.DatasetKind.PREFECTURE:
            code = check_admin_code(dataset, admin_code)
            if code is None:
                raise errors.MissingFieldError(_ADMIN_CODE_FIELD, record_index=index)
            return db_models.AdministrativeArea(
                id=uuid.uuid4(),
                dataset=dataset,
                code=code,
                name=_required(
                    record, mapping.prefecture_name, db_models.NAME_MAX_LENGTH
                ),
                area=None,
                geometry=geom,
            )
        case db_models.DatasetKind.CITY:
            return db_models.AdministrativeArea(
                id=uuid.uuid4(),
                dataset=dataset,
                code=_code(record, mapping.city_code, db_models.CITY_CODE_WIDTH),
                name=_required(record, mapping.city_name, db_models.NAME_MAX_LENGTH),
                area=_optional(record, mapping.city_area, db_models.AREA_MAX_LENGTH),
                geometry=geom,
            )
        case db_models.DatasetKind.POST_OFFICE:
            return db_models.Facility(
                id=uuid.uuid4(),
                city_code=_code(
                    record, mapping.post_office_city_code, db_models.CITY_CODE_WIDTH
                ),
                category_code=_code(
                    record,
                    mapping.post_office_category_code,
                    db_models.CATEGORY_CODE_WIDTH,
                ),
                subcategory_code=_code(
                    record,
                    mapping.post_office_subcategory_code,
                    db_models.SUBCATEGORY_CODE_WIDTH,
                ),
                post_office_code=_code(
                    record, mapping.post_office_code, db_models.POST_OFFICE_CODE_WIDTH
                ),
                name=_required(
                    record, mapping.post_office_name, db_models.NAME_MAX_LENGTH
                ),
                address=_optional(
                    record, mapping.post_office_address, db_models.ADDRESS_MAX_LENGTH
                ),
                geometry=geom,
            )
