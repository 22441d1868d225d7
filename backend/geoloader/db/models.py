"""Domain entities and the catalogue of target tables.

This module defines the records the pipeline hands to the batch loader and
describes the three PostGIS tables they land in. Every table stores a
single geometry kind in EPSG:3857 and carries fixed-width classification
codes used as join and filter keys.

Tables:
    - ``prefectures``: ``id``, ``code`` CHAR(2), ``name``, ``geom``
      POLYGON/3857.
    - ``cities``: ``id``, ``code`` CHAR(5), ``area`` (nullable), ``name``,
      ``geom`` POLYGON/3857.
    - ``post_offices``: ``id``, ``city_code`` CHAR(5), ``category_code``
      CHAR(2), ``subcategory_code`` CHAR(5), ``post_office_code`` CHAR(5),
      ``name``, ``address``, ``geom`` POINT/3857.

Example:
    Creating an administrative area for Gifu prefecture:
        >>> import uuid
        >>> from geoloader.db.models import TABLES, AdministrativeArea, DatasetKind
        >>> area = AdministrativeArea(
        ...     id=uuid.uuid4(),
        ...     dataset=DatasetKind.PREFECTURE,
        ...     code="21",
        ...     name="岐阜県",
        ...     area=None,
        ...     geometry=polygon_3857,
        ... )
        >>> TABLES[area.dataset].table
        'prefectures'
"""

from __future__ import annotations

import dataclasses
import enum
import uuid

from geoloader.utils import geometry

NAME_MAX_LENGTH = 40
AREA_MAX_LENGTH = 40
ADDRESS_MAX_LENGTH = 80

PREFECTURE_CODE_WIDTH = 2
CITY_CODE_WIDTH = 5
CATEGORY_CODE_WIDTH = 2
SUBCATEGORY_CODE_WIDTH = 5
POST_OFFICE_CODE_WIDTH = 5


class DatasetKind(enum.StrEnum):
    """Dataset selector; each kind loads into exactly one table."""

    PREFECTURE = "prefecture"
    CITY = "city"
    POST_OFFICE = "post_office"


@dataclasses.dataclass(frozen=True)
class TableSpec:
    """Static description of a target table.

    Attributes:
        table: Table name in the target database.
        geometry_kind: The only geometry kind the ``geom`` column accepts.
        scope_column: Column the administrative code filter applies to.
        scope_is_prefix: Whether the filter matches a prefix of the column
            (a prefecture code selects all of its cities) or the full value.
    """

    table: str
    geometry_kind: geometry.GeometryKind
    scope_column: str
    scope_is_prefix: bool


TABLES: dict[DatasetKind, TableSpec] = {
    DatasetKind.PREFECTURE: TableSpec(
        table="prefectures",
        geometry_kind=geometry.GeometryKind.POLYGON,
        scope_column="code",
        scope_is_prefix=False,
    ),
    DatasetKind.CITY: TableSpec(
        table="cities",
        geometry_kind=geometry.GeometryKind.POLYGON,
        scope_column="code",
        scope_is_prefix=True,
    ),
    DatasetKind.POST_OFFICE: TableSpec(
        table="post_offices",
        geometry_kind=geometry.GeometryKind.POINT,
        scope_column="city_code",
        scope_is_prefix=True,
    ),
}


@dataclasses.dataclass(frozen=True)
class AdministrativeArea:
    """A prefecture or city boundary.

    Attributes:
        id: Identifier generated at mapping time, never taken from source.
        dataset: ``PREFECTURE`` or ``CITY``; selects the target table.
        code: 2-digit prefecture code or 5-digit city code.
        name: Display name.
        area: County or district the city belongs to, if any.
        geometry: Polygon in EPSG:3857.
    """

    id: uuid.UUID
    dataset: DatasetKind
    code: str
    name: str
    area: str | None
    geometry: geometry.Geometry


@dataclasses.dataclass(frozen=True)
class Facility:
    """A post office point.

    Attributes:
        id: Identifier generated at mapping time, never taken from source.
        city_code: 5-digit code of the city the facility lies in.
        category_code: 2-digit public facility category.
        subcategory_code: 5-digit public facility subcategory.
        post_office_code: 5-digit post office classification.
        name: Display name.
        address: Free-text postal address, if any.
        geometry: Point in EPSG:3857.
    """

    id: uuid.UUID
    city_code: str
    category_code: str
    subcategory_code: str
    post_office_code: str
    name: str
    address: str | None
    geometry: geometry.Geometry

    @property
    def dataset(self) -> DatasetKind:
        return DatasetKind.POST_OFFICE


DomainEntity = AdministrativeArea | Facility
