"""Batch loaders that persist domain entities atomically.

A batch is every entity derived from one input file in one run. Loaders
write a batch into its table inside a single transaction: either the whole
batch becomes visible at commit, or the table is left exactly as it was.

Re-running against a table that already holds rows in the run's scope
(the administrative code, or the whole table without one) is refused with
``TargetNotEmptyError`` unless the caller asks for ``on_existing="replace"``,
in which case those rows are deleted inside the same transaction before the
batch is inserted. Rows are never upserted.

Two implementations share ``BatchLoaderProtocol``:

- ``PostgresBatchLoader`` for PostGIS, via psycopg2.
- ``InMemoryBatchLoader`` for tests and dry runs, with optional unique
  constraints so atomicity can be exercised without a database.
"""

from __future__ import annotations

import logging
import threading
from typing import TYPE_CHECKING, Literal, Protocol

import psycopg2
import psycopg2.errors
import psycopg2.extensions
from psycopg2 import sql

from geoloader.core import errors
from geoloader.db import models as db_models
from geoloader.utils import geometry

if TYPE_CHECKING:
    from collections.abc import Mapping, Sequence

    from geoloader.core import config

logger = logging.getLogger(__name__)

OnExisting = Literal["error", "replace"]

INSERT_SQL: dict[db_models.DatasetKind, str] = {
    db_models.DatasetKind.PREFECTURE: """
        INSERT INTO prefectures (id, code, name, geom)
        VALUES (%(id)s::uuid, %(code)s, %(name)s,
                ST_GeomFromWKB(%(geom)s, 3857))
        """,
    db_models.DatasetKind.CITY: """
        INSERT INTO cities (id, code, area, name, geom)
        VALUES (%(id)s::uuid, %(code)s, %(area)s, %(name)s,
                ST_GeomFromWKB(%(geom)s, 3857))
        """,
    db_models.DatasetKind.POST_OFFICE: """
        INSERT INTO post_offices (
            id, city_code, category_code, subcategory_code,
            post_office_code, name, address, geom
        ) VALUES (%(id)s::uuid, %(city_code)s, %(category_code)s,
                  %(subcategory_code)s, %(post_office_code)s, %(name)s,
                  %(address)s, ST_GeomFromWKB(%(geom)s, 3857))
        """,
}


def entity_columns(entity: db_models.DomainEntity) -> dict[str, object]:
    """Column values of ``entity`` keyed by column name, geometry included."""
    match entity:
        case db_models.AdministrativeArea(dataset=db_models.DatasetKind.CITY):
            return {
                "id": str(entity.id),
                "code": entity.code,
                "area": entity.area,
                "name": entity.name,
                "geom": entity.geometry,
            }
        case db_models.AdministrativeArea():
            return {
                "id": str(entity.id),
                "code": entity.code,
                "name": entity.name,
                "geom": entity.geometry,
            }
        case db_models.Facility():
            return {
                "id": str(entity.id),
                "city_code": entity.city_code,
                "category_code": entity.category_code,
                "subcategory_code": entity.subcategory_code,
                "post_office_code": entity.post_office_code,
                "name": entity.name,
                "address": entity.address,
                "geom": entity.geometry,
            }


def _check_batch(
    dataset: db_models.DatasetKind,
    entities: Sequence[db_models.DomainEntity],
) -> None:
    for position, entity in enumerate(entities):
        if entity.dataset is not dataset:
            raise ValueError(
                f"entity {position} belongs to {entity.dataset.value}, "
                f"batch targets {dataset.value}"
            )


class BatchLoaderProtocol(Protocol):
    """Protocol interface for persisting one batch of domain entities."""

    def load(
        self,
        dataset: db_models.DatasetKind,
        entities: Sequence[db_models.DomainEntity],
        *,
        scope_code: str | None = None,
        on_existing: OnExisting = "error",
    ) -> int: ...


class InMemoryBatchLoader(BatchLoaderProtocol):
    """Dictionary-backed loader for tests and local development.

    Each table is a dict of rows keyed by id. A batch is staged on a copy of
    the table and swapped in only once every row has been accepted.
    """

    def __init__(
        self,
        unique_columns: Mapping[str, Sequence[str]] | None = None,
    ) -> None:
        """Initialize empty tables.

        Args:
            unique_columns: Table name to columns that must be unique in
                that table, emulating database constraints.
        """
        self.tables: dict[str, dict[str, dict[str, object]]] = {
            spec.table: {} for spec in db_models.TABLES.values()
        }
        self._unique = {
            table: tuple(columns)
            for table, columns in (unique_columns or {}).items()
        }
        self._lock = threading.Lock()

    def rows(self, dataset: db_models.DatasetKind) -> list[dict[str, object]]:
        """Committed rows of the dataset's table."""
        return list(self.tables[db_models.TABLES[dataset].table].values())

    @staticmethod
    def _in_scope(
        row: Mapping[str, object],
        spec: db_models.TableSpec,
        scope_code: str | None,
    ) -> bool:
        if scope_code is None:
            return True
        value = str(row[spec.scope_column])
        if spec.scope_is_prefix:
            return value.startswith(scope_code)
        return value == scope_code

    def load(
        self,
        dataset: db_models.DatasetKind,
        entities: Sequence[db_models.DomainEntity],
        *,
        scope_code: str | None = None,
        on_existing: OnExisting = "error",
    ) -> int:
        _check_batch(dataset, entities)
        spec = db_models.TABLES[dataset]
        with self._lock:
            staged = dict(self.tables[spec.table])
            existing = [
                key
                for key, row in staged.items()
                if self._in_scope(row, spec, scope_code)
            ]
            if existing:
                if on_existing == "error":
                    raise errors.TargetNotEmptyError(
                        spec.table, len(existing), scope_code
                    )
                for key in existing:
                    del staged[key]

            for position, entity in enumerate(entities):
                row = entity_columns(entity)
                key = str(row["id"])
                if key in staged:
                    raise errors.StoreError(
                        f"entity {position}: duplicate id {key} "
                        f"in {spec.table!r}"
                    )
                for column in self._unique.get(spec.table, ()):
                    if any(other[column] == row[column] for other in staged.values()):
                        raise errors.StoreError(
                            f"entity {position}: duplicate {column} "
                            f"{row[column]!r} in {spec.table!r}"
                        )
                staged[key] = row

            self.tables[spec.table] = staged
        return len(entities)


class PostgresBatchLoader(BatchLoaderProtocol):
    """PostgreSQL/PostGIS-backed loader.

    Each ``load`` opens its own connection and transaction. The target
    table is locked in SHARE ROW EXCLUSIVE mode for the whole transaction,
    so concurrent runs against the same table are serialized while readers
    keep seeing the last committed state.
    """

    LOCK_SQL = "LOCK TABLE {table} IN SHARE ROW EXCLUSIVE MODE"
    COUNT_SQL = "SELECT COUNT(*) FROM {table}"
    DELETE_SQL = "DELETE FROM {table}"

    def __init__(self, settings: config.Settings) -> None:
        """Initialize loader with database settings.

        Args:
            settings: Application settings containing database connection URL.
        """
        self.settings = settings

    def _connection(self) -> psycopg2.extensions.connection:
        try:
            return get_connection(self.settings)
        except psycopg2.Error as exc:
            raise errors.StoreError(f"cannot connect to database: {exc}") from exc

    @staticmethod
    def _scoped(
        statement: str,
        spec: db_models.TableSpec,
        scope_code: str | None,
    ) -> tuple[sql.Composed, dict[str, object]]:
        """Format ``statement`` for the table, restricted to the scope."""
        query = sql.SQL(statement).format(table=sql.Identifier(spec.table))
        if scope_code is None:
            return query, {}
        operator = "LIKE" if spec.scope_is_prefix else "="
        value = f"{scope_code}%" if spec.scope_is_prefix else scope_code
        where = sql.SQL(" WHERE {column} " + operator + " %(scope)s").format(
            column=sql.Identifier(spec.scope_column)
        )
        return query + where, {"scope": value}

    @staticmethod
    def _to_row(entity: db_models.DomainEntity) -> dict[str, object]:
        """Convert an entity to parameters for its INSERT statement."""
        row = entity_columns(entity)
        row["geom"] = psycopg2.Binary(geometry.to_wkb(entity.geometry))
        return row

    @staticmethod
    def _rollback(conn: psycopg2.extensions.connection) -> None:
        try:
            conn.rollback()
        except psycopg2.Error as exc:
            # The server discards the open transaction with the session.
            logger.warning("rollback failed, connection lost: %s", exc)

    def _replace_or_refuse(
        self,
        cur: psycopg2.extensions.cursor,
        spec: db_models.TableSpec,
        scope_code: str | None,
        on_existing: OnExisting,
    ) -> None:
        count_query, params = self._scoped(self.COUNT_SQL, spec, scope_code)
        cur.execute(count_query, params)
        row = cur.fetchone()
        existing = int(row[0]) if row is not None else 0
        if not existing:
            return
        if on_existing == "error":
            raise errors.TargetNotEmptyError(spec.table, existing, scope_code)
        delete_query, params = self._scoped(self.DELETE_SQL, spec, scope_code)
        cur.execute(delete_query, params)
        logger.info(
            "cleared existing rows table=%s scope=%s rows=%d",
            spec.table,
            scope_code,
            existing,
        )

    def load(
        self,
        dataset: db_models.DatasetKind,
        entities: Sequence[db_models.DomainEntity],
        *,
        scope_code: str | None = None,
        on_existing: OnExisting = "error",
    ) -> int:
        """Insert the batch in one transaction, rolling back on any failure.

        Args:
            dataset: Dataset the batch belongs to; selects the table.
            entities: Entities of that dataset.
            scope_code: Administrative code the run covers.
            on_existing: What to do when rows in scope already exist.

        Returns:
            Number of rows inserted.

        Raises:
            TargetNotEmptyError: If rows in scope exist and
                ``on_existing`` is ``"error"``.
            StoreError: On connection loss, lock timeout, constraint
                violation or commit failure. The transaction has been
                rolled back.
        """
        _check_batch(dataset, entities)
        spec = db_models.TABLES[dataset]
        insert = INSERT_SQL[dataset]

        conn = self._connection()
        try:
            with conn.cursor() as cur:
                cur.execute(
                    "SET LOCAL lock_timeout = %s",
                    (f"{self.settings.lock_timeout_ms}ms",),
                )
                lock_query, _ = self._scoped(self.LOCK_SQL, spec, None)
                cur.execute(lock_query)
                self._replace_or_refuse(cur, spec, scope_code, on_existing)
                for position, entity in enumerate(entities):
                    try:
                        cur.execute(insert, self._to_row(entity))
                    except psycopg2.Error as exc:
                        raise errors.StoreError(
                            f"entity {position} of {len(entities)} could not "
                            f"be inserted into {spec.table!r}: {exc}"
                        ) from exc
            conn.commit()
        except psycopg2.errors.LockNotAvailable as exc:
            self._rollback(conn)
            raise errors.StoreError(
                f"table {spec.table!r} is locked by another run: {exc}"
            ) from exc
        except psycopg2.Error as exc:
            self._rollback(conn)
            raise errors.StoreError(
                f"transaction on {spec.table!r} aborted: {exc}"
            ) from exc
        except BaseException:
            self._rollback(conn)
            raise
        finally:
            conn.close()

        logger.info("committed batch table=%s rows=%d", spec.table, len(entities))
        return len(entities)


def get_batch_loader(settings: config.Settings) -> BatchLoaderProtocol:
    """Factory function to create a batch loader.

    Args:
        settings: Application settings for database connection.

    Returns:
        PostgresBatchLoader instance for production use.
    """
    return PostgresBatchLoader(settings)


def get_connection(
    settings: config.Settings,
) -> psycopg2.extensions.connection:
    """Create a synchronous psycopg2 extensions connection.

    Args:
        settings: Application settings containing database connection URL.

    Returns:
        psycopg2 extensions connection object for direct database access.
    """
    return psycopg2.connect(settings.database_url)
