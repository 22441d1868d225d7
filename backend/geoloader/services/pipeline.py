"""Run orchestration: read, decode, reproject, validate, map, then load.

A run registers one source file into one dataset. Stages 1-5 run per
record; records are read on the calling thread in bounded chunks and the
remaining per-record stages are fanned out to a ``ThreadPoolExecutor``.
Entities come back in source order. The run is fail-fast: the first failing
record (lowest index within its chunk) cancels outstanding work and the
batch loader is never called, so nothing is written.

Example:
    Register Gifu prefecture from an N03 shapefile:
        >>> import pathlib
        >>> from geoloader.core import config
        >>> from geoloader.db import database, models
        >>> from geoloader.services import pipeline
        >>> settings = config.get_settings()
        >>> request = pipeline.RunRequest(
        ...     dataset=models.DatasetKind.PREFECTURE,
        ...     path=pathlib.Path("N03-20_21_200101.shp"),
        ...     admin_code="21",
        ... )
        >>> summary = pipeline.run_registration(
        ...     request, settings, database.get_batch_loader(settings)
        ... )
        >>> summary.rows_loaded
        1
"""

from __future__ import annotations

import codecs
import concurrent.futures
import contextlib
import dataclasses
import itertools
import logging
import time
from typing import TYPE_CHECKING

from geoloader.core import errors
from geoloader.db import models as db_models
from geoloader.services import decoding, mapping, reproject, sources, validation

if TYPE_CHECKING:
    import pathlib
    from collections.abc import Iterable

    from geoloader.core import config
    from geoloader.db import database

logger = logging.getLogger(__name__)


@dataclasses.dataclass(frozen=True)
class RunRequest:
    """Everything a caller declares about one registration run.

    Attributes:
        dataset: Target dataset; selects the table and geometry kind.
        path: Source file (``.shp`` or GeoJSON).
        source_format: Container format; inferred from the suffix if omitted.
        admin_code: Administrative code. Required for prefectures, an
            optional filter for cities and post offices.
        srid: Source SRID; detected from the container if omitted.
        encoding: Attribute text encoding; the configured default if omitted.
        replace: Delete rows already in scope inside the load transaction.
        max_workers: Worker pool size; the configured value if omitted.
    """

    dataset: db_models.DatasetKind
    path: pathlib.Path
    source_format: sources.SourceFormat | None = None
    admin_code: str | None = None
    srid: int | None = None
    encoding: str | None = None
    replace: bool = False
    max_workers: int | None = None


@dataclasses.dataclass(frozen=True)
class RunSummary:
    dataset: db_models.DatasetKind
    table: str
    source_format: sources.SourceFormat
    encoding: str
    admin_code: str | None
    records_read: int
    rows_loaded: int
    elapsed_seconds: float

    @property
    def records_skipped(self) -> int:
        return self.records_read - self.rows_loaded


def _codec_name(encoding: str) -> str:
    try:
        return codecs.lookup(encoding).name
    except LookupError:
        raise errors.EncodingError(f"unknown encoding {encoding!r}") from None


def resolve_encoding(
    source_format: sources.SourceFormat,
    declared: str | None,
    default: str,
) -> str:
    """Pick the attribute encoding for a run and check Python knows it.

    Formats with a fixed encoding (GeoJSON is always UTF-8) ignore the
    declared value.

    Raises:
        EncodingError: If the chosen encoding is not a known codec.
    """
    fixed = sources.FORMAT_ENCODINGS.get(source_format)
    if fixed is not None:
        if declared and _codec_name(declared) != _codec_name(fixed):
            logger.warning(
                "ignoring declared encoding=%s, %s is always %s",
                declared,
                source_format.value,
                fixed,
            )
        return fixed
    return _codec_name(declared or default)


def transform_record(
    record: sources.RawRecord,
    dataset: db_models.DatasetKind,
    *,
    encoding: str,
    admin_code: str | None,
    context: reproject.ProjectionContext,
    field_mapping: mapping.FieldMapping = mapping.MLIT_FIELDS,
) -> db_models.DomainEntity | None:
    """Run stages 2-5 for one record.

    Returns:
        The mapped entity, or ``None`` when the record does not belong to
        the run (a city feature in a prefecture run, another prefecture's
        post office, ...).
    """
    decoded = decoding.decode_record(record, encoding)
    if not mapping.selects(decoded, dataset, admin_code, field_mapping):
        return None
    projected = reproject.reproject(
        decoded.geometry, context, record_index=record.index
    )
    validated = validation.validate_geometry(
        projected,
        db_models.TABLES[dataset].geometry_kind,
        record_index=record.index,
    )
    return mapping.map_record(
        decoded,
        validated,
        dataset,
        admin_code=admin_code,
        mapping=field_mapping,
    )


def transform_records(
    records: Iterable[sources.RawRecord],
    dataset: db_models.DatasetKind,
    *,
    encoding: str,
    admin_code: str | None,
    context: reproject.ProjectionContext,
    max_workers: int,
    chunk_size: int,
    field_mapping: mapping.FieldMapping = mapping.MLIT_FIELDS,
) -> tuple[list[db_models.DomainEntity], int]:
    """Map every record to an entity over a bounded worker pool.

    Args:
        records: Raw record stream; consumed on the calling thread.
        dataset: Target dataset.
        encoding: Attribute text encoding.
        admin_code: The run's administrative code.
        context: Open projection context shared by the workers.
        max_workers: Worker thread count.
        chunk_size: Records submitted to the pool at a time.
        field_mapping: Source attribute names.

    Returns:
        Entities in source order, and the number of records read.

    Raises:
        GeoLoaderError: The first record failure. No further records are
            read once it is raised.
    """
    entities: list[db_models.DomainEntity] = []
    read = 0
    with concurrent.futures.ThreadPoolExecutor(
        max_workers=max_workers,
        thread_name_prefix="geoloader",
    ) as executor:
        for chunk in itertools.batched(records, chunk_size):
            read += len(chunk)
            futures = [
                executor.submit(
                    transform_record,
                    record,
                    dataset,
                    encoding=encoding,
                    admin_code=admin_code,
                    context=context,
                    field_mapping=field_mapping,
                )
                for record in chunk
            ]
            try:
                for future in futures:
                    entity = future.result()
                    if entity is not None:
                        entities.append(entity)
            except BaseException:
                for pending in futures:
                    pending.cancel()
                raise
            logger.debug("transformed records=%d entities=%d", read, len(entities))
    return entities, read


def run_registration(
    request: RunRequest,
    settings: config.Settings,
    loader: database.BatchLoaderProtocol,
    *,
    field_mapping: mapping.FieldMapping = mapping.MLIT_FIELDS,
) -> RunSummary:
    """Register one source file into its dataset table, all or nothing.

    Args:
        request: What to load and how.
        settings: Worker pool size, chunk size and default encoding.
        loader: Destination of the batch.
        field_mapping: Source attribute names.

    Returns:
        Summary of the committed run.

    Raises:
        GeoLoaderError: Any source, decoding, projection, validation,
            mapping or store failure. Nothing has been committed.
    """
    started = time.perf_counter()
    dataset = request.dataset
    table = db_models.TABLES[dataset].table
    try:
        source_format = request.source_format or sources.detect_format(request.path)
        admin_code = mapping.check_admin_code(dataset, request.admin_code)
        encoding = resolve_encoding(
            source_format, request.encoding, settings.default_encoding
        )
        logger.info(
            "run started dataset=%s path=%s format=%s encoding=%s code=%s",
            dataset.value,
            request.path,
            source_format.value,
            encoding,
            admin_code,
        )

        with (
            reproject.ProjectionContext() as context,
            contextlib.closing(
                sources.open_records(request.path, source_format, request.srid)
            ) as records,
        ):
            entities, read = transform_records(
                records,
                dataset,
                encoding=encoding,
                admin_code=admin_code,
                context=context,
                max_workers=request.max_workers or settings.max_workers,
                chunk_size=settings.chunk_size,
                field_mapping=field_mapping,
            )

        if not entities:
            raise errors.SourceFormatError(
                f"{request.path.name!r} holds no {dataset.value} records"
                + (f" for code {admin_code!r}" if admin_code else "")
            )

        loaded = loader.load(
            dataset,
            entities,
            scope_code=admin_code,
            on_existing="replace" if request.replace else "error",
        )
    except errors.GeoLoaderError as exc:
        logger.error(
            "run failed dataset=%s table=%s error_code=%s %s",
            dataset.value,
            table,
            exc.error_code,
            exc,
        )
        raise

    summary = RunSummary(
        dataset=dataset,
        table=table,
        source_format=source_format,
        encoding=encoding,
        admin_code=admin_code,
        records_read=read,
        rows_loaded=loaded,
        elapsed_seconds=time.perf_counter() - started,
    )
    logger.info(
        "run committed dataset=%s table=%s read=%d loaded=%d elapsed=%.2fs",
        dataset.value,
        table,
        summary.records_read,
        summary.rows_loaded,
        summary.elapsed_seconds,
    )
    return summary
