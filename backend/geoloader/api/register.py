"""Dataset registration API endpoint.

This module exposes the registration pipeline over HTTP. A client uploads
one source file per request: a GeoJSON document, or a zip archive holding
a shapefile (``.shp`` with its ``.shx``, ``.dbf`` and optional ``.prj``).
The upload is stored under a private directory in the configured storage
directory, registered into the dataset's table in a single transaction,
and removed again whatever the outcome.

Pipeline errors are returned as JSON with their stable error code:

- 422 for source, encoding, projection, geometry and mapping errors,
- 409 when the table already holds rows in scope and ``replace`` is off,
- 503 when the store failed and the transaction was rolled back,
- 413 when the upload exceeds ``max_upload_size_bytes``.

Example:
    Register the post offices of Gifu prefecture from a zipped shapefile:
        >>> response = client.post(
        ...     "/api/datasets/post_office/register",
        ...     params={"code": "21", "srid": 4612},
        ...     files={"file": ("P30-13_21.zip", open("P30-13_21.zip", "rb"))},
        ... )
        >>> response.json()["rows_loaded"]
        412
"""

from __future__ import annotations

import pathlib
import tempfile
import zipfile
from typing import TypedDict

import fastapi

from geoloader.core import config, errors
from geoloader.db import database
from geoloader.db import models as db_models
from geoloader.services import pipeline, sources

router = fastapi.APIRouter(prefix="/api/datasets", tags=["datasets"])


class RegisterResponse(TypedDict):
    dataset: str
    table: str
    source_format: str
    encoding: str
    code: str | None
    records_read: int
    records_skipped: int
    rows_loaded: int
    elapsed_seconds: float


def _get_loader(
    settings: config.Settings = fastapi.Depends(config.get_settings),  # noqa: B008
) -> database.BatchLoaderProtocol:
    """Resolve the batch loader dependency.

    Args:
        settings: Application settings (injected via FastAPI Depends).

    Returns:
        BatchLoaderProtocol implementation
            (PostgresBatchLoader in production).
    """
    return database.get_batch_loader(settings)


def _save_upload(
    file: fastapi.UploadFile,
    target_dir: pathlib.Path,
    max_size: int,
) -> pathlib.Path:
    """Persist an uploaded file to disk with size validation.

    Args:
        file: FastAPI UploadFile object containing the file data.
        target_dir: Directory where the file should be saved.
        max_size: Maximum allowed file size in bytes.

    Returns:
        Path to the saved file.

    Raises:
        HTTPException: If the file exceeds the maximum size limit.
    """
    target_path = target_dir / pathlib.Path(file.filename or "upload").name
    size = 0
    with target_path.open("wb") as out:
        for chunk in iter(lambda: file.file.read(1024 * 1024), b""):
            size += len(chunk)
            if size > max_size:
                raise fastapi.HTTPException(
                    status_code=413,
                    detail="Upload too large",
                )

            out.write(chunk)

    return target_path


def _extract_shapefile(archive: pathlib.Path, target_dir: pathlib.Path) -> pathlib.Path:
    """Unpack a zipped shapefile and return the path of its ``.shp`` file.

    Raises:
        SourceFormatError: If the archive is corrupt, escapes the target
            directory, or does not hold exactly one ``.shp`` file.
    """
    try:
        with zipfile.ZipFile(archive) as bundle:
            root = target_dir.resolve()
            for member in bundle.namelist():
                if not (root / member).resolve().is_relative_to(root):
                    raise errors.SourceFormatError(
                        f"archive member {member!r} escapes the upload directory"
                    )
            bundle.extractall(root)
    except zipfile.BadZipFile as exc:
        raise errors.SourceFormatError(
            f"{archive.name!r} is not a valid zip archive: {exc}"
        ) from exc

    shapefiles = [
        path
        for path in target_dir.rglob("*")
        if path.suffix.lower() == ".shp" and not path.name.startswith("._")
    ]
    if len(shapefiles) != 1:
        raise errors.SourceFormatError(
            f"{archive.name!r} must hold exactly one .shp file, "
            f"found {len(shapefiles)}"
        )
    return shapefiles[0]


def _http_error(exc: errors.GeoLoaderError) -> fastapi.HTTPException:
    """Translate a pipeline error into an HTTP error response."""
    if isinstance(exc, errors.TargetNotEmptyError):
        status_code = 409
    elif isinstance(exc, errors.StoreError):
        status_code = 503
    else:
        status_code = 422
    return fastapi.HTTPException(
        status_code=status_code,
        detail={
            "error_code": exc.error_code,
            "message": str(exc),
            "record_index": exc.record_index,
        },
    )


@router.post("/{dataset}/register")
def register_dataset(
    dataset: db_models.DatasetKind,
    file: fastapi.UploadFile,
    code: str | None = None,
    srid: int | None = None,
    encoding: str | None = None,
    replace: bool = False,
    settings: config.Settings = fastapi.Depends(config.get_settings),  # noqa: B008
    loader: database.BatchLoaderProtocol = fastapi.Depends(_get_loader),  # noqa: B008
) -> RegisterResponse:
    """Register an uploaded source file into the dataset's table.

    The request blocks until the batch is committed or rolled back.

    Args:
        dataset: Target dataset (``prefecture``, ``city`` or ``post_office``).
        file: GeoJSON file or zipped shapefile from multipart form data.
        code: Administrative code. Required for prefectures; filters
            cities and post offices by prefecture or city.
        srid: Source SRID, when the file does not declare one.
        encoding: Attribute text encoding of a shapefile.
        replace: Delete rows already registered for ``code`` first.
        settings: Application settings (injected via FastAPI Depends).
        loader: Batch loader (injected via FastAPI Depends).

    Returns:
        Summary of the committed run.

    Raises:
        HTTPException: 413 for oversized uploads, 409/422/503 for
            pipeline errors as described in the module docstring.
    """
    settings.ensure_directories()
    with tempfile.TemporaryDirectory(dir=settings.storage_dir) as workdir:
        upload_path = _save_upload(
            file,
            pathlib.Path(workdir),
            settings.max_upload_size_bytes,
        )
        try:
            if upload_path.suffix.lower() == ".zip":
                source_path = _extract_shapefile(
                    upload_path, pathlib.Path(workdir) / "contents"
                )
                source_format = sources.SourceFormat.SHAPEFILE
            else:
                source_path = upload_path
                source_format = sources.detect_format(upload_path)

            summary = pipeline.run_registration(
                pipeline.RunRequest(
                    dataset=dataset,
                    path=source_path,
                    source_format=source_format,
                    admin_code=code,
                    srid=srid,
                    encoding=encoding,
                    replace=replace,
                ),
                settings,
                loader,
            )
        except errors.GeoLoaderError as exc:
            raise _http_error(exc) from exc

    return RegisterResponse(
        dataset=summary.dataset.value,
        table=summary.table,
        source_format=summary.source_format.value,
        encoding=summary.encoding,
        code=summary.admin_code,
        records_read=summary.records_read,
        records_skipped=summary.records_skipped,
        rows_loaded=summary.rows_loaded,
        elapsed_seconds=summary.elapsed_seconds,
    )
