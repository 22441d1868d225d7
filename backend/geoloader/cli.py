"""Command line entrypoint for registering national geodata into PostGIS."""

from __future__ import annotations

import argparse
import pathlib
import sys

from geoloader.core import config, errors
from geoloader.core import logging as geoloader_logging
from geoloader.db import database
from geoloader.db import models as db_models
from geoloader.services import pipeline, sources

EXIT_SUCCESS = 0
EXIT_FAILURE = 1


def parse_args(argv: list[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="geoloader", description=__doc__)
    subparsers = parser.add_subparsers(dest="command", required=True)

    register = subparsers.add_parser(
        "register",
        help="register one source file into a dataset table",
    )
    register.add_argument("dataset", choices=[kind.value for kind in db_models.DatasetKind])
    register.add_argument("--file", required=True, type=pathlib.Path, dest="path")
    register.add_argument(
        "--format",
        choices=[fmt.value for fmt in sources.SourceFormat],
        default=None,
        dest="source_format",
        help="container format; inferred from the file suffix by default",
    )
    register.add_argument(
        "--code",
        default=None,
        help="administrative code; required for prefecture (01-47)",
    )
    register.add_argument("--srid", type=int, default=None)
    register.add_argument("--encoding", default=None)
    register.add_argument(
        "--replace",
        action="store_true",
        help="delete rows already registered for the code in the same transaction",
    )
    register.add_argument("--workers", type=int, default=None)
    register.add_argument("--database-url", default=None)
    register.add_argument(
        "--log-level",
        default=None,
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
    )

    args = parser.parse_args(argv)
    if args.workers is not None and args.workers < 1:
        parser.error("--workers must be at least 1")
    return args


def run_command(
    args: argparse.Namespace,
    settings: config.Settings,
    loader: database.BatchLoaderProtocol,
) -> pipeline.RunSummary:
    request = pipeline.RunRequest(
        dataset=db_models.DatasetKind(args.dataset),
        path=args.path,
        source_format=(
            sources.SourceFormat(args.source_format) if args.source_format else None
        ),
        admin_code=args.code,
        srid=args.srid,
        encoding=args.encoding,
        replace=args.replace,
        max_workers=args.workers,
    )
    return pipeline.run_registration(request, settings, loader)


def main(argv: list[str] | None = None) -> int:
    args = parse_args(sys.argv[1:] if argv is None else argv)

    settings = config.Settings()
    if args.database_url:
        settings = settings.model_copy(update={"database_url": args.database_url})
    geoloader_logging.configure_logging(args.log_level or settings.log_level)

    try:
        summary = run_command(args, settings, database.get_batch_loader(settings))
    except errors.GeoLoaderError as exc:
        print(f"error [{exc.error_code}]: {exc}", file=sys.stderr)
        return EXIT_FAILURE

    print(
        f"registered {summary.rows_loaded} {summary.dataset.value} row(s) "
        f"into {summary.table} ({summary.records_skipped} record(s) skipped)"
    )
    return EXIT_SUCCESS


if __name__ == "__main__":
    raise SystemExit(main())
