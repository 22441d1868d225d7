"""End-to-end tests for registration runs.

This module drives ``run_registration`` from a source container to an
in-memory batch loader and verifies:
    - A cp932-encoded prefecture with a closed 5-point ring in JGD2011
      becomes one AdministrativeArea in EPSG:3857 with UTF-8 text,
    - A post office without a name fails the run and leaves the table
      exactly as it was,
    - Fail-fast behaviour: reading stops at the failing chunk and the
      loader is never called,
    - Source order is preserved across the worker pool,
    - Encoding resolution and the re-run policy.

Most shapefile containers are replaced by an in-process reader through
``sources.READERS`` so the tests control the exact attribute bytes; one
cp932 shapefile is written with fiona to cover the real reader, and GeoJSON
runs read real files from ``tmp_path``.

See Also:
    - backend/geoloader/services/pipeline.py for the implementation.
"""

from __future__ import annotations

import json
import pathlib
from typing import TYPE_CHECKING, Any

import fiona
import pytest

from geoloader.core import config, errors
from geoloader.db import database
from geoloader.db import models as db_models
from geoloader.services import pipeline, reproject, sources
from geoloader.utils import geometry

if TYPE_CHECKING:
    from collections.abc import Generator, Sequence

GIFU_RING = (
    (136.20, 35.20),
    (137.60, 35.20),
    (137.60, 36.40),
    (136.20, 36.40),
    (136.20, 35.20),
)


def _settings(tmp_path: pathlib.Path, **overrides: Any) -> config.Settings:
    return config.Settings(storage_dir=tmp_path / "uploads", **overrides)


def _install_reader(
    monkeypatch: pytest.MonkeyPatch,
    records: Sequence[sources.RawRecord],
    pulled: list[int] | None = None,
) -> None:
    def reader(
        path: pathlib.Path,
        srid: int | None = None,
    ) -> Generator[sources.RawRecord, None, None]:
        for record in records:
            if pulled is not None:
                pulled.append(record.index)
            yield record

    monkeypatch.setitem(sources.READERS, sources.SourceFormat.SHAPEFILE, reader)


def _prefecture_record(index: int = 0) -> sources.RawRecord:
    return sources.RawRecord(
        index=index,
        attributes={
            "N03_001": "岐阜県".encode("cp932"),
            "N03_002": None,
            "N03_003": None,
            "N03_004": None,
            "N03_007": None,
        },
        geometry=geometry.Geometry(geometry.Polygon((GIFU_RING,)), 6668),
    )


def _post_office_record(index: int, name: str | None) -> sources.RawRecord:
    return sources.RawRecord(
        index=index,
        attributes={
            "P30_001": b"21201",
            "P30_002": b"16",
            "P30_003": b"16001",
            "P30_004": f"{index + 1:05d}".encode("ascii"),
            "P30_005": name.encode("cp932") if name is not None else None,
            "P30_006": None,
        },
        geometry=geometry.Geometry(
            geometry.Point((136.70 + index * 0.001, 35.40)), 6668
        ),
    )


class RefusingLoader:
    """Loader that fails the test if a run ever reaches it."""

    def load(self, *args: Any, **kwargs: Any) -> int:
        raise AssertionError("loader must not be called")


def test_prefecture_run_end_to_end(
    monkeypatch: pytest.MonkeyPatch,
    tmp_path: pathlib.Path,
) -> None:
    """Test a legacy-encoded prefecture lands as one 3857 polygon."""
    _install_reader(monkeypatch, [_prefecture_record()])
    loader = database.InMemoryBatchLoader()

    summary = pipeline.run_registration(
        pipeline.RunRequest(
            dataset=db_models.DatasetKind.PREFECTURE,
            path=tmp_path / "N03-20_21_200101.shp",
            admin_code="21",
            encoding="cp932",
        ),
        _settings(tmp_path),
        loader,
    )

    assert summary.rows_loaded == 1
    assert summary.table == "prefectures"
    assert summary.encoding == "cp932"
    rows = loader.rows(db_models.DatasetKind.PREFECTURE)
    assert len(rows) == 1
    row = rows[0]
    assert row["code"] == "21"
    assert row["name"] == "岐阜県"
    geom = row["geom"]
    assert isinstance(geom, geometry.Geometry)
    assert geom.srid == geometry.WEB_MERCATOR_SRID
    assert isinstance(geom.shape, geometry.Polygon)
    (ring,) = geom.shape.rings
    assert len(ring) == 5
    assert ring[0] == ring[-1]

    with reproject.ProjectionContext() as context:
        expected = reproject.reproject(_prefecture_record().geometry, context)
    assert geom == expected


@pytest.mark.parametrize("keep_cpg", [True, False], ids=["with-cpg", "without-cpg"])
def test_prefecture_run_from_cp932_shapefile(
    tmp_path: pathlib.Path,
    keep_cpg: bool,
) -> None:
    """Test cp932 DBF text survives the shapefile reader and decodes once."""
    path = tmp_path / "N03-20_21_200101.shp"
    schema = {
        "geometry": "Polygon",
        "properties": {
            "N03_001": "str:10",
            "N03_002": "str:20",
            "N03_003": "str:20",
            "N03_004": "str:20",
            "N03_007": "str:5",
        },
    }
    with fiona.open(
        path,
        "w",
        driver="ESRI Shapefile",
        schema=schema,
        crs="EPSG:6668",
        encoding="cp932",
    ) as dst:
        dst.write(
            {
                "geometry": {"type": "Polygon", "coordinates": [list(GIFU_RING)]},
                "properties": {
                    "N03_001": "岐阜県",
                    "N03_002": None,
                    "N03_003": None,
                    "N03_004": None,
                    "N03_007": None,
                },
            }
        )
    if not keep_cpg:
        path.with_suffix(".cpg").unlink(missing_ok=True)

    (raw,) = sources.read_shapefile(path, srid=6668)
    assert raw.attributes["N03_001"] == "岐阜県".encode("cp932")

    loader = database.InMemoryBatchLoader()
    summary = pipeline.run_registration(
        pipeline.RunRequest(
            dataset=db_models.DatasetKind.PREFECTURE,
            path=path,
            admin_code="21",
            srid=6668,
        ),
        _settings(tmp_path, default_encoding="cp932"),
        loader,
    )

    assert summary.rows_loaded == 1
    assert summary.encoding == "cp932"
    (row,) = loader.rows(db_models.DatasetKind.PREFECTURE)
    assert row["code"] == "21"
    assert row["name"] == "岐阜県"
    geom = row["geom"]
    assert isinstance(geom, geometry.Geometry)
    assert geom.srid == geometry.WEB_MERCATOR_SRID
    (ring,) = geom.shape.rings
    assert len(ring) == 5
    assert ring[0] == ring[-1]


def test_prefecture_default_encoding_from_settings(
    monkeypatch: pytest.MonkeyPatch,
    tmp_path: pathlib.Path,
) -> None:
    """Test shapefile runs fall back to the configured encoding."""
    _install_reader(monkeypatch, [_prefecture_record()])
    loader = database.InMemoryBatchLoader()

    summary = pipeline.run_registration(
        pipeline.RunRequest(
            dataset=db_models.DatasetKind.PREFECTURE,
            path=tmp_path / "pref.shp",
            admin_code="21",
        ),
        _settings(tmp_path, default_encoding="cp932"),
        loader,
    )

    assert summary.encoding == "cp932"
    assert loader.rows(db_models.DatasetKind.PREFECTURE)[0]["name"] == "岐阜県"


def test_wrong_encoding_fails_run(
    monkeypatch: pytest.MonkeyPatch,
    tmp_path: pathlib.Path,
) -> None:
    """Test cp932 bytes declared as UTF-8 are an encoding error."""
    _install_reader(monkeypatch, [_prefecture_record()])

    with pytest.raises(errors.EncodingError) as excinfo:
        pipeline.run_registration(
            pipeline.RunRequest(
                dataset=db_models.DatasetKind.PREFECTURE,
                path=tmp_path / "pref.shp",
                admin_code="21",
                encoding="utf-8",
            ),
            _settings(tmp_path),
            RefusingLoader(),
        )
    assert excinfo.value.field == "N03_001"
    assert excinfo.value.record_index == 0


def test_missing_facility_name_leaves_table_unchanged(
    monkeypatch: pytest.MonkeyPatch,
    tmp_path: pathlib.Path,
) -> None:
    """Test a post office without a name aborts the run with no writes."""
    loader = database.InMemoryBatchLoader()
    _install_reader(monkeypatch, [_post_office_record(0, "岐阜中央郵便局")])
    pipeline.run_registration(
        pipeline.RunRequest(
            dataset=db_models.DatasetKind.POST_OFFICE,
            path=tmp_path / "P30-13_23.shp",
            admin_code="21201",
        ),
        _settings(tmp_path),
        loader,
    )
    before = loader.rows(db_models.DatasetKind.POST_OFFICE)

    _install_reader(
        monkeypatch,
        [
            _post_office_record(0, "岐阜中央郵便局"),
            _post_office_record(1, None),
            _post_office_record(2, "岐阜北郵便局"),
        ],
    )
    with pytest.raises(errors.MissingFieldError) as excinfo:
        pipeline.run_registration(
            pipeline.RunRequest(
                dataset=db_models.DatasetKind.POST_OFFICE,
                path=tmp_path / "P30-13_21.shp",
                admin_code="21201",
                replace=True,
            ),
            _settings(tmp_path),
            loader,
        )

    assert excinfo.value.field == "P30_005"
    assert excinfo.value.record_index == 1
    assert loader.rows(db_models.DatasetKind.POST_OFFICE) == before


def test_fail_fast_stops_reading(
    monkeypatch: pytest.MonkeyPatch,
    tmp_path: pathlib.Path,
) -> None:
    """Test no chunk after the failing one is read."""
    records = [_post_office_record(i, "局") for i in range(20)]
    records[5] = _post_office_record(5, None)
    pulled: list[int] = []
    _install_reader(monkeypatch, records, pulled)

    with pytest.raises(errors.MissingFieldError):
        pipeline.run_registration(
            pipeline.RunRequest(
                dataset=db_models.DatasetKind.POST_OFFICE,
                path=tmp_path / "p30.shp",
                max_workers=2,
            ),
            _settings(tmp_path, chunk_size=4),
            RefusingLoader(),
        )

    assert max(pulled) < 8


def test_source_order_is_preserved(
    monkeypatch: pytest.MonkeyPatch,
    tmp_path: pathlib.Path,
) -> None:
    """Test entities come back in source order from the worker pool."""
    records = [_post_office_record(i, f"局{i}") for i in range(50)]
    _install_reader(monkeypatch, records)
    loader = database.InMemoryBatchLoader()

    summary = pipeline.run_registration(
        pipeline.RunRequest(
            dataset=db_models.DatasetKind.POST_OFFICE,
            path=tmp_path / "p30.shp",
            max_workers=4,
        ),
        _settings(tmp_path, chunk_size=7),
        loader,
    )

    assert summary.records_read == 50
    assert summary.rows_loaded == 50
    names = [row["name"] for row in loader.rows(db_models.DatasetKind.POST_OFFICE)]
    assert names == [f"局{i}" for i in range(50)]


def test_city_run_from_geojson(tmp_path: pathlib.Path) -> None:
    """Test a GeoJSON city run filters by prefecture code and skips others."""
    def feature(code: str, name: str, district: str | None) -> dict[str, Any]:
        return {
            "type": "Feature",
            "properties": {
                "N03_001": "岐阜県",
                "N03_002": None,
                "N03_003": district,
                "N03_004": name,
                "N03_007": code,
            },
            "geometry": {
                "type": "Polygon",
                "coordinates": [[list(point) for point in GIFU_RING]],
            },
        }

    path = tmp_path / "n03.geojson"
    path.write_text(
        json.dumps(
            {
                "type": "FeatureCollection",
                "crs": {"type": "name", "properties": {"name": "urn:ogc:def:crs:EPSG::6668"}},
                "features": [
                    feature("21201", "岐阜市", None),
                    feature("23100", "名古屋市", None),
                    feature("21421", "北方町", "本巣郡"),
                ],
            },
            ensure_ascii=False,
        ),
        encoding="utf-8",
    )
    loader = database.InMemoryBatchLoader()

    summary = pipeline.run_registration(
        pipeline.RunRequest(
            dataset=db_models.DatasetKind.CITY,
            path=path,
            admin_code="21",
            encoding="cp932",
        ),
        _settings(tmp_path),
        loader,
    )

    assert summary.source_format is sources.SourceFormat.GEOJSON
    assert summary.encoding == "utf-8"
    assert summary.records_read == 3
    assert summary.records_skipped == 1
    rows = loader.rows(db_models.DatasetKind.CITY)
    assert [(row["code"], row["area"], row["name"]) for row in rows] == [
        ("21201", None, "岐阜市"),
        ("21421", "本巣郡", "北方町"),
    ]


def test_open_ring_fails_run(tmp_path: pathlib.Path) -> None:
    """Test an open ring in the source aborts the run."""
    open_ring = [list(point) for point in GIFU_RING[:-1]]
    path = tmp_path / "open.geojson"
    path.write_text(
        json.dumps(
            {
                "type": "FeatureCollection",
                "features": [
                    {
                        "type": "Feature",
                        "properties": {"N03_001": "岐阜県"},
                        "geometry": {"type": "Polygon", "coordinates": [open_ring]},
                    }
                ],
            }
        ),
        encoding="utf-8",
    )

    with pytest.raises(errors.GeometryValidationError) as excinfo:
        pipeline.run_registration(
            pipeline.RunRequest(
                dataset=db_models.DatasetKind.PREFECTURE,
                path=path,
                admin_code="21",
            ),
            _settings(tmp_path),
            RefusingLoader(),
        )
    assert excinfo.value.reason == "ring_not_closed"


def test_rerun_errors_then_replaces(
    monkeypatch: pytest.MonkeyPatch,
    tmp_path: pathlib.Path,
) -> None:
    """Test a second run needs replace and then swaps the rows."""
    _install_reader(monkeypatch, [_prefecture_record()])
    loader = database.InMemoryBatchLoader()
    request = pipeline.RunRequest(
        dataset=db_models.DatasetKind.PREFECTURE,
        path=tmp_path / "pref.shp",
        admin_code="21",
    )
    settings = _settings(tmp_path)
    pipeline.run_registration(request, settings, loader)
    first_id = loader.rows(db_models.DatasetKind.PREFECTURE)[0]["id"]

    with pytest.raises(errors.TargetNotEmptyError):
        pipeline.run_registration(request, settings, loader)

    replace = pipeline.RunRequest(
        dataset=request.dataset,
        path=request.path,
        admin_code="21",
        replace=True,
    )
    pipeline.run_registration(replace, settings, loader)
    rows = loader.rows(db_models.DatasetKind.PREFECTURE)
    assert len(rows) == 1
    assert rows[0]["id"] != first_id


def test_no_selected_records_is_an_error(
    monkeypatch: pytest.MonkeyPatch,
    tmp_path: pathlib.Path,
) -> None:
    """Test a run that selects nothing fails instead of committing nothing."""
    _install_reader(monkeypatch, [_post_office_record(0, "局")])

    with pytest.raises(errors.SourceFormatError, match="no post_office records"):
        pipeline.run_registration(
            pipeline.RunRequest(
                dataset=db_models.DatasetKind.POST_OFFICE,
                path=tmp_path / "p30.shp",
                admin_code="23",
            ),
            _settings(tmp_path),
            RefusingLoader(),
        )


def test_prefecture_run_requires_code(tmp_path: pathlib.Path) -> None:
    """Test a prefecture run without a code fails before reading."""
    with pytest.raises(errors.MissingFieldError):
        pipeline.run_registration(
            pipeline.RunRequest(
                dataset=db_models.DatasetKind.PREFECTURE,
                path=tmp_path / "absent.shp",
            ),
            _settings(tmp_path),
            RefusingLoader(),
        )


def test_resolve_encoding() -> None:
    """Test encoding resolution per format."""
    shapefile = sources.SourceFormat.SHAPEFILE
    geojson = sources.SourceFormat.GEOJSON
    assert pipeline.resolve_encoding(shapefile, None, "cp932") == "cp932"
    assert pipeline.resolve_encoding(shapefile, "SJIS", "cp932") == "shift_jis"
    assert pipeline.resolve_encoding(geojson, "cp932", "cp932") == "utf-8"
    with pytest.raises(errors.EncodingError):
        pipeline.resolve_encoding(shapefile, "no-such-codec", "cp932")
