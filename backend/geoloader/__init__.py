"""Registration pipeline for national geodata boundaries and facilities.

This package loads MLIT National Land Numerical Information datasets
(prefecture and city boundaries, post office locations) from shapefiles or
GeoJSON into PostGIS tables stored in EPSG:3857 (Web Mercator).

- Decodes legacy-encoded (cp932) attribute text strictly, never lossily
- Reprojects every coordinate at load time with pyproj
- Validates ring closure and geometry kinds before anything is written
- Commits each run as a single all-or-nothing transaction

The pipeline is exposed through the ``geoloader`` command line tool and a
small FastAPI service; see ``geoloader.services.pipeline`` for the run
lifecycle.
"""
