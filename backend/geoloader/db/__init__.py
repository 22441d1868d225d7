"""Database models and batch loader abstractions.

``models`` describes the domain entities and the tables they land in;
``database`` persists a run's entities atomically, either into PostGIS or
into an in-memory store for tests.

Example:
    Resolve the production loader:
        >>> from geoloader.db import database
        >>> loader = database.get_batch_loader(settings)
"""
