"""Data models and corpus repository abstractions.

The models module holds the dataclasses shared by every layer. The
database module provides the CorpusRepositoryProtocol with an in-memory
implementation for tests and a PostgreSQL/PostGIS implementation for
production, selected by get_corpus_repository(settings).

Example:
    Use in a service:
        >>> from geocatalog.db import database
        >>> repo = database.get_corpus_repository(settings)
"""
