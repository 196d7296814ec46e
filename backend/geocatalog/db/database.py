"""Corpus repositories: collections, sources, geometries and attributes."""

from __future__ import annotations

import dataclasses
import datetime
import itertools
import logging
from typing import TYPE_CHECKING, Protocol, TypeVar, cast

import psycopg2
import psycopg2.extensions
import psycopg2.extras
from shapely import wkb as shapely_wkb

from geocatalog.core import exceptions
from geocatalog.db import models as db_models

if TYPE_CHECKING:
    from collections.abc import Iterable

    from geocatalog.core import config

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _cast(value: object, dtype: type[T]) -> T | None:  # type: ignore[misc]
    """Cast a value to a specific type, returning None if value is None."""
    if value is None:
        return None

    return cast(T, value)


def validate_plan(
    plan: db_models.IngestionPlan,
    live_geometries: Iterable[db_models.CanonicalGeometry],
) -> None:
    """Check that committing ``plan`` keeps one live geometry per fid.

    Args:
        plan: Writes of one ingestion.
        live_geometries: Currently live geometries of the plan's collection.

    Raises:
        InvariantViolation: If a new fid collides with a live one, a fid is
            written twice, a revision does not supersede a live geometry of
            the same fid, or the fid allocator lags behind.
    """
    live_by_id = {geometry.id: geometry for geometry in live_geometries}
    live_fids = {geometry.fid for geometry in live_by_id.values()}
    seen: set[int] = set()
    for geometry in plan.new_geometries:
        if geometry.fid in seen:
            raise exceptions.InvariantViolation(
                "fid written twice in one ingestion",
                context={"fid": geometry.fid},
            )
        seen.add(geometry.fid)
        if geometry.previous_id is None:
            if geometry.fid in live_fids:
                raise exceptions.InvariantViolation(
                    "new fid collides with a live fid",
                    context={"fid": geometry.fid},
                )
            continue
        previous = live_by_id.get(geometry.previous_id)
        if previous is None or previous.fid != geometry.fid:
            raise exceptions.InvariantViolation(
                "revision does not supersede a live geometry of its fid",
                context={
                    "fid": geometry.fid,
                    "previous_id": geometry.previous_id,
                },
            )
    if seen and plan.collection.max_fid < max(seen):
        raise exceptions.InvariantViolation(
            "fid allocator is behind the written fids",
            context={"max_fid": plan.collection.max_fid},
        )


class CorpusRepositoryProtocol(Protocol):
    """Protocol interface for the corpus and the pending-match queue.

    Implementations provide persistence for collections, sources,
    versioned geometries, attribute snapshots and match records,
    supporting both in-memory (testing) and PostgreSQL (production)
    backends. ``commit`` applies an ingestion plan atomically.
    """

    def list_collections(
        self,
        geom_type: db_models.GeometryType | None = None,
    ) -> list[db_models.Collection]: ...

    def get_collection(
        self,
        collection_id: int,
    ) -> db_models.Collection | None: ...

    def drop_collection(self, collection_id: int) -> bool: ...

    def sources(self, collection_id: int) -> list[db_models.Source]: ...

    def latest_source(
        self,
        collection_id: int,
    ) -> db_models.Source | None: ...

    def live_geometries(
        self,
        collection_id: int | None = None,
        geom_type: db_models.GeometryType | None = None,
    ) -> list[db_models.CanonicalGeometry]: ...

    def live_count(self, collection_id: int) -> int: ...

    def get_geometry(
        self,
        geometry_id: int,
    ) -> db_models.CanonicalGeometry | None: ...

    def snapshots(
        self,
        collection_id: int,
        fids: Iterable[int] | None = None,
    ) -> list[db_models.AttributeSnapshot]: ...

    def commit(
        self,
        plan: db_models.IngestionPlan,
    ) -> db_models.CommitResult: ...

    def add_match(
        self,
        record: db_models.MatchRecord,
    ) -> db_models.MatchRecord: ...

    def update_match(
        self,
        record: db_models.MatchRecord,
    ) -> db_models.MatchRecord: ...

    def get_match(self, match_id: int) -> db_models.MatchRecord | None: ...

    def list_matches(
        self,
        pending_only: bool = True,
    ) -> list[db_models.MatchRecord]: ...

    def pending_count(self) -> int: ...


class InMemoryCorpusRepository(CorpusRepositoryProtocol):
    """Simple in-memory corpus for tests and local development.

    Data is lost when the process exits. Buffers are precomputed at commit
    time with ``buffer_radius``.
    """

    def __init__(self, buffer_radius: float = 50.0) -> None:
        """Initialize an empty in-memory corpus."""
        self.buffer_radius = buffer_radius
        self._collections: dict[int, db_models.Collection] = {}
        self._sources: dict[int, db_models.Source] = {}
        self._geometries: dict[int, db_models.CanonicalGeometry] = {}
        self._superseded: set[int] = set()
        self._snapshots: list[db_models.AttributeSnapshot] = []
        self._matches: dict[int, db_models.MatchRecord] = {}
        self._ids = {
            name: itertools.count(1)
            for name in ("collection", "source", "geometry", "match")
        }

    def list_collections(
        self,
        geom_type: db_models.GeometryType | None = None,
    ) -> list[db_models.Collection]:
        return [
            collection
            for collection in self._collections.values()
            if geom_type is None or collection.geom_type == geom_type
        ]

    def get_collection(
        self,
        collection_id: int,
    ) -> db_models.Collection | None:
        collection = self._collections.get(collection_id)
        return dataclasses.replace(collection) if collection else None

    def drop_collection(self, collection_id: int) -> bool:
        """Drop a collection and everything that depends on it."""
        if self._collections.pop(collection_id, None) is None:
            return False
        source_ids = {
            source.id
            for source in self._sources.values()
            if source.collection_id == collection_id
        }
        for source_id in source_ids:
            del self._sources[source_id]
        geometry_ids = {
            geometry.id
            for geometry in self._geometries.values()
            if geometry.collection_id == collection_id
        }
        for geometry_id in geometry_ids:
            del self._geometries[geometry_id]
        self._superseded -= geometry_ids
        self._snapshots = [
            snapshot
            for snapshot in self._snapshots
            if snapshot.source_id not in source_ids
        ]
        logger.info(
            "Dropped collection %s (%d sources, %d geometries)",
            collection_id,
            len(source_ids),
            len(geometry_ids),
        )
        return True

    def sources(self, collection_id: int) -> list[db_models.Source]:
        return sorted(
            (
                source
                for source in self._sources.values()
                if source.collection_id == collection_id
            ),
            key=lambda source: (source.created_at, source.id or 0),
        )

    def latest_source(self, collection_id: int) -> db_models.Source | None:
        sources = self.sources(collection_id)
        return sources[-1] if sources else None

    def live_geometries(
        self,
        collection_id: int | None = None,
        geom_type: db_models.GeometryType | None = None,
    ) -> list[db_models.CanonicalGeometry]:
        allowed = {
            collection.id
            for collection in self.list_collections(geom_type)
            if collection_id is None or collection.id == collection_id
        }
        return [
            geometry
            for geometry in self._geometries.values()
            if geometry.id not in self._superseded
            and geometry.collection_id in allowed
        ]

    def live_count(self, collection_id: int) -> int:
        return len(self.live_geometries(collection_id=collection_id))

    def get_geometry(
        self,
        geometry_id: int,
    ) -> db_models.CanonicalGeometry | None:
        return self._geometries.get(geometry_id)

    def snapshots(
        self,
        collection_id: int,
        fids: Iterable[int] | None = None,
    ) -> list[db_models.AttributeSnapshot]:
        source_ids = {source.id for source in self.sources(collection_id)}
        wanted = set(fids) if fids is not None else None
        return [
            snapshot
            for snapshot in self._snapshots
            if snapshot.source_id in source_ids
            and (wanted is None or snapshot.fid in wanted)
        ]

    def commit(
        self,
        plan: db_models.IngestionPlan,
    ) -> db_models.CommitResult:
        """Validate the whole plan, then apply it in one step."""
        live = (
            self.live_geometries(collection_id=plan.collection.id)
            if plan.collection.id is not None
            else []
        )
        validate_plan(plan, live)

        collection = dataclasses.replace(plan.collection)
        if collection.id is None:
            collection.id = next(self._ids["collection"])
        self._collections[collection.id] = collection

        source = dataclasses.replace(
            plan.source,
            id=next(self._ids["source"]),
            collection_id=collection.id,
        )
        self._sources[cast(int, source.id)] = source

        geometry_ids: list[int] = []
        for geometry in plan.new_geometries:
            stored = dataclasses.replace(
                geometry,
                id=next(self._ids["geometry"]),
                collection_id=collection.id,
                source_id=source.id,
                buffer=geometry.geom.buffer(self.buffer_radius),
                buffer_radius=self.buffer_radius,
            )
            self._geometries[cast(int, stored.id)] = stored
            if stored.previous_id is not None:
                self._superseded.add(stored.previous_id)
            geometry_ids.append(cast(int, stored.id))

        self._snapshots.extend(
            dataclasses.replace(snapshot, source_id=source.id)
            for snapshot in plan.snapshots
        )
        if plan.resolved_match_id is not None:
            self._matches.pop(plan.resolved_match_id, None)

        return db_models.CommitResult(
            collection_id=collection.id,
            source_id=cast(int, source.id),
            geometry_ids=geometry_ids,
        )

    def add_match(
        self,
        record: db_models.MatchRecord,
    ) -> db_models.MatchRecord:
        stored = dataclasses.replace(record, id=next(self._ids["match"]))
        self._matches[cast(int, stored.id)] = stored
        return stored

    def update_match(
        self,
        record: db_models.MatchRecord,
    ) -> db_models.MatchRecord:
        if record.id not in self._matches:
            raise KeyError(record.id)
        self._matches[record.id] = record
        return record

    def get_match(self, match_id: int) -> db_models.MatchRecord | None:
        return self._matches.get(match_id)

    def list_matches(
        self,
        pending_only: bool = True,
    ) -> list[db_models.MatchRecord]:
        return [
            record
            for record in self._matches.values()
            if record.pending or not pending_only
        ]

    def pending_count(self) -> int:
        return len(self.list_matches(pending_only=True))


class PostgresCorpusRepository(CorpusRepositoryProtocol):
    """PostgreSQL/PostGIS-backed corpus.

    Creates the catalog tables and enables PostGIS on initialization.
    Geometries travel as WKB in EPSG:3857; buffers are precomputed in the
    database with ``ST_Buffer``. ``commit`` runs in a single transaction.
    """

    CREATE_TABLES_SQL = """
    CREATE TABLE IF NOT EXISTS collections (
      id SERIAL PRIMARY KEY,
      name TEXT NOT NULL,
      geom_type TEXT NOT NULL,
      bbox_minx DOUBLE PRECISION,
      bbox_miny DOUBLE PRECISION,
      bbox_maxx DOUBLE PRECISION,
      bbox_maxy DOUBLE PRECISION,
      max_fid INTEGER NOT NULL DEFAULT 0,
      created_at TIMESTAMPTZ DEFAULT now()
    );
    CREATE TABLE IF NOT EXISTS sources (
      id SERIAL PRIMARY KEY,
      collection_id INTEGER NOT NULL
        REFERENCES collections (id) ON DELETE CASCADE,
      previous_id INTEGER REFERENCES sources (id) ON DELETE SET NULL,
      import_id TEXT,
      license TEXT,
      manual BOOLEAN NOT NULL DEFAULT FALSE,
      process JSONB,
      created_at TIMESTAMPTZ NOT NULL
    );
    CREATE TABLE IF NOT EXISTS geometries (
      id SERIAL PRIMARY KEY,
      collection_id INTEGER NOT NULL
        REFERENCES collections (id) ON DELETE CASCADE,
      source_id INTEGER NOT NULL REFERENCES sources (id) ON DELETE CASCADE,
      fid INTEGER NOT NULL,
      previous_id INTEGER REFERENCES geometries (id) ON DELETE SET NULL,
      live BOOLEAN NOT NULL DEFAULT TRUE,
      geom GEOMETRY(GEOMETRY, 3857) NOT NULL,
      buffer GEOMETRY(GEOMETRY, 3857)
    );
    CREATE UNIQUE INDEX IF NOT EXISTS geometries_live_fid
      ON geometries (collection_id, fid) WHERE live;
    CREATE INDEX IF NOT EXISTS geometries_geom
      ON geometries USING gist (geom);
    CREATE INDEX IF NOT EXISTS geometries_buffer
      ON geometries USING gist (buffer);
    CREATE TABLE IF NOT EXISTS attribute_snapshots (
      fid INTEGER NOT NULL,
      source_id INTEGER NOT NULL REFERENCES sources (id) ON DELETE CASCADE,
      column_name TEXT NOT NULL,
      column_type TEXT NOT NULL,
      value JSONB,
      observed_at TIMESTAMPTZ NOT NULL,
      PRIMARY KEY (fid, source_id, column_name, observed_at)
    );
    CREATE TABLE IF NOT EXISTS matches (
      id SERIAL PRIMARY KEY,
      import_id TEXT,
      file TEXT,
      message TEXT NOT NULL,
      fidelity TEXT,
      process JSONB,
      geom_type TEXT,
      bbox_minx DOUBLE PRECISION,
      bbox_miny DOUBLE PRECISION,
      bbox_maxx DOUBLE PRECISION,
      bbox_maxy DOUBLE PRECISION,
      centroid_x DOUBLE PRECISION,
      centroid_y DOUBLE PRECISION,
      pending BOOLEAN NOT NULL DEFAULT TRUE,
      created_at TIMESTAMPTZ DEFAULT now()
    );
    """

    GEOMETRY_COLUMNS = """
      geometries.id, geometries.collection_id, geometries.source_id,
      geometries.fid, geometries.previous_id,
      ST_AsBinary(geometries.geom) AS wkb
    """

    def __init__(self, settings: config.Settings) -> None:
        """Initialize repository with database settings.

        Args:
            settings: Application settings containing the database URL and
                the buffer radius used for precomputed buffers.
        """
        self.settings = settings
        self._ensure_schema()

    def _connection(self) -> psycopg2.extensions.connection:
        """Create a new database connection returning dict rows."""
        return psycopg2.connect(
            self.settings.database_url,
            cursor_factory=psycopg2.extras.RealDictCursor,
        )

    def _ensure_schema(self) -> None:
        """Ensure the PostGIS extension and the catalog tables exist."""
        with self._connection() as conn, conn.cursor() as cur:
            cur.execute("CREATE EXTENSION IF NOT EXISTS postgis;")
            cur.execute(self.CREATE_TABLES_SQL)
            conn.commit()

    def list_collections(
        self,
        geom_type: db_models.GeometryType | None = None,
    ) -> list[db_models.Collection]:
        with self._connection() as conn, conn.cursor() as cur:
            cur.execute(
                """
                SELECT * FROM collections
                WHERE %(geom_type)s::text IS NULL OR geom_type = %(geom_type)s
                ORDER BY id
                """,
                {"geom_type": str(geom_type) if geom_type else None},
            )
            return [
                self._collection_from_row(cast(dict[str, object], row))
                for row in cur.fetchall()
            ]

    def get_collection(
        self,
        collection_id: int,
    ) -> db_models.Collection | None:
        with self._connection() as conn, conn.cursor() as cur:
            cur.execute(
                "SELECT * FROM collections WHERE id = %s", (collection_id,)
            )
            row = cur.fetchone()
            if row is None:
                return None
            return self._collection_from_row(cast(dict[str, object], row))

    def drop_collection(self, collection_id: int) -> bool:
        """Drop a collection; foreign keys cascade to dependent rows."""
        with self._connection() as conn, conn.cursor() as cur:
            cur.execute(
                "DELETE FROM collections WHERE id = %s RETURNING id",
                (collection_id,),
            )
            dropped = cur.fetchone() is not None
            conn.commit()
        if dropped:
            logger.info("Dropped collection %s", collection_id)
        return dropped

    def sources(self, collection_id: int) -> list[db_models.Source]:
        with self._connection() as conn, conn.cursor() as cur:
            cur.execute(
                """
                SELECT * FROM sources WHERE collection_id = %s
                ORDER BY created_at, id
                """,
                (collection_id,),
            )
            return [
                self._source_from_row(cast(dict[str, object], row))
                for row in cur.fetchall()
            ]

    def latest_source(self, collection_id: int) -> db_models.Source | None:
        sources = self.sources(collection_id)
        return sources[-1] if sources else None

    def live_geometries(
        self,
        collection_id: int | None = None,
        geom_type: db_models.GeometryType | None = None,
    ) -> list[db_models.CanonicalGeometry]:
        with self._connection() as conn, conn.cursor() as cur:
            return self._live_geometries(
                cur,
                collection_id=collection_id,
                geom_type=geom_type,
            )

    def _live_geometries(
        self,
        cur: psycopg2.extensions.cursor,
        collection_id: int | None = None,
        geom_type: db_models.GeometryType | None = None,
    ) -> list[db_models.CanonicalGeometry]:
        cur.execute(
            f"""
            SELECT {self.GEOMETRY_COLUMNS}
            FROM geometries
            JOIN collections ON collections.id = geometries.collection_id
            WHERE geometries.live
              AND (%(collection_id)s::integer IS NULL
                   OR geometries.collection_id = %(collection_id)s)
              AND (%(geom_type)s::text IS NULL
                   OR collections.geom_type = %(geom_type)s)
            """,  # noqa: S608
            {
                "collection_id": collection_id,
                "geom_type": str(geom_type) if geom_type else None,
            },
        )
        return [
            self._geometry_from_row(cast(dict[str, object], row))
            for row in cur.fetchall()
        ]

    def live_count(self, collection_id: int) -> int:
        with self._connection() as conn, conn.cursor() as cur:
            cur.execute(
                """
                SELECT COUNT(*) AS live_count FROM geometries
                WHERE live AND collection_id = %s
                """,
                (collection_id,),
            )
            row = cast(dict[str, object], cur.fetchone())
            return int(cast(int, row["live_count"]))

    def get_geometry(
        self,
        geometry_id: int,
    ) -> db_models.CanonicalGeometry | None:
        with self._connection() as conn, conn.cursor() as cur:
            cur.execute(
                f"SELECT {self.GEOMETRY_COLUMNS} FROM geometries "  # noqa: S608
                "WHERE geometries.id = %s",
                (geometry_id,),
            )
            row = cur.fetchone()
            if row is None:
                return None
            return self._geometry_from_row(cast(dict[str, object], row))

    def snapshots(
        self,
        collection_id: int,
        fids: Iterable[int] | None = None,
    ) -> list[db_models.AttributeSnapshot]:
        with self._connection() as conn, conn.cursor() as cur:
            cur.execute(
                """
                SELECT attribute_snapshots.* FROM attribute_snapshots
                JOIN sources ON sources.id = attribute_snapshots.source_id
                WHERE sources.collection_id = %(collection_id)s
                  AND (%(fids)s::integer[] IS NULL
                       OR attribute_snapshots.fid = ANY(%(fids)s))
                """,
                {
                    "collection_id": collection_id,
                    "fids": list(fids) if fids is not None else None,
                },
            )
            return [
                self._snapshot_from_row(cast(dict[str, object], row))
                for row in cur.fetchall()
            ]

    def commit(
        self,
        plan: db_models.IngestionPlan,
    ) -> db_models.CommitResult:
        """Apply an ingestion plan in one transaction.

        Superseded geometries are flagged before their successors are
        inserted so the partial unique index on live fids holds at every
        statement. Any error rolls the whole transaction back.
        """
        with self._connection() as conn, conn.cursor() as cur:
            live = (
                self._live_geometries(cur, collection_id=plan.collection.id)
                if plan.collection.id is not None
                else []
            )
            validate_plan(plan, live)

            collection_id = self._write_collection(cur, plan.collection)
            source_id = self._write_source(cur, plan.source, collection_id)
            geometry_ids = [
                self._write_geometry(cur, geometry, collection_id, source_id)
                for geometry in plan.new_geometries
            ]
            if plan.snapshots:
                psycopg2.extras.execute_values(
                    cur,
                    """
                    INSERT INTO attribute_snapshots (
                        fid, source_id, column_name, column_type, value,
                        observed_at
                    ) VALUES %s
                    """,
                    [
                        (
                            snapshot.fid,
                            source_id,
                            snapshot.column,
                            str(snapshot.column_type),
                            psycopg2.extras.Json(snapshot.value),
                            snapshot.timestamp,
                        )
                        for snapshot in plan.snapshots
                    ],
                )
            if plan.resolved_match_id is not None:
                cur.execute(
                    "DELETE FROM matches WHERE id = %s",
                    (plan.resolved_match_id,),
                )
            conn.commit()

        return db_models.CommitResult(
            collection_id=collection_id,
            source_id=source_id,
            geometry_ids=geometry_ids,
        )

    def _write_collection(
        self,
        cur: psycopg2.extensions.cursor,
        collection: db_models.Collection,
    ) -> int:
        bbox = collection.bbox or (None, None, None, None)
        params = {
            "id": collection.id,
            "name": collection.name,
            "geom_type": str(collection.geom_type),
            "bbox_minx": bbox[0],
            "bbox_miny": bbox[1],
            "bbox_maxx": bbox[2],
            "bbox_maxy": bbox[3],
            "max_fid": collection.max_fid,
            "created_at": collection.created_at,
        }
        if collection.id is None:
            cur.execute(
                """
                INSERT INTO collections (
                    name, geom_type, bbox_minx, bbox_miny, bbox_maxx,
                    bbox_maxy, max_fid, created_at
                ) VALUES (%(name)s, %(geom_type)s, %(bbox_minx)s,
                    %(bbox_miny)s, %(bbox_maxx)s, %(bbox_maxy)s,
                    %(max_fid)s, %(created_at)s)
                RETURNING id
                """,
                params,
            )
            row = cast(dict[str, object], cur.fetchone())
            return int(cast(int, row["id"]))

        cur.execute(
            """
            UPDATE collections SET
                name = %(name)s,
                bbox_minx = %(bbox_minx)s,
                bbox_miny = %(bbox_miny)s,
                bbox_maxx = %(bbox_maxx)s,
                bbox_maxy = %(bbox_maxy)s,
                max_fid = %(max_fid)s
            WHERE id = %(id)s
            """,
            params,
        )
        return collection.id

    @staticmethod
    def _write_source(
        cur: psycopg2.extensions.cursor,
        source: db_models.Source,
        collection_id: int,
    ) -> int:
        cur.execute(
            """
            INSERT INTO sources (
                collection_id, previous_id, import_id, license, manual,
                process, created_at
            ) VALUES (%(collection_id)s, %(previous_id)s, %(import_id)s,
                %(license)s, %(manual)s, %(process)s, %(created_at)s)
            RETURNING id
            """,
            {
                "collection_id": collection_id,
                "previous_id": source.previous_id,
                "import_id": source.import_id,
                "license": source.license,
                "manual": source.manual,
                "process": psycopg2.extras.Json(source.process),
                "created_at": source.created_at,
            },
        )
        row = cast(dict[str, object], cur.fetchone())
        return int(cast(int, row["id"]))

    def _write_geometry(
        self,
        cur: psycopg2.extensions.cursor,
        geometry: db_models.CanonicalGeometry,
        collection_id: int,
        source_id: int,
    ) -> int:
        if geometry.previous_id is not None:
            cur.execute(
                "UPDATE geometries SET live = FALSE WHERE id = %s",
                (geometry.previous_id,),
            )
        cur.execute(
            """
            INSERT INTO geometries (
                collection_id, source_id, fid, previous_id, geom, buffer
            ) VALUES (%(collection_id)s, %(source_id)s, %(fid)s,
                %(previous_id)s,
                ST_GeomFromWKB(%(wkb)s, 3857),
                ST_Buffer(ST_MakeValid(ST_GeomFromWKB(%(wkb)s, 3857)),
                          %(radius)s))
            RETURNING id
            """,
            {
                "collection_id": collection_id,
                "source_id": source_id,
                "fid": geometry.fid,
                "previous_id": geometry.previous_id,
                "wkb": psycopg2.Binary(geometry.geom.wkb),
                "radius": self.settings.buffer_radius,
            },
        )
        row = cast(dict[str, object], cur.fetchone())
        return int(cast(int, row["id"]))

    def add_match(
        self,
        record: db_models.MatchRecord,
    ) -> db_models.MatchRecord:
        with self._connection() as conn, conn.cursor() as cur:
            cur.execute(
                """
                INSERT INTO matches (
                    import_id, file, message, fidelity, process, geom_type,
                    bbox_minx, bbox_miny, bbox_maxx, bbox_maxy,
                    centroid_x, centroid_y, pending, created_at
                ) VALUES (%(import_id)s, %(file)s, %(message)s,
                    %(fidelity)s, %(process)s, %(geom_type)s,
                    %(bbox_minx)s, %(bbox_miny)s, %(bbox_maxx)s,
                    %(bbox_maxy)s, %(centroid_x)s, %(centroid_y)s,
                    %(pending)s, %(created_at)s)
                RETURNING id
                """,
                self._match_to_row(record),
            )
            row = cast(dict[str, object], cur.fetchone())
            conn.commit()
        return dataclasses.replace(record, id=int(cast(int, row["id"])))

    def update_match(
        self,
        record: db_models.MatchRecord,
    ) -> db_models.MatchRecord:
        with self._connection() as conn, conn.cursor() as cur:
            cur.execute(
                """
                UPDATE matches SET
                    message = %(message)s,
                    fidelity = %(fidelity)s,
                    process = %(process)s,
                    pending = %(pending)s
                WHERE id = %(id)s
                """,
                self._match_to_row(record),
            )
            conn.commit()
        return record

    def get_match(self, match_id: int) -> db_models.MatchRecord | None:
        with self._connection() as conn, conn.cursor() as cur:
            cur.execute("SELECT * FROM matches WHERE id = %s", (match_id,))
            row = cur.fetchone()
            if row is None:
                return None
            return self._match_from_row(cast(dict[str, object], row))

    def list_matches(
        self,
        pending_only: bool = True,
    ) -> list[db_models.MatchRecord]:
        with self._connection() as conn, conn.cursor() as cur:
            cur.execute(
                """
                SELECT * FROM matches
                WHERE pending OR NOT %(pending_only)s
                ORDER BY created_at, id
                """,
                {"pending_only": pending_only},
            )
            return [
                self._match_from_row(cast(dict[str, object], row))
                for row in cur.fetchall()
            ]

    def pending_count(self) -> int:
        with self._connection() as conn, conn.cursor() as cur:
            cur.execute(
                "SELECT COUNT(*) AS queue_count FROM matches WHERE pending"
            )
            row = cast(dict[str, object], cur.fetchone())
            return int(cast(int, row["queue_count"]))

    @staticmethod
    def _bbox_from_row(
        row: dict[str, object],
    ) -> db_models.BBox | None:
        bbox = (
            row.get("bbox_minx"),
            row.get("bbox_miny"),
            row.get("bbox_maxx"),
            row.get("bbox_maxy"),
        )
        if any(v is None for v in bbox):
            return None
        return cast(db_models.BBox, tuple(float(cast(float, v)) for v in bbox))

    @classmethod
    def _collection_from_row(
        cls,
        row: dict[str, object],
    ) -> db_models.Collection:
        created_at = _cast(
            row.get("created_at"), datetime.datetime
        ) or datetime.datetime.now(datetime.UTC)
        return db_models.Collection(
            id=int(cast(int, row["id"])),
            name=str(row["name"]),
            geom_type=db_models.GeometryType(str(row["geom_type"])),
            bbox=cls._bbox_from_row(row),
            max_fid=int(cast(int, row.get("max_fid") or 0)),
            created_at=created_at,
        )

    @staticmethod
    def _source_from_row(row: dict[str, object]) -> db_models.Source:
        previous_id = row.get("previous_id")
        return db_models.Source(
            id=int(cast(int, row["id"])),
            collection_id=int(cast(int, row["collection_id"])),
            created_at=cast(datetime.datetime, row["created_at"]),
            import_id=_cast(row.get("import_id"), str),
            previous_id=(
                int(cast(int, previous_id))
                if previous_id is not None
                else None
            ),
            license=_cast(row.get("license"), str),
            manual=bool(row.get("manual")),
            process=_cast(row.get("process"), dict),
        )

    @staticmethod
    def _geometry_from_row(
        row: dict[str, object],
    ) -> db_models.CanonicalGeometry:
        previous_id = row.get("previous_id")
        return db_models.CanonicalGeometry(
            id=int(cast(int, row["id"])),
            collection_id=int(cast(int, row["collection_id"])),
            source_id=int(cast(int, row["source_id"])),
            fid=int(cast(int, row["fid"])),
            geom=shapely_wkb.loads(bytes(cast(bytes, row["wkb"]))),
            previous_id=(
                int(cast(int, previous_id))
                if previous_id is not None
                else None
            ),
        )

    @staticmethod
    def _snapshot_from_row(
        row: dict[str, object],
    ) -> db_models.AttributeSnapshot:
        return db_models.AttributeSnapshot(
            fid=int(cast(int, row["fid"])),
            source_id=int(cast(int, row["source_id"])),
            column=str(row["column_name"]),
            value=row.get("value"),
            column_type=db_models.ColumnType(str(row["column_type"])),
            timestamp=cast(datetime.datetime, row["observed_at"]),
        )

    @staticmethod
    def _match_to_row(record: db_models.MatchRecord) -> dict[str, object]:
        bbox = record.bbox or (None, None, None, None)
        centroid = record.centroid or (None, None)
        return {
            "id": record.id,
            "import_id": record.import_id,
            "file": record.file,
            "message": record.message,
            "fidelity": record.fidelity,
            "process": psycopg2.extras.Json(record.process),
            "geom_type": record.geom_type,
            "bbox_minx": bbox[0],
            "bbox_miny": bbox[1],
            "bbox_maxx": bbox[2],
            "bbox_maxy": bbox[3],
            "centroid_x": centroid[0],
            "centroid_y": centroid[1],
            "pending": record.pending,
            "created_at": record.created_at,
        }

    @classmethod
    def _match_from_row(cls, row: dict[str, object]) -> db_models.MatchRecord:
        centroid_x = row.get("centroid_x")
        centroid_y = row.get("centroid_y")
        centroid = (
            (float(cast(float, centroid_x)), float(cast(float, centroid_y)))
            if centroid_x is not None and centroid_y is not None
            else None
        )
        created_at = _cast(
            row.get("created_at"), datetime.datetime
        ) or datetime.datetime.now(datetime.UTC)
        return db_models.MatchRecord(
            id=int(cast(int, row["id"])),
            import_id=_cast(row.get("import_id"), str),
            file=_cast(row.get("file"), str),
            message=str(row["message"]),
            fidelity=_cast(row.get("fidelity"), str),
            process=_cast(row.get("process"), dict),
            geom_type=_cast(row.get("geom_type"), str),
            bbox=cls._bbox_from_row(row),
            centroid=centroid,
            pending=bool(row.get("pending", True)),
            created_at=created_at,
        )


def get_corpus_repository(
    settings: config.Settings,
) -> CorpusRepositoryProtocol:
    """Factory function to create a corpus repository.

    Args:
        settings: Application settings selecting the backend.

    Returns:
        PostgresCorpusRepository when ``repository_backend`` is "postgres",
        otherwise a fresh InMemoryCorpusRepository.
    """
    if settings.repository_backend == "postgres":
        return PostgresCorpusRepository(settings)
    return InMemoryCorpusRepository(buffer_radius=settings.buffer_radius)


def get_connection(
    settings: config.Settings,
) -> psycopg2.extensions.connection:
    """Create a psycopg2 connection returning dict rows.

    Args:
        settings: Application settings containing database connection URL.

    Returns:
        psycopg2 extensions connection object for direct database access.
    """
    return psycopg2.connect(
        settings.database_url,
        cursor_factory=psycopg2.extras.RealDictCursor,
    )

