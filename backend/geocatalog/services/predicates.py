"""Spatial predicates used by the geometry matcher.

Each geometry type has its own predicate that pairs every candidate with at
most one canonical geometry of a scope:

- Points: nearest canonical point within ``point_match_radius``.
- Lines and polygons: the canonical buffer contains the candidate AND the
  candidate buffer contains the canonical geometry; among qualifying pairs
  the lowest Hausdorff distance wins, ties broken by lowest source id and
  then lowest canonical id.

Two providers execute the predicates. ``ShapelyPredicateProvider`` runs them
in-process over geometries loaded from the repository (memory backend,
tests). ``PostgisPredicateProvider`` renders the equivalent PostGIS query
and lets the database do the work (postgres backend).

Example:
    Matching candidates against the whole corpus:
        >>> provider = get_predicate_provider(settings, repository)
        >>> hits = provider.match(candidate_set)
        >>> hits[0].canonical_fid
        12
"""

from __future__ import annotations

import dataclasses
import logging
from typing import TYPE_CHECKING, ClassVar, Protocol, cast

import psycopg2
import shapely
import shapely.errors

from geocatalog.core import exceptions
from geocatalog.db import database
from geocatalog.db import models as db_models

if TYPE_CHECKING:
    from collections.abc import Iterable, Sequence

    from shapely.geometry.base import BaseGeometry

    from geocatalog.core import config

logger = logging.getLogger(__name__)


@dataclasses.dataclass(frozen=True)
class PredicateHit:
    """Best canonical counterpart found for one candidate part.

    ``source_diff`` and ``target_diff`` are the percentages of the candidate
    and canonical length (lines) or area (polygons) not shared with the other
    geometry. They are None for points.
    """

    candidate_local_id: int
    candidate_fid: int
    canonical_id: int
    canonical_fid: int
    collection_id: int
    source_id: int
    distance: float
    source_diff: float | None = None
    target_diff: float | None = None


def _rank(
    distance: float,
    canonical: db_models.CanonicalGeometry,
) -> tuple[float, int, int]:
    return (distance, canonical.source_id or 0, canonical.id or 0)


def _hit(
    candidate: db_models.CandidateGeometry,
    canonical: db_models.CanonicalGeometry,
    distance: float,
    source_diff: float | None = None,
    target_diff: float | None = None,
) -> PredicateHit:
    return PredicateHit(
        candidate_local_id=candidate.local_id,
        candidate_fid=candidate.fid,
        canonical_id=cast(int, canonical.id),
        canonical_fid=canonical.fid,
        collection_id=cast(int, canonical.collection_id),
        source_id=cast(int, canonical.source_id),
        distance=float(distance),
        source_diff=source_diff,
        target_diff=target_diff,
    )


class SpatialPredicate(Protocol):
    """Pairs candidates with their best canonical geometry in a scope."""

    geom_type: ClassVar[db_models.GeometryType]

    def match(
        self,
        candidates: Sequence[db_models.CandidateGeometry],
        scope: Sequence[db_models.CanonicalGeometry],
    ) -> list[PredicateHit]: ...


class PointPredicate:
    """Nearest canonical point within an absolute distance."""

    geom_type: ClassVar[db_models.GeometryType] = db_models.GeometryType.POINT

    def __init__(self, radius: float) -> None:
        self.radius = radius

    def match(
        self,
        candidates: Sequence[db_models.CandidateGeometry],
        scope: Sequence[db_models.CanonicalGeometry],
    ) -> list[PredicateHit]:
        if not scope:
            return []
        tree = shapely.STRtree([canonical.geom for canonical in scope])
        hits: list[PredicateHit] = []
        for candidate in candidates:
            indices = tree.query(
                candidate.geom,
                predicate="dwithin",
                distance=self.radius,
            )
            ranked = sorted(
                (
                    _rank(candidate.geom.distance(scope[i].geom), scope[i]),
                    int(i),
                )
                for i in indices
            )
            if ranked:
                (distance, _, _), index = ranked[0]
                hits.append(_hit(candidate, scope[index], distance))
        return hits


class _BufferPredicate:
    """Mutual buffer containment ranked by Hausdorff distance."""

    geom_type: ClassVar[db_models.GeometryType]

    def __init__(self, radius: float) -> None:
        self.radius = radius

    @staticmethod
    def measure(geom: BaseGeometry) -> float:
        raise NotImplementedError

    def difference_ratio(
        self,
        geom: BaseGeometry,
        other: BaseGeometry,
    ) -> float:
        """Percentage of ``geom`` not covered by ``other``."""
        total = self.measure(geom)
        if total == 0:
            return 0.0
        return self.measure(geom.difference(other)) / total * 100

    def match(
        self,
        candidates: Sequence[db_models.CandidateGeometry],
        scope: Sequence[db_models.CanonicalGeometry],
    ) -> list[PredicateHit]:
        if not scope:
            return []
        buffers = [canonical.buffered(self.radius) for canonical in scope]
        tree = shapely.STRtree(buffers)
        hits: list[PredicateHit] = []
        for candidate in candidates:
            candidate_buffer = candidate.geom.buffer(self.radius)
            ranked = sorted(
                (
                    _rank(
                        candidate.geom.hausdorff_distance(scope[i].geom),
                        scope[i],
                    ),
                    int(i),
                )
                for i in tree.query(candidate.geom, predicate="within")
                if candidate_buffer.contains(scope[i].geom)
            )
            if not ranked:
                continue
            (distance, _, _), index = ranked[0]
            canonical = scope[index]
            hits.append(
                _hit(
                    candidate,
                    canonical,
                    distance,
                    source_diff=self.difference_ratio(
                        candidate.geom, canonical.geom
                    ),
                    target_diff=self.difference_ratio(
                        canonical.geom, candidate.geom
                    ),
                )
            )
        return hits


class LinePredicate(_BufferPredicate):
    geom_type: ClassVar[db_models.GeometryType] = (
        db_models.GeometryType.LINESTRING
    )

    @staticmethod
    def measure(geom: BaseGeometry) -> float:
        return float(geom.length)


class PolygonPredicate(_BufferPredicate):
    geom_type: ClassVar[db_models.GeometryType] = (
        db_models.GeometryType.POLYGON
    )

    @staticmethod
    def measure(geom: BaseGeometry) -> float:
        return float(geom.area)


def predicate_for(
    geom_type: db_models.GeometryType,
    settings: config.Settings,
    similar: bool = False,
) -> SpatialPredicate:
    """Build the predicate variant for a geometry type.

    Args:
        geom_type: Geometry type of the candidate set.
        settings: Application settings providing the radii.
        similar: Use the looser ``similar_buffer_radius`` for lines and
            polygons.

    Returns:
        PointPredicate, LinePredicate or PolygonPredicate.
    """
    if geom_type is db_models.GeometryType.POINT:
        return PointPredicate(settings.point_match_radius)
    radius = (
        settings.similar_buffer_radius if similar else settings.buffer_radius
    )
    if geom_type is db_models.GeometryType.LINESTRING:
        return LinePredicate(radius)
    return PolygonPredicate(radius)


class PredicateProviderProtocol(Protocol):
    """Executes the typed predicates against the live corpus."""

    def match(
        self,
        candidates: db_models.CandidateSet,
        collection_id: int | None = None,
        similar: bool = False,
    ) -> list[PredicateHit]: ...


class ShapelyPredicateProvider(PredicateProviderProtocol):
    """Runs predicates in-process over live geometries of the repository."""

    def __init__(
        self,
        repository: database.CorpusRepositoryProtocol,
        settings: config.Settings,
    ) -> None:
        self.repository = repository
        self.settings = settings

    def match(
        self,
        candidates: db_models.CandidateSet,
        collection_id: int | None = None,
        similar: bool = False,
    ) -> list[PredicateHit]:
        """Match candidates against live geometries of the same type.

        Args:
            candidates: Normalized candidate set.
            collection_id: Restrict the scope to one collection (closed
                match); None scopes every collection of the same type.
            similar: Use the looser "similar" buffer radius.

        Returns:
            At most one hit per candidate part.

        Raises:
            PermanentProviderError: If GEOS rejects a geometry.
        """
        scope = self.repository.live_geometries(
            collection_id=collection_id,
            geom_type=candidates.geom_type,
        )
        predicate = predicate_for(candidates.geom_type, self.settings, similar)
        try:
            hits = predicate.match(candidates.features, scope)
        except shapely.errors.GEOSException as exc:
            raise exceptions.PermanentProviderError(
                "Spatial predicate failed",
                context={"error": str(exc)},
            ) from exc
        logger.debug(
            "%d of %d candidates hit a scope of %d geometries",
            len(hits),
            len(candidates),
            len(scope),
        )
        return hits


_CANDIDATES_CTE = """
WITH candidates AS (
  SELECT c.local_id, c.fid, ST_GeomFromWKB(c.wkb, 3857) AS geom
  FROM unnest(
    %(local_ids)s::integer[], %(fids)s::integer[], %(wkbs)s::bytea[]
  ) AS c (local_id, fid, wkb)
),
scope AS (
  SELECT g.id, g.fid, g.collection_id, g.source_id, g.geom, g.buffer
  FROM geometries AS g
  JOIN collections AS col ON col.id = g.collection_id
  WHERE g.live
    AND col.geom_type = %(geom_type)s
    AND (%(collection_id)s::integer IS NULL
         OR g.collection_id = %(collection_id)s)
)
"""

_POINT_PAIRS = """
pairs AS (
  SELECT c.local_id, c.fid AS candidate_fid,
         s.id AS canonical_id, s.fid AS canonical_fid,
         s.collection_id, s.source_id,
         ST_Distance(c.geom, s.geom) AS distance,
         NULL::double precision AS source_diff,
         NULL::double precision AS target_diff
  FROM candidates AS c
  JOIN scope AS s ON ST_DWithin(c.geom, s.geom, %(radius)s)
)
"""

_BUFFER_PAIRS = """
pairs AS (
  SELECT c.local_id, c.fid AS candidate_fid,
         s.id AS canonical_id, s.fid AS canonical_fid,
         s.collection_id, s.source_id,
         ST_HausdorffDistance(c.geom, s.geom) AS distance,
         COALESCE({measure}(ST_Difference(
             ST_MakeValid(c.geom), ST_MakeValid(s.geom)))
           / NULLIF({measure}(c.geom), 0) * 100, 0) AS source_diff,
         COALESCE({measure}(ST_Difference(
             ST_MakeValid(s.geom), ST_MakeValid(c.geom)))
           / NULLIF({measure}(s.geom), 0) * 100, 0) AS target_diff
  FROM candidates AS c
  JOIN scope AS s
    ON ST_Contains({canonical_buffer}, ST_MakeValid(c.geom))
   AND ST_Contains(ST_Buffer(ST_MakeValid(c.geom), %(radius)s), s.geom)
)
"""

_SELECT_BEST = """
SELECT DISTINCT ON (local_id) *
FROM pairs
ORDER BY local_id, distance, source_id, canonical_id
"""


def build_match_sql(
    geom_type: db_models.GeometryType,
    precomputed_buffer: bool = True,
) -> str:
    """Render the PostGIS query for one predicate variant.

    Args:
        geom_type: Geometry type of the candidates.
        precomputed_buffer: Reuse the stored canonical buffer instead of
            buffering on the fly. Only valid when the query radius equals
            the radius the buffers were computed with.

    Returns:
        SQL expecting ``local_ids``, ``fids``, ``wkbs``, ``geom_type``,
        ``collection_id`` and ``radius`` parameters.
    """
    if geom_type is db_models.GeometryType.POINT:
        pairs = _POINT_PAIRS
    else:
        measure = (
            "ST_Length"
            if geom_type is db_models.GeometryType.LINESTRING
            else "ST_Area"
        )
        canonical_buffer = (
            "s.buffer"
            if precomputed_buffer
            else "ST_Buffer(s.geom, %(radius)s)"
        )
        pairs = _BUFFER_PAIRS.format(
            measure=measure,
            canonical_buffer=canonical_buffer,
        )
    return f"{_CANDIDATES_CTE}, {pairs}{_SELECT_BEST}"


class PostgisPredicateProvider(PredicateProviderProtocol):
    """Runs predicates inside PostGIS against the ``geometries`` table."""

    def __init__(self, settings: config.Settings) -> None:
        self.settings = settings

    def match(
        self,
        candidates: db_models.CandidateSet,
        collection_id: int | None = None,
        similar: bool = False,
    ) -> list[PredicateHit]:
        """Match candidates in the database.

        Raises:
            TransientProviderError: On connection level failures.
            PermanentProviderError: On any other database error.
        """
        geom_type = candidates.geom_type
        if geom_type is db_models.GeometryType.POINT:
            radius = self.settings.point_match_radius
        elif similar:
            radius = self.settings.similar_buffer_radius
        else:
            radius = self.settings.buffer_radius
        sql = build_match_sql(geom_type, precomputed_buffer=not similar)
        params = {
            "local_ids": [feature.local_id for feature in candidates.features],
            "fids": [feature.fid for feature in candidates.features],
            "wkbs": [
                psycopg2.Binary(feature.geom.wkb)
                for feature in candidates.features
            ],
            "geom_type": str(geom_type),
            "collection_id": collection_id,
            "radius": radius,
        }
        try:
            conn = database.get_connection(self.settings)
            with conn, conn.cursor() as cur:
                cur.execute(sql, params)
                rows = cur.fetchall()
        except psycopg2.OperationalError as exc:
            raise exceptions.TransientProviderError(
                "Spatial engine unavailable",
                context={"error": str(exc).strip()},
            ) from exc
        except psycopg2.Error as exc:
            raise exceptions.PermanentProviderError(
                "Spatial query failed",
                context={"error": str(exc).strip()},
            ) from exc
        return [self._from_row(cast(dict[str, object], row)) for row in rows]

    @staticmethod
    def _from_row(row: dict[str, object]) -> PredicateHit:
        source_diff = row.get("source_diff")
        target_diff = row.get("target_diff")
        return PredicateHit(
            candidate_local_id=int(cast(int, row["local_id"])),
            candidate_fid=int(cast(int, row["candidate_fid"])),
            canonical_id=int(cast(int, row["canonical_id"])),
            canonical_fid=int(cast(int, row["canonical_fid"])),
            collection_id=int(cast(int, row["collection_id"])),
            source_id=int(cast(int, row["source_id"])),
            distance=float(cast(float, row["distance"])),
            source_diff=(
                float(cast(float, source_diff))
                if source_diff is not None
                else None
            ),
            target_diff=(
                float(cast(float, target_diff))
                if target_diff is not None
                else None
            ),
        )


def envelope_and_centroid(
    geoms: Iterable[BaseGeometry],
) -> tuple[db_models.BBox, tuple[float, float]] | None:
    """Compute the bounding box of geometries and the centroid of that box.

    Returns:
        ``((minx, miny, maxx, maxy), (x, y))`` or None for no geometries.
    """
    geoms = [geom for geom in geoms if not geom.is_empty]
    if not geoms:
        return None
    minx, miny, maxx, maxy = shapely.total_bounds(geoms)
    bbox = (float(minx), float(miny), float(maxx), float(maxy))
    return bbox, ((bbox[0] + bbox[2]) / 2, (bbox[1] + bbox[3]) / 2)


def get_predicate_provider(
    settings: config.Settings,
    repository: database.CorpusRepositoryProtocol,
) -> PredicateProviderProtocol:
    """Pick the provider matching the repository backend."""
    if isinstance(repository, database.PostgresCorpusRepository):
        return PostgisPredicateProvider(settings)
    return ShapelyPredicateProvider(repository, settings)
