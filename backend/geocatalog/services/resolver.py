"""Correspondence resolver.

Turns a confirmed match into a complete candidate to canonical mapping and
the canonical geometries the ingestion has to write. Nothing is persisted
here; the pipeline commits the resulting plan in one unit.

Merge strategies:

========  =========================  =========================================
Strategy  Precondition               Effect
========  =========================  =========================================
NEW       no target collection       new collection, every part gets a new fid
ADD       confirmed target           unmatched parts get new fids, matched
                                     canonical geometries stay untouched
UPDATE    confirmed target           unmatched parts get new fids, matched
                                     parts farther than the tolerance become a
                                     new version of their canonical geometry
SKIP      confirmed target           matched parts are dropped, unmatched
                                     parts get new fids
REPLACE   confirmed target           every matched part becomes a new version,
                                     unmatched parts get new fids
========  =========================  =========================================
"""

from __future__ import annotations

import dataclasses
import enum
import logging
from typing import TYPE_CHECKING

from geocatalog.core import exceptions
from geocatalog.db import models as db_models

if TYPE_CHECKING:
    import datetime
    from collections.abc import Iterable, Sequence

    from geocatalog.services import predicates

logger = logging.getLogger(__name__)


class MergeStrategy(enum.StrEnum):
    NEW = "new"
    ADD = "add"
    UPDATE = "update"
    SKIP = "skip"
    REPLACE = "replace"

    @property
    def needs_target(self) -> bool:
        return self is not MergeStrategy.NEW

    @property
    def revises(self) -> bool:
        return self in (MergeStrategy.UPDATE, MergeStrategy.REPLACE)


@dataclasses.dataclass
class Resolution:
    """Complete correspondence plus the geometries to write.

    Attributes:
        collection: Working copy of the target collection with the fid
            allocator advanced and the bounding box extended.
        entries: One entry per candidate part.
        new_geometries: Newly minted and revised canonical geometries.
    """

    collection: db_models.Collection
    entries: list[db_models.CorrespondenceEntry]
    new_geometries: list[db_models.CanonicalGeometry]

    def count(self, status: db_models.CorrespondenceStatus) -> int:
        return sum(1 for entry in self.entries if entry.status is status)

    def summary(self) -> dict[str, int]:
        return {
            str(status): self.count(status)
            for status in db_models.CorrespondenceStatus
        }

    @property
    def canonical_fids(self) -> set[int]:
        return {entry.canonical_fid for entry in self.entries}


def _winning_hits(
    hits: Iterable[predicates.PredicateHit],
    collection_id: int,
) -> dict[int, predicates.PredicateHit]:
    """Keep one hit per canonical geometry, keyed by candidate part.

    When several parts claim the same canonical geometry the closest one
    wins (lowest local id on ties); the losers are treated as unmatched.
    """
    claims: dict[int, predicates.PredicateHit] = {}
    for hit in hits:
        if hit.collection_id != collection_id:
            continue
        current = claims.get(hit.canonical_id)
        if current is None or (hit.distance, hit.candidate_local_id) < (
            current.distance,
            current.candidate_local_id,
        ):
            claims[hit.canonical_id] = hit
    return {hit.candidate_local_id: hit for hit in claims.values()}


def _extend_bbox(
    bbox: db_models.BBox | None,
    geometries: Iterable[db_models.CanonicalGeometry],
) -> db_models.BBox | None:
    for geometry in geometries:
        minx, miny, maxx, maxy = geometry.geom.bounds
        if bbox is None:
            bbox = (minx, miny, maxx, maxy)
        else:
            bbox = (
                min(bbox[0], minx),
                min(bbox[1], miny),
                max(bbox[2], maxx),
                max(bbox[3], maxy),
            )
    return bbox


def check_coverage(
    entries: Sequence[db_models.CorrespondenceEntry],
    candidates: db_models.CandidateSet,
) -> None:
    """Ensure every candidate part appears exactly once.

    Raises:
        InvariantViolation: On a missing, duplicated or unknown part.
    """
    covered = [entry.candidate_local_id for entry in entries]
    expected = candidates.local_ids
    if len(covered) != len(set(covered)) or set(covered) != expected:
        raise exceptions.InvariantViolation(
            "Correspondence does not cover every candidate exactly once",
            context={
                "missing": sorted(expected - set(covered)),
                "entries": len(covered),
                "candidates": len(expected),
            },
        )


def resolve(
    strategy: MergeStrategy,
    candidates: db_models.CandidateSet,
    hits: Sequence[predicates.PredicateHit],
    timestamp: datetime.datetime,
    collection: db_models.Collection | None = None,
    name: str | None = None,
    latest_source: db_models.Source | None = None,
    live_fids: Iterable[int] = (),
    distance_tolerance: float = 0.0,
) -> Resolution:
    """Build the correspondence for one ingestion.

    Args:
        strategy: How matched and unmatched parts are merged.
        candidates: Normalized candidate set.
        hits: Closed-match correspondence list for the target collection.
        timestamp: Creation time of the new source.
        collection: Confirmed target collection, None for NEW.
        name: Name of the collection created by NEW.
        latest_source: Newest source of the target collection.
        live_fids: Live fids of the target collection.
        distance_tolerance: UPDATE revises matched parts farther apart
            than this distance.

    Returns:
        Resolution holding the working collection, the entries and the
        canonical geometries to write.

    Raises:
        InvariantViolation: On a missing or unexpected target, a geometry
            type mismatch, an out-of-order revision, a fid collision or an
            incomplete correspondence.
    """
    if strategy.needs_target and collection is None:
        raise exceptions.InvariantViolation(
            "Merge strategy requires a confirmed target collection",
            context={"strategy": str(strategy)},
        )
    if not strategy.needs_target and collection is not None:
        raise exceptions.InvariantViolation(
            "NEW does not accept a target collection",
            context={"collection_id": collection.id},
        )

    if collection is None:
        working = db_models.Collection(
            id=None,
            name=name or "collection",
            geom_type=candidates.geom_type,
            created_at=timestamp,
        )
        winners: dict[int, predicates.PredicateHit] = {}
    else:
        if collection.geom_type != candidates.geom_type:
            raise exceptions.InvariantViolation(
                "Candidate geometry type differs from the target collection",
                context={
                    "collection_id": collection.id,
                    "collection_type": str(collection.geom_type),
                    "candidate_type": str(candidates.geom_type),
                },
            )
        working = dataclasses.replace(collection)
        winners = _winning_hits(hits, collection_id=collection.id or 0)

    live = set(live_fids)
    entries: list[db_models.CorrespondenceEntry] = []
    new_geometries: list[db_models.CanonicalGeometry] = []
    for feature in sorted(candidates.features, key=lambda f: f.local_id):
        hit = winners.get(feature.local_id)
        if hit is None:
            fid = working.next_fid()
            if fid in live:
                raise exceptions.InvariantViolation(
                    "Allocated fid collides with a live fid",
                    context={"collection_id": working.id, "fid": fid},
                )
            new_geometries.append(
                db_models.CanonicalGeometry(
                    id=None,
                    collection_id=working.id,
                    source_id=None,
                    fid=fid,
                    geom=feature.geom,
                )
            )
            status = db_models.CorrespondenceStatus.NEW
        elif strategy is MergeStrategy.SKIP:
            fid = hit.canonical_fid
            status = db_models.CorrespondenceStatus.SKIPPED
        elif strategy is MergeStrategy.ADD or (
            strategy is MergeStrategy.UPDATE
            and hit.distance <= distance_tolerance
        ):
            fid = hit.canonical_fid
            status = db_models.CorrespondenceStatus.MATCHED
        else:
            fid = hit.canonical_fid
            new_geometries.append(
                db_models.CanonicalGeometry(
                    id=None,
                    collection_id=working.id,
                    source_id=None,
                    fid=fid,
                    geom=feature.geom,
                    previous_id=hit.canonical_id,
                )
            )
            status = db_models.CorrespondenceStatus.REVISED
        entries.append(
            db_models.CorrespondenceEntry(
                candidate_local_id=feature.local_id,
                candidate_fid=feature.fid,
                canonical_fid=fid,
                status=status,
                distance=hit.distance if hit else None,
                canonical_id=hit.canonical_id if hit else None,
            )
        )

    revisions = [g for g in new_geometries if g.previous_id is not None]
    if (
        revisions
        and latest_source is not None
        and timestamp < latest_source.created_at
    ):
        raise exceptions.InvariantViolation(
            "Revision is older than the newest source of the collection",
            context={
                "collection_id": working.id,
                "latest_source_id": latest_source.id,
                "fids": sorted(g.fid for g in revisions),
            },
        )

    check_coverage(entries, candidates)
    working.bbox = _extend_bbox(working.bbox, new_geometries)
    resolution = Resolution(
        collection=working,
        entries=entries,
        new_geometries=new_geometries,
    )
    logger.debug(
        "Resolved %s into collection %s: %s",
        strategy,
        working.id,
        resolution.summary(),
    )
    return resolution
