"""Tests for the correspondence resolver and its merge strategies.

Hits are built by hand so every test controls distances and canonical
ids exactly. The tests check the strategy table, the coverage invariant,
duplicate claims and every precondition that aborts an ingestion.

See Also:
    - backend/geocatalog/services/resolver.py
"""

from __future__ import annotations

import datetime

import pytest
from shapely import geometry

from geocatalog.core import exceptions
from geocatalog.db import models as db_models
from geocatalog.services import predicates, resolver

T0 = datetime.datetime(2024, 1, 1, tzinfo=datetime.UTC)
T1 = datetime.datetime(2024, 2, 1, tzinfo=datetime.UTC)

Status = db_models.CorrespondenceStatus
Strategy = resolver.MergeStrategy


def _candidates(*xs: float) -> db_models.CandidateSet:
    return db_models.CandidateSet(
        geom_type=db_models.GeometryType.POINT,
        features=[
            db_models.CandidateGeometry(
                local_id=i,
                fid=i,
                geom=geometry.Point(x, 0),
            )
            for i, x in enumerate(xs, start=1)
        ],
    )


def _hit(
    local_id: int,
    canonical_id: int,
    canonical_fid: int,
    distance: float,
    collection_id: int = 1,
) -> predicates.PredicateHit:
    return predicates.PredicateHit(
        candidate_local_id=local_id,
        candidate_fid=local_id,
        canonical_id=canonical_id,
        canonical_fid=canonical_fid,
        collection_id=collection_id,
        source_id=1,
        distance=distance,
    )


def _collection(max_fid: int = 2) -> db_models.Collection:
    return db_models.Collection(
        id=1,
        name="trees",
        geom_type=db_models.GeometryType.POINT,
        bbox=(0.0, 0.0, 1.0, 0.0),
        max_fid=max_fid,
    )


HITS = [_hit(1, 10, 1, 0.0), _hit(2, 11, 2, 0.5)]


def _statuses(resolution: resolver.Resolution) -> list[Status]:
    return [entry.status for entry in resolution.entries]


def test_new_collection_mints_every_fid() -> None:
    """NEW assigns fids 1..n and computes the bounding box."""
    resolution = resolver.resolve(
        Strategy.NEW,
        _candidates(0, 10, 20),
        [],
        T0,
        name="trees",
    )

    assert resolution.collection.id is None
    assert resolution.collection.name == "trees"
    assert resolution.collection.max_fid == 3
    assert resolution.collection.bbox == (0.0, 0.0, 20.0, 0.0)
    assert [e.canonical_fid for e in resolution.entries] == [1, 2, 3]
    assert _statuses(resolution) == [Status.NEW] * 3
    assert len(resolution.new_geometries) == 3


def test_update_revises_only_beyond_tolerance() -> None:
    """Exact matches stay, moved features become a new revision."""
    resolution = resolver.resolve(
        Strategy.UPDATE,
        _candidates(0, 1.5, 50),
        HITS,
        T1,
        collection=_collection(),
        live_fids={1, 2},
    )

    assert _statuses(resolution) == [
        Status.MATCHED,
        Status.REVISED,
        Status.NEW,
    ]
    assert [e.canonical_fid for e in resolution.entries] == [1, 2, 3]
    revised, minted = resolution.new_geometries
    assert (revised.fid, revised.previous_id) == (2, 11)
    assert (minted.fid, minted.previous_id) == (3, None)
    assert resolution.collection.max_fid == 3
    assert resolution.collection.bbox == (0.0, 0.0, 50.0, 0.0)
    assert resolution.summary() == {
        "matched": 1,
        "revised": 1,
        "new": 1,
        "skipped": 0,
    }


def test_update_tolerance_keeps_close_matches() -> None:
    """A tolerance above the distance keeps the canonical geometry."""
    resolution = resolver.resolve(
        Strategy.UPDATE,
        _candidates(0, 1.5),
        HITS,
        T1,
        collection=_collection(),
        distance_tolerance=1.0,
    )
    assert _statuses(resolution) == [Status.MATCHED, Status.MATCHED]
    assert resolution.new_geometries == []


def test_add_keeps_matched_geometries() -> None:
    """ADD only writes unmatched parts."""
    resolution = resolver.resolve(
        Strategy.ADD,
        _candidates(0, 1.5, 50),
        HITS,
        T1,
        collection=_collection(),
    )
    assert _statuses(resolution) == [
        Status.MATCHED,
        Status.MATCHED,
        Status.NEW,
    ]
    assert [g.fid for g in resolution.new_geometries] == [3]


def test_skip_drops_matched_parts() -> None:
    """SKIP keeps the fid mapping but marks matched parts skipped."""
    resolution = resolver.resolve(
        Strategy.SKIP,
        _candidates(0, 1.5, 50),
        HITS,
        T1,
        collection=_collection(),
    )
    assert _statuses(resolution) == [
        Status.SKIPPED,
        Status.SKIPPED,
        Status.NEW,
    ]
    assert [g.fid for g in resolution.new_geometries] == [3]


def test_replace_revises_every_match() -> None:
    """REPLACE writes a revision even for exact matches."""
    resolution = resolver.resolve(
        Strategy.REPLACE,
        _candidates(0, 1.5),
        HITS,
        T1,
        collection=_collection(),
        distance_tolerance=10.0,
    )
    assert _statuses(resolution) == [Status.REVISED, Status.REVISED]
    assert [g.previous_id for g in resolution.new_geometries] == [10, 11]


def test_duplicate_claims_go_to_the_closest_part() -> None:
    """Two parts hitting one canonical geometry: the farther one is new."""
    hits = [_hit(1, 10, 1, 0.8), _hit(2, 10, 1, 0.2)]
    resolution = resolver.resolve(
        Strategy.UPDATE,
        _candidates(0.8, 0.2),
        hits,
        T1,
        collection=_collection(),
        live_fids={1, 2},
    )

    first, second = resolution.entries
    assert (first.status, first.canonical_fid) == (Status.NEW, 3)
    assert (second.status, second.canonical_fid) == (Status.REVISED, 1)
    assert len(resolution.canonical_fids) == 2


def test_hits_outside_target_collection_are_ignored() -> None:
    """Open-match hits on other collections do not pair."""
    resolution = resolver.resolve(
        Strategy.ADD,
        _candidates(0),
        [_hit(1, 99, 5, 0.0, collection_id=7)],
        T1,
        collection=_collection(),
    )
    assert _statuses(resolution) == [Status.NEW]


def test_missing_target_is_invariant_violation() -> None:
    """Strategies other than NEW need a confirmed target."""
    with pytest.raises(exceptions.InvariantViolation):
        resolver.resolve(Strategy.UPDATE, _candidates(0), HITS, T1)


def test_new_with_target_is_invariant_violation() -> None:
    """NEW never merges into an existing collection."""
    with pytest.raises(exceptions.InvariantViolation):
        resolver.resolve(
            Strategy.NEW, _candidates(0), [], T1, collection=_collection()
        )


def test_geometry_type_mismatch_is_invariant_violation() -> None:
    """Candidates must share the target's geometry type."""
    collection = _collection()
    collection.geom_type = db_models.GeometryType.POLYGON
    with pytest.raises(exceptions.InvariantViolation):
        resolver.resolve(
            Strategy.ADD, _candidates(0), [], T1, collection=collection
        )


def test_out_of_order_revision_is_invariant_violation() -> None:
    """Revisions older than the newest source would rewrite history."""
    latest = db_models.Source(id=3, collection_id=1, created_at=T1)
    with pytest.raises(exceptions.InvariantViolation):
        resolver.resolve(
            Strategy.UPDATE,
            _candidates(0),
            [_hit(1, 10, 1, 0.5)],
            T0,
            collection=_collection(),
            latest_source=latest,
        )
    resolution = resolver.resolve(
        Strategy.ADD,
        _candidates(0),
        HITS,
        T0,
        collection=_collection(),
        latest_source=latest,
    )
    assert _statuses(resolution) == [Status.MATCHED]


def test_late_update_without_revisions_is_accepted() -> None:
    """An older file with unchanged geometry only links to the fids."""
    latest = db_models.Source(id=3, collection_id=1, created_at=T1)
    resolution = resolver.resolve(
        Strategy.UPDATE,
        _candidates(0, 1),
        [_hit(1, 10, 1, 0.0), _hit(2, 11, 2, 0.0)],
        T0,
        collection=_collection(),
        latest_source=latest,
    )
    assert _statuses(resolution) == [Status.MATCHED, Status.MATCHED]
    assert resolution.new_geometries == []
    late_with_new_part = resolver.resolve(
        Strategy.UPDATE,
        _candidates(0, 1, 50),
        [_hit(1, 10, 1, 0.0), _hit(2, 11, 2, 0.0)],
        T0,
        collection=_collection(),
        latest_source=latest,
    )
    assert _statuses(late_with_new_part)[-1] is Status.NEW


def test_fid_collision_is_invariant_violation() -> None:
    """A stale allocator must not hand out a live fid."""
    with pytest.raises(exceptions.InvariantViolation):
        resolver.resolve(
            Strategy.ADD,
            _candidates(500),
            [],
            T1,
            collection=_collection(max_fid=2),
            live_fids={1, 2, 3},
        )


def test_resolution_does_not_touch_input_collection() -> None:
    """The resolver works on a copy of the target collection."""
    collection = _collection()
    resolver.resolve(
        Strategy.ADD, _candidates(50), [], T1, collection=collection
    )
    assert collection.max_fid == 2


def test_check_coverage_detects_gaps() -> None:
    """Every candidate part must appear exactly once."""
    candidates = _candidates(0, 1)
    entry = db_models.CorrespondenceEntry(
        candidate_local_id=1,
        candidate_fid=1,
        canonical_fid=1,
        status=Status.NEW,
    )
    with pytest.raises(exceptions.InvariantViolation):
        resolver.check_coverage([entry], candidates)
    with pytest.raises(exceptions.InvariantViolation):
        resolver.check_coverage([entry, entry], candidates)


def test_merge_strategy_flags() -> None:
    """Only NEW works without a target, UPDATE and REPLACE revise."""
    assert not Strategy.NEW.needs_target
    assert all(s.needs_target for s in Strategy if s is not Strategy.NEW)
    assert {s for s in Strategy if s.revises} == {
        Strategy.UPDATE,
        Strategy.REPLACE,
    }
