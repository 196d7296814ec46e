"""Tests for the single-flight classification pipeline.

The pipeline runs against the in-memory repository and the Shapely
provider. Format conversion is replaced with a fake loader that returns
prepared candidate sets (or raises) per file name, so every test drives
the real matcher, resolver and change detector end to end.

Covers:
    - Pending matches, manual merges and automatic imports.
    - Revision chains across repeated ingestions.
    - Attribute change detection across sources.
    - Queue admission, rejections and retries of transient failures.
    - Rechecking pending matches after the corpus changed.

See Also:
    - backend/geocatalog/services/pipeline.py
"""

from __future__ import annotations

import datetime
import pathlib
from typing import TYPE_CHECKING, Any

import pytest
from shapely import geometry

from geocatalog.core import config, exceptions
from geocatalog.db import database
from geocatalog.db import models as db_models
from geocatalog.services import pipeline as pipeline_service
from geocatalog.services import normalizer, predicates, resolver

if TYPE_CHECKING:
    from conftest import FakeLoader

T0 = datetime.datetime(2024, 1, 1, tzinfo=datetime.UTC)
Outcome = pipeline_service.OutcomeStatus


def _at(days: int) -> datetime.datetime:
    return T0 + datetime.timedelta(days=days)


def _points(
    xs: list[float],
    heights: list[float] | None = None,
    geom_type: db_models.GeometryType = db_models.GeometryType.POINT,
) -> db_models.CandidateSet:
    if geom_type is db_models.GeometryType.POINT:
        geoms = [geometry.Point(x, 0) for x in xs]
    else:
        geoms = [geometry.box(x, 0, x + 10, 10) for x in xs]
    heights = heights or [2.0] * len(xs)
    return db_models.CandidateSet(
        geom_type=geom_type,
        features=[
            db_models.CandidateGeometry(local_id=i, fid=i, geom=geom)
            for i, geom in enumerate(geoms, start=1)
        ],
        attributes={
            i: {"height": height} for i, height in enumerate(heights, start=1)
        },
        schema={"height": db_models.ColumnType.FLOAT},
    )


def _upload(
    settings: config.Settings,
    loader: FakeLoader,
    name: str,
    dataset: Any,
) -> pathlib.Path:
    settings.storage_dir.mkdir(parents=True, exist_ok=True)
    path = settings.storage_dir / name
    path.write_text("{}")
    loader.datasets[name] = dataset
    return path


def _bootstrap(
    pipeline: pipeline_service.ClassificationPipeline,
    loader: FakeLoader,
    xs: list[float] | None = None,
) -> int:
    """Create a collection through a pending match and a NEW merge."""
    path = _upload(
        pipeline.settings,
        loader,
        "trees.geojson",
        _points(xs or [0, 100, 200]),
    )
    pending = pipeline.classify(path, import_id="first", observed_at=T0)
    assert pending.match_id is not None
    merged = pipeline.merge(
        pending.match_id,
        resolver.MergeStrategy.NEW,
        name="trees",
    )
    assert merged.collection_id is not None
    return merged.collection_id


def test_unknown_dataset_waits_as_pending_match(
    pipeline: pipeline_service.ClassificationPipeline,
    loader: FakeLoader,
) -> None:
    """An empty corpus cannot confirm anything."""
    path = _upload(
        pipeline.settings, loader, "trees.geojson", _points([0, 100, 200])
    )

    outcome = pipeline.classify(path, import_id="imp-1", observed_at=T0)

    assert outcome.status is Outcome.PENDING
    assert outcome.message == "no-match"
    assert outcome.fidelity == "none"
    record = pipeline.repository.get_match(outcome.match_id or 0)
    assert record is not None
    assert record.file == str(path)
    assert record.bbox == (0.0, 0.0, 200.0, 0.0)
    assert record.centroid == (100.0, 0.0)
    assert record.geom_type == "POINT"
    assert record.created_at == T0
    assert path.exists()
    assert pipeline.repository.pending_count() == 1


def test_merge_new_creates_collection(
    pipeline: pipeline_service.ClassificationPipeline,
    loader: FakeLoader,
) -> None:
    """NEW turns a pending match into a collection with fids 1..n."""
    path = _upload(
        pipeline.settings, loader, "trees.geojson", _points([0, 100, 200])
    )
    pending = pipeline.classify(path, import_id="imp-1", observed_at=T0)

    outcome = pipeline.merge(
        pending.match_id or 0,
        resolver.MergeStrategy.NEW,
        name="street_trees",
    )

    repo = pipeline.repository
    assert outcome.status is Outcome.IMPORTED
    assert outcome.has_new_data
    assert outcome.correspondence["new"] == 3
    collection = repo.get_collection(outcome.collection_id or 0)
    assert collection is not None
    assert collection.name == "street_trees"
    assert collection.max_fid == 3
    (source,) = repo.sources(collection.id or 0)
    assert source.manual
    assert source.created_at == T0
    assert source.import_id == "imp-1"
    assert source.process is not None
    assert source.process["strategy"] == "new"
    assert repo.get_match(pending.match_id or 0) is None
    assert not path.exists()
    assert len(repo.snapshots(collection.id or 0)) == 3


def test_full_match_is_imported_with_update(
    pipeline: pipeline_service.ClassificationPipeline,
    loader: FakeLoader,
) -> None:
    """A confirmed match revises moved features and keeps the others."""
    collection_id = _bootstrap(pipeline, loader)
    path = _upload(
        pipeline.settings,
        loader,
        "trees-2.geojson",
        _points([0, 100, 200.5]),
    )

    outcome = pipeline.classify(path, import_id="second", observed_at=_at(1))

    repo = pipeline.repository
    assert outcome.status is Outcome.IMPORTED
    assert outcome.fidelity == "full"
    assert outcome.collection_id == collection_id
    assert outcome.correspondence == {
        "matched": 2,
        "revised": 1,
        "new": 0,
        "skipped": 0,
    }
    assert not outcome.has_new_data
    assert repo.live_count(collection_id) == 3
    first, second = repo.sources(collection_id)
    assert second.previous_id == first.id
    assert not second.manual
    assert not path.exists()


def test_subset_match_adds_new_features(
    pipeline: pipeline_service.ClassificationPipeline,
    loader: FakeLoader,
) -> None:
    """A superset file extends the collection with fresh fids."""
    collection_id = _bootstrap(pipeline, loader)
    path = _upload(
        pipeline.settings,
        loader,
        "trees-2.geojson",
        _points([0, 100, 200, 300]),
    )

    outcome = pipeline.classify(path, observed_at=_at(1))

    assert outcome.fidelity == "subset"
    assert outcome.correspondence["matched"] == 3
    assert outcome.correspondence["new"] == 1
    collection = pipeline.repository.get_collection(collection_id)
    assert collection is not None
    assert collection.max_fid == 4
    assert collection.bbox == (0.0, 0.0, 300.0, 0.0)


def test_attribute_changes_are_appended(
    pipeline: pipeline_service.ClassificationPipeline,
    loader: FakeLoader,
) -> None:
    """Only materially changed values reach the attribute log."""
    collection_id = _bootstrap(pipeline, loader)
    path = _upload(
        pipeline.settings,
        loader,
        "trees-2.geojson",
        _points([0, 100, 200], heights=[2.0001, 2.0, 7.5]),
    )

    outcome = pipeline.classify(path, observed_at=_at(1))

    assert outcome.has_new_data
    snapshots = pipeline.repository.snapshots(collection_id, fids=[3])
    assert [s.value for s in snapshots] == [2.0, 7.5]
    assert len(pipeline.repository.snapshots(collection_id)) == 4


def test_revision_chain_keeps_one_live_geometry_per_fid(
    pipeline: pipeline_service.ClassificationPipeline,
    loader: FakeLoader,
) -> None:
    """Repeated moves build a linked history ending at the original."""
    collection_id = _bootstrap(pipeline, loader)
    for step in range(1, 5):
        path = _upload(
            pipeline.settings,
            loader,
            f"trees-{step}.geojson",
            _points([0, 100, 200 + step * 0.5]),
        )
        outcome = pipeline.classify(path, observed_at=_at(step))
        assert outcome.correspondence["revised"] == 1

    repo = pipeline.repository
    live = repo.live_geometries(collection_id=collection_id)
    assert sorted(g.fid for g in live) == [1, 2, 3]
    current = next(g for g in live if g.fid == 3)
    assert current.geom.x == 202.0
    history = [current]
    while history[-1].previous_id is not None:
        previous = repo.get_geometry(history[-1].previous_id)
        assert previous is not None
        history.append(previous)
    assert len(history) == 5
    assert {g.fid for g in history} == {3}
    assert history[-1].geom.x == 200.0


def test_out_of_order_import_is_aborted(
    pipeline: pipeline_service.ClassificationPipeline,
    loader: FakeLoader,
) -> None:
    """Revising with an older file fails and commits nothing."""
    collection_id = _bootstrap(pipeline, loader)
    path = _upload(
        pipeline.settings,
        loader,
        "old.geojson",
        _points([0, 100, 200]),
    )
    late = _upload(
        pipeline.settings,
        loader,
        "late.geojson",
        _points([0, 100, 200.5]),
    )
    pipeline.classify(late, observed_at=_at(5))

    with pytest.raises(exceptions.InvariantViolation):
        pipeline.classify(path, observed_at=_at(2))

    assert len(pipeline.repository.sources(collection_id)) == 2


def test_late_file_with_unchanged_geometry_is_imported(
    pipeline: pipeline_service.ClassificationPipeline,
    loader: FakeLoader,
) -> None:
    """An older file is compared against the snapshots on both sides."""
    collection_id = _bootstrap(pipeline, loader)
    recent = _upload(
        pipeline.settings,
        loader,
        "recent.geojson",
        _points([0, 100, 200], heights=[2.0, 7.5, 9.0]),
    )
    late = _upload(
        pipeline.settings,
        loader,
        "late.geojson",
        _points([0, 100, 200], heights=[2.0, 7.5, 3.0]),
    )
    pipeline.classify(recent, observed_at=_at(5))

    outcome = pipeline.classify(late, observed_at=_at(2))

    repo = pipeline.repository
    assert outcome.status is Outcome.IMPORTED
    assert outcome.correspondence["matched"] == 3
    assert outcome.has_new_data
    history = sorted(
        repo.snapshots(collection_id), key=lambda s: (s.fid, s.timestamp)
    )
    assert [(s.fid, s.value) for s in history if s.timestamp == _at(2)] == [
        (3, 3.0)
    ]
    assert [s.value for s in history if s.fid == 3] == [2.0, 3.0, 9.0]
    first, middle, last = repo.sources(collection_id)
    assert middle.id == outcome.source_id
    assert middle.previous_id == first.id
    assert last.previous_id == first.id
    assert repo.live_count(collection_id) == 3


def test_naive_observation_time_is_read_as_utc(
    pipeline: pipeline_service.ClassificationPipeline,
    loader: FakeLoader,
) -> None:
    """Timestamps without an offset still compare with stored ones."""
    collection_id = _bootstrap(pipeline, loader)
    path = _upload(
        pipeline.settings,
        loader,
        "trees-2.geojson",
        _points([0, 100, 200], heights=[2.0, 2.0, 4.0]),
    )

    outcome = pipeline.classify(
        path, observed_at=datetime.datetime(2024, 6, 1)
    )

    assert outcome.status is Outcome.IMPORTED
    source = pipeline.repository.latest_source(collection_id)
    assert source is not None
    assert source.created_at == datetime.datetime(
        2024, 6, 1, tzinfo=datetime.UTC
    )
    assert source.created_at.tzinfo is not None


def test_same_timestamp_import_always_gets_snapshots(
    pipeline: pipeline_service.ClassificationPipeline,
    loader: FakeLoader,
) -> None:
    """Another file observed at the same instant keeps its own values."""
    collection_id = _bootstrap(pipeline, loader)
    path = _upload(
        pipeline.settings, loader, "copy.geojson", _points([0, 100, 200])
    )

    outcome = pipeline.classify(path, observed_at=T0)

    assert outcome.status is Outcome.IMPORTED
    assert outcome.has_new_data
    snapshots = pipeline.repository.snapshots(collection_id)
    assert len(snapshots) == 6
    assert {s.timestamp for s in snapshots} == {T0}


def test_self_intersecting_polygons_match_themselves(
    pipeline: pipeline_service.ClassificationPipeline,
    loader: FakeLoader,
) -> None:
    """A repaired bowtie re-ingested unchanged is a full match."""
    bowtie = {
        "type": "Polygon",
        "coordinates": [[[0, 0], [10, 10], [10, 0], [0, 10], [0, 0]]],
    }
    square = geometry.mapping(geometry.box(100, 0, 110, 10))

    def parks() -> db_models.CandidateSet:
        return normalizer.normalize(
            {
                "type": "FeatureCollection",
                "features": [
                    {"type": "Feature", "geometry": g, "properties": {}}
                    for g in (bowtie, square)
                ],
            }
        )

    first = _upload(pipeline.settings, loader, "parks.geojson", parks())
    pending = pipeline.classify(first, observed_at=T0)
    merged = pipeline.merge(
        pending.match_id or 0, resolver.MergeStrategy.NEW, name="parks"
    )
    again = _upload(pipeline.settings, loader, "parks-2.geojson", parks())

    outcome = pipeline.classify(again, observed_at=_at(1))

    assert outcome.status is Outcome.IMPORTED
    assert outcome.fidelity == "full"
    assert outcome.collection_id == merged.collection_id
    assert outcome.correspondence["matched"] == 3
    assert outcome.correspondence["revised"] == 0


def test_license_is_recorded_on_sources(
    pipeline: pipeline_service.ClassificationPipeline,
    loader: FakeLoader,
) -> None:
    """Licenses given at classification survive a manual merge."""
    path = _upload(
        pipeline.settings, loader, "trees.geojson", _points([0, 100])
    )
    pending = pipeline.classify(path, observed_at=T0, license="CC-BY-4.0")
    record = pipeline.repository.get_match(pending.match_id or 0)
    assert record is not None
    assert record.process is not None
    assert record.process["license"] == "CC-BY-4.0"

    merged = pipeline.merge(pending.match_id or 0, resolver.MergeStrategy.NEW)
    update = _upload(
        pipeline.settings, loader, "trees-2.geojson", _points([0, 100])
    )
    pipeline.classify(update, observed_at=_at(1), license="ODbL-1.0")

    first, second = pipeline.repository.sources(merged.collection_id or 0)
    assert first.license == "CC-BY-4.0"
    assert second.license == "ODbL-1.0"


def test_merge_license_overrides_classification(
    pipeline: pipeline_service.ClassificationPipeline,
    loader: FakeLoader,
) -> None:
    path = _upload(pipeline.settings, loader, "trees.geojson", _points([0]))
    pending = pipeline.classify(path, observed_at=T0, license="CC0-1.0")

    merged = pipeline.merge(
        pending.match_id or 0,
        resolver.MergeStrategy.NEW,
        license="CC-BY-4.0",
    )

    (source,) = pipeline.repository.sources(merged.collection_id or 0)
    assert source.license == "CC-BY-4.0"


def test_candidates_of_pending_match(
    pipeline: pipeline_service.ClassificationPipeline,
    loader: FakeLoader,
) -> None:
    """Pending files can be loaded again for review."""
    path = _upload(
        pipeline.settings, loader, "trees.geojson", _points([0, 100])
    )
    pending = pipeline.classify(path, observed_at=T0)

    candidates = pipeline.candidates(pending.match_id or 0)

    assert len(candidates) == 2
    assert path.exists()
    with pytest.raises(exceptions.NotFoundError):
        pipeline.candidates(99)


def test_queue_full_refuses_before_loading(
    pipeline: pipeline_service.ClassificationPipeline,
    loader: FakeLoader,
) -> None:
    """At the admission ceiling no new file is processed."""
    pipeline.settings.queue_limit = 1
    first = _upload(pipeline.settings, loader, "a.geojson", _points([0]))
    second = _upload(pipeline.settings, loader, "b.geojson", _points([9]))
    pipeline.classify(first, observed_at=T0)

    with pytest.raises(exceptions.QueueFullError):
        pipeline.classify(second, observed_at=T0)

    assert loader.calls == ["a.geojson"]
    assert pipeline.queue_is_full()


@pytest.mark.parametrize(
    ("error", "reason"),
    [
        (exceptions.InputError("empty", reason="no-geom"), "no-geom"),
        (exceptions.InputError("mixed", reason="weird-file"), "weird-file"),
        (exceptions.ConversionError("unreadable"), "corrupted"),
    ],
)
def test_unusable_files_are_rejected(
    pipeline: pipeline_service.ClassificationPipeline,
    loader: FakeLoader,
    error: Exception,
    reason: str,
) -> None:
    """Rejected files are recorded but never queued."""
    path = _upload(pipeline.settings, loader, "bad.zip", error)

    outcome = pipeline.classify(path, import_id="bad", observed_at=T0)

    assert outcome.status is Outcome.REJECTED
    assert outcome.message == reason
    record = pipeline.repository.get_match(outcome.match_id or 0)
    assert record is not None
    assert not record.pending
    assert record.file == "bad.zip"
    assert pipeline.repository.pending_count() == 0
    assert not path.exists()


def test_transient_failures_are_retried(
    pipeline: pipeline_service.ClassificationPipeline,
    loader: FakeLoader,
) -> None:
    """Transient failures are retried until the loader succeeds."""
    flaky = exceptions.TransientProviderError("ogr2ogr failed")
    path = _upload(
        pipeline.settings,
        loader,
        "trees.geojson",
        [flaky, flaky, _points([0, 100])],
    )

    outcome = pipeline.classify(path, observed_at=T0)

    assert outcome.status is Outcome.PENDING
    assert loader.calls == ["trees.geojson"] * 3


def test_exhausted_retries_propagate(
    pipeline: pipeline_service.ClassificationPipeline,
    loader: FakeLoader,
) -> None:
    """After the last attempt the transient error reaches the caller."""
    path = _upload(
        pipeline.settings,
        loader,
        "trees.geojson",
        exceptions.TransientProviderError("ogr2ogr failed"),
    )

    with pytest.raises(exceptions.TransientProviderError):
        pipeline.classify(path, observed_at=T0)

    assert len(loader.calls) == pipeline.settings.provider_retry_attempts
    assert pipeline.repository.list_matches(pending_only=False) == []
    assert path.exists()


def test_recheck_imports_matches_confirmed_later(
    pipeline: pipeline_service.ClassificationPipeline,
    loader: FakeLoader,
) -> None:
    """A pending copy of a dataset imports once the original exists."""
    a = _upload(pipeline.settings, loader, "a.geojson", _points([0, 100]))
    b = _upload(pipeline.settings, loader, "b.geojson", _points([0, 100]))
    first = pipeline.classify(a, observed_at=T0)
    second = pipeline.classify(b, observed_at=_at(1))
    pipeline.merge(first.match_id or 0, resolver.MergeStrategy.NEW)

    outcomes = pipeline.recheck()

    assert [o.status for o in outcomes] == [Outcome.IMPORTED]
    assert outcomes[0].match_id == second.match_id
    assert outcomes[0].correspondence["matched"] == 2
    assert pipeline.repository.pending_count() == 0
    assert not b.exists()


def test_check_refreshes_pending_match(
    pipeline: pipeline_service.ClassificationPipeline,
    loader: FakeLoader,
) -> None:
    """Checking after the corpus changed updates the classification."""
    collection_id = _bootstrap(pipeline, loader)
    path = _upload(
        pipeline.settings, loader, "mixed.geojson", _points([0, 500, 600])
    )
    pending = pipeline.classify(path, observed_at=_at(1))
    assert pending.message == "no-match-2"

    assert pipeline.drop_collection(collection_id)
    outcome = pipeline.check(pending.match_id or 0)

    assert outcome.status is Outcome.PENDING
    assert outcome.message == "no-match"
    record = pipeline.repository.get_match(pending.match_id or 0)
    assert record is not None
    assert record.fidelity == "none"


def test_check_closes_unreadable_match(
    pipeline: pipeline_service.ClassificationPipeline,
    loader: FakeLoader,
) -> None:
    """A pending file that became unreadable is closed as corrupted."""
    path = _upload(pipeline.settings, loader, "a.geojson", _points([0]))
    pending = pipeline.classify(path, observed_at=T0)
    loader.datasets["a.geojson"] = exceptions.ConversionError("gone")

    outcome = pipeline.check(pending.match_id or 0)

    assert outcome.status is Outcome.REJECTED
    assert outcome.message == "corrupted"
    assert pipeline.repository.pending_count() == 0
    with pytest.raises(exceptions.NotFoundError):
        pipeline.check(pending.match_id or 0)


def test_merge_into_collection_with_add(
    pipeline: pipeline_service.ClassificationPipeline,
    loader: FakeLoader,
) -> None:
    """ADD merges a partial match and keeps matched geometries."""
    collection_id = _bootstrap(pipeline, loader)
    path = _upload(
        pipeline.settings, loader, "mixed.geojson", _points([0, 500, 600])
    )
    pending = pipeline.classify(path, observed_at=_at(1))

    outcome = pipeline.merge(
        pending.match_id or 0,
        resolver.MergeStrategy.ADD,
        collection_id=collection_id,
    )

    assert outcome.collection_id == collection_id
    assert outcome.correspondence["matched"] == 1
    assert outcome.correspondence["new"] == 2
    assert pipeline.repository.live_count(collection_id) == 5


def test_merge_type_mismatch_commits_nothing(
    pipeline: pipeline_service.ClassificationPipeline,
    loader: FakeLoader,
) -> None:
    """Merging polygons into a point collection aborts the ingestion."""
    collection_id = _bootstrap(pipeline, loader)
    path = _upload(
        pipeline.settings,
        loader,
        "parks.geojson",
        _points([0, 50], geom_type=db_models.GeometryType.POLYGON),
    )
    pending = pipeline.classify(path, observed_at=_at(1))

    with pytest.raises(exceptions.InvariantViolation):
        pipeline.merge(
            pending.match_id or 0,
            resolver.MergeStrategy.ADD,
            collection_id=collection_id,
        )

    assert pipeline.repository.pending_count() == 1
    assert len(pipeline.repository.sources(collection_id)) == 1
    assert path.exists()


def test_merge_unknown_targets(
    pipeline: pipeline_service.ClassificationPipeline,
    loader: FakeLoader,
) -> None:
    """Unknown matches and collections raise NotFoundError."""
    path = _upload(pipeline.settings, loader, "a.geojson", _points([0]))
    pending = pipeline.classify(path, observed_at=T0)

    with pytest.raises(exceptions.NotFoundError):
        pipeline.merge(99, resolver.MergeStrategy.NEW)
    with pytest.raises(exceptions.NotFoundError):
        pipeline.merge(
            pending.match_id or 0,
            resolver.MergeStrategy.UPDATE,
            collection_id=42,
        )


def test_get_pipeline_uses_configured_backend(
    monkeypatch: pytest.MonkeyPatch,
    settings: config.Settings,
) -> None:
    """The process-wide pipeline is built once from the settings."""
    monkeypatch.setattr(
        pipeline_service.config, "get_settings", lambda: settings
    )
    pipeline_service.get_pipeline.cache_clear()
    try:
        built = pipeline_service.get_pipeline()
        assert built is pipeline_service.get_pipeline()
        assert isinstance(
            built.repository, database.InMemoryCorpusRepository
        )
        assert isinstance(
            built.provider, predicates.ShapelyPredicateProvider
        )
        assert built.settings is settings
    finally:
        pipeline_service.get_pipeline.cache_clear()
