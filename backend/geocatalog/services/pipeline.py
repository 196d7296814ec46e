"""Single-flight classification pipeline.

One ingestion runs at a time: conversion, matching, resolution and change
detection all happen under one lock, then every write is committed as a
single plan. The matcher therefore always sees a consistent corpus, and fid
allocation never races.

Outcomes of ``classify``:

- Full or Subset fidelity: imported into the target collection with the
  UPDATE strategy.
- Partial or None fidelity: stored as a pending match record, waiting for
  a manual ``merge``. Pending records count against ``queue_limit``.
- Unusable files ("no-geom", "weird-file", "corrupted"): stored as
  non-pending records and excluded from further automatic attempts.

Transient provider failures are retried with exponential backoff (tenacity);
invariant violations abort the ingestion with nothing committed.
"""

from __future__ import annotations

import dataclasses
import datetime
import enum
import functools
import logging
import pathlib
import threading
from collections.abc import Callable, Sequence
from typing import Any

import tenacity

from geocatalog.core import config, exceptions
from geocatalog.db import database
from geocatalog.db import models as db_models
from geocatalog.services import (
    change_detector,
    convert,
    matcher,
    predicates,
    resolver,
)

logger = logging.getLogger(__name__)

Loader = Callable[[pathlib.Path, config.Settings], db_models.CandidateSet]


def _discard(path: pathlib.Path | str | None) -> None:
    """Remove a consumed upload."""
    if path:
        pathlib.Path(path).unlink(missing_ok=True)


def _as_utc(timestamp: datetime.datetime) -> datetime.datetime:
    """Read naive timestamps as UTC, stored timestamps are all aware."""
    if timestamp.tzinfo is None:
        return timestamp.replace(tzinfo=datetime.UTC)
    return timestamp


def _license(record: db_models.MatchRecord) -> str | None:
    return (record.process or {}).get("license")


def _with_license(
    process: dict[str, Any],
    license: str | None,
) -> dict[str, Any]:
    if license:
        process["license"] = license
    return process


class OutcomeStatus(enum.StrEnum):
    IMPORTED = "imported"
    PENDING = "pending"
    REJECTED = "rejected"


@dataclasses.dataclass(frozen=True)
class IngestionOutcome:
    """What happened to one file."""

    status: OutcomeStatus
    message: str
    fidelity: str | None = None
    collection_id: int | None = None
    source_id: int | None = None
    match_id: int | None = None
    has_new_data: bool = False
    correspondence: dict[str, int] = dataclasses.field(default_factory=dict)


class ClassificationPipeline:
    """Drives matcher, resolver and change detector for uploaded files.

    Args:
        repository: Corpus and pending-match storage.
        provider: Spatial predicate provider bound to the same corpus.
        settings: Application settings.
        loader: Turns a file into a candidate set; ogr2ogr based by default.
    """

    def __init__(
        self,
        repository: database.CorpusRepositoryProtocol,
        provider: predicates.PredicateProviderProtocol,
        settings: config.Settings,
        loader: Loader = convert.load_candidates,
    ) -> None:
        self.repository = repository
        self.provider = provider
        self.settings = settings
        self.loader = loader
        self._lock = threading.Lock()

    def _retrying(self) -> tenacity.Retrying:
        return tenacity.Retrying(
            stop=tenacity.stop_after_attempt(
                self.settings.provider_retry_attempts
            ),
            wait=tenacity.wait_exponential(
                multiplier=self.settings.provider_retry_wait_seconds,
                max=30,
            ),
            retry=tenacity.retry_if_exception_type(
                exceptions.TransientProviderError
            ),
            before_sleep=tenacity.before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )

    def _load(self, source_path: pathlib.Path) -> db_models.CandidateSet:
        return self._retrying()(self.loader, source_path, self.settings)

    def _match(
        self,
        candidates: db_models.CandidateSet,
    ) -> matcher.MatchResult:
        return self._retrying()(
            matcher.match,
            candidates,
            self.provider,
            self.repository,
        )

    def queue_is_full(self) -> bool:
        return self.repository.pending_count() >= self.settings.queue_limit

    def classify(
        self,
        source_path: pathlib.Path,
        import_id: str | None = None,
        observed_at: datetime.datetime | None = None,
        license: str | None = None,
    ) -> IngestionOutcome:
        """Classify one file and import it when the match is confirmed.

        Args:
            source_path: Uploaded dataset.
            import_id: Upstream identifier of the file.
            observed_at: Download time of the file, defaults to now. Used
                as the source and attribute snapshot timestamp. Naive
                values are read as UTC.
            license: License of the dataset, recorded on the source and
                kept on the match record while the file waits.

        Returns:
            IngestionOutcome describing the result.

        Raises:
            QueueFullError: If the pending-match queue is full.
            InvariantViolation: If the import would corrupt the corpus.
            TransientProviderError: If retries are exhausted.
        """
        source_path = pathlib.Path(source_path)
        timestamp = (
            _as_utc(observed_at)
            if observed_at is not None
            else datetime.datetime.now(datetime.UTC)
        )
        with self._lock:
            if self.queue_is_full():
                raise exceptions.QueueFullError(
                    "queue is full",
                    context={"queue_limit": self.settings.queue_limit},
                )
            try:
                candidates = self._load(source_path)
                result = self._match(candidates)
            except exceptions.InputError as exc:
                return self._reject(source_path, import_id, exc.reason, exc)
            except exceptions.PermanentProviderError as exc:
                return self._reject(source_path, import_id, "corrupted", exc)

            if result.is_confirmed:
                outcome = self._ingest(
                    resolver.MergeStrategy.UPDATE,
                    candidates,
                    result.hits,
                    timestamp,
                    collection=self._collection(
                        result.target_collection_id
                    ),
                    import_id=import_id,
                    process=result.to_process(),
                    license=license,
                )
                _discard(source_path)
                return outcome

            record = self.repository.add_match(
                self._match_record(
                    candidates,
                    result,
                    source_path,
                    import_id,
                    timestamp,
                    license,
                )
            )
            logger.info(
                "Match %s pending: %s",
                record.id,
                record.message,
                extra={"import_id": import_id},
            )
            return IngestionOutcome(
                status=OutcomeStatus.PENDING,
                message=record.message,
                fidelity=record.fidelity,
                match_id=record.id,
            )

    def merge(
        self,
        match_id: int,
        strategy: resolver.MergeStrategy,
        collection_id: int | None = None,
        name: str | None = None,
        similar: bool = False,
        license: str | None = None,
    ) -> IngestionOutcome:
        """Resolve a pending match manually.

        Args:
            match_id: Pending match record.
            strategy: Merge strategy; NEW creates a collection, the others
                need ``collection_id``.
            collection_id: Target collection for non-NEW strategies.
            name: Name of the collection created by NEW, defaults to the
                file name.
            similar: Match with the looser "similar" buffer radius.
            license: License of the dataset, defaults to the one given at
                classification.

        Raises:
            NotFoundError: If the match or the collection does not exist.
            InvariantViolation: If the strategy preconditions do not hold.
        """
        with self._lock:
            record = self._pending_match(match_id)
            source_path = pathlib.Path(record.file or "")
            candidates = self._load(source_path)
            collection: db_models.Collection | None = None
            hits: Sequence[predicates.PredicateHit] = []
            if collection_id is not None:
                collection = self._collection(collection_id)
                hits = self._retrying()(
                    self.provider.match,
                    candidates,
                    collection_id=collection_id,
                    similar=similar,
                )
            process = dict(record.process or {})
            process.update(strategy=str(strategy), similar=similar)
            outcome = self._ingest(
                strategy,
                candidates,
                hits,
                record.created_at,
                collection=collection,
                name=name or source_path.stem,
                import_id=record.import_id,
                process=process,
                manual=True,
                resolved_match_id=record.id,
                license=license or _license(record),
            )
            _discard(record.file)
            return outcome

    def drop_collection(self, collection_id: int) -> bool:
        """Drop a collection between two ingestions."""
        with self._lock:
            return self.repository.drop_collection(collection_id)

    def check(self, match_id: int) -> IngestionOutcome:
        """Rerun the matcher for one pending match."""
        with self._lock:
            return self._check(self._pending_match(match_id))

    def candidates(self, match_id: int) -> db_models.CandidateSet:
        """Load the normalized candidate set of a pending match.

        Raises:
            NotFoundError: If the match is not pending.
        """
        with self._lock:
            record = self._pending_match(match_id)
            return self._load(pathlib.Path(record.file or ""))

    def recheck(self) -> list[IngestionOutcome]:
        """Rerun the matcher for every pending match, oldest first."""
        with self._lock:
            records = sorted(
                self.repository.list_matches(pending_only=True),
                key=lambda record: (record.created_at, record.id or 0),
            )
            return [self._check(record) for record in records]

    def _check(self, record: db_models.MatchRecord) -> IngestionOutcome:
        source_path = pathlib.Path(record.file or "")
        try:
            candidates = self._load(source_path)
            result = self._match(candidates)
        except exceptions.InputError as exc:
            return self._close(record, exc.reason, exc)
        except exceptions.PermanentProviderError as exc:
            return self._close(record, "corrupted", exc)

        if result.is_confirmed:
            outcome = self._ingest(
                resolver.MergeStrategy.UPDATE,
                candidates,
                result.hits,
                record.created_at,
                collection=self._collection(result.target_collection_id),
                import_id=record.import_id,
                process=result.to_process(),
                resolved_match_id=record.id,
                license=_license(record),
            )
            _discard(record.file)
            return outcome

        record.message = result.message
        record.fidelity = str(result.fidelity)
        record.process = _with_license(result.to_process(), _license(record))
        self.repository.update_match(record)
        return IngestionOutcome(
            status=OutcomeStatus.PENDING,
            message=record.message,
            fidelity=record.fidelity,
            match_id=record.id,
        )

    def _ingest(
        self,
        strategy: resolver.MergeStrategy,
        candidates: db_models.CandidateSet,
        hits: Sequence[predicates.PredicateHit],
        timestamp: datetime.datetime,
        collection: db_models.Collection | None = None,
        name: str | None = None,
        import_id: str | None = None,
        process: dict[str, Any] | None = None,
        manual: bool = False,
        resolved_match_id: int | None = None,
        license: str | None = None,
    ) -> IngestionOutcome:
        latest_source: db_models.Source | None = None
        previous_source: db_models.Source | None = None
        live_fids: set[int] = set()
        if collection is not None and collection.id is not None:
            latest_source = self.repository.latest_source(collection.id)
            # late files link to the closest earlier source
            earlier = [
                source
                for source in self.repository.sources(collection.id)
                if source.created_at <= timestamp
            ]
            previous_source = earlier[-1] if earlier else None
            live_fids = {
                geometry.fid
                for geometry in self.repository.live_geometries(
                    collection_id=collection.id
                )
            }
        try:
            resolution = resolver.resolve(
                strategy,
                candidates,
                hits,
                timestamp,
                collection=collection,
                name=name,
                latest_source=latest_source,
                live_fids=live_fids,
                distance_tolerance=self.settings.distance_tolerance,
            )
            prior_snapshots = (
                self.repository.snapshots(
                    collection.id,
                    fids=resolution.canonical_fids,
                )
                if collection is not None and collection.id is not None
                else []
            )
            # no source_id: the new source is not stored yet
            changes = change_detector.detect_changes(
                resolution.entries,
                candidates.attributes,
                candidates.schema,
                prior_snapshots,
                timestamp,
            )
            plan = db_models.IngestionPlan(
                collection=resolution.collection,
                source=db_models.Source(
                    id=None,
                    collection_id=resolution.collection.id,
                    created_at=timestamp,
                    import_id=import_id,
                    license=license,
                    previous_id=(
                        previous_source.id if previous_source else None
                    ),
                    manual=manual,
                    process=process,
                ),
                new_geometries=resolution.new_geometries,
                snapshots=changes.to_snapshots(),
                resolved_match_id=resolved_match_id,
            )
            committed = self.repository.commit(plan)
        except exceptions.InvariantViolation:
            logger.exception(
                "Ingestion aborted, nothing committed",
                extra={"import_id": import_id, "strategy": str(strategy)},
            )
            raise

        logger.info(
            "Imported into collection %s as source %s: %s, %d attribute "
            "changes",
            committed.collection_id,
            committed.source_id,
            resolution.summary(),
            len(changes.changes),
            extra={"import_id": import_id, "strategy": str(strategy)},
        )
        return IngestionOutcome(
            status=OutcomeStatus.IMPORTED,
            message=str(strategy),
            fidelity=(process or {}).get("fidelity"),
            collection_id=committed.collection_id,
            source_id=committed.source_id,
            match_id=resolved_match_id,
            has_new_data=changes.has_new_data,
            correspondence=resolution.summary(),
        )

    def _collection(self, collection_id: int | None) -> db_models.Collection:
        collection = (
            self.repository.get_collection(collection_id)
            if collection_id is not None
            else None
        )
        if collection is None:
            raise exceptions.NotFoundError(
                "Collection not found",
                context={"collection_id": collection_id},
            )
        return collection

    def _pending_match(self, match_id: int) -> db_models.MatchRecord:
        record = self.repository.get_match(match_id)
        if record is None or not record.pending:
            raise exceptions.NotFoundError(
                "Pending match not found",
                context={"match_id": match_id},
            )
        return record

    @staticmethod
    def _match_record(
        candidates: db_models.CandidateSet,
        result: matcher.MatchResult,
        source_path: pathlib.Path,
        import_id: str | None,
        timestamp: datetime.datetime,
        license: str | None = None,
    ) -> db_models.MatchRecord:
        summary = predicates.envelope_and_centroid(
            feature.geom for feature in candidates.features
        )
        bbox, centroid = summary if summary else (None, None)
        return db_models.MatchRecord(
            id=None,
            import_id=import_id,
            file=str(source_path),
            message=result.message,
            fidelity=str(result.fidelity),
            process=_with_license(result.to_process(), license),
            geom_type=str(candidates.geom_type),
            bbox=bbox,
            centroid=centroid,
            created_at=timestamp,
        )

    def _reject(
        self,
        source_path: pathlib.Path,
        import_id: str | None,
        reason: str,
        error: exceptions.GeoCatalogError,
    ) -> IngestionOutcome:
        logger.warning(
            "Rejected %s as %s: %s",
            source_path.name,
            reason,
            error,
            extra={"import_id": import_id},
        )
        record = self.repository.add_match(
            db_models.MatchRecord(
                id=None,
                import_id=import_id,
                file=source_path.name,
                message=reason,
                process={"error": str(error)},
                pending=False,
            )
        )
        _discard(source_path)
        return IngestionOutcome(
            status=OutcomeStatus.REJECTED,
            message=reason,
            match_id=record.id,
        )

    def _close(
        self,
        record: db_models.MatchRecord,
        reason: str,
        error: exceptions.GeoCatalogError,
    ) -> IngestionOutcome:
        logger.warning("Closed match %s as %s: %s", record.id, reason, error)
        record.message = reason
        record.pending = False
        record.process = dict(record.process or {}, error=str(error))
        self.repository.update_match(record)
        _discard(record.file)
        return IngestionOutcome(
            status=OutcomeStatus.REJECTED,
            message=reason,
            match_id=record.id,
        )


@functools.lru_cache
def get_pipeline() -> ClassificationPipeline:
    """Process-wide pipeline bound to the configured repository."""
    settings = config.get_settings()
    repository = database.get_corpus_repository(settings)
    return ClassificationPipeline(
        repository=repository,
        provider=predicates.get_predicate_provider(settings, repository),
        settings=settings,
    )
