"""Two-phase geometry matcher.

Phase 1 (open) matches every candidate against all collections of the same
geometry type and counts hits per collection. The collection with the most
hits is the dominant collection. If it is the only collection hit and every
candidate found a counterpart, the result is Full and phase 2 is skipped.

Phase 2 (closed) reruns the predicate against the dominant collection only:

- every candidate matched: Full
- every live feature of the dominant collection matched: Subset (the
  candidate set is a superset, e.g. a layer with added features)
- otherwise Partial, left for manual resolution

No hit at all in phase 1 means None.
"""

from __future__ import annotations

import collections
import dataclasses
import enum
import logging
from typing import TYPE_CHECKING, Any

from geocatalog.core import exceptions

if TYPE_CHECKING:
    from geocatalog.db import database
    from geocatalog.db import models as db_models
    from geocatalog.services import predicates

logger = logging.getLogger(__name__)


class Fidelity(enum.StrEnum):
    FULL = "full"
    SUBSET = "subset"
    PARTIAL = "partial"
    NONE = "none"


@dataclasses.dataclass
class MatchResult:
    """Classification of one candidate set against the corpus.

    Attributes:
        fidelity: Match quality.
        message: Bookkeeping label ("match", "subset", "no-match",
            "no-match-2" or "no-match-3").
        candidate_count: Number of candidate parts.
        target_collection_id: Confirmed target, set for Full and Subset.
        dominant_collection_id: Collection with the most phase 1 hits.
        collection_hits: Phase 1 hit counts per collection.
        hits: Authoritative correspondence list (phase 2, or phase 1 when it
            was conclusive).
    """

    fidelity: Fidelity
    message: str
    candidate_count: int
    target_collection_id: int | None = None
    dominant_collection_id: int | None = None
    collection_hits: dict[int, int] = dataclasses.field(default_factory=dict)
    hits: list[predicates.PredicateHit] = dataclasses.field(
        default_factory=list
    )

    @property
    def matched_count(self) -> int:
        return len(self.hits)

    @property
    def is_confirmed(self) -> bool:
        return self.fidelity in (Fidelity.FULL, Fidelity.SUBSET)

    def differences(self) -> list[dict[str, Any]]:
        return [
            {
                "candidate_fid": hit.candidate_fid,
                "canonical_fid": hit.canonical_fid,
                "distance": hit.distance,
                "source_diff": hit.source_diff,
                "target_diff": hit.target_diff,
            }
            for hit in self.hits
        ]

    def to_process(self) -> dict[str, Any]:
        """JSON-able record stored on match records and sources."""
        return {
            "fidelity": str(self.fidelity),
            "message": self.message,
            "candidate_count": self.candidate_count,
            "matched_count": self.matched_count,
            "target_collection_id": self.target_collection_id,
            "dominant_collection_id": self.dominant_collection_id,
            "collection_hits": {
                str(collection_id): count
                for collection_id, count in self.collection_hits.items()
            },
            "differences": self.differences(),
        }


def dominant_collection(hit_counts: collections.Counter[int]) -> int:
    """Most-hit collection; ties go to the lowest collection id."""
    return min(
        hit_counts,
        key=lambda collection_id: (-hit_counts[collection_id], collection_id),
    )


def match(
    candidates: db_models.CandidateSet,
    provider: predicates.PredicateProviderProtocol,
    repository: database.CorpusRepositoryProtocol,
) -> MatchResult:
    """Classify a candidate set against the live corpus.

    Args:
        candidates: Normalized candidate set of a single geometry type.
        provider: Executes the spatial predicates.
        repository: Corpus, used for live counts of the dominant collection.

    Returns:
        MatchResult with fidelity and the correspondence list.

    Raises:
        InputError: If the candidate set is empty.
        ExternalProviderError: If the spatial engine fails.
    """
    cardinality = len(candidates)
    if cardinality == 0:
        raise exceptions.InputError("Candidate set is empty", reason="no-geom")

    open_hits = provider.match(candidates)
    hit_counts = collections.Counter(hit.collection_id for hit in open_hits)
    if not hit_counts:
        logger.info("No collection matched %d candidates", cardinality)
        return MatchResult(
            fidelity=Fidelity.NONE,
            message="no-match",
            candidate_count=cardinality,
        )

    dominant = dominant_collection(hit_counts)
    if len(hit_counts) == 1 and hit_counts[dominant] == cardinality:
        return MatchResult(
            fidelity=Fidelity.FULL,
            message="match",
            candidate_count=cardinality,
            target_collection_id=dominant,
            dominant_collection_id=dominant,
            collection_hits=dict(hit_counts),
            hits=open_hits,
        )

    closed_hits = provider.match(candidates, collection_id=dominant)
    result = MatchResult(
        fidelity=Fidelity.PARTIAL,
        message="no-match-2",
        candidate_count=cardinality,
        dominant_collection_id=dominant,
        collection_hits=dict(hit_counts),
        hits=closed_hits,
    )
    if not closed_hits:
        result.fidelity = Fidelity.NONE
        result.message = "no-match-3"
    elif len(closed_hits) == cardinality:
        result.fidelity = Fidelity.FULL
        result.message = "match"
        result.target_collection_id = dominant
    elif len({hit.canonical_id for hit in closed_hits}) == (
        repository.live_count(dominant)
    ):
        result.fidelity = Fidelity.SUBSET
        result.message = "subset"
        result.target_collection_id = dominant

    logger.info(
        "Closed match against collection %s: %s (%d of %d candidates)",
        dominant,
        result.fidelity,
        len(closed_hits),
        cardinality,
    )
    return result
