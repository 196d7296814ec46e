"""Pending match review and manual merge API endpoints.

Files whose geometries only partially match (or do not match) a known
collection wait here as match records. Reviewers can inspect them, rerun
the matcher after the corpus changed, or merge them with an explicit merge
strategy.

Example:
    Create a new collection from a pending match:
        >>> response = client.post(
        ...     "/api/matches/7/merge",
        ...     params={"strategy": "new", "name": "street_trees"},
        ... )
        >>> response.json()["collection_id"]
        3

    Add the unmatched features of a match to an existing collection:
        >>> client.post(
        ...     "/api/matches/8/merge",
        ...     params={"strategy": "add", "collection_id": 3},
        ... )
"""

from __future__ import annotations

import dataclasses
from typing import Any

import fastapi
import shapely.geometry

from geocatalog.api import imports
from geocatalog.services import pipeline as pipeline_service
from geocatalog.services import resolver

router = fastapi.APIRouter(prefix="/api/matches", tags=["matches"])

PREVIEW_LIMIT = 100


@router.get("")
async def list_matches(
    pending_only: bool = True,
    pipeline: pipeline_service.ClassificationPipeline = fastapi.Depends(  # noqa: B008
        imports._get_pipeline
    ),
) -> list[dict[str, Any]]:
    """List match records, pending ones only by default.

    Args:
        pending_only: Set to false to include rejected files ("big-file",
            "no-geom", "weird-file", "corrupted").
        pipeline: Classification pipeline (injected via FastAPI Depends).

    Returns:
        Match records, oldest first.
    """
    return [
        imports._to_json(dataclasses.asdict(record))
        for record in pipeline.repository.list_matches(
            pending_only=pending_only
        )
    ]


@router.get("/{match_id}")
async def get_match(
    match_id: int,
    pipeline: pipeline_service.ClassificationPipeline = fastapi.Depends(  # noqa: B008
        imports._get_pipeline
    ),
) -> dict[str, Any]:
    """Get one match record with its classification process.

    Raises:
        HTTPException: If the match is not found (404 status code).
    """
    record = pipeline.repository.get_match(match_id)
    if record is None:
        raise fastapi.HTTPException(
            status_code=404,
            detail="Match not found",
        )

    return imports._to_json(dataclasses.asdict(record))


@router.get("/{match_id}/geojson")
def preview_match(
    match_id: int,
    limit: int = fastapi.Query(default=PREVIEW_LIMIT, ge=1, le=PREVIEW_LIMIT),  # noqa: B008
    pipeline: pipeline_service.ClassificationPipeline = fastapi.Depends(  # noqa: B008
        imports._get_pipeline
    ),
) -> dict[str, Any]:
    """Preview the normalized geometries of a pending match.

    Each candidate part becomes one feature carrying the attributes of its
    source feature, so multi-part features repeat their properties.

    Args:
        match_id: Pending match record.
        limit: Maximum number of parts returned.
        pipeline: Classification pipeline (injected via FastAPI Depends).

    Returns:
        A GeoJSON FeatureCollection.
    """
    candidates = pipeline.candidates(match_id)
    features = sorted(candidates.features, key=lambda f: f.local_id)
    return {
        "type": "FeatureCollection",
        "features": [
            {
                "type": "Feature",
                "id": feature.local_id,
                "geometry": shapely.geometry.mapping(feature.geom),
                "properties": imports._to_json(
                    dict(
                        candidates.attributes.get(feature.fid, {}),
                        fid=feature.fid,
                    )
                ),
            }
            for feature in features[:limit]
        ],
    }


@router.get("/{match_id}/columns")
def match_columns(
    match_id: int,
    pipeline: pipeline_service.ClassificationPipeline = fastapi.Depends(  # noqa: B008
        imports._get_pipeline
    ),
) -> dict[str, str]:
    """Attribute columns of a pending match with their inferred types."""
    candidates = pipeline.candidates(match_id)
    return {
        column: str(column_type)
        for column, column_type in candidates.schema.items()
    }


@router.post("/recheck")
def recheck_matches(
    pipeline: pipeline_service.ClassificationPipeline = fastapi.Depends(  # noqa: B008
        imports._get_pipeline
    ),
) -> list[dict[str, Any]]:
    """Rerun the matcher for every pending match.

    Matches that now reach Full or Subset fidelity are imported and leave
    the queue.
    """
    return [
        imports._to_json(dataclasses.asdict(outcome))
        for outcome in pipeline.recheck()
    ]


@router.post("/{match_id}/check")
def check_match(
    match_id: int,
    pipeline: pipeline_service.ClassificationPipeline = fastapi.Depends(  # noqa: B008
        imports._get_pipeline
    ),
) -> dict[str, Any]:
    """Rerun the matcher for one pending match."""
    return imports._to_json(dataclasses.asdict(pipeline.check(match_id)))


@router.post("/{match_id}/merge")
def merge_match(
    match_id: int,
    strategy: resolver.MergeStrategy = resolver.MergeStrategy.UPDATE,
    collection_id: int | None = None,
    name: str | None = None,
    similar: bool = False,
    license: str | None = None,
    pipeline: pipeline_service.ClassificationPipeline = fastapi.Depends(  # noqa: B008
        imports._get_pipeline
    ),
) -> dict[str, Any]:
    """Merge a pending match with an explicit strategy.

    Args:
        match_id: Pending match record.
        strategy: "new" creates a collection; "add", "update", "skip" and
            "replace" merge into ``collection_id``.
        collection_id: Target collection, required unless strategy is "new".
        name: Name of the new collection, defaults to the file name.
        similar: Match with the looser "similar" buffer radius.
        license: License of the dataset, defaults to the one given at
            classification.
        pipeline: Classification pipeline (injected via FastAPI Depends).

    Returns:
        The ingestion outcome.

    Raises:
        HTTPException: 422 if the target collection does not fit the
            strategy.
    """
    if strategy.needs_target and collection_id is None:
        raise fastapi.HTTPException(
            status_code=422,
            detail=f"collection_id required for strategy {strategy}",
        )
    if not strategy.needs_target and collection_id is not None:
        raise fastapi.HTTPException(
            status_code=422,
            detail="collection_id not allowed for strategy new",
        )

    outcome = pipeline.merge(
        match_id,
        strategy,
        collection_id=collection_id,
        name=name,
        similar=similar,
        license=license,
    )
    return imports._to_json(dataclasses.asdict(outcome))
