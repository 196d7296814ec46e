"""Collection query and administration API endpoints.

This module provides REST API endpoints for listing collections, reading
their bounding boxes and source history, and dropping a collection. All
bounding boxes are returned in EPSG:3857 (Web Mercator) coordinates.

Example:
    List all point collections:
        >>> response = client.get(
        ...     "/api/collections",
        ...     params={"geom_type": "POINT"},
        ... )
        >>> collections = response.json()
        >>> # Returns: [{"id": 1, "name": "trees", "geom_type": "POINT",
        >>> #            "live_count": 412, ...}, ...]

    Get bounding box for a specific collection:
        >>> response = client.get("/api/collections/1/bbox")
        >>> bbox = response.json()["bbox"]
        >>> # Format: [minx, miny, maxx, maxy] in Web Mercator coordinates
"""

import dataclasses
from typing import Any

import fastapi

from geocatalog.api import imports
from geocatalog.db import models as db_models
from geocatalog.services import pipeline as pipeline_service

BBox = tuple[float, float, float, float]

router = fastapi.APIRouter(prefix="/api/collections", tags=["collections"])


def _get_collection(
    pipeline: pipeline_service.ClassificationPipeline,
    collection_id: int,
) -> db_models.Collection:
    collection = pipeline.repository.get_collection(collection_id)
    if collection is None:
        raise fastapi.HTTPException(
            status_code=404,
            detail="Collection not found",
        )
    return collection


@router.get("")
async def list_collections(
    geom_type: db_models.GeometryType | None = None,
    pipeline: pipeline_service.ClassificationPipeline = fastapi.Depends(  # noqa: B008
        imports._get_pipeline
    ),
) -> list[dict[str, Any]]:
    """List collections, optionally filtered by geometry type.

    Args:
        geom_type: Only return collections of this geometry type.
        pipeline: Classification pipeline (injected via FastAPI Depends).

    Returns:
        Collection dictionaries including the number of live features.
    """
    repo = pipeline.repository
    return [
        imports._to_json(
            dataclasses.asdict(collection)
            | {"live_count": repo.live_count(collection.id or 0)}
        )
        for collection in repo.list_collections(geom_type)
    ]


@router.get("/{collection_id}/bbox")
async def get_collection_bbox(
    collection_id: int,
    pipeline: pipeline_service.ClassificationPipeline = fastapi.Depends(  # noqa: B008
        imports._get_pipeline
    ),
) -> dict[str, BBox | None]:
    """Get the bounding box of a collection.

    Returns the bounding box of a collection in EPSG:3857 (Web Mercator)
    coordinates, or None for a collection without geometries.

    Raises:
        HTTPException: If the collection is not found (404 status code).
    """
    collection = _get_collection(pipeline, collection_id)
    return {"bbox": collection.bbox}


@router.get("/{collection_id}/sources")
async def list_sources(
    collection_id: int,
    pipeline: pipeline_service.ClassificationPipeline = fastapi.Depends(  # noqa: B008
        imports._get_pipeline
    ),
) -> list[dict[str, Any]]:
    """List the sources (ingestions) of a collection, oldest first.

    Raises:
        HTTPException: If the collection is not found (404 status code).
    """
    _get_collection(pipeline, collection_id)
    return [
        imports._to_json(dataclasses.asdict(source))
        for source in pipeline.repository.sources(collection_id)
    ]


@router.delete("/{collection_id}", status_code=204)
def drop_collection(
    collection_id: int,
    pipeline: pipeline_service.ClassificationPipeline = fastapi.Depends(  # noqa: B008
        imports._get_pipeline
    ),
) -> None:
    """Drop a collection with its sources, geometries and attributes.

    Raises:
        HTTPException: If the collection is not found (404 status code).
    """
    if not pipeline.drop_collection(collection_id):
        raise fastapi.HTTPException(
            status_code=404,
            detail="Collection not found",
        )
