"""File upload and classification API endpoints.

This module provides REST API endpoints for uploading third-party datasets
and running them through the classification pipeline. The upload endpoint
accepts multipart file uploads and stores them in the storage directory.
The classify endpoint converts the file to EPSG:3857, matches it against the
corpus and either imports it, queues it as a pending match, or rejects it.

Example:
    Upload and classify a dataset:
        >>> # Step 1: Upload file
        >>> response = client.post(
        ...     "/api/imports/upload",
        ...     files={"file": ("trees.geojson", open("trees.geojson", "rb"))}
        ... )
        >>> upload_id = response.json()["upload_id"]

        >>> # Step 2: Classify
        >>> response = client.post(f"/api/imports/{upload_id}/classify")
        >>> response.json()["status"]
        'imported'
"""

from __future__ import annotations

import dataclasses
import datetime
import enum
import pathlib
import shutil
import tempfile
import uuid
from typing import Any

import fastapi
from typing_extensions import TypedDict

from geocatalog.core import config
from geocatalog.db import models as db_models
from geocatalog.services import pipeline as pipeline_service

router = fastapi.APIRouter(prefix="/api/imports", tags=["imports"])

_upload_cache: dict[str, pathlib.Path] = {}


class UploadResponse(TypedDict):
    upload_id: str
    filename: str | None
    path: str | None


def _get_pipeline() -> pipeline_service.ClassificationPipeline:
    """Resolve the classification pipeline dependency.

    Returns:
        The process-wide ClassificationPipeline, which also owns the
        repository shared by every router.
    """
    return pipeline_service.get_pipeline()


class UploadTooLarge(Exception):
    """Raised while streaming an upload above the size limit."""


def _save_upload(
    file: fastapi.UploadFile,
    storage_dir: pathlib.Path,
    max_size: int,
) -> pathlib.Path:
    """Persist an uploaded file to disk with size validation.

    Args:
        file: FastAPI UploadFile object containing the file data.
        storage_dir: Directory where the file should be saved.
        max_size: Maximum allowed file size in bytes.

    Returns:
        Path to the saved file.

    Raises:
        UploadTooLarge: If the file exceeds the maximum size limit.
    """
    storage_dir.mkdir(parents=True, exist_ok=True)
    target_path = storage_dir / pathlib.Path(file.filename or "upload").name
    with tempfile.NamedTemporaryFile(delete=False, dir=storage_dir) as tmp:
        size = 0
        for chunk in iter(lambda: file.file.read(1024 * 1024), b""):
            size += len(chunk)
            if size > max_size:
                tmp.close()
                pathlib.Path(tmp.name).unlink(missing_ok=True)
                raise UploadTooLarge(file.filename)

            tmp.write(chunk)

        tmp.flush()

    shutil.move(tmp.name, target_path)

    return target_path


def _find_upload(upload_id: str, storage_dir: pathlib.Path) -> pathlib.Path:
    """Locate an upload in the cache or, after a restart, on disk.

    Raises:
        HTTPException: If the upload id is malformed or unknown.
    """
    cached = _upload_cache.get(upload_id)
    if cached is not None and cached.exists():
        return cached
    try:
        directory = storage_dir / str(uuid.UUID(upload_id))
    except ValueError:
        raise fastapi.HTTPException(
            status_code=404,
            detail="Upload not found",
        ) from None
    files = sorted(directory.glob("*")) if directory.is_dir() else []
    if not files:
        raise fastapi.HTTPException(
            status_code=404,
            detail="Upload not found",
        )
    return files[0]


def _to_json(value: Any) -> Any:
    """Convert dataclass dumps to JSON-friendly values."""
    if isinstance(value, dict):
        return {key: _to_json(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_to_json(item) for item in value]
    if isinstance(value, datetime.datetime):
        return value.isoformat()
    if isinstance(value, enum.Enum):
        return value.value
    return value


@router.post("/upload")
async def upload_file(
    file: fastapi.UploadFile,
    settings: config.Settings = fastapi.Depends(config.get_settings),  # noqa: B008
    pipeline: pipeline_service.ClassificationPipeline = fastapi.Depends(  # noqa: B008
        _get_pipeline
    ),
) -> UploadResponse:
    """Accept a multipart file upload and store it for classification.

    Files above ``max_upload_size_bytes`` are refused and recorded as a
    "big-file" match record.

    Args:
        file: Uploaded file from multipart form data.
        settings: Application settings (injected via FastAPI Depends).
        pipeline: Classification pipeline (injected via FastAPI Depends).

    Returns:
        Dictionary containing upload_id, filename, and storage path.

    Raises:
        HTTPException: 413 if the file exceeds the maximum upload size.
    """
    upload_id = str(uuid.uuid4())
    try:
        saved_path = _save_upload(
            file,
            settings.storage_dir / upload_id,
            settings.max_upload_size_bytes,
        )
    except UploadTooLarge:
        pipeline.repository.add_match(
            db_models.MatchRecord(
                id=None,
                import_id=upload_id,
                file=file.filename,
                message="big-file",
                pending=False,
            )
        )
        raise fastapi.HTTPException(
            status_code=413,
            detail="Upload too large",
        ) from None

    _upload_cache[upload_id] = saved_path

    return UploadResponse(
        upload_id=upload_id,
        filename=file.filename,
        path=str(saved_path),
    )


@router.post("/{upload_id}/classify")
def classify_upload(
    upload_id: str,
    import_id: str | None = None,
    observed_at: datetime.datetime | None = None,
    license: str | None = None,
    settings: config.Settings = fastapi.Depends(config.get_settings),  # noqa: B008
    pipeline: pipeline_service.ClassificationPipeline = fastapi.Depends(  # noqa: B008
        _get_pipeline
    ),
) -> dict[str, Any]:
    """Classify a previously uploaded file.

    Runs conversion, matching, correspondence resolution and change
    detection. Full and Subset matches are imported right away, Partial and
    None matches are queued for a manual merge, unusable files are
    rejected.

    Args:
        upload_id: ID returned from the upload endpoint.
        import_id: Upstream identifier of the file, defaults to upload_id.
        observed_at: Download time of the file, defaults to now. Values
            without an offset are read as UTC.
        license: License of the dataset, recorded on the new source.
        settings: Application settings (injected via FastAPI Depends).
        pipeline: Classification pipeline (injected via FastAPI Depends).

    Returns:
        The ingestion outcome.

    Raises:
        HTTPException: 404 if the upload is unknown. Pipeline errors are
            mapped by the application exception handlers.
    """
    source_path = _find_upload(upload_id, settings.storage_dir)
    outcome = pipeline.classify(
        source_path,
        import_id=import_id or upload_id,
        observed_at=observed_at,
        license=license,
    )
    _upload_cache.pop(upload_id, None)
    return _to_json(dataclasses.asdict(outcome))


@router.get("/queue")
async def queue_status(
    pipeline: pipeline_service.ClassificationPipeline = fastapi.Depends(  # noqa: B008
        _get_pipeline
    ),
) -> dict[str, Any]:
    """Report the pending-match queue and whether uploads are accepted."""
    pending = pipeline.repository.pending_count()
    queue_limit = pipeline.settings.queue_limit
    return {
        "pending": pending,
        "queue_limit": queue_limit,
        "accepting": pending < queue_limit,
    }
