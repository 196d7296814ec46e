"""Format conversion of uploaded datasets through ogr2ogr.

Every dataset is converted to GeoJSON and reprojected to EPSG:3857 before
normalization, so the matcher only ever sees metric Web Mercator
coordinates, whatever the source format or projection.

Example:
    Load candidates from an uploaded shapefile archive:
        >>> from geocatalog.core.config import get_settings
        >>> from geocatalog.services import convert

        >>> candidates = convert.load_candidates(
        ...     pathlib.Path("parks.zip"),
        ...     get_settings(),
        ... )
        >>> candidates.geom_type
        <GeometryType.POLYGON: 'POLYGON'>
"""

from __future__ import annotations

import json
import logging
import pathlib
import uuid
from typing import TYPE_CHECKING

from geocatalog.core import exceptions
from geocatalog.services import normalizer
from geocatalog.utils import gdal_helpers

if TYPE_CHECKING:
    from geocatalog.core import config
    from geocatalog.db import models as db_models

logger = logging.getLogger(__name__)

TARGET_SRS = "EPSG:3857"

# stderr fragments of failures that no retry can fix
PERMANENT_FAILURES = (
    "Unable to open datasource",
    "transform coordinates, source layer has no",
)


def _source_name(source_path: pathlib.Path) -> str:
    """OGR datasource name, reading zip archives through /vsizip/."""
    if source_path.suffix.lower() == ".zip":
        return f"/vsizip/{source_path}"
    return str(source_path)


def convert_to_geojson(
    source_path: pathlib.Path,
    output_dir: pathlib.Path,
    timeout: float | None = None,
) -> pathlib.Path:
    """Convert any OGR-readable dataset to GeoJSON in EPSG:3857.

    Args:
        source_path: Uploaded dataset.
        output_dir: Directory receiving the converted file.
        timeout: Seconds before ogr2ogr is killed.

    Returns:
        Path of the GeoJSON file.

    Raises:
        ConversionError: The datasource is unreadable or has no coordinate
            system to transform from.
        TransientProviderError: Any other ogr2ogr failure, including
            timeouts.
    """
    output_dir.mkdir(parents=True, exist_ok=True)
    output_path = output_dir / f"{source_path.stem}-{uuid.uuid4().hex}.geojson"
    try:
        gdal_helpers.run_command(
            [
                "ogr2ogr",
                "-f",
                "GeoJSON",
                "-t_srs",
                TARGET_SRS,
                output_path,
                _source_name(source_path),
            ],
            timeout=timeout,
        )
    except gdal_helpers.CommandError as exc:
        message = str(exc)
        context = {"file": source_path.name, "error": message}
        if any(marker in message for marker in PERMANENT_FAILURES):
            raise exceptions.ConversionError(
                "Dataset cannot be converted",
                context=context,
            ) from exc
        raise exceptions.TransientProviderError(
            "ogr2ogr failed",
            context=context,
        ) from exc
    return output_path


def read_geojson(path: pathlib.Path) -> dict:
    """Parse a converted GeoJSON file.

    Raises:
        ConversionError: If ogr2ogr produced no readable output.
    """
    try:
        with path.open(encoding="utf-8") as handle:
            return json.load(handle)
    except (OSError, json.JSONDecodeError) as exc:
        raise exceptions.ConversionError(
            "Converted dataset is not valid GeoJSON",
            context={"file": path.name, "error": str(exc)},
        ) from exc


def load_candidates(
    source_path: pathlib.Path,
    settings: config.Settings,
) -> db_models.CandidateSet:
    """Convert, parse and normalize a dataset into a candidate set.

    The intermediate GeoJSON is removed once parsed.
    """
    geojson_path = convert_to_geojson(
        pathlib.Path(source_path),
        settings.work_dir,
        timeout=settings.conversion_timeout_seconds,
    )
    try:
        feature_collection = read_geojson(geojson_path)
    finally:
        geojson_path.unlink(missing_ok=True)
    logger.info(
        "Converted %s (%d features)",
        source_path.name,
        len(feature_collection.get("features") or []),
    )
    return normalizer.normalize(feature_collection)
