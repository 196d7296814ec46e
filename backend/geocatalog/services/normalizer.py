"""Turn a GeoJSON feature collection into a single-type candidate set.

Multi-geometries are decomposed into their parts. Every part gets its own
local id while keeping the fid of the feature it came from, so attribute
rows (keyed by feature fid) can follow the parts through the correspondence.
"""

from __future__ import annotations

import itertools
import logging
from typing import TYPE_CHECKING, Any

import shapely
import shapely.errors
import shapely.geometry

from geocatalog.core import exceptions
from geocatalog.db import models as db_models
from geocatalog.services import change_detector

if TYPE_CHECKING:
    from collections.abc import Mapping

logger = logging.getLogger(__name__)


def _shape(geometry: Mapping[str, Any]) -> shapely.Geometry:
    try:
        return shapely.force_2d(shapely.geometry.shape(geometry))
    except (shapely.errors.ShapelyError, ValueError, KeyError) as exc:
        raise exceptions.InputError(
            "Malformed geometry",
            reason="weird-file",
            context={"error": str(exc)},
        ) from exc


def _valid_parts(
    geom: shapely.Geometry,
    geom_type: db_models.GeometryType,
) -> list[shapely.Geometry]:
    """Single parts of ``geom`` after repair, of its own folded type only.

    ``make_valid`` can split a self-intersecting polygon into several
    polygons plus stray lines or points; only parts of ``geom_type`` stay.
    """
    if not geom.is_valid:
        geom = shapely.make_valid(geom)
    return [
        part
        for part in shapely.get_parts(shapely.get_parts(geom))
        if part.geom_type.upper() == geom_type and not part.is_empty
    ]


def normalize(feature_collection: Mapping[str, Any]) -> db_models.CandidateSet:
    """Build a candidate set from a GeoJSON feature collection.

    Features without geometry are ignored. Invalid geometries are repaired
    with ``make_valid``. Feature fids are assigned in file order starting
    at 1.

    Args:
        feature_collection: Parsed GeoJSON FeatureCollection.

    Returns:
        CandidateSet with decomposed parts, attribute rows and their
        inferred column schema.

    Raises:
        InputError: "no-geom" when nothing carries a geometry, "weird-file"
            for unsupported or mixed geometry types.
    """
    local_ids = itertools.count(1)
    features: list[db_models.CandidateGeometry] = []
    attributes: dict[int, dict[str, Any]] = {}
    geom_types: set[db_models.GeometryType] = set()

    for fid, feature in enumerate(
        feature_collection.get("features") or [], start=1
    ):
        geometry = feature.get("geometry")
        if not geometry:
            continue
        geom = _shape(geometry)
        if geom.is_empty:
            continue
        geom_type = db_models.fold_geometry_type(geom.geom_type)
        parts = _valid_parts(geom, geom_type)
        if not parts:
            continue
        geom_types.add(geom_type)
        for part in parts:
            features.append(
                db_models.CandidateGeometry(
                    local_id=next(local_ids),
                    fid=fid,
                    geom=part,
                )
            )
        attributes[fid] = dict(feature.get("properties") or {})

    if not features:
        raise exceptions.InputError(
            "Dataset contains no geometries",
            reason="no-geom",
        )
    if len(geom_types) > 1:
        raise exceptions.InputError(
            "Dataset mixes geometry types",
            reason="weird-file",
            context={"geom_types": sorted(geom_types)},
        )

    schema = change_detector.infer_schema(attributes.values())
    attributes = {
        fid: {
            column: value
            for column, value in row.items()
            if column in schema
        }
        for fid, row in attributes.items()
    }
    geom_type = geom_types.pop()
    logger.debug(
        "Normalized %d features into %d %s parts",
        len(attributes),
        len(features),
        geom_type,
    )
    return db_models.CandidateSet(
        geom_type=geom_type,
        features=features,
        attributes=attributes,
        schema=schema,
    )
