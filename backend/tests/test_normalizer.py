"""Tests for GeoJSON normalization into candidate sets.

Covers decomposition of multi-geometries into parts, fid and local id
assignment, attribute filtering through the inferred schema, and the
"no-geom" and "weird-file" rejections.

See Also:
    - backend/geocatalog/services/normalizer.py
"""

from __future__ import annotations

from typing import Any

import pytest

from geocatalog.core import exceptions
from geocatalog.db import models as db_models
from geocatalog.services import normalizer


def _feature(
    geometry: dict[str, Any] | None,
    **properties: Any,
) -> dict[str, Any]:
    return {"type": "Feature", "geometry": geometry, "properties": properties}


def _collection(*features: dict[str, Any]) -> dict[str, Any]:
    return {"type": "FeatureCollection", "features": list(features)}


def test_normalize_decomposes_multipart_features() -> None:
    """Each part gets a local id and keeps its feature fid."""
    candidates = normalizer.normalize(
        _collection(
            _feature(
                {"type": "Point", "coordinates": [10.0, 20.0]},
                name="Oak",
            ),
            _feature(
                {
                    "type": "MultiPoint",
                    "coordinates": [[30.0, 40.0], [50.0, 60.0]],
                },
                name="Elm",
            ),
        )
    )

    assert candidates.geom_type is db_models.GeometryType.POINT
    assert [(f.local_id, f.fid) for f in candidates.features] == [
        (1, 1),
        (2, 2),
        (3, 2),
    ]
    assert candidates.features[2].geom.x == 50.0
    assert candidates.attributes == {1: {"name": "Oak"}, 2: {"name": "Elm"}}
    assert candidates.schema == {"name": db_models.ColumnType.TEXT}


def test_normalize_drops_z_and_bookkeeping_columns() -> None:
    """Coordinates are forced to 2D and ignored columns are removed."""
    candidates = normalizer.normalize(
        _collection(
            _feature(
                {
                    "type": "LineString",
                    "coordinates": [[0.0, 0.0, 5.0], [10.0, 0.0, 5.0]],
                },
                OBJECTID=4,
                Shape_Length=10.0,
                lanes=2,
            )
        )
    )

    assert candidates.geom_type is db_models.GeometryType.LINESTRING
    assert not candidates.features[0].geom.has_z
    assert candidates.attributes == {1: {"lanes": 2}}


def test_normalize_skips_features_without_geometry() -> None:
    """Features without geometry keep their position in the fid order."""
    candidates = normalizer.normalize(
        _collection(
            _feature(None, name="orphan"),
            _feature(
                {
                    "type": "Polygon",
                    "coordinates": [[[0, 0], [1, 0], [1, 1], [0, 0]]],
                }
            ),
        )
    )

    assert [f.fid for f in candidates.features] == [2]
    assert 1 not in candidates.attributes


def test_normalize_rejects_empty_dataset() -> None:
    """A dataset without any geometry is rejected as no-geom."""
    with pytest.raises(exceptions.InputError) as excinfo:
        normalizer.normalize(_collection(_feature(None, name="orphan")))
    assert excinfo.value.reason == "no-geom"


def test_normalize_rejects_mixed_geometry_types() -> None:
    """Points and lines in one file are a weird file."""
    with pytest.raises(exceptions.InputError) as excinfo:
        normalizer.normalize(
            _collection(
                _feature({"type": "Point", "coordinates": [0, 0]}),
                _feature(
                    {"type": "LineString", "coordinates": [[0, 0], [1, 1]]}
                ),
            )
        )
    assert excinfo.value.reason == "weird-file"


def test_normalize_rejects_geometry_collections() -> None:
    """Geometry collections have no single type."""
    with pytest.raises(exceptions.InputError) as excinfo:
        normalizer.normalize(
            _collection(
                _feature(
                    {
                        "type": "GeometryCollection",
                        "geometries": [
                            {"type": "Point", "coordinates": [0, 0]}
                        ],
                    }
                )
            )
        )
    assert excinfo.value.reason == "weird-file"


def test_normalize_rejects_malformed_geometry() -> None:
    """Geometries shapely cannot build are a weird file."""
    with pytest.raises(exceptions.InputError) as excinfo:
        normalizer.normalize(
            _collection(_feature({"type": "Blob", "coordinates": [0, 0]}))
        )
    assert excinfo.value.reason == "weird-file"


def test_normalize_repairs_self_intersecting_polygon() -> None:
    """A bowtie is split into two valid triangles of the same feature."""
    candidates = normalizer.normalize(
        _collection(
            _feature(
                {
                    "type": "Polygon",
                    "coordinates": [
                        [[0, 0], [10, 10], [10, 0], [0, 10], [0, 0]]
                    ],
                },
                name="plaza",
            )
        )
    )

    assert candidates.geom_type is db_models.GeometryType.POLYGON
    assert [(f.local_id, f.fid) for f in candidates.features] == [
        (1, 1),
        (2, 1),
    ]
    assert all(f.geom.is_valid for f in candidates.features)
    assert all(f.geom.geom_type == "Polygon" for f in candidates.features)
    assert sum(f.geom.area for f in candidates.features) == 50.0


def test_normalize_drops_parts_of_other_types_after_repair() -> None:
    """Collapsed rings leave no polygon and are skipped."""
    candidates = normalizer.normalize(
        _collection(
            _feature(
                {
                    "type": "Polygon",
                    "coordinates": [[[0, 0], [5, 0], [10, 0], [0, 0]]],
                }
            ),
            _feature(
                {
                    "type": "Polygon",
                    "coordinates": [[[0, 0], [1, 0], [1, 1], [0, 0]]],
                }
            ),
        )
    )

    assert [f.fid for f in candidates.features] == [2]
