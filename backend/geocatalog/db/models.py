"""Data models for the spatial catalog.

This module defines the core data structures shared by the matcher, the
correspondence resolver, the attribute change detector and the repositories.
Geometries are Shapely objects in EPSG:3857 (Web Mercator).

Example:
    Creating a collection and allocating feature identifiers:
        >>> from geocatalog.db.models import Collection, GeometryType
        >>> collection = Collection(
        ...     id=None,
        ...     name="trees",
        ...     geom_type=GeometryType.POINT,
        ... )
        >>> collection.next_fid()
        1
"""

from __future__ import annotations

import dataclasses
import datetime
import enum
from typing import TYPE_CHECKING, Any

from geocatalog.core import exceptions

if TYPE_CHECKING:
    from shapely.geometry.base import BaseGeometry

BBox = tuple[float, float, float, float]


def _now() -> datetime.datetime:
    return datetime.datetime.now(tz=datetime.UTC)


class GeometryType(enum.StrEnum):
    """Single geometry types a collection can hold."""

    POINT = "POINT"
    LINESTRING = "LINESTRING"
    POLYGON = "POLYGON"


_TYPE_FOLDING: dict[str, GeometryType] = {
    "POINT": GeometryType.POINT,
    "MULTIPOINT": GeometryType.POINT,
    "LINESTRING": GeometryType.LINESTRING,
    "MULTILINESTRING": GeometryType.LINESTRING,
    "LINEARRING": GeometryType.LINESTRING,
    "CURVEDLINE": GeometryType.LINESTRING,
    "POLYGON": GeometryType.POLYGON,
    "MULTIPOLYGON": GeometryType.POLYGON,
    "CURVEPOLYGON": GeometryType.POLYGON,
    "MULTISURFACE": GeometryType.POLYGON,
    "MULTICURVE": GeometryType.POLYGON,
}


def fold_geometry_type(raw: str) -> GeometryType:
    """Map a raw (possibly multi or curved) type name to its single type.

    Raises:
        InputError: If the type has no single-type counterpart.
    """
    try:
        return _TYPE_FOLDING[raw.upper()]
    except KeyError:
        raise exceptions.InputError(
            "Unsupported geometry type",
            reason="weird-file",
            context={"geom_type": raw},
        ) from None


class ColumnType(enum.StrEnum):
    """Typed attribute columns; arrays are homogeneous."""

    INTEGER = "integer"
    FLOAT = "float"
    TEXT = "text"
    INTEGER_ARRAY = "integer[]"
    FLOAT_ARRAY = "float[]"
    TEXT_ARRAY = "text[]"

    @property
    def is_array(self) -> bool:
        return self.value.endswith("[]")

    @property
    def scalar(self) -> ColumnType:
        """Element type for arrays, the type itself for scalars."""
        return ColumnType(self.value.removesuffix("[]"))

    def as_array(self) -> ColumnType:
        return self if self.is_array else ColumnType(f"{self.value}[]")


@dataclasses.dataclass
class Collection:
    """A named, typed group of canonical geometries sharing one theme.

    ``max_fid`` is the allocator state: ``next_fid()`` hands out the next
    unused feature identifier. It is only called inside the single-flight
    ingestion section, on a working copy that is persisted on commit.
    """

    id: int | None
    name: str
    geom_type: GeometryType
    bbox: BBox | None = None
    max_fid: int = 0
    created_at: datetime.datetime = dataclasses.field(default_factory=_now)

    def next_fid(self) -> int:
        self.max_fid += 1
        return self.max_fid


@dataclasses.dataclass(frozen=True)
class Source:
    """One timestamped ingestion event belonging to a collection.

    Attributes:
        id: Identifier, None until committed.
        collection_id: Owning collection, None until committed for new
            collections.
        created_at: Ingestion (download) time; orders sources in a
            collection.
        import_id: Upstream import identifier of the file.
        previous_id: Previous source of the same collection.
        license: Optional license string carried from the provider.
        manual: True when created through a manual merge.
        process: JSON-able classification record of the match.
    """

    id: int | None
    collection_id: int | None
    created_at: datetime.datetime
    import_id: str | None = None
    previous_id: int | None = None
    license: str | None = None
    manual: bool = False
    process: dict[str, Any] | None = None


@dataclasses.dataclass(eq=False)
class CanonicalGeometry:
    """Persisted single-type feature with a stable fid.

    A geometry is "live" while no other geometry points at it through
    ``previous_id``.
    """

    id: int | None
    collection_id: int | None
    source_id: int | None
    fid: int
    geom: BaseGeometry
    previous_id: int | None = None
    buffer: BaseGeometry | None = None
    buffer_radius: float | None = None

    def buffered(self, radius: float) -> BaseGeometry:
        """Return the buffered form, reusing the precomputed one if any."""
        if self.buffer is not None and self.buffer_radius == radius:
            return self.buffer
        return self.geom.buffer(radius)


@dataclasses.dataclass(frozen=True, eq=False)
class CandidateGeometry:
    """Transient feature extracted from an incoming file.

    ``local_id`` is unique per part, ``fid`` identifies the original feature
    the part was decomposed from.
    """

    local_id: int
    fid: int
    geom: BaseGeometry


@dataclasses.dataclass
class CandidateSet:
    """Normalized candidate features plus their tabular attributes.

    Attributes:
        geom_type: The single geometry type shared by all features.
        features: Decomposed single-type features.
        attributes: Attribute values keyed by candidate fid.
        schema: Column types of the attribute table.
    """

    geom_type: GeometryType
    features: list[CandidateGeometry]
    attributes: dict[int, dict[str, Any]] = dataclasses.field(
        default_factory=dict
    )
    schema: dict[str, ColumnType] = dataclasses.field(default_factory=dict)

    def __len__(self) -> int:
        return len(self.features)

    @property
    def local_ids(self) -> set[int]:
        return {feature.local_id for feature in self.features}


class CorrespondenceStatus(enum.StrEnum):
    MATCHED = "matched"
    REVISED = "revised"
    NEW = "new"
    SKIPPED = "skipped"


@dataclasses.dataclass(frozen=True)
class CorrespondenceEntry:
    """Outcome of pairing one candidate feature with a canonical feature."""

    candidate_local_id: int
    candidate_fid: int
    canonical_fid: int
    status: CorrespondenceStatus
    distance: float | None = None
    canonical_id: int | None = None


@dataclasses.dataclass(frozen=True)
class AttributeSnapshot:
    """One typed value in the append-only attribute log."""

    fid: int
    source_id: int | None
    column: str
    value: Any
    column_type: ColumnType
    timestamp: datetime.datetime


@dataclasses.dataclass
class MatchRecord:
    """Bookkeeping record for files that were not imported automatically.

    Pending records (Partial/None fidelity) wait for a manual merge and count
    against the admission ceiling; rejected files (no-geom, weird-file,
    corrupted) are recorded with ``pending=False``.
    """

    id: int | None
    import_id: str | None
    file: str | None
    message: str
    fidelity: str | None = None
    process: dict[str, Any] | None = None
    geom_type: str | None = None
    bbox: BBox | None = None
    centroid: tuple[float, float] | None = None
    pending: bool = True
    created_at: datetime.datetime = dataclasses.field(default_factory=_now)


@dataclasses.dataclass
class IngestionPlan:
    """Every write of one ingestion, committed as a single unit."""

    collection: Collection
    source: Source
    new_geometries: list[CanonicalGeometry]
    snapshots: list[AttributeSnapshot]
    resolved_match_id: int | None = None


@dataclasses.dataclass(frozen=True)
class CommitResult:
    collection_id: int
    source_id: int
    geometry_ids: list[int]
