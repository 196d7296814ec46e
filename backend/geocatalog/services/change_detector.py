"""Attribute change detection with type-aware tolerant equality.

Open data portals re-export the same values with different float precision
or with array elements in a different order. The comparison rules below
accept those variations so that only material changes reach the
append-only attribute log.

Example:
    >>> check_float(1.23456, 1.2)
    True
    >>> check_array_float([1.0, 2.0], [2.0, 1.0])
    True
    >>> check_text(" Foo ", "foo")
    True
"""

from __future__ import annotations

import dataclasses
import datetime
import decimal
import logging
from collections.abc import Callable, Iterable, Mapping, Sequence
from typing import Any

from geocatalog.db import models as db_models

logger = logging.getLogger(__name__)

IGNORED_COLUMNS = frozenset(
    {
        "shape_length",
        "shape_area",
        "geom",
        "geom_3857",
        "fid",
        "gml_id",
        "objectid",
    }
)

ScalarCheck = Callable[[Any, Any], bool]


def count_decimals(value: float | int | str) -> int:
    """Number of significant decimal places of a number.

    >>> count_decimals(1.25)
    2
    >>> count_decimals(3.0)
    0
    """
    number = decimal.Decimal(str(value))
    if not number.is_finite() or number == number.to_integral_value():
        return 0
    exponent = number.normalize().as_tuple().exponent
    return -int(exponent)


def check_integer(old: Any, new: Any) -> bool:
    """Exact equality, with numeric strings read as numbers."""
    return decimal.Decimal(str(old)) == decimal.Decimal(str(new))


def check_float(old: Any, new: Any) -> bool:
    """Compare floats tolerating precision differences.

    The higher-precision value is rounded half-up to the other value's
    decimal places; if that does not match it is truncated instead.
    """
    if float(old) == float(new):
        return True
    old_decimals = count_decimals(old)
    new_decimals = count_decimals(new)
    if old_decimals == new_decimals:
        return False
    if old_decimals > new_decimals:
        precise, coarse, places = old, new, new_decimals
    else:
        precise, coarse, places = new, old, old_decimals
    precise_number = decimal.Decimal(str(precise))
    coarse_number = decimal.Decimal(str(coarse))
    exponent = decimal.Decimal(1).scaleb(-places)
    for rounding in (decimal.ROUND_HALF_UP, decimal.ROUND_DOWN):
        rounded = precise_number.quantize(exponent, rounding=rounding)
        if rounded == coarse_number:
            return True
    return False


def check_text(old: Any, new: Any) -> bool:
    return str(old).strip().casefold() == str(new).strip().casefold()


def _check_array(
    old: Sequence[Any],
    new: Sequence[Any],
    check: ScalarCheck,
) -> bool:
    if len(old) != len(new):
        return False
    if all(check(a, b) for a, b in zip(old, new, strict=True)):
        return True
    # every new element needs a counterpart, not the other way round
    return all(any(check(a, b) for a in old) for b in new)


def check_array_integer(old: Sequence[Any], new: Sequence[Any]) -> bool:
    return _check_array(old, new, check_integer)


def check_array_float(old: Sequence[Any], new: Sequence[Any]) -> bool:
    return _check_array(old, new, check_float)


def check_array_text(old: Sequence[Any], new: Sequence[Any]) -> bool:
    return _check_array(old, new, check_text)


_CHECKS: dict[db_models.ColumnType, ScalarCheck] = {
    db_models.ColumnType.INTEGER: check_integer,
    db_models.ColumnType.FLOAT: check_float,
    db_models.ColumnType.TEXT: check_text,
    db_models.ColumnType.INTEGER_ARRAY: check_array_integer,
    db_models.ColumnType.FLOAT_ARRAY: check_array_float,
    db_models.ColumnType.TEXT_ARRAY: check_array_text,
}


def values_equal(
    column_type: db_models.ColumnType,
    old: Any,
    new: Any,
) -> bool:
    """Dispatch to the comparison rule of a column type.

    Values that cannot be coerced to the column type only compare equal
    when their text forms do.
    """
    if old is None or new is None:
        return old is None and new is None
    try:
        return _CHECKS[column_type](old, new)
    except (TypeError, ValueError, decimal.InvalidOperation):
        return str(old) == str(new)


def _is_timestamp(value: Any) -> bool:
    if isinstance(value, datetime.date):
        return True
    if not isinstance(value, str) or len(value) < 10:
        return False
    try:
        datetime.datetime.fromisoformat(value.replace("/", "-"))
    except ValueError:
        return False
    return True


def _scalar_type(value: Any) -> db_models.ColumnType | None:
    if isinstance(value, bool):
        return db_models.ColumnType.TEXT
    if isinstance(value, int):
        return db_models.ColumnType.INTEGER
    if isinstance(value, float):
        return db_models.ColumnType.FLOAT
    if isinstance(value, str):
        return db_models.ColumnType.TEXT
    return None


def _widen(
    current: db_models.ColumnType | None,
    found: db_models.ColumnType,
) -> db_models.ColumnType:
    if current is None or current == found:
        return found
    numeric = {db_models.ColumnType.INTEGER, db_models.ColumnType.FLOAT}
    if {current.scalar, found.scalar} <= numeric:
        widened = db_models.ColumnType.FLOAT
    else:
        widened = db_models.ColumnType.TEXT
    if current.is_array or found.is_array:
        return widened.as_array()
    return widened


def is_ignored(column: str) -> bool:
    return column.lower() in IGNORED_COLUMNS


def infer_schema(
    rows: Iterable[Mapping[str, Any]],
) -> dict[str, db_models.ColumnType]:
    """Infer column types from attribute rows.

    Bookkeeping columns, nested objects and columns holding only
    timestamps are left out. Integers mixed with floats widen to float,
    anything else mixed widens to text.
    """
    types: dict[str, db_models.ColumnType | None] = {}
    timestamps: dict[str, bool] = {}
    dropped: set[str] = set()
    for row in rows:
        for column, value in row.items():
            if value is None or column in dropped or is_ignored(column):
                continue
            if isinstance(value, list):
                element_types = {
                    _scalar_type(item) for item in value if item is not None
                }
                if None in element_types:
                    dropped.add(column)
                    continue
                if not element_types:
                    continue
                first, *rest = sorted(element_types)
                for element_type in rest:
                    first = _widen(first, element_type)
                types[column] = _widen(types.get(column), first.as_array())
                timestamps[column] = False
                continue
            scalar = _scalar_type(value)
            if scalar is None:
                dropped.add(column)
                continue
            types[column] = _widen(types.get(column), scalar)
            timestamps[column] = timestamps.get(column, True) and (
                _is_timestamp(value)
            )
    return {
        column: column_type
        for column, column_type in types.items()
        if column_type is not None
        and column not in dropped
        and not timestamps.get(column, False)
    }


@dataclasses.dataclass(frozen=True)
class AttributeChange:
    fid: int
    column: str
    value: Any
    column_type: db_models.ColumnType


@dataclasses.dataclass
class ChangeSet:
    """Outcome of one detection run."""

    timestamp: datetime.datetime
    changes: list[AttributeChange] = dataclasses.field(default_factory=list)

    @property
    def has_new_data(self) -> bool:
        return bool(self.changes)

    def to_snapshots(
        self,
        source_id: int | None = None,
    ) -> list[db_models.AttributeSnapshot]:
        return [
            db_models.AttributeSnapshot(
                fid=change.fid,
                source_id=source_id,
                column=change.column,
                value=change.value,
                column_type=change.column_type,
                timestamp=self.timestamp,
            )
            for change in self.changes
        ]


def _history_index(
    snapshots: Iterable[db_models.AttributeSnapshot],
) -> dict[tuple[int, str], list[db_models.AttributeSnapshot]]:
    index: dict[tuple[int, str], list[db_models.AttributeSnapshot]] = {}
    for snapshot in snapshots:
        index.setdefault((snapshot.fid, snapshot.column), []).append(snapshot)
    for history in index.values():
        history.sort(key=lambda snapshot: snapshot.timestamp)
    return index


def is_new_value(
    column_type: db_models.ColumnType,
    value: Any,
    history: Sequence[db_models.AttributeSnapshot],
    timestamp: datetime.datetime,
    source_id: int | None = None,
) -> bool:
    """Decide whether a value is worth appending to a time-ordered history.

    A snapshot from another source at exactly ``timestamp`` forces the value
    in. A snapshot from the same source at that timestamp is a re-run and is
    compared as is; this needs ``source_id``, which only callers recomputing
    the changes of a stored source have. A new ingestion passes None, so
    every stored snapshot at its timestamp counts as another source.
    Otherwise the value is new only when it differs from the closest prior
    and the closest next snapshot, whichever exist.
    """
    same_time = [s for s in history if s.timestamp == timestamp]
    if any(s.source_id != source_id for s in same_time):
        return True
    if same_time:
        return not values_equal(column_type, same_time[-1].value, value)

    prior = [s for s in history if s.timestamp < timestamp]
    later = [s for s in history if s.timestamp > timestamp]
    adjacent = ([prior[-1]] if prior else []) + ([later[0]] if later else [])
    return all(
        not values_equal(column_type, snapshot.value, value)
        for snapshot in adjacent
    )


def detect_changes(
    entries: Iterable[db_models.CorrespondenceEntry],
    attributes: Mapping[int, Mapping[str, Any]],
    schema: Mapping[str, db_models.ColumnType],
    prior_snapshots: Iterable[db_models.AttributeSnapshot],
    timestamp: datetime.datetime,
    source_id: int | None = None,
) -> ChangeSet:
    """Find attribute values that differ from their temporal neighbours.

    Args:
        entries: Correspondence of the ingestion. Skipped entries carry no
            attributes.
        attributes: Attribute rows keyed by candidate fid.
        schema: Column types of the candidate attribute table.
        prior_snapshots: Stored snapshots for the canonical fids involved.
        timestamp: Observation time of the new values.
        source_id: Stored source the values belong to when its changes are
            recomputed, None for an ingestion that is not committed yet.

    Returns:
        ChangeSet listing one change per (canonical fid, column) to append.
    """
    canonical_fids: dict[int, list[int]] = {}
    for entry in entries:
        if entry.status is db_models.CorrespondenceStatus.SKIPPED:
            continue
        fids = canonical_fids.setdefault(entry.candidate_fid, [])
        if entry.canonical_fid not in fids:
            fids.append(entry.canonical_fid)

    index = _history_index(prior_snapshots)
    change_set = ChangeSet(timestamp=timestamp)
    for candidate_fid, row in attributes.items():
        for canonical_fid in canonical_fids.get(candidate_fid, []):
            for column, value in row.items():
                column_type = schema.get(column)
                if value is None or column_type is None or is_ignored(column):
                    continue
                history = index.get((canonical_fid, column), [])
                if is_new_value(
                    column_type, value, history, timestamp, source_id
                ):
                    change_set.changes.append(
                        AttributeChange(
                            fid=canonical_fid,
                            column=column,
                            value=value,
                            column_type=column_type,
                        )
                    )

    logger.debug(
        "%d attribute changes across %d features",
        len(change_set.changes),
        len(canonical_fids),
    )
    return change_set
