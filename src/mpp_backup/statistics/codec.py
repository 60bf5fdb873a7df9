"""Capture and install planner statistics across engine versions.

Capture reduces raw ``pg_statistic``/``pg_class`` rows to version-neutral
``AttributeStatistic``/``TupleStatistic`` models under the *source*
feature set.  Install writes them straight into the *target* catalogs
without re-running ANALYZE.

Slot positions are preserved end to end.  A slot the target cannot hold
(beyond its slot count, or of a kind it does not know) is left empty and
reported as ``UnsupportedStatisticKind``; it is never shifted into a lower
slot number.

Distinct counts follow the catalog sign convention and are passed through
unchanged:

- ``> 0``: absolute number of distinct values
- ``< 0``: ``-(distinct / rows)``, a fraction that scales with the table
- ``0``: unknown

Usage:
    from mpp_backup.statistics.codec import capture_attribute, install_relation_statistics

    stat = capture_attribute(row, source_features)
    result = await install_relation_statistics(worker, tuple_stat, [stat], target_features)
    for warning in result.warnings:
        logger.warning("%s", warning)
"""

import json
import logging
from typing import Any

from pydantic import BaseModel, Field
from sqlalchemy.exc import SQLAlchemyError

from mpp_backup.adapters.base import DatabaseClient
from mpp_backup.catalog.models import (
    AttributeStatistic,
    StatisticSlot,
    TupleStatistic,
    qualify,
)
from mpp_backup.errors import CatalogWriteFailure, UnsupportedStatisticKind
from mpp_backup.statistics.versions import (
    CATALOG_SLOT_COLUMNS,
    MAX_STATISTIC_SLOTS,
    EngineFeatures,
    StatisticKind,
)

logger = logging.getLogger(__name__)

STATISTICS_FORMAT_VERSION = 1


# ------------------------------------------------------------------
# Distinct-count convention
# ------------------------------------------------------------------


def encode_distinct(distinct_values: int, total_rows: float, scales_with_rows: bool = True) -> float:
    """Encode a distinct-value count using the catalog sign convention.

    Args:
        distinct_values: Number of distinct values observed.
        total_rows: Number of rows the count was taken over.
        scales_with_rows: When ``True`` the count is stored as a negative
            fraction of the row count, so it keeps tracking the table as it
            grows.  When ``False`` the absolute count is stored.

    Returns:
        ``0.0`` when unknown, ``-(distinct/rows)`` for fractions, or the
        positive absolute count.

    Example:
        >>> encode_distinct(100, 100)
        -1.0
        >>> encode_distinct(2, 4, scales_with_rows=False)
        2.0
    """
    if distinct_values <= 0 or total_rows <= 0:
        return 0.0
    if scales_with_rows:
        return -min(distinct_values / total_rows, 1.0)
    return float(distinct_values)


# ------------------------------------------------------------------
# Capture
# ------------------------------------------------------------------


def _as_text_list(value: Any) -> list[str | None] | None:
    if value is None:
        return None
    return [None if v is None else str(v) for v in value]


def capture_attribute(row: dict[str, Any], source: EngineFeatures) -> AttributeStatistic:
    """Build an ``AttributeStatistic`` from a raw catalog row.

    ``row`` uses the flat naming of the statistics query (``kind1``,
    ``operator1``, ``collation1``, ``numbers1``, ``values1``, ...).  Slots
    past ``source.slot_count`` are dropped; collations are left unset when
    the source does not populate them.
    """
    slots: list[StatisticSlot | None] = []
    for number in range(1, MAX_STATISTIC_SLOTS + 1):
        kind = int(row.get(f"kind{number}") or 0)
        if number > source.slot_count or kind == 0:
            slots.append(None)
            continue
        collation = int(row.get(f"collation{number}") or 0) if source.supports_collation else 0
        slots.append(
            StatisticSlot(
                kind=kind,
                operator=int(row.get(f"operator{number}") or 0),
                collation=collation,
                numbers=_as_text_list(row.get(f"numbers{number}")),
                values=_as_text_list(row.get(f"values{number}")),
            )
        )

    for number in range(MAX_STATISTIC_SLOTS + 1, CATALOG_SLOT_COLUMNS + 1):
        if row.get(f"kind{number}"):
            logger.debug(
                "Dropping slot %d of %s.%s at capture",
                number,
                row.get("table"),
                row.get("att_name"),
            )

    return AttributeStatistic(
        relation_oid=int(row["relation_oid"]),
        schema_name=row["schema_name"],
        table=row["table"],
        att_name=row["att_name"],
        type_name=row["type_name"],
        type_schema=row.get("type_schema") or "pg_catalog",
        element_type_name=row.get("element_type_name"),
        element_type_schema=row.get("element_type_schema"),
        att_number=int(row["att_number"]),
        inherit=bool(row.get("inherit", False)),
        null_fraction=float(row.get("null_fraction") or 0.0),
        width=int(row.get("width") or 0),
        distinct=float(row.get("distinct") or 0.0),
        slots=slots,
    )


def capture_tuple(row: dict[str, Any]) -> TupleStatistic:
    """Build a ``TupleStatistic`` from a raw ``pg_class`` row."""
    return TupleStatistic(
        relation_oid=int(row["relation_oid"]),
        schema_name=row["schema_name"],
        table=row["table"],
        rel_tuples=float(row.get("rel_tuples") or 0.0),
        rel_pages=int(row.get("rel_pages") or 0),
    )


# ------------------------------------------------------------------
# Install
# ------------------------------------------------------------------


class InstallResult(BaseModel):
    """Outcome of installing one relation's statistics."""

    relation: str
    tuples_written: bool = False
    attributes_written: int = 0
    warnings: list[str] = Field(default_factory=list)


def plan_slots(
    stat: AttributeStatistic,
    target: EngineFeatures,
) -> tuple[list[StatisticSlot | None], list[UnsupportedStatisticKind]]:
    """Map captured slots onto what the target can hold, position for position."""
    planned: list[StatisticSlot | None] = []
    skipped: list[UnsupportedStatisticKind] = []
    supported = target.supported_kinds

    for number, slot in enumerate(stat.slots, start=1):
        if slot is None:
            planned.append(None)
            continue
        if number > target.slot_count:
            reason = f"target exposes {target.slot_count} slots"
        elif slot.kind not in supported:
            reason = f"kind not supported by {target.label}"
        else:
            collation = slot.collation if target.supports_collation else 0
            planned.append(slot.model_copy(update={"collation": collation}))
            continue
        skipped.append(
            UnsupportedStatisticKind(stat.relation_fqn, stat.att_name, number, slot.kind, reason)
        )
        planned.append(None)

    return planned, skipped


def _array_literal(values: list[str | None], quote: bool) -> str:
    """Render a Postgres array literal from textual elements."""
    parts = []
    for value in values:
        if value is None:
            parts.append("NULL")
        elif quote:
            escaped = value.replace("\\", "\\\\").replace('"', '\\"')
            parts.append(f'"{escaped}"')
        else:
            parts.append(value)
    return "{" + ",".join(parts) + "}"


_FLOAT_VALUED_KINDS = frozenset({StatisticKind.RANGE_LENGTH_HISTOGRAM, StatisticKind.NDV_BY_SEGMENTS})


def slot_value_type(stat: AttributeStatistic, slot: StatisticSlot) -> str:
    """Return the element type of a slot's ``stavaluesN`` array.

    Most kinds store values of the column type.  Length histograms and
    per-segment distinct counts store ``float8``.  Element MCVs store the
    array element type, or ``text`` for ``tsvector`` lexemes.
    """
    if slot.kind in _FLOAT_VALUED_KINDS:
        return "pg_catalog.float8"
    if slot.kind == StatisticKind.MCELEM:
        if stat.element_type_name:
            return qualify(stat.element_type_schema or "pg_catalog", stat.element_type_name)
        # tsvector lexemes
        return "pg_catalog.text"
    return qualify(stat.type_schema, stat.type_name)


def build_attribute_insert(
    stat: AttributeStatistic,
    slots: list[StatisticSlot | None],
    target: EngineFeatures,
) -> tuple[str, dict[str, Any]]:
    """Build the ``INSERT INTO pg_statistic`` statement for one column."""
    columns = ["starelid", "staattnum", "stainherit", "stanullfrac", "stawidth", "stadistinct"]
    values = [
        "CAST(CAST(:relation AS text) AS regclass)",
        "CAST(:attnum AS smallint)",
        "CAST(:inherit AS boolean)",
        "CAST(:nullfrac AS real)",
        "CAST(:width AS integer)",
        "CAST(:distinct AS real)",
    ]
    params: dict[str, Any] = {
        "relation": stat.relation_fqn,
        "attnum": stat.att_number,
        "inherit": stat.inherit,
        "nullfrac": stat.null_fraction,
        "width": stat.width,
        "distinct": stat.distinct,
    }

    padded = list(slots) + [None] * (CATALOG_SLOT_COLUMNS - len(slots))
    numbered = list(enumerate(padded, start=1))

    for n, slot in numbered:
        columns.append(f"stakind{n}")
        values.append(f"CAST(:kind{n} AS smallint)")
        params[f"kind{n}"] = slot.kind if slot else 0
    for n, slot in numbered:
        columns.append(f"staop{n}")
        values.append(f"CAST(:op{n} AS oid)")
        params[f"op{n}"] = slot.operator if slot else 0
    if target.supports_collation:
        for n, slot in numbered:
            columns.append(f"stacoll{n}")
            values.append(f"CAST(:coll{n} AS oid)")
            params[f"coll{n}"] = slot.collation if slot else 0
    for n, slot in numbered:
        columns.append(f"stanumbers{n}")
        if slot is not None and slot.numbers is not None:
            values.append(f"CAST(CAST(:numbers{n} AS text) AS real[])")
            params[f"numbers{n}"] = _array_literal(slot.numbers, quote=False)
        else:
            values.append("NULL")
    for n, slot in numbered:
        columns.append(f"stavalues{n}")
        if slot is not None and slot.values is not None:
            values.append(
                f"array_in(CAST(CAST(:values{n} AS text) AS cstring), "
                f"CAST(CAST(:type{n} AS text) AS regtype), -1)"
            )
            params[f"values{n}"] = _array_literal(slot.values, quote=True)
            params[f"type{n}"] = slot_value_type(stat, slot)
        else:
            values.append("NULL")

    sql = (
        f"INSERT INTO pg_statistic ({', '.join(columns)})\n"
        f"VALUES ({', '.join(values)})"
    )
    return sql, params


async def install_tuple_statistic(client: DatabaseClient, stat: TupleStatistic) -> None:
    """Write row and page estimates into ``pg_class``."""
    await client.execute(
        "UPDATE pg_class SET relpages = CAST(:pages AS integer), "
        "reltuples = CAST(:tuples AS real) "
        "WHERE oid = CAST(CAST(:relation AS text) AS regclass)",
        {"pages": stat.rel_pages, "tuples": stat.rel_tuples, "relation": stat.relation_fqn},
    )


async def install_attribute_statistic(
    client: DatabaseClient,
    stat: AttributeStatistic,
    target: EngineFeatures,
) -> list[UnsupportedStatisticKind]:
    """Replace one column's ``pg_statistic`` row.

    Returns:
        Slots that were left empty because the target cannot hold them.
    """
    slots, skipped = plan_slots(stat, target)
    await client.execute(
        "DELETE FROM pg_statistic "
        "WHERE starelid = CAST(CAST(:relation AS text) AS regclass) "
        "AND staattnum = CAST(:attnum AS smallint) "
        "AND stainherit = CAST(:inherit AS boolean)",
        {"relation": stat.relation_fqn, "attnum": stat.att_number, "inherit": stat.inherit},
    )
    sql, params = build_attribute_insert(stat, slots, target)
    await client.execute(sql, params)
    return skipped


async def install_relation_statistics(
    client: DatabaseClient,
    tuple_stat: TupleStatistic | None,
    attribute_stats: list[AttributeStatistic],
    target: EngineFeatures,
) -> InstallResult:
    """Install all statistics of one relation.

    Unsupported slots are skipped and reported in ``warnings``.

    Raises:
        CatalogWriteFailure: If any catalog write fails.  Only this
            relation's statistics are affected.
    """
    relation = (
        tuple_stat.relation_fqn
        if tuple_stat is not None
        else attribute_stats[0].relation_fqn if attribute_stats else "?"
    )
    result = InstallResult(relation=relation)

    if tuple_stat is not None:
        try:
            await install_tuple_statistic(client, tuple_stat)
        except SQLAlchemyError as e:
            raise CatalogWriteFailure(relation, None, e) from e
        result.tuples_written = True

    for stat in attribute_stats:
        try:
            skipped = await install_attribute_statistic(client, stat, target)
        except SQLAlchemyError as e:
            raise CatalogWriteFailure(relation, stat.att_name, e) from e
        for warning in skipped:
            logger.warning("%s", warning)
            result.warnings.append(str(warning))
        result.attributes_written += 1

    return result


# ------------------------------------------------------------------
# Persisted record
# ------------------------------------------------------------------


class StatisticsRecord(BaseModel):
    """Statistics of one backup, with the feature set they were captured under."""

    format_version: int = STATISTICS_FORMAT_VERSION
    features: EngineFeatures
    tuples: list[TupleStatistic] = Field(default_factory=list)
    attributes: list[AttributeStatistic] = Field(default_factory=list)

    def for_relation(self, relation_oid: int) -> tuple[TupleStatistic | None, list[AttributeStatistic]]:
        tuple_stat = next((t for t in self.tuples if t.relation_oid == relation_oid), None)
        attrs = sorted(
            (a for a in self.attributes if a.relation_oid == relation_oid),
            key=lambda a: a.att_number,
        )
        return tuple_stat, attrs

    def relation_oids(self) -> set[int]:
        return {t.relation_oid for t in self.tuples} | {a.relation_oid for a in self.attributes}

    def to_json(self) -> str:
        data = {
            "format_version": self.format_version,
            "features": self.features.model_dump(mode="json"),
            "tuples": [t.model_dump(mode="json") for t in self.tuples],
            "attributes": [a.to_record() for a in self.attributes],
        }
        return json.dumps(data, indent=2) + "\n"

    @classmethod
    def from_json(cls, text: str) -> "StatisticsRecord":
        """Load a record written by ``to_json()``.

        Raises:
            ValueError: Malformed JSON or unsupported format version.
        """
        try:
            data = json.loads(text)
        except json.JSONDecodeError as e:
            raise ValueError(f"Invalid statistics JSON: {e}") from e
        version = data.get("format_version")
        if version != STATISTICS_FORMAT_VERSION:
            raise ValueError(
                f"Unsupported statistics version {version!r} "
                f"(expected {STATISTICS_FORMAT_VERSION})"
            )
        return cls(
            format_version=version,
            features=EngineFeatures.model_validate(data.get("features")),
            tuples=[TupleStatistic.model_validate(t) for t in data.get("tuples", [])],
            attributes=[AttributeStatistic.from_record(a) for a in data.get("attributes", [])],
        )
