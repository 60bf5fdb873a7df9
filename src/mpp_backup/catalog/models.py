"""Pydantic models for captured catalog objects and planner statistics."""

import re
from dataclasses import dataclass
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, field_validator

from mpp_backup.statistics.versions import MAX_STATISTIC_SLOTS


# ============================================================================
# Identifiers
# ============================================================================

_SIMPLE_IDENT = re.compile(r"^[a-z_][a-z0-9_$]*$")

_RESERVED_WORDS = frozenset(
    {
        "all", "analyse", "analyze", "and", "any", "array", "as", "asc",
        "both", "case", "cast", "check", "collate", "column", "constraint",
        "create", "current_date", "current_user", "default", "deferrable",
        "desc", "distinct", "distributed", "do", "else", "end", "except",
        "false", "fetch", "for", "foreign", "from", "grant", "group",
        "having", "in", "initially", "intersect", "into", "leading", "limit",
        "not", "null", "offset", "on", "only", "or", "order", "placing",
        "primary", "references", "returning", "select", "session_user",
        "some", "symmetric", "table", "then", "to", "trailing", "true",
        "union", "unique", "user", "using", "when", "where", "window", "with",
    }
)


def quote_ident(name: str) -> str:
    """Quote an identifier the way ``quote_ident()`` does server-side."""
    if _SIMPLE_IDENT.match(name) and name not in _RESERVED_WORDS:
        return name
    return '"' + name.replace('"', '""') + '"'


def qualify(schema_name: str, name: str) -> str:
    """Quoted ``schema.name``."""
    return f"{quote_ident(schema_name)}.{quote_ident(name)}"


# ============================================================================
# Kinds and phases
# ============================================================================


class Phase(str, Enum):
    """Restore phases, declared in execution order."""

    PREDATA = "predata"
    DATA = "data"
    POSTDATA = "postdata"
    STATISTICS = "statistics"

    @property
    def rank(self) -> int:
        return _PHASE_ORDER.index(self)


_PHASE_ORDER = list(Phase)


class ObjectKind(str, Enum):
    """Closed set of object kinds a TOC entry can describe."""

    SCHEMA = "schema"
    TYPE = "type"
    SEQUENCE = "sequence"
    PARTITIONED_TABLE = "partitioned_table"
    FUNCTION = "function"
    TABLE = "table"
    VIEW = "view"
    MATERIALIZED_VIEW = "materialized_view"
    INDEX = "index"
    CONSTRAINT = "constraint"
    FOREIGN_KEY = "foreign_key"
    TRIGGER = "trigger"
    RULE = "rule"
    TABLE_DATA = "table_data"
    STATISTICS = "statistics"


@dataclass(frozen=True)
class KindTraits:
    """Per-kind capabilities used by the resolver and executor."""

    phase: Phase
    drop_template: str
    deferrable: bool = False


KIND_TRAITS: dict[ObjectKind, KindTraits] = {
    ObjectKind.SCHEMA: KindTraits(Phase.PREDATA, "DROP SCHEMA IF EXISTS {identity} CASCADE;"),
    ObjectKind.TYPE: KindTraits(Phase.PREDATA, "DROP TYPE IF EXISTS {identity} CASCADE;"),
    ObjectKind.SEQUENCE: KindTraits(Phase.PREDATA, "DROP SEQUENCE IF EXISTS {identity} CASCADE;"),
    ObjectKind.FUNCTION: KindTraits(Phase.PREDATA, "DROP FUNCTION IF EXISTS {identity} CASCADE;"),
    ObjectKind.TABLE: KindTraits(Phase.PREDATA, "DROP TABLE IF EXISTS {identity} CASCADE;"),
    ObjectKind.VIEW: KindTraits(Phase.PREDATA, "DROP VIEW IF EXISTS {identity} CASCADE;"),
    ObjectKind.MATERIALIZED_VIEW: KindTraits(
        Phase.POSTDATA, "DROP MATERIALIZED VIEW IF EXISTS {identity} CASCADE;"
    ),
    ObjectKind.INDEX: KindTraits(Phase.POSTDATA, "DROP INDEX IF EXISTS {identity};"),
    ObjectKind.CONSTRAINT: KindTraits(
        Phase.POSTDATA,
        "ALTER TABLE {relation} DROP CONSTRAINT IF EXISTS {name};",
        deferrable=True,
    ),
    ObjectKind.FOREIGN_KEY: KindTraits(
        Phase.POSTDATA,
        "ALTER TABLE {relation} DROP CONSTRAINT IF EXISTS {name};",
        deferrable=True,
    ),
    ObjectKind.TRIGGER: KindTraits(
        Phase.POSTDATA, "DROP TRIGGER IF EXISTS {name} ON {relation};", deferrable=True
    ),
    ObjectKind.RULE: KindTraits(Phase.POSTDATA, "DROP RULE IF EXISTS {name} ON {relation};"),
    ObjectKind.TABLE_DATA: KindTraits(Phase.DATA, "TRUNCATE {relation};"),
    ObjectKind.STATISTICS: KindTraits(
        Phase.STATISTICS,
        "DELETE FROM pg_statistic WHERE starelid = '{relation}'::regclass;",
    ),
}


# ============================================================================
# Relations and catalog objects
# ============================================================================


class RelationKind(str, Enum):
    TABLE = "table"
    PARTITIONED_TABLE = "partitioned_table"
    VIEW = "view"
    MATERIALIZED_VIEW = "materialized_view"
    SEQUENCE = "sequence"


class Relation(BaseModel):
    """A schema-qualified relation captured from the source catalog."""

    model_config = ConfigDict(frozen=True)

    oid: int
    schema_name: str
    name: str
    kind: RelationKind = RelationKind.TABLE
    modification_count: int | None = None  # append-optimized tables only
    parent_oid: int | None = None
    # legacy partition children are created by their root's DDL
    created_by_parent: bool = False

    @property
    def fqn(self) -> str:
        return qualify(self.schema_name, self.name)

    @property
    def has_data(self) -> bool:
        return self.kind == RelationKind.TABLE


class CatalogObject(BaseModel):
    """One backed-up catalog object with its creation statement.

    ``relation_oid``/``relation_name`` point at the owning relation for
    dependent objects (indexes, constraints, triggers, rules) and at the
    object itself for relations.  ``identity`` is the quoted name used by
    DROP; functions carry their argument list there.
    """

    model_config = ConfigDict(frozen=True)

    oid: int
    kind: ObjectKind
    schema_name: str
    name: str
    definition: str
    depends_on: frozenset[int] = Field(default_factory=frozenset)
    relation_oid: int | None = None
    relation_name: str | None = None
    identity: str | None = None

    @property
    def traits(self) -> KindTraits:
        return KIND_TRAITS[self.kind]

    @property
    def phase(self) -> Phase:
        return self.traits.phase

    @property
    def qualified_name(self) -> str:
        if self.kind == ObjectKind.SCHEMA:
            return quote_ident(self.name)
        return qualify(self.schema_name, self.name)

    def sort_key(self) -> tuple[str, str, str]:
        return (self.schema_name, self.name, self.kind.value)

    def dependencies(self) -> frozenset[int]:
        return self.depends_on - {self.oid}

    def emit_create(self) -> str:
        statement = self.definition.strip()
        if not statement.endswith(";"):
            statement += ";"
        return statement

    def emit_drop(self) -> str:
        return self.traits.drop_template.format(
            identity=self.identity or self.qualified_name,
            name=quote_ident(self.name),
            relation=self.relation_name or self.qualified_name,
        )


# ============================================================================
# Planner statistics
# ============================================================================


class StatisticSlot(BaseModel):
    """One ``pg_statistic`` slot.

    ``numbers`` and ``values`` are opaque textual encodings, captured
    verbatim.  Their element order is whatever the source returned and is
    not guaranteed to be stable across captures; compare sorted copies.
    """

    kind: int
    operator: int = 0
    collation: int = 0
    numbers: list[str | None] | None = None
    values: list[str | None] | None = None


class AttributeStatistic(BaseModel):
    """Planner statistics for one (relation, column)."""

    relation_oid: int
    schema_name: str
    table: str
    att_name: str
    type_name: str
    type_schema: str = "pg_catalog"
    # array columns only
    element_type_name: str | None = None
    element_type_schema: str | None = None
    att_number: int
    inherit: bool = False
    null_fraction: float = 0.0
    width: int = 0
    # >0 absolute count, <0 fraction of rows (-distinct/rows), 0 unknown
    distinct: float = 0.0
    slots: list[StatisticSlot | None] = Field(
        default_factory=lambda: [None] * MAX_STATISTIC_SLOTS
    )

    @field_validator("slots")
    @classmethod
    def _pad_slots(cls, value: list[StatisticSlot | None]) -> list[StatisticSlot | None]:
        if len(value) > MAX_STATISTIC_SLOTS:
            raise ValueError(
                f"At most {MAX_STATISTIC_SLOTS} statistic slots, got {len(value)}"
            )
        return list(value) + [None] * (MAX_STATISTIC_SLOTS - len(value))

    @property
    def relation_fqn(self) -> str:
        return qualify(self.schema_name, self.table)

    @property
    def populated_slots(self) -> int:
        return sum(1 for slot in self.slots if slot is not None)

    def slot(self, number: int) -> StatisticSlot | None:
        """1-based slot accessor."""
        return self.slots[number - 1]

    def to_record(self) -> dict:
        """Flatten into the versioned statistics record layout."""
        record = self.model_dump(exclude={"slots"})
        for number, slot in enumerate(self.slots, start=1):
            record[f"kind{number}"] = slot.kind if slot else 0
            record[f"operator{number}"] = slot.operator if slot else 0
            record[f"collation{number}"] = slot.collation if slot else 0
            record[f"numbers{number}"] = slot.numbers if slot else None
            record[f"values{number}"] = slot.values if slot else None
        return record

    @classmethod
    def from_record(cls, record: dict) -> "AttributeStatistic":
        data = dict(record)
        slots: list[StatisticSlot | None] = []
        for number in range(1, MAX_STATISTIC_SLOTS + 1):
            kind = data.pop(f"kind{number}", 0) or 0
            operator = data.pop(f"operator{number}", 0) or 0
            collation = data.pop(f"collation{number}", 0) or 0
            numbers = data.pop(f"numbers{number}", None)
            values = data.pop(f"values{number}", None)
            if kind:
                slots.append(
                    StatisticSlot(
                        kind=kind,
                        operator=operator,
                        collation=collation,
                        numbers=numbers,
                        values=values,
                    )
                )
            else:
                slots.append(None)
        return cls(**data, slots=slots)


class TupleStatistic(BaseModel):
    """Row and page estimates for one relation.

    ``rel_pages`` depends on the hardware and storage layout of the
    source cluster; never compare it across environments.
    """

    relation_oid: int
    schema_name: str
    table: str
    rel_tuples: float = 0.0
    rel_pages: int = 0

    @property
    def relation_fqn(self) -> str:
        return qualify(self.schema_name, self.table)
