"""Tests for catalog models, filters and TOC entry models."""

import pytest
from pydantic import ValidationError

from mpp_backup.catalog.filters import FilterSpec
from mpp_backup.catalog.models import (
    AttributeStatistic,
    CatalogObject,
    ObjectKind,
    Phase,
    Relation,
    RelationKind,
    StatisticSlot,
    qualify,
    quote_ident,
)
from mpp_backup.toc.models import ByteRange, TOCEntry


# ------------------------------------------------------------------
# Identifiers
# ------------------------------------------------------------------


class TestQuoteIdent:
    """quote_ident() matches the server-side quoting rules."""

    def test_simple_name_unquoted(self):
        assert quote_ident("orders") == "orders"

    def test_mixed_case_quoted(self):
        assert quote_ident("Orders") == '"Orders"'

    def test_reserved_word_quoted(self):
        assert quote_ident("select") == '"select"'

    def test_embedded_quote_doubled(self):
        assert quote_ident('we"ird') == '"we""ird"'

    def test_leading_digit_quoted(self):
        assert quote_ident("2024_sales") == '"2024_sales"'

    def test_qualify(self):
        assert qualify("Sales", "orders") == '"Sales".orders'


# ------------------------------------------------------------------
# Phases and kinds
# ------------------------------------------------------------------


class TestPhase:
    def test_rank_follows_declaration_order(self):
        ranks = [p.rank for p in (Phase.PREDATA, Phase.DATA, Phase.POSTDATA, Phase.STATISTICS)]
        assert ranks == [0, 1, 2, 3]


class TestCatalogObject:
    """Statement emission and phase assignment."""

    def test_table_is_predata(self):
        obj = CatalogObject(
            oid=1, kind=ObjectKind.TABLE, schema_name="public", name="t", definition="CREATE TABLE t ()"
        )
        assert obj.phase == Phase.PREDATA

    def test_index_and_constraint_are_postdata(self):
        for kind in (ObjectKind.INDEX, ObjectKind.CONSTRAINT, ObjectKind.FOREIGN_KEY, ObjectKind.TRIGGER):
            obj = CatalogObject(oid=1, kind=kind, schema_name="s", name="n", definition="x")
            assert obj.phase == Phase.POSTDATA

    def test_emit_create_adds_terminator(self):
        obj = CatalogObject(
            oid=1, kind=ObjectKind.SCHEMA, schema_name="s", name="s",
            definition="CREATE SCHEMA IF NOT EXISTS s  ",
        )
        assert obj.emit_create() == "CREATE SCHEMA IF NOT EXISTS s;"

    def test_emit_drop_uses_function_identity(self):
        obj = CatalogObject(
            oid=1, kind=ObjectKind.FUNCTION, schema_name="s", name="f",
            definition="CREATE FUNCTION ...", identity="s.f(integer, text)",
        )
        assert obj.emit_drop() == "DROP FUNCTION IF EXISTS s.f(integer, text) CASCADE;"

    def test_emit_drop_constraint_names_relation(self):
        obj = CatalogObject(
            oid=1, kind=ObjectKind.FOREIGN_KEY, schema_name="s", name="orders_fk",
            definition="x", relation_oid=2, relation_name="s.orders",
        )
        assert obj.emit_drop() == "ALTER TABLE s.orders DROP CONSTRAINT IF EXISTS orders_fk;"

    def test_dependencies_exclude_self(self):
        obj = CatalogObject(
            oid=5, kind=ObjectKind.VIEW, schema_name="s", name="v",
            definition="x", depends_on=frozenset({5, 6}),
        )
        assert obj.dependencies() == frozenset({6})


class TestRelation:
    def test_only_tables_have_data(self):
        assert Relation(oid=1, schema_name="s", name="t").has_data
        assert not Relation(oid=2, schema_name="s", name="v", kind=RelationKind.VIEW).has_data

    def test_partitioned_parent_has_no_data(self):
        parent = Relation(oid=3, schema_name="s", name="p", kind=RelationKind.PARTITIONED_TABLE)
        leaf = Relation(oid=4, schema_name="s", name="p_1", parent_oid=3)
        assert not parent.has_data
        assert leaf.has_data


# ------------------------------------------------------------------
# Statistics models
# ------------------------------------------------------------------


class TestAttributeStatistic:
    def _stat(self, **kwargs) -> AttributeStatistic:
        defaults = dict(
            relation_oid=1, schema_name="public", table="t",
            att_name="a", type_name="int4", att_number=1,
        )
        defaults.update(kwargs)
        return AttributeStatistic(**defaults)

    def test_slots_padded_to_three(self):
        stat = self._stat(slots=[StatisticSlot(kind=1)])
        assert len(stat.slots) == 3
        assert stat.slots[1] is None and stat.slots[2] is None

    def test_more_than_three_slots_rejected(self):
        with pytest.raises(ValidationError):
            self._stat(slots=[StatisticSlot(kind=1)] * 4)

    def test_slot_accessor_is_one_based(self):
        stat = self._stat(slots=[None, StatisticSlot(kind=2)])
        assert stat.slot(2).kind == 2
        assert stat.slot(1) is None

    def test_record_keeps_empty_positions(self):
        stat = self._stat(slots=[None, StatisticSlot(kind=3, numbers=["0.5"])])
        record = stat.to_record()
        assert record["kind1"] == 0
        assert record["kind2"] == 3
        assert record["numbers2"] == ["0.5"]

        restored = AttributeStatistic.from_record(record)
        assert restored.slots[0] is None
        assert restored.slot(2).numbers == ["0.5"]


# ------------------------------------------------------------------
# Filters
# ------------------------------------------------------------------


class TestFilterSpec:
    def test_empty_matches_everything(self):
        spec = FilterSpec()
        assert spec.is_empty
        assert spec.matches_relation("any", "thing")

    def test_include_schema(self):
        spec = FilterSpec(include_schemas={"sales"})
        assert spec.matches_relation("sales", "orders")
        assert not spec.matches_relation("hr", "staff")

    def test_exclude_wins_over_include(self):
        spec = FilterSpec(include_schemas={"sales"}, exclude_relations={"sales.tmp"})
        assert spec.matches_relation("sales", "orders")
        assert not spec.matches_relation("sales", "tmp")

    def test_include_relations(self):
        spec = FilterSpec(include_relations={"sales.orders"})
        assert spec.filters_relations
        assert spec.matches_relation("sales", "orders")
        assert not spec.matches_relation("sales", "customers")

    def test_from_lists_requires_qualified_relations(self):
        with pytest.raises(ValueError, match="schema-qualified"):
            FilterSpec.from_lists(include_relations=["orders"])

    def test_from_lists(self):
        spec = FilterSpec.from_lists(include_schemas=["a", "b"], exclude_relations=["a.x"])
        assert spec.include_schemas == {"a", "b"}
        assert spec.exclude_relations == {"a.x"}


# ------------------------------------------------------------------
# TOC entry models
# ------------------------------------------------------------------


class TestTOCEntry:
    def test_depends_on_sorted_and_unique(self):
        entry = TOCEntry(
            ordinal=5, phase=Phase.POSTDATA, object_kind=ObjectKind.INDEX,
            oid=1, schema_name="s", name="i", depends_on=[3, 1, 3],
        )
        assert entry.depends_on == [1, 3]

    def test_schema_alias(self):
        entry = TOCEntry.model_validate(
            {"ordinal": 1, "phase": "predata", "object_kind": "table", "oid": 1,
             "schema": "s", "name": "t"}
        )
        assert entry.schema_name == "s"
        assert entry.model_dump(by_alias=True)["schema"] == "s"

    def test_ordinal_must_be_positive(self):
        with pytest.raises(ValidationError):
            TOCEntry(
                ordinal=0, phase=Phase.PREDATA, object_kind=ObjectKind.TABLE,
                oid=1, schema_name="s", name="t",
            )

    def test_relation_fqn_and_label(self):
        entry = TOCEntry(
            ordinal=2, phase=Phase.DATA, object_kind=ObjectKind.TABLE_DATA,
            oid=1, schema_name="Sales", name="orders", relation=("Sales", "orders"),
        )
        assert entry.relation_fqn == '"Sales".orders'
        assert entry.label == 'table_data "Sales".orders'

    def test_byte_range_end(self):
        assert ByteRange(artifact="data_0.csv", offset=10, length=5).end == 15
