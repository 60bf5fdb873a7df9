"""Tests for TableOfContents: build, lookup, data offsets and persistence."""

import json

import pytest

from mpp_backup.catalog.filters import FilterSpec
from mpp_backup.catalog.models import CatalogObject, ObjectKind, Phase, Relation
from mpp_backup.toc.models import ByteRange, TOCEntry
from mpp_backup.toc.resolver import resolve_order
from mpp_backup.toc.toc import MANIFEST_FORMAT_VERSION, TableOfContents


def _objects() -> tuple[list[CatalogObject], list[Relation]]:
    objects = [
        CatalogObject(
            oid=50, kind=ObjectKind.SCHEMA, schema_name="sales", name="sales",
            definition="CREATE SCHEMA IF NOT EXISTS sales",
        ),
        CatalogObject(
            oid=100, kind=ObjectKind.TABLE, schema_name="sales", name="orders",
            definition="CREATE TABLE sales.orders (id integer, note text)",
            relation_oid=100, relation_name="sales.orders",
        ),
        CatalogObject(
            oid=110, kind=ObjectKind.INDEX, schema_name="sales", name="orders_note_idx",
            definition="CREATE INDEX orders_note_idx ON sales.orders USING btree (note)",
            relation_oid=100, relation_name="sales.orders",
        ),
        CatalogObject(
            oid=200, kind=ObjectKind.TABLE, schema_name="hr", name="staff",
            definition="CREATE TABLE hr.staff (id integer)",
            relation_oid=200, relation_name="hr.staff",
        ),
    ]
    relations = [
        Relation(oid=100, schema_name="sales", name="orders"),
        Relation(oid=200, schema_name="hr", name="staff"),
    ]
    return objects, relations


@pytest.fixture
def toc() -> TableOfContents:
    objects, relations = _objects()
    return TableOfContents.build(
        resolve_order(objects, relations, relations),
        metadata={"backup_id": "20260118093000"},
    )


# ------------------------------------------------------------------
# Build and access
# ------------------------------------------------------------------


class TestBuild:
    def test_build_from_resolver_output(self, toc):
        assert len(toc) == 8
        assert toc.counts_by_phase() == {
            Phase.PREDATA: 3,
            Phase.DATA: 2,
            Phase.POSTDATA: 1,
            Phase.STATISTICS: 2,
        }

    def test_rejects_gaps_in_ordinals(self):
        entry = TOCEntry(
            ordinal=2, phase=Phase.PREDATA, object_kind=ObjectKind.TABLE,
            oid=1, schema_name="s", name="t",
        )
        with pytest.raises(ValueError, match="contiguous"):
            TableOfContents.build([entry])

    def test_rejects_forward_dependency(self):
        entries = [
            TOCEntry(
                ordinal=1, phase=Phase.PREDATA, object_kind=ObjectKind.TABLE,
                oid=1, schema_name="s", name="t", depends_on=[2],
            ),
            TOCEntry(
                ordinal=2, phase=Phase.PREDATA, object_kind=ObjectKind.TABLE,
                oid=2, schema_name="s", name="u",
            ),
        ]
        with pytest.raises(ValueError, match="later ordinal"):
            TableOfContents.build(entries)

    def test_get_unknown_ordinal(self, toc):
        with pytest.raises(KeyError):
            toc.get(99)

    def test_find(self, toc):
        entry = toc.find(ObjectKind.TABLE_DATA, 100)
        assert entry is not None
        assert entry.relation == ("sales", "orders")
        assert toc.find(ObjectKind.VIEW, 100) is None

    def test_iteration_in_ordinal_order(self, toc):
        assert [e.ordinal for e in toc] == list(range(1, 9))


class TestLookup:
    def test_phase_selection(self, toc):
        data = toc.lookup(phases=[Phase.DATA])
        assert [e.object_kind for e in data] == [ObjectKind.TABLE_DATA] * 2

    def test_filtered_lookup(self, toc):
        entries = toc.lookup(FilterSpec(include_schemas={"sales"}))
        assert {e.schema_name for e in entries} == {"sales"}
        assert [e.ordinal for e in entries] == sorted(e.ordinal for e in entries)

    def test_filter_is_idempotent(self, toc):
        spec = FilterSpec(include_schemas={"sales"})
        once = toc.lookup(spec)
        twice = TableOfContents(once).lookup(spec)
        assert twice == once

    def test_schema_follows_kept_relation(self, toc):
        entries = toc.lookup(FilterSpec(include_relations={"sales.orders"}))
        kinds = [e.object_kind for e in entries]
        assert kinds == [
            ObjectKind.SCHEMA,
            ObjectKind.TABLE,
            ObjectKind.TABLE_DATA,
            ObjectKind.INDEX,
            ObjectKind.STATISTICS,
        ]


# ------------------------------------------------------------------
# Data offsets
# ------------------------------------------------------------------


class TestRecordDataOffset:
    def test_records_range(self, toc):
        entry = toc.find(ObjectKind.TABLE_DATA, 100)
        byte_range = ByteRange(artifact="data_0.csv", offset=0, length=42)
        updated = toc.record_data_offset(entry.ordinal, byte_range)
        assert updated.data_range == byte_range
        assert toc.get(entry.ordinal).data_range == byte_range

    def test_rejects_non_data_entry(self, toc):
        table = toc.find(ObjectKind.TABLE, 100)
        with pytest.raises(ValueError, match="does not hold data"):
            toc.record_data_offset(table.ordinal, ByteRange(artifact="x", offset=0, length=1))

    def test_rejects_unknown_ordinal(self, toc):
        with pytest.raises(KeyError):
            toc.record_data_offset(42, ByteRange(artifact="x", offset=0, length=1))

    def test_validate_requires_data(self, toc):
        errors = toc.validate()
        assert len(errors) == 2
        assert all("no data location" in e for e in errors)
        assert toc.validate(require_data=False) == []


# ------------------------------------------------------------------
# Persistence
# ------------------------------------------------------------------


class TestSerialization:
    def test_round_trip_is_identity(self, toc):
        entry = toc.find(ObjectKind.TABLE_DATA, 200)
        toc.record_data_offset(
            entry.ordinal,
            ByteRange(artifact="data_1.csv", offset=128, length=64, backup_id="20260101000000"),
        )
        text = toc.serialize()
        restored = TableOfContents.deserialize(text)
        assert restored.serialize() == text
        assert restored.entries == toc.entries
        assert restored.metadata == {"backup_id": "20260118093000"}

    def test_manifest_layout(self, toc):
        data = json.loads(toc.serialize())
        assert data["format_version"] == MANIFEST_FORMAT_VERSION
        assert data["entries"][0]["schema"] == "hr"
        assert data["entries"][0]["ordinal"] == 1

    def test_unsupported_version(self, toc):
        data = toc.to_dict()
        data["format_version"] = 99
        with pytest.raises(ValueError, match="Unsupported manifest version"):
            TableOfContents.deserialize(json.dumps(data))

    def test_malformed_json(self):
        with pytest.raises(ValueError, match="Invalid manifest JSON"):
            TableOfContents.deserialize("{not json")

    def test_duplicate_ordinals_rejected(self, toc):
        data = toc.to_dict()
        data["entries"].append(data["entries"][0])
        with pytest.raises(ValueError, match="Duplicate ordinals"):
            TableOfContents.deserialize(json.dumps(data))
