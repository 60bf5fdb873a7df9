"""Catalog object models and include/exclude filters.

The live-database readers (``CatalogIntrospector``, ``SnapshotManager``)
live in ``mpp_backup.catalog.introspector`` and ``mpp_backup.catalog.snapshot``.

Usage:
    from mpp_backup.catalog import CatalogObject, FilterSpec, ObjectKind, Phase
"""

from mpp_backup.catalog.filters import FilterSpec
from mpp_backup.catalog.models import (
    KIND_TRAITS,
    AttributeStatistic,
    CatalogObject,
    KindTraits,
    ObjectKind,
    Phase,
    Relation,
    RelationKind,
    StatisticSlot,
    TupleStatistic,
    qualify,
    quote_ident,
)

__all__ = [
    "FilterSpec",
    "KIND_TRAITS",
    "AttributeStatistic",
    "CatalogObject",
    "KindTraits",
    "ObjectKind",
    "Phase",
    "Relation",
    "RelationKind",
    "StatisticSlot",
    "TupleStatistic",
    "qualify",
    "quote_ident",
]
