"""Dependency resolution: phase partition and deterministic ordering.

Turns the captured object set into a totally ordered list of TOC entries.
An edge A -> B means "B must exist before A is created".  Entries are
partitioned into predata, data, postdata and statistics phases and each
phase is sorted topologically; ties are broken by (schema, name, kind) so
identical catalogs always produce identical orders.

Usage:
    from mpp_backup.toc.resolver import resolve_order, filter_entries

    entries = resolve_order(objects, data_relations=tables,
                            statistics_relations=tables)
    subset = filter_entries(entries, FilterSpec(include_schemas={"sales"}))
"""

import heapq
import logging
from collections import defaultdict
from collections.abc import Iterable
from dataclasses import dataclass, field

from mpp_backup.catalog.filters import FilterSpec
from mpp_backup.catalog.models import (
    KIND_TRAITS,
    CatalogObject,
    ObjectKind,
    Phase,
    Relation,
    qualify,
    quote_ident,
)
from mpp_backup.errors import DependencyCycle, FilterDependencyError
from mpp_backup.toc.models import TOCEntry

logger = logging.getLogger(__name__)

_NodeKey = tuple[ObjectKind, int]

_METADATA_PHASES = (Phase.PREDATA, Phase.POSTDATA)


@dataclass
class _Node:
    key: _NodeKey
    phase: Phase
    schema_name: str
    name: str
    relation: tuple[str, str] | None = None
    statement: str | None = None
    drop_statement: str | None = None
    modification_count: int | None = None
    deps: set[_NodeKey] = field(default_factory=set)

    @property
    def kind(self) -> ObjectKind:
        return self.key[0]

    @property
    def sort_key(self) -> tuple[str, str, str, int]:
        return (self.schema_name, self.name, self.kind.value, self.key[1])

    @property
    def label(self) -> str:
        name = (
            quote_ident(self.name)
            if self.kind == ObjectKind.SCHEMA
            else qualify(self.schema_name, self.name)
        )
        return f"{self.kind.value} {name}"


# ------------------------------------------------------------------
# Graph construction
# ------------------------------------------------------------------


def _build_graph(
    objects: Iterable[CatalogObject],
    data_relations: Iterable[Relation],
    statistics_relations: Iterable[Relation],
) -> dict[_NodeKey, _Node]:
    nodes: dict[_NodeKey, _Node] = {}
    by_oid: dict[int, _NodeKey] = {}
    schemas: dict[str, _NodeKey] = {}
    object_list = list(objects)
    data_relations = list(data_relations)
    relations_by_oid = {
        obj.oid: obj for obj in object_list if obj.kind != ObjectKind.SCHEMA
    }

    for obj in object_list:
        key = (obj.kind, obj.oid)
        relation = None
        if obj.relation_oid is not None:
            relation = _relation_names(obj, relations_by_oid)
        nodes[key] = _Node(
            key=key,
            phase=obj.phase,
            schema_name=obj.schema_name,
            name=obj.name,
            relation=relation,
            statement=obj.emit_create(),
            drop_statement=obj.emit_drop(),
        )
        by_oid[obj.oid] = key
        if obj.kind == ObjectKind.SCHEMA:
            schemas[obj.name] = key

    for obj in object_list:
        node = nodes[(obj.kind, obj.oid)]
        for dep_oid in obj.dependencies():
            if dep_oid in by_oid:
                node.deps.add(by_oid[dep_oid])
        if obj.relation_oid is not None and obj.relation_oid != obj.oid:
            if obj.relation_oid in by_oid:
                node.deps.add(by_oid[obj.relation_oid])
        if obj.kind != ObjectKind.SCHEMA and obj.schema_name in schemas:
            node.deps.add(schemas[obj.schema_name])

    for relation in data_relations:
        if not relation.has_data:
            continue
        key = (ObjectKind.TABLE_DATA, relation.oid)
        node = _Node(
            key=key,
            phase=Phase.DATA,
            schema_name=relation.schema_name,
            name=relation.name,
            relation=(relation.schema_name, relation.name),
            drop_statement=KIND_TRAITS[ObjectKind.TABLE_DATA].drop_template.format(
                relation=relation.fqn
            ),
            modification_count=relation.modification_count,
        )
        owner = _owner_key(relation, by_oid)
        if owner is not None:
            node.deps.add(owner)
        nodes[key] = node

    partitions: dict[int, list[int]] = defaultdict(list)
    for relation in data_relations:
        if relation.parent_oid is not None:
            partitions[relation.parent_oid].append(relation.oid)

    # Anything created after the load waits for the data of every table it touches.
    for node in list(nodes.values()):
        if node.phase != Phase.POSTDATA:
            continue
        for dep in list(node.deps):
            if dep[0] != ObjectKind.TABLE:
                continue
            for oid in _with_partitions(dep[1], partitions):
                data_key = (ObjectKind.TABLE_DATA, oid)
                if data_key in nodes:
                    node.deps.add(data_key)

    for relation in statistics_relations:
        key = (ObjectKind.STATISTICS, relation.oid)
        node = _Node(
            key=key,
            phase=Phase.STATISTICS,
            schema_name=relation.schema_name,
            name=relation.name,
            relation=(relation.schema_name, relation.name),
            drop_statement=KIND_TRAITS[ObjectKind.STATISTICS].drop_template.format(
                relation=relation.fqn
            ),
        )
        data_key = (ObjectKind.TABLE_DATA, relation.oid)
        owner = _owner_key(relation, by_oid)
        if data_key in nodes:
            node.deps.add(data_key)
        elif owner is not None:
            node.deps.add(owner)
        nodes[key] = node

    return nodes


def _owner_key(relation: Relation, by_oid: dict[int, _NodeKey]) -> _NodeKey | None:
    """Entry that creates ``relation``: its own, or its partition root's."""
    if relation.oid in by_oid:
        return by_oid[relation.oid]
    if relation.parent_oid is not None and relation.parent_oid in by_oid:
        return by_oid[relation.parent_oid]
    return None


def _with_partitions(oid: int, partitions: dict[int, list[int]]) -> list[int]:
    """``oid`` followed by every partition below it."""
    result = [oid]
    for current in result:
        result.extend(partitions.get(current, ()))
    return result


def _relation_names(
    obj: CatalogObject,
    relations_by_oid: dict[int, CatalogObject],
) -> tuple[str, str] | None:
    if obj.relation_oid == obj.oid:
        return (obj.schema_name, obj.name)
    owner = relations_by_oid.get(obj.relation_oid)
    if owner is not None:
        return (owner.schema_name, owner.name)
    return None


def _promote_phases(nodes: dict[_NodeKey, _Node]) -> None:
    """Move metadata objects that depend on later-phase objects forward."""
    changed = True
    while changed:
        changed = False
        for node in nodes.values():
            if node.phase not in _METADATA_PHASES:
                continue
            for dep in node.deps:
                dep_phase = nodes[dep].phase
                if dep_phase in _METADATA_PHASES and dep_phase.rank > node.phase.rank:
                    logger.debug("Promoting %s to %s", node.label, dep_phase.value)
                    node.phase = dep_phase
                    changed = True

    violations = [
        node.label
        for node in nodes.values()
        for dep in node.deps
        if nodes[dep].phase.rank > node.phase.rank
    ]
    if violations:
        raise DependencyCycle(sorted(set(violations)))


# ------------------------------------------------------------------
# Ordering
# ------------------------------------------------------------------


def _find_cycle(
    remaining: set[_NodeKey],
    pending: dict[_NodeKey, set[_NodeKey]],
    nodes: dict[_NodeKey, _Node],
) -> list[_NodeKey]:
    """Walk pending edges from the smallest stalled node until one repeats."""
    current = min(remaining, key=lambda k: nodes[k].sort_key)
    path: list[_NodeKey] = []
    seen: dict[_NodeKey, int] = {}
    while current not in seen:
        seen[current] = len(path)
        path.append(current)
        current = min(pending[current], key=lambda k: nodes[k].sort_key)
    return path[seen[current]:]


def _sort_phase(
    phase: Phase,
    nodes: dict[_NodeKey, _Node],
) -> list[_NodeKey]:
    members = {key for key, node in nodes.items() if node.phase == phase}
    pending = {key: {d for d in nodes[key].deps if d in members} for key in members}
    dependents: dict[_NodeKey, set[_NodeKey]] = defaultdict(set)
    for key, deps in pending.items():
        for dep in deps:
            dependents[dep].add(key)

    ready = [(nodes[k].sort_key, k) for k, deps in pending.items() if not deps]
    heapq.heapify(ready)
    remaining = set(members)
    ordered: list[_NodeKey] = []

    while remaining:
        if not ready:
            cycle = _find_cycle(remaining, pending, nodes)
            deferrable = [k for k in cycle if KIND_TRAITS[k[0]].deferrable]
            if not deferrable:
                raise DependencyCycle([nodes[k].label for k in cycle])
            victim = max(deferrable, key=lambda k: nodes[k].sort_key)
            victim_node = nodes[victim]

            if phase == Phase.PREDATA:
                logger.warning(
                    "Deferring %s to postdata to break a dependency cycle",
                    victim_node.label,
                )
                victim_node.phase = Phase.POSTDATA
                remaining.discard(victim)
                del pending[victim]
                for dependent in dependents.pop(victim, set()):
                    pending[dependent].discard(victim)
                    nodes[dependent].deps.discard(victim)
                    if not pending[dependent] and dependent in remaining:
                        heapq.heappush(ready, (nodes[dependent].sort_key, dependent))
            else:
                dropped = pending[victim] & set(cycle)
                logger.warning(
                    "Deferring %s after %s to break a dependency cycle",
                    victim_node.label,
                    ", ".join(nodes[k].label for k in sorted(dropped, key=lambda k: nodes[k].sort_key)),
                )
                for dep in dropped:
                    pending[victim].discard(dep)
                    victim_node.deps.discard(dep)
                    dependents[dep].discard(victim)
                if not pending[victim]:
                    heapq.heappush(ready, (victim_node.sort_key, victim))
            continue

        _, key = heapq.heappop(ready)
        if key not in remaining:
            continue
        remaining.discard(key)
        ordered.append(key)
        for dependent in dependents.get(key, set()):
            if dependent not in remaining:
                continue
            pending[dependent].discard(key)
            if not pending[dependent]:
                heapq.heappush(ready, (nodes[dependent].sort_key, dependent))

    return ordered


def resolve_order(
    objects: Iterable[CatalogObject],
    data_relations: Iterable[Relation] = (),
    statistics_relations: Iterable[Relation] = (),
) -> list[TOCEntry]:
    """Produce the ordered TOC entries for a captured object set.

    Args:
        objects: Catalog objects (predata and postdata).
        data_relations: Relations whose rows are captured; one data entry
            is created for each table among them.
        statistics_relations: Relations whose planner statistics are
            captured; one statistics entry each.

    Returns:
        Entries with contiguous ordinals starting at 1, in phase order
        (predata, data, postdata, statistics).  Every ``depends_on``
        ordinal is smaller than the entry's own ordinal.

    Raises:
        DependencyCycle: If a cycle cannot be broken by deferring a
            constraint or trigger.
    """
    nodes = _build_graph(objects, data_relations, statistics_relations)
    _promote_phases(nodes)

    ordered: list[_NodeKey] = []
    for phase in Phase:
        ordered.extend(_sort_phase(phase, nodes))

    ordinals = {key: index for index, key in enumerate(ordered, start=1)}
    entries: list[TOCEntry] = []
    for key in ordered:
        node = nodes[key]
        depends_on = [ordinals[d] for d in node.deps if d in ordinals]
        if any(dep >= ordinals[key] for dep in depends_on):
            raise DependencyCycle([node.label])
        entries.append(
            TOCEntry(
                ordinal=ordinals[key],
                phase=node.phase,
                object_kind=node.kind,
                oid=key[1],
                schema_name=node.schema_name,
                name=node.name,
                relation=node.relation,
                depends_on=depends_on,
                statement=node.statement,
                drop_statement=node.drop_statement,
                modification_count=node.modification_count,
            )
        )

    logger.debug("Resolved %d entries", len(entries))
    return entries


def check_order(entries: Iterable[TOCEntry]) -> list[str]:
    """Return invariant violations for an ordered entry list (empty if valid)."""
    errors: list[str] = []
    previous_ordinal = 0
    previous_phase = Phase.PREDATA
    seen: set[int] = set()
    for entry in entries:
        if entry.ordinal <= previous_ordinal:
            errors.append(f"Ordinal {entry.ordinal} out of order after {previous_ordinal}")
        if entry.phase.rank < previous_phase.rank:
            errors.append(
                f"{entry.label} ({entry.phase.value}) follows a {previous_phase.value} entry"
            )
        for dep in entry.depends_on:
            if dep >= entry.ordinal:
                errors.append(f"{entry.label} depends on later ordinal {dep}")
            elif dep not in seen:
                errors.append(f"{entry.label} depends on unknown ordinal {dep}")
        seen.add(entry.ordinal)
        previous_ordinal = entry.ordinal
        previous_phase = entry.phase
    return errors


# ------------------------------------------------------------------
# Filtering
# ------------------------------------------------------------------


def _plain_name(entry: TOCEntry) -> str:
    if entry.object_kind == ObjectKind.SCHEMA:
        return entry.name
    return f"{entry.schema_name}.{entry.name}"


def filter_entries(
    entries: Iterable[TOCEntry],
    spec: FilterSpec | None,
    existing: Iterable[str] = (),
) -> list[TOCEntry]:
    """Prune entries to a filter, keeping order and ordinals.

    Entries owned by a relation (its table, data, statistics, indexes,
    constraints, triggers) follow the relation.  Schema entries survive when
    a kept relation lives in them.  Other objects follow the schema filter,
    and are dropped when an explicit relation list is given.

    Dependencies removed by the filter must be named in ``existing``
    (``schema`` or ``schema.name``, unquoted).  Dependencies absent from
    ``entries`` altogether were pruned by an earlier pass and are not
    re-checked, which keeps filtering idempotent.

    Raises:
        FilterDependencyError: If a kept entry needs a pruned entry that is
            not in ``existing``.
    """
    entries = list(entries)
    if spec is None or spec.is_empty:
        return entries

    existing_names = set(existing)
    kept_schemas = {
        e.relation[0]
        for e in entries
        if e.relation is not None and spec.matches_relation(*e.relation)
    }

    def keep(entry: TOCEntry) -> bool:
        if entry.relation is not None:
            return spec.matches_relation(*entry.relation)
        if entry.object_kind == ObjectKind.SCHEMA:
            return entry.name in kept_schemas or (
                not spec.filters_relations and spec.matches_schema(entry.name)
            )
        return not spec.filters_relations and spec.matches_schema(entry.schema_name)

    kept = [e for e in entries if keep(e)]
    kept_ordinals = {e.ordinal for e in kept}
    by_ordinal = {e.ordinal: e for e in entries}

    missing: dict[str, list[str]] = {}
    for entry in kept:
        for dep in entry.depends_on:
            if dep in kept_ordinals or dep not in by_ordinal:
                continue
            dep_entry = by_ordinal[dep]
            if _plain_name(dep_entry) in existing_names:
                continue
            missing.setdefault(entry.label, []).append(dep_entry.label)

    if missing:
        raise FilterDependencyError(missing)

    return kept
