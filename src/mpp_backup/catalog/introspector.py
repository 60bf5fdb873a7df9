"""Catalog introspection for backups.

This module queries the source database to extract everything a backup
captures:
- Relations (tables, partitioned tables, views, materialized views, sequences)
- Schemas, enum types, functions
- Indexes, constraints, foreign keys, triggers, rules
- Object dependencies from ``pg_depend``
- Planner statistics from ``pg_statistic`` and ``pg_class``

Uses psycopg (v3).  The introspector is bound to the coordinator
connection of a ``SnapshotManager`` so every read sees the exported
snapshot.
"""

import logging
from collections import defaultdict
from collections.abc import Iterable
from typing import Any

from psycopg import AsyncConnection
from psycopg.rows import dict_row

from mpp_backup.catalog.filters import FilterSpec
from mpp_backup.catalog.models import (
    AttributeStatistic,
    CatalogObject,
    ObjectKind,
    Relation,
    RelationKind,
    TupleStatistic,
    qualify,
    quote_ident,
)
from mpp_backup.statistics.codec import capture_attribute, capture_tuple
from mpp_backup.statistics.versions import CATALOG_SLOT_COLUMNS, EngineFeatures, EngineVersion

logger = logging.getLogger(__name__)

# Objects below this oid were created by initdb.
FIRST_NORMAL_OID = 16384

# Present in every database; never emitted as a CREATE SCHEMA entry.
DEFAULT_SCHEMA = "public"

_SYSTEM_SCHEMA_CLAUSE = """
    n.nspname NOT IN ('pg_catalog', 'information_schema', 'gp_toolkit',
                      'pg_aoseg', 'pg_bitmapindex', 'pg_ext_aux')
    AND n.nspname !~ '^pg_(temp|toast)'
"""

_RELKINDS = {
    "r": RelationKind.TABLE,
    "p": RelationKind.PARTITIONED_TABLE,
    "v": RelationKind.VIEW,
    "m": RelationKind.MATERIALIZED_VIEW,
    "S": RelationKind.SEQUENCE,
}

_STATISTICS_KINDS = (RelationKind.TABLE, RelationKind.PARTITIONED_TABLE)


def _literal(value: str) -> str:
    return "'" + value.replace("'", "''") + "'"


def _has_partition_clones(version: EngineVersion) -> bool:
    """Whether partitions record constraints cloned from their parent (``conparentid``)."""
    if version.flavor == "postgres":
        return version.major >= 11
    return version.has_declarative_partitions


class CatalogIntrospector:
    """Reads catalog metadata and statistics from the source database.

    Usage:
        async with SnapshotManager(url) as manager:
            introspector = CatalogIntrospector(manager.connection)
            version = await introspector.get_engine_version()
            relations = await introspector.load_relations(filters)
            await manager.acquire_consistent_view(relations)
            objects = await introspector.load_objects(relations, filters)
    """

    def __init__(self, conn: AsyncConnection, version: EngineVersion | None = None) -> None:
        self._conn = conn
        self.version = version

    async def _query(self, sql: str, params: dict[str, Any] | None = None) -> list[dict]:
        async with self._conn.cursor(row_factory=dict_row) as cur:
            await cur.execute(sql, params)
            return await cur.fetchall()

    async def get_engine_version(self) -> EngineVersion:
        rows = await self._query("SELECT version() AS version")
        self.version = EngineVersion.parse(rows[0]["version"])
        return self.version

    async def _engine_version(self) -> EngineVersion:
        if self.version is None:
            return await self.get_engine_version()
        return self.version

    # ------------------------------------------------------------------
    # Relations
    # ------------------------------------------------------------------

    async def load_relations(self, filter_spec: FilterSpec | None = None) -> list[Relation]:
        """List user relations in scope, ordered by schema and name.

        Append-optimized tables on Greenplum and Cloudberry carry their
        modification count.  Partitions carry the oid of the table they
        attach to; on Greenplum 6 that is the partition root, whose DDL
        creates every child.
        """
        version = await self._engine_version()
        parent_column = "NULL::bigint"
        if version.has_declarative_partitions:
            parent_column = (
                "CASE WHEN c.relispartition THEN (SELECT inh.inhparent::bigint "
                "FROM pg_inherits inh WHERE inh.inhrelid = c.oid) END"
            )
        query = f"""
            SELECT c.oid::bigint AS oid, n.nspname AS schema_name,
                   c.relname AS name, c.relkind::text AS relkind,
                   {parent_column} AS parent_oid
            FROM pg_class c
            JOIN pg_namespace n ON n.oid = c.relnamespace
            WHERE c.relkind IN ('r', 'p', 'v', 'm', 'S')
              AND {_SYSTEM_SCHEMA_CLAUSE}
            ORDER BY n.nspname, c.relname
        """
        relations = []
        for row in await self._query(query):
            if filter_spec is not None and not filter_spec.matches_relation(
                row["schema_name"], row["name"]
            ):
                continue
            relations.append(
                Relation(
                    oid=row["oid"],
                    schema_name=row["schema_name"],
                    name=row["name"],
                    kind=_RELKINDS[row["relkind"]],
                    parent_oid=row.get("parent_oid"),
                )
            )

        if version.has_legacy_partitions:
            relations = await self._apply_legacy_partitions(relations)

        if version.is_greenplum_family:
            modcounts = await self._load_modification_counts(
                [r.oid for r in relations if r.kind == RelationKind.TABLE]
            )
            relations = [
                r.model_copy(update={"modification_count": modcounts[r.oid]})
                if r.oid in modcounts
                else r
                for r in relations
            ]

        logger.debug("Loaded %d relations", len(relations))
        return relations

    async def _apply_legacy_partitions(self, relations: list[Relation]) -> list[Relation]:
        """Mark Greenplum 6 partition roots and the children their DDL creates."""
        rows = await self._query(
            """
            SELECT pr.parchildrelid::bigint AS oid, p.parrelid::bigint AS root_oid,
                   EXISTS (
                       SELECT 1 FROM pg_partition_rule sub
                       WHERE sub.parparentrule = pr.oid
                   ) AS has_children
            FROM pg_partition_rule pr
            JOIN pg_partition p ON p.oid = pr.paroid
            """
        )
        children = {row["oid"]: row for row in rows}
        roots = {row["root_oid"] for row in rows}
        result = []
        for relation in relations:
            if relation.oid in roots:
                relation = relation.model_copy(update={"kind": RelationKind.PARTITIONED_TABLE})
            elif relation.oid in children:
                row = children[relation.oid]
                update: dict[str, Any] = {"parent_oid": row["root_oid"], "created_by_parent": True}
                if row["has_children"]:
                    update["kind"] = RelationKind.PARTITIONED_TABLE
                relation = relation.model_copy(update=update)
            result.append(relation)
        return result

    async def _load_modification_counts(self, oids: list[int]) -> dict[int, int]:
        if not oids:
            return {}
        segments = await self._query(
            """
            SELECT a.relid::bigint AS oid, seg.relname AS segrelname
            FROM pg_appendonly a
            JOIN pg_class seg ON seg.oid = a.segrelid
            WHERE a.relid::bigint = ANY(%(oids)s::bigint[])
            """,
            {"oids": oids},
        )
        counts: dict[int, int] = {}
        for row in segments:
            # gp_dist_random only accepts a string constant.
            rows = await self._query(
                "SELECT COALESCE(sum(modcount), 0)::bigint AS modcount "
                f"FROM gp_dist_random({_literal('pg_aoseg.' + row['segrelname'])})"
            )
            counts[row["oid"]] = rows[0]["modcount"]
        return counts

    # ------------------------------------------------------------------
    # Objects
    # ------------------------------------------------------------------

    async def load_objects(
        self,
        relations: Iterable[Relation],
        filter_spec: FilterSpec | None = None,
    ) -> list[CatalogObject]:
        """Capture creation statements and dependencies for a relation set.

        Non-relation objects (types, functions) are captured from every
        schema the filter matches, unless the filter names explicit
        relations.
        """
        relations = list(relations)
        filter_spec = filter_spec or FilterSpec()
        version = await self._engine_version()

        object_schemas: set[str] = set()
        if not filter_spec.filters_relations:
            rows = await self._query(
                f"SELECT n.nspname FROM pg_namespace n WHERE {_SYSTEM_SCHEMA_CLAUSE}"
            )
            object_schemas = {
                row["nspname"] for row in rows if filter_spec.matches_schema(row["nspname"])
            }
        schemas = object_schemas | {r.schema_name for r in relations}

        by_kind: dict[RelationKind, list[Relation]] = defaultdict(list)
        for relation in relations:
            by_kind[relation.kind].append(relation)
        relation_names = {r.oid: r.fqn for r in relations}
        # Legacy partition children come with their root's DDL.
        tables = [
            r
            for r in by_kind[RelationKind.TABLE] + by_kind[RelationKind.PARTITIONED_TABLE]
            if not r.created_by_parent
        ]
        table_oids = [r.oid for r in tables]

        objects: list[CatalogObject] = []
        objects += await self._get_schemas(schemas)
        objects += await self._get_types(object_schemas)
        objects += await self._get_functions(object_schemas)
        objects += await self._get_sequences(by_kind[RelationKind.SEQUENCE])
        objects += await self._get_tables(tables, version)
        objects += await self._get_views(
            by_kind[RelationKind.VIEW] + by_kind[RelationKind.MATERIALIZED_VIEW]
        )
        objects += await self._get_indexes(table_oids, relation_names)
        constraints, index_owners = await self._get_constraints(
            table_oids, relation_names, version
        )
        objects += constraints
        objects += await self._get_triggers(table_oids, relation_names, version)
        objects += await self._get_rules(table_oids, relation_names)

        dependencies = await self._get_dependencies(index_owners)
        known = {obj.oid for obj in objects}
        objects = [
            obj.model_copy(
                update={
                    "depends_on": obj.depends_on
                    | frozenset(d for d in dependencies.get(obj.oid, ()) if d in known)
                }
            )
            for obj in objects
        ]

        logger.info(
            "Captured %d objects in %d schemas for %d relations",
            len(objects),
            len(schemas),
            len(relations),
        )
        return objects

    async def _get_schemas(self, names: set[str]) -> list[CatalogObject]:
        names = names - {DEFAULT_SCHEMA}
        if not names:
            return []
        rows = await self._query(
            """
            SELECT n.oid::bigint AS oid, n.nspname AS name
            FROM pg_namespace n
            WHERE n.nspname = ANY(%(names)s)
            ORDER BY n.nspname
            """,
            {"names": sorted(names)},
        )
        return [
            CatalogObject(
                oid=row["oid"],
                kind=ObjectKind.SCHEMA,
                schema_name=row["name"],
                name=row["name"],
                definition=f"CREATE SCHEMA IF NOT EXISTS {quote_ident(row['name'])}",
            )
            for row in rows
        ]

    async def _get_types(self, schemas: set[str]) -> list[CatalogObject]:
        """Enum types only."""
        if not schemas:
            return []
        rows = await self._query(
            """
            SELECT t.oid::bigint AS oid, n.nspname AS schema_name, t.typname AS name,
                   array_agg(e.enumlabel::text ORDER BY e.enumsortorder) AS labels
            FROM pg_type t
            JOIN pg_namespace n ON n.oid = t.typnamespace
            JOIN pg_enum e ON e.enumtypid = t.oid
            WHERE n.nspname = ANY(%(schemas)s)
            GROUP BY t.oid, n.nspname, t.typname
            ORDER BY n.nspname, t.typname
            """,
            {"schemas": sorted(schemas)},
        )
        objects = []
        for row in rows:
            labels = ", ".join(_literal(label) for label in row["labels"])
            objects.append(
                CatalogObject(
                    oid=row["oid"],
                    kind=ObjectKind.TYPE,
                    schema_name=row["schema_name"],
                    name=row["name"],
                    definition=(
                        f"CREATE TYPE {qualify(row['schema_name'], row['name'])} "
                        f"AS ENUM ({labels})"
                    ),
                )
            )
        return objects

    async def _get_functions(self, schemas: set[str]) -> list[CatalogObject]:
        """Plain functions; aggregates and extension members are skipped."""
        if not schemas:
            return []
        rows = await self._query(
            """
            SELECT p.oid::bigint AS oid, n.nspname AS schema_name, p.proname AS name,
                   pg_get_function_identity_arguments(p.oid) AS args,
                   pg_get_functiondef(p.oid) AS definition
            FROM pg_proc p
            JOIN pg_namespace n ON n.oid = p.pronamespace
            WHERE n.nspname = ANY(%(schemas)s)
              AND p.oid NOT IN (SELECT aggfnoid FROM pg_aggregate)
              AND NOT EXISTS (
                  SELECT 1 FROM pg_depend d
                  WHERE d.objid = p.oid AND d.deptype = 'e'
              )
            ORDER BY n.nspname, p.proname, p.oid
            """,
            {"schemas": sorted(schemas)},
        )
        return [
            CatalogObject(
                oid=row["oid"],
                kind=ObjectKind.FUNCTION,
                schema_name=row["schema_name"],
                name=row["name"],
                definition=row["definition"],
                identity=f"{qualify(row['schema_name'], row['name'])}({row['args']})",
            )
            for row in rows
        ]

    async def _get_sequences(self, sequences: list[Relation]) -> list[CatalogObject]:
        objects = []
        for seq in sequences:
            rows = await self._query(f"SELECT last_value, is_called FROM {seq.fqn}")
            state = rows[0]
            definition = (
                f"CREATE SEQUENCE {seq.fqn};\n"
                f"SELECT pg_catalog.setval({_literal(seq.fqn)}, "
                f"{state['last_value']}, {'true' if state['is_called'] else 'false'})"
            )
            objects.append(
                CatalogObject(
                    oid=seq.oid,
                    kind=ObjectKind.SEQUENCE,
                    schema_name=seq.schema_name,
                    name=seq.name,
                    definition=definition,
                    relation_oid=seq.oid,
                    relation_name=seq.fqn,
                )
            )
        return objects

    async def _get_tables(
        self, tables: list[Relation], version: EngineVersion
    ) -> list[CatalogObject]:
        if not tables:
            return []
        oids = [t.oid for t in tables]
        rows = await self._query(
            """
            SELECT a.attrelid::bigint AS oid, a.attname,
                   format_type(a.atttypid, a.atttypmod) AS data_type,
                   a.attnotnull AS not_null,
                   pg_get_expr(d.adbin, d.adrelid) AS default_expr
            FROM pg_attribute a
            LEFT JOIN pg_attrdef d ON d.adrelid = a.attrelid AND d.adnum = a.attnum
            WHERE a.attrelid::bigint = ANY(%(oids)s::bigint[])
              AND a.attnum > 0
              AND NOT a.attisdropped
            ORDER BY a.attrelid, a.attnum
            """,
            {"oids": oids},
        )
        columns: dict[int, list[str]] = defaultdict(list)
        for row in rows:
            column = f"{quote_ident(row['attname'])} {row['data_type']}"
            if row["default_expr"] is not None:
                column += f" DEFAULT {row['default_expr']}"
            if row["not_null"]:
                column += " NOT NULL"
            columns[row["oid"]].append(column)

        distribution: dict[int, str] = {}
        if version.is_greenplum_family:
            policy_rows = await self._query(
                """
                SELECT p.localoid::bigint AS oid,
                       pg_get_table_distributedby(p.localoid) AS distributed_by
                FROM gp_distribution_policy p
                WHERE p.localoid::bigint = ANY(%(oids)s::bigint[])
                """,
                {"oids": oids},
            )
            distribution = {row["oid"]: row["distributed_by"] for row in policy_rows}

        partitioning = await self._get_partitioning(tables, version)

        objects = []
        for table in tables:
            info = partitioning.get(table.oid, {})
            depends_on: frozenset[int] = frozenset()
            if info.get("partition_bound") is not None:
                # Columns and distribution come from the parent.
                definition = (
                    f"CREATE TABLE {table.fqn} PARTITION OF {info['parent_name']}\n"
                    f"{info['partition_bound']}"
                )
                if table.parent_oid is not None:
                    depends_on = frozenset({table.parent_oid})
            else:
                body = ",\n    ".join(columns.get(table.oid, []))
                definition = f"CREATE TABLE {table.fqn} (\n    {body}\n)" if body else (
                    f"CREATE TABLE {table.fqn} ()"
                )
                if distribution.get(table.oid):
                    definition += f" {distribution[table.oid]}"
            if info.get("partition_key"):
                definition += f" PARTITION BY {info['partition_key']}"
            elif info.get("partition_def"):
                definition += f"\n{info['partition_def']}"
            objects.append(
                CatalogObject(
                    oid=table.oid,
                    kind=ObjectKind.TABLE,
                    schema_name=table.schema_name,
                    name=table.name,
                    definition=definition,
                    depends_on=depends_on,
                    relation_oid=table.oid,
                    relation_name=table.fqn,
                )
            )
        return objects

    async def _get_partitioning(
        self, tables: list[Relation], version: EngineVersion
    ) -> dict[int, dict[str, Any]]:
        """Partition keys, bounds and parents of partitioned tables and partitions.

        Greenplum 6 roots carry the whole ``PARTITION BY`` clause of their
        hierarchy in ``partition_def`` instead.
        """
        partitioned = [
            t.oid
            for t in tables
            if t.kind == RelationKind.PARTITIONED_TABLE or t.parent_oid is not None
        ]
        if not partitioned:
            return {}

        if version.has_legacy_partitions:
            result = {}
            for oid in partitioned:
                rows = await self._query(
                    "SELECT pg_get_partition_def(%(oid)s::oid, true, true) AS partition_def",
                    {"oid": oid},
                )
                result[oid] = {"partition_def": rows[0]["partition_def"] if rows else None}
            return result

        if not version.has_declarative_partitions:
            return {}
        rows = await self._query(
            """
            SELECT c.oid::bigint AS oid,
                   CASE WHEN c.relkind = 'p' THEN pg_get_partkeydef(c.oid) END AS partition_key,
                   CASE WHEN c.relispartition
                        THEN pg_get_expr(c.relpartbound, c.oid) END AS partition_bound,
                   quote_ident(pn.nspname) || '.' || quote_ident(pc.relname) AS parent_name
            FROM pg_class c
            LEFT JOIN pg_inherits inh ON c.relispartition AND inh.inhrelid = c.oid
            LEFT JOIN pg_class pc ON pc.oid = inh.inhparent
            LEFT JOIN pg_namespace pn ON pn.oid = pc.relnamespace
            WHERE c.oid::bigint = ANY(%(oids)s::bigint[])
            """,
            {"oids": partitioned},
        )
        return {row["oid"]: row for row in rows}

    async def _get_views(self, views: list[Relation]) -> list[CatalogObject]:
        if not views:
            return []
        rows = await self._query(
            """
            SELECT c.oid::bigint AS oid, pg_get_viewdef(c.oid, true) AS definition
            FROM pg_class c
            WHERE c.oid::bigint = ANY(%(oids)s::bigint[])
            """,
            {"oids": [v.oid for v in views]},
        )
        definitions = {row["oid"]: row["definition"].strip().rstrip(";") for row in rows}
        objects = []
        for view in views:
            if view.kind == RelationKind.MATERIALIZED_VIEW:
                kind, keyword = ObjectKind.MATERIALIZED_VIEW, "MATERIALIZED VIEW"
            else:
                kind, keyword = ObjectKind.VIEW, "VIEW"
            objects.append(
                CatalogObject(
                    oid=view.oid,
                    kind=kind,
                    schema_name=view.schema_name,
                    name=view.name,
                    definition=f"CREATE {keyword} {view.fqn} AS\n{definitions[view.oid]}",
                    relation_oid=view.oid,
                    relation_name=view.fqn,
                )
            )
        return objects

    async def _get_indexes(
        self, table_oids: list[int], relation_names: dict[int, str]
    ) -> list[CatalogObject]:
        """Indexes not owned by a constraint.

        Partition indexes attached to a parent index are created by it.
        """
        if not table_oids:
            return []
        rows = await self._query(
            """
            SELECT i.indexrelid::bigint AS oid, n.nspname AS schema_name,
                   ic.relname AS name, i.indrelid::bigint AS relation_oid,
                   pg_get_indexdef(i.indexrelid) AS definition
            FROM pg_index i
            JOIN pg_class ic ON ic.oid = i.indexrelid
            JOIN pg_namespace n ON n.oid = ic.relnamespace
            WHERE i.indrelid::bigint = ANY(%(oids)s::bigint[])
              AND NOT EXISTS (
                  SELECT 1 FROM pg_inherits inh WHERE inh.inhrelid = i.indexrelid
              )
              AND NOT EXISTS (
                  SELECT 1 FROM pg_constraint con
                  WHERE con.conindid = i.indexrelid AND con.contype IN ('p', 'u', 'x')
              )
            ORDER BY n.nspname, ic.relname
            """,
            {"oids": table_oids},
        )
        return [
            CatalogObject(
                oid=row["oid"],
                kind=ObjectKind.INDEX,
                schema_name=row["schema_name"],
                name=row["name"],
                definition=row["definition"],
                relation_oid=row["relation_oid"],
                relation_name=relation_names.get(row["relation_oid"]),
            )
            for row in rows
        ]

    async def _get_constraints(
        self, table_oids: list[int], relation_names: dict[int, str], version: EngineVersion
    ) -> tuple[list[CatalogObject], dict[int, int]]:
        """Constraints and foreign keys.

        Constraints a partition inherits from its parent are skipped.

        Returns:
            ``(objects, index_owners)`` where ``index_owners`` maps the oid
            of a constraint-backing index to its constraint.
        """
        if not table_oids:
            return [], {}
        inherited = ""
        if _has_partition_clones(version):
            inherited = "AND con.conparentid = 0"
        rows = await self._query(
            f"""
            SELECT con.oid::bigint AS oid, n.nspname AS schema_name,
                   con.conname AS name, con.conrelid::bigint AS relation_oid,
                   con.contype::text AS contype, con.confrelid::bigint AS referenced_oid,
                   con.conindid::bigint AS index_oid,
                   pg_get_constraintdef(con.oid, true) AS definition
            FROM pg_constraint con
            JOIN pg_namespace n ON n.oid = con.connamespace
            WHERE con.conrelid::bigint = ANY(%(oids)s::bigint[])
              AND con.contype IN ('p', 'u', 'c', 'f', 'x')
              AND con.conislocal
              {inherited}
            ORDER BY n.nspname, con.conname
            """,
            {"oids": table_oids},
        )
        objects = []
        index_owners: dict[int, int] = {}
        for row in rows:
            relation = relation_names.get(row["relation_oid"])
            is_foreign_key = row["contype"] == "f"
            depends_on = frozenset({row["referenced_oid"]}) if is_foreign_key else frozenset()
            if row["index_oid"] and not is_foreign_key:
                index_owners[row["index_oid"]] = row["oid"]
            objects.append(
                CatalogObject(
                    oid=row["oid"],
                    kind=ObjectKind.FOREIGN_KEY if is_foreign_key else ObjectKind.CONSTRAINT,
                    schema_name=row["schema_name"],
                    name=row["name"],
                    definition=(
                        f"ALTER TABLE ONLY {relation} ADD CONSTRAINT "
                        f"{quote_ident(row['name'])} {row['definition']}"
                    ),
                    depends_on=depends_on,
                    relation_oid=row["relation_oid"],
                    relation_name=relation,
                )
            )
        return objects, index_owners

    async def _get_triggers(
        self, table_oids: list[int], relation_names: dict[int, str], version: EngineVersion
    ) -> list[CatalogObject]:
        if not table_oids:
            return []
        # Older kernels mark cloned partition triggers internal.
        cloned = ""
        if version.flavor == "cbdb" or (version.flavor == "postgres" and version.major >= 13):
            cloned = "AND t.tgparentid = 0"
        rows = await self._query(
            f"""
            SELECT t.oid::bigint AS oid, n.nspname AS schema_name, t.tgname AS name,
                   t.tgrelid::bigint AS relation_oid, pg_get_triggerdef(t.oid) AS definition
            FROM pg_trigger t
            JOIN pg_class c ON c.oid = t.tgrelid
            JOIN pg_namespace n ON n.oid = c.relnamespace
            WHERE t.tgrelid::bigint = ANY(%(oids)s::bigint[])
              AND NOT t.tgisinternal
              {cloned}
            ORDER BY n.nspname, t.tgname
            """,
            {"oids": table_oids},
        )
        return [
            CatalogObject(
                oid=row["oid"],
                kind=ObjectKind.TRIGGER,
                schema_name=row["schema_name"],
                name=row["name"],
                definition=row["definition"],
                relation_oid=row["relation_oid"],
                relation_name=relation_names.get(row["relation_oid"]),
            )
            for row in rows
        ]

    async def _get_rules(
        self, table_oids: list[int], relation_names: dict[int, str]
    ) -> list[CatalogObject]:
        if not table_oids:
            return []
        rows = await self._query(
            """
            SELECT r.oid::bigint AS oid, n.nspname AS schema_name, r.rulename AS name,
                   r.ev_class::bigint AS relation_oid, pg_get_ruledef(r.oid) AS definition
            FROM pg_rewrite r
            JOIN pg_class c ON c.oid = r.ev_class
            JOIN pg_namespace n ON n.oid = c.relnamespace
            WHERE r.ev_class::bigint = ANY(%(oids)s::bigint[])
              AND r.rulename <> '_RETURN'
            ORDER BY n.nspname, r.rulename
            """,
            {"oids": table_oids},
        )
        return [
            CatalogObject(
                oid=row["oid"],
                kind=ObjectKind.RULE,
                schema_name=row["schema_name"],
                name=row["name"],
                definition=row["definition"],
                relation_oid=row["relation_oid"],
                relation_name=relation_names.get(row["relation_oid"]),
            )
            for row in rows
        ]

    async def _get_dependencies(self, index_owners: dict[int, int]) -> dict[int, set[int]]:
        """Normal dependencies between user objects.

        A view's dependencies are recorded on its ``_RETURN`` rule and a
        column default's on ``pg_attrdef``; both are attributed to the
        owning relation.  References to constraint-backing indexes are
        attributed to the constraint.
        """
        rows = await self._query(
            """
            SELECT
                CASE
                    WHEN rw.rulename = '_RETURN' THEN rw.ev_class
                    WHEN ad.oid IS NOT NULL THEN ad.adrelid
                    ELSE d.objid
                END::bigint AS objid,
                d.refobjid::bigint AS refobjid
            FROM pg_depend d
            LEFT JOIN pg_rewrite rw
                ON d.classid = 'pg_rewrite'::regclass AND rw.oid = d.objid
            LEFT JOIN pg_attrdef ad
                ON d.classid = 'pg_attrdef'::regclass AND ad.oid = d.objid
            WHERE d.deptype = 'n'
              AND d.refobjid::bigint >= %(first_oid)s
            """,
            {"first_oid": FIRST_NORMAL_OID},
        )
        dependencies: dict[int, set[int]] = defaultdict(set)
        for row in rows:
            ref = index_owners.get(row["refobjid"], row["refobjid"])
            if ref != row["objid"]:
                dependencies[row["objid"]].add(ref)
        return dependencies

    # ------------------------------------------------------------------
    # Statistics
    # ------------------------------------------------------------------

    async def load_attribute_statistics(
        self,
        relations: Iterable[Relation],
        features: EngineFeatures,
    ) -> dict[int, list[AttributeStatistic]]:
        """Per-column statistics of tables, ordered by column position."""
        oids = [r.oid for r in relations if r.kind in _STATISTICS_KINDS]
        if not oids:
            return {}

        slot_columns = []
        for n in range(1, CATALOG_SLOT_COLUMNS + 1):
            slot_columns += [
                f"s.stakind{n} AS kind{n}",
                f"s.staop{n}::bigint AS operator{n}",
                f"s.stanumbers{n}::text[] AS numbers{n}",
                f"s.stavalues{n}::text::text[] AS values{n}",
            ]
            if features.supports_collation:
                slot_columns.append(f"s.stacoll{n}::bigint AS collation{n}")

        rows = await self._query(
            f"""
            SELECT c.oid::bigint AS relation_oid, n.nspname AS schema_name,
                   c.relname AS "table", a.attname AS att_name, a.attnum AS att_number,
                   t.typname AS type_name, tn.nspname AS type_schema,
                   et.typname AS element_type_name, etn.nspname AS element_type_schema,
                   s.stainherit AS inherit, s.stanullfrac AS null_fraction,
                   s.stawidth AS width, s.stadistinct AS "distinct",
                   {", ".join(slot_columns)}
            FROM pg_statistic s
            JOIN pg_class c ON c.oid = s.starelid
            JOIN pg_namespace n ON n.oid = c.relnamespace
            JOIN pg_attribute a ON a.attrelid = s.starelid AND a.attnum = s.staattnum
            JOIN pg_type t ON t.oid = a.atttypid
            JOIN pg_namespace tn ON tn.oid = t.typnamespace
            LEFT JOIN pg_type et ON et.oid = t.typelem AND t.typelem <> 0
            LEFT JOIN pg_namespace etn ON etn.oid = et.typnamespace
            WHERE c.oid::bigint = ANY(%(oids)s::bigint[])
              AND NOT a.attisdropped
            ORDER BY c.oid, a.attnum
            """,
            {"oids": oids},
        )

        result: dict[int, list[AttributeStatistic]] = defaultdict(list)
        for row in rows:
            result[row["relation_oid"]].append(capture_attribute(row, features))
        for stats in result.values():
            stats.sort(key=lambda s: s.att_number)
        return dict(result)

    async def load_tuple_statistics(self, relations: Iterable[Relation]) -> dict[int, TupleStatistic]:
        """Row and page estimates of tables."""
        oids = [r.oid for r in relations if r.kind in _STATISTICS_KINDS]
        if not oids:
            return {}
        rows = await self._query(
            """
            SELECT c.oid::bigint AS relation_oid, n.nspname AS schema_name,
                   c.relname AS "table", c.reltuples AS rel_tuples, c.relpages AS rel_pages
            FROM pg_class c
            JOIN pg_namespace n ON n.oid = c.relnamespace
            WHERE c.oid::bigint = ANY(%(oids)s::bigint[])
            ORDER BY n.nspname, c.relname
            """,
            {"oids": oids},
        )
        return {row["relation_oid"]: capture_tuple(row) for row in rows}
