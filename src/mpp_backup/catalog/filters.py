"""Include/exclude filter for schemas and relations.

Relations are named ``schema.name`` without quoting.  Include sets narrow
the scope; exclude sets are applied afterwards and always win.

Usage:
    from mpp_backup.catalog.filters import FilterSpec

    spec = FilterSpec(include_schemas={"sales"}, exclude_relations={"sales.tmp"})
    spec.matches_relation("sales", "orders")   # True
    spec.matches_relation("sales", "tmp")      # False
"""

from pydantic import BaseModel, Field


class FilterSpec(BaseModel):
    """Explicit include/exclude sets for a backup or restore."""

    include_schemas: set[str] = Field(default_factory=set)
    exclude_schemas: set[str] = Field(default_factory=set)
    include_relations: set[str] = Field(default_factory=set)
    exclude_relations: set[str] = Field(default_factory=set)

    @classmethod
    def from_lists(
        cls,
        include_schemas: list[str] | None = None,
        exclude_schemas: list[str] | None = None,
        include_relations: list[str] | None = None,
        exclude_relations: list[str] | None = None,
    ) -> "FilterSpec":
        """Build from optional CLI-style lists, validating relation names."""
        for name in (include_relations or []) + (exclude_relations or []):
            if "." not in name:
                raise ValueError(f"Relation filter must be schema-qualified: {name!r}")
        return cls(
            include_schemas=set(include_schemas or []),
            exclude_schemas=set(exclude_schemas or []),
            include_relations=set(include_relations or []),
            exclude_relations=set(exclude_relations or []),
        )

    @property
    def is_empty(self) -> bool:
        return not (
            self.include_schemas
            or self.exclude_schemas
            or self.include_relations
            or self.exclude_relations
        )

    @property
    def filters_relations(self) -> bool:
        """True when an explicit relation include list narrows the scope."""
        return bool(self.include_relations)

    def matches_schema(self, schema_name: str) -> bool:
        if schema_name in self.exclude_schemas:
            return False
        if self.include_relations:
            return any(r.split(".", 1)[0] == schema_name for r in self.include_relations)
        if self.include_schemas:
            return schema_name in self.include_schemas
        return True

    def matches_relation(self, schema_name: str, name: str) -> bool:
        qualified = f"{schema_name}.{name}"
        if schema_name in self.exclude_schemas or qualified in self.exclude_relations:
            return False
        if self.include_relations:
            return qualified in self.include_relations
        if self.include_schemas:
            return schema_name in self.include_schemas
        return True
