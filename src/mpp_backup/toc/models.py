"""TOC entry and data-location models."""

from pydantic import BaseModel, ConfigDict, Field, field_validator

from mpp_backup.catalog.models import ObjectKind, Phase, qualify, quote_ident


class ByteRange(BaseModel):
    """Location of one relation's data inside a data artifact.

    ``backup_id`` is set when the range lives in an earlier backup
    (incremental reuse); ``None`` means the backup that owns the TOC.
    """

    model_config = ConfigDict(frozen=True)

    artifact: str
    offset: int = Field(ge=0)
    length: int = Field(ge=0)
    backup_id: str | None = None

    @property
    def end(self) -> int:
        return self.offset + self.length


class TOCEntry(BaseModel):
    """One row of the table of contents.

    ``depends_on`` holds ordinals of entries that must be applied first;
    every one of them is strictly smaller than ``ordinal``.  ``relation``
    is the unquoted ``(schema, name)`` of the owning relation for tables,
    data, statistics and dependent objects.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    ordinal: int = Field(ge=1)
    phase: Phase
    object_kind: ObjectKind
    oid: int
    schema_name: str = Field(alias="schema")
    name: str
    relation: tuple[str, str] | None = None
    depends_on: list[int] = Field(default_factory=list)
    statement: str | None = None
    drop_statement: str | None = None
    data_range: ByteRange | None = None
    modification_count: int | None = None

    @field_validator("depends_on")
    @classmethod
    def _sorted_unique(cls, value: list[int]) -> list[int]:
        return sorted(set(value))

    @property
    def qualified_name(self) -> str:
        if self.object_kind == ObjectKind.SCHEMA:
            return quote_ident(self.name)
        return qualify(self.schema_name, self.name)

    @property
    def relation_fqn(self) -> str | None:
        if self.relation is None:
            return None
        return qualify(*self.relation)

    @property
    def label(self) -> str:
        return f"{self.object_kind.value} {self.qualified_name}"
