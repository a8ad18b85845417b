"""Core data models for the graph memory.

Uses Pydantic v2 for validation. Fields are snake_case in Python; the wire
format uses the camelCase aliases of the tool protocol (entityType,
relationType, createdAt, ...). Models accept either spelling.
"""

from datetime import datetime, timedelta, timezone
from typing import Any, Generic, TypeVar

import pydantic
from pydantic import BaseModel, ConfigDict, Field

from .errors import ValidationError


def utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(timezone.utc)


def next_timestamp(previous: datetime | None = None) -> datetime:
    """Current UTC time, moved 1us past ``previous`` if the clock lags it.

    Keeps ``updated_at`` strictly increasing across mutations even when two
    writes land within the clock's resolution.
    """
    now = utc_now()
    if previous is not None and now <= previous:
        return previous + timedelta(microseconds=1)
    return now


def format_timestamp(dt: datetime) -> str:
    """ISO-8601 with fixed microsecond precision (lexical order == time order)."""
    return dt.isoformat(timespec="microseconds")


def parse_timestamp(text: str) -> datetime:
    """Parse a stored timestamp; naive values are taken as UTC."""
    dt = datetime.fromisoformat(text)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


class WireModel(BaseModel):
    """Base for models that travel over the tool protocol."""

    model_config = ConfigDict(populate_by_name=True)

    def to_wire(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)


M = TypeVar("M", bound=BaseModel)


def coerce(model: type[M], value: Any) -> M:
    """Validate ``value`` into ``model``, raising our ValidationError."""
    if isinstance(value, model):
        return value
    try:
        return model.model_validate(value)
    except pydantic.ValidationError as e:
        raise ValidationError(describe_validation_error(e)) from e


def describe_validation_error(exc: pydantic.ValidationError) -> str:
    """Flatten pydantic's error list into one readable line."""
    parts = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err["loc"]) or "arguments"
        parts.append(f"{loc}: {err['msg']}")
    return "; ".join(parts)


# ─────────────────────────────────────────────────────────────────────────────
# Graph values
# ─────────────────────────────────────────────────────────────────────────────


class Entity(WireModel):
    """A node in the knowledge graph."""

    name: str
    entity_type: str = Field(alias="entityType")
    observations: list[str] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utc_now, alias="createdAt")
    updated_at: datetime = Field(default_factory=utc_now, alias="updatedAt")

    def to_summary(self) -> dict:
        """Return a compact summary of this entity."""
        return {
            "name": self.name,
            "entityType": self.entity_type,
            "observation_count": len(self.observations),
            "updatedAt": self.updated_at.isoformat(),
        }


class Relation(WireModel):
    """A directed, typed edge between two entities (by name).

    ``id`` is assigned by the store; logically a relation is its
    (from, to, relationType) triple, which is not unique.
    """

    id: int | None = None
    from_entity: str = Field(alias="from")
    to_entity: str = Field(alias="to")
    relation_type: str = Field(alias="relationType")
    created_at: datetime = Field(default_factory=utc_now, alias="createdAt")

    @property
    def triple(self) -> tuple[str, str, str]:
        return (self.from_entity, self.to_entity, self.relation_type)

    def to_summary(self) -> str:
        return f"{self.from_entity} --{self.relation_type}--> {self.to_entity}"

    def other_entity(self, name: str) -> str:
        """Return the entity on the other end of this relation."""
        return self.to_entity if self.from_entity == name else self.from_entity


class KnowledgeGraph(WireModel):
    """All entities and relations as currently persisted."""

    entities: list[Entity] = Field(default_factory=list)
    relations: list[Relation] = Field(default_factory=list)


class SearchResult(KnowledgeGraph):
    """Entities and relations matching a query term."""

    query: str


# ─────────────────────────────────────────────────────────────────────────────
# Batch inputs
# ─────────────────────────────────────────────────────────────────────────────


class EntityInput(WireModel):
    name: str = Field(min_length=1)
    entity_type: str = Field(alias="entityType")
    observations: list[str] = Field(default_factory=list)


class RelationInput(WireModel):
    from_entity: str = Field(alias="from", min_length=1)
    to_entity: str = Field(alias="to", min_length=1)
    relation_type: str = Field(alias="relationType", min_length=1)


class ObservationAddition(WireModel):
    entity_name: str = Field(alias="entityName", min_length=1)
    contents: list[str]


class ObservationDeletion(WireModel):
    entity_name: str = Field(alias="entityName", min_length=1)
    observations: list[str]


# ─────────────────────────────────────────────────────────────────────────────
# Batch results
# ─────────────────────────────────────────────────────────────────────────────

T = TypeVar("T")


class BatchFailure(WireModel):
    """One item of a batch that did not go through."""

    input: Any
    error: str
    code: str


class BatchResult(WireModel, Generic[T]):
    """Outcome of a best-effort batch: successes plus per-item failures.

    Failures never roll back earlier successes.
    """

    succeeded: list[T] = Field(default_factory=list)
    failed: list[BatchFailure] = Field(default_factory=list)

    @property
    def summary(self) -> str:
        return f"Succeeded {len(self.succeeded)}, failed {len(self.failed)}"

    def to_wire(self) -> dict:
        data = super().to_wire()
        data["summary"] = self.summary
        return data
