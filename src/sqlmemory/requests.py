"""Typed request structs for the tool catalog.

Tool arguments arrive as loose JSON objects. Each tool has a pydantic model
that validates them before the engine sees them; the same model provides
the tool's input schema.
"""

from datetime import datetime
from typing import Annotated, Any, Literal

from pydantic import Field, field_validator

from .constants import DEFAULT_RECENT_LIMIT, MAX_QUERY_LIMIT
from .errors import ValidationError
from .models import (
    EntityInput,
    ObservationAddition,
    ObservationDeletion,
    RelationInput,
    WireModel,
    coerce,
)
from .timeutil import parse_time_reference

NonEmptyStr = Annotated[str, Field(min_length=1)]


class ToolRequest(WireModel):
    """Base for per-tool argument structs."""


# --- Graph memory tools ---


class CreateEntitiesRequest(ToolRequest):
    entities: list[EntityInput] = Field(min_length=1)


class CreateRelationsRequest(ToolRequest):
    relations: list[RelationInput] = Field(min_length=1)


class AddObservationsRequest(ToolRequest):
    observations: list[ObservationAddition] = Field(min_length=1)


class DeleteEntitiesRequest(ToolRequest):
    entity_names: list[NonEmptyStr] = Field(alias="entityNames", min_length=1)


class DeleteObservationsRequest(ToolRequest):
    deletions: list[ObservationDeletion] = Field(min_length=1)


class DeleteRelationsRequest(ToolRequest):
    relations: list[RelationInput] = Field(min_length=1)


class ReadGraphRequest(ToolRequest):
    pass


class SearchNodesRequest(ToolRequest):
    query: NonEmptyStr = Field(description="Text matched against names, types and observations")


class OpenNodesRequest(ToolRequest):
    names: list[NonEmptyStr] = Field(min_length=1)


class RecentEntitiesRequest(ToolRequest):
    limit: int = Field(default=DEFAULT_RECENT_LIMIT, ge=1, le=MAX_QUERY_LIMIT)
    since: str | None = Field(
        default=None,
        description="ISO date, 'N days ago', 'yesterday', 'last week', ...",
    )

    @field_validator("since")
    @classmethod
    def check_since(cls, value: str | None) -> str | None:
        if value is not None:
            parse_time_reference(value)
        return value

    def since_datetime(self) -> datetime | None:
        return parse_time_reference(self.since) if self.since else None


# --- Store inspection tools ---


class ListTablesRequest(ToolRequest):
    pass


class DescribeTableRequest(ToolRequest):
    table: NonEmptyStr


class QueryDataRequest(ToolRequest):
    table: NonEmptyStr
    conditions: dict[str, Any] | None = Field(default=None, description="Equality WHERE conditions")
    limit: int | None = Field(default=None, ge=1, le=MAX_QUERY_LIMIT)
    offset: int | None = Field(default=None, ge=0)
    order_by: str | None = Field(default=None, alias="orderBy")
    order_direction: Literal["ASC", "DESC"] = Field(default="ASC", alias="orderDirection")


class CountRecordsRequest(ToolRequest):
    table: NonEmptyStr
    conditions: dict[str, Any] | None = None


class ExecuteSqlRequest(ToolRequest):
    query: NonEmptyStr = Field(description="A single SQL statement")
    parameters: list[Any] | None = None


class BackupDatabaseRequest(ToolRequest):
    backup_path: NonEmptyStr = Field(alias="backupPath")


class RestoreDatabaseRequest(ToolRequest):
    backup_path: NonEmptyStr = Field(alias="backupPath")


REQUEST_MODELS: dict[str, type[ToolRequest]] = {
    "create_entities": CreateEntitiesRequest,
    "create_relations": CreateRelationsRequest,
    "add_observations": AddObservationsRequest,
    "delete_entities": DeleteEntitiesRequest,
    "delete_observations": DeleteObservationsRequest,
    "delete_relations": DeleteRelationsRequest,
    "read_graph": ReadGraphRequest,
    "search_nodes": SearchNodesRequest,
    "open_nodes": OpenNodesRequest,
    "get_recent_entities": RecentEntitiesRequest,
    "list_tables": ListTablesRequest,
    "describe_table": DescribeTableRequest,
    "query_data": QueryDataRequest,
    "count_records": CountRecordsRequest,
    "execute_sql": ExecuteSqlRequest,
    "backup_database": BackupDatabaseRequest,
    "restore_database": RestoreDatabaseRequest,
}


def parse_request(tool: str, arguments: dict | None) -> ToolRequest:
    """Validate raw tool arguments.

    Raises:
        ValidationError: unknown tool or arguments that do not fit its struct
    """
    model = REQUEST_MODELS.get(tool)
    if model is None:
        raise ValidationError(f"Unknown tool: {tool}")
    return coerce(model, arguments or {})


def input_schema(model: type[ToolRequest]) -> dict:
    """JSON schema for a request struct, using the wire field names."""
    return model.model_json_schema(by_alias=True)
