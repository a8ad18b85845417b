"""MCP server for the graph memory."""

import asyncio
import json
import logging
import sys
import traceback
from pathlib import Path
from typing import Any, Callable

from mcp.server import Server
from mcp.server.stdio import stdio_server
from mcp.types import TextContent, Tool

from .config import get_db_path, get_log_level, get_log_path
from .engine import MemoryEngine
from .errors import GraphMemoryError, StoreError
from .requests import (
    REQUEST_MODELS,
    AddObservationsRequest,
    BackupDatabaseRequest,
    CountRecordsRequest,
    CreateEntitiesRequest,
    CreateRelationsRequest,
    DeleteEntitiesRequest,
    DeleteObservationsRequest,
    DeleteRelationsRequest,
    DescribeTableRequest,
    ExecuteSqlRequest,
    OpenNodesRequest,
    QueryDataRequest,
    RecentEntitiesRequest,
    RestoreDatabaseRequest,
    SearchNodesRequest,
    ToolRequest,
    input_schema,
    parse_request,
)
from .store import SQLiteStore, StoreResult

logger = logging.getLogger("sqlmemory")

TOOL_DESCRIPTIONS = {
    "create_entities": (
        "Create new entities in the knowledge graph. Each entity is created "
        "independently; names that already exist are reported as failures."
    ),
    "create_relations": (
        "Create directed relations between existing entities. "
        "Relation types should be in active voice (e.g., 'works_at', 'depends_on')."
    ),
    "add_observations": "Append observations (atomic facts) to existing entities.",
    "delete_entities": "Delete entities by name, together with every relation touching them.",
    "delete_observations": "Remove specific observations from entities.",
    "delete_relations": "Delete relations matching (from, to, relationType).",
    "read_graph": "Read the entire knowledge graph.",
    "search_nodes": (
        "Case-insensitive substring search over entity names, types and "
        "observations, and over relation types and endpoints."
    ),
    "open_nodes": "Get specific entities by name. Unknown names are left out.",
    "get_recent_entities": (
        "Most recently updated entities first. "
        "Optional 'since' accepts ISO dates or phrases like '7 days ago'."
    ),
    "list_tables": "List the tables in the memory database.",
    "describe_table": "Show the columns, indexes and row count of a table.",
    "query_data": "Select rows from a table with equality conditions, ordering and paging.",
    "count_records": "Count rows in a table, optionally filtered by equality conditions.",
    "execute_sql": "Run a single SQL statement with positional parameters.",
    "backup_database": "Copy the memory database to a backup file.",
    "restore_database": "Replace the memory database contents with a backup file.",
}

Handler = Callable[[MemoryEngine, Any], tuple[str, Any]]


def _store_data(result: StoreResult) -> tuple[str, Any]:
    """Unwrap a store result for a tool reply, raising on failure."""
    if not result.success:
        raise StoreError(result.message, result.error)
    return result.message, result.data


# --- Graph memory tools ---


def _create_entities(engine: MemoryEngine, req: CreateEntitiesRequest) -> tuple[str, Any]:
    result = engine.create_entities(req.entities)
    return f"Created entities. {result.summary}", result.to_wire()


def _create_relations(engine: MemoryEngine, req: CreateRelationsRequest) -> tuple[str, Any]:
    result = engine.create_relations(req.relations)
    return f"Created relations. {result.summary}", result.to_wire()


def _add_observations(engine: MemoryEngine, req: AddObservationsRequest) -> tuple[str, Any]:
    result = engine.add_observations(req.observations)
    return f"Added observations. {result.summary}", result.to_wire()


def _delete_entities(engine: MemoryEngine, req: DeleteEntitiesRequest) -> tuple[str, Any]:
    count = engine.delete_entities(req.entity_names)
    return f"Deleted {count} entities", {"deleted": count}


def _delete_observations(
    engine: MemoryEngine, req: DeleteObservationsRequest
) -> tuple[str, Any]:
    result = engine.delete_observations(req.deletions)
    return f"Deleted observations. {result.summary}", result.to_wire()


def _delete_relations(engine: MemoryEngine, req: DeleteRelationsRequest) -> tuple[str, Any]:
    count = engine.delete_relations(req.relations)
    return f"Deleted {count} relations", {"deleted": count}


def _read_graph(engine: MemoryEngine, req: ToolRequest) -> tuple[str, Any]:
    graph = engine.read_graph()
    return (
        f"Graph has {len(graph.entities)} entities and {len(graph.relations)} relations",
        graph.to_wire(),
    )


def _search_nodes(engine: MemoryEngine, req: SearchNodesRequest) -> tuple[str, Any]:
    result = engine.search_nodes(req.query)
    return (
        f"Found {len(result.entities)} entities and {len(result.relations)} relations",
        result.to_wire(),
    )


def _open_nodes(engine: MemoryEngine, req: OpenNodesRequest) -> tuple[str, Any]:
    entities = engine.open_nodes(req.names)
    return f"Found {len(entities)} of {len(req.names)} entities", {
        "entities": [e.to_wire() for e in entities]
    }


def _get_recent_entities(engine: MemoryEngine, req: RecentEntitiesRequest) -> tuple[str, Any]:
    entities = engine.get_recent_entities(limit=req.limit, since=req.since_datetime())
    return f"Found {len(entities)} recent entities", {
        "entities": [e.to_wire() for e in entities]
    }


# --- Store inspection tools ---


def _list_tables(engine: MemoryEngine, req: ToolRequest) -> tuple[str, Any]:
    return _store_data(engine.store.list_tables())


def _describe_table(engine: MemoryEngine, req: DescribeTableRequest) -> tuple[str, Any]:
    return _store_data(engine.store.describe_table(req.table))


def _query_data(engine: MemoryEngine, req: QueryDataRequest) -> tuple[str, Any]:
    return _store_data(
        engine.store.query(
            req.table,
            req.conditions,
            limit=req.limit,
            offset=req.offset,
            order_by=req.order_by,
            descending=req.order_direction == "DESC",
        )
    )


def _count_records(engine: MemoryEngine, req: CountRecordsRequest) -> tuple[str, Any]:
    return _store_data(engine.store.count(req.table, req.conditions))


def _execute_sql(engine: MemoryEngine, req: ExecuteSqlRequest) -> tuple[str, Any]:
    return _store_data(engine.store.execute(req.query, req.parameters))


def _backup_database(engine: MemoryEngine, req: BackupDatabaseRequest) -> tuple[str, Any]:
    return _store_data(engine.store.backup(req.backup_path))


def _restore_database(engine: MemoryEngine, req: RestoreDatabaseRequest) -> tuple[str, Any]:
    return _store_data(engine.store.restore(req.backup_path))


HANDLERS: dict[str, Handler] = {
    "create_entities": _create_entities,
    "create_relations": _create_relations,
    "add_observations": _add_observations,
    "delete_entities": _delete_entities,
    "delete_observations": _delete_observations,
    "delete_relations": _delete_relations,
    "read_graph": _read_graph,
    "search_nodes": _search_nodes,
    "open_nodes": _open_nodes,
    "get_recent_entities": _get_recent_entities,
    "list_tables": _list_tables,
    "describe_table": _describe_table,
    "query_data": _query_data,
    "count_records": _count_records,
    "execute_sql": _execute_sql,
    "backup_database": _backup_database,
    "restore_database": _restore_database,
}


def tool_definitions() -> list[Tool]:
    """List available MCP tools."""
    return [
        Tool(
            name=name,
            description=TOOL_DESCRIPTIONS[name],
            inputSchema=input_schema(model),
        )
        for name, model in REQUEST_MODELS.items()
    ]


def dispatch(engine: MemoryEngine, name: str, arguments: dict | None) -> dict:
    """Run one tool call and wrap the outcome in a result envelope.

    Never raises: engine errors keep their code, anything unexpected is
    reported as ``internal_error``.
    """
    logger.info(f"Tool call: {name}")
    logger.debug(f"Arguments: {arguments}")
    try:
        request = parse_request(name, arguments)
        message, data = HANDLERS[name](engine, request)
    except GraphMemoryError as e:
        logger.warning(f"Tool {name} failed: {e}")
        return {"success": False, "message": str(e), "error": e.to_dict()}
    except Exception as e:
        logger.error(f"Tool {name} failed: {e}")
        logger.error(traceback.format_exc())
        return {
            "success": False,
            "message": f"Unexpected error: {e}",
            "error": {"code": "internal_error", "message": str(e)},
        }
    return {"success": True, "message": message, "data": data}


def create_server(engine: MemoryEngine) -> Server:
    """Build an MCP server exposing the tool catalog for ``engine``."""
    server = Server("sqlmemory")

    @server.list_tools()
    async def list_tools() -> list[Tool]:
        return tool_definitions()

    @server.call_tool()
    async def call_tool(name: str, arguments: dict) -> list[TextContent]:
        result = dispatch(engine, name, arguments)
        return [TextContent(type="text", text=json.dumps(result, indent=2, default=str))]

    return server


def configure_logging(db_path: Path | str) -> None:
    """Log to a file beside the database and to stderr (stdout is the MCP stream)."""
    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    log_path = get_log_path(db_path)
    if log_path is not None:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        handlers.insert(0, logging.FileHandler(log_path))
    logging.basicConfig(
        level=get_log_level(),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        handlers=handlers,
    )


def main():
    """Entry point for the MCP server."""
    db_path = get_db_path()
    configure_logging(db_path)

    store = SQLiteStore(db_path)
    try:
        engine = MemoryEngine(store)
        engine.initialize()
        stats = engine.stats()
        logger.info(f"sqlmemory MCP server starting (db={db_path})")
        logger.info(
            f"Loaded {stats['entity_count']} entities, {stats['relation_count']} relations"
        )
        asyncio.run(_run_server(create_server(engine)))
    except Exception as e:
        logger.error(f"Server crashed: {e}")
        logger.error(traceback.format_exc())
        raise
    finally:
        store.close()


async def _run_server(server: Server):
    """Run the MCP server over stdio."""
    async with stdio_server() as (read, write):
        await server.run(read, write, server.create_initialization_options())


if __name__ == "__main__":
    main()
