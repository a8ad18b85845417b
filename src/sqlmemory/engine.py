"""Memory engine - entities, relations and observations over a relational store.

The engine keeps no cache: every operation goes back to the store, so a
write is visible to the next call. Multi-step mutations (check-then-insert,
read-modify-write, cascade delete) run inside one store transaction.
"""

import json
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Iterable, TypeVar

from pydantic import BaseModel

from .constants import (
    DEFAULT_RECENT_LIMIT,
    ENTITIES_TABLE,
    IDX_ENTITIES_TYPE,
    IDX_ENTITIES_UPDATED,
    IDX_RELATIONS_FROM,
    IDX_RELATIONS_TO,
    IDX_RELATIONS_TYPE,
    MAX_QUERY_LIMIT,
    RELATIONS_TABLE,
)
from .errors import (
    DuplicateEntityError,
    GraphMemoryError,
    SchemaError,
    StoreError,
    UnknownEntityError,
    ValidationError,
)
from .models import (
    BatchFailure,
    BatchResult,
    Entity,
    EntityInput,
    KnowledgeGraph,
    ObservationAddition,
    ObservationDeletion,
    Relation,
    RelationInput,
    SearchResult,
    WireModel,
    coerce,
    format_timestamp,
    next_timestamp,
    parse_timestamp,
    utc_now,
)
from .store import ColumnSpec, IndexSpec, RelationalStore, StoreResult, TableSpec

logger = logging.getLogger(__name__)

ENTITIES_SCHEMA = TableSpec(
    columns=[
        ColumnSpec(name="name", type="TEXT", constraints=["PRIMARY KEY", "NOT NULL"]),
        ColumnSpec(name="entity_type", type="TEXT", constraints=["NOT NULL"]),
        ColumnSpec(name="observations", type="TEXT", constraints=["NOT NULL"]),  # JSON array
        ColumnSpec(name="created_at", type="TEXT", constraints=["NOT NULL"]),
        ColumnSpec(name="updated_at", type="TEXT", constraints=["NOT NULL"]),
    ]
)

RELATIONS_SCHEMA = TableSpec(
    columns=[
        ColumnSpec(name="id", type="INTEGER", constraints=["PRIMARY KEY", "AUTOINCREMENT"]),
        ColumnSpec(name="from_entity", type="TEXT", constraints=["NOT NULL"]),
        ColumnSpec(name="to_entity", type="TEXT", constraints=["NOT NULL"]),
        ColumnSpec(name="relation_type", type="TEXT", constraints=["NOT NULL"]),
        ColumnSpec(name="created_at", type="TEXT", constraints=["NOT NULL"]),
    ]
)

MEMORY_INDEXES: list[tuple[str, IndexSpec]] = [
    (RELATIONS_TABLE, IndexSpec(name=IDX_RELATIONS_FROM, columns=["from_entity"])),
    (RELATIONS_TABLE, IndexSpec(name=IDX_RELATIONS_TO, columns=["to_entity"])),
    (RELATIONS_TABLE, IndexSpec(name=IDX_RELATIONS_TYPE, columns=["relation_type"])),
    (ENTITIES_TABLE, IndexSpec(name=IDX_ENTITIES_TYPE, columns=["entity_type"])),
    (ENTITIES_TABLE, IndexSpec(name=IDX_ENTITIES_UPDATED, columns=["updated_at"])),
]

R = TypeVar("R")


def _require_name(value: Any, field: str) -> str:
    if not isinstance(value, str) or not value:
        raise ValidationError(f"{field} must be a non-empty string")
    return value


def _require_strings(values: Any, field: str) -> list[str]:
    if not isinstance(values, (list, tuple)) or not all(isinstance(v, str) for v in values):
        raise ValidationError(f"{field} must be a list of strings")
    return list(values)


def _encode_observations(observations: list[str]) -> str:
    # non-ASCII stays unescaped so search sees the literal text
    return json.dumps(observations, ensure_ascii=False)


def _row_to_entity(row: dict) -> Entity:
    observations = json.loads(row["observations"])
    if not isinstance(observations, list):
        raise ValueError("observations is not a JSON array")
    return Entity(
        name=row["name"],
        entity_type=row["entity_type"],
        observations=observations,
        created_at=parse_timestamp(row["created_at"]),
        updated_at=parse_timestamp(row["updated_at"]),
    )


def _row_to_relation(row: dict) -> Relation:
    return Relation(
        id=row["id"],
        from_entity=row["from_entity"],
        to_entity=row["to_entity"],
        relation_type=row["relation_type"],
        created_at=parse_timestamp(row["created_at"]),
    )


def _observation_texts(raw: str) -> list[str]:
    """Stored observations JSON plus the decoded strings.

    The decoded strings let quotes and backslashes match as written; the
    JSON text is kept so undecodable rows stay searchable.
    """
    try:
        decoded = json.loads(raw)
    except (ValueError, TypeError):
        return [raw]
    if not isinstance(decoded, list):
        return [raw]
    return [raw, *(o for o in decoded if isinstance(o, str))]


def _contains(needle: str, *fields: str) -> bool:
    return any(needle in (field or "").lower() for field in fields)


class MemoryEngine:
    """Main entry point for graph memory operations.

    Thread-safety: the engine is as safe as the store it is given. With
    SQLiteStore each multi-step mutation holds a write transaction, so
    concurrent writers cannot interleave between the existence check and
    the write. A store whose ``transaction()`` is a no-op leaves those
    races to the caller.
    """

    def __init__(self, store: RelationalStore):
        self.store = store

    # --- Store helpers ---

    def _check(self, result: StoreResult, action: str) -> Any:
        """Return ``result.data`` or raise StoreError for a failed call."""
        if not result.success:
            raise StoreError(f"Failed to {action}", result.error or result.message)
        return result.data

    def _rows(self, result: StoreResult, action: str) -> list[dict]:
        return self._check(result, action)["rows"]

    def _fetch_entity_row(self, name: str) -> dict | None:
        rows = self._rows(
            self.store.query(ENTITIES_TABLE, {"name": name}, limit=1),
            f"read entity '{name}'",
        )
        return rows[0] if rows else None

    def _decode_entity(self, row: dict) -> Entity:
        try:
            return _row_to_entity(row)
        except (ValueError, KeyError, TypeError) as e:
            raise StoreError(f"Malformed entity row '{row.get('name')}'", str(e)) from e

    def _decode_entities(self, rows: list[dict]) -> list[Entity]:
        """Decode rows, skipping malformed ones with a warning."""
        entities = []
        for row in rows:
            try:
                entities.append(_row_to_entity(row))
            except (ValueError, KeyError, TypeError) as e:
                logger.warning(f"Skipping malformed entity row {row.get('name')!r}: {e}")
        return entities

    def _decode_relations(self, rows: list[dict]) -> list[Relation]:
        relations = []
        for row in rows:
            try:
                relations.append(_row_to_relation(row))
            except (ValueError, KeyError, TypeError) as e:
                logger.warning(f"Skipping malformed relation row {row.get('id')!r}: {e}")
        return relations

    def _run_batch(
        self,
        items: Iterable[Any],
        model: type[BaseModel],
        apply: Callable[[Any], R],
        action: str,
    ) -> BatchResult[R]:
        """Apply ``apply`` to every item, recording failures instead of raising."""
        result: BatchResult = BatchResult()
        for raw in items:
            try:
                result.succeeded.append(apply(coerce(model, raw)))
            except GraphMemoryError as e:
                logger.warning(f"Failed to {action}: {e}")
                payload = raw.to_wire() if isinstance(raw, WireModel) else raw
                result.failed.append(BatchFailure(input=payload, error=str(e), code=e.code))
        if result.failed:
            logger.info(f"Batch {action}: {result.summary}")
        return result

    # --- Schema ---

    def initialize(self) -> None:
        """Create the entities and relations tables and their indexes.

        Safe to call repeatedly. A failed table creation raises SchemaError;
        a failed index creation is only logged, since the schema works
        without it.
        """
        for table, spec in (
            (ENTITIES_TABLE, ENTITIES_SCHEMA),
            (RELATIONS_TABLE, RELATIONS_SCHEMA),
        ):
            result = self.store.create_table(table, spec)
            if not result.success:
                raise SchemaError(
                    f"Failed to create {table} table", result.error or result.message
                )

        for table, index in MEMORY_INDEXES:
            result = self.store.create_index(table, index)
            if not result.success:
                logger.warning(f"Failed to create index {index.name}: {result.error}")

    # --- Entity operations ---

    def create_entity(
        self, name: str, entity_type: str, observations: list[str] | None = None
    ) -> Entity:
        """Create one entity.

        Raises:
            ValidationError: empty name, or non-string type/observations
            DuplicateEntityError: an entity with this name exists (no change made)
            StoreError: the store rejected the read or the insert
        """
        _require_name(name, "name")
        if not isinstance(entity_type, str):
            raise ValidationError("entityType must be a string")
        observations = _require_strings(observations or [], "observations")

        with self.store.transaction():
            if self._fetch_entity_row(name) is not None:
                raise DuplicateEntityError(name)

            now = utc_now()
            stamp = format_timestamp(now)
            self._check(
                self.store.insert(ENTITIES_TABLE, [{
                    "name": name,
                    "entity_type": entity_type,
                    "observations": _encode_observations(observations),
                    "created_at": stamp,
                    "updated_at": stamp,
                }]),
                f"create entity '{name}'",
            )

        logger.debug(f"Created entity '{name}' ({entity_type})")
        return Entity(
            name=name,
            entity_type=entity_type,
            observations=observations,
            created_at=now,
            updated_at=now,
        )

    def create_entities(self, entities: Iterable[EntityInput | dict]) -> BatchResult[Entity]:
        """Create entities one by one; failures are recorded, not raised."""
        return self._run_batch(
            entities,
            EntityInput,
            lambda e: self.create_entity(e.name, e.entity_type, e.observations),
            "create entity",
        )

    def delete_entity(self, name: str) -> int:
        """Delete an entity and every relation touching it.

        Relations where it is the source go first, then relations where it
        is the target, then the entity row. Deleting a missing entity is a
        no-op.

        Returns:
            Number of entity rows removed (0 or 1)
        """
        _require_name(name, "name")
        with self.store.transaction():
            outgoing = self._check(
                self.store.delete(RELATIONS_TABLE, {"from_entity": name}),
                f"delete relations from '{name}'",
            )["changes"]
            incoming = self._check(
                self.store.delete(RELATIONS_TABLE, {"to_entity": name}),
                f"delete relations to '{name}'",
            )["changes"]
            removed = self._check(
                self.store.delete(ENTITIES_TABLE, {"name": name}),
                f"delete entity '{name}'",
            )["changes"]

        if removed:
            logger.info(f"Deleted entity '{name}' and {outgoing + incoming} relations")
        return removed

    def delete_entities(self, names: Iterable[str]) -> int:
        """Delete entities by name. Returns count of deleted."""
        return sum(self.delete_entity(name) for name in names)

    # --- Relation operations ---

    def create_relation(self, from_entity: str, to_entity: str, relation_type: str) -> Relation:
        """Create a directed relation between two existing entities.

        Identical (from, to, relationType) triples are not deduplicated;
        each call adds a row.

        Raises:
            ValidationError: an empty argument
            UnknownEntityError: an endpoint does not exist (source checked first)
        """
        _require_name(from_entity, "from")
        _require_name(to_entity, "to")
        _require_name(relation_type, "relationType")

        with self.store.transaction():
            for endpoint in (from_entity, to_entity):
                if self._fetch_entity_row(endpoint) is None:
                    raise UnknownEntityError(endpoint)

            now = utc_now()
            data = self._check(
                self.store.insert(RELATIONS_TABLE, [{
                    "from_entity": from_entity,
                    "to_entity": to_entity,
                    "relation_type": relation_type,
                    "created_at": format_timestamp(now),
                }]),
                f"create relation {from_entity} -> {to_entity}",
            )

        return Relation(
            id=data["last_row_id"],
            from_entity=from_entity,
            to_entity=to_entity,
            relation_type=relation_type,
            created_at=now,
        )

    def create_relations(
        self, relations: Iterable[RelationInput | dict]
    ) -> BatchResult[Relation]:
        return self._run_batch(
            relations,
            RelationInput,
            lambda r: self.create_relation(r.from_entity, r.to_entity, r.relation_type),
            "create relation",
        )

    def delete_relation(self, from_entity: str, to_entity: str, relation_type: str) -> int:
        """Delete every relation matching the triple. Returns rows removed."""
        _require_name(from_entity, "from")
        _require_name(to_entity, "to")
        _require_name(relation_type, "relationType")
        return self._check(
            self.store.delete(RELATIONS_TABLE, {
                "from_entity": from_entity,
                "to_entity": to_entity,
                "relation_type": relation_type,
            }),
            f"delete relation {from_entity} -> {to_entity}",
        )["changes"]

    def delete_relations(self, relations: Iterable[RelationInput | dict]) -> int:
        """Delete relations. Returns count of deleted."""
        deleted = 0
        for raw in relations:
            rel = coerce(RelationInput, raw)
            deleted += self.delete_relation(rel.from_entity, rel.to_entity, rel.relation_type)
        return deleted

    # --- Observation operations ---

    def _mutate_observations(
        self, entity_name: str, change: Callable[[list[str]], list[str]]
    ) -> Entity:
        """Read-modify-write an entity's observations and bump updated_at."""
        with self.store.transaction():
            row = self._fetch_entity_row(entity_name)
            if row is None:
                raise UnknownEntityError(entity_name)
            entity = self._decode_entity(row)

            observations = change(entity.observations)
            updated_at = next_timestamp(entity.updated_at)
            self._check(
                self.store.update(
                    ENTITIES_TABLE,
                    {"name": entity_name},
                    {
                        "observations": _encode_observations(observations),
                        "updated_at": format_timestamp(updated_at),
                    },
                ),
                f"update entity '{entity_name}'",
            )

        return entity.model_copy(update={"observations": observations, "updated_at": updated_at})

    def add_observation(self, entity_name: str, contents: list[str]) -> Entity:
        """Append observations in order (duplicates kept). Returns the updated entity."""
        _require_name(entity_name, "entityName")
        contents = _require_strings(contents, "contents")
        return self._mutate_observations(entity_name, lambda current: [*current, *contents])

    def delete_observation(self, entity_name: str, observations: list[str]) -> Entity:
        """Remove every occurrence of each listed observation.

        The remaining observations keep their relative order.
        """
        _require_name(entity_name, "entityName")
        doomed = set(_require_strings(observations, "observations"))
        return self._mutate_observations(
            entity_name, lambda current: [o for o in current if o not in doomed]
        )

    def add_observations(
        self, additions: Iterable[ObservationAddition | dict]
    ) -> BatchResult[Entity]:
        return self._run_batch(
            additions,
            ObservationAddition,
            lambda a: self.add_observation(a.entity_name, a.contents),
            "add observations",
        )

    def delete_observations(
        self, deletions: Iterable[ObservationDeletion | dict]
    ) -> BatchResult[Entity]:
        return self._run_batch(
            deletions,
            ObservationDeletion,
            lambda d: self.delete_observation(d.entity_name, d.observations),
            "delete observations",
        )

    # --- Read operations ---

    def read_graph(self) -> KnowledgeGraph:
        """Return every entity (insertion order) and relation (by id)."""
        entity_rows = self._rows(
            self.store.query(ENTITIES_TABLE, order_by="rowid"), "read entities"
        )
        relation_rows = self._rows(
            self.store.query(RELATIONS_TABLE, order_by="id"), "read relations"
        )
        return KnowledgeGraph(
            entities=self._decode_entities(entity_rows),
            relations=self._decode_relations(relation_rows),
        )

    def search_nodes(self, query: str) -> SearchResult:
        """Case-insensitive substring search.

        An entity matches on its name, type, stored observations JSON or
        any single observation as written (so ``c:\\tmp`` finds an
        observation containing a backslash); a relation matches on its type
        or either endpoint name. The two are matched
        independently: a matching entity does not pull in its relations.
        """
        _require_name(query, "query")
        needle = query.lower()

        entity_rows = self._rows(
            self.store.query(ENTITIES_TABLE, order_by="rowid"), "search entities"
        )
        relation_rows = self._rows(
            self.store.query(RELATIONS_TABLE, order_by="id"), "search relations"
        )

        return SearchResult(
            query=query,
            entities=self._decode_entities([
                row for row in entity_rows
                if _contains(
                    needle, row["name"], row["entity_type"], *_observation_texts(row["observations"])
                )
            ]),
            relations=self._decode_relations([
                row for row in relation_rows
                if _contains(needle, row["relation_type"], row["from_entity"], row["to_entity"])
            ]),
        )

    def open_node(self, name: str) -> Entity | None:
        """Return the named entity, or None if it does not exist."""
        _require_name(name, "name")
        row = self._fetch_entity_row(name)
        return self._decode_entity(row) if row is not None else None

    def open_nodes(self, names: Iterable[str]) -> list[Entity]:
        """Resolve each name; unknown names are left out of the result."""
        entities = []
        for name in names:
            try:
                entity = self.open_node(name)
            except GraphMemoryError as e:
                logger.warning(f"Failed to open node {name!r}: {e}")
                continue
            if entity is not None:
                entities.append(entity)
        return entities

    def get_entities_by_type(self, entity_type: str) -> list[Entity]:
        rows = self._rows(
            self.store.query(ENTITIES_TABLE, {"entity_type": entity_type}, order_by="rowid"),
            f"read entities of type '{entity_type}'",
        )
        return self._decode_entities(rows)

    def get_recent_entities(
        self, limit: int = DEFAULT_RECENT_LIMIT, since: datetime | None = None
    ) -> list[Entity]:
        """Most recently updated entities first.

        Args:
            limit: Max entities to return (1-10000)
            since: Only entities updated at or after this time
        """
        if not isinstance(limit, int) or not 1 <= limit <= MAX_QUERY_LIMIT:
            raise ValidationError(f"limit must be between 1 and {MAX_QUERY_LIMIT}")

        if since is None:
            result = self.store.query(
                ENTITIES_TABLE, order_by="updated_at", descending=True, limit=limit
            )
        else:
            if since.tzinfo is None:
                since = since.replace(tzinfo=timezone.utc)
            result = self.store.execute(
                f"SELECT * FROM {ENTITIES_TABLE} WHERE updated_at >= ? "
                "ORDER BY updated_at DESC LIMIT ?",
                (format_timestamp(since.astimezone(timezone.utc)), limit),
            )
        return self._decode_entities(self._rows(result, "read recent entities"))

    def get_relations_for(self, name: str) -> list[Relation]:
        """Relations where the entity is either endpoint, by id."""
        _require_name(name, "name")
        rows = self._rows(
            self.store.execute(
                f"SELECT * FROM {RELATIONS_TABLE} "
                "WHERE from_entity = ? OR to_entity = ? ORDER BY id",
                (name, name),
            ),
            f"read relations of '{name}'",
        )
        return self._decode_relations(rows)

    def stats(self) -> dict:
        """Entity and relation counts, plus entity counts per type."""
        type_rows = self._rows(
            self.store.execute(
                f"SELECT entity_type, COUNT(*) AS count FROM {ENTITIES_TABLE} "
                "GROUP BY entity_type ORDER BY entity_type"
            ),
            "count entity types",
        )
        relation_rows = self._rows(
            self.store.execute(f"SELECT COUNT(*) AS count FROM {RELATIONS_TABLE}"),
            "count relations",
        )
        types = {row["entity_type"]: row["count"] for row in type_rows}
        return {
            "entity_count": sum(types.values()),
            "relation_count": relation_rows[0]["count"],
            "types": types,
        }

    # --- Bulk import ---

    def import_graph(self, payload: dict) -> tuple[BatchResult[Entity], BatchResult[Relation]]:
        """Load a read_graph()-shaped dict through the best-effort batch calls.

        Entities go first so relations can find their endpoints. Stored
        timestamps and relation ids in the payload are ignored.
        """
        if not isinstance(payload, dict):
            raise ValidationError("graph payload must be an object")
        for key in ("entities", "relations"):
            if not isinstance(payload.get(key, []), list):
                raise ValidationError(f"graph payload '{key}' must be a list")
        entities = self.create_entities(payload.get("entities", []))
        relations = self.create_relations(payload.get("relations", []))
        return entities, relations
