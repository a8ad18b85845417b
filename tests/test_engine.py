"""Tests for the memory engine."""

import logging
from datetime import datetime, timedelta, timezone

import pytest

from sqlmemory.constants import ENTITIES_TABLE, RELATIONS_TABLE
from sqlmemory.engine import MemoryEngine
from sqlmemory.errors import (
    DuplicateEntityError,
    SchemaError,
    StoreError,
    UnknownEntityError,
    ValidationError,
)
from sqlmemory.store import SQLiteStore


def triples(graph):
    return [r.triple for r in graph.relations]


# --- Schema ---


def test_initialize_creates_tables_and_indexes(engine):
    """Initialization creates both tables and the lookup indexes."""
    tables = engine.store.list_tables().data
    assert ENTITIES_TABLE in tables
    assert RELATIONS_TABLE in tables

    index_names = {i["name"] for i in engine.store.describe_table(RELATIONS_TABLE).data["indexes"]}
    assert {"idx_relations_from", "idx_relations_to", "idx_relations_type"} <= index_names
    index_names = {i["name"] for i in engine.store.describe_table(ENTITIES_TABLE).data["indexes"]}
    assert {"idx_entities_type", "idx_entities_updated"} <= index_names


def test_initialize_is_idempotent(populated_engine):
    """A second initialize changes neither the schema nor the data."""
    before = [populated_engine.store.describe_table(t).data for t in (ENTITIES_TABLE, RELATIONS_TABLE)]
    graph_before = populated_engine.read_graph()

    populated_engine.initialize()

    after = [populated_engine.store.describe_table(t).data for t in (ENTITIES_TABLE, RELATIONS_TABLE)]
    assert after == before
    assert populated_engine.read_graph() == graph_before


def test_initialize_table_failure_raises_schema_error(flaky_store):
    """A failed table creation aborts initialization."""
    flaky_store.fail.add("create_table")
    with pytest.raises(SchemaError) as exc_info:
        MemoryEngine(flaky_store).initialize()
    assert exc_info.value.code == "schema_error"


def test_initialize_index_failure_only_warns(flaky_store, caplog):
    """Index failures are logged; the engine stays usable."""
    flaky_store.fail.add("create_index")
    engine = MemoryEngine(flaky_store)
    with caplog.at_level(logging.WARNING):
        engine.initialize()

    assert "idx_relations_from" in caplog.text
    engine.create_entity("Alice", "person")
    assert engine.open_node("Alice") is not None


# --- Entities ---


def test_create_entity_roundtrip(engine):
    """A created entity reads back unchanged."""
    created = engine.create_entity("Alice", "person", ["Speaks Japanese"])

    assert created.created_at == created.updated_at
    assert engine.open_node("Alice") == created


def test_entity_names_are_unique(engine):
    """Creating an existing name fails and leaves the original untouched."""
    engine.create_entity("Alice", "person", ["original"])

    with pytest.raises(DuplicateEntityError) as exc_info:
        engine.create_entity("Alice", "robot", ["impostor"])

    assert exc_info.value.name == "Alice"
    entity = engine.open_node("Alice")
    assert entity.entity_type == "person"
    assert entity.observations == ["original"]
    assert len(engine.read_graph().entities) == 1


def test_create_entity_validates_arguments(engine):
    """Empty names and non-string types are rejected before any write."""
    with pytest.raises(ValidationError):
        engine.create_entity("", "person")
    with pytest.raises(ValidationError):
        engine.create_entity("Alice", 5)
    with pytest.raises(ValidationError):
        engine.create_entity("Alice", "person", ["ok", 3])
    assert engine.read_graph().entities == []


def test_create_entities_partial_failure(populated_engine):
    """One bad item in a batch does not stop the others."""
    result = populated_engine.create_entities([
        {"name": "Carol", "entityType": "person"},
        {"name": "Alice", "entityType": "person"},
        {"name": "Dave", "entityType": "person"},
    ])

    assert [e.name for e in result.succeeded] == ["Carol", "Dave"]
    assert len(result.failed) == 1
    assert result.failed[0].code == "duplicate_entity"
    assert result.failed[0].input["name"] == "Alice"
    assert result.summary == "Succeeded 2, failed 1"
    assert populated_engine.open_node("Carol") is not None
    assert populated_engine.open_node("Dave") is not None


def test_create_entities_reports_invalid_items(engine):
    """Malformed items fail with validation_error."""
    result = engine.create_entities([
        {"name": "", "entityType": "person"},
        {"name": "NoType"},
        {"name": "Valid", "entityType": "thing"},
    ])

    assert [e.name for e in result.succeeded] == ["Valid"]
    assert [f.code for f in result.failed] == ["validation_error", "validation_error"]


def test_delete_entity_cascades(populated_engine):
    """Deleting an entity removes every relation touching it."""
    removed = populated_engine.delete_entity("Bob")

    assert removed == 1
    graph = populated_engine.read_graph()
    assert [e.name for e in graph.entities] == ["Alice", "Acme"]
    assert triples(graph) == [("Alice", "Acme", "works_at")]


def test_delete_entity_is_idempotent(populated_engine):
    """Deleting a missing entity is a no-op."""
    assert populated_engine.delete_entity("Bob") == 1
    graph = populated_engine.read_graph()

    assert populated_engine.delete_entity("Bob") == 0
    assert populated_engine.delete_entity("Nobody") == 0
    assert populated_engine.read_graph() == graph


def test_delete_entities_counts_removed(populated_engine):
    """Batch delete returns how many entities actually existed."""
    assert populated_engine.delete_entities(["Alice", "Nobody", "Acme"]) == 2
    graph = populated_engine.read_graph()
    assert [e.name for e in graph.entities] == ["Bob"]
    assert graph.relations == []


# --- Relations ---


def test_relation_requires_both_endpoints(populated_engine):
    """Relations to unknown entities are refused."""
    with pytest.raises(UnknownEntityError) as exc_info:
        populated_engine.create_relation("Alice", "Zed", "knows")
    assert exc_info.value.name == "Zed"

    # source is checked first
    with pytest.raises(UnknownEntityError) as exc_info:
        populated_engine.create_relation("Yann", "Zed", "knows")
    assert exc_info.value.name == "Yann"

    assert len(populated_engine.read_graph().relations) == 3


def test_relations_reference_existing_entities(populated_engine):
    """Every stored relation points at stored entities."""
    populated_engine.delete_entity("Acme")
    graph = populated_engine.read_graph()
    names = {e.name for e in graph.entities}
    for relation in graph.relations:
        assert relation.from_entity in names
        assert relation.to_entity in names


def test_duplicate_relations_are_kept(populated_engine):
    """Identical triples are stored twice and deleted together."""
    again = populated_engine.create_relation("Alice", "Bob", "knows")
    assert again.id is not None

    graph = populated_engine.read_graph()
    assert triples(graph).count(("Alice", "Bob", "knows")) == 2

    assert populated_engine.delete_relation("Alice", "Bob", "knows") == 2
    assert ("Alice", "Bob", "knows") not in triples(populated_engine.read_graph())


def test_create_relations_partial_failure(populated_engine):
    """Relations with missing endpoints fail individually."""
    result = populated_engine.create_relations([
        {"from": "Bob", "to": "Alice", "relationType": "knows"},
        {"from": "Bob", "to": "Nobody", "relationType": "knows"},
    ])

    assert [r.triple for r in result.succeeded] == [("Bob", "Alice", "knows")]
    assert result.failed[0].code == "unknown_entity"
    assert result.failed[0].input == {"from": "Bob", "to": "Nobody", "relationType": "knows"}


def test_delete_relations_counts_removed(populated_engine):
    """Deleting relations returns the number of rows removed."""
    removed = populated_engine.delete_relations([
        {"from": "Alice", "to": "Acme", "relationType": "works_at"},
        {"from": "Alice", "to": "Acme", "relationType": "owns"},
    ])
    assert removed == 1
    assert triples(populated_engine.read_graph()) == [
        ("Bob", "Acme", "works_at"),
        ("Alice", "Bob", "knows"),
    ]


# --- Observations ---


def test_add_observation_appends_and_touches(populated_engine):
    """Adding observations appends them and bumps only updated_at."""
    before = populated_engine.open_node("Bob")
    after = populated_engine.add_observation("Bob", ["Rides a bike", "Plays chess"])

    assert after.observations == ["Plays chess", "Rides a bike", "Plays chess"]
    assert after.updated_at > before.updated_at
    assert after.created_at == before.created_at
    assert populated_engine.open_node("Bob") == after


def test_updated_at_strictly_increases(engine):
    """Back-to-back updates still get distinct, increasing timestamps."""
    engine.create_entity("Counter", "thing")
    stamps = [engine.add_observation("Counter", [str(i)]).updated_at for i in range(5)]
    assert all(a < b for a, b in zip(stamps, stamps[1:]))


def test_delete_observation_removes_all_occurrences(engine):
    """Every copy of a deleted observation goes; order of the rest is kept."""
    engine.create_entity("Notes", "thing", ["a", "b", "a", "c"])

    updated = engine.delete_observation("Notes", ["a", "missing"])

    assert updated.observations == ["b", "c"]
    assert engine.open_node("Notes").observations == ["b", "c"]


def test_observation_changes_require_entity(engine):
    with pytest.raises(UnknownEntityError):
        engine.add_observation("Ghost", ["boo"])
    with pytest.raises(UnknownEntityError):
        engine.delete_observation("Ghost", ["boo"])


def test_add_observations_partial_failure(populated_engine):
    """A missing entity in a batch is reported; the rest are applied."""
    result = populated_engine.add_observations([
        {"entityName": "Alice", "contents": ["Runs marathons"]},
        {"entityName": "Ghost", "contents": ["boo"]},
    ])

    assert [e.name for e in result.succeeded] == ["Alice"]
    assert result.failed[0].code == "unknown_entity"
    assert "Runs marathons" in populated_engine.open_node("Alice").observations


def test_delete_observations_batch(populated_engine):
    result = populated_engine.delete_observations([
        {"entityName": "Acme", "observations": ["Makes anvils"]},
    ])
    assert result.failed == []
    assert populated_engine.open_node("Acme").observations == []


def test_unicode_observations_roundtrip(engine):
    """Non-ASCII text is stored and returned as written."""
    engine.create_entity("Zoë", "person", ["Lives in Zürich", "日本語を話す"])
    entity = engine.open_node("Zoë")
    assert entity.observations == ["Lives in Zürich", "日本語を話す"]


# --- Reads ---


def test_read_graph_order(populated_engine):
    """Entities come back in insertion order, relations by id."""
    graph = populated_engine.read_graph()
    assert [e.name for e in graph.entities] == ["Alice", "Bob", "Acme"]
    ids = [r.id for r in graph.relations]
    assert ids == sorted(ids)


def test_read_graph_empty(engine):
    graph = engine.read_graph()
    assert graph.entities == []
    assert graph.relations == []


def test_search_is_case_insensitive(populated_engine):
    """Upper and lower case queries find the same nodes."""
    lower = populated_engine.search_nodes("japanese")
    upper = populated_engine.search_nodes("JAPANESE")

    assert [e.name for e in lower.entities] == ["Alice"]
    assert lower.entities == upper.entities
    assert lower.relations == upper.relations


def test_search_matches_non_ascii(populated_engine):
    result = populated_engine.search_nodes("CAFÉ")
    assert [e.name for e in result.entities] == ["Alice"]


def test_search_matches_relations_independently(populated_engine):
    """Relations match on their own fields, not through matching entities."""
    result = populated_engine.search_nodes("works")
    assert result.entities == []
    assert [r.triple for r in result.relations] == [
        ("Alice", "Acme", "works_at"),
        ("Bob", "Acme", "works_at"),
    ]

    result = populated_engine.search_nodes("acme")
    assert [e.name for e in result.entities] == ["Acme"]
    assert len(result.relations) == 2


def test_search_by_type_and_no_match(populated_engine):
    result = populated_engine.search_nodes("organiz")
    assert [e.name for e in result.entities] == ["Acme"]

    result = populated_engine.search_nodes("zzz-no-match")
    assert result.entities == []
    assert result.relations == []


def test_search_entity_match_does_not_pull_in_relations(engine):
    """An entity matched by an observation leaves its relations out."""
    engine.create_entity("Login", "feature", ["Handles auth tokens"])
    engine.create_entity("Client", "app")
    engine.create_relation("Client", "Login", "uses")

    result = engine.search_nodes("auth")
    assert [e.name for e in result.entities] == ["Login"]
    assert result.relations == []

    engine.create_entity("user_auth", "table")
    engine.create_relation("Client", "user_auth", "uses")
    result = engine.search_nodes("auth")
    assert [e.name for e in result.entities] == ["Login", "user_auth"]
    assert [r.triple for r in result.relations] == [("Client", "user_auth", "uses")]


def test_search_matches_observation_text_as_written(engine):
    """Backslashes and quotes in observations match literally."""
    engine.create_entity("Cache", "service", ["Cache lives in c:\\tmp\\cache"])
    engine.create_entity("Greeter", "bot", ['Always said "hi" first'])

    assert [e.name for e in engine.search_nodes("C:\\TMP").entities] == ["Cache"]
    assert [e.name for e in engine.search_nodes('"hi"').entities] == ["Greeter"]


def test_search_rejects_empty_query(engine):
    with pytest.raises(ValidationError):
        engine.search_nodes("")


def test_open_nodes_skips_unknown(populated_engine):
    """Unknown names are omitted, the rest keep request order."""
    entities = populated_engine.open_nodes(["Acme", "Nobody", "Alice"])
    assert [e.name for e in entities] == ["Acme", "Alice"]
    assert populated_engine.open_nodes(["Nobody"]) == []


def test_open_node_missing(engine):
    assert engine.open_node("Nobody") is None


def test_get_entities_by_type(populated_engine):
    people = populated_engine.get_entities_by_type("person")
    assert [e.name for e in people] == ["Alice", "Bob"]
    assert populated_engine.get_entities_by_type("planet") == []


def test_get_recent_entities(populated_engine):
    """Most recently updated first."""
    populated_engine.add_observation("Alice", ["Just did something"])

    recent = populated_engine.get_recent_entities(limit=2)
    assert len(recent) == 2
    assert recent[0].name == "Alice"


def test_get_recent_entities_since(populated_engine):
    """Entities updated before 'since' are filtered out."""
    past = datetime.now(timezone.utc) - timedelta(days=1)
    future = datetime.now(timezone.utc) + timedelta(days=1)

    assert len(populated_engine.get_recent_entities(since=past)) == 3
    assert populated_engine.get_recent_entities(since=future) == []


def test_get_recent_entities_validates_limit(engine):
    with pytest.raises(ValidationError):
        engine.get_recent_entities(limit=0)
    with pytest.raises(ValidationError):
        engine.get_recent_entities(limit=10001)


def test_get_relations_for(populated_engine):
    """Both incoming and outgoing relations are returned."""
    relations = populated_engine.get_relations_for("Bob")
    assert [r.triple for r in relations] == [
        ("Bob", "Acme", "works_at"),
        ("Alice", "Bob", "knows"),
    ]
    assert relations[0].other_entity("Bob") == "Acme"
    assert relations[1].other_entity("Bob") == "Alice"


def test_stats(populated_engine):
    assert populated_engine.stats() == {
        "entity_count": 3,
        "relation_count": 3,
        "types": {"organization": 1, "person": 2},
    }


def test_malformed_row_is_skipped_on_read(engine, caplog):
    """A row with broken observations JSON is skipped by read_graph."""
    engine.create_entity("Good", "thing")
    engine.store.insert(ENTITIES_TABLE, [{
        "name": "Broken",
        "entity_type": "thing",
        "observations": "not json",
        "created_at": "2025-01-01T00:00:00.000000+00:00",
        "updated_at": "2025-01-01T00:00:00.000000+00:00",
    }])

    with caplog.at_level(logging.WARNING):
        graph = engine.read_graph()

    assert [e.name for e in graph.entities] == ["Good"]
    assert "Broken" in caplog.text
    with pytest.raises(StoreError):
        engine.open_node("Broken")


# --- Store failures ---


def test_store_failure_surfaces_as_store_error(flaky_store):
    """A failed store call becomes StoreError for single operations."""
    engine = MemoryEngine(flaky_store)
    engine.initialize()
    flaky_store.fail.add("query")

    with pytest.raises(StoreError) as exc_info:
        engine.read_graph()
    assert "injected failure" in str(exc_info.value)


def test_store_failure_in_batch_is_recorded(flaky_store):
    """A failed insert inside a batch is a store_error item failure."""
    engine = MemoryEngine(flaky_store)
    engine.initialize()
    flaky_store.fail.add("insert")

    result = engine.create_entities([{"name": "Alice", "entityType": "person"}])

    assert result.succeeded == []
    assert result.failed[0].code == "store_error"


def test_engine_uses_only_adapter_contract(flaky_store):
    """The engine works through a wrapped store without touching its internals."""
    engine = MemoryEngine(flaky_store)
    engine.initialize()
    engine.create_entity("Alice", "person")
    engine.create_entity("Bob", "person")
    engine.create_relation("Alice", "Bob", "knows")
    engine.delete_entity("Bob")

    assert {"create_table", "create_index", "insert", "query", "delete"} <= set(flaky_store.calls)
    assert engine.read_graph().relations == []


# --- Import ---


def test_import_graph_copies_entities_and_relations(populated_engine):
    """An exported graph imports into an empty database."""
    payload = populated_engine.read_graph().to_wire()

    target_store = SQLiteStore(":memory:")
    try:
        target = MemoryEngine(target_store)
        target.initialize()
        entities, relations = target.import_graph(payload)

        assert len(entities.succeeded) == 3
        assert len(relations.succeeded) == 3
        graph = target.read_graph()
        assert [e.name for e in graph.entities] == ["Alice", "Bob", "Acme"]
        assert triples(graph) == triples(populated_engine.read_graph())
    finally:
        target_store.close()


def test_import_graph_reports_existing_entities(populated_engine):
    payload = {
        "entities": [
            {"name": "Alice", "entityType": "person"},
            {"name": "Carol", "entityType": "person"},
        ],
        "relations": [{"from": "Carol", "to": "Ghost", "relationType": "knows"}],
    }

    entities, relations = populated_engine.import_graph(payload)

    assert [e.name for e in entities.succeeded] == ["Carol"]
    assert entities.failed[0].code == "duplicate_entity"
    assert relations.failed[0].code == "unknown_entity"


def test_import_graph_rejects_non_object(engine):
    with pytest.raises(ValidationError):
        engine.import_graph(["not", "a", "graph"])


def test_import_graph_rejects_non_list_sections(engine):
    """Sections that are not lists are refused before anything is written."""
    with pytest.raises(ValidationError, match="entities"):
        engine.import_graph({"entities": None, "relations": []})
    with pytest.raises(ValidationError, match="relations"):
        engine.import_graph({"entities": [{"name": "A", "entityType": "t"}], "relations": 5})
    assert engine.read_graph().entities == []
