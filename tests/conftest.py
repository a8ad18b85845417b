"""Shared test fixtures and helpers for sqlmemory tests."""

import tempfile
from pathlib import Path

import pytest

from sqlmemory.engine import MemoryEngine
from sqlmemory.store import SQLiteStore, StoreResult


# --- Fixtures ---


@pytest.fixture
def temp_dir():
    """Provide a temporary directory that's cleaned up after the test."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def db_path(temp_dir):
    return temp_dir / "memory.db"


@pytest.fixture(params=["file", "memory"])
def store(request, db_path):
    """Provide a SQLiteStore, once file-backed and once in memory."""
    store = SQLiteStore(db_path if request.param == "file" else ":memory:")
    yield store
    store.close()


@pytest.fixture
def engine(store):
    """Provide a MemoryEngine over an initialized, empty store."""
    engine = MemoryEngine(store)
    engine.initialize()
    return engine


@pytest.fixture
def populated_engine(engine):
    """Provide a MemoryEngine with sample entities and relations.

    Alice --works_at--> Acme, Bob --works_at--> Acme, Alice --knows--> Bob
    """
    engine.create_entities([
        {"name": "Alice", "entityType": "person", "observations": ["Speaks Japanese", "Likes café au lait"]},
        {"name": "Bob", "entityType": "person", "observations": ["Plays chess"]},
        {"name": "Acme", "entityType": "organization", "observations": ["Makes anvils"]},
    ])
    engine.create_relations([
        {"from": "Alice", "to": "Acme", "relationType": "works_at"},
        {"from": "Bob", "to": "Acme", "relationType": "works_at"},
        {"from": "Alice", "to": "Bob", "relationType": "knows"},
    ])
    return engine


@pytest.fixture
def flaky_store():
    """Provide an in-memory store whose methods can be made to fail.

    Add method names to ``flaky_store.fail`` to have them report failure.
    """
    store = FlakyStore(SQLiteStore(":memory:"))
    yield store
    store.inner.close()


# --- Helpers (not fixtures) ---


class FlakyStore:
    """Store wrapper that reports failure for selected methods.

    Every other call goes straight to the wrapped store, so the engine sees
    only the adapter contract.
    """

    def __init__(self, inner: SQLiteStore, fail=()):
        self.inner = inner
        self.fail = set(fail)
        self.calls: list[str] = []

    def __getattr__(self, name):
        attr = getattr(self.inner, name)
        if name == "transaction" or not callable(attr):
            return attr

        def call(*args, **kwargs):
            self.calls.append(name)
            if name in self.fail:
                return StoreResult(
                    success=False, message=f"Failed to {name}", error="injected failure"
                )
            return attr(*args, **kwargs)

        return call
