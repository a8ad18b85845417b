"""Shared constants for sqlmemory.

Defaults live here so the server, CLI and engine agree on them.
"""

# ─────────────────────────────────────────────────────────────────────────────
# Storage locations
# ─────────────────────────────────────────────────────────────────────────────

DEFAULT_DATABASES_DIR = "databases"
DEFAULT_DB_NAME = "memory"
DB_FILE_SUFFIX = ".db"
LOG_FILE_NAME = "sqlmemory.log"
IN_MEMORY_DB = ":memory:"

# ─────────────────────────────────────────────────────────────────────────────
# SQLite connection
# ─────────────────────────────────────────────────────────────────────────────

CONNECT_TIMEOUT_SECONDS = 30.0
BUSY_TIMEOUT_MS = 30000

# ─────────────────────────────────────────────────────────────────────────────
# Memory schema
# ─────────────────────────────────────────────────────────────────────────────

ENTITIES_TABLE = "entities"
RELATIONS_TABLE = "relations"

IDX_RELATIONS_FROM = "idx_relations_from"
IDX_RELATIONS_TO = "idx_relations_to"
IDX_RELATIONS_TYPE = "idx_relations_type"
IDX_ENTITIES_TYPE = "idx_entities_type"
IDX_ENTITIES_UPDATED = "idx_entities_updated"

# ─────────────────────────────────────────────────────────────────────────────
# Query limits
# ─────────────────────────────────────────────────────────────────────────────

DEFAULT_RECENT_LIMIT = 10
MAX_QUERY_LIMIT = 10000
