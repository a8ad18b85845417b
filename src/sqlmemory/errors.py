"""Exceptions raised by the graph memory engine.

Every error carries a stable ``code`` so the request layer can report it
as a structured result instead of a traceback.
"""


class GraphMemoryError(Exception):
    """Base exception for graph memory operations."""

    code = "memory_error"

    def to_dict(self) -> dict:
        return {"code": self.code, "message": str(self)}


class ValidationError(GraphMemoryError):
    """Raised when an argument is missing, empty or malformed."""

    code = "validation_error"


class DuplicateEntityError(GraphMemoryError):
    """Raised when creating an entity whose name is already taken."""

    code = "duplicate_entity"

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Entity '{name}' already exists")


class UnknownEntityError(GraphMemoryError):
    """Raised when an operation references an entity that does not exist."""

    code = "unknown_entity"

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Entity '{name}' does not exist")


class StoreError(GraphMemoryError):
    """Raised when the storage adapter reports a failure."""

    code = "store_error"

    def __init__(self, message: str, cause: str | None = None):
        self.cause = cause
        if cause:
            message = f"{message}: {cause}"
        super().__init__(message)


class SchemaError(StoreError):
    """Raised when table creation fails during initialization."""

    code = "schema_error"
