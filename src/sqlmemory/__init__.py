"""sqlmemory - knowledge-graph memory on a single SQLite file, served over MCP."""

__version__ = "0.1.0"
