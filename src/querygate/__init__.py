"""Read-only SQL gateway exposing a DuckDB database over the MCP stdio protocol."""

__version__ = "0.1.0"
