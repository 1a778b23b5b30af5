"""Pooled DuckDB connections for the querygate server."""

from querygate.storage.pool import ConnectionPool, PooledConnection, PoolStats

__all__ = ["ConnectionPool", "PoolStats", "PooledConnection"]
