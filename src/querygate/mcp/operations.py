"""Built-in database operations: read-only query, list tables, describe table."""

from __future__ import annotations

import logging
from functools import partial

import duckdb

from querygate import errors
from querygate.mcp.models import (
    DescribeTableParams,
    NoParams,
    OperationFailure,
    OperationOutcome,
    OperationSuccess,
    QueryParams,
)
from querygate.mcp.registry import Operation, OperationRegistry

log = logging.getLogger(__name__)

QUERY = "query"
LIST_TABLES = "list_tables"
DESCRIBE_TABLE = "describe_table"

LIST_TABLES_SQL = """
SELECT table_name
FROM information_schema.tables
WHERE table_catalog = current_database()
  AND table_schema = ?
"""

# Statement kinds whose effects BEGIN ... ROLLBACK fully undoes. Anything else
# (SET, COPY, ATTACH, LOAD, PRAGMA, PREPARE, CALL, ...) can outlive the
# transaction on the pooled connection or outside the database.
ROLLBACK_SAFE_STATEMENTS = frozenset(
    {
        duckdb.StatementType.SELECT,
        duckdb.StatementType.EXPLAIN,
        duckdb.StatementType.INSERT,
        duckdb.StatementType.UPDATE,
        duckdb.StatementType.DELETE,
    }
)

DESCRIBE_TABLE_SQL = """
SELECT column_name, data_type, is_nullable, column_default
FROM information_schema.columns
WHERE table_catalog = current_database()
  AND table_schema = ?
  AND table_name = ?
ORDER BY ordinal_position
"""


def _records(cursor: duckdb.DuckDBPyConnection) -> list[dict[str, object]]:
    if cursor.description is None:
        return []
    columns = [column[0] for column in cursor.description]
    return [dict(zip(columns, row, strict=True)) for row in cursor.fetchall()]


def _rejected_statement(statements: list[duckdb.Statement]) -> str | None:
    for stmt in statements:
        if stmt.type == duckdb.StatementType.TRANSACTION:
            return "Transaction control statements are not allowed"
        if stmt.type not in ROLLBACK_SAFE_STATEMENTS:
            return f"{stmt.type.name} statements are not allowed in read-only queries"
    return None


def run_read_only_query(con: duckdb.DuckDBPyConnection, params: QueryParams) -> OperationOutcome:
    """
    Execute caller SQL inside a transaction that is always rolled back.

    Parameters
    ----------
    con:
        Leased DuckDB connection.
    params:
        Validated query arguments.

    Returns
    -------
    OperationOutcome
        Result rows as records, or a failure carrying the database error.
    """
    log.debug("Executing SQL query: %s", params.sql)
    try:
        statements = con.extract_statements(params.sql)
    except duckdb.Error as exc:
        return OperationFailure(errors.query_failed(QUERY, exc))
    rejected = _rejected_statement(statements)
    if rejected is not None:
        return OperationFailure(errors.query_failed(QUERY, ValueError(rejected)))
    try:
        con.execute("BEGIN TRANSACTION")
    except duckdb.Error as exc:
        return OperationFailure(errors.query_failed(QUERY, exc))
    try:
        rows = _records(con.execute(params.sql))
    except duckdb.Error as exc:
        return OperationFailure(errors.query_failed(QUERY, exc))
    finally:
        try:
            con.execute("ROLLBACK")
        except duckdb.Error as exc:
            log.warning("Could not roll back transaction: %s", exc)
    log.debug("Query executed successfully, returned %d rows", len(rows))
    return OperationSuccess(data=rows)


def list_tables(
    con: duckdb.DuckDBPyConnection,
    params: NoParams,  # noqa: ARG001
    *,
    schema: str,
) -> OperationOutcome:
    """
    List table names in ``schema`` of the current database.

    Returns
    -------
    OperationOutcome
        Table names in engine order.
    """
    log.debug("Listing database tables in schema %s", schema)
    try:
        rows = con.execute(LIST_TABLES_SQL, [schema]).fetchall()
    except duckdb.Error as exc:
        return OperationFailure(errors.query_failed(LIST_TABLES, exc))
    names = list(dict.fromkeys(row[0] for row in rows))
    log.debug("Found %d tables", len(names))
    return OperationSuccess(data=names)


def describe_table(
    con: duckdb.DuckDBPyConnection,
    params: DescribeTableParams,
    *,
    schema: str,
) -> OperationOutcome:
    """
    Describe the columns of one table.

    A missing table is not an error: the outcome is a plain message.

    Returns
    -------
    OperationOutcome
        One record per column, a not-found message, or a failure.
    """
    log.debug("Describing table: %s", params.table_name)
    try:
        rows = _records(con.execute(DESCRIBE_TABLE_SQL, [schema, params.table_name]))
    except duckdb.Error as exc:
        return OperationFailure(errors.query_failed(DESCRIBE_TABLE, exc))
    if not rows:
        return OperationSuccess(text=f"Table '{params.table_name}' not found or has no columns.")
    log.debug("Table description retrieved with %d columns", len(rows))
    return OperationSuccess(data=rows)


def register_default_operations(registry: OperationRegistry, *, schema: str = "main") -> None:
    """Register the built-in operations on ``registry``."""
    registry.register(
        Operation(
            name=QUERY,
            description="Run a read-only SQL query against the database",
            params_model=QueryParams,
            handler=run_read_only_query,
        )
    )
    registry.register(
        Operation(
            name=LIST_TABLES,
            description="List all tables in the database",
            params_model=NoParams,
            handler=partial(list_tables, schema=schema),
        )
    )
    registry.register(
        Operation(
            name=DESCRIBE_TABLE,
            description="Get the schema of a specific table in the database",
            params_model=DescribeTableParams,
            handler=partial(describe_table, schema=schema),
        )
    )


def build_default_registry(schema: str = "main") -> OperationRegistry:
    """
    Create a sealed registry holding the built-in operations.

    Parameters
    ----------
    schema:
        Schema listed and described by the catalog operations.

    Returns
    -------
    OperationRegistry
        Registry with ``query``, ``list_tables`` and ``describe_table``.
    """
    registry = OperationRegistry()
    register_default_operations(registry, schema=schema)
    return registry.seal()
