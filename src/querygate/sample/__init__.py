"""Bundled Employees sample database for trying the server locally."""

from __future__ import annotations

import logging
from importlib import resources
from pathlib import Path

import duckdb

log = logging.getLogger(__name__)

SCHEMA_RESOURCE = "schema.sql"
SAMPLE_TABLES = ("departments", "employees", "projects", "employee_projects")


def sample_statements() -> list[str]:
    """
    Return the sample schema as individual SQL statements.

    Returns
    -------
    list[str]
        DDL and seed statements in execution order.
    """
    script = resources.files(__name__).joinpath(SCHEMA_RESOURCE).read_text(encoding="utf-8")
    lines = [line for line in script.splitlines() if not line.lstrip().startswith("--")]
    return [stmt.strip() for stmt in "\n".join(lines).split(";") if stmt.strip()]


def load_sample(con: duckdb.DuckDBPyConnection) -> None:
    """Create and seed the sample tables on an open read-write connection."""
    for statement in sample_statements():
        con.execute(statement)


def create_sample_database(path: Path, *, force: bool = False) -> Path:
    """
    Write a DuckDB file holding the Employees sample schema.

    Parameters
    ----------
    path
        Destination database file.
    force
        Replace ``path`` when it already exists.

    Returns
    -------
    Path
        Resolved path of the created database.

    Raises
    ------
    FileExistsError
        If ``path`` exists and ``force`` is false.
    """
    target = path.expanduser().resolve()
    if target.exists():
        if not force:
            message = f"{target} already exists (use --force to replace it)"
            raise FileExistsError(message)
        target.unlink()
        wal = target.with_name(target.name + ".wal")
        if wal.exists():
            wal.unlink()
    target.parent.mkdir(parents=True, exist_ok=True)
    log.info("Creating sample database at %s", target)
    con = duckdb.connect(str(target))
    try:
        load_sample(con)
    finally:
        con.close()
    return target


__all__ = ["SAMPLE_TABLES", "create_sample_database", "load_sample", "sample_statements"]
