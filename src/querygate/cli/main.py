"""CLI entrypoint for the querygate server and its helpers."""

from __future__ import annotations

import argparse
import json
import logging
import sys
from collections.abc import Callable, Iterable
from pathlib import Path

from dotenv import find_dotenv, load_dotenv

from querygate.config.serving_models import ServingConfig
from querygate.core.logs import configure_logging, level_for
from querygate.errors import StartupError, log_problem, problem
from querygate.mcp.operations import build_default_registry
from querygate.mcp.server import serve
from querygate.sample import create_sample_database

LOG = logging.getLogger("querygate.cli")

CommandHandler = Callable[[argparse.Namespace], int]


# ---------------------------------------------------------------------------
# Argument parsing
# ---------------------------------------------------------------------------


def _make_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="querygate",
        description="Read-only SQL gateway for DuckDB over the MCP stdio protocol",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="count",
        default=0,
        help="Increase verbosity (can be repeated)",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    p_serve = subparsers.add_parser(
        "serve",
        help="Serve the database over stdio (DATABASE_URL overrides the argument).",
    )
    p_serve.add_argument(
        "database_url",
        nargs="?",
        default=None,
        help="DuckDB connection string or path, e.g. duckdb:///data/app.duckdb",
    )
    p_serve.set_defaults(func=_cmd_serve)

    p_sample = subparsers.add_parser(
        "sample-db",
        help="Create a DuckDB file loaded with the Employees sample schema.",
    )
    p_sample.add_argument("path", type=Path, help="Destination database file")
    p_sample.add_argument(
        "--force",
        action="store_true",
        help="Replace the file if it already exists.",
    )
    p_sample.set_defaults(func=_cmd_sample_db)

    p_tools = subparsers.add_parser(
        "tools",
        help="List the operations the server exposes.",
    )
    p_tools.add_argument(
        "--json",
        action="store_true",
        help="Print full tool descriptors (with input schemas) as JSON.",
    )
    p_tools.set_defaults(func=_cmd_tools)

    return parser


def make_parser() -> argparse.ArgumentParser:
    """
    Public helper to construct the CLI parser (for tests/tools).

    Returns
    -------
    argparse.ArgumentParser
        Configured parser.
    """
    return _make_parser()


# ---------------------------------------------------------------------------
# Command implementations
# ---------------------------------------------------------------------------


def _cmd_serve(args: argparse.Namespace) -> int:
    load_dotenv(find_dotenv(usecwd=True), override=False)
    argv = [args.database_url] if args.database_url else []
    try:
        config = ServingConfig.from_env(argv)
    except StartupError as exc:
        log_problem(LOG, exc.problem_detail)
        return 1
    if config.debug:
        configure_logging(logging.DEBUG)
    LOG.info("Serving %s (read_only=%s)", config.redacted_url(), config.read_only)
    return serve(config)


def _cmd_sample_db(args: argparse.Namespace) -> int:
    try:
        target = create_sample_database(args.path, force=args.force)
    except FileExistsError as exc:
        LOG.error("%s", exc)
        return 1
    sys.stdout.write(f"{target}\n")
    return 0


def _cmd_tools(args: argparse.Namespace) -> int:
    registry = build_default_registry()
    if args.json:
        payload = [tool.model_dump(by_alias=True, exclude_none=True) for tool in registry.tools()]
        sys.stdout.write(json.dumps(payload, indent=2) + "\n")
        return 0
    for tool in registry.tools():
        sys.stdout.write(f"{tool.name}\t{tool.description}\n")
    return 0


def main(argv: Iterable[str] | None = None) -> int:
    """
    CLI entrypoint for querygate.

    Parameters
    ----------
    argv:
        Optional argument list (defaults to sys.argv).

    Returns
    -------
    int
        Exit code (0 on success).
    """
    parser = _make_parser()
    args = parser.parse_args(list(argv) if argv is not None else None)

    configure_logging(level_for(args.verbose))

    try:
        func: CommandHandler = args.func
        return int(func(args))
    except Exception as exc:  # noqa: BLE001 pragma: no cover - error path
        pd = problem(
            code="cli.failure",
            title="CLI command failed",
            detail=str(exc),
            extras={"command": args.command},
        )
        log_problem(LOG, pd)
        return 1


if __name__ == "__main__":
    sys.exit(main())
