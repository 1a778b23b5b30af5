"""Serving configuration resolved from the environment and command line."""

from __future__ import annotations

import os
import re
from collections.abc import Mapping, Sequence
from pathlib import Path

from pydantic import BaseModel, Field, model_validator

from querygate.errors import StartupError, problem

MEMORY_DATABASE = ":memory:"
DATABASE_URL_ENV = "DATABASE_URL"
DEBUG_ENV = "DEBUG"

_CREDENTIALS_RE = re.compile(r"://([^:/@]+):[^@]*@")


def _parse_env_flag(value: str | None, *, default: bool) -> bool:
    """
    Interpret a string environment value as a boolean.

    Parameters
    ----------
    value:
        Raw environment variable value or None.
    default:
        Value to return when the environment variable is unset.

    Returns
    -------
    bool
        Parsed boolean flag.
    """
    if value is None:
        return default
    return value.strip().lower() not in {"", "0", "false", "no", "off"}


def parse_database_url(url: str) -> str:
    """
    Resolve a connection string into a DuckDB database target.

    Accepts ``duckdb:///abs/path``, ``duckdb://rel/path``, ``duckdb:path``,
    plain filesystem paths and ``:memory:``.

    Parameters
    ----------
    url:
        Raw connection string.

    Returns
    -------
    str
        Absolute database path, or ``:memory:``.

    Raises
    ------
    ValueError
        If the string is empty or uses a scheme other than ``duckdb``.
    """
    raw = url.strip()
    if not raw:
        message = "database url must not be empty"
        raise ValueError(message)
    if raw.startswith("duckdb://"):
        target = raw[len("duckdb://") :]
    elif raw.startswith("duckdb:"):
        target = raw[len("duckdb:") :]
    elif "://" in raw:
        scheme = raw.split("://", 1)[0]
        message = f"Unsupported database scheme '{scheme}'; expected a duckdb path"
        raise ValueError(message)
    else:
        target = raw
    target = target.split("?", 1)[0]
    if target in {"", MEMORY_DATABASE}:
        return MEMORY_DATABASE
    return str(Path(target).expanduser().resolve())


def redact_url(url: str) -> str:
    """
    Mask any password embedded in a connection string.

    Returns
    -------
    str
        Connection string safe to log.
    """
    return _CREDENTIALS_RE.sub(r"://\1:***@", url)


class ServingConfig(BaseModel):
    """
    Runtime settings for the stdio server.

    Centralizes environment loading and validation so the pool, dispatcher,
    session monitor and lifecycle controller read one consistent snapshot.
    """

    database_url: str = Field(description="DuckDB connection string or database path.")
    read_only: bool = Field(
        default=True,
        description="Open the database read-only so the engine rejects writes.",
    )
    schema_name: str = Field(
        default="main",
        description="Schema listed by list_tables and searched by describe_table.",
    )
    pool_max_size: int = Field(default=20, description="Maximum concurrent pooled connections.")
    pool_idle_timeout: float = Field(
        default=30.0,
        description="Seconds an idle pooled connection is kept before it is closed.",
    )
    pool_acquire_timeout: float = Field(
        default=5.0,
        description="Seconds to wait for a free pooled connection.",
    )
    call_timeout: float = Field(default=30.0, description="Per-operation budget in seconds.")
    heartbeat_interval: float = Field(
        default=5.0,
        description="Seconds between heartbeat checks; silence for twice this is a fault.",
    )
    max_reconnect_attempts: int = Field(
        default=5,
        description="Transport re-arm attempts before shutting down.",
    )
    reconnect_delay: float = Field(
        default=1.0,
        description="Fixed backoff in seconds before each re-arm attempt.",
    )
    max_message_bytes: int = Field(
        default=16 * 1024 * 1024,
        description="Longest accepted inbound line in bytes.",
    )
    debug: bool = Field(default=False, description="Emit debug diagnostics on stderr.")

    @classmethod
    def from_env(
        cls,
        argv: Sequence[str] | None = None,
        environ: Mapping[str, str] | None = None,
    ) -> ServingConfig:
        """
        Construct a ServingConfig from environment variables and arguments.

        ``DATABASE_URL`` wins over the first positional argument.

        Parameters
        ----------
        argv:
            Positional command-line arguments (program name excluded).
        environ:
            Environment mapping; defaults to ``os.environ``.

        Returns
        -------
        ServingConfig
            Validated configuration.

        Raises
        ------
        StartupError
            If no connection string is available or a value is invalid.
        """
        env = os.environ if environ is None else environ
        args = list(argv or [])

        database_url = env.get(DATABASE_URL_ENV) or (args[0] if args else None)
        if not database_url:
            raise StartupError(
                problem(
                    code="config.missing_database_url",
                    title="Missing database url",
                    detail=(
                        "Please provide a database URL as a command-line argument "
                        f"or set the {DATABASE_URL_ENV} environment variable"
                    ),
                )
            )

        try:
            return cls(
                database_url=database_url,
                read_only=_parse_env_flag(env.get("QUERYGATE_READ_ONLY"), default=True),
                schema_name=env.get("QUERYGATE_SCHEMA", "main"),
                pool_max_size=int(env.get("QUERYGATE_POOL_MAX", "20")),
                pool_idle_timeout=float(env.get("QUERYGATE_POOL_IDLE_SEC", "30.0")),
                pool_acquire_timeout=float(env.get("QUERYGATE_POOL_ACQUIRE_SEC", "5.0")),
                call_timeout=float(env.get("QUERYGATE_CALL_TIMEOUT_SEC", "30.0")),
                heartbeat_interval=float(env.get("QUERYGATE_HEARTBEAT_SEC", "5.0")),
                max_reconnect_attempts=int(env.get("QUERYGATE_MAX_RECONNECTS", "5")),
                reconnect_delay=float(env.get("QUERYGATE_RECONNECT_DELAY_SEC", "1.0")),
                max_message_bytes=int(
                    env.get("QUERYGATE_MAX_MESSAGE_BYTES", str(16 * 1024 * 1024))
                ),
                debug=env.get(DEBUG_ENV, "").strip().lower() == "true",
            )
        except ValueError as exc:
            raise StartupError(
                problem(
                    code="config.invalid",
                    title="Invalid configuration",
                    detail=str(exc),
                )
            ) from exc

    @model_validator(mode="after")
    def _validate_limits(self) -> ServingConfig:
        """
        Validate the database target and numeric bounds.

        Returns
        -------
        ServingConfig
            The validated configuration.

        Raises
        ------
        ValueError
            When the url is unusable or a bound is not positive.
        """
        target = parse_database_url(self.database_url)
        if target == MEMORY_DATABASE and self.read_only:
            message = "in-memory databases cannot be opened read-only; set QUERYGATE_READ_ONLY=false"
            raise ValueError(message)
        if self.pool_max_size <= 0:
            message = "pool_max_size must be positive"
            raise ValueError(message)
        for name in (
            "pool_idle_timeout",
            "pool_acquire_timeout",
            "call_timeout",
            "heartbeat_interval",
        ):
            if getattr(self, name) <= 0:
                message = f"{name} must be positive"
                raise ValueError(message)
        if self.max_reconnect_attempts < 0 or self.reconnect_delay < 0:
            message = "reconnect settings must be non-negative"
            raise ValueError(message)
        if self.max_message_bytes <= 0:
            message = "max_message_bytes must be positive"
            raise ValueError(message)
        if not self.schema_name:
            message = "schema_name must not be empty"
            raise ValueError(message)
        return self

    @property
    def database_path(self) -> str:
        """
        Return the DuckDB target parsed from ``database_url``.

        Returns
        -------
        str
            Absolute database path or ``:memory:``.
        """
        return parse_database_url(self.database_url)

    def redacted_url(self) -> str:
        """
        Return the connection string with credentials masked.

        Returns
        -------
        str
            Loggable connection string.
        """
        return redact_url(self.database_url)


__all__ = [
    "DATABASE_URL_ENV",
    "DEBUG_ENV",
    "MEMORY_DATABASE",
    "ServingConfig",
    "parse_database_url",
    "redact_url",
]
