"""Stdio MCP server: ordered startup, idempotent shutdown, fatal-error wiring."""

from __future__ import annotations

import asyncio
import logging
import signal
import sys
import threading
from collections.abc import Callable, Sequence
from typing import Any

import duckdb
from dotenv import find_dotenv, load_dotenv

from querygate.config.serving_models import DEBUG_ENV, ServingConfig
from querygate.core.logs import configure_logging
from querygate.errors import (
    FatalProcessError,
    ProblemError,
    StartupError,
    TransportError,
    log_problem,
    problem,
)
from querygate.mcp.dispatcher import Dispatcher
from querygate.mcp.operations import build_default_registry
from querygate.mcp.registry import OperationRegistry
from querygate.mcp.session import ConnectionState, SessionMonitor
from querygate.mcp.transport import StdioTransport
from querygate.storage.pool import ConnectionPool

log = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILURE = 1

_SIGNALS = (signal.SIGINT, signal.SIGTERM)


def _startup_error(step: str, exc: BaseException) -> StartupError:
    return StartupError(
        problem(
            code=f"startup.{step}",
            title="Startup failed",
            detail=str(exc) or type(exc).__name__,
            extras={"step": step},
        )
    )


class LifecycleController:
    """
    Own process-wide startup and shutdown for one stdio session.

    Startup runs in a fixed order and any failing step is fatal. Shutdown is
    guarded by ``ConnectionState.shutting_down`` so concurrent triggers tear
    down the pool and transport exactly once.
    """

    def __init__(  # noqa: PLR0913
        self,
        config: ServingConfig,
        *,
        pool: ConnectionPool | None = None,
        transport: StdioTransport | None = None,
        registry: OperationRegistry | None = None,
        state: ConnectionState | None = None,
        on_exit: Callable[[int], None] | None = None,
    ) -> None:
        self.config = config
        self.state = state or ConnectionState()
        self.pool = pool
        self.transport = transport or StdioTransport(max_message_bytes=config.max_message_bytes)
        self.registry = registry or build_default_registry(config.schema_name)
        self.monitor = SessionMonitor(
            self.state,
            self.transport,
            self._on_recovery_exhausted,
            interval=config.heartbeat_interval,
            max_attempts=config.max_reconnect_attempts,
            delay=config.reconnect_delay,
        )
        self.dispatcher: Dispatcher | None = None
        self.exit_code: int | None = None
        self._on_exit = on_exit
        self._stopped = asyncio.Event()
        self._background: list[asyncio.Task[None]] = []
        self._shutdown_task: asyncio.Task[None] | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._previous_thread_hook: Callable[[threading.ExceptHookArgs], Any] | None = None

    @property
    def stopped(self) -> bool:
        """Whether shutdown has completed."""
        return self._stopped.is_set()

    async def start(self) -> None:
        """
        Bring the server up: pool, reachability check, transport, background tasks.

        Raises
        ------
        StartupError
            If any step fails.
        """
        log.debug("Opening connection pool for %s", self.config.redacted_url())
        try:
            if self.pool is None:
                self.pool = ConnectionPool.from_config(self.config)
            await self.pool.open()
        except (ProblemError, ValueError) as exc:
            raise _startup_error("pool", exc) from exc

        log.debug("Verifying database connection...")
        try:
            await self.pool.verify()
        except (ProblemError, duckdb.Error) as exc:
            raise _startup_error("verify", exc) from exc
        log.debug("Database connection verified")

        self.registry.seal()
        self.dispatcher = Dispatcher(
            self.registry,
            self.pool,
            call_timeout=self.config.call_timeout,
            monitor=self.monitor,
            sender=self.transport,
        )
        log.debug("Connecting to MCP transport...")
        try:
            await self.transport.attach(
                self.dispatcher.handle_message,
                on_error=self.monitor.recover,
                on_close=self._on_input_closed,
            )
        except TransportError as exc:
            raise _startup_error("transport", exc) from exc
        log.debug("MCP server connected and ready")

        self._background = [
            asyncio.create_task(self.monitor.run(), name="querygate-heartbeat"),
            asyncio.create_task(self.pool.run_reaper(), name="querygate-pool-reaper"),
        ]

    def request_shutdown(self, reason: str, exit_code: int = EXIT_OK) -> asyncio.Task[None]:
        """
        Schedule shutdown from synchronous contexts such as signal handlers.

        Returns
        -------
        asyncio.Task[None]
            The single shutdown task; repeated requests return the same task.
        """
        if self._shutdown_task is None:
            self._shutdown_task = asyncio.ensure_future(self.shutdown(reason, exit_code))
        return self._shutdown_task

    async def shutdown(self, reason: str, exit_code: int = EXIT_OK) -> None:
        """Close the pool and transport once, then record the exit code."""
        if self.state.shutting_down:
            await self._stopped.wait()
            return
        self.state.shutting_down = True
        log.debug("Shutting down gracefully (%s)...", reason)

        current = asyncio.current_task()
        background = [task for task in self._background if task is not current]
        for task in background:
            task.cancel()
        await asyncio.gather(*background, return_exceptions=True)

        if self.pool is not None:
            try:
                await self.pool.close()
                log.debug("Database pool closed successfully")
            except Exception:
                log.exception("Database pool closure failed")
        try:
            await self.transport.close()
            log.debug("Transport closed successfully")
        except Exception:
            log.exception("Transport closure failed")
        if self.dispatcher is not None:
            await self.dispatcher.cancel_pending()

        self.state.connected = False
        self.exit_code = exit_code
        self._stopped.set()
        if self._on_exit is not None:
            self._on_exit(exit_code)

    async def run(self) -> int:
        """
        Start serving and block until shutdown.

        Returns
        -------
        int
            Process exit code.
        """
        self._install_handlers()
        try:
            try:
                await self.start()
            except StartupError as exc:
                log_problem(log, exc.problem_detail)
                await self.shutdown("startup failed", EXIT_FAILURE)
                return EXIT_FAILURE
            log.debug("Server startup complete")
            await self._stopped.wait()
        except asyncio.CancelledError:
            await self.shutdown("cancelled", EXIT_OK)
        except Exception as exc:
            self._fatal(exc, "Uncaught exception")
            await self.shutdown("uncaught exception", EXIT_FAILURE)
        finally:
            self._remove_handlers()
        if self._shutdown_task is not None:
            await asyncio.gather(self._shutdown_task, return_exceptions=True)
        return EXIT_OK if self.exit_code is None else self.exit_code

    async def _on_recovery_exhausted(self, reason: str) -> None:
        self.request_shutdown(reason, EXIT_FAILURE)

    async def _on_input_closed(self) -> None:
        self.request_shutdown("input closed", EXIT_OK)

    def _fatal(self, exc: BaseException | None, context: str) -> FatalProcessError:
        error = FatalProcessError(
            problem(
                code="process.fatal",
                title=context,
                detail=str(exc) if exc is not None else context,
                extras={"error_type": type(exc).__name__ if exc is not None else None},
            )
        )
        log.error("%s", context, exc_info=exc)
        log_problem(log, error.problem_detail)
        return error

    def _on_loop_exception(self, loop: asyncio.AbstractEventLoop, context: dict[str, Any]) -> None:
        exc = context.get("exception")
        if isinstance(exc, asyncio.CancelledError):
            return
        self._fatal(exc, context.get("message", "Unhandled exception in event loop"))
        if loop.is_running():
            self.request_shutdown("unhandled exception", EXIT_FAILURE)

    def _on_thread_exception(self, args: threading.ExceptHookArgs) -> None:
        if args.exc_type is SystemExit:
            return
        loop = self._loop
        if loop is None or loop.is_closed():
            if self._previous_thread_hook is not None:
                self._previous_thread_hook(args)
            return
        self._fatal(args.exc_value, "Uncaught exception in thread")
        loop.call_soon_threadsafe(self.request_shutdown, "uncaught thread exception", EXIT_FAILURE)

    def _install_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        self._loop = loop
        for sig in _SIGNALS:
            try:
                loop.add_signal_handler(sig, self.request_shutdown, sig.name, EXIT_OK)
            except (NotImplementedError, RuntimeError, ValueError):
                log.debug("Signal handler for %s unavailable", sig.name)
        loop.set_exception_handler(self._on_loop_exception)
        self._previous_thread_hook = threading.excepthook
        threading.excepthook = self._on_thread_exception

    def _remove_handlers(self) -> None:
        loop = self._loop
        if loop is None:
            return
        for sig in _SIGNALS:
            try:
                loop.remove_signal_handler(sig)
            except (NotImplementedError, RuntimeError, ValueError):
                log.debug("Signal handler for %s not removed", sig.name)
        loop.set_exception_handler(None)
        if self._previous_thread_hook is not None:
            threading.excepthook = self._previous_thread_hook
            self._previous_thread_hook = None


def create_controller(
    config: ServingConfig,
    *,
    transport: StdioTransport | None = None,
) -> LifecycleController:
    """
    Build a controller with the default registry and a pool for ``config``.

    Returns
    -------
    LifecycleController
        Controller ready to ``run``.
    """
    return LifecycleController(
        config,
        pool=ConnectionPool.from_config(config),
        transport=transport,
        registry=build_default_registry(config.schema_name),
    )


def serve(config: ServingConfig) -> int:
    """
    Run the stdio server until shutdown.

    Returns
    -------
    int
        Process exit code.
    """
    return asyncio.run(create_controller(config).run())


def main(argv: Sequence[str] | None = None) -> int:
    """
    Run the querygate MCP server on stdio.

    The connection string comes from ``DATABASE_URL`` or the first argument;
    a ``.env`` file in the working directory is honoured.

    Returns
    -------
    int
        Exit code (0 on graceful shutdown, 1 on startup failure).
    """
    load_dotenv(find_dotenv(usecwd=True), override=False)
    args = sys.argv[1:] if argv is None else list(argv)
    try:
        config = ServingConfig.from_env(args)
    except StartupError as exc:
        configure_logging(logging.WARNING)
        log_problem(log, exc.problem_detail)
        return EXIT_FAILURE
    configure_logging(logging.DEBUG if config.debug else logging.WARNING)
    log.debug("Environment variables loaded (%s=%s)", DEBUG_ENV, config.debug)
    return serve(config)


if __name__ == "__main__":
    sys.exit(main())
