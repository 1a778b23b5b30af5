"""Request dispatch: route, validate, execute under a budget, encode the reply."""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from enum import StrEnum
from typing import Any, Protocol

from mcp.types import (
    CallToolResult,
    Implementation,
    InitializeResult,
    JSONRPCError,
    JSONRPCNotification,
    JSONRPCRequest,
    JSONRPCResponse,
    ListToolsResult,
    RequestId,
    ServerCapabilities,
    ToolsCapability,
)
from pydantic import BaseModel

from querygate import __version__, errors
from querygate.errors import ProblemError, TransportError
from querygate.mcp.models import OperationFailure, OperationOutcome, OperationSuccess
from querygate.mcp.registry import Operation, OperationRegistry
from querygate.mcp.session import HEARTBEAT_METHOD, SessionMonitor
from querygate.mcp.transport import Inbound, Outbound
from querygate.storage.pool import ConnectionPool, PooledConnection

log = logging.getLogger(__name__)

PROTOCOL_VERSION = "2024-11-05"
SERVER_NAME = "querygate"
PARAM_LOG_LIMIT = 200

SILENT_NOTIFICATIONS = frozenset(
    {
        "initialized",
        "notifications/initialized",
        "notifications/cancelled",
        HEARTBEAT_METHOD,
    }
)


class CallState(StrEnum):
    """Lifecycle of one operation call."""

    RECEIVED = "received"
    VALIDATED = "validated"
    EXECUTING = "executing"
    COMPLETED = "completed"
    FAILED = "failed"
    TIMED_OUT = "timed-out"


class Sender(Protocol):
    """Anything that can deliver an outbound message to the peer."""

    async def send(self, message: Outbound) -> None:
        """Deliver one message."""
        ...


@dataclass
class _InFlight:
    connection: PooledConnection | None = None
    abandoned: bool = False


def _truncate_params(params: BaseModel | dict[str, Any] | None) -> str:
    payload = params.model_dump(by_alias=True) if isinstance(params, BaseModel) else params
    text = json.dumps(payload, default=str)
    if len(text) > PARAM_LOG_LIMIT:
        return text[:PARAM_LOG_LIMIT] + "..."
    return text


def _dump(model: BaseModel) -> dict[str, Any]:
    return model.model_dump(by_alias=True, exclude_none=True, mode="json")


class Dispatcher:
    """
    Turn inbound JSON-RPC messages into replies.

    Every request with an id receives exactly one response or error. Requests
    run concurrently, each in its own task, so replies may arrive in any order.
    """

    def __init__(
        self,
        registry: OperationRegistry,
        pool: ConnectionPool,
        *,
        call_timeout: float = 30.0,
        monitor: SessionMonitor | None = None,
        sender: Sender | None = None,
    ) -> None:
        self.registry = registry
        self.pool = pool
        self.call_timeout = call_timeout
        self.monitor = monitor
        self.sender = sender
        self._responders: set[asyncio.Task[None]] = set()
        self._workers: set[asyncio.Task[OperationOutcome]] = set()

    @property
    def pending(self) -> int:
        """Number of requests still awaiting a reply."""
        return len(self._responders)

    async def handle_message(self, message: Inbound) -> None:
        """Accept one inbound message from the transport."""
        method = getattr(message, "method", None)
        log.debug("Received message: %s", method)
        if self.monitor is not None:
            self.monitor.observe(method)
        if isinstance(message, JSONRPCRequest):
            task = asyncio.create_task(self._respond(message), name=f"querygate-request-{message.id}")
            self._responders.add(task)
            task.add_done_callback(self._responders.discard)
        elif isinstance(message, JSONRPCNotification):
            if message.method not in SILENT_NOTIFICATIONS:
                log.debug("Ignoring notification %s", message.method)
        else:
            log.debug("Ignoring %s from peer", type(message).__name__)

    async def dispatch(self, request: JSONRPCRequest) -> JSONRPCResponse | JSONRPCError:
        """
        Produce the reply for one request.

        Returns
        -------
        JSONRPCResponse | JSONRPCError
            Success or failure, always carrying ``request.id``.
        """
        try:
            result = await self._route(request.id, request.method, request.params or {})
        except ProblemError as exc:
            return JSONRPCError(jsonrpc="2.0", id=request.id, error=exc.to_error_data())
        except Exception as exc:
            failure = errors.internal_failure(request.method, exc)
            log.exception("Unhandled error while dispatching %s", request.method)
            return JSONRPCError(jsonrpc="2.0", id=request.id, error=failure.to_error_data())
        return JSONRPCResponse(jsonrpc="2.0", id=request.id, result=result)

    async def call(
        self,
        name: str,
        arguments: dict[str, Any] | None,
        *,
        request_id: RequestId | None = None,
    ) -> CallToolResult:
        """
        Invoke a registered operation.

        Returns
        -------
        CallToolResult
            Result with one text content block.

        Raises
        ------
        errors.UnknownOperationError
            If ``name`` is not registered; the pool is not touched.
        errors.ValidationError
            If ``arguments`` do not match the operation's parameters.
        errors.OperationTimeoutError
            If the operation exceeds ``call_timeout``.
        ProblemError
            For pool failures and database errors reported by the handler.
        """
        self._trace(request_id, name, CallState.RECEIVED)
        operation = self.registry.get(name)
        params = operation.validate(arguments)
        self._trace(request_id, name, CallState.VALIDATED)

        outcome = await self._execute(operation, params, request_id)
        if isinstance(outcome, OperationFailure):
            self._trace(request_id, name, CallState.FAILED)
            log.error(
                "Operation %s failed (params=%s): %s",
                name,
                _truncate_params(params),
                outcome.error,
            )
            raise outcome.error
        self._trace(request_id, name, CallState.COMPLETED)
        return outcome.to_result()

    async def cancel_pending(self) -> None:
        """Cancel replies still in flight; used during shutdown."""
        tasks = list(self._responders)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def _respond(self, request: JSONRPCRequest) -> None:
        reply = await self.dispatch(request)
        if self.sender is None:
            log.error("No transport bound; dropping reply to %r", request.id)
            return
        try:
            await self.sender.send(reply)
        except TransportError as exc:
            log.error("Could not deliver reply to %r: %s", request.id, exc)

    async def _route(self, request_id: RequestId, method: str, params: dict[str, Any]) -> dict[str, Any]:
        if method == "initialize":
            return _dump(self._initialize_result())
        if method in {"ping", HEARTBEAT_METHOD}:
            return {}
        if method == "tools/list":
            return _dump(ListToolsResult(tools=self.registry.tools()))
        if method == "tools/call":
            name = params.get("name")
            if not isinstance(name, str):
                raise errors.invalid_params(
                    method,
                    [{"loc": ("name",), "msg": "Field required", "type": "missing"}],
                )
            result = await self.call(name, params.get("arguments"), request_id=request_id)
            return _dump(result)
        raise errors.unknown_method(method)

    def _initialize_result(self) -> InitializeResult:
        return InitializeResult(
            protocolVersion=PROTOCOL_VERSION,
            capabilities=ServerCapabilities(tools=ToolsCapability(listChanged=False)),
            serverInfo=Implementation(name=SERVER_NAME, version=__version__),
        )

    async def _execute(
        self,
        operation: Operation,
        params: BaseModel,
        request_id: RequestId | None,
    ) -> OperationOutcome:
        call = _InFlight()
        worker = asyncio.create_task(self._run_leased(operation, params, call, request_id))
        self._workers.add(worker)
        worker.add_done_callback(self._reap_worker)
        try:
            return await asyncio.wait_for(asyncio.shield(worker), timeout=self.call_timeout)
        except TimeoutError:
            self._trace(request_id, operation.name, CallState.TIMED_OUT)
            log.error(
                "Operation %s timed out after %gs (params=%s)",
                operation.name,
                self.call_timeout,
                _truncate_params(params),
            )
            call.abandoned = True
            if call.connection is not None:
                call.connection.interrupt()
            raise errors.timed_out(operation.name, self.call_timeout) from None
        except ProblemError:
            self._trace(request_id, operation.name, CallState.FAILED)
            raise
        except Exception as exc:
            self._trace(request_id, operation.name, CallState.FAILED)
            failure = errors.internal_failure(operation.name, exc)
            log.exception(
                "Operation %s raised (params=%s)",
                operation.name,
                _truncate_params(params),
            )
            raise failure from exc

    async def _run_leased(
        self,
        operation: Operation,
        params: BaseModel,
        call: _InFlight,
        request_id: RequestId | None,
    ) -> OperationOutcome:
        async with self.pool.lease() as conn:
            call.connection = conn
            if call.abandoned:
                return OperationSuccess(text="abandoned")
            self._trace(request_id, operation.name, CallState.EXECUTING)
            return await self.pool.run_sync(operation.handler, conn.con, params)

    def _reap_worker(self, task: asyncio.Task[OperationOutcome]) -> None:
        self._workers.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None and not isinstance(exc, ProblemError):
            log.debug("Operation worker finished with %s", type(exc).__name__)

    @staticmethod
    def _trace(request_id: RequestId | None, name: str, state: CallState) -> None:
        log.debug("[%s] %s -> %s", request_id, name, state.value)
