"""Newline-delimited JSON-RPC transport over stdin/stdout."""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from collections.abc import Awaitable, Callable
from typing import Protocol

from mcp.types import (
    INVALID_REQUEST,
    ErrorData,
    JSONRPCError,
    JSONRPCMessage,
    JSONRPCNotification,
    JSONRPCRequest,
    JSONRPCResponse,
)
from pydantic import ValidationError as PydanticValidationError

from querygate.errors import TransportError, problem

log = logging.getLogger(__name__)

DEFAULT_LINE_LIMIT = 16 * 1024 * 1024

Inbound = JSONRPCRequest | JSONRPCNotification | JSONRPCResponse | JSONRPCError
Outbound = JSONRPCResponse | JSONRPCError | JSONRPCNotification | JSONRPCRequest

MessageHandler = Callable[[Inbound], Awaitable[None]]
ErrorHandler = Callable[[TransportError], Awaitable[None]]
CloseHandler = Callable[[], Awaitable[None]]


class LineWriter(Protocol):
    """Minimal writer surface shared by ``asyncio.StreamWriter`` and test fakes."""

    def write(self, data: bytes) -> None:
        """Buffer bytes for sending."""
        ...

    async def drain(self) -> None:
        """Wait until buffered bytes are flushed."""
        ...

    def close(self) -> None:
        """Close the underlying stream."""
        ...


StreamOpener = Callable[[int], Awaitable[tuple[asyncio.StreamReader, LineWriter]]]


async def open_stdio_streams(limit: int = DEFAULT_LINE_LIMIT) -> tuple[asyncio.StreamReader, LineWriter]:
    """
    Wrap the process's stdin/stdout pipes in asyncio streams.

    Parameters
    ----------
    limit:
        Longest accepted line in bytes.

    Returns
    -------
    tuple[asyncio.StreamReader, LineWriter]
        Reader over stdin and writer over stdout.
    """
    loop = asyncio.get_running_loop()
    reader = asyncio.StreamReader(limit=limit)
    await loop.connect_read_pipe(lambda: asyncio.StreamReaderProtocol(reader), sys.stdin)
    write_transport, write_protocol = await loop.connect_write_pipe(
        asyncio.streams.FlowControlMixin, sys.stdout
    )
    writer = asyncio.StreamWriter(write_transport, write_protocol, reader, loop)
    return reader, writer


def transport_error(detail: str, *, code: str = "transport.io_error") -> TransportError:
    """
    Construct a transport error.

    Returns
    -------
    TransportError
        Error wrapping a ProblemDetail payload.
    """
    return TransportError(problem(code=code, title="Transport fault", detail=detail))


class StdioTransport:
    """
    Bidirectional line-framed JSON-RPC stream.

    ``attach`` opens the streams once and starts the receive loop; ``reattach``
    re-arms the receive loop on the same streams after a fault. A stdio peer
    has no separate endpoint to dial, so re-arming is the whole of reconnection.
    """

    def __init__(
        self,
        opener: StreamOpener | None = None,
        *,
        max_message_bytes: int = DEFAULT_LINE_LIMIT,
    ) -> None:
        self._opener = opener or open_stdio_streams
        self._limit = max_message_bytes
        self._reader: asyncio.StreamReader | None = None
        self._writer: LineWriter | None = None
        self._on_message: MessageHandler | None = None
        self._on_error: ErrorHandler | None = None
        self._on_close: CloseHandler | None = None
        self._read_task: asyncio.Task[None] | None = None
        self._callbacks: set[asyncio.Task[None]] = set()
        self._send_lock = asyncio.Lock()
        self._closed = False

    @property
    def attached(self) -> bool:
        """Whether the receive loop is currently running."""
        return self._read_task is not None and not self._read_task.done()

    @property
    def closed(self) -> bool:
        """Whether ``close`` has been called."""
        return self._closed

    async def attach(
        self,
        on_message: MessageHandler,
        *,
        on_error: ErrorHandler | None = None,
        on_close: CloseHandler | None = None,
    ) -> None:
        """
        Open the streams and start delivering inbound messages.

        Raises
        ------
        TransportError
            If the transport is closed or the streams cannot be opened.
        """
        if self._closed:
            raise transport_error("Transport is closed", code="transport.closed")
        self._on_message = on_message
        self._on_error = on_error
        self._on_close = on_close
        if self._reader is None:
            try:
                self._reader, self._writer = await self._opener(self._limit)
            except (OSError, ValueError) as exc:
                raise transport_error(f"Could not open stdio streams: {exc}") from exc
        self._start_reading()
        log.debug("Transport attached")

    async def reattach(self) -> None:
        """
        Re-arm message handling on the existing streams.

        Raises
        ------
        TransportError
            If the transport was never attached, is closed, or input has ended.
        """
        if self._closed:
            raise transport_error("Transport is closed", code="transport.closed")
        if self._reader is None or self._on_message is None:
            raise transport_error("Transport was never attached", code="transport.detached")
        if self._reader.at_eof():
            raise transport_error("Input stream has ended", code="transport.eof")
        await self._stop_reading()
        self._start_reading()
        log.debug("Transport re-armed")

    async def send(self, message: Outbound) -> None:
        """
        Write one message as a single line.

        Raises
        ------
        TransportError
            If the transport is closed or the write fails.
        """
        if self._closed or self._writer is None:
            raise transport_error("Transport is not open", code="transport.closed")
        line = JSONRPCMessage(message).model_dump_json(by_alias=True, exclude_none=True) + "\n"
        async with self._send_lock:
            try:
                self._writer.write(line.encode("utf-8"))
                await self._writer.drain()
            except (OSError, RuntimeError) as exc:
                error = transport_error(f"Write failed: {exc}")
                self._report(error)
                raise error from exc

    async def close(self) -> None:
        """Stop receiving and close the output stream. Idempotent."""
        if self._closed:
            return
        self._closed = True
        await self._stop_reading()
        if self._writer is not None:
            try:
                self._writer.close()
            except OSError as exc:
                log.warning("Error closing output stream: %s", exc)
        log.debug("Transport closed")

    def _start_reading(self) -> None:
        self._read_task = asyncio.create_task(self._read_loop(), name="querygate-transport-reader")

    async def _stop_reading(self) -> None:
        task, self._read_task = self._read_task, None
        if task is None or task.done() or task is asyncio.current_task():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            current = asyncio.current_task()
            if current is not None and current.cancelling():
                raise

    async def _read_loop(self) -> None:
        reader = self._reader
        if reader is None:
            return
        while True:
            try:
                line = await reader.readline()
            except ValueError as exc:
                log.warning("Discarding oversized message: %s", exc)
                continue
            except (OSError, RuntimeError) as exc:
                self._report(transport_error(f"Read failed: {exc}"))
                return
            if not line:
                log.debug("Input stream ended")
                if self._on_close is not None:
                    self._spawn(self._on_close())
                return
            if not line.strip():
                continue
            message = await self._decode(line)
            if message is not None and self._on_message is not None:
                await self._on_message(message)

    async def _decode(self, line: bytes) -> Inbound | None:
        try:
            payload = json.loads(line)
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            log.warning("Skipping malformed message: %s", exc)
            return None
        if not isinstance(payload, dict):
            log.warning("Skipping non-object message of type %s", type(payload).__name__)
            return None
        try:
            return JSONRPCMessage.model_validate(payload).root
        except PydanticValidationError as exc:
            request_id = payload.get("id")
            if isinstance(request_id, bool) or not isinstance(request_id, str | int):
                log.warning("Skipping invalid message without id: %s", exc.error_count())
                return None
            log.warning("Rejecting invalid request %r", request_id)
            reply = JSONRPCError(
                jsonrpc="2.0",
                id=request_id,
                error=ErrorData(code=INVALID_REQUEST, message="Invalid JSON-RPC request"),
            )
            # The reply must still go out if the read loop is re-armed meanwhile.
            await asyncio.shield(self._spawn(self._send_quietly(reply)))
            return None

    async def _send_quietly(self, message: Outbound) -> None:
        try:
            await self.send(message)
        except TransportError as exc:
            log.warning("Could not send message: %s", exc)

    def _report(self, error: TransportError) -> None:
        log.error("Transport error: %s", error)
        if self._on_error is not None and not self._closed:
            self._spawn(self._on_error(error))

    def _spawn(self, coro: Awaitable[None]) -> asyncio.Future[None]:
        task = asyncio.ensure_future(coro)
        self._callbacks.add(task)
        task.add_done_callback(self._callbacks.discard)
        return task
