"""Line-framed stdio transport over in-memory streams."""

from __future__ import annotations

import asyncio

import anyio
import pytest
from mcp.types import INVALID_REQUEST, JSONRPCNotification, JSONRPCRequest, JSONRPCResponse

from querygate.errors import TransportError
from querygate.mcp.transport import Inbound
from tests._helpers.fakes import MemoryStreams, wait_until


class _Inbox:
    def __init__(self) -> None:
        self.messages: list[Inbound] = []
        self.errors: list[TransportError] = []
        self.closed = 0

    async def on_message(self, message: Inbound) -> None:
        self.messages.append(message)

    async def on_error(self, error: TransportError) -> None:
        self.errors.append(error)

    async def on_close(self) -> None:
        self.closed += 1


def test_delivers_requests_and_notifications() -> None:
    async def _scenario() -> None:
        streams = MemoryStreams()
        transport = streams.transport()
        inbox = _Inbox()
        await transport.attach(inbox.on_message, on_error=inbox.on_error, on_close=inbox.on_close)
        streams.feed(
            {"jsonrpc": "2.0", "id": 1, "method": "tools/list"},
            {"jsonrpc": "2.0", "method": "notifications/initialized"},
        )
        await wait_until(lambda: len(inbox.messages) == 2)
        first, second = inbox.messages
        if not isinstance(first, JSONRPCRequest) or first.id != 1:
            pytest.fail(f"Unexpected first message {first!r}")
        if not isinstance(second, JSONRPCNotification):
            pytest.fail(f"Unexpected second message {second!r}")
        await transport.close()

    anyio.run(_scenario)


def test_malformed_lines_are_skipped() -> None:
    """Garbage input does not stop the receive loop."""

    async def _scenario() -> None:
        streams = MemoryStreams()
        transport = streams.transport()
        inbox = _Inbox()
        await transport.attach(inbox.on_message)
        streams.feed("not json", "[1, 2, 3]", "", {"jsonrpc": "2.0", "id": 2, "method": "ping"})
        await wait_until(lambda: len(inbox.messages) == 1)
        if streams.writer.messages():
            pytest.fail("Nothing should be written for unidentifiable input")
        await transport.close()

    anyio.run(_scenario)


def test_invalid_request_with_id_gets_error_reply() -> None:
    async def _scenario() -> None:
        streams = MemoryStreams()
        transport = streams.transport()
        inbox = _Inbox()
        await transport.attach(inbox.on_message)
        streams.feed({"jsonrpc": "2.0", "id": 4, "params": {}})
        await wait_until(lambda: len(streams.writer.messages()) == 1)
        reply = streams.writer.messages()[0]
        if reply.get("id") != 4 or reply["error"]["code"] != INVALID_REQUEST:
            pytest.fail(f"Unexpected reply {reply}")
        if inbox.messages:
            pytest.fail("Invalid request must not reach the handler")
        await transport.close()

    anyio.run(_scenario)


def test_oversized_line_is_discarded() -> None:
    async def _scenario() -> None:
        streams = MemoryStreams(limit=128)
        transport = streams.transport(max_message_bytes=128)
        inbox = _Inbox()
        await transport.attach(inbox.on_message)
        streams.feed({"jsonrpc": "2.0", "id": 1, "method": "x" * 400})
        streams.feed({"jsonrpc": "2.0", "id": 2, "method": "ping"})
        await wait_until(lambda: len(inbox.messages) == 1)
        if getattr(inbox.messages[0], "id", None) != 2:
            pytest.fail(f"Unexpected message {inbox.messages[0]!r}")
        await transport.close()

    anyio.run(_scenario)


def test_send_writes_one_line_per_message() -> None:
    async def _scenario() -> None:
        streams = MemoryStreams()
        transport = streams.transport()
        await transport.attach(_Inbox().on_message)
        await transport.send(JSONRPCResponse(jsonrpc="2.0", id="a", result={"ok": True}))
        await transport.send(JSONRPCResponse(jsonrpc="2.0", id="b", result={}))
        sent = streams.writer.messages()
        if [message["id"] for message in sent] != ["a", "b"]:
            pytest.fail(f"Unexpected output {sent}")
        if streams.writer.buffer.count(b"\n") != 2:
            pytest.fail("Each message must occupy exactly one line")
        await transport.close()

    anyio.run(_scenario)


def test_write_failure_reports_transport_error() -> None:
    async def _scenario() -> None:
        streams = MemoryStreams(fail_writes=True)
        transport = streams.transport()
        inbox = _Inbox()
        await transport.attach(inbox.on_message, on_error=inbox.on_error)
        with pytest.raises(TransportError):
            await transport.send(JSONRPCResponse(jsonrpc="2.0", id=1, result={}))
        await wait_until(lambda: len(inbox.errors) == 1)
        await transport.close()

    anyio.run(_scenario)


def test_end_of_input_invokes_close_handler() -> None:
    async def _scenario() -> None:
        streams = MemoryStreams()
        transport = streams.transport()
        inbox = _Inbox()
        await transport.attach(inbox.on_message, on_close=inbox.on_close)
        streams.reader.feed_eof()
        await wait_until(lambda: inbox.closed == 1)
        if transport.attached:
            pytest.fail("Receive loop should stop at end of input")
        with pytest.raises(TransportError):
            await transport.reattach()
        await transport.close()

    anyio.run(_scenario)


def test_reattach_rearms_on_same_streams() -> None:
    async def _scenario() -> None:
        streams = MemoryStreams()
        transport = streams.transport()
        inbox = _Inbox()
        await transport.attach(inbox.on_message)
        await transport.reattach()
        streams.feed({"jsonrpc": "2.0", "id": 1, "method": "ping"})
        await wait_until(lambda: len(inbox.messages) == 1)
        if streams.opened != 1:
            pytest.fail("Re-arming must not reopen the streams")
        await transport.close()
        await transport.close()
        with pytest.raises(TransportError):
            await transport.reattach()
        with pytest.raises(TransportError):
            await transport.send(JSONRPCResponse(jsonrpc="2.0", id=1, result={}))

    anyio.run(_scenario)


def test_invalid_request_reply_survives_rearm() -> None:
    """A rejection queued behind a slow write is still sent after the loop is re-armed."""

    async def _scenario() -> None:
        streams = MemoryStreams()
        transport = streams.transport()
        await transport.attach(_Inbox().on_message)
        streams.writer.drain_gate = asyncio.Event()
        slow = asyncio.create_task(transport.send(JSONRPCResponse(jsonrpc="2.0", id=1, result={})))
        await asyncio.sleep(0)
        streams.feed({"jsonrpc": "2.0", "id": 5, "params": {}})
        await asyncio.sleep(0.05)

        await transport.reattach()
        streams.writer.drain_gate.set()
        await slow
        await wait_until(lambda: len(streams.writer.messages()) == 2)
        rejected = streams.writer.messages()[1]
        if rejected.get("id") != 5 or rejected["error"]["code"] != INVALID_REQUEST:
            pytest.fail(f"Unexpected reply {rejected}")
        await transport.close()

    anyio.run(_scenario)
