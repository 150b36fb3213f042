"""Unit tests for StreamingHandler and ConnectionManager."""

import json

import pytest

from llm_workspace.application.ipc.connection_manager import ConnectionManager
from llm_workspace.application.ipc.schema.events import LegacyResponse, StreamChunk
from llm_workspace.domain.streaming.streaming_handler import StreamingHandler


class RecordingWriter:
    """Minimal StreamWriter stand-in collecting written lines."""

    def __init__(self, fail: bool = False):
        self.lines = []
        self.fail = fail
        self.closed = False

    def write(self, data: bytes):
        if self.fail:
            raise BrokenPipeError("peer went away")
        self.lines.append(json.loads(data))

    async def drain(self):
        pass

    def is_closing(self) -> bool:
        return self.closed

    def close(self):
        self.closed = True

    async def wait_closed(self):
        pass


@pytest.fixture
async def connection():
    manager = ConnectionManager()
    writer = RecordingWriter()
    await manager.connect("c1", writer)
    return manager, writer


@pytest.mark.asyncio
async def test_chunks_then_single_done(connection):
    """Only the first terminal record is written."""
    manager, writer = connection
    handler = StreamingHandler(manager, "c1")

    await handler.stream_token("Hel")
    await handler.stream_token("")
    await handler.stream_token("lo")
    assert await handler.send_done("Hello") is True
    assert await handler.send_error("late failure") is False
    await handler.stream_token("ignored")

    assert writer.lines == [
        {"type": "chunk", "content": "Hel"},
        {"type": "chunk", "content": "lo"},
        {"type": "done", "content": "Hello"},
    ]
    assert handler.summary() == {"chunks_sent": 2, "finished": True}


@pytest.mark.asyncio
async def test_legacy_failure_becomes_error_record(connection):
    """A failed legacy response is written as an error record."""
    manager, writer = connection
    handler = StreamingHandler(manager, "c1")

    await handler.send_response(LegacyResponse(success=False, error="Failed to add: boom"))

    assert writer.lines == [{"type": "error", "error": "Failed to add: boom"}]


@pytest.mark.asyncio
async def test_broken_peer_stops_streaming():
    """After a failed write nothing more is attempted."""
    manager = ConnectionManager()
    await manager.connect("c2", RecordingWriter(fail=True))
    handler = StreamingHandler(manager, "c2")

    await handler.stream_token("a")
    await handler.stream_token("b")

    assert handler.chunks_sent == 0
    assert await handler.send_done("ab") is False
    assert handler.finished


@pytest.mark.asyncio
async def test_disconnect_closes_writer(connection):
    """disconnect closes and forgets the connection."""
    manager, writer = connection

    await manager.disconnect("c1")

    assert writer.closed
    assert manager.get_active_connections() == set()
    assert await manager.send_event("c1", StreamChunk.failure("gone")) is False
