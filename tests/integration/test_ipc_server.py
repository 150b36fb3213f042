"""End-to-end tests: a real AgentServer on a temporary Unix socket."""

import asyncio
import json
import os
import stat
from pathlib import Path

import pytest

from conftest import ScriptedModel, tool_call
from llm_workspace.application.ipc.client import AgentClient
from llm_workspace.application.ipc.ipc_server import DEADLINE_EXCEEDED, AgentServer
from llm_workspace.application.ipc.schema.events import ChunkType, Request, StreamChunk
from llm_workspace.domain.orchestration.conversation_engine import ConversationEngine

pytestmark = pytest.mark.integration


async def send_raw(socket_path: str, payload: bytes):
    """Send raw bytes and return every response line as a dict."""
    reader, writer = await asyncio.open_unix_connection(socket_path)
    writer.write(payload)
    await writer.drain()
    writer.write_eof()
    lines = []
    while True:
        line = await reader.readline()
        if not line:
            break
        lines.append(json.loads(line))
    writer.close()
    await writer.wait_closed()
    return lines


# ============================================================================
# Non-streaming Requests
# ============================================================================

@pytest.mark.asyncio
async def test_stats_reports_document_count(start_server, store):
    """stats on a store with 3 documents reports 3 in a done record."""
    for text in ("first note", "second note", "third note"):
        await store.add_text(text)
    client = await start_server(ScriptedModel(["unused"]))

    records = await client.collect("stats")

    assert len(records) == 1
    assert records[0].type == ChunkType.DONE
    assert records[0].content == "Knowledge base contains 3 documents"


@pytest.mark.asyncio
async def test_add_then_stats(start_server):
    """add stores text that stats then counts."""
    client = await start_server(ScriptedModel(["unused"]))

    added = await client.request("add", "the build uses make")
    stats = await client.request("stats")

    assert added.content == "Added to knowledge base"
    assert stats.content == "Knowledge base contains 1 documents"


@pytest.mark.asyncio
async def test_index_relative_to_pwd(start_server, tmp_path):
    """index resolves relative paths against pwd."""
    (tmp_path / "docs").mkdir()
    (tmp_path / "docs" / "guide.md").write_text("# Guide\nRun make test.")
    client = await start_server(ScriptedModel(["unused"]))

    record = await client.request("index", "docs", pwd=str(tmp_path))

    assert record.type == ChunkType.DONE
    assert record.content == f"Indexed 1 files from: {tmp_path / 'docs'}"


@pytest.mark.asyncio
async def test_index_missing_directory_is_error(start_server, store, tmp_path):
    """index on a missing path yields an error record and no documents."""
    client = await start_server(ScriptedModel(["unused"]))

    record = await client.request("index", str(tmp_path / "missing"))

    assert record.type == ChunkType.ERROR
    assert record.error.startswith("Failed to index:")
    assert await store.count() == 0


@pytest.mark.asyncio
async def test_handle_request_legacy_shape(settings, store, registry):
    """handle_request returns the legacy {success, content, error} shape."""
    engine = ConversationEngine(ScriptedModel(["hi there"]), registry, store)
    server = AgentServer(engine, store, settings.server)

    ok = await server.handle_request(Request(type="chat", content="hello"))
    unknown = await server.handle_request(Request(type="dance"))

    assert ok.success is True and ok.content == "hi there"
    assert unknown.success is False and unknown.error == "unknown request type: dance"


# ============================================================================
# Streaming Requests
# ============================================================================

@pytest.mark.asyncio
async def test_chat_streams_chunks_then_done(start_server):
    """Chunks arrive in order and are followed by exactly one done record."""
    reply = "Streaming replies arrive piece by piece."
    client = await start_server(ScriptedModel([reply], piece_size=6))

    records = await client.collect("chat", "tell me something")

    types = [r.type for r in records]
    assert types[-1] == ChunkType.DONE
    assert set(types[:-1]) == {ChunkType.CHUNK}
    assert "".join(r.content for r in records[:-1]) == reply
    assert records[-1].content == reply


@pytest.mark.asyncio
async def test_edit_runs_tools_in_working_directory(start_server, tmp_path):
    """edit executes a tool call relative to pwd and returns the final answer."""
    (tmp_path / "a.txt").write_text("abc")
    model = ScriptedModel([
        tool_call("read_file", '{"path": "a.txt"}'),
        "The file contains abc.",
    ])
    client = await start_server(model)

    records = await client.collect("edit", "what is in a.txt?", pwd=str(tmp_path))

    assert records[-1] == StreamChunk.done("The file contains abc.")
    assert model.calls[1][-1].content == "Tool 'read_file' result:\nabc"


@pytest.mark.asyncio
async def test_history_is_forwarded(start_server):
    """Request history reaches the model before the new message."""
    model = ScriptedModel(["ok"])
    client = await start_server(model)

    await client.collect(
        "chat", "and now?",
        history=[{"role": "user", "content": "before"}, {"role": "assistant", "content": "reply"}],
    )

    assert [m.content for m in model.calls[0][1:]] == ["before", "reply", "and now?"]


@pytest.mark.asyncio
async def test_tool_loop_exceeded_is_error_record(start_server):
    """A model that never stops calling tools ends with an error record."""
    client = await start_server(ScriptedModel([tool_call("read_file", '{"path": "/nope"}')]))

    records = await client.collect("tool-chat", "loop")

    assert records[-1].type == ChunkType.ERROR
    assert "exceeded 4 iterations" in records[-1].error
    assert sum(r.terminal for r in records) == 1


# ============================================================================
# Errors and Deadlines
# ============================================================================

@pytest.mark.asyncio
async def test_unknown_type_then_server_keeps_serving(start_server):
    """An unknown kind gets an error record; the next request still works."""
    client = await start_server(ScriptedModel(["unused"]))

    error = await client.request("dance")
    stats = await client.request("stats")

    assert error.type == ChunkType.ERROR
    assert error.error == "unknown request type: dance"
    assert stats.type == ChunkType.DONE


@pytest.mark.asyncio
async def test_malformed_json_is_error_record(start_server, socket_path):
    """Garbage on the socket produces one error record."""
    await start_server(ScriptedModel(["unused"]))

    lines = await send_raw(socket_path, b"{this is not json\n")

    assert len(lines) == 1
    assert lines[0]["type"] == "error"
    assert lines[0]["error"].startswith("malformed request")


@pytest.mark.asyncio
async def test_request_deadline(start_server):
    """A hanging model call is cancelled at the request deadline."""
    client = await start_server(ScriptedModel(["too late"], delay=5.0))

    record = await client.request("chat", "hurry", timeout=0.2)

    assert record.type == ChunkType.ERROR
    assert record.error == DEADLINE_EXCEEDED


@pytest.mark.asyncio
async def test_slow_request_does_not_block_others(start_server):
    """Connections are independent; stats answers while chat is pending."""
    client = await start_server(ScriptedModel(["slow answer"], delay=0.5))

    slow = asyncio.create_task(client.request("chat", "take your time"))
    await asyncio.sleep(0.05)
    stats = await asyncio.wait_for(client.request("stats"), timeout=0.3)

    assert stats.type == ChunkType.DONE
    assert not slow.done()
    assert (await slow).content == "slow answer"


# ============================================================================
# Lifecycle
# ============================================================================

@pytest.mark.asyncio
async def test_socket_permissions_and_stale_file(settings, store, registry, socket_path):
    """A stale socket file is replaced and the new one is owner-only."""
    Path(socket_path).write_text("stale")
    engine = ConversationEngine(ScriptedModel(["x"]), registry, store)
    server = AgentServer(engine, store, settings.server)

    await server.start()
    try:
        mode = stat.S_IMODE(os.stat(socket_path).st_mode)
        assert mode == 0o600
        assert stat.S_ISSOCK(os.stat(socket_path).st_mode)
    finally:
        await server.shutdown()

    assert not os.path.exists(socket_path)


@pytest.mark.asyncio
async def test_socket_is_bound_owner_only(settings, store, registry, socket_path, monkeypatch):
    """The socket is created owner-only by the bind itself, not only by chmod."""
    chmod_calls = []
    monkeypatch.setattr(os, "chmod", lambda path, mode: chmod_calls.append((str(path), mode)))
    previous_umask = os.umask(0o022)
    engine = ConversationEngine(ScriptedModel(["x"]), registry, store)
    server = AgentServer(engine, store, settings.server)

    try:
        await server.start()
        mode = stat.S_IMODE(os.stat(socket_path).st_mode)
        assert mode & 0o077 == 0
        assert chmod_calls == [(socket_path, 0o600)]
        assert os.umask(0o022) == 0o022
    finally:
        os.umask(previous_umask)
        await server.shutdown()


@pytest.mark.asyncio
async def test_shutdown_cuts_off_in_flight_requests(settings, store, registry, socket_path):
    """Shutdown waits for the grace period, then cancels and reports."""
    engine = ConversationEngine(ScriptedModel(["never"], delay=10.0), registry, store)
    server = AgentServer(engine, store, settings.server)
    serving = asyncio.create_task(server.serve_forever(install_signal_handlers=False))
    while not server.is_serving:
        await asyncio.sleep(0.01)

    client = AgentClient(socket_path)
    pending = asyncio.create_task(client.request("chat", "wait"))
    await asyncio.sleep(0.05)

    server.request_shutdown()
    await asyncio.wait_for(serving, timeout=5)
    record = await asyncio.wait_for(pending, timeout=1)

    assert record.type == ChunkType.ERROR
    assert record.error == "request cancelled: server shutting down"
    assert not os.path.exists(socket_path)
