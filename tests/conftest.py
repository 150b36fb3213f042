"""Pytest configuration and shared fixtures."""

import asyncio
import shutil
import tempfile
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

import pytest

from llm_workspace.application.ipc.client import AgentClient
from llm_workspace.application.ipc.ipc_server import AgentServer
from llm_workspace.domain.errors import EmbeddingError
from llm_workspace.domain.knowledge.knowledge_store import KnowledgeStore
from llm_workspace.domain.models.conversation import Message
from llm_workspace.domain.orchestration.conversation_engine import ConversationEngine
from llm_workspace.domain.tool.builtin import create_default_registry
from llm_workspace.infrastructure.config.settings import (
    PermissionConfig, RAGConfig, ServerConfig, Settings
)
from llm_workspace.infrastructure.observability.logging import metrics


# ============================================================================
# Fake Collaborators
# ============================================================================

class LetterEmbedder:
    """Deterministic 26-dimensional bag-of-letters embedding."""

    def __init__(self, fail_on: Optional[str] = None):
        self.fail_on = fail_on
        self.calls: List[str] = []

    async def embed(self, text: str) -> List[float]:
        self.calls.append(text)
        if self.fail_on is not None and self.fail_on in text:
            raise EmbeddingError(f"embedding failed for chunk containing {self.fail_on!r}")
        vector = [0.0] * 26
        for ch in text.lower():
            if "a" <= ch <= "z":
                vector[ord(ch) - ord("a")] += 1.0
        return vector


class BrokenEmbedder:
    """Embedder whose backend is always down."""

    async def embed(self, text: str) -> List[float]:
        raise EmbeddingError("embedding backend unavailable")


class ScriptedModel:
    """Chat provider replaying canned replies.

    The last reply repeats once the script runs out. Each reply is streamed
    through ``on_increment`` in pieces of ``piece_size`` characters.
    """

    def __init__(self, replies: Sequence[str], piece_size: int = 8, delay: float = 0.0):
        self.replies = list(replies)
        self.piece_size = piece_size
        self.delay = delay
        self.calls: List[List[Message]] = []
        self.options: List[Dict[str, Any]] = []

    async def chat_complete(self, messages, options=None, on_increment=None) -> str:
        self.calls.append(list(messages))
        self.options.append(dict(options or {}))
        if self.delay:
            await asyncio.sleep(self.delay)

        reply = self.replies.pop(0) if len(self.replies) > 1 else self.replies[0]
        if on_increment is not None:
            for i in range(0, len(reply), self.piece_size):
                await on_increment(reply[i:i + self.piece_size])
        return reply


def tool_call(name: str, arguments: str) -> str:
    return f"<tool_call><name>{name}</name><arguments>{arguments}</arguments></tool_call>"


# ============================================================================
# Environment Setup
# ============================================================================

@pytest.fixture(autouse=True)
def reset_metrics():
    """Give every test a clean metrics collector."""
    metrics.reset()
    yield
    metrics.reset()


@pytest.fixture(autouse=True)
def clear_env(monkeypatch):
    """Keep developer environment overrides out of the tests."""
    for name in (
        "LLM_WORKSPACE_MODEL",
        "LLM_WORKSPACE_BASE_URL",
        "LLM_WORKSPACE_EMBEDDING_MODEL",
        "LLM_WORKSPACE_SOCKET",
        "LLM_WORKSPACE_STORE",
        "LLM_WORKSPACE_LOG_LEVEL",
    ):
        monkeypatch.delenv(name, raising=False)


# ============================================================================
# Configuration Fixtures
# ============================================================================

@pytest.fixture
def rag_config():
    """Small chunks so short texts split predictably."""
    return RAGConfig(chunk_size=100, chunk_overlap=10, top_k=3)


@pytest.fixture
def socket_path():
    """Short socket path; Unix socket paths are limited to ~100 bytes."""
    directory = tempfile.mkdtemp(prefix="llmws-")
    yield str(Path(directory) / "agent.sock")
    shutil.rmtree(directory, ignore_errors=True)


@pytest.fixture
def settings(rag_config, socket_path):
    return Settings(
        rag=rag_config,
        permission=PermissionConfig(read=True, write=True, execute=False),
        server=ServerConfig(socket_path=socket_path, shutdown_grace=0.5, max_tool_iterations=4),
    )


# ============================================================================
# Component Fixtures
# ============================================================================

@pytest.fixture
def embedder():
    return LetterEmbedder()


@pytest.fixture
def store(embedder, rag_config):
    return KnowledgeStore(embedder, rag_config)


@pytest.fixture
def registry(settings):
    return create_default_registry(settings)


@pytest.fixture
async def start_server(settings, store, registry):
    """Factory starting an AgentServer around a scripted model."""

    servers: List[AgentServer] = []

    async def _start(model, **server_overrides) -> AgentClient:
        engine = ConversationEngine(
            model=model,
            tool_registry=registry,
            knowledge_store=store,
            max_iterations=settings.server.max_tool_iterations,
        )
        config = settings.server.model_copy(update=server_overrides)
        server = AgentServer(engine, store, config)
        await server.start()
        servers.append(server)
        return AgentClient(config.socket_path)

    yield _start

    for server in servers:
        await server.shutdown()
