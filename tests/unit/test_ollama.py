"""Unit tests for the Ollama adapters, using httpx.MockTransport."""

import json

import httpx
import pytest

from llm_workspace.domain.errors import EmbeddingError, ModelError
from llm_workspace.domain.models.conversation import Message
from llm_workspace.infrastructure.config.settings import LLMConfig
from llm_workspace.infrastructure.providers.ollama import OllamaChatProvider, OllamaEmbedder


def mock_client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(base_url="http://ollama.test", transport=httpx.MockTransport(handler))


def ndjson(*records) -> bytes:
    return b"".join(json.dumps(r).encode() + b"\n" for r in records)


# ============================================================================
# Chat
# ============================================================================

@pytest.mark.asyncio
async def test_chat_streams_increments_and_returns_full_reply():
    """Each NDJSON message piece is forwarded and the pieces are joined."""
    seen_payloads = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen_payloads.append(json.loads(request.content))
        body = ndjson(
            {"message": {"role": "assistant", "content": "Hel"}, "done": False},
            {"message": {"role": "assistant", "content": "lo"}, "done": False},
            {"message": {"role": "assistant", "content": ""}, "done": True},
        )
        return httpx.Response(200, content=body)

    provider = OllamaChatProvider(LLMConfig(model="test-model"), client=mock_client(handler))
    pieces = []

    async def collect(piece):
        pieces.append(piece)

    reply = await provider.chat_complete([Message.user("hi")], {"temperature": 0.1}, collect)

    assert reply == "Hello"
    assert pieces == ["Hel", "lo"]
    payload = seen_payloads[0]
    assert payload["model"] == "test-model"
    assert payload["stream"] is True
    assert payload["messages"] == [{"role": "user", "content": "hi"}]
    assert payload["options"]["temperature"] == 0.1


@pytest.mark.asyncio
async def test_chat_http_error_becomes_model_error():
    """Non-2xx responses raise ModelError."""
    provider = OllamaChatProvider(
        LLMConfig(), client=mock_client(lambda request: httpx.Response(500, text="boom"))
    )

    with pytest.raises(ModelError):
        await provider.chat_complete([Message.user("hi")])


@pytest.mark.asyncio
async def test_chat_stream_error_record():
    """An error object inside the stream raises ModelError."""
    body = ndjson({"error": "model not found"})
    provider = OllamaChatProvider(
        LLMConfig(), client=mock_client(lambda request: httpx.Response(200, content=body))
    )

    with pytest.raises(ModelError, match="model not found"):
        await provider.chat_complete([Message.user("hi")])


# ============================================================================
# Embeddings
# ============================================================================

@pytest.mark.asyncio
async def test_embed_returns_first_vector():
    """The first embedding of the response is returned as floats."""

    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/api/embed"
        assert json.loads(request.content) == {"model": "nomic-embed-text", "input": "text"}
        return httpx.Response(200, json={"embeddings": [[1, 2.5, 3]]})

    embedder = OllamaEmbedder("nomic-embed-text", client=mock_client(handler))

    assert await embedder.embed("text") == [1.0, 2.5, 3.0]


@pytest.mark.asyncio
@pytest.mark.parametrize("response", [
    httpx.Response(503, text="unavailable"),
    httpx.Response(200, json={"embeddings": []}),
    httpx.Response(200, text="not json"),
])
async def test_embed_failures_become_embedding_error(response):
    """Transport, empty and malformed responses raise EmbeddingError."""
    embedder = OllamaEmbedder("m", client=mock_client(lambda request: response))

    with pytest.raises(EmbeddingError):
        await embedder.embed("text")
