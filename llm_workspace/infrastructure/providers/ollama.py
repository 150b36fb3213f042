"""
Ollama adapters for the chat and embedding collaborators.

Both talk to a local Ollama daemon over HTTP using ``httpx.AsyncClient``.
Chat output is streamed as newline-delimited JSON and forwarded increment by
increment.
"""

import json
from typing import Any, Dict, List, Optional, Sequence

import httpx
import structlog

from llm_workspace.domain.errors import EmbeddingError, ModelError
from llm_workspace.domain.models.conversation import Message
from llm_workspace.infrastructure.config.settings import LLMConfig
from .base import OnIncrement

logger = structlog.get_logger(__name__)


class OllamaChatProvider:
    """Streaming chat completion through ``POST /api/chat``"""

    def __init__(self, config: LLMConfig, client: Optional[httpx.AsyncClient] = None):
        self.config = config
        self._client = client
        self._owns_client = client is None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.config.base_url,
                timeout=self.config.request_timeout,
            )
        return self._client

    async def aclose(self):
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def chat_complete(
        self,
        messages: Sequence[Message],
        options: Optional[Dict[str, Any]] = None,
        on_increment: Optional[OnIncrement] = None,
    ) -> str:
        """Stream a chat completion and return the full reply"""

        payload = {
            "model": self.config.model,
            "messages": [m.to_wire() for m in messages],
            "stream": True,
            "options": {"temperature": self.config.temperature, **(options or {})},
        }

        parts: List[str] = []
        try:
            async with self._get_client().stream("POST", "/api/chat", json=payload) as response:
                response.raise_for_status()
                async for line in response.aiter_lines():
                    if not line.strip():
                        continue
                    data = json.loads(line)
                    if data.get("error"):
                        raise ModelError(f"chat failed: {data['error']}")
                    content = data.get("message", {}).get("content", "")
                    if content:
                        parts.append(content)
                        if on_increment is not None:
                            await on_increment(content)
                    if data.get("done"):
                        break
        except httpx.HTTPError as e:
            logger.error("Chat request failed", model=self.config.model, error=str(e))
            raise ModelError(f"chat failed: {e}") from e
        except json.JSONDecodeError as e:
            raise ModelError(f"chat failed: malformed stream line: {e}") from e

        return "".join(parts)


class OllamaEmbedder:
    """Text embeddings through ``POST /api/embed``"""

    def __init__(
        self,
        model: str,
        base_url: str = "http://localhost:11434",
        timeout: float = 60.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.model = model
        self._client = client or httpx.AsyncClient(base_url=base_url, timeout=timeout)
        self._owns_client = client is None

    async def aclose(self):
        if self._owns_client:
            await self._client.aclose()

    async def embed(self, text: str) -> List[float]:
        """Embed a single text"""

        try:
            response = await self._client.post(
                "/api/embed",
                json={"model": self.model, "input": text},
            )
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPError as e:
            raise EmbeddingError(f"embedding failed: {e}") from e
        except ValueError as e:
            raise EmbeddingError(f"embedding failed: invalid response: {e}") from e

        embeddings = data.get("embeddings") or []
        if not embeddings or not embeddings[0]:
            raise EmbeddingError("embedding failed: no embeddings returned")

        return [float(x) for x in embeddings[0]]
