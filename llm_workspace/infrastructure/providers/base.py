"""
Collaborator contracts for the model and embedding backends.
"""

from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, Sequence

from llm_workspace.domain.models.conversation import Message


OnIncrement = Callable[[str], Awaitable[None]]


class Embedder(Protocol):
    """Turns text into a fixed-length vector."""

    async def embed(self, text: str) -> List[float]:
        ...


class ChatProvider(Protocol):
    """Chat completion backend with incremental output."""

    async def chat_complete(
        self,
        messages: Sequence[Message],
        options: Optional[Dict[str, Any]] = None,
        on_increment: Optional[OnIncrement] = None,
    ) -> str:
        """Send ``messages`` and return the complete reply.

        Each non-empty piece of output is awaited through ``on_increment``
        before the next one is read.
        """
        ...
