from typing import Optional

import structlog

from llm_workspace.application.ipc.ipc_server import AgentServer
from llm_workspace.domain.knowledge.knowledge_store import KnowledgeStore
from llm_workspace.domain.orchestration.conversation_engine import ConversationEngine
from llm_workspace.domain.tool.builtin import create_default_registry
from llm_workspace.infrastructure.config.settings import Settings
from llm_workspace.infrastructure.providers.base import ChatProvider, Embedder
from llm_workspace.infrastructure.providers.ollama import OllamaChatProvider, OllamaEmbedder

logger = structlog.get_logger(__name__)


async def create_server(
    settings: Settings,
    model: Optional[ChatProvider] = None,
    embedder: Optional[Embedder] = None,
) -> AgentServer:
    """Wire the store, registry, engine and server from settings.

    The Ollama adapters are used unless collaborators are passed in.
    """

    if embedder is None:
        embedder = OllamaEmbedder(
            settings.rag.embedding_model,
            base_url=settings.llm.base_url,
            timeout=settings.llm.request_timeout,
        )
    if model is None:
        model = OllamaChatProvider(settings.llm)

    knowledge_store = KnowledgeStore(embedder, settings.rag)
    loaded = await knowledge_store.load()

    registry = create_default_registry(settings)
    engine = ConversationEngine(
        model=model,
        tool_registry=registry,
        knowledge_store=knowledge_store,
        system_prompt=settings.system_prompt,
        max_iterations=settings.server.max_tool_iterations,
        top_k=settings.rag.top_k,
        model_options={"temperature": settings.llm.temperature},
    )

    logger.info(
        "Agent initialized",
        model=settings.llm.model,
        tools=[spec.name for spec in registry.specs()],
        documents=loaded,
    )
    return AgentServer(engine, knowledge_store, settings.server)


async def close_collaborators(server: AgentServer):
    """Close HTTP clients owned by the Ollama adapters"""

    for collaborator in (server.engine.model, server.knowledge_store.embedder):
        aclose = getattr(collaborator, "aclose", None)
        if aclose is not None:
            await aclose()
