import time
from typing import Any, Dict, List, Optional, Sequence

import structlog

from llm_workspace.domain.errors import AgentError, EmbeddingError, ToolLoopExceededError
from llm_workspace.domain.knowledge.knowledge_store import KnowledgeStore
from llm_workspace.domain.models.conversation import (
    ConversationResult, ConversationState, Message
)
from llm_workspace.domain.tool.base_tool import ToolContext
from llm_workspace.domain.tool.tool_registry import ToolRegistry
from llm_workspace.infrastructure.observability.logging import agent_logger, metrics
from llm_workspace.infrastructure.providers.base import ChatProvider, OnIncrement
from .prompts import build_tool_system_prompt
from .tool_call_parser import PlainResponse, parse_model_output, strip_tool_calls

logger = structlog.get_logger(__name__)

DEFAULT_MAX_ITERATIONS = 10


class ConversationEngine:
    """Drives the model through retrieval, generation and tool execution.

    ``chat`` is a single retrieval-augmented model call. ``chat_with_tools``
    runs the loop Retrieving -> Generating -> ParsingToolCalls -> Executing
    -> Generating ... -> Done, bounded by ``max_iterations`` model calls.
    """

    def __init__(
        self,
        model: ChatProvider,
        tool_registry: ToolRegistry,
        knowledge_store: Optional[KnowledgeStore] = None,
        system_prompt: str = "You are a helpful assistant.",
        max_iterations: int = DEFAULT_MAX_ITERATIONS,
        top_k: Optional[int] = None,
        model_options: Optional[Dict[str, Any]] = None,
    ):
        if max_iterations < 1:
            raise ValueError("max_iterations must be at least 1")
        self.model = model
        self.tool_registry = tool_registry
        self.knowledge_store = knowledge_store
        self.system_prompt = system_prompt
        self.max_iterations = max_iterations
        self.top_k = top_k
        self.model_options = model_options or {}

    async def chat(
        self,
        message: str,
        history: Optional[Sequence[Message]] = None,
        on_increment: Optional[OnIncrement] = None,
    ) -> ConversationResult:
        """Plain question answering without tools"""

        context = await self.retrieve_context(message)
        messages = self._initial_messages(self.system_prompt, message, context, history)

        output = await self._generate(messages, on_increment, turn=1)
        messages.append(Message.assistant(output))

        return ConversationResult(
            answer=strip_tool_calls(output),
            messages=messages,
            turns=1,
            metadata={"context_used": bool(context)},
        )

    async def chat_with_tools(
        self,
        message: str,
        history: Optional[Sequence[Message]] = None,
        on_increment: Optional[OnIncrement] = None,
        working_directory: Optional[str] = None,
    ) -> ConversationResult:
        """Answer a query, executing any tools the model asks for.

        Raises:
            ToolLoopExceededError: If the model still requests tools after
                ``max_iterations`` model calls
        """

        state = ConversationState.RETRIEVING
        context = await self.retrieve_context(message)

        system_prompt = build_tool_system_prompt(
            self.system_prompt,
            self.tool_registry.specs(),
            working_directory,
        )
        messages = self._initial_messages(system_prompt, message, context, history)
        tool_context = ToolContext(working_directory=working_directory)
        tool_calls = 0

        for turn in range(1, self.max_iterations + 1):
            state = self._transition(state, ConversationState.GENERATING, turn)
            output = await self._generate(messages, on_increment, turn)

            state = self._transition(state, ConversationState.PARSING_TOOL_CALLS, turn)
            parsed = parse_model_output(output)
            messages.append(Message.assistant(output))

            if isinstance(parsed, PlainResponse):
                self._transition(state, ConversationState.DONE, turn)
                return ConversationResult(
                    answer=strip_tool_calls(output),
                    messages=messages,
                    turns=turn,
                    tool_calls=tool_calls,
                    metadata={"context_used": bool(context)},
                )

            state = self._transition(state, ConversationState.EXECUTING, turn, f"{len(parsed.directives)} tool calls")
            for directive in parsed.directives:
                tool_calls += 1
                try:
                    result = await self.tool_registry.execute(
                        directive.tool_name,
                        directive.arguments_json,
                        tool_context,
                    )
                except AgentError as e:
                    logger.warning("Tool call failed", tool=directive.tool_name, error=str(e))
                    result = f"Error: {e}"
                messages.append(Message.tool_result(directive.tool_name, result))

        self._transition(state, ConversationState.FAILED, self.max_iterations, "iteration bound reached")
        raise ToolLoopExceededError(self.max_iterations)

    async def retrieve_context(self, query: str) -> str:
        """Retrieved context suffix, or an empty string when unavailable"""

        if self.knowledge_store is None:
            return ""
        try:
            return await self.knowledge_store.retrieve_context(query, self.top_k)
        except EmbeddingError as e:
            logger.warning("Retrieval failed, continuing without context", error=str(e))
            return ""

    @staticmethod
    def _initial_messages(
        system_prompt: str,
        message: str,
        context: str,
        history: Optional[Sequence[Message]],
    ) -> List[Message]:
        messages = [Message.system(system_prompt)]
        if history:
            messages.extend(history)
        messages.append(Message.user(message + context))
        return messages

    async def _generate(
        self,
        messages: List[Message],
        on_increment: Optional[OnIncrement],
        turn: int,
    ) -> str:
        start = time.perf_counter()
        output = await self.model.chat_complete(messages, self.model_options, on_increment)
        duration_ms = (time.perf_counter() - start) * 1000
        metrics.record_latency("model", duration_ms)
        logger.debug("Model turn complete", turn=turn, length=len(output), duration_ms=round(duration_ms, 1))
        return output

    @staticmethod
    def _transition(
        from_state: ConversationState,
        to_state: ConversationState,
        turn: int,
        condition: Optional[str] = None,
    ) -> ConversationState:
        agent_logger.log_state_transition(from_state.value, to_state.value, turn, condition)
        return to_state
