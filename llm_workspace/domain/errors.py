"""
Exception hierarchy for the agent core.
"""

from typing import List, Optional


class AgentError(Exception):
    """Base exception for the agent core."""
    pass


class ConfigError(AgentError):
    """Configuration is invalid."""
    pass


class NotFoundError(AgentError):
    """A path or resource does not exist."""
    pass


class EmbeddingError(AgentError):
    """The embedding backend failed.

    When raised by ``KnowledgeStore.add_text`` it also reports which chunks
    were stored and which were skipped.
    """

    def __init__(
        self,
        message: str,
        document_ids: Optional[List[str]] = None,
        failed_chunks: Optional[List[int]] = None
    ):
        super().__init__(message)
        self.document_ids = document_ids or []
        self.failed_chunks = failed_chunks or []


class ModelError(AgentError):
    """The language model backend failed."""
    pass


class UnknownToolError(AgentError):
    """No tool with the requested name is registered."""

    def __init__(self, name: str):
        super().__init__(f"unknown tool: {name}")
        self.name = name


class InvalidArgumentsError(AgentError):
    """Tool arguments are malformed or do not match the parameter schema."""
    pass


class ToolExecutionError(AgentError):
    """A tool action failed, usually wrapping an OSError."""

    def __init__(self, tool_name: str, message: str):
        super().__init__(f"{tool_name}: {message}")
        self.tool_name = tool_name


class ToolLoopExceededError(AgentError):
    """The model kept requesting tools past the iteration bound."""

    def __init__(self, max_iterations: int):
        super().__init__(f"tool loop exceeded {max_iterations} iterations without a final answer")
        self.max_iterations = max_iterations


class ProtocolError(AgentError):
    """A request could not be decoded or is not well formed."""
    pass
