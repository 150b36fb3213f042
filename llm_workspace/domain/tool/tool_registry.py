import time
from typing import Dict, List, Optional

import structlog

from llm_workspace.domain.errors import AgentError, ToolExecutionError, UnknownToolError
from llm_workspace.infrastructure.config.settings import PermissionConfig
from llm_workspace.infrastructure.observability.logging import agent_logger, metrics
from .base_tool import BaseTool, Permission, ToolContext, ToolSpec
from .tool_validator import ToolParameterValidator

logger = structlog.get_logger(__name__)


class ToolRegistry:
    """Registry for managing available tools.

    Tools are registered once at construction time. Only tools whose every
    required permission is enabled become visible, so the registry needs no
    locking once the server is running.
    """

    def __init__(self, permissions: Optional[PermissionConfig] = None):
        self.permissions = permissions or PermissionConfig()
        self.tools: Dict[str, BaseTool] = {}

    def _enabled(self, permission: Permission) -> bool:
        return bool(getattr(self.permissions, permission.value))

    def register(self, tool: BaseTool) -> bool:
        """Register a tool if its permissions allow it; return whether it was added"""

        missing = [p.value for p in tool.spec.required_permission if not self._enabled(p)]
        if missing:
            logger.debug("Tool omitted, permission disabled", tool=tool.name, missing=missing)
            return False

        if tool.name in self.tools:
            raise ValueError(f"tool already registered: {tool.name}")

        self.tools[tool.name] = tool
        return True

    def get(self, name: str) -> Optional[BaseTool]:
        return self.tools.get(name)

    def specs(self) -> List[ToolSpec]:
        """Specs of all visible tools, in registration order"""

        return [tool.spec for tool in self.tools.values()]

    async def execute(
        self,
        name: str,
        arguments_json: str,
        context: Optional[ToolContext] = None
    ) -> str:
        """Validate arguments and run a tool.

        Raises:
            UnknownToolError: If no visible tool has this name
            InvalidArgumentsError: If the arguments do not match the schema
            ToolExecutionError: If the action itself fails
        """

        tool = self.tools.get(name)
        if tool is None:
            raise UnknownToolError(name)

        arguments = ToolParameterValidator.parse_arguments(tool.spec, arguments_json)
        context = context or ToolContext()

        start = time.perf_counter()
        try:
            result = await tool.execute(arguments, context)
        except ToolExecutionError as e:
            self._record_failure(name, arguments, start, e)
            raise
        except AgentError:
            raise
        except Exception as e:
            # Anything else a tool raises (e.g. ValueError for a NUL byte in a
            # path) is still a tool failure the model gets to see
            error = ToolExecutionError(name, f"{type(e).__name__}: {e}")
            self._record_failure(name, arguments, start, error)
            raise error from e

        duration_ms = (time.perf_counter() - start) * 1000
        agent_logger.log_tool_execution(
            name, arguments, result_length=len(result), duration_ms=duration_ms
        )
        metrics.record_latency("tool", duration_ms, tags={"tool": name})
        return result

    @staticmethod
    def _record_failure(name: str, arguments: Dict, start: float, error: ToolExecutionError):
        duration_ms = (time.perf_counter() - start) * 1000
        agent_logger.log_tool_execution(
            name, arguments, duration_ms=duration_ms, success=False, error=str(error)
        )
        metrics.increment_counter("tool_errors", tags={"tool": name})
