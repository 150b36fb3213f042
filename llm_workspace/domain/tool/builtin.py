from llm_workspace.infrastructure.config.settings import Settings
from .command_tools import ExecTool
from .file_tools import ListDirectoryTool, ReadFileTool, WriteFileTool
from .tool_registry import ToolRegistry


def create_default_registry(settings: Settings) -> ToolRegistry:
    """Registry with every built-in tool the permission flags allow"""

    registry = ToolRegistry(settings.permission)
    registry.register(ReadFileTool(max_bytes=settings.server.max_read_bytes))
    registry.register(ListDirectoryTool())
    registry.register(WriteFileTool())
    registry.register(ExecTool(timeout=settings.server.exec_timeout))
    return registry
