"""
Built-in filesystem tools.

* ``read_file`` - return the contents of a text file (read).
* ``list_directory`` - list entries of a directory, directories suffixed
  with ``/`` (read).
* ``write_file`` - replace a file's content, keeping the previous version as
  a ``.backup`` sibling (write).

Relative paths are resolved against the request's working directory. OS
errors surface as ``ToolExecutionError``; concurrent writers to the same
path are not coordinated. Paths the OS rejects outright (an embedded NUL
byte) are reported the same way.
"""

import asyncio
import shutil
from pathlib import Path
from typing import Any, Dict

import structlog

from llm_workspace.domain.errors import ToolExecutionError
from .base_tool import BaseTool, ParameterSpec, Permission, ToolContext, ToolSpec

logger = structlog.get_logger(__name__)


class ReadFileTool(BaseTool):
    spec = ToolSpec(
        name="read_file",
        description="Read the contents of a file",
        parameters={
            "path": ParameterSpec(type="string", description="Path to the file"),
        },
        required_permission=frozenset({Permission.READ}),
    )

    def __init__(self, max_bytes: int = 200_000):
        self.max_bytes = max_bytes

    async def execute(self, arguments: Dict[str, Any], context: ToolContext) -> str:
        path = context.resolve(arguments["path"])
        try:
            content = await asyncio.to_thread(self._read, path)
        except (OSError, ValueError) as e:
            raise ToolExecutionError(self.name, f"failed to read file: {e}") from e

        logger.info("Read file", path=str(path), length=len(content))
        return content

    def _read(self, path: Path) -> str:
        with open(path, "r", encoding="utf-8", errors="replace") as f:
            content = f.read(self.max_bytes + 1)
        if len(content) > self.max_bytes:
            content = content[:self.max_bytes] + f"\n[truncated at {self.max_bytes} characters]"
        return content


class ListDirectoryTool(BaseTool):
    spec = ToolSpec(
        name="list_directory",
        description="List files and directories in a directory",
        parameters={
            "path": ParameterSpec(type="string", description="Path to the directory"),
        },
        required_permission=frozenset({Permission.READ}),
    )

    async def execute(self, arguments: Dict[str, Any], context: ToolContext) -> str:
        path = context.resolve(arguments["path"])
        try:
            entries = await asyncio.to_thread(self._list, path)
        except (OSError, ValueError) as e:
            raise ToolExecutionError(self.name, f"failed to read directory: {e}") from e

        logger.info("Listed directory", path=str(path), entries=len(entries))
        return "\n".join(entries)

    @staticmethod
    def _list(path: Path) -> list:
        return [
            entry.name + "/" if entry.is_dir() else entry.name
            for entry in sorted(path.iterdir(), key=lambda p: p.name)
        ]


class WriteFileTool(BaseTool):
    spec = ToolSpec(
        name="write_file",
        description="Write or update a file with new content; the previous version is kept as <path>.backup",
        parameters={
            "path": ParameterSpec(type="string", description="Path to the file"),
            "content": ParameterSpec(type="string", description="Complete new content of the file"),
            "reason": ParameterSpec(
                type="string",
                description="Explanation of why this change is being made",
                required=False,
            ),
        },
        required_permission=frozenset({Permission.WRITE}),
    )

    async def execute(self, arguments: Dict[str, Any], context: ToolContext) -> str:
        path = context.resolve(arguments["path"])
        try:
            backup = await asyncio.to_thread(self._write, path, arguments["content"])
        except (OSError, ValueError) as e:
            raise ToolExecutionError(self.name, f"failed to write file: {e}") from e

        logger.info(
            "File updated",
            path=str(path),
            backup=str(backup) if backup else None,
            reason=arguments.get("reason")
        )
        return f"File successfully updated: {path}"

    @staticmethod
    def _write(path: Path, content: str):
        backup = None
        if path.is_file():
            backup = path.with_name(path.name + ".backup")
            shutil.copy2(path, backup)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content, encoding="utf-8")
        return backup
