import asyncio
from typing import Any, Dict

import structlog

from llm_workspace.domain.errors import ToolExecutionError
from .base_tool import BaseTool, ParameterSpec, Permission, ToolContext, ToolSpec

logger = structlog.get_logger(__name__)


class ExecTool(BaseTool):
    """Run a program with arguments, without a shell"""

    spec = ToolSpec(
        name="exec",
        description="Execute a command available in the shell, such as git, grep or ls",
        parameters={
            "command": ParameterSpec(type="string", description="Program to run, e.g. 'git'"),
            "args": ParameterSpec(type="array", description="Command arguments", required=False),
            "cwd": ParameterSpec(type="string", description="Working directory", required=False),
        },
        required_permission=frozenset({Permission.EXECUTE}),
    )

    def __init__(self, timeout: float = 30.0):
        self.timeout = timeout

    async def execute(self, arguments: Dict[str, Any], context: ToolContext) -> str:
        command = arguments["command"]
        args = [str(a) for a in arguments.get("args") or []]
        cwd = context.resolve(arguments["cwd"]) if arguments.get("cwd") else context.working_directory

        try:
            process = await asyncio.create_subprocess_exec(
                command,
                *args,
                cwd=cwd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except (OSError, ValueError) as e:
            raise ToolExecutionError(self.name, f"failed to start {command}: {e}") from e

        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=self.timeout)
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            raise ToolExecutionError(self.name, f"{command} timed out after {self.timeout}s")

        logger.info("Executed command", command=command, args=args, exit_code=process.returncode)
        return (
            f"stdout: {stdout.decode(errors='replace')}\n"
            f"stderr: {stderr.decode(errors='replace')}\n"
            f"exit_code: {process.returncode}"
        )
