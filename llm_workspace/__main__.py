"""Command line entry point for llm-workspace."""

import asyncio
import os
from pathlib import Path
from typing import List, Optional

import typer
from rich.console import Console

from llm_workspace.application.bootstrap import close_collaborators, create_server
from llm_workspace.application.ipc.client import AgentClient
from llm_workspace.application.ipc.schema.events import ChunkType, RequestType, StreamChunk
from llm_workspace.domain.errors import AgentError
from llm_workspace.infrastructure.config.settings import Settings, load_settings
from llm_workspace.infrastructure.observability.logging import setup_logging

console = Console()
err_console = Console(stderr=True)

app = typer.Typer(
    name="llm-workspace",
    help="Local retrieval-augmented assistant with permission-gated tools",
    no_args_is_help=True,
)

ConfigOption = typer.Option(None, "--config", "-c", help="Path to a YAML configuration file")
SocketOption = typer.Option(None, "--socket", "-s", help="Override the server socket path")


def _settings(config_path: Optional[Path], socket: Optional[str]) -> Settings:
    try:
        settings = load_settings(config_path)
    except AgentError as e:
        err_console.print(f"Configuration Error: {e}", style="red", markup=False)
        raise typer.Exit(2)
    if socket:
        settings.server.socket_path = socket
    setup_logging(settings.log_level, settings.log_format)
    return settings


def _run(settings: Settings, coro):
    try:
        return asyncio.run(coro)
    except (ConnectionError, FileNotFoundError) as e:
        err_console.print(f"Cannot reach server at {settings.server.socket_path}: {e}", style="red", markup=False)
        raise typer.Exit(1)
    except AgentError as e:
        err_console.print(f"Error: {e}", style="red", markup=False)
        raise typer.Exit(1)


def _finish(record: StreamChunk):
    if record.type == ChunkType.ERROR:
        err_console.print(record.error, style="red", markup=False, highlight=False)
        raise typer.Exit(1)
    console.print(record.content or "", markup=False, highlight=False)


@app.command()
def serve(
    config_path: Optional[Path] = ConfigOption,
    socket: Optional[str] = SocketOption,
) -> None:
    """Run the server in the foreground until SIGINT or SIGTERM."""

    settings = _settings(config_path, socket)

    async def _serve():
        server = await create_server(settings)
        try:
            await server.serve_forever()
        finally:
            await close_collaborators(server)

    _run(settings, _serve())


@app.command()
def ask(
    question: List[str] = typer.Argument(..., help="Question to ask"),
    tools: bool = typer.Option(False, "--tools", "-t", help="Let the model call tools"),
    timeout: Optional[float] = typer.Option(None, "--timeout", help="Deadline in seconds"),
    config_path: Optional[Path] = ConfigOption,
    socket: Optional[str] = SocketOption,
) -> None:
    """Ask a question and stream the answer."""

    settings = _settings(config_path, socket)
    request_type = RequestType.TOOL_CHAT if tools else RequestType.CHAT
    client = AgentClient(settings.server.socket_path)

    async def _ask() -> Optional[StreamChunk]:
        failure = None
        async for record in client.stream(request_type.value, " ".join(question), pwd=os.getcwd(), timeout=timeout):
            if record.type == ChunkType.CHUNK:
                console.print(record.content, end="", markup=False, highlight=False)
            elif record.type == ChunkType.ERROR:
                failure = record
        console.print()
        return failure

    failure = _run(settings, _ask())
    if failure is not None:
        _finish(failure)


@app.command()
def add(
    text: List[str] = typer.Argument(..., help="Text to remember"),
    config_path: Optional[Path] = ConfigOption,
    socket: Optional[str] = SocketOption,
) -> None:
    """Add text to the knowledge base."""

    settings = _settings(config_path, socket)
    client = AgentClient(settings.server.socket_path)
    _finish(_run(settings, client.request(RequestType.ADD.value, " ".join(text))))


@app.command()
def index(
    path: str = typer.Argument(..., help="Directory to index"),
    config_path: Optional[Path] = ConfigOption,
    socket: Optional[str] = SocketOption,
) -> None:
    """Index every supported file under a directory."""

    settings = _settings(config_path, socket)
    client = AgentClient(settings.server.socket_path)
    _finish(_run(settings, client.request(RequestType.INDEX.value, path, pwd=os.getcwd())))


@app.command()
def stats(
    config_path: Optional[Path] = ConfigOption,
    socket: Optional[str] = SocketOption,
) -> None:
    """Show how many documents the knowledge base holds."""

    settings = _settings(config_path, socket)
    client = AgentClient(settings.server.socket_path)
    _finish(_run(settings, client.request(RequestType.STATS.value)))


def main():
    app()


if __name__ == "__main__":
    main()
