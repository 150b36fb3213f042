"""
Unix socket server exposing the conversation engine and knowledge store.

Each connection carries exactly one request line and receives one or more
response lines before the server closes it.
"""

import asyncio
import os
import signal
import time
import uuid
from pathlib import Path
from typing import Optional, Set

import structlog

from llm_workspace.domain.errors import AgentError, ProtocolError
from llm_workspace.domain.knowledge.knowledge_store import KnowledgeStore
from llm_workspace.domain.orchestration.conversation_engine import ConversationEngine
from llm_workspace.domain.streaming.streaming_handler import StreamingHandler
from llm_workspace.infrastructure.config.settings import ServerConfig
from llm_workspace.infrastructure.observability.logging import metrics
from .connection_manager import ConnectionManager
from .schema.events import LegacyResponse, Request, RequestType

logger = structlog.get_logger(__name__)

SOCKET_MODE = 0o600
READ_LIMIT = 16 * 1024 * 1024
DEADLINE_EXCEEDED = "request cancelled: deadline exceeded"
SHUTTING_DOWN = "request cancelled: server shutting down"


class AgentServer:
    """Accepts connections and dispatches one request per connection"""

    def __init__(
        self,
        engine: ConversationEngine,
        knowledge_store: KnowledgeStore,
        config: Optional[ServerConfig] = None,
        connection_manager: Optional[ConnectionManager] = None,
    ):
        self.engine = engine
        self.knowledge_store = knowledge_store
        self.config = config or ServerConfig()
        self.connection_manager = connection_manager or ConnectionManager()
        self._server: Optional[asyncio.AbstractServer] = None
        self._tasks: Set[asyncio.Task] = set()
        self._stop = asyncio.Event()

    @property
    def socket_path(self) -> str:
        return self.config.socket_path

    @property
    def is_serving(self) -> bool:
        return self._server is not None and self._server.is_serving()

    async def start(self):
        """Bind the socket and start accepting connections"""

        path = Path(self.socket_path)
        if path.exists() or path.is_symlink():
            logger.info("Removing stale socket", path=str(path))
            path.unlink()
        path.parent.mkdir(parents=True, exist_ok=True)

        # Bind with an owner-only umask so the socket is never reachable by
        # others, even before the explicit chmod
        previous_umask = os.umask(0o177)
        try:
            self._server = await asyncio.start_unix_server(
                self._handle_connection,
                path=str(path),
                limit=READ_LIMIT,
            )
        finally:
            os.umask(previous_umask)
        os.chmod(path, SOCKET_MODE)

        logger.info("Server listening", path=str(path))

    async def serve_forever(self, install_signal_handlers: bool = True):
        """Serve until ``request_shutdown`` is called or a signal arrives"""

        await self.start()
        if install_signal_handlers:
            self._install_signal_handlers()
        try:
            await self._stop.wait()
        finally:
            await self.shutdown()

    def request_shutdown(self):
        self._stop.set()

    def _install_signal_handlers(self):
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self._on_signal, sig)
            except (NotImplementedError, RuntimeError):
                logger.warning("Signal handlers unavailable", signal=sig.name)

    def _on_signal(self, sig: signal.Signals):
        logger.info("Shutdown signal received", signal=sig.name)
        self.request_shutdown()

    async def shutdown(self):
        """Stop accepting, let in-flight requests finish, then cut them off"""

        if self._server is None:
            return

        self._server.close()

        pending = {task for task in self._tasks if not task.done()}
        if pending:
            logger.info("Waiting for in-flight requests", count=len(pending), grace=self.config.shutdown_grace)
            _, pending = await asyncio.wait(pending, timeout=self.config.shutdown_grace)
        if pending:
            logger.warning("Cancelling in-flight requests", count=len(pending))
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)

        await self.connection_manager.close_all()
        await self._server.wait_closed()
        self._server = None

        path = Path(self.socket_path)
        if path.exists():
            path.unlink()

        logger.info("Server stopped", metrics=metrics.get_metrics_summary())

    async def _handle_connection(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter):
        task = asyncio.current_task()
        if task is not None:
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

        connection_id = uuid.uuid4().hex[:12]
        structlog.contextvars.bind_contextvars(connection_id=connection_id)
        await self.connection_manager.connect(connection_id, writer)
        stream = StreamingHandler(self.connection_manager, connection_id)
        start = time.perf_counter()

        try:
            request = await self._read_request(reader)
            structlog.contextvars.bind_contextvars(request_type=request.type)
            metrics.increment_counter("requests", tags={"type": request.type})
            logger.info("Request received", content_length=len(request.content))

            timeout = request.timeout or self.config.request_timeout
            await asyncio.wait_for(self._process(request, stream), timeout=timeout)

        except asyncio.TimeoutError:
            logger.warning("Request deadline exceeded")
            metrics.increment_counter("errors", tags={"kind": "timeout"})
            await stream.send_error(DEADLINE_EXCEEDED)
        except asyncio.CancelledError:
            await stream.send_error(SHUTTING_DOWN)
            raise
        except AgentError as e:
            logger.warning("Request failed", error=str(e), error_type=type(e).__name__)
            metrics.increment_counter("errors", tags={"kind": type(e).__name__})
            await stream.send_error(str(e))
        except Exception as e:
            logger.exception("Unexpected error handling request")
            metrics.increment_counter("errors", tags={"kind": "internal"})
            await stream.send_error(f"internal error: {e}")
        finally:
            duration_ms = (time.perf_counter() - start) * 1000
            metrics.record_latency("request", duration_ms)
            logger.info("Request finished", duration_ms=round(duration_ms, 1), **stream.summary())
            await self.connection_manager.disconnect(connection_id)
            structlog.contextvars.unbind_contextvars("connection_id", "request_type")

    async def _read_request(self, reader: asyncio.StreamReader) -> Request:
        try:
            line = await reader.readline()
        except (asyncio.LimitOverrunError, ValueError) as e:
            raise ProtocolError(f"request too large: {e}") from e
        return Request.decode(line)

    async def _process(self, request: Request, stream: StreamingHandler):
        request_type = request.request_type
        if request_type is None:
            raise ProtocolError(f"unknown request type: {request.type}")

        if not request_type.streaming:
            await stream.send_response(await self.handle_request(request))
            return

        result = await self._converse(request, request_type, stream.stream_token)
        await stream.send_done(result.answer)

    async def _converse(self, request: Request, request_type: RequestType, on_increment=None):
        history = request.history_messages()
        if request_type.uses_tools:
            return await self.engine.chat_with_tools(
                request.content,
                history,
                on_increment,
                working_directory=request.pwd,
            )
        return await self.engine.chat(request.content, history, on_increment)

    async def handle_request(self, request: Request) -> LegacyResponse:
        """Serve a request as a single non-streaming response"""

        request_type = request.request_type
        if request_type is None:
            return LegacyResponse(success=False, error=f"unknown request type: {request.type}")

        try:
            if request_type == RequestType.ADD:
                await self.knowledge_store.add_text(request.content, {"source": "user_input"})
                return LegacyResponse(success=True, content="Added to knowledge base")

            if request_type == RequestType.INDEX:
                path = self._resolve(request.content, request.pwd)
                count = await self.knowledge_store.index_directory(path)
                return LegacyResponse(success=True, content=f"Indexed {count} files from: {path}")

            if request_type == RequestType.STATS:
                count = await self.knowledge_store.count()
                return LegacyResponse(success=True, content=f"Knowledge base contains {count} documents")

            result = await self._converse(request, request_type)
            return LegacyResponse(success=True, content=result.answer)

        except AgentError as e:
            logger.warning("Request failed", error=str(e), error_type=type(e).__name__)
            return LegacyResponse(success=False, error=_describe_failure(request_type, e))

    @staticmethod
    def _resolve(path: str, pwd: Optional[str]) -> str:
        path = path.strip()
        if pwd and not os.path.isabs(path):
            return os.path.join(pwd, path)
        return path


def _describe_failure(request_type: RequestType, error: AgentError) -> str:
    if request_type == RequestType.ADD:
        return f"Failed to add: {error}"
    if request_type == RequestType.INDEX:
        return f"Failed to index: {error}"
    return str(error)
