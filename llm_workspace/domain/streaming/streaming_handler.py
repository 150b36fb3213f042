import structlog

from llm_workspace.application.ipc.connection_manager import ConnectionManager
from llm_workspace.application.ipc.schema.events import LegacyResponse, StreamChunk

logger = structlog.get_logger(__name__)


class StreamingHandler:
    """Streams one request's output to its connection.

    Records go out in call order: any number of ``chunk`` records, then
    exactly one terminal ``done`` or ``error`` record. Anything sent after
    the terminal record is dropped.
    """

    def __init__(self, connection_manager: ConnectionManager, connection_id: str):
        self.connection_manager = connection_manager
        self.connection_id = connection_id
        self.chunks_sent = 0
        self._finished = False
        self._peer_gone = False

    @property
    def finished(self) -> bool:
        return self._finished

    async def stream_token(self, token: str):
        """Forward one model increment as a chunk record"""

        if self._finished or self._peer_gone or not token:
            return
        sent = await self.connection_manager.send_event(self.connection_id, StreamChunk.chunk(token))
        if sent:
            self.chunks_sent += 1
        else:
            self._peer_gone = True

    async def send_done(self, content: str) -> bool:
        return await self._finish(StreamChunk.done(content))

    async def send_error(self, error: str) -> bool:
        return await self._finish(StreamChunk.failure(error))

    async def send_response(self, response: LegacyResponse) -> bool:
        """Terminal record for a non-streaming response"""
        return await self._finish(response.to_chunk())

    async def _finish(self, record: StreamChunk) -> bool:
        if self._finished:
            logger.debug("Terminal record already sent", connection_id=self.connection_id, dropped=record.type.value)
            return False
        self._finished = True
        if self._peer_gone:
            return False
        return await self.connection_manager.send_event(self.connection_id, record)

    def summary(self) -> dict:
        return {"chunks_sent": self.chunks_sent, "finished": self._finished}
