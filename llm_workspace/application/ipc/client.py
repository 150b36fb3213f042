import asyncio
from typing import AsyncIterator, List, Optional

from llm_workspace.domain.errors import ProtocolError
from .schema.events import HistoryMessage, Request, StreamChunk


class AgentClient:
    """Client for the Unix socket server; one connection per request"""

    def __init__(self, socket_path: str, limit: int = 16 * 1024 * 1024):
        self.socket_path = socket_path
        self.limit = limit

    async def stream(
        self,
        request_type: str,
        content: str = "",
        pwd: Optional[str] = None,
        history: Optional[List[HistoryMessage]] = None,
        timeout: Optional[float] = None,
    ) -> AsyncIterator[StreamChunk]:
        """Send a request and yield response records until the terminal one"""

        request = Request(type=request_type, content=content, pwd=pwd, history=history, timeout=timeout)
        reader, writer = await asyncio.open_unix_connection(self.socket_path, limit=self.limit)
        try:
            writer.write(request.model_dump_json(exclude_none=True).encode("utf-8") + b"\n")
            await writer.drain()

            while True:
                line = await reader.readline()
                if not line:
                    raise ProtocolError("connection closed before a terminal record")
                record = StreamChunk.model_validate_json(line)
                yield record
                if record.terminal:
                    return
        finally:
            writer.close()
            try:
                await writer.wait_closed()
            except (ConnectionError, OSError):
                pass

    async def request(self, request_type: str, content: str = "", **kwargs) -> StreamChunk:
        """Send a request and return only its terminal record"""

        last = None
        async for record in self.stream(request_type, content, **kwargs):
            last = record
        if last is None or not last.terminal:
            raise ProtocolError("no terminal record received")
        return last

    async def collect(self, request_type: str, content: str = "", **kwargs) -> List[StreamChunk]:
        return [record async for record in self.stream(request_type, content, **kwargs)]
