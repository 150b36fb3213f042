from typing import Dict, Set
import asyncio
from datetime import datetime, timezone
import structlog

from .schema.events import StreamChunk

logger = structlog.get_logger(__name__)


class ConnectionManager:
    """Tracks live socket connections and writes records to them"""

    def __init__(self):
        self.active_connections: Dict[str, asyncio.StreamWriter] = {}
        self.connection_metadata: Dict[str, Dict] = {}
        self._lock = asyncio.Lock()

    async def connect(self, connection_id: str, writer: asyncio.StreamWriter):
        """Register an accepted connection"""
        async with self._lock:
            self.active_connections[connection_id] = writer
            self.connection_metadata[connection_id] = {
                "connected_at": datetime.now(timezone.utc),
                "records_sent": 0,
            }

        logger.debug("Connection opened", connection_id=connection_id)

    async def disconnect(self, connection_id: str):
        """Close a connection and forget it"""
        async with self._lock:
            writer = self.active_connections.pop(connection_id, None)
            metadata = self.connection_metadata.pop(connection_id, None)

        if writer is None:
            return

        writer.close()
        try:
            await writer.wait_closed()
        except (ConnectionError, OSError) as e:
            logger.debug("Error closing connection", connection_id=connection_id, error=str(e))

        logger.debug(
            "Connection closed",
            connection_id=connection_id,
            records_sent=metadata["records_sent"] if metadata else 0,
        )

    async def send_event(self, connection_id: str, record: StreamChunk) -> bool:
        """Write one record line; False if the peer is gone"""
        writer = self.active_connections.get(connection_id)
        if writer is None or writer.is_closing():
            logger.warning("Attempted to send to closed connection", connection_id=connection_id)
            return False

        try:
            writer.write(record.encode())
            await writer.drain()
        except (ConnectionError, OSError) as e:
            logger.warning("Failed to send record", connection_id=connection_id, error=str(e))
            return False

        metadata = self.connection_metadata.get(connection_id)
        if metadata is not None:
            metadata["records_sent"] += 1
        return True

    def get_active_connections(self) -> Set[str]:
        return set(self.active_connections.keys())

    async def close_all(self):
        """Cut off every connection still open"""
        for connection_id in list(self.active_connections.keys()):
            await self.disconnect(connection_id)
