import json
from typing import List, Optional
from pydantic import BaseModel, Field, ValidationError
from enum import Enum

from llm_workspace.domain.errors import ProtocolError
from llm_workspace.domain.models.conversation import Message


class RequestType(str, Enum):
    """Request kinds accepted by the server"""
    CHAT = "chat"
    EDIT = "edit"
    TOOL_CHAT = "tool-chat"
    ADD = "add"
    INDEX = "index"
    STATS = "stats"

    @property
    def streaming(self) -> bool:
        return self in STREAMING_TYPES

    @property
    def uses_tools(self) -> bool:
        return self in (RequestType.EDIT, RequestType.TOOL_CHAT)


STREAMING_TYPES = frozenset({RequestType.CHAT, RequestType.EDIT, RequestType.TOOL_CHAT})


class ChunkType(str, Enum):
    """Response record types"""
    CHUNK = "chunk"
    DONE = "done"
    ERROR = "error"


class HistoryMessage(BaseModel):
    """Prior conversation turn as sent by the client"""
    role: str
    content: str = ""


class Request(BaseModel):
    """One request per connection"""
    type: str
    content: str = ""
    pwd: Optional[str] = None
    history: Optional[List[HistoryMessage]] = None
    timeout: Optional[float] = Field(default=None, gt=0, description="Deadline in seconds")

    @property
    def request_type(self) -> Optional[RequestType]:
        try:
            return RequestType(self.type)
        except ValueError:
            return None

    def history_messages(self) -> List[Message]:
        """History converted to engine messages.

        Raises:
            ProtocolError: If a role is not recognised
        """
        messages = []
        for item in self.history or []:
            role = "tool" if item.role == "tool-result" else item.role
            try:
                messages.append(Message(role=role, content=item.content))
            except ValidationError as e:
                raise ProtocolError(f"invalid history role: {item.role}") from e
        return messages

    @classmethod
    def decode(cls, line: bytes) -> "Request":
        """Decode one JSON request line.

        Raises:
            ProtocolError: If the line is not a JSON object with a ``type``
        """
        if not line.strip():
            raise ProtocolError("empty request")
        try:
            data = json.loads(line)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise ProtocolError(f"malformed request: {e}") from e
        if not isinstance(data, dict):
            raise ProtocolError("malformed request: expected a JSON object")
        try:
            return cls.model_validate(data)
        except ValidationError as e:
            raise ProtocolError(f"malformed request: {e.errors()[0]['msg']}") from e


class StreamChunk(BaseModel):
    """Streaming response record"""
    type: ChunkType
    content: Optional[str] = None
    error: Optional[str] = None

    @classmethod
    def chunk(cls, content: str) -> "StreamChunk":
        return cls(type=ChunkType.CHUNK, content=content)

    @classmethod
    def done(cls, content: str) -> "StreamChunk":
        return cls(type=ChunkType.DONE, content=content)

    @classmethod
    def failure(cls, error: str) -> "StreamChunk":
        return cls(type=ChunkType.ERROR, error=error)

    @property
    def terminal(self) -> bool:
        return self.type != ChunkType.CHUNK

    def encode(self) -> bytes:
        return self.model_dump_json(exclude_none=True).encode("utf-8") + b"\n"


class LegacyResponse(BaseModel):
    """Single non-streaming response"""
    success: bool
    content: str = ""
    error: Optional[str] = None

    def to_chunk(self) -> StreamChunk:
        if self.success:
            return StreamChunk.done(self.content)
        return StreamChunk.failure(self.error or "request failed")
