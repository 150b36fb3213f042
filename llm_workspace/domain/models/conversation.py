from typing import Any, Dict, List
from pydantic import BaseModel, Field
from enum import Enum


class Role(str, Enum):
    """Message roles understood by the model backend"""
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"
    TOOL_RESULT = "tool"


class ConversationState(str, Enum):
    """States of the tool-execution loop"""
    RETRIEVING = "retrieving"
    GENERATING = "generating"
    PARSING_TOOL_CALLS = "parsing_tool_calls"
    EXECUTING = "executing"
    DONE = "done"
    FAILED = "failed"


class Message(BaseModel):
    """One turn in a conversation"""
    role: Role
    content: str = ""

    @classmethod
    def system(cls, content: str) -> "Message":
        return cls(role=Role.SYSTEM, content=content)

    @classmethod
    def user(cls, content: str) -> "Message":
        return cls(role=Role.USER, content=content)

    @classmethod
    def assistant(cls, content: str) -> "Message":
        return cls(role=Role.ASSISTANT, content=content)

    @classmethod
    def tool_result(cls, tool_name: str, result: str) -> "Message":
        return cls(role=Role.TOOL_RESULT, content=f"Tool '{tool_name}' result:\n{result}")

    def to_wire(self) -> Dict[str, str]:
        return {"role": self.role.value, "content": self.content}


class ToolCallDirective(BaseModel):
    """A parsed request from the model to invoke a tool"""
    tool_name: str = Field(description="Name of the tool to invoke")
    arguments_json: str = Field(description="Raw JSON object literal with the arguments")


class ConversationResult(BaseModel):
    """Outcome of one top-level query"""
    answer: str
    messages: List[Message] = Field(default_factory=list)
    turns: int = Field(default=0, description="Number of model calls made")
    tool_calls: int = 0
    metadata: Dict[str, Any] = Field(default_factory=dict)
