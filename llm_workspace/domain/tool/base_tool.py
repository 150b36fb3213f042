from abc import ABC, abstractmethod
from enum import Enum
from pathlib import Path
from typing import Any, Dict, FrozenSet, Optional

from pydantic import BaseModel, ConfigDict, Field


class Permission(str, Enum):
    """Capability flags a tool may require"""
    READ = "read"
    WRITE = "write"
    EXECUTE = "execute"


class ParameterSpec(BaseModel):
    """One named tool parameter"""
    type: str = Field(description="JSON type: string, integer, number, boolean, array or object")
    description: str = ""
    required: bool = True


class ToolSpec(BaseModel):
    """Declarative description of a tool"""
    model_config = ConfigDict(frozen=True)

    name: str
    description: str
    parameters: Dict[str, ParameterSpec] = Field(default_factory=dict)
    required_permission: FrozenSet[Permission] = Field(default_factory=frozenset)

    @property
    def required_parameters(self) -> list:
        return [name for name, param in self.parameters.items() if param.required]

    def json_schema(self) -> Dict[str, Any]:
        """Parameter schema in JSON Schema form"""
        return {
            "type": "object",
            "properties": {
                name: {"type": param.type, "description": param.description}
                for name, param in self.parameters.items()
            },
            "required": self.required_parameters,
        }


class ToolContext(BaseModel):
    """Per-request execution context"""
    working_directory: Optional[str] = None

    def resolve(self, path: str) -> Path:
        """Resolve ``path`` against the working directory"""
        resolved = Path(path).expanduser()
        if not resolved.is_absolute() and self.working_directory:
            resolved = Path(self.working_directory).expanduser() / resolved
        return resolved


class BaseTool(ABC):
    """Base class for tools the model can invoke"""

    spec: ToolSpec

    @property
    def name(self) -> str:
        return self.spec.name

    @abstractmethod
    async def execute(self, arguments: Dict[str, Any], context: ToolContext) -> str:
        """Run the action and return its textual result"""
        pass
