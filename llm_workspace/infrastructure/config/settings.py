"""
Configuration management.

Settings are pydantic models with defaults for every key. An optional YAML
file provides overrides, and a handful of ``LLM_WORKSPACE_*`` environment
variables take precedence over both.
"""

import os
from pathlib import Path
from typing import List, Optional, Union

import yaml
from pydantic import BaseModel, Field, ValidationError, model_validator

from llm_workspace.domain.errors import ConfigError


DEFAULT_SOCKET_PATH = "/tmp/llm-workspace.sock"

DEFAULT_SYSTEM_PROMPT = (
    "You are a helpful local assistant for software development. "
    "Answer concisely and ground your answers in the provided context when it is relevant."
)

DEFAULT_EXTENSIONS = ["rs", "go", "py", "js", "ts", "tsx", "jsx", "md", "txt"]

DEFAULT_EXCLUDE_DIRS = [
    ".git", ".svn", ".hg",
    "target", "dist", "build", "out", ".next",
    "node_modules", "vendor", ".pnpm-store",
    "__pycache__", ".venv", "venv", ".pytest_cache",
    ".vscode", ".idea",
    ".cache", "tmp", "temp",
]


class LLMConfig(BaseModel):
    """Language model backend settings"""
    model: str = Field(default="llama3.2", description="Chat model name")
    base_url: str = Field(default="http://localhost:11434", description="Ollama base URL")
    temperature: float = Field(default=0.7, ge=0.0, le=2.0)
    request_timeout: float = Field(default=300.0, gt=0, description="HTTP timeout in seconds")


class RAGConfig(BaseModel):
    """Retrieval settings"""
    embedding_model: str = Field(default="nomic-embed-text")
    chunk_size: int = Field(default=512, gt=0, description="Chunk length in UTF-8 bytes")
    chunk_overlap: int = Field(default=50, ge=0)
    top_k: int = Field(default=5, gt=0)
    extensions: List[str] = Field(default_factory=lambda: list(DEFAULT_EXTENSIONS))
    exclude_dirs: List[str] = Field(default_factory=lambda: list(DEFAULT_EXCLUDE_DIRS))
    persist_path: Optional[str] = Field(default=None, description="JSON file the store is saved to")

    @model_validator(mode="after")
    def check_overlap(self) -> "RAGConfig":
        if self.chunk_overlap >= self.chunk_size:
            raise ValueError(
                f"chunk_overlap ({self.chunk_overlap}) must be smaller than chunk_size ({self.chunk_size})"
            )
        return self


class PermissionConfig(BaseModel):
    """Capability flags gating which tools are exposed"""
    read: bool = True
    write: bool = False
    execute: bool = False


class ServerConfig(BaseModel):
    """IPC server settings"""
    socket_path: str = DEFAULT_SOCKET_PATH
    request_timeout: Optional[float] = Field(default=None, gt=0, description="Per-request deadline in seconds")
    shutdown_grace: float = Field(default=5.0, ge=0)
    max_tool_iterations: int = Field(default=10, gt=0)
    max_read_bytes: int = Field(default=200_000, gt=0)
    exec_timeout: float = Field(default=30.0, gt=0)


class Settings(BaseModel):
    """Complete application settings"""
    llm: LLMConfig = Field(default_factory=LLMConfig)
    rag: RAGConfig = Field(default_factory=RAGConfig)
    permission: PermissionConfig = Field(default_factory=PermissionConfig)
    server: ServerConfig = Field(default_factory=ServerConfig)
    system_prompt: str = DEFAULT_SYSTEM_PROMPT
    log_level: str = "INFO"
    log_format: str = "console"


ENV_OVERRIDES = {
    "LLM_WORKSPACE_MODEL": ("llm", "model"),
    "LLM_WORKSPACE_BASE_URL": ("llm", "base_url"),
    "LLM_WORKSPACE_EMBEDDING_MODEL": ("rag", "embedding_model"),
    "LLM_WORKSPACE_SOCKET": ("server", "socket_path"),
    "LLM_WORKSPACE_STORE": ("rag", "persist_path"),
    "LLM_WORKSPACE_LOG_LEVEL": (None, "log_level"),
}


def load_settings(path: Optional[Union[str, Path]] = None) -> Settings:
    """Load settings from an optional YAML file plus environment overrides.

    A missing file is not an error; defaults are used instead.

    Raises:
        ConfigError: If the file cannot be parsed or a value is invalid
    """
    raw = {}
    if path is not None and Path(path).is_file():
        try:
            with open(path, "r", encoding="utf-8") as f:
                raw = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigError(f"failed to parse config {path}: {e}") from e
        if not isinstance(raw, dict):
            raise ConfigError(f"config {path} must contain a mapping at top level")

    for env_name, (section, key) in ENV_OVERRIDES.items():
        value = os.getenv(env_name)
        if not value:
            continue
        if section is None:
            raw[key] = value
        else:
            raw.setdefault(section, {})[key] = value

    try:
        return Settings.model_validate(raw)
    except ValidationError as e:
        raise ConfigError(f"invalid configuration: {e}") from e
