"""Data models shared by the backend routes and the client session."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class WireModel(BaseModel):
    """Snake-case attributes, camelCase on the wire."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True, mode="json")


class MessageType(str, Enum):
    USER = "user"
    AI = "ai"
    SYSTEM = "system"
    FILE_UPDATE = "file-update"
    COMMAND = "command"
    ERROR = "error"
    THOUGHT = "thought"


class CommandType(str, Enum):
    INPUT = "input"
    OUTPUT = "output"
    ERROR = "error"
    SUCCESS = "success"


class MessageMetadata(WireModel):
    website_description: str | None = None
    generated_code: str | None = None
    applied_files: list[str] | None = None
    edited_files: list[str] | None = None
    read_files: list[str] | None = None
    command_type: CommandType | None = None
    duration: float | None = None


class ChatMessage(WireModel):
    """One chat entry. Never mutated after creation."""

    model_config = ConfigDict(frozen=True)

    content: str
    type: MessageType
    timestamp: datetime = Field(default_factory=datetime.now)
    metadata: MessageMetadata | None = None


class GeneratedFile(WireModel):
    path: str
    content: str
    type: str
    completed: bool = False
    edited: bool = False


class SandboxData(WireModel):
    sandbox_id: str
    url: str


class Project(WireModel):
    id: str
    name: str
    description: str = ""
    url: str = ""
    created_at: datetime = Field(default_factory=datetime.now)
    updated_at: datetime = Field(default_factory=datetime.now)
    sandbox_id: str | None = None
    generated_code: str | None = None
    file_structure: str | None = None
    chat_history: list[ChatMessage] | None = None


class OpenRouterModel(WireModel):
    id: str
    name: str
    description: str = ""
    context_length: int
    pricing: dict[str, float] = Field(default_factory=lambda: {"prompt": 0, "completion": 0})
    is_free: bool = True


# Provider name -> secret
ApiKeys = dict[str, str]
