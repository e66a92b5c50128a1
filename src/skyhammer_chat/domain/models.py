"""Domain models for the chat application."""

from datetime import datetime, timezone
from enum import Enum
from typing import List, Literal, Optional, Union
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid4())


class Role(str, Enum):
    """Author of a conversation turn."""

    USER = "user"
    MODEL = "model"


def normalize_role(value: object) -> Role:
    """Map a stored role label onto a Role.

    The model's own output role (and the legacy ``assistant`` label) become
    ``Role.MODEL``; anything else is treated as user-originated.
    """
    if isinstance(value, Role):
        return value
    if isinstance(value, str) and value.strip().lower() in ("model", "assistant"):
        return Role.MODEL
    return Role.USER


class FileReference(BaseModel):
    """Metadata of a file attached to a user message."""

    original_name: str
    stored_name: str
    mime_type: str
    path: str


class Message(BaseModel):
    """Message model. Immutable once appended to a conversation."""

    model_config = ConfigDict(frozen=True)

    role: Role
    content: str
    file: Optional[FileReference] = None

    @field_validator("role", mode="before")
    @classmethod
    def _normalize_role(cls, value: object) -> Role:
        return normalize_role(value)


class Conversation(BaseModel):
    """Conversation model."""

    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(default_factory=new_id)
    name: Optional[str] = None
    created: datetime = Field(default_factory=utcnow)
    last_updated: datetime = Field(default_factory=utcnow, alias="lastUpdated")
    messages: List[Message] = Field(default_factory=list)

    def summary(self) -> "ConversationSummary":
        return ConversationSummary(
            id=self.id,
            name=self.name,
            created=self.created,
            last_updated=self.last_updated,
        )


class ConversationSummary(BaseModel):
    """Listing entry for a conversation (no messages)."""

    model_config = ConfigDict(populate_by_name=True)

    id: str
    name: Optional[str] = None
    created: datetime
    last_updated: datetime = Field(alias="lastUpdated")


class Upload(BaseModel):
    """A temporary uploaded file handed over by the file-intake layer."""

    path: str
    original_name: str
    mime_type: str

    @property
    def stored_name(self) -> str:
        return self.path.replace("\\", "/").rsplit("/", 1)[-1]

    def reference(self) -> FileReference:
        return FileReference(
            original_name=self.original_name,
            stored_name=self.stored_name,
            mime_type=self.mime_type,
            path=self.path,
        )


# Content parts passed to the model. Constructed per request, never persisted.

class TextPart(BaseModel):
    kind: Literal["text"] = "text"
    text: str


class BlobPart(BaseModel):
    """Inline binary data, optionally with text extracted from it."""

    kind: Literal["blob"] = "blob"
    data: bytes
    mime_type: str
    extracted_text: str = ""


class RemoteFilePart(BaseModel):
    """A file uploaded out of band to the model provider, referenced by handle."""

    kind: Literal["remote_file"] = "remote_file"
    handle: str
    uri: str
    mime_type: str
    extracted_text: str = ""


ContentPart = Union[TextPart, BlobPart, RemoteFilePart]


class Turn(BaseModel):
    """One role-tagged entry of the model call payload."""

    role: Role
    parts: List[ContentPart]


class StreamChunk(BaseModel):
    """Incremental model output. The last chunk of every stream has ``done=True``."""

    text: str = ""
    done: bool = False


class StreamEvent(BaseModel):
    """A chunk as fanned out to live listeners of an exchange."""

    exchange_id: str
    chunk: str = ""
    done: bool = False
    error: bool = False


class JobState(str, Enum):
    QUEUED = "queued"
    PROCESSING = "processing"
    DONE = "done"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in (JobState.DONE, JobState.FAILED)


class AttachmentJob(BaseModel):
    """A transcription job as recorded in the job journal."""

    id: str = Field(default_factory=new_id)
    source_path: str
    mime_type: str
    state: JobState = JobState.QUEUED
    result: Optional[str] = None
    error: Optional[str] = None
    attempts: int = 0
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class ExchangeState(str, Enum):
    RECEIVED = "received"
    CONTEXT_BUILDING = "context_building"
    ATTACHMENT_PROCESSING = "attachment_processing"
    GENERATING = "generating"
    PERSISTING = "persisting"
    COMPLETE = "complete"
    FAILED = "failed"


class ExchangeResult(BaseModel):
    """What a completed exchange returns to the request initiator."""

    exchange_id: str
    conversation_id: str
    conversation_name: Optional[str]
    response: str
    conversations: List[ConversationSummary]
