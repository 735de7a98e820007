"""
Conversation message models.

Messages are what the Persistence Coordinator stores; content parts are the
provider-neutral shape produced by the Attachment Normalizer.
"""

from datetime import datetime
from enum import Enum
from typing import Optional, List, Dict, Any, Literal
from uuid import uuid4
from pydantic import BaseModel, ConfigDict, Field


class Role(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


class AttachmentData(BaseModel):
    """A reference to an uploaded file. Immutable once created."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: str(uuid4()))
    file_name: str = Field(..., description="Stored file name or payload reference")
    file_type: str = Field(..., description="Declared MIME kind, e.g. image/png")
    display_name: Optional[str] = None
    url: Optional[str] = Field(default=None, description="http(s) URL or data: URI, if not a local upload")
    file_size: Optional[int] = None
    width: Optional[int] = None
    height: Optional[int] = None

    @property
    def label(self) -> str:
        return self.display_name or self.file_name

    @property
    def payload_ref(self) -> str:
        return self.url or self.file_name


class ContentPart(BaseModel):
    """Provider-neutral content part."""

    type: Literal["text", "image_ref"]
    text: Optional[str] = None
    attachment: Optional[AttachmentData] = None

    @classmethod
    def from_text(cls, text: str) -> "ContentPart":
        return cls(type="text", text=text)

    @classmethod
    def image(cls, attachment: AttachmentData) -> "ContentPart":
        return cls(type="image_ref", attachment=attachment)

    @property
    def is_text(self) -> bool:
        return self.type == "text"


class Message(BaseModel):
    """A persisted conversation message."""

    id: str = Field(default_factory=lambda: str(uuid4()))
    conversation_id: str
    role: Role
    content: str = ""
    attachments: List[AttachmentData] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=datetime.utcnow)
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @property
    def cancelled(self) -> bool:
        return bool(self.metadata.get("cancelled"))


class Conversation(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid4()))
    user_id: str
    title: str = "New Conversation"
    created_at: datetime = Field(default_factory=datetime.utcnow)


def conversation_title(content: str, attachments: Optional[List[AttachmentData]] = None) -> str:
    """Derive a conversation title from the first turn."""
    content = (content or "").strip()
    if content:
        return content[:50] + ("..." if len(content) > 50 else "")
    if attachments:
        return ", ".join(a.label for a in attachments)[:50]
    return "New Conversation"
