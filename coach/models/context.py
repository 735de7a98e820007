"""
Per-turn assembled context.

A ConversationContext is rebuilt for every turn and never persisted. Message
content is already in the target provider's shape: a plain string, or a list
of provider-specific parts when attachments are involved.
"""

from typing import Any, List, Optional, Union
from pydantic import BaseModel, Field

from coach.models.memory import RankedMemory
from coach.models.message import Message


class ContextMessage(BaseModel):
    role: str  # "system", "user", "assistant"
    content: Union[str, List[Any]]


class ConversationContext(BaseModel):
    provider: str
    messages: List[ContextMessage] = Field(default_factory=list)
    memories: List[RankedMemory] = Field(default_factory=list)
    non_text_parts: int = 0
    dropped_attachments: List[str] = Field(default_factory=list)
    # Stored messages the turn was built from, before provider formatting
    history: List[Message] = Field(default_factory=list, exclude=True)

    @property
    def system(self) -> Optional[ContextMessage]:
        if self.messages and self.messages[0].role == "system":
            return self.messages[0]
        return None


class FormattedContent(BaseModel):
    """Provider-shaped content for one message."""

    parts: List[Any] = Field(default_factory=list)
    non_text_parts: int = 0
    dropped: List[str] = Field(default_factory=list)


class ProviderRequest(BaseModel):
    """A translated, ready-to-send request for one provider."""

    provider: str
    model: str
    payload: dict = Field(default_factory=dict)
