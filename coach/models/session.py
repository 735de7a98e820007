"""
Streaming session state, turn requests and transport events.
"""

import asyncio
import json
from datetime import datetime
from enum import Enum
from typing import Optional, List, Dict, FrozenSet, Literal, Union
from uuid import uuid4
from pydantic import BaseModel, Field, PrivateAttr

from coach.core.errors import InvalidTransition
from coach.models.message import AttachmentData


class SessionState(str, Enum):
    IDLE = "idle"
    THINKING = "thinking"
    STREAMING = "streaming"
    PERSISTING = "persisting"
    COMPLETE = "complete"
    CANCELLED = "cancelled"
    ERROR = "error"


TERMINAL_STATES: FrozenSet[SessionState] = frozenset(
    {SessionState.COMPLETE, SessionState.CANCELLED, SessionState.ERROR}
)

_TRANSITIONS: Dict[SessionState, FrozenSet[SessionState]] = {
    SessionState.IDLE: frozenset({SessionState.THINKING, SessionState.ERROR}),
    SessionState.THINKING: frozenset(
        {SessionState.STREAMING, SessionState.CANCELLED, SessionState.ERROR}
    ),
    SessionState.STREAMING: frozenset(
        {SessionState.PERSISTING, SessionState.CANCELLED, SessionState.ERROR}
    ),
    SessionState.PERSISTING: frozenset({SessionState.COMPLETE, SessionState.ERROR}),
}


class TurnRequest(BaseModel):
    """One user turn as received from the client."""

    user_id: str
    content: str = ""
    conversation_id: Optional[str] = None
    attachments: List[AttachmentData] = Field(default_factory=list)
    provider: Optional[str] = None
    model: Optional[str] = None
    automatic_model_selection: bool = False


class StreamingSession(BaseModel):
    """The bounded lifecycle of one incrementally-delivered response."""

    id: str = Field(default_factory=lambda: str(uuid4()))
    user_id: str
    state: SessionState = SessionState.IDLE
    buffer: str = ""
    chunks_delivered: int = 0
    started_at: datetime = Field(default_factory=datetime.utcnow)
    provider: Optional[str] = None
    model: Optional[str] = None

    _conversation_id: Optional[str] = PrivateAttr(default=None)
    _cancel_event: asyncio.Event = PrivateAttr(default_factory=asyncio.Event)

    @property
    def conversation_id(self) -> Optional[str]:
        return self._conversation_id

    def bind_conversation(self, conversation_id: str) -> None:
        """Bind the session to a conversation. The binding never changes."""
        if self._conversation_id is not None and self._conversation_id != conversation_id:
            raise InvalidTransition(
                f"Session {self.id} is bound to {self._conversation_id}, "
                f"cannot rebind to {conversation_id}"
            )
        self._conversation_id = conversation_id

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    @property
    def cancel_requested(self) -> bool:
        return self._cancel_event.is_set()

    @property
    def cancel_event(self) -> asyncio.Event:
        return self._cancel_event

    def request_cancel(self) -> None:
        self._cancel_event.set()

    def transition(self, target: SessionState) -> None:
        allowed = _TRANSITIONS.get(self.state, frozenset())
        if target not in allowed:
            raise InvalidTransition(f"{self.state.value} -> {target.value} is not allowed")
        self.state = target

    def append(self, chunk: str) -> None:
        self.buffer += chunk
        self.chunks_delivered += 1


# ============================================================================
# Transport events
# ============================================================================


class ChunkEvent(BaseModel):
    type: Literal["chunk"] = "chunk"
    content: str


class DoneEvent(BaseModel):
    type: Literal["done"] = "done"
    message_id: Optional[str] = None
    conversation_id: Optional[str] = None
    cancelled: bool = False


class ErrorKind(str, Enum):
    VALIDATION = "validation"
    PROVIDER = "provider"
    PERSISTENCE = "persistence"
    INTERNAL = "internal"


class ErrorEvent(BaseModel):
    type: Literal["error"] = "error"
    kind: ErrorKind
    message: str
    conversation_id: Optional[str] = None


StreamEvent = Union[ChunkEvent, DoneEvent, ErrorEvent]


def format_sse(event: StreamEvent) -> str:
    """Encode one event as a Server-Sent Events frame."""
    payload = json.dumps(event.model_dump(mode="json"))
    return f"event: {event.type}\ndata: {payload}\n\n"
