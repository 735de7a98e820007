from fastapi import APIRouter, HTTPException, Path, Body
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field
from typing import Optional
import re

from coach.core.errors import SessionBusyError, ValidationError
from coach.models.session import TurnRequest, format_sse
from server.dependencies import ControllerDep, StoreDep
from server.logging_config import get_logger

logger = get_logger(__name__)

router = APIRouter()

# Allows alphanumeric chars, hyphens, and underscores.
USER_ID_REGEX = re.compile(r"^[a-zA-Z0-9_-]+$")

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


def is_valid_user_id(user_id: str) -> bool:
    """Check if the user ID matches the allowed pattern."""
    return bool(USER_ID_REGEX.match(user_id or ""))


class TurnStreamingResponse(StreamingResponse):
    """SSE response that frees the conversation slot if its turn never started."""

    def __init__(self, controller, session, content, **kwargs):
        super().__init__(content, **kwargs)
        self.controller = controller
        self.session = session

    async def __call__(self, scope, receive, send):
        try:
            await super().__call__(scope, receive, send)
        finally:
            # Client left before the body was iterated, so run() never took over
            if self.controller.release_unstarted(self.session):
                logger.info(f"Client left before turn {self.session.id} started")


class ConversationCreate(BaseModel):
    title: Optional[str] = Field(default=None, description="Conversation title")


@router.get("/version")
def get_version():
    return {"version": "1.0.0"}


@router.post("/chat/stream")
async def stream_chat(controller: ControllerDep, request: TurnRequest = Body(...)):
    """Run one chat turn and stream it back as Server-Sent Events."""
    try:
        if not is_valid_user_id(request.user_id):
            raise ValidationError("Invalid user ID format.")
        session = await controller.open_session(request)
    except ValidationError as e:
        logger.warning(f"Rejected chat turn for {request.user_id}: {e}")
        raise HTTPException(status_code=422, detail=str(e))
    except SessionBusyError as e:
        logger.info(str(e))
        raise HTTPException(status_code=409, detail=str(e))
    except Exception as e:
        logger.error(f"Failed to open chat turn for {request.user_id}: {str(e)}")
        raise HTTPException(status_code=500, detail="Internal server error occurred while starting chat")

    async def event_stream():
        async for event in controller.run(session, request):
            yield format_sse(event)

    headers = dict(SSE_HEADERS)
    headers["X-Conversation-Id"] = session.conversation_id
    return TurnStreamingResponse(
        controller, session, event_stream(), media_type="text/event-stream", headers=headers
    )


@router.post("/conversations/{conversation_id}/cancel")
async def cancel_chat(
    controller: ControllerDep,
    conversation_id: str = Path(..., description="Conversation whose active turn to stop"),
):
    if not controller.cancel(conversation_id):
        raise HTTPException(status_code=404, detail=f"No active turn for conversation {conversation_id}")
    return {"conversation_id": conversation_id, "cancelled": True}


@router.post("/users/{user_id}/conversations", status_code=201)
async def create_conversation(
    store: StoreDep,
    user_id: str = Path(..., description="The unique identifier for the user"),
    body: Optional[ConversationCreate] = Body(default=None),
):
    try:
        if not is_valid_user_id(user_id):
            raise ValueError("Invalid user ID format.")
        title = body.title if body and body.title else "New Conversation"
        conversation_id = await store.create_conversation(user_id, title)
        logger.info(f"Conversation {conversation_id} created for user {user_id}")
        return {"conversation_id": conversation_id}
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))
    except Exception as e:
        logger.error(f"Failed to create conversation for {user_id}: {str(e)}")
        raise HTTPException(status_code=500, detail="Internal server error occurred while creating conversation")


@router.get("/conversations/{conversation_id}/messages")
async def get_messages(
    store: StoreDep,
    conversation_id: str = Path(..., description="Conversation to read"),
):
    try:
        if not await store.conversation_exists(conversation_id):
            raise HTTPException(status_code=404, detail=f"Conversation {conversation_id} not found")
        messages = await store.read_conversation(conversation_id)
        return {"conversation_id": conversation_id, "messages": [m.model_dump(mode="json") for m in messages]}
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Failed to read conversation {conversation_id}: {str(e)}")
        raise HTTPException(status_code=500, detail="Internal server error occurred while reading messages")
