from fastapi import APIRouter, HTTPException, Path, Query, Body
from pydantic import BaseModel, Field
from typing import List, Optional

from coach.core.errors import EmbeddingError, ValidationError
from coach.models.memory import MemoryCandidate, MemoryCategory, MemoryEntry
from server.dependencies import MemoryEngineDep
from server.logging_config import get_logger
from server.routers.chat_api import is_valid_user_id

logger = get_logger(__name__)

router = APIRouter()


class MemoryCreate(BaseModel):
    """Request body for storing an explicit memory."""

    content: str = Field(..., description="The fact to remember.")
    category: MemoryCategory = Field(default=MemoryCategory.CONTEXT)
    importance: float = Field(default=0.7, ge=0.0, le=1.0)
    keywords: List[str] = Field(default_factory=list)
    conversation_id: Optional[str] = None


class MemorySearch(BaseModel):
    query: str = Field(..., description="Text to match memories against.")
    limit: Optional[int] = Field(default=None, ge=1, le=50)


def _public(entry: MemoryEntry) -> dict:
    return entry.model_dump(mode="json", exclude={"embedding"})


def _check_user(user_id: str) -> None:
    if not is_valid_user_id(user_id):
        raise HTTPException(status_code=422, detail="Invalid user ID format.")


@router.get("/users/{user_id}/memories")
async def list_memories(
    engine: MemoryEngineDep,
    user_id: str = Path(..., description="The unique identifier for the user"),
    category: Optional[MemoryCategory] = Query(default=None),
):
    _check_user(user_id)
    try:
        memories = await engine.list_memories(user_id, category)
        return {"user_id": user_id, "memories": [_public(m) for m in memories]}
    except Exception as e:
        logger.error(f"Failed to list memories for {user_id}: {str(e)}")
        raise HTTPException(status_code=500, detail="Internal server error occurred while listing memories")


@router.post("/users/{user_id}/memories", status_code=201)
async def create_memory(
    engine: MemoryEngineDep,
    user_id: str = Path(..., description="The unique identifier for the user"),
    body: MemoryCreate = Body(...),
):
    _check_user(user_id)
    try:
        candidate = MemoryCandidate(
            content=body.content.strip(),
            category=body.category,
            importance=body.importance,
            keywords=body.keywords,
        )
        result, entry = await engine.remember(candidate, user_id, body.conversation_id)
        return {
            "verdict": result.verdict.value,
            "confidence": result.confidence,
            "matched_id": result.matched_id,
            "memory": _public(entry) if entry else None,
        }
    except ValidationError as e:
        raise HTTPException(status_code=422, detail=str(e))
    except EmbeddingError as e:
        logger.warning(f"Embedding unavailable while storing memory for {user_id}: {e}")
        raise HTTPException(status_code=503, detail="Embedding service unavailable")
    except Exception as e:
        logger.error(f"Failed to store memory for {user_id}: {str(e)}")
        raise HTTPException(status_code=500, detail="Internal server error occurred while storing memory")


@router.post("/users/{user_id}/memories/search")
async def search_memories(
    engine: MemoryEngineDep,
    user_id: str = Path(..., description="The unique identifier for the user"),
    body: MemorySearch = Body(...),
):
    _check_user(user_id)
    try:
        ranked = await engine.retrieve(user_id, body.query, limit=body.limit)
        return {
            "user_id": user_id,
            "results": [
                {"memory": _public(r.entry), "similarity": r.similarity, "score": r.score}
                for r in ranked
            ],
        }
    except Exception as e:
        logger.error(f"Memory search failed for {user_id}: {str(e)}")
        raise HTTPException(status_code=500, detail="Internal server error occurred while searching memories")


@router.post("/users/{user_id}/memories/{memory_id}/approve")
async def approve_memory(
    engine: MemoryEngineDep,
    user_id: str = Path(..., description="The unique identifier for the user"),
    memory_id: str = Path(..., description="Memory awaiting review"),
):
    _check_user(user_id)
    entry = await engine.approve_memory(user_id, memory_id)
    if entry is None:
        raise HTTPException(status_code=404, detail=f"Memory {memory_id} not found")
    return _public(entry)


@router.delete("/users/{user_id}/memories/{memory_id}")
async def delete_memory(
    engine: MemoryEngineDep,
    user_id: str = Path(..., description="The unique identifier for the user"),
    memory_id: str = Path(..., description="Memory to delete"),
):
    _check_user(user_id)
    if not await engine.delete_memory(user_id, memory_id):
        raise HTTPException(status_code=404, detail=f"Memory {memory_id} not found")
    return {"message": f"Memory {memory_id} deleted successfully"}
