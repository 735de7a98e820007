"""
Memory models.

A MemoryEntry is a durable, embeddable fact about the user. Entries are
ranked for each turn by the retrieval engine and deduplicated on write.
"""

from datetime import datetime
from enum import Enum
from typing import Optional, List
from uuid import uuid4
from pydantic import BaseModel, Field


class MemoryCategory(str, Enum):
    PREFERENCE = "preference"
    PERSONAL_INFO = "personal_info"
    CONTEXT = "context"
    INSTRUCTION = "instruction"
    GOAL = "goal"


class MemoryEntry(BaseModel):
    """A stored memory belonging to one user."""

    id: str = Field(default_factory=lambda: str(uuid4()))
    user_id: str = Field(...)
    content: str = Field(..., description="The memory content in natural language")
    category: MemoryCategory = MemoryCategory.CONTEXT
    embedding: Optional[List[float]] = Field(default=None)
    importance: float = Field(default=0.5, ge=0.0, le=1.0)
    keywords: List[str] = Field(default_factory=list)

    # Retention
    access_count: int = Field(default=0)
    last_accessed: Optional[datetime] = Field(default=None)
    created_at: datetime = Field(default_factory=datetime.utcnow)

    # Provenance
    source_conversation_id: Optional[str] = None

    # Lifecycle
    is_active: bool = True
    needs_review: bool = False


class MemoryAccessLog(BaseModel):
    memory_id: str
    conversation_id: Optional[str] = None
    timestamp: datetime = Field(default_factory=datetime.utcnow)
    relevance_score: float = 0.0


class RankedMemory(BaseModel):
    """A retrieval hit with its scores."""

    entry: MemoryEntry
    similarity: float
    score: float


class DedupVerdict(str, Enum):
    SKIP = "skip"
    REVIEW = "review"
    INSERT = "insert"


class DedupResult(BaseModel):
    verdict: DedupVerdict
    confidence: float = Field(..., description="Best cosine similarity found")
    matched_id: Optional[str] = None
    reasoning: str = ""


class MemoryCandidate(BaseModel):
    """A memory proposed for storage, before deduplication."""

    content: str
    category: MemoryCategory = MemoryCategory.CONTEXT
    importance: float = Field(default=0.5, ge=0.0, le=1.0)
    keywords: List[str] = Field(default_factory=list)
    embedding: Optional[List[float]] = None


# ============================================================================
# LLM Extraction Output Models
# ============================================================================


class MemoryDetectionOutput(BaseModel):
    """Classifier output for a single user turn."""

    should_remember: bool = Field(default=False, alias="shouldRemember")
    category: MemoryCategory = MemoryCategory.CONTEXT
    importance: float = 0.5
    extracted_info: str = Field(default="", alias="extractedInfo")
    keywords: List[str] = Field(default_factory=list)
    reasoning: str = ""

    model_config = {"populate_by_name": True}
