"""
Post-turn memory extraction.

Runs after a turn completes, outside the request: finds explicit "remember
..." instructions and asks a model whether the message holds anything else
worth keeping. Candidates are quality-checked, embedded, deduplicated and
stored through the retrieval engine.
"""

import json
import logging
import re
from typing import List, Optional, Tuple

from pydantic import BaseModel, Field, ValidationError as PydanticValidationError

from coach.core.errors import CoachError
from coach.core.retrieval import MemoryRetrievalEngine
from coach.llm.prompts import MEMORY_DETECTION, MEMORY_DETECTION_SYSTEM
from coach.llm.providers.base import ProviderAdapter
from coach.models.context import ContextMessage, ConversationContext
from coach.models.memory import (
    DedupResult,
    MemoryCandidate,
    MemoryCategory,
    MemoryDetectionOutput,
    MemoryEntry,
)
from coach.models.message import Message
from server.config import config
from server.logging_config import get_logger

EXPLICIT_TRIGGERS = [
    re.compile(r"\bmake\s+sure\s+(?:you\s+)?remember\s+(?:that\s+)?(.+)", re.IGNORECASE),
    re.compile(r"\bremember\s+(?:that\s+)?(.+)", re.IGNORECASE),
    re.compile(r"\bsave\s+(?:this\s+)?to\s+memory\s*:?\s*(.+)", re.IGNORECASE),
    re.compile(r"\bdon'?t\s+forget\s+(?:that\s+)?(.+)", re.IGNORECASE),
    re.compile(r"\bkeep\s+in\s+mind\s+(?:that\s+)?(.+)", re.IGNORECASE),
    re.compile(r"\bnote\s+that\s+(.+)", re.IGNORECASE),
]

EXPLICIT_CONFIDENCE = 0.95
EXPLICIT_IMPORTANCE = 0.9
PLACEHOLDERS = ("undefined", "null", "N/A")

_FENCE = re.compile(r"```(?:json)?\s*")
_JSON_OBJECT = re.compile(r"\{[\s\S]*\}")


class ExplicitTrigger(BaseModel):
    content: str
    confidence: float = EXPLICIT_CONFIDENCE


class ExtractionResult(BaseModel):
    stored: List[MemoryEntry] = Field(default_factory=list)
    verdicts: List[DedupResult] = Field(default_factory=list)
    rejected: List[str] = Field(default_factory=list)


def detect_explicit_trigger(message: str) -> Optional[ExplicitTrigger]:
    """Return the instruction text of an explicit memory request, if any."""
    for pattern in EXPLICIT_TRIGGERS:
        match = pattern.search(message or "")
        if match:
            content = match.group(1).strip().rstrip(".!")
            if content:
                return ExplicitTrigger(content=content)
    return None


def is_valid_memory_content(content: str) -> bool:
    """Reject placeholders, fragments and degenerate repetitive text."""
    if not content or len(content.strip()) < 5:
        return False
    if any(p in content for p in PLACEHOLDERS):
        return False
    words = content.lower().split()
    if len(words) > 3 and len(set(words)) / len(words) < 0.5:
        return False
    return True


def parse_detection(raw: str) -> MemoryDetectionOutput:
    """Parse a classifier reply, tolerating markdown fences and surrounding prose."""
    content = _FENCE.sub("", raw or "").strip()
    match = _JSON_OBJECT.search(content)
    if match:
        content = match.group(0)
    data = json.loads(content)
    if data.get("category") not in {c.value for c in MemoryCategory}:
        data["category"] = MemoryCategory.CONTEXT.value
    return MemoryDetectionOutput.model_validate(data)


class MemoryExtractor:
    """Turns a finished user turn into stored memories."""

    def __init__(
        self,
        engine: MemoryRetrievalEngine,
        adapter: Optional[ProviderAdapter] = None,
        model: Optional[str] = None,
        enabled: Optional[bool] = None,
        min_importance: Optional[float] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.engine = engine
        self.adapter = adapter
        self.model = model
        self.enabled = config.MEMORY.EXTRACTION_ENABLED if enabled is None else enabled
        self.min_importance = config.MEMORY.MIN_AUTO_IMPORTANCE if min_importance is None else min_importance
        self.logger = logger or get_logger(__name__)

    async def classify(self, message: str, history: Optional[List[Message]] = None) -> MemoryDetectionOutput:
        """Ask the detection model whether a message is memory-worthy."""
        if self.adapter is None:
            return MemoryDetectionOutput()

        recent = "\n".join(f"{m.role.value}: {m.content}" for m in (history or [])[-3:])
        context = ConversationContext(
            provider=self.adapter.get_provider_name(),
            messages=[
                ContextMessage(role="system", content=MEMORY_DETECTION_SYSTEM),
                ContextMessage(role="user", content=MEMORY_DETECTION.format(message=message, history=recent or "(none)")),
            ],
        )
        try:
            raw = await self.adapter.complete(self.adapter.translate(context, self.model))
            return parse_detection(raw)
        except CoachError as e:
            self.logger.warning(f"Memory detection call failed: {e}")
        except (json.JSONDecodeError, PydanticValidationError) as e:
            self.logger.warning(f"Memory detection returned unparseable output: {e}")
        return MemoryDetectionOutput()

    async def _store(
        self,
        candidate: MemoryCandidate,
        user_id: str,
        conversation_id: Optional[str],
        result: ExtractionResult,
    ) -> None:
        if not is_valid_memory_content(candidate.content):
            self.logger.info(f"Rejected memory candidate: {candidate.content!r}")
            result.rejected.append(candidate.content)
            return
        verdict, entry = await self.engine.remember(candidate, user_id, conversation_id)
        result.verdicts.append(verdict)
        if entry is not None:
            result.stored.append(entry)

    async def process(
        self,
        user_id: str,
        message: str,
        conversation_id: Optional[str] = None,
        history: Optional[List[Message]] = None,
    ) -> ExtractionResult:
        """
        Extract and store memories from one user message.

        Returns what was stored, the dedup verdicts, and any rejected
        candidates. Embedding failures propagate to the caller.
        """
        result = ExtractionResult()
        if not self.enabled or not (message or "").strip():
            return result

        trigger = detect_explicit_trigger(message)
        if trigger is not None:
            self.logger.info(f"Explicit memory trigger for user {user_id}")
            await self._store(
                MemoryCandidate(
                    content=trigger.content,
                    category=MemoryCategory.INSTRUCTION,
                    importance=EXPLICIT_IMPORTANCE,
                ),
                user_id,
                conversation_id,
                result,
            )

        detection = await self.classify(message, history)
        if detection.should_remember and detection.importance >= self.min_importance:
            await self._store(
                MemoryCandidate(
                    content=detection.extracted_info,
                    category=detection.category,
                    importance=min(max(detection.importance, 0.0), 1.0),
                    keywords=detection.keywords,
                ),
                user_id,
                conversation_id,
                result,
            )

        return result
