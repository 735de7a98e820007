"""Context assembly: system prompt + filtered history + current turn, shaped for one provider."""

import asyncio
import logging
from typing import List, Optional

from coach.core.errors import ValidationError
from coach.core.interfaces import PersistenceCoordinator
from coach.core.retrieval import build_memory_prompt
from coach.llm.providers.base import ProviderAdapter
from coach.models.context import ContextMessage, ConversationContext
from coach.models.memory import RankedMemory
from coach.models.message import AttachmentData, Message, Role
from server.config import config
from server.logging_config import get_logger

HISTORY_ROLES = (Role.USER, Role.ASSISTANT)


class ContextAssembler:
    """
    Builds the ordered message list for one turn.

    Every message carrying attachments is formatted by the target adapter,
    so the same history is re-rendered for whichever provider serves the
    turn.
    """

    def __init__(
        self,
        store: PersistenceCoordinator,
        system_prompt: Optional[str] = None,
        history_window: Optional[int] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.store = store
        self.system_prompt = system_prompt or config.CHAT.SYSTEM_PROMPT
        self.history_window = config.CHAT.HISTORY_WINDOW if history_window is None else history_window
        self.logger = logger or get_logger(__name__)

    def filter_history(
        self,
        messages: List[Message],
        conversation_id: str,
        exclude_ids: Optional[List[str]] = None,
    ) -> List[Message]:
        """Messages of this conversation only, user/assistant roles, oldest first, windowed."""
        exclude = set(exclude_ids or [])
        history = [
            m for m in messages
            if m.conversation_id == conversation_id
            and m.role in HISTORY_ROLES
            and m.id not in exclude
        ]
        history.sort(key=lambda m: m.created_at)
        if self.history_window <= 0:
            return []
        return history[-self.history_window:]

    def assemble(
        self,
        adapter: ProviderAdapter,
        conversation_id: str,
        history: List[Message],
        text: str,
        attachments: Optional[List[AttachmentData]] = None,
        exclude_ids: Optional[List[str]] = None,
    ) -> ConversationContext:
        """
        Build the context for the current turn.

        Raises:
            ValidationError: if the current turn has no text and no usable
                attachment
        """
        context = ConversationContext(provider=adapter.get_provider_name())
        context.messages.append(ContextMessage(role=Role.SYSTEM.value, content=self.system_prompt))

        context.history = self.filter_history(history, conversation_id, exclude_ids)
        for message in context.history:
            if message.attachments:
                formatted = adapter.format_attachments(
                    message.content, message.attachments, is_historical=True
                )
                if not formatted.parts:
                    continue
                context.messages.append(ContextMessage(role=message.role.value, content=formatted.parts))
                context.non_text_parts += formatted.non_text_parts
            elif message.content.strip():
                context.messages.append(ContextMessage(role=message.role.value, content=message.content))

        if attachments:
            formatted = adapter.format_attachments(text, attachments, is_historical=False)
            context.dropped_attachments.extend(formatted.dropped)
            if not formatted.parts:
                raise ValidationError("Message has no text and none of its attachments are usable")
            context.messages.append(ContextMessage(role=Role.USER.value, content=formatted.parts))
            context.non_text_parts += formatted.non_text_parts
        elif (text or "").strip():
            context.messages.append(ContextMessage(role=Role.USER.value, content=text))
        else:
            raise ValidationError("Message content is empty")

        self.logger.info(
            f"Assembled context for {conversation_id}: {len(context.messages)} messages, "
            f"{context.non_text_parts} non-text parts ({context.provider})"
        )
        return context

    async def build(
        self,
        adapter: ProviderAdapter,
        conversation_id: str,
        text: str,
        attachments: Optional[List[AttachmentData]] = None,
        exclude_ids: Optional[List[str]] = None,
    ) -> ConversationContext:
        """
        Fetch history from the store and assemble.

        Turns that carry attachments are assembled in a worker thread, since
        formatting may read image files from disk.
        """
        limit = self.history_window + len(exclude_ids or [])
        history = await self.store.read_conversation(conversation_id, limit=limit)
        if attachments or any(m.attachments for m in history):
            return await asyncio.to_thread(
                self.assemble, adapter, conversation_id, history, text, attachments, exclude_ids
            )
        return self.assemble(adapter, conversation_id, history, text, attachments, exclude_ids)

    def inject_memories(self, context: ConversationContext, memories: List[RankedMemory]) -> ConversationContext:
        """Fold retrieved memories into the system message."""
        context.memories = list(memories)
        system = context.system
        if system is not None and memories:
            system.content = build_memory_prompt(memories, system.content)
        return context
