"""
Base interface for model backends.
Every provider adapter implements this interface so the context assembler
and session controller never branch on which backend is in use.
"""

import base64
import os
from abc import ABC, abstractmethod
from typing import AsyncIterator, List, Optional, Tuple

from coach.core.attachments import normalize
from coach.models.context import ConversationContext, FormattedContent, ProviderRequest
from coach.models.message import AttachmentData
from server.config import config
from server.logging_config import get_logger

logger = get_logger(__name__)


class ProviderAdapter(ABC):
    """Base interface for all provider adapters"""

    def __init__(self, **kwargs):
        self.chat_model = kwargs.get('chat_model', 'default')
        self.vision_model = kwargs.get('vision_model', self.chat_model)
        self.embedding_model = kwargs.get('embedding_model')
        self.temperature = kwargs.get('temperature', config.CHAT.TEMPERATURE)
        self.max_tokens = kwargs.get('max_tokens', config.CHAT.MAX_TOKENS)
        self.uploads_dir = kwargs.get('uploads_dir', config.CHAT.UPLOADS_DIR)

    @abstractmethod
    def translate(self, context: ConversationContext, model: Optional[str] = None) -> ProviderRequest:
        """
        Convert an assembled context into this provider's request shape.

        Args:
            context: The ordered, already-formatted messages for the turn
            model: Model to use; defaults to the adapter's chat model

        Returns:
            ProviderRequest ready for stream_tokens()
        """
        pass

    @abstractmethod
    def stream_tokens(self, request: ProviderRequest) -> AsyncIterator[str]:
        """
        Yield text chunks in the order the backend produces them.

        Closing the iterator (aclose) stops the underlying backend stream.

        Raises:
            ProviderError: on any backend failure, including rate limiting
        """
        pass

    @abstractmethod
    def render_text(self, text: str) -> dict:
        pass

    @abstractmethod
    def render_image(self, attachment: AttachmentData, is_historical: bool) -> Optional[dict]:
        """Render an image reference, or return None if its payload is unavailable."""
        pass

    def format_attachments(
        self,
        text: str,
        attachments: Optional[List[AttachmentData]] = None,
        is_historical: bool = False,
    ) -> FormattedContent:
        """
        Normalize a message and render its parts for this provider.

        Args:
            text: Message text
            attachments: Attachment references, in order
            is_historical: True for messages replayed from history
        """
        normalized = normalize(text, attachments, logger=logger)
        formatted = FormattedContent(dropped=list(normalized.dropped))
        for part in normalized.parts:
            if part.is_text:
                formatted.parts.append(self.render_text(part.text))
                continue
            rendered = self.render_image(part.attachment, is_historical)
            if rendered is None:
                formatted.parts.append(
                    self.render_text(f"[Image file: {part.attachment.label} - not available]")
                )
                continue
            formatted.parts.append(rendered)
            formatted.non_text_parts += 1
        return formatted

    async def complete(self, request: ProviderRequest) -> str:
        """Run a request to completion and return the joined text."""
        chunks = []
        async for chunk in self.stream_tokens(request):
            chunks.append(chunk)
        return "".join(chunks)

    async def embeddings(self, texts: List[str], **kwargs) -> List[List[float]]:
        """
        Generate embeddings for a list of texts.

        Returns:
            List of embedding vectors (each vector is a list of floats)
        """
        raise NotImplementedError(f"{self.get_provider_name()} does not support embeddings")

    @abstractmethod
    def get_provider_name(self) -> str:
        """Return the name of the provider (e.g., 'openai', 'gemini')"""
        pass

    def supports_embeddings(self) -> bool:
        return False

    async def close(self) -> None:
        pass

    # Image payloads

    def load_image(self, attachment: AttachmentData) -> Optional[Tuple[str, bytes]]:
        """
        Resolve an image reference to (mime_type, bytes).

        Handles data: URIs and files in the uploads directory. Returns None
        when the payload cannot be found; remote URLs are not fetched.
        """
        ref = attachment.payload_ref
        if ref.startswith("data:"):
            header, _, encoded = ref.partition(",")
            mime_type = header[5:].split(";")[0] or attachment.file_type
            return mime_type, base64.b64decode(encoded)
        if ref.startswith(("http://", "https://")):
            return None

        path = os.path.join(self.uploads_dir, os.path.basename(attachment.file_name))
        if not os.path.exists(path):
            logger.error(f"Image file not found: {path}. Attachment: {attachment.label}")
            return None
        with open(path, "rb") as f:
            data = f.read()
        logger.info(f"Loaded image {attachment.file_name} ({len(data)} bytes)")
        return attachment.file_type, data
