"""
Google Gemini provider adapter.
"""

import google.generativeai as genai
from google.api_core import exceptions as google_exceptions
from typing import AsyncIterator, Optional

from .base import ProviderAdapter
from coach.core.errors import ProviderError
from coach.models.context import ConversationContext, ProviderRequest
from coach.models.message import AttachmentData
from server.logging_config import get_logger

logger = get_logger(__name__)

GEMINI_ERRORS = (
    google_exceptions.GoogleAPIError,
    genai.types.BlockedPromptException,
    genai.types.StopCandidateException,
)


class GeminiAdapter(ProviderAdapter):
    """Google Gemini adapter"""

    def __init__(
        self,
        api_key: str,
        chat_model: str = "gemini-2.0-flash-exp",
        vision_model: str = "gemini-1.5-pro",
        **kwargs
    ):
        super().__init__(chat_model=chat_model, vision_model=vision_model, **kwargs)
        self.api_key = api_key

        # Configure Gemini
        genai.configure(api_key=api_key)

    def render_text(self, text: str) -> dict:
        return {"text": text}

    def render_image(self, attachment: AttachmentData, is_historical: bool) -> Optional[dict]:
        loaded = self.load_image(attachment)
        if loaded is None:
            logger.warning(f"Gemini cannot use image {attachment.label}; payload unavailable")
            return None
        mime_type, data = loaded
        return {"inline_data": {"mime_type": mime_type, "data": data}}

    def translate(self, context: ConversationContext, model: Optional[str] = None) -> ProviderRequest:
        # Gemini takes the system prompt separately and calls the assistant "model"
        system_instruction = None
        contents = []
        for msg in context.messages:
            if msg.role == "system":
                system_instruction = msg.content
                continue
            parts = msg.content if isinstance(msg.content, list) else [self.render_text(msg.content)]
            contents.append({
                "role": "model" if msg.role == "assistant" else "user",
                "parts": parts,
            })

        model = model or self.chat_model
        return ProviderRequest(
            provider=self.get_provider_name(),
            model=model,
            payload={
                "system_instruction": system_instruction,
                "contents": contents,
                "generation_config": {
                    "temperature": self.temperature,
                    "max_output_tokens": self.max_tokens,
                },
            },
        )

    async def stream_tokens(self, request: ProviderRequest) -> AsyncIterator[str]:
        """Stream content from the Gemini API"""
        payload = request.payload
        try:
            model = genai.GenerativeModel(
                request.model,
                system_instruction=payload.get("system_instruction") or None,
            )
            response = await model.generate_content_async(
                payload["contents"],
                generation_config=genai.types.GenerationConfig(**payload["generation_config"]),
                stream=True,
            )
            async for chunk in response:
                try:
                    text = chunk.text
                except ValueError:
                    # Chunk carried no text parts (e.g. safety metadata only)
                    continue
                if text:
                    yield text
        except GEMINI_ERRORS as e:
            logger.error(f"Gemini chat error: {e}")
            raise ProviderError("gemini", str(e)) from e

    def get_provider_name(self) -> str:
        return "gemini"
