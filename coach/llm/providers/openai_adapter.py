"""
OpenAI provider adapter.
"""

import base64
import openai
from typing import AsyncIterator, List, Optional

from .base import ProviderAdapter
from coach.core.errors import ProviderError
from coach.models.context import ConversationContext, ProviderRequest
from coach.models.message import AttachmentData
from server.logging_config import get_logger

logger = get_logger(__name__)

# Images above this size are sent with low detail
LOW_DETAIL_BYTES = 2_000_000


class OpenAIAdapter(ProviderAdapter):
    """OpenAI chat completions adapter"""

    def __init__(
        self,
        api_key: str,
        chat_model: str = "gpt-4o-mini",
        vision_model: str = "gpt-4o",
        embedding_model: str = "text-embedding-3-small",
        embedding_dimensions: int = 1536,
        **kwargs
    ):
        super().__init__(
            chat_model=chat_model,
            vision_model=vision_model,
            embedding_model=embedding_model,
            **kwargs
        )
        self.api_key = api_key
        self.embedding_dimensions = embedding_dimensions
        self.async_client = openai.AsyncOpenAI(api_key=api_key)

    def render_text(self, text: str) -> dict:
        return {"type": "text", "text": text}

    def render_image(self, attachment: AttachmentData, is_historical: bool) -> Optional[dict]:
        ref = attachment.payload_ref
        if ref.startswith(("http://", "https://", "data:")):
            detail = "low" if is_historical else "auto"
            return {"type": "image_url", "image_url": {"url": ref, "detail": detail}}

        loaded = self.load_image(attachment)
        if loaded is None:
            return None
        mime_type, data = loaded
        detail = "low" if is_historical or len(data) > LOW_DETAIL_BYTES else "high"
        encoded = base64.b64encode(data).decode("ascii")
        return {
            "type": "image_url",
            "image_url": {"url": f"data:{mime_type};base64,{encoded}", "detail": detail},
        }

    def translate(self, context: ConversationContext, model: Optional[str] = None) -> ProviderRequest:
        openai_messages = [
            {"role": msg.role, "content": msg.content}
            for msg in context.messages
        ]
        model = model or self.chat_model
        return ProviderRequest(
            provider=self.get_provider_name(),
            model=model,
            payload={
                "model": model,
                "messages": openai_messages,
                "temperature": self.temperature,
                "max_tokens": self.max_tokens,
            },
        )

    async def stream_tokens(self, request: ProviderRequest) -> AsyncIterator[str]:
        """Stream chat completion deltas from the OpenAI API"""
        try:
            stream = await self.async_client.chat.completions.create(
                **request.payload, stream=True
            )
        except openai.OpenAIError as e:
            logger.error(f"OpenAI chat error: {e}")
            raise ProviderError("openai", str(e)) from e

        try:
            async for chunk in stream:
                if not chunk.choices:
                    continue
                content = chunk.choices[0].delta.content
                if content:
                    yield content
        except openai.OpenAIError as e:
            logger.error(f"OpenAI stream error: {e}")
            raise ProviderError("openai", str(e)) from e
        finally:
            await stream.close()

    async def embeddings(self, texts: List[str], **kwargs) -> List[List[float]]:
        """Generate embeddings using OpenAI API"""
        if not texts:
            return []
        response = await self.async_client.embeddings.create(
            input=texts,
            model=self.embedding_model,
            dimensions=self.embedding_dimensions,
            **kwargs
        )
        return [data.embedding for data in response.data]

    def get_provider_name(self) -> str:
        return "openai"

    def supports_embeddings(self) -> bool:
        return True

    async def close(self) -> None:
        try:
            await self.async_client.close()
        except Exception as e:
            logger.debug(f"OpenAI async client close failed: {e}")
