"""
Provider factory and registry for the interchangeable model backends.
"""

from typing import Dict, List, Optional, Tuple
from .providers.base import ProviderAdapter
from .providers.openai_adapter import OpenAIAdapter
from .providers.gemini_adapter import GeminiAdapter
from coach.core.attachments import is_document, is_image
from coach.core.errors import ValidationError
from coach.models.message import AttachmentData
from server.config import config
from server.logging_config import get_logger

logger = get_logger(__name__)

SUPPORTED_PROVIDERS = ("openai", "gemini")

# Global instances
_registry: Optional["ProviderRegistry"] = None
_embedding_client: Optional[ProviderAdapter] = None


def parse_llm_service(llm_service: str) -> Tuple[str, str]:
    """
    Parse an LLM service string into provider and model.

    Args:
        llm_service: String in format "provider/model" (e.g., "openai/gpt-4o-mini")

    Returns:
        Tuple of (provider, model)
    """
    if "/" not in llm_service:
        raise ValueError(f"Invalid LLM service format: {llm_service}. Expected 'provider/model'")

    provider, model = llm_service.split("/", 1)
    return provider.lower(), model


def create_openai_adapter() -> OpenAIAdapter:
    """Create OpenAI adapter"""
    if not config.MACHINE_LEARNING.OPENAI_API_KEY:
        raise ValueError("OPENAI_API_KEY is required for OpenAI provider")

    return OpenAIAdapter(
        api_key=config.MACHINE_LEARNING.OPENAI_API_KEY,
        chat_model=config.MACHINE_LEARNING.OPENAI_CHAT_MODEL,
        vision_model=config.MACHINE_LEARNING.OPENAI_VISION_MODEL,
        embedding_model=config.MACHINE_LEARNING.OPENAI_EMBEDDING_MODEL,
        embedding_dimensions=config.MEMORY.EMBEDDING_DIMENSIONS,
    )


def create_gemini_adapter() -> GeminiAdapter:
    """Create Google Gemini adapter"""
    if not config.MACHINE_LEARNING.GEMINI_API_KEY:
        raise ValueError("GEMINI_API_KEY is required for Gemini provider")

    return GeminiAdapter(
        api_key=config.MACHINE_LEARNING.GEMINI_API_KEY,
        chat_model=config.MACHINE_LEARNING.GEMINI_CHAT_MODEL,
        vision_model=config.MACHINE_LEARNING.GEMINI_VISION_MODEL,
    )


def create_adapter(provider: str) -> ProviderAdapter:
    """
    Create an adapter for the specified provider.

    Args:
        provider: Provider name (openai, gemini)
    """
    if provider == "openai":
        return create_openai_adapter()
    elif provider == "gemini":
        return create_gemini_adapter()
    else:
        raise ValueError(f"Unsupported provider: {provider}. Supported: {', '.join(SUPPORTED_PROVIDERS)}")


class ProviderRegistry:
    """Configured adapters by name, plus per-turn provider/model selection."""

    def __init__(
        self,
        adapters: Optional[Dict[str, ProviderAdapter]] = None,
        default_provider: Optional[str] = None,
        default_model: Optional[str] = None,
        preferred_provider: Optional[str] = None,
    ):
        self.adapters: Dict[str, ProviderAdapter] = dict(adapters or {})
        self.default_provider = default_provider
        self.default_model = default_model
        self.preferred_provider = preferred_provider

    def register(self, adapter: ProviderAdapter) -> None:
        self.adapters[adapter.get_provider_name()] = adapter

    def names(self) -> List[str]:
        return list(self.adapters)

    def get(self, provider: str) -> ProviderAdapter:
        adapter = self.adapters.get((provider or "").lower())
        if adapter is None:
            raise ValidationError(
                f"Provider {provider!r} is not configured. Available: {', '.join(self.adapters) or 'none'}"
            )
        return adapter

    def _fallback(self) -> ProviderAdapter:
        for name in (self.preferred_provider, self.default_provider):
            if name and name in self.adapters:
                return self.adapters[name]
        if not self.adapters:
            raise ValidationError("No model provider is configured")
        return next(iter(self.adapters.values()))

    def select(
        self,
        content: str = "",
        attachments: Optional[List[AttachmentData]] = None,
        provider: Optional[str] = None,
        model: Optional[str] = None,
        automatic: bool = False,
    ) -> Tuple[ProviderAdapter, str]:
        """
        Choose the adapter and model for a turn.

        An explicit provider wins. With automatic selection, images pick the
        vision model of the preferred provider, documents and complex
        queries pick its advanced model, everything else its fast model.
        """
        if provider and not automatic:
            adapter = self.get(provider)
            return adapter, model or adapter.chat_model

        if automatic:
            attachments = attachments or []
            has_images = any(is_image(a.file_type) for a in attachments)
            has_documents = any(is_document(a.file_type) for a in attachments)
            is_complex = "analyze" in (content or "").lower() or len(content or "") > 200

            adapter = self._fallback()
            if has_images:
                logger.info(f"Image detected, selecting {adapter.get_provider_name()}/{adapter.vision_model}")
                return adapter, adapter.vision_model
            if has_documents or is_complex:
                logger.info(f"Document/complex query, selecting {adapter.get_provider_name()}/{adapter.vision_model}")
                return adapter, adapter.vision_model
            return adapter, adapter.chat_model

        if self.default_provider in self.adapters:
            adapter = self.adapters[self.default_provider]
            return adapter, model or self.default_model or adapter.chat_model
        adapter = self._fallback()
        return adapter, model or adapter.chat_model

    async def close(self) -> None:
        for adapter in self.adapters.values():
            await adapter.close()


def get_registry() -> ProviderRegistry:
    """
    Build the registry from every provider that has credentials configured.
    """
    global _registry

    if _registry is None:
        default_provider, default_model = parse_llm_service(config.MACHINE_LEARNING.LLM_SERVICE)
        _registry = ProviderRegistry(
            default_provider=default_provider,
            default_model=default_model,
            preferred_provider=config.MACHINE_LEARNING.PREFERRED_PROVIDER,
        )
        for provider in SUPPORTED_PROVIDERS:
            try:
                _registry.register(create_adapter(provider))
                logger.info(f"Registered provider: {provider}")
            except ValueError as e:
                logger.info(f"Provider {provider} not registered: {e}")
        if not _registry.names():
            logger.warning("No model provider has credentials configured")

    return _registry


def get_embedding_client() -> ProviderAdapter:
    """
    Get the embedding client based on explicit EMBEDDING_SERVICE configuration.
    """
    global _embedding_client

    if _embedding_client is None:
        if not config.MACHINE_LEARNING.EMBEDDING_SERVICE:
            raise ValueError("EMBEDDING_SERVICE is required but not configured. Set EMBEDDING_SERVICE in .env file (e.g., EMBEDDING_SERVICE=openai/text-embedding-3-small)")

        provider, model = parse_llm_service(config.MACHINE_LEARNING.EMBEDDING_SERVICE)
        _embedding_client = create_adapter(provider)

        # Validate that the provider actually supports embeddings
        if not _embedding_client.supports_embeddings():
            raise ValueError(f"Provider {provider} does not support embeddings. Use openai for EMBEDDING_SERVICE.")

        logger.info(f"Initialized embedding client: {provider}/{model}")

    return _embedding_client
