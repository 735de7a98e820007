from typing import List, Optional
import logging

from .client_factory import get_embedding_client
from .providers.base import ProviderAdapter
from coach.core.errors import EmbeddingError
from server.config import config
from server.logging_config import get_logger


class EmbeddingService:
    """
    Generates fixed-dimension embeddings through the configured provider.

    Any backend failure or malformed vector is raised as EmbeddingError so
    callers can degrade instead of failing the turn.
    """

    def __init__(
        self,
        client: Optional[ProviderAdapter] = None,
        dimensions: Optional[int] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self._client = client
        self.dimensions = dimensions or config.MEMORY.EMBEDDING_DIMENSIONS
        self.logger = logger or get_logger(__name__)

    @property
    def client(self) -> ProviderAdapter:
        if self._client is None:
            self._client = get_embedding_client()
        return self._client

    async def embed_many(self, texts: List[str]) -> List[List[float]]:
        if not texts:
            return []
        try:
            vectors = await self.client.embeddings(texts)
        except Exception as e:
            self.logger.error(f"Error generating embeddings: {e}")
            raise EmbeddingError(str(e)) from e

        if len(vectors) != len(texts):
            raise EmbeddingError(f"Expected {len(texts)} embeddings, got {len(vectors)}")
        for vector in vectors:
            if not vector or len(vector) != self.dimensions:
                raise EmbeddingError(
                    f"Embedding has {len(vector) if vector else 0} dimensions, expected {self.dimensions}"
                )
        return vectors

    async def embed(self, text: str) -> List[float]:
        return (await self.embed_many([text]))[0]
