import asyncio
import hashlib
import math
import pytest
from typing import AsyncIterator, Dict, List, Optional
from unittest.mock import AsyncMock
from fastapi.testclient import TestClient

from coach.core.backends.memory_store import InMemoryPersistence
from coach.core.errors import ProviderError
from coach.core.retrieval import MemoryRetrievalEngine
from coach.llm.client_factory import ProviderRegistry
from coach.llm.embeddings import EmbeddingService
from coach.llm.providers.base import ProviderAdapter
from coach.models.context import ConversationContext, ProviderRequest
from coach.models.message import AttachmentData
from server.config import config
from server.dependencies import wire_services
from server.main import app

DIMENSIONS = config.MEMORY.EMBEDDING_DIMENSIONS


def deterministic_embedding(text: str) -> List[float]:
    """Deterministic, realistic embedding based on text content"""
    text_hash = hashlib.md5(text.encode()).digest()
    embedding = []
    for i in range(DIMENSIONS):
        byte_idx = i % len(text_hash)
        # Normalize byte value to [-1, 1] range
        embedding.append((text_hash[byte_idx] / 255.0) * 2 - 1)
    return embedding


def vector_with_similarity(similarity: float) -> List[float]:
    """A unit vector whose cosine similarity to basis_vector() is exactly `similarity`."""
    vector = [0.0] * DIMENSIONS
    vector[0] = similarity
    vector[1] = math.sqrt(max(0.0, 1 - similarity * similarity))
    return vector


def basis_vector() -> List[float]:
    return vector_with_similarity(1.0)


class ScriptedAdapter(ProviderAdapter):
    """Provider adapter that replays a fixed list of chunks."""

    def __init__(
        self,
        chunks: Optional[List[str]] = None,
        name: str = "scripted",
        fail_after: Optional[int] = None,
        hold_after: Optional[int] = None,
        **kwargs
    ):
        kwargs.setdefault("chat_model", f"{name}-fast")
        kwargs.setdefault("vision_model", f"{name}-vision")
        super().__init__(**kwargs)
        self.name = name
        self.chunks = list(chunks if chunks is not None else ["Hello", ", ", "world"])
        self.fail_after = fail_after
        self.hold_after = hold_after
        self.release = asyncio.Event()
        self.contexts: List[ConversationContext] = []
        self.formatted_calls: List[bool] = []
        self.closed = False
        self.yielded = 0

    def render_text(self, text: str) -> dict:
        return {"type": "text", "text": text}

    def render_image(self, attachment: AttachmentData, is_historical: bool) -> Optional[dict]:
        return {"type": "image", "ref": attachment.payload_ref, "historical": is_historical}

    def format_attachments(self, text, attachments=None, is_historical=False):
        self.formatted_calls.append(is_historical)
        return super().format_attachments(text, attachments, is_historical)

    def translate(self, context: ConversationContext, model: Optional[str] = None) -> ProviderRequest:
        self.contexts.append(context)
        return ProviderRequest(provider=self.name, model=model or self.chat_model, payload={})

    async def stream_tokens(self, request: ProviderRequest) -> AsyncIterator[str]:
        try:
            for index, chunk in enumerate(self.chunks):
                if self.fail_after is not None and index == self.fail_after:
                    raise ProviderError(self.name, "rate limited")
                if self.hold_after is not None and index == self.hold_after:
                    await self.release.wait()
                self.yielded += 1
                yield chunk
                await asyncio.sleep(0)
        finally:
            self.closed = True

    def get_provider_name(self) -> str:
        return self.name


@pytest.fixture
def scripted_adapter_factory():
    return ScriptedAdapter


@pytest.fixture
def similarity_vector():
    return vector_with_similarity


@pytest.fixture
def embedding_overrides() -> Dict[str, List[float]]:
    """Map exact texts to hand-built vectors; everything else is hashed."""
    return {}


@pytest.fixture
def embedding_client(embedding_overrides):
    client = AsyncMock()
    client.embeddings = AsyncMock(
        side_effect=lambda texts: [
            embedding_overrides.get(t) or deterministic_embedding(t) for t in texts
        ]
    )
    return client


@pytest.fixture
def embedder(embedding_client):
    return EmbeddingService(client=embedding_client)


@pytest.fixture
def store():
    return InMemoryPersistence()


@pytest.fixture
def engine(store, embedder):
    return MemoryRetrievalEngine(store, embedder)


@pytest.fixture
def adapter():
    return ScriptedAdapter()


@pytest.fixture
def registry(adapter):
    return ProviderRegistry(
        adapters={adapter.get_provider_name(): adapter},
        default_provider=adapter.get_provider_name(),
    )


@pytest.fixture
def services(store, registry, embedder):
    services = wire_services(store, registry, embedder)
    services.controller.persist_retry_min = 0
    services.controller.persist_retry_max = 0
    return services


@pytest.fixture
def controller(services):
    return services.controller


@pytest.fixture
def test_client(services):
    # Use TestClient context manager to trigger FastAPI lifespan events
    app.state.services = services
    try:
        with TestClient(app) as client:
            yield client
    finally:
        app.state.services = None


# LLM client mocks - always active to prevent real API calls
@pytest.fixture(autouse=True)
def mock_llm_clients(monkeypatch):
    def no_embedding_client():
        raise AssertionError("Tests must inject an embedding client")

    monkeypatch.setattr("coach.llm.embeddings.get_embedding_client", no_embedding_client)
    monkeypatch.setattr(
        "server.dependencies.get_registry",
        lambda: ProviderRegistry(default_provider="scripted"),
    )
