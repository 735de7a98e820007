from dataclasses import dataclass
from fastapi import Depends, Request
from typing import Annotated, Optional

from coach.core.context import ContextAssembler
from coach.core.factory import create_and_initialize_persistence
from coach.core.interfaces import PersistenceCoordinator
from coach.core.retrieval import MemoryRetrievalEngine
from coach.core.session_controller import SessionController
from coach.core.tasks import BackgroundTaskSupervisor
from coach.llm.client_factory import ProviderRegistry, get_registry, parse_llm_service
from coach.llm.embeddings import EmbeddingService
from coach.services.memory_extraction import MemoryExtractor
from server.config import config
from server.logging_config import get_logger

logger = get_logger(__name__)


@dataclass
class CoachServices:
    """Everything a request handler needs, built once per process."""

    store: PersistenceCoordinator
    registry: ProviderRegistry
    engine: MemoryRetrievalEngine
    supervisor: BackgroundTaskSupervisor
    controller: SessionController

    async def close(self) -> None:
        await self.controller.shutdown()
        await self.registry.close()
        await self.store.close()


def wire_services(
    store: PersistenceCoordinator,
    registry: ProviderRegistry,
    embedder: EmbeddingService,
    detection_service: Optional[str] = None,
) -> CoachServices:
    """Connect the pipeline components around an existing store and registry."""
    engine = MemoryRetrievalEngine(store, embedder, logger=get_logger("coach.memory"))
    supervisor = BackgroundTaskSupervisor(logger=get_logger("coach.tasks"))

    adapter, model = None, None
    if detection_service:
        provider, model = parse_llm_service(detection_service)
        if provider in registry.names():
            adapter = registry.get(provider)
        else:
            logger.warning(f"Memory detection provider {provider} is not configured; explicit triggers only")
    extractor = MemoryExtractor(engine, adapter=adapter, model=model, logger=get_logger("coach.memory"))

    controller = SessionController(
        store=store,
        registry=registry,
        assembler=ContextAssembler(store, logger=get_logger("coach.context")),
        engine=engine,
        supervisor=supervisor,
        extractor=extractor,
        logger=get_logger("coach.session"),
    )
    return CoachServices(
        store=store,
        registry=registry,
        engine=engine,
        supervisor=supervisor,
        controller=controller,
    )


async def build_services() -> CoachServices:
    """Build the services from configuration."""
    store = await create_and_initialize_persistence(config.PERSISTENCE.BACKEND)
    return wire_services(
        store,
        get_registry(),
        EmbeddingService(logger=get_logger("coach.embeddings")),
        detection_service=config.MACHINE_LEARNING.MEMORY_DETECTION_SERVICE,
    )


def get_controller(request: Request) -> SessionController:
    return request.app.state.services.controller


def get_memory_engine(request: Request) -> MemoryRetrievalEngine:
    return request.app.state.services.engine


def get_store(request: Request) -> PersistenceCoordinator:
    return request.app.state.services.store


# Type aliases for easier usage in route handlers
ControllerDep = Annotated[SessionController, Depends(get_controller)]
MemoryEngineDep = Annotated[MemoryRetrievalEngine, Depends(get_memory_engine)]
StoreDep = Annotated[PersistenceCoordinator, Depends(get_store)]
