# main.py
from contextlib import asynccontextmanager
from fastapi import FastAPI
from server.routers.chat_api import router as chat_api_router
from server.routers.memory_api import router as memory_api_router
from server.dependencies import build_services
from server.logging_config import setup_logging, shutdown_logging, get_logger

from server.config import config

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging(log_level="INFO")
    # Tests may install their own services before startup
    owned = getattr(app.state, "services", None) is None
    if owned:
        app.state.services = await build_services()
    logger.info("Coach API started")
    yield
    if owned:
        await app.state.services.close()
        app.state.services = None
    else:
        await app.state.services.supervisor.drain()
    logger.info("Coach API stopped")
    shutdown_logging()

app = FastAPI(
    title=config.INFO.title,
    description=config.INFO.description,
    version=config.INFO.version,
    lifespan=lifespan
)

app.include_router(chat_api_router, prefix="/api/v1")
app.include_router(memory_api_router, prefix="/api/v1")
