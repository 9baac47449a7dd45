import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from sqlalchemy.exc import SQLAlchemyError
from starlette.requests import Request

from app.database import AsyncSessionFactory, async_engine, settings
from app.rate_limit import limiter
from app.routers import documents, health, relay
from app.services.broadcaster import Broadcaster
from app.services.connection_registry import ConnectionRegistry
from app.services.document_service import load_documents
from app.services.history_store import create_history_store

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings.validate_production()
    logging.getLogger("app").setLevel(settings.log_level.upper())

    app.state.documents = (
        await load_documents(AsyncSessionFactory) if settings.documents_enabled else []
    )

    broadcaster = Broadcaster(
        ConnectionRegistry(max_connections=settings.max_connections),
        create_history_store(settings),
        queue_maxsize=settings.broadcast_queue_maxsize,
        append_retries=settings.history_append_retries,
        retry_base_delay=settings.history_retry_base_delay,
        retry_max_delay=settings.history_retry_max_delay,
    )
    app.state.broadcaster = broadcaster
    broadcaster_task = asyncio.create_task(broadcaster.run())
    logger.info("Relay started (history backend: %s)", settings.history_backend)

    yield

    broadcaster_task.cancel()
    try:
        await broadcaster_task
    except asyncio.CancelledError:
        pass
    await async_engine.dispose()


app = FastAPI(
    title="Chat Relay",
    version="1.0.0",
    lifespan=lifespan,
    docs_url=None if settings.environment == "production" else "/docs",
    redoc_url=None if settings.environment == "production" else "/redoc",
)

app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

# Middleware order (Starlette LIFO): CORSMiddleware → SlowAPI
app.add_middleware(SlowAPIMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.get_cors_origins(),
    allow_methods=["GET"],
    allow_headers=["Content-Type", "Accept"],
)


@app.exception_handler(SQLAlchemyError)
async def sqlalchemy_exception_handler(request: Request, exc: SQLAlchemyError):
    logger.exception("Database error: %s", exc)
    return JSONResponse(status_code=500, content={"detail": "Internal server error"})


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error: %s", exc)
    return JSONResponse(status_code=500, content={"detail": "Internal server error"})


app.include_router(health.router)
app.include_router(relay.router)
app.include_router(documents.router)
