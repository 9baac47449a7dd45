from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession
from starlette.requests import Request

from app.database import get_session
from app.schemas.health import HealthResponse
from app.services.broadcaster import Broadcaster

router = APIRouter(tags=["health"])


@router.get("/health", response_model=HealthResponse)
async def health_check(request: Request, session: AsyncSession = Depends(get_session)):
    broadcaster: Broadcaster = request.app.state.broadcaster
    try:
        await session.execute(text("SELECT 1"))
        db = "connected"
    except Exception:
        db = "disconnected"
    relay = "degraded" if broadcaster.degraded else "ok"
    health = HealthResponse(
        status="healthy" if db == "connected" and relay == "ok" else "unhealthy",
        db=db,
        relay=relay,
        clients=broadcaster.registry.client_count,
    )
    if health.status != "healthy":
        return JSONResponse(status_code=503, content=health.model_dump())
    return health
