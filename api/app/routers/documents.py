from fastapi import APIRouter
from starlette.requests import Request

from app.rate_limit import limiter

router = APIRouter(tags=["documents"])


@router.get("/documents")
@limiter.limit("60/minute")
async def list_documents(request: Request) -> list[dict]:
    """Documents loaded at startup. Not refreshed while the server runs."""
    return request.app.state.documents
