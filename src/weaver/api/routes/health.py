from fastapi import APIRouter, Request
from pydantic import BaseModel

from weaver import __version__

router = APIRouter()


class HealthResponse(BaseModel):
    """Service liveness."""
    status: str
    version: str
    sessions: int


@router.get("/health", response_model=HealthResponse)
async def health(request: Request):
    """Report liveness and the number of live sessions."""
    return HealthResponse(
        status="ok",
        version=__version__,
        sessions=len(request.app.state.registry.list()),
    )
