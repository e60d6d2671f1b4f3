from __future__ import annotations

from fastapi import APIRouter, Depends

from calpush import __version__
from calpush.api.deps import get_runtime
from calpush.api.models import HealthResponse
from calpush.runtime import CalpushRuntime

router = APIRouter(prefix="/api", tags=["health"])


@router.get("/health", response_model=HealthResponse)
async def health(runtime: CalpushRuntime = Depends(get_runtime)) -> HealthResponse:
    return HealthResponse(version=__version__, open_streams=len(runtime.directory))
