from __future__ import annotations

from fastapi import APIRouter, Request
from pydantic import BaseModel

from xbrch.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from xbrch.apps.api.response import SuccessEnvelope, success_response

router = APIRouter(tags=["health"], responses=DEFAULT_ERROR_RESPONSES)


class HealthResponse(BaseModel):
    status: str
    db_pool: dict[str, int | None] | None = None


@router.get("/health", response_model=SuccessEnvelope[HealthResponse])
async def health(request: Request) -> dict:
    # Report pool counters when the storage handle is open; no query is issued.
    database = getattr(request.app.state, "database", None)
    payload = HealthResponse(
        status="ok",
        db_pool=database.pool_stats() if database is not None else None,
    )
    return success_response(request=request, data=payload)
