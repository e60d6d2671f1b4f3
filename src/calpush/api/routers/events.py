"""Sync trigger endpoint: reconcile the caller's calendar and return the merged event set."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends

from calpush.api.deps import get_current_user, get_runtime
from calpush.api.models import SyncResponse
from calpush.core.sync import SyncRetryRequiredError
from calpush.runtime import CalpushRuntime

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["events"])


@router.get("/events", response_model=SyncResponse, response_model_by_alias=True)
async def get_events(
    user_id: str = Depends(get_current_user),
    runtime: CalpushRuntime = Depends(get_runtime),
) -> SyncResponse:
    """Run one reconcile and return ``{"syncType": ..., "items": [...]}``.

    An expired continuation token answers 409 so the client retries and gets
    a full sync.  With ``sync.transparent_resync`` enabled the retry happens
    here instead.
    """
    try:
        result = await runtime.engine.reconcile(user_id)
    except SyncRetryRequiredError:
        if not runtime.config.sync.transparent_resync:
            raise
        logger.info("Retrying reconcile for user %s after token expiry", user_id)
        result = await runtime.engine.reconcile(user_id)

    return SyncResponse(
        sync_type=result.kind,
        items=[event.to_payload() for event in result.events],
    )
