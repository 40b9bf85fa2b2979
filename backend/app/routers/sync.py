"""Email sync API: POST /gmail/sync (202 / 409), GET /sync/status, GET /sync/events (SSE)."""
import asyncio
import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, status
from sse_starlette.sse import EventSourceResponse

from ..auth import get_current_user_required, get_current_user_for_sse
from ..models import User
from ..schemas import SyncStartRequest, SyncStartResponse, SyncStatus
from ..services.sync_service import SyncOptions, SyncOrchestrator, get_sync_orchestrator

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["sync"])

SSE_INTERVAL_S = 0.5


@router.post("/gmail/sync", status_code=status.HTTP_202_ACCEPTED, response_model=SyncStartResponse)
async def start_email_sync(
    body: Optional[SyncStartRequest] = None,
    current_user: User = Depends(get_current_user_required),
    orchestrator: SyncOrchestrator = Depends(get_sync_orchestrator),
):
    """Start a sync run in the background. Poll GET /api/sync/status or GET /api/sync/events for progress."""
    options = SyncOptions.from_request(body)
    accepted = await orchestrator.start_sync(current_user.id, options)
    if not accepted:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Sync already in progress")
    return SyncStartResponse(message=f"Email sync started for up to {options.max_emails} emails.")


@router.get("/sync/status", response_model=SyncStatus)
async def sync_status(
    current_user: User = Depends(get_current_user_required),
    orchestrator: SyncOrchestrator = Depends(get_sync_orchestrator),
):
    """Current sync progress for this user (zeroed default when nothing is recorded)."""
    return await orchestrator.status_store.read(current_user.id)


async def _sse_generator(orchestrator: SyncOrchestrator, user_id: int):
    """Yield SyncStatus events for this user until the run is no longer processing."""
    while True:
        current = await orchestrator.status_store.read(user_id)
        yield {"data": current.model_dump_json(by_alias=True)}
        if not current.is_processing:
            break
        await asyncio.sleep(SSE_INTERVAL_S)


@router.get("/sync/events")
async def sync_events(
    current_user: User = Depends(get_current_user_for_sse),
    orchestrator: SyncOrchestrator = Depends(get_sync_orchestrator),
):
    """SSE stream of sync progress. Pass ?token=JWT when using EventSource (browser cannot set headers)."""
    return EventSourceResponse(_sse_generator(orchestrator, current_user.id))
