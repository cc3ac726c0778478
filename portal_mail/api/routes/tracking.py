"""
Open tracking API endpoints

The pixel route is public (it is loaded by the recipient's mail client)
and answers with the same GIF whatever the tracking id.
"""
import logging
from uuid import UUID

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Request, Response
from sqlalchemy.orm import Session

from portal_mail.api.auth import verify_api_key
from portal_mail.api.dependencies import get_open_tracker
from portal_mail.api.schemas import OpensResponse
from portal_mail.core.database import get_db
from portal_mail.core.tracking import NO_CACHE_HEADERS, TRANSPARENT_GIF, OpenTracker

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/email", tags=["tracking"])


def _client_ip(request: Request):
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else None


@router.get("/track/{tracking_id}/open.gif")
async def track_open(
    tracking_id: str,
    request: Request,
    background_tasks: BackgroundTasks,
    tracker: OpenTracker = Depends(get_open_tracker),
):
    """
    Tracking pixel.

    Always returns a 1x1 transparent GIF with no-cache headers; the open is
    recorded after the response so a slow geo-IP lookup never delays it.
    """
    background_tasks.add_task(
        tracker.record_open,
        tracking_id,
        _client_ip(request),
        request.headers.get("user-agent"),
    )
    return Response(content=TRANSPARENT_GIF, media_type="image/gif", headers=NO_CACHE_HEADERS)


@router.get("/messages/{message_id}/opens", response_model=OpensResponse, dependencies=[Depends(verify_api_key)])
async def get_message_opens(
    message_id: UUID,
    db: Session = Depends(get_db),
    tracker: OpenTracker = Depends(get_open_tracker),
):
    """Open count, first/last open and individual open events of a sent message."""
    opens = tracker.get_opens(db, message_id)
    if opens is None:
        raise HTTPException(status_code=404, detail="Message not found")
    return opens
