"""
Thread and message API endpoints

Read access to the mirrored mailbox plus read/star/trash actions, which
are applied at the provider before the local mirror changes.
"""
import logging
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from portal_mail.api.auth import verify_api_key
from portal_mail.api.dependencies import get_client_factory
from portal_mail.api.schemas import (
    MessageResponse, ReadRequest, StarRequest, ThreadDetailResponse, ThreadListResponse, ThreadResponse,
)
from portal_mail.core.database import get_db
from portal_mail.core.database.models import EmailAccount
from portal_mail.core.database.repository import FOLDERS, MailRepository
from portal_mail.core.email import LabelActions
from portal_mail.core.email.retry_scanner import ClientFactory
from portal_mail.core.errors import MailError, TransportError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/email", tags=["threads"])


def _actions(db: Session, account_id, client_factory: ClientFactory) -> LabelActions:
    account = db.get(EmailAccount, account_id)
    if account is None:
        raise HTTPException(status_code=404, detail="Email account not found")
    try:
        client = client_factory(account)
    except MailError as e:
        logger.error(f"No usable credentials for {account.email}: {e}")
        raise HTTPException(status_code=409, detail="Account credentials are unavailable; reconnect the account")
    return LabelActions(db, client)


async def _apply(action, description: str):
    try:
        return await action
    except TransportError as e:
        logger.error(f"Failed to {description}: {e}")
        raise HTTPException(status_code=502, detail=f"Failed to {description}")
    except MailError as e:
        raise HTTPException(status_code=409, detail=str(e))


@router.get("/threads", response_model=ThreadListResponse, dependencies=[Depends(verify_api_key)])
async def list_threads(
    account_id: UUID = Query(..., description="Mailbox account"),
    folder: str = Query("inbox", description="inbox, sent, trash or starred"),
    limit: int = Query(50, ge=1, le=200, description="Max results"),
    offset: int = Query(0, ge=0, description="Offset for pagination"),
    db: Session = Depends(get_db),
):
    """
    List threads of one folder, newest first.

    Folders are label views: inbox/sent/starred exclude trashed threads.
    """
    if folder not in FOLDERS:
        raise HTTPException(status_code=400, detail=f"Unknown folder '{folder}'")
    threads = MailRepository(db).list_threads(account_id, folder=folder, limit=limit, offset=offset)
    return ThreadListResponse(
        count=len(threads),
        folder=folder,
        threads=[ThreadResponse.model_validate(t) for t in threads],
    )


@router.get("/threads/{thread_id}", response_model=ThreadDetailResponse, dependencies=[Depends(verify_api_key)])
async def get_thread(thread_id: UUID, db: Session = Depends(get_db)):
    """Thread with its messages in arrival order."""
    repo = MailRepository(db)
    thread = repo.get_thread(thread_id)
    if thread is None:
        raise HTTPException(status_code=404, detail="Thread not found")

    response = ThreadDetailResponse.model_validate(thread)
    response.messages = [MessageResponse.model_validate(m) for m in repo.list_thread_messages(thread.id)]
    return response


@router.post("/threads/{thread_id}/trash", response_model=ThreadResponse, dependencies=[Depends(verify_api_key)])
async def trash_thread(
    thread_id: UUID,
    db: Session = Depends(get_db),
    client_factory: ClientFactory = Depends(get_client_factory),
):
    thread = MailRepository(db).get_thread(thread_id)
    if thread is None:
        raise HTTPException(status_code=404, detail="Thread not found")
    actions = _actions(db, thread.account_id, client_factory)
    return ThreadResponse.model_validate(await _apply(actions.trash_thread(thread), "trash thread"))


@router.post("/threads/{thread_id}/restore", response_model=ThreadResponse, dependencies=[Depends(verify_api_key)])
async def restore_thread(
    thread_id: UUID,
    db: Session = Depends(get_db),
    client_factory: ClientFactory = Depends(get_client_factory),
):
    thread = MailRepository(db).get_thread(thread_id)
    if thread is None:
        raise HTTPException(status_code=404, detail="Thread not found")
    actions = _actions(db, thread.account_id, client_factory)
    return ThreadResponse.model_validate(await _apply(actions.restore_thread(thread), "restore thread"))


@router.post("/threads/{thread_id}/star", response_model=ThreadResponse, dependencies=[Depends(verify_api_key)])
async def star_thread(
    thread_id: UUID,
    request: StarRequest,
    db: Session = Depends(get_db),
    client_factory: ClientFactory = Depends(get_client_factory),
):
    thread = MailRepository(db).get_thread(thread_id)
    if thread is None:
        raise HTTPException(status_code=404, detail="Thread not found")
    actions = _actions(db, thread.account_id, client_factory)
    updated = await _apply(actions.set_thread_starred(thread, request.starred), "update thread star")
    return ThreadResponse.model_validate(updated)


@router.post("/messages/{message_id}/read", response_model=MessageResponse, dependencies=[Depends(verify_api_key)])
async def mark_message_read(
    message_id: UUID,
    request: ReadRequest,
    db: Session = Depends(get_db),
    client_factory: ClientFactory = Depends(get_client_factory),
):
    """Mark a message read (`read: true`) or unread (`read: false`)."""
    message = MailRepository(db).get_message(message_id)
    if message is None:
        raise HTTPException(status_code=404, detail="Message not found")
    actions = _actions(db, message.thread.account_id, client_factory)
    updated = await _apply(actions.set_read(message, request.read), "update read state")
    return MessageResponse.model_validate(updated)


@router.post("/messages/{message_id}/star", response_model=MessageResponse, dependencies=[Depends(verify_api_key)])
async def star_message(
    message_id: UUID,
    request: StarRequest,
    db: Session = Depends(get_db),
    client_factory: ClientFactory = Depends(get_client_factory),
):
    message = MailRepository(db).get_message(message_id)
    if message is None:
        raise HTTPException(status_code=404, detail="Message not found")
    actions = _actions(db, message.thread.account_id, client_factory)
    updated = await _apply(actions.set_starred(message, request.starred), "update star")
    return MessageResponse.model_validate(updated)
