"""
Send API endpoints

Immediate and scheduled sends, delivery status and manual retry.
"""
import logging
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from portal_mail.api.auth import verify_api_key
from portal_mail.api.dependencies import get_client_factory
from portal_mail.api.schemas import SendRequest, SendResponse, SendStatusResponse
from portal_mail.core.accounts import AccountManager
from portal_mail.core.database import get_db
from portal_mail.core.database.repository import MailRepository
from portal_mail.core.email import RetryScanner, SendParams, SendPipeline
from portal_mail.core.email.retry_scanner import ClientFactory
from portal_mail.core.errors import (
    AccountNotFoundError, DraftNotFoundError, MailError, RetryLimitExceededError,
    SendStatusNotFoundError, TransportError,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/email", tags=["send"])


def _transport_failure(e: TransportError) -> HTTPException:
    return HTTPException(
        status_code=502,
        detail={
            "message": "Failed to send email",
            "status_id": e.status_id,
            "bounce_type": e.bounce_type,
            "bounce_reason": e.bounce_reason or "Send failed",
        },
    )


@router.post("/send", response_model=SendResponse, dependencies=[Depends(verify_api_key)])
async def send_email(
    request: SendRequest,
    db: Session = Depends(get_db),
    client_factory: ClientFactory = Depends(get_client_factory),
):
    """
    Send an email now, or schedule it when `send_at` is given.

    **Returns:**
    - Immediate: message ids and the SendStatus id
    - Scheduled: `scheduled: true`, the (capped) send time and the SendStatus id

    A provider failure is recorded (retried later by the retry scanner) and
    answered with 502 and the classified bounce reason.
    """
    account = AccountManager(db).get_by_email(request.account_email)
    if account is None:
        raise HTTPException(status_code=404, detail="Email account not found")

    params = SendParams.model_validate(request.model_dump(exclude={"send_at"}))
    try:
        client = client_factory(account)
    except MailError as e:
        logger.error(f"No usable credentials for {account.email}: {e}")
        raise HTTPException(status_code=409, detail="Account credentials are unavailable; reconnect the account")

    pipeline = SendPipeline(db, client)

    if request.send_at is not None:
        scheduled = pipeline.schedule(params, request.send_at)
        return SendResponse(
            success=True,
            status_id=scheduled.status_id,
            scheduled=True,
            send_at=scheduled.send_at,
        )

    try:
        result = await pipeline.send(params)
    except TransportError as e:
        raise _transport_failure(e)
    except AccountNotFoundError:
        raise HTTPException(status_code=404, detail="Email account not found")

    return SendResponse(
        success=True,
        message_id=result.message_id,
        remote_message_id=result.id,
        thread_id=result.thread_id,
        status_id=result.status_id,
        tracking_pixel_id=result.tracking_pixel_id,
    )


@router.get("/send-status/{status_id}", response_model=SendStatusResponse, dependencies=[Depends(verify_api_key)])
async def get_send_status(status_id: UUID, db: Session = Depends(get_db)):
    """Delivery state of one outbound message."""
    status = MailRepository(db).get_send_status(status_id)
    if status is None:
        raise HTTPException(status_code=404, detail="Send status not found")
    return SendStatusResponse.model_validate(status)


@router.post("/send-status/{status_id}/retry", response_model=SendResponse, dependencies=[Depends(verify_api_key)])
async def retry_send(
    status_id: UUID,
    db: Session = Depends(get_db),
    client_factory: ClientFactory = Depends(get_client_factory),
):
    """
    Retry a failed send now, ignoring its backoff.

    **Errors:**
    - 404: unknown status or account
    - 409: not in a failure state, already being retried, or retries exhausted
    - 410: the originating draft was deleted
    - 502: the retry failed again (recorded)
    """
    scanner = RetryScanner(db, client_factory)
    try:
        result = await scanner.retry_one(status_id)
    except SendStatusNotFoundError:
        raise HTTPException(status_code=404, detail="Send status not found")
    except AccountNotFoundError:
        raise HTTPException(status_code=404, detail="Email account not found")
    except RetryLimitExceededError as e:
        raise HTTPException(
            status_code=409,
            detail=f"Maximum retries ({e.max_retries}) already used",
        )
    except DraftNotFoundError:
        raise HTTPException(status_code=410, detail="Original draft no longer exists")
    except TransportError as e:
        raise _transport_failure(e)
    except MailError as e:
        raise HTTPException(status_code=409, detail=str(e))

    return SendResponse(
        success=True,
        message_id=result.message_id,
        remote_message_id=result.id,
        thread_id=result.thread_id,
        status_id=result.status_id,
        tracking_pixel_id=result.tracking_pixel_id,
    )
