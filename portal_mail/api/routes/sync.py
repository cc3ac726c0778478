"""
Mailbox sync API endpoints
"""
import logging
from uuid import UUID

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query, Response
from sqlalchemy.orm import Session

from portal_mail.api.auth import verify_api_key
from portal_mail.api.dependencies import get_mail_jobs
from portal_mail.api.schemas import SyncAcceptedResponse, SyncRequest, SyncRunResponse, SyncStatusResponse
from portal_mail.core.database import get_db
from portal_mail.core.database.repository import MailRepository
from portal_mail.core.errors import AccountNotFoundError, SyncInProgressError
from portal_mail.core.jobs import MailJobs
from portal_mail.core.sync import SyncOptions

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/email", tags=["sync"])


@router.post("/sync", dependencies=[Depends(verify_api_key)], status_code=202)
async def trigger_sync(
    request: SyncRequest,
    background_tasks: BackgroundTasks,
    response: Response,
    wait: bool = Query(False, description="Run the sync inline and return its result"),
    db: Session = Depends(get_db),
    jobs: MailJobs = Depends(get_mail_jobs),
):
    """
    Sync one mailbox.

    By default the sync runs after the response (202). With `wait=true`
    the pass runs inline:
    - 200 with counts on success
    - 409 if another worker holds the account's sync lease
    - 502 if the provider failed
    """
    if MailRepository(db).get_account(request.account_id) is None:
        raise HTTPException(status_code=404, detail="Email account not found")

    options = SyncOptions(force_full_sync=request.force_full_sync, max_results=request.max_results)

    if not wait:
        background_tasks.add_task(jobs.run_account_sync, request.account_id, options)
        return SyncAcceptedResponse(success=True, message="Sync started", account_id=request.account_id)

    try:
        result = await jobs.run_account_sync(request.account_id, options, require_lease=True)
    except AccountNotFoundError:
        raise HTTPException(status_code=404, detail="Email account not found")
    except SyncInProgressError as e:
        raise HTTPException(status_code=409, detail=str(e))

    if not result.success:
        logger.error(f"Inline sync failed for account {request.account_id}: {result.error}")
        raise HTTPException(status_code=502, detail="Sync failed. Please try again.")

    response.status_code = 200
    return SyncRunResponse(
        success=True,
        account_id=result.account_id,
        sync_type=result.sync_type,
        threads_processed=result.threads_processed,
        messages_processed=result.messages_processed,
        duration_ms=result.duration_ms,
    )


@router.get("/sync/{account_id}/status", response_model=SyncStatusResponse, dependencies=[Depends(verify_api_key)])
async def get_sync_status(account_id: UUID, db: Session = Depends(get_db)):
    """Current sync state of an account (status, watermark, last error)."""
    repo = MailRepository(db)
    if repo.get_account(account_id) is None:
        raise HTTPException(status_code=404, detail="Email account not found")
    state = repo.ensure_sync_state(account_id)
    repo.commit()
    return SyncStatusResponse.model_validate(state)
