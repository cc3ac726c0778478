"""
Send Pipeline

Delivers one outbound message through the account's mailbox client and
records the outcome in SendStatus.

Steps:
1. Optional open-tracking pixel injected into the HTML body
2. SendStatus row created as 'sending'
3. Provider send call (attachments decoded, reply linkage passed through)
4. Success: local thread + read message in SENT, status 'sent'
5. Failure: bounce classified, status set to the bounce kind (or 'failed'),
   next retry time computed, TransportError raised

Scheduled sends persist a 'scheduled' SendStatus row carrying the
parameters; the scheduled-send scanner runs steps 1 and 3-5 when due.
"""
import logging
import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import List, Optional, Tuple

from sqlalchemy.orm import Session

from portal_mail.core.config import Settings, get_settings
from portal_mail.core.database.models import (
    EmailAccount, EmailDraft, EmailMessage, EmailThread, SendStatus, SendStatusValue,
    LABEL_SENT, utcnow,
)
from portal_mail.core.database.repository import MailRepository
from portal_mail.core.email.models import AttachmentParams, SendParams
from portal_mail.core.errors import AccountNotFoundError, TransportError, sanitize_error_message
from portal_mail.core.mailbox.base import MailboxClient, OutboundAttachment, OutboundMessage, SendReceipt
from portal_mail.core.tracking.bounce import classify_bounce, calculate_next_retry
from portal_mail.core.tracking.open_tracker import (
    generate_tracking_pixel_id, inject_tracking_pixel, tracking_pixel_html,
)

logger = logging.getLogger(__name__)

_TAG_RE = re.compile(r"<[^>]*>")


@dataclass
class SendResult:
    id: str
    thread_id: Optional[str]
    status_id: str
    message_id: Optional[str]
    tracking_pixel_id: Optional[str] = None


@dataclass
class ScheduleResult:
    scheduled: bool
    send_at: datetime
    status_id: str


def _snippet(text: Optional[str], html: Optional[str]) -> str:
    if text:
        return text[:200]
    return _TAG_RE.sub("", html or "").strip()[:200]


def _participants(addresses: List[str]) -> List[dict]:
    return [{"name": None, "email": a} for a in addresses]


def params_from_draft(draft: EmailDraft, account: EmailAccount) -> SendParams:
    """Rebuild send parameters from a persisted draft."""
    return SendParams(
        account_email=account.email,
        to=[r["email"] for r in draft.to_addresses or []],
        cc=[r["email"] for r in draft.cc_addresses or []],
        bcc=[r["email"] for r in draft.bcc_addresses or []],
        subject=draft.subject or "",
        html=draft.body_html,
        text=draft.body_text,
        in_reply_to=draft.in_reply_to,
        references=list(draft.references or []),
        thread_id=draft.remote_thread_id,
        attachments=[AttachmentParams(**a) for a in draft.attachments or []],
        tracking_enabled=draft.tracking_enabled,
        draft_id=draft.id,
    )


def record_send_failure(db: Session, status: SendStatus, error: Exception) -> Tuple[Optional[str], str]:
    """
    Store a failed attempt on its SendStatus row and commit.

    next_retry_at is computed from the row's current retry_count, so the
    first failure backs off by the first table entry and a failed retry by
    the entry for its new count.

    Returns:
        (bounce_type, bounce_reason)
    """
    message = sanitize_error_message(str(error)) or type(error).__name__
    classification = classify_bounce(message)
    now = utcnow()

    status.status = classification.type or SendStatusValue.FAILED.value
    status.error_message = message
    status.bounce_type = classification.type
    status.bounce_reason = classification.reason
    status.failed_at = now
    status.next_retry_at = calculate_next_retry(status.retry_count, now)
    db.commit()

    logger.warning(
        f"Send {status.id} failed (attempt {status.retry_count + 1}/{status.max_retries + 1}): "
        f"status={status.status}, reason={classification.reason}"
    )
    return classification.type, classification.reason


class SendPipeline:
    """
    Sends mail for one account.

    Args:
        db: Session the pipeline commits on
        client: Mailbox client of the sending account
    """

    def __init__(self, db: Session, client: MailboxClient, settings: Optional[Settings] = None):
        self.db = db
        self.client = client
        self.settings = settings or get_settings()
        self.repo = MailRepository(db)

    def _account(self, email: str) -> EmailAccount:
        account = self.db.query(EmailAccount).filter(EmailAccount.email == email).first()
        if account is None:
            raise AccountNotFoundError(f"Email account {email} not found")
        return account

    def prepare(self, params: SendParams) -> Tuple[Optional[str], Optional[str]]:
        """
        Apply open tracking to the HTML body.

        Returns:
            (html, tracking_pixel_id); the id is None when tracking is off
            or there is no HTML body to carry the pixel
        """
        if not params.tracking_enabled or not params.html:
            return params.html, None
        pixel_id = generate_tracking_pixel_id()
        pixel = tracking_pixel_html(pixel_id, self.settings.api_base_url)
        return inject_tracking_pixel(params.html, pixel), pixel_id

    async def send(self, params: SendParams) -> SendResult:
        """
        Send a message now.

        Raises:
            AccountNotFoundError: account_email is not connected
            TransportError: The provider rejected the message (already recorded)
        """
        account = self._account(params.account_email)
        html, pixel_id = self.prepare(params)

        status = SendStatus(
            account_id=account.id,
            draft_id=params.draft_id,
            status=SendStatusValue.SENDING.value,
            retry_count=0,
            max_retries=self.settings.send_max_retries,
            payload=params.model_dump(mode="json"),
        )
        self.db.add(status)
        self.db.commit()

        return await self.deliver(status, params, html, pixel_id)

    async def deliver(
        self,
        status: SendStatus,
        params: SendParams,
        html: Optional[str],
        pixel_id: Optional[str],
    ) -> SendResult:
        """
        Run the transport step for an existing 'sending' row.

        Once the provider accepted the message the row is committed as 'sent'
        before the local copy is written; a failure after that point is logged
        and never turns the row back into a retry candidate.
        """
        account = self._account(params.account_email)
        try:
            outbound = self._outbound(params, html)
            receipt = await self.client.send(outbound)
        except Exception as e:
            bounce_type, bounce_reason = record_send_failure(self.db, status, e)
            raise TransportError(
                status.error_message,
                status_id=str(status.id),
                bounce_type=bounce_type,
                bounce_reason=bounce_reason,
            ) from e

        message_id = None
        try:
            self._mark_sent(status, receipt)
            message = self._record_sent(account, status, params, html, pixel_id, receipt)
            message_id = str(message.id)
        except Exception as e:
            self.db.rollback()
            logger.error(
                f"Message {receipt.id} was accepted by the provider but recording it failed "
                f"(status {status.id}): {sanitize_error_message(str(e))}",
                exc_info=True,
            )
        else:
            logger.info(f"Sent message {receipt.id} from {account.email} (status {status.id})")
        return SendResult(
            id=receipt.id,
            thread_id=receipt.thread_id,
            status_id=str(status.id),
            message_id=message_id,
            tracking_pixel_id=pixel_id,
        )

    async def retry(self, status: SendStatus, params: SendParams) -> SendResult:
        """Re-run tracking and transport for a claimed row."""
        html, pixel_id = self.prepare(params)
        return await self.deliver(status, params, html, pixel_id)

    def schedule(self, params: SendParams, send_at: datetime) -> ScheduleResult:
        """
        Persist a send for later delivery by the scheduled-send scanner.

        send_at is capped at schedule_max_days from now.
        """
        account = self._account(params.account_email)
        if send_at.tzinfo is None:
            send_at = send_at.replace(tzinfo=timezone.utc)
        latest = utcnow() + timedelta(days=self.settings.schedule_max_days)
        if send_at > latest:
            logger.info(f"Capping scheduled send from {send_at.isoformat()} to {latest.isoformat()}")
            send_at = latest

        status = SendStatus(
            account_id=account.id,
            draft_id=params.draft_id,
            status=SendStatusValue.SCHEDULED.value,
            retry_count=0,
            max_retries=self.settings.send_max_retries,
            scheduled_for=send_at,
            payload=params.model_dump(mode="json"),
        )
        self.db.add(status)
        self.db.commit()
        logger.info(f"Scheduled send {status.id} from {account.email} for {send_at.isoformat()}")
        return ScheduleResult(scheduled=True, send_at=send_at, status_id=str(status.id))

    def _outbound(self, params: SendParams, html: Optional[str]) -> OutboundMessage:
        return OutboundMessage(
            from_address=params.account_email,
            to=list(params.to),
            cc=list(params.cc),
            bcc=list(params.bcc),
            subject=params.subject,
            html=html,
            text=params.text,
            in_reply_to=params.in_reply_to,
            references=list(params.references),
            thread_id=params.thread_id,
            attachments=[
                OutboundAttachment(
                    filename=a.filename,
                    content=a.decoded(),
                    content_type=a.content_type or "application/octet-stream",
                )
                for a in params.attachments
            ],
        )

    def _mark_sent(self, status: SendStatus, receipt: SendReceipt):
        status.status = SendStatusValue.SENT.value
        status.remote_message_id = receipt.id
        status.remote_thread_id = receipt.thread_id
        status.sent_at = utcnow()
        status.error_message = None
        status.next_retry_at = None
        self.db.commit()

    def _record_sent(
        self,
        account: EmailAccount,
        status: SendStatus,
        params: SendParams,
        html: Optional[str],
        pixel_id: Optional[str],
        receipt: SendReceipt,
    ) -> EmailMessage:
        now = utcnow()
        snippet = _snippet(params.text, html)

        thread = None
        if receipt.thread_id:
            thread = self.repo.get_thread_by_remote_id(account.id, receipt.thread_id)
        if thread is None:
            thread = EmailThread(
                account_id=account.id,
                remote_thread_id=receipt.thread_id,
                subject=params.subject,
                snippet=snippet,
                participants=_participants(params.to),
                labels=[LABEL_SENT],
                message_count=0,
                unread_count=0,
                last_message_at=now,
            )
            self.db.add(thread)
            self.db.flush()
        else:
            if LABEL_SENT not in (thread.labels or []):
                thread.labels = list(thread.labels or []) + [LABEL_SENT]
            thread.snippet = snippet
            if thread.last_message_at is None or now > thread.last_message_at:
                thread.last_message_at = now

        remote_id = receipt.id or f"local:{status.id}"
        message = self.repo.get_messages_by_remote_ids([remote_id]).get(remote_id)
        if message is None:
            message = EmailMessage(
                thread_id=thread.id,
                remote_message_id=remote_id,
                from_address={"name": None, "email": account.email},
                to_addresses=_participants(params.to),
                cc_addresses=_participants(params.cc),
                bcc_addresses=_participants(params.bcc),
                subject=params.subject,
                snippet=snippet,
                body_html=html,
                body_text=params.text,
                labels=[LABEL_SENT],
                is_read=True,
                in_reply_to=params.in_reply_to,
                references=list(params.references),
                raw_headers={},
                sent_at=now,
                received_at=now,
            )
            self.db.add(message)
            thread.message_count = (thread.message_count or 0) + 1
        message.tracking_enabled = pixel_id is not None
        message.tracking_pixel_id = pixel_id
        self.db.flush()

        status.message_id = message.id
        self.db.commit()
        return message
