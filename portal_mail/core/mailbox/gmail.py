"""
Gmail API mailbox client.

Implements MailboxClient over users.messages / users.history. The
googleapiclient request objects are blocking, so every execute() runs on a
worker thread.

Rules:
- list_messages: users.messages.list, then users.messages.get(format=full) per id
- get_history: users.history.list, paged until max_results records
- send: RFC 5322 message built with the email package, sent as base64url raw
"""

import asyncio
import base64
import logging
from datetime import datetime, timezone
from email.message import EmailMessage as MimeMessage
from email.utils import getaddresses, parseaddr
from typing import Dict, List, Optional

from google.oauth2.credentials import Credentials
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError
from pydantic import ValidationError

from portal_mail.core.errors import MessageNotFoundError, TransportError, WatermarkExpiredError
from portal_mail.core.mailbox.base import (
    EmailAddress,
    HistoryPage,
    HistoryRecord,
    MailboxClient,
    MailboxProfile,
    OutboundMessage,
    RemoteMessage,
    SendReceipt,
)

logger = logging.getLogger(__name__)

GMAIL_SCOPES = [
    "https://www.googleapis.com/auth/gmail.modify",
    "https://www.googleapis.com/auth/gmail.send",
]


def _http_status(err: Exception) -> Optional[int]:
    resp = getattr(err, "resp", None)
    status = getattr(resp, "status", None)
    return int(status) if status is not None else None


def _http_reason(err: HttpError) -> str:
    reason = getattr(err, "reason", None)
    if reason:
        return str(reason)
    try:
        return err._get_reason()
    except Exception:
        return str(err)


def parse_address(value: str) -> EmailAddress:
    name, addr = parseaddr(value or "")
    return EmailAddress(email=(addr or value or "").strip(), name=name.strip() or None)


def parse_address_list(value: Optional[str]) -> List[EmailAddress]:
    if not value:
        return []
    return [
        EmailAddress(email=addr.strip(), name=name.strip() or None)
        for name, addr in getaddresses([value])
        if addr
    ]


def _decode_body(data: str) -> str:
    raw = base64.urlsafe_b64decode(data.encode("utf-8") + b"=" * (-len(data) % 4))
    return raw.decode("utf-8", errors="replace")


def extract_bodies(payload: dict) -> Dict[str, Optional[str]]:
    """Walk a Gmail payload tree and return the first text/html and text/plain bodies."""
    result = {"html": None, "text": None}

    def walk(part: dict):
        mime = (part.get("mimeType") or "").lower()
        data = (part.get("body") or {}).get("data")
        if data and not part.get("filename"):
            if mime == "text/html" and result["html"] is None:
                result["html"] = _decode_body(data)
            elif mime == "text/plain" and result["text"] is None:
                result["text"] = _decode_body(data)
        for child in part.get("parts", []) or []:
            walk(child)

    walk(payload or {})
    return result


def parse_gmail_message(msg: dict) -> RemoteMessage:
    """
    Map a users.messages.get(format=full) resource to a RemoteMessage.

    Raises:
        ValidationError: The resource lacks an id or thread id
    """
    payload = msg.get("payload", {}) or {}
    headers = {
        (h.get("name") or "").lower(): h.get("value")
        for h in payload.get("headers", []) or []
        if h.get("name") and h.get("value")
    }
    bodies = extract_bodies(payload)
    label_ids = list(msg.get("labelIds", []) or [])

    internal_ms = int(msg.get("internalDate") or 0)
    internal_dt = datetime.fromtimestamp(internal_ms / 1000.0, tz=timezone.utc)

    return RemoteMessage(
        id=msg.get("id") or "",
        thread_id=msg.get("threadId") or "",
        history_id=msg.get("historyId"),
        from_address=parse_address(headers.get("from", "")),
        to=parse_address_list(headers.get("to")),
        cc=parse_address_list(headers.get("cc")),
        bcc=parse_address_list(headers.get("bcc")),
        subject=headers.get("subject") or "(No Subject)",
        snippet=msg.get("snippet") or "",
        body_html=bodies["html"],
        body_text=bodies["text"],
        labels=label_ids,
        is_read="UNREAD" not in label_ids,
        is_starred="STARRED" in label_ids,
        in_reply_to=headers.get("in-reply-to"),
        references=(headers.get("references") or "").split(),
        headers=headers,
        sent_at=internal_dt,
        received_at=internal_dt,
    )


def parse_history_record(entry: dict) -> HistoryRecord:
    def ids(key: str) -> List[str]:
        return [
            item["message"]["id"]
            for item in entry.get(key, []) or []
            if (item.get("message") or {}).get("id")
        ]

    return HistoryRecord(
        id=str(entry.get("id", "")),
        messages_added=ids("messagesAdded"),
        messages_deleted=ids("messagesDeleted"),
        labels_changed=ids("labelsAdded") + ids("labelsRemoved"),
    )


def build_raw_message(message: OutboundMessage) -> str:
    """Render an OutboundMessage as the base64url 'raw' field Gmail expects."""
    mime = MimeMessage()
    mime["From"] = message.from_address
    mime["To"] = ", ".join(message.to)
    if message.cc:
        mime["Cc"] = ", ".join(message.cc)
    if message.bcc:
        mime["Bcc"] = ", ".join(message.bcc)
    mime["Subject"] = message.subject
    if message.in_reply_to:
        mime["In-Reply-To"] = message.in_reply_to
    if message.references:
        mime["References"] = " ".join(message.references)

    if message.text is not None or message.html is None:
        mime.set_content(message.text or "")
        if message.html is not None:
            mime.add_alternative(message.html, subtype="html")
    else:
        mime.set_content(message.html, subtype="html")

    for att in message.attachments:
        maintype, _, subtype = (att.content_type or "application/octet-stream").partition("/")
        mime.add_attachment(
            att.content,
            maintype=maintype or "application",
            subtype=subtype or "octet-stream",
            filename=att.filename,
        )

    return base64.urlsafe_b64encode(mime.as_bytes()).decode("utf-8")


class GmailMailboxClient(MailboxClient):
    """MailboxClient backed by the Gmail REST API."""

    def __init__(self, service, email_address: str, user_id: str = "me"):
        """
        Args:
            service: googleapiclient Resource for gmail v1
            email_address: Address used as From on outbound mail
        """
        self.service = service
        self.email_address = email_address
        self.user_id = user_id

    @classmethod
    def from_tokens(
        cls,
        email_address: str,
        access_token: str,
        refresh_token: Optional[str],
        client_id: Optional[str],
        client_secret: Optional[str],
        token_uri: str,
    ) -> "GmailMailboxClient":
        credentials = Credentials(
            token=access_token,
            refresh_token=refresh_token,
            token_uri=token_uri,
            client_id=client_id,
            client_secret=client_secret,
            scopes=GMAIL_SCOPES,
        )
        service = build("gmail", "v1", credentials=credentials, cache_discovery=False)
        return cls(service, email_address)

    async def _execute(self, request):
        try:
            return await asyncio.to_thread(request.execute)
        except HttpError as e:
            raise TransportError(f"Gmail API error {_http_status(e)}: {_http_reason(e)}") from e

    def _messages(self):
        return self.service.users().messages()

    async def list_messages(
        self,
        query: Optional[str] = None,
        max_results: int = 50,
        label_ids: Optional[List[str]] = None,
    ) -> List[RemoteMessage]:
        resp = await self._execute(
            self._messages().list(
                userId=self.user_id,
                q=query,
                maxResults=max_results,
                labelIds=label_ids,
            )
        )
        ids = [m["id"] for m in resp.get("messages", []) or [] if m.get("id")]

        messages = []
        for message_id in ids:
            try:
                messages.append(await self.get_message(message_id))
            except MessageNotFoundError:
                logger.warning(f"Message {message_id} disappeared during listing, skipping")
            except ValidationError as e:
                logger.warning(f"Skipping malformed Gmail message {message_id}: {e}")
        logger.debug(f"Listed {len(messages)}/{len(ids)} Gmail messages for {self.email_address}")
        return messages

    async def get_message(self, message_id: str) -> RemoteMessage:
        try:
            raw = await asyncio.to_thread(
                self._messages().get(userId=self.user_id, id=message_id, format="full").execute
            )
        except HttpError as e:
            if _http_status(e) == 404:
                raise MessageNotFoundError(f"Message {message_id} not found") from e
            raise TransportError(f"Gmail API error {_http_status(e)}: {_http_reason(e)}") from e
        return parse_gmail_message(raw)

    async def get_history(self, start_history_id: str, max_results: int = 100) -> HistoryPage:
        records: List[HistoryRecord] = []
        page_token = None
        latest_history_id = None

        while True:
            request = self.service.users().history().list(
                userId=self.user_id,
                startHistoryId=start_history_id,
                maxResults=max_results - len(records),
                pageToken=page_token,
            )
            try:
                resp = await asyncio.to_thread(request.execute)
            except HttpError as e:
                if _http_status(e) == 404:
                    raise WatermarkExpiredError(f"History id {start_history_id} is no longer available") from e
                raise TransportError(f"Gmail API error {_http_status(e)}: {_http_reason(e)}") from e

            records.extend(parse_history_record(h) for h in resp.get("history", []) or [])
            latest_history_id = resp.get("historyId") or latest_history_id
            page_token = resp.get("nextPageToken")
            if not page_token:
                break
            if len(records) >= max_results:
                # More changes remain; stop the watermark at what was read
                latest_history_id = records[-1].id or latest_history_id
                break

        return HistoryPage(history_id=str(latest_history_id or start_history_id), records=records)

    async def get_profile(self) -> MailboxProfile:
        resp = await self._execute(self.service.users().getProfile(userId=self.user_id))
        return MailboxProfile(
            email=resp.get("emailAddress", self.email_address),
            history_id=str(resp["historyId"]) if resp.get("historyId") else None,
            messages_total=resp.get("messagesTotal"),
        )

    async def send(self, message: OutboundMessage) -> SendReceipt:
        body = {"raw": build_raw_message(message)}
        if message.thread_id:
            body["threadId"] = message.thread_id
        resp = await self._execute(self._messages().send(userId=self.user_id, body=body))
        logger.info(f"Gmail accepted message {resp.get('id')} from {self.email_address}")
        return SendReceipt(id=resp.get("id", ""), thread_id=resp.get("threadId"))

    async def modify_labels(
        self,
        message_id: str,
        add: Optional[List[str]] = None,
        remove: Optional[List[str]] = None,
    ) -> None:
        await self._execute(
            self._messages().modify(
                userId=self.user_id,
                id=message_id,
                body={"addLabelIds": add or [], "removeLabelIds": remove or []},
            )
        )

    async def trash(self, message_id: str) -> None:
        await self._execute(self._messages().trash(userId=self.user_id, id=message_id))

    async def untrash(self, message_id: str) -> None:
        await self._execute(self._messages().untrash(userId=self.user_id, id=message_id))
