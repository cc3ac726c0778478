"""
API tests: authentication, status codes and payloads of the mail endpoints
"""
import uuid
import pytest
from datetime import timedelta

from fastapi.testclient import TestClient

from portal_mail.api.dependencies import get_client_factory, get_mail_jobs, get_open_tracker
from portal_mail.api.main import app
from portal_mail.core.config import get_settings
from portal_mail.core.database import get_db
from portal_mail.core.database.models import EmailMessage, EmailThread, SendStatus, utcnow
from portal_mail.core.database.repository import MailRepository
from portal_mail.core.errors import TransportError
from portal_mail.core.jobs import MailJobs
from portal_mail.core.sync.reconciler import MessageReconciler
from portal_mail.core.tracking import OpenTracker


@pytest.fixture
def client(db, session_factory, settings, client_factory):
    def override_get_db():
        yield db

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_client_factory] = lambda: client_factory
    app.dependency_overrides[get_mail_jobs] = lambda: MailJobs(
        session_factory, settings, client_factory_builder=lambda d, s, c: client_factory,
    )
    app.dependency_overrides[get_open_tracker] = lambda: OpenTracker(session_factory, settings)
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


@pytest.fixture
def headers():
    return {"X-API-Key": get_settings().api_key}


@pytest.fixture
def thread(db, account, make_message):
    MessageReconciler(db, account.id).reconcile([
        make_message("m1", "t1", minutes=0),
        make_message("m2", "t1", minutes=5),
    ])
    db.commit()
    return db.query(EmailThread).one()


def _send_body(**overrides):
    body = {
        "account_email": "me@example.com",
        "to": ["client@example.org"],
        "subject": "Your quote",
        "html": "<html><body><p>Hello</p></body></html>",
    }
    body.update(overrides)
    return body


class TestAuth:

    def test_missing_key(self, client, account):
        response = client.get(f"/api/email/sync/{account.id}/status")
        assert response.status_code == 401

    def test_wrong_key(self, client, account):
        response = client.get(f"/api/email/sync/{account.id}/status", headers={"X-API-Key": "nope"})
        assert response.status_code == 403

    def test_public_endpoints(self, client):
        assert client.get("/").json()["name"] == "Portal Mail API"
        health = client.get("/health")
        assert health.status_code == 200
        assert health.headers["X-Content-Type-Options"] == "nosniff"


class TestSyncEndpoints:

    def test_background_sync_accepted(self, client, headers, db, account, fake_client, make_message):
        fake_client.messages = {"m1": make_message("m1")}

        response = client.post("/api/email/sync", json={"account_id": str(account.id)}, headers=headers)

        assert response.status_code == 202
        assert response.json()["message"] == "Sync started"
        # TestClient runs background tasks before returning
        assert db.query(EmailThread).count() == 1

    def test_inline_sync(self, client, headers, account, fake_client, make_message):
        fake_client.messages = {"m1": make_message("m1"), "m2": make_message("m2", "t2")}

        response = client.post(
            "/api/email/sync?wait=true",
            json={"account_id": str(account.id), "force_full_sync": True},
            headers=headers,
        )

        assert response.status_code == 200
        data = response.json()
        assert data["sync_type"] == "full"
        assert data["messages_processed"] == 2
        assert data["threads_processed"] == 2

    def test_inline_sync_lease_conflict(self, client, headers, db, account):
        MailRepository(db).acquire_sync_lease(account.id, "other-worker", 600)

        response = client.post("/api/email/sync?wait=true", json={"account_id": str(account.id)}, headers=headers)

        assert response.status_code == 409

    def test_inline_sync_provider_failure(self, client, headers, account, fake_client):
        fake_client.list_error = TransportError("Gmail API error 503: backendError")

        response = client.post("/api/email/sync?wait=true", json={"account_id": str(account.id)}, headers=headers)

        assert response.status_code == 502
        assert "backendError" not in response.text

    def test_unknown_account(self, client, headers):
        response = client.post("/api/email/sync", json={"account_id": str(uuid.uuid4())}, headers=headers)
        assert response.status_code == 404

    def test_invalid_max_results(self, client, headers, account):
        response = client.post(
            "/api/email/sync", json={"account_id": str(account.id), "max_results": 0}, headers=headers,
        )
        assert response.status_code == 422

    def test_status(self, client, headers, account):
        response = client.get(f"/api/email/sync/{account.id}/status", headers=headers)

        assert response.status_code == 200
        assert response.json()["status"] == "idle"
        assert response.json()["history_id"] is None


class TestSendEndpoints:

    def test_send(self, client, headers, db, account, fake_client):
        response = client.post("/api/email/send", json=_send_body(tracking_enabled=True), headers=headers)

        assert response.status_code == 200
        data = response.json()
        assert data["remote_message_id"] == "sent-1"
        assert data["tracking_pixel_id"]
        assert data["scheduled"] is False
        assert len(fake_client.sent) == 1

        status = client.get(f"/api/email/send-status/{data['status_id']}", headers=headers).json()
        assert status["status"] == "sent"
        assert status["retry_count"] == 0

    def test_send_failure_is_recorded(self, client, headers, db, account, fake_client):
        fake_client.send_errors.append(TransportError("550 5.1.1 User unknown"))

        response = client.post("/api/email/send", json=_send_body(), headers=headers)

        assert response.status_code == 502
        detail = response.json()["detail"]
        assert detail["bounce_type"] == "hard"
        assert detail["bounce_reason"] == "Recipient address does not exist"
        assert db.get(SendStatus, uuid.UUID(detail["status_id"])).status == "hard"

    def test_schedule(self, client, headers, db, account, fake_client):
        send_at = (utcnow() + timedelta(hours=3)).isoformat()

        response = client.post("/api/email/send", json=_send_body(send_at=send_at), headers=headers)

        assert response.status_code == 200
        assert response.json()["scheduled"] is True
        assert fake_client.sent == []
        assert db.query(SendStatus).one().status == "scheduled"

    def test_unknown_account(self, client, headers, account):
        response = client.post("/api/email/send", json=_send_body(account_email="x@example.com"), headers=headers)
        assert response.status_code == 404

    def test_empty_recipients_rejected(self, client, headers, account):
        response = client.post("/api/email/send", json=_send_body(to=[]), headers=headers)
        assert response.status_code == 422

    def test_unknown_send_status(self, client, headers):
        assert client.get(f"/api/email/send-status/{uuid.uuid4()}", headers=headers).status_code == 404


class TestRetryEndpoint:

    def _failed(self, db, account, **kwargs):
        row = SendStatus(
            account_id=account.id,
            status="failed",
            retry_count=kwargs.get("retry_count", 0),
            max_retries=3,
            draft_id=kwargs.get("draft_id"),
            payload=kwargs.get("payload"),
            next_retry_at=utcnow() + timedelta(hours=1),
        )
        db.add(row)
        db.commit()
        return row

    def test_manual_retry(self, client, headers, db, account, fake_client):
        row = self._failed(db, account, payload=_send_body())

        response = client.post(f"/api/email/send-status/{row.id}/retry", headers=headers)

        assert response.status_code == 200
        db.refresh(row)
        assert row.status == "sent"
        assert row.retry_count == 1

    def test_retries_exhausted(self, client, headers, db, account):
        row = self._failed(db, account, retry_count=3, payload=_send_body())

        response = client.post(f"/api/email/send-status/{row.id}/retry", headers=headers)

        assert response.status_code == 409
        assert "3" in response.json()["detail"]

    def test_deleted_draft(self, client, headers, db, account):
        row = self._failed(db, account, draft_id=uuid.uuid4())

        response = client.post(f"/api/email/send-status/{row.id}/retry", headers=headers)

        assert response.status_code == 410

    def test_unknown_status(self, client, headers):
        response = client.post(f"/api/email/send-status/{uuid.uuid4()}/retry", headers=headers)
        assert response.status_code == 404


class TestThreadEndpoints:

    def test_list_and_detail(self, client, headers, account, thread):
        response = client.get(f"/api/email/threads?account_id={account.id}", headers=headers)

        assert response.status_code == 200
        data = response.json()
        assert data["count"] == 1
        assert data["threads"][0]["message_count"] == 2
        assert data["threads"][0]["unread_count"] == 2

        detail = client.get(f"/api/email/threads/{thread.id}", headers=headers).json()
        assert [m["remote_message_id"] for m in detail["messages"]] == ["m1", "m2"]
        assert detail["messages"][0]["body_text"] == "Body of m1"

    def test_unknown_folder(self, client, headers, account):
        response = client.get(f"/api/email/threads?account_id={account.id}&folder=spam", headers=headers)
        assert response.status_code == 400

    def test_unknown_thread(self, client, headers):
        assert client.get(f"/api/email/threads/{uuid.uuid4()}", headers=headers).status_code == 404

    def test_trash_and_restore(self, client, headers, account, thread, fake_client):
        trashed = client.post(f"/api/email/threads/{thread.id}/trash", headers=headers)

        assert trashed.status_code == 200
        assert "TRASH" in trashed.json()["labels"]
        assert fake_client.trashed == ["m1", "m2"]
        trash = client.get(f"/api/email/threads?account_id={account.id}&folder=trash", headers=headers).json()
        assert trash["count"] == 1

        restored = client.post(f"/api/email/threads/{thread.id}/restore", headers=headers)
        assert "INBOX" in restored.json()["labels"]

    def test_mark_read(self, client, headers, db, thread, fake_client):
        message = db.query(EmailMessage).filter(EmailMessage.remote_message_id == "m1").one()

        response = client.post(f"/api/email/messages/{message.id}/read", json={"read": True}, headers=headers)

        assert response.status_code == 200
        assert response.json()["is_read"] is True
        assert fake_client.label_calls == [("m1", [], ["UNREAD"])]

    def test_provider_failure(self, client, headers, db, thread, fake_client):
        fake_client.label_error = RuntimeError("connection reset")
        message = db.query(EmailMessage).filter(EmailMessage.remote_message_id == "m1").one()

        response = client.post(f"/api/email/messages/{message.id}/star", json={"starred": True}, headers=headers)

        assert response.status_code == 502


class TestTrackingEndpoints:

    def test_pixel_records_open(self, client, headers, db, account):
        sent = client.post("/api/email/send", json=_send_body(tracking_enabled=True), headers=headers).json()

        response = client.get(
            f"/api/email/track/{sent['tracking_pixel_id']}/open.gif",
            headers={"x-forwarded-for": "8.8.8.8", "user-agent": "Mozilla/5.0"},
        )

        assert response.status_code == 200
        assert response.headers["content-type"] == "image/gif"
        assert "no-store" in response.headers["cache-control"]
        assert response.content.startswith(b"GIF89a")

        opens = client.get(f"/api/email/messages/{sent['message_id']}/opens", headers=headers).json()
        assert opens["open_count"] == 1
        assert opens["opens"][0]["user_agent"] == "Mozilla/5.0"

    def test_unknown_pixel_still_returns_gif(self, client):
        response = client.get("/api/email/track/unknown-id/open.gif")

        assert response.status_code == 200
        assert response.content.startswith(b"GIF89a")

    def test_opens_of_unknown_message(self, client, headers):
        assert client.get(f"/api/email/messages/{uuid.uuid4()}/opens", headers=headers).status_code == 404
