"""
Tests for open tracking: pixel generation/injection and open recording
"""
import pytest
import uuid
from unittest.mock import patch

import httpx

from portal_mail.core.database.models import EmailMessage, EmailOpen
from portal_mail.core.email import SendParams, SendPipeline
from portal_mail.core.tracking.open_tracker import (
    LOCAL_NETWORK, TRANSPARENT_GIF, OpenTracker, generate_tracking_pixel_id, inject_tracking_pixel,
    is_local_address, lookup_location, tracking_pixel_html,
)

PIXEL = '<img src="x" />'


class TestPixel:

    def test_ids_are_long_and_unique(self):
        ids = {generate_tracking_pixel_id() for _ in range(100)}
        assert len(ids) == 100
        assert all(len(i) >= 32 for i in ids)

    def test_pixel_url(self):
        html = tracking_pixel_html("abc", "https://mail.example.com/")
        assert 'src="https://mail.example.com/api/email/track/abc/open.gif"' in html
        assert 'width="1"' in html

    def test_inject_before_body(self):
        result = inject_tracking_pixel("<html><body><p>Hi</p></body></html>", PIXEL)
        assert result == f"<html><body><p>Hi</p>{PIXEL}</body></html>"

    def test_inject_before_html_without_body(self):
        result = inject_tracking_pixel("<html><p>Hi</p></html>", PIXEL)
        assert result == f"<html><p>Hi</p>{PIXEL}</html>"

    def test_inject_appends_to_fragment(self):
        assert inject_tracking_pixel("<p>Hi</p>", PIXEL) == f"<p>Hi</p>{PIXEL}"

    def test_gif_is_valid(self):
        assert TRANSPARENT_GIF.startswith(b"GIF89a")


class TestLocation:

    @pytest.mark.parametrize("ip", ["127.0.0.1", "10.1.2.3", "192.168.0.5", "::1"])
    def test_local_addresses(self, ip):
        assert is_local_address(ip) is True

    def test_public_and_invalid_addresses(self):
        assert is_local_address("8.8.8.8") is False
        assert is_local_address("not-an-ip") is False

    @pytest.mark.asyncio
    async def test_local_network_label(self, settings):
        assert await lookup_location("192.168.1.10", settings) == LOCAL_NETWORK

    @pytest.mark.asyncio
    async def test_disabled_lookup(self, settings):
        assert await lookup_location("8.8.8.8", settings) is None
        assert await lookup_location(None, settings) is None

    @pytest.mark.asyncio
    async def test_lookup_city_and_country(self, settings):
        settings.geoip_enabled = True
        real_client = httpx.AsyncClient

        def handler(request):
            assert "8.8.8.8" in str(request.url)
            return httpx.Response(200, json={"city": "Zurich", "country_name": "Switzerland"})

        def client(**kwargs):
            return real_client(transport=httpx.MockTransport(handler), **kwargs)

        with patch("portal_mail.core.tracking.open_tracker.httpx.AsyncClient", side_effect=client):
            assert await lookup_location("8.8.8.8", settings) == "Zurich, Switzerland"

    @pytest.mark.asyncio
    async def test_lookup_failure_returns_none(self, settings):
        settings.geoip_enabled = True
        real_client = httpx.AsyncClient

        def handler(request):
            raise httpx.ConnectError("unreachable", request=request)

        def client(**kwargs):
            return real_client(transport=httpx.MockTransport(handler), **kwargs)

        with patch("portal_mail.core.tracking.open_tracker.httpx.AsyncClient", side_effect=client):
            assert await lookup_location("8.8.8.8", settings) is None


class TestOpenTracker:

    @staticmethod
    async def _send_tracked(db, fake_client, settings):
        params = SendParams(
            account_email="me@example.com",
            to=["client@example.org"],
            subject="Tracked",
            html="<html><body>Hi</body></html>",
            tracking_enabled=True,
        )
        result = await SendPipeline(db, fake_client, settings).send(params)
        return db.get(EmailMessage, uuid.UUID(result.message_id))

    @pytest.mark.asyncio
    async def test_records_opens(self, db, account, session_factory, settings, fake_client):
        message = await self._send_tracked(db, fake_client, settings)
        tracker = OpenTracker(session_factory, settings)

        assert await tracker.record_open(message.tracking_pixel_id, "8.8.8.8", "Mozilla/5.0") is True
        assert await tracker.record_open(message.tracking_pixel_id, "10.0.0.2", "Mozilla/5.0") is True

        db.expire_all()
        message = db.get(EmailMessage, message.id)
        assert message.open_count == 2
        assert message.first_opened_at is not None
        assert message.last_opened_at >= message.first_opened_at
        assert db.query(EmailOpen).count() == 2

        opens = tracker.get_opens(db, message.id)
        assert opens["open_count"] == 2
        assert opens["tracking_enabled"] is True
        assert {o["location"] for o in opens["opens"]} == {None, LOCAL_NETWORK}

    @pytest.mark.asyncio
    async def test_unknown_tracking_id(self, db, session_factory, settings):
        tracker = OpenTracker(session_factory, settings)

        assert await tracker.record_open("does-not-exist", "203.0.113.9", None) is False
        assert db.query(EmailOpen).count() == 0

    def test_get_opens_unknown_message(self, db, session_factory, settings):
        assert OpenTracker(session_factory, settings).get_opens(db, uuid.uuid4()) is None
