"""
Open tracking

Pixel generation/injection for outbound HTML and recording of pixel hits.
The tracking endpoint always answers with TRANSPARENT_GIF; recording runs
after the response in its own session.
"""
import base64
import ipaddress
import logging
import secrets
from typing import Callable, Dict, List, Optional

import httpx
from sqlalchemy.orm import Session

from portal_mail.core.config import Settings, get_settings
from portal_mail.core.database.models import EmailMessage, EmailOpen, utcnow

logger = logging.getLogger(__name__)

TRANSPARENT_GIF = base64.b64decode("R0lGODlhAQABAIAAAAAAAP///yH5BAEAAAAALAAAAAABAAEAAAIBRAA7")

NO_CACHE_HEADERS = {
    "Cache-Control": "no-store, no-cache, must-revalidate, proxy-revalidate",
    "Pragma": "no-cache",
    "Expires": "0",
}

LOCAL_NETWORK = "Local Network"


def generate_tracking_pixel_id() -> str:
    """Long random URL-safe id (not guessable)."""
    return secrets.token_urlsafe(24)


def tracking_pixel_html(tracking_id: str, base_url: str) -> str:
    url = f"{base_url.rstrip('/')}/api/email/track/{tracking_id}/open.gif"
    return f'<img src="{url}" width="1" height="1" style="display:none;border:0;outline:0;" alt="" />'


def inject_tracking_pixel(html: str, pixel_html: str) -> str:
    """Insert the pixel before </body>, else before </html>, else append it."""
    if "</body>" in html:
        return html.replace("</body>", f"{pixel_html}</body>", 1)
    if "</html>" in html:
        return html.replace("</html>", f"{pixel_html}</html>", 1)
    return html + pixel_html


def is_local_address(ip: str) -> bool:
    try:
        addr = ipaddress.ip_address(ip)
    except ValueError:
        return False
    return addr.is_loopback or addr.is_private or addr.is_link_local


async def lookup_location(ip: Optional[str], settings: Optional[Settings] = None) -> Optional[str]:
    """
    Coarse "City, Country" for an IP address.

    Returns "Local Network" for loopback/private ranges and None when the
    lookup is disabled or fails.
    """
    if not ip:
        return None
    if is_local_address(ip):
        return LOCAL_NETWORK

    settings = settings or get_settings()
    if not settings.geoip_enabled:
        return None

    try:
        async with httpx.AsyncClient(timeout=settings.geoip_timeout_seconds) as client:
            response = await client.get(settings.geoip_url.format(ip=ip))
        if response.status_code != 200:
            return None
        data = response.json()
    except (httpx.HTTPError, ValueError) as e:
        logger.warning(f"Geo-IP lookup failed: {e}")
        return None

    city = data.get("city")
    country = data.get("country_name")
    if city and country:
        return f"{city}, {country}"
    return country or None


class OpenTracker:
    """
    Records pixel hits against tracked messages.

    Takes a session factory because it runs after the HTTP response has
    been sent, outside the request's session.
    """

    def __init__(self, session_factory: Callable[[], Session], settings: Optional[Settings] = None):
        self.session_factory = session_factory
        self.settings = settings or get_settings()

    async def record_open(self, tracking_id: str, ip_address: Optional[str], user_agent: Optional[str]) -> bool:
        """
        Returns:
            False if no message carries this tracking id
        """
        db = self.session_factory()
        try:
            message = db.query(EmailMessage).filter(EmailMessage.tracking_pixel_id == tracking_id).first()
            if message is None:
                logger.debug(f"Open for unknown tracking id {tracking_id[:8]}...")
                return False

            location = await lookup_location(ip_address, self.settings)
            now = utcnow()
            db.add(EmailOpen(
                message_id=message.id,
                opened_at=now,
                ip_address=ip_address,
                user_agent=(user_agent or "")[:1000] or None,
                location=location,
            ))
            if message.first_opened_at is None:
                message.first_opened_at = now
            message.last_opened_at = now
            message.open_count = (message.open_count or 0) + 1
            db.commit()
            logger.info(f"Recorded open #{message.open_count} for message {message.id}")
            return True
        except Exception as e:
            db.rollback()
            logger.error(f"Failed to record open for tracking id {tracking_id[:8]}...: {e}")
            return False
        finally:
            db.close()

    def get_opens(self, db: Session, message_id) -> Optional[Dict]:
        """Open statistics and events for one message, or None if unknown."""
        message = db.get(EmailMessage, message_id)
        if message is None:
            return None
        opens: List[EmailOpen] = db.query(EmailOpen).filter(
            EmailOpen.message_id == message_id
        ).order_by(EmailOpen.opened_at.desc()).all()
        return {
            "message_id": str(message.id),
            "tracking_enabled": message.tracking_enabled,
            "open_count": message.open_count or 0,
            "first_opened_at": message.first_opened_at.isoformat() if message.first_opened_at else None,
            "last_opened_at": message.last_opened_at.isoformat() if message.last_opened_at else None,
            "opens": [
                {
                    "opened_at": o.opened_at.isoformat(),
                    "location": o.location,
                    "user_agent": o.user_agent,
                }
                for o in opens
            ],
        }
