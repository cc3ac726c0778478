"""
API Routes
"""
from portal_mail.api.routes import send, sync, threads, tracking

__all__ = ["send", "sync", "threads", "tracking"]
