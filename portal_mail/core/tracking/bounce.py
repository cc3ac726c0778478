"""
Bounce classification and retry backoff.

Both functions are pure: classification never raises, and the backoff
table is clamped to its last entry.
"""
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

HARD = "hard"
SOFT = "soft"
COMPLAINT = "complaint"

HARD_BOUNCE_PHRASES = (
    "user unknown",
    "address rejected",
    "no such user",
    "mailbox not found",
    "domain not found",
)
SOFT_BOUNCE_PHRASES = (
    "mailbox full",
    "quota exceeded",
    "temporarily unavailable",
    "try again later",
)
COMPLAINT_PHRASES = (
    "spam",
    "blocked",
    "blacklist",
)

# 1 minute, 5 minutes, 30 minutes, 2 hours
RETRY_DELAYS = (
    timedelta(minutes=1),
    timedelta(minutes=5),
    timedelta(minutes=30),
    timedelta(hours=2),
)


@dataclass(frozen=True)
class BounceClassification:
    type: Optional[str]
    reason: str


def classify_bounce(error_message: Optional[str]) -> BounceClassification:
    """
    Classify a transport error message.

    Hard phrases win over soft ones, soft over complaints. Anything
    unrecognized has type None and keeps the original message as reason.
    """
    message = error_message or ""
    lower = message.lower()

    if any(phrase in lower for phrase in HARD_BOUNCE_PHRASES):
        return BounceClassification(HARD, "Recipient address does not exist")
    if any(phrase in lower for phrase in SOFT_BOUNCE_PHRASES):
        return BounceClassification(SOFT, "Temporary delivery failure")
    if any(phrase in lower for phrase in COMPLAINT_PHRASES):
        return BounceClassification(COMPLAINT, "Message blocked as spam")
    return BounceClassification(None, message)


def retry_delay(retry_count: int) -> timedelta:
    index = min(max(retry_count, 0), len(RETRY_DELAYS) - 1)
    return RETRY_DELAYS[index]


def calculate_next_retry(retry_count: int, now: Optional[datetime] = None) -> datetime:
    """
    Next retry time for a row that has used retry_count retries.

    Args:
        retry_count: Retries already used (0 after the first failed attempt)
        now: Reference time (defaults to current UTC time)
    """
    now = now or datetime.now(timezone.utc)
    return now + retry_delay(retry_count)
