"""
Tests for bounce classification and retry backoff
"""
import pytest
from datetime import datetime, timedelta, timezone

from portal_mail.core.tracking.bounce import (
    COMPLAINT, HARD, SOFT, calculate_next_retry, classify_bounce, retry_delay,
)


class TestClassifyBounce:
    """Phrase matching in priority order"""

    @pytest.mark.parametrize("message", [
        "550 5.1.1 User unknown in virtual mailbox table",
        "Recipient address rejected: Access denied",
        "No such user here",
        "Mailbox not found",
        "DNS error: domain not found",
    ])
    def test_hard_bounces(self, message):
        result = classify_bounce(message)
        assert result.type == HARD
        assert result.reason == "Recipient address does not exist"

    @pytest.mark.parametrize("message", [
        "452 Mailbox full",
        "Quota exceeded for recipient",
        "Service temporarily unavailable",
        "Rate limited, try again later",
    ])
    def test_soft_bounces(self, message):
        result = classify_bounce(message)
        assert result.type == SOFT
        assert result.reason == "Temporary delivery failure"

    @pytest.mark.parametrize("message", [
        "Message rejected as SPAM",
        "Sender blocked",
        "IP is on a blacklist",
    ])
    def test_complaints(self, message):
        result = classify_bounce(message)
        assert result.type == COMPLAINT
        assert result.reason == "Message blocked as spam"

    def test_hard_wins_over_complaint(self):
        """A message matching several groups takes the first group's kind"""
        result = classify_bounce("user unknown - message blocked")
        assert result.type == HARD

    def test_soft_wins_over_complaint(self):
        assert classify_bounce("mailbox full, sender blocked").type == SOFT

    def test_unrecognized_keeps_original_message(self):
        result = classify_bounce("Connection reset by peer")
        assert result.type is None
        assert result.reason == "Connection reset by peer"

    def test_never_raises_on_empty(self):
        assert classify_bounce("").type is None
        assert classify_bounce(None).type is None


class TestBackoff:
    """Fixed backoff table clamped to its last entry"""

    def test_table(self):
        assert retry_delay(0) == timedelta(minutes=1)
        assert retry_delay(1) == timedelta(minutes=5)
        assert retry_delay(2) == timedelta(minutes=30)
        assert retry_delay(3) == timedelta(hours=2)

    def test_clamped_beyond_table(self):
        assert retry_delay(4) == timedelta(hours=2)
        assert retry_delay(50) == timedelta(hours=2)

    def test_negative_count_uses_first_entry(self):
        assert retry_delay(-1) == timedelta(minutes=1)

    def test_escalates_monotonically(self):
        now = datetime(2024, 1, 1, tzinfo=timezone.utc)
        times = [calculate_next_retry(n, now) for n in range(6)]
        assert times == sorted(times)
        assert times[0] == now + timedelta(minutes=1)

    def test_defaults_to_current_time(self):
        before = datetime.now(timezone.utc)
        next_retry = calculate_next_retry(0)
        assert before + timedelta(seconds=59) <= next_retry <= datetime.now(timezone.utc) + timedelta(minutes=1)
