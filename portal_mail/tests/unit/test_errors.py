"""
Tests for scrubbing secrets out of error messages
"""
from cryptography.fernet import Fernet

from portal_mail.core.errors import TransportError, sanitize_error_message


class TestSanitizeErrorMessage:

    def test_plain_message_unchanged(self):
        assert sanitize_error_message("550 5.1.1 User unknown") == "550 5.1.1 User unknown"

    def test_database_password(self):
        result = sanitize_error_message("could not connect postgresql://app:s3cret@db:5432/mail")

        assert "s3cret" not in result
        assert "postgresql://[USER]:[REDACTED]@db" in result

    def test_bearer_and_google_tokens(self):
        assert sanitize_error_message("Authorization: Bearer abc.def-ghi") == "Authorization: Bearer [REDACTED]"
        assert "ya29" not in sanitize_error_message("Gmail rejected ya29.a0AfH6SMBx-1")

    def test_fernet_key(self):
        key = Fernet.generate_key().decode()

        result = sanitize_error_message(f"bad key material {key}")

        assert key not in result
        assert "[REDACTED_KEY]" in result

    def test_jwt(self):
        result = sanitize_error_message("token eyJhbGciOiJIUzI1NiJ9.eyJzdWIiOiIxIn0.abc_def rejected")
        assert "eyJ" not in result


def test_transport_error_carries_bounce_fields():
    error = TransportError("mailbox full", status_id="s-1", bounce_type="soft", bounce_reason="Mailbox full")

    assert str(error) == "mailbox full"
    assert (error.status_id, error.bounce_type, error.bounce_reason) == ("s-1", "soft", "Mailbox full")
