"""Unit tests for span attribute sanitizing."""

from app.core.tracing import address_domain, redact_secret, safe_span_attributes


class TestSafeSpanAttributes:
    """Test safe_span_attributes."""

    def test_outreach_attributes(self):
        attributes = safe_span_attributes(
            recipient_email="Jan.Lead@Acme.example",
            subject="Re: Offer for Acme",
            attachments=2,
        )

        assert attributes == {
            "recipient_email": "*@acme.example",
            "subject_length": 18,
            "attachments": 2,
        }

    def test_credentials_keep_last_characters(self):
        attributes = safe_span_attributes(refresh_token="1//0gABCDEFGHIJKLmnop", client_secret="short")

        assert attributes["refresh_token"] == "***mnop"
        assert attributes["client_secret"] == "***"

    def test_none_dropped_and_objects_stringified(self):
        attributes = safe_span_attributes(operation="history.list", page_token=None, labels=["INBOX"])

        assert attributes == {"operation": "history.list", "labels": "['INBOX']"}


def test_address_domain_without_at_sign():
    assert address_domain("not-an-address") == "***"
    assert address_domain("@example.com") == "***"


def test_redact_secret_short_values():
    assert redact_secret("12345678") == "***"
