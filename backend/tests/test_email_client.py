"""
Unit Tests for the Resend Email Client

Run with: pytest tests/test_email_client.py -v
"""

import resend

from email_integration import EmailClient, EmailStatus


class TestEmailClient:

    def test_not_ready_without_configuration(self):
        client = EmailClient(api_key="", from_address="")

        result = client.send(to="a@example.org", subject="Hi", text="Hello")

        assert not client.is_ready()
        assert result.success is False
        assert "EMAIL_API_KEY" in result.error

    def test_send(self, monkeypatch):
        sent = []

        def fake_send(params):
            sent.append(params)
            return {"id": "re_123"}

        monkeypatch.setattr(resend.Emails, "send", fake_send)
        client = EmailClient(api_key="re_test_key", from_address="lodges@example.org")

        result = client.send(to="a@example.org", subject="Reset", text="plain", html="<p>html</p>")

        assert result.success is True
        assert result.status == EmailStatus.SENT
        assert result.provider_message_id == "re_123"
        assert sent[0]["to"] == ["a@example.org"]
        assert sent[0]["from"] == "lodges@example.org"
        assert sent[0]["html"] == "<p>html</p>"

    def test_provider_error_returned_not_raised(self, monkeypatch):
        def failing_send(params):
            raise resend.exceptions.ResendError(
                code=500, error_type="application_error", message="down", suggested_action="retry"
            )

        monkeypatch.setattr(resend.Emails, "send", failing_send)
        client = EmailClient(api_key="re_test_key", from_address="lodges@example.org")

        result = client.send(to="a@example.org", subject="Reset", text="plain")

        assert result.success is False
        assert result.status == EmailStatus.FAILED
