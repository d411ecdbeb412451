"""Tests for the email service (welcome email rendering + dispatch)."""

from datetime import datetime, timezone
from unittest.mock import patch

from myceo.services.email_service import send_email


def _welcome_context():
    return {
        "full_name": "Nia Parent",
        "email": "nia@example.com",
        "plan": "standard",
        "trial_ends_at": datetime(2026, 11, 2, tzinfo=timezone.utc),
        "login_url": "http://localhost:5173/login",
    }


class TestSendEmail:

    def test_disabled_sends_nothing(self, app):
        with patch("myceo.services.email_service.threading.Thread") as mock_thread:
            sent = send_email(
                to="nia@example.com",
                subject="Welcome to MyCEO!",
                template="emails/welcome.html",
                context=_welcome_context(),
            )
        assert sent is False
        mock_thread.assert_not_called()

    def test_enabled_renders_and_hands_off(self, app):
        app.config["MAIL_ENABLED"] = True
        try:
            with patch("myceo.services.email_service.threading.Thread") as mock_thread:
                sent = send_email(
                    to="nia@example.com",
                    subject="Welcome to MyCEO!",
                    template="emails/welcome.html",
                    context=_welcome_context(),
                )
        finally:
            app.config["MAIL_ENABLED"] = False

        assert sent is True
        mock_thread.return_value.start.assert_called_once()

        msg = mock_thread.call_args.kwargs["args"][1]
        assert msg["To"] == "nia@example.com"
        body = msg.get_payload()[0].get_payload(decode=True).decode()
        assert "Nia Parent" in body
        assert "Standard" in body
        assert "November 02, 2026" in body
