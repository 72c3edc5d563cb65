"""Tests for SMTP message assembly and delivery."""
from __future__ import annotations

import smtplib
from unittest.mock import patch

import pytest

from expiry_notifier.mailer import Mailer, MailDeliveryError, OutboundMessage
from expiry_notifier.models import SmtpConfig

SMTP = SmtpConfig(host="smtp.contoso.com", port=587, username="relay", password="pw", from_email="it@contoso.com")


def _outbound(**overrides) -> OutboundMessage:
    values = dict(to=["alice@contoso.com"], subject="Reminder", body="Reset soon.")
    values.update(overrides)
    return OutboundMessage(**values)


class TestBuildMessage:
    def test_headers(self):
        message = Mailer(SMTP).build_message(_outbound(cc=["boss@contoso.com"]))

        assert message["From"] == "it@contoso.com"
        assert message["To"] == "alice@contoso.com"
        assert message["Cc"] == "boss@contoso.com"
        assert message["Disposition-Notification-To"] is None
        assert message.get_content().strip() == "Reset soon."

    def test_read_receipt_headers(self):
        message = Mailer(SMTP).build_message(_outbound(read_receipt=True))

        assert message["Disposition-Notification-To"] == "it@contoso.com"
        assert message["Return-Receipt-To"] == "it@contoso.com"


class TestSend:
    def test_starttls_login_and_send(self):
        with patch("expiry_notifier.mailer.smtplib.SMTP") as smtp_class:
            Mailer(SMTP).send(_outbound())

        server = smtp_class.return_value.__enter__.return_value
        smtp_class.assert_called_once_with("smtp.contoso.com", 587, timeout=30)
        smtp_class.return_value.starttls.assert_called_once()
        smtp_class.return_value.login.assert_called_once_with("relay", "pw")
        assert server.send_message.call_args.args[0]["Subject"] == "Reminder"

    def test_implicit_tls_port(self):
        config = SmtpConfig(host="smtp.contoso.com", port=465, from_email="it@contoso.com")
        with patch("expiry_notifier.mailer.smtplib.SMTP_SSL") as ssl_class:
            Mailer(config).send(_outbound())

        ssl_class.assert_called_once()

    def test_relay_error_is_wrapped(self):
        with patch(
            "expiry_notifier.mailer.smtplib.SMTP",
            side_effect=smtplib.SMTPConnectError(421, b"busy"),
        ):
            with pytest.raises(MailDeliveryError) as excinfo:
                Mailer(SMTP).send(_outbound())

        assert "alice@contoso.com" in str(excinfo.value)

    def test_no_recipients(self):
        with pytest.raises(MailDeliveryError):
            Mailer(SMTP).send(_outbound(to=[]))


class TestVerify:
    def test_success(self):
        with patch("expiry_notifier.mailer.smtplib.SMTP"):
            assert Mailer(SMTP).verify() is None

    def test_authentication_failure(self):
        with patch("expiry_notifier.mailer.smtplib.SMTP") as smtp_class:
            smtp_class.return_value.login.side_effect = smtplib.SMTPAuthenticationError(535, b"bad credentials")

            error = Mailer(SMTP).verify()

        assert error.startswith("SMTP authentication failed")

    def test_missing_host(self):
        assert "not configured" in Mailer(SmtpConfig()).verify()
