"""Tests for the SMTP email gateway with smtplib stubbed out."""

import smtplib

import pytest

from onboarding.service import email as email_module
from onboarding.service.email import EmailService


class FakeSMTP:
    instances: list = []
    fail_with: Exception | None = None
    noop_code = 250

    def __init__(self, host, port, timeout=None, context=None):
        self.host = host
        self.port = port
        self.started_tls = False
        self.logged_in = None
        self.messages = []
        FakeSMTP.instances.append(self)

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def starttls(self, context=None):
        self.started_tls = True

    def login(self, user, password):
        self.logged_in = (user, password)

    def sendmail(self, sender, recipient, message):
        if FakeSMTP.fail_with is not None:
            raise FakeSMTP.fail_with
        self.messages.append((sender, recipient, message))

    def noop(self):
        return FakeSMTP.noop_code, b"OK"

    def close(self):
        pass


@pytest.fixture
def fake_smtp(monkeypatch):
    FakeSMTP.instances = []
    FakeSMTP.fail_with = None
    FakeSMTP.noop_code = 250
    monkeypatch.setattr(email_module.smtplib, "SMTP", FakeSMTP)
    monkeypatch.setattr(email_module.smtplib, "SMTP_SSL", FakeSMTP)
    return FakeSMTP


@pytest.fixture
def configured():
    return EmailService(
        smtp_host="smtp.example.com",
        smtp_port=587,
        smtp_user="mailer",
        smtp_password="pw",
        from_email="no-reply@example.com",
        base_url="https://app.example.com/",
    )


class TestDevMode:
    def test_unconfigured_service_logs_and_reports_success(self, fake_smtp):
        service = EmailService()
        assert not service.is_configured
        assert service.send_verification_email("a@x.com", "Ann", "123456") is True
        assert service.verify_connection() is True
        assert fake_smtp.instances == []


class TestSending:
    def test_verification_email_carries_code_and_link(self, fake_smtp, configured):
        assert configured.send_verification_email("a@x.com", "Ann", "123456") is True
        server = fake_smtp.instances[-1]
        assert server.started_tls
        assert server.logged_in == ("mailer", "pw")
        sender, recipient, message = server.messages[0]
        assert (sender, recipient) == ("no-reply@example.com", "a@x.com")
        assert "123456" in message
        assert "https://app.example.com/api/auth/verify/123456" in message

    def test_reset_email_carries_raw_token(self, fake_smtp, configured):
        assert configured.send_password_reset_email("a@x.com", "Ann", "f" * 64) is True
        assert "token=" + "f" * 64 in fake_smtp.instances[-1].messages[0][2]

    def test_welcome_email(self, fake_smtp, configured):
        assert configured.send_welcome_email("a@x.com", "Ann") is True

    @pytest.mark.parametrize(
        "error",
        [
            smtplib.SMTPRecipientsRefused({"a@x.com": (550, b"no such user")}),
            smtplib.SMTPException("boom"),
            TimeoutError("slow"),
        ],
    )
    def test_transport_errors_return_false(self, fake_smtp, configured, error):
        fake_smtp.fail_with = error
        assert configured.send_welcome_email("a@x.com", "Ann") is False


class TestVerifyConnection:
    def test_healthy_server(self, fake_smtp, configured):
        assert configured.verify_connection() is True

    def test_unexpected_noop_reply(self, fake_smtp, configured):
        fake_smtp.noop_code = 421
        assert configured.verify_connection() is False

    def test_unreachable_server(self, monkeypatch, configured):
        def refuse(*args, **kwargs):
            raise ConnectionRefusedError("refused")

        monkeypatch.setattr(email_module.smtplib, "SMTP", refuse)
        assert configured.verify_connection() is False

    def test_redacts_addresses_for_logs(self, configured):
        assert configured._redact_email("anna@x.com") == "an***@x.com"
        assert configured._redact_email("nonsense") == "redacted"
