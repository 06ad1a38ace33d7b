import smtplib

import pytest

from authkernel.logging import _redact_sensitive
from authkernel.service import email as email_module
from authkernel.service.email import EmailService
from authkernel.service.errors import DispatchFailedError


class RecordingSMTP:
    instances = []

    def __init__(self, host, port, timeout=None):
        self.host = host
        self.port = port
        self.sent = []
        self.logged_in = None
        RecordingSMTP.instances.append(self)

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def starttls(self, context=None):
        pass

    def login(self, user, password):
        self.logged_in = (user, password)

    def sendmail(self, from_addr, to_addr, message):
        self.sent.append((from_addr, to_addr, message))


class RefusingSMTP(RecordingSMTP):
    def sendmail(self, from_addr, to_addr, message):
        raise smtplib.SMTPRecipientsRefused({to_addr: (550, b"no such user")})


def test_unconfigured_service_logs_instead_of_sending():
    service = EmailService()

    assert service.is_configured is False
    service.dispatch_verification_code("user@example.com", "123456", 10)


def test_verification_code_sent_over_smtp(monkeypatch):
    RecordingSMTP.instances = []
    monkeypatch.setattr(smtplib, "SMTP", RecordingSMTP)
    service = EmailService(
        smtp_host="smtp.example.com",
        smtp_user="mailer",
        smtp_password="pw",
        from_email="noreply@example.com",
    )

    service.dispatch_verification_code("user@example.com", "482913", 10)

    smtp = RecordingSMTP.instances[0]
    assert smtp.logged_in == ("mailer", "pw")
    from_addr, to_addr, message = smtp.sent[0]
    assert from_addr == "noreply@example.com"
    assert to_addr == "user@example.com"
    assert "482913" in message


def test_refused_recipient_raises_dispatch_failed(monkeypatch):
    monkeypatch.setattr(smtplib, "SMTP", RefusingSMTP)
    service = EmailService(smtp_host="smtp.example.com", from_email="noreply@example.com")

    with pytest.raises(DispatchFailedError) as excinfo:
        service.dispatch_password_reset("user@example.com", "https://app/reset?token=t", 60)

    assert excinfo.value.error_code == "email_cannot_be_sent"
    assert excinfo.value.detail == {"reason": "recipient_refused"}


def test_connection_error_raises_dispatch_failed(monkeypatch):
    def unreachable(*args, **kwargs):
        raise ConnectionRefusedError("connection refused")

    monkeypatch.setattr(smtplib, "SMTP", unreachable)
    service = EmailService(smtp_host="smtp.example.com", from_email="noreply@example.com")

    with pytest.raises(DispatchFailedError):
        service.dispatch_verification_code("user@example.com", "123456", 10)


class RecordingLogger:
    def __init__(self):
        self.entries = []

    def _record(self, event, **kw):
        self.entries.append({"event": event, **kw})

    info = warning = error = _record


def test_dev_mode_log_keeps_credentials_out(monkeypatch):
    recorder = RecordingLogger()
    monkeypatch.setattr(email_module, "logger", recorder)
    service = EmailService()

    service.dispatch_verification_code("user@example.com", "482913", 10)
    service.dispatch_password_reset(
        "user@example.com", "https://app.example/reset?token=deadbeefcafef00d", 60
    )

    rendered = [str(_redact_sensitive(None, "info", entry)) for entry in recorder.entries]
    assert len(rendered) == 2
    for line in rendered:
        assert "482913" not in line
        assert "deadbeefcafef00d" not in line
        assert "user@example.com" not in line


def test_redact_address():
    assert EmailService._redact_address("someone@example.com") == "so***@example.com"
    assert EmailService._redact_address("not-an-address") == "redacted"
