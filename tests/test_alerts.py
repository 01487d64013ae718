from dataclasses import replace

from cdr import alerts
from cdr.models import ConvergenceRecord, Outcome, Phase


def _failed():
    return ConvergenceRecord(
        revision=7,
        started_at="2026-01-01T00:00:00Z",
        completed_at="2026-01-01T00:01:00Z",
        outcome=Outcome.FAILED,
        phase=Phase.FAILED,
        reason="create web-r7-0: quota exceeded",
        attempts=2,
    )


def test_disabled_by_default():
    assert alerts.notify_revision_failed("web", _failed()) is False


def test_sends_failure_email_when_configured(monkeypatch):
    sent = []

    class FakeSMTP:
        def __init__(self, host, port, timeout=None):
            self.host, self.port = host, port

        def starttls(self):
            pass

        def login(self, user, password):
            pass

        def sendmail(self, sender, to, msg):
            sent.append((sender, to, msg))

        def quit(self):
            pass

    monkeypatch.setattr(alerts.smtplib, "SMTP", FakeSMTP)
    monkeypatch.setattr(
        alerts,
        "settings",
        replace(
            alerts.settings,
            enable_email=True,
            smtp_user="bot",
            smtp_password="pw",
            email_from="cdr@example.com",
            email_to="ops@example.com",
        ),
    )

    assert alerts.notify_revision_failed("web", _failed()) is True
    (sender, to, msg) = sent[0]
    assert sender == "cdr@example.com"
    assert to == ["ops@example.com"]
    assert "DEPLOY FAILED: web revision 7" in msg
    assert "quota exceeded" in msg


def test_smtp_errors_do_not_raise(monkeypatch):
    def boom(*a, **kw):
        raise OSError("connection refused")

    monkeypatch.setattr(alerts.smtplib, "SMTP", boom)
    monkeypatch.setattr(
        alerts,
        "settings",
        replace(alerts.settings, enable_email=True, smtp_user="u", smtp_password="p", email_from="a@x", email_to="b@x"),
    )
    assert alerts.send_email("s", "b") is False
