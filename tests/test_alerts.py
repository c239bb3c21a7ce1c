import smtplib

from dorc import alerts
from dorc.models import Phase, Service
from dorc.settings import Settings

EMAIL = dict(
    enable_email=True,
    smtp_host="smtp.local",
    smtp_port=587,
    smtp_user="bot",
    smtp_password="pw",
    email_from="dorc@local",
    email_to="oncall@local",
)


class FakeSMTP:
    sent = []

    def __init__(self, host, port):
        self.host = host
        self.port = port

    def starttls(self):
        pass

    def login(self, user, password):
        pass

    def sendmail(self, sender, recipients, body):
        FakeSMTP.sent.append((sender, recipients, body))

    def quit(self):
        pass


def test_disabled_by_default(monkeypatch):
    monkeypatch.setattr(alerts, "settings", Settings(enable_email=False))
    assert alerts.send_email("subject", "body") is False


def test_rollback_alert(monkeypatch):
    FakeSMTP.sent = []
    monkeypatch.setattr(alerts, "settings", Settings(**EMAIL))
    monkeypatch.setattr(alerts.smtplib, "SMTP", FakeSMTP)
    svc = Service("web", current_revision="r1", phase=Phase.COMMITTED)
    assert alerts.rollout_outcome(svc, "r2", "EssentialContainerError: app is UNHEALTHY") is True
    sender, recipients, body = FakeSMTP.sent[0]
    assert recipients == ["oncall@local"]
    assert "ROLLED BACK: web stays on r1" in body
    assert "Attempted revision: r2" in body


def test_failed_alert_subject(monkeypatch):
    FakeSMTP.sent = []
    monkeypatch.setattr(alerts, "settings", Settings(**EMAIL))
    monkeypatch.setattr(alerts.smtplib, "SMTP", FakeSMTP)
    alerts.rollout_outcome(Service("web", phase=Phase.FAILED), "r1", None)
    assert "FAILED: web needs operator action" in FakeSMTP.sent[0][2]


def test_smtp_errors_are_reported_not_raised(monkeypatch):
    def refuse(host, port):
        raise smtplib.SMTPConnectError(421, "busy")

    monkeypatch.setattr(alerts, "settings", Settings(**EMAIL))
    monkeypatch.setattr(alerts.smtplib, "SMTP", refuse)
    assert alerts.send_email("subject", "body") is False
