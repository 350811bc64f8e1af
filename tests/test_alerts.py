import dataclasses

from shr import alerts


class FakeSMTP:
    sent: list[tuple[str, list[str], str]] = []

    def __init__(self, host, port, timeout=None):
        self.host = host
        self.port = port

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def starttls(self):
        pass

    def login(self, user, password):
        pass

    def sendmail(self, sender, to, msg):
        FakeSMTP.sent.append((sender, to, msg))


def test_disabled_by_default(settings):
    assert alerts.notify_restart(settings, "myapp", "http://127.0.0.1:1/health", "down", True) is False


def test_restart_alert(settings, monkeypatch):
    FakeSMTP.sent = []
    monkeypatch.setattr(alerts.smtplib, "SMTP", FakeSMTP)
    s = dataclasses.replace(
        settings,
        enable_email=True,
        smtp_user="u",
        smtp_password="p",
        email_from="shr@example.com",
        email_to="ops@example.com",
    )
    assert alerts.notify_restart(s, "myapp", "http://127.0.0.1:1/health", "3 probe attempts failed", False) is True
    sender, to, msg = FakeSMTP.sent[0]
    assert to == ["ops@example.com"]
    assert "RESTART FAILED: myapp" in msg
    assert "3 probe attempts failed" in msg
