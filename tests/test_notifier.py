import smtplib
from types import SimpleNamespace

import requests

import notifier as notifier_module
from notifier import Notifier


def _no_email():
    return dict(email_address="", email_password="", email_receiver="")


def test_send_without_webhook_is_skipped(monkeypatch):
    def _fail(*_a, **_k):
        raise AssertionError("requests.post should not be called")

    monkeypatch.setattr(notifier_module.requests, "post", _fail)
    assert Notifier(webhook_url="", **_no_email()).send("title", "message") is False


def test_send_posts_embed(monkeypatch):
    calls = []

    def _post(url, json, timeout):
        calls.append((url, json))
        return SimpleNamespace(raise_for_status=lambda: None)

    monkeypatch.setattr(notifier_module.requests, "post", _post)
    sent = Notifier(webhook_url="https://hooks.test/x", bot_name="Fib Supervisor", **_no_email()).send(
        "SOL crashed", "Exit code 1", "warning"
    )

    assert sent is True
    url, body = calls[0]
    assert url == "https://hooks.test/x"
    assert body["username"] == "Fib Supervisor"
    embed = body["embeds"][0]
    assert embed["title"] == "SOL crashed"
    assert embed["color"] == 15105570


def test_webhook_errors_are_logged_not_raised(monkeypatch, caplog):
    def _post(*_a, **_k):
        raise requests.ConnectionError("down")

    monkeypatch.setattr(notifier_module.requests, "post", _post)
    assert Notifier(webhook_url="https://hooks.test/x", **_no_email()).send("t", "m") is False
    assert any("Error sending webhook notification" in rec.message for rec in caplog.records)


def test_error_level_sends_email(monkeypatch):
    sent = []

    class FakeSMTP:
        def __init__(self, host, port, timeout):
            sent.append(("connect", host, port))

        def starttls(self):
            pass

        def login(self, user, password):
            sent.append(("login", user))

        def send_message(self, msg):
            sent.append(("send", msg["Subject"]))

        def __enter__(self):
            return self

        def __exit__(self, *exc):
            sent.append(("close",))
            return False

    monkeypatch.setattr(notifier_module.smtplib, "SMTP", FakeSMTP)
    n = Notifier(webhook_url="", email_address="bot@x", email_password="pw", email_receiver="ops@x")

    n.send("DOGE FAILED", "Manual intervention required.", "warning")
    assert sent == []

    n.send("DOGE FAILED", "Manual intervention required.", "error")
    assert ("login", "bot@x") in sent
    assert ("send", "DOGE FAILED") in sent


def test_email_connection_closed_when_login_fails(monkeypatch, caplog):
    calls = []

    class FakeSMTP:
        def __init__(self, host, port, timeout):
            calls.append("connect")

        def starttls(self):
            pass

        def login(self, user, password):
            raise smtplib.SMTPAuthenticationError(535, b"bad credentials")

        def send_message(self, msg):
            calls.append("send")

        def __enter__(self):
            return self

        def __exit__(self, *exc):
            calls.append("close")
            return False

    monkeypatch.setattr(notifier_module.smtplib, "SMTP", FakeSMTP)
    n = Notifier(webhook_url="", email_address="bot@x", email_password="pw", email_receiver="ops@x")

    n.send("SOL FAILED", "Restart limit reached.", "error")

    assert calls == ["connect", "close"]
    assert "Email sending failed" in caplog.text
