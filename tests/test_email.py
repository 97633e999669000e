import base64
import json
from datetime import timedelta

import pytest

from rentalhub.errors import NotificationDeliveryFailed
from rentalhub.services import email as email_module
from rentalhub.services.email import GmailMailer, RenderedEmail, _build_raw_message, render_otp_email
from rentalhub.services.otp import OtpType


def test_render_otp_email_mentions_code_and_purpose():
    message = render_otp_email("004211", OtpType.RESET_PASSWORD, 10, "Your code")
    assert message.subject == "Your code"
    assert "004211" in message.body
    assert "password reset" in message.body
    assert "10 minute" in message.body


def test_raw_message_is_base64url_rfc2822():
    raw = _build_raw_message("from@x.test", "to@y.test", RenderedEmail("Hi", "Body"))
    decoded = base64.urlsafe_b64decode(raw).decode("utf-8")
    assert decoded.startswith("From: from@x.test\r\nTo: to@y.test\r\nSubject: Hi")
    assert decoded.endswith("\r\n\r\nBody")


def test_gmail_without_sender_fails_fast():
    with pytest.raises(NotificationDeliveryFailed) as excinfo:
        GmailMailer("").send("to@y.test", RenderedEmail("Hi", "Body"))
    assert excinfo.value.service == "gmail"


def test_gmail_missing_token_file(tmp_path):
    mailer = GmailMailer("from@x.test", token_file=str(tmp_path / "token.json"))
    with pytest.raises(NotificationDeliveryFailed):
        mailer.send("to@y.test", RenderedEmail("Hi", "Body"))


def test_gmail_token_without_refresh_token(tmp_path):
    token_file = tmp_path / "token.json"
    token_file.write_text(json.dumps({"token": "expired", "expiry": "2000-01-01T00:00:00Z"}))
    mailer = GmailMailer("from@x.test", token_file=str(token_file))
    with pytest.raises(NotificationDeliveryFailed, match="refresh token"):
        mailer.send("to@y.test", RenderedEmail("Hi", "Body"))


class _Response:
    def __init__(self, payload):
        self._payload = payload

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        return False

    def read(self):
        return json.dumps(self._payload).encode("utf-8")


@pytest.fixture
def gmail_requests(monkeypatch):
    requests = []

    def fake_urlopen(request, timeout=None):
        requests.append(request)
        if request.full_url == email_module.DEFAULT_TOKEN_URI:
            return _Response({"access_token": "fresh-token", "expires_in": 3600})
        return _Response({"id": "msg-1"})

    monkeypatch.setattr(email_module, "urlopen", fake_urlopen)
    return requests


def test_gmail_uses_cached_token_while_clock_says_valid(tmp_path, clock, gmail_requests):
    token_file = tmp_path / "token.json"
    expiry = clock() + timedelta(minutes=30)
    token_file.write_text(json.dumps({"token": "cached-token", "expiry": expiry.isoformat()}))
    mailer = GmailMailer("from@x.test", token_file=str(token_file), clock=clock)

    mailer.send("to@y.test", RenderedEmail("Hi", "Body"))

    (request,) = gmail_requests
    assert request.full_url == email_module.GMAIL_SEND_ENDPOINT
    assert request.get_header("Authorization") == "Bearer cached-token"


def test_gmail_refreshes_when_clock_passes_expiry(tmp_path, clock, gmail_requests):
    token_file = tmp_path / "token.json"
    token_file.write_text(
        json.dumps(
            {
                "token": "cached-token",
                "expiry": (clock() + timedelta(minutes=30)).isoformat(),
                "refresh_token": "refresh-me",
                "client_id": "client",
                "client_secret": "secret",
            }
        )
    )
    mailer = GmailMailer("from@x.test", token_file=str(token_file), clock=clock)
    clock.advance(minutes=29, seconds=30)

    mailer.send("to@y.test", RenderedEmail("Hi", "Body"))

    refresh, send = gmail_requests
    assert refresh.full_url == email_module.DEFAULT_TOKEN_URI
    assert send.get_header("Authorization") == "Bearer fresh-token"
    stored = json.loads(token_file.read_text())
    assert stored["token"] == "fresh-token"
    assert stored["expiry"] == (clock() + timedelta(seconds=3600)).isoformat()
