from __future__ import annotations

import base64
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Optional, Protocol
from urllib.error import HTTPError, URLError
from urllib.parse import urlencode
from urllib.request import Request, urlopen

from rentalhub.errors import NotificationDeliveryFailed
from rentalhub.services.clock import Clock, as_utc, utcnow
from rentalhub.services.otp import OtpType

LOGGER = logging.getLogger(__name__)

GMAIL_SEND_ENDPOINT = "https://gmail.googleapis.com/gmail/v1/users/me/messages/send"
DEFAULT_TOKEN_URI = "https://oauth2.googleapis.com/token"

_PURPOSE_LABELS = {
    OtpType.LOGIN: "sign in",
    OtpType.REGISTER: "registration",
    OtpType.RESET_PASSWORD: "password reset",
    OtpType.VERIFY_EMAIL: "email verification",
    OtpType.VERIFY_PHONE: "phone verification",
}


@dataclass(frozen=True)
class RenderedEmail:
    subject: str
    body: str


class Mailer(Protocol):
    def send(self, to_email: str, message: RenderedEmail) -> None: ...


def render_otp_email(
    code: str, purpose: OtpType, ttl_minutes: int, subject: str
) -> RenderedEmail:
    label = _PURPOSE_LABELS.get(OtpType(purpose), "verification")
    body = (
        f"Your RentalHub verification code is {code}.\n\n"
        f"It expires in {max(1, ttl_minutes)} minute(s).\n"
        f"Requested for {label}.\n\n"
        "If you did not request this code, you can ignore this email."
    )
    return RenderedEmail(subject=subject, body=body)


class LoggingMailer:
    """Development mailer: records the destination and never delivers."""

    def send(self, to_email: str, message: RenderedEmail) -> None:
        LOGGER.info("Email delivery skipped (dev mailer) to=%s subject=%s", to_email, message.subject)

class GmailMailer:
    """Sends through the Gmail API with an OAuth token cached in ``token_file``."""

    def __init__(
        self,
        sender: str,
        token_file: str = "",
        credentials_file: str = "",
        clock: Clock = utcnow,
    ) -> None:
        self._sender = sender
        self._token_path = Path(token_file) if token_file else Path("credentials") / "token.json"
        self._credentials_path = (
            Path(credentials_file) if credentials_file else Path("credentials") / "credentials.json"
        )
        self._clock = clock

    def send(self, to_email: str, message: RenderedEmail) -> None:
        if not self._sender:
            raise NotificationDeliveryFailed("OTP email sender is not configured", service="gmail")
        raw_message = _build_raw_message(self._sender, to_email, message)
        self._post(
            Request(
                GMAIL_SEND_ENDPOINT,
                data=json.dumps({"raw": raw_message}).encode("utf-8"),
                headers={
                    "Authorization": f"Bearer {self._get_access_token()}",
                    "Content-Type": "application/json",
                },
                method="POST",
            ),
            "send",
        )

    def _get_access_token(self) -> str:
        token_data = _load_json(self._token_path)
        token = token_data.get("token")
        expiry = _parse_expiry(token_data.get("expiry"))
        # refresh a minute before the cached token lapses
        if token and expiry and expiry > self._clock() + timedelta(minutes=1):
            return token

        refresh_token = token_data.get("refresh_token")
        if not refresh_token:
            raise NotificationDeliveryFailed("Gmail refresh token is missing", service="gmail")
        client_id, client_secret = self._client_details(token_data)
        data = self._post(
            Request(
                token_data.get("token_uri") or DEFAULT_TOKEN_URI,
                data=urlencode(
                    {
                        "client_id": client_id,
                        "client_secret": client_secret,
                        "refresh_token": refresh_token,
                        "grant_type": "refresh_token",
                    }
                ).encode("utf-8"),
                method="POST",
            ),
            "token refresh",
        )
        access_token = data.get("access_token")
        if not access_token:
            raise NotificationDeliveryFailed("Gmail token refresh returned no access token", service="gmail")
        expires_in = int(data.get("expires_in", 3600))
        token_data["token"] = access_token
        token_data["expiry"] = (self._clock() + timedelta(seconds=expires_in)).isoformat()
        self._token_path.write_text(json.dumps(token_data), encoding="utf-8")
        return access_token

    def _client_details(self, token_data: dict[str, Any]) -> tuple[str, str]:
        if token_data.get("client_id") and token_data.get("client_secret"):
            return token_data["client_id"], token_data["client_secret"]
        credentials = _load_json(self._credentials_path)
        installed = credentials.get("installed", credentials)
        client_id, client_secret = installed.get("client_id"), installed.get("client_secret")
        if not client_id or not client_secret:
            raise NotificationDeliveryFailed("Gmail client credentials are missing", service="gmail")
        return client_id, client_secret

    def _post(self, request: Request, action: str) -> dict[str, Any]:
        try:
            with urlopen(request, timeout=10) as response:
                body = response.read()
        except HTTPError as exc:
            LOGGER.error("Gmail %s error: %s", action, exc.read().decode("utf-8", errors="replace"))
            raise NotificationDeliveryFailed(f"Gmail {action} was rejected", service="gmail") from exc
        except URLError as exc:
            raise NotificationDeliveryFailed(f"Failed to reach Gmail for {action}", service="gmail") from exc
        return json.loads(body.decode("utf-8")) if body else {}


def _build_raw_message(sender: str, recipient: str, message: RenderedEmail) -> str:
    lines = [
        f"From: {sender}",
        f"To: {recipient}",
        f"Subject: {message.subject}",
        "MIME-Version: 1.0",
        "Content-Type: text/plain; charset=utf-8",
        "",
        message.body,
    ]
    # base64url-encoded RFC 2822 content
    return base64.urlsafe_b64encode("\r\n".join(lines).encode("utf-8")).decode("ascii")


def _parse_expiry(raw_value: Optional[str]) -> Optional[datetime]:
    if not raw_value:
        return None
    try:
        parsed = datetime.fromisoformat(raw_value.replace("Z", "+00:00"))
    except ValueError:
        return None
    return as_utc(parsed)


def _load_json(path: Path) -> dict[str, Any]:
    if not path.exists():
        raise NotificationDeliveryFailed(f"Missing Gmail file: {path}", service="gmail")
    return json.loads(path.read_text(encoding="utf-8"))
