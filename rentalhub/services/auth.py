import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from rentalhub.errors import (
    AppError,
    ConflictError,
    NotFoundError,
    NotificationDeliveryFailed,
)
from rentalhub.services.accounts import AccountStore, RegistrationData, RegistrationResult
from rentalhub.services.email import Mailer, render_otp_email
from rentalhub.services.otp import OtpStore, OtpType
from rentalhub.services.sessions import IssuedSession, SessionStore
from rentalhub.services.tokens import AccessTokenManager

LOGGER = logging.getLogger(__name__)

UNKNOWN_DEVICE = "unknown"


@dataclass(frozen=True)
class SentOtp:
    otp_id: str
    expires_at: datetime


@dataclass(frozen=True)
class LoginResult:
    access_token: str
    token_expires_at: datetime
    session_token: Optional[str]
    session_expires_at: Optional[datetime]


class AuthService:
    """OTP login and registration flows; hands off to the token managers."""

    def __init__(
        self,
        otp_store: OtpStore,
        accounts: AccountStore,
        access_tokens: AccessTokenManager,
        sessions: SessionStore,
        mailer: Mailer,
        *,
        otp_ttl_minutes: int = 10,
        otp_email_subject: str = "Your RentalHub verification code",
        otp_debug: bool = False,
    ) -> None:
        self._otp_store = otp_store
        self._accounts = accounts
        self._access_tokens = access_tokens
        self._sessions = sessions
        self._mailer = mailer
        self._otp_ttl_minutes = otp_ttl_minutes
        self._otp_email_subject = otp_email_subject
        self._otp_debug = otp_debug

    def send_otp(
        self, email: str, purpose: OtpType, ip_address: Optional[str] = None
    ) -> SentOtp:
        record = self._otp_store.request_otp(email, purpose, ip_address=ip_address)
        if self._otp_debug:
            LOGGER.warning("[OTP debug] purpose=%s id=%s code=%s", int(purpose), record.id, record.code)
        message = render_otp_email(
            record.code, purpose, self._otp_ttl_minutes, self._otp_email_subject
        )
        try:
            self._mailer.send(email, message)
        except NotificationDeliveryFailed:
            LOGGER.error("OTP delivery failed for otp_id=%s", record.id)
            self._discard_undelivered(record.id)
            raise
        except Exception as exc:
            LOGGER.exception("Mailer raised unexpectedly for otp_id=%s", record.id)
            self._discard_undelivered(record.id)
            raise NotificationDeliveryFailed("Mailer raised unexpectedly") from exc
        LOGGER.info("OTP sent otp_id=%s purpose=%s", record.id, int(purpose))
        return SentOtp(otp_id=record.id, expires_at=record.expires_at)

    def _discard_undelivered(self, otp_id: str) -> None:
        # an undelivered code must not hold the resend cooldown
        try:
            self._otp_store.discard(otp_id)
        except AppError as exc:
            LOGGER.error("Could not discard undelivered otp_id=%s: %s", otp_id, exc.message)

    def verify_otp(self, email: str, code: str, purpose: OtpType) -> str:
        otp_id = self._otp_store.verify_otp(email, code, purpose)
        LOGGER.info("OTP verified otp_id=%s purpose=%s", otp_id, int(purpose))
        return otp_id

    def login_with_otp(
        self,
        email: str,
        code: str,
        purpose: OtpType,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        *,
        device_id: Optional[str] = None,
        device_name: Optional[str] = None,
    ) -> LoginResult:
        otp_id = self._otp_store.consume_otp(email, code, purpose)
        LOGGER.info("OTP consumed for login otp_id=%s purpose=%s", otp_id, int(purpose))
        principal = self._accounts.get_principal_by_email(email)
        if principal is None:
            raise NotFoundError("No user registered for this email", public_message="User not found")

        access = self._access_tokens.issue(principal)
        session: Optional[IssuedSession] = None
        try:
            session = self._sessions.create_session(
                principal.user_id,
                device_id or UNKNOWN_DEVICE,
                ip_address,
                device_name=device_name,
                user_agent=user_agent,
            )
        except AppError as exc:
            # access-token-only operation is acceptable; the login still succeeds
            LOGGER.error(
                "Session creation failed during login for user_id=%s: %s",
                principal.user_id,
                exc.message,
            )
        LOGGER.info("Login succeeded user_id=%s business_id=%s", principal.user_id, principal.business_id)
        return LoginResult(
            access_token=access.token,
            token_expires_at=access.expires_at,
            session_token=session.session_token if session else None,
            session_expires_at=session.expires_at if session else None,
        )

    def complete_registration(self, data: RegistrationData) -> RegistrationResult:
        if self._accounts.email_exists(data.business_email):
            raise ConflictError("Business email already registered")
        if self._accounts.email_exists(data.owner_email):
            raise ConflictError("Owner email already registered")
        return self._accounts.register_business_with_owner(data)

    def logout(self, user_id: int, session_token: Optional[str] = None) -> bool:
        """Invalidate the presented session, or every session of the user."""
        if session_token:
            return self._sessions.invalidate_session(session_token, user_id=user_id)
        return self._sessions.invalidate_user_sessions(user_id) > 0

    def extend_session(self, user_id: int, session_token: str) -> IssuedSession:
        return self._sessions.extend_session(user_id, session_token)
