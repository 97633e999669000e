from dataclasses import dataclass
from typing import Optional

from rentalhub.config import Settings
from rentalhub.database import Database
from rentalhub.services.accounts import AccountStore
from rentalhub.services.auth import AuthService
from rentalhub.services.clock import Clock, utcnow
from rentalhub.services.devices import DeviceBroker, DeviceService
from rentalhub.services.email import GmailMailer, LoggingMailer, Mailer
from rentalhub.services.otp import OtpStore
from rentalhub.services.sessions import SessionStore
from rentalhub.services.tokens import AccessTokenManager, SessionTokenManager


@dataclass
class Services:
    """Process-scoped service graph, owned by the application factory."""

    settings: Settings
    database: Database
    access_tokens: AccessTokenManager
    session_tokens: SessionTokenManager
    sessions: SessionStore
    otp_store: OtpStore
    accounts: AccountStore
    auth: AuthService
    device_broker: DeviceBroker
    devices: DeviceService


def _default_mailer(settings: Settings, clock: Clock) -> Mailer:
    if settings.otp_email_sender:
        return GmailMailer(
            settings.otp_email_sender,
            token_file=settings.gmail_token_file,
            credentials_file=settings.gmail_credentials_file,
            clock=clock,
        )
    return LoggingMailer()


def build_services(
    settings: Settings,
    *,
    database: Optional[Database] = None,
    mailer: Optional[Mailer] = None,
    clock: Clock = utcnow,
) -> Services:
    database = database or Database(settings.database_url)
    access_tokens = AccessTokenManager(
        settings.resolved_access_token_key(),
        ttl_minutes=settings.access_token_ttl_minutes,
        clock=clock,
    )
    session_tokens = SessionTokenManager(settings.resolved_session_token_key(), clock=clock)
    sessions = SessionStore(
        database,
        session_tokens,
        ttl_hours=settings.session_ttl_hours,
        extension_hours=settings.session_extension_hours,
        clock=clock,
    )
    otp_store = OtpStore(
        database,
        ttl_minutes=settings.otp_expiry_minutes,
        code_length=settings.otp_length,
        max_attempts=settings.otp_max_attempts,
        resend_cooldown_seconds=settings.otp_resend_cooldown_seconds,
        clock=clock,
    )
    accounts = AccountStore(database, clock=clock)
    auth = AuthService(
        otp_store,
        accounts,
        access_tokens,
        sessions,
        mailer or _default_mailer(settings, clock),
        otp_ttl_minutes=settings.otp_expiry_minutes,
        otp_email_subject=settings.otp_email_subject,
        otp_debug=settings.otp_debug and settings.is_development,
    )
    broker = DeviceBroker(default_timeout_ms=settings.device_response_timeout_ms)
    return Services(
        settings=settings,
        database=database,
        access_tokens=access_tokens,
        session_tokens=session_tokens,
        sessions=sessions,
        otp_store=otp_store,
        accounts=accounts,
        auth=auth,
        device_broker=broker,
        devices=DeviceService(broker),
    )
