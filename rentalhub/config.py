import logging
import os
from dataclasses import dataclass, field

from dotenv import load_dotenv

LOGGER = logging.getLogger(__name__)

DEV_ACCESS_TOKEN_KEY = "dev-only-insecure-access-key-do-not-use-in-prod"
DEV_SESSION_TOKEN_KEY = "dev-only-insecure-session-key-do-not-use-in-prod"


def _env_bool(name: str, default: bool = False) -> bool:
    raw_value = os.getenv(name)
    if raw_value is None:
        return default
    return raw_value.strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_list(name: str, default: str = "") -> tuple[str, ...]:
    raw_value = os.getenv(name, default)
    return tuple(item.strip() for item in raw_value.split(",") if item.strip())


def _build_database_url(raw_url: str) -> str:
    if raw_url.startswith("postgresql://"):
        return raw_url.replace("postgresql://", "postgresql+psycopg://", 1)
    return raw_url


@dataclass(frozen=True)
class Settings:
    environment: str = "development"
    database_url: str = ""
    access_token_key: str = ""
    session_token_key: str = ""
    access_token_ttl_minutes: int = 15
    session_ttl_hours: int = 1
    session_extension_hours: int = 1
    otp_expiry_minutes: int = 10
    otp_length: int = 6
    otp_max_attempts: int = 5
    otp_resend_cooldown_seconds: int = 30
    otp_debug: bool = False
    device_response_timeout_ms: int = 10000
    token_transport: str = "header"
    cors_origins: tuple[str, ...] = field(default_factory=tuple)
    log_level: str = "INFO"
    otp_email_sender: str = ""
    otp_email_subject: str = "Your RentalHub verification code"
    gmail_token_file: str = ""
    gmail_credentials_file: str = ""

    @classmethod
    def from_env(cls) -> "Settings":
        load_dotenv(override=True)
        return cls(
            environment=os.getenv("APP_ENV", "development").strip().lower(),
            database_url=_build_database_url(os.getenv("DATABASE_URL", "")),
            access_token_key=os.getenv("ACCESS_TOKEN_KEY", ""),
            session_token_key=os.getenv("SESSION_TOKEN_KEY", ""),
            access_token_ttl_minutes=int(os.getenv("ACCESS_TOKEN_TTL_MINUTES", "15")),
            session_ttl_hours=int(os.getenv("SESSION_TTL_HOURS", "1")),
            session_extension_hours=int(os.getenv("SESSION_EXTENSION_HOURS", "1")),
            otp_expiry_minutes=int(os.getenv("OTP_EXPIRY_MINUTES", "10")),
            otp_length=int(os.getenv("OTP_LENGTH", "6")),
            otp_max_attempts=int(os.getenv("OTP_MAX_ATTEMPTS", "5")),
            otp_resend_cooldown_seconds=int(
                os.getenv("OTP_RESEND_COOLDOWN_SECONDS", "30")
            ),
            otp_debug=_env_bool("OTP_DEBUG", False),
            device_response_timeout_ms=int(
                os.getenv("DEVICE_RESPONSE_TIMEOUT_MS", "10000")
            ),
            token_transport=os.getenv("TOKEN_TRANSPORT", "header").strip().lower(),
            cors_origins=_env_list("CORS_ORIGINS", "http://localhost:5173"),
            log_level=os.getenv("LOG_LEVEL", "INFO").strip().upper(),
            otp_email_sender=(
                os.getenv("OTP_EMAIL_SENDER") or os.getenv("GMAIL_SENDER", "")
            ),
            otp_email_subject=os.getenv(
                "OTP_EMAIL_SUBJECT", "Your RentalHub verification code"
            ),
            gmail_token_file=os.getenv("GMAIL_TOKEN_FILE", ""),
            gmail_credentials_file=os.getenv(
                "GMAIL_CREDENTIALS_FILE", os.getenv("GOOGLE_SERVICE_ACCOUNT_FILE", "")
            ),
        )

    @property
    def is_development(self) -> bool:
        return self.environment == "development"

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    def validate(self) -> None:
        """Fail fast on configuration that must never reach a running server."""
        if self.token_transport not in {"header", "cookie"}:
            raise RuntimeError(
                f"TOKEN_TRANSPORT must be 'header' or 'cookie', got {self.token_transport!r}"
            )
        if not self.database_url:
            raise RuntimeError("DATABASE_URL is not configured")
        if self.is_development:
            return
        missing = [
            name
            for name, value in (
                ("ACCESS_TOKEN_KEY", self.access_token_key),
                ("SESSION_TOKEN_KEY", self.session_token_key),
            )
            if not value
        ]
        if missing:
            raise RuntimeError(
                f"Missing required token keys for {self.environment}: {', '.join(missing)}"
            )
        if self.access_token_key == self.session_token_key:
            raise RuntimeError("ACCESS_TOKEN_KEY and SESSION_TOKEN_KEY must differ")

    def resolved_access_token_key(self) -> str:
        if self.access_token_key:
            return self.access_token_key
        LOGGER.warning("ACCESS_TOKEN_KEY not set, using the development-only key")
        return DEV_ACCESS_TOKEN_KEY

    def resolved_session_token_key(self) -> str:
        if self.session_token_key:
            return self.session_token_key
        LOGGER.warning("SESSION_TOKEN_KEY not set, using the development-only key")
        return DEV_SESSION_TOKEN_KEY
