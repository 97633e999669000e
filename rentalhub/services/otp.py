import hashlib
import logging
import secrets
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import IntEnum
from typing import Optional

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import SQLAlchemyError

from rentalhub.database import Database
from rentalhub.errors import DatabaseError, InvalidOrExpiredOTP, OtpResendTooSoon
from rentalhub.models.otp import OtpEntry
from rentalhub.services.clock import Clock, as_utc, utcnow

LOGGER = logging.getLogger(__name__)


class OtpType(IntEnum):
    LOGIN = 1
    REGISTER = 2
    RESET_PASSWORD = 3
    VERIFY_EMAIL = 4
    VERIFY_PHONE = 5


@dataclass(frozen=True)
class OtpRecord:
    id: str
    code: str
    expires_at: datetime
    purpose: OtpType


def normalize_email(email: str) -> str:
    return email.strip().lower()


def hash_otp(code: str) -> str:
    """The only OTP hash in the codebase: used for storage and verification."""
    return hashlib.sha256(str(code).strip().encode("utf-8")).hexdigest()


def generate_code(length: int = 6) -> str:
    value = secrets.randbelow(10**length)
    return str(value).zfill(length)


class OtpStore:
    def __init__(
        self,
        database: Database,
        ttl_minutes: int = 10,
        code_length: int = 6,
        max_attempts: int = 5,
        resend_cooldown_seconds: int = 30,
        clock: Clock = utcnow,
    ) -> None:
        self._database = database
        self._ttl = timedelta(minutes=ttl_minutes)
        self._code_length = code_length
        self._max_attempts = max_attempts
        self._cooldown = timedelta(seconds=resend_cooldown_seconds)
        self._clock = clock

    def request_otp(
        self, email: str, purpose: OtpType, ip_address: Optional[str] = None
    ) -> OtpRecord:
        now = self._clock()
        normalized = normalize_email(email)
        code = generate_code(self._code_length)
        record = OtpRecord(
            id=str(uuid.uuid4()),
            code=code,
            expires_at=now + self._ttl,
            purpose=OtpType(purpose),
        )
        try:
            with self._database.session_scope() as session:
                latest = session.execute(
                    select(OtpEntry.created_at)
                    .where(*self._usable_conditions(normalized, purpose, now))
                    .order_by(OtpEntry.created_at.desc())
                    .limit(1)
                ).scalar_one_or_none()
                if latest is not None and now - as_utc(latest) < self._cooldown:
                    raise OtpResendTooSoon(
                        "Please wait before requesting a new OTP",
                        public_message=(
                            "Please wait before requesting a new OTP. Try again in "
                            f"{int(self._cooldown.total_seconds())} seconds."
                        ),
                    )
                # a fresh code replaces every unconsumed one for the same target
                session.execute(
                    delete(OtpEntry).where(
                        OtpEntry.email == normalized,
                        OtpEntry.otp_type_id == int(purpose),
                        OtpEntry.consumed_at.is_(None),
                    )
                )
                session.add(
                    OtpEntry(
                        id=record.id,
                        email=normalized,
                        otp_type_id=int(purpose),
                        otp_code_hash=hash_otp(code),
                        attempts=0,
                        max_attempts=self._max_attempts,
                        ip_address=ip_address,
                        expires_at=record.expires_at,
                        verified_at=None,
                        consumed_at=None,
                        created_at=now,
                    )
                )
        except SQLAlchemyError as exc:
            LOGGER.error("Failed to save OTP for purpose=%s: %s", int(purpose), exc)
            raise DatabaseError("Failed to save OTP") from exc
        return record


    def verify_otp(self, email: str, code: str, purpose: OtpType) -> str:
        """Mark the pending code verified; returns the OTP record id on success.

        A verified code is not spent yet: it can still complete one login.
        """
        return self._check_code(email, code, purpose, consume=False)

    def consume_otp(self, email: str, code: str, purpose: OtpType) -> str:
        """Spend the code for a login, whether or not it was verified first."""
        return self._check_code(email, code, purpose, consume=True)

    def discard(self, otp_id: str) -> None:
        """Drop a record whose code never reached the user."""
        try:
            with self._database.session_scope() as session:
                session.execute(delete(OtpEntry).where(OtpEntry.id == otp_id))
        except SQLAlchemyError as exc:
            LOGGER.error("Failed to discard OTP %s: %s", otp_id, exc)
            raise DatabaseError("Failed to discard OTP") from exc

    def _check_code(self, email: str, code: str, purpose: OtpType, *, consume: bool) -> str:
        now = self._clock()
        normalized = normalize_email(email)
        supplied_hash = hash_otp(code)
        conditions = self._usable_conditions(normalized, purpose, now)
        if not consume:
            conditions.append(OtpEntry.verified_at.is_(None))
        try:
            with self._database.session_scope() as session:
                entry = session.execute(
                    select(OtpEntry)
                    .where(*conditions)
                    .order_by(OtpEntry.created_at.desc())
                    .limit(1)
                ).scalar_one_or_none()
                if entry is None:
                    raise InvalidOrExpiredOTP("No usable OTP for target and purpose")
                otp_id = entry.id
                if entry.otp_code_hash != supplied_hash:
                    session.execute(
                        update(OtpEntry)
                        .where(OtpEntry.id == otp_id)
                        .values(attempts=OtpEntry.attempts + 1)
                        .execution_options(synchronize_session=False)
                    )
                    mismatch = True
                else:
                    mismatch = False
                    changed = self._mark_used(session, otp_id, now, consume)
        except SQLAlchemyError as exc:
            LOGGER.error("Failed to verify OTP for purpose=%s: %s", int(purpose), exc)
            raise DatabaseError("Failed to verify OTP") from exc

        if mismatch:
            raise InvalidOrExpiredOTP(f"OTP hash mismatch for record {otp_id}")
        if changed != 1:
            raise InvalidOrExpiredOTP(f"OTP {otp_id} was used concurrently")
        return otp_id

    def _mark_used(self, session, otp_id: str, now: datetime, consume: bool) -> int:
        # compare-and-set: of two racing callers only one changes the row
        statement = update(OtpEntry).where(
            OtpEntry.id == otp_id,
            OtpEntry.consumed_at.is_(None),
            OtpEntry.expires_at > now,
        )
        if consume:
            statement = statement.values(
                consumed_at=now, verified_at=func.coalesce(OtpEntry.verified_at, now)
            )
        else:
            statement = statement.where(OtpEntry.verified_at.is_(None)).values(verified_at=now)
        return session.execute(
            statement.execution_options(synchronize_session=False)
        ).rowcount

    def _usable_conditions(self, email: str, purpose: OtpType, now: datetime) -> list:
        return [
            OtpEntry.email == email,
            OtpEntry.otp_type_id == int(purpose),
            OtpEntry.consumed_at.is_(None),
            OtpEntry.expires_at > now,
            OtpEntry.attempts < OtpEntry.max_attempts,
        ]
