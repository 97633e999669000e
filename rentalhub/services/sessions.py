import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError

from rentalhub.database import Database
from rentalhub.errors import (
    AuthenticationError,
    DatabaseError,
    SessionExpired,
    SessionInactive,
    SessionNotFound,
    SessionUserMismatch,
    SessionValidationFailed,
    TokenExpired,
)
from rentalhub.logging_config import mask_token
from rentalhub.models.session import SessionEntry
from rentalhub.services.clock import Clock, as_utc, utcnow
from rentalhub.services.tokens import SessionTokenManager

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class SessionRecord:
    id: int
    user_id: int
    device_id: str
    device_name: Optional[str]
    ip_address: Optional[str]
    user_agent: Optional[str]
    created_at: datetime
    updated_at: datetime
    last_active: Optional[datetime]
    expiry_at: datetime
    is_active: bool

    @classmethod
    def from_entry(cls, entry: SessionEntry) -> "SessionRecord":
        return cls(
            id=entry.id,
            user_id=entry.user_id,
            device_id=entry.device_id,
            device_name=entry.device_name,
            ip_address=entry.ip_address,
            user_agent=entry.user_agent,
            created_at=as_utc(entry.created_at),
            updated_at=as_utc(entry.updated_at),
            last_active=as_utc(entry.last_active),
            expiry_at=as_utc(entry.expiry_at),
            is_active=bool(entry.is_active),
        )


@dataclass(frozen=True)
class IssuedSession:
    session_token: str
    expires_at: datetime


class SessionStore:
    def __init__(
        self,
        database: Database,
        token_manager: SessionTokenManager,
        ttl_hours: int = 1,
        extension_hours: int = 1,
        clock: Clock = utcnow,
    ) -> None:
        self._database = database
        self._tokens = token_manager
        self._ttl = timedelta(hours=ttl_hours)
        self._extension = timedelta(hours=extension_hours)
        self._clock = clock

    def _new_token(
        self, user_id: int, device_id: str, ip_address: Optional[str], now: datetime, expires_at: datetime
    ) -> str:
        return self._tokens.issue(
            sid=secrets.token_urlsafe(16),
            user_id=user_id,
            device_id=device_id,
            ip_address=ip_address,
            issued_at=now,
            expires_at=expires_at,
        )

    def create_session(
        self,
        user_id: int,
        device_id: str,
        ip_address: Optional[str] = None,
        *,
        device_name: Optional[str] = None,
        user_agent: Optional[str] = None,
        ttl_hours: Optional[int] = None,
    ) -> IssuedSession:
        now = self._clock()
        ttl = timedelta(hours=ttl_hours) if ttl_hours is not None else self._ttl
        expires_at = now + ttl
        token = self._new_token(user_id, device_id, ip_address, now, expires_at)
        try:
            with self._database.session_scope() as session:
                session.add(
                    SessionEntry(
                        user_id=user_id,
                        session_token=token,
                        device_id=device_id,
                        device_name=device_name,
                        ip_address=ip_address,
                        user_agent=user_agent,
                        created_at=now,
                        updated_at=now,
                        last_active=now,
                        expiry_at=expires_at,
                        is_active=True,
                    )
                )
        except SQLAlchemyError as exc:
            LOGGER.error("Failed to create session for user_id=%s: %s", user_id, exc)
            raise DatabaseError("Failed to create session") from exc
        LOGGER.info("Session created user_id=%s device_id=%s", user_id, device_id)
        return IssuedSession(session_token=token, expires_at=expires_at)

    def validate_session(
        self, token: str, expected_user_id: Optional[int] = None
    ) -> SessionRecord:
        """Return the session row for ``token`` without modifying it."""
        try:
            claims = self._tokens.decode(token)
        except TokenExpired as exc:
            raise SessionExpired("Session token claims have expired") from exc
        if expected_user_id is not None and claims.user_id != expected_user_id:
            raise SessionUserMismatch(
                f"Session user {claims.user_id} != access user {expected_user_id}"
            )

        try:
            with self._database.session_scope() as session:
                stmt = select(SessionEntry).where(SessionEntry.session_token == token)
                if expected_user_id is not None:
                    stmt = stmt.where(SessionEntry.user_id == expected_user_id)
                entry = session.execute(stmt).scalar_one_or_none()
                record = SessionRecord.from_entry(entry) if entry else None
        except SQLAlchemyError as exc:
            LOGGER.error("Session lookup failed for %s: %s", mask_token(token), exc)
            raise SessionValidationFailed("Session lookup failed") from exc

        if record is None:
            raise SessionNotFound(f"No session row for {mask_token(token)}")
        if not record.is_active:
            raise SessionInactive(f"Session {record.id} is no longer active")
        if record.expiry_at < self._clock():
            raise SessionExpired(f"Session {record.id} expired at {record.expiry_at}")
        return record

    def touch_activity(self, token: str) -> bool:
        """Best effort; never raises."""
        try:
            with self._database.session_scope() as session:
                result = session.execute(
                    update(SessionEntry)
                    .where(SessionEntry.session_token == token)
                    .values(last_active=self._clock())
                    .execution_options(synchronize_session=False)
                )
                return result.rowcount > 0
        except Exception as exc:
            LOGGER.warning("Failed to update session activity for %s: %s", mask_token(token), exc)
            return False

    def extend_session(self, user_id: int, old_token: str) -> IssuedSession:
        """Swap ``old_token`` for a fresh token and expiry in a single UPDATE."""
        if not user_id or not old_token:
            raise AuthenticationError("User ID and session token are required")
        current = self.validate_session(old_token, expected_user_id=user_id)

        now = self._clock()
        expires_at = now + self._extension
        new_token = self._new_token(
            user_id, current.device_id, current.ip_address, now, expires_at
        )
        try:
            with self._database.session_scope() as session:
                result = session.execute(
                    update(SessionEntry)
                    .where(
                        SessionEntry.session_token == old_token,
                        SessionEntry.user_id == user_id,
                        SessionEntry.is_active.is_(True),
                        SessionEntry.expiry_at >= now,
                    )
                    .values(
                        session_token=new_token,
                        expiry_at=expires_at,
                        updated_at=now,
                        last_active=now,
                    )
                    .execution_options(synchronize_session=False)
                )
                replaced = result.rowcount
        except SQLAlchemyError as exc:
            LOGGER.error("Failed to extend session for user_id=%s: %s", user_id, exc)
            raise DatabaseError("Failed to extend session") from exc

        if replaced != 1:
            # lost a race with logout or another extension
            raise SessionInactive("Session changed while being extended")
        LOGGER.info("Session %s extended for user_id=%s", current.id, user_id)
        return IssuedSession(session_token=new_token, expires_at=expires_at)

    def invalidate_session(self, token: str, user_id: Optional[int] = None) -> bool:
        """Mark the session inactive. Returns whether a row actually changed."""
        conditions = [SessionEntry.session_token == token, SessionEntry.is_active.is_(True)]
        if user_id is not None:
            conditions.append(SessionEntry.user_id == user_id)
        changed = self._deactivate(conditions)
        if changed:
            LOGGER.info("Session invalidated %s", mask_token(token))
        else:
            LOGGER.info("Session invalidation matched no active row %s", mask_token(token))
        return changed > 0

    def invalidate_user_sessions(self, user_id: int) -> int:
        changed = self._deactivate(
            [SessionEntry.user_id == user_id, SessionEntry.is_active.is_(True)]
        )
        LOGGER.info("Invalidated %s session(s) for user_id=%s", changed, user_id)
        return changed

    def _deactivate(self, conditions: list) -> int:
        try:
            with self._database.session_scope() as session:
                result = session.execute(
                    update(SessionEntry)
                    .where(*conditions)
                    .values(is_active=False, updated_at=self._clock())
                    .execution_options(synchronize_session=False)
                )
                return result.rowcount
        except SQLAlchemyError as exc:
            LOGGER.error("Failed to invalidate session: %s", exc)
            raise DatabaseError("Failed to invalidate session") from exc
