"""Request gate: FastAPI dependencies guarding routes with access and session tokens.

Token failures keep their distinct kind in the logs but are collapsed to a
uniform message in the response.
"""

import logging
from dataclasses import dataclass
from typing import Callable, Optional

from fastapi import Request

from rentalhub.container import Services
from rentalhub.errors import (
    AppError,
    AuthenticationError,
    AuthorizationError,
    DatabaseError,
    MalformedToken,
    SessionError,
    SessionUserMismatch,
    TokenError,
    ValidationError,
)
from rentalhub.logging_config import mask_token
from rentalhub.services.sessions import SessionRecord
from rentalhub.services.tokens import Principal

LOGGER = logging.getLogger(__name__)

ACCESS_TOKEN_HEADER = "x-access-token"
SESSION_TOKEN_HEADER = "x-session-token"
ACCESS_TOKEN_COOKIE = "access_token"
SESSION_TOKEN_COOKIE = "session_token"


@dataclass(frozen=True)
class AuthContext:
    principal: Principal
    access_token: str
    session: SessionRecord
    session_token: str


def get_services(request: Request) -> Services:
    return request.app.state.services


def _read_token(request: Request, header_name: str, cookie_name: str) -> Optional[str]:
    services = get_services(request)
    if services.settings.token_transport == "cookie":
        value = request.cookies.get(cookie_name)
    else:
        value = request.headers.get(header_name)
    value = (value or "").strip()
    return value or None


def read_access_token(request: Request) -> Optional[str]:
    return _read_token(request, ACCESS_TOKEN_HEADER, ACCESS_TOKEN_COOKIE)


def read_session_token(request: Request) -> Optional[str]:
    return _read_token(request, SESSION_TOKEN_HEADER, SESSION_TOKEN_COOKIE)


def verify_access_token(services: Services, token: str) -> Principal:
    try:
        return services.access_tokens.verify(token)
    except MalformedToken as exc:
        LOGGER.warning("Access token rejected (%s): %s", type(exc).__name__, exc.message)
        raise ValidationError(exc.message, public_message="Invalid access token format") from exc
    except TokenError as exc:
        LOGGER.warning(
            "Access token rejected (%s) %s: %s", type(exc).__name__, mask_token(token), exc.message
        )
        raise AuthenticationError(
            exc.message, public_message="Invalid access token", error_code=exc.error_code
        ) from exc


def _validate_session(
    services: Services, token: str, expected_user_id: Optional[int] = None
) -> SessionRecord:
    try:
        return services.sessions.validate_session(token, expected_user_id=expected_user_id)
    except SessionUserMismatch as exc:
        LOGGER.warning("Session rejected (%s): %s", type(exc).__name__, exc.message)
        raise
    except (SessionError, TokenError) as exc:
        LOGGER.warning(
            "Session rejected (%s) %s: %s", type(exc).__name__, mask_token(token), exc.message
        )
        raise AuthenticationError(
            exc.message, public_message="Invalid session token", error_code="INVALID_SESSION"
        ) from exc
    except DatabaseError:
        raise
    except AppError as exc:
        raise DatabaseError(exc.message, public_message="Failed to validate session") from exc


def require_access_token(request: Request) -> Principal:
    token = read_access_token(request)
    if not token:
        raise AuthenticationError("No access token on request", public_message="Access token required")
    principal = verify_access_token(get_services(request), token)
    request.state.principal = principal
    request.state.access_token = token
    return principal


def require_session_token(request: Request) -> SessionRecord:
    token = read_session_token(request)
    if not token:
        raise AuthenticationError("No session token on request", public_message="Session token required")
    session = _validate_session(get_services(request), token)
    request.state.session = session
    request.state.session_token = token
    return session


def require_both(request: Request) -> AuthContext:
    """Access token first (no I/O), then the session lookup scoped to its user."""
    principal = require_access_token(request)
    token = read_session_token(request)
    if not token:
        raise AuthenticationError("No session token on request", public_message="Session token required")
    session = _validate_session(get_services(request), token, expected_user_id=principal.user_id)
    if session.user_id != principal.user_id:
        raise SessionUserMismatch(
            f"Session user {session.user_id} != access user {principal.user_id}"
        )
    request.state.session = session
    request.state.session_token = token
    return AuthContext(
        principal=principal,
        access_token=request.state.access_token,
        session=session,
        session_token=token,
    )


def _current_principal(request: Request) -> Principal:
    principal = getattr(request.state, "principal", None)
    if principal is None:
        raise AuthenticationError("Permission check without an authenticated principal")
    return principal


def _check_grants(request: Request, codes: tuple[str, ...]) -> Principal:
    principal = _current_principal(request)
    accounts = get_services(request).accounts
    try:
        granted = any(accounts.has_permission(principal.user_id, code) for code in codes)
    except DatabaseError as exc:
        raise DatabaseError(exc.message, public_message="Failed to check permissions") from exc
    if not granted:
        LOGGER.info("Permission denied user_id=%s codes=%s", principal.user_id, ",".join(codes))
        raise AuthorizationError(
            f"User {principal.user_id} lacks {', '.join(codes)}",
            public_message="You do not have permission to perform this action",
        )
    return principal


def require_permission(code: str) -> Callable[[Request], Principal]:
    """List after ``require_access_token`` in the route's dependencies."""

    def dependency(request: Request) -> Principal:
        return _check_grants(request, (code,))

    return dependency


def require_any_permission(*codes: str) -> Callable[[Request], Principal]:
    def dependency(request: Request) -> Principal:
        return _check_grants(request, codes)

    return dependency
