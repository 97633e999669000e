"""Typed error hierarchy shared by services, the request gate and the HTTP layer.

Branching is always on the exception class, never on message text. Each error
carries an internal ``message`` (logged) and a ``public_message`` (returned to
clients), so credential failures can be told apart in logs while the response
stays uniform.
"""

from typing import Optional


class AppError(Exception):
    status_code: int = 500
    error_code: str = "INTERNAL_ERROR"
    default_public_message: Optional[str] = None

    def __init__(
        self,
        message: str,
        *,
        public_message: Optional[str] = None,
        status_code: Optional[int] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.public_message = (
            public_message or self.default_public_message or message
        )


class ValidationError(AppError):
    status_code = 400
    error_code = "VALIDATION_ERROR"


class AuthenticationError(AppError):
    status_code = 401
    error_code = "AUTHENTICATION_ERROR"


class AuthorizationError(AppError):
    status_code = 403
    error_code = "AUTHORIZATION_ERROR"


class NotFoundError(AppError):
    status_code = 404
    error_code = "NOT_FOUND"


class ConflictError(AppError):
    status_code = 409
    error_code = "CONFLICT"


class TooManyRequestsError(AppError):
    status_code = 429
    error_code = "TOO_MANY_REQUESTS"


class DatabaseError(AppError):
    status_code = 500
    error_code = "DATABASE_ERROR"
    default_public_message = "Database operation failed"


class ExternalServiceError(AppError):
    status_code = 503
    error_code = "EXTERNAL_SERVICE_ERROR"

    def __init__(self, message: str, *, service: str = "unknown", **kwargs) -> None:
        super().__init__(message, **kwargs)
        self.service = service


# Token codec / token managers


class TokenError(AuthenticationError):
    error_code = "INVALID_TOKEN"
    default_public_message = "Invalid token"


class MalformedToken(TokenError):
    status_code = 400
    error_code = "MALFORMED_TOKEN"
    default_public_message = "Invalid token format"


class TamperedToken(TokenError):
    pass


class CorruptToken(TokenError):
    pass


class WrongTokenType(TokenError):
    pass


class TokenExpired(TokenError):
    pass


# Session store


class SessionError(AuthenticationError):
    error_code = "INVALID_SESSION"
    default_public_message = "Invalid session token"


class SessionNotFound(SessionError):
    pass


class SessionInactive(SessionError):
    pass


class SessionExpired(SessionError):
    pass


class SessionUserMismatch(SessionError):
    default_public_message = "Access token does not match session"


class SessionValidationFailed(DatabaseError):
    error_code = "SESSION_VALIDATION_FAILED"
    default_public_message = "Failed to validate session"


# OTP flow


class InvalidOrExpiredOTP(AuthenticationError):
    error_code = "INVALID_OR_EXPIRED_OTP"
    default_public_message = "Invalid or expired OTP"


class OtpResendTooSoon(TooManyRequestsError):
    error_code = "OTP_RESEND_TOO_SOON"


class NotificationDeliveryFailed(ExternalServiceError):
    error_code = "NOTIFICATION_DELIVERY_FAILED"
    default_public_message = "Failed to deliver notification"


# Device channel broker


class DeviceOffline(NotFoundError):
    error_code = "DEVICE_OFFLINE"
    default_public_message = "Device is offline or not connected"


class DeviceResponseTimeout(AppError):
    status_code = 504
    error_code = "DEVICE_RESPONSE_TIMEOUT"
    default_public_message = "Device did not respond in time"


class DeviceAccessDenied(AuthorizationError):
    error_code = "DEVICE_ACCESS_DENIED"
    default_public_message = (
        "Access denied: device belongs to another business or branch"
    )
