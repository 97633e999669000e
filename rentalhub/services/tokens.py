from dataclasses import asdict, dataclass, fields
from datetime import datetime, timedelta, timezone
from typing import Any, Mapping, Optional

from rentalhub.errors import MalformedToken, TokenExpired, ValidationError, WrongTokenType
from rentalhub.services import token_codec
from rentalhub.services.clock import Clock, utcnow

ACCESS_TOKEN_TYPE = "access_token"
SESSION_TOKEN_TYPE = "session_token"
METADATA_CLAIMS = ("type", "issued_at", "expires_at")
REQUIRED_PRINCIPAL_FIELDS = ("user_id", "business_id", "branch_id", "role_id")


@dataclass(frozen=True)
class Principal:
    user_id: int
    business_id: int
    branch_id: int
    role_id: int
    is_owner: bool = False
    user_name: Optional[str] = None
    contact_number: Optional[str] = None
    business_name: Optional[str] = None
    email: Optional[str] = None

    @classmethod
    def from_claims(cls, claims: Mapping[str, Any]) -> "Principal":
        known = {item.name for item in fields(cls)}
        return cls(**{key: value for key, value in claims.items() if key in known})

    def to_claims(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class IssuedToken:
    token: str
    issued_at: datetime
    expires_at: datetime


@dataclass(frozen=True)
class SessionClaims:
    sid: str
    user_id: int
    device_id: str
    ip_address: Optional[str]
    issued_at: datetime
    expires_at: datetime


def _epoch(value: datetime) -> int:
    return int(value.timestamp())


def _from_epoch(value: int) -> datetime:
    return datetime.fromtimestamp(value, tz=timezone.utc)


def _check_type_and_expiry(claims: dict, expected_type: str, now: datetime) -> None:
    if claims.get("type") != expected_type:
        raise WrongTokenType(
            f"Expected {expected_type}, got {claims.get('type')!r}"
        )
    expires_at = claims.get("expires_at")
    if not isinstance(expires_at, int) or _epoch(now) >= expires_at:
        raise TokenExpired(f"{expected_type} has expired")


class AccessTokenManager:
    """Issues and verifies short-lived, self-contained access tokens."""

    def __init__(self, secret: str, ttl_minutes: int = 15, clock: Clock = utcnow) -> None:
        self._key = token_codec.derive_key(secret)
        self._ttl = timedelta(minutes=ttl_minutes)
        self._clock = clock

    @property
    def ttl_seconds(self) -> int:
        return int(self._ttl.total_seconds())

    def issue(self, principal: Mapping[str, Any] | Principal) -> IssuedToken:
        data = principal.to_claims() if isinstance(principal, Principal) else dict(principal)
        missing = [name for name in REQUIRED_PRINCIPAL_FIELDS if data.get(name) is None]
        if missing:
            raise ValidationError(f"Missing required field(s): {', '.join(missing)}")

        now = self._clock()
        expires_at = now + self._ttl
        claims = {key: value for key, value in data.items() if key not in METADATA_CLAIMS}
        claims.update(
            type=ACCESS_TOKEN_TYPE,
            issued_at=_epoch(now),
            expires_at=_epoch(expires_at),
        )
        return IssuedToken(
            token=token_codec.encode(claims, self._key),
            issued_at=_from_epoch(claims["issued_at"]),
            expires_at=_from_epoch(claims["expires_at"]),
        )

    def verify(self, token: str) -> Principal:
        if not token_codec.structure_check(token):
            raise MalformedToken("Access token failed the structure check")
        claims = token_codec.decode(token, self._key)
        _check_type_and_expiry(claims, ACCESS_TOKEN_TYPE, self._clock())
        for name in METADATA_CLAIMS:
            claims.pop(name, None)
        if claims.get("user_id") is None:
            raise WrongTokenType("Access token carries no user id")
        return Principal.from_claims(claims)


class SessionTokenManager:
    """Encodes the session claim mirror kept alongside the database row.

    The row stays authoritative; the claims only allow a stateless pre-check
    before the lookup.
    """

    def __init__(self, secret: str, clock: Clock = utcnow) -> None:
        self._key = token_codec.derive_key(secret)
        self._clock = clock

    def issue(
        self,
        *,
        sid: str,
        user_id: int,
        device_id: str,
        ip_address: Optional[str],
        issued_at: datetime,
        expires_at: datetime,
    ) -> str:
        claims = {
            "sid": sid,
            "user_id": user_id,
            "device_id": device_id,
            "ip_address": ip_address,
            "type": SESSION_TOKEN_TYPE,
            "issued_at": _epoch(issued_at),
            "expires_at": _epoch(expires_at),
        }
        return token_codec.encode(claims, self._key)

    def decode(self, token: str) -> SessionClaims:
        claims = token_codec.decode(token, self._key)
        _check_type_and_expiry(claims, SESSION_TOKEN_TYPE, self._clock())
        return SessionClaims(
            sid=claims.get("sid", ""),
            user_id=claims.get("user_id"),
            device_id=claims.get("device_id", ""),
            ip_address=claims.get("ip_address"),
            issued_at=_from_epoch(claims["issued_at"]),
            expires_at=_from_epoch(claims["expires_at"]),
        )
