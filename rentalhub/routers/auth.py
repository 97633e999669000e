import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Request, Response

from rentalhub.config import Settings
from rentalhub.container import Services
from rentalhub.dependencies import (
    ACCESS_TOKEN_COOKIE,
    SESSION_TOKEN_COOKIE,
    AuthContext,
    get_services,
    read_access_token,
    read_session_token,
    require_access_token,
    require_both,
    verify_access_token,
)
from rentalhub.errors import AuthenticationError
from rentalhub.schemas.auth import (
    CompleteRegistrationRequest,
    CompleteRegistrationResponse,
    DecryptTokenRequest,
    DecryptTokenResponse,
    ExtendSessionResponse,
    LoginRequest,
    LoginResponse,
    LogoutResponse,
    SendOtpRequest,
    SendOtpResponse,
    VerifyOtpRequest,
    VerifyOtpResponse,
)
from rentalhub.services.accounts import RegistrationData
from rentalhub.services.tokens import Principal

LOGGER = logging.getLogger(__name__)

router = APIRouter(prefix="/auth", tags=["auth"])


def _client_ip(request: Request) -> Optional[str]:
    return request.client.host if request.client else None


def _set_token_cookie(
    response: Response, settings: Settings, name: str, value: str, expires_at: datetime
) -> None:
    response.set_cookie(
        key=name,
        value=value,
        expires=expires_at,
        httponly=True,
        secure=settings.is_production,
        samesite="none" if settings.is_production else "lax",
        path="/",
    )


def _clear_token_cookie(response: Response, settings: Settings, name: str) -> None:
    response.delete_cookie(
        key=name,
        path="/",
        httponly=True,
        secure=settings.is_production,
        samesite="none" if settings.is_production else "lax",
    )


@router.post("/send-otp", response_model=SendOtpResponse)
def send_otp(
    payload: SendOtpRequest,
    request: Request,
    services: Services = Depends(get_services),
) -> SendOtpResponse:
    sent = services.auth.send_otp(payload.email, payload.otp_type_id, _client_ip(request))
    return SendOtpResponse(otp_id=sent.otp_id, expires_at=sent.expires_at)


@router.post("/verify-otp", response_model=VerifyOtpResponse)
def verify_otp(
    payload: VerifyOtpRequest,
    services: Services = Depends(get_services),
) -> VerifyOtpResponse:
    services.auth.verify_otp(payload.email, payload.otp_code, payload.otp_type_id)
    return VerifyOtpResponse(email=payload.email, verified=True)


@router.post("/login", response_model=LoginResponse)
def login(
    payload: LoginRequest,
    request: Request,
    response: Response,
    services: Services = Depends(get_services),
) -> LoginResponse:
    result = services.auth.login_with_otp(
        payload.email,
        payload.otp_code,
        payload.otp_type_id,
        ip_address=_client_ip(request),
        user_agent=request.headers.get("user-agent"),
        device_id=payload.device_id,
        device_name=payload.device_name,
    )
    settings = services.settings
    if settings.token_transport == "cookie":
        _set_token_cookie(
            response, settings, ACCESS_TOKEN_COOKIE, result.access_token, result.token_expires_at
        )
        if result.session_token and result.session_expires_at:
            _set_token_cookie(
                response,
                settings,
                SESSION_TOKEN_COOKIE,
                result.session_token,
                result.session_expires_at,
            )
    return LoginResponse(
        access_token=result.access_token,
        token_expires_at=result.token_expires_at,
        session_token=result.session_token,
        session_expires_at=result.session_expires_at,
    )


@router.post("/logout", response_model=LogoutResponse)
def logout(
    request: Request,
    response: Response,
    principal: Principal = Depends(require_access_token),
    services: Services = Depends(get_services),
) -> LogoutResponse:
    # the access token itself stays valid until its own expiry
    changed = services.auth.logout(principal.user_id, read_session_token(request))
    LOGGER.info("Logout user_id=%s sessions_changed=%s", principal.user_id, changed)
    if services.settings.token_transport == "cookie":
        _clear_token_cookie(response, services.settings, ACCESS_TOKEN_COOKIE)
        _clear_token_cookie(response, services.settings, SESSION_TOKEN_COOKIE)
    return LogoutResponse(logged_out=True)


@router.post("/complete-registration", response_model=CompleteRegistrationResponse)
def complete_registration(
    payload: CompleteRegistrationRequest,
    services: Services = Depends(get_services),
) -> CompleteRegistrationResponse:
    result = services.auth.complete_registration(RegistrationData(**payload.model_dump()))
    return CompleteRegistrationResponse(
        business_id=result.business_id,
        branch_id=result.branch_id,
        owner_id=result.owner_id,
    )


@router.post("/decrypt-token", response_model=DecryptTokenResponse)
def decrypt_token(
    request: Request,
    payload: Optional[DecryptTokenRequest] = None,
    services: Services = Depends(get_services),
) -> DecryptTokenResponse:
    token = (payload.access_token if payload else None) or read_access_token(request)
    if not token:
        raise AuthenticationError("No access token supplied", public_message="Access token required")
    principal = verify_access_token(services, token)
    return DecryptTokenResponse(**principal.to_claims())


@router.post("/extend-session", response_model=ExtendSessionResponse)
def extend_session(
    response: Response,
    context: AuthContext = Depends(require_both),
    services: Services = Depends(get_services),
) -> ExtendSessionResponse:
    issued = services.auth.extend_session(context.principal.user_id, context.session_token)
    if services.settings.token_transport == "cookie":
        _set_token_cookie(
            response, services.settings, SESSION_TOKEN_COOKIE, issued.session_token, issued.expires_at
        )
    return ExtendSessionResponse(
        session_token=issued.session_token,
        expires_at=issued.expires_at,
        expires_in_seconds=services.settings.session_extension_hours * 3600,
    )
