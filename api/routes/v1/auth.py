"""
api/routes/v1/auth.py -- Account lifecycle REST endpoints.

Routes:
  POST  /api/v1/auth/register              -- create account; mails verification token
  POST  /api/v1/auth/verify-email          -- consume verification token
  POST  /api/v1/auth/resend-verification   -- new verification token (no enumeration)
  GET   /api/v1/auth/verification-status   -- requires auth
  POST  /api/v1/auth/login                 -- password (+ 2FA code) login; returns token pair
  POST  /api/v1/auth/refresh               -- rotate refresh token, new pair
  POST  /api/v1/auth/logout                -- end one session (refresh token) or all (auth)
  POST  /api/v1/auth/forgot-password       -- mail reset token (no enumeration)
  POST  /api/v1/auth/reset-password        -- consume reset token, set password
  POST  /api/v1/auth/change-password       -- requires auth + current password
  POST  /api/v1/auth/password-strength     -- public strength breakdown
  GET   /api/v1/auth/me                    -- requires auth
  PATCH /api/v1/auth/me                    -- requires auth

Handlers are plain `def`: the service does blocking bcrypt and SQLite work,
so FastAPI runs them in its threadpool.

Security:
  POST /login and POST /forgot-password are rate-limited per IP
  (LOGIN_RATE_LIMIT, default 5/minute); everything else gets API_RATE_LIMIT.
  Cache-Control: no-store on every response that carries tokens.
  Errors are raised as core.errors exceptions and rendered by api/main.py.
"""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Request, Response

from api.limiter import limiter, login_limit
from api.models import (
    ChangePasswordRequest,
    EmailRequest,
    LoginRequest,
    LoginResponse,
    LogoutRequest,
    MessageResponse,
    PasswordCheckRequest,
    PasswordStrengthResponse,
    ProfileUpdateRequest,
    RefreshRequest,
    RegisterRequest,
    RegisterResponse,
    ResetPasswordRequest,
    TokenPairResponse,
    TokenRequest,
    UserResponse,
    VerificationStatusResponse,
)
from auth.dependencies import device_info, get_auth_service, get_principal, try_get_principal
from auth.models import Principal
from auth.service import AuthService
from sessions.models import DeviceInfo

# Auth policy:
# - register, verify-email, resend-verification, login, refresh,
#   forgot-password, reset-password, password-strength: public
# - logout: public with a refresh token; authenticated without one
# - verification-status, change-password, me: requires auth (get_principal)
router = APIRouter()

_GENERIC_RESET = "If the email exists, a password reset link has been sent."
_GENERIC_RESEND = "If the account exists and is unverified, a verification email has been sent."


# ---------------------------------------------------------------------------
# Registration and verification
# ---------------------------------------------------------------------------


@router.post("/auth/register", response_model=RegisterResponse, status_code=201)
def register(
    body: RegisterRequest,
    service: AuthService = Depends(get_auth_service),
    device: DeviceInfo = Depends(device_info),
) -> RegisterResponse:
    user = service.register(
        body.email,
        body.password,
        device,
        username=body.username,
        first_name=body.first_name,
        last_name=body.last_name,
    )
    return RegisterResponse(user=UserResponse.from_user(user))


@router.post("/auth/verify-email", response_model=MessageResponse)
def verify_email(
    body: TokenRequest,
    service: AuthService = Depends(get_auth_service),
    device: DeviceInfo = Depends(device_info),
) -> MessageResponse:
    service.verify_email(body.token, device)
    return MessageResponse(message="Email verified successfully.")


@limiter.limit(login_limit)
@router.post("/auth/resend-verification", response_model=MessageResponse)
def resend_verification(
    request: Request,
    body: EmailRequest,
    service: AuthService = Depends(get_auth_service),
    device: DeviceInfo = Depends(device_info),
) -> MessageResponse:
    service.resend_verification(body.email, device)
    return MessageResponse(message=_GENERIC_RESEND)


@router.get("/auth/verification-status", response_model=VerificationStatusResponse)
def verification_status(
    principal: Principal = Depends(get_principal),
    service: AuthService = Depends(get_auth_service),
) -> VerificationStatusResponse:
    return VerificationStatusResponse(email=principal.email, is_email_verified=service.verification_status(principal))


# ---------------------------------------------------------------------------
# Login / refresh / logout
# ---------------------------------------------------------------------------


@limiter.limit(login_limit)  # brute-force mitigation -- must be ABOVE @router to preserve FastAPI introspection
@router.post("/auth/login", response_model=LoginResponse)
def login(
    request: Request,
    response: Response,
    body: LoginRequest,
    service: AuthService = Depends(get_auth_service),
    device: DeviceInfo = Depends(device_info),
) -> LoginResponse:
    """Authenticate with email and password (and a 2FA code when enabled).

    Unknown email and wrong password produce the same 401 invalid_credentials.
    A 2FA-enabled account without a code gets 401 two_factor_required.
    """
    response.headers["Cache-Control"] = "no-store"
    result = service.login(body.email, body.password, device, two_factor_code=body.two_factor_code)
    return LoginResponse(user=UserResponse.from_user(result.user), tokens=TokenPairResponse.from_pair(result.tokens))


@router.post("/auth/refresh", response_model=TokenPairResponse)
def refresh(
    response: Response,
    body: RefreshRequest,
    service: AuthService = Depends(get_auth_service),
) -> TokenPairResponse:
    """Exchange a refresh token for a new pair. The presented token stops working."""
    response.headers["Cache-Control"] = "no-store"
    return TokenPairResponse.from_pair(service.refresh(body.refresh_token))


@router.post("/auth/logout", response_model=MessageResponse)
def logout(
    body: Optional[LogoutRequest] = None,
    principal: Optional[Principal] = Depends(try_get_principal),
    service: AuthService = Depends(get_auth_service),
    device: DeviceInfo = Depends(device_info),
) -> MessageResponse:
    refresh_token = body.refresh_token if body else None
    service.logout(device, refresh_token=refresh_token, principal=principal)
    return MessageResponse(message="Logged out successfully.")


# ---------------------------------------------------------------------------
# Passwords
# ---------------------------------------------------------------------------


@limiter.limit(login_limit)
@router.post("/auth/forgot-password", response_model=MessageResponse)
def forgot_password(
    request: Request,
    body: EmailRequest,
    service: AuthService = Depends(get_auth_service),
    device: DeviceInfo = Depends(device_info),
) -> MessageResponse:
    service.forgot_password(body.email, device)
    return MessageResponse(message=_GENERIC_RESET)


@router.post("/auth/reset-password", response_model=MessageResponse)
def reset_password(
    body: ResetPasswordRequest,
    service: AuthService = Depends(get_auth_service),
    device: DeviceInfo = Depends(device_info),
) -> MessageResponse:
    service.reset_password(body.token, body.password, device)
    return MessageResponse(message="Password reset successfully.")


@router.post("/auth/change-password", response_model=MessageResponse)
def change_password(
    body: ChangePasswordRequest,
    principal: Principal = Depends(get_principal),
    service: AuthService = Depends(get_auth_service),
    device: DeviceInfo = Depends(device_info),
) -> MessageResponse:
    service.change_password(principal, body.current_password, body.new_password, device)
    return MessageResponse(message="Password changed successfully.")


@router.post("/auth/password-strength", response_model=PasswordStrengthResponse)
def password_strength(
    body: PasswordCheckRequest,
    service: AuthService = Depends(get_auth_service),
) -> PasswordStrengthResponse:
    return PasswordStrengthResponse.from_strength(service.check_password_strength(body.password))


# ---------------------------------------------------------------------------
# Profile
# ---------------------------------------------------------------------------


@router.get("/auth/me", response_model=UserResponse)
def me(
    principal: Principal = Depends(get_principal),
    service: AuthService = Depends(get_auth_service),
) -> UserResponse:
    return UserResponse.from_user(service.get_profile(principal))


@router.patch("/auth/me", response_model=UserResponse)
def update_me(
    body: ProfileUpdateRequest,
    principal: Principal = Depends(get_principal),
    service: AuthService = Depends(get_auth_service),
    device: DeviceInfo = Depends(device_info),
) -> UserResponse:
    user = service.update_profile(
        principal,
        device,
        username=body.username,
        first_name=body.first_name,
        last_name=body.last_name,
    )
    return UserResponse.from_user(user)
