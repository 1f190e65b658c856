"""
api/routes/v1/two_factor.py -- Two-factor enrollment and management.

Routes (all require auth):
  POST /api/v1/auth/2fa/setup         -- pending secret + provisioning URI + backup codes
  POST /api/v1/auth/2fa/verify        -- confirm with a TOTP code; enables 2FA
  POST /api/v1/auth/2fa/disable       -- current password + TOTP code
  POST /api/v1/auth/2fa/backup-codes  -- current password; replaces the whole set
  GET  /api/v1/auth/2fa/status

The secret and backup codes are returned exactly once (setup and
backup-codes). Responses carrying them are marked Cache-Control: no-store.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Response

from api.models import (
    BackupCodesResponse,
    MessageResponse,
    PasswordConfirmRequest,
    TwoFactorCodeRequest,
    TwoFactorDisableRequest,
    TwoFactorSetupResponse,
    TwoFactorStatusResponse,
)
from auth.dependencies import device_info, get_auth_service, get_principal
from auth.models import Principal
from auth.service import AuthService
from sessions.models import DeviceInfo

router = APIRouter()


@router.post("/auth/2fa/setup", response_model=TwoFactorSetupResponse)
def setup(
    response: Response,
    principal: Principal = Depends(get_principal),
    service: AuthService = Depends(get_auth_service),
) -> TwoFactorSetupResponse:
    response.headers["Cache-Control"] = "no-store"
    return TwoFactorSetupResponse.from_enrollment(service.begin_two_factor(principal))


@router.post("/auth/2fa/verify", response_model=MessageResponse)
def verify(
    body: TwoFactorCodeRequest,
    principal: Principal = Depends(get_principal),
    service: AuthService = Depends(get_auth_service),
    device: DeviceInfo = Depends(device_info),
) -> MessageResponse:
    service.confirm_two_factor(principal, body.code, device)
    return MessageResponse(message="Two-factor authentication enabled successfully.")


@router.post("/auth/2fa/disable", response_model=MessageResponse)
def disable(
    body: TwoFactorDisableRequest,
    principal: Principal = Depends(get_principal),
    service: AuthService = Depends(get_auth_service),
    device: DeviceInfo = Depends(device_info),
) -> MessageResponse:
    service.disable_two_factor(principal, body.password, body.code, device)
    return MessageResponse(message="Two-factor authentication disabled successfully.")


@router.post("/auth/2fa/backup-codes", response_model=BackupCodesResponse)
def regenerate_backup_codes(
    response: Response,
    body: PasswordConfirmRequest,
    principal: Principal = Depends(get_principal),
    service: AuthService = Depends(get_auth_service),
    device: DeviceInfo = Depends(device_info),
) -> BackupCodesResponse:
    response.headers["Cache-Control"] = "no-store"
    return BackupCodesResponse(backup_codes=service.regenerate_backup_codes(principal, body.password, device))


@router.get("/auth/2fa/status", response_model=TwoFactorStatusResponse)
def status(
    principal: Principal = Depends(get_principal),
    service: AuthService = Depends(get_auth_service),
) -> TwoFactorStatusResponse:
    return TwoFactorStatusResponse.from_status(service.two_factor_status(principal))
