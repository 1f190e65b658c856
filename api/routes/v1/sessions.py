"""
api/routes/v1/sessions.py -- Active sessions and known devices.

Routes (all require auth, all scoped to the caller's own account):
  GET    /api/v1/auth/sessions                 -- active, unexpired sessions
  DELETE /api/v1/auth/sessions/{session_id}    -- revoke one
  POST   /api/v1/auth/sessions/revoke-others   -- keep the session holding the given refresh token
  GET    /api/v1/auth/devices                  -- known devices (is_current marks the caller's)
  POST   /api/v1/auth/devices/{device_id}/trust
  DELETE /api/v1/auth/devices/{device_id}      -- delete device, end its sessions
  POST   /api/v1/auth/devices/revoke-others    -- keep only the caller's current device

IDOR guard: every registry call carries principal.user_id, and the store
matches on it, so another user's session or device id yields 404.
"""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends

from api.models import DeviceResponse, LogoutRequest, MessageResponse, RevokedCountResponse, SessionResponse
from auth.dependencies import device_info, get_auth_service, get_principal
from auth.models import Principal
from auth.service import AuthService
from sessions.models import DeviceInfo

router = APIRouter()


# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------


@router.get("/auth/sessions", response_model=list[SessionResponse])
def list_sessions(
    principal: Principal = Depends(get_principal),
    service: AuthService = Depends(get_auth_service),
) -> list[SessionResponse]:
    return [SessionResponse.from_session(s) for s in service.list_sessions(principal)]


@router.delete("/auth/sessions/{session_id}", response_model=MessageResponse)
def revoke_session(
    session_id: int,
    principal: Principal = Depends(get_principal),
    service: AuthService = Depends(get_auth_service),
    device: DeviceInfo = Depends(device_info),
) -> MessageResponse:
    service.revoke_session(principal, session_id, device)
    return MessageResponse(message="Session revoked successfully.")


@router.post("/auth/sessions/revoke-others", response_model=RevokedCountResponse)
def revoke_other_sessions(
    body: Optional[LogoutRequest] = None,
    principal: Principal = Depends(get_principal),
    service: AuthService = Depends(get_auth_service),
    device: DeviceInfo = Depends(device_info),
) -> RevokedCountResponse:
    """Without a refresh token in the body, every session of the account is revoked."""
    keep = body.refresh_token if body else None
    count = service.revoke_other_sessions(principal, keep, device)
    return RevokedCountResponse(message=f"Revoked {count} session(s).", sessions_revoked=count)


# ---------------------------------------------------------------------------
# Devices
# ---------------------------------------------------------------------------


@router.get("/auth/devices", response_model=list[DeviceResponse])
def list_devices(
    principal: Principal = Depends(get_principal),
    service: AuthService = Depends(get_auth_service),
    device: DeviceInfo = Depends(device_info),
) -> list[DeviceResponse]:
    return [DeviceResponse.from_device(d, device.device_id) for d in service.list_devices(principal)]


@router.post("/auth/devices/revoke-others", response_model=RevokedCountResponse)
def revoke_other_devices(
    principal: Principal = Depends(get_principal),
    service: AuthService = Depends(get_auth_service),
    device: DeviceInfo = Depends(device_info),
) -> RevokedCountResponse:
    removed, ended = service.revoke_other_devices(principal, device)
    return RevokedCountResponse(
        message=f"Revoked {removed} device(s).",
        devices_revoked=removed,
        sessions_revoked=ended,
    )


@router.post("/auth/devices/{device_id}/trust", response_model=MessageResponse)
def trust_device(
    device_id: str,
    principal: Principal = Depends(get_principal),
    service: AuthService = Depends(get_auth_service),
    device: DeviceInfo = Depends(device_info),
) -> MessageResponse:
    service.trust_device(principal, device_id, device)
    return MessageResponse(message="Device marked as trusted.")


@router.delete("/auth/devices/{device_id}", response_model=RevokedCountResponse)
def revoke_device(
    device_id: str,
    principal: Principal = Depends(get_principal),
    service: AuthService = Depends(get_auth_service),
    device: DeviceInfo = Depends(device_info),
) -> RevokedCountResponse:
    ended = service.revoke_device(principal, device_id, device)
    return RevokedCountResponse(message="Device revoked successfully.", devices_revoked=1, sessions_revoked=ended)
