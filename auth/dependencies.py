"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication.

The caller is identified ONLY by an `Authorization: Bearer <access token>`
header. get_principal() verifies it through AuthService.authenticate() and
returns an immutable Principal; route handlers pass that value into the
service explicitly. Nothing is stored on request.state.

Failures surface as core.errors exceptions (TokenMalformed, TokenExpired,
AccountLocked, Forbidden); the application-wide handler in api/main.py turns
them into the uniform error envelope.

device_info() builds the DeviceInfo for the current request from the
User-Agent header and the client IP (first X-Forwarded-For hop, then
X-Real-IP, then the socket peer).

Layer rule: may import from fastapi (this module is part of the dependency
injection system), core/, sessions/ and auth/. Never from api/.
"""

from __future__ import annotations

from fastapi import Depends, Request

from auth.models import Principal
from auth.service import AuthService, require_role
from core.errors import TokenMalformed
from sessions.fingerprint import client_ip, parse_device_info
from sessions.models import DeviceInfo


def get_auth_service(request: Request) -> AuthService:
    return request.app.state.auth_service


def device_info(request: Request) -> DeviceInfo:
    peer = request.client.host if request.client else None
    return parse_device_info(request.headers.get("user-agent"), client_ip(request.headers, peer))


def bearer_token(request: Request) -> str | None:
    header = request.headers.get("Authorization", "")
    if header.startswith("Bearer "):
        return header[7:].strip() or None
    return None


def get_principal(request: Request, service: AuthService = Depends(get_auth_service)) -> Principal:
    """Require a valid access token.

    Use as a FastAPI dependency:
        @router.get("/me")
        def route(principal: Principal = Depends(get_principal)): ...
    """
    token = bearer_token(request)
    if token is None:
        raise TokenMalformed("No token provided. Please authenticate.")
    return service.authenticate(token)


def try_get_principal(request: Request, service: AuthService = Depends(get_auth_service)) -> Principal | None:
    """Soft variant: None when no Authorization header is present. A bad token still fails."""
    token = bearer_token(request)
    if token is None:
        return None
    return service.authenticate(token)


def require_roles(*roles: str):
    """Dependency factory: the principal's role must be one of roles."""

    def _check(principal: Principal = Depends(get_principal)) -> Principal:
        require_role(principal, *roles)
        return principal

    return _check
