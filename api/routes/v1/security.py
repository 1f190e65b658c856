"""
api/routes/v1/security.py -- Security activity and administration.

Routes:
  GET /api/v1/auth/security/activity   -- own events, newest first (page, limit <= 100)
  GET /api/v1/auth/security/summary    -- counts + last 10 events
  GET /api/v1/auth/users               -- all accounts (admin or moderator)
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query

from api.models import ActivityResponse, SecuritySummaryResponse, UserResponse
from auth.dependencies import get_auth_service, get_principal, require_roles
from auth.models import Principal
from auth.service import ADMIN_ROLES, MAX_PAGE_SIZE, AuthService

router = APIRouter()


@router.get("/auth/security/activity", response_model=ActivityResponse)
def activity(
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=MAX_PAGE_SIZE),
    principal: Principal = Depends(get_principal),
    service: AuthService = Depends(get_auth_service),
) -> ActivityResponse:
    return ActivityResponse.from_page(service.activity(principal, page=page, limit=limit))


@router.get("/auth/security/summary", response_model=SecuritySummaryResponse)
def summary(
    principal: Principal = Depends(get_principal),
    service: AuthService = Depends(get_auth_service),
) -> SecuritySummaryResponse:
    return SecuritySummaryResponse.from_summary(service.security_summary(principal))


@router.get("/auth/users", response_model=list[UserResponse])
def list_users(
    principal: Principal = Depends(require_roles(*ADMIN_ROLES)),
    service: AuthService = Depends(get_auth_service),
) -> list[UserResponse]:
    return [UserResponse.from_user(u) for u in service.list_users(principal)]
