"""
auth/tokens.py -- Access and refresh JWTs.

Security design decisions:
  python-jose with HS256. Two distinct secrets: access tokens are signed with
  SECRET_KEY, refresh tokens with REFRESH_SECRET_KEY, so a leaked access key
  cannot mint refresh tokens and neither token verifies as the other.

  Claims: sub (str user id), user_id, email, role, type ("access" or
  "refresh"), jti, iat, exp. The type claim is checked on verify as a second
  line of defense behind the separate keys. jti is random per token so two
  pairs issued in the same second for the same user never collide; the
  session table relies on refresh tokens being unique.

  Lifetimes default to 15 minutes (access) and 7 days (refresh).

  Verification raises instead of returning None: TokenExpired when the
  signature is good but exp has passed, TokenMalformed for everything else
  (bad signature, wrong type, missing claims, garbage input). exp is compared
  against the injected clock, not the wall clock, so iat, exp and the expiry
  check all read the same time source.

Refresh tokens are single-use in effect: AuthService.refresh() rotates the
session's stored value on every use (see sessions/store.py rotate_session).

Layer rule: imports only core/ and auth.models.
"""

from __future__ import annotations

import secrets
from datetime import timedelta

from jose import JWTError, jwt

from auth.models import Principal, TokenPair, User
from core.clock import Clock, utcnow
from core.errors import SystemFailure, TokenExpired, TokenMalformed

_ALGORITHM = "HS256"

ACCESS = "access"
REFRESH = "refresh"

_REQUIRED_CLAIMS = ("user_id", "email", "role", "type")


class TokenService:
    def __init__(
        self,
        access_secret: str,
        refresh_secret: str,
        access_ttl: int = 15 * 60,
        refresh_ttl: int = 7 * 24 * 60 * 60,
        clock: Clock = utcnow,
    ) -> None:
        if not access_secret or not refresh_secret:
            raise SystemFailure("Token signing keys are not configured.")
        self._secrets = {ACCESS: access_secret, REFRESH: refresh_secret}
        self._ttls = {ACCESS: access_ttl, REFRESH: refresh_ttl}
        self.clock = clock

    @classmethod
    def from_settings(cls, settings, clock: Clock = utcnow) -> TokenService:
        return cls(
            access_secret=settings.secret_key,
            refresh_secret=settings.refresh_secret_key,
            access_ttl=settings.access_token_expire_seconds,
            refresh_ttl=settings.refresh_token_expire_seconds,
            clock=clock,
        )

    @property
    def access_ttl(self) -> int:
        return self._ttls[ACCESS]

    @property
    def refresh_ttl(self) -> int:
        return self._ttls[REFRESH]

    # ------------------------------------------------------------------
    # Issue
    # ------------------------------------------------------------------

    def issue_pair(self, user: User) -> TokenPair:
        return TokenPair(
            access_token=self._encode(user, ACCESS),
            refresh_token=self._encode(user, REFRESH),
            expires_in=self.access_ttl,
        )

    def _encode(self, user: User, token_type: str) -> str:
        now = self.clock()
        payload = {
            "sub": str(user.id),
            "user_id": user.id,
            "email": user.email,
            "role": user.role,
            "type": token_type,
            "jti": secrets.token_hex(16),
            "iat": now,
            "exp": now + timedelta(seconds=self._ttls[token_type]),
        }
        return jwt.encode(payload, self._secrets[token_type], algorithm=_ALGORITHM)

    # ------------------------------------------------------------------
    # Verify
    # ------------------------------------------------------------------

    def verify_access(self, token: str) -> dict:
        return self._decode(token, ACCESS)

    def verify_refresh(self, token: str) -> dict:
        return self._decode(token, REFRESH)

    def principal(self, token: str) -> Principal:
        claims = self.verify_access(token)
        return Principal(user_id=claims["user_id"], email=claims["email"], role=claims["role"])

    def _decode(self, token: str, token_type: str) -> dict:
        if not token:
            raise TokenMalformed()
        try:
            claims = jwt.decode(
                token,
                self._secrets[token_type],
                algorithms=[_ALGORITHM],
                options={"verify_exp": False, "require_exp": True},
            )
        except JWTError as exc:
            raise TokenMalformed() from exc
        exp = claims.get("exp")
        if not isinstance(exp, (int, float)) or isinstance(exp, bool):
            raise TokenMalformed()
        if exp < self.clock().timestamp():
            raise TokenExpired()
        if any(k not in claims for k in _REQUIRED_CLAIMS) or claims["type"] != token_type:
            raise TokenMalformed()
        if not isinstance(claims["user_id"], int):
            raise TokenMalformed()
        return claims
