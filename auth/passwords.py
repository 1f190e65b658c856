"""
auth/passwords.py -- Password hashing, strength scoring, and token digests.

Passwords: bcrypt directly (no passlib wrapper). The cost factor comes from
Settings.bcrypt_rounds (default 12); tests drop it to 4. Passwords longer than
72 bytes are truncated by bcrypt; the API layer caps input at 128 characters.

Timing equalization: login against an unknown email still runs one bcrypt
check against a dummy hash of the same cost, so response time does not reveal
whether the account exists. The dummy hash is computed once per cost factor.

Strength scoring is deterministic:
  +20 length >= 8, +10 more at >= 12, +10 more at >= 16
  +15 each for uppercase, lowercase, digit, special character
  +10 if the password is not in the common-password denylist
Bands: < 40 weak, < 60 fair, < 80 good, < 90 strong, else very-strong.

Token digests: one-time secrets that must be looked up by value (backup
codes, email-verification and reset tokens) are stored as
HMAC-SHA256(secret_key, raw). Deterministic, so lookup is an indexed
equality; keyed, so a leaked database alone does not reveal usable values.
"""

from __future__ import annotations

import functools
import hashlib
import hmac
import re

import bcrypt

from auth.models import PasswordStrength
from core.errors import SystemFailure

DEFAULT_ROUNDS = 12

_UPPER_RE = re.compile(r"[A-Z]")
_LOWER_RE = re.compile(r"[a-z]")
_DIGIT_RE = re.compile(r"\d")
_SPECIAL_RE = re.compile(r"[!@#$%^&*()_+\-=\[\]{};':\"\\|,.<>/?]")

COMMON_PASSWORDS = frozenset(
    {
        "password",
        "12345678",
        "123456789",
        "1234567890",
        "qwerty",
        "abc123",
        "password123",
        "admin",
        "letmein",
        "welcome",
        "monkey",
        "1234567",
        "sunshine",
        "princess",
        "football",
        "iloveyou",
    }
)

# ---------------------------------------------------------------------------
# Hashing
# ---------------------------------------------------------------------------


def hash_password(plain: str, rounds: int = DEFAULT_ROUNDS) -> str:
    """Return a salted bcrypt hash of plain at the given cost factor."""
    return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt(rounds=rounds)).decode("utf-8")


def verify_password(plain: str, hashed: str | None) -> bool:
    """Constant-time check of plain against a bcrypt hash.

    Returns False on mismatch. Raises SystemFailure when there is no stored
    hash at all; an account without a hash is a data problem, not a wrong
    password.
    """
    if not hashed:
        raise SystemFailure("Account has no password hash.")
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        # Stored value is not a bcrypt hash.
        return False


@functools.lru_cache(maxsize=4)
def _dummy_hash(rounds: int) -> str:
    return hash_password("vaultpass_timing_dummy", rounds)


def burn_password_check(plain: str, rounds: int = DEFAULT_ROUNDS) -> None:
    """Spend one bcrypt verification for an unknown account."""
    verify_password(plain, _dummy_hash(rounds))


# ---------------------------------------------------------------------------
# Strength
# ---------------------------------------------------------------------------


def is_common_password(candidate: str) -> bool:
    return candidate.lower() in COMMON_PASSWORDS


def check_password_strength(candidate: str) -> PasswordStrength:
    requirements = {
        "length": len(candidate) >= 8,
        "uppercase": bool(_UPPER_RE.search(candidate)),
        "lowercase": bool(_LOWER_RE.search(candidate)),
        "number": bool(_DIGIT_RE.search(candidate)),
        "special": bool(_SPECIAL_RE.search(candidate)),
        "common": not is_common_password(candidate),
    }

    score = 0
    if len(candidate) >= 8:
        score += 20
    if len(candidate) >= 12:
        score += 10
    if len(candidate) >= 16:
        score += 10
    for key in ("uppercase", "lowercase", "number", "special"):
        if requirements[key]:
            score += 15
    if requirements["common"]:
        score += 10

    feedback = []
    if not requirements["length"]:
        feedback.append("Password should be at least 8 characters long")
    if not requirements["uppercase"]:
        feedback.append("Add uppercase letters")
    if not requirements["lowercase"]:
        feedback.append("Add lowercase letters")
    if not requirements["number"]:
        feedback.append("Add numbers")
    if not requirements["special"]:
        feedback.append("Add special characters")
    if not requirements["common"]:
        feedback.append("Avoid common passwords")

    return PasswordStrength(score=score, band=_band(score), requirements=requirements, feedback=feedback)


def _band(score: int) -> str:
    if score < 40:
        return "weak"
    if score < 60:
        return "fair"
    if score < 80:
        return "good"
    if score < 90:
        return "strong"
    return "very-strong"


# ---------------------------------------------------------------------------
# Token digests
# ---------------------------------------------------------------------------


def hash_token(raw: str, key: str) -> str:
    """Return HMAC-SHA256(key, raw) as a hex string."""
    if not key:
        raise SystemFailure("Signing key is not configured.")
    return hmac.new(key.encode(), raw.encode(), hashlib.sha256).hexdigest()
