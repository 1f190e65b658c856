"""
sessions/fingerprint.py -- Device recognition from request metadata.

parse_device_info() turns a user agent string and client IP into a
DeviceInfo. The classification is coarse (a handful of
browsers and operating systems); it only feeds display names and the device
list, never an access decision.

fingerprint_id() is a one-way SHA-256 of "<user agent>-<ip>", truncated to
32 hex characters. It is deterministic, so repeated logins from the same
browser and network reuse one device record. Collisions across users do not
matter because every lookup is scoped by user id.
"""

from __future__ import annotations

import hashlib
import re
from typing import Mapping, Optional

from sessions.models import DeviceInfo

_MOBILE_RE = re.compile(r"Mobile|Android|iPhone|iPad")
_TABLET_RE = re.compile(r"iPad|Tablet")


def fingerprint_id(user_agent: str, ip_address: str) -> str:
    return hashlib.sha256(f"{user_agent}-{ip_address}".encode("utf-8")).hexdigest()[:32]


def client_ip(headers: Mapping[str, str], peer: Optional[str]) -> str:
    """First X-Forwarded-For hop, then X-Real-IP, then the socket peer.

    The proxy headers are trusted as-is; deployments must strip them at the
    edge if clients can reach the app directly.
    """
    forwarded = headers.get("x-forwarded-for", "")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    real_ip = headers.get("x-real-ip", "").strip()
    if real_ip:
        return real_ip
    return peer or "Unknown"


def parse_device_info(user_agent: Optional[str], ip_address: Optional[str]) -> DeviceInfo:
    ua = user_agent or "Unknown"
    ip = ip_address or "Unknown"
    return DeviceInfo(
        user_agent=ua,
        ip_address=ip,
        device_id=fingerprint_id(ua, ip),
        device_type=_device_type(ua),
        browser=_browser(ua),
        os=_os(ua),
    )


def _browser(ua: str) -> str:
    # Order matters: Edge and Opera UAs also contain "Chrome" and "Safari".
    if "Edg" in ua:
        return "Edge"
    if "OPR" in ua or "Opera" in ua:
        return "Opera"
    if "Firefox" in ua:
        return "Firefox"
    if "Chrome" in ua:
        return "Chrome"
    if "Safari" in ua:
        return "Safari"
    return "Unknown"


def _os(ua: str) -> str:
    # Android UAs contain "Linux"; iOS UAs contain "like Mac OS X".
    if "Windows" in ua:
        return "Windows"
    if "Android" in ua:
        return "Android"
    if "iPhone" in ua or "iPad" in ua or "iOS" in ua:
        return "iOS"
    if "Mac OS" in ua:
        return "macOS"
    if "Linux" in ua:
        return "Linux"
    return "Unknown"


def _device_type(ua: str) -> str:
    if ua == "Unknown":
        return "unknown"
    if _MOBILE_RE.search(ua):
        return "tablet" if _TABLET_RE.search(ua) else "mobile"
    return "desktop"
