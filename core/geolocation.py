"""
geolocation.py -- IP address to coarse location lookup.

The provider is optional. With no GEO_LOOKUP_URL configured every public
address resolves to None ("location unavailable"), which the risk engine and
the event log both handle. Private, loopback, and link-local addresses always
resolve to the fixed LOCAL marker without touching the network.

Any provider that answers GET <url with {ip} substituted> with a flat JSON
object works; the common field spellings of ipapi.co and ip-api.com are
accepted (country_name/country, latitude/lat, longitude/lon).

Failures (timeouts, HTTP errors, bad JSON) are logged and degrade to None.
resolve() never raises.
"""

from __future__ import annotations

import ipaddress
import logging
from dataclasses import asdict, dataclass
from typing import Any, Optional

import requests

logger = logging.getLogger("vaultpass.geo")


@dataclass(frozen=True)
class Location:
    country: Optional[str] = None
    city: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    timezone: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


LOCAL = Location(country="Local", city="Local Network")


def is_private_address(ip: str) -> bool:
    """True for loopback, RFC 1918, link-local, and unparseable addresses."""
    try:
        addr = ipaddress.ip_address(ip.strip())
    except ValueError:
        return True
    return addr.is_private or addr.is_loopback or addr.is_link_local


class LocationResolver:
    """Resolve an IP to a Location, consulting an optional cache first.

    cache is any object with get(ip) -> (hit, dict | None) and set(ip, dict | None),
    normally cache.store.LocationCache.
    """

    def __init__(self, url_template: str = "", timeout: float = 3.0, cache: Any = None) -> None:
        self.url_template = url_template
        self.timeout = timeout
        self.cache = cache
        # max_redirects=3 replaces the requests default of 30 -- the provider
        # is a known public API, so a long redirect chain is never legitimate.
        self._session = requests.Session()
        self._session.max_redirects = 3

    @property
    def enabled(self) -> bool:
        return bool(self.url_template)

    def resolve(self, ip: str) -> Optional[Location]:
        if not ip or is_private_address(ip):
            return LOCAL
        if not self.enabled:
            return None

        if self.cache is not None:
            hit, data = self.cache.get(ip)
            if hit:
                return Location(**data) if data else None

        location = self._fetch(ip)
        if self.cache is not None:
            self.cache.set(ip, location.to_dict() if location else None)
        return location

    def _fetch(self, ip: str) -> Optional[Location]:
        url = self.url_template.format(ip=ip)
        try:
            resp = self._session.get(url, timeout=self.timeout)
            resp.raise_for_status()
            data = resp.json()
        except (requests.RequestException, ValueError) as e:
            logger.warning("Geolocation lookup failed for %s: %s", ip, e)
            return None
        if not isinstance(data, dict) or data.get("error") or data.get("status") == "fail":
            return None
        country = data.get("country_name") or data.get("country")
        if not country:
            return None
        return Location(
            country=country,
            city=data.get("city"),
            latitude=_as_float(data.get("latitude", data.get("lat"))),
            longitude=_as_float(data.get("longitude", data.get("lon"))),
            timezone=data.get("timezone"),
        )


def _as_float(value: Any) -> Optional[float]:
    try:
        return float(value) if value is not None else None
    except (TypeError, ValueError):
        return None
