"""
tests/test_geolocation.py -- IP geolocation, its cache, and the background dispatcher.

All HTTP calls are mocked -- no network access required.

Covers:
  - Private and unparseable addresses resolve to LOCAL without a lookup
  - No provider configured -> None
  - Provider field spellings (ipapi.co and ip-api.com) are both accepted
  - Provider failures degrade to None
  - LocationCache hits, negative entries, and TTL expiry
  - TaskDispatcher traps task errors
  - redact_email
"""

from __future__ import annotations

import time
from unittest.mock import MagicMock, patch

import pytest
import requests

from cache.store import LocationCache
from core.background import TaskDispatcher
from core.config import get_settings
from core.geolocation import LOCAL, Location, LocationResolver, is_private_address
from core.notifier import LogNotifier, SmtpNotifier, build_notifier, redact_email

URL = "https://geo.example.test/{ip}/json/"


def _response(payload, status: int = 200) -> MagicMock:
    resp = MagicMock()
    resp.status_code = status
    resp.json.return_value = payload
    if status >= 400:
        resp.raise_for_status.side_effect = requests.HTTPError(f"{status} Error")
    else:
        resp.raise_for_status.return_value = None
    return resp


@pytest.fixture
def cache():
    c = LocationCache(":memory:")
    yield c
    c.close()


class TestPrivateAddresses:
    @pytest.mark.parametrize("ip", ["127.0.0.1", "10.1.2.3", "192.168.0.5", "169.254.1.1", "::1", "testclient", ""])
    def test_private_or_unparseable_is_local(self, ip: str) -> None:
        resolver = LocationResolver(URL)
        with patch.object(resolver._session, "get") as mock_get:
            assert resolver.resolve(ip) == LOCAL
        mock_get.assert_not_called()

    def test_public_address_is_not_private(self) -> None:
        assert not is_private_address("8.8.8.8")
        assert not is_private_address("2001:4860:4860::8888")


class TestLookup:
    def test_disabled_resolver_returns_none(self) -> None:
        resolver = LocationResolver("")
        assert not resolver.enabled
        assert resolver.resolve("8.8.8.8") is None

    def test_ipapi_fields(self) -> None:
        resolver = LocationResolver(URL)
        payload = {"country_name": "Norway", "city": "Oslo", "latitude": 59.9, "longitude": 10.7, "timezone": "Europe/Oslo"}
        with patch.object(resolver._session, "get", return_value=_response(payload)) as mock_get:
            location = resolver.resolve("8.8.8.8")
        mock_get.assert_called_once_with("https://geo.example.test/8.8.8.8/json/", timeout=3.0)
        assert location == Location(country="Norway", city="Oslo", latitude=59.9, longitude=10.7, timezone="Europe/Oslo")

    def test_ip_api_fields(self) -> None:
        resolver = LocationResolver(URL)
        payload = {"status": "success", "country": "Chile", "city": "Santiago", "lat": "-33.4", "lon": "-70.6"}
        with patch.object(resolver._session, "get", return_value=_response(payload)):
            location = resolver.resolve("8.8.8.8")
        assert location.country == "Chile"
        assert location.latitude == -33.4
        assert location.longitude == -70.6

    def test_provider_failure_status(self) -> None:
        resolver = LocationResolver(URL)
        with patch.object(resolver._session, "get", return_value=_response({"status": "fail"})):
            assert resolver.resolve("8.8.8.8") is None

    def test_http_error(self) -> None:
        resolver = LocationResolver(URL)
        with patch.object(resolver._session, "get", return_value=_response({}, status=503)):
            assert resolver.resolve("8.8.8.8") is None

    def test_timeout(self) -> None:
        resolver = LocationResolver(URL)
        with patch.object(resolver._session, "get", side_effect=requests.Timeout("slow")):
            assert resolver.resolve("8.8.8.8") is None

    def test_bad_json(self) -> None:
        resolver = LocationResolver(URL)
        resp = _response(None)
        resp.json.side_effect = ValueError("not json")
        with patch.object(resolver._session, "get", return_value=resp):
            assert resolver.resolve("8.8.8.8") is None


class TestCache:
    def test_miss_then_hit(self, cache) -> None:
        assert cache.get("8.8.8.8") == (False, None)
        cache.set("8.8.8.8", {"country": "Norway"})
        assert cache.get("8.8.8.8") == (True, {"country": "Norway"})

    def test_negative_entry(self, cache) -> None:
        cache.set("8.8.4.4", None)
        assert cache.get("8.8.4.4") == (True, None)

    def test_expired_entry_is_a_miss(self) -> None:
        cache = LocationCache(":memory:", ttl=60)
        cache.set("8.8.8.8", {"country": "Norway"})
        with patch("cache.store.time.time", return_value=time.time() + 120):
            assert cache.get("8.8.8.8") == (False, None)
        cache.close()

    def test_purge_expired(self) -> None:
        cache = LocationCache(":memory:", ttl=60)
        cache.set("8.8.8.8", {"country": "Norway"})
        cache.set("8.8.4.4", None)
        with patch("cache.store.time.time", return_value=time.time() + 120):
            assert cache.purge_expired() == 2
        cache.close()

    def test_resolver_uses_cache(self, cache) -> None:
        resolver = LocationResolver(URL, cache=cache)
        with patch.object(resolver._session, "get", return_value=_response({"country": "Norway"})) as mock_get:
            first = resolver.resolve("8.8.8.8")
            second = resolver.resolve("8.8.8.8")
        assert first == second == Location(country="Norway")
        assert mock_get.call_count == 1

    def test_failed_lookup_is_cached_negatively(self, cache) -> None:
        resolver = LocationResolver(URL, cache=cache)
        with patch.object(resolver._session, "get", side_effect=requests.ConnectionError("down")) as mock_get:
            assert resolver.resolve("8.8.8.8") is None
            assert resolver.resolve("8.8.8.8") is None
        assert mock_get.call_count == 1


class TestDispatcher:
    def test_inline_runs_immediately(self) -> None:
        seen = []
        TaskDispatcher(inline=True).submit("record", seen.append, 1)
        assert seen == [1]

    def test_task_errors_are_trapped(self, caplog) -> None:
        def boom() -> None:
            raise RuntimeError("task exploded")

        assert TaskDispatcher(inline=True).submit("boom", boom) is None
        assert "Background task boom failed" in caplog.text

    def test_threaded_dispatch(self) -> None:
        dispatcher = TaskDispatcher(max_workers=1)
        future = dispatcher.submit("add", lambda a, b: a + b, 1, 2)
        future.result(timeout=5)
        dispatcher.shutdown()
        assert dispatcher.submit("late", lambda: None) is None


class TestNotifier:
    def test_redact_email(self) -> None:
        assert redact_email("alice@example.com") == "al***@example.com"
        assert redact_email("not-an-email") == "redacted"

    def test_build_notifier_defaults_to_log(self) -> None:
        assert isinstance(build_notifier(get_settings()), LogNotifier)

    def test_smtp_delivery(self) -> None:
        notifier = SmtpNotifier(host="smtp.example.test", user="mailer", password="pw", base_url="https://app.test/")
        with patch("core.notifier.smtplib.SMTP") as mock_smtp:
            notifier.send_password_reset("alice@example.com", "tok+en")
        server = mock_smtp.return_value.__enter__.return_value
        server.starttls.assert_called_once()
        server.login.assert_called_once_with("mailer", "pw")
        msg = server.send_message.call_args[0][0]
        assert msg["To"] == "alice@example.com"
        assert "https://app.test/reset-password?token=tok%2Ben" in msg.get_content()
