"""
api/limiter.py -- Shared slowapi rate limiter instance.

Import this in both api/main.py (to mount as middleware) and the route
modules (to apply per-route limits with @limiter.limit()).

Using a single shared instance ensures all routes share the same in-memory
counter store. If this were instantiated in each module separately, each
module would get its own isolated counter and rate limits would never trigger.

Limit strings are read from Settings at request time (callables), so
LOGIN_RATE_LIMIT / API_RATE_LIMIT take effect without code changes.
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

from core.config import get_settings


def api_limit() -> str:
    return get_settings().api_rate_limit


def login_limit() -> str:
    return get_settings().login_rate_limit


limiter = Limiter(key_func=get_remote_address, default_limits=[api_limit], storage_uri="memory://")
