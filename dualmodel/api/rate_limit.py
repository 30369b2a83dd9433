"""Per-client rate limit shared by the verified generation endpoints.

Each of those requests costs two model calls, so one client gets a single
budget across all three routes. Clients are identified by the first
``X-Forwarded-For`` address when behind a proxy, else the socket peer.
"""

from __future__ import annotations

from fastapi import Request
from slowapi import Limiter
from slowapi.util import get_remote_address

from dualmodel.config import settings

VERIFIED_SCOPE = "verified"


def client_key(request: Request) -> str:
    forwarded = request.headers.get("X-Forwarded-For", "")
    first = forwarded.split(",")[0].strip()
    return first or get_remote_address(request)


def verified_limit() -> str:
    # Evaluated on every request
    return settings.verified_rate_limit


limiter = Limiter(key_func=client_key, enabled=settings.rate_limit_enabled)

verified_rate_limit = limiter.shared_limit(verified_limit, scope=VERIFIED_SCOPE)
