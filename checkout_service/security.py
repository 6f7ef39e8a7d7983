"""
security.py — Request guards that run before any checkout logic

    • Origin / Referer allow-list (anti-CSRF)
    • Sliding-window rate limiting keyed by user id or client IP

The HTTP layer wires these into FastAPI dependencies; nothing here depends on
the web framework.
"""

import threading
import time
from collections import deque
from dataclasses import dataclass
from typing import Callable, Deque, Dict, Mapping, Optional, Sequence, Tuple

from .logging_config import get_logger

log = get_logger(__name__)

SAFE_METHODS = ("GET", "HEAD", "OPTIONS")


def _origin_allowed(origin: str, allowed: Sequence[str], host: Optional[str]) -> bool:
    origin = origin.rstrip("/")
    if origin in allowed:
        return True
    # Same-origin requests, e.g. the storefront served from a LAN address.
    return bool(host) and origin in (f"http://{host}", f"https://{host}")


def _referer_allowed(referer: str, allowed: Sequence[str], host: Optional[str]) -> bool:
    candidates = list(allowed)
    if host:
        candidates += [f"http://{host}", f"https://{host}"]
    return any(referer == c or referer.startswith(c + "/") for c in candidates)


def validate_origin(method: str, path: str, headers: Mapping[str, str], allowed: Sequence[str]) -> bool:
    """
    Checks that a request comes from an allowed origin.

    The Origin header is checked first, then Referer. Requests carrying
    neither are only accepted for safe methods.
    """
    origin = headers.get("origin")
    referer = headers.get("referer")
    host = headers.get("host")

    if origin:
        if _origin_allowed(origin, allowed, host):
            return True
        log.warning(f"CSRF: Blocked cross-origin request to {path} (origin={origin}, host={host}).")
        return False

    if referer:
        if _referer_allowed(referer, allowed, host):
            return True
        log.warning(f"CSRF: Blocked request to {path} with invalid referer {referer} (host={host}).")
        return False

    if method.upper() in SAFE_METHODS:
        return True

    log.warning(f"CSRF: Blocked {method} {path} without Origin/Referer headers.")
    return False


def rate_limit_identifier(headers: Mapping[str, str], client_host: Optional[str], user_id: Optional[str] = None) -> str:
    """Prefers the authenticated user id, falls back to the client IP."""
    if user_id:
        return f"user:{user_id}"

    forwarded = headers.get("x-forwarded-for")
    ip = (
        headers.get("x-real-ip")
        or (forwarded.split(",")[0].strip() if forwarded else None)
        or headers.get("cf-connecting-ip")
        or client_host
        or "anonymous"
    )
    return f"ip:{ip}"


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    limit: int
    remaining: int
    reset_at: float
    retry_after: int


class InMemoryRateLimitStore:
    """
    Keyed request log with an atomic check-and-record operation.

    Each key holds the timestamps of the requests admitted in the current
    window. Keys whose window has fully expired are swept at most once per
    window, so identifiers that never return do not accumulate.
    """

    def __init__(self):
        self._hits: Dict[str, Deque[float]] = {}
        self._lock = threading.Lock()
        self._longest_window = 0.0
        self._last_sweep: Optional[float] = None

    def __len__(self):
        with self._lock:
            return len(self._hits)

    def _sweep(self, now: float):
        cutoff = now - self._longest_window
        stale = [key for key, hits in self._hits.items() if not hits or hits[-1] <= cutoff]
        for key in stale:
            del self._hits[key]
        self._last_sweep = now

    def hit(self, key: str, now: float, window: float, limit: int) -> Tuple[bool, int, float]:
        """
        Records a request for `key` if fewer than `limit` were admitted in the
        last `window` seconds.

        Returns:
            (allowed, admitted count including this one, timestamp of the oldest admitted request)
        """
        with self._lock:
            self._longest_window = max(self._longest_window, window)
            if self._last_sweep is None:
                self._last_sweep = now
            elif now - self._last_sweep >= self._longest_window:
                self._sweep(now)

            hits = self._hits.get(key)
            if hits is None:
                hits = self._hits[key] = deque()
            while hits and hits[0] <= now - window:
                hits.popleft()
            if len(hits) >= limit:
                return False, len(hits), hits[0]
            hits.append(now)
            return True, len(hits), hits[0]


class SlidingWindowRateLimiter:
    """Allows `limit` requests per `window_seconds` per identifier."""

    def __init__(
        self,
        store: InMemoryRateLimitStore,
        limit: int,
        window_seconds: float,
        prefix: str,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.limit = limit
        self.window_seconds = window_seconds
        self.prefix = prefix
        self.clock = clock

    def check(self, identifier: str) -> RateLimitDecision:
        now = self.clock()
        allowed, count, oldest = self.store.hit(
            f"{self.prefix}:{identifier}", now, self.window_seconds, self.limit
        )
        reset_at = oldest + self.window_seconds
        retry_after = max(1, int(reset_at - now + 0.999))
        if not allowed:
            log.warning(f"Rate limit exceeded for {identifier} on '{self.prefix}' (limit {self.limit}).")
        return RateLimitDecision(
            allowed=allowed,
            limit=self.limit,
            remaining=max(0, self.limit - count),
            reset_at=reset_at,
            retry_after=retry_after,
        )
