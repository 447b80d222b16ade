"""Control API request guards: bearer token check and per-client rate limit."""

from __future__ import annotations

import hmac
import threading
from collections import deque
from dataclasses import dataclass, field
from typing import Callable

from pinlink.utils.helpers import now_ms


def extract_token(authorization: str | None, header_token: str | None = None) -> str:
    """Token from `Authorization: Bearer ...` or the `X-Auth-Token` header."""
    auth = str(authorization or "").strip()
    if auth.lower().startswith("bearer "):
        return auth[7:].strip()
    return str(header_token or "").strip()


def token_matches(expected: str, presented: str) -> bool:
    if not expected:
        return False
    return hmac.compare_digest(expected.encode("utf-8"), str(presented or "").encode("utf-8"))


@dataclass(slots=True, frozen=True)
class RateDecision:
    allowed: bool
    remaining: int
    retry_after_ms: int = 0


@dataclass(slots=True)
class ClientRateLimiter:
    """Sliding one-minute window per client key; `burst` is headroom over rpm."""

    requests_per_minute: int = 600
    burst: int = 120
    window_ms: int = 60_000
    max_clients: int = 10_000
    clock: Callable[[], int] = now_ms
    _lock: threading.Lock = field(default_factory=threading.Lock)
    _hits: dict[str, deque[int]] = field(default_factory=dict)

    def __post_init__(self) -> None:
        self.requests_per_minute = max(1, int(self.requests_per_minute))
        self.burst = max(0, int(self.burst))
        self.window_ms = max(1000, int(self.window_ms))

    @property
    def limit(self) -> int:
        return self.requests_per_minute + self.burst

    def check(self, key: str) -> RateDecision:
        client = str(key or "").strip() or "unknown"
        now = int(self.clock())
        cutoff = now - self.window_ms
        with self._lock:
            hits = self._hits.setdefault(client, deque())
            while hits and hits[0] <= cutoff:
                hits.popleft()
            if len(hits) >= self.limit:
                return RateDecision(allowed=False, remaining=0, retry_after_ms=max(1, hits[0] - cutoff))
            hits.append(now)
            if len(self._hits) > self.max_clients:
                self._evict_idle(cutoff)
            return RateDecision(allowed=True, remaining=self.limit - len(hits))

    def _evict_idle(self, cutoff: int) -> None:
        idle = [client for client, hits in self._hits.items() if not hits or hits[-1] <= cutoff]
        for client in idle:
            self._hits.pop(client, None)
