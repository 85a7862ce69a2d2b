# mapbackend/security/rate_limit.py
from __future__ import annotations

import math
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Dict, Mapping, Optional, Protocol, Tuple

LOOPBACK = "127.0.0.1"


class WindowClass(str, Enum):
    LOGIN = "login"
    API = "api"
    CONTROL = "control"


@dataclass(frozen=True)
class WindowConfig:
    max_requests: int
    window_seconds: int = 60


DEFAULT_WINDOWS: Dict[WindowClass, WindowConfig] = {
    WindowClass.LOGIN: WindowConfig(5),
    WindowClass.API: WindowConfig(100),
    WindowClass.CONTROL: WindowConfig(10),
}


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    limit: int
    remaining: int
    reset_time: float  # epoch seconds

    def retry_after(self, now: Optional[float] = None) -> int:
        now = time.time() if now is None else now
        return max(1, math.ceil(self.reset_time - now))

    @property
    def reset_iso(self) -> str:
        return (
            datetime.fromtimestamp(self.reset_time, tz=timezone.utc)
            .isoformat(timespec="milliseconds")
            .replace("+00:00", "Z")
        )

    def headers(self, now: Optional[float] = None) -> Dict[str, str]:
        out = {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": self.reset_iso,
        }
        if not self.allowed:
            out["Retry-After"] = str(self.retry_after(now))
        return out


CounterKey = Tuple[str, str, int]


class CounterStore(Protocol):
    def increment_if_below(
        self, key: CounterKey, ceiling: int, reset_time: float, now: float
    ) -> Tuple[bool, int]:
        """Atomically bump the counter unless it already reached ceiling.

        Returns (allowed, count_after).
        """
        ...


class InMemoryCounterStore:
    """Process-local counters; one lock around every compare-and-increment."""

    def __init__(self) -> None:
        self._records: Dict[CounterKey, Dict[str, float]] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    def increment_if_below(
        self, key: CounterKey, ceiling: int, reset_time: float, now: float
    ) -> Tuple[bool, int]:
        with self._lock:
            rec = self._records.get(key)
            if rec is None:
                self._evict_elapsed(now)
                if ceiling < 1:
                    return False, 0
                self._records[key] = {"count": 1, "reset": reset_time}
                return True, 1
            if rec["count"] >= ceiling:
                return False, int(rec["count"])
            rec["count"] += 1
            return True, int(rec["count"])

    def _evict_elapsed(self, now: float) -> None:
        # caller holds the lock
        stale = [k for k, r in self._records.items() if r["reset"] <= now]
        for k in stale:
            del self._records[k]


class FixedWindowRateLimiter:
    def __init__(
        self,
        windows: Optional[Mapping[WindowClass, WindowConfig]] = None,
        store: Optional[CounterStore] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.windows: Dict[WindowClass, WindowConfig] = dict(DEFAULT_WINDOWS)
        if windows:
            self.windows.update(windows)
        self.store = store if store is not None else InMemoryCounterStore()
        self.clock = clock

    def check(self, client_key: str, window_class: WindowClass) -> RateLimitDecision:
        cfg = self.windows[window_class]
        now = self.clock()
        window = cfg.window_seconds
        window_start = math.floor(now / window) * window
        reset_time = float(window_start + window)
        key: CounterKey = (client_key, window_class.value, int(window_start))

        allowed, count = self.store.increment_if_below(
            key, cfg.max_requests, reset_time, now
        )
        remaining = max(0, cfg.max_requests - count) if allowed else 0
        return RateLimitDecision(
            allowed=allowed,
            limit=cfg.max_requests,
            remaining=remaining,
            reset_time=reset_time,
        )


def client_key_from_headers(
    headers: Mapping[str, str], fallback: Optional[str] = None, trust_proxy: bool = True
) -> str:
    """
    Client address for rate limiting: forwarded-for (first hop), then real-ip,
    then loopback. With trust_proxy=False only the socket peer is used.
    """
    if trust_proxy:
        forwarded = headers.get("x-forwarded-for")
        if forwarded:
            first = forwarded.split(",")[0].strip()
            if first:
                return first
        real_ip = (headers.get("x-real-ip") or "").strip()
        if real_ip:
            return real_ip
        return LOOPBACK
    return fallback or LOOPBACK


def limiter_from_settings(settings) -> FixedWindowRateLimiter:
    window = settings.rate_limit_window_seconds
    return FixedWindowRateLimiter(
        {
            WindowClass.LOGIN: WindowConfig(settings.login_rate_limit, window),
            WindowClass.API: WindowConfig(settings.api_rate_limit, window),
            WindowClass.CONTROL: WindowConfig(settings.control_rate_limit, window),
        }
    )
