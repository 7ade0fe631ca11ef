"""
Per-user, per-tier rate limiting.

Each tier has minute/hour/day limits counted in fixed calendar buckets
(``2026-10-18-14-05`` for the minute window), plus a burst limit over a
sliding 10 second window. The most restrictive fixed window decides the
result; the burst check can veto on its own.

Counters live in the ``rate_limit`` cache namespace and expire at the next
bucket boundary. Any internal failure lets the request through.
"""

import math
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

from tastegraph.config.logger import app_logger
from tastegraph.config.settings import Settings
from tastegraph.models.domain import RateLimitResult
from tastegraph.services.cache_backend import CacheBackend
from tastegraph.services.cached_graph import NS_RATE_LIMIT
from tastegraph.services.user_profiles import DEFAULT_TIER, UserProfileStore


KEY_PREFIX = "rate_limit"
WINDOWS = ("minute", "hour", "day")


@dataclass(frozen=True)
class TierLimits:
    requests_per_minute: int
    requests_per_hour: int
    requests_per_day: int
    burst_limit: int

    def for_window(self, window: str) -> int:
        return {
            "minute": self.requests_per_minute,
            "hour": self.requests_per_hour,
            "day": self.requests_per_day,
        }[window]


DEFAULT_TIERS: Dict[str, TierLimits] = {
    "free": TierLimits(10, 100, 500, 15),
    "premium": TierLimits(50, 1000, 10000, 75),
    "enterprise": TierLimits(200, 10000, 100000, 300),
}


def window_bucket(window: str, now: float) -> Tuple[str, float]:
    """Calendar bucket label and reset timestamp (UTC) for ``window`` at ``now``.

    >>> window_bucket("minute", 0.0)
    ('1970-1-1-0-0', 60.0)
    """
    moment = datetime.fromtimestamp(now, tz=timezone.utc)
    if window == "minute":
        start = moment.replace(second=0, microsecond=0)
        bucket = f"{start.year}-{start.month}-{start.day}-{start.hour}-{start.minute}"
        reset = start + timedelta(minutes=1)
    elif window == "hour":
        start = moment.replace(minute=0, second=0, microsecond=0)
        bucket = f"{start.year}-{start.month}-{start.day}-{start.hour}"
        reset = start + timedelta(hours=1)
    elif window == "day":
        start = moment.replace(hour=0, minute=0, second=0, microsecond=0)
        bucket = f"{start.year}-{start.month}-{start.day}"
        reset = start + timedelta(days=1)
    else:
        raise ValueError(f"Invalid time window: {window}")
    return bucket, reset.timestamp()


class RateLimiter:
    """Multi-window rate limiter backed by cache counters."""

    def __init__(
        self,
        backend: CacheBackend,
        profiles: UserProfileStore,
        tiers: Optional[Dict[str, TierLimits]] = None,
        burst_window: float = 10.0,
        production: bool = False,
        clock: Callable[[], float] = time.time,
    ):
        self.backend = backend
        self.profiles = profiles
        self.tiers = dict(tiers or DEFAULT_TIERS)
        self.burst_window = burst_window
        self.production = production
        self._clock = clock

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        backend: CacheBackend,
        profiles: UserProfileStore,
        clock: Callable[[], float] = time.time,
    ) -> "RateLimiter":
        tiers = {name: TierLimits(**limits) for name, limits in settings.RATE_LIMIT_TIERS.items()}
        return cls(
            backend,
            profiles,
            tiers=tiers,
            burst_window=settings.RATE_LIMIT_BURST_WINDOW_SECONDS,
            production=settings.is_production,
            clock=clock,
        )

    def limits_for(self, tier: str) -> TierLimits:
        return self.tiers.get(tier) or self.tiers.get(DEFAULT_TIER) or DEFAULT_TIERS[DEFAULT_TIER]

    # ============================================
    # Keys
    # ============================================

    @staticmethod
    def window_key(user_id: str, endpoint: str, window: str, bucket: str) -> str:
        return f"{KEY_PREFIX}:{user_id}:{endpoint}:{window}:{bucket}"

    @staticmethod
    def burst_key(user_id: str, endpoint: str) -> str:
        return f"{KEY_PREFIX}:burst:{user_id}:{endpoint}"

    def _retry_after(self, reset_time: float, now: float) -> int:
        return max(1, math.ceil(reset_time - now))

    # ============================================
    # Admission
    # ============================================

    async def check_limit(self, user_id: str, endpoint: str = "default") -> RateLimitResult:
        """Decide whether ``user_id`` may make another request to ``endpoint``. Never raises."""
        now = self._clock()
        try:
            profile = await self.profiles.get_profile(user_id)
            tier = profile.tier if profile and profile.tier in self.tiers else DEFAULT_TIER
            limits = self.limits_for(tier)

            if profile is None and not self.production:
                return RateLimitResult(
                    allowed=True,
                    limit=limits.requests_per_minute,
                    remaining=limits.requests_per_minute - 1,
                    reset_time=now + 60,
                    tier=tier,
                )

            checks = [await self._check_window(user_id, endpoint, w, limits.for_window(w), now) for w in WINDOWS]
            most_restrictive = min(checks, key=lambda c: c.remaining)

            burst = await self._check_burst(user_id, endpoint, limits.burst_limit, now)
            if not burst.allowed:
                burst.tier = tier
                app_logger.warning(f"[RateLimiter] Burst limit hit for user {user_id} on {endpoint}")
                return burst

            most_restrictive.tier = tier
            if not most_restrictive.allowed:
                most_restrictive.retry_after = self._retry_after(most_restrictive.reset_time, now)
                app_logger.warning(
                    f"[RateLimiter] Limit {most_restrictive.limit} reached for user {user_id} on {endpoint}, "
                    f"retry after {most_restrictive.retry_after}s"
                )
            return most_restrictive
        except Exception as exc:
            app_logger.error(f"[RateLimiter] Rate limit check failed, allowing request: {exc}")
            return RateLimitResult(allowed=True, limit=1, remaining=1, reset_time=now + 60, tier=DEFAULT_TIER)

    async def _check_window(self, user_id: str, endpoint: str, window: str, limit: int, now: float) -> RateLimitResult:
        count, reset_time = await self._current_usage(user_id, endpoint, window, now)
        return RateLimitResult(
            allowed=count < limit,
            limit=limit,
            remaining=max(0, limit - count),
            reset_time=reset_time,
        )

    async def _check_burst(self, user_id: str, endpoint: str, burst_limit: int, now: float) -> RateLimitResult:
        recent = await self._recent_requests(user_id, endpoint, now)
        allowed = len(recent) < burst_limit
        reset_time = (recent[0] + self.burst_window) if recent else now + self.burst_window
        return RateLimitResult(
            allowed=allowed,
            limit=burst_limit,
            remaining=max(0, burst_limit - len(recent)),
            reset_time=reset_time,
            retry_after=None if allowed else self._retry_after(reset_time, now),
        )

    async def _current_usage(self, user_id: str, endpoint: str, window: str, now: float) -> Tuple[int, float]:
        bucket, reset_time = window_bucket(window, now)
        count = await self.backend.get(NS_RATE_LIMIT, self.window_key(user_id, endpoint, window, bucket))
        return int(count or 0), reset_time

    async def _recent_requests(self, user_id: str, endpoint: str, now: float) -> List[float]:
        stamps = await self.backend.get(NS_RATE_LIMIT, self.burst_key(user_id, endpoint)) or []
        window_start = now - self.burst_window
        return sorted(t for t in stamps if t > window_start)

    # ============================================
    # Recording
    # ============================================

    async def record_request(self, user_id: str, endpoint: str = "default") -> None:
        """Count a request against every window. Failures are logged, never raised."""
        now = self._clock()
        try:
            for window in WINDOWS:
                bucket, reset_time = window_bucket(window, now)
                await self.backend.incr(
                    NS_RATE_LIMIT,
                    self.window_key(user_id, endpoint, window, bucket),
                    ttl_seconds=max(1, math.ceil(reset_time - now)),
                )
            recent = await self._recent_requests(user_id, endpoint, now)
            recent.append(now)
            await self.backend.set(NS_RATE_LIMIT, self.burst_key(user_id, endpoint), recent, ttl_seconds=self.burst_window)
        except Exception as exc:
            app_logger.error(f"[RateLimiter] Failed to record request for {user_id}: {exc}")

    # ============================================
    # Administration
    # ============================================

    async def get_usage_stats(self, user_id: str, endpoint: str = "default") -> Dict[str, Any]:
        now = self._clock()
        profile = await self.profiles.get_profile(user_id)
        tier = profile.tier if profile and profile.tier in self.tiers else DEFAULT_TIER
        limits = self.limits_for(tier)

        stats: Dict[str, Any] = {"user_id": user_id, "tier": tier, "known_user": profile is not None}
        for window in WINDOWS:
            used, reset_time = await self._current_usage(user_id, endpoint, window, now)
            stats[window] = {"used": used, "limit": limits.for_window(window), "reset_time": reset_time}
        recent = await self._recent_requests(user_id, endpoint, now)
        stats["burst"] = {"used": len(recent), "limit": limits.burst_limit, "window_seconds": self.burst_window}
        return stats

    async def reset_user_limits(self, user_id: str) -> int:
        prefixes = (f"{KEY_PREFIX}:{user_id}:", f"{KEY_PREFIX}:burst:{user_id}:")
        removed = 0
        for key in await self.backend.keys(NS_RATE_LIMIT):
            if key.startswith(prefixes) and await self.backend.delete(NS_RATE_LIMIT, key):
                removed += 1
        app_logger.info(f"[RateLimiter] Reset {removed} rate limit counters for user {user_id}")
        return removed
