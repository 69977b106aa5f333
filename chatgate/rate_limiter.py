"""
Per-user rate limiting with two token buckets (minute + hour).

A request is allowed only when both buckets hold at least one token, and
then both are decremented. Refill is computed lazily on each check from
the elapsed wall-clock time, with two guards against clock jumps:

  - elapsed < 0 (clock went backwards): reset the refill timestamp and add
    nothing this tick.
  - elapsed > 2 * interval (NTP resync, VM resume): clamp to 2 * interval,
    so one check can never grant more than 2 * refill_rate tokens.

check_and_consume() holds a threading.Lock across refill, check and
decrement and never awaits, so two concurrent requests for the same user
can never both spend the last token.

The tracked-user table is bounded. Inactive users are dropped by
cleanup(), which main.py runs periodically via sweep_forever(). When the
table is full, cleanup runs inline and, if that frees nothing, the least
recently active user is evicted before the new one is admitted.
"""

from __future__ import annotations

import asyncio
import logging
import os
import threading
from typing import Callable

from chatgate.models import RateLimitResult, TokenBucket, UserRateState, now_ms

logger = logging.getLogger(__name__)

MINUTE_MS = 60_000
HOUR_MS = 3_600_000

DEFAULT_PER_MINUTE = 60
DEFAULT_PER_HOUR = 500
DEFAULT_MAX_TRACKED_USERS = 100_000
DEFAULT_RETENTION_MS = 24 * HOUR_MS
INVALID_USER_RETRY_MS = 60_000


def _positive_int(value, fallback: int, name: str) -> int:
    try:
        n = int(value)
    except (TypeError, ValueError):
        n = 0
    if n <= 0:
        if value not in (None, ""):
            logger.error("Invalid rate limit setting %s=%r, using default %d", name, value, fallback)
        return fallback
    return n


class RateLimiter:
    """Dual-window token bucket keyed by user id."""

    def __init__(
        self,
        per_minute: int | None = None,
        per_hour: int | None = None,
        max_tracked_users: int = DEFAULT_MAX_TRACKED_USERS,
        retention_ms: int = DEFAULT_RETENTION_MS,
        clock: Callable[[], int] = now_ms,
    ):
        self.per_minute = _positive_int(
            per_minute if per_minute is not None else os.environ.get("RATE_LIMIT_PER_MINUTE"),
            DEFAULT_PER_MINUTE, "per_minute",
        )
        self.per_hour = _positive_int(
            per_hour if per_hour is not None else os.environ.get("RATE_LIMIT_PER_HOUR"),
            DEFAULT_PER_HOUR, "per_hour",
        )
        self.max_tracked_users = _positive_int(max_tracked_users, DEFAULT_MAX_TRACKED_USERS, "max_tracked_users")
        self.retention_ms = _positive_int(retention_ms, DEFAULT_RETENTION_MS, "retention_ms")
        self._clock = clock
        self._users: dict[str, UserRateState] = {}
        self._lock = threading.Lock()

        logger.info(
            "RateLimiter initialised (%d/min, %d/hour, max %d tracked users)",
            self.per_minute, self.per_hour, self.max_tracked_users,
        )

    @classmethod
    def from_config(cls, cfg: dict, **kwargs) -> "RateLimiter":
        rl = cfg.get("rate_limit") or {}
        # Environment wins over config.yaml
        return cls(
            per_minute=os.environ.get("RATE_LIMIT_PER_MINUTE") or rl.get("per_minute"),
            per_hour=os.environ.get("RATE_LIMIT_PER_HOUR") or rl.get("per_hour"),
            max_tracked_users=rl.get("max_tracked_users", DEFAULT_MAX_TRACKED_USERS),
            retention_ms=int(float(rl.get("retention_hours", 24)) * HOUR_MS),
            **kwargs,
        )

    # ------------------------------------------------------------------
    # Bucket math
    # ------------------------------------------------------------------

    def _refill(self, bucket: TokenBucket, now: int) -> None:
        elapsed = now - bucket.last_refill
        if elapsed < 0:
            logger.warning("Clock moved backwards by %dms, resetting refill timer", -elapsed)
            bucket.last_refill = now
            return
        if elapsed > 2 * bucket.interval_ms:
            logger.warning(
                "Large time jump (%dms), capping at %dms", elapsed, 2 * bucket.interval_ms
            )
            elapsed = 2 * bucket.interval_ms
        intervals = elapsed // bucket.interval_ms
        if intervals >= 1:
            bucket.tokens = min(bucket.capacity, bucket.tokens + intervals * bucket.refill_rate)
            bucket.last_refill = now

    def _new_state(self, user_id: str, now: int) -> UserRateState:
        return UserRateState(
            user_id=user_id,
            minute=TokenBucket(self.per_minute, self.per_minute, MINUTE_MS, self.per_minute, now),
            hour=TokenBucket(self.per_hour, self.per_hour, HOUR_MS, self.per_hour, now),
            first_request=now,
            last_request=now,
        )

    def _admit(self, user_id: str, now: int) -> UserRateState:
        state = self._users.get(user_id)
        if state is not None:
            return state
        if len(self._users) >= self.max_tracked_users:
            logger.warning("Rate limiter at capacity (%d users), cleaning up", len(self._users))
            self._cleanup_locked(now)
            if len(self._users) >= self.max_tracked_users:
                oldest = min(self._users.values(), key=lambda s: s.last_request)
                logger.error("Rate limiter still at capacity, evicting %s", oldest.user_id)
                del self._users[oldest.user_id]
        state = self._new_state(user_id, now)
        self._users[user_id] = state
        return state

    def _result(self, state: UserRateState, allowed: bool, now: int) -> RateLimitResult:
        result = RateLimitResult(
            allowed=allowed,
            remaining={"minute": state.minute.tokens, "hour": state.hour.tokens},
            limit={"minute": self.per_minute, "hour": self.per_hour},
            reset_at={
                "minute": state.minute.last_refill + state.minute.interval_ms,
                "hour": state.hour.last_refill + state.hour.interval_ms,
            },
        )
        if not allowed:
            if state.minute.tokens < 1:
                result.limit_type = "minute"
                retry = result.reset_at["minute"] - now
            else:
                result.limit_type = "hour"
                retry = result.reset_at["hour"] - now
            result.retry_after_ms = max(0, retry)
        return result

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def check_and_consume(self, user_id) -> RateLimitResult:
        """Refill, check and consume one token from both buckets atomically."""
        if not isinstance(user_id, str) or not user_id.strip():
            logger.error("Invalid user id passed to rate limiter: %r", user_id)
            now = self._clock()
            return RateLimitResult(
                allowed=False,
                retry_after_ms=INVALID_USER_RETRY_MS,
                limit={"minute": self.per_minute, "hour": self.per_hour},
                reset_at={"minute": now + MINUTE_MS, "hour": now + HOUR_MS},
                limit_type="error",
            )

        with self._lock:
            now = self._clock()
            state = self._admit(user_id, now)
            self._refill(state.minute, now)
            self._refill(state.hour, now)

            allowed = state.minute.tokens >= 1 and state.hour.tokens >= 1
            if allowed:
                state.minute.tokens = max(0, state.minute.tokens - 1)
                state.hour.tokens = max(0, state.hour.tokens - 1)
                state.total_requests += 1
            state.last_request = now
            return self._result(state, allowed, now)

    def get_status(self, user_id: str) -> dict:
        """Current limits for a user without consuming a token."""
        with self._lock:
            now = self._clock()
            state = self._users.get(user_id)
            if state is None:
                # Untracked users have full buckets; don't start tracking them here.
                state = self._new_state(user_id, now)
            else:
                self._refill(state.minute, now)
                self._refill(state.hour, now)
            payload = self._result(state, True, now).info_payload()
            payload["totalRequests"] = state.total_requests
            return payload

    def cleanup(self) -> int:
        """Drop users inactive for longer than the retention window."""
        with self._lock:
            return self._cleanup_locked(self._clock())

    def _cleanup_locked(self, now: int) -> int:
        stale = [
            uid for uid, state in self._users.items()
            if now - state.last_request > self.retention_ms
        ]
        for uid in stale:
            del self._users[uid]
        if stale:
            logger.info("Cleaned up rate limit state for %d inactive users", len(stale))
        return len(stale)

    def get_stats(self) -> dict:
        with self._lock:
            tracked = len(self._users)
        return {
            "tracked_users": tracked,
            "max_tracked_users": self.max_tracked_users,
            "limits": {"minute": self.per_minute, "hour": self.per_hour},
        }

    def __len__(self) -> int:
        return len(self._users)

    async def sweep_forever(self, interval_seconds: float) -> None:
        """Run cleanup() every interval until cancelled."""
        while True:
            await asyncio.sleep(interval_seconds)
            try:
                self.cleanup()
            except Exception as e:
                logger.error("Rate limit sweep failed: %s", e)
