"""
Login failure throttling.

Process-local and best effort: counters live in this process only, so a
horizontally scaled deployment needs a shared store behind the same
``check`` / ``record_failure`` / ``clear`` interface.
"""

import logging
import threading
from dataclasses import dataclass
from typing import Dict, Optional

logger = logging.getLogger(__name__)


@dataclass
class LoginFailureState:
    window_started_at: int
    failed_count: int = 0
    blocked_until: int = 0


@dataclass(frozen=True)
class LoginLimitStatus:
    blocked: bool
    retry_after: int = 0


class LoginRateLimiter:
    """Sliding-window failure counter with lockout, keyed by client address"""

    def __init__(
        self,
        max_failures: int = 5,
        window_seconds: int = 10 * 60,
        block_seconds: int = 10 * 60,
        stale_seconds: int = 24 * 60 * 60,
        cleanup_every: int = 128,
    ):
        self.max_failures = max_failures
        self.window_seconds = window_seconds
        self.block_seconds = block_seconds
        self.stale_seconds = stale_seconds
        self.cleanup_every = cleanup_every
        self._states: Dict[str, LoginFailureState] = {}
        self._ticks = 0
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._states)

    def check(self, key: str, now: int) -> LoginLimitStatus:
        with self._lock:
            self._maybe_cleanup(now)
            state = self._normalize(key, now)
            if state is None or state.blocked_until <= now:
                return LoginLimitStatus(blocked=False)
            return LoginLimitStatus(blocked=True, retry_after=max(1, state.blocked_until - now))

    def record_failure(self, key: str, now: int) -> LoginLimitStatus:
        with self._lock:
            self._maybe_cleanup(now)
            state = self._normalize(key, now)
            if state is None:
                state = LoginFailureState(window_started_at=now)
                self._states[key] = state

            if state.blocked_until > now:
                return LoginLimitStatus(blocked=True, retry_after=max(1, state.blocked_until - now))

            if now - state.window_started_at > self.window_seconds:
                state.window_started_at = now
                state.failed_count = 0

            state.failed_count += 1
            if state.failed_count >= self.max_failures:
                state.failed_count = 0
                state.window_started_at = now
                state.blocked_until = now + self.block_seconds
                logger.warning("Login locked for %s until %d", key, state.blocked_until)
                return LoginLimitStatus(blocked=True, retry_after=self.block_seconds)

            return LoginLimitStatus(blocked=False)

    def clear(self, key: str) -> None:
        with self._lock:
            self._states.pop(key, None)

    def failures(self, key: str) -> int:
        with self._lock:
            state = self._states.get(key)
            return state.failed_count if state else 0

    def _normalize(self, key: str, now: int) -> Optional[LoginFailureState]:
        state = self._states.get(key)
        if state is None:
            return None
        if state.blocked_until <= now and now - state.window_started_at > self.window_seconds:
            state.window_started_at = now
            state.failed_count = 0
            state.blocked_until = 0
        return state

    def _maybe_cleanup(self, now: int) -> None:
        self._ticks += 1
        if self._ticks % self.cleanup_every:
            return
        stale = [
            key for key, state in self._states.items()
            if now - max(state.window_started_at, state.blocked_until) > self.stale_seconds
        ]
        for key in stale:
            del self._states[key]
