from __future__ import annotations

import threading
import time
from typing import Callable, Protocol

from threatwatch.storage.db import connect, ensure_parent_dir


class RateLimiter(Protocol):
    def try_acquire(self) -> bool: ...


class FixedWindowRateLimiter:
    """
    At most ``limit`` acquisitions per ``per_seconds`` window.

    ``try_acquire`` never blocks: an exhausted window answers False and the
    caller skips the provider until the window rolls over.
    """

    def __init__(self, limit: int, per_seconds: float, clock: Callable[[], float] = time.monotonic) -> None:
        if limit < 1 or per_seconds <= 0:
            raise ValueError("limit and per_seconds must be positive")
        self.limit = limit
        self.per_seconds = per_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._window_start = clock()
        self._count = 0

    def try_acquire(self) -> bool:
        with self._lock:
            now = self._clock()
            if now - self._window_start >= self.per_seconds:
                self._window_start = now
                self._count = 0
            if self._count >= self.limit:
                return False
            self._count += 1
            return True

    def remaining(self) -> int:
        with self._lock:
            if self._clock() - self._window_start >= self.per_seconds:
                return self.limit
            return self.limit - self._count


class SharedWindowRateLimiter:
    """
    Fixed window kept in a SQLite table so several pipeline processes draw
    from one provider quota.

    Windows are aligned to wall-clock multiples of ``per_seconds``; the whole
    check-and-increment is one conditional upsert.
    """

    def __init__(
        self,
        path: str,
        provider: str,
        limit: int,
        per_seconds: int,
        clock: Callable[[], float] = time.time,
    ) -> None:
        ensure_parent_dir(path)
        self.path = path
        self.provider = provider
        self.limit = limit
        self.per_seconds = per_seconds
        self._clock = clock
        with connect(self.path) as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS rate_limits (
                    provider TEXT PRIMARY KEY,
                    window_start INTEGER NOT NULL,
                    count INTEGER NOT NULL
                )
                """
            )

    def try_acquire(self) -> bool:
        window = int(self._clock() // self.per_seconds) * self.per_seconds
        with connect(self.path) as conn:
            cur = conn.execute(
                """
                INSERT INTO rate_limits (provider, window_start, count) VALUES (?, ?, 1)
                ON CONFLICT(provider) DO UPDATE SET
                    count = CASE WHEN rate_limits.window_start = excluded.window_start
                                 THEN rate_limits.count + 1 ELSE 1 END,
                    window_start = excluded.window_start
                WHERE rate_limits.window_start != excluded.window_start
                   OR rate_limits.count < ?
                """,
                (self.provider, window, self.limit),
            )
            return cur.rowcount == 1
