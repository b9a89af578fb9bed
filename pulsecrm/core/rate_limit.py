import time
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field
from threading import Lock

from pulsecrm.core.config import settings


@dataclass
class _Attempts:
    failures: deque[float] = field(default_factory=deque)
    locked_until: float = 0.0


class LoginRateLimiter:
    """Failed-login lockout per (identifier, client IP) pair.

    ``max_attempts`` failures inside ``window_seconds`` lock the pair for
    ``lock_seconds``. A successful login forgets the pair.
    """

    def __init__(
        self,
        *,
        max_attempts: int,
        window_seconds: int,
        lock_seconds: int,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.max_attempts = max_attempts
        self.window_seconds = window_seconds
        self.lock_seconds = lock_seconds
        self._clock = clock
        self._attempts: dict[str, _Attempts] = {}
        self._lock = Lock()

    @classmethod
    def from_settings(cls) -> "LoginRateLimiter":
        return cls(
            max_attempts=settings.auth_rate_limit_max_attempts,
            window_seconds=settings.auth_rate_limit_window_seconds,
            lock_seconds=settings.auth_rate_limit_lock_seconds,
        )

    @staticmethod
    def key(identifier: str, client_ip: str) -> str:
        return f"{identifier.strip().lower()}:{client_ip}"

    def retry_after(self, key: str) -> int:
        """Seconds until ``key`` may try again; 0 when it is not locked."""
        now = self._clock()
        with self._lock:
            attempts = self._attempts.get(key)
            if attempts is None or attempts.locked_until <= now:
                return 0
            return int(attempts.locked_until - now) + 1

    def record_failure(self, key: str) -> bool:
        """Count a failed login. Returns True when this failure locked the pair."""
        now = self._clock()
        with self._lock:
            attempts = self._attempts.setdefault(key, _Attempts())
            cutoff = now - self.window_seconds
            while attempts.failures and attempts.failures[0] < cutoff:
                attempts.failures.popleft()
            attempts.failures.append(now)
            if len(attempts.failures) < self.max_attempts:
                return False
            attempts.failures.clear()
            attempts.locked_until = now + self.lock_seconds
            return True

    def record_success(self, key: str) -> None:
        with self._lock:
            self._attempts.pop(key, None)

    def clear(self) -> None:
        with self._lock:
            self._attempts.clear()
