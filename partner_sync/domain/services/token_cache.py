"""
Shared bearer-token cell for the partner API.

One instance is created per process and handed to every component that calls
the partner (scheduler, partner client, processors). The cache never logs in
by itself; callers do that on a miss and store the result here.
"""
from __future__ import annotations

import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class CachedToken:
    value: str
    expires_at: datetime
    token_type: str = "Bearer"


class TokenCache:
    """
    Expiring token cell guarded by a lock.

    A token is served only while ``now < expires_at - safety_margin``.
    """

    def __init__(
        self,
        *,
        safety_margin: timedelta = timedelta(minutes=10),
        clock: Callable[[], datetime] = utc_now,
    ):
        self._lock = threading.Lock()
        self._token: CachedToken | None = None
        self._safety_margin = safety_margin
        self._now = clock

    def get_token(self) -> str | None:
        with self._lock:
            token = self._token
        if token is None:
            return None
        if self._now() >= token.expires_at - self._safety_margin:
            return None
        return token.value

    def set_token(self, value: str, expires_at: datetime, token_type: str = "Bearer") -> None:
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        with self._lock:
            self._token = CachedToken(value=value, expires_at=expires_at, token_type=token_type)

    def set_token_for(self, value: str, expires_in_seconds: float, token_type: str = "Bearer") -> datetime:
        """Store a token that expires ``expires_in_seconds`` from now; returns the expiry"""
        expires_at = self._now() + timedelta(seconds=expires_in_seconds)
        self.set_token(value, expires_at, token_type)
        return expires_at

    def invalidate(self) -> None:
        with self._lock:
            self._token = None

    def peek(self) -> CachedToken | None:
        """Current token regardless of expiry, for status reporting and refresh"""
        with self._lock:
            return self._token

    def seconds_remaining(self) -> float | None:
        """Seconds until the served window closes (negative once expired)"""
        token = self.peek()
        if token is None:
            return None
        return (token.expires_at - self._safety_margin - self._now()).total_seconds()
