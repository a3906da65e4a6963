from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable

from google.cloud import firestore

from .errors import RateLimitExceededError
from .firestore import Collections

logger = logging.getLogger(__name__)


@dataclass
class RateLimitResult:
    allowed: bool
    remaining_attempts: int


class RateLimiter:
    """Sliding-window limiter backed by `rate_limits/{uid}_{operation}`.

    Each document keeps the epoch-millisecond timestamps of the attempts
    still inside the window.
    """

    def __init__(self, client: firestore.Client, clock: Callable[[], float] = time.time, timeout: float = 30.0):
        self._client = client
        self._clock = clock
        self._timeout = timeout

    def check(
        self,
        user_id: str,
        operation: str,
        max_attempts: int = 5,
        window_seconds: float = 60,
    ) -> RateLimitResult:
        ref = self._client.collection(Collections.RATE_LIMITS).document(f"{user_id}_{operation}")
        now_ms = int(self._clock() * 1000)
        window_ms = window_seconds * 1000

        snap = ref.get(timeout=self._timeout)
        attempts = (snap.to_dict() or {}).get("attempts", []) if snap.exists else []
        attempts = [ts for ts in attempts if now_ms - ts < window_ms]

        if len(attempts) >= max_attempts:
            logger.warning("Rate limit exceeded for %s on %s (%d attempts)", user_id, operation, len(attempts))
            raise RateLimitExceededError(operation, max_attempts)

        attempts.append(now_ms)
        ref.set({"attempts": attempts, "updatedAt": firestore.SERVER_TIMESTAMP}, timeout=self._timeout)
        return RateLimitResult(allowed=True, remaining_attempts=max_attempts - len(attempts))
