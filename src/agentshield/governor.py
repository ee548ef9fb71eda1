from __future__ import annotations

import logging
import threading
from contextlib import asynccontextmanager
from typing import AsyncIterator

logger = logging.getLogger(__name__)


class OverloadError(RuntimeError):
    """No permit available; the caller may retry shortly."""

    retryable = True

    def __init__(self, message: str = "Too many concurrent analyses. Please try again in a moment.", *, retry_after: int = 2):
        super().__init__(message)
        self.retry_after = retry_after


class ConcurrencyGovernor:
    """Fixed-size permit pool. Acquisition never waits: a full pool rejects."""

    def __init__(self, permits: int = 3, *, name: str = "media") -> None:
        if permits <= 0:
            raise ValueError("permits must be positive")
        self._permits = permits
        self._in_use = 0
        self._rejected = 0
        self._lock = threading.Lock()
        self.name = name

    @property
    def in_use(self) -> int:
        return self._in_use

    @property
    def capacity(self) -> int:
        return self._permits

    @property
    def rejected(self) -> int:
        return self._rejected

    def try_acquire(self) -> bool:
        with self._lock:
            if self._in_use >= self._permits:
                self._rejected += 1
                return False
            self._in_use += 1
            return True

    def release(self) -> None:
        with self._lock:
            if self._in_use == 0:
                raise RuntimeError("release() without a matching acquire")
            self._in_use -= 1

    @asynccontextmanager
    async def permit(self) -> AsyncIterator[None]:
        if not self.try_acquire():
            logger.warning("%s governor full (%d/%d), rejecting", self.name, self._in_use, self._permits)
            raise OverloadError()
        try:
            yield
        finally:
            self.release()
