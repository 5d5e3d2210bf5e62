"""Deadline threaded through every external provider call."""

import asyncio
import time
from typing import Awaitable, TypeVar

T = TypeVar("T")


class DeadlineExceeded(TimeoutError):
    pass


class Deadline:
    """A point in (monotonic) time after which a call must give up.

    The same deadline can be handed down to HTTP clients so their transport
    timeout never outlives the caller's budget.
    """

    def __init__(self, seconds: float, label: str = ""):
        self.seconds = seconds
        self.label = label
        self._expires_at = time.monotonic() + seconds

    @classmethod
    def after(cls, seconds: float, label: str = "") -> "Deadline":
        return cls(seconds, label)

    def remaining(self) -> float:
        return max(0.0, self._expires_at - time.monotonic())

    @property
    def expired(self) -> bool:
        return self.remaining() <= 0.0

    async def run(self, awaitable: Awaitable[T]) -> T:
        """Await ``awaitable``, cancelling it when the deadline passes."""
        if self.expired:
            if asyncio.iscoroutine(awaitable):
                awaitable.close()
            raise DeadlineExceeded(self._describe())
        try:
            return await asyncio.wait_for(awaitable, timeout=self.remaining())
        except asyncio.TimeoutError:
            raise DeadlineExceeded(self._describe()) from None

    def _describe(self) -> str:
        name = self.label or "call"
        return f"{name} timeout ({self.seconds:g}s)"

    def __repr__(self) -> str:
        return f"Deadline({self.label!r}, remaining={self.remaining():.3f}s)"
