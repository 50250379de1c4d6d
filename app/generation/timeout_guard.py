"""Deadline tokens and the timeout guard for outbound vendor calls."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable
from typing import TypeVar

import httpx

from app.generation.errors import UpstreamTimeout

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_BUDGET_SECONDS = 90.0


class Deadline:
    """A per-call time budget measured on the monotonic clock.

    Adapters size their HTTP client timeout from ``remaining()`` so the
    transport never outlives the guard.
    """

    __slots__ = ("budget", "_started")

    def __init__(self, budget: float = DEFAULT_BUDGET_SECONDS):
        if budget <= 0:
            raise ValueError("Deadline budget must be positive")
        self.budget = budget
        self._started = time.monotonic()

    def elapsed(self) -> float:
        return time.monotonic() - self._started

    def remaining(self) -> float:
        return max(0.0, self.budget - self.elapsed())

    @property
    def expired(self) -> bool:
        return self.remaining() <= 0

    def __repr__(self) -> str:
        return f"Deadline(budget={self.budget}, remaining={self.remaining():.2f})"


async def guard(call: Awaitable[T], deadline: Deadline, *, label: str = "") -> T:
    """Await ``call`` within ``deadline``.

    On breach the in-flight call is cancelled and ``UpstreamTimeout`` is
    raised; a transport-level ``httpx.TimeoutException`` is reported the same
    way. Every other exception propagates unchanged.
    """
    remaining = deadline.remaining()
    if remaining <= 0:
        # Close the coroutine so it is not reported as never awaited
        if asyncio.iscoroutine(call):
            call.close()
        raise UpstreamTimeout(deadline.budget, label)

    try:
        return await asyncio.wait_for(call, timeout=remaining)
    except asyncio.TimeoutError:
        logger.warning("Upstream call %s exceeded %.1fs budget", label or "<unnamed>", deadline.budget)
        raise UpstreamTimeout(deadline.budget, label) from None
    except httpx.TimeoutException as e:
        logger.warning("Upstream call %s timed out in transport: %s", label or "<unnamed>", e)
        raise UpstreamTimeout(deadline.budget, label) from e
