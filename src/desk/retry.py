"""Timeout + bounded retry around gateway reads.

Only reads go through here. Writes are never retried automatically:
repeating a status change or note insert would duplicate its side
effects (system notes, notifications).
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional, TypeVar

from src.common.config import SyncSettings, settings
from src.common.exceptions import FetchError, FetchTimeout

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class RetryPolicy:
    """Fetch timeout and the delay before each attempt.

    ``delays[0]`` is normally 0 (first attempt immediate); the number of
    delays is the number of attempts.
    """

    timeout: float = 7.0
    delays: list[float] = field(default_factory=lambda: [0.0, 1.5, 2.0])

    @classmethod
    def from_settings(cls, sync: Optional[SyncSettings] = None) -> RetryPolicy:
        sync = sync or settings.sync
        return cls(timeout=sync.fetch_timeout_seconds, delays=list(sync.retry_delays_seconds))

    @property
    def max_attempts(self) -> int:
        return max(len(self.delays), 1)


async def fetch_once(fetch: Callable[[], Awaitable[T]], timeout: float, label: str = "fetch") -> T:
    """Run a single read, turning a timeout into FetchTimeout."""
    try:
        return await asyncio.wait_for(fetch(), timeout=timeout)
    except asyncio.TimeoutError as exc:
        raise FetchTimeout(f"{label} timed out after {timeout:.1f}s") from exc


async def fetch_with_retry(
    fetch: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    label: str = "fetch",
    still_relevant: Optional[Callable[[], bool]] = None,
) -> T:
    """Run a read with timeout, retrying FetchErrors per the policy.

    Args:
        fetch: Zero-arg coroutine factory; called once per attempt.
        policy: Timeout and per-attempt delays.
        label: Name used in log lines.
        still_relevant: Checked before each retry; when it returns False
            the last error is raised without further attempts.

    Raises:
        FetchError: After all attempts failed (the last error).
    """
    delays = policy.delays or [0.0]
    last_exc: Optional[FetchError] = None
    for attempt, delay in enumerate(delays, start=1):
        if delay > 0:
            await asyncio.sleep(delay)
        if last_exc is not None and still_relevant is not None and not still_relevant():
            break
        try:
            return await fetch_once(fetch, policy.timeout, label)
        except FetchError as exc:
            last_exc = exc
            if attempt < len(delays):
                logger.warning(
                    "%s failed (attempt %d/%d): %s; retrying in %.1fs",
                    label,
                    attempt,
                    len(delays),
                    exc,
                    delays[attempt],
                )
            else:
                logger.error("%s failed after %d attempts: %s", label, attempt, exc)

    raise last_exc  # type: ignore[misc]
