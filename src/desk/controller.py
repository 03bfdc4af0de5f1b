"""Sync Controller — fetch lifecycle per data domain.

Each domain (requests, notes, notifications, profiles, inventory) moves
through ``idle → loading → success | error``. A load is *blocking* when
the domain has nothing cached and the caller did not ask for a silent
refresh: it retries per the RetryPolicy and ends in a visible error state
when every attempt failed. Otherwise the load runs in the *background*:
one attempt, stale data stays visible, and a failure is reduced to a
single toast.

Results are applied only while the controller is alive and the load is
still the latest one for its domain.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

from src.common.exceptions import FetchError

from .feedback import Toaster
from .retry import RetryPolicy, fetch_once, fetch_with_retry

logger = logging.getLogger(__name__)

REFRESH_FAILED_TOAST = "Could not refresh data. Showing the last loaded version."


class LoadState(str, Enum):
    IDLE = "idle"
    LOADING = "loading"
    SUCCESS = "success"
    ERROR = "error"


class LoadMode(str, Enum):
    BLOCKING = "blocking"
    BACKGROUND = "background"


@dataclass
class DomainStatus:
    """Observable state of one domain."""

    name: str
    state: LoadState = LoadState.IDLE
    mode: Optional[LoadMode] = None
    error: Optional[str] = None
    last_success: Optional[datetime] = None

    @property
    def blocking(self) -> bool:
        """Full loading indicator, no data shown."""
        return self.state is LoadState.LOADING and self.mode is LoadMode.BLOCKING

    @property
    def refreshing(self) -> bool:
        """Subtle indicator over stale data."""
        return self.state is LoadState.LOADING and self.mode is LoadMode.BACKGROUND


@dataclass
class _Domain:
    fetch: Callable[[], Awaitable[Any]]
    apply: Callable[[Any, bool], Any]
    has_cache: Callable[[], bool]
    status: DomainStatus
    generation: int = 0
    enabled: Callable[[], bool] = field(default=lambda: True)


class SyncController:
    """Runs loads for registered domains and tracks their state."""

    def __init__(
        self,
        policy: Optional[RetryPolicy] = None,
        toaster: Optional[Toaster] = None,
    ) -> None:
        self._policy = policy or RetryPolicy.from_settings()
        self._toaster = toaster or Toaster()
        self._domains: dict[str, _Domain] = {}
        self._disposed = False

    @property
    def disposed(self) -> bool:
        return self._disposed

    def register(
        self,
        name: str,
        fetch: Callable[[], Awaitable[Any]],
        apply: Callable[[Any, bool], Any],
        has_cache: Callable[[], bool],
        enabled: Optional[Callable[[], bool]] = None,
    ) -> None:
        """Register a domain.

        Args:
            name: Domain key.
            fetch: Reads from the gateway; raises FetchError.
            apply: Installs a fetch result; receives ``silent`` as second arg.
            has_cache: True when the domain already holds displayable data.
            enabled: Skip the domain while this returns False (e.g. no thread open).
        """
        self._domains[name] = _Domain(
            fetch=fetch,
            apply=apply,
            has_cache=has_cache,
            status=DomainStatus(name=name),
            enabled=enabled or (lambda: True),
        )

    def status(self, name: str) -> DomainStatus:
        return self._domains[name].status

    def statuses(self) -> dict[str, DomainStatus]:
        return {name: d.status for name, d in self._domains.items()}

    def _is_current(self, domain: _Domain, generation: int) -> bool:
        return not self._disposed and domain.generation == generation

    async def load(self, name: str, silent: bool = False) -> bool:
        """Load one domain. Returns True when fresh data was applied."""
        if self._disposed:
            return False
        domain = self._domains[name]
        if not domain.enabled():
            return False
        had_success = domain.status.last_success is not None
        mode = LoadMode.BACKGROUND if (silent or domain.has_cache()) else LoadMode.BLOCKING
        domain.generation += 1
        generation = domain.generation

        status = domain.status
        status.state = LoadState.LOADING
        status.mode = mode
        status.error = None

        try:
            if mode is LoadMode.BLOCKING:
                result = await fetch_with_retry(
                    domain.fetch,
                    self._policy,
                    label=f"{name} load",
                    still_relevant=lambda: self._is_current(domain, generation),
                )
            else:
                result = await fetch_once(domain.fetch, self._policy.timeout, f"{name} refresh")
        except FetchError as exc:
            if not self._is_current(domain, generation):
                return False
            if mode is LoadMode.BLOCKING:
                status.state = LoadState.ERROR
                status.error = str(exc)
                logger.error("%s load failed: %s", name, exc)
            else:
                logger.warning("%s background refresh failed: %s", name, exc)
                self._toaster.error(REFRESH_FAILED_TOAST)
                status.state = LoadState.SUCCESS if had_success or domain.has_cache() else LoadState.IDLE
            status.mode = None
            return False

        if not self._is_current(domain, generation):
            logger.debug("Discarding stale %s result", name)
            return False
        domain.apply(result, silent)
        status.state = LoadState.SUCCESS
        status.mode = None
        status.last_success = datetime.now()
        return True

    async def retry(self, name: str) -> bool:
        """Manual retry from the error state (a full blocking attempt cycle)."""
        return await self.load(name, silent=False)

    async def refresh(self, silent: bool = False, names: Optional[list[str]] = None) -> dict[str, bool]:
        """Load several domains concurrently."""
        targets = names or list(self._domains)
        results = await asyncio.gather(*(self.load(n, silent) for n in targets))
        return dict(zip(targets, results))

    async def on_visibility_change(self, visible: bool) -> dict[str, bool]:
        """Revalidate everything already on screen when the view regains focus."""
        if not visible or self._disposed:
            return {}
        names = [n for n, d in self._domains.items() if d.has_cache()]
        if not names:
            return {}
        return await self.refresh(silent=True, names=names)

    def dispose(self) -> None:
        self._disposed = True
