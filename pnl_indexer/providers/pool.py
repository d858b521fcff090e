"""
Provider Pool
=============
Prioritized set of upstream chain-data providers with per-provider health.

A provider that answers 401/403 is excluded for the rest of the process.
A rate-limited provider sits out an exponential backoff window
(min(2**hits, 60) seconds) and rejoins automatically once it elapses.
"""
import asyncio
import logging
import time
from dataclasses import dataclass, asdict
from typing import Awaitable, Callable, Dict, List, Optional, TypeVar

from pnl_indexer.core.constants import PROVIDER_TIMEOUT_SECONDS, PROVIDER_MAX_BACKOFF_SECONDS
from pnl_indexer.core.errors import (
    AuthError,
    IndexerError,
    NoProviderAvailable,
    RateLimitError,
    TransientError,
    classify_error,
)

logger = logging.getLogger("pnl_indexer.providers")

T = TypeVar("T")


@dataclass(frozen=True)
class Provider:
    name: str
    url: str
    priority: int = 0  # Lower runs first


@dataclass
class ProviderState:
    healthy: bool = True
    auth_failed: bool = False
    backoff_until: float = 0.0
    rate_limit_hits: int = 0
    last_error: Optional[str] = None


class ProviderPool:
    def __init__(
        self,
        providers: List[Provider],
        clock: Callable[[], float] = time.monotonic,
        timeout: float = PROVIDER_TIMEOUT_SECONDS,
        max_backoff: float = PROVIDER_MAX_BACKOFF_SECONDS,
    ):
        self._providers = sorted(providers, key=lambda p: p.priority)
        self._state: Dict[str, ProviderState] = {p.name: ProviderState() for p in providers}
        self._lock = asyncio.Lock()
        self.clock = clock
        self.timeout = timeout
        self.max_backoff = max_backoff

    @classmethod
    def from_urls(cls, pairs, **kwargs) -> "ProviderPool":
        """Build from (name, url) pairs; list order is priority order."""
        return cls([Provider(name, url, i) for i, (name, url) in enumerate(pairs)], **kwargs)

    @property
    def providers(self) -> List[Provider]:
        return list(self._providers)

    def _eligible_locked(self) -> List[Provider]:
        now = self.clock()
        eligible = []
        for provider in self._providers:
            state = self._state[provider.name]
            if state.auth_failed:
                continue
            if state.backoff_until:
                if now < state.backoff_until:
                    continue
                state.backoff_until = 0.0
                logger.info(f"Provider {provider.name} backoff elapsed, re-enabled")
            eligible.append(provider)
        return eligible

    async def eligible(self) -> List[Provider]:
        async with self._lock:
            return self._eligible_locked()

    async def acquire(self) -> Provider:
        """Highest-priority provider that is neither auth-failed nor backing off."""
        async with self._lock:
            eligible = self._eligible_locked()
        if not eligible:
            raise NoProviderAvailable()
        return eligible[0]

    # ----- Health bookkeeping -----

    async def mark_success(self, provider: Provider):
        async with self._lock:
            state = self._state[provider.name]
            state.healthy = True
            state.rate_limit_hits = 0
            state.last_error = None

    async def mark_auth_failed(self, provider: Provider, reason: str = ""):
        async with self._lock:
            state = self._state[provider.name]
            state.auth_failed = True
            state.healthy = False
            state.last_error = reason or "authentication failed"
        logger.error(f"Provider {provider.name} auth failed, excluded for process lifetime: {reason}")

    async def mark_rate_limited(self, provider: Provider, reason: str = "") -> float:
        async with self._lock:
            state = self._state[provider.name]
            state.rate_limit_hits += 1
            backoff = min(2 ** state.rate_limit_hits, self.max_backoff)
            state.backoff_until = self.clock() + backoff
            state.healthy = False
            state.last_error = reason or "rate limited"
        logger.warning(f"Provider {provider.name} rate limited, backing off {backoff}s")
        return backoff

    async def mark_failure(self, provider: Provider, reason: str):
        async with self._lock:
            state = self._state[provider.name]
            state.healthy = False
            state.last_error = reason

    async def record_error(self, provider: Provider, exc: BaseException) -> IndexerError:
        if isinstance(exc, asyncio.TimeoutError):
            error = TransientError(f"timeout after {self.timeout}s")
        else:
            error = classify_error(exc)
        if isinstance(error, AuthError):
            await self.mark_auth_failed(provider, str(error))
        elif isinstance(error, RateLimitError):
            await self.mark_rate_limited(provider, str(error))
        else:
            await self.mark_failure(provider, str(error))
        return error

    # ----- Call execution -----

    async def _attempt(self, provider: Provider, call: Callable[[Provider], Awaitable[T]], timeout: float) -> T:
        try:
            result = await asyncio.wait_for(call(provider), timeout)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            error = await self.record_error(provider, exc)
            if error is exc:
                raise
            raise error from exc
        await self.mark_success(provider)
        return result

    async def execute(self, call: Callable[[Provider], Awaitable[T]], timeout: Optional[float] = None) -> T:
        """
        Run call(provider) against one provider at a time, falling through
        the priority list on failure. Each provider is tried at most once.
        """
        timeout = timeout or self.timeout
        tried = set()
        last_error = None
        while True:
            candidates = [p for p in await self.eligible() if p.name not in tried]
            if not candidates:
                raise NoProviderAvailable(last_error=last_error)
            provider = candidates[0]
            tried.add(provider.name)
            try:
                return await self._attempt(provider, call, timeout)
            except IndexerError as e:
                last_error = e
                logger.warning(f"Provider {provider.name} failed: {e}")

    async def race_all(self, call: Callable[[Provider], Awaitable[T]], timeout: Optional[float] = None) -> T:
        """Fire call at every eligible provider; first success wins, the rest are cancelled."""
        timeout = timeout or self.timeout
        providers = await self.eligible()
        if not providers:
            raise NoProviderAvailable()

        tasks = [asyncio.ensure_future(self._attempt(p, call, timeout)) for p in providers]
        last_error = None
        try:
            for next_done in asyncio.as_completed(tasks):
                try:
                    return await next_done
                except IndexerError as e:
                    last_error = e
        finally:
            for task in tasks:
                if not task.done():
                    task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
        raise NoProviderAvailable(last_error=last_error)

    def snapshot(self) -> List[dict]:
        now = self.clock()
        out = []
        for provider in self._providers:
            state = asdict(self._state[provider.name])
            state["name"] = provider.name
            state["priority"] = provider.priority
            state["backoff_remaining"] = max(0.0, state["backoff_until"] - now) if state["backoff_until"] else 0.0
            out.append(state)
        return out
