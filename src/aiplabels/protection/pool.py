"""
Identity-keyed engine pool.

Engines are expensive to create (policy download, key fetch), so one engine
per signed-in identity is cached and reused across requests. Entries expire
after ``session_pool.ttl_seconds`` of idleness and the least recently used
entry is evicted once ``session_pool.max_engines`` is reached. Evicted
engines are unloaded from the profile.

Each entry owns a ``DelegatedTokenSource``. Every operation runs inside a
``TokenAttempt`` carrying the caller's current bearer token, so the SDK only
ever exchanges a token belonging to the identity the engine was built for,
and a refused exchange is reported to the operation that triggered it.
"""

from __future__ import annotations

import asyncio
import functools
import logging
import threading
import time
from collections import OrderedDict
from contextlib import asynccontextmanager, contextmanager
from contextvars import ContextVar
from dataclasses import dataclass, field
from typing import AsyncIterator, Callable, Iterator

from aiplabels.auth.oauth import CallerIdentity
from aiplabels.exceptions import (
    AuthError,
    EngineError,
    OperationTimeoutError,
)
from aiplabels.protection.base import Engine, Profile
from aiplabels.server.config import Settings
from aiplabels.server.metrics import set_engine_pool_size

logger = logging.getLogger(__name__)


class TokenAttempt:
    """Token requests made on behalf of one operation.

    A failed exchange is recorded here rather than on the shared token
    source, so concurrent requests from the same identity never clear or
    inherit each other's failures.
    """

    def __init__(self, assertion: str):
        self.assertion = assertion
        self.error: AuthError | None = None

    def raise_pending(self) -> None:
        """Re-raise the token failure recorded for this operation, if any."""
        if self.error is not None:
            raise self.error


_current_attempt: ContextVar[TokenAttempt | None] = ContextVar("token_attempt", default=None)


class DelegatedTokenSource:
    """Token callback handed to the SDK for one identity.

    The SDK calls ``acquire`` and only accepts a string back, so failures
    are recorded on the calling operation's ``TokenAttempt`` and an empty
    token is returned. The operation re-raises the recorded error once the
    SDK call fails.
    """

    def __init__(self, broker, identity: str, assertion: str = ""):
        self.broker = broker
        self.identity = identity
        self._assertion = assertion
        self._lock = threading.Lock()
        self._active: list[TokenAttempt] = []

    @property
    def assertion(self) -> str:
        with self._lock:
            return self._assertion

    def update(self, assertion: str) -> None:
        with self._lock:
            self._assertion = assertion

    @contextmanager
    def attempt(self, assertion: str | None = None) -> Iterator[TokenAttempt]:
        """Scope the token requests made in this thread to one operation."""
        with self._lock:
            attempt = TokenAttempt(assertion if assertion is not None else self._assertion)
            self._active.append(attempt)
        reset = _current_attempt.set(attempt)
        try:
            yield attempt
        finally:
            _current_attempt.reset(reset)
            with self._lock:
                self._active.remove(attempt)

    def acquire(self, resource: str, authority: str | None = None, claims: str | None = None) -> str:
        current = _current_attempt.get()
        with self._lock:
            if current is not None and any(a is current for a in self._active):
                attempts = [current]
            else:
                # Called back on an SDK thread outside any operation's context
                attempts = list(self._active)
            assertion = attempts[-1].assertion if attempts else self._assertion
        try:
            return self.broker.acquire_token_sync(assertion, resource, authority, claims)
        except AuthError as e:
            logger.info("Token request from protection engine failed for %s: %s", self.identity, e.message)
            for attempt in attempts:
                attempt.error = e
            return ""


@dataclass
class PooledEngine:
    """A cached engine and the token source it was built with."""

    identity: str
    locale: str
    engine: Engine
    token_source: DelegatedTokenSource
    last_used: float
    leases: int = field(default=0)


class EnginePool:
    """Cache of protection engines keyed by (identity, locale)."""

    def __init__(
        self,
        profile: Profile,
        broker,
        settings: Settings,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.profile = profile
        self.broker = broker
        self.locale = settings.protection.locale
        self.ttl = settings.session_pool.ttl_seconds
        self.max_engines = settings.session_pool.max_engines
        self.timeout = settings.timeouts.protection_call
        self._clock = clock
        self._entries: OrderedDict[tuple[str, str], PooledEngine] = OrderedDict()
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, identity: str) -> bool:
        return (identity.lower(), self.locale) in self._entries

    @asynccontextmanager
    async def lease(self, caller: CallerIdentity) -> AsyncIterator[PooledEngine]:
        """Hold the caller's engine for the duration of one operation.

        Leased entries are never evicted.
        """
        entry = await self.acquire(caller)
        entry.leases += 1
        try:
            yield entry
        finally:
            self._release(entry)

    def hold(self, entry: PooledEngine, worker: asyncio.Future) -> None:
        """Keep *entry* leased until *worker* is done.

        A worker thread keeps using the engine after the awaiting request
        gives up on its timeout; the lease is only released once the thread
        returns.
        """
        entry.leases += 1
        worker.add_done_callback(functools.partial(self._worker_done, entry))

    def _worker_done(self, entry: PooledEngine, worker: asyncio.Future) -> None:
        self._release(entry)
        if not worker.cancelled() and worker.exception() is not None:
            logger.debug("Protection call for %s ended with: %s", entry.identity, worker.exception())

    def _release(self, entry: PooledEngine) -> None:
        entry.leases -= 1
        entry.last_used = self._clock()

    async def acquire(self, caller: CallerIdentity) -> PooledEngine:
        """Return the engine bound to the caller, creating it on first use.

        Raises:
            ConsentRequiredError / TokenExchangeError: the SDK asked for a
                token and the exchange failed.
            EngineError: the SDK refused to create the engine.
            OperationTimeoutError: engine creation exceeded the timeout.
        """
        identity = caller.identity
        key = (identity.lower(), self.locale)

        async with self._lock:
            await self._evict_expired()

            entry = self._entries.get(key)
            if entry is not None:
                entry.token_source.update(caller.assertion)
                entry.last_used = self._clock()
                self._entries.move_to_end(key)
                return entry

            token_source = DelegatedTokenSource(self.broker, identity, caller.assertion)
            engine = await self._create_engine(identity, token_source)
            entry = PooledEngine(
                identity=identity,
                locale=self.locale,
                engine=engine,
                token_source=token_source,
                last_used=self._clock(),
            )
            self._entries[key] = entry
            logger.info("Protection engine created for %s", identity)

            await self._evict_overflow(keep=key)
            set_engine_pool_size(len(self._entries))
            return entry

    async def _create_engine(self, identity: str, token_source: DelegatedTokenSource) -> Engine:
        def create() -> Engine:
            with token_source.attempt() as attempt:
                try:
                    return self.profile.add_engine(identity, self.locale, token_source)
                except Exception:
                    # A refused token surfaces as a generic SDK failure; report the cause
                    attempt.raise_pending()
                    raise

        try:
            return await asyncio.wait_for(asyncio.to_thread(create), timeout=self.timeout)
        except asyncio.TimeoutError as e:
            raise OperationTimeoutError("engine creation", self.timeout) from e
        except AuthError:
            raise
        except Exception as e:
            raise EngineError("Failed to create protection engine", identity=identity) from e

    async def _evict_expired(self) -> None:
        now = self._clock()
        expired = [
            key for key, entry in self._entries.items()
            if entry.leases == 0 and now - entry.last_used >= self.ttl
        ]
        for key in expired:
            await self._unload(self._entries.pop(key))
        if expired:
            set_engine_pool_size(len(self._entries))

    async def _evict_overflow(self, keep: tuple[str, str]) -> None:
        while len(self._entries) > self.max_engines:
            victim = next(
                (key for key, entry in self._entries.items() if entry.leases == 0 and key != keep),
                None,
            )
            if victim is None:
                break
            await self._unload(self._entries.pop(victim))

    async def _unload(self, entry: PooledEngine) -> None:
        logger.info("Unloading protection engine for %s", entry.identity)
        try:
            await asyncio.wait_for(
                asyncio.to_thread(self.profile.unload_engine, entry.engine),
                timeout=self.timeout,
            )
        except Exception as e:
            logger.warning("Failed to unload engine for %s: %s", entry.identity, e)

    async def close(self) -> None:
        """Unload every cached engine."""
        async with self._lock:
            while self._entries:
                _, entry = self._entries.popitem(last=False)
                await self._unload(entry)
            set_engine_pool_size(0)
