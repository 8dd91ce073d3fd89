"""
Reactive query cache.

A keyed store of fetch results shared by every view of a task:

* one in-flight fetch per key, whoever asks for it (request de-duplication),
* a poll loop per subscribed key whose interval is recomputed from the
  latest data (terminal tasks stop polling) and which sleeps while the host
  is not visible,
* optimistic mutations serialized per key, with snapshot/rollback,
* age-based eviction sweeps.

Entries are immutable ``CacheEntry`` values; every write replaces the entry
for its key. Writes land in completion order: the most recent successfully
completed fetch wins. Everything runs on one event loop; no locking beyond the
per-key mutation locks is needed.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import AsyncIterator, Awaitable, Callable, Hashable
from contextlib import AsyncExitStack, asynccontextmanager
from dataclasses import dataclass, field, replace
from typing import Any, Literal

from loguru import logger

from taskmonitor.configs.config import config
from taskmonitor.core.exceptions import MutationError, TransportError

QueryKey = tuple[Hashable, ...]
PAUSED: Literal["paused"] = "paused"
PollInterval = int | Literal["paused"]
FetchFn = Callable[[], Awaitable[Any]]
KeyMatcher = QueryKey | Callable[[QueryKey], bool]
Listener = Callable[["CacheEntry"], None]


@dataclass(frozen=True)
class CacheEntry:
    key: QueryKey
    data: Any
    fetched_at: float
    poll_interval_ms: PollInterval = PAUSED
    stale: bool = False


@dataclass(frozen=True)
class QueryOptions:
    """Per-key fetch policy.

    ``poll_interval_fn`` (called with the latest data) takes precedence over a
    fixed ``poll_interval_ms``; with neither the key is never polled.
    """

    poll_interval_ms: int | None = None
    poll_interval_fn: Callable[[Any], PollInterval] | None = None
    stale_time_ms: int = field(default_factory=lambda: config.default_stale_time_ms)
    retry: int = field(default_factory=lambda: config.query_retry_attempts)

    def resolve_poll_interval(self, data: Any) -> PollInterval:
        if self.poll_interval_fn is not None:
            try:
                return self.poll_interval_fn(data)
            except Exception as e:
                logger.warning(f"Poll interval callback failed, pausing: {e}")
                return PAUSED
        if self.poll_interval_ms and self.poll_interval_ms > 0:
            return self.poll_interval_ms
        return PAUSED

    @property
    def polls(self) -> bool:
        return self.poll_interval_fn is not None or bool(self.poll_interval_ms)


@dataclass
class _QueryState:
    fetch_fn: FetchFn | None = None
    options: QueryOptions = field(default_factory=QueryOptions)
    subscribers: list[Subscription] = field(default_factory=list)
    poller: asyncio.Task[None] | None = None
    wakeup: asyncio.Event | None = None
    inflight: asyncio.Task[Any] | None = None
    generation: int = 0


class Subscription:
    """Handle returned by :meth:`QueryCache.subscribe`; close it on unmount."""

    def __init__(self, cache: QueryCache, key: QueryKey, listener: Listener | None):
        self.key = key
        self.listener = listener
        self._cache = cache
        self.closed = False

    def close(self) -> None:
        if not self.closed:
            self.closed = True
            self._cache._unsubscribe(self)


class QueryCache:
    """Keyed, TTL-aware store of query results with polling and optimistic updates."""

    def __init__(
        self,
        *,
        clock: Callable[[], float] = time.time,
        retry_backoff: float | None = None,
    ) -> None:
        self._clock = clock
        self._retry_backoff = (
            config.query_retry_backoff if retry_backoff is None else retry_backoff
        )
        self._entries: dict[QueryKey, CacheEntry] = {}
        self._queries: dict[QueryKey, _QueryState] = {}
        self._mutation_locks: dict[QueryKey, asyncio.Lock] = {}
        self._lock_users: dict[QueryKey, int] = {}
        self._background: set[asyncio.Task[Any]] = set()
        self._visible = True

    # Reads -------------------------------------------------------------------
    def get(self, key: QueryKey) -> CacheEntry | None:
        return self._entries.get(key)

    def get_data(self, key: QueryKey) -> Any:
        entry = self._entries.get(key)
        return entry.data if entry is not None else None

    def keys(self) -> list[QueryKey]:
        return list(self._entries)

    def is_fetching(self, key: QueryKey) -> bool:
        state = self._queries.get(key)
        return bool(state and state.inflight and not state.inflight.done())

    def is_mutating(self, key: QueryKey) -> bool:
        lock = self._mutation_locks.get(key)
        return lock is not None and lock.locked()

    def subscriber_count(self, key: QueryKey) -> int:
        state = self._queries.get(key)
        return len(state.subscribers) if state else 0

    @property
    def visible(self) -> bool:
        return self._visible

    # Writes ------------------------------------------------------------------
    def set_data(self, key: QueryKey, data: Any) -> CacheEntry:
        """Replace the cached value for ``key`` and notify subscribers."""
        return self._write(key, data)

    def update_data(self, key: QueryKey, updater: Callable[[Any], Any]) -> CacheEntry:
        """Derive a new value from the current one (``None`` when absent)."""
        return self._write(key, updater(self.get_data(key)))

    def set_queries_data(
        self, predicate: Callable[[QueryKey], bool], updater: Callable[[Any], Any]
    ) -> list[QueryKey]:
        """Apply ``updater`` to every cached key matching ``predicate``."""
        touched = [key for key in list(self._entries) if predicate(key)]
        for key in touched:
            self.update_data(key, updater)
        return touched

    def remove(self, key: QueryKey) -> None:
        """Drop the entry for ``key`` and discard any in-flight result."""
        self._entries.pop(key, None)
        state = self._queries.get(key)
        if state is None:
            return
        self._detach_inflight(state)
        if not state.subscribers:
            del self._queries[key]

    def _write(self, key: QueryKey, data: Any) -> CacheEntry:
        state = self._queries.get(key)
        interval = state.options.resolve_poll_interval(data) if state else PAUSED
        entry = CacheEntry(
            key=key, data=data, fetched_at=self._clock(), poll_interval_ms=interval
        )
        self._entries[key] = entry
        self._notify(key, entry)
        return entry

    def _restore(self, key: QueryKey, entry: CacheEntry | None) -> None:
        if entry is None:
            self._entries.pop(key, None)
            return
        self._entries[key] = entry
        self._notify(key, entry)

    def _notify(self, key: QueryKey, entry: CacheEntry) -> None:
        state = self._queries.get(key)
        if state is None:
            return
        for subscription in list(state.subscribers):
            if subscription.listener is None:
                continue
            try:
                subscription.listener(entry)
            except Exception as e:
                logger.error(f"Subscriber for {key} raised: {e}")
        if state.wakeup is not None:
            state.wakeup.set()

    # Fetching ----------------------------------------------------------------
    def _ensure_query(
        self, key: QueryKey, fetch_fn: FetchFn | None, options: QueryOptions | None
    ) -> _QueryState:
        state = self._queries.get(key)
        if state is None:
            state = self._queries[key] = _QueryState()
        if fetch_fn is not None:
            state.fetch_fn = fetch_fn
        if options is not None:
            state.options = options
        return state

    def _is_stale(self, entry: CacheEntry, options: QueryOptions) -> bool:
        if entry.stale:
            return True
        age_ms = (self._clock() - entry.fetched_at) * 1000
        return age_ms >= options.stale_time_ms

    async def fetch(
        self,
        key: QueryKey,
        fetch_fn: FetchFn,
        options: QueryOptions | None = None,
    ) -> Any:
        """Return fresh cached data, or fetch it (sharing any in-flight request)."""
        state = self._ensure_query(key, fetch_fn, options)
        entry = self._entries.get(key)
        if entry is not None and not self._is_stale(entry, state.options):
            return entry.data
        return await self._dedup_fetch(key, state)

    async def refetch(self, key: QueryKey, *, cancel_inflight: bool = False) -> Any:
        """Fetch ``key`` again with its registered fetch function."""
        state = self._queries.get(key)
        if state is None or state.fetch_fn is None:
            raise KeyError(f"No fetch function registered for {key}")
        if cancel_inflight:
            self._detach_inflight(state)
        return await self._dedup_fetch(key, state)

    async def _dedup_fetch(self, key: QueryKey, state: _QueryState) -> Any:
        if state.inflight is None or state.inflight.done():
            fetch_fn = state.fetch_fn
            if fetch_fn is None:
                raise KeyError(f"No fetch function registered for {key}")
            task = asyncio.get_running_loop().create_task(
                self._run_fetch(key, state, fetch_fn, state.options, state.generation)
            )
            task.add_done_callback(lambda t: self._on_fetch_done(state, t))
            state.inflight = task
        # Shielded so that one caller going away does not cancel the shared fetch
        return await asyncio.shield(state.inflight)

    def _on_fetch_done(self, state: _QueryState, task: asyncio.Task[Any]) -> None:
        if state.inflight is task:
            state.inflight = None
        if not task.cancelled():
            # Mark the exception retrieved; awaiting callers already received it
            task.exception()

    async def _run_fetch(
        self,
        key: QueryKey,
        state: _QueryState,
        fetch_fn: FetchFn,
        options: QueryOptions,
        generation: int,
    ) -> Any:
        attempt = 0
        while True:
            try:
                data = await fetch_fn()
                break
            except Exception as e:
                permanent = isinstance(e, TransportError) and e.is_client_error
                if permanent or attempt >= options.retry:
                    logger.warning(f"Query {key} failed after {attempt + 1} attempt(s): {e}")
                    raise
                attempt += 1
                logger.debug(f"Retrying query {key} ({attempt}/{options.retry}): {e}")
                await asyncio.sleep(self._retry_backoff * attempt)

        # The query may have been cancelled, unsubscribed or removed meanwhile
        if self._queries.get(key) is not state or state.generation != generation:
            logger.debug(f"Discarding result of cancelled query {key}")
            return data
        if self.is_mutating(key):
            logger.debug(f"Discarding result for {key}: mutation in progress")
            return data
        self._write(key, data)
        return data

    def _detach_inflight(self, state: _QueryState) -> None:
        state.generation += 1
        state.inflight = None

    def _matching_keys(self, target: KeyMatcher) -> list[QueryKey]:
        if callable(target):
            known = list(dict.fromkeys([*self._entries, *self._queries]))
            return [key for key in known if target(key)]
        return [target]

    def cancel_queries(self, target: KeyMatcher) -> None:
        """Discard the results of in-flight fetches for matching keys."""
        for key in self._matching_keys(target):
            state = self._queries.get(key)
            if state is not None:
                self._detach_inflight(state)

    async def invalidate(self, target: KeyMatcher) -> None:
        """Mark matching entries stale and refetch those with subscribers.

        Refetch failures are logged; the stale entry stays as last-known-good.
        """
        keys = self._matching_keys(target)
        for key in keys:
            entry = self._entries.get(key)
            if entry is not None:
                self._entries[key] = replace(entry, stale=True)

        active = [
            key
            for key in keys
            if (state := self._queries.get(key)) is not None
            and state.subscribers
            and state.fetch_fn is not None
        ]
        results = await asyncio.gather(
            *(self.refetch(key, cancel_inflight=True) for key in active),
            return_exceptions=True,
        )
        for key, result in zip(active, results, strict=True):
            if isinstance(result, Exception):
                logger.warning(f"Refetch after invalidation failed for {key}: {result}")

    # Subscriptions & polling -------------------------------------------------
    def subscribe(
        self,
        key: QueryKey,
        fetch_fn: FetchFn,
        options: QueryOptions | None = None,
        listener: Listener | None = None,
    ) -> Subscription:
        """Register interest in ``key``; must be called from a running event loop.

        The current value (if any) is delivered immediately, a background fetch
        is started when it is missing or stale, and the key's poll loop runs
        until the last subscription is closed.
        """
        loop = asyncio.get_running_loop()
        state = self._ensure_query(key, fetch_fn, options)
        subscription = Subscription(self, key, listener)
        state.subscribers.append(subscription)
        if state.poller is None and state.options.polls:
            state.wakeup = asyncio.Event()
            state.poller = loop.create_task(self._poll_loop(key, state))

        entry = self._entries.get(key)
        if entry is not None and listener is not None:
            listener(entry)
        if entry is None or self._is_stale(entry, state.options):
            self._spawn(self._background_fetch(key, state))
        return subscription

    def _unsubscribe(self, subscription: Subscription) -> None:
        state = self._queries.get(subscription.key)
        if state is None or subscription not in state.subscribers:
            return
        state.subscribers.remove(subscription)
        if state.subscribers:
            return
        if state.poller is not None:
            state.poller.cancel()
            state.poller = None
            state.wakeup = None
        # A result arriving after the last subscriber left is delivered to no one
        self._detach_inflight(state)
        if subscription.key not in self._entries:
            del self._queries[subscription.key]

    def _current_interval(self, key: QueryKey, state: _QueryState) -> PollInterval:
        entry = self._entries.get(key)
        if entry is None:
            # Never fetched successfully: keep trying at the configured pace
            return state.options.poll_interval_ms or config.active_poll_interval_ms
        return state.options.resolve_poll_interval(entry.data)

    async def _poll_loop(self, key: QueryKey, state: _QueryState) -> None:
        wakeup = state.wakeup
        if wakeup is None:
            return
        while True:
            wakeup.clear()
            interval = self._current_interval(key, state)
            if interval == PAUSED or not self._visible:
                await wakeup.wait()
                continue
            try:
                await asyncio.wait_for(wakeup.wait(), timeout=interval / 1000)
                # Woken by a write or visibility change: re-evaluate the interval
                continue
            except asyncio.TimeoutError:
                pass
            if not self._visible:
                continue
            try:
                await self._dedup_fetch(key, state)
            except Exception as e:
                logger.warning(f"Polling {key} failed, keeping last known value: {e}")

    async def _background_fetch(self, key: QueryKey, state: _QueryState) -> None:
        try:
            await self._dedup_fetch(key, state)
        except Exception as e:
            logger.warning(f"Background fetch for {key} failed: {e}")

    def set_visible(self, visible: bool) -> None:
        """Suspend (``False``) or resume (``True``) every poll loop."""
        if visible == self._visible:
            return
        self._visible = visible
        logger.debug(f"Polling {'resumed' if visible else 'suspended'}")
        for state in self._queries.values():
            if state.wakeup is not None:
                state.wakeup.set()

    def _spawn(self, coro: Awaitable[Any]) -> None:
        task = asyncio.ensure_future(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    # Mutations ---------------------------------------------------------------
    async def optimistic_mutate(
        self,
        target: KeyMatcher,
        mutate_fn: Callable[[], Awaitable[Any]],
        *,
        optimistic_update: Callable[[Any], Any] | None = None,
        reconcile: Callable[[Any, Any], Any] | None = None,
        rollback: bool = True,
    ) -> Any:
        """Apply a local change, run ``mutate_fn``, then reconcile or roll back.

        Mutations on overlapping keys are serialized: the pre-mutation snapshot
        is taken only once earlier mutations on those keys have settled. On
        failure every touched key is restored verbatim and ``MutationError`` is
        raised; on success ``reconcile(current, result)`` merges the server's
        answer into each touched key that is still cached.
        """
        keys = sorted(self._matching_keys(target), key=repr)
        async with AsyncExitStack() as stack:
            for key in keys:
                await stack.enter_async_context(self._mutation_lock(key))

            self.cancel_queries(lambda k: k in keys)
            snapshots = {key: self._entries.get(key) for key in keys}
            if optimistic_update is not None:
                for key in keys:
                    if snapshots[key] is not None:
                        self.update_data(key, optimistic_update)

            try:
                result = await mutate_fn()
            except Exception as e:
                if rollback:
                    for key, entry in snapshots.items():
                        self._restore(key, entry)
                logger.warning(f"Mutation on {keys or target} failed, rolled back: {e}")
                if isinstance(e, MutationError):
                    raise
                raise MutationError(
                    str(e), status_code=getattr(e, "status_code", None)
                ) from e

            if reconcile is not None:
                for key in keys:
                    if key in self._entries:
                        self.update_data(key, lambda data: reconcile(data, result))
            return result

    @asynccontextmanager
    async def _mutation_lock(self, key: QueryKey) -> AsyncIterator[None]:
        lock = self._mutation_locks.setdefault(key, asyncio.Lock())
        self._lock_users[key] = self._lock_users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            # Locks live only while someone holds or waits for them
            self._lock_users[key] -= 1
            if not self._lock_users[key]:
                del self._lock_users[key]
                del self._mutation_locks[key]

    # Eviction & shutdown -----------------------------------------------------
    def evict(
        self,
        max_age_minutes: float,
        predicate: Callable[[QueryKey], bool] | None = None,
    ) -> list[QueryKey]:
        """Remove entries last fetched more than ``max_age_minutes`` ago."""
        cutoff = self._clock() - max_age_minutes * 60
        expired = [
            key
            for key, entry in self._entries.items()
            if entry.fetched_at < cutoff and (predicate is None or predicate(key))
        ]
        for key in expired:
            self.remove(key)
        if expired:
            logger.info(f"Evicted {len(expired)} cache entr{'y' if len(expired) == 1 else 'ies'}")
        return expired

    async def close(self) -> None:
        """Stop poll loops and background work, cancelling in-flight fetches."""
        tasks: list[asyncio.Task[Any]] = list(self._background)
        for state in self._queries.values():
            if state.poller is not None:
                tasks.append(state.poller)
                state.poller = None
            if state.inflight is not None and not state.inflight.done():
                tasks.append(state.inflight)
                self._detach_inflight(state)
            state.subscribers.clear()
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._background.clear()
