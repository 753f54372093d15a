"""
Two-level cache in front of the post store.

The local tier is a per-process dict with a short TTL; the shared tier
(Redis, optional) is shared across Function instances with a longer TTL.
Entries are derived data: every failure of the shared tier degrades to a miss
on reads and to a logged warning on writes and removals.
"""
import asyncio
import time
from datetime import timedelta
from typing import Any, Awaitable, Callable, Dict, Iterable, Optional, Protocol, Tuple, TypeVar

from pydantic import BaseModel, ConfigDict, TypeAdapter, model_validator
from pydantic import ValidationError as PydanticValidationError

from src.specs.common.errors import CacheUnavailableError
from src.shared.logging_utils import debug as log_debug, warning as log_warning

V = TypeVar("V")


class CachePolicy(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    local_ttl: timedelta
    shared_ttl: timedelta

    @model_validator(mode="after")
    def _local_not_longer_than_shared(self) -> "CachePolicy":
        if self.local_ttl <= timedelta(0):
            raise ValueError("local_ttl must be positive")
        if self.local_ttl > self.shared_ttl:
            raise ValueError("local_ttl must not exceed shared_ttl")
        return self


# Single posts and per-owner lists
POST_POLICY = CachePolicy(name="post", local_ttl=timedelta(minutes=2), shared_ttl=timedelta(minutes=15))
# Global feed pages churn on every write
FEED_POLICY = CachePolicy(name="feed", local_ttl=timedelta(seconds=15), shared_ttl=timedelta(seconds=60))


class SharedCache(Protocol):
    """Shared tier contract. Implementations raise CacheUnavailableError."""

    async def get(self, key: str) -> Optional[bytes]: ...

    async def set(self, key: str, value: bytes, ttl: timedelta) -> None: ...

    async def delete(self, *keys: str) -> None: ...


class LocalCache:
    """Bounded in-process TTL cache."""

    def __init__(self, max_entries: int = 10_000, clock: Callable[[], float] = time.monotonic) -> None:
        self._entries: Dict[str, Tuple[float, bytes]] = {}
        self._max_entries = max_entries
        self._clock = clock

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, key: str) -> Optional[bytes]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        expires_at, value = entry
        if expires_at <= self._clock():
            self._entries.pop(key, None)
            return None
        return value

    def set(self, key: str, value: bytes, ttl: timedelta) -> None:
        now = self._clock()
        if key not in self._entries and len(self._entries) >= self._max_entries:
            self._evict(now)
        self._entries[key] = (now + ttl.total_seconds(), value)

    def delete(self, key: str) -> None:
        self._entries.pop(key, None)

    def clear(self) -> None:
        self._entries.clear()

    def _evict(self, now: float) -> None:
        expired = [k for k, (exp, _) in self._entries.items() if exp <= now]
        for k in expired:
            del self._entries[k]
        if len(self._entries) >= self._max_entries:
            # Drop the entry closest to expiry
            victim = min(self._entries, key=lambda k: self._entries[k][0])
            del self._entries[victim]


class _Flight:
    __slots__ = ("task", "waiters", "detached")

    def __init__(self) -> None:
        self.task: Optional["asyncio.Task[Any]"] = None
        self.waiters = 0
        # Set when the key is removed while the population is running
        self.detached = False


class CacheTier:
    """Read-through cache with single-flight population per key.

    Created once at startup and passed by reference to its users.
    """

    def __init__(self, local: Optional[LocalCache] = None, shared: Optional[SharedCache] = None) -> None:
        self._local = local or LocalCache()
        self._shared = shared
        self._inflight: Dict[str, _Flight] = {}

    @property
    def local(self) -> LocalCache:
        return self._local

    async def get_or_populate(
        self,
        key: str,
        policy: CachePolicy,
        populate: Callable[[], Awaitable[Optional[V]]],
        adapter: TypeAdapter,
    ) -> Optional[V]:
        """Return the cached value for ``key`` or load it with ``populate``.

        Concurrent callers for the same key share one running ``populate``.
        A ``None`` result is returned as-is and never cached.
        """
        cached = await self._read(key, policy)
        if cached is not None:
            try:
                return adapter.validate_json(cached)
            except PydanticValidationError as exc:
                # Written by an incompatible version or corrupted; reload it
                log_warning(None, "cache:decode_failed", key=key, error=str(exc))
                await self._drop_stored(key)

        flight = self._inflight.get(key)
        if flight is None:
            log_debug(None, "cache:miss", key=key, policy=policy.name)
            flight = _Flight()
            flight.task = asyncio.ensure_future(self._populate(key, policy, populate, adapter, flight))
            self._inflight[key] = flight
            flight.task.add_done_callback(lambda _task, k=key, f=flight: self._forget(k, f))
        else:
            log_debug(None, "cache:join_inflight", key=key)

        flight.waiters += 1
        try:
            return await asyncio.shield(flight.task)
        except asyncio.CancelledError:
            if flight.waiters == 1 and not flight.task.done():
                flight.task.cancel()
            raise
        finally:
            flight.waiters -= 1

    async def remove(self, key: str) -> None:
        """Drop ``key`` from both tiers. Never raises."""
        await self.remove_many([key])

    async def remove_many(self, keys: Iterable[str]) -> None:
        keys = list(dict.fromkeys(keys))
        for key in keys:
            self._local.delete(key)
            flight = self._inflight.pop(key, None)
            if flight is not None:
                flight.detached = True
        if self._shared is None or not keys:
            return
        try:
            await self._shared.delete(*keys)
        except CacheUnavailableError as exc:
            log_warning(None, "cache:remove_failed", keys=keys, error=str(exc))

    async def _read(self, key: str, policy: CachePolicy) -> Optional[bytes]:
        value = self._local.get(key)
        if value is not None:
            return value
        if self._shared is None:
            return None
        try:
            value = await self._shared.get(key)
        except CacheUnavailableError as exc:
            log_warning(None, "cache:read_failed", key=key, error=str(exc))
            return None
        if value is not None:
            self._local.set(key, value, policy.local_ttl)
        return value

    async def _populate(
        self,
        key: str,
        policy: CachePolicy,
        populate: Callable[[], Awaitable[Optional[V]]],
        adapter: TypeAdapter,
        flight: _Flight,
    ) -> Optional[V]:
        value = await populate()
        if value is None:
            return None
        if flight.detached:
            # Invalidated while loading; hand the value to current waiters only
            log_debug(None, "cache:populate_discarded", key=key)
            return value
        data = adapter.dump_json(value)
        self._local.set(key, data, policy.local_ttl)
        if self._shared is not None:
            try:
                await self._shared.set(key, data, policy.shared_ttl)
            except CacheUnavailableError as exc:
                log_warning(None, "cache:write_failed", key=key, error=str(exc))
            if flight.detached:
                # Removed while the shared write was in progress; the write may have landed after the delete
                log_debug(None, "cache:populate_revoked", key=key)
                await self._drop_stored(key)
        return value

    async def _drop_stored(self, key: str) -> None:
        self._local.delete(key)
        if self._shared is None:
            return
        try:
            await self._shared.delete(key)
        except CacheUnavailableError as exc:
            log_warning(None, "cache:remove_failed", keys=[key], error=str(exc))

    def _forget(self, key: str, flight: _Flight) -> None:
        if self._inflight.get(key) is flight:
            del self._inflight[key]
