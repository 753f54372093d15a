"""Shared fakes for the post core tests. Nothing here talks to Azure or Redis."""
import asyncio
from collections import Counter
from datetime import datetime, timedelta, timezone
from typing import Dict, Iterable, List, Optional, Set

import pytest

from src.posts.service import PostService
from src.shared.cache_tier import CacheTier, LocalCache
from src.shared.post_store import InMemoryPostStore
from src.specs.common.errors import CacheUnavailableError, StoreUnavailableError
from src.specs.db.post import Post, PostDraft


class CountingStore:
    """Wraps InMemoryPostStore, counting calls and failing on request."""

    def __init__(self) -> None:
        self.inner = InMemoryPostStore()
        self.calls: Counter = Counter()
        self.fail_on: Set[str] = set()

    def _enter(self, name: str) -> None:
        self.calls[name] += 1
        if name in self.fail_on:
            raise StoreUnavailableError(f"{name} unavailable")

    async def get(self, post_id: str) -> Optional[Post]:
        self._enter("get")
        return await self.inner.get(post_id)

    async def list_page(self, offset: int, limit: int) -> List[Post]:
        self._enter("list_page")
        return await self.inner.list_page(offset, limit)

    async def list_by_owner(self, owner_id: str) -> List[Post]:
        self._enter("list_by_owner")
        return await self.inner.list_by_owner(owner_id)

    async def insert(self, draft: PostDraft) -> Post:
        self._enter("insert")
        return await self.inner.insert(draft)

    async def replace(self, post: Post) -> Optional[Post]:
        self._enter("replace")
        return await self.inner.replace(post)

    async def delete_one(self, post_id: str, *, owner_id: Optional[str] = None) -> bool:
        self._enter("delete_one")
        return await self.inner.delete_one(post_id, owner_id=owner_id)

    async def delete_many(self, post_ids: Iterable[str], *, owner_id: Optional[str] = None) -> int:
        self._enter("delete_many")
        return await self.inner.delete_many(post_ids, owner_id=owner_id)


class FakeSharedCache:
    """In-memory stand-in for the Redis tier; TTLs are recorded, not enforced."""

    def __init__(self) -> None:
        self.data: Dict[str, bytes] = {}
        self.ttls: Dict[str, timedelta] = {}
        self.calls: Counter = Counter()
        self.fail_reads = False
        self.fail_writes = False
        self.fail_deletes = False
        # When set, writes wait on it before landing, like a slow network round trip
        self.set_gate: Optional[asyncio.Event] = None
        self.set_started = asyncio.Event()

    async def get(self, key: str) -> Optional[bytes]:
        self.calls["get"] += 1
        if self.fail_reads:
            raise CacheUnavailableError("shared tier down")
        return self.data.get(key)

    async def set(self, key: str, value: bytes, ttl: timedelta) -> None:
        self.calls["set"] += 1
        if self.fail_writes:
            raise CacheUnavailableError("shared tier down")
        self.set_started.set()
        if self.set_gate is not None:
            await self.set_gate.wait()
        self.data[key] = value
        self.ttls[key] = ttl

    async def delete(self, *keys: str) -> None:
        self.calls["delete"] += 1
        if self.fail_deletes:
            raise CacheUnavailableError("shared tier down")
        for key in keys:
            self.data.pop(key, None)


class RecordingMediaDeleter:
    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.deleted: List[str] = []
        self.attempts: List[str] = []

    async def delete(self, media_ref: str) -> None:
        self.attempts.append(media_ref)
        if self.fail:
            raise RuntimeError(f"blob service refused {media_ref}")
        self.deleted.append(media_ref)


class StepClock:
    """Returns a strictly increasing UTC time on every call."""

    def __init__(self, start: Optional[datetime] = None, step: timedelta = timedelta(seconds=1)) -> None:
        self.now = start or datetime(2026, 1, 1, tzinfo=timezone.utc)
        self.step = step

    def __call__(self) -> datetime:
        current = self.now
        self.now = self.now + self.step
        return current


@pytest.fixture
def store() -> CountingStore:
    return CountingStore()


@pytest.fixture
def shared_cache() -> FakeSharedCache:
    return FakeSharedCache()


@pytest.fixture
def cache(shared_cache) -> CacheTier:
    return CacheTier(LocalCache(), shared_cache)


@pytest.fixture
def clock() -> StepClock:
    return StepClock()


@pytest.fixture
def service(store, cache, clock) -> PostService:
    return PostService(store, cache, feed_invalidation_pages=5, feed_page_size=50, clock=clock)


@pytest.fixture
def media() -> RecordingMediaDeleter:
    return RecordingMediaDeleter()


@pytest.fixture
def failing_media() -> RecordingMediaDeleter:
    return RecordingMediaDeleter(fail=True)
