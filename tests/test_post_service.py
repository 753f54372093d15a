"""
Post service tests: read-through caching, write invalidation, ownership and
list ordering, all against the counting in-memory store.
"""
import asyncio
from datetime import datetime, timezone

import pytest

from src.posts import cache_keys
from src.posts.service import PostService
from src.shared.cache_tier import CacheTier, LocalCache
from src.specs.common.errors import ForbiddenError, NotFoundError, StoreUnavailableError, ValidationError
from src.specs.common.outcomes import OutcomeStatus
from src.specs.db.post import PostDraft


async def _create(service, owner="u1", caption="hello", media_ref=None):
    result = await service.create_post(owner, "User One", caption, media_ref)
    assert result.ok
    return result.post


# ── Reads ───────────────────────────────────────────────────────────────

class TestReadThrough:
    @pytest.mark.asyncio
    async def test_get_post_hits_store_once(self, service, store):
        post = await _create(service)
        store.calls.clear()

        first = await service.get_post(post.id)
        second = await service.get_post(post.id)

        assert first.post == post
        assert second.post == first.post
        assert store.calls["get"] == 1

    @pytest.mark.asyncio
    async def test_missing_post_is_not_cached(self, service, store):
        first = await service.get_post("post-nope")
        second = await service.get_post("post-nope")
        assert first.status is OutcomeStatus.NOT_FOUND
        assert second.status is OutcomeStatus.NOT_FOUND
        assert store.calls["get"] == 2

    @pytest.mark.asyncio
    async def test_list_by_owner_cached(self, service, store):
        await _create(service, caption="a")
        await service.list_by_owner("u1")
        await service.list_by_owner("u1")
        assert store.calls["list_by_owner"] == 1

    @pytest.mark.asyncio
    async def test_feed_cached_under_feed_key(self, service, store, shared_cache):
        await _create(service)
        await service.list_feed(1)
        await service.list_feed(1)
        assert store.calls["list_page"] == 1
        assert cache_keys.feed_page(1) in shared_cache.data

    @pytest.mark.asyncio
    async def test_non_default_page_size_reads_store(self, service, store):
        await _create(service)
        await service.list_feed(1, page_size=10)
        await service.list_feed(1, page_size=10)
        assert store.calls["list_page"] == 2

    @pytest.mark.asyncio
    async def test_feed_paging(self, service):
        for caption in ["a", "b", "c"]:
            await _create(service, caption=caption)
        page1 = await service.list_feed(1, page_size=2)
        page2 = await service.list_feed(2, page_size=2)
        assert [p.caption for p in page1] == ["c", "b"]
        assert [p.caption for p in page2] == ["a"]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("page,page_size", [(0, 10), (-1, 10), (1, 0)])
    async def test_invalid_paging_rejected(self, service, page, page_size):
        with pytest.raises(ValidationError):
            await service.list_feed(page, page_size)

    @pytest.mark.asyncio
    async def test_shared_cache_outage_reads_store(self, service, store, shared_cache):
        post = await _create(service)
        shared_cache.fail_reads = True
        shared_cache.fail_writes = True
        result = await service.get_post(post.id)
        assert result.post == post


# ── Writes ──────────────────────────────────────────────────────────────

class TestWriteInvalidate:
    @pytest.mark.asyncio
    async def test_create_invalidates_owner_list_and_feed(self, service):
        await _create(service, caption="a")
        assert [p.caption for p in await service.list_by_owner("u1")] == ["a"]
        assert [p.caption for p in await service.list_feed(1)] == ["a"]

        await _create(service, caption="b")

        assert [p.caption for p in await service.list_by_owner("u1")] == ["b", "a"]
        assert [p.caption for p in await service.list_feed(1)] == ["b", "a"]

    @pytest.mark.asyncio
    async def test_create_drops_bounded_feed_prefix(self, store, shared_cache, clock):
        service = PostService(store, CacheTier(LocalCache(), shared_cache), feed_invalidation_pages=3, clock=clock)
        for n in range(1, 6):
            shared_cache.data[cache_keys.feed_page(n)] = b"[]"
        await _create(service)
        assert [n for n in range(1, 6) if cache_keys.feed_page(n) in shared_cache.data] == [4, 5]

    @pytest.mark.asyncio
    async def test_update_visible_on_next_read(self, service):
        post = await _create(service, caption="before")
        assert (await service.get_post(post.id)).post.caption == "before"

        result = await service.update_post(post.id, "u1", caption="after")

        assert result.ok
        assert result.post.caption == "after"
        assert (await service.get_post(post.id)).post.caption == "after"
        assert [p.caption for p in await service.list_by_owner("u1")] == ["after"]

    @pytest.mark.asyncio
    async def test_update_keeps_write_once_fields(self, service):
        post = await _create(service, media_ref="https://acct.blob.core.windows.net/post-images/u1/a.png")
        updated = (await service.update_post(post.id, "u1", caption="new")).post
        assert updated.id == post.id
        assert updated.ownerId == post.ownerId
        assert updated.createdAt == post.createdAt
        assert updated.mediaRef == post.mediaRef

    @pytest.mark.asyncio
    async def test_update_replaces_media(self, service):
        post = await _create(service, media_ref="https://x/post-images/u1/a.png")
        updated = (await service.update_post(post.id, "u1", media_ref="https://x/post-images/u1/b.png")).post
        assert updated.caption == post.caption
        assert updated.mediaRef.endswith("b.png")

    @pytest.mark.asyncio
    async def test_update_rejects_oversized_caption(self, service, store):
        post = await _create(service)
        with pytest.raises(ValidationError):
            await service.update_post(post.id, "u1", caption="x" * 2201)
        assert (await store.inner.get(post.id)).caption == "hello"

    @pytest.mark.asyncio
    async def test_create_rejects_empty_caption(self, service, store):
        with pytest.raises(ValidationError):
            await service.create_post("u1", None, "")
        assert store.calls["insert"] == 0

    @pytest.mark.asyncio
    async def test_delete_returns_snapshot_and_invalidates(self, service):
        post = await _create(service, media_ref="https://x/post-images/u1/a.png")
        await service.get_post(post.id)

        result = await service.delete_post(post.id, "u1")

        assert result.ok
        assert result.post == post
        assert (await service.get_post(post.id)).status is OutcomeStatus.NOT_FOUND
        assert await service.list_by_owner("u1") == []

    @pytest.mark.asyncio
    async def test_invalidation_failure_does_not_fail_write(self, service, shared_cache):
        post = await _create(service)
        shared_cache.fail_deletes = True
        result = await service.update_post(post.id, "u1", caption="still saved")
        assert result.ok

    @pytest.mark.asyncio
    async def test_store_failure_on_write_propagates(self, service, store):
        store.fail_on.add("insert")
        with pytest.raises(StoreUnavailableError):
            await service.create_post("u1", None, "caption")


# ── Ownership ───────────────────────────────────────────────────────────

class TestOwnership:
    @pytest.mark.asyncio
    async def test_update_by_other_user_forbidden(self, service, store):
        post = await _create(service)
        result = await service.update_post(post.id, "u2", caption="hijack")
        assert result.status is OutcomeStatus.FORBIDDEN
        assert store.calls["replace"] == 0
        assert (await store.inner.get(post.id)) == post

    @pytest.mark.asyncio
    async def test_delete_by_other_user_forbidden(self, service, store):
        post = await _create(service)
        result = await service.delete_post(post.id, "u2")
        assert result.status is OutcomeStatus.FORBIDDEN
        assert store.calls["delete_one"] == 0
        assert (await store.inner.get(post.id)) == post

    @pytest.mark.asyncio
    async def test_ownership_is_exact_match(self, service):
        post = await _create(service, owner="User-A")
        result = await service.delete_post(post.id, "user-a")
        assert result.status is OutcomeStatus.FORBIDDEN

    @pytest.mark.asyncio
    async def test_missing_post_reports_not_found(self, service, store):
        assert (await service.update_post("post-x", "u1", caption="c")).status is OutcomeStatus.NOT_FOUND
        assert (await service.delete_post("post-x", "u1")).status is OutcomeStatus.NOT_FOUND
        assert store.calls["replace"] == 0
        assert store.calls["delete_one"] == 0

    @pytest.mark.asyncio
    async def test_unwrap_raises_typed_errors(self, service):
        post = await _create(service)
        with pytest.raises(ForbiddenError):
            (await service.delete_post(post.id, "u2")).unwrap("u2")
        with pytest.raises(NotFoundError):
            (await service.get_post("post-x")).unwrap()


# ── Ordering ────────────────────────────────────────────────────────────

class TestOrdering:
    @pytest.mark.asyncio
    async def test_identical_timestamps_break_ties_by_id(self, store, cache):
        fixed = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
        service = PostService(store, cache, clock=lambda: fixed)
        created = [await _create(service, caption=str(n)) for n in range(6)]

        expected = sorted((p.id for p in created), reverse=True)
        assert [p.id for p in await service.list_by_owner("u1")] == expected
        assert [p.id for p in await service.list_feed(1)] == expected

    @pytest.mark.asyncio
    async def test_mixed_timestamps(self, store, cache):
        t1 = datetime(2026, 3, 1, tzinfo=timezone.utc)
        t2 = datetime(2026, 3, 2, tzinfo=timezone.utc)
        a = await store.inner.insert(PostDraft(ownerId="u1", caption="a", createdAt=t2))
        b = await store.inner.insert(PostDraft(ownerId="u1", caption="b", createdAt=t1))
        c = await store.inner.insert(PostDraft(ownerId="u1", caption="c", createdAt=t2))
        service = PostService(store, cache)

        ids = [p.id for p in await service.list_by_owner("u1")]
        assert ids[-1] == b.id
        assert ids[:2] == sorted([a.id, c.id], reverse=True)


# ── Concurrent writers ──────────────────────────────────────────────────

def _vanish_after_read(store):
    """Make the next store reads race a delete that commits right after them."""
    read = store.get

    async def get_then_deleted(post_id):
        found = await read(post_id)
        await store.inner.delete_one(post_id)
        return found

    store.get = get_then_deleted


class TestConcurrentWrites:
    @pytest.mark.asyncio
    async def test_update_racing_delete_reports_not_found(self, service, store):
        post = await _create(service)
        _vanish_after_read(store)

        result = await service.update_post(post.id, "u1", caption="y")

        assert result.status is OutcomeStatus.NOT_FOUND
        assert await store.inner.get(post.id) is None

    @pytest.mark.asyncio
    async def test_delete_racing_delete_reports_not_found(self, service, store):
        post = await _create(service)
        _vanish_after_read(store)

        result = await service.delete_post(post.id, "u1")

        assert result.status is OutcomeStatus.NOT_FOUND

    @pytest.mark.asyncio
    async def test_update_during_slow_cache_fill_is_visible(self, service, cache, shared_cache):
        post = await _create(service, caption="before")
        shared_cache.set_gate = asyncio.Event()

        reader = asyncio.create_task(service.get_post(post.id))
        await shared_cache.set_started.wait()
        assert (await service.update_post(post.id, "u1", caption="after")).ok
        shared_cache.set_gate.set()

        assert (await reader).post.caption == "before"
        cache.local.clear()
        assert (await service.get_post(post.id)).post.caption == "after"


class TestScenario:
    @pytest.mark.asyncio
    async def test_create_delete_forbidden_flow(self, service):
        a = await _create(service, caption="a")
        b = await _create(service, caption="b")
        await _create(service, caption="c")
        assert [p.caption for p in await service.list_by_owner("u1")] == ["c", "b", "a"]

        assert (await service.delete_post(b.id, "u1")).ok
        assert [p.caption for p in await service.list_by_owner("u1")] == ["c", "a"]
        assert (await service.get_post(b.id)).status is OutcomeStatus.NOT_FOUND

        assert (await service.delete_post(a.id, "u2")).status is OutcomeStatus.FORBIDDEN
        assert [p.caption for p in await service.list_by_owner("u1")] == ["c", "a"]
