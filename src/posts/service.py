"""
Post operations with read-through caching and write invalidation.

Reads consult the cache tier and fall back to the store. Writes hit the store
first and only then drop the affected cache keys, so an invalidation is never
followed by a repopulation from a pre-write read started after it.
"""
from datetime import datetime
from typing import Callable, Iterable, List, Optional

from pydantic import TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from src.posts import cache_keys
from src.shared.cache_tier import FEED_POLICY, POST_POLICY, CacheTier
from src.shared.logging_utils import debug as log_debug, info as log_info, warning as log_warning
from src.shared.post_store import PostStore
from src.specs.common.datetime_utils import utc_now
from src.specs.common.errors import ValidationError
from src.specs.common.outcomes import PostResult
from src.specs.db.post import Post, PostDraft

_POST = TypeAdapter(Post)
_POST_LIST = TypeAdapter(List[Post])

DEFAULT_FEED_PAGE_SIZE = 50
DEFAULT_FEED_INVALIDATION_PAGES = 5


def _invalid(exc: PydanticValidationError) -> ValidationError:
    return ValidationError("Invalid post", details={"errors": exc.errors(include_url=False)})


class PostService:
    def __init__(
        self,
        store: PostStore,
        cache: CacheTier,
        *,
        feed_invalidation_pages: int = DEFAULT_FEED_INVALIDATION_PAGES,
        feed_page_size: int = DEFAULT_FEED_PAGE_SIZE,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        if feed_invalidation_pages < 1:
            raise ValueError("feed_invalidation_pages must be at least 1")
        self._store = store
        self._cache = cache
        self._feed_pages = feed_invalidation_pages
        self._feed_page_size = feed_page_size
        self._clock = clock

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_post(self, post_id: str) -> PostResult:
        async def load() -> Optional[Post]:
            log_debug(None, "posts:load", postId=post_id)
            return await self._store.get(post_id)

        post = await self._cache.get_or_populate(cache_keys.post(post_id), POST_POLICY, load, _POST)
        if post is None:
            return PostResult.not_found(post_id)
        return PostResult.success(post)

    async def list_feed(self, page: int = 1, page_size: Optional[int] = None) -> List[Post]:
        """Global feed, newest first. Only the configured page size is cached."""
        page_size = self._feed_page_size if page_size is None else page_size
        if page < 1:
            raise ValidationError("page must be >= 1", details={"page": page})
        if page_size < 1:
            raise ValidationError("page_size must be > 0", details={"pageSize": page_size})

        offset = (page - 1) * page_size

        async def load() -> List[Post]:
            log_debug(None, "posts:load_feed", page=page, pageSize=page_size)
            return await self._store.list_page(offset, page_size)

        if page_size != self._feed_page_size:
            return await load()
        posts = await self._cache.get_or_populate(cache_keys.feed_page(page), FEED_POLICY, load, _POST_LIST)
        return posts or []

    async def list_by_owner(self, owner_id: str) -> List[Post]:
        async def load() -> List[Post]:
            log_debug(None, "posts:load_owner", ownerId=owner_id)
            return await self._store.list_by_owner(owner_id)

        posts = await self._cache.get_or_populate(cache_keys.posts_by_owner(owner_id), POST_POLICY, load, _POST_LIST)
        return posts or []

    async def load_post_for_write(self, post_id: str) -> Optional[Post]:
        """Fresh store read, bypassing the cache."""
        return await self._store.get(post_id)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def create_post(
        self,
        owner_id: str,
        display_name: Optional[str],
        caption: str,
        media_ref: Optional[str] = None,
    ) -> PostResult:
        try:
            draft = PostDraft(
                ownerId=owner_id,
                displayName=display_name,
                caption=caption,
                mediaRef=media_ref,
                createdAt=self._clock(),
            )
        except PydanticValidationError as exc:
            raise _invalid(exc) from exc

        post = await self._store.insert(draft)
        await self._invalidate(owner_id)
        log_info(None, "posts:created", postId=post.id, ownerId=owner_id)
        return PostResult.success(post)

    async def update_post(
        self,
        post_id: str,
        caller_id: str,
        caption: Optional[str] = None,
        media_ref: Optional[str] = None,
    ) -> PostResult:
        """Change caption and/or media. ``None`` keeps the current value."""
        current = await self._store.get(post_id)
        if current is None:
            return PostResult.not_found(post_id)
        if current.ownerId != caller_id:
            log_warning(None, "posts:update_forbidden", postId=post_id, callerId=caller_id, ownerId=current.ownerId)
            return PostResult.forbidden(post_id)

        changes = current.model_dump()
        if caption is not None:
            changes["caption"] = caption
        if media_ref is not None:
            changes["mediaRef"] = media_ref
        try:
            updated = Post.model_validate(changes)
        except PydanticValidationError as exc:
            raise _invalid(exc) from exc

        stored = await self._store.replace(updated)
        await self._invalidate(current.ownerId, post_ids=[post_id])
        if stored is None:
            log_info(None, "posts:update_lost_to_delete", postId=post_id)
            return PostResult.not_found(post_id)
        log_info(None, "posts:updated", postId=post_id)
        return PostResult.success(stored)

    async def delete_post(self, post_id: str, caller_id: str) -> PostResult:
        """Delete a post; the result carries the deleted snapshot for media cleanup."""
        current = await self._store.get(post_id)
        if current is None:
            return PostResult.not_found(post_id)
        if current.ownerId != caller_id:
            log_warning(None, "posts:delete_forbidden", postId=post_id, callerId=caller_id, ownerId=current.ownerId)
            return PostResult.forbidden(post_id)

        deleted = await self._store.delete_one(post_id, owner_id=current.ownerId)
        await self._invalidate(current.ownerId, post_ids=[post_id])
        if not deleted:
            # Removed by a concurrent delete after the read above
            return PostResult.not_found(post_id)
        log_info(None, "posts:deleted", postId=post_id)
        return PostResult.success(current)

    # ------------------------------------------------------------------
    # Bulk path (account deletion)
    # ------------------------------------------------------------------

    async def load_owner_posts_fresh(self, owner_id: str) -> List[Post]:
        return await self._store.list_by_owner(owner_id)

    async def purge_posts(self, owner_id: str, posts: Iterable[Post]) -> int:
        """Delete ``posts`` in one batch, then drop every cache key they touch."""
        post_ids = [p.id for p in posts]
        if not post_ids:
            return 0
        deleted = await self._store.delete_many(post_ids, owner_id=owner_id)
        await self._invalidate(owner_id, post_ids=post_ids)
        log_info(None, "posts:purged", ownerId=owner_id, requested=len(post_ids), deleted=deleted)
        return deleted

    async def _invalidate(self, owner_id: str, post_ids: Iterable[str] = ()) -> None:
        keys = [cache_keys.post(pid) for pid in post_ids]
        keys.extend(cache_keys.owner_and_feed(owner_id, self._feed_pages))
        await self._cache.remove_many(keys)
