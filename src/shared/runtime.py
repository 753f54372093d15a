from dataclasses import dataclass
from functools import lru_cache
from typing import Optional

from src.consumers.account_deleted import AccountDeletedConsumer
from src.posts.service import PostService
from src.shared.blob_store import MediaDeleter, select_media_deleter
from src.shared.cache_tier import CacheTier, LocalCache, SharedCache
from src.shared.config import Settings
from src.shared.logging_utils import info as log_info
from src.shared.post_store import PostStore, select_post_store
from src.shared.redis_cache import RedisSharedCache


@dataclass(frozen=True)
class Runtime:
    settings: Settings
    store: PostStore
    cache: CacheTier
    media: MediaDeleter
    posts: PostService
    account_deleted: AccountDeletedConsumer


def build_runtime(
    settings: Settings,
    *,
    store: Optional[PostStore] = None,
    shared_cache: Optional[SharedCache] = None,
    media: Optional[MediaDeleter] = None,
) -> Runtime:
    """Wire the post core once at startup; collaborators may be overridden."""
    if store is None:
        store = select_post_store(settings)
    if shared_cache is None and settings.redis_url:
        shared_cache = RedisSharedCache.from_url(settings.redis_url)
    if media is None:
        media = select_media_deleter(settings)

    cache = CacheTier(LocalCache(max_entries=settings.local_cache_max_entries), shared_cache)
    posts = PostService(
        store,
        cache,
        feed_invalidation_pages=settings.feed_invalidation_pages,
        feed_page_size=settings.feed_page_size,
    )
    log_info(
        None,
        "runtime:init",
        store=type(store).__name__,
        sharedCache=type(shared_cache).__name__ if shared_cache else None,
        media=type(media).__name__,
    )
    return Runtime(
        settings=settings,
        store=store,
        cache=cache,
        media=media,
        posts=posts,
        account_deleted=AccountDeletedConsumer(posts, media),
    )


@lru_cache(maxsize=1)
def get_runtime() -> Runtime:
    """Process-wide runtime for Function triggers, built on first use"""
    return build_runtime(Settings.from_env())
