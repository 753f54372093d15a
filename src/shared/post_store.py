import asyncio
from typing import Dict, Iterable, List, Optional, Protocol

from src.shared.config import Settings
from src.shared.logging_utils import info as log_info
from src.specs.db.post import Post, PostDraft, new_post_id, sort_posts


class PostStore(Protocol):
    """Authoritative post storage. No caching happens at this level.

    List results are ordered newest first, ties broken by id descending.
    """

    async def get(self, post_id: str) -> Optional[Post]: ...

    async def list_page(self, offset: int, limit: int) -> List[Post]: ...

    async def list_by_owner(self, owner_id: str) -> List[Post]: ...

    async def insert(self, draft: PostDraft) -> Post: ...

    async def replace(self, post: Post) -> Optional[Post]:
        """Overwrite a stored post; ``None`` when the row no longer exists."""
        ...

    async def delete_one(self, post_id: str, *, owner_id: Optional[str] = None) -> bool:
        """Delete a post; ``False`` when it was already gone."""
        ...

    async def delete_many(self, post_ids: Iterable[str], *, owner_id: Optional[str] = None) -> int: ...


class InMemoryPostStore:
    """Process-local store for development and tests."""

    def __init__(self) -> None:
        self._posts: Dict[str, Post] = {}
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._posts)

    async def get(self, post_id: str) -> Optional[Post]:
        return self._posts.get(post_id)

    async def list_page(self, offset: int, limit: int) -> List[Post]:
        return sort_posts(self._posts.values())[offset:offset + limit]

    async def list_by_owner(self, owner_id: str) -> List[Post]:
        return sort_posts(p for p in self._posts.values() if p.ownerId == owner_id)

    async def insert(self, draft: PostDraft) -> Post:
        async with self._lock:
            post_id = new_post_id()
            while post_id in self._posts:
                post_id = new_post_id()
            post = Post.from_draft(draft, post_id)
            self._posts[post_id] = post
            return post

    async def replace(self, post: Post) -> Optional[Post]:
        async with self._lock:
            current = self._posts.get(post.id)
            if current is None:
                return None
            # id, ownerId and createdAt are write-once
            stored = post.model_copy(update={"ownerId": current.ownerId, "createdAt": current.createdAt})
            self._posts[post.id] = stored
            return stored

    async def delete_one(self, post_id: str, *, owner_id: Optional[str] = None) -> bool:
        async with self._lock:
            return self._posts.pop(post_id, None) is not None

    async def delete_many(self, post_ids: Iterable[str], *, owner_id: Optional[str] = None) -> int:
        async with self._lock:
            deleted = 0
            for post_id in post_ids:
                if self._posts.pop(post_id, None) is not None:
                    deleted += 1
            return deleted


def select_post_store(settings: Settings) -> PostStore:
    backend = settings.post_store_backend
    if backend == "memory":
        store: PostStore = InMemoryPostStore()
    elif backend == "cosmos" or (backend == "auto" and settings.cosmos_configured):
        from src.shared.cosmos_client import CosmosPostStore

        store = CosmosPostStore.from_settings(settings)
    else:
        store = InMemoryPostStore()
    log_info(None, "post_store:selected", backend=type(store).__name__)
    return store
