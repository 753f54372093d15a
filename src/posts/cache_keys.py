"""Cache key formats shared by every instance of the service."""
from typing import List


def post(post_id: str) -> str:
    return f"post:{post_id}"


def posts_by_owner(owner_id: str) -> str:
    return f"posts:user:{owner_id}"


def feed_page(page: int) -> str:
    return f"feed:page:{page}"


def owner_and_feed(owner_id: str, feed_pages: int) -> List[str]:
    """Keys made stale by any write to one of ``owner_id``'s posts."""
    return [posts_by_owner(owner_id)] + [feed_page(n) for n in range(1, feed_pages + 1)]
