# Cosmos DB post store

import time
import logging
import backoff
from typing import Optional, List, Dict, Any, Iterable
from azure.cosmos import exceptions
from azure.cosmos.aio import CosmosClient, ContainerProxy
from src.shared.config import Settings
from src.specs.common.datetime_utils import format_iso_datetime
from src.specs.common.errors import ConfigurationError, StoreUnavailableError
from src.specs.db.post import Post, PostDraft, new_post_id

_DOC_TYPE = "post"


class RetryableCosmosError(StoreUnavailableError):
    """Indicates a Cosmos DB operation that should be retried"""
    pass


def _translate(e: exceptions.CosmosHttpResponseError, operation: str) -> StoreUnavailableError:
    if e.status_code in (429, 503):  # Too Many Requests or Service Unavailable
        msg = f"Retryable error during {operation}: {e}"
        logging.warning(msg)
        return RetryableCosmosError(msg, details={"statusCode": e.status_code})
    logging.error(f"Error during {operation}: {e}")
    return StoreUnavailableError(f"Cosmos {operation} failed: {e}", details={"statusCode": e.status_code})


def _to_document(post: Post) -> Dict[str, Any]:
    return {
        "id": post.id,
        "type": _DOC_TYPE,
        "ownerId": post.ownerId,
        "displayName": post.displayName,
        "caption": post.caption,
        "mediaRef": post.mediaRef,
        "createdAt": format_iso_datetime(post.createdAt),
    }


def _from_document(doc: Dict[str, Any]) -> Post:
    return Post.model_validate({k: doc.get(k) for k in Post.model_fields})


class CosmosPostStore:
    """
    Posts container partitioned on ``/ownerId``.

    List queries order on ``createdAt`` then ``id``; the container needs a
    composite index on ``(createdAt DESC, id DESC)`` for cross-partition
    feed queries.
    """

    # Max retries and timeout configuration
    MAX_RETRIES = 3
    OPERATION_TIMEOUT = 10.0    # 10s
    BATCH_SIZE = 100

    def __init__(self, container: ContainerProxy):
        self.container = container

    @classmethod
    def from_settings(cls, settings: Settings) -> "CosmosPostStore":
        if not settings.cosmos_configured:
            raise ConfigurationError("Missing Cosmos DB connection string or database name")
        client = CosmosClient.from_connection_string(
            settings.cosmos_connection_string,
            retry_total=cls.MAX_RETRIES
        )
        database = client.get_database_client(settings.cosmos_database_name)
        return cls(database.get_container_client(settings.cosmos_posts_container))

    async def _query(self, query: str, parameters: List[Dict[str, Any]], partition_key: Optional[str] = None) -> List[Post]:
        kwargs: Dict[str, Any] = {"query": query, "parameters": parameters}
        if partition_key is not None:
            kwargs["partition_key"] = partition_key
        return [_from_document(doc) async for doc in self.container.query_items(**kwargs)]

    @backoff.on_exception(
        backoff.expo,
        RetryableCosmosError,
        max_tries=MAX_RETRIES,
        max_time=OPERATION_TIMEOUT
    )
    async def get(self, post_id: str) -> Optional[Post]:
        """
        Get a post by id. The owner (partition) is unknown here, so this is a
        parameterized cross-partition query.
        """
        try:
            items = await self._query(
                "SELECT * FROM c WHERE c.type = @type AND c.id = @id",
                [{"name": "@type", "value": _DOC_TYPE}, {"name": "@id", "value": post_id}],
            )
        except exceptions.CosmosHttpResponseError as e:
            raise _translate(e, "get") from e
        return items[0] if items else None

    @backoff.on_exception(
        backoff.expo,
        RetryableCosmosError,
        max_tries=MAX_RETRIES,
        max_time=OPERATION_TIMEOUT
    )
    async def list_page(self, offset: int, limit: int) -> List[Post]:
        start_time = time.time()
        try:
            posts = await self._query(
                "SELECT * FROM c WHERE c.type = @type "
                "ORDER BY c.createdAt DESC, c.id DESC OFFSET @offset LIMIT @limit",
                [
                    {"name": "@type", "value": _DOC_TYPE},
                    {"name": "@offset", "value": offset},
                    {"name": "@limit", "value": limit},
                ],
            )
        except exceptions.CosmosHttpResponseError as e:
            raise _translate(e, "list_page") from e
        logging.debug(f"Retrieved {len(posts)} posts at offset {offset} in {time.time() - start_time:.2f}s")
        return posts

    @backoff.on_exception(
        backoff.expo,
        RetryableCosmosError,
        max_tries=MAX_RETRIES,
        max_time=OPERATION_TIMEOUT
    )
    async def list_by_owner(self, owner_id: str) -> List[Post]:
        try:
            return await self._query(
                "SELECT * FROM c WHERE c.type = @type AND c.ownerId = @ownerId "
                "ORDER BY c.createdAt DESC, c.id DESC",
                [{"name": "@type", "value": _DOC_TYPE}, {"name": "@ownerId", "value": owner_id}],
                partition_key=owner_id,
            )
        except exceptions.CosmosHttpResponseError as e:
            raise _translate(e, "list_by_owner") from e

    async def insert(self, draft: PostDraft) -> Post:
        # The id is fixed before the retried create so a retry cannot add a second post
        post = Post.from_draft(draft, new_post_id())
        await self._create(post)
        return post

    @backoff.on_exception(
        backoff.expo,
        RetryableCosmosError,
        max_tries=MAX_RETRIES,
        max_time=OPERATION_TIMEOUT
    )
    async def _create(self, post: Post) -> None:
        try:
            await self.container.create_item(body=_to_document(post))
        except exceptions.CosmosResourceExistsError:
            # Ids are never reused: an earlier attempt committed before failing
            logging.info(f"Post '{post.id}' already created by a previous attempt")
        except exceptions.CosmosHttpResponseError as e:
            raise _translate(e, "insert") from e

    @backoff.on_exception(
        backoff.expo,
        RetryableCosmosError,
        max_tries=MAX_RETRIES,
        max_time=OPERATION_TIMEOUT
    )
    async def replace(self, post: Post) -> Optional[Post]:
        try:
            await self.container.replace_item(item=post.id, body=_to_document(post))
        except exceptions.CosmosResourceNotFoundError:
            logging.info(f"Post '{post.id}' not found during replace - deleted concurrently")
            return None
        except exceptions.CosmosHttpResponseError as e:
            raise _translate(e, "replace") from e
        return post

    async def _resolve_owner(self, post_id: str, owner_id: Optional[str]) -> Optional[str]:
        if owner_id is not None:
            return owner_id
        post = await self.get(post_id)
        return post.ownerId if post else None

    @backoff.on_exception(
        backoff.expo,
        RetryableCosmosError,
        max_tries=MAX_RETRIES,
        max_time=OPERATION_TIMEOUT
    )
    async def delete_one(self, post_id: str, *, owner_id: Optional[str] = None) -> bool:
        """
        Delete a post. A post that is already gone is not an error.

        Args:
            post_id: ID of the post to delete
            owner_id: Partition key; looked up when not given

        Returns:
            False if the post was already gone
        """
        start_time = time.time()
        partition_key = await self._resolve_owner(post_id, owner_id)
        if partition_key is None:
            logging.info(f"Post '{post_id}' not found during delete - already deleted")
            return False
        try:
            await self.container.delete_item(item=post_id, partition_key=partition_key)
            logging.debug(f"Successfully deleted post '{post_id}' in {time.time() - start_time:.2f}s")
        except exceptions.CosmosResourceNotFoundError:
            logging.info(f"Post '{post_id}' not found during delete - already deleted")
            return False
        except exceptions.CosmosHttpResponseError as e:
            raise _translate(e, "delete_one") from e
        return True

    @backoff.on_exception(
        backoff.expo,
        RetryableCosmosError,
        max_tries=MAX_RETRIES,
        max_time=OPERATION_TIMEOUT
    )
    async def delete_many(self, post_ids: Iterable[str], *, owner_id: Optional[str] = None) -> int:
        """
        Delete multiple posts in batches. Ids that no longer exist are skipped,
        so a retried call finishes the remaining work.

        Returns:
            Number of posts actually deleted
        """
        ids = list(post_ids)
        if not ids:
            return 0

        start_time = time.time()
        deleted = 0
        for i in range(0, len(ids), self.BATCH_SIZE):
            batch = ids[i:i + self.BATCH_SIZE]
            batch_start = time.time()
            for post_id in batch:
                partition_key = await self._resolve_owner(post_id, owner_id)
                if partition_key is None:
                    continue
                try:
                    await self.container.delete_item(item=post_id, partition_key=partition_key)
                    deleted += 1
                except exceptions.CosmosResourceNotFoundError:
                    # Post already deleted, continue with next
                    logging.info(f"Post '{post_id}' not found during bulk delete - skipping")
                except exceptions.CosmosHttpResponseError as e:
                    raise _translate(e, "delete_many") from e
            logging.debug(
                f"Successfully deleted batch of {len(batch)} posts in {time.time() - batch_start:.2f}s"
            )

        logging.info(
            f"Bulk delete completed: {len(ids)} posts processed in {time.time() - start_time:.2f}s"
        )
        return deleted
