"""
Account-deletion consumer: removes every post of a deleted account.

received -> validated -> purged -> acknowledged, or
received -> validated -> failed (exception raised, broker redelivers).

Malformed events are logged and dropped. Media cleanup is advisory: a failed
image delete is logged and skipped. Store failures propagate so the delivery
mechanism can retry; a retry re-reads whatever posts remain, which makes
redelivery safe.
"""
from typing import Any, Mapping, Optional, Union

from pydantic import ValidationError as PydanticValidationError

from src.posts.service import PostService
from src.shared.blob_store import MediaDeleter, delete_media_best_effort
from src.shared.logging_utils import error as log_error, info as log_info
from src.specs.queue.account_deleted import AccountDeletedEvent, PurgeReport, PurgeStatus

Payload = Union[AccountDeletedEvent, Mapping[str, Any], str, bytes]


class AccountDeletedConsumer:
    def __init__(self, posts: PostService, media: MediaDeleter) -> None:
        self._posts = posts
        self._media = media

    @staticmethod
    def parse(payload: Payload) -> AccountDeletedEvent:
        if isinstance(payload, AccountDeletedEvent):
            return payload
        if isinstance(payload, (bytes, str)):
            return AccountDeletedEvent.model_validate_json(payload)
        return AccountDeletedEvent.model_validate(payload)

    async def consume(self, payload: Payload, trace_id: Optional[str] = None) -> PurgeReport:
        try:
            event = self.parse(payload)
        except PydanticValidationError as exc:
            log_error(trace_id, "purge:malformed_event", error=str(exc))
            return PurgeReport(status=PurgeStatus.DROPPED)

        owner_id = event.ownerId
        log_info(trace_id, "purge:start", ownerId=owner_id, reason=event.reason, occurredAt=event.occurredAt.isoformat())

        try:
            posts = await self._posts.load_owner_posts_fresh(owner_id)
        except Exception as exc:
            log_error(trace_id, "purge:load_failed", ownerId=owner_id, error=str(exc))
            raise

        if not posts:
            log_info(trace_id, "purge:nothing_to_delete", ownerId=owner_id)
            return PurgeReport(ownerId=owner_id, status=PurgeStatus.NOOP)

        media_failures = 0
        for post in posts:
            if post.mediaRef and not await delete_media_best_effort(self._media, post.mediaRef, trace_id):
                media_failures += 1

        try:
            deleted = await self._posts.purge_posts(owner_id, posts)
        except Exception as exc:
            log_error(trace_id, "purge:delete_failed", ownerId=owner_id, posts=len(posts), error=str(exc))
            raise

        log_info(
            trace_id,
            "purge:completed",
            ownerId=owner_id,
            deleted=deleted,
            mediaFailures=media_failures,
        )
        return PurgeReport(
            ownerId=owner_id,
            status=PurgeStatus.PURGED,
            deletedCount=deleted,
            mediaFailures=media_failures,
        )
