from typing import Optional, Protocol
from urllib.parse import unquote, urlparse

from azure.core.exceptions import ResourceNotFoundError
from azure.storage.blob.aio import BlobServiceClient

from src.shared.config import Settings
from src.shared.logging_utils import debug as log_debug, info as log_info, warning as log_warning
from src.specs.common.errors import ConfigurationError


class MediaDeleter(Protocol):
    async def delete(self, media_ref: str) -> None: ...


def blob_name_from_ref(media_ref: str, container: str) -> str:
    """Derive the blob name from a stored media reference.

    Upload stores the blob URL (``https://<account>/<container>/<owner>/<file>``);
    the blob name is the path after the container segment. A reference that
    is not a URL is taken to be the blob name already.
    """
    parsed = urlparse(media_ref)
    if not parsed.scheme or not parsed.netloc:
        return media_ref.lstrip("/")
    segments = [unquote(s) for s in parsed.path.split("/") if s]
    # Azurite-style URLs put the account name before the container
    if container in segments:
        segments = segments[segments.index(container) + 1:]
    else:
        segments = segments[1:]
    if not segments:
        raise ValueError(f"Media reference has no blob path: {media_ref}")
    return "/".join(segments)


class BlobMediaDeleter:
    """Deletes post images from the public blob container."""

    def __init__(self, service: BlobServiceClient, container: str) -> None:
        self._service = service
        self._container = container

    @classmethod
    def from_settings(cls, settings: Settings) -> "BlobMediaDeleter":
        if not settings.blob_connection_string:
            raise ConfigurationError("PUBLIC_BLOB_CONNECTION_STRING is required for media deletion")
        service = BlobServiceClient.from_connection_string(settings.blob_connection_string)
        return cls(service, settings.media_container)

    async def delete(self, media_ref: str) -> None:
        blob_name = blob_name_from_ref(media_ref, self._container)
        blob = self._service.get_blob_client(container=self._container, blob=blob_name)
        try:
            await blob.delete_blob(delete_snapshots="include")
            log_info(None, "media:deleted", container=self._container, blob=blob_name)
        except ResourceNotFoundError:
            log_debug(None, "media:already_gone", container=self._container, blob=blob_name)


class NullMediaDeleter:
    """Used when blob storage is not configured; media is left in place."""

    async def delete(self, media_ref: str) -> None:
        log_debug(None, "media:skip_unconfigured", mediaRef=media_ref)


def select_media_deleter(settings: Settings) -> MediaDeleter:
    if settings.blob_connection_string:
        return BlobMediaDeleter.from_settings(settings)
    return NullMediaDeleter()


async def delete_media_best_effort(deleter: MediaDeleter, media_ref: Optional[str], trace_id: Optional[str] = None) -> bool:
    """Delete media and report success; failures are logged, never raised."""
    if not media_ref:
        return True
    try:
        await deleter.delete(media_ref)
        return True
    except Exception as exc:
        log_warning(trace_id, "media:delete_failed", mediaRef=media_ref, error=str(exc))
        return False
