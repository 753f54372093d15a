"""
Application settings, read from environment variables (Function App settings).
"""
import os
from typing import Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from src.specs.common.errors import ConfigurationError


class Settings(BaseModel):
    model_config = ConfigDict(frozen=True)

    cosmos_connection_string: Optional[str] = None
    cosmos_database_name: Optional[str] = None
    cosmos_posts_container: str = "posts"
    post_store_backend: str = Field(default="auto", pattern=r"^(auto|memory|cosmos)$")

    redis_url: Optional[str] = None

    blob_connection_string: Optional[str] = None
    media_container: str = "post-images"

    account_deleted_queue: str = "account-deleted"

    # Number of leading feed pages dropped from cache on every write
    feed_invalidation_pages: int = Field(default=5, ge=1)
    feed_page_size: int = Field(default=50, gt=0)
    local_cache_max_entries: int = Field(default=10_000, gt=0)

    @property
    def cosmos_configured(self) -> bool:
        return bool(self.cosmos_connection_string and self.cosmos_database_name)

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        env = os.environ if environ is None else environ
        raw = {
            "cosmos_connection_string": env.get("COSMOS_DB_CONNECTION_STRING"),
            "cosmos_database_name": env.get("COSMOS_DB_NAME"),
            "cosmos_posts_container": env.get("COSMOS_DB_CONTAINER_POSTS"),
            "post_store_backend": (env.get("POST_STORE_BACKEND") or "").lower() or None,
            "redis_url": env.get("REDIS_URL"),
            "blob_connection_string": env.get("PUBLIC_BLOB_CONNECTION_STRING"),
            "media_container": env.get("POST_MEDIA_CONTAINER"),
            "account_deleted_queue": env.get("ACCOUNT_DELETED_QUEUE"),
            "feed_invalidation_pages": env.get("FEED_INVALIDATION_PAGES"),
            "feed_page_size": env.get("FEED_PAGE_SIZE"),
            "local_cache_max_entries": env.get("LOCAL_CACHE_MAX_ENTRIES"),
        }
        # Unset variables fall back to the field defaults
        values = {k: v for k, v in raw.items() if v not in (None, "")}
        try:
            return cls(**values)
        except PydanticValidationError as exc:
            raise ConfigurationError(
                "Invalid post service configuration",
                details={"errors": exc.errors(include_url=False)},
            ) from exc
