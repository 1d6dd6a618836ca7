from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional

__all__ = [
    "ProviderConfig",
    "StorageConfig",
    "ImageFetchConfig",
    "PollingConfig",
    "OrchestratorConfig",
]


@dataclass
class ProviderConfig:
    api_url: Optional[str] = None
    api_key: Optional[str] = None
    task_attempts: int = 3
    # Linear backoff step: attempt N waits N * retry_delay seconds.
    retry_delay: float = 1.0
    upload_timeout: float = 15.0
    # None keeps the transport default for task creation and status polls.
    request_timeout: Optional[float] = None
    # Image URLs under this prefix may be passed to the provider as-is.
    trusted_image_origin: Optional[str] = None

    def is_configured(self) -> bool:
        return bool(self.api_url and self.api_key)

    def base_url(self) -> str:
        return (self.api_url or "").rstrip("/")


@dataclass
class StorageConfig:
    bucket_name: Optional[str] = None
    region: str = "us-east-1"
    endpoint_url: Optional[str] = None
    fetch_timeout: float = 60.0
    cache_control: str = "private, max-age=0, no-cache"

    def is_configured(self) -> bool:
        return bool(self.bucket_name)


@dataclass
class ImageFetchConfig:
    max_bytes: int = 20 * 1024 * 1024
    timeout: float = 15.0
    attempts: int = 3
    retry_delay: float = 1.0


@dataclass
class PollingConfig:
    interval: float = 5.0
    error_delay: float = 60.0
    tick_interval: float = 1.0
    max_concurrent_polls: int = 16
    # Seconds a job may stay PROCESSING before it is failed; None polls forever.
    max_processing_age: Optional[float] = None


@dataclass
class OrchestratorConfig:
    polling: PollingConfig = field(default_factory=PollingConfig)
    image_fetch: ImageFetchConfig = field(default_factory=ImageFetchConfig)
    default_image_filename: str = "image"
