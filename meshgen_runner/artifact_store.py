"""Object-store gateway for job inputs and generated assets."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Optional, Tuple, Union
from urllib.parse import unquote, urlparse

import boto3
import httpx
from botocore.exceptions import BotoCoreError, ClientError

from .config import StorageConfig
from .utils import asset_extension_for, extension_from_url, is_data_uri, is_http_url, parse_data_uri

logger = logging.getLogger(__name__)

STORAGE_SCHEME = "s3://"
_S3_HOST_SUFFIX = ".amazonaws.com"


class StorageError(Exception):
    """Base exception for artifact storage errors."""
    pass


class StorageNotConfiguredError(StorageError):
    """No bucket configured."""
    pass


class StorageUnavailableError(StorageError):
    """The object store rejected or failed the call."""
    pass


class AssetFetchError(StorageError):
    """The source URL of an asset could not be read."""
    pass


class AssetLinkExpiredError(AssetFetchError):
    """The asset host refused the link; provider links expire after a while."""
    pass


class UnparseablePathError(StorageError):
    """A storage path in none of the known address forms."""
    pass


@dataclass
class StoredObject:
    data: bytes
    content_type: str
    length: int
    key: str


def _is_s3_host(host: str) -> bool:
    """s3.amazonaws.com, s3.<region>.amazonaws.com or s3-<region>.amazonaws.com."""
    if not host.endswith(_S3_HOST_SUFFIX):
        return False
    label = host[: -len(_S3_HOST_SUFFIX)]
    return label == "s3" or label.startswith("s3.") or label.startswith("s3-")


def parse_storage_path(path: str) -> Tuple[str, str]:
    """
    Normalize a stored asset address to (bucket, key).

    Accepted forms:
        s3://bucket/key
        https://s3[.region].amazonaws.com/bucket/key   (path-style)
        https://bucket.s3[.region].amazonaws.com/key   (virtual-hosted)

    Raises:
        UnparseablePathError: Any other shape
    """
    if not path:
        raise UnparseablePathError("Storage path is empty")

    if path.startswith(STORAGE_SCHEME):
        bucket, _, key = path[len(STORAGE_SCHEME):].partition("/")
        if not bucket or not key:
            raise UnparseablePathError(f"Invalid {STORAGE_SCHEME} storage path: {path}")
        return bucket, key

    try:
        parsed = urlparse(path)
    except ValueError as e:
        raise UnparseablePathError(f"Invalid storage path: {path}") from e

    if parsed.scheme not in ("http", "https") or not parsed.hostname:
        raise UnparseablePathError(f"Unsupported storage path: {path}")

    host = parsed.hostname.lower()
    object_path = unquote(parsed.path.lstrip("/"))

    if _is_s3_host(host):
        bucket, _, key = object_path.partition("/")
        if not bucket or not key:
            raise UnparseablePathError(f"Storage URL is missing bucket or key: {path}")
        return bucket, key

    marker = host.rfind(".s3")
    if marker > 0 and _is_s3_host(host[marker + 1:]):
        bucket = host[:marker]
        if not object_path:
            raise UnparseablePathError(f"Storage URL is missing object key: {path}")
        return bucket, object_path

    raise UnparseablePathError(f"Unsupported storage URL format: {path}")


def is_storage_path(path: str) -> bool:
    try:
        parse_storage_path(path)
    except UnparseablePathError:
        return False
    return True


def build_destination(owner_id: str, job_id: str, logical_name: str, extension: str = "") -> str:
    suffix = "" if "." in logical_name else extension
    return f"owner/{owner_id}/jobs/{job_id}/{logical_name}{suffix}"


class ArtifactStore:
    """Upload and download opaque blobs in an S3-compatible bucket."""

    def __init__(self, config: Optional[StorageConfig] = None, s3_client: Any = None):
        """
        Initialize the artifact store.

        Args:
            config: Bucket, region and endpoint settings
            s3_client: Pre-built boto3 S3 client (tests, custom sessions)
        """
        self.config = config or StorageConfig()
        self.s3_client = s3_client

        if self.s3_client is None and self.config.is_configured():
            self.s3_client = boto3.client(
                "s3",
                region_name=self.config.region,
                endpoint_url=self.config.endpoint_url,
            )
            logger.info(f"Initialized S3 artifact store for bucket {self.config.bucket_name}")
        elif not self.config.is_configured():
            logger.warning("Artifact storage is not configured; provider URLs will be kept as-is")

    def is_configured(self) -> bool:
        return self.config.is_configured() and self.s3_client is not None

    def _require_configured(self) -> None:
        if not self.is_configured():
            raise StorageNotConfiguredError("Storage is not configured")

    async def upload(
        self,
        source: Union[bytes, str],
        owner_id: str,
        job_id: str,
        logical_name: str,
        content_type: Optional[str] = None,
    ) -> str:
        """
        Store a blob under the job's namespace.

        Args:
            source: Raw bytes, a base64 data URI, or an http(s) URL (fetched once)
            owner_id: Job owner
            job_id: Job identifier
            logical_name: File name without extension, e.g. "model"
            content_type: Content type for raw bytes

        Returns:
            Canonical storage path ``s3://bucket/key``

        Raises:
            StorageNotConfiguredError: No bucket configured
            AssetFetchError: Remote source could not be downloaded
            StorageUnavailableError: Object store write failed
        """
        self._require_configured()

        if isinstance(source, (bytes, bytearray)):
            data = bytes(source)
            extension = asset_extension_for(content_type)
        elif is_data_uri(source):
            try:
                content_type, data = parse_data_uri(source)
            except ValueError as e:
                raise StorageError(str(e)) from e
            extension = asset_extension_for(content_type)
        elif is_http_url(source):
            data, content_type = await self._fetch_remote(source)
            extension = asset_extension_for(content_type) or extension_from_url(source)
        else:
            raise StorageError("Unsupported asset source")

        key = build_destination(owner_id, job_id, logical_name, extension)
        await self._put_object(key, data, content_type)
        return f"{STORAGE_SCHEME}{self.config.bucket_name}/{key}"

    async def _fetch_remote(self, url: str) -> Tuple[bytes, Optional[str]]:
        try:
            async with httpx.AsyncClient(timeout=self.config.fetch_timeout, follow_redirects=True) as client:
                response = await client.get(url)
        except httpx.HTTPError as e:
            raise AssetFetchError(f"Failed to fetch remote asset: {e}") from e

        if response.status_code == 403:
            raise AssetLinkExpiredError(f"Remote asset link was refused or has expired: {url}")
        if not response.is_success:
            raise AssetFetchError(
                f"Failed to fetch remote asset: {response.status_code} {response.reason_phrase}"
            )
        return response.content, response.headers.get("content-type")

    async def fetch_external(self, url: str) -> StoredObject:
        """
        Read an asset still hosted by the provider.

        Jobs completed while storage was unavailable keep the provider URL as
        their asset path. Works without a configured bucket.

        Raises:
            UnparseablePathError: Not an http(s) URL, or a storage address
            AssetLinkExpiredError: The host answered 403
            AssetFetchError: Any other fetch failure
        """
        if not is_http_url(url) or is_storage_path(url):
            raise UnparseablePathError(f"Not an external asset URL: {url}")

        data, content_type = await self._fetch_remote(url)
        name = unquote(urlparse(url).path).rsplit("/", 1)[-1]
        return StoredObject(
            data=data,
            content_type=content_type or "application/octet-stream",
            length=len(data),
            key=name or "model",
        )

    async def _put_object(self, key: str, data: bytes, content_type: Optional[str]) -> None:
        kwargs = {
            "Bucket": self.config.bucket_name,
            "Key": key,
            "Body": data,
            "CacheControl": self.config.cache_control,
        }
        if content_type:
            kwargs["ContentType"] = content_type

        try:
            await asyncio.to_thread(self.s3_client.put_object, **kwargs)
        except (BotoCoreError, ClientError) as e:
            logger.error(f"S3 upload failed for {key}: {e}")
            raise StorageUnavailableError(f"Failed to store {key}: {e}") from e
        logger.info(f"Stored {len(data)} bytes at s3://{self.config.bucket_name}/{key}")

    async def download(self, storage_path: str) -> StoredObject:
        """
        Fetch a stored blob by any address form the system has produced.

        Raises:
            StorageNotConfiguredError: No bucket configured
            UnparseablePathError: Address in none of the known forms
            StorageUnavailableError: Object store read failed
        """
        self._require_configured()
        bucket, key = parse_storage_path(storage_path)

        try:
            response = await asyncio.to_thread(self.s3_client.get_object, Bucket=bucket, Key=key)
            body = response["Body"]
            data = await asyncio.to_thread(body.read)
        except (BotoCoreError, ClientError) as e:
            logger.error(f"S3 download failed for s3://{bucket}/{key}: {e}")
            raise StorageUnavailableError(f"Failed to read {key}: {e}") from e

        length = response.get("ContentLength")
        return StoredObject(
            data=data,
            content_type=response.get("ContentType") or "application/octet-stream",
            length=int(length) if length is not None else len(data),
            key=key,
        )
