"""Bounded download of remote input images."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional

import httpx

from .config import ImageFetchConfig
from .utils import is_transient_error

logger = logging.getLogger(__name__)

DEFAULT_IMAGE_CONTENT_TYPE = "image/png"


class ImageFetchError(Exception):
    """Remote image could not be retrieved."""
    pass


@dataclass
class FetchedImage:
    data: bytes
    content_type: str


async def _download_once(url: str, config: ImageFetchConfig) -> FetchedImage:
    async with httpx.AsyncClient(timeout=config.timeout, follow_redirects=True) as client:
        async with client.stream("GET", url) as response:
            if response.status_code >= 400:
                raise ImageFetchError(
                    f"Failed to fetch image from URL: {response.status_code} {response.reason_phrase}"
                )

            declared = response.headers.get("content-length")
            if declared and declared.isdigit() and int(declared) > config.max_bytes:
                raise ImageFetchError("Image size exceeds provider limit")

            content_type = response.headers.get("content-type") or DEFAULT_IMAGE_CONTENT_TYPE
            buffer = bytearray()
            async for chunk in response.aiter_bytes():
                buffer.extend(chunk)
                if len(buffer) > config.max_bytes:
                    raise ImageFetchError("Image size exceeds provider limit")

    if not buffer:
        raise ImageFetchError("Fetched image is empty")
    return FetchedImage(data=bytes(buffer), content_type=content_type)


async def fetch_image(url: str, config: Optional[ImageFetchConfig] = None) -> FetchedImage:
    """
    Download an image, retrying connection-level failures.

    Args:
        url: http(s) image URL
        config: size, timeout and retry limits

    Returns:
        FetchedImage with the bytes and the response content type

    Raises:
        ImageFetchError: Download failed, was empty or exceeded the size limit
    """
    cfg = config or ImageFetchConfig()

    for attempt in range(1, cfg.attempts + 1):
        try:
            return await _download_once(url, cfg)
        except ImageFetchError:
            raise
        except httpx.HTTPError as e:
            if attempt < cfg.attempts and is_transient_error(e):
                delay = cfg.retry_delay * attempt
                logger.warning(
                    f"Image fetch failed, retrying in {delay}s "
                    f"(attempt {attempt}/{cfg.attempts}): {e}"
                )
                await asyncio.sleep(delay)
                continue
            raise ImageFetchError(f"Failed to fetch image: {e}") from e

    # Only reachable with attempts < 1.
    raise ImageFetchError("Image fetch was not attempted")
