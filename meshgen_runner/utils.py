import base64
import binascii
import re
from typing import Optional, Tuple
from urllib.parse import urlparse

import httpx

_DATA_URI_RE = re.compile(r"^data:(.*?);base64,(.*)$", re.DOTALL)
_UNSAFE_FILENAME_CHARS = re.compile(r"[^a-zA-Z0-9._-]")
_URL_SUFFIX_RE = re.compile(r"\.(\w+)$")

_IMAGE_EXTENSIONS = {
    "image/png": ".png",
    "image/jpeg": ".jpg",
    "image/jpg": ".jpg",
    "image/webp": ".webp",
    "image/gif": ".gif",
}

# Checked in order; the first substring found in the content type wins.
_ASSET_EXTENSIONS = (
    ("gltf-binary", ".glb"),
    ("gltf", ".gltf"),
    ("glb", ".glb"),
    ("zip", ".zip"),
    ("fbx", ".fbx"),
    ("obj", ".obj"),
    ("png", ".png"),
    ("jpeg", ".jpg"),
    ("jpg", ".jpg"),
    ("webp", ".webp"),
    ("gif", ".gif"),
)

# Connection-level failures worth another attempt. Read timeouts and HTTP
# status errors are not included.
TRANSIENT_TRANSPORT_ERRORS = (
    httpx.ConnectError,
    httpx.ConnectTimeout,
    httpx.ReadError,
    httpx.WriteError,
    httpx.RemoteProtocolError,
    ConnectionError,
)


def is_transient_error(exc: BaseException) -> bool:
    if isinstance(exc, TRANSIENT_TRANSPORT_ERRORS):
        return True
    cause = exc.__cause__ or exc.__context__
    return isinstance(cause, TRANSIENT_TRANSPORT_ERRORS)


def is_data_uri(value: str) -> bool:
    return value.startswith("data:")


def is_http_url(value: str) -> bool:
    try:
        parsed = urlparse(value)
    except ValueError:
        return False
    return parsed.scheme in ("http", "https") and bool(parsed.netloc)


def parse_data_uri(value: str) -> Tuple[str, bytes]:
    """Split a base64 data URI into (content_type, payload bytes)."""
    match = _DATA_URI_RE.match(value)
    if not match:
        raise ValueError("invalid data URI format")
    try:
        payload = base64.b64decode(match.group(2), validate=False)
    except binascii.Error as exc:
        raise ValueError("invalid base64 payload in data URI") from exc
    return match.group(1), payload


def image_extension_for(content_type: Optional[str]) -> str:
    if not content_type:
        return ""
    return _IMAGE_EXTENSIONS.get(content_type.split(";")[0].strip().lower(), "")


def asset_extension_for(content_type: Optional[str]) -> str:
    if not content_type:
        return ""
    lowered = content_type.lower()
    for needle, extension in _ASSET_EXTENSIONS:
        if needle in lowered:
            return extension
    return ""


def extension_from_url(url: str) -> str:
    try:
        path = urlparse(url).path
    except ValueError:
        return ""
    match = _URL_SUFFIX_RE.search(path)
    return f".{match.group(1)}" if match else ""


def sanitize_filename(filename: Optional[str], content_type: Optional[str] = None) -> str:
    fallback = "upload"
    extension = image_extension_for(content_type) or ".png"
    name = _UNSAFE_FILENAME_CHARS.sub("_", (filename or fallback).strip()) or fallback
    if "." in name:
        return name
    return f"{name}{extension}"
