"""HTTP client for the external 3D generation provider."""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Dict, Optional

import httpx

from .config import ProviderConfig
from .models import (
    GenerationOptions,
    ImageFile,
    InputKind,
    ProviderBalance,
    ProviderStatus,
    TaskBanned,
    TaskFailed,
    TaskRunning,
    TaskSucceeded,
    TaskUnknown,
)
from .utils import is_transient_error, sanitize_filename

logger = logging.getLogger(__name__)

TOKEN_PREFIX = "token:"

SUCCESS_STATUSES = {"success"}
FAILED_STATUSES = {"failed", "failure"}
BANNED_STATUSES = {"banned", "ban"}
RUNNING_STATUSES = {"running", "pending", "queued"}


class ProviderError(Exception):
    """Base exception for provider errors."""
    pass


class ProviderNotConfiguredError(ProviderError):
    """API URL or key missing."""
    pass


class ProviderTransientError(ProviderError):
    """Provider unreachable; the same call may succeed later."""
    pass


class ProviderPermanentError(ProviderError):
    """Provider rejected the call or answered with an unusable body."""
    pass


class ProviderUploadError(ProviderPermanentError):
    """Image upload was rejected or its response could not be read."""
    pass


def _decode_envelope(response: httpx.Response) -> Optional[Dict[str, Any]]:
    """Parse the {code, data} envelope; None when the body is not one."""
    text = response.text
    if not text:
        return None
    try:
        data = json.loads(text)
    except ValueError:
        return None
    if not isinstance(data, dict) or "code" not in data:
        return None
    return data


def _first_url(*candidates: Any) -> Optional[str]:
    for candidate in candidates:
        if isinstance(candidate, dict):
            candidate = candidate.get("url")
        if isinstance(candidate, str) and candidate:
            return candidate
    return None


def parse_task_status(data: Dict[str, Any]) -> ProviderStatus:
    """Map the task body of a successful envelope onto a ProviderStatus."""
    status = data.get("status")
    if not isinstance(status, str):
        return TaskUnknown(raw=data)

    normalized = status.lower()
    if normalized in SUCCESS_STATUSES:
        result = data.get("result")
        if not isinstance(result, dict):
            return TaskSucceeded(model_url=None)
        model_url = _first_url(result.get("pbr_model"), result.get("model"), result.get("model_url"))
        preview_url = _first_url(
            result.get("rendered_image"),
            result.get("preview_image"),
            result.get("preview_url"),
            result.get("generated_image"),
        )
        return TaskSucceeded(model_url=model_url, preview_url=preview_url)
    if normalized in BANNED_STATUSES:
        return TaskBanned(status=normalized)
    if normalized in FAILED_STATUSES:
        return TaskFailed(status=normalized)
    if normalized in RUNNING_STATUSES:
        return TaskRunning(status=normalized)
    return TaskUnknown(raw=data)


class GenerationProviderClient:
    """All outbound calls to the generation API. Knows nothing about jobs."""

    def __init__(self, config: Optional[ProviderConfig] = None):
        self.config = config or ProviderConfig()

    def is_configured(self) -> bool:
        return self.config.is_configured()

    def _require_configured(self) -> None:
        if not self.config.is_configured():
            raise ProviderNotConfiguredError("Provider API credentials are not configured")

    def _headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.config.api_key}"}

    def _url(self, path: str) -> str:
        return f"{self.config.base_url()}{path}"

    def build_task_payload(
        self,
        kind: InputKind,
        payload: str,
        options: Optional[GenerationOptions] = None,
        image_file: Optional[ImageFile] = None,
    ) -> Dict[str, Any]:
        if kind == InputKind.TEXT:
            body: Dict[str, Any] = {"type": "text_to_model", "prompt": payload}
        else:
            body = {"type": "image_to_model", "file": self._image_file_payload(payload, image_file)}

        if options is not None and options.texture is not None:
            body["texture"] = options.texture
        return body

    def _image_file_payload(self, payload: str, image_file: Optional[ImageFile]) -> Dict[str, Any]:
        image_file = image_file or ImageFile()
        file_body: Dict[str, Any] = {}

        if image_file.file_token:
            file_body["file_token"] = image_file.file_token
        elif payload.startswith(TOKEN_PREFIX) and len(payload) > len(TOKEN_PREFIX):
            file_body["file_token"] = payload[len(TOKEN_PREFIX):]
        elif image_file.url and self._is_trusted_url(image_file.url):
            file_body["url"] = image_file.url
        else:
            raise ProviderPermanentError(
                "Image generation requires an upload token or a trusted image URL"
            )

        if image_file.type:
            file_body["type"] = image_file.type
        return file_body

    def _is_trusted_url(self, url: str) -> bool:
        origin = self.config.trusted_image_origin
        return bool(origin) and url.startswith(origin)

    async def create_task(
        self,
        kind: InputKind,
        payload: str,
        options: Optional[GenerationOptions] = None,
        image_file: Optional[ImageFile] = None,
    ) -> str:
        """
        Create a generation task.

        Args:
            kind: TEXT or IMAGE
            payload: Prompt text, or ``token:<id>`` for image tasks
            options: Generation options (only ``texture`` is forwarded)
            image_file: Optional explicit image reference

        Returns:
            The provider task id

        Raises:
            ProviderNotConfiguredError: No API URL/key
            ProviderPermanentError: Rejected, malformed, or retries exhausted
        """
        self._require_configured()
        body = self.build_task_payload(kind, payload, options, image_file)
        response = await self._post_task_with_retry(body)

        envelope = _decode_envelope(response)
        if envelope is None:
            logger.error(f"Task creation returned unparseable body (status {response.status_code}): {response.text!r}")
            raise ProviderPermanentError(f"Provider returned an unparseable response ({response.status_code})")

        task_id = (envelope.get("data") or {}).get("task_id")
        if response.is_success and envelope.get("code") == 0 and task_id:
            logger.info(f"Provider task created: {task_id}")
            return str(task_id)

        logger.error(f"Task creation failed (status {response.status_code}): {envelope}")
        raise ProviderPermanentError(
            f"Provider task creation failed (status {response.status_code}, code {envelope.get('code')})"
        )

    async def _post_task_with_retry(self, body: Dict[str, Any]) -> httpx.Response:
        """POST /task with linear backoff on transient transport errors only."""
        attempts = max(1, self.config.task_attempts)

        for attempt in range(1, attempts + 1):
            try:
                async with httpx.AsyncClient(timeout=self.config.request_timeout) as client:
                    return await client.post(
                        self._url("/task"),
                        json=body,
                        headers={**self._headers(), "Content-Type": "application/json"},
                    )
            except Exception as e:
                if not is_transient_error(e):
                    logger.error(f"Task creation failed: {e}")
                    raise ProviderPermanentError(f"Provider task creation failed: {e}") from e
                if attempt < attempts:
                    wait_time = self.config.retry_delay * attempt
                    logger.warning(
                        f"Task creation request failed, retrying in {wait_time}s "
                        f"(attempt {attempt}/{attempts}): {e}"
                    )
                    await asyncio.sleep(wait_time)
                    continue
                logger.error(f"Task creation failed after {attempts} attempts: {e}")
                raise ProviderPermanentError(
                    f"Provider task creation failed after {attempts} attempts: {e}"
                ) from e

        raise ProviderPermanentError("Provider task creation was not attempted")

    async def upload_image(self, data: bytes, content_type: str, filename: Optional[str] = None) -> str:
        """
        Upload image bytes and return the opaque token standing in for them.

        Not retried: a blind retry could register the same image twice.

        Raises:
            ProviderNotConfiguredError: No API URL/key
            ProviderTransientError: Transport failure
            ProviderUploadError: Non-success response or unreadable body
        """
        self._require_configured()
        safe_filename = sanitize_filename(filename, content_type)

        try:
            async with httpx.AsyncClient(timeout=self.config.upload_timeout) as client:
                response = await client.post(
                    self._url("/upload/sts"),
                    files={"file": (safe_filename, data, content_type)},
                    headers=self._headers(),
                )
        except httpx.HTTPError as e:
            logger.error(f"Image upload transport error: {e}")
            raise ProviderTransientError(f"Image upload failed: {e}") from e

        envelope = _decode_envelope(response)
        if envelope is None:
            logger.error(f"Failed to parse upload response: {response.text!r}")
            raise ProviderUploadError("Failed to parse upload response from provider")

        token = (envelope.get("data") or {}).get("image_token")
        if not response.is_success or envelope.get("code") != 0 or not token:
            logger.error(f"Image upload failed: {envelope}")
            raise ProviderUploadError("Provider image upload failed")

        logger.info(f"Uploaded input image {safe_filename} ({len(data)} bytes)")
        return str(token)

    async def fetch_status(self, task_id: str) -> ProviderStatus:
        """
        Single GET of the task state. Retrying is the caller's concern.

        Raises:
            ProviderTransientError: Transport failure or a body that is not an envelope
            ProviderPermanentError: Envelope with a non-zero code
        """
        self._require_configured()

        try:
            async with httpx.AsyncClient(timeout=self.config.request_timeout) as client:
                response = await client.get(self._url(f"/task/{task_id}"), headers=self._headers())
        except httpx.HTTPError as e:
            raise ProviderTransientError(f"Status request for task {task_id} failed: {e}") from e

        envelope = _decode_envelope(response)
        if envelope is None:
            # HTML error pages from proxies land here; retried like a transport error.
            logger.warning(
                f"Unparseable status body for task {task_id} ({response.status_code}): {response.text[:200]!r}"
            )
            raise ProviderTransientError(
                f"Provider returned an unparseable status for task {task_id} ({response.status_code})"
            )

        if envelope.get("code") != 0:
            logger.error(f"Status request for task {task_id} rejected: {envelope}")
            raise ProviderPermanentError(
                f"Provider rejected status request for task {task_id} (code {envelope.get('code')})"
            )

        if not response.is_success:
            raise ProviderTransientError(
                f"Provider answered {response.status_code} while polling task {task_id}"
            )

        data = envelope.get("data")
        if not isinstance(data, dict):
            return TaskUnknown(raw=envelope)
        return parse_task_status(data)

    async def get_balance(self) -> ProviderBalance:
        """Remaining provider credits (admin reporting)."""
        self._require_configured()

        try:
            async with httpx.AsyncClient(timeout=self.config.request_timeout) as client:
                response = await client.get(self._url("/user/balance"), headers=self._headers())
        except httpx.HTTPError as e:
            raise ProviderTransientError(f"Balance request failed: {e}") from e

        envelope = _decode_envelope(response)
        data = (envelope or {}).get("data")
        if not response.is_success or envelope is None or envelope.get("code") != 0 or not isinstance(data, dict):
            logger.error(f"Balance request failed (status {response.status_code}): {response.text!r}")
            raise ProviderPermanentError("Failed to fetch provider balance")

        try:
            return ProviderBalance(
                balance=float(data.get("balance", 0)),
                frozen=float(data.get("frozen", 0)),
            )
        except (TypeError, ValueError) as e:
            raise ProviderPermanentError(f"Malformed balance response: {data}") from e
