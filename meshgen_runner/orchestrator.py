"""
Generation orchestrator.

Drives a job from submission to a terminal state:

    PENDING --task created--> PROCESSING --success--> COMPLETED
                                         --failed---> FAILED
                                         --banned---> BANNED
    PENDING --submission failure--> (row deleted)

Polling is not a blocking wait: each poll writes the next due time onto the
job and returns, and the scheduler claims due jobs later.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, Optional, Tuple, Union

from .artifact_store import (
    ArtifactStore,
    AssetFetchError,
    StorageError,
    StorageNotConfiguredError,
    StorageUnavailableError,
)
from .config import OrchestratorConfig
from .image_fetch import ImageFetchError, fetch_image
from .job_store import JobStore
from .models import (
    GenerationOptions,
    ImageFile,
    InputKind,
    Job,
    JobStatus,
    ProviderStatus,
    TaskBanned,
    TaskFailed,
    TaskRunning,
    TaskSucceeded,
    TaskUnknown,
    utcnow,
)
from .prompt import enhance_prompt
from .provider_client import (
    TOKEN_PREFIX,
    GenerationProviderClient,
    ProviderError,
    ProviderNotConfiguredError,
    ProviderPermanentError,
    ProviderTransientError,
)
from .utils import image_extension_for, is_data_uri, is_http_url, parse_data_uri

logger = logging.getLogger(__name__)

UPLOAD_PREFIX = "upload:"
IMAGE_MODE_UPLOAD = "UPLOAD"

STAGE_IMAGE_FETCH = "image_fetch"
STAGE_STORAGE = "storage"
STAGE_IMAGE_UPLOAD = "image_upload"
STAGE_PROVIDER = "provider"


class InvalidRequestError(Exception):
    """Submission rejected before any job was created."""
    pass


class SubmissionError(Exception):
    """Submission failed after the job row was created; the row has been removed."""

    def __init__(self, message: str, stage: str, user_message: str):
        super().__init__(message)
        self.stage = stage
        self.user_message = user_message


class JobNotFoundError(Exception):
    pass


class JobAccessDeniedError(Exception):
    pass


class PollOutcome(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    BANNED = "banned"
    RESCHEDULED = "rescheduled"
    # Job gone, already terminal, or not in a pollable state.
    STOPPED = "stopped"


@dataclass
class PollResult:
    outcome: PollOutcome
    delay: Optional[float] = None
    job: Optional[Job] = None


@dataclass
class _StagedImage:
    data: bytes
    content_type: str


_TERMINAL_OUTCOMES = {
    JobStatus.COMPLETED: PollOutcome.COMPLETED,
    JobStatus.FAILED: PollOutcome.FAILED,
    JobStatus.BANNED: PollOutcome.BANNED,
}


class GenerationOrchestrator:
    """Owns job state transitions and all retry/backoff policy around the provider."""

    def __init__(
        self,
        job_store: JobStore,
        provider: GenerationProviderClient,
        artifact_store: ArtifactStore,
        config: Optional[OrchestratorConfig] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.job_store = job_store
        self.provider = provider
        self.artifact_store = artifact_store
        self.config = config or OrchestratorConfig()
        self._clock = clock

    # Submission

    async def submit(
        self,
        owner_id: str,
        title: str,
        input_kind: Union[InputKind, str],
        input_payload: str,
        description: Optional[str] = None,
        options: Optional[GenerationOptions] = None,
        image_mode: Optional[str] = None,
        image_filename: Optional[str] = None,
        image_bytes: Optional[bytes] = None,
        image_content_type: Optional[str] = None,
    ) -> Job:
        """
        Create a job and hand it to the provider.

        Image input is either a data URI, an ``upload:<filename>`` marker
        accompanied by ``image_bytes``, or an http(s) URL which is downloaded
        here; the provider only ever receives an upload token.

        Returns:
            The job at PROCESSING with its provider task id set

        Raises:
            InvalidRequestError: Bad input; nothing was persisted
            SubmissionError: A later stage failed; the job row was deleted
        """
        kind = self._validate(owner_id, title, input_kind, input_payload)
        filename = image_filename or self.config.default_image_filename

        staged: Optional[_StagedImage] = None
        image_url: Optional[str] = None
        if kind == InputKind.TEXT:
            stored_input = enhance_prompt(input_payload, options)
        else:
            staged = self._staged_upload(input_payload, image_mode, image_bytes, image_content_type)
            if staged is not None:
                stored_input = f"{UPLOAD_PREFIX}{filename}"
            else:
                image_url = input_payload
                stored_input = input_payload

        now = self._clock()
        job = await self.job_store.create(
            Job(
                owner_id=owner_id,
                title=title.strip(),
                description=description or None,
                input_kind=kind,
                input_payload=stored_input,
                created_at=now,
                updated_at=now,
            )
        )

        try:
            return await self._start(job, kind, stored_input, options, staged, image_url, filename)
        except SubmissionError as e:
            logger.error(f"Submission failed - job_id: {job.id}, stage: {e.stage}: {e}")
            await self._discard(job)
            raise
        except Exception as e:
            logger.exception(f"Unexpected submission error - job_id: {job.id}")
            await self._discard(job)
            raise SubmissionError(str(e), STAGE_PROVIDER, "Failed to start 3D model generation") from e

    def _validate(
        self,
        owner_id: str,
        title: str,
        input_kind: Union[InputKind, str],
        input_payload: str,
    ) -> InputKind:
        if not owner_id:
            raise InvalidRequestError("owner is required")
        if not title or not title.strip():
            raise InvalidRequestError("title is required")
        if not input_payload:
            raise InvalidRequestError("input data is required")
        try:
            kind = InputKind(str(getattr(input_kind, "value", input_kind)).upper())
        except ValueError as e:
            raise InvalidRequestError("invalid input type") from e
        return kind

    def _staged_upload(
        self,
        payload: str,
        image_mode: Optional[str],
        image_bytes: Optional[bytes],
        image_content_type: Optional[str],
    ) -> Optional[_StagedImage]:
        """Decode uploaded image input; None means the payload is a URL to fetch."""
        is_upload = (
            (image_mode or "").upper() == IMAGE_MODE_UPLOAD
            or is_data_uri(payload)
            or payload.startswith(UPLOAD_PREFIX)
        )
        if not is_upload:
            if not is_http_url(payload):
                raise InvalidRequestError("a valid http(s) image URL is required")
            return None

        if payload.startswith(UPLOAD_PREFIX):
            if not image_bytes:
                raise InvalidRequestError("uploaded image data is missing")
            return _StagedImage(data=image_bytes, content_type=image_content_type or "image/png")

        if not is_data_uri(payload):
            raise InvalidRequestError("image data is malformed")
        try:
            content_type, data = parse_data_uri(payload)
        except ValueError as e:
            raise InvalidRequestError("image data is malformed") from e
        if not data:
            raise InvalidRequestError("image data is empty")
        return _StagedImage(data=data, content_type=content_type or "image/png")

    async def _start(
        self,
        job: Job,
        kind: InputKind,
        generation_input: str,
        options: Optional[GenerationOptions],
        staged: Optional[_StagedImage],
        image_url: Optional[str],
        filename: str,
    ) -> Job:
        image_file: Optional[ImageFile] = None
        if kind == InputKind.IMAGE:
            if staged is None:
                staged = await self._fetch_remote_image(image_url or "")
            else:
                await self._stage_input(job, staged)
            image_file = await self._upload_to_provider(staged, filename)
            generation_input = f"{TOKEN_PREFIX}{image_file.file_token}"

        try:
            task_id = await self.provider.create_task(kind, generation_input, options, image_file)
        except ProviderError as e:
            raise SubmissionError(str(e), STAGE_PROVIDER, "Failed to start 3D model generation") from e

        due = self._clock() + timedelta(seconds=self.config.polling.interval)
        updated = await self.job_store.set_provider_task_id(job.id, task_id, next_poll_at=due)
        if updated is None:
            raise SubmissionError(
                f"job {job.id} disappeared before task {task_id} was recorded",
                STAGE_PROVIDER,
                "Failed to start 3D model generation",
            )
        logger.info(f"Generation started - job_id: {job.id}, task_id: {task_id}")
        return updated

    async def _fetch_remote_image(self, url: str) -> _StagedImage:
        try:
            fetched = await fetch_image(url, self.config.image_fetch)
        except ImageFetchError as e:
            raise SubmissionError(str(e), STAGE_IMAGE_FETCH, "Failed to fetch the image URL") from e
        return _StagedImage(data=fetched.data, content_type=fetched.content_type)

    async def _stage_input(self, job: Job, staged: _StagedImage) -> None:
        if not self.artifact_store.is_configured():
            raise SubmissionError(
                "storage is not configured",
                STAGE_STORAGE,
                "Storage for processing images is not configured",
            )
        try:
            await self.artifact_store.upload(
                staged.data,
                job.owner_id,
                job.id,
                "input",
                content_type=staged.content_type,
            )
        except StorageError as e:
            raise SubmissionError(str(e), STAGE_STORAGE, "Failed to upload the image") from e

    async def _upload_to_provider(self, staged: _StagedImage, filename: str) -> ImageFile:
        try:
            token = await self.provider.upload_image(staged.data, staged.content_type, filename)
        except ProviderError as e:
            raise SubmissionError(str(e), STAGE_IMAGE_UPLOAD, "Failed to upload the image") from e
        return ImageFile(
            file_token=token,
            type=image_extension_for(staged.content_type).lstrip(".") or None,
        )

    async def _discard(self, job: Job) -> None:
        try:
            await self.job_store.delete(job.id)
        except Exception:
            logger.exception(f"Failed to remove job {job.id} after submission failure")
            raise

    # Polling

    async def poll_once(self, job_id: str) -> PollResult:
        """
        Fetch the provider state once and act on it.

        Never raises for a missing or terminal job; those stop the chain.
        """
        job = await self.job_store.find_by_id(job_id)
        if job is None:
            logger.warning(f"Poll for missing job {job_id}; stopping")
            return PollResult(PollOutcome.STOPPED)
        if job.is_terminal():
            return PollResult(PollOutcome.STOPPED, job=job)
        if job.status != JobStatus.PROCESSING or not job.provider_task_id:
            logger.warning(f"Job {job_id} is {job.status.value} without a pollable task; stopping")
            return PollResult(PollOutcome.STOPPED, job=job)

        max_age = self.config.polling.max_processing_age
        if max_age is not None and (self._clock() - job.created_at).total_seconds() > max_age:
            logger.warning(f"Job {job_id} exceeded {max_age}s in PROCESSING; failing it")
            return await self._finish(job, JobStatus.FAILED)

        task_id = job.provider_task_id
        try:
            status = await self.provider.fetch_status(task_id)
        except (ProviderTransientError, ProviderNotConfiguredError) as e:
            logger.warning(f"Polling task {task_id} failed, retrying in {self.config.polling.error_delay}s: {e}")
            return await self._reschedule(job, self.config.polling.error_delay)
        except ProviderPermanentError as e:
            logger.error(f"Polling task {task_id} failed permanently: {e}")
            return await self._finish(job, JobStatus.FAILED)
        except Exception:
            logger.exception(f"Unexpected error polling task {task_id}")
            return await self._reschedule(job, self.config.polling.error_delay)

        return await self.apply_status(job, status)

    async def apply_status(self, job: Job, status: ProviderStatus) -> PollResult:
        if isinstance(status, TaskSucceeded):
            if not status.model_url or not is_http_url(status.model_url):
                logger.error(
                    f"Task {job.provider_task_id} succeeded without a usable model URL: {status.model_url!r}"
                )
                return await self._finish(job, JobStatus.FAILED)
            return await self._complete(job, status)
        if isinstance(status, TaskBanned):
            return await self._finish(job, JobStatus.BANNED)
        if isinstance(status, TaskFailed):
            return await self._finish(job, JobStatus.FAILED)
        if isinstance(status, TaskRunning):
            return await self._reschedule(job, self.config.polling.interval)
        if isinstance(status, TaskUnknown):
            logger.warning(f"Unrecognized status for task {job.provider_task_id}: {status.raw!r}")
            return await self._reschedule(job, self.config.polling.interval)
        raise TypeError(f"Unhandled provider status: {status!r}")

    async def _finish(self, job: Job, status: JobStatus) -> PollResult:
        updated = await self.job_store.update_status(job.id, status)
        if updated is None:
            logger.warning(f"Job {job.id} was deleted before it could be marked {status.value}")
            return PollResult(PollOutcome.STOPPED)
        logger.info(f"Job finished - job_id: {job.id}, status: {updated.status.value}")
        return PollResult(_TERMINAL_OUTCOMES.get(updated.status, PollOutcome.STOPPED), job=updated)

    async def _reschedule(self, job: Job, delay: float) -> PollResult:
        due = self._clock() + timedelta(seconds=delay)
        updated = await self.job_store.schedule_poll(job.id, due)
        if updated is None:
            logger.warning(f"Job {job.id} was deleted while polling; stopping")
            return PollResult(PollOutcome.STOPPED)
        if updated.is_terminal():
            return PollResult(PollOutcome.STOPPED, job=updated)
        return PollResult(PollOutcome.RESCHEDULED, delay=delay, job=updated)

    async def _complete(self, job: Job, status: TaskSucceeded) -> PollResult:
        try:
            asset_path, preview_path = await self._persist_assets(job, status)
        except AssetFetchError as e:
            logger.error(f"Could not download generated model for job {job.id}: {e}")
            return await self._finish(job, JobStatus.FAILED)
        except StorageError as e:
            logger.error(f"Could not store generated model for job {job.id}: {e}")
            return await self._finish(job, JobStatus.FAILED)

        updated = await self.job_store.complete(job.id, asset_path, preview_path)
        if updated is None:
            logger.warning(f"Job {job.id} was deleted before completion could be recorded")
            return PollResult(PollOutcome.STOPPED)
        logger.info(f"Job completed - job_id: {job.id}, asset: {asset_path}")
        return PollResult(_TERMINAL_OUTCOMES.get(updated.status, PollOutcome.STOPPED), job=updated)

    async def _persist_assets(self, job: Job, status: TaskSucceeded) -> Tuple[str, Optional[str]]:
        """Copy provider-hosted results into storage; keep the provider URLs if storage is down."""
        model_url = status.model_url or ""
        preview_url = status.preview_url

        if not self.artifact_store.is_configured():
            logger.error(
                f"Storage not configured; job {job.id} keeps provider-hosted URLs that will expire"
            )
            return model_url, preview_url

        try:
            asset_path = await self.artifact_store.upload(model_url, job.owner_id, job.id, "model")
        except (StorageNotConfiguredError, StorageUnavailableError) as e:
            logger.error(
                f"Storage unavailable for job {job.id}; keeping provider-hosted URLs that will expire: {e}"
            )
            return model_url, preview_url

        preview_path: Optional[str] = None
        if preview_url:
            try:
                preview_path = await self.artifact_store.upload(preview_url, job.owner_id, job.id, "preview")
            except StorageError as e:
                logger.error(f"Preview upload failed for job {job.id}; keeping provider URL: {e}")
                preview_path = preview_url
        return asset_path, preview_path

    # Owner-scoped access

    async def get_owned_job(self, job_id: str, owner_id: str) -> Job:
        job = await self.job_store.find_by_id(job_id)
        if job is None or job.owner_id != owner_id:
            raise JobNotFoundError(job_id)
        return job

    async def delete_job(self, job_id: str, requester_id: str) -> None:
        """Delete on owner request. Outstanding polls for the job stop on their own."""
        job = await self.job_store.find_by_id(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        if job.owner_id != requester_id:
            raise JobAccessDeniedError(job_id)
        await self.job_store.delete(job_id)

    async def delete_owner_jobs(self, owner_id: str) -> int:
        """Cascade delete when an owner account is removed."""
        removed = await self.job_store.delete_by_owner(owner_id)
        logger.info(f"Removed {removed} job(s) for owner {owner_id}")
        return removed
