from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional
from urllib.parse import quote

from fastapi import Depends, FastAPI, File, Form, Header, HTTPException, Query, UploadFile
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel

from meshgen_runner.__version__ import __version__
from meshgen_runner.artifact_store import (
    ArtifactStore,
    AssetFetchError,
    AssetLinkExpiredError,
    StorageNotConfiguredError,
    StorageUnavailableError,
    UnparseablePathError,
    is_storage_path,
)
from meshgen_runner.config import OrchestratorConfig, ProviderConfig, StorageConfig
from meshgen_runner.job_store import InMemoryJobStore, JobStore, JsonFileJobStore
from meshgen_runner.models import GenerationOptions, InputKind, Job, JobStatus
from meshgen_runner.orchestrator import (
    STAGE_IMAGE_FETCH,
    STAGE_STORAGE,
    UPLOAD_PREFIX,
    GenerationOrchestrator,
    InvalidRequestError,
    JobAccessDeniedError,
    JobNotFoundError,
    SubmissionError,
)
from meshgen_runner.provider_client import (
    GenerationProviderClient,
    ProviderError,
    ProviderNotConfiguredError,
)
from meshgen_runner.scheduler import PollScheduler
from meshgen_runner.utils import is_http_url, sanitize_filename

from .auth import AuthError, AuthUser, JwtAuthenticator, bearer_token

logger = logging.getLogger(__name__)

JOB_STORE_MEMORY = "memory"
JOB_STORE_JSON = "json"

UPLOAD_CHUNK_SIZE = 1024 * 1024


@dataclass
class GatewayConfig:
    host: str = "127.0.0.1"
    port: int = 8765
    # "memory" or "json"
    job_store_type: str = JOB_STORE_MEMORY
    job_store_dir: Path = Path("gateway_jobs")
    auth_secret: Optional[str] = None
    run_scheduler: bool = True
    provider: ProviderConfig = field(default_factory=ProviderConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    orchestrator: OrchestratorConfig = field(default_factory=OrchestratorConfig)


@dataclass
class GatewayState:
    config: GatewayConfig
    job_store: JobStore
    provider: GenerationProviderClient
    artifact_store: ArtifactStore
    orchestrator: GenerationOrchestrator
    scheduler: PollScheduler
    authenticator: JwtAuthenticator


class GenerationOptionsPayload(BaseModel):
    width: Optional[float] = None
    height: Optional[float] = None
    depth: Optional[float] = None
    material: Optional[str] = None
    color: Optional[str] = None
    style: Optional[str] = None
    quality: Optional[str] = None
    texture: Optional[bool] = None


class ModelCreatePayload(BaseModel):
    title: str
    input_type: str
    input_data: str
    description: Optional[str] = None
    image_mode: Optional[str] = None
    image_filename: Optional[str] = None
    options: Optional[GenerationOptionsPayload] = None


class ModelJobResponse(BaseModel):
    id: str
    owner_id: str
    title: str
    description: Optional[str] = None
    input_kind: str
    input_payload: str
    status: str
    provider_task_id: Optional[str] = None
    result_asset_path: Optional[str] = None
    result_preview_path: Optional[str] = None
    created_at: datetime
    updated_at: datetime


class ProviderBalanceResponse(BaseModel):
    balance: float
    frozen: float


def build_job_store(config: GatewayConfig) -> JobStore:
    if config.job_store_type == JOB_STORE_JSON:
        return JsonFileJobStore(config.job_store_dir)
    if config.job_store_type != JOB_STORE_MEMORY:
        raise ValueError(f"Unknown job store type: {config.job_store_type}")
    return InMemoryJobStore()


def _job_response(job: Job) -> ModelJobResponse:
    return ModelJobResponse(**job.public_dict())


def _to_options(payload: Optional[GenerationOptionsPayload]) -> Optional[GenerationOptions]:
    if payload is None:
        return None
    return GenerationOptions(
        width=payload.width,
        height=payload.height,
        depth=payload.depth,
        material=payload.material,
        color=payload.color,
        style=payload.style,
        quality=payload.quality,
        texture=payload.texture,
    )


def _submission_status(error: SubmissionError) -> int:
    if error.stage == STAGE_IMAGE_FETCH:
        return 400
    if error.stage == STAGE_STORAGE:
        return 500
    return 502


async def _submit(orchestrator: GenerationOrchestrator, owner_id: str, **kwargs: Any) -> ModelJobResponse:
    try:
        job = await orchestrator.submit(owner_id=owner_id, **kwargs)
    except InvalidRequestError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except SubmissionError as e:
        raise HTTPException(status_code=_submission_status(e), detail=e.user_message)
    return _job_response(job)


def _file_headers(length: int, download: bool, filename: Optional[str]) -> Dict[str, str]:
    headers = {"Content-Length": str(length)}
    if download:
        safe = quote(filename or "model")
        headers["Cache-Control"] = "no-store"
        headers["Content-Disposition"] = f"attachment; filename=\"{safe}\"; filename*=UTF-8''{safe}"
    else:
        headers["Cache-Control"] = "private, max-age=60"
    return headers


def create_app(
    config: Optional[GatewayConfig] = None,
    job_store: Optional[JobStore] = None,
    provider: Optional[GenerationProviderClient] = None,
    artifact_store: Optional[ArtifactStore] = None,
) -> FastAPI:
    cfg = config or GatewayConfig()
    store = job_store or build_job_store(cfg)
    provider_client = provider or GenerationProviderClient(cfg.provider)
    artifacts = artifact_store or ArtifactStore(cfg.storage)
    orchestrator = GenerationOrchestrator(store, provider_client, artifacts, cfg.orchestrator)

    state = GatewayState(
        config=cfg,
        job_store=store,
        provider=provider_client,
        artifact_store=artifacts,
        orchestrator=orchestrator,
        scheduler=PollScheduler(orchestrator, store, cfg.orchestrator.polling),
        authenticator=JwtAuthenticator(cfg.auth_secret),
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):  # noqa: ANN001
        if cfg.run_scheduler:
            await state.scheduler.start()
        try:
            yield
        finally:
            await state.scheduler.stop()

    app = FastAPI(title="Meshgen Gateway", version=__version__, lifespan=lifespan)

    def get_state() -> GatewayState:
        return state

    def current_user(
        authorization: Optional[str] = Header(None),
        state: GatewayState = Depends(get_state),
    ) -> AuthUser:
        try:
            return state.authenticator.authenticate(bearer_token(authorization))
        except AuthError as e:
            raise HTTPException(status_code=401, detail=str(e), headers={"WWW-Authenticate": "Bearer"})

    def admin_user(user: AuthUser = Depends(current_user)) -> AuthUser:
        if not user.is_admin:
            raise HTTPException(status_code=403, detail="Admin access required")
        return user

    @app.post("/v1/models", response_model=ModelJobResponse, status_code=201)
    async def create_model(
        payload: ModelCreatePayload,
        user: AuthUser = Depends(current_user),
        state: GatewayState = Depends(get_state),
    ) -> ModelJobResponse:
        return await _submit(
            state.orchestrator,
            user.id,
            title=payload.title,
            description=payload.description,
            input_kind=payload.input_type,
            input_payload=payload.input_data,
            options=_to_options(payload.options),
            image_mode=payload.image_mode,
            image_filename=payload.image_filename,
        )

    @app.post("/v1/models/upload", response_model=ModelJobResponse, status_code=201)
    async def upload_model_image(
        file: UploadFile = File(...),
        title: str = Form(...),
        description: Optional[str] = Form(None),
        texture: Optional[bool] = Form(None),
        user: AuthUser = Depends(current_user),
        state: GatewayState = Depends(get_state),
    ) -> ModelJobResponse:
        """Image-to-model submission from a multipart file upload."""
        content_type = file.content_type or "image/png"
        if not content_type.startswith("image/"):
            raise HTTPException(status_code=400, detail="uploaded file must be an image")

        max_bytes = state.config.orchestrator.image_fetch.max_bytes
        buffer = bytearray()
        while True:
            chunk = await file.read(UPLOAD_CHUNK_SIZE)
            if not chunk:
                break
            buffer.extend(chunk)
            if len(buffer) > max_bytes:
                raise HTTPException(status_code=413, detail="Image size exceeds provider limit")

        filename = sanitize_filename(file.filename, content_type)
        return await _submit(
            state.orchestrator,
            user.id,
            title=title,
            description=description,
            input_kind=InputKind.IMAGE,
            input_payload=f"{UPLOAD_PREFIX}{filename}",
            options=GenerationOptions(texture=texture) if texture is not None else None,
            image_filename=filename,
            image_bytes=bytes(buffer),
            image_content_type=content_type,
        )

    @app.get("/v1/models", response_model=List[ModelJobResponse])
    async def list_models(
        user: AuthUser = Depends(current_user),
        state: GatewayState = Depends(get_state),
    ) -> List[ModelJobResponse]:
        return [_job_response(job) for job in await state.job_store.find_by_owner(user.id)]

    @app.get("/v1/models/{job_id}", response_model=ModelJobResponse)
    async def get_model(
        job_id: str,
        user: AuthUser = Depends(current_user),
        state: GatewayState = Depends(get_state),
    ) -> ModelJobResponse:
        try:
            job = await state.orchestrator.get_owned_job(job_id, user.id)
        except JobNotFoundError:
            raise HTTPException(status_code=404, detail="model not found")
        return _job_response(job)

    @app.delete("/v1/models/{job_id}")
    async def delete_model(
        job_id: str,
        user: AuthUser = Depends(current_user),
        state: GatewayState = Depends(get_state),
    ) -> JSONResponse:
        try:
            await state.orchestrator.delete_job(job_id, user.id)
        except JobNotFoundError:
            raise HTTPException(status_code=404, detail="model not found")
        except JobAccessDeniedError:
            raise HTTPException(status_code=403, detail="not allowed to delete this model")
        return JSONResponse({"id": job_id, "status": "deleted"})

    @app.get("/v1/models/{job_id}/file")
    async def get_model_file(
        job_id: str,
        asset_type: str = Query("model", alias="type"),
        download: bool = Query(False),
        filename: Optional[str] = Query(None),
        user: AuthUser = Depends(current_user),
        state: GatewayState = Depends(get_state),
    ) -> Response:
        try:
            job = await state.orchestrator.get_owned_job(job_id, user.id)
        except JobNotFoundError:
            raise HTTPException(status_code=404, detail="model not found")

        if asset_type not in ("model", "preview"):
            raise HTTPException(status_code=400, detail="type must be 'model' or 'preview'")
        if job.status != JobStatus.COMPLETED:
            raise HTTPException(status_code=409, detail="model is not ready")

        path = job.result_asset_path if asset_type == "model" else job.result_preview_path
        if not path:
            raise HTTPException(status_code=404, detail=f"{asset_type} file not available")

        try:
            if is_http_url(path) and not is_storage_path(path):
                stored = await state.artifact_store.fetch_external(path)
            else:
                stored = await state.artifact_store.download(path)
        except UnparseablePathError:
            raise HTTPException(status_code=404, detail=f"{asset_type} file not available")
        except AssetLinkExpiredError:
            raise HTTPException(
                status_code=403,
                detail="The provider link for this file has expired; regenerate the model",
            )
        except AssetFetchError as e:
            logger.error(f"Failed to fetch provider-hosted {asset_type} for job {job.id}: {e}")
            raise HTTPException(status_code=502, detail="Failed to fetch the file from the provider")
        except StorageNotConfiguredError:
            raise HTTPException(status_code=500, detail="Storage is not configured")
        except StorageUnavailableError:
            raise HTTPException(status_code=502, detail="Failed to read the stored file")

        return Response(
            content=stored.data,
            media_type=stored.content_type,
            headers=_file_headers(len(stored.data), download, filename or Path(stored.key).name),
        )

    @app.get("/v1/admin/provider/balance", response_model=ProviderBalanceResponse)
    async def provider_balance(
        _admin: AuthUser = Depends(admin_user),
        state: GatewayState = Depends(get_state),
    ) -> ProviderBalanceResponse:
        try:
            balance = await state.provider.get_balance()
        except ProviderNotConfiguredError:
            raise HTTPException(status_code=500, detail="Provider API is not configured")
        except ProviderError as e:
            logger.error(f"Balance lookup failed: {e}")
            raise HTTPException(status_code=502, detail="Failed to fetch provider balance")
        return ProviderBalanceResponse(balance=balance.balance, frozen=balance.frozen)

    @app.get("/v1/admin/models", response_model=List[ModelJobResponse])
    async def list_all_models(
        _admin: AuthUser = Depends(admin_user),
        state: GatewayState = Depends(get_state),
    ) -> List[ModelJobResponse]:
        return [_job_response(job) for job in await state.job_store.list_all()]

    @app.delete("/v1/admin/owners/{owner_id}/models")
    async def delete_owner_models(
        owner_id: str,
        _admin: AuthUser = Depends(admin_user),
        state: GatewayState = Depends(get_state),
    ) -> JSONResponse:
        removed = await state.orchestrator.delete_owner_jobs(owner_id)
        return JSONResponse({"owner_id": owner_id, "deleted": removed})

    @app.get("/health")
    async def health_check(state: GatewayState = Depends(get_state)) -> JSONResponse:
        """Configuration of the collaborators, job counts and scheduler state."""
        jobs = await state.job_store.list_all()
        counts = {status.value: 0 for status in JobStatus}
        for job in jobs:
            counts[job.status.value] += 1

        provider_status = "configured" if state.provider.is_configured() else "not_configured"
        storage_status = "configured" if state.artifact_store.is_configured() else "not_configured"
        overall = "healthy" if provider_status == storage_status == "configured" else "degraded"

        return JSONResponse(
            {
                "status": overall,
                "version": __version__,
                "components": {
                    "provider": {"status": provider_status},
                    "storage": {
                        "status": storage_status,
                        "bucket": state.config.storage.bucket_name,
                    },
                    "job_store": {"type": state.config.job_store_type, "jobs": counts},
                    "scheduler": {
                        "running": state.scheduler.running,
                        "in_flight": state.scheduler.in_flight,
                    },
                },
            }
        )

    app.state.gateway = state
    return app
