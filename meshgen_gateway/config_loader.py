"""Configuration loader for the meshgen gateway - loads from environment variables."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

from meshgen_runner.config import (
    ImageFetchConfig,
    OrchestratorConfig,
    PollingConfig,
    ProviderConfig,
    StorageConfig,
)

from .app import GatewayConfig


def _optional(name: str) -> Optional[str]:
    value = os.getenv(name)
    return value.strip() if value and value.strip() else None


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def load_config_from_env() -> GatewayConfig:
    """
    Load GatewayConfig from environment variables.

    Loads .env file if present and reads configuration values.

    Environment Variables:
        HOST: Server host (default: 127.0.0.1)
        PORT: Server port (default: 8765)
        PROVIDER_API_URL: Generation provider base URL
        PROVIDER_API_KEY: Generation provider API key
        PROVIDER_TASK_ATTEMPTS: Task creation attempts (default: 3)
        PROVIDER_RETRY_DELAY_MS: Linear backoff step in milliseconds (default: 1000)
        PROVIDER_UPLOAD_TIMEOUT_MS: Image upload timeout in milliseconds (default: 15000)
        PROVIDER_TRUSTED_IMAGE_ORIGIN: URL prefix the provider may fetch directly
        S3_BUCKET_NAME: Bucket for inputs and generated assets (unset disables storage)
        S3_REGION: AWS region (default: us-east-1)
        S3_ENDPOINT_URL: Custom endpoint for S3-compatible stores
        JOB_STORE: "memory" or "json" (default: memory)
        JOB_STORE_DIR: Directory for the json job store (default: gateway_jobs)
        AUTH_SECRET: HS256 secret for bearer tokens
        POLL_INTERVAL_MS: Delay between status polls (default: 5000)
        POLL_ERROR_DELAY_MS: Delay after a failed poll (default: 60000)
        POLL_TICK_MS: Scheduler tick (default: 1000)
        MAX_CONCURRENT_POLLS: Polls running at once (default: 16)
        MAX_PROCESSING_AGE_S: Fail jobs processing longer than this (default: unset)
        IMAGE_MAX_BYTES: Largest accepted input image (default: 20971520)
        RUN_SCHEDULER: Start the poll scheduler with the app (default: true)

    Returns:
        GatewayConfig object with values from environment
    """
    # Load .env file if it exists
    load_dotenv()

    max_age = _optional("MAX_PROCESSING_AGE_S")

    provider = ProviderConfig(
        api_url=_optional("PROVIDER_API_URL"),
        api_key=_optional("PROVIDER_API_KEY"),
        task_attempts=int(os.getenv("PROVIDER_TASK_ATTEMPTS", "3")),
        retry_delay=float(os.getenv("PROVIDER_RETRY_DELAY_MS", "1000")) / 1000.0,
        upload_timeout=float(os.getenv("PROVIDER_UPLOAD_TIMEOUT_MS", "15000")) / 1000.0,
        trusted_image_origin=_optional("PROVIDER_TRUSTED_IMAGE_ORIGIN"),
    )
    storage = StorageConfig(
        bucket_name=_optional("S3_BUCKET_NAME"),
        region=os.getenv("S3_REGION", "us-east-1"),
        endpoint_url=_optional("S3_ENDPOINT_URL"),
    )
    orchestrator = OrchestratorConfig(
        polling=PollingConfig(
            interval=float(os.getenv("POLL_INTERVAL_MS", "5000")) / 1000.0,
            error_delay=float(os.getenv("POLL_ERROR_DELAY_MS", "60000")) / 1000.0,
            tick_interval=float(os.getenv("POLL_TICK_MS", "1000")) / 1000.0,
            max_concurrent_polls=int(os.getenv("MAX_CONCURRENT_POLLS", "16")),
            max_processing_age=float(max_age) if max_age else None,
        ),
        image_fetch=ImageFetchConfig(
            max_bytes=int(os.getenv("IMAGE_MAX_BYTES", str(20 * 1024 * 1024))),
        ),
    )

    return GatewayConfig(
        host=os.getenv("HOST", "127.0.0.1"),
        port=int(os.getenv("PORT", "8765")),
        job_store_type=os.getenv("JOB_STORE", "memory").lower(),
        job_store_dir=Path(os.getenv("JOB_STORE_DIR", "gateway_jobs")),
        auth_secret=_optional("AUTH_SECRET"),
        run_scheduler=_env_bool("RUN_SCHEDULER", True),
        provider=provider,
        storage=storage,
        orchestrator=orchestrator,
    )
