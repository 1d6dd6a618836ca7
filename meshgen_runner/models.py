"""Job records, generation inputs and provider task states."""

from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional, Union


class JobStatus(str, Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    BANNED = "BANNED"


TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.BANNED})


class InputKind(str, Enum):
    TEXT = "TEXT"
    IMAGE = "IMAGE"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_datetime(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromisoformat(value)


@dataclass
class Job:
    """One generation request and its lifecycle record."""

    owner_id: str
    title: str
    input_kind: InputKind
    input_payload: str
    description: Optional[str] = None
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    status: JobStatus = JobStatus.PENDING
    provider_task_id: Optional[str] = None
    result_asset_path: Optional[str] = None
    result_preview_path: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    # Polling cursor; None while a poll is in flight or once the job is terminal.
    next_poll_at: Optional[datetime] = None
    poll_count: int = 0

    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def touch(self, status: Optional[JobStatus] = None, now: Optional[datetime] = None) -> None:
        if status is not None:
            self.status = status
        self.updated_at = now or utcnow()

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["input_kind"] = self.input_kind.value
        data["status"] = self.status.value
        for key in ("created_at", "updated_at", "next_poll_at"):
            value = data[key]
            data[key] = value.isoformat() if value else None
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Job":
        return cls(
            id=data["id"],
            owner_id=data["owner_id"],
            title=data["title"],
            description=data.get("description"),
            input_kind=InputKind(data["input_kind"]),
            input_payload=data["input_payload"],
            status=JobStatus(data["status"]),
            provider_task_id=data.get("provider_task_id"),
            result_asset_path=data.get("result_asset_path"),
            result_preview_path=data.get("result_preview_path"),
            created_at=_parse_datetime(data["created_at"]) or utcnow(),
            updated_at=_parse_datetime(data.get("updated_at")) or utcnow(),
            next_poll_at=_parse_datetime(data.get("next_poll_at")),
            poll_count=int(data.get("poll_count", 0)),
        )

    def public_dict(self) -> Dict[str, Any]:
        """Fields exposed to the job owner."""
        data = self.to_dict()
        data.pop("next_poll_at", None)
        data.pop("poll_count", None)
        return data


@dataclass
class GenerationOptions:
    """Structured hints appended to text prompts, plus provider flags."""

    width: Optional[float] = None
    height: Optional[float] = None
    depth: Optional[float] = None
    material: Optional[str] = None
    color: Optional[str] = None
    style: Optional[str] = None
    quality: Optional[str] = None
    texture: Optional[bool] = None


@dataclass
class ImageFile:
    """Image reference handed to the provider on image-to-model tasks."""

    file_token: Optional[str] = None
    url: Optional[str] = None
    type: Optional[str] = None


# Provider task states. Exactly one of these is returned per status fetch.


@dataclass(frozen=True)
class TaskSucceeded:
    model_url: Optional[str]
    preview_url: Optional[str] = None


@dataclass(frozen=True)
class TaskFailed:
    status: str = "failed"


@dataclass(frozen=True)
class TaskBanned:
    status: str = "banned"


@dataclass(frozen=True)
class TaskRunning:
    status: str = "running"


@dataclass(frozen=True)
class TaskUnknown:
    raw: Any = None


ProviderStatus = Union[TaskSucceeded, TaskFailed, TaskBanned, TaskRunning, TaskUnknown]


@dataclass(frozen=True)
class ProviderBalance:
    balance: float
    frozen: float = 0.0
