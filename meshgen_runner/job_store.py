"""
Job record persistence.

Every public operation touches a single job row. Writes against a missing
row return None instead of raising, and writes against a terminal row leave
it unchanged, so a poll racing a delete or a late duplicate poll is harmless.
"""

from __future__ import annotations

import asyncio
import copy
import json
import logging
from abc import ABC, abstractmethod
from datetime import datetime
from pathlib import Path
from typing import Callable, Dict, List, Optional, Set

import aiofiles
import aiofiles.os

from .models import Job, JobStatus, utcnow

logger = logging.getLogger(__name__)


class JobStore(ABC):
    """Single-row CRUD over job records plus the polling cursor."""

    def __init__(self, clock: Callable[[], datetime] = utcnow):
        self._clock = clock
        self._locks: Dict[str, asyncio.Lock] = {}

    # Backend primitives

    @abstractmethod
    async def _get(self, job_id: str) -> Optional[Job]:
        ...

    @abstractmethod
    async def _put(self, job: Job) -> None:
        ...

    @abstractmethod
    async def _remove(self, job_id: str) -> bool:
        ...

    @abstractmethod
    async def _all(self) -> List[Job]:
        ...

    async def _pollable(self) -> List[Job]:
        return [job for job in await self._all() if job.status == JobStatus.PROCESSING]

    def _lock(self, job_id: str) -> asyncio.Lock:
        lock = self._locks.get(job_id)
        if lock is None:
            lock = self._locks[job_id] = asyncio.Lock()
        return lock

    async def _mutate(self, job_id: str, change: Callable[[Job], bool]) -> Optional[Job]:
        """Apply ``change`` unless the row is gone or terminal; it returns False to skip the write."""
        async with self._lock(job_id):
            job = await self._get(job_id)
            if job is None:
                logger.debug(f"Job {job_id} not found; write skipped")
            elif job.is_terminal():
                logger.warning(f"Job {job_id} is {job.status.value}; write skipped")
            elif change(job):
                job.touch(now=self._clock())
                await self._put(job)

        # Missing and terminal rows are never written again.
        if job is None or job.is_terminal():
            self._locks.pop(job_id, None)
        return job

    # Public operations

    async def create(self, job: Job) -> Job:
        async with self._lock(job.id):
            await self._put(job)
        logger.info(f"Job created - job_id: {job.id}, owner: {job.owner_id}, kind: {job.input_kind.value}")
        return copy.deepcopy(job)

    async def find_by_id(self, job_id: str) -> Optional[Job]:
        return await self._get(job_id)

    async def find_by_owner(self, owner_id: str) -> List[Job]:
        jobs = [job for job in await self._all() if job.owner_id == owner_id]
        return sorted(jobs, key=lambda job: job.created_at, reverse=True)

    async def list_all(self) -> List[Job]:
        return sorted(await self._all(), key=lambda job: job.created_at, reverse=True)

    async def update_status(self, job_id: str, status: JobStatus) -> Optional[Job]:
        def change(job: Job) -> bool:
            job.status = status
            if job.is_terminal():
                job.next_poll_at = None
            return True

        return await self._mutate(job_id, change)

    async def set_provider_task_id(
        self,
        job_id: str,
        task_id: str,
        next_poll_at: Optional[datetime] = None,
    ) -> Optional[Job]:
        def change(job: Job) -> bool:
            job.provider_task_id = task_id
            job.status = JobStatus.PROCESSING
            job.next_poll_at = next_poll_at
            return True

        return await self._mutate(job_id, change)

    async def complete(self, job_id: str, asset_path: str, preview_path: Optional[str] = None) -> Optional[Job]:
        def change(job: Job) -> bool:
            job.status = JobStatus.COMPLETED
            job.result_asset_path = asset_path
            job.result_preview_path = preview_path
            job.next_poll_at = None
            return True

        return await self._mutate(job_id, change)

    async def delete(self, job_id: str) -> bool:
        async with self._lock(job_id):
            removed = await self._remove(job_id)
        self._locks.pop(job_id, None)
        if removed:
            logger.info(f"Job deleted - job_id: {job_id}")
        return removed

    async def delete_by_owner(self, owner_id: str) -> int:
        removed = 0
        for job in await self.find_by_owner(owner_id):
            if await self.delete(job.id):
                removed += 1
        return removed

    async def schedule_poll(self, job_id: str, due_at: datetime) -> Optional[Job]:
        def change(job: Job) -> bool:
            if job.status != JobStatus.PROCESSING:
                return False
            job.next_poll_at = due_at
            return True

        return await self._mutate(job_id, change)

    async def claim_due(self, now: Optional[datetime] = None, limit: Optional[int] = None) -> List[Job]:
        """
        Take ownership of jobs whose next poll is due.

        Claiming clears the cursor, so a claimed job is not handed out again
        until its poll reschedules it.
        """
        now = now or self._clock()
        due = [
            job for job in await self._pollable()
            if job.next_poll_at is not None and job.next_poll_at <= now
        ]
        due.sort(key=lambda job: job.next_poll_at)
        if limit is not None:
            due = due[:limit]

        claimed: List[Job] = []
        for candidate in due:
            def change(job: Job) -> bool:
                if job.status != JobStatus.PROCESSING or job.next_poll_at is None or job.next_poll_at > now:
                    return False
                job.next_poll_at = None
                job.poll_count += 1
                claimed.append(job)
                return True

            await self._mutate(candidate.id, change)
        return [copy.deepcopy(job) for job in claimed]

    async def recover_in_flight(self, now: Optional[datetime] = None) -> int:
        """Re-arm PROCESSING jobs left without a cursor, e.g. claimed before a crash."""
        now = now or self._clock()
        recovered = 0
        for candidate in await self._pollable():
            if candidate.next_poll_at is not None:
                continue
            if await self.schedule_poll(candidate.id, now) is not None:
                recovered += 1
        if recovered:
            logger.info(f"Recovered {recovered} in-flight job(s) for polling")
        return recovered


class InMemoryJobStore(JobStore):
    """Process-local store. Pending polls do not survive a restart."""

    def __init__(self, clock: Callable[[], datetime] = utcnow):
        super().__init__(clock=clock)
        self._jobs: Dict[str, Job] = {}

    async def _get(self, job_id: str) -> Optional[Job]:
        job = self._jobs.get(job_id)
        return copy.deepcopy(job) if job is not None else None

    async def _put(self, job: Job) -> None:
        self._jobs[job.id] = copy.deepcopy(job)

    async def _remove(self, job_id: str) -> bool:
        return self._jobs.pop(job_id, None) is not None

    async def _all(self) -> List[Job]:
        return [copy.deepcopy(job) for job in self._jobs.values()]


class JsonFileJobStore(JobStore):
    """One JSON document per job, written atomically via temp file + rename."""

    def __init__(self, jobs_dir: Path, clock: Callable[[], datetime] = utcnow):
        super().__init__(clock=clock)
        self.jobs_dir = Path(jobs_dir)
        self.jobs_dir.mkdir(parents=True, exist_ok=True)
        # Ids of terminal jobs; their files never change again, so polling scans skip them.
        self._settled: Set[str] = set()
        logger.info(f"JSON job store initialized - jobs_dir: {self.jobs_dir}")

    def _path(self, job_id: str) -> Path:
        return self.jobs_dir / f"{job_id}.json"

    async def _read(self, path: Path) -> Optional[Job]:
        try:
            async with aiofiles.open(path, "rb") as f:
                content = await f.read()
        except FileNotFoundError:
            return None

        try:
            data = json.loads(content.decode("utf-8"))
            if not isinstance(data, dict):
                raise ValueError(f"expected an object, got {type(data).__name__}")
            job = Job.from_dict(data)
        except (ValueError, KeyError, TypeError, AttributeError) as e:
            logger.error(f"Job file corrupted, skipping - path: {path}, error: {e}")
            return None

        if job.is_terminal():
            self._settled.add(job.id)
        return job

    async def _get(self, job_id: str) -> Optional[Job]:
        return await self._read(self._path(job_id))

    async def _put(self, job: Job) -> None:
        job_file = self._path(job.id)
        temp_file = self.jobs_dir / f"{job.id}.json.tmp"
        async with aiofiles.open(temp_file, "w", encoding="utf-8") as f:
            await f.write(json.dumps(job.to_dict(), indent=2))
        await aiofiles.os.replace(temp_file, job_file)
        if job.is_terminal():
            self._settled.add(job.id)

    async def _remove(self, job_id: str) -> bool:
        self._settled.discard(job_id)
        try:
            await aiofiles.os.remove(self._path(job_id))
        except FileNotFoundError:
            return False
        return True

    async def _all(self) -> List[Job]:
        jobs: List[Job] = []
        for path in sorted(self.jobs_dir.glob("*.json")):
            job = await self._read(path)
            if job is not None:
                jobs.append(job)
        return jobs

    async def _pollable(self) -> List[Job]:
        jobs: List[Job] = []
        for path in sorted(self.jobs_dir.glob("*.json")):
            if path.stem in self._settled:
                continue
            job = await self._read(path)
            if job is not None and job.status == JobStatus.PROCESSING:
                jobs.append(job)
        return jobs
