"""Bounded-concurrency dispatch of pending jobs onto the conversion worker."""

import asyncio
import logging
from typing import Callable, Dict, Iterable, List, Optional, Tuple
from .models import ConversionParams, Job, JobStatus
from .worker import ConversionWorker

logger = logging.getLogger(__name__)

MIN_CONCURRENT = 1
MAX_CONCURRENT = 5


class JobBoard:
    """Single-writer job collection stored as immutable snapshots."""

    def __init__(self):
        self._jobs: Tuple[Job, ...] = ()

    @property
    def jobs(self) -> Tuple[Job, ...]:
        return self._jobs

    def replace(self, jobs: Iterable[Job]) -> None:
        """Swap in a new snapshot."""
        self._jobs = tuple(jobs)

    def get(self, job_id: str) -> Optional[Job]:
        for job in self._jobs:
            if job.id == job_id:
                return job
        return None

    def update(self, job_id: str, **changes) -> Optional[Job]:
        """Replace one job with an updated copy in a new snapshot."""
        updated = None
        jobs = []
        for job in self._jobs:
            if job.id == job_id:
                updated = job.model_copy(update=changes)
                jobs.append(updated)
            else:
                jobs.append(job)
        self._jobs = tuple(jobs)
        return updated

    def add(self, jobs: Iterable[Job]) -> None:
        self._jobs = self._jobs + tuple(jobs)

    def remove(self, job_id: str) -> Optional[Job]:
        removed = self.get(job_id)
        if removed is not None:
            self._jobs = tuple(job for job in self._jobs if job.id != job_id)
        return removed

    def count(self, status: JobStatus) -> int:
        return sum(1 for job in self._jobs if job.status == status)

    def with_status(self, status: JobStatus) -> List[Job]:
        return [job for job in self._jobs if job.status == status]

    def active(self) -> List[Job]:
        """Jobs the progress poller should query."""
        return [job for job in self._jobs if job.is_active]


class ConcurrencyScheduler:
    """Promotes pending jobs to converting while slots are free."""

    def __init__(self, board: JobBoard, worker: ConversionWorker, max_concurrent: int = 2,
                 on_log: Optional[Callable[[str], None]] = None):
        self.board = board
        self.worker = worker
        self._max_concurrent = self._check_cap(max_concurrent)
        self._params: Dict[str, ConversionParams] = {}
        self._lock: Optional[asyncio.Lock] = None
        self._on_log = on_log

    @staticmethod
    def _check_cap(value: int) -> int:
        if not MIN_CONCURRENT <= value <= MAX_CONCURRENT:
            raise ValueError(f"max_concurrent must be between {MIN_CONCURRENT} and {MAX_CONCURRENT}")
        return value

    @property
    def max_concurrent(self) -> int:
        return self._max_concurrent

    def set_max_concurrent(self, value: int) -> None:
        """Change the cap; running jobs are never preempted."""
        self._max_concurrent = self._check_cap(value)

    def submit(self, jobs: List[Job], params: ConversionParams) -> None:
        """Add pending jobs to the board with the parameters they will start with."""
        for job in jobs:
            self._params[job.id] = params
        self.board.add(jobs)

    def free_slots(self) -> int:
        return self._max_concurrent - self.board.count(JobStatus.CONVERTING)

    async def schedule(self) -> int:
        """Start pending jobs in queue order until the cap is reached.

        Idempotent: a no-op when no slot is free or nothing is pending.

        Returns:
            Number of jobs successfully started.
        """
        if self._lock is None:
            self._lock = asyncio.Lock()
        async with self._lock:
            started = 0
            if self.free_slots() <= 0:
                return 0

            candidates = [job for job in self.board.with_status(JobStatus.PENDING) if job.task_id is None]
            for job in candidates:
                # A failed start does not occupy a slot, so keep going
                if self.free_slots() <= 0:
                    break
                current = self.board.get(job.id)
                if current is None or current.status != JobStatus.PENDING:
                    # Removed or cancelled while an earlier start was in flight
                    self.discard(job.id)
                    continue
                if await self._start(current):
                    started += 1
            return started

    async def _start(self, job: Job) -> bool:
        params = self._params.pop(job.id, None)
        if params is None:
            self._fail(job, None, "No conversion parameters for job")
            return False

        try:
            task_id = await self.worker.start(
                job.input_path,
                job.output_path,
                params.encoder,
                gpu_device_index=params.gpu_device_index,
                cpu_thread_cap=params.cpu_thread_cap,
                preset=params.preset,
            )
        except Exception as e:
            # Start failures are terminal; the user requeues manually
            self._fail(job, params, str(e) or e.__class__.__name__)
            return False

        current = self.board.get(job.id)
        if current is None or current.status != JobStatus.PENDING:
            # Removed while the start call was in flight
            logger.info("Job %s left the board during start; cancelling task %s", job.id, task_id)
            await self._cancel_quietly(task_id)
            return False

        self.board.update(
            job.id,
            id=task_id,
            task_id=task_id,
            status=JobStatus.CONVERTING,
            params=params,
        )
        logger.info("Started %s as task %s (%s)", job.name, task_id, params.encoder)
        return True

    def _fail(self, job: Job, params: Optional[ConversionParams], message: str) -> None:
        self.board.update(job.id, status=JobStatus.FAILED, failure_message=message, params=params)
        text = f"Failed to start: {job.name} ({message})"
        logger.error(text)
        if self._on_log is not None:
            self._on_log(text)

    async def _cancel_quietly(self, task_id: str) -> None:
        try:
            await self.worker.cancel(task_id)
        except Exception as e:
            logger.warning("Cancel of orphaned task %s failed: %s", task_id, e)

    def discard(self, job_id: str) -> None:
        """Forget parameters of a pending job that was removed."""
        self._params.pop(job_id, None)
