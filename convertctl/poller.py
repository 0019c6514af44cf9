"""Demand-driven progress polling and reconciliation of worker state."""

import asyncio
import logging
import re
from typing import Any, Awaitable, Callable, List, Optional
from .errors import PollError
from .models import Job, JobStatus, TERMINAL_STATUSES, WorkerProgress
from .scheduler import JobBoard
from .worker import ConversionWorker

logger = logging.getLogger(__name__)

DEFAULT_INTERVAL = 1.0

FAILURE_KEYWORDS = re.compile(r"(error|failed|invalid|unknown|could not|no such|permission|denied)", re.IGNORECASE)

_STRING_STATUSES = {
    "Pending": JobStatus.PENDING,
    "Running": JobStatus.CONVERTING,
    "Completed": JobStatus.COMPLETED,
    "Cancelled": JobStatus.CANCELLED,
    "Failed": JobStatus.FAILED,
}


def normalize_status(status: Any) -> JobStatus:
    """Map a worker status payload onto a job status."""
    if isinstance(status, str):
        return _STRING_STATUSES.get(status, JobStatus.CONVERTING)
    if isinstance(status, dict):
        if "Failed" in status:
            return JobStatus.FAILED
        if "Cancelled" in status:
            return JobStatus.CANCELLED
    return JobStatus.CONVERTING


def failure_from_status(status: Any) -> Optional[str]:
    """Message carried by a {"Failed": message} status, if any."""
    if isinstance(status, dict):
        value = status.get("Failed")
        if isinstance(value, str) and value.strip():
            return value
    return None


def failure_from_log(log: Optional[List[str]]) -> Optional[str]:
    """Most recent log line that looks like an error, else the last line."""
    if not log:
        return None
    for line in reversed(log):
        if FAILURE_KEYWORDS.search(line):
            return line.strip() or None
    return log[-1].strip() or None


def derive_failure_message(progress: WorkerProgress) -> Optional[str]:
    """Explicit error message, then the status variant, then the log."""
    if progress.error_message and progress.error_message.strip():
        return progress.error_message
    return failure_from_status(progress.status) or failure_from_log(progress.log)


class PollResult:
    """Observation for one job in one polling pass."""

    def __init__(self, job_id: str, status: JobStatus, progress: float,
                 failure_message: Optional[str] = None):
        self.job_id = job_id
        self.status = status
        self.progress = progress
        self.failure_message = failure_message


class ProgressPoller:
    """Queries the worker for every active job while any exist."""

    def __init__(self, board: JobBoard, worker: ConversionWorker, interval: float = DEFAULT_INTERVAL,
                 on_tick: Optional[Callable[[], Awaitable[Any]]] = None,
                 on_log: Optional[Callable[[str], None]] = None):
        self.board = board
        self.worker = worker
        self.interval = interval
        self._on_tick = on_tick
        self._on_log = on_log
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def ensure_running(self) -> bool:
        """Start the polling loop if an active job exists and it is not running."""
        if self.running or not self.board.active():
            return False
        self._task = asyncio.create_task(self._loop())
        logger.debug("Progress polling started")
        return True

    async def stop(self) -> None:
        """Cancel the polling loop."""
        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    async def wait(self) -> None:
        """Wait for the polling loop to run out of active jobs."""
        while self.running:
            await asyncio.wait({self._task})

    async def _loop(self) -> None:
        while self.board.active():
            await asyncio.sleep(self.interval)
            try:
                if self._on_tick is not None:
                    await self._on_tick()
                else:
                    await self.poll_once()
            except Exception:
                # A broken pass must not end polling for the remaining jobs
                logger.exception("Progress reconciliation pass failed")
        logger.debug("Progress polling stopped: no active jobs")

    async def poll_once(self) -> List[Job]:
        """Run one polling pass.

        Returns:
            Jobs that reached Failed or Cancelled in this pass. They are
            removed from the board; the caller returns them to the queue.
        """
        active = self.board.active()
        if not active:
            return []
        results = await asyncio.gather(*(self._query(job) for job in active))
        return self._reconcile([result for result in results if result is not None])

    async def _query(self, job: Job) -> Optional[PollResult]:
        try:
            progress = await self.worker.get_progress(job.task_id or job.id)
        except Exception as e:
            error = PollError(str(e) or e.__class__.__name__)
            logger.warning("Failed to poll progress for %s: %s", job.name, error)
            return PollResult(job.id, JobStatus.FAILED, job.progress_percent, str(error))

        if progress is None:
            return None

        status = normalize_status(progress.status)
        message = derive_failure_message(progress) if status == JobStatus.FAILED else None
        return PollResult(job.id, status, progress.percentage, message)

    def _reconcile(self, results: List[PollResult]) -> List[Job]:
        by_id = {result.job_id: result for result in results}
        kept: List[Job] = []
        removed: List[Job] = []

        for job in self.board.jobs:
            result = by_id.get(job.id)
            if result is None or job.status in TERMINAL_STATUSES:
                kept.append(job)
                continue

            status = result.status
            if status == JobStatus.PENDING and job.status == JobStatus.CONVERTING:
                # Worker-side queueing; the job keeps its slot
                status = JobStatus.CONVERTING

            reported = min(100.0, max(0.0, float(result.progress)))
            updated = job.model_copy(update={
                "status": status,
                "progress_percent": max(job.progress_percent, reported),
                "failure_message": result.failure_message or job.failure_message,
            })

            if status != job.status:
                self._log_transition(updated)

            if status in (JobStatus.FAILED, JobStatus.CANCELLED):
                removed.append(updated)
            else:
                kept.append(updated)

        self.board.replace(kept)
        return removed

    def _log_transition(self, job: Job) -> None:
        if job.status == JobStatus.COMPLETED:
            text = f"Completed: {job.name}"
        elif job.status == JobStatus.FAILED:
            details = f" ({job.failure_message})" if job.failure_message else ""
            text = f"Failed: {job.name}{details}"
        elif job.status == JobStatus.CANCELLED:
            text = f"Cancelled: {job.name}"
        else:
            return
        logger.info(text)
        if self._on_log is not None:
            self._on_log(text)
