"""Conversion orchestration service.

One ConversionService is created per process. It owns the file queue, the
job board, the preferences and the hardware profile, and wires the
scheduler and the progress poller together through explicit events:
every mutation emits an Event and the registered handlers run the
follow-up step (a scheduling pass, poller start, encoder re-selection or
queue persistence).
"""

import inspect
import logging
import os
import uuid
from collections import defaultdict, deque
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Deque, Dict, Iterable, List, Optional
from .config import Settings
from .encoders import (
    choose_encoder,
    cpu_thread_cap,
    encoder_type_label,
    filter_encoders,
    preference_options,
    resolve_device_index,
    vendor_label,
)
from .errors import ConfigError, DetectionError
from .hardware import HardwareProfileCache, HardwareProvider
from .models import (
    ConversionParams,
    Encoder,
    HardwareProfile,
    Job,
    JobStatus,
    Preferences,
    TERMINAL_STATUSES,
    file_ext,
    file_name,
    file_stem,
)
from .poller import ProgressPoller
from .queue import JobQueue, is_supported
from .scheduler import ConcurrencyScheduler, JobBoard
from .storage import PreferenceStore, Storage
from .worker import ConversionWorker

logger = logging.getLogger(__name__)

DEFAULT_OUTPUT_FOLDER = "Convertctl Output"
MAX_ACTIVITY_LINES = 1000


class Event(str, Enum):
    """State changes the service reacts to."""
    JOBS_CHANGED = "jobs_changed"
    CAP_CHANGED = "cap_changed"
    QUEUE_CHANGED = "queue_changed"
    PREFERENCES_CHANGED = "preferences_changed"


def new_job_id() -> str:
    return f"job-{uuid.uuid4().hex[:12]}"


class ConversionService:
    """Owns orchestration state and exposes the user-facing operations."""

    def __init__(self, storage: Storage, worker: ConversionWorker, provider: HardwareProvider,
                 settings: Optional[Settings] = None, persist_queue: bool = False):
        self.settings = settings if settings is not None else Settings()
        self.storage = storage
        self.worker = worker
        self.persist_queue = persist_queue

        self.preference_store = PreferenceStore(storage)
        self.preferences: Preferences = self.preference_store.load()
        self.hardware = HardwareProfileCache(storage, provider)
        self.queue = JobQueue(storage.get_queue() if persist_queue else None)
        self.board = JobBoard()
        self.scheduler = ConcurrencyScheduler(
            self.board, worker, self.preferences.max_concurrent, on_log=self.log,
        )
        self.poller = ProgressPoller(
            self.board, worker, self.settings.poll_interval, on_tick=self.poll_once, on_log=self.log,
        )

        self.activity: Deque[str] = deque(maxlen=MAX_ACTIVITY_LINES)
        self.notices: List[str] = []
        self._encoders: List[Encoder] = []
        self._selected: Optional[Encoder] = None

        self._handlers: Dict[Event, List[Callable[[], Any]]] = defaultdict(list)
        self.on(Event.JOBS_CHANGED, self._schedule_step)
        self.on(Event.CAP_CHANGED, self._schedule_step)
        self.on(Event.QUEUE_CHANGED, self._save_queue)
        self.on(Event.PREFERENCES_CHANGED, self._reselect_encoder)
        self.hardware.subscribe(self._on_profile)

    # Events

    def on(self, event: Event, handler: Callable[[], Any]) -> None:
        """Register a handler; it may be a plain function or a coroutine function."""
        self._handlers[event].append(handler)

    async def emit(self, event: Event) -> None:
        for handler in list(self._handlers[event]):
            result = handler()
            if inspect.isawaitable(result):
                await result

    async def _schedule_step(self) -> None:
        await self.scheduler.schedule()
        self.poller.ensure_running()

    def _save_queue(self) -> None:
        if self.persist_queue:
            self.storage.set_queue(self.queue.entries)

    # Activity log

    def log(self, message: str) -> None:
        """Append a timestamped line to the user-facing activity log."""
        timestamp = datetime.now().strftime("%H:%M:%S")
        self.activity.append(f"{timestamp} - {message}")
        logger.info(message)

    def _notify(self, message: str) -> None:
        self.notices.append(message)
        self.log(message)

    # Hardware and encoders

    @property
    def profile(self) -> Optional[HardwareProfile]:
        return self.hardware.profile

    async def start(self) -> Optional[HardwareProfile]:
        """Load the cached hardware profile and refresh it in the background.

        Raises:
            DetectionError: no cached profile exists and detection failed.
        """
        try:
            return await self.hardware.start()
        except DetectionError as e:
            self.log(f"Hardware detection failed: {e}")
            self._reselect_encoder()
            raise

    async def refresh_hardware(self) -> HardwareProfile:
        """Re-enumerate hardware now, keeping the current profile on failure."""
        try:
            return await self.hardware.refresh()
        except DetectionError as e:
            self.log(f"Hardware detection failed: {e}")
            raise

    def _on_profile(self, profile: HardwareProfile) -> None:
        self.log(f"CPU: {profile.cpu.name} ({profile.cpu.logical_cores} logical cores)")
        if not profile.gpu.adapters:
            self.log("GPU: no physical adapters detected")
        else:
            self.log(f"GPU adapters detected: {len(profile.gpu.adapters)}")
            for adapter in profile.gpu.adapters:
                suffix = " [primary]" if adapter.id == profile.gpu.primary_adapter_id else ""
                self.log(f"GPU {adapter.id}: {adapter.name} ({vendor_label(adapter.gpu_type)}){suffix}")
        self._reselect_encoder()

    def _reselect_encoder(self) -> None:
        profile = self.profile
        all_encoders = profile.encoders if profile is not None else []
        self._encoders = filter_encoders(all_encoders, profile, self.preferences.gpu_preference)
        self._selected = choose_encoder(
            self._encoders, profile, self.preferences.gpu_preference, self.preferences.encoder,
        )

    def available_encoders(self) -> List[Encoder]:
        return list(self._encoders)

    def selected_encoder(self) -> Optional[Encoder]:
        return self._selected

    def gpu_preference_options(self) -> List[tuple]:
        return preference_options(self.profile)

    # Preferences

    async def update_preferences(self, persist: bool = True, **changes: Any) -> Preferences:
        """Validate, persist and apply preference changes."""
        previous = self.preferences
        prefs = self.preference_store.update(persist=persist, **changes)
        self.preferences = prefs

        if prefs.gpu_preference != previous.gpu_preference or prefs.encoder != previous.encoder:
            await self.emit(Event.PREFERENCES_CHANGED)
        if prefs.max_concurrent != previous.max_concurrent:
            self.scheduler.set_max_concurrent(prefs.max_concurrent)
            self.log(f"Max concurrent conversions: {prefs.max_concurrent}")
            await self.emit(Event.CAP_CHANGED)
        return prefs

    # Queue

    async def add_files(self, paths: Iterable[str]) -> int:
        """Queue files, skipping unsupported ones and duplicates."""
        paths = [path for path in dict.fromkeys(paths) if path]
        skipped = sum(1 for path in paths if not is_supported(path))
        if skipped:
            self.log(f"Skipped {skipped} unsupported file(s).")
        added = self.queue.enqueue(paths)
        if added:
            await self.emit(Event.QUEUE_CHANGED)
        return added

    async def remove_file(self, index: int) -> None:
        self.queue.remove(index)
        await self.emit(Event.QUEUE_CHANGED)

    async def clear_queue(self) -> None:
        self.queue.clear()
        await self.emit(Event.QUEUE_CHANGED)

    # Batches

    def resolve_output_dir(self) -> Path:
        """First output directory that exists or can be created.

        Raises:
            ConfigError: no candidate directory is usable.
        """
        candidates: List[Path] = []
        if self.preferences.output_dir:
            candidates.append(Path(self.preferences.output_dir))
        if self.settings.default_output_dir is not None:
            candidates.append(self.settings.default_output_dir)
        else:
            try:
                candidates.append(Path.home() / "Videos" / DEFAULT_OUTPUT_FOLDER)
            except RuntimeError:
                pass

        errors = []
        for candidate in candidates:
            try:
                candidate.mkdir(parents=True, exist_ok=True)
                return candidate
            except OSError as e:
                errors.append(f"{candidate} ({e})")

        if errors:
            raise ConfigError(f"No usable output directory. Tried: {'; '.join(errors)}")
        raise ConfigError("Could not determine an output directory")

    def output_path_for(self, input_path: str, output_dir: Path) -> str:
        ext = self.preferences.output_format or file_ext(input_path) or "mp4"
        return os.path.join(str(output_dir), f"{file_stem(input_path)}_converted.{ext}")

    def resolve_params(self, encoder: Encoder) -> ConversionParams:
        """Parameters every job of the next batch starts with."""
        profile = self.profile
        cores = profile.cpu.logical_cores if profile is not None else (os.cpu_count() or 0)
        return ConversionParams(
            encoder=encoder.name,
            gpu_device_index=resolve_device_index(profile, self.preferences.gpu_preference, encoder.name),
            cpu_thread_cap=cpu_thread_cap(cores, self.preferences.cpu_limit_percent),
            preset=self.preferences.preset,
        )

    async def start_batch(self) -> List[Job]:
        """Commit the whole queue as pending jobs and start scheduling.

        Raises:
            ConfigError: no encoder, no runnable FFmpeg or no output directory
                is available; the queue is left untouched.
        """
        if not len(self.queue):
            self.log("Queue is empty.")
            return []

        encoder = self._selected
        if encoder is None:
            raise ConfigError("No encoders available. FFmpeg may not be installed.")
        if not await self.worker.check_available():
            raise ConfigError("Cannot start conversions without FFmpeg.")
        output_dir = self.resolve_output_dir()
        params = self.resolve_params(encoder)

        self.log(f"Encoder: {encoder.description or encoder.name} ({encoder_type_label(encoder)})")
        labels = dict(self.gpu_preference_options())
        if self.preferences.gpu_preference in labels:
            self.log(f"GPU preference: {labels[self.preferences.gpu_preference]}")
        if params.gpu_device_index is not None:
            self.log(f"NVENC GPU index: {params.gpu_device_index}")
        if params.cpu_thread_cap is not None:
            self.log(f"CPU threads: {params.cpu_thread_cap}")
        self.log(f"Output format: {self.preferences.output_format.upper()}")

        entries = self.queue.dequeue_all()
        jobs = [
            Job(id=new_job_id(), input_path=entry.path, output_path=self.output_path_for(entry.path, output_dir))
            for entry in entries
        ]
        self.log(f"Starting {len(jobs)} conversion(s)...")
        self.scheduler.submit(jobs, params)

        await self.emit(Event.QUEUE_CHANGED)
        await self.emit(Event.JOBS_CHANGED)
        return [self.board.get(job.id) or job for job in jobs]

    # Jobs

    @property
    def jobs(self) -> List[Job]:
        return list(self.board.jobs)

    def find_job(self, job_id: str) -> Optional[Job]:
        return self.board.get(job_id)

    async def cancel(self, job_id: str) -> bool:
        """Ask the worker to cancel a job; its status changes on a later poll."""
        job = self.board.get(job_id)
        if job is None:
            return False

        if job.status == JobStatus.PENDING and job.task_id is None:
            # Never reached the worker: back to the queue directly
            self.board.remove(job.id)
            self.scheduler.discard(job.id)
            self.queue.enqueue([job.input_path])
            self.log(f"Cancelled: {job.name}")
            await self.emit(Event.QUEUE_CHANGED)
            await self.emit(Event.JOBS_CHANGED)
            return True

        if not job.is_active:
            return False

        try:
            await self.worker.cancel(job.task_id or job.id)
        except Exception as e:
            self.log(f"Failed to cancel conversion: {e}")
            return False
        self.log(f"Cancel requested: {job.name}")
        return True

    async def remove_job(self, job_id: str) -> bool:
        """Discard a job that is not running."""
        job = self.board.get(job_id)
        if job is None or job.is_active:
            return False
        self.board.remove(job_id)
        self.scheduler.discard(job_id)
        await self.emit(Event.JOBS_CHANGED)
        return True

    async def clear_finished(self) -> int:
        """Drop completed, failed and cancelled jobs from the board."""
        finished = {job.id for job in self.board.jobs if job.status in TERMINAL_STATUSES}
        self.board.replace(job for job in self.board.jobs if job.id not in finished)
        if finished:
            await self.emit(Event.JOBS_CHANGED)
        return len(finished)

    async def requeue(self, job_id: str) -> bool:
        """Return a failed or cancelled job's file to the queue as a new entry."""
        job = self.board.get(job_id)
        if job is None or job.status not in (JobStatus.FAILED, JobStatus.CANCELLED):
            return False
        self.board.remove(job_id)
        if self.queue.enqueue([job.input_path]):
            self.log(f"Added back to queue: {file_name(job.input_path)}")
        await self.emit(Event.QUEUE_CHANGED)
        await self.emit(Event.JOBS_CHANGED)
        return True

    # Polling

    async def poll_once(self) -> List[Job]:
        """One reconciliation pass; failed and cancelled jobs go back to the queue."""
        returned = await self.poller.poll_once()
        if returned:
            self.queue.enqueue(job.input_path for job in returned)
            self._notify(f"Failed to convert {len(returned)} item(s). Returned to queue.")
            await self.emit(Event.QUEUE_CHANGED)
        await self.emit(Event.JOBS_CHANGED)
        return returned

    def _has_startable(self) -> bool:
        return any(job.status == JobStatus.PENDING and job.task_id is None for job in self.board.jobs)

    async def wait_idle(self) -> None:
        """Wait until no job is running or waiting for a slot."""
        while True:
            await self.emit(Event.JOBS_CHANGED)
            if not self.board.active() and not self._has_startable():
                return
            await self.poller.wait()

    async def return_unfinished(self) -> int:
        """Cancel running conversions and queue every job that did not complete.

        Returns:
            Number of jobs returned to the queue.
        """
        returned = await self.poller.poll_once()
        unfinished = returned + [job for job in self.board.jobs if job.status != JobStatus.COMPLETED]
        if not unfinished:
            return 0

        for job in unfinished:
            if job.is_active:
                try:
                    await self.worker.cancel(job.task_id or job.id)
                except Exception as e:
                    logger.warning("Cancel of %s during shutdown failed: %s", job.name, e)
            self.scheduler.discard(job.id)

        self.board.replace(job for job in self.board.jobs if job.status == JobStatus.COMPLETED)
        self.queue.enqueue(job.input_path for job in unfinished)
        self.log(f"Returned {len(unfinished)} unfinished item(s) to queue.")
        await self.emit(Event.QUEUE_CHANGED)
        return len(unfinished)

    async def close(self) -> None:
        """Stop polling, requeue unfinished jobs and release the worker."""
        await self.poller.stop()
        await self.return_unfinished()
        await self.hardware.close()
        close = getattr(self.worker, "close", None)
        if close is not None:
            await close()
