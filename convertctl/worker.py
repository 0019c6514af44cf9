"""Conversion worker contract and the FFmpeg subprocess adapter."""

import asyncio
import logging
import os
import re
import sys
import uuid
from collections import deque
from typing import Any, Deque, Dict, List, Optional, Protocol
from .errors import ConvertCtlError, StartError
from .hardware import run_command
from .models import WorkerProgress, file_ext

logger = logging.getLogger(__name__)

MAX_LOG_LINES = 200

_DURATION_RE = re.compile(r"Duration:\s*(\d+):(\d+):(\d+(?:\.\d+)?)")

_NVENC_PRESETS = {
    "ultrafast": "fast",
    "superfast": "fast",
    "veryfast": "fast",
    "faster": "fast",
    "fast": "medium",
    "medium": "medium",
    "slow": "slow",
    "slower": "slow",
    "veryslow": "slow",
}

_AUDIO_CODECS = {
    "mp3": "libmp3lame",
    "wav": "pcm_s16le",
    "aac": "aac",
    "flac": "flac",
    "m4a": "aac",
    "ogg": "libvorbis",
}


class ConversionWorker(Protocol):
    """What the orchestrator needs from whatever performs conversions."""

    async def start(self, input_path: str, output_path: str, encoder: str,
                    gpu_device_index: Optional[int] = None,
                    cpu_thread_cap: Optional[int] = None,
                    preset: str = "fast") -> str:
        ...

    async def get_progress(self, task_id: str) -> Optional[WorkerProgress]:
        ...

    async def cancel(self, task_id: str) -> None:
        ...

    async def check_available(self) -> bool:
        ...


class _Task:
    """Bookkeeping for one FFmpeg process."""

    def __init__(self, task_id: str, process: asyncio.subprocess.Process):
        self.id = task_id
        self.process = process
        self.status: Any = "Running"
        self.percentage = 0.0
        self.duration = 0.0
        self.log: Deque[str] = deque(maxlen=MAX_LOG_LINES)
        self.cancelled = False
        self.runner: Optional[asyncio.Task] = None

    def snapshot(self) -> WorkerProgress:
        return WorkerProgress(status=self.status, percentage=self.percentage, log=list(self.log))


def build_ffmpeg_args(input_path: str, output_path: str, encoder: str,
                      gpu_device_index: Optional[int] = None,
                      cpu_thread_cap: Optional[int] = None,
                      preset: str = "fast") -> List[str]:
    """FFmpeg arguments for one conversion, progress reported on stdout."""
    args = ["-y", "-hide_banner", "-nostats", "-progress", "pipe:1"]
    if cpu_thread_cap:
        args += ["-threads", str(cpu_thread_cap)]
    args += ["-i", input_path]

    audio_codec = _AUDIO_CODECS.get(file_ext(output_path))
    if audio_codec is not None:
        # Audio-only container: first audio stream, no video encoder
        args += ["-map", "0:a:0?", "-c:a", audio_codec]
        if file_ext(output_path) == "m4a":
            args += ["-movflags", "+faststart"]
        args.append(output_path)
        return args

    args += ["-map", "0:v:0?", "-map", "0:a?", "-c:v", encoder]

    is_nvenc = "nvenc" in encoder
    if is_nvenc:
        args += ["-preset", _NVENC_PRESETS.get(preset, "medium")]
        if gpu_device_index is not None:
            args += ["-gpu", str(gpu_device_index)]
    elif encoder in ("libx264", "libx265"):
        args += ["-preset", preset]

    if file_ext(output_path) in ("mp4", "mov"):
        args += ["-movflags", "+faststart"]
    args.append(output_path)
    return args


class FfmpegWorker:
    """Runs each conversion as an FFmpeg child process."""

    def __init__(self, ffmpeg_path: str = "ffmpeg"):
        self.ffmpeg_path = ffmpeg_path
        self._tasks: Dict[str, _Task] = {}

    async def start(self, input_path: str, output_path: str, encoder: str,
                    gpu_device_index: Optional[int] = None,
                    cpu_thread_cap: Optional[int] = None,
                    preset: str = "fast") -> str:
        """Spawn FFmpeg and return the new task id."""
        if not os.path.exists(input_path):
            raise StartError(f"Input file not found: {input_path}")
        parent = os.path.dirname(output_path)
        if parent:
            try:
                os.makedirs(parent, exist_ok=True)
            except OSError as e:
                raise StartError(f"Failed to create output directory: {e}") from e

        args = build_ffmpeg_args(input_path, output_path, encoder, gpu_device_index, cpu_thread_cap, preset)
        kwargs = {}
        if sys.platform == "win32":
            kwargs["creationflags"] = 0x08000000  # CREATE_NO_WINDOW
        try:
            process = await asyncio.create_subprocess_exec(
                self.ffmpeg_path,
                *args,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                **kwargs,
            )
        except OSError as e:
            raise StartError(f"Failed to start ffmpeg: {e} (path: {self.ffmpeg_path})") from e

        task_id = str(uuid.uuid4())
        task = _Task(task_id, process)
        task.log.append(f"FFmpeg args: {' '.join(args)}")
        task.runner = asyncio.create_task(self._run(task))
        self._tasks[task_id] = task
        logger.info("Task %s: %s -> %s (%s)", task_id, input_path, output_path, encoder)
        return task_id

    async def check_available(self) -> bool:
        """Whether the configured ffmpeg executable runs."""
        output = await run_command(self.ffmpeg_path, "-version")
        if output is None:
            logger.error("FFmpeg is not runnable at %s", self.ffmpeg_path)
            return False
        return True

    async def get_progress(self, task_id: str) -> Optional[WorkerProgress]:
        task = self._tasks.get(task_id)
        return task.snapshot() if task is not None else None

    async def cancel(self, task_id: str) -> None:
        """Terminate the process; the poller observes the Cancelled status."""
        task = self._tasks.get(task_id)
        if task is None:
            raise ConvertCtlError("Task not found")
        if task.status not in ("Running", "Pending"):
            return
        task.cancelled = True
        task.status = "Cancelled"
        if task.process.returncode is None:
            try:
                task.process.terminate()
            except ProcessLookupError:
                pass

    async def close(self) -> None:
        """Stop every running conversion and wait for the readers."""
        for task in self._tasks.values():
            if task.process.returncode is None:
                task.cancelled = True
                task.status = "Cancelled"
                try:
                    task.process.terminate()
                except ProcessLookupError:
                    pass
        runners = [task.runner for task in self._tasks.values() if task.runner is not None]
        if runners:
            await asyncio.gather(*runners, return_exceptions=True)

    async def _run(self, task: _Task) -> None:
        await asyncio.gather(self._read_progress(task), self._read_log(task))
        returncode = await task.process.wait()

        if task.cancelled:
            task.status = "Cancelled"
        elif returncode == 0:
            task.status = "Completed"
            task.percentage = 100.0
        else:
            task.log.append(f"ffmpeg exited with code {returncode}")
            # An empty variant defers the failure message to the log lines
            task.status = {"Failed": ""}
        logger.info("Task %s finished: %s", task.id, task.status)

    async def _read_progress(self, task: _Task) -> None:
        """Parse the key=value stream FFmpeg writes for -progress."""
        stream = task.process.stdout
        while True:
            line = await stream.readline()
            if not line:
                break
            key, _, value = line.decode("utf-8", errors="ignore").strip().partition("=")
            if key in ("out_time_us", "out_time_ms") and task.duration > 0:
                try:
                    seconds = int(value) / 1_000_000
                except ValueError:
                    continue
                task.percentage = max(task.percentage, min(99.9, seconds / task.duration * 100))

    async def _read_log(self, task: _Task) -> None:
        stream = task.process.stderr
        while True:
            line = await stream.readline()
            if not line:
                break
            text = line.decode("utf-8", errors="ignore").rstrip()
            if not text:
                continue
            task.log.append(text)
            if task.duration <= 0:
                match = _DURATION_RE.search(text)
                if match:
                    hours, minutes, seconds = match.groups()
                    task.duration = int(hours) * 3600 + int(minutes) * 60 + float(seconds)
