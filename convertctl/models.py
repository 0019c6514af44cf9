"""Data models for hardware, encoders, jobs and preferences."""

import os
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Union
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class GpuType(str, Enum):
    """GPU vendor classification."""
    NVIDIA = "Nvidia"
    AMD = "Amd"
    INTEL = "Intel"
    UNKNOWN = "Unknown"
    NONE = "None"


class EncoderType(str, Enum):
    """Encoder backend classification."""
    CPU = "Cpu"
    GPU_NVIDIA = "GpuNvidia"
    GPU_AMD = "GpuAmd"
    GPU_INTEL = "GpuIntel"
    ADOBE = "Adobe"


class JobStatus(str, Enum):
    """Job lifecycle states."""
    PENDING = "pending"
    CONVERTING = "converting"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED})

VIDEO_OUTPUT_FORMATS = ("mp4", "mkv", "avi", "mov", "wmv", "flv", "webm", "ogv")
AUDIO_OUTPUT_FORMATS = ("mp3", "wav", "aac", "flac", "m4a", "ogg")
OUTPUT_FORMATS = frozenset(VIDEO_OUTPUT_FORMATS + AUDIO_OUTPUT_FORMATS)


class CpuInfo(BaseModel):
    """CPU description reported by the hardware provider."""
    name: str
    logical_cores: int = Field(default=0, ge=0)


class GpuAdapter(BaseModel):
    """A physical or virtual GPU device."""
    id: str
    name: str
    gpu_type: GpuType = GpuType.UNKNOWN
    is_virtual: bool = False


class Encoder(BaseModel):
    """A named conversion backend."""
    name: str
    description: str = ""
    codec: str = "unknown"
    encoder_type: EncoderType

    @property
    def is_cpu_like(self) -> bool:
        return self.encoder_type in (EncoderType.CPU, EncoderType.ADOBE)


class GpuInfo(BaseModel):
    """GPU enumeration result, including the encoders FFmpeg exposes."""
    detected: bool = False
    gpu_type: GpuType = GpuType.NONE
    name: str = ""
    primary_adapter_id: Optional[str] = None
    adapters: List[GpuAdapter] = Field(default_factory=list)
    available_encoders: List[Encoder] = Field(default_factory=list)

    @model_validator(mode="after")
    def _check_unique(self) -> "GpuInfo":
        adapter_ids = [adapter.id for adapter in self.adapters]
        if len(adapter_ids) != len(set(adapter_ids)):
            raise ValueError("adapter ids must be unique")
        encoder_names = [encoder.name for encoder in self.available_encoders]
        if len(encoder_names) != len(set(encoder_names)):
            raise ValueError("encoder names must be unique")
        return self


class HardwareProfile(BaseModel):
    """Last-known CPU/GPU/encoder enumeration."""
    cpu: CpuInfo
    gpu: GpuInfo

    @property
    def encoders(self) -> List[Encoder]:
        return self.gpu.available_encoders

    def adapter(self, adapter_id: str) -> Optional[GpuAdapter]:
        """Find an adapter by id."""
        for adapter in self.gpu.adapters:
            if adapter.id == adapter_id:
                return adapter
        return None


class ConversionParams(BaseModel):
    """Encoder parameters attached to a job when it is promoted."""
    model_config = ConfigDict(frozen=True)

    encoder: str
    gpu_device_index: Optional[int] = None
    cpu_thread_cap: Optional[int] = None
    preset: str = "fast"


class Job(BaseModel):
    """One file's conversion request."""
    id: str
    input_path: str
    output_path: str
    status: JobStatus = JobStatus.PENDING
    progress_percent: float = Field(default=0.0, ge=0.0, le=100.0)
    failure_message: Optional[str] = None
    params: Optional[ConversionParams] = None
    task_id: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.now)

    @property
    def name(self) -> str:
        return file_name(self.input_path)

    @property
    def is_active(self) -> bool:
        """Whether the poller should track this job."""
        if self.status == JobStatus.CONVERTING:
            return True
        return self.status == JobStatus.PENDING and self.task_id is not None


class QueueEntry(BaseModel):
    """A file waiting to be committed to a conversion batch."""
    path: str
    name: str

    @classmethod
    def from_path(cls, path: str) -> "QueueEntry":
        return cls(path=path, name=file_name(path))


class Preferences(BaseModel):
    """User choices persisted across runs."""
    encoder: str = ""
    gpu_preference: str = "auto"
    cpu_limit_percent: int = 100
    max_concurrent: int = Field(default=2, ge=1, le=5)
    preset: str = "fast"
    output_format: str = "mp4"
    output_dir: Optional[str] = None

    @field_validator("cpu_limit_percent")
    @classmethod
    def _check_cpu_limit(cls, value: int) -> int:
        if value not in (25, 50, 75, 100):
            raise ValueError("cpu_limit_percent must be one of 25, 50, 75, 100")
        return value

    @field_validator("output_format")
    @classmethod
    def _normalize_format(cls, value: str) -> str:
        value = value.lower().lstrip(".")
        if value not in OUTPUT_FORMATS:
            raise ValueError(f"output_format must be one of {', '.join(sorted(OUTPUT_FORMATS))}")
        return value


class WorkerProgress(BaseModel):
    """Progress payload answered by the conversion worker."""
    status: Union[str, Dict[str, Any]] = "Pending"
    percentage: float = 0.0
    log: List[str] = Field(default_factory=list)
    error_message: Optional[str] = None


def file_name(path: str) -> str:
    """Return the last component of a Windows or POSIX path."""
    return path.replace("\\", "/").rstrip("/").split("/")[-1] or path


def file_stem(path: str) -> str:
    name = file_name(path)
    stem, ext = os.path.splitext(name)
    return stem if ext else name


def file_ext(path: str) -> str:
    """Lower-case extension without the dot, or an empty string."""
    name = file_name(path)
    dot = name.rfind(".")
    return name[dot + 1:].lower() if dot > 0 else ""
