"""Encoder filtering, default selection and device index resolution."""

from typing import List, Optional
from .models import Encoder, EncoderType, GpuType, HardwareProfile

SOFTWARE_H264 = "libx264"

PREFERENCE_AUTO = "auto"
PREFERENCE_CPU = "cpu"

_GPU_ENCODER_TYPES = {
    GpuType.NVIDIA: EncoderType.GPU_NVIDIA,
    GpuType.AMD: EncoderType.GPU_AMD,
    GpuType.INTEL: EncoderType.GPU_INTEL,
}

_VENDOR_LABELS = {
    GpuType.NVIDIA: "NVIDIA",
    GpuType.AMD: "AMD",
    GpuType.INTEL: "Intel",
    GpuType.UNKNOWN: "Unknown",
    GpuType.NONE: "None",
}

_ENCODER_TYPE_LABELS = {
    EncoderType.GPU_NVIDIA: "NVIDIA GPU",
    EncoderType.GPU_AMD: "AMD GPU",
    EncoderType.GPU_INTEL: "Intel GPU",
    EncoderType.ADOBE: "Professional",
    EncoderType.CPU: "CPU",
}


def matches_gpu_type(encoder: Encoder, gpu_type: Optional[GpuType]) -> bool:
    """Whether the encoder runs on the given GPU vendor."""
    expected = _GPU_ENCODER_TYPES.get(gpu_type) if gpu_type is not None else None
    return expected is not None and encoder.encoder_type == expected


def resolve_preferred_gpu_type(preference: str, hardware: Optional[HardwareProfile]) -> Optional[GpuType]:
    """Map a GPU preference to the GPU vendor it targets, if any."""
    if hardware is None or preference == PREFERENCE_CPU:
        return None
    if preference == PREFERENCE_AUTO:
        gpu_type = hardware.gpu.gpu_type
        return gpu_type if gpu_type != GpuType.NONE else None
    adapter = hardware.adapter(preference)
    return adapter.gpu_type if adapter is not None else None


def filter_encoders(all_encoders: List[Encoder], hardware: Optional[HardwareProfile],
                    preference: str) -> List[Encoder]:
    """Return the encoders usable with the given GPU preference.

    Never returns an empty list while any encoder exists: a CPU-only
    preference on a machine with no software encoders falls back to
    everything, and a GPU preference with no matching encoders falls back
    to CPU-class encoders.
    """
    if not all_encoders:
        return []

    cpu_like = [enc for enc in all_encoders if enc.is_cpu_like]

    if preference == PREFERENCE_CPU:
        return cpu_like if cpu_like else list(all_encoders)

    preferred = resolve_preferred_gpu_type(preference, hardware)
    if preferred is None:
        return list(all_encoders)

    targeted = [enc for enc in all_encoders if enc.is_cpu_like or matches_gpu_type(enc, preferred)]
    return targeted if targeted else cpu_like


def pick_default(filtered: List[Encoder], preferred_gpu_type: Optional[GpuType] = None) -> Optional[Encoder]:
    """Pick the default encoder, first match wins.

    1. preferred GPU vendor with h264
    2. preferred GPU vendor
    3. libx264
    4. any CPU-class encoder
    5. the first encoder
    """
    if not filtered:
        return None

    if preferred_gpu_type is not None:
        for enc in filtered:
            if matches_gpu_type(enc, preferred_gpu_type) and enc.codec == "h264":
                return enc
        for enc in filtered:
            if matches_gpu_type(enc, preferred_gpu_type):
                return enc

    for enc in filtered:
        if enc.name == SOFTWARE_H264:
            return enc
    for enc in filtered:
        if enc.is_cpu_like:
            return enc
    return filtered[0]


def needs_device_index(encoder_name: str) -> bool:
    return "nvenc" in encoder_name.lower()


def resolve_device_index(hardware: Optional[HardwareProfile], preference: str,
                         encoder_name: str) -> Optional[int]:
    """Position of the selected adapter among the NVIDIA adapters, for NVENC encoders."""
    if hardware is None or not needs_device_index(encoder_name):
        return None

    vendor_adapters = [a for a in hardware.gpu.adapters if a.gpu_type == GpuType.NVIDIA]
    if not vendor_adapters:
        return None

    if preference == PREFERENCE_AUTO:
        primary = hardware.gpu.primary_adapter_id
        for index, adapter in enumerate(vendor_adapters):
            if adapter.id == primary:
                return index
        return 0
    if preference == PREFERENCE_CPU:
        return None

    for index, adapter in enumerate(vendor_adapters):
        if adapter.id == preference:
            return index
    return None


def cpu_thread_cap(logical_cores: int, cpu_limit_percent: int) -> Optional[int]:
    """Thread count for a CPU usage limit; None means no cap."""
    if cpu_limit_percent >= 100 or logical_cores <= 0:
        return None
    return max(1, logical_cores * cpu_limit_percent // 100)


def choose_encoder(filtered: List[Encoder], hardware: Optional[HardwareProfile],
                   preference: str, current: str = "") -> Optional[Encoder]:
    """Keep the current choice if still available, otherwise pick the default."""
    for enc in filtered:
        if enc.name == current:
            return enc
    return pick_default(filtered, resolve_preferred_gpu_type(preference, hardware))


def vendor_label(gpu_type: GpuType) -> str:
    return _VENDOR_LABELS.get(gpu_type, "Unknown")


def encoder_type_label(encoder: Encoder) -> str:
    return _ENCODER_TYPE_LABELS.get(encoder.encoder_type, "Unknown")


def preference_options(hardware: Optional[HardwareProfile]) -> List[tuple]:
    """(value, label) pairs for every selectable GPU preference."""
    primary_name = hardware.gpu.name if hardware is not None and hardware.gpu.name else "Detected device"
    options = [
        (PREFERENCE_AUTO, f"Auto ({primary_name})"),
        (PREFERENCE_CPU, "CPU only (software)"),
    ]
    if hardware is not None:
        for adapter in hardware.gpu.adapters:
            vendor = _VENDOR_LABELS.get(adapter.gpu_type, "GPU")
            if adapter.gpu_type in (GpuType.UNKNOWN, GpuType.NONE):
                vendor = "GPU"
            options.append((adapter.id, f"{vendor} - {adapter.name}"))
    return options
