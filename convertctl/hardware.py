"""Hardware/encoder enumeration and the cached hardware profile."""

import asyncio
import logging
import os
import platform
import re
import sys
from datetime import datetime
from pathlib import Path
from typing import Callable, List, Optional, Protocol, Tuple
from pydantic import ValidationError
from .errors import DetectionError
from .models import CpuInfo, Encoder, EncoderType, GpuAdapter, GpuInfo, GpuType, HardwareProfile
from .storage import Storage

logger = logging.getLogger(__name__)

COMMAND_TIMEOUT = 10

_VIRTUAL_MARKERS = (
    "virtual", "remote", "basic display", "microsoft basic", "miracast",
    "indirect display", "displaylink", "rdp", "vmware", "virtualbox",
    "parallels", "citrix", "xen", "dummy", "llvmpipe",
)

_ENCODER_LINE = re.compile(r"^\s*([VASFXDB.]{6})\s+(\S+)\s+(.+)$")
_CODEC_HINT = re.compile(r"\(codec\s+(\w+)\)")

_CPU_ENCODER_MARKERS = (
    "libx264", "libx265", "libxvid", "libvpx", "libaom", "libsvtav1", "mpeg",
    "wmv", "flv", "h263", "huffyuv", "ffv", "rawvideo", "libtheora",
)

_TYPE_ORDER = {
    EncoderType.CPU: 0,
    EncoderType.GPU_NVIDIA: 1,
    EncoderType.GPU_AMD: 2,
    EncoderType.GPU_INTEL: 3,
    EncoderType.ADOBE: 4,
}

_VENDOR_ENCODERS = {
    GpuType.NVIDIA: EncoderType.GPU_NVIDIA,
    GpuType.AMD: EncoderType.GPU_AMD,
    GpuType.INTEL: EncoderType.GPU_INTEL,
}

DEFAULT_ENCODERS = [
    ("libx264", "H.264 / AVC / MPEG-4 AVC / MPEG-4 part 10", "h264", EncoderType.CPU),
    ("libx265", "H.265 / HEVC (High Efficiency Video Coding)", "hevc", EncoderType.CPU),
    ("h264_nvenc", "NVIDIA NVENC H.264 encoder", "h264", EncoderType.GPU_NVIDIA),
    ("hevc_nvenc", "NVIDIA NVENC HEVC encoder", "hevc", EncoderType.GPU_NVIDIA),
    ("h264_amf", "AMD AMF H.264 Encoder", "h264", EncoderType.GPU_AMD),
    ("hevc_amf", "AMD AMF HEVC encoder", "hevc", EncoderType.GPU_AMD),
    ("h264_qsv", "H.264 / AVC / MPEG-4 AVC / MPEG-4 part 10 (Intel Quick Sync Video acceleration)",
     "h264", EncoderType.GPU_INTEL),
    ("hevc_qsv", "HEVC (Intel Quick Sync Video acceleration)", "hevc", EncoderType.GPU_INTEL),
]


class HardwareProvider(Protocol):
    """Source of CPU and GPU/encoder enumeration."""

    async def get_cpu_info(self) -> CpuInfo:
        ...

    async def get_gpu_info(self) -> GpuInfo:
        ...


def is_virtual_adapter(name: str) -> bool:
    lowered = name.lower()
    return any(marker in lowered for marker in _VIRTUAL_MARKERS)


def classify_gpu_name(name: str) -> GpuType:
    """Guess the vendor from an adapter's marketing name."""
    upper = name.upper()
    if any(token in upper for token in ("NVIDIA", "GEFORCE", "RTX", "GTX", "QUADRO")):
        return GpuType.NVIDIA
    if "AMD" in upper or "RADEON" in upper:
        return GpuType.AMD
    if "INTEL" in upper and any(token in upper for token in ("ARC", "UHD", "HD GRAPHICS", "IRIS")):
        return GpuType.INTEL
    return GpuType.UNKNOWN


def classify_encoder(name: str) -> Optional[EncoderType]:
    """Encoder class from its FFmpeg name, or None for irrelevant encoders."""
    lowered = name.lower()
    if "nvenc" in lowered:
        return EncoderType.GPU_NVIDIA
    if "amf" in lowered or ("vaapi" in lowered and "h264" in lowered):
        return EncoderType.GPU_AMD
    if "qsv" in lowered or "mediacodec" in lowered:
        return EncoderType.GPU_INTEL
    if any(token in lowered for token in ("prores", "dnxhd", "cfhd", "cineform")):
        return EncoderType.ADOBE
    if any(token in lowered for token in _CPU_ENCODER_MARKERS):
        return EncoderType.CPU
    return None


def infer_codec(name: str) -> str:
    lowered = name.lower()
    table = (
        (("264",), "h264"),
        (("265", "hevc"), "hevc"),
        (("vp8",), "vp8"),
        (("vp9",), "vp9"),
        (("av1",), "av1"),
        (("mpeg4", "xvid"), "mpeg4"),
        (("mpeg2",), "mpeg2video"),
        (("mpeg1",), "mpeg1video"),
        (("wmv",), "wmv2"),
        (("flv",), "flv1"),
        (("prores",), "prores"),
        (("dnxhd", "dnxhr"), "dnxhd"),
        (("cineform", "cfhd"), "cineform"),
        (("theora",), "theora"),
    )
    for tokens, codec in table:
        if any(token in lowered for token in tokens):
            return codec
    return "unknown"


def parse_encoder_list(output: str) -> List[Encoder]:
    """Parse `ffmpeg -encoders` output into classified video encoders.

    Lines look like:
        V....D libx264   libx264 H.264 / AVC / MPEG-4 AVC (codec h264)
    """
    encoders = []
    seen = set()
    for line in output.splitlines():
        match = _ENCODER_LINE.match(line)
        if not match:
            continue
        flags, name, description = match.groups()
        if not flags.startswith("V") or name in seen:
            continue
        encoder_type = classify_encoder(name)
        if encoder_type is None:
            continue
        codec_match = _CODEC_HINT.search(description)
        codec = codec_match.group(1) if codec_match else infer_codec(name)
        description = description.split(" (codec", 1)[0].strip()
        seen.add(name)
        encoders.append(Encoder(name=name, description=description, codec=codec, encoder_type=encoder_type))

    encoders.sort(key=lambda enc: _TYPE_ORDER[enc.encoder_type])
    return encoders


def default_encoders() -> List[Encoder]:
    return [
        Encoder(name=name, description=description, codec=codec, encoder_type=encoder_type)
        for name, description, codec, encoder_type in DEFAULT_ENCODERS
    ]


def build_adapters(names: List[str]) -> Tuple[List[GpuAdapter], Optional[GpuAdapter]]:
    """Adapters with stable ids in enumeration order, plus the first physical one."""
    adapters = [
        GpuAdapter(id=f"gpu-{index}", name=name, gpu_type=classify_gpu_name(name),
                   is_virtual=is_virtual_adapter(name))
        for index, name in enumerate(names)
    ]
    primary = next((adapter for adapter in adapters if not adapter.is_virtual), None)
    return adapters, primary


async def run_command(*cmd: str) -> Optional[str]:
    """Run a command and return its stdout, or None if it could not run."""
    try:
        process = await asyncio.create_subprocess_exec(
            *cmd,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as e:
        logger.debug("Command %s unavailable: %s", cmd[0], e)
        return None
    try:
        stdout, _ = await asyncio.wait_for(process.communicate(), timeout=COMMAND_TIMEOUT)
    except asyncio.TimeoutError:
        process.kill()
        await process.wait()
        logger.warning("Command %s timed out after %ss", cmd[0], COMMAND_TIMEOUT)
        return None
    if process.returncode != 0:
        logger.debug("Command %s exited with %s", cmd[0], process.returncode)
        return None
    return stdout.decode("utf-8", errors="ignore")


class SystemHardwareProvider:
    """Enumerates the local machine with OS tools and FFmpeg."""

    def __init__(self, ffmpeg_path: str = "ffmpeg"):
        self.ffmpeg_path = ffmpeg_path

    async def get_cpu_info(self) -> CpuInfo:
        name = await self._cpu_name()
        return CpuInfo(name=name or "Unknown CPU", logical_cores=os.cpu_count() or 0)

    async def _cpu_name(self) -> Optional[str]:
        if sys.platform.startswith("linux"):
            try:
                with open("/proc/cpuinfo", "r", encoding="utf-8") as f:
                    for line in f:
                        if line.startswith("model name"):
                            return line.split(":", 1)[1].strip()
            except OSError:
                pass
        elif sys.platform == "darwin":
            output = await run_command("sysctl", "-n", "machdep.cpu.brand_string")
            if output and output.strip():
                return output.strip()
        elif sys.platform == "win32":
            output = await run_command(
                "powershell", "-NoProfile", "-Command",
                "Get-CimInstance Win32_Processor | Select-Object -First 1 -ExpandProperty Name",
            )
            if output and output.strip():
                return output.strip()
        return platform.processor() or None

    async def get_gpu_info(self) -> GpuInfo:
        names = await self._adapter_names()
        adapters, primary = build_adapters(names)
        encoders = await self._encoders()

        present = {adapter.gpu_type for adapter in adapters if not adapter.is_virtual}
        allowed = {EncoderType.CPU, EncoderType.ADOBE}
        allowed.update(_VENDOR_ENCODERS[gpu_type] for gpu_type in present if gpu_type in _VENDOR_ENCODERS)
        encoders = [enc for enc in encoders if enc.encoder_type in allowed]

        gpu_type = primary.gpu_type if primary is not None else GpuType.NONE
        return GpuInfo(
            detected=gpu_type != GpuType.NONE,
            gpu_type=gpu_type,
            name=primary.name if primary is not None else "",
            primary_adapter_id=primary.id if primary is not None else None,
            adapters=adapters,
            available_encoders=encoders,
        )

    async def _adapter_names(self) -> List[str]:
        if sys.platform == "win32":
            output = await run_command("wmic", "path", "win32_videocontroller", "get", "name", "/format:csv")
            if output:
                # CSV rows: Node,Name
                names = [line.split(",")[-1].strip() for line in output.splitlines()
                         if line.strip() and not line.startswith("Node")]
                if names:
                    return [name for name in names if name]
            output = await run_command(
                "powershell", "-NoProfile", "-Command",
                "Get-CimInstance Win32_VideoController | Select-Object -ExpandProperty Name",
            )
            return [line.strip() for line in (output or "").splitlines() if line.strip()]

        if sys.platform == "darwin":
            output = await run_command("system_profiler", "SPDisplaysDataType")
            return [line.split(":", 1)[1].strip() for line in (output or "").splitlines()
                    if "Chipset Model:" in line]

        output = await run_command("lspci")
        names = []
        for line in (output or "").splitlines():
            if any(kind in line for kind in ("VGA compatible controller", "3D controller", "Display controller")):
                names.append(line.split(": ", 1)[-1].strip())
        return names

    async def _encoders(self) -> List[Encoder]:
        path = Path(self.ffmpeg_path)
        if path.is_absolute() and not path.exists():
            raise DetectionError(f"FFmpeg not found at: {self.ffmpeg_path}")
        output = await run_command(self.ffmpeg_path, "-hide_banner", "-encoders")
        if output is None:
            logger.warning("Could not run %s -encoders; using the default encoder list", self.ffmpeg_path)
            return default_encoders()
        encoders = parse_encoder_list(output)
        return encoders if encoders else default_encoders()


class HardwareProfileCache:
    """Stale-while-refresh holder of the hardware profile."""

    KEY = "hardware"
    SCHEMA_VERSION = 1

    def __init__(self, storage: Storage, provider: HardwareProvider):
        self.storage = storage
        self.provider = provider
        self.profile: Optional[HardwareProfile] = None
        self._subscribers: List[Callable[[HardwareProfile], None]] = []
        self._refresh_task: Optional[asyncio.Task] = None

    def subscribe(self, callback: Callable[[HardwareProfile], None]) -> None:
        """Call callback with every newly surfaced profile."""
        self._subscribers.append(callback)

    def _publish(self, profile: HardwareProfile) -> None:
        self.profile = profile
        for callback in self._subscribers:
            callback(profile)

    def load(self) -> Optional[HardwareProfile]:
        """Read the persisted snapshot; anything unusable is a cache miss."""
        record = self.storage.get(self.KEY)
        if not isinstance(record, dict):
            return None
        if record.get("schema_version") != self.SCHEMA_VERSION:
            logger.info("Hardware cache schema mismatch (%r); ignoring", record.get("schema_version"))
            return None
        try:
            return HardwareProfile(cpu=record["cpu_info"], gpu=record["gpu_info"])
        except (KeyError, TypeError, ValidationError) as e:
            logger.warning("Hardware cache is invalid; ignoring: %s", e)
            return None

    def save(self, profile: HardwareProfile) -> bool:
        """Persist a versioned snapshot; a write failure only costs the cache."""
        try:
            self.storage.put(self.KEY, {
                "schema_version": self.SCHEMA_VERSION,
                "saved_at": datetime.now().isoformat(),
                "cpu_info": profile.cpu.model_dump(mode="json"),
                "gpu_info": profile.gpu.model_dump(mode="json"),
            })
        except OSError as e:
            logger.warning("Could not write hardware cache: %s", e)
            return False
        return True

    async def refresh(self) -> HardwareProfile:
        """Query the provider; CPU and GPU are enumerated concurrently."""
        cpu_result, gpu_result = await asyncio.gather(
            self.provider.get_cpu_info(),
            self.provider.get_gpu_info(),
            return_exceptions=True,
        )
        if isinstance(cpu_result, BaseException):
            raise DetectionError(f"CPU detection failed: {cpu_result}") from cpu_result
        if isinstance(gpu_result, BaseException):
            raise DetectionError(f"GPU detection failed: {gpu_result}") from gpu_result

        try:
            profile = HardwareProfile(cpu=cpu_result, gpu=gpu_result)
        except ValidationError as e:
            raise DetectionError(f"Hardware provider returned an invalid profile: {e}") from e

        self.save(profile)
        self._publish(profile)
        return profile

    async def start(self) -> Optional[HardwareProfile]:
        """Surface the cached profile at once and refresh in the background.

        Without a cached snapshot the refresh is awaited and a
        DetectionError propagates to the caller.
        """
        cached = self.load()
        if cached is None:
            return await self.refresh()
        self._publish(cached)
        self._refresh_task = asyncio.create_task(self._background_refresh())
        return cached

    async def _background_refresh(self) -> None:
        try:
            await self.refresh()
        except DetectionError as e:
            logger.warning("Hardware refresh failed, keeping cached profile: %s", e)

    async def wait_refreshed(self) -> Optional[HardwareProfile]:
        """Wait for a pending background refresh, if any."""
        if self._refresh_task is not None:
            await self._refresh_task
        return self.profile

    async def close(self) -> None:
        """Let a pending background refresh finish so the next run starts from it."""
        await self.wait_refreshed()
