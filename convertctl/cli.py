"""CLI interface for convertctl."""

import asyncio
import sys
from pathlib import Path
from typing import Optional, Tuple
import click
from pydantic import ValidationError
from .config import Settings, get_settings
from .encoders import encoder_type_label, vendor_label
from .errors import ConfigError, DetectionError
from .hardware import SystemHardwareProvider
from .logging_setup import setup_logging
from .models import JobStatus
from .service import ConversionService
from .storage import Storage
from .worker import FfmpegWorker

WATCH_INTERVAL = 0.5

# CLI key -> Preferences field
PREFERENCE_KEYS = {
    "encoder": "encoder",
    "gpu-preference": "gpu_preference",
    "cpu-limit": "cpu_limit_percent",
    "max-concurrent": "max_concurrent",
    "preset": "preset",
    "output-format": "output_format",
    "output-dir": "output_dir",
}


def build_service(settings: Settings, persist_queue: bool = True) -> ConversionService:
    """Wire a service to the FFmpeg worker and the local hardware provider."""
    storage = Storage(settings.data_dir)
    return ConversionService(
        storage,
        FfmpegWorker(settings.ffmpeg_path),
        SystemHardwareProvider(settings.ffmpeg_path),
        settings=settings,
        persist_queue=persist_queue,
    )


async def _start(service: ConversionService, refresh: bool = False) -> bool:
    """Load hardware; returns False when nothing could be detected."""
    try:
        if refresh:
            await service.refresh_hardware()
        else:
            await service.start()
    except DetectionError as e:
        click.echo(f"✗ Hardware detection failed: {e}", err=True)
        return False
    return True


@click.group()
@click.option("--data-dir", type=click.Path(file_okay=False), help="Override CONVERTCTL_DATA_DIR")
@click.option("--ffmpeg", "ffmpeg_path", help="Path to the ffmpeg executable")
@click.pass_context
def cli(ctx: click.Context, data_dir: Optional[str], ffmpeg_path: Optional[str]):
    """convertctl - hardware-aware media conversion queue"""
    settings = get_settings()
    if data_dir:
        settings.data_dir = Path(data_dir)
    if ffmpeg_path:
        settings.ffmpeg_path = ffmpeg_path
    setup_logging(settings.resolved_log_dir, settings.log_level)
    ctx.obj = settings


@cli.command()
@click.option("--refresh", is_flag=True, help="Rescan hardware instead of using the cache")
@click.pass_obj
def hardware(settings: Settings, refresh: bool):
    """Show detected CPU, GPU adapters and encoders.

    Example:
        convertctl hardware --refresh
    """
    async def _show() -> int:
        service = build_service(settings, persist_queue=False)
        try:
            if not await _start(service, refresh):
                return 1
            profile = service.profile
            click.echo(f"\nCPU: {profile.cpu.name} ({profile.cpu.logical_cores} logical cores)")
            click.echo(f"GPU: {profile.gpu.name or 'none'} ({vendor_label(profile.gpu.gpu_type)})")
            for adapter in profile.gpu.adapters:
                flags = []
                if adapter.id == profile.gpu.primary_adapter_id:
                    flags.append("primary")
                if adapter.is_virtual:
                    flags.append("virtual")
                suffix = f" [{', '.join(flags)}]" if flags else ""
                click.echo(f"  {adapter.id:<8} {adapter.name} ({vendor_label(adapter.gpu_type)}){suffix}")
            click.echo(f"Encoders: {len(profile.encoders)}\n")
            return 0
        finally:
            await service.close()

    sys.exit(asyncio.run(_show()))


@cli.command()
@click.pass_obj
def encoders(settings: Settings):
    """List encoders usable with the current GPU preference.

    Example:
        convertctl encoders
    """
    async def _list() -> int:
        service = build_service(settings, persist_queue=False)
        try:
            if not await _start(service):
                return 1
            available = service.available_encoders()
            if not available:
                click.echo("No encoders detected. FFmpeg may not be installed.")
                return 1
            selected = service.selected_encoder()
            click.echo(f"\n{'':<2}{'Name':<20} {'Codec':<10} {'Type':<14} Description")
            click.echo("-" * 80)
            for enc in available:
                marker = "*" if selected is not None and enc.name == selected.name else ""
                click.echo(f"{marker:<2}{enc.name:<20} {enc.codec:<10} {encoder_type_label(enc):<14} {enc.description}")
            click.echo()
            return 0
        finally:
            await service.close()

    sys.exit(asyncio.run(_list()))


@cli.group()
def config():
    """Manage conversion preferences"""
    pass


@config.command()
@click.pass_obj
def show(settings: Settings):
    """Show current preferences.

    Example:
        convertctl config show
    """
    prefs = build_service(settings, persist_queue=False).preferences
    click.echo("\nCurrent Preferences:")
    for key, field in PREFERENCE_KEYS.items():
        value = getattr(prefs, field)
        click.echo(f"  {key + ':':<16} {value if value not in (None, '') else '-'}")
    click.echo()


@config.command(name="set")
@click.argument("key", type=click.Choice(sorted(PREFERENCE_KEYS)))
@click.argument("value")
@click.pass_obj
def set_preference(settings: Settings, key: str, value: str):
    """Set a preference value.

    Example:
        convertctl config set max-concurrent 3
        convertctl config set gpu-preference cpu
    """
    field = PREFERENCE_KEYS[key]
    parsed = None if field == "output_dir" and value in ("", "-") else value
    service = build_service(settings, persist_queue=False)
    try:
        asyncio.run(service.update_preferences(**{field: parsed}))
    except ValidationError as e:
        messages = "; ".join(error["msg"] for error in e.errors())
        click.echo(f"✗ Invalid value for {key}: {messages}", err=True)
        sys.exit(1)
    click.echo(f"✓ Preference updated: {key} = {value}")


@cli.group()
def queue():
    """Manage the file queue"""
    pass


@queue.command()
@click.argument("files", nargs=-1, required=True, type=click.Path(dir_okay=False, resolve_path=True))
@click.pass_obj
def add(settings: Settings, files: Tuple[str, ...]):
    """Add files to the queue.

    Example:
        convertctl queue add movie.mkv clip.mov
    """
    service = build_service(settings)
    added = asyncio.run(service.add_files(files))
    skipped = len(files) - added
    click.echo(f"✓ {added} file(s) queued" + (f", {skipped} skipped" if skipped else ""))


@queue.command(name="list")
@click.pass_obj
def list_queue(settings: Settings):
    """List queued files in dispatch order."""
    entries = build_service(settings).queue.entries
    if not entries:
        click.echo("Queue is empty")
        return
    click.echo(f"\n{'#':<4} {'Name':<40} Path")
    click.echo("-" * 90)
    for index, entry in enumerate(entries):
        click.echo(f"{index:<4} {entry.name[:40]:<40} {entry.path}")
    click.echo()


@queue.command()
@click.argument("index", type=int)
@click.pass_obj
def remove(settings: Settings, index: int):
    """Remove the file at INDEX from the queue."""
    service = build_service(settings)
    try:
        asyncio.run(service.remove_file(index))
    except IndexError as e:
        click.echo(f"✗ {e}", err=True)
        sys.exit(1)
    click.echo(f"✓ Removed queue entry {index}")


@queue.command()
@click.pass_obj
def clear(settings: Settings):
    """Remove every file from the queue."""
    asyncio.run(build_service(settings).clear_queue())
    click.echo("✓ Queue cleared")


async def _watch(service: ConversionService) -> None:
    """Echo activity lines and progress changes until cancelled."""
    printed = 0
    shown = {}
    while True:
        lines = list(service.activity)
        for line in lines[printed:]:
            click.echo(line)
        printed = len(lines)
        for job in service.jobs:
            if job.status != JobStatus.CONVERTING:
                continue
            percent = int(job.progress_percent)
            if shown.get(job.input_path) != percent:
                shown[job.input_path] = percent
                click.echo(f"  [{percent:>3}%] {job.name}")
        await asyncio.sleep(WATCH_INTERVAL)


async def _run_batch(service: ConversionService) -> int:
    try:
        if not await _start(service):
            click.echo("✗ No encoders available", err=True)
            return 1
        try:
            jobs = await service.start_batch()
        except ConfigError as e:
            click.echo(f"✗ {e}", err=True)
            return 1
        if not jobs:
            click.echo("Queue is empty")
            return 0

        watcher = asyncio.create_task(_watch(service))
        try:
            await service.wait_idle()
            await asyncio.sleep(WATCH_INTERVAL)
        finally:
            watcher.cancel()
            try:
                await watcher
            except asyncio.CancelledError:
                pass

        completed = sum(1 for job in service.jobs if job.status == JobStatus.COMPLETED)
        failed = len(jobs) - completed
        click.echo(f"\nCompleted: {completed} | Not completed: {failed}")
        for notice in service.notices:
            click.echo(f"✗ {notice}", err=True)
        return 0 if failed == 0 else 1
    finally:
        await service.close()


@cli.command()
@click.pass_obj
def run(settings: Settings):
    """Convert everything in the queue.

    Failed or cancelled files are returned to the queue.

    Example:
        convertctl run
    """
    sys.exit(asyncio.run(_run_batch(build_service(settings))))


@cli.command()
@click.argument("files", nargs=-1, required=True, type=click.Path(exists=True, dir_okay=False, resolve_path=True))
@click.option("--output-dir", type=click.Path(file_okay=False), help="Directory for converted files")
@click.option("--encoder", help="Encoder name, e.g. libx264 or h264_nvenc")
@click.pass_obj
def convert(settings: Settings, files: Tuple[str, ...], output_dir: Optional[str], encoder: Optional[str]):
    """Convert FILES directly, without touching the saved queue.

    Example:
        convertctl convert movie.mkv --output-dir out/
    """
    async def _convert() -> int:
        service = build_service(settings, persist_queue=False)
        changes = {}
        if output_dir:
            changes["output_dir"] = output_dir
        if encoder:
            changes["encoder"] = encoder
        if changes:
            # Applied for this run only
            await service.update_preferences(persist=False, **changes)
        await service.add_files(files)
        return await _run_batch(service)

    sys.exit(asyncio.run(_convert()))


if __name__ == "__main__":
    cli()
