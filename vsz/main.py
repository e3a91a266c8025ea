import typer
import threading
from pathlib import Path
from typing import Dict, List, Optional
from rich.console import Console
from rich.progress import BarColumn, Progress, TaskID, TextColumn, TimeElapsedColumn
from rich.table import Table
from vsz.config.loader import load_config
from vsz.config.models import AppConfig
from vsz.domain.errors import CompressionError
from vsz.domain.events import (
    ActionMessage,
    JobCancelled,
    JobCompleted,
    JobFailed,
    JobProgressUpdated,
    JobStarted,
    QueueDrained,
)
from vsz.domain.models import CompressionSettings, JobStatus, VideoCodec
from vsz.infrastructure.encoder_locator import EncoderBinary, locate_encoder
from vsz.infrastructure.event_bus import EventBus
from vsz.infrastructure.ffmpeg import CompressionEngine
from vsz.infrastructure.ffprobe import MetadataProbe
from vsz.infrastructure.file_naming import OutputNamer, is_video_file
from vsz.infrastructure.logging import setup_logging
from vsz.infrastructure.metadata_cache import MetadataCache
from vsz.infrastructure.process import ProcessSupervisor
from vsz.pipeline.job_queue import JobQueue

app = typer.Typer(help="vsz (Video Squeeze) - batch video compression with FFmpeg")
console = Console()

_CODECS = {"h264": VideoCodec.H264, "h265": VideoCodec.H265}


def _format_size(size: Optional[int]) -> str:
    if size is None:
        return "-"
    value = float(size)
    for unit in ("B", "KB", "MB"):
        if value < 1024:
            return f"{value:.0f} {unit}" if unit == "B" else f"{value:.1f} {unit}"
        value /= 1024
    return f"{value:.1f} GB"


def _locate(config: AppConfig) -> EncoderBinary:
    return locate_encoder(
        explicit=config.encoder.ffmpeg_path,
        bundled_dir=config.encoder.bundled_dir,
        search_paths=config.encoder.search_paths,
        timeout=config.encoder.version_timeout_s,
    )


def build_probe(config: AppConfig, binary: EncoderBinary) -> MetadataProbe:
    return MetadataProbe(
        ffprobe_path=binary.probe_path,
        ffmpeg_path=binary.path,
        cache=MetadataCache(config.probe.cache_size),
        timeout=config.probe.timeout_s,
        analyze_duration_us=config.probe.analyze_duration_us,
        probe_size_bytes=config.probe.probe_size_bytes,
    )


def build_queue(config: AppConfig, event_bus: EventBus, binary: EncoderBinary) -> JobQueue:
    """Wires probe, supervisor, engine and queue from one config."""
    probe = build_probe(config, binary)
    supervisor = ProcessSupervisor(
        term_grace=config.supervisor.term_grace_s,
        interrupt_grace=config.supervisor.interrupt_grace_s,
    )
    engine = CompressionEngine(
        binary,
        probe,
        supervisor,
        progress_epsilon=config.progress.epsilon,
        read_size=config.progress.read_size,
        stats_period=config.progress.stats_period_s,
        min_free_bytes=config.output.min_free_bytes,
        debug=config.general.debug,
    )
    return JobQueue(
        engine,
        probe,
        event_bus,
        settings=config.compression,
        output_naming=OutputNamer(config.output.suffix, config.output.extension),
        probe_workers=config.general.probe_workers,
    )


def _load(config_path: Optional[Path]) -> AppConfig:
    try:
        return load_config(config_path)
    except (OSError, ValueError) as exc:
        typer.secho(f"Error: {exc}", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1)


@app.command()
def compress(
    files: List[Path] = typer.Argument(..., help="Video files to compress"),
    config_path: Optional[Path] = typer.Option(None, "--config", "-c", help="Path to YAML config (default: conf/vsz.yaml if present)"),
    crf: Optional[int] = typer.Option(None, "--crf", help="Override CRF (clamped to the codec's range)"),
    codec: Optional[str] = typer.Option(None, "--codec", help="Video codec: h264 or h265"),
    hw: Optional[bool] = typer.Option(None, "--hw/--no-hw", help="Enable/disable hardware encoder when available"),
    copy_audio: Optional[bool] = typer.Option(None, "--copy-audio/--reencode-audio", help="Copy audio or re-encode it to AAC"),
    delete_originals: bool = typer.Option(False, "--delete-originals", help="Delete source files after successful compression"),
    log_path: Optional[Path] = typer.Option(None, "--log-path", help="Path to log file (overrides config)"),
    debug: bool = typer.Option(False, "--debug/--no-debug", help="Enable verbose debug logging"),
):
    """Compress video files one at a time with live progress."""
    config = _load(config_path)

    # Apply CLI overrides
    if debug:
        config.general.debug = True
    if log_path:
        config.general.log_path = log_path
    overrides: Dict[str, object] = {}
    if codec:
        if codec.lower() not in _CODECS:
            typer.secho(f"Error: unknown codec '{codec}' (use h264 or h265)", fg=typer.colors.RED, err=True)
            raise typer.Exit(code=1)
        overrides["codec"] = _CODECS[codec.lower()]
    if crf is not None:
        overrides["crf"] = crf
    if hw is not None:
        overrides["use_hardware_acceleration"] = hw
    if copy_audio is not None:
        overrides["copy_audio"] = copy_audio
    if delete_originals:
        overrides["delete_originals"] = True
    if overrides:
        config.compression = CompressionSettings.model_validate({**config.compression.model_dump(), **overrides})

    logger = setup_logging(config.general.log_path, debug=config.general.debug)

    sources = []
    for path in files:
        if not path.is_file():
            typer.secho(f"Skipping {path}: not a file", fg=typer.colors.YELLOW, err=True)
        elif not is_video_file(path):
            typer.secho(f"Skipping {path}: not a video file", fg=typer.colors.YELLOW, err=True)
        else:
            sources.append(path)
    if not sources:
        typer.secho("No video files to compress.", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1)

    try:
        binary = _locate(config)
    except CompressionError as exc:
        typer.secho(f"Error: {exc.message}", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1)

    settings = config.compression
    console.print(
        f"[bold]vsz[/bold] {settings.codec.short_name} CRF {settings.crf} "
        f"(hw={'on' if settings.use_hardware_acceleration else 'off'}, "
        f"audio={'copy' if settings.copy_audio else 'aac'}) - {len(sources)} file(s)"
    )

    event_bus = EventBus()
    queue = build_queue(config, event_bus, binary)
    drained = threading.Event()
    progress = Progress(
        TextColumn("[bold blue]{task.description}"),
        BarColumn(),
        TextColumn("{task.percentage:>5.1f}%"),
        TimeElapsedColumn(),
        console=console,
    )
    tasks: Dict[str, TaskID] = {}

    def _task_for(job_id: str, name: str) -> TaskID:
        if job_id not in tasks:
            tasks[job_id] = progress.add_task(name, total=1.0)
        return tasks[job_id]

    @event_bus.subscribe(JobStarted)
    def on_started(event: JobStarted):
        progress.reset(_task_for(event.job.id, event.job.name), total=1.0)

    @event_bus.subscribe(JobProgressUpdated)
    def on_progress(event: JobProgressUpdated):
        progress.update(_task_for(event.job.id, event.job.name), completed=event.progress)

    @event_bus.subscribe(JobCompleted)
    def on_completed(event: JobCompleted):
        task = _task_for(event.job.id, event.job.name)
        progress.update(task, completed=1.0)
        if event.size_increased:
            progress.console.print(f"[yellow]{event.job.name}: output is larger than the original[/yellow]")

    @event_bus.subscribe(JobFailed)
    def on_failed(event: JobFailed):
        progress.console.print(f"[red]✗ {event.job.name}: {event.error_message}[/red]")

    @event_bus.subscribe(JobCancelled)
    def on_cancelled(event: JobCancelled):
        progress.console.print(f"[yellow]{event.job.name}: cancelled[/yellow]")

    @event_bus.subscribe(ActionMessage)
    def on_message(event: ActionMessage):
        progress.console.print(f"[dim]{event.message}[/dim]")

    @event_bus.subscribe(QueueDrained)
    def on_drained(event: QueueDrained):
        drained.set()

    interrupted = False
    try:
        with progress:
            queue.add_files(sources)
            if queue.compress_all() == 0:
                drained.set()
            try:
                while not drained.wait(0.2):
                    pass
            except KeyboardInterrupt:
                interrupted = True
                progress.console.print("[yellow]Ctrl+C - cancelling active compression...[/yellow]")
                logger.info("Interrupted by user")
                queue.cancel_all()
                queue.wait_until_idle(timeout=10.0)
    finally:
        queue.shutdown(timeout=5.0)

    _print_summary(queue)
    if interrupted:
        typer.secho("\n✓ Compression stopped by user (Ctrl+C)", fg=typer.colors.YELLOW)
        raise typer.Exit(code=130)
    if queue.batch_errors:
        raise typer.Exit(code=2)


def _print_summary(queue: JobQueue) -> None:
    table = Table(title="Summary")
    table.add_column("File")
    table.add_column("Status")
    table.add_column("Original", justify="right")
    table.add_column("Compressed", justify="right")
    table.add_column("Saved", justify="right")

    styles = {
        JobStatus.COMPLETED: "green",
        JobStatus.FAILED: "red",
        JobStatus.PENDING: "yellow",
        JobStatus.COMPRESSING: "blue",
    }
    for job in queue.jobs:
        ratio = job.compression_ratio
        table.add_row(
            job.name,
            f"[{styles[job.status]}]{job.status.value.lower()}[/{styles[job.status]}]",
            _format_size(job.original_size),
            _format_size(job.compressed_size),
            f"{ratio:.1f}%" if ratio is not None else "-",
        )
    console.print(table)

    overall = queue.overall_compression_ratio
    if overall is not None:
        console.print(
            f"Total: {_format_size(queue.total_original_size)} -> "
            f"{_format_size(queue.total_compressed_size)} ({overall:.1f}% saved)"
        )

    errors = queue.batch_errors
    if errors:
        console.print(f"[bold red]{len(errors)} file(s) failed:[/bold red]")
        for entry in errors:
            hint = " (retryable)" if entry.retryable else ""
            console.print(f"  - {entry.name}: {entry.error_message}{hint}")


@app.command()
def probe(
    file: Path = typer.Argument(..., help="Video file to inspect"),
    config_path: Optional[Path] = typer.Option(None, "--config", "-c", help="Path to YAML config"),
    quick: bool = typer.Option(False, "--quick", help="Size-based estimate only, no subprocess"),
):
    """Print a file's video info."""
    config = _load(config_path)
    try:
        binary = _locate(config)
        metadata_probe = build_probe(config, binary)
        info = metadata_probe.get_quick_info(file) if quick else metadata_probe.probe(file)
    except CompressionError as exc:
        typer.secho(f"Error: {exc.message}", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1)

    table = Table(title=file.name, show_header=False)
    table.add_column("Field")
    table.add_column("Value")
    table.add_row("Duration", f"{info.duration:.2f} s")
    table.add_row("Resolution", f"{info.width}x{info.height}")
    table.add_row("Frame rate", f"{info.frame_rate:.2f} fps")
    table.add_row("Bitrate", f"{info.bitrate / 1000:.0f} kb/s")
    table.add_row("Video codec", info.video_codec or "-")
    table.add_row("Audio", info.audio_codec or ("yes" if info.has_audio else "none"))
    console.print(table)


if __name__ == "__main__":
    app()
