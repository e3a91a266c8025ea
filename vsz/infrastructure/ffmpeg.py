import logging
import os
import shutil
import threading
import time
from pathlib import Path
from typing import List, Optional
from vsz.domain.errors import (
    Cancelled,
    CompressionFailed,
    InsufficientSpace,
    NotFound,
    OutputPathError,
    PermissionDenied,
    map_exception,
)
from vsz.domain.models import CompressionSettings
from vsz.infrastructure.encoder_locator import EncoderBinary
from vsz.infrastructure.ffprobe import MetadataProbe
from vsz.infrastructure.process import OperationContext, ProcessSupervisor
from vsz.infrastructure.progress import ProgressCallback, ProgressMonitor


class CompressionEngine:
    """Compresses one file: probe, spawn ffmpeg, follow progress, report outcome.

    Raises a `CompressionError` subclass on every non-success path, including
    `Cancelled` when the context was cancelled at any point before or during
    the encoder's exit.
    """

    def __init__(
        self,
        binary: EncoderBinary,
        probe: MetadataProbe,
        supervisor: Optional[ProcessSupervisor] = None,
        progress_epsilon: float = 0.005,
        read_size: int = 4096,
        stats_period: float = 0.5,
        min_free_bytes: int = 0,
        reader_join_timeout: float = 5.0,
        debug: bool = False,
    ):
        self.binary = binary
        self.probe = probe
        self.supervisor = supervisor or ProcessSupervisor()
        self.progress_epsilon = progress_epsilon
        self.read_size = read_size
        self.stats_period = stats_period
        self.min_free_bytes = min_free_bytes
        self.reader_join_timeout = reader_join_timeout
        self.debug = debug
        self.logger = logging.getLogger(__name__)

    def build_command(self, source: Path, destination: Path, settings: CompressionSettings) -> List[str]:
        """Constructs the ffmpeg command line arguments."""
        cmd = [str(self.binary.path), "-hide_banner", "-i", str(source)]

        hw_encoder = settings.codec.hardware_encoder
        hw_available = False
        if settings.use_hardware_acceleration and hw_encoder:
            hw_available = self.binary.supports(hw_encoder)
            if hw_available:
                self.logger.info(f"Using hardware acceleration with {hw_encoder}")
            else:
                self.logger.warning(
                    f"Hardware encoder {hw_encoder} not available. "
                    f"Falling back to software {settings.codec.value}"
                )
        cmd.extend(settings.video_args(hardware_available=hw_available))
        cmd.extend(settings.audio_args)

        cmd.extend([
            "-progress", "pipe:2",  # machine-readable progress on stderr
            "-stats_period", str(self.stats_period),
            "-y",  # Overwrite output files
            str(destination),
        ])
        return cmd

    def check_paths(self, source: Path, destination: Path) -> None:
        if not source.exists():
            raise NotFound(str(source))
        if not os.access(source, os.R_OK):
            raise PermissionDenied(str(source))

        output_dir = destination.parent
        if not output_dir.is_dir():
            raise OutputPathError(str(output_dir))
        if not os.access(output_dir, os.W_OK):
            raise PermissionDenied(str(output_dir))

        if self.min_free_bytes > 0:
            try:
                free = shutil.disk_usage(output_dir).free
            except OSError as e:
                raise map_exception(e)
            if free < self.min_free_bytes:
                raise InsufficientSpace(f"{free} bytes free in {output_dir}")

    def compress(
        self,
        source: Path,
        destination: Path,
        settings: CompressionSettings,
        context: OperationContext,
        on_progress: Optional[ProgressCallback] = None,
        duration: Optional[float] = None,
    ) -> int:
        """Executes the compression process; returns the output size in bytes."""
        source, destination = Path(source), Path(destination)
        filename = source.name
        start_time = time.monotonic()

        self.check_paths(source, destination)
        if not duration or duration <= 0:
            duration = self.probe.probe(source).duration

        cmd = self.build_command(source, destination, settings)
        self.logger.info(f"FFMPEG_START: {filename} (codec={settings.codec.value}, crf={settings.crf})")
        if self.debug:
            self.logger.debug(f"FFMPEG_CMD: {' '.join(cmd)}")

        handle = self.supervisor.start(cmd, context)
        succeeded = False
        try:
            monitor = ProgressMonitor(
                handle.stderr,
                context,
                duration,
                on_progress,
                epsilon=self.progress_epsilon,
                read_size=self.read_size,
            )
            reader = threading.Thread(target=monitor.run, name=f"vsz-progress-{handle.pid}", daemon=True)
            reader.start()

            outcome = context.wait()
            reader.join(self.reader_join_timeout)
            elapsed = time.monotonic() - start_time

            if outcome.cancelled:
                self.logger.info(f"FFMPEG_END: {filename} status=cancelled elapsed={elapsed:.2f}s")
                raise Cancelled(filename)
            if outcome.returncode != 0:
                self.logger.info(
                    f"FFMPEG_END: {filename} status=failed code={outcome.returncode} elapsed={elapsed:.2f}s"
                )
                detail = f"ffmpeg exited with code {outcome.returncode}"
                if monitor.diagnostics:
                    detail = f"{detail}: {monitor.diagnostics}"
                raise CompressionFailed(detail)

            monitor.complete(outcome.returncode)
            succeeded = True
            self.logger.info(f"FFMPEG_END: {filename} status=completed elapsed={elapsed:.2f}s")
        finally:
            self.supervisor.release(handle)
            if not succeeded:
                self._remove_partial(destination)

        try:
            return destination.stat().st_size
        except OSError as e:
            raise map_exception(e)

    def cancel(self, context: OperationContext) -> None:
        self.supervisor.cancel(context)

    def _remove_partial(self, destination: Path) -> None:
        try:
            if destination.exists():
                destination.unlink()
                self.logger.debug(f"Removed partial output {destination.name}")
        except OSError as e:
            self.logger.warning(f"Failed to remove partial output {destination}: {e}")
