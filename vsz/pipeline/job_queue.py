"""Sequential compression queue and job state machine.

Jobs move through `PENDING -> COMPRESSING -> {COMPLETED | FAILED | PENDING}`;
the last transition happens only on cancellation. A single worker thread owns
the queue loop and runs at most one job at a time, so at most one job is ever
COMPRESSING.

Key responsibilities:
- Keep the job list (insertion ordered) and the FIFO of queued ids
- Probe metadata in the background as files are added
- Run each queued job through the CompressionEngine under its own
  OperationContext and route the outcome
- Aggregate failures and surface them once, when the queue drains
- Cancel the running job and reset it to PENDING on `cancel_all()`

Events are published outside the queue lock; subscribers may call back into
the queue from their handlers.
"""

import logging
import threading
from collections import deque
from concurrent.futures import ThreadPoolExecutor
from functools import partial
from pathlib import Path
from typing import Callable, Deque, Dict, Iterable, List, Optional
from vsz.domain.errors import Cancelled, CompressionError, map_exception
from vsz.domain.events import (
    ActionMessage,
    BatchErrorEntry,
    Event,
    JobAdded,
    JobCancelled,
    JobCompleted,
    JobFailed,
    JobMetadataUpdated,
    JobProgressUpdated,
    JobRemoved,
    JobStarted,
    QueueDrained,
)
from vsz.domain.models import CompressionJob, CompressionSettings, JobStatus
from vsz.infrastructure.event_bus import EventBus
from vsz.infrastructure.ffmpeg import CompressionEngine
from vsz.infrastructure.ffprobe import MetadataProbe
from vsz.infrastructure.file_naming import OutputNamer
from vsz.infrastructure.process import OperationContext

OutputNaming = Callable[[Path], Path]


class JobQueue:
    """Owns the job list and drives compressions one at a time."""

    def __init__(
        self,
        engine: CompressionEngine,
        probe: MetadataProbe,
        event_bus: EventBus,
        settings: Optional[CompressionSettings] = None,
        output_naming: Optional[OutputNaming] = None,
        probe_workers: int = 2,
    ):
        self.engine = engine
        self.probe = probe
        self.event_bus = event_bus
        self.output_naming = output_naming or OutputNamer()
        self.logger = logging.getLogger(__name__)

        self._lock = threading.RLock()
        self._settings = settings or CompressionSettings()
        self._jobs: Dict[str, CompressionJob] = {}
        self._queue: Deque[str] = deque()
        self._worker: Optional[threading.Thread] = None
        self._active_id: Optional[str] = None
        self._active_context: Optional[OperationContext] = None
        self._batch_errors: List[BatchErrorEntry] = []
        self._run_completed = 0
        self._run_failed = 0
        self._idle = threading.Event()
        self._idle.set()
        self._closed = False
        self._probe_pool = ThreadPoolExecutor(max_workers=probe_workers, thread_name_prefix="vsz-probe")

    # ------------------------------------------------------------------
    # Job list

    @property
    def jobs(self) -> List[CompressionJob]:
        with self._lock:
            return list(self._jobs.values())

    def get(self, job_id: str) -> Optional[CompressionJob]:
        with self._lock:
            return self._jobs.get(job_id)

    def add_files(self, paths: Iterable[Path], analyze: bool = True) -> List[CompressionJob]:
        """Adds files as PENDING jobs; paths already in the list are skipped.

        Each new job gets a size-only placeholder immediately; with `analyze`
        the full probe runs in the background and a probe failure marks the
        job FAILED.
        """
        added: List[CompressionJob] = []
        events: List[Event] = []
        with self._lock:
            known = {job.source_path for job in self._jobs.values()}
            for raw in paths:
                path = Path(raw).expanduser().resolve()
                if path in known:
                    self.logger.info(f"JOB_DUPLICATE: {path}")
                    events.append(ActionMessage(message=f"Already in list: {path.name}"))
                    continue
                try:
                    size = path.stat().st_size
                except OSError as e:
                    self.logger.warning(f"JOB_ADD_SKIPPED: {path}: {e}")
                    events.append(ActionMessage(message=f"Cannot read {path.name}: {e.strerror or e}"))
                    continue

                job = CompressionJob.for_path(path, size)
                job.info = self.probe.get_quick_info(path)
                self._jobs[job.id] = job
                known.add(path)
                added.append(job)
                events.append(JobAdded(job=job))
                self.logger.info(f"JOB_ADDED: {job.name} ({size} bytes) id={job.id}")

        self._publish(events)
        if analyze:
            for job in added:
                self._probe_pool.submit(self._analyze, job.id, job.source_path)
        return added

    def _analyze(self, job_id: str, path: Path) -> None:
        try:
            info = self.probe.probe(path)
        except Exception as e:
            error = map_exception(e)
            if not isinstance(e, CompressionError):
                self.logger.exception(f"PROBE_CRASH: {path.name}")
            with self._lock:
                job = self._jobs.get(job_id)
                if job is None or job.status != JobStatus.PENDING:
                    return
                job.status = JobStatus.FAILED
                job.error = error
                self._discard_queued(job_id)
            self.logger.warning(f"PROBE_FAILED: {path.name}: {error.message}")
            self._publish([JobFailed(
                job=job,
                error_message=error.message,
                error_kind=error.kind,
                retryable=error.retryable,
            )])
            return

        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                return
            job.info = info
        self._publish([JobMetadataUpdated(job=job)])

    def remove(self, job_id: str) -> bool:
        """Removes a job; refused while it is COMPRESSING."""
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                return False
            if job.status == JobStatus.COMPRESSING:
                self.logger.info(f"JOB_REMOVE_REFUSED: {job.name} is compressing")
                event: Event = ActionMessage(message=f"Cannot remove {job.name} while compressing", job_id=job_id)
                removed = False
            else:
                del self._jobs[job_id]
                self._discard_queued(job_id)
                event = JobRemoved(job_id=job_id, path=job.source_path)
                removed = True
        self._publish([event])
        return removed

    def clear(self) -> int:
        """Removes every job that is not currently compressing."""
        with self._lock:
            ids = [job_id for job_id, job in self._jobs.items() if job.status != JobStatus.COMPRESSING]
        return sum(1 for job_id in ids if self.remove(job_id))

    # ------------------------------------------------------------------
    # Settings

    @property
    def settings(self) -> CompressionSettings:
        with self._lock:
            return self._settings

    def update_settings(self, settings: CompressionSettings) -> None:
        """Applies to jobs dequeued from now on; a running job keeps its snapshot."""
        with self._lock:
            self._settings = settings
        self.logger.info(
            f"SETTINGS: codec={settings.codec.value} crf={settings.crf} "
            f"hw={settings.use_hardware_acceleration} copy_audio={settings.copy_audio}"
        )

    # ------------------------------------------------------------------
    # Queueing

    def compress(self, job_id: str) -> bool:
        """Queues a single PENDING job and starts processing if idle."""
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job.status != JobStatus.PENDING or job_id in self._queue:
                return False
            self._queue.append(job_id)
            self._ensure_worker()
        return True

    def enqueue_all(self) -> int:
        """Queues every PENDING job not already queued; returns how many were added."""
        with self._lock:
            count = 0
            for job_id, job in self._jobs.items():
                if job.status == JobStatus.PENDING and job_id not in self._queue:
                    self._queue.append(job_id)
                    count += 1
            if count:
                self._ensure_worker()
        self.logger.info(f"QUEUE_ENQUEUED: {count} job(s)")
        return count

    def compress_all(self) -> int:
        """Starts a new batch: clears the previous batch errors when idle, then queues everything pending."""
        with self._lock:
            if self._worker is None:
                self._batch_errors.clear()
            return self.enqueue_all()

    def retry(self, job_id: str, force: bool = False) -> bool:
        """Resets a FAILED job to PENDING and queues it.

        Non-retryable failures are refused unless `force` is set.
        """
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job.status != JobStatus.FAILED:
                return False
            if not force and not job.is_retryable:
                self.logger.info(f"RETRY_REFUSED: {job.name} ({job.error.kind if job.error else 'no error'})")
                return False
            job.status = JobStatus.PENDING
            job.error = None
            job.progress = 0.0
            self.logger.info(f"RETRY: {job.name}")
            return self.compress(job_id)

    def retry_all_failed(self) -> int:
        with self._lock:
            ids = [job.id for job in self._jobs.values() if job.is_retryable]
            return sum(1 for job_id in ids if self.retry(job_id))

    def cancel_all(self) -> None:
        """Clears the queue, cancels the running job and resets it to PENDING.

        Safe to call any number of times from any thread; never blocks on the
        encoder's exit.
        """
        events: List[Event] = []
        with self._lock:
            dropped = len(self._queue)
            self._queue.clear()
            context = self._active_context
            self._active_context = None
            self._active_id = None
            for job in self._jobs.values():
                if job.status == JobStatus.COMPRESSING:
                    job.status = JobStatus.PENDING
                    job.progress = 0.0
                    events.append(JobCancelled(job=job))

        if context is not None:
            self.engine.cancel(context)
        if events or dropped:
            self.logger.info(f"QUEUE_CANCEL_ALL: reset={len(events)} dropped={dropped}")
        self._publish(events)

    # ------------------------------------------------------------------
    # Status

    @property
    def is_processing(self) -> bool:
        with self._lock:
            return self._active_id is not None

    @property
    def active_job_id(self) -> Optional[str]:
        with self._lock:
            return self._active_id

    @property
    def queued_ids(self) -> List[str]:
        with self._lock:
            return list(self._queue)

    @property
    def batch_errors(self) -> List[BatchErrorEntry]:
        with self._lock:
            return list(self._batch_errors)

    def clear_batch_errors(self) -> None:
        with self._lock:
            self._batch_errors.clear()

    def count(self, status: JobStatus) -> int:
        with self._lock:
            return sum(1 for job in self._jobs.values() if job.status == status)

    @property
    def total_original_size(self) -> int:
        with self._lock:
            return sum(job.original_size for job in self._jobs.values())

    @property
    def total_compressed_size(self) -> int:
        with self._lock:
            return sum(job.compressed_size or 0 for job in self._jobs.values())

    @property
    def overall_compression_ratio(self) -> Optional[float]:
        """Space saved over completed jobs, in percent."""
        with self._lock:
            done = [job for job in self._jobs.values() if job.status == JobStatus.COMPLETED]
        original = sum(job.original_size for job in done)
        if not done or original <= 0:
            return None
        compressed = sum(job.compressed_size or 0 for job in done)
        return (1.0 - compressed / original) * 100.0

    def wait_until_idle(self, timeout: Optional[float] = None) -> bool:
        return self._idle.wait(timeout)

    def shutdown(self, timeout: Optional[float] = None) -> None:
        """Cancels everything, waits for the worker and stops background probes."""
        with self._lock:
            self._closed = True
        self.cancel_all()
        self._idle.wait(timeout)
        self._probe_pool.shutdown(wait=False, cancel_futures=True)
        self.logger.info("QUEUE_SHUTDOWN")

    # ------------------------------------------------------------------
    # Worker

    def _ensure_worker(self) -> None:
        # Caller holds self._lock
        if self._closed or self._worker is not None or not self._queue:
            return
        self._idle.clear()
        self._run_completed = 0
        self._run_failed = 0
        self._worker = threading.Thread(target=self._run, name="vsz-queue", daemon=True)
        self._worker.start()

    def _discard_queued(self, job_id: str) -> None:
        if job_id in self._queue:
            self._queue.remove(job_id)

    def _next_job(self):
        # Caller holds self._lock
        while self._queue:
            job_id = self._queue.popleft()
            job = self._jobs.get(job_id)
            if job is None or job.status != JobStatus.PENDING:
                continue
            context = OperationContext(label=job.name)
            job.status = JobStatus.COMPRESSING
            job.progress = 0.0
            job.error = None
            self._active_id = job_id
            self._active_context = context
            return job, context, self._settings
        return None, None, None

    def _run(self) -> None:
        drained: Optional[QueueDrained] = None
        try:
            while True:
                with self._lock:
                    job, context, settings = self._next_job()
                    if job is None:
                        drained = QueueDrained(
                            errors=list(self._batch_errors),
                            completed=self._run_completed,
                            failed=self._run_failed,
                        )
                        self._worker = None
                        break
                self._process(job, context, settings)
        finally:
            if drained is None:
                self._abandon_worker()

        self.logger.info(
            f"QUEUE_DRAINED: completed={drained.completed} failed={drained.failed} errors={len(drained.errors)}"
        )
        self._publish([drained])
        with self._lock:
            if self._worker is None:
                self._idle.set()

    def _abandon_worker(self) -> None:
        """Leaves the queue restartable after the worker loop died."""
        self.logger.error("QUEUE_WORKER_DIED")
        with self._lock:
            job = self._jobs.get(self._active_id) if self._active_id else None
            if job is not None and job.status == JobStatus.COMPRESSING:
                job.status = JobStatus.PENDING
                job.progress = 0.0
            self._active_id = None
            self._active_context = None
            if self._worker is threading.current_thread():
                self._worker = None
                self._idle.set()

    def _process(self, job: CompressionJob, context: OperationContext, settings: CompressionSettings) -> None:
        self.logger.info(f"JOB_START: {job.name} id={job.id}")

        size: Optional[int] = None
        error: Optional[CompressionError] = None
        destination: Optional[Path] = None
        try:
            self._publish([JobStarted(job=job)])
            destination = self.output_naming(job.source_path)
            size = self.engine.compress(
                job.source_path,
                destination,
                settings,
                context,
                on_progress=partial(self._on_progress, job.id, context),
                duration=job.duration or None,
            )
        except Cancelled:
            error = None
        except CompressionError as e:
            error = e
        except Exception as e:
            self.logger.exception(f"JOB_CRASH: {job.name}")
            error = map_exception(e)

        events = self._finish(job, context, settings, size, error, destination)
        self._publish(events)

    def _finish(
        self,
        job: CompressionJob,
        context: OperationContext,
        settings: CompressionSettings,
        size: Optional[int],
        error: Optional[CompressionError],
        destination: Optional[Path],
    ) -> List[Event]:
        with self._lock:
            if self._active_context is context:
                self._active_context = None
                self._active_id = None
            cancelled = context.cancelled or (size is None and error is None)

            if cancelled or job.status != JobStatus.COMPRESSING:
                # cancel_all() already reset the job; an output that won the race is discarded
                if size is not None and destination is not None:
                    self._discard_output(destination)
                if job.status == JobStatus.COMPRESSING:
                    job.status = JobStatus.PENDING
                    job.progress = 0.0
                    self.logger.info(f"JOB_CANCELLED: {job.name}")
                    return [JobCancelled(job=job)]
                self.logger.info(f"JOB_CANCELLED: {job.name}")
                return []

            if error is not None:
                job.status = JobStatus.FAILED
                job.error = error
                self._run_failed += 1
                self._batch_errors.append(BatchErrorEntry(
                    job_id=job.id,
                    name=job.name,
                    error_kind=error.kind,
                    error_message=error.message,
                    retryable=error.retryable,
                ))
                self.logger.error(f"JOB_FAILED: {job.name} [{error.code}] {error.message}")
                return [JobFailed(
                    job=job,
                    error_message=error.message,
                    error_kind=error.kind,
                    retryable=error.retryable,
                )]

            job.status = JobStatus.COMPLETED
            job.compressed_size = size
            job.output_path = destination
            job.progress = 1.0
            self._run_completed += 1

        size_increased = job.is_compressed_larger
        if size_increased:
            self.logger.warning(
                f"JOB_SIZE_INCREASED: {job.name} {job.original_size} -> {job.compressed_size} bytes"
            )
        self.logger.info(f"JOB_COMPLETED: {job.name} {job.original_size} -> {job.compressed_size} bytes")
        events: List[Event] = [JobCompleted(job=job, size_increased=size_increased)]
        if settings.delete_originals:
            message = self._delete_original(job)
            if message is not None:
                events.append(message)
        return events

    def _on_progress(self, job_id: str, context: OperationContext, progress: float) -> None:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None or self._active_context is not context or job.status != JobStatus.COMPRESSING:
                return
            if not context.is_live or progress <= job.progress:
                return
            job.progress = min(1.0, progress)
        self._publish([JobProgressUpdated(job=job, progress=job.progress)])

    def _delete_original(self, job: CompressionJob) -> Optional[ActionMessage]:
        try:
            job.source_path.unlink()
            self.logger.info(f"ORIGINAL_DELETED: {job.source_path}")
        except OSError as e:
            self.logger.warning(f"ORIGINAL_DELETE_FAILED: {job.source_path}: {e}")
            return ActionMessage(message=f"Could not delete {job.name}: {e}", job_id=job.id)
        return None

    def _discard_output(self, path: Path) -> None:
        try:
            path.unlink()
        except FileNotFoundError:
            return
        except OSError as e:
            self.logger.warning(f"OUTPUT_DISCARD_FAILED: {path}: {e}")

    def _publish(self, events: List[Event]) -> None:
        for event in events:
            self.event_bus.publish(event)
