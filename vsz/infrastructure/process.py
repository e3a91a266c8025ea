"""Encoder subprocess supervision and cancellation.

Each compression runs under an `OperationContext`: a per-job object that owns
the liveness flag, the attached process and a one-shot outcome cell. The
waiter thread (process exit) and `ProcessSupervisor.cancel()` both go
through the context lock, so whichever path reaches it first decides the
outcome and the other becomes a no-op.

Cancellation escalation, each step skipped once the process has exited:

1. SIGTERM, then wait `term_grace` seconds
2. SIGINT, then wait `interrupt_grace` seconds
3. SIGKILL

Encoders run in their own session, so a terminal Ctrl+C reaches only this
process and cancellation stays the single path that signals them.
"""

import logging
import signal
import subprocess
import threading
from concurrent.futures import Future
from dataclasses import dataclass
from typing import IO, List, Optional, Tuple
from vsz.domain.errors import Cancelled, CompressionFailed


@dataclass(frozen=True)
class ProcessOutcome:
    """Authoritative result of one supervised run."""

    returncode: Optional[int]
    cancelled: bool

    @property
    def succeeded(self) -> bool:
        return not self.cancelled and self.returncode == 0


class OperationContext:
    """Per-job liveness flag, process slot and one-shot outcome."""

    def __init__(self, label: str = ""):
        self.label = label
        self._lock = threading.Lock()
        self._cancelled = False
        self._process: Optional[subprocess.Popen] = None
        self._outcome: "Future[ProcessOutcome]" = Future()

    @property
    def is_live(self) -> bool:
        with self._lock:
            return not self._cancelled

    @property
    def cancelled(self) -> bool:
        with self._lock:
            return self._cancelled

    @property
    def pid(self) -> Optional[int]:
        with self._lock:
            return self._process.pid if self._process is not None else None

    @property
    def resolved(self) -> bool:
        return self._outcome.done()

    def attach(self, process: subprocess.Popen) -> bool:
        """Binds the spawned process; False when cancellation already won."""
        with self._lock:
            if self._cancelled:
                return False
            self._process = process
            return True

    def mark_cancelled(self) -> Tuple[bool, Optional[subprocess.Popen]]:
        """Flips the flag once. Returns (first_request, attached_process)."""
        with self._lock:
            if self._cancelled:
                return False, None
            self._cancelled = True
            return True, self._process

    def complete(self, returncode: Optional[int]) -> bool:
        """Resolves the outcome at most once; later calls are no-ops."""
        with self._lock:
            if self._outcome.done():
                return False
            self._outcome.set_result(ProcessOutcome(returncode=returncode, cancelled=self._cancelled))
            return True

    def wait(self, timeout: Optional[float] = None) -> ProcessOutcome:
        return self._outcome.result(timeout=timeout)


@dataclass
class ProcessHandle:
    process: subprocess.Popen
    context: OperationContext
    waiter: threading.Thread

    @property
    def pid(self) -> int:
        return self.process.pid

    @property
    def stderr(self) -> Optional[IO[bytes]]:
        return self.process.stderr

    def is_running(self) -> bool:
        return self.process.poll() is None


class ProcessSupervisor:
    """Spawns, watches and terminates encoder subprocesses."""

    def __init__(self, term_grace: float = 1.0, interrupt_grace: float = 0.5):
        self.term_grace = term_grace
        self.interrupt_grace = interrupt_grace
        self.logger = logging.getLogger(__name__)

    def start(self, command: List[str], context: OperationContext) -> ProcessHandle:
        """Spawns `command` under `context`.

        Raises Cancelled if the context was cancelled before the process could
        be attached, CompressionFailed if the process cannot be spawned.
        """
        if not context.is_live:
            context.complete(None)
            raise Cancelled(context.label)

        try:
            process = subprocess.Popen(
                command,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.PIPE,
                start_new_session=True,
            )
        except (OSError, ValueError) as e:
            self.logger.error(f"PROCESS_SPAWN_FAILED: {command[0]}: {e}")
            context.complete(None)
            raise CompressionFailed(f"Process execution failed: {e}")

        if not context.attach(process):
            # cancel() ran between the liveness check and the spawn
            self.logger.info(f"PROCESS_CANCELLED_AT_START: pid={process.pid} {context.label}")
            self._escalate(process, context)
            process.wait()
            self._close(process)
            context.complete(process.returncode)
            raise Cancelled(context.label)

        waiter = threading.Thread(
            target=self._wait_for_exit,
            args=(process, context),
            name=f"vsz-wait-{process.pid}",
            daemon=True,
        )
        waiter.start()
        self.logger.debug(f"PROCESS_START: pid={process.pid} {context.label}")
        return ProcessHandle(process=process, context=context, waiter=waiter)

    def cancel(self, context: OperationContext) -> None:
        """Requests cancellation. Idempotent, thread-safe, never raises, never blocks."""
        first, process = context.mark_cancelled()
        if not first:
            self.logger.debug(f"CANCEL_IGNORED: already requested {context.label}")
            return

        if process is None:
            self.logger.info(f"CANCEL: no process attached {context.label}")
            context.complete(None)
            return

        if process.poll() is not None:
            self.logger.info(f"CANCEL: pid={process.pid} already exited")
            return

        threading.Thread(
            target=self._escalate,
            args=(process, context),
            name=f"vsz-cancel-{process.pid}",
            daemon=True,
        ).start()

    def release(self, handle: ProcessHandle, timeout: Optional[float] = None) -> None:
        """Guaranteed cleanup: stops a still-running process and closes its pipe."""
        if handle.is_running():
            self.cancel(handle.context)
        handle.waiter.join(timeout)
        if not handle.is_running():
            self._close(handle.process)

    def _wait_for_exit(self, process: subprocess.Popen, context: OperationContext) -> None:
        returncode = process.wait()
        if context.complete(returncode):
            self.logger.info(
                f"PROCESS_EXIT: pid={process.pid} code={returncode} "
                f"cancelled={context.cancelled} {context.label}"
            )

    def _escalate(self, process: subprocess.Popen, context: OperationContext) -> None:
        steps = (
            ("SIGTERM", signal.SIGTERM, self.term_grace),
            ("SIGINT", signal.SIGINT, self.interrupt_grace),
            ("SIGKILL", getattr(signal, "SIGKILL", signal.SIGTERM), None),
        )
        for name, signum, grace in steps:
            if process.poll() is not None:
                return
            self.logger.info(f"CANCEL_ESCALATE: {name} -> pid={process.pid} {context.label}")
            try:
                # send_signal() re-polls and skips a reaped process
                process.send_signal(signum)
            except (OSError, ValueError) as e:
                self.logger.warning(f"CANCEL_SIGNAL_FAILED: {name} pid={process.pid}: {e}")
                return
            if grace is None:
                return
            try:
                process.wait(timeout=grace)
                return
            except subprocess.TimeoutExpired:
                continue

    def _close(self, process: subprocess.Popen) -> None:
        if process.stderr is not None:
            try:
                process.stderr.close()
            except OSError as e:
                self.logger.debug(f"PIPE_CLOSE_FAILED: pid={process.pid}: {e}")
