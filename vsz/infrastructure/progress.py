import codecs
import logging
import re
from collections import deque
from typing import IO, Callable, Deque, Optional
from vsz.infrastructure.process import OperationContext

# `-progress` key/value output, in microseconds despite the _ms name
_OUT_TIME_RE = re.compile(r"^out_time_(?:ms|us)=(\d+)\s*$")
# Regex to parse 'time=00:00:00.00' from ffmpeg stats output
_TIME_RE = re.compile(r"time=(\d+):(\d+):(\d+(?:\.\d+)?)")
_LINE_SPLIT_RE = re.compile(r"\r\n|\r|\n")
# `key=value` pairs from -progress carry no diagnostic value
_KEY_VALUE_RE = re.compile(r"^[\w.]+=\S*$")

ProgressCallback = Callable[[float], None]


def parse_progress_line(line: str, total_duration: Optional[float]) -> Optional[float]:
    """Maps one line of encoder diagnostics to a fraction in [0, 1].

    Returns None when the line carries no progress or the total duration is
    unknown.
    """
    if not total_duration or total_duration <= 0:
        return None
    text = line.strip()

    match = _OUT_TIME_RE.match(text)
    if match:
        micros = int(match.group(1))
        if micros > 0:
            return min(1.0, (micros / 1_000_000.0) / total_duration)

    match = _TIME_RE.search(text)
    if match:
        h, m, s = map(float, match.groups())
        current_seconds = h * 3600 + m * 60 + s
        return max(0.0, min(1.0, current_seconds / total_duration))
    return None


class ProgressMonitor:
    """Reads the encoder's diagnostic stream and forwards throttled progress.

    Reading stops at end of stream (the pipe closes when the process exits) or
    as soon as the context is no longer live. Reported values never decrease.
    """

    def __init__(
        self,
        stream: IO[bytes],
        context: OperationContext,
        total_duration: Optional[float],
        on_progress: Optional[ProgressCallback] = None,
        epsilon: float = 0.005,
        read_size: int = 4096,
        diagnostics_lines: int = 20,
    ):
        self.stream = stream
        self.context = context
        self.total_duration = total_duration
        self.on_progress = on_progress
        self.epsilon = epsilon
        self.read_size = read_size
        self.last_progress = 0.0
        self._tail: Deque[str] = deque(maxlen=diagnostics_lines)
        self.logger = logging.getLogger(__name__)

    @property
    def diagnostics(self) -> str:
        """Last non-progress lines of encoder output, for failure reports."""
        return "\n".join(self._tail)

    def run(self) -> None:
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        buffer = ""
        while self.context.is_live:
            try:
                chunk = self.stream.read1(self.read_size)
            except (OSError, ValueError) as e:
                # Pipe closed under us during cleanup
                self.logger.debug(f"PROGRESS_READ_STOPPED: {e}")
                break
            if not chunk:
                break
            buffer += decoder.decode(chunk)
            lines = _LINE_SPLIT_RE.split(buffer)
            # Last element is an incomplete line (or empty) kept for the next chunk
            buffer = lines.pop()
            for line in lines:
                if not self._handle_line(line):
                    break

        if buffer and self.context.is_live:
            self._handle_line(buffer + decoder.decode(b"", final=True))
        self.logger.debug(f"PROGRESS_END: last={self.last_progress:.3f} {self.context.label}")

    def complete(self, returncode: Optional[int]) -> None:
        """Emits a final 100% after a clean exit that stopped short of it."""
        if returncode == 0 and self.context.is_live and self.last_progress < 1.0:
            self._emit(1.0)

    def _handle_line(self, line: str) -> bool:
        if not line.strip():
            return True
        progress = parse_progress_line(line, self.total_duration)
        if progress is None:
            if not _KEY_VALUE_RE.match(line.strip()):
                self._tail.append(line.strip())
            return True
        if progress - self.last_progress > self.epsilon:
            if not self.context.is_live:
                return False
            self._emit(progress)
        return True

    def _emit(self, progress: float) -> None:
        self.last_progress = progress
        if self.on_progress is not None:
            self.on_progress(progress)
