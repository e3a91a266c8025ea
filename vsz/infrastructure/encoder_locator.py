import logging
import shutil
import subprocess
import threading
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Tuple
from vsz.domain.errors import EncoderNotFound

logger = logging.getLogger(__name__)

# Homebrew on Apple Silicon, Homebrew on Intel, distribution packages
DEFAULT_SEARCH_PATHS = [
    "/opt/homebrew/bin/ffmpeg",
    "/usr/local/bin/ffmpeg",
    "/usr/bin/ffmpeg",
]
BUNDLED_DIR = Path(__file__).resolve().parent.parent / "bin"

_resolved: Dict[Tuple[str, ...], "EncoderBinary"] = {}
_resolved_lock = threading.Lock()


class EncoderBinary:
    """A located, working ffmpeg binary and its sibling ffprobe."""

    def __init__(self, path: Path, probe_path: Optional[Path] = None, timeout: float = 10.0):
        self.path = Path(path)
        self.probe_path = probe_path if probe_path is not None else sibling_probe(self.path)
        self.timeout = timeout
        self._encoders: Optional[str] = None
        self._lock = threading.Lock()

    def supports(self, encoder_name: str) -> bool:
        """Whether `ffmpeg -encoders` lists `encoder_name` (queried once)."""
        with self._lock:
            if self._encoders is None:
                self._encoders = self._list_encoders()
            return encoder_name in self._encoders

    def _list_encoders(self) -> str:
        try:
            result = subprocess.run(
                [str(self.path), "-hide_banner", "-encoders"],
                capture_output=True,
                text=True,
                timeout=self.timeout,
            )
        except (OSError, subprocess.SubprocessError) as e:
            logger.warning(f"Failed to query encoders from {self.path}: {e}")
            return ""
        return result.stdout or ""

    def __repr__(self) -> str:
        return f"EncoderBinary(path={self.path!s}, probe_path={self.probe_path!s})"


def sibling_probe(ffmpeg_path: Path) -> Optional[Path]:
    """ffprobe usually ships next to ffmpeg; None when it does not."""
    candidate = ffmpeg_path.with_name(ffmpeg_path.name.replace("ffmpeg", "ffprobe"))
    if candidate != ffmpeg_path and candidate.exists():
        return candidate
    return None


def candidate_paths(
    explicit: Optional[str] = None,
    bundled_dir: Optional[Path] = None,
    search_paths: Optional[Iterable[str]] = None,
) -> List[Path]:
    """Prioritized, de-duplicated list: explicit, bundled, PATH, system locations."""
    bundled = Path(bundled_dir) if bundled_dir else BUNDLED_DIR
    ordered: List[Optional[str]] = [
        explicit,
        str(bundled / "ffmpeg"),
        str(bundled / "bin" / "ffmpeg"),
        shutil.which("ffmpeg"),
        *(search_paths if search_paths is not None else DEFAULT_SEARCH_PATHS),
    ]
    seen = set()
    candidates: List[Path] = []
    for entry in ordered:
        if not entry or entry in seen:
            continue
        seen.add(entry)
        candidates.append(Path(entry))
    return candidates


def responds_to_version(path: Path, timeout: float = 10.0) -> bool:
    try:
        result = subprocess.run(
            [str(path), "-version"],
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            timeout=timeout,
        )
    except (OSError, subprocess.SubprocessError) as e:
        logger.warning(f"Failed to test FFmpeg binary at {path}: {e}")
        return False
    return result.returncode == 0


def locate_encoder(
    explicit: Optional[str] = None,
    bundled_dir: Optional[Path] = None,
    search_paths: Optional[Iterable[str]] = None,
    timeout: float = 10.0,
) -> EncoderBinary:
    """Finds the first candidate that answers `-version` with exit code 0.

    The answer is remembered for the lifetime of the process; raises
    EncoderNotFound when no candidate works.
    """
    candidates = candidate_paths(explicit, bundled_dir, search_paths)
    key = tuple(str(c) for c in candidates)
    with _resolved_lock:
        if key in _resolved:
            return _resolved[key]

        for candidate in candidates:
            if not candidate.is_file():
                continue
            if responds_to_version(candidate, timeout):
                binary = EncoderBinary(candidate, timeout=timeout)
                logger.info(f"FFmpeg initialized: {binary}")
                _resolved[key] = binary
                return binary
            logger.warning(f"FFmpeg candidate failed to run: {candidate}")

    logger.error(f"No working FFmpeg binary found in: {', '.join(key)}")
    raise EncoderNotFound(", ".join(key))


def reset_cache() -> None:
    with _resolved_lock:
        _resolved.clear()
