import subprocess
import json
import logging
import re
from pathlib import Path
from typing import Dict, Any, List, Optional
from vsz.domain.errors import EncoderNotFound, InvalidInput, NotFound, map_exception
from vsz.domain.models import VideoInfo
from vsz.infrastructure.metadata_cache import CacheKey, MetadataCache

DEFAULT_FRAME_RATE = 30.0

# Human-readable banner printed by `ffmpeg -i`, used when ffprobe is missing
_DURATION_RE = re.compile(r"Duration: (\d{2}):(\d{2}):(\d{2})\.(\d{2})")
_VIDEO_RE = re.compile(
    r"Stream #\d+:\d+[^\n]*?: Video: ([^,\n]+)[^\n]*?\b(\d{2,5})x(\d{2,5})\b[^\n]*?(\d+(?:\.\d+)?) fps"
)
_AUDIO_RE = re.compile(r"Audio: ([^,\s]+)")


class MetadataProbe:
    """Extracts video info with ffprobe, caching results per file version.

    When ffprobe is not available the encoder itself is run in a null-output
    mode and its banner is parsed instead. That path is best effort: it has no
    reliable bitrate and depends on free-form text.
    """

    def __init__(
        self,
        ffprobe_path: Optional[Path],
        ffmpeg_path: Optional[Path] = None,
        cache: Optional[MetadataCache] = None,
        timeout: float = 10.0,
        analyze_duration_us: int = 1_000_000,
        probe_size_bytes: int = 5_000_000,
    ):
        self.ffprobe_path = Path(ffprobe_path) if ffprobe_path else None
        self.ffmpeg_path = Path(ffmpeg_path) if ffmpeg_path else None
        self.cache = cache if cache is not None else MetadataCache()
        self.timeout = timeout
        self.analyze_duration_us = analyze_duration_us
        self.probe_size_bytes = probe_size_bytes
        self.logger = logging.getLogger(__name__)

    @property
    def has_structured_output(self) -> bool:
        return self.ffprobe_path is not None and self.ffprobe_path.exists()

    @staticmethod
    def cache_key(path: Path) -> CacheKey:
        """(path, size, mtime) so any mutation of the file misses the cache."""
        try:
            st = path.stat()
        except FileNotFoundError:
            raise NotFound(str(path))
        except OSError as e:
            raise map_exception(e)
        return (str(path.absolute()), st.st_size, st.st_mtime_ns)

    def probe(self, path: Path) -> VideoInfo:
        path = Path(path)
        if not path.exists():
            raise NotFound(str(path))

        key = self.cache_key(path)
        cached = self.cache.get(key)
        if cached is not None:
            self.logger.debug(f"PROBE_CACHE_HIT: {path.name}")
            return cached

        if self.has_structured_output:
            result = self._run(self._ffprobe_command(path), path)
            if result.returncode != 0:
                detail = (result.stderr or "").strip() or f"ffprobe exited with code {result.returncode}"
                self.logger.error(f"PROBE_FAILED: {path.name} ({detail})")
                raise InvalidInput(f"Failed to extract metadata: {detail}")
            info = self.parse_probe_output(result.stdout)
        elif self.ffmpeg_path is not None:
            self.logger.warning(f"PROBE_FALLBACK: ffprobe unavailable, parsing ffmpeg banner for {path.name}")
            result = self._run(self._fallback_command(path), path)
            info = self.parse_encoder_banner(result.stderr or "")
        else:
            raise EncoderNotFound("neither ffprobe nor ffmpeg is configured")

        self.cache.put(key, info)
        self.logger.info(
            f"PROBE_OK: {path.name} {info.width}x{info.height} "
            f"{info.frame_rate:.2f}fps duration={info.duration:.2f}s"
        )
        return info

    def get_quick_info(self, path: Path) -> VideoInfo:
        """Size-only placeholder for when full analysis would be too slow."""
        path = Path(path)
        if not path.exists():
            raise NotFound(str(path))
        try:
            size = path.stat().st_size
        except OSError as e:
            raise map_exception(e)
        return VideoInfo(
            duration=0.0,
            width=0,
            height=0,
            frame_rate=0.0,
            bitrate=size * 8,
            has_audio=True,
            audio_codec=None,
            video_codec=path.suffix.lstrip(".").lower() or None,
        )

    def clear_cache(self) -> None:
        self.cache.clear()

    def _ffprobe_command(self, path: Path) -> List[str]:
        return [
            str(self.ffprobe_path),
            "-v", "quiet",
            "-print_format", "json",
            "-show_format",
            "-show_streams",
            "-analyzeduration", str(self.analyze_duration_us),
            "-probesize", str(self.probe_size_bytes),
            "-fflags", "+genpts",
            str(path),
        ]

    def _fallback_command(self, path: Path) -> List[str]:
        return [
            str(self.ffmpeg_path),
            "-hide_banner",
            "-analyzeduration", str(self.analyze_duration_us),
            "-probesize", str(self.probe_size_bytes),
            "-i", str(path),
            "-t", "0.1",
            "-f", "null",
            "-",
        ]

    def _run(self, cmd: List[str], path: Path) -> subprocess.CompletedProcess:
        try:
            # run() kills the child itself when the timeout expires
            return subprocess.run(cmd, capture_output=True, text=True, timeout=self.timeout)
        except subprocess.TimeoutExpired:
            self.logger.warning(f"PROBE_TIMEOUT: {path.name} after {self.timeout:.0f}s, process terminated")
            raise InvalidInput("Metadata extraction timeout - file may be corrupted or too large")
        except OSError as e:
            self.logger.error(f"PROBE_SPAWN_FAILED: {cmd[0]}: {e}")
            raise InvalidInput(f"Failed to run metadata extraction: {e}")

    # --- structured output -------------------------------------------------

    @staticmethod
    def _to_float(value: Any) -> float:
        try:
            return float(value)
        except (TypeError, ValueError):
            return 0.0

    @staticmethod
    def _to_int(value: Any) -> int:
        try:
            return int(float(value))
        except (TypeError, ValueError):
            return 0

    @classmethod
    def _parse_duration_tag(cls, value: Any) -> float:
        if value is None:
            return 0.0
        text = str(value).strip()
        if not text:
            return 0.0
        try:
            return float(text)
        except ValueError:
            pass
        if ":" in text:
            parts = text.split(":")
            if len(parts) in (2, 3):
                try:
                    parts_f = [float(p) for p in parts]
                except ValueError:
                    return 0.0
                if len(parts_f) == 2:
                    minutes, seconds = parts_f
                    return minutes * 60 + seconds
                hours, minutes, seconds = parts_f
                return hours * 3600 + minutes * 60 + seconds
        return 0.0

    @classmethod
    def _parse_time_base_duration(cls, duration_ts: Any, time_base: Any) -> float:
        if duration_ts is None or time_base is None:
            return 0.0
        base = cls.parse_rate(time_base)
        ticks = cls._to_float(duration_ts)
        if base is None or ticks <= 0:
            return 0.0
        return ticks * base

    @staticmethod
    def parse_rate(value: Any) -> Optional[float]:
        """Parses "num/den" or a plain number; None when missing or not positive."""
        if value is None:
            return None
        text = str(value).strip()
        if not text:
            return None
        try:
            if "/" in text:
                num_text, den_text = text.split("/", 1)
                num, den = float(num_text), float(den_text)
                if den == 0:
                    return None
                rate = num / den
            else:
                rate = float(text)
        except ValueError:
            return None
        return rate if rate > 0 else None

    @classmethod
    def _resolve_duration(cls, fmt: Dict[str, Any], video: Dict[str, Any]) -> float:
        # format.duration, format tags, stream.duration, stream tags, duration_ts/time_base
        duration = cls._to_float(fmt.get("duration"))
        if duration <= 0:
            tags = fmt.get("tags", {}) or {}
            duration = cls._parse_duration_tag(tags.get("DURATION") or tags.get("duration"))
        if duration <= 0:
            duration = cls._to_float(video.get("duration"))
        if duration <= 0:
            tags = video.get("tags", {}) or {}
            duration = cls._parse_duration_tag(tags.get("DURATION") or tags.get("duration"))
        if duration <= 0:
            duration = cls._parse_time_base_duration(video.get("duration_ts"), video.get("time_base"))
        return max(duration, 0.0)

    @classmethod
    def parse_probe_output(cls, text: str) -> VideoInfo:
        """Builds VideoInfo from ffprobe's JSON document."""
        if not text or not text.strip():
            raise InvalidInput("No metadata received from video file")
        try:
            data = json.loads(text)
        except json.JSONDecodeError as e:
            raise InvalidInput(f"Failed to parse video metadata: {e}")
        if not isinstance(data, dict):
            raise InvalidInput("Invalid JSON format in metadata")

        fmt = data.get("format")
        streams = data.get("streams")
        if not isinstance(fmt, dict):
            raise InvalidInput("No format information found in metadata")
        if not isinstance(streams, list) or not streams:
            raise InvalidInput("No streams found in video file")

        # First stream of each type wins; later ones are ignored
        video = next((s for s in streams if isinstance(s, dict) and s.get("codec_type") == "video"), None)
        audio = next((s for s in streams if isinstance(s, dict) and s.get("codec_type") == "audio"), None)
        if video is None:
            raise InvalidInput("No video stream found in file")

        frame_rate = (
            cls.parse_rate(video.get("r_frame_rate"))
            or cls.parse_rate(video.get("avg_frame_rate"))
            or DEFAULT_FRAME_RATE
        )
        bitrate = cls._to_int(fmt.get("bit_rate")) or cls._to_int(video.get("bit_rate"))

        return VideoInfo(
            duration=cls._resolve_duration(fmt, video),
            width=cls._to_int(video.get("width")),
            height=cls._to_int(video.get("height")),
            frame_rate=frame_rate,
            bitrate=bitrate,
            has_audio=audio is not None,
            audio_codec=audio.get("codec_name") if audio else None,
            video_codec=video.get("codec_name"),
        )

    # --- banner fallback -----------------------------------------------------

    @staticmethod
    def parse_encoder_banner(text: str) -> VideoInfo:
        """Best-effort parse of `ffmpeg -i` diagnostic text."""
        if not text.strip():
            raise InvalidInput("No output received from ffmpeg")
        if "Video:" not in text:
            raise InvalidInput("No video stream found in file")

        duration = 0.0
        match = _DURATION_RE.search(text)
        if match:
            hours, minutes, seconds, centis = (int(g) for g in match.groups())
            duration = hours * 3600 + minutes * 60 + seconds + centis / 100.0

        width = height = 0
        frame_rate = DEFAULT_FRAME_RATE
        video_codec = None
        match = _VIDEO_RE.search(text)
        if match:
            codec_text = match.group(1).strip()
            video_codec = codec_text.split()[0] if codec_text else None
            width, height = int(match.group(2)), int(match.group(3))
            frame_rate = float(match.group(4)) or DEFAULT_FRAME_RATE

        audio_codec = None
        has_audio = "Audio:" in text
        if has_audio:
            match = _AUDIO_RE.search(text)
            audio_codec = match.group(1) if match else None

        return VideoInfo(
            duration=duration,
            width=width,
            height=height,
            frame_rate=frame_rate,
            bitrate=0,
            has_audio=has_audio,
            audio_codec=audio_codec,
            video_codec=video_codec,
        )
