from enum import Enum
from pathlib import Path
from typing import Any, List, Optional, Tuple
from uuid import uuid4
from pydantic import BaseModel, ConfigDict, Field, model_validator
from vsz.domain.errors import CompressionError


class JobStatus(str, Enum):
    PENDING = "PENDING"
    COMPRESSING = "COMPRESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"

    @property
    def is_finished(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)


class VideoCodec(str, Enum):
    H264 = "libx264"
    H265 = "libx265"

    @property
    def short_name(self) -> str:
        return "H.264" if self is VideoCodec.H264 else "H.265"

    @property
    def hardware_encoder(self) -> Optional[str]:
        """VideoToolbox encoder used when hardware acceleration is requested."""
        return "h264_videotoolbox" if self is VideoCodec.H264 else "hevc_videotoolbox"

    @property
    def crf_range(self) -> Tuple[int, int]:
        # H.265 needs a slightly higher CRF for similar quality
        return (18, 28) if self is VideoCodec.H264 else (20, 30)

    @property
    def default_crf(self) -> int:
        return 23 if self is VideoCodec.H264 else 25

    def clamp_crf(self, crf: int) -> int:
        low, high = self.crf_range
        return max(low, min(high, int(crf)))


class CompressionSettings(BaseModel):
    """Immutable per-invocation encoder settings.

    The CRF is clamped into the codec's supported range on construction, so an
    instance never carries an out-of-range quality factor.
    """

    model_config = ConfigDict(frozen=True)

    crf: int = 23
    codec: VideoCodec = VideoCodec.H264
    use_hardware_acceleration: bool = True
    copy_audio: bool = True
    delete_originals: bool = False

    @model_validator(mode="before")
    @classmethod
    def clamp_crf(cls, data: Any) -> Any:
        if not isinstance(data, dict) or data.get("crf") is None:
            return data
        codec = VideoCodec(data.get("codec", VideoCodec.H264))
        return {**data, "crf": codec.clamp_crf(data["crf"])}

    def with_crf(self, crf: int) -> "CompressionSettings":
        return CompressionSettings(**{**self.model_dump(), "crf": crf})

    def with_codec(self, codec: VideoCodec) -> "CompressionSettings":
        return CompressionSettings(**{**self.model_dump(), "codec": codec})

    @property
    def audio_args(self) -> List[str]:
        if self.copy_audio:
            return ["-c:a", "copy"]
        return ["-c:a", "aac", "-b:a", "128k"]

    def video_args(self, hardware_available: bool = False) -> List[str]:
        """FFmpeg video codec arguments; hardware encoding only when requested and available."""
        hw_encoder = self.codec.hardware_encoder
        if self.use_hardware_acceleration and hw_encoder and hardware_available:
            return ["-c:v", hw_encoder, "-q:v", str(self.crf)]
        return ["-c:v", self.codec.value, "-crf", str(self.crf), "-preset", "medium"]


class VideoInfo(BaseModel):
    duration: float = 0.0
    width: int = 0
    height: int = 0
    frame_rate: float = 0.0
    bitrate: int = 0
    has_audio: bool = False
    audio_codec: Optional[str] = None
    video_codec: Optional[str] = None


class CompressionJob(BaseModel):
    """One compression unit: a single source file and its lifecycle state."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    id: str = Field(default_factory=lambda: uuid4().hex, frozen=True)
    source_path: Path = Field(frozen=True)
    name: str = Field(frozen=True)
    original_size: int = Field(ge=0, frozen=True)
    info: Optional[VideoInfo] = None
    status: JobStatus = JobStatus.PENDING
    error: Optional[CompressionError] = None
    progress: float = 0.0
    compressed_size: Optional[int] = None
    output_path: Optional[Path] = None

    @classmethod
    def for_path(cls, path: Path, size_bytes: int) -> "CompressionJob":
        return cls(source_path=path, name=path.name, original_size=size_bytes)

    @property
    def duration(self) -> float:
        return self.info.duration if self.info else 0.0

    @property
    def width(self) -> int:
        return self.info.width if self.info else 0

    @property
    def height(self) -> int:
        return self.info.height if self.info else 0

    @property
    def frame_rate(self) -> float:
        return self.info.frame_rate if self.info else 0.0

    @property
    def bitrate(self) -> int:
        return self.info.bitrate if self.info else 0

    @property
    def has_audio(self) -> bool:
        return self.info.has_audio if self.info else False

    @property
    def audio_codec(self) -> Optional[str]:
        return self.info.audio_codec if self.info else None

    @property
    def video_codec(self) -> Optional[str]:
        return self.info.video_codec if self.info else None

    @property
    def compression_ratio(self) -> Optional[float]:
        """Space saved in percent; negative when the output grew."""
        if self.compressed_size is None or self.original_size <= 0:
            return None
        return (1.0 - self.compressed_size / self.original_size) * 100.0

    @property
    def is_compressed_larger(self) -> bool:
        return self.compressed_size is not None and self.compressed_size > self.original_size

    @property
    def is_retryable(self) -> bool:
        return self.status == JobStatus.FAILED and self.error is not None and self.error.retryable
