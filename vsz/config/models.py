from pathlib import Path
from typing import List, Optional
from pydantic import BaseModel, Field, field_validator
from vsz.domain.models import CompressionSettings
from vsz.infrastructure.encoder_locator import DEFAULT_SEARCH_PATHS


class GeneralConfig(BaseModel):
    debug: bool = False
    log_path: Path = Field(default_factory=lambda: Path.home() / ".vsz" / "vsz.log")
    probe_workers: int = Field(default=2, ge=1, le=16)


class EncoderConfig(BaseModel):
    """Where to look for ffmpeg; the first working candidate wins."""
    ffmpeg_path: Optional[str] = None  # Explicit override, tried first
    bundled_dir: Optional[Path] = None
    search_paths: List[str] = Field(default_factory=lambda: list(DEFAULT_SEARCH_PATHS))
    version_timeout_s: float = Field(default=10.0, gt=0)


class ProbeConfig(BaseModel):
    timeout_s: float = Field(default=10.0, gt=0)
    analyze_duration_us: int = Field(default=1_000_000, ge=0)
    probe_size_bytes: int = Field(default=5_000_000, ge=32)
    cache_size: int = Field(default=100, ge=1)


class SupervisorConfig(BaseModel):
    term_grace_s: float = Field(default=1.0, ge=0.0)
    interrupt_grace_s: float = Field(default=0.5, ge=0.0)


class ProgressConfig(BaseModel):
    epsilon: float = Field(default=0.005, ge=0.0, lt=1.0)  # 0.5%
    read_size: int = Field(default=4096, ge=1)
    stats_period_s: float = Field(default=0.5, gt=0)


class OutputConfig(BaseModel):
    suffix: str = "_compressed"
    extension: str = ".mp4"
    min_free_bytes: int = Field(default=0, ge=0)

    @field_validator("extension")
    @classmethod
    def normalize_extension(cls, v: str) -> str:
        v = v.strip()
        if not v or v == ".":
            raise ValueError("extension must not be empty")
        return v if v.startswith(".") else f".{v}"


class AppConfig(BaseModel):
    general: GeneralConfig = Field(default_factory=GeneralConfig)
    encoder: EncoderConfig = Field(default_factory=EncoderConfig)
    probe: ProbeConfig = Field(default_factory=ProbeConfig)
    supervisor: SupervisorConfig = Field(default_factory=SupervisorConfig)
    progress: ProgressConfig = Field(default_factory=ProgressConfig)
    output: OutputConfig = Field(default_factory=OutputConfig)
    compression: CompressionSettings = Field(default_factory=CompressionSettings)
