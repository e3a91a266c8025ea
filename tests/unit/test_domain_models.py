import pytest
from pathlib import Path
from pydantic import ValidationError
from vsz.domain.errors import CompressionFailed, InvalidInput
from vsz.domain.models import CompressionJob, CompressionSettings, JobStatus, VideoCodec, VideoInfo


class TestCompressionSettings:
    def test_defaults(self):
        settings = CompressionSettings()
        assert settings.codec == VideoCodec.H264
        assert settings.crf == 23
        assert settings.copy_audio is True

    @pytest.mark.parametrize("codec,crf,expected", [
        (VideoCodec.H264, 10, 18),
        (VideoCodec.H264, 40, 28),
        (VideoCodec.H264, 21, 21),
        (VideoCodec.H265, 18, 20),
        (VideoCodec.H265, 35, 30),
    ])
    def test_crf_clamped_to_codec_range(self, codec, crf, expected):
        assert CompressionSettings(codec=codec, crf=crf).crf == expected

    def test_codec_by_encoder_name(self):
        settings = CompressionSettings(codec="libx265", crf=50)
        assert settings.codec == VideoCodec.H265
        assert settings.crf == 30

    def test_frozen(self):
        settings = CompressionSettings()
        with pytest.raises(ValidationError):
            settings.crf = 20

    def test_with_codec_reclamps(self):
        settings = CompressionSettings(codec=VideoCodec.H264, crf=18)
        switched = settings.with_codec(VideoCodec.H265)
        assert switched.crf == 20
        assert settings.crf == 18

    def test_with_crf_returns_new_snapshot(self):
        settings = CompressionSettings()
        assert settings.with_crf(99).crf == 28
        assert settings.crf == 23

    def test_audio_args(self):
        assert CompressionSettings(copy_audio=True).audio_args == ["-c:a", "copy"]
        assert CompressionSettings(copy_audio=False).audio_args == ["-c:a", "aac", "-b:a", "128k"]

    def test_video_args_hardware(self):
        settings = CompressionSettings(codec=VideoCodec.H265, crf=25, use_hardware_acceleration=True)
        assert settings.video_args(hardware_available=True) == ["-c:v", "hevc_videotoolbox", "-q:v", "25"]

    def test_video_args_software_when_hardware_missing(self):
        settings = CompressionSettings(use_hardware_acceleration=True)
        assert settings.video_args(hardware_available=False) == [
            "-c:v", "libx264", "-crf", "23", "-preset", "medium"
        ]

    def test_video_args_software_when_not_requested(self):
        settings = CompressionSettings(use_hardware_acceleration=False)
        assert settings.video_args(hardware_available=True)[1] == "libx264"


class TestVideoCodec:
    def test_metadata(self):
        assert VideoCodec.H264.short_name == "H.264"
        assert VideoCodec.H265.hardware_encoder == "hevc_videotoolbox"
        assert VideoCodec.H264.default_crf == 23
        assert VideoCodec.H265.default_crf == 25
        assert VideoCodec.H265.crf_range == (20, 30)


class TestCompressionJob:
    def test_for_path(self):
        job = CompressionJob.for_path(Path("/videos/a.mov"), 1000)
        assert job.name == "a.mov"
        assert job.status == JobStatus.PENDING
        assert job.progress == 0.0
        assert job.compressed_size is None
        assert len(job.id) == 32

    def test_ids_are_unique(self):
        a = CompressionJob.for_path(Path("a.mp4"), 1)
        b = CompressionJob.for_path(Path("a.mp4"), 1)
        assert a.id != b.id

    def test_identity_fields_frozen(self):
        job = CompressionJob.for_path(Path("a.mp4"), 1)
        with pytest.raises(ValidationError):
            job.original_size = 2

    def test_metadata_properties_default_until_probed(self):
        job = CompressionJob.for_path(Path("a.mp4"), 1)
        assert job.duration == 0.0
        assert job.width == 0
        assert job.video_codec is None

        job.info = VideoInfo(duration=12.5, width=1920, height=1080, frame_rate=29.97, has_audio=True, audio_codec="aac")
        assert job.duration == 12.5
        assert job.height == 1080
        assert job.has_audio is True
        assert job.audio_codec == "aac"

    def test_compression_ratio(self):
        job = CompressionJob.for_path(Path("a.mp4"), 1000)
        assert job.compression_ratio is None
        job.compressed_size = 250
        assert job.compression_ratio == pytest.approx(75.0)
        assert job.is_compressed_larger is False

    def test_compressed_larger(self):
        job = CompressionJob.for_path(Path("a.mp4"), 100)
        job.compressed_size = 150
        assert job.is_compressed_larger is True
        assert job.compression_ratio == pytest.approx(-50.0)

    def test_is_retryable(self):
        job = CompressionJob.for_path(Path("a.mp4"), 100)
        job.status = JobStatus.FAILED
        job.error = CompressionFailed("boom")
        assert job.is_retryable is True
        job.error = InvalidInput("corrupt")
        assert job.is_retryable is False

    def test_status_finished(self):
        assert JobStatus.COMPLETED.is_finished
        assert JobStatus.FAILED.is_finished
        assert not JobStatus.PENDING.is_finished
        assert not JobStatus.COMPRESSING.is_finished
