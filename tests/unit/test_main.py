import sys
import pytest
from pathlib import Path
from typer.testing import CliRunner
from vsz import main as vsz_main
from vsz.config.models import AppConfig
from vsz.domain.errors import EncoderNotFound
from vsz.infrastructure.encoder_locator import EncoderBinary

runner = CliRunner()


@pytest.fixture
def isolated_config(tmp_path, monkeypatch):
    config = AppConfig(general={"log_path": tmp_path / "vsz.log"})
    monkeypatch.setattr(vsz_main, "load_config", lambda path: config)
    return config


def test_compress_rejects_unknown_codec(tmp_path, isolated_config):
    clip = tmp_path / "a.mp4"
    clip.write_bytes(b"x")
    result = runner.invoke(vsz_main.app, ["compress", str(clip), "--codec", "vp9"])
    assert result.exit_code == 1
    assert "unknown codec" in result.output


def test_compress_without_video_files(tmp_path, isolated_config):
    notes = tmp_path / "notes.txt"
    notes.write_text("hi")
    result = runner.invoke(vsz_main.app, ["compress", str(notes), str(tmp_path / "missing.mp4")])
    assert result.exit_code == 1
    assert "No video files" in result.output


def test_compress_reports_missing_encoder(tmp_path, isolated_config, monkeypatch):
    clip = tmp_path / "a.mp4"
    clip.write_bytes(b"x")

    def no_encoder(config):
        raise EncoderNotFound("/usr/bin/ffmpeg")

    monkeypatch.setattr(vsz_main, "_locate", no_encoder)
    result = runner.invoke(vsz_main.app, ["compress", str(clip)])
    assert result.exit_code == 1
    assert "FFmpeg binary not found" in result.output


def test_compress_applies_overrides(tmp_path, isolated_config, monkeypatch):
    clip = tmp_path / "a.mp4"
    clip.write_bytes(b"x")
    captured = {}

    def capture(config):
        captured["settings"] = config.compression
        captured["debug"] = config.general.debug
        raise EncoderNotFound()

    monkeypatch.setattr(vsz_main, "_locate", capture)
    runner.invoke(vsz_main.app, [
        "compress", str(clip), "--codec", "h265", "--crf", "99", "--no-hw", "--reencode-audio", "--debug",
    ])

    settings = captured["settings"]
    assert settings.codec.value == "libx265"
    assert settings.crf == 30
    assert settings.use_hardware_acceleration is False
    assert settings.copy_audio is False
    assert captured["debug"] is True


@pytest.mark.skipif(sys.platform == "win32", reason="executes a shebang script")
def test_compress_end_to_end(make_source, fake_encoder, isolated_config, monkeypatch):
    monkeypatch.setattr(vsz_main, "_locate", lambda config: EncoderBinary(fake_encoder))
    clip = make_source("clip.mov", "size:4")

    result = runner.invoke(vsz_main.app, ["compress", str(clip), "--no-hw"])

    assert result.exit_code == 0, result.output
    assert (clip.parent / "clip_compressed.mp4").exists()
    assert "Summary" in result.output


@pytest.mark.skipif(sys.platform == "win32", reason="executes a shebang script")
def test_compress_exit_code_on_failure(make_source, fake_encoder, isolated_config, monkeypatch):
    monkeypatch.setattr(vsz_main, "_locate", lambda config: EncoderBinary(fake_encoder))
    clip = make_source("bad.mov", "fail")

    result = runner.invoke(vsz_main.app, ["compress", str(clip), "--no-hw"])

    assert result.exit_code == 2
    assert "1 file(s) failed" in result.output


def test_probe_quick(tmp_path, isolated_config, monkeypatch):
    monkeypatch.setattr(vsz_main, "_locate", lambda config: EncoderBinary(Path("/usr/bin/ffmpeg"), probe_path=None))
    clip = tmp_path / "clip.mp4"
    clip.write_bytes(b"\x00" * 1000)

    result = runner.invoke(vsz_main.app, ["probe", str(clip), "--quick"])

    assert result.exit_code == 0, result.output
    assert "clip.mp4" in result.output
    assert "8 kb/s" in result.output


def test_probe_missing_file(tmp_path, isolated_config, monkeypatch):
    monkeypatch.setattr(vsz_main, "_locate", lambda config: EncoderBinary(Path("/usr/bin/ffmpeg"), probe_path=None))
    result = runner.invoke(vsz_main.app, ["probe", str(tmp_path / "nope.mp4")])
    assert result.exit_code == 1
    assert "File not found" in result.output
