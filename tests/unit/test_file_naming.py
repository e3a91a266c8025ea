from pathlib import Path
from vsz.infrastructure.file_naming import OutputNamer, is_video_file


def test_default_name(tmp_path):
    source = tmp_path / "holiday.mov"
    assert OutputNamer()(source) == tmp_path / "holiday_compressed.mp4"


def test_counter_until_unused(tmp_path):
    source = tmp_path / "holiday.mov"
    (tmp_path / "holiday_compressed.mp4").write_bytes(b"")
    (tmp_path / "holiday_compressed (1).mp4").write_bytes(b"")
    assert OutputNamer()(source) == tmp_path / "holiday_compressed (2).mp4"


def test_custom_suffix_and_extension(tmp_path):
    namer = OutputNamer(suffix="_small", extension="mkv")
    assert namer(tmp_path / "a.mp4") == tmp_path / "a_small.mkv"


def test_is_video_file():
    assert is_video_file(Path("clip.MP4"))
    assert is_video_file(Path("clip.mkv"))
    assert not is_video_file(Path("notes.txt"))
    assert not is_video_file(Path("noext"))
