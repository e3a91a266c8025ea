import pytest
import stat
import sys
import yaml
from pathlib import Path
from vsz.config.models import AppConfig
from vsz.infrastructure import encoder_locator
from vsz.infrastructure.event_bus import EventBus

# ============================================================================
# Fake encoder
# ============================================================================

# Behaves like just enough of ffmpeg for the engine and the banner probe.
# The source file's text selects the behaviour:
#   ok           progress at 25/50/75%, writes a 10 byte output, exit 0
#   size:N       same, with an N byte output
#   fail         diagnostic line on stderr, exit 1
#   hang         one progress line, then sleeps
#   stubborn     like hang, ignoring SIGTERM and SIGINT
FAKE_ENCODER = '''#!{python}
import signal
import sys
import time

args = sys.argv[1:]
if "-version" in args:
    print("ffmpeg version 6.1-fake")
    sys.exit(0)
if "-encoders" in args:
    print(" V....D libx264              libx264 H.264 / AVC")
    print(" V....D libx265              libx265 H.265 / HEVC")
    sys.exit(0)

src = args[args.index("-i") + 1]
if "null" in args:
    sys.stderr.write("Input #0, mov,mp4,m4a,3gp,3g2,mj2, from '%s':\\n" % src)
    sys.stderr.write("  Duration: 00:00:10.00, start: 0.000000, bitrate: 800 kb/s\\n")
    sys.stderr.write("  Stream #0:0(und): Video: h264 (High), yuv420p, 640x480, 700 kb/s, 25 fps, 25 tbr\\n")
    sys.stderr.write("  Stream #0:1(und): Audio: aac (LC), 48000 Hz, stereo, fltp, 96 kb/s\\n")
    sys.exit(0)

dst = args[-1]
with open(src) as f:
    mode = f.read().strip() or "ok"

if mode == "stubborn":
    signal.signal(signal.SIGTERM, signal.SIG_IGN)
    signal.signal(signal.SIGINT, signal.SIG_IGN)

if mode == "fail":
    sys.stderr.write("Invalid data found when processing input\\n")
    sys.exit(1)

if mode in ("hang", "stubborn"):
    with open(dst, "wb") as out:
        out.write(b"partial")
    sys.stderr.write("frame=1\\nout_time_us=1000000\\nprogress=continue\\n")
    sys.stderr.flush()
    time.sleep(60)
    sys.exit(0)

for micros in (2500000, 5000000, 7500000):
    sys.stderr.write("frame=1\\nout_time_us=%d\\nprogress=continue\\n" % micros)
    sys.stderr.flush()

size = int(mode[len("size:"):]) if mode.startswith("size:") else 10
with open(dst, "wb") as out:
    out.write(b"x" * size)
sys.stderr.write("progress=end\\n")
sys.exit(0)
'''


@pytest.fixture
def fake_encoder(tmp_path):
    """Executable fake ffmpeg run by the current interpreter."""
    bin_dir = tmp_path / "bin"
    bin_dir.mkdir()
    script = bin_dir / "ffmpeg"
    script.write_text(FAKE_ENCODER.replace("{python}", sys.executable))
    script.chmod(script.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return script


@pytest.fixture
def make_source(tmp_path):
    """Creates a source 'video' whose text drives the fake encoder."""
    src_dir = tmp_path / "videos"
    src_dir.mkdir(exist_ok=True)

    def _make(name: str, mode: str = "ok") -> Path:
        path = src_dir / name
        path.write_text(mode)
        return path

    return _make


@pytest.fixture(autouse=True)
def _reset_encoder_cache():
    encoder_locator.reset_cache()
    yield
    encoder_locator.reset_cache()

# ============================================================================
# Configuration Fixtures
# ============================================================================

@pytest.fixture
def sample_config(tmp_path):
    """Returns a sample AppConfig object for testing."""
    return AppConfig(
        general={"debug": False, "log_path": tmp_path / "logs" / "vsz.log", "probe_workers": 1},
        supervisor={"term_grace_s": 0.2, "interrupt_grace_s": 0.2},
        compression={"codec": "libx264", "crf": 23, "use_hardware_acceleration": False},
    )


@pytest.fixture
def config_yaml_path(tmp_path):
    """Creates a temporary YAML config file."""
    config_data = {
        "general": {"debug": True, "probe_workers": 3},
        "probe": {"timeout_s": 5, "cache_size": 10},
        "output": {"suffix": "_small", "extension": "mkv"},
        "compression": {"codec": "h265", "crf": 40, "copy_audio": False},
    }
    config_file = tmp_path / "vsz.yaml"
    with open(config_file, "w") as f:
        yaml.dump(config_data, f)
    return config_file

# ============================================================================
# Event Bus Fixtures
# ============================================================================

@pytest.fixture
def event_bus():
    """Returns a fresh EventBus instance."""
    return EventBus()
