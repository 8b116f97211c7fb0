import sys
from pathlib import Path
import pytest

# Ensure project root (one level up from this file) is on sys.path for imports like `import library`.
ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from engine import ProbeError, ProbeInfo, StreamInfo, TranscodeError  # noqa: E402


class FakeEngine:
    """Records calls and writes small output files instead of running ffmpeg."""

    def __init__(self, duration=120.0, audio="aac", fail_probe=(), fail_clip_at=None, fail_concat=False, fail_transcode=False, fail_screenshot=False):
        self.duration = duration
        self.audio = audio
        self.fail_probe = set(str(p) for p in fail_probe)
        self.fail_clip_at = fail_clip_at
        self.fail_concat = fail_concat
        self.fail_transcode = fail_transcode
        self.fail_screenshot = fail_screenshot
        self.calls = []
        self.clip_count = 0

    def probe(self, video):
        self.calls.append(("probe", Path(video)))
        if str(video) in self.fail_probe:
            raise ProbeError(f"corrupt: {video}")
        streams = [StreamInfo(codec="h264", type="video")]
        if self.audio:
            streams.append(StreamInfo(codec=self.audio, type="audio"))
        return ProbeInfo(duration=self.duration, streams=streams, frame_rate=25.0)

    def screenshot(self, video, timestamp, out_file, width):
        self.calls.append(("screenshot", Path(video), timestamp))
        if self.fail_screenshot:
            Path(out_file).write_bytes(b"jp")
            raise TranscodeError("screenshot failed")
        Path(out_file).write_bytes(b"jpg")

    def extract_clip(self, video, start, duration, out_file, width, crf=32, mute_audio=True):
        self.calls.append(("clip", Path(video), start))
        self.clip_count += 1
        if self.fail_clip_at is not None and self.clip_count == self.fail_clip_at:
            raise TranscodeError("clip failed")
        Path(out_file).write_bytes(b"clip")

    def concat(self, manifest, out_file):
        self.calls.append(("concat", Path(manifest)))
        if self.fail_concat:
            Path(out_file).write_bytes(b"partial")
            raise TranscodeError("concat failed")
        Path(out_file).write_bytes(b"preview")

    def transcode(self, cmd, src, dst):
        self.calls.append(("transcode", cmd))
        if self.fail_transcode:
            Path(dst).write_bytes(b"partial")
            raise TranscodeError("encoder exploded")
        Path(dst).write_bytes(b"repaired:" + Path(src).read_bytes())

    def kinds(self):
        return [c[0] for c in self.calls]


@pytest.fixture
def fake_engine():
    return FakeEngine()


@pytest.fixture(autouse=True)
def _isolated_store(tmp_path, monkeypatch):
    monkeypatch.setenv("REELSHELF_CONFIG", str(tmp_path / "_store" / "config.json"))
