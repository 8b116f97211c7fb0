"""ffprobe / ffmpeg invocation.

Command builders are pure functions so the exact argument lists can be
inspected; FFmpegEngine runs them. Every external process goes through
FFmpegEngine._invoke, which holds a process-wide lock: only one
ffprobe/ffmpeg process runs at a time.

Testing / Offline Mode:
  Set FFPROBE_DISABLE=1 to skip invoking ffprobe/ffmpeg. probe() returns a
  100 second h264/aac stub and the other operations write placeholder files.
"""
from __future__ import annotations

import json
import logging
import os
import shutil
import subprocess
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import BaseModel

STUB_DURATION = 100.0

_ENGINE_LOCK = threading.Lock()


class ProbeError(RuntimeError):
    """Media could not be probed (corrupt file, unreadable container)."""


class TranscodeError(RuntimeError):
    """ffmpeg exited with an error."""


class StreamInfo(BaseModel):
    codec: str
    type: str


class ProbeInfo(BaseModel):
    duration: float
    streams: List[StreamInfo] = []
    frame_rate: Optional[float] = None

    def codecs(self, stream_type: str) -> List[str]:
        return [s.codec for s in self.streams if s.type == stream_type]

    @property
    def has_audio(self) -> bool:
        return bool(self.codecs("audio"))


def stub_mode() -> bool:
    return bool(os.environ.get("FFPROBE_DISABLE"))


def ffmpeg_available() -> bool:
    if stub_mode():
        return True
    return shutil.which("ffmpeg") is not None and shutil.which("ffprobe") is not None


# ---------------------------------------------------------------------------
# Command builders
# ---------------------------------------------------------------------------

def build_probe_cmd(video: Path) -> list[str]:
    return [
        "ffprobe",
        "-v", "quiet",
        "-print_format", "json",
        "-show_format",
        "-show_streams",
        str(video),
    ]


def build_screenshot_cmd(video: Path, timestamp: float, out_file: Path, width: int, quality: int = 2) -> list[str]:
    # -ss before -i: fast keyframe seek, then a single frame
    return [
        "ffmpeg", "-y", "-v", "error",
        "-ss", f"{timestamp:.3f}",
        "-i", str(video),
        "-frames:v", "1",
        "-vf", f"scale={width}:-2",
        "-q:v", str(quality),
        str(out_file),
    ]


def build_clip_cmd(video: Path, start: float, duration: float, width: int, out_file: Path, crf: int = 32, mute_audio: bool = True) -> list[str]:
    cmd = [
        "ffmpeg", "-y", "-v", "error",
        "-ss", f"{start:.3f}",
        "-i", str(video),
        "-t", f"{duration:.3f}",
        "-vf", f"scale={width}:-2",
        "-c:v", "libx264",
        "-preset", "ultrafast",
        "-crf", str(crf),
        "-pix_fmt", "yuv420p",
    ]
    if mute_audio:
        cmd.append("-an")
    return cmd + [str(out_file)]


def build_concat_cmd(manifest: Path, out_file: Path) -> list[str]:
    return [
        "ffmpeg", "-y", "-v", "error",
        "-f", "concat",
        "-safe", "0",
        "-i", str(manifest),
        "-c", "copy",
        "-movflags", "+faststart",
        str(out_file),
    ]


def concat_manifest_line(clip: Path) -> str:
    # concat demuxer quoting: ' becomes '\''
    escaped = str(clip).replace("'", "'\\''")
    return f"file '{escaped}'\n"


def parse_frame_rate(rate: Any) -> Optional[float]:
    """ffprobe reports rates as '30000/1001'; 0/0 means unknown."""
    if not rate or not isinstance(rate, str):
        return None
    try:
        if "/" in rate:
            num, den = rate.split("/", 1)
            if float(den) == 0:
                return None
            value = float(num) / float(den)
        else:
            value = float(rate)
    except ValueError:
        return None
    return value if value > 0 else None


def parse_probe(data: Dict[str, Any]) -> ProbeInfo:
    fmt = data.get("format") if isinstance(data, dict) else None
    duration = None
    if isinstance(fmt, dict) and fmt.get("duration") is not None:
        try:
            duration = float(fmt["duration"])
        except (TypeError, ValueError):
            duration = None
    streams: list[StreamInfo] = []
    frame_rate = None
    for st in data.get("streams") or []:
        codec_type = st.get("codec_type") or "unknown"
        streams.append(StreamInfo(codec=st.get("codec_name") or "unknown", type=codec_type))
        if codec_type == "video" and frame_rate is None:
            frame_rate = parse_frame_rate(st.get("avg_frame_rate")) or parse_frame_rate(st.get("r_frame_rate"))
        if duration is None and st.get("duration") is not None:
            try:
                duration = float(st["duration"])
            except (TypeError, ValueError):
                pass
    if duration is None or duration <= 0:
        raise ProbeError("no usable duration in ffprobe output")
    return ProbeInfo(duration=duration, streams=streams, frame_rate=frame_rate)


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------

class FFmpegEngine:
    """Runs ffprobe/ffmpeg one process at a time."""

    def _invoke(self, cmd: list[str]) -> subprocess.CompletedProcess:
        logging.debug("[engine] %s", " ".join(cmd))
        with _ENGINE_LOCK:
            try:
                return subprocess.run(cmd, capture_output=True, text=True)
            except FileNotFoundError as e:
                raise TranscodeError(f"{cmd[0]} not available") from e

    def _run(self, cmd: list[str], what: str) -> None:
        proc = self._invoke(cmd)
        if proc.returncode != 0:
            raise TranscodeError(proc.stderr.strip() or f"ffmpeg {what} failed")

    def probe(self, video: Path) -> ProbeInfo:
        if stub_mode():
            if not video.exists():
                raise ProbeError(f"not found: {video}")
            return ProbeInfo(
                duration=STUB_DURATION,
                streams=[StreamInfo(codec="h264", type="video"), StreamInfo(codec="aac", type="audio")],
                frame_rate=30.0,
            )
        try:
            proc = self._invoke(build_probe_cmd(video))
        except TranscodeError as e:
            raise ProbeError(str(e)) from e
        if proc.returncode != 0:
            raise ProbeError(proc.stderr.strip() or f"ffprobe failed: {video}")
        try:
            data = json.loads(proc.stdout)
        except json.JSONDecodeError as e:
            raise ProbeError(f"Invalid ffprobe JSON for {video}: {e}") from e
        return parse_probe(data)

    def screenshot(self, video: Path, timestamp: float, out_file: Path, width: int) -> None:
        if stub_mode():
            out_file.write_text(f"stub cover for {video.name} at {timestamp:.2f}s")
            return
        self._run(build_screenshot_cmd(video, timestamp, out_file, width), "screenshot")

    def extract_clip(self, video: Path, start: float, duration: float, out_file: Path, width: int, crf: int = 32, mute_audio: bool = True) -> None:
        if stub_mode():
            out_file.write_text(f"stub clip {video.name} t={start:.2f}+{duration:.2f}\n")
            return
        self._run(build_clip_cmd(video, start, duration, width, out_file, crf, mute_audio), "clip")

    def concat(self, manifest: Path, out_file: Path) -> None:
        if stub_mode():
            parts = []
            for line in manifest.read_text().splitlines():
                if line.startswith("file '"):
                    clip = Path(line[len("file '"):-1].replace("'\\''", "'"))
                    parts.append(clip.read_text())
            out_file.write_text("".join(parts))
            return
        self._run(build_concat_cmd(manifest, out_file), "concat")

    def transcode(self, cmd: list[str], src: Path, dst: Path) -> None:
        """Run a prepared transcode command (see repair.build_repair_cmd)."""
        if stub_mode():
            shutil.copyfile(src, dst)
            return
        self._run(cmd, "transcode")


def default_engine() -> FFmpegEngine:
    return FFmpegEngine()
