"""In-place video repair: remux, re-encode, frame-rate fix.

Every mode has the same shape: probe -> transcode to a sibling temp file ->
swap into place. The swap replaces the target first and deletes the
original afterwards, so a crash between the two steps leaves an extra file
behind rather than no file at all.
"""
from __future__ import annotations

import logging
import os
from enum import Enum
from pathlib import Path
from typing import Callable, Optional, Union

from engine import FFmpegEngine, ProbeError, ProbeInfo, TranscodeError, default_engine

DEFAULT_FPS = 30.0
KEYFRAME_SECONDS = 2


class RepairMode(str, Enum):
    REMUX = "remux"
    REENCODE = "reencode"
    FPS_FIX = "fps-fix"


class RepairState(str, Enum):
    IDLE = "idle"
    PROBING = "probing"
    TRANSCODING = "transcoding"
    SWAPPING = "swapping"
    DONE = "done"
    FAILED = "failed"


class SwapError(RuntimeError):
    """Rename/delete failed after a successful transcode."""


class RepairError(RuntimeError):
    def __init__(self, stage: RepairState, reason: str, original_intact: bool = True):
        super().__init__(f"repair failed while {stage.value}: {reason}")
        self.stage = stage
        self.reason = reason
        self.original_intact = original_intact


StateCallback = Callable[["RepairJob"], None]


def temp_path_for(video: Path, mode: RepairMode) -> Path:
    return video.with_name(f"{video.stem}.{mode.value}.tmp.mp4")


def final_path_for(video: Path) -> Path:
    # keep "film.MP4" as is; on case-insensitive filesystems film.mp4 is the same entry
    if video.suffix.lower() == ".mp4":
        return video
    return video.with_suffix(".mp4")


def _same_file(a: Path, b: Path) -> bool:
    if a == b:
        return True
    try:
        return os.path.samefile(a, b)
    except OSError:
        return False


def build_repair_cmd(src: Path, dst: Path, mode: RepairMode, probe: ProbeInfo) -> list[str]:
    cmd = ["ffmpeg", "-y", "-v", "error"]
    if mode == RepairMode.FPS_FIX:
        cmd += ["-fflags", "+genpts"]
    cmd += ["-i", str(src), "-map", "0:v:0", "-map", "0:a?"]
    if mode == RepairMode.REMUX:
        cmd += ["-c", "copy"]
        # ADTS AAC (e.g. from .ts sources) must be converted for the MP4 muxer
        if "aac" in probe.codecs("audio"):
            cmd += ["-bsf:a", "aac_adtstoasc"]
    elif mode == RepairMode.REENCODE:
        cmd += [
            "-c:v", "libx264",
            "-preset", "veryfast",
            "-crf", "20",
            "-force_key_frames", f"expr:gte(t,n_forced*{KEYFRAME_SECONDS})",
            "-c:a", "aac", "-b:a", "192k",
        ]
    else:
        fps = probe.frame_rate or DEFAULT_FPS
        cmd += [
            "-c:v", "libx264",
            "-preset", "veryfast",
            "-crf", "20",
            "-r", f"{fps:.3f}".rstrip("0").rstrip("."),
            "-fps_mode", "cfr",
            "-af", "aresample=async=1:first_pts=0",
            "-c:a", "aac", "-b:a", "192k",
        ]
    cmd += ["-movflags", "+faststart", "-f", "mp4", str(dst)]
    return cmd


def _unlink_quiet(p: Path) -> None:
    try:
        p.unlink()
    except FileNotFoundError:
        pass
    except OSError as e:
        logging.warning("[repair] could not remove temp file %s: %s", p, e)


class RepairJob:
    """One repair of one file. States: idle -> probing -> transcoding -> swapping -> done|failed."""

    def __init__(self, video: Union[str, Path], mode: Union[str, RepairMode]):
        self.video = Path(video).expanduser().resolve()
        self.mode = RepairMode(mode)
        self.state = RepairState.IDLE
        self.failed_stage: Optional[RepairState] = None
        self.error: Optional[str] = None
        self.result: Optional[Path] = None
        self.temp = temp_path_for(self.video, self.mode)
        self.target = final_path_for(self.video)
        self._on_state: Optional[StateCallback] = None

    def _enter(self, state: RepairState) -> None:
        self.state = state
        logging.debug("[repair] %s %s -> %s", self.mode.value, self.video.name, state.value)
        if self._on_state is not None:
            self._on_state(self)

    def _fail(self, exc: Exception, original_intact: bool) -> RepairError:
        self.failed_stage = self.state
        self.error = str(exc)
        err = RepairError(self.state, str(exc), original_intact)
        self._enter(RepairState.FAILED)
        logging.error("[repair] %s", err)
        return err

    def run(self, engine: Optional[FFmpegEngine] = None, on_state: Optional[StateCallback] = None) -> Path:
        if self.state != RepairState.IDLE:
            raise RuntimeError("repair job already ran")
        engine = engine or default_engine()
        self._on_state = on_state

        self._enter(RepairState.PROBING)
        try:
            if not self.video.is_file():
                raise ProbeError(f"not found: {self.video}")
            probe = engine.probe(self.video)
        except ProbeError as e:
            raise self._fail(e, True) from e

        self._enter(RepairState.TRANSCODING)
        try:
            engine.transcode(build_repair_cmd(self.video, self.temp, self.mode, probe), self.video, self.temp)
        except (TranscodeError, OSError) as e:
            _unlink_quiet(self.temp)
            raise self._fail(e, True) from e

        self._enter(RepairState.SWAPPING)
        try:
            self._swap()
        except SwapError as e:
            raise self._fail(e, self.video.exists()) from e

        self.result = self.target
        self._enter(RepairState.DONE)
        logging.info("[repair] %s done: %s", self.mode.value, self.target)
        return self.target

    def _swap(self) -> None:
        # os.replace overwrites atomically, including a same-named .mp4 collision
        try:
            os.replace(self.temp, self.target)
        except OSError as e:
            raise SwapError(f"could not move {self.temp.name} into place (temp kept): {e}") from e
        if not _same_file(self.video, self.target):
            try:
                self.video.unlink()
            except FileNotFoundError:
                pass
            except OSError as e:
                raise SwapError(f"repaired file written to {self.target} but original could not be removed: {e}") from e


def repair(video: Union[str, Path], mode: Union[str, RepairMode], engine: Optional[FFmpegEngine] = None, on_state: Optional[StateCallback] = None) -> Path:
    return RepairJob(video, mode).run(engine, on_state)


def remux(video: Union[str, Path], engine: Optional[FFmpegEngine] = None, on_state: Optional[StateCallback] = None) -> Path:
    return repair(video, RepairMode.REMUX, engine, on_state)


def reencode(video: Union[str, Path], engine: Optional[FFmpegEngine] = None, on_state: Optional[StateCallback] = None) -> Path:
    return repair(video, RepairMode.REENCODE, engine, on_state)


def fix_fps(video: Union[str, Path], engine: Optional[FFmpegEngine] = None, on_state: Optional[StateCallback] = None) -> Path:
    return repair(video, RepairMode.FPS_FIX, engine, on_state)
