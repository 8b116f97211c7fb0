"""Playback progress persistence and resume handling."""
from __future__ import annotations

import logging
import time
from pathlib import Path
from typing import Callable, NamedTuple, Optional, Union

from store import JsonStore

SAVE_MIN_RATIO = 0.2
SAVE_INTERVAL = 5.0

PROGRESS_PREFIX = "progress:"


def _key(video: Union[str, Path]) -> str:
    return PROGRESS_PREFIX + str(Path(video).expanduser().resolve())


class ProgressStore:
    """Last-watched timestamp per absolute video path.

    Records are not migrated when a file is renamed (e.g. by a repair that
    changes the extension); the old record is simply orphaned.
    """

    def __init__(self, store: JsonStore):
        self.store = store

    def save(self, video: Union[str, Path], seconds: float) -> None:
        self.store.set(_key(video), round(float(seconds), 3))

    def get(self, video: Union[str, Path]) -> Optional[float]:
        value = self.store.get(_key(video))
        if value is None:
            return None
        try:
            return float(value)
        except (TypeError, ValueError):
            return None

    def clear(self, video: Union[str, Path]) -> None:
        self.store.delete(_key(video))


class PlaybackTracker:
    """Applies the save/clear rules while one video is playing.

    Saves once past SAVE_MIN_RATIO of the duration, at most every
    SAVE_INTERVAL seconds; clears on end of playback, or on a seek back
    below the ratio once something was saved.
    """

    def __init__(self, progress: ProgressStore, video: Union[str, Path], clock: Callable[[], float] = time.monotonic):
        self.progress = progress
        self.video = Path(video)
        self.clock = clock
        self.last_save: Optional[float] = None
        self.saved = progress.get(video) is not None

    def time_update(self, current: float, duration: float) -> bool:
        if not duration or duration <= 0:
            return False
        if current / duration <= SAVE_MIN_RATIO:
            return False
        now = self.clock()
        if self.last_save is not None and now - self.last_save < SAVE_INTERVAL:
            return False
        self.progress.save(self.video, current)
        self.last_save = now
        self.saved = True
        return True

    def seek(self, current: float, duration: float) -> bool:
        if not duration or duration <= 0 or not self.saved:
            return False
        if current / duration > SAVE_MIN_RATIO:
            return False
        self.progress.clear(self.video)
        self.saved = False
        self.last_save = None
        return True

    def ended(self) -> None:
        self.progress.clear(self.video)
        self.saved = False
        self.last_save = None
        logging.debug("[playback] finished %s, progress cleared", self.video.name)


class ResumeDecision(NamedTuple):
    position: Optional[float]
    needs_prompt: bool


def resume_position(progress: ProgressStore, video: Union[str, Path], mode: str) -> ResumeDecision:
    """'always' resumes, 'never' starts over, 'ask' leaves it to the user."""
    stored = progress.get(video)
    if stored is None or mode == "never":
        return ResumeDecision(None, False)
    if mode == "ask":
        return ResumeDecision(stored, True)
    return ResumeDecision(stored, False)
