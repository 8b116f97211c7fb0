"""Library scanning and asset-need detection."""
from __future__ import annotations

import logging
import os
import re
from enum import Enum
from pathlib import Path
from typing import Iterator, List, Optional, Tuple, Union

from pydantic import BaseModel, Field

import layout
from layout import ScanIOError, ScanMode

MAX_DEPTH = 3

EXCLUDED_DIRS = {
    layout.PREVIEW_DIR,
    "node_modules",
    "__pycache__",
    "$RECYCLE.BIN",
    "System Volume Information",
    "@eaDir",
}


class AssetKind(str, Enum):
    COVER = "cover"
    PREVIEW = "preview"


class MovieEntry(BaseModel):
    display_name: str
    video_path: Path
    size_bytes: int
    scan_mode: ScanMode
    cover_path: Optional[Path] = None
    generated_cover_path: Path
    preview_path: Optional[Path] = None
    generated_preview_path: Path


class NeedsGeneration(BaseModel):
    covers: List[MovieEntry] = Field(default_factory=list)
    previews: List[MovieEntry] = Field(default_factory=list)

    def is_empty(self) -> bool:
        return not self.covers and not self.previews


class ScanResult(BaseModel):
    root: Optional[Path] = None
    entries: List[MovieEntry] = Field(default_factory=list)
    needs_generation: NeedsGeneration = Field(default_factory=NeedsGeneration)


def natural_key(s: str) -> list[Union[int, str]]:
    return [int(t) if t.isdigit() else t.casefold() for t in re.split(r"(\d+)", s)]


def _entry_sort_key(entry: MovieEntry) -> Tuple[list, str]:
    return (natural_key(entry.display_name), str(entry.video_path))


def is_excluded_dir(name: str) -> bool:
    return name.startswith(".") or name in EXCLUDED_DIRS


def build_entry(root: Path, folder: Path, video: Path, mode: ScanMode) -> MovieEntry:
    try:
        size = video.stat().st_size
    except OSError:
        size = -1
    name = folder.name if mode == ScanMode.FOLDER else video.stem
    return MovieEntry(
        display_name=name or video.stem,
        video_path=video,
        size_bytes=size,
        scan_mode=mode,
        cover_path=layout.find_existing_cover(video),
        generated_cover_path=layout.generated_cover_path(root, video, mode),
        preview_path=layout.find_legacy_preview(video),
        generated_preview_path=layout.generated_preview_path(root, video, mode),
    )


def _subdirs(folder: Path) -> List[Path]:
    try:
        with os.scandir(folder) as it:
            names = sorted(e.name for e in it if e.is_dir(follow_symlinks=False))
    except OSError as e:
        raise ScanIOError(f"cannot list {folder}: {e}") from e
    return [folder / n for n in names if not is_excluded_dir(n)]


def walk_library(root: Path, max_depth: int = MAX_DEPTH) -> Iterator[MovieEntry]:
    """Depth-first walk yielding one entry per recognized video."""
    stack: list[tuple[Path, int]] = [(root, 0)]
    while stack:
        folder, depth = stack.pop()
        try:
            mode, videos = layout.classify_folder(folder)
            children = _subdirs(folder) if depth < max_depth else []
        except ScanIOError as e:
            logging.warning("[scan] skipping unreadable directory: %s", e)
            continue
        for video in videos:
            yield build_entry(root, folder, video, mode)
        # reversed so the first child is visited first
        for child in reversed(children):
            stack.append((child, depth + 1))


def detect_needs(entries: List[MovieEntry]) -> NeedsGeneration:
    """Adopt already generated assets; queue the rest.

    Mutates entries in place (cover_path / preview_path) when a generated file
    from an earlier session is found on disk.
    """
    needs = NeedsGeneration()
    for entry in entries:
        if entry.cover_path is None:
            if entry.generated_cover_path.is_file():
                entry.cover_path = entry.generated_cover_path
            else:
                needs.covers.append(entry)
        if entry.preview_path is None:
            if entry.generated_preview_path.is_file():
                entry.preview_path = entry.generated_preview_path
            else:
                needs.previews.append(entry)
    return needs


def scan_library(root: Union[str, Path], max_depth: int = MAX_DEPTH) -> ScanResult:
    root = Path(root).expanduser().resolve()
    if not root.is_dir():
        logging.info("[scan] root not found: %s", root)
        return ScanResult(root=root)
    entries = sorted(walk_library(root, max_depth), key=_entry_sort_key)
    needs = detect_needs(entries)
    logging.info(
        "[scan] %s: %d movie(s), %d cover(s) and %d preview(s) to generate",
        root, len(entries), len(needs.covers), len(needs.previews),
    )
    return ScanResult(root=root, entries=entries, needs_generation=needs)


def human_size(num: float) -> str:
    if num < 0:
        return "?"
    for unit in ["B", "KB", "MB", "GB", "TB"]:
        if num < 1024:
            return f"{num:.1f}{unit}"
        num /= 1024
    return f"{num:.1f}PB"
