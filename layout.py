"""Asset path layout and folder classification.

Everything here is a pure function of the library root and the video path,
apart from the lookups that look at what is on disk (classify_folder,
find_existing_cover, find_legacy_preview).

Generated assets live under <root>/.previews:

  folder-based movie   <root>/.previews/<rel dir>/cover.jpg
  loose (file-based)   <root>/.previews/<rel dir>/_file_<sanitized>_<digest>/cover.jpg

Legacy previews (older layout) are read from <video dir>/.previews/<stem>_preview.mp4
and never written.
"""
from __future__ import annotations

import hashlib
import os
from enum import Enum
from pathlib import Path
from typing import List, NamedTuple, Optional

VIDEO_EXTS = {".mp4", ".webm", ".mkv", ".avi", ".mov", ".m4v"}
IMAGE_EXTS = {".jpg", ".jpeg", ".png", ".webp"}

PREVIEW_DIR = ".previews"
COVER_NAME = "cover.jpg"
PREVIEW_NAME = "preview.mp4"
FILE_MARKER = "_file_"
COVER_TOKENS = ("cover", "poster", "folder", "thumb")


class ScanIOError(RuntimeError):
    """Directory could not be listed (permissions, removed mid-scan, ...)."""


class ScanMode(str, Enum):
    FOLDER = "folder"
    FILE = "file"


class FolderClassification(NamedTuple):
    mode: ScanMode
    videos: List[Path]


def is_video(path: Path) -> bool:
    return path.suffix.lower() in VIDEO_EXTS


def is_image(path: Path) -> bool:
    return path.suffix.lower() in IMAGE_EXTS


def _list_files(folder: Path) -> List[Path]:
    # scandir order is kept: the cover fallback relies on enumeration order
    try:
        with os.scandir(folder) as it:
            return [Path(e.path) for e in it if e.is_file()]
    except OSError as e:
        raise ScanIOError(f"cannot list {folder}: {e}") from e


def classify_folder(folder: Path) -> FolderClassification:
    """Exactly one video => the folder is that movie's own directory."""
    videos = sorted(p for p in _list_files(folder) if is_video(p))
    mode = ScanMode.FOLDER if len(videos) == 1 else ScanMode.FILE
    return FolderClassification(mode, videos)


def sanitize_name(name: str) -> str:
    cleaned = "".join(ch for ch in name.lower() if ch.isalnum())
    if not cleaned:
        return hashlib.sha1(name.encode("utf-8")).hexdigest()[:12]
    return cleaned


def _name_digest(name: str) -> str:
    return hashlib.sha1(name.encode("utf-8")).hexdigest()[:8]


def relative_dir(root: Path, video: Path) -> Path:
    try:
        return video.parent.relative_to(root)
    except ValueError:
        # video outside root: namespace by its absolute parent instead
        return Path(*video.parent.parts[1:])


def thumbnail_dir(root: Path, video: Path, mode: ScanMode) -> Path:
    base = root / PREVIEW_DIR / relative_dir(root, video)
    if mode == ScanMode.FOLDER:
        return base
    return base / f"{FILE_MARKER}{sanitize_name(video.name)}_{_name_digest(video.name)}"


def generated_cover_path(root: Path, video: Path, mode: ScanMode) -> Path:
    return thumbnail_dir(root, video, mode) / COVER_NAME


def generated_preview_path(root: Path, video: Path, mode: ScanMode) -> Path:
    return thumbnail_dir(root, video, mode) / PREVIEW_NAME


def find_existing_cover(video: Path) -> Optional[Path]:
    try:
        images = [p for p in _list_files(video.parent) if is_image(p)]
    except ScanIOError:
        return None
    if not images:
        return None
    stem = video.stem.lower()
    for img in images:
        if img.stem.lower() == stem:
            return img
    for img in images:
        lowered = img.stem.lower()
        if any(tok in lowered for tok in COVER_TOKENS):
            return img
    return images[0]


def legacy_preview_path(video: Path) -> Path:
    return video.parent / PREVIEW_DIR / f"{video.stem}_preview.mp4"


def find_legacy_preview(video: Path) -> Optional[Path]:
    p = legacy_preview_path(video)
    return p if p.is_file() else None
