"""Cover and hover-preview generation.

Work is planned up front (all covers first, then all previews, so the grid
fills in quickly), then processed one item at a time. A failed item is
reported and the queue moves on.
"""
from __future__ import annotations

import logging
import uuid
from pathlib import Path
from typing import Callable, Iterable, Iterator, List, NamedTuple, Optional

from pydantic import BaseModel

from engine import FFmpegEngine, concat_manifest_line, default_engine
from library import AssetKind, MovieEntry, detect_needs

COVER_POSITION = 0.30
COVER_WIDTH = 480

PREVIEW_POSITIONS = (0.10, 0.30, 0.50, 0.70, 0.90)
PREVIEW_CLIP_SECONDS = 3.0
PREVIEW_WIDTH = 320
PREVIEW_CRF = 32

TEMP_PREFIX = "temp_"


class GenerationTask(NamedTuple):
    kind: AssetKind
    entry: MovieEntry


class GenerationOutcome(NamedTuple):
    task: GenerationTask
    error: Optional[str]


class GenerationProgress(BaseModel):
    current: int
    total: int
    kind: AssetKind
    entry: MovieEntry
    failed: bool = False
    error: Optional[str] = None


ProgressCallback = Callable[[GenerationProgress], None]


def _needs(entry: MovieEntry, kind: AssetKind) -> bool:
    if kind == AssetKind.COVER:
        return entry.cover_path is None and not entry.generated_cover_path.is_file()
    return entry.preview_path is None and not entry.generated_preview_path.is_file()


def plan_generation(entries: Iterable[MovieEntry], kinds: Iterable[AssetKind]) -> List[GenerationTask]:
    unique: dict[str, MovieEntry] = {}
    for e in entries:
        unique.setdefault(str(e.video_path), e)
    wanted = {AssetKind(k) for k in kinds}
    tasks: list[GenerationTask] = []
    for kind in (AssetKind.COVER, AssetKind.PREVIEW):
        if kind not in wanted:
            continue
        tasks.extend(GenerationTask(kind, e) for e in unique.values() if _needs(e, kind))
    return tasks


def generate_cover(entry: MovieEntry, engine: FFmpegEngine) -> Path:
    info = engine.probe(entry.video_path)
    out = entry.generated_cover_path
    out.parent.mkdir(parents=True, exist_ok=True)
    try:
        engine.screenshot(entry.video_path, info.duration * COVER_POSITION, out, COVER_WIDTH)
    except BaseException:
        # a truncated cover would be adopted by the next scan
        _unlink_quiet(out)
        raise
    return out


def _unlink_quiet(p: Path) -> None:
    try:
        p.unlink()
    except FileNotFoundError:
        pass
    except OSError as e:
        logging.warning("[assets] could not remove %s: %s", p, e)


def generate_preview(entry: MovieEntry, engine: FFmpegEngine) -> Path:
    """Five short clips across the video, stream-copied into one file.

    Temporary clips and the concat manifest are removed whether or not the
    preview was produced.
    """
    info = engine.probe(entry.video_path)
    out = entry.generated_preview_path
    out_dir = out.parent
    out_dir.mkdir(parents=True, exist_ok=True)
    token = uuid.uuid4().hex[:12]
    temps: list[Path] = []
    ok = False
    try:
        clips: list[Path] = []
        for idx, pct in enumerate(PREVIEW_POSITIONS, start=1):
            clip = out_dir / f"{TEMP_PREFIX}{token}_{idx}.mp4"
            temps.append(clip)
            engine.extract_clip(entry.video_path, info.duration * pct, PREVIEW_CLIP_SECONDS, clip, PREVIEW_WIDTH, PREVIEW_CRF, True)
            clips.append(clip)
        manifest = out_dir / f"{TEMP_PREFIX}{token}_concat.txt"
        temps.append(manifest)
        manifest.write_text("".join(concat_manifest_line(c) for c in clips), encoding="utf-8")
        engine.concat(manifest, out)
        ok = True
    finally:
        for p in temps:
            _unlink_quiet(p)
        if not ok:
            _unlink_quiet(out)
    return out


def run_task(task: GenerationTask, engine: FFmpegEngine) -> None:
    if task.kind == AssetKind.COVER:
        task.entry.cover_path = generate_cover(task.entry, engine)
    else:
        task.entry.preview_path = generate_preview(task.entry, engine)


def iter_generation(tasks: Iterable[GenerationTask], engine: Optional[FFmpegEngine] = None) -> Iterator[GenerationOutcome]:
    engine = engine or default_engine()
    for task in tasks:
        try:
            run_task(task, engine)
        except Exception as e:  # noqa: BLE001
            logging.warning("[assets] %s failed for %s: %s", task.kind.value, task.entry.video_path, e)
            yield GenerationOutcome(task, str(e) or e.__class__.__name__)
            continue
        logging.info("[assets] %s ready for %s", task.kind.value, task.entry.display_name)
        yield GenerationOutcome(task, None)


def generate_assets(
    entries: Iterable[MovieEntry],
    kinds: Iterable[AssetKind],
    engine: Optional[FFmpegEngine] = None,
    on_progress: Optional[ProgressCallback] = None,
) -> List[MovieEntry]:
    """Generate the requested asset kinds; return the entries with paths filled in."""
    entries = list(entries)
    # entries may come from an older scan; pick up files another run already produced
    detect_needs(entries)
    tasks = plan_generation(entries, kinds)
    total = len(tasks)
    current = 0
    for outcome in iter_generation(tasks, engine):
        current += 1
        if on_progress is not None:
            on_progress(GenerationProgress(
                current=current,
                total=total,
                kind=outcome.task.kind,
                entry=outcome.task.entry,
                failed=outcome.error is not None,
                error=outcome.error,
            ))
    return entries
