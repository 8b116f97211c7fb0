#!/usr/bin/env python3
"""Media library command line.

Functions:
  scan      - Scan a library root (remembered root if omitted) and list movies.
  generate  - Scan, then generate missing covers / hover previews.
  repair    - Fix seeking/playback issues of one file (remux, reencode, fps-fix).
  progress  - Inspect or edit saved playback positions.
  config    - Show or change the remembered root and resume mode.

Generated assets:
  <root>/.previews/<relative dir>/cover.jpg and preview.mp4 for a folder that
  holds exactly one video; loose videos get their own _file_<name>_<hash>
  subfolder below that.

Testing / Offline Mode:
  Set FFPROBE_DISABLE=1 to skip invoking ffprobe/ffmpeg and produce stub files.

Exit Codes:
  0 success
  1 one or more items failed
  2 directory / file not found
"""
from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import List

import assets
import library
import playback
import repair
import store as store_mod
from library import AssetKind


def open_store(ns) -> store_mod.JsonStore:
    return store_mod.JsonStore(getattr(ns, "store", None))


def resolve_root(ns, st: store_mod.JsonStore) -> Path | None:
    if ns.directory:
        return Path(ns.directory).expanduser().resolve()
    return store_mod.library_root(st)


def print_entries(result: library.ScanResult, as_json: bool) -> None:
    if as_json:
        print(result.model_dump_json(indent=2))
        return
    for e in result.entries:
        flags = ("C" if e.cover_path else "-") + ("P" if e.preview_path else "-")
        print(f"{flags} {e.display_name}  [{e.scan_mode.value}] {library.human_size(e.size_bytes)}  {e.video_path}")


def cmd_scan(ns) -> int:
    st = open_store(ns)
    root = resolve_root(ns, st)
    if root is None:
        print("No library root remembered; pass a directory.", file=sys.stderr)
        return 2
    if not root.is_dir():
        print(f"Error: directory not found: {root}", file=sys.stderr)
        return 2
    if ns.directory and not ns.no_remember:
        store_mod.set_library_root(st, root)
    result = library.scan_library(root, ns.max_depth)
    print_entries(result, ns.json)
    needs = result.needs_generation
    print(f"scan: {len(result.entries)} movie(s); missing covers {len(needs.covers)}, previews {len(needs.previews)}", file=sys.stderr)
    return 0


def parse_kinds(raw: str) -> List[AssetKind]:
    kinds = []
    for part in raw.split(","):
        part = part.strip().lower()
        if part:
            kinds.append(AssetKind(part))
    return kinds


def cmd_generate(ns) -> int:
    st = open_store(ns)
    root = resolve_root(ns, st)
    if root is None or not root.is_dir():
        print(f"Error: directory not found: {root}", file=sys.stderr)
        return 2
    try:
        kinds = parse_kinds(ns.kinds)
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 2
    result = library.scan_library(root, ns.max_depth)
    needs = result.needs_generation
    pending = {str(e.video_path): e for e in needs.covers + needs.previews}
    planned = assets.plan_generation(pending.values(), kinds)
    if not planned:
        print(f"generate: nothing missing for {len(result.entries)} movie(s). Nothing to do.", file=sys.stderr)
        return 0
    movies = len({str(t.entry.video_path) for t in planned})
    errors: list[str] = []

    def report(ev: assets.GenerationProgress) -> None:
        status = "failed" if ev.failed else "gen"
        print(f"{ev.kind.value} {status} {ev.current}/{ev.total} {ev.entry.display_name}", file=sys.stderr)
        if ev.failed:
            errors.append(f"{ev.entry.video_path} ({ev.kind.value}): {ev.error}")

    assets.generate_assets(pending.values(), kinds, on_progress=report)
    if errors:
        print("Errors (some assets missing):", file=sys.stderr)
        for e in errors:
            print("  " + e, file=sys.stderr)
        return 1
    print(f"Assets generated for {movies} movie(s)")
    return 0


def cmd_repair(ns) -> int:
    src = Path(ns.file).expanduser().resolve()
    if not src.is_file():
        print(f"Error: file not found: {src}", file=sys.stderr)
        return 2

    def show(job: repair.RepairJob) -> None:
        print(f"repair {job.mode.value}: {job.state.value}", file=sys.stderr)

    try:
        new_path = repair.repair(src, ns.mode, on_state=show)
    except repair.RepairError as e:
        print(f"Error: {e}", file=sys.stderr)
        if not e.original_intact:
            print("  original file may be gone; check for a .tmp.mp4 file next to it", file=sys.stderr)
        return 1
    print(new_path)
    return 0


def cmd_progress(ns) -> int:
    progress = playback.ProgressStore(open_store(ns))
    if ns.action == "get":
        value = progress.get(ns.file)
        print("none" if value is None else f"{value:g}")
        return 0
    if ns.action == "set":
        if ns.seconds is None:
            print("Error: seconds required", file=sys.stderr)
            return 2
        progress.save(ns.file, ns.seconds)
        return 0
    progress.clear(ns.file)
    return 0


def cmd_config(ns) -> int:
    st = open_store(ns)
    if ns.root:
        root = Path(ns.root).expanduser().resolve()
        if not root.is_dir():
            print(f"Error: directory not found: {root}", file=sys.stderr)
            return 2
        store_mod.set_library_root(st, root)
    if ns.resume_mode:
        store_mod.set_resume_mode(st, ns.resume_mode)
    root = store_mod.library_root(st)
    print(json.dumps({
        "store": str(st.path),
        "libraryPath": str(root) if root else None,
        "resumeMode": store_mod.resume_mode(st),
    }, indent=2))
    return 0


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------

def parse_args(argv: List[str]) -> argparse.Namespace:
    p = argparse.ArgumentParser(description="Media library (scan, generate, repair)")
    p.add_argument("--store", default=None, help="Config/progress JSON file (default $REELSHELF_CONFIG or ~/.config/reelshelf/config.json)")
    p.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    sub = p.add_subparsers(dest="cmd", required=True)

    sp = sub.add_parser("scan", help="Scan a library root and list movies")
    sp.add_argument("directory", nargs="?", default=None)
    sp.add_argument("--json", action="store_true")
    sp.add_argument("--max-depth", type=int, default=library.MAX_DEPTH)
    sp.add_argument("--no-remember", action="store_true", help="Do not remember this directory as the library root")

    gp = sub.add_parser("generate", help="Generate missing covers and hover previews")
    gp.add_argument("directory", nargs="?", default=None)
    gp.add_argument("--kinds", default="cover,preview", help="Comma list: cover,preview (default both)")
    gp.add_argument("--max-depth", type=int, default=library.MAX_DEPTH)

    rp = sub.add_parser("repair", help="Repair a video in place")
    rp.add_argument("mode", choices=[m.value for m in repair.RepairMode])
    rp.add_argument("file")

    pp = sub.add_parser("progress", help="Saved playback positions")
    pp.add_argument("action", choices=["get", "set", "clear"])
    pp.add_argument("file")
    pp.add_argument("seconds", nargs="?", type=float, default=None)

    cp = sub.add_parser("config", help="Show or update config")
    cp.add_argument("--root", default=None, help="Remember this library root")
    cp.add_argument("--resume-mode", choices=list(store_mod.RESUME_MODES), default=None)
    return p.parse_args(argv)


def main(argv: List[str] | None = None) -> int:
    ns = parse_args(sys.argv[1:] if argv is None else argv)
    logging.basicConfig(
        level=logging.DEBUG if ns.verbose else logging.WARNING,
        format="%(levelname)s %(message)s",
    )
    if ns.cmd == "scan": return cmd_scan(ns)
    if ns.cmd == "generate": return cmd_generate(ns)
    if ns.cmd == "repair": return cmd_repair(ns)
    if ns.cmd == "progress": return cmd_progress(ns)
    if ns.cmd == "config": return cmd_config(ns)
    print("Unknown command", file=sys.stderr)
    return 1


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
