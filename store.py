"""JSON key-value store for user config and playback progress.

Location: $REELSHELF_CONFIG, else ~/.config/reelshelf/config.json.
Writes go to a temp file first and are moved into place with os.replace.
"""
from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
from pathlib import Path
from typing import Any, Dict, Optional, Union

LIBRARY_PATH_KEY = "libraryPath"
RESUME_MODE_KEY = "resumeMode"
RESUME_MODES = ("always", "never", "ask")
DEFAULT_RESUME_MODE = "ask"


def default_store_path() -> Path:
    env = os.environ.get("REELSHELF_CONFIG")
    if env:
        return Path(env).expanduser()
    return Path.home() / ".config" / "reelshelf" / "config.json"


_path_locks: Dict[str, threading.Lock] = {}
_path_locks_guard = threading.Lock()


def _lock_for(path: Path) -> threading.Lock:
    """One lock per config file, shared by every JsonStore opened on it."""
    key = os.path.normcase(str(path.resolve()))
    with _path_locks_guard:
        lock = _path_locks.get(key)
        if lock is None:
            lock = _path_locks[key] = threading.Lock()
        return lock


class JsonStore:
    def __init__(self, path: Union[str, Path, None] = None):
        self.path = Path(path).expanduser() if path else default_store_path()
        self._lock = _lock_for(self.path)

    def _load(self) -> Dict[str, Any]:
        if not self.path.exists():
            return {}
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            logging.error("[store] failed to load %s: %s", self.path, e)
            return {}
        return data if isinstance(data, dict) else {}

    def _dump(self, data: Dict[str, Any]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(prefix=".config-", suffix=".json", dir=self.path.parent)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(data, fh, indent=2)
            os.replace(tmp, self.path)
        except BaseException:
            try:
                os.unlink(tmp)
            except OSError:
                pass
            raise

    def get(self, key: str, default: Any = None) -> Any:
        with self._lock:
            return self._load().get(key, default)

    def set(self, key: str, value: Any) -> None:
        with self._lock:
            data = self._load()
            data[key] = value
            self._dump(data)

    def delete(self, key: str) -> bool:
        with self._lock:
            data = self._load()
            if key not in data:
                return False
            del data[key]
            self._dump(data)
            return True

    def all(self) -> Dict[str, Any]:
        with self._lock:
            return self._load()


def library_root(store: JsonStore) -> Optional[Path]:
    value = store.get(LIBRARY_PATH_KEY)
    return Path(value) if value else None


def set_library_root(store: JsonStore, root: Union[str, Path]) -> Path:
    resolved = Path(root).expanduser().resolve()
    store.set(LIBRARY_PATH_KEY, str(resolved))
    return resolved


def resume_mode(store: JsonStore) -> str:
    mode = store.get(RESUME_MODE_KEY, DEFAULT_RESUME_MODE)
    return mode if mode in RESUME_MODES else DEFAULT_RESUME_MODE


def set_resume_mode(store: JsonStore, mode: str) -> str:
    if mode not in RESUME_MODES:
        raise ValueError(f"resume mode must be one of {', '.join(RESUME_MODES)}")
    store.set(RESUME_MODE_KEY, mode)
    return mode
