"""FastAPI surface for the library frontend.

Endpoints:
- GET /health : basic liveness
- GET /config, PUT /config : defaults, remembered library root, resume mode
- GET /library : scan the remembered root
- POST /library/select : remember a root and scan it
- POST /jobs : submit {"task": "generate|remux|reencode|fps-fix", ...}
- GET /jobs, GET /jobs/{id} : job records
- GET /jobs/{id}/events : Server-Sent Events with progress until terminal state
- GET/PUT/DELETE /progress, POST /progress/tick, GET /resume : playback progress

Job model (in-memory, ephemeral):
{
  id, task, params, status: queued|running|done|error, started_at, ended_at,
  progress_current, progress_total, last_event, state, failed_stage, result, error
}

Jobs run one at a time and cannot be canceled once started.
"""
from __future__ import annotations

import asyncio
import json
import os
import sys
import threading
import time
import uuid
from collections import OrderedDict
from pathlib import Path
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, BackgroundTasks, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import StreamingResponse
from pydantic import BaseModel

import assets
import library
import playback
import repair
import store as store_mod
from library import AssetKind, MovieEntry

app = FastAPI(title="reelshelf API", version="0.1")
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)

REPAIR_TASKS = {m.value for m in repair.RepairMode}
ALLOWED_TASKS = {"generate"} | REPAIR_TASKS
MAX_CONCURRENT_JOBS = 1  # transcoding is serialized anyway; keep job order predictable
MAX_TRACKERS = 64

# Static defaults for frontend consumption
DEFAULT_CONFIG = {
    "scan": {"max_depth": library.MAX_DEPTH},
    "cover": {"position": assets.COVER_POSITION, "width": assets.COVER_WIDTH},
    "preview": {
        "positions": list(assets.PREVIEW_POSITIONS),
        "clip_seconds": assets.PREVIEW_CLIP_SECONDS,
        "width": assets.PREVIEW_WIDTH,
        "crf": assets.PREVIEW_CRF,
    },
    "progress": {"min_ratio": playback.SAVE_MIN_RATIO, "save_interval": playback.SAVE_INTERVAL},
    "repair": {"modes": [m.value for m in repair.RepairMode]},
}


def get_store() -> store_mod.JsonStore:
    return store_mod.JsonStore()


# ---------------------------------------------------------------------------
# Structured logging (JSON lines) with request IDs
# ---------------------------------------------------------------------------

_LOG_FH = None
_LOG_PATH = os.environ.get("REELSHELF_API_LOG")  # set path to enable persistent logging


def _ensure_log_handle():
    global _LOG_FH  # noqa: PLW0603
    if _LOG_PATH and _LOG_FH is None:
        try:
            _LOG_FH = open(_LOG_PATH, "a", encoding="utf-8")
        except OSError:
            _LOG_FH = None


def log_event(event: str, **fields):
    _ensure_log_handle()
    rec = {"ts": time.time(), "event": event, **fields}
    line = json.dumps(rec, separators=(",", ":"), default=str)
    if _LOG_FH:
        _LOG_FH.write(line + "\n")
        _LOG_FH.flush()
    else:
        print(line, file=sys.stderr)


@app.middleware("http")
async def request_logger(request: Request, call_next):  # noqa: D401
    req_id = request.headers.get("x-request-id") or uuid.uuid4().hex
    request.state.request_id = req_id
    start = time.time()
    status = 500
    try:
        response = await call_next(request)
        status = response.status_code
    except Exception as e:  # noqa: BLE001
        log_event("exception", request_id=req_id, path=request.url.path, method=request.method, error=str(e))
        raise
    finally:
        dur_ms = int((time.time() - start) * 1000)
        log_event("request", request_id=req_id, path=request.url.path, method=request.method, status=status, duration_ms=dur_ms)
    response.headers["X-Request-ID"] = req_id
    return response


# ---------------------------------------------------------------------------
# In-memory job store
# ---------------------------------------------------------------------------

class JobRecord(BaseModel):
    id: str
    task: str
    params: Dict[str, Any]
    status: str
    started_at: Optional[float] = None
    ended_at: Optional[float] = None
    progress_current: Optional[int] = None
    progress_total: Optional[int] = None
    last_event: Optional[Dict[str, Any]] = None
    state: Optional[str] = None
    failed_stage: Optional[str] = None
    original_intact: Optional[bool] = None
    result: Optional[Any] = None
    error: Optional[str] = None


_jobs: Dict[str, JobRecord] = {}
_jobs_lock = threading.Lock()
_job_slots = threading.BoundedSemaphore(MAX_CONCURRENT_JOBS)


def _update_job(job_id: str, **fields) -> None:
    with _jobs_lock:
        job = _jobs.get(job_id)
        if job:
            for k, v in fields.items():
                setattr(job, k, v)


class JobExecutor(threading.Thread):
    def __init__(self, job_id: str):
        super().__init__(daemon=True)
        self.job_id = job_id

    def run(self) -> None:  # noqa: D401
        with _job_slots:
            with _jobs_lock:
                job = _jobs[self.job_id]
                job.status = "running"
                job.started_at = time.time()
                task, params = job.task, dict(job.params)
            log_event("job_started", job_id=self.job_id, task=task)
            try:
                result = self._execute(task, params)
            except repair.RepairError as e:
                _update_job(
                    self.job_id, status="error", error=e.reason, failed_stage=e.stage.value,
                    original_intact=e.original_intact, ended_at=time.time(),
                )
                log_event("job_error", job_id=self.job_id, task=task, stage=e.stage.value, error=e.reason)
                return
            except Exception as e:  # noqa: BLE001
                _update_job(self.job_id, status="error", error=str(e), ended_at=time.time())
                log_event("job_error", job_id=self.job_id, task=task, error=str(e))
                return
            _update_job(self.job_id, status="done", result=result, ended_at=time.time())
            log_event("job_done", job_id=self.job_id, task=task)

    def _on_progress(self, ev: assets.GenerationProgress) -> None:
        _update_job(
            self.job_id,
            progress_current=ev.current,
            progress_total=ev.total,
            last_event=ev.model_dump(mode="json"),
        )

    def _on_state(self, job: repair.RepairJob) -> None:
        _update_job(self.job_id, state=job.state.value)

    def _execute(self, task: str, params: Dict[str, Any]):
        if task == "generate":
            kinds = [AssetKind(k) for k in params.get("kinds") or [k.value for k in AssetKind]]
            raw_entries = params.get("entries")
            if raw_entries is not None:
                entries = [MovieEntry.model_validate(e) for e in raw_entries]
            else:
                directory = params.get("directory")
                if not directory:
                    raise ValueError("generate needs entries or a directory")
                needs = library.scan_library(directory).needs_generation
                entries = needs.covers + needs.previews
            total = len(assets.plan_generation(entries, kinds))
            _update_job(self.job_id, progress_current=0, progress_total=total)
            done = assets.generate_assets(entries, kinds, on_progress=self._on_progress)
            return {"entries": [e.model_dump(mode="json") for e in done]}
        if task in REPAIR_TASKS:
            path = params.get("path")
            if not path:
                raise ValueError("repair needs a path")
            new_path = repair.repair(path, task, on_state=self._on_state)
            return {"path": str(new_path)}
        raise ValueError(f"Unsupported task {task}")


# ---------------------------------------------------------------------------
# API Schemas
# ---------------------------------------------------------------------------

class JobSubmit(BaseModel):
    task: str
    directory: Optional[str] = None
    path: Optional[str] = None
    entries: Optional[List[MovieEntry]] = None
    kinds: Optional[List[AssetKind]] = None


class SelectFolder(BaseModel):
    path: str


class ConfigUpdate(BaseModel):
    library_path: Optional[str] = None
    resume_mode: Optional[str] = None


class ProgressSave(BaseModel):
    path: str
    seconds: float


class ProgressTick(BaseModel):
    path: str
    current: float
    duration: float
    event: str = "timeupdate"  # timeupdate|seek|ended


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------

@app.get("/health")
def health():
    return {"ok": True, "time": time.time()}


def _config_payload(st: store_mod.JsonStore) -> Dict[str, Any]:
    root = store_mod.library_root(st)
    return {
        "config": DEFAULT_CONFIG,
        "library_path": str(root) if root else None,
        "resume_mode": store_mod.resume_mode(st),
        "version": app.version,
    }


@app.get("/config")
def get_config():
    return _config_payload(get_store())


@app.put("/config")
def update_config(payload: ConfigUpdate):
    st = get_store()
    if payload.library_path is not None:
        root = Path(payload.library_path).expanduser().resolve()
        if not root.is_dir():
            raise HTTPException(404, "directory not found")
        store_mod.set_library_root(st, root)
    if payload.resume_mode is not None:
        try:
            store_mod.set_resume_mode(st, payload.resume_mode)
        except ValueError as e:
            raise HTTPException(400, str(e)) from e
    return _config_payload(st)


@app.get("/library", response_model=library.ScanResult)
def scan_default():
    root = store_mod.library_root(get_store())
    if root is None:
        return library.ScanResult()
    return library.scan_library(root)


@app.post("/library/select", response_model=library.ScanResult)
def select_folder(payload: SelectFolder):
    root = Path(payload.path).expanduser().resolve()
    if not root.is_dir():
        raise HTTPException(404, "directory not found")
    store_mod.set_library_root(get_store(), root)
    log_event("library_selected", root=str(root))
    return library.scan_library(root)


@app.post("/jobs", response_model=JobRecord)
def submit_job(payload: JobSubmit, background: BackgroundTasks):
    if payload.task not in ALLOWED_TASKS:
        raise HTTPException(400, f"unsupported task {payload.task}")
    if payload.task in REPAIR_TASKS and not payload.path:
        raise HTTPException(400, "path required for repair tasks")
    if payload.task == "generate" and payload.entries is None and not payload.directory:
        raise HTTPException(400, "entries or directory required for generate")
    job_id = uuid.uuid4().hex
    params: Dict[str, Any] = {"directory": payload.directory, "path": payload.path}
    if payload.entries is not None:
        params["entries"] = [e.model_dump(mode="json") for e in payload.entries]
    if payload.kinds is not None:
        params["kinds"] = [k.value for k in payload.kinds]
    record = JobRecord(id=job_id, task=payload.task, params=params, status="queued")
    with _jobs_lock:
        _jobs[job_id] = record
    log_event("job_queued", job_id=job_id, task=payload.task)
    background.add_task(_start_job, job_id)
    return record


def _start_job(job_id: str):
    executor = JobExecutor(job_id)
    executor.start()


@app.get("/jobs")
def list_jobs():
    with _jobs_lock:
        return {"jobs": [j.model_dump() for j in _jobs.values()]}


@app.get("/jobs/{job_id}", response_model=JobRecord)
def get_job(job_id: str):
    with _jobs_lock:
        job = _jobs.get(job_id)
        if not job:
            raise HTTPException(404, "job not found")
        return job.model_copy()


@app.get("/jobs/{job_id}/events")
async def job_events(job_id: str):
    """Server-Sent Events stream of job progress/status changes.

    Emits 'progress' events until the job reaches a terminal state (done|error).
    """
    with _jobs_lock:
        if job_id not in _jobs:
            raise HTTPException(404, "job not found")

    async def event_gen():
        last_sig = None
        while True:
            with _jobs_lock:
                j = _jobs.get(job_id)
                if not j:
                    yield f"event: gone\ndata: {json.dumps({'job_id': job_id})}\n\n"
                    return
                sig = (j.status, j.progress_current, j.progress_total, j.state)
                terminal = j.status in ("done", "error")
                if sig != last_sig:
                    payload = {
                        "job_id": j.id,
                        "status": j.status,
                        "progress_current": j.progress_current,
                        "progress_total": j.progress_total,
                        "last_event": j.last_event,
                        "state": j.state,
                        "failed_stage": j.failed_stage,
                        "error": j.error,
                    }
                    yield f"event: progress\ndata: {json.dumps(payload, separators=(',', ':'))}\n\n"
                    last_sig = sig
            if terminal:
                return
            await asyncio.sleep(0.25)

    headers = {
        "Cache-Control": "no-cache",
        "Content-Type": "text/event-stream",
        "X-Accel-Buffering": "no",
    }
    return StreamingResponse(event_gen(), headers=headers)


# ---------------------------------------------------------------------------
# Playback progress
# ---------------------------------------------------------------------------

_trackers: "OrderedDict[str, playback.PlaybackTracker]" = OrderedDict()
_trackers_lock = threading.Lock()


def _tracker_key(path: str) -> str:
    return str(Path(path).expanduser().resolve())


def _progress_store() -> playback.ProgressStore:
    return playback.ProgressStore(get_store())


def _tracker_for(path: str) -> playback.PlaybackTracker:
    # least recently ticked trackers are dropped first; saved progress stays in the store
    key = _tracker_key(path)
    tracker = _trackers.get(key)
    if tracker is None:
        tracker = playback.PlaybackTracker(_progress_store(), path)
        _trackers[key] = tracker
        while len(_trackers) > MAX_TRACKERS:
            _trackers.popitem(last=False)
    else:
        _trackers.move_to_end(key)
    return tracker


@app.get("/progress")
def get_progress(path: str = Query(...)):
    return {"path": path, "seconds": _progress_store().get(path)}


@app.put("/progress")
def save_progress(payload: ProgressSave):
    _progress_store().save(payload.path, payload.seconds)
    return {"path": payload.path, "seconds": payload.seconds}


@app.delete("/progress")
def clear_progress(path: str = Query(...)):
    _progress_store().clear(path)
    with _trackers_lock:
        _trackers.pop(_tracker_key(path), None)
    return {"path": path, "seconds": None}


@app.post("/progress/tick")
def progress_tick(payload: ProgressTick):
    """Feed player events; the tracker decides whether to save or clear."""
    if payload.event not in ("timeupdate", "seek", "ended"):
        raise HTTPException(400, f"unknown event {payload.event}")
    with _trackers_lock:
        tracker = _tracker_for(payload.path)
        if payload.event == "timeupdate":
            changed = tracker.time_update(payload.current, payload.duration)
        elif payload.event == "seek":
            changed = tracker.seek(payload.current, payload.duration)
        else:
            tracker.ended()
            _trackers.pop(_tracker_key(payload.path), None)
            changed = True
    return {"path": payload.path, "changed": changed, "seconds": tracker.progress.get(payload.path)}


@app.get("/resume")
def resume(path: str = Query(...)):
    st = get_store()
    decision = playback.resume_position(playback.ProgressStore(st), path, store_mod.resume_mode(st))
    return {"path": path, "position": decision.position, "ask": decision.needs_prompt}


# Run: uvicorn api:app --reload
if __name__ == "__main__":  # pragma: no cover
    import uvicorn
    uvicorn.run(app, host="127.0.0.1", port=8000)
