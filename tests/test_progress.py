import threading

import pytest

import playback
import store as store_mod
from playback import PlaybackTracker, ProgressStore


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


class CountingStore(store_mod.JsonStore):
    def __init__(self, path):
        super().__init__(path)
        self.writes = 0

    def set(self, key, value):
        self.writes += 1
        super().set(key, value)


@pytest.fixture
def st(tmp_path):
    return CountingStore(tmp_path / "cfg" / "config.json")


def test_save_then_seek_back_clears(st, tmp_path):
    video = tmp_path / "v.mp4"
    progress = ProgressStore(st)
    tracker = PlaybackTracker(progress, video, clock=FakeClock())
    assert tracker.time_update(25.0, 100.0)
    assert progress.get(video) == 25.0
    assert tracker.seek(5.0, 100.0)
    assert progress.get(video) is None


def test_ended_clears(st, tmp_path):
    video = tmp_path / "v.mp4"
    progress = ProgressStore(st)
    tracker = PlaybackTracker(progress, video, clock=FakeClock())
    tracker.time_update(30.0, 100.0)
    tracker.ended()
    assert progress.get(video) is None


def test_saves_are_throttled(st, tmp_path):
    video = tmp_path / "v.mp4"
    clock = FakeClock()
    tracker = PlaybackTracker(ProgressStore(st), video, clock=clock)
    assert tracker.time_update(30.0, 100.0)
    clock.now = 3.0
    assert not tracker.time_update(33.0, 100.0)
    assert st.writes == 1
    clock.now = 5.0
    assert tracker.time_update(35.0, 100.0)
    assert st.writes == 2
    assert ProgressStore(st).get(video) == 35.0


def test_early_positions_are_not_saved(st, tmp_path):
    video = tmp_path / "v.mp4"
    tracker = PlaybackTracker(ProgressStore(st), video, clock=FakeClock())
    assert not tracker.time_update(20.0, 100.0)
    assert not tracker.time_update(10.0, 0)
    assert st.writes == 0
    # nothing saved yet, so a seek is a no-op
    assert not tracker.seek(1.0, 100.0)


def test_seek_forward_keeps_progress(st, tmp_path):
    video = tmp_path / "v.mp4"
    progress = ProgressStore(st)
    progress.save(video, 40.0)
    tracker = PlaybackTracker(progress, video, clock=FakeClock())
    assert not tracker.seek(60.0, 100.0)
    assert progress.get(video) == 40.0
    assert tracker.seek(10.0, 100.0)
    assert progress.get(video) is None


def test_records_persist_across_store_instances(st, tmp_path):
    video = tmp_path / "v.mp4"
    ProgressStore(st).save(video, 12.5)
    reopened = ProgressStore(store_mod.JsonStore(st.path))
    assert reopened.get(video) == 12.5
    assert reopened.get(tmp_path / "other.mp4") is None


@pytest.mark.parametrize(
    "mode,expected",
    [("always", (42.0, False)), ("never", (None, False)), ("ask", (42.0, True))],
)
def test_resume_position(st, tmp_path, mode, expected):
    video = tmp_path / "v.mp4"
    progress = ProgressStore(st)
    assert playback.resume_position(progress, video, mode) == (None, False)
    progress.save(video, 42.0)
    assert playback.resume_position(progress, video, mode) == expected


def test_config_helpers(st, tmp_path):
    assert store_mod.library_root(st) is None
    assert store_mod.resume_mode(st) == store_mod.DEFAULT_RESUME_MODE
    root = store_mod.set_library_root(st, tmp_path)
    assert store_mod.library_root(st) == root == tmp_path.resolve()
    store_mod.set_resume_mode(st, "never")
    assert store_mod.resume_mode(st) == "never"
    with pytest.raises(ValueError):
        store_mod.set_resume_mode(st, "sometimes")
    assert st.all()[store_mod.LIBRARY_PATH_KEY] == str(tmp_path.resolve())


def test_store_tolerates_corrupt_file(tmp_path):
    path = tmp_path / "config.json"
    path.write_text("{not json", encoding="utf-8")
    st = store_mod.JsonStore(path)
    assert st.get("anything") is None
    st.set("a", 1)
    assert st.get("a") == 1
    assert st.delete("a")
    assert not st.delete("a")


def test_default_store_path_follows_env(tmp_path, monkeypatch):
    monkeypatch.setenv("REELSHELF_CONFIG", str(tmp_path / "x.json"))
    assert store_mod.default_store_path() == tmp_path / "x.json"
    assert store_mod.JsonStore().path == tmp_path / "x.json"


def test_concurrent_writers_on_separate_instances(tmp_path):
    path = tmp_path / "shared.json"
    workers = 8
    barrier = threading.Barrier(workers)

    def write(i):
        barrier.wait()
        store_mod.JsonStore(path).set(f"k{i}", i)

    threads = [threading.Thread(target=write, args=(i,)) for i in range(workers)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    data = store_mod.JsonStore(path).all()
    assert sorted(data) == sorted(f"k{i}" for i in range(workers))
