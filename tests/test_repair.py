from pathlib import Path

import pytest

import repair
from conftest import FakeEngine
from engine import ProbeInfo, StreamInfo
from repair import RepairError, RepairMode, RepairState


def probe_with(audio=None, fps=None):
    streams = [StreamInfo(codec="h264", type="video")]
    if audio:
        streams.append(StreamInfo(codec=audio, type="audio"))
    return ProbeInfo(duration=60.0, streams=streams, frame_rate=fps)


def test_remux_adds_aac_filter_only_for_aac():
    src, dst = Path("/v/a.ts"), Path("/v/a.remux.tmp.mp4")
    with_aac = repair.build_repair_cmd(src, dst, RepairMode.REMUX, probe_with("aac"))
    assert "aac_adtstoasc" in with_aac
    assert with_aac[with_aac.index("-c") + 1] == "copy"
    assert "+faststart" in with_aac
    assert "aac_adtstoasc" not in repair.build_repair_cmd(src, dst, RepairMode.REMUX, probe_with("mp3"))
    assert "aac_adtstoasc" not in repair.build_repair_cmd(src, dst, RepairMode.REMUX, probe_with(None))


def test_reencode_and_fps_fix_commands():
    src, dst = Path("/v/a.mp4"), Path("/v/a.tmp.mp4")
    re = repair.build_repair_cmd(src, dst, RepairMode.REENCODE, probe_with("aac"))
    assert "libx264" in re and "-force_key_frames" in re
    fix = repair.build_repair_cmd(src, dst, RepairMode.FPS_FIX, probe_with("aac", 23.976))
    assert fix[fix.index("-r") + 1] == "23.976"
    assert "cfr" in fix and "+genpts" in fix
    default = repair.build_repair_cmd(src, dst, RepairMode.FPS_FIX, probe_with("aac"))
    assert default[default.index("-r") + 1] == "30"


def test_remux_swaps_in_place(tmp_path):
    src = tmp_path / "film.mp4"
    src.write_bytes(b"orig")
    states = []
    out = repair.remux(src, engine=FakeEngine(), on_state=lambda j: states.append(j.state))
    assert out == src.resolve()
    assert src.read_bytes() == b"repaired:orig"
    assert states == [RepairState.PROBING, RepairState.TRANSCODING, RepairState.SWAPPING, RepairState.DONE]
    assert sorted(p.name for p in tmp_path.iterdir()) == ["film.mp4"]


def test_extension_change_replaces_collision_and_removes_original(tmp_path):
    src = tmp_path / "film.mkv"
    src.write_bytes(b"orig")
    (tmp_path / "film.mp4").write_bytes(b"stale")
    out = repair.reencode(src, engine=FakeEngine())
    assert out == (tmp_path / "film.mp4").resolve()
    assert out.read_bytes() == b"repaired:orig"
    assert not src.exists()
    assert sorted(p.name for p in tmp_path.iterdir()) == ["film.mp4"]


def test_transcode_failure_keeps_original(tmp_path):
    src = tmp_path / "film.mkv"
    src.write_bytes(b"orig")
    job = repair.RepairJob(src, "fps-fix")
    with pytest.raises(RepairError) as exc:
        job.run(engine=FakeEngine(fail_transcode=True))
    assert exc.value.stage == RepairState.TRANSCODING
    assert exc.value.original_intact
    assert job.state == RepairState.FAILED
    assert job.failed_stage == RepairState.TRANSCODING
    assert src.read_bytes() == b"orig"
    assert sorted(p.name for p in tmp_path.iterdir()) == ["film.mkv"]


def test_probe_failure(tmp_path):
    src = tmp_path / "film.mp4"
    src.write_bytes(b"orig")
    with pytest.raises(RepairError) as exc:
        repair.remux(src, engine=FakeEngine(fail_probe=[src.resolve()]))
    assert exc.value.stage == RepairState.PROBING
    assert src.read_bytes() == b"orig"


def test_swap_failure_keeps_temp(tmp_path, monkeypatch):
    src = tmp_path / "film.mp4"
    src.write_bytes(b"orig")

    def locked(a, b):
        raise PermissionError("file in use")

    monkeypatch.setattr(repair.os, "replace", locked)
    job = repair.RepairJob(src, RepairMode.REMUX)
    with pytest.raises(RepairError) as exc:
        job.run(engine=FakeEngine())
    assert exc.value.stage == RepairState.SWAPPING
    assert isinstance(exc.value.__cause__, repair.SwapError)
    assert exc.value.original_intact
    assert job.temp.exists()
    assert src.read_bytes() == b"orig"


def test_stub_mode_repair(tmp_path, monkeypatch):
    monkeypatch.setenv("FFPROBE_DISABLE", "1")
    src = tmp_path / "clip.mov"
    src.write_bytes(b"orig")
    out = repair.fix_fps(src)
    assert out.suffix == ".mp4"
    assert out.read_bytes() == b"orig"
    assert not src.exists()


def test_uppercase_mp4_is_repaired_under_its_own_name(tmp_path):
    src = tmp_path / "film.MP4"
    src.write_bytes(b"orig")
    assert repair.final_path_for(src) == src
    out = repair.remux(src, engine=FakeEngine())
    assert out == src.resolve()
    assert out.read_bytes() == b"repaired:orig"
    assert sorted(p.name for p in tmp_path.iterdir()) == ["film.MP4"]


def test_target_aliasing_original_is_not_deleted(tmp_path, monkeypatch):
    # a case-insensitive filesystem reports film.MKV and film.mp4 as different names for one entry
    src = tmp_path / "film.mkv"
    src.write_bytes(b"orig")
    monkeypatch.setattr(repair.os.path, "samefile", lambda a, b: True)
    out = repair.remux(src, engine=FakeEngine())
    assert out.read_bytes() == b"repaired:orig"
    assert src.exists()
