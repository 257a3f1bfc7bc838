import asyncio
from pathlib import Path

import pytest
from moviepy import VideoFileClip

from clipforge.core.models import ExportClip
from clipforge.services.export import (
    ExportPipeline,
    ExportSettings,
    MonotonicProgress,
    RetryPolicy,
    export_timeline,
    prepare_snapshot,
    run_export,
)


def _clip(i, path, start, trim_start, trim_end, track=0, has_audio=True):
    return ExportClip(
        clip_id=i, source_path=str(path), track=track, start_time=start,
        trim_start=trim_start, trim_end=trim_end, width=64, height=48, has_audio=has_audio,
    )


def _run(pipeline, snapshot, out, **kw):
    return asyncio.run(pipeline.run(snapshot, out, **kw))


def test_empty_snapshot_fails_without_encoding(tmp_path, fake_encoder):
    enc = fake_encoder()
    result = _run(ExportPipeline(enc), [], tmp_path / "out.mp4")
    assert not result.ok and result.error == "No clips to export"
    assert enc.trim_calls == []


def test_single_clip_encodes_straight_to_output(tmp_path, fake_encoder):
    enc = fake_encoder()
    out = tmp_path / "nested" / "out.mp4"
    progress = []
    result = _run(ExportPipeline(enc), [_clip(1, "/a.mp4", 0, 1.0, 3.5)], out, progress=progress.append)
    assert result.ok and result.output_path == str(out)
    [(source, start, duration, dest)] = enc.trim_calls
    assert (source, start, duration) == ("/a.mp4", 1.0, 2.5)
    assert dest != str(out) and Path(dest).parent == out.parent
    assert out.read_bytes() == b"segment"
    assert sorted(p.name for p in out.parent.iterdir()) == ["out.mp4"]
    assert enc.concat_manifests == []
    assert progress == sorted(progress) and progress[-1] == 1.0


def test_multi_clip_concats_in_timeline_order(tmp_path, fake_encoder):
    enc = fake_encoder()
    work = tmp_path / "work"
    work.mkdir()
    snapshot = [
        _clip(2, "/b.mp4", 4.0, 0.0, 5.0),
        _clip(1, "/a.mp4", 0.0, 0.0, 4.0),
        _clip(3, "/c.mp4", 0.0, 0.0, 2.0, track=1),  # not composited
    ]
    progress = []
    result = _run(
        ExportPipeline(enc, ExportSettings(temp_root=work)),
        snapshot, tmp_path / "out.mp4", progress=progress.append,
    )
    assert result.ok
    assert (tmp_path / "out.mp4").read_bytes() == b"movie"
    assert sorted(c[0] for c in enc.trim_calls) == ["/a.mp4", "/b.mp4"]
    manifest = enc.concat_manifests[0].splitlines()
    assert manifest[0].endswith("clip-000.mp4'") and manifest[1].endswith("clip-001.mp4'")
    dest_of = {c[0]: c[3] for c in enc.trim_calls}
    assert dest_of["/a.mp4"].endswith("clip-000.mp4")
    assert dest_of["/b.mp4"].endswith("clip-001.mp4")
    assert list(work.iterdir()) == []  # working directory removed
    assert progress == sorted(progress) and progress[-1] == 1.0


def test_clip_failure_aborts_and_cleans_up(tmp_path, fake_encoder):
    enc = fake_encoder(fail_sources={"/b.mp4"}, delay=0.01)
    work = tmp_path / "work"
    work.mkdir()
    out = tmp_path / "out.mp4"
    snapshot = [_clip(1, "/a.mp4", 0, 0, 4), _clip(2, "/b.mp4", 4, 0, 5), _clip(3, "/c.mp4", 9, 0, 1)]
    result = _run(ExportPipeline(enc, ExportSettings(temp_root=work)), snapshot, out)
    assert not result.ok
    assert "1 of 3 clip encodes failed" in result.error
    assert "cannot decode /b.mp4" in result.error
    assert enc.concat_manifests == []
    assert not out.exists()
    assert list(work.iterdir()) == []


def test_failure_cancels_slow_siblings(tmp_path, fake_encoder):
    class Mixed(fake_encoder):
        async def trim_encode(self, source, *args, **kw):
            self.delay = 0.0 if source == "/bad.mp4" else 5.0
            return await super().trim_encode(source, *args, **kw)

    enc = Mixed(fail_sources={"/bad.mp4"})
    snapshot = [_clip(1, "/slow.mp4", 0, 0, 4), _clip(2, "/bad.mp4", 4, 0, 5)]
    result = _run(ExportPipeline(enc, ExportSettings(temp_root=tmp_path)), snapshot, tmp_path / "o.mp4")
    assert not result.ok
    assert enc.cancelled == ["/slow.mp4"]


def test_concat_failure_is_surfaced_and_partial_output_removed(tmp_path, fake_encoder):
    enc = fake_encoder(fail_concat=True)
    work = tmp_path / "work"
    work.mkdir()
    out = tmp_path / "out.mp4"
    snapshot = [_clip(1, "/a.mp4", 0, 0, 4), _clip(2, "/b.mp4", 4, 0, 5)]
    result = _run(ExportPipeline(enc, ExportSettings(temp_root=work)), snapshot, out)
    assert not result.ok and "concat demuxer failed" in result.error
    assert len(enc.concat_manifests) == 1  # no automatic retry
    assert not out.exists()
    assert list(work.iterdir()) == []
    assert sorted(p.name for p in tmp_path.iterdir()) == ["work"]


def test_failed_export_keeps_existing_output(tmp_path, fake_encoder):
    work = tmp_path / "work"
    work.mkdir()
    out = tmp_path / "out.mp4"
    out.write_bytes(b"previous render")
    snapshot = [_clip(1, "/a.mp4", 0, 0, 4), _clip(2, "/b.mp4", 4, 0, 5)]
    for enc in (fake_encoder(fail_sources={"/b.mp4"}), fake_encoder(fail_concat=True)):
        result = _run(ExportPipeline(enc, ExportSettings(temp_root=work)), snapshot, out)
        assert not result.ok
        assert out.read_bytes() == b"previous render"
        assert sorted(p.name for p in tmp_path.iterdir()) == ["out.mp4", "work"]


def test_failed_single_clip_keeps_existing_output(tmp_path, fake_encoder):
    out = tmp_path / "out.mp4"
    out.write_bytes(b"previous render")
    enc = fake_encoder(fail_sources={"/a.mp4"})
    result = _run(ExportPipeline(enc), [_clip(1, "/a.mp4", 0, 0, 4)], out)
    assert not result.ok and "cannot decode /a.mp4" in result.error
    assert out.read_bytes() == b"previous render"
    assert sorted(p.name for p in tmp_path.iterdir()) == ["out.mp4"]


def test_successful_export_replaces_existing_output(tmp_path, fake_encoder):
    out = tmp_path / "out.mp4"
    out.write_bytes(b"previous render")
    snapshot = [_clip(1, "/a.mp4", 0, 0, 4), _clip(2, "/b.mp4", 4, 0, 5)]
    result = _run(ExportPipeline(fake_encoder(), ExportSettings(temp_root=tmp_path)), snapshot, out)
    assert result.ok
    assert out.read_bytes() == b"movie"


def test_unexpected_encoder_errors_become_one_failure(tmp_path, fake_encoder):
    class Broken(fake_encoder):
        async def trim_encode(self, source, *args, **kw):
            if source == "/disk.mp4":
                raise PermissionError("read-only file system")
            if source == "/bug.mp4":
                raise RuntimeError("encoder bug")
            return await super().trim_encode(source, *args, **kw)

    out = tmp_path / "out.mp4"
    settings = ExportSettings(temp_root=tmp_path)
    snapshot = [_clip(1, "/a.mp4", 0, 0, 4), _clip(2, "/disk.mp4", 4, 0, 5)]
    result = asyncio.run(run_export(snapshot, out, settings=settings, encoder=Broken()))
    assert not result.ok
    assert result.error.startswith("1 of 2 clip encodes failed")
    assert "read-only file system" in result.error

    snapshot = [_clip(1, "/bug.mp4", 0, 0, 4), _clip(2, "/disk.mp4", 4, 0, 5)]
    result = asyncio.run(run_export(snapshot, out, settings=settings, encoder=Broken()))
    assert not result.ok and "encoder bug" in result.error
    assert not out.exists()


def test_retry_policy_applies_uniformly(tmp_path, fake_encoder):
    enc = fake_encoder(fail_times=1)
    settings = ExportSettings(temp_root=tmp_path, retry=RetryPolicy(attempts=2))
    snapshot = [_clip(1, "/a.mp4", 0, 0, 4)]
    assert _run(ExportPipeline(enc, settings), snapshot, tmp_path / "o.mp4").ok
    assert len(enc.trim_calls) == 2

    enc = fake_encoder(fail_times=1)
    assert not _run(ExportPipeline(enc), snapshot, tmp_path / "o2.mp4").ok


def test_retry_policy_rejects_zero_attempts():
    with pytest.raises(ValueError):
        RetryPolicy(attempts=0)


def test_monotonic_progress_averages_stages():
    seen = []
    tracker = MonotonicProgress(seen.append, 2)
    first, second = tracker.stage(0), tracker.stage(1)
    first(0.5)
    second(0.5)
    first(0.1)
    second(1.0)
    tracker.finish()
    assert seen == [0.25, 0.5, 0.75, 1.0]


def test_prepare_snapshot_orders_playback_track():
    snap = [_clip(2, "/b", 5, 0, 1), _clip(9, "/x", 0, 0, 1, track=2), _clip(1, "/a", 0, 0, 1)]
    assert [c.clip_id for c in prepare_snapshot(snap)] == [1, 2]


def test_unique_working_directories(tmp_path):
    pipeline = ExportPipeline(settings=ExportSettings(temp_root=tmp_path))
    a, b = pipeline._make_work_dir(), pipeline._make_work_dir()
    assert a != b and a.is_dir() and b.is_dir()


def _duration(path):
    with VideoFileClip(str(path)) as clip:
        return clip.duration


def test_two_sources_render_back_to_back(tmp_path, make_video):
    first = make_video("first.mp4", 4.0, color=(255, 0, 0))
    second = make_video("second.mp4", 5.0, color=(0, 0, 255))
    out = tmp_path / "export.mp4"
    snapshot = [
        _clip(1, first, 0.0, 0.0, 4.0, has_audio=False),
        _clip(2, second, 4.0, 0.0, 5.0, has_audio=False),
    ]
    result = asyncio.run(run_export(snapshot, out, settings=ExportSettings(fps=24, temp_root=tmp_path)))
    assert result.ok, result.error
    assert _duration(out) == pytest.approx(9.0, abs=0.25)
    with VideoFileClip(str(out)) as clip:
        assert clip.audio is not None  # silent track synthesised for every segment
        red = clip.get_frame(3.5)
        blue = clip.get_frame(4.5)
    assert red[..., 0].mean() > 200 and red[..., 2].mean() < 60
    assert blue[..., 2].mean() > 200 and blue[..., 0].mean() < 60


def test_failed_second_encode_leaves_nothing_behind(tmp_path, make_video):
    first = make_video("first.mp4", 2.0)
    work = tmp_path / "work"
    work.mkdir()
    out = tmp_path / "export.mp4"
    snapshot = [
        _clip(1, first, 0.0, 0.0, 2.0, has_audio=False),
        _clip(2, tmp_path / "missing.mp4", 2.0, 0.0, 2.0),
    ]
    result = asyncio.run(run_export(snapshot, out, settings=ExportSettings(temp_root=work)))
    assert not result.ok
    assert not out.exists()
    assert list(work.iterdir()) == []


def test_export_timeline_uses_store_snapshot(tmp_path, make_video):
    from clipforge.core.timeline import TimelineStore
    from clipforge.media.registry import MediaRegistry

    reg = MediaRegistry()
    media = reg.import_file(make_video("only.mp4", 2.0))
    store = TimelineStore(reg)
    clip = store.place(media.id, 0, 0.0)
    store.trim(clip.id, "end", 1.0)
    out = tmp_path / "single.mp4"
    result = export_timeline(store, out, settings=ExportSettings(fps=24))
    assert result.ok, result.error
    assert _duration(out) == pytest.approx(1.0, abs=0.2)
