"""测试资源任务：进度事件和取消。"""
import threading

import pytest

from conftest import FakeHandle
from hoploop.errors import PipelineCancelled
from hoploop.transcode.process import ProcessResult
from hoploop.transcode.task import AssetJob, AssetState


def test_progress_is_monotonic_within_stage():
    job = AssetJob(asset_id="vid", state=AssetState.DOWNLOADING)
    for percent in (10, 5, 10, 30.7, 200):
        job.report_progress(percent)
    assert [e["percent"] for e in job.events] == [10, 30, 100]

    # 新阶段重新从 0 开始
    job.set_state(AssetState.NORMALIZING)
    job.report_progress(3)
    assert job.events[-1]["percent"] == 3
    assert job.events[-1]["stage"] == "normalizing"


def test_iter_events_replays_history_and_stops_at_terminal():
    job = AssetJob(asset_id="vid")
    job.set_state(AssetState.DOWNLOADING, "Downloading")
    job.report_progress(50)

    received = []

    def consume():
        for event in job.iter_events(keepalive=0.1):
            if event is not None:
                received.append(event["type"])

    reader = threading.Thread(target=consume)
    reader.start()
    job.report_progress(80)
    job.mark_ready()
    reader.join(timeout=5)

    assert not reader.is_alive()
    assert received == ["status", "progress", "progress", "complete"]


def test_iter_events_heartbeat():
    job = AssetJob(asset_id="vid")
    events = job.iter_events(keepalive=0.05)
    assert next(events) is None


def test_mark_failed_is_terminal():
    job = AssetJob(asset_id="vid", state="normalizing")
    job.mark_failed("Encoding failed")
    assert job.state == AssetState.FAILED
    assert job.error == "Encoding failed"
    assert job.events[-1]["type"] == "error"
    assert not job.is_in_progress()


def test_evicted_after_ready_keeps_complete_event():
    job = AssetJob(asset_id="vid")
    job.mark_ready()
    job.mark_evicted()
    assert job.state == AssetState.EVICTED
    assert [e["type"] for e in job.events] == ["complete"]


def test_evicted_in_flight_emits_error():
    job = AssetJob(asset_id="vid", state=AssetState.NORMALIZING)
    job.mark_evicted()
    assert job.events[-1]["type"] == "error"


def test_cancel_terminates_attached_process():
    job = AssetJob(asset_id="vid")
    handle = job.attach_process(lambda: FakeHandle(ProcessResult(returncode=0)))
    assert job.to_dict()["pid"] == handle.pid

    job.cancel()
    assert handle.terminated
    assert job.cancelled


def test_no_process_started_after_cancel():
    job = AssetJob(asset_id="vid")
    job.cancel()
    started = []
    with pytest.raises(PipelineCancelled):
        job.attach_process(lambda: started.append(1))
    assert started == []


def test_to_dict():
    job = AssetJob(asset_id="vid", name="Ocean.mp4", state=AssetState.DOWNLOADING)
    job.report_progress(42)
    data = job.to_dict()
    assert data["state"] == "downloading"
    assert data["percent"] == 42
    assert data["ready"] is False
    assert "error" not in data
