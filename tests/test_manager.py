"""测试生命周期管理：单任务、驱逐、失败与重试、启动恢复。"""
import os
import sys
import threading
import time

import pytest

from conftest import FakePipeline, fake_source
from hoploop.asset_cache import AssetCache
from hoploop.errors import ManifestNotReady, NormalizeFailed, PipelineCancelled
from hoploop.transcode.config import LoopConfig
from hoploop.transcode.manager import LoopManager
from hoploop.transcode.process import ProcessRunner
from hoploop.transcode.task import AssetState


def _manager(config, pipeline, source=None):
    return LoopManager(
        config,
        cache=AssetCache(config.cache_dir),
        pipeline=pipeline,
        source_provider=source or fake_source(),
    )


def _wait_done(job, timeout=10):
    job.worker.join(timeout)
    assert not job.worker.is_alive()


def test_prepare_reaches_ready(loop_config):
    manager = _manager(loop_config, FakePipeline())
    job = manager.prepare("vid")
    _wait_done(job)

    assert job.state == AssetState.READY
    assert manager.get_state("vid") == AssetState.READY
    assert manager.cache.exists("vid")
    assert job.name == "vid.mp4"

    playlist = manager.get_playlist("vid")
    assert "#EXT-X-ENDLIST" in playlist.render()
    assert os.path.isfile(manager.get_segment_path("vid", "segment0.ts"))

    types = [e["type"] for e in job.events]
    assert types[-1] == "complete"
    assert "progress" in types
    stages = [e["stage"] for e in job.events if e["type"] == "status"]
    assert stages[0] == "downloading"
    assert "downloaded" in stages


def test_concurrent_prepares_share_one_pipeline(loop_config):
    gate = threading.Event()
    pipeline = FakePipeline(gate=gate)
    manager = _manager(loop_config, pipeline)

    jobs = []
    threads = [threading.Thread(target=lambda: jobs.append(manager.prepare("vid"))) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(5)

    assert len({id(job) for job in jobs}) == 1
    gate.set()
    _wait_done(jobs[0])
    assert pipeline.runs == 1

    # 就绪后再次请求不会重新处理
    assert manager.prepare("vid") is jobs[0]
    assert pipeline.runs == 1


def test_cached_source_is_not_downloaded_again(loop_config):
    calls = []
    source = fake_source()

    def counting(asset_id):
        calls.append(asset_id)
        return source(asset_id)

    manager = _manager(loop_config, FakePipeline(), counting)
    manager.cache.write("vid", [b"x" * 10], name="Local.mp4")
    job = manager.prepare("vid")
    _wait_done(job)

    assert calls == []
    assert job.name == "Local.mp4"
    assert any(e.get("message") == "Video already cached" for e in job.events)


def test_failure_is_absorbing_until_retry(loop_config):
    pipeline = FakePipeline(error=NormalizeFailed("Encoding failed: exit code 1"))
    manager = _manager(loop_config, pipeline)

    job = manager.prepare("vid")
    _wait_done(job)
    assert job.state == AssetState.FAILED
    assert job.events[-1]["type"] == "error"
    assert "Encoding failed" in job.events[-1]["message"]
    with pytest.raises(ManifestNotReady):
        manager.get_playlist("vid")

    assert manager.prepare("vid") is job
    assert pipeline.runs == 1

    pipeline.error = None
    retried = manager.prepare("vid", retry=True)
    assert retried is not job
    _wait_done(retried)
    assert retried.state == AssetState.READY
    assert pipeline.runs == 2


def test_download_failure(loop_config):
    def short_source(asset_id):
        return {"name": "a.mp4", "size": 100}, iter([b"x" * 10])

    manager = _manager(loop_config, FakePipeline(), short_source)
    job = manager.prepare("vid")
    _wait_done(job)
    assert job.state == AssetState.FAILED
    assert not manager.cache.exists("vid")


def test_unexpected_error_fails_job(loop_config):
    manager = _manager(loop_config, FakePipeline(error=KeyError("boom")))
    job = manager.prepare("vid")
    _wait_done(job)
    assert job.state == AssetState.FAILED
    assert "Unexpected error" in job.error


class SleepingPipeline:
    """启动一个真实的长时间子进程，等待它退出"""

    def __init__(self):
        self.handles = {}
        self._changed = threading.Condition()

    @property
    def handle(self):
        return next(iter(self.handles.values()))

    def wait_started(self, count=1, timeout=10):
        with self._changed:
            return self._changed.wait_for(lambda: len(self.handles) >= count, timeout)

    def run(self, job, source_path, derived_dir):
        job.set_state(AssetState.NORMALIZING, "Encoding video for streaming...")
        os.makedirs(derived_dir, exist_ok=True)
        with open(os.path.join(derived_dir, "normalized.mp4.tmp"), "wb") as f:
            f.write(b"partial")
        handle = job.attach_process(
            lambda: ProcessRunner().start([sys.executable, "-c", "import time; time.sleep(60)"])
        )
        with self._changed:
            self.handles[job.asset_id] = handle
            self._changed.notify_all()
        handle.wait()
        job.detach_process(handle)
        if job.cancelled:
            raise PipelineCancelled("cancelled")
        raise AssertionError("process should have been terminated")


def test_evict_during_processing(loop_config):
    """驱逐先终止进程，再删除文件，任务不会变成就绪。"""
    pipeline = SleepingPipeline()
    manager = _manager(loop_config, pipeline)
    job = manager.prepare("vid")
    assert pipeline.wait_started()

    started = time.time()
    assert manager.evict("vid") is True
    assert time.time() - started < loop_config.stop_timeout + 5

    assert not pipeline.handle.is_running()
    assert not job.worker.is_alive()
    assert not os.path.exists(manager.cache.entry_dir("vid"))
    assert job.state == AssetState.EVICTED
    assert job.events[-1]["type"] == "error"
    assert manager.get_state("vid") == AssetState.EVICTED
    with pytest.raises(ManifestNotReady):
        manager.get_playlist("vid")


def test_evict_while_worker_publishes_playlist(loop_config):
    """工作线程在驱逐取消它之前刚好完成，播放列表也不能留下。"""
    gate = threading.Event()
    manager = _manager(loop_config, FakePipeline(gate=gate))
    job = manager.prepare("vid")

    original_cancel = job.cancel

    def cancel_after_worker_finishes(timeout=10):
        gate.set()
        job.worker.join(10)
        assert job.state == AssetState.READY
        return original_cancel(timeout)

    job.cancel = cancel_after_worker_finishes
    assert manager.evict("vid") is True

    assert job.state == AssetState.EVICTED
    assert not os.path.exists(manager.cache.entry_dir("vid"))
    with pytest.raises(ManifestNotReady):
        manager.get_playlist("vid")
    assert manager.get_status_summary()["ready_assets"] == 0


def test_evict_ready_asset_and_prepare_again(loop_config):
    pipeline = FakePipeline()
    manager = _manager(loop_config, pipeline)
    job = manager.prepare("vid")
    _wait_done(job)

    assert manager.evict("vid") is True
    assert not manager.cache.exists("vid")
    with pytest.raises(ManifestNotReady):
        manager.get_segment_path("vid", "segment0.ts")

    again = manager.prepare("vid")
    _wait_done(again)
    assert again.state == AssetState.READY
    assert pipeline.runs == 2


def test_evict_unknown_asset(loop_config):
    manager = _manager(loop_config, FakePipeline())
    assert manager.evict("missing") is False
    assert manager.get_state("missing") == AssetState.UNCACHED


def test_segment_path_only_for_known_segments(loop_config):
    manager = _manager(loop_config, FakePipeline())
    _wait_done(manager.prepare("vid"))
    for name in ("../meta.json", "canonical.json", "segment99.ts"):
        with pytest.raises(ManifestNotReady):
            manager.get_segment_path("vid", name)


def test_clear_all(loop_config):
    manager = _manager(loop_config, FakePipeline())
    for asset_id in ("a", "b"):
        _wait_done(manager.prepare(asset_id))
    assert manager.clear_all() == 2
    assert manager.cache.list_ids() == []
    assert manager.get_status_summary()["ready_assets"] == 0


def test_startup_restores_ready_assets(tmp_path):
    config = LoopConfig(cache_dir=str(tmp_path / "cache"), clear_cache_on_startup=False)
    first = _manager(config, FakePipeline())
    _wait_done(first.prepare("vid"))

    restarted = _manager(config, FakePipeline())
    restarted.startup()
    assert restarted.get_state("vid") == AssetState.READY
    assert restarted.get_playlist("vid").render() == first.get_playlist("vid").render()


def test_startup_clears_cache_by_default(loop_config):
    manager = _manager(loop_config, FakePipeline())
    manager.cache.write("vid", [b"x"])
    manager.startup()
    assert manager.get_state("vid") == AssetState.UNCACHED


def test_dynamic_strategy_playlist(tmp_path):
    config = LoopConfig(cache_dir=str(tmp_path / "cache"), strategy="dynamic")
    manager = _manager(config, FakePipeline())
    _wait_done(manager.prepare("vid"))
    text = manager.get_playlist("vid").render()
    assert "#EXT-X-ENDLIST" not in text
    assert "#EXT-X-DISCONTINUITY-SEQUENCE:0" in text


def test_shutdown_stops_workers(loop_config):
    pipeline = SleepingPipeline()
    manager = _manager(loop_config, pipeline)
    job = manager.prepare("vid")
    assert pipeline.wait_started()
    manager.shutdown()
    assert not pipeline.handle.is_running()
    assert not job.worker.is_alive()


def test_shutdown_stops_every_asset(loop_config):
    """关闭时终止所有资源的进程，而不只是一个。"""
    pipeline = SleepingPipeline()
    manager = _manager(loop_config, pipeline)
    jobs = [manager.prepare(asset_id) for asset_id in ("a", "b")]
    assert pipeline.wait_started(count=2)

    manager.shutdown()

    assert sorted(pipeline.handles) == ["a", "b"]
    for handle in pipeline.handles.values():
        assert not handle.is_running()
    for job in jobs:
        assert not job.worker.is_alive()
        assert job.cancelled
