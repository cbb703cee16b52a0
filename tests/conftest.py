"""测试共用的假对象：假进程运行器、假流水线、清单构造。"""
import json
import os
import sys
import threading
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from hoploop.transcode.config import LoopConfig
from hoploop.transcode.playlist import CanonicalManifest, Segment
from hoploop.transcode.process import ProcessResult
from hoploop.transcode.task import AssetState


def make_manifest(durations, target=6):
    return CanonicalManifest(
        segments=tuple(Segment(d, f"segment{i}.ts") for i, d in enumerate(durations)),
        target_duration=target,
    )


def write_segment_playlist(output_dir, durations, complete=True):
    """按 ffmpeg hls 复用器的格式写出 internal.m3u8 和切片文件"""
    lines = ["#EXTM3U", "#EXT-X-VERSION:3", "#EXT-X-TARGETDURATION:7",
             "#EXT-X-MEDIA-SEQUENCE:0", "#EXT-X-PLAYLIST-TYPE:VOD"]
    for index, duration in enumerate(durations):
        name = f"segment{index}.ts"
        with open(os.path.join(output_dir, name), "wb") as f:
            f.write(b"\x47" * 188)
        lines.append(f"#EXTINF:{duration:.6f},")
        lines.append(name)
    if complete:
        lines.append("#EXT-X-ENDLIST")
    with open(os.path.join(output_dir, "internal.m3u8"), "w", encoding="utf-8") as f:
        f.write("\n".join(lines) + "\n")


class FakeHandle:
    """代替 RunningProcess 的句柄"""

    def __init__(self, result, pid=4242):
        self.result = result
        self.pid = pid
        self.terminated = False

    def wait(self, timeout=None):
        return self.result

    def terminate(self, timeout=10):
        self.terminated = True
        return -15

    def is_running(self):
        return False


class FakeRunner:
    """记录命令并按阶段模拟 ffmpeg / ffprobe 的行为

    normalize_results / segment_results 是依次返回的退出码列表，
    用完后重复最后一个。
    """

    def __init__(self, has_audio=True, duration=12.0, normalize_results=(0,),
                 segment_results=(0,), segment_durations=(6.0, 6.0), segment_complete=True):
        self.has_audio = has_audio
        self.duration = duration
        self.normalize_results = list(normalize_results)
        self.segment_results = list(segment_results)
        self.segment_durations = segment_durations
        self.segment_complete = segment_complete
        self.started = []
        self.probed = []

    @staticmethod
    def _next(results):
        return results.pop(0) if len(results) > 1 else results[0]

    def start(self, command, working_dir=None, on_stdout_line=None, capture_stdout=False):
        self.started.append(list(command))
        if "-f" in command and "hls" in command:
            code = self._next(self.segment_results)
            if code == 0:
                write_segment_playlist(working_dir, self.segment_durations, self.segment_complete)
            return FakeHandle(ProcessResult(returncode=code, diagnostic="segment error" if code else ""))

        code = self._next(self.normalize_results)
        if code == 0:
            with open(command[-1], "wb") as f:
                f.write(b"normalized")
            if on_stdout_line:
                on_stdout_line(f"out_time_us={int(self.duration / 2 * 1_000_000)}")
                on_stdout_line("progress=continue")
        return FakeHandle(ProcessResult(returncode=code, diagnostic="encoder error" if code else ""))

    def run(self, command, working_dir=None, timeout=None, capture_stdout=False):
        self.probed.append(list(command))
        if "-select_streams" in command:
            streams = [{"index": 1, "codec_type": "audio"}] if self.has_audio else []
            payload = {"streams": streams}
        else:
            payload = {
                "format": {"format_name": "mov,mp4", "duration": str(self.duration), "size": "1000"},
                "streams": [{"index": 0, "codec_type": "video", "codec_name": "h264"}],
            }
        return ProcessResult(returncode=0, stdout=json.dumps(payload).encode("utf-8"))


class FakePipeline:
    """不启动进程的流水线，run() 可以被 gate 阻塞"""

    def __init__(self, durations=(6.0, 6.0, 4.5), error=None, gate=None):
        self.durations = durations
        self.error = error
        self.gate = gate
        self.runs = 0
        self._lock = threading.Lock()

    def run(self, job, source_path, derived_dir):
        with self._lock:
            self.runs += 1
        if self.gate is not None:
            self.gate.wait(timeout=10)
        job.set_state(AssetState.NORMALIZING, "Encoding video for streaming...")
        if self.error is not None:
            raise self.error
        job.set_state(AssetState.SEGMENTING, "Splitting into segments...")
        os.makedirs(derived_dir, exist_ok=True)
        manifest = make_manifest(self.durations)
        for name in manifest.filenames():
            with open(os.path.join(derived_dir, name), "wb") as f:
                f.write(b"\x47" * 188)
        manifest.save(os.path.join(derived_dir, "canonical.json"))
        return manifest


def fake_source(size=1000):
    data = bytes(i % 256 for i in range(size))

    def provider(asset_id):
        meta = {"name": f"{asset_id}.mp4", "size": size, "mimeType": "video/mp4"}
        return meta, iter([data[:size // 2], data[size // 2:]])

    return provider


@pytest.fixture
def loop_config(tmp_path):
    return LoopConfig(
        cache_dir=str(tmp_path / "cache"),
        restart_backoff=0.0,
        stop_timeout=5,
    )
