"""测试 FFmpeg 命令构建和 ffprobe 输出解析。"""
import pytest

from conftest import FakeRunner
from hoploop.errors import ProbeInconclusive
from hoploop.transcode.config import LoopConfig
from hoploop.transcode.ffmpeg import FFmpegRunner, parse_progress_line
from hoploop.transcode.ffprobe import FFprobeRunner, parse_has_audio, parse_media_info
from hoploop.transcode.process import ProcessResult


def _value_after(cmd, flag):
    return cmd[cmd.index(flag) + 1]


@pytest.fixture
def ffmpeg():
    return FFmpegRunner(LoopConfig(segment_duration=6))


def test_hardware_normalize_command(ffmpeg):
    cmd = ffmpeg.build_normalize_command("/in/source.mov", "/out/normalized.mp4.tmp", True, True)

    # -hwaccel 是输入选项，必须在 -i 之前
    assert cmd.index("-hwaccel") < cmd.index("-i")
    assert _value_after(cmd, "-hwaccel") == "qsv"
    assert _value_after(cmd, "-c:v") == "h264_qsv"
    assert _value_after(cmd, "-vf") == "vpp_qsv=format=nv12"
    assert _value_after(cmd, "-profile:v") == "main"
    assert _value_after(cmd, "-level:v") == "4.0"
    assert _value_after(cmd, "-progress") == "pipe:1"
    assert cmd[-1] == "/out/normalized.mp4.tmp"


def test_software_normalize_command(ffmpeg):
    cmd = ffmpeg.build_normalize_command("/in/source.mov", "/out/n.mp4", True, False)

    assert "-hwaccel" not in cmd
    assert _value_after(cmd, "-c:v") == "libx264"
    assert _value_after(cmd, "-pix_fmt") == "yuv420p"
    assert _value_after(cmd, "-sc_threshold") == "0"
    assert _value_after(cmd, "-preset") == "veryfast"
    assert _value_after(cmd, "-profile:v") == "main"
    assert _value_after(cmd, "-level:v") == "4.0"
    assert _value_after(cmd, "-c:a") == "aac"
    assert _value_after(cmd, "-ar") == "48000"


def test_keyframes_follow_segment_duration(ffmpeg):
    for use_hwaccel in (True, False):
        cmd = ffmpeg.build_normalize_command("in", "out", True, use_hwaccel)
        assert _value_after(cmd, "-force_key_frames") == "expr:gte(t,n_forced*6)"


def test_hardware_forced_keyframes_are_idr(ffmpeg):
    """QSV 强制关键帧必须是 IDR，切片才能按相同节奏切分。"""
    cmd = ffmpeg.build_normalize_command("in", "out", True, True)
    assert _value_after(cmd, "-forced_idr") == "1"
    assert _value_after(cmd, "-idr_interval") == "0"

    cmd = ffmpeg.build_normalize_command("in", "out", True, False)
    assert "-forced_idr" not in cmd


def test_silent_audio_added_when_source_has_none(ffmpeg):
    cmd = ffmpeg.build_normalize_command("in.mp4", "out.mp4", False, False)

    assert cmd.count("-i") == 2
    lavfi = cmd.index("lavfi")
    assert cmd[lavfi + 2].startswith("anullsrc=channel_layout=stereo:sample_rate=48000")
    assert "-shortest" in cmd
    assert "1:a:0" in cmd


def test_existing_audio_is_mapped(ffmpeg):
    cmd = ffmpeg.build_normalize_command("in.mp4", "out.mp4", True, False)
    assert "anullsrc" not in " ".join(cmd)
    assert "0:a:0" in cmd
    assert "-shortest" not in cmd


def test_segment_command(ffmpeg):
    cmd = ffmpeg.build_segment_command("/d/normalized.mp4", "/d")
    assert _value_after(cmd, "-c") == "copy"
    assert _value_after(cmd, "-f") == "hls"
    assert _value_after(cmd, "-hls_time") == "6"
    assert _value_after(cmd, "-hls_playlist_type") == "vod"
    assert _value_after(cmd, "-hls_segment_filename").endswith("segment%d.ts")
    assert cmd[-1].endswith("internal.m3u8")


def test_parse_progress_line():
    assert parse_progress_line("out_time_us=2500000") == 2.5
    assert parse_progress_line("out_time_ms=1000000") == 1.0
    assert parse_progress_line("out_time_us=N/A") == -1.0
    assert parse_progress_line("frame=12") == -1.0


# ----------------------------------------------------------------------
# ffprobe
# ----------------------------------------------------------------------

def test_parse_has_audio():
    assert parse_has_audio({"streams": [{"index": 1, "codec_type": "audio"}]})
    assert not parse_has_audio({"streams": []})
    assert not parse_has_audio({})
    assert not parse_has_audio({"streams": "garbage"})


def test_parse_media_info():
    info = parse_media_info({
        "format": {"format_name": "mov,mp4", "duration": "61.5", "size": "1234"},
        "streams": [
            {"codec_type": "video", "codec_name": "hevc", "pix_fmt": "yuv420p10le",
             "width": 1920, "height": 1080, "r_frame_rate": "30000/1001"},
            {"codec_type": "audio", "codec_name": "aac", "channels": 2, "sample_rate": "44100"},
        ],
    })
    assert info["duration"] == 61.5
    assert info["video_codec"] == "hevc"
    assert info["video_fps"] == pytest.approx(29.97, rel=1e-3)
    assert info["has_audio"]
    assert info["audio_sample_rate"] == 44100


def test_probe_audio_through_runner():
    assert FFprobeRunner(FakeRunner(has_audio=True)).has_audio_track("x.mp4")
    assert not FFprobeRunner(FakeRunner(has_audio=False)).has_audio_track("x.mp4")


class _BrokenProbe:
    def __init__(self, result=None, error=None):
        self.result = result
        self.error = error

    def run(self, command, working_dir=None, timeout=None, capture_stdout=False):
        if self.error:
            raise self.error
        return self.result


@pytest.mark.parametrize("runner", [
    _BrokenProbe(ProcessResult(returncode=0, stdout=b"")),
    _BrokenProbe(ProcessResult(returncode=0, stdout=b"not json")),
    _BrokenProbe(ProcessResult(returncode=1, diagnostic="Invalid data")),
    _BrokenProbe(ProcessResult(returncode=None, timed_out=True)),
    _BrokenProbe(error=FileNotFoundError("ffprobe")),
])
def test_inconclusive_probe_means_no_audio(runner):
    """探测结果无法判定时按无音轨处理，不抛出异常。"""
    probe = FFprobeRunner(runner)
    assert probe.has_audio_track("x.mp4") is False
    assert probe.get_duration("x.mp4") == 0.0
    with pytest.raises(ProbeInconclusive):
        probe.probe_audio("x.mp4")
