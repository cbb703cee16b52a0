"""
FFprobe 媒体信息获取模块

使用 ffprobe 获取源文件和归一化文件的媒体信息：时长、是否有音轨、编码格式。
"""

import json
import logging
from typing import Optional, Dict, Any, Tuple

from hoploop.errors import ProbeInconclusive
from .process import ProcessRunner

logger = logging.getLogger(__name__)


class FFprobeRunner:
    """FFprobe 运行器

    通过 ProcessRunner 启动短生命周期的 ffprobe 进程并解析 JSON 输出。
    """

    def __init__(self, runner: ProcessRunner, ffprobe_path: str = "ffprobe", timeout: int = 30):
        """初始化 FFprobe 运行器

        Args:
            runner: 进程运行器
            ffprobe_path: ffprobe 可执行文件路径
            timeout: 默认超时时间（秒）
        """
        self.runner = runner
        self.ffprobe_path = ffprobe_path
        self.timeout = timeout

    def _probe_json(self, args: list, path: str) -> Tuple[bool, Dict[str, Any], Optional[str]]:
        cmd = [
            self.ffprobe_path,
            "-hide_banner",
            "-loglevel", "error",
            *args,
            "-print_format", "json",
            path,
        ]
        try:
            result = self.runner.run(cmd, timeout=self.timeout, capture_stdout=True)
        except OSError as e:
            logger.error(f"ffprobe could not be started: {e}")
            return False, {}, f"ffprobe not available: {e}"

        if result.timed_out:
            logger.error(f"ffprobe timeout after {self.timeout}s for {path}")
            return False, {}, f"ffprobe timeout ({self.timeout}s)"
        if not result.success:
            error_msg = result.diagnostic.strip() or "Unknown ffprobe error"
            logger.warning(f"ffprobe error (code {result.returncode}) for {path}: {error_msg}")
            return False, {}, f"ffprobe failed: {error_msg}"

        try:
            data = json.loads(result.stdout.decode("utf-8", errors="replace") or "{}")
        except json.JSONDecodeError as e:
            logger.error(f"Failed to parse ffprobe output: {e}, stdout: {result.stdout[:200]!r}")
            return False, {}, f"Failed to parse ffprobe output: {e}"
        if not isinstance(data, dict):
            return False, {}, "Unexpected ffprobe output"
        return True, data, None

    def get_media_info(self, path: str) -> Tuple[bool, Dict[str, Any], Optional[str]]:
        """获取媒体信息

        Args:
            path: 本地文件路径

        Returns:
            (成功标志, 媒体信息字典, 错误信息)
        """
        success, raw_info, error = self._probe_json(["-show_format", "-show_streams"], path)
        if not success:
            return False, {}, error

        parsed_info = parse_media_info(raw_info)
        duration = parsed_info.get("duration", 0.0)
        if duration > 0:
            logger.info(f"ffprobe got duration: {duration}s for {path}")
        else:
            logger.warning(f"ffprobe got duration=0 for {path}")
        return True, parsed_info, None

    def get_duration(self, path: str) -> float:
        """快捷获取时长，失败返回 0"""
        success, media_info, _ = self.get_media_info(path)
        if success:
            return media_info.get("duration", 0.0)
        return 0.0

    def probe_audio(self, path: str) -> bool:
        """判断文件是否包含音轨

        Raises:
            ProbeInconclusive: ffprobe 失败或输出中没有流列表
        """
        success, raw_info, error = self._probe_json(
            ["-select_streams", "a", "-show_entries", "stream=index,codec_type"],
            path,
        )
        if not success:
            raise ProbeInconclusive(error or "ffprobe failed")
        if not isinstance(raw_info.get("streams"), list):
            raise ProbeInconclusive("ffprobe output has no stream list")
        return parse_has_audio(raw_info)

    def has_audio_track(self, path: str) -> bool:
        """判断文件是否包含音轨

        无法判定时保守地返回 False，下游会合成静音音轨，而不是让流水线失败。
        """
        try:
            return self.probe_audio(path)
        except ProbeInconclusive as e:
            logger.warning(f"Audio probe inconclusive for {path}: {e}")
            return False


def parse_has_audio(raw_info: Dict[str, Any]) -> bool:
    """从 ffprobe JSON 判断是否存在音频流"""
    streams = raw_info.get("streams")
    if not isinstance(streams, list):
        return False
    for stream in streams:
        if isinstance(stream, dict) and stream.get("codec_type") == "audio":
            return True
    return False


def parse_media_info(raw_info: Dict[str, Any]) -> Dict[str, Any]:
    """解析 ffprobe 输出的原始信息

    Args:
        raw_info: ffprobe 原始输出

    Returns:
        解析后的媒体信息
    """
    result = {
        "duration": 0.0,
        "format": "",
        "size": 0,
        "video_codec": "",
        "video_profile": "",
        "video_width": 0,
        "video_height": 0,
        "video_fps": 0.0,
        "pix_fmt": "",
        "audio_codec": "",
        "audio_channels": 0,
        "audio_sample_rate": 0,
        "has_audio": False,
        "streams": [],
    }

    format_info = raw_info.get("format", {}) or {}
    result["format"] = format_info.get("format_name", "")
    try:
        result["size"] = int(format_info.get("size", 0) or 0)
    except (ValueError, TypeError):
        result["size"] = 0
    try:
        result["duration"] = float(format_info.get("duration", 0) or 0)
    except (ValueError, TypeError):
        result["duration"] = 0.0

    for stream in raw_info.get("streams", []) or []:
        codec_type = stream.get("codec_type", "")
        result["streams"].append({
            "codec_type": codec_type,
            "codec_name": stream.get("codec_name", ""),
            "index": stream.get("index", -1),
        })

        if codec_type == "video" and not result["video_codec"]:
            result["video_codec"] = stream.get("codec_name", "")
            result["video_profile"] = stream.get("profile", "")
            result["pix_fmt"] = stream.get("pix_fmt", "")
            result["video_width"] = int(stream.get("width", 0) or 0)
            result["video_height"] = int(stream.get("height", 0) or 0)

            fps_str = stream.get("r_frame_rate", "0/1")
            try:
                num, den = fps_str.split("/")
                result["video_fps"] = float(num) / float(den) if int(den) > 0 else 0.0
            except (ValueError, ZeroDivisionError):
                result["video_fps"] = 0.0

        elif codec_type == "audio" and not result["audio_codec"]:
            result["has_audio"] = True
            result["audio_codec"] = stream.get("codec_name", "")
            result["audio_channels"] = int(stream.get("channels", 0) or 0)
            try:
                result["audio_sample_rate"] = int(stream.get("sample_rate", 0) or 0)
            except ValueError:
                result["audio_sample_rate"] = 0

    return result
