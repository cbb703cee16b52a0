"""
FFmpeg 命令构建模块

两个阶段：
1. 归一化：重新编码为兼容性最好的 H.264/AAC，按切片时长强制关键帧，
   没有音轨时混入静音音轨
2. 切片：流复制（不重新编码）切成固定时长的 TS 分片
"""

import os
import logging
from typing import List

from .config import LoopConfig

logger = logging.getLogger(__name__)


NORMALIZED_FILENAME = "normalized.mp4"
SEGMENT_PLAYLIST_FILENAME = "internal.m3u8"
SEGMENT_PATTERN = "segment%d.ts"


class FFmpegRunner:
    """FFmpeg 命令构建器"""

    def __init__(self, config: LoopConfig):
        """初始化 FFmpeg 命令构建器

        Args:
            config: 循环流配置
        """
        self.config = config
        self.ffmpeg_path = config.ffmpeg_path

    def _base_command(self) -> List[str]:
        return [
            self.ffmpeg_path,
            "-hide_banner",
            "-nostdin",
            "-loglevel", self.config.loglevel,
        ]

    def build_normalize_command(
        self,
        source_path: str,
        output_path: str,
        has_audio: bool,
        use_hwaccel: bool,
    ) -> List[str]:
        """构建归一化命令

        Args:
            source_path: 源文件路径
            output_path: 输出文件路径（临时文件，成功后再重命名）
            has_audio: 源文件是否有音轨
            use_hwaccel: 是否使用硬件编码

        Returns:
            FFmpeg 命令列表
        """
        cmd = self._base_command()

        # -progress 输出到 stdout，用于计算进度百分比
        cmd.extend(["-nostats", "-progress", "pipe:1"])

        # 硬件加速设置：注意 -hwaccel 是输入选项，必须放在 -i 之前
        is_qsv = use_hwaccel and "qsv" in self.config.video_encoder.lower()
        if is_qsv:
            cmd.extend(["-hwaccel", "qsv", "-hwaccel_output_format", "qsv"])

        cmd.extend(["-i", source_path])

        # 无音轨时合成静音音轨，-shortest 截到视频长度
        if not has_audio:
            layout = "stereo" if self.config.audio_channels == 2 else "mono"
            cmd.extend([
                "-f", "lavfi",
                "-i", f"anullsrc=channel_layout={layout}:sample_rate={self.config.audio_sample_rate}",
            ])
            cmd.extend(["-map", "0:v:0", "-map", "1:a:0", "-shortest"])
        else:
            cmd.extend(["-map", "0:v:0", "-map", "0:a:0"])

        video_encoder = self.config.get_effective_video_encoder(use_hwaccel)
        cmd.extend(["-c:v", video_encoder])
        cmd.extend(self._get_video_params(is_qsv))

        if is_qsv:
            cmd.extend(["-preset", self.config.qsv_preset])
        elif "x264" in video_encoder.lower():
            cmd.extend(["-preset", self.config.x264_preset])

        cmd.extend(["-c:a", self.config.audio_encoder])
        cmd.extend(self._get_audio_params())

        cmd.extend([
            "-map_metadata", "-1",
            "-map_chapters", "-1",
            "-max_muxing_queue_size", "1024",
            "-movflags", "+faststart",
            "-f", "mp4",
            "-y", output_path,
        ])
        return cmd

    def _get_video_params(self, is_qsv: bool) -> List[str]:
        """获取视频编码参数

        两条路径使用同样的 profile / level / 像素格式。
        """
        params = [
            "-profile:v", self.config.video_profile,
            "-level:v", self.config.video_level,
        ]

        if self.config.video_bitrate:
            params.extend(["-b:v", self.config.video_bitrate])
        if self.config.maxrate:
            params.extend(["-maxrate", self.config.maxrate])
        if self.config.bufsize:
            params.extend(["-bufsize", self.config.bufsize])

        if is_qsv:
            # QSV: 帧保持在显存中，用 vpp_qsv 转换为 nv12（4:2:0 8bit，与 yuv420p 等价）
            params.extend(["-vf", "vpp_qsv=format=nv12"])
        else:
            params.extend(["-sc_threshold", "0"])
            params.extend(["-pix_fmt", self.config.pix_fmt])

        # 切片边界必须落在关键帧上
        seg = self.config.segment_duration
        params.extend(["-force_key_frames", f"expr:gte(t,n_forced*{seg})"])
        if is_qsv:
            # h264_qsv 的强制关键帧默认不是 IDR，mp4 只把 IDR 标为同步帧
            params.extend(["-forced_idr", "1", "-idr_interval", "0"])
        params.extend(["-g", str(self.config.gop_frames_hint)])
        return params

    def _get_audio_params(self) -> List[str]:
        params = []
        if self.config.audio_bitrate:
            params.extend(["-b:a", self.config.audio_bitrate])
        params.extend(["-ac", str(self.config.audio_channels)])
        params.extend(["-ar", str(self.config.audio_sample_rate)])
        return params

    def build_segment_command(self, normalized_path: str, output_dir: str) -> List[str]:
        """构建切片命令（流复制）

        Args:
            normalized_path: 归一化文件路径
            output_dir: 切片输出目录

        Returns:
            FFmpeg 命令列表
        """
        cmd = self._base_command()
        cmd.extend(["-i", normalized_path])
        cmd.extend([
            "-map", "0",
            "-c", "copy",
            "-f", "hls",
            "-hls_time", str(self.config.segment_duration),
            "-hls_playlist_type", "vod",
            "-hls_list_size", "0",
            "-hls_segment_type", "mpegts",
            "-start_number", "0",
            "-hls_segment_filename", os.path.join(output_dir, SEGMENT_PATTERN),
            "-y", os.path.join(output_dir, SEGMENT_PLAYLIST_FILENAME),
        ])
        return cmd


def parse_progress_line(line: str) -> float:
    """解析 -progress 输出行中的 out_time_us，返回秒数；其他行返回 -1"""
    key, _, value = line.partition("=")
    if key.strip() not in ("out_time_us", "out_time_ms"):
        return -1.0
    try:
        # out_time_ms 实际单位也是微秒
        return int(value.strip()) / 1_000_000
    except ValueError:
        return -1.0
