"""
循环流配置模块

定义转码、切片、循环播放列表和缓存相关的配置参数和默认值。
"""

import os
from typing import Optional
from dataclasses import dataclass


STRATEGY_STATIC = "static"
STRATEGY_DYNAMIC = "dynamic"
LOOP_STRATEGIES = (STRATEGY_STATIC, STRATEGY_DYNAMIC)


@dataclass
class LoopConfig:
    """循环流配置

    从全局配置中读取 loop 段参数，提供默认值。
    """

    # 基础配置
    cache_dir: str = ".cache"
    clear_cache_on_startup: bool = True
    segment_duration: int = 6  # 切片时长（秒），归一化阶段按此间隔强制关键帧

    # 循环策略
    strategy: str = STRATEGY_STATIC  # static（重复清单）或 dynamic（滑动窗口）
    target_loop_seconds: int = 21600  # static 策略的最短总时长，6 小时
    window_behind: int = 3  # dynamic 策略窗口：当前切片之前保留的条目数
    window_ahead: int = 3  # dynamic 策略窗口：当前切片之后的条目数

    # 编码器配置
    use_hwaccel: bool = True  # 优先尝试硬件编码
    video_encoder: str = "h264_qsv"  # 硬件编码器
    video_encoder_sw: str = "libx264"  # 软件编码器（回退用）
    audio_encoder: str = "aac"
    qsv_preset: str = "medium"
    x264_preset: str = "veryfast"

    # 视频兼容性参数（两条路径必须一致）
    video_profile: str = "main"
    video_level: str = "4.0"
    pix_fmt: str = "yuv420p"
    video_bitrate: Optional[str] = "4000k"
    maxrate: Optional[str] = "4500k"
    bufsize: Optional[str] = "8000k"

    # 音频参数
    audio_bitrate: Optional[str] = "128k"
    audio_channels: int = 2
    audio_sample_rate: int = 48000

    # FFmpeg 日志级别
    loglevel: str = "warning"

    # 超时配置（秒）
    probe_timeout: int = 30
    hw_normalize_timeout: int = 600  # 硬件路径超时后终止并回退软件路径
    normalize_timeout: int = 7200
    segment_timeout: int = 600
    stop_timeout: int = 10  # 等待进程响应终止信号的时间

    # 诊断输出保留的尾部字节数
    stderr_tail_bytes: int = 4096

    # 进程崩溃重启
    max_restarts: int = 3
    restart_backoff: float = 2.0

    # 缓存时长（秒）
    static_manifest_max_age: int = 300
    static_segment_max_age: int = 31536000
    dynamic_segment_max_age: int = 30

    # 目录缓存
    catalog_ttl: int = 300

    # 可执行文件
    ffmpeg_path: str = "ffmpeg"
    ffprobe_path: str = "ffprobe"

    def __post_init__(self):
        if self.strategy not in LOOP_STRATEGIES:
            raise ValueError(f"Unknown loop strategy: {self.strategy!r}")
        if self.segment_duration <= 0:
            raise ValueError("segment_duration must be positive")

    @classmethod
    def from_app_config(cls, app_config: dict) -> 'LoopConfig':
        """从应用配置创建 LoopConfig

        Args:
            app_config: 全局配置字典

        Returns:
            LoopConfig 实例
        """
        loop_config = app_config.get("loop", {}) or {}

        # 只接受已声明的字段，其余键忽略
        known = cls.__dataclass_fields__
        values = {}
        for key, value in loop_config.items():
            if key not in known or value is None:
                continue
            default = known[key].default
            if isinstance(default, bool):
                values[key] = bool(value)
            elif isinstance(default, int):
                values[key] = int(value)
            elif isinstance(default, float):
                values[key] = float(value)
            else:
                values[key] = str(value)

        # 环境变量优先
        if os.environ.get("CACHE_DIR"):
            values["cache_dir"] = os.environ["CACHE_DIR"]
        if os.environ.get("LOOP_STRATEGY"):
            values["strategy"] = os.environ["LOOP_STRATEGY"].strip().lower()
        if os.environ.get("FFMPEG_PATH"):
            values["ffmpeg_path"] = os.environ["FFMPEG_PATH"]
        if os.environ.get("FFPROBE_PATH"):
            values["ffprobe_path"] = os.environ["FFPROBE_PATH"]

        return cls(**values)

    @property
    def gop_frames_hint(self) -> int:
        """按 30fps 估算的 GOP 大小，仅作为编码器上限提示"""
        return self.segment_duration * 30

    def get_effective_video_encoder(self, use_hwaccel: bool) -> str:
        """获取有效的视频编码器

        Args:
            use_hwaccel: 是否使用硬件加速

        Returns:
            编码器名称
        """
        if use_hwaccel:
            return self.video_encoder
        return self.video_encoder_sw


def get_loop_config(app_config: dict) -> LoopConfig:
    """获取循环流配置的便捷函数"""
    return LoopConfig.from_app_config(app_config)
