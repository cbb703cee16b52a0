"""
循环 HLS 转码模块

把任意来源的视频变成可无限循环播放的 HLS 流，适合 AirPlay 投屏。

核心特性：
- 归一化编码：优先硬件编码（QSV），失败后回退 libx264，两条路径输出一致
- 流复制切片，按切片时长强制关键帧
- 两种循环策略：static（重复清单）和 dynamic（滑动窗口）
- 每个资源同时只有一条流水线，驱逐时先终止进程再删除文件
"""

from .config import LoopConfig, get_loop_config
from .task import AssetJob, AssetState
from .playlist import (
    CanonicalManifest,
    Segment,
    StaticLoopPlaylist,
    DynamicLoopPlaylist,
    create_loop_playlist,
)
from .process import ProcessRunner
from .ffprobe import FFprobeRunner
from .ffmpeg import FFmpegRunner
from .pipeline import TranscodePipeline
from .manager import LoopManager

__all__ = [
    'LoopConfig',
    'get_loop_config',
    'AssetJob',
    'AssetState',
    'CanonicalManifest',
    'Segment',
    'StaticLoopPlaylist',
    'DynamicLoopPlaylist',
    'create_loop_playlist',
    'ProcessRunner',
    'FFprobeRunner',
    'FFmpegRunner',
    'TranscodePipeline',
    'LoopManager',
]
