"""
HLS 循环播放列表生成器

把一次切片得到的规范切片列表（CanonicalManifest）变成可以无限循环播放的 m3u8。
两种策略按部署配置二选一：

- static：预先计算一个重复 R 次的 VOD 清单，每次重复之间插入
  #EXT-X-DISCONTINUITY，带 #EXT-X-ENDLIST，生成一次后原样返回
- dynamic：不保存完整清单，按当前时间推算循环位置，返回固定大小的滑动窗口，
  序列号单调递增，不带 #EXT-X-ENDLIST
"""

import json
import math
import os
import time
from dataclasses import dataclass
from typing import Callable, List, Optional, Tuple

from .config import LoopConfig, STRATEGY_STATIC, STRATEGY_DYNAMIC


DEFAULT_SEGMENT_URL_TEMPLATE = "/api/hls/{asset_id}/{filename}"
MPEGURL_MIMETYPE = "application/vnd.apple.mpegurl"


@dataclass(frozen=True)
class Segment:
    """单个切片：时长（秒）和文件名"""

    duration: float
    filename: str


@dataclass(frozen=True)
class CanonicalManifest:
    """规范切片列表

    一次完整播放的有序切片，生成后不可变。
    """

    segments: Tuple[Segment, ...]
    target_duration: int

    def __post_init__(self):
        if not self.segments:
            raise ValueError("CanonicalManifest needs at least one segment")
        if self.total_duration <= 0:
            raise ValueError("CanonicalManifest total duration must be positive")

    @property
    def total_duration(self) -> float:
        return sum(segment.duration for segment in self.segments)

    @property
    def segment_count(self) -> int:
        return len(self.segments)

    @property
    def effective_target_duration(self) -> int:
        """#EXT-X-TARGETDURATION 不能小于任何切片四舍五入后的时长"""
        longest = max(segment.duration for segment in self.segments)
        return max(int(self.target_duration), int(math.ceil(longest)))

    def filenames(self) -> List[str]:
        return [segment.filename for segment in self.segments]

    def to_dict(self) -> dict:
        return {
            "target_duration": self.target_duration,
            "segments": [
                {"duration": segment.duration, "filename": segment.filename}
                for segment in self.segments
            ],
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'CanonicalManifest':
        return cls(
            segments=tuple(
                Segment(float(item["duration"]), str(item["filename"]))
                for item in data["segments"]
            ),
            target_duration=int(data["target_duration"]),
        )

    @classmethod
    def from_m3u8(cls, text: str, target_duration_hint: int) -> 'CanonicalManifest':
        """解析 ffmpeg hls 复用器生成的 VOD 清单

        Args:
            text: m3u8 内容
            target_duration_hint: 配置的切片时长

        Returns:
            CanonicalManifest

        Raises:
            ValueError: 清单不完整（没有 #EXT-X-ENDLIST）或没有切片
        """
        segments = []
        target = target_duration_hint
        pending_duration: Optional[float] = None
        ended = False

        for raw_line in text.splitlines():
            line = raw_line.strip()
            if not line:
                continue
            if line.startswith("#EXT-X-TARGETDURATION:"):
                target = max(target, int(line.split(":", 1)[1]))
            elif line.startswith("#EXTINF:"):
                value = line.split(":", 1)[1].split(",", 1)[0]
                pending_duration = float(value)
            elif line == "#EXT-X-ENDLIST":
                ended = True
            elif not line.startswith("#"):
                if pending_duration is None:
                    raise ValueError(f"Segment {line!r} has no #EXTINF")
                segments.append(Segment(pending_duration, os.path.basename(line)))
                pending_duration = None

        if not ended:
            raise ValueError("Segment playlist is incomplete (no #EXT-X-ENDLIST)")
        return cls(segments=tuple(segments), target_duration=target)

    def save(self, path: str):
        """原子写入 JSON（先写临时文件再重命名）"""
        tmp_path = f"{path}.tmp"
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(self.to_dict(), f, indent=2)
        os.replace(tmp_path, path)

    @classmethod
    def load(cls, path: str) -> 'CanonicalManifest':
        with open(path, "r", encoding="utf-8") as f:
            return cls.from_dict(json.load(f))


@dataclass(frozen=True)
class LoopPosition:
    """dynamic 策略下某一时刻的循环位置"""

    elapsed: float
    loop_index: int
    position_in_loop: float
    segment_index: int
    sequence: int


class LoopPlaylist:
    """循环播放列表基类"""

    strategy = ""

    def __init__(
        self,
        asset_id: str,
        manifest: CanonicalManifest,
        config: LoopConfig,
        segment_url_template: str = DEFAULT_SEGMENT_URL_TEMPLATE,
    ):
        self.asset_id = asset_id
        self.manifest = manifest
        self.config = config
        self.segment_url_template = segment_url_template
        self._filenames = frozenset(manifest.filenames())

    def render(self) -> str:
        raise NotImplementedError

    def has_segment(self, filename: str) -> bool:
        return filename in self._filenames

    def segment_url(self, segment: Segment) -> str:
        return self.segment_url_template.format(asset_id=self.asset_id, filename=segment.filename)

    def manifest_headers(self) -> dict:
        raise NotImplementedError

    def segment_headers(self) -> dict:
        raise NotImplementedError

    def _header_lines(self, media_sequence: int) -> List[str]:
        return [
            "#EXTM3U",
            "#EXT-X-VERSION:3",
            f"#EXT-X-TARGETDURATION:{self.manifest.effective_target_duration}",
            f"#EXT-X-MEDIA-SEQUENCE:{media_sequence}",
        ]

    def _segment_lines(self, segment: Segment) -> List[str]:
        return [f"#EXTINF:{segment.duration:.6f},", self.segment_url(segment)]


class StaticLoopPlaylist(LoopPlaylist):
    """重复清单策略

    R = ceil(目标时长 / 单次时长)，R >= 1。清单生成一次后写入磁盘，
    之后每次请求返回完全相同的内容。
    """

    strategy = STRATEGY_STATIC

    def __init__(self, *args, playlist_path: Optional[str] = None, **kwargs):
        super().__init__(*args, **kwargs)
        self.repetitions = compute_repetitions(
            self.config.target_loop_seconds, self.manifest.total_duration
        )
        self.playlist_path = playlist_path
        self._rendered: Optional[str] = None

    @property
    def total_duration(self) -> float:
        return self.manifest.total_duration * self.repetitions

    def build(self) -> str:
        lines = self._header_lines(0)
        lines.insert(2, "#EXT-X-PLAYLIST-TYPE:VOD")
        for repetition in range(self.repetitions):
            if repetition > 0:
                # 切片文件被重复使用，内部时间戳会重新开始
                lines.append("#EXT-X-DISCONTINUITY")
            for segment in self.manifest.segments:
                lines.extend(self._segment_lines(segment))
        lines.append("#EXT-X-ENDLIST")
        return "\n".join(lines) + "\n"

    def materialize(self) -> str:
        """生成清单并（如果配置了路径）原子写入磁盘"""
        text = self.build()
        if self.playlist_path:
            tmp_path = f"{self.playlist_path}.tmp"
            with open(tmp_path, "w", encoding="utf-8") as f:
                f.write(text)
            os.replace(tmp_path, self.playlist_path)
        self._rendered = text
        return text

    def render(self) -> str:
        if self._rendered is None:
            if self.playlist_path and os.path.exists(self.playlist_path):
                with open(self.playlist_path, "r", encoding="utf-8") as f:
                    self._rendered = f.read()
            else:
                self.materialize()
        return self._rendered

    def manifest_headers(self) -> dict:
        return {"Cache-Control": f"public, max-age={self.config.static_manifest_max_age}"}

    def segment_headers(self) -> dict:
        return {"Cache-Control": f"public, max-age={self.config.static_segment_max_age}, immutable"}


class DynamicLoopPlaylist(LoopPlaylist):
    """滑动窗口策略

    只保存起始时间和单次时长，窗口内容每次请求时根据当前时间推算。
    """

    strategy = STRATEGY_DYNAMIC

    def __init__(
        self,
        *args,
        start_time: Optional[float] = None,
        clock: Callable[[], float] = time.time,
        **kwargs,
    ):
        super().__init__(*args, **kwargs)
        self.clock = clock
        self.start_time = clock() if start_time is None else start_time
        self.total_duration = self.manifest.total_duration
        # 每个切片的起始偏移，用于按位置查找
        offsets = []
        running = 0.0
        for segment in self.manifest.segments:
            running += segment.duration
            offsets.append(running)
        self._segment_ends = offsets

    def position_at(self, now: Optional[float] = None) -> LoopPosition:
        """计算某一时刻的循环位置

        Args:
            now: 时间戳，默认当前时间

        Returns:
            LoopPosition
        """
        if now is None:
            now = self.clock()
        elapsed = max(0.0, now - self.start_time)
        total = self.total_duration

        loop_index = int(elapsed // total)
        position = elapsed - loop_index * total
        # 浮点误差修正，保证 position 落在 [0, total)
        if position >= total:
            loop_index += 1
            position -= total
        if position < 0:
            position = 0.0

        segment_index = len(self._segment_ends) - 1
        for index, end in enumerate(self._segment_ends):
            if end > position:
                segment_index = index
                break

        count = self.manifest.segment_count
        return LoopPosition(
            elapsed=elapsed,
            loop_index=loop_index,
            position_in_loop=position,
            segment_index=segment_index,
            sequence=loop_index * count + segment_index,
        )

    def window(self, now: Optional[float] = None) -> List[Tuple[int, Segment]]:
        """当前窗口内的 (绝对序列号, 切片) 列表"""
        current = self.position_at(now).sequence
        first = max(0, current - self.config.window_behind)
        last = current + self.config.window_ahead
        count = self.manifest.segment_count
        return [
            (sequence, self.manifest.segments[sequence % count])
            for sequence in range(first, last + 1)
        ]

    def render(self, now: Optional[float] = None) -> str:
        entries = self.window(now)
        count = self.manifest.segment_count
        first_sequence = entries[0][0]
        first_loop = first_sequence // count

        lines = self._header_lines(first_sequence)
        # 窗口之前已经滑出的每个循环边界都算一个不连续点
        lines.append(f"#EXT-X-DISCONTINUITY-SEQUENCE:{first_loop}")

        previous_loop = first_loop
        for sequence, segment in entries:
            loop_index = sequence // count
            if loop_index != previous_loop:
                lines.append("#EXT-X-DISCONTINUITY")
                previous_loop = loop_index
            lines.extend(self._segment_lines(segment))
        return "\n".join(lines) + "\n"

    def manifest_headers(self) -> dict:
        return {
            "Cache-Control": "no-cache, no-store, must-revalidate",
            "Pragma": "no-cache",
            "Expires": "0",
        }

    def segment_headers(self) -> dict:
        return {"Cache-Control": f"public, max-age={self.config.dynamic_segment_max_age}"}


def compute_repetitions(target_seconds: float, total_duration: float) -> int:
    """重复次数 R = ceil(target / total)，至少为 1"""
    if total_duration <= 0:
        raise ValueError("total_duration must be positive")
    return max(1, int(math.ceil(target_seconds / total_duration)))


def create_loop_playlist(
    asset_id: str,
    manifest: CanonicalManifest,
    config: LoopConfig,
    derived_dir: Optional[str] = None,
    segment_url_template: str = DEFAULT_SEGMENT_URL_TEMPLATE,
) -> LoopPlaylist:
    """按配置的策略创建循环播放列表

    Args:
        asset_id: 资源 ID
        manifest: 规范切片列表
        config: 循环流配置
        derived_dir: 切片目录，static 策略把清单写在这里
        segment_url_template: 切片 URL 模板

    Returns:
        LoopPlaylist 实例
    """
    if config.strategy == STRATEGY_STATIC:
        playlist_path = os.path.join(derived_dir, "loop.m3u8") if derived_dir else None
        playlist = StaticLoopPlaylist(
            asset_id, manifest, config,
            segment_url_template=segment_url_template,
            playlist_path=playlist_path,
        )
        playlist.materialize()
        return playlist
    return DynamicLoopPlaylist(
        asset_id, manifest, config, segment_url_template=segment_url_template
    )
