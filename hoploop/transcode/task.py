"""
资源任务数据模型

定义每个资源的状态机和进度事件通道。
"""

import time
import threading
from enum import Enum
from dataclasses import dataclass, field
from typing import Optional, Dict, Any, List, Iterator

from hoploop.errors import PipelineCancelled
from .process import RunningProcess


class AssetState(Enum):
    """资源状态枚举"""
    UNCACHED = "uncached"        # 未缓存
    DOWNLOADING = "downloading"  # 下载中
    DOWNLOADED = "downloaded"    # 已下载
    NORMALIZING = "normalizing"  # 归一化编码中
    SEGMENTING = "segmenting"    # 切片中
    READY = "ready"              # 可播放
    EVICTED = "evicted"          # 已驱逐
    FAILED = "failed"            # 失败（吸收态）


IN_PROGRESS_STATES = (
    AssetState.DOWNLOADING,
    AssetState.DOWNLOADED,
    AssetState.NORMALIZING,
    AssetState.SEGMENTING,
)

# 进度事件类型
EVENT_STATUS = "status"
EVENT_PROGRESS = "progress"
EVENT_COMPLETE = "complete"
EVENT_ERROR = "error"
TERMINAL_EVENTS = (EVENT_COMPLETE, EVENT_ERROR)


@dataclass
class AssetJob:
    """资源任务

    一个资源一次流水线运行的全部状态：当前阶段、进程句柄、进度事件历史。
    """

    asset_id: str
    name: str = ""
    state: AssetState = AssetState.UNCACHED
    error: Optional[str] = None

    # 进程信息（仅在某个阶段的进程运行时存在）
    process: Optional[RunningProcess] = None
    worker: Optional[threading.Thread] = None
    restarts: int = 0
    encoder: Optional[str] = None

    # 时间戳
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)
    completed_at: Optional[float] = None

    events: List[Dict[str, Any]] = field(default_factory=list)
    cancel_event: threading.Event = field(default_factory=threading.Event)
    lock: threading.RLock = field(default_factory=threading.RLock)
    _changed: threading.Condition = field(default=None)
    _last_percent: int = -1

    def __post_init__(self):
        if isinstance(self.state, str):
            self.state = AssetState(self.state)
        self._changed = threading.Condition(self.lock)

    # ------------------------------------------------------------------
    # 状态
    # ------------------------------------------------------------------

    def set_state(self, state: AssetState, message: Optional[str] = None):
        """切换阶段并推送 status 事件"""
        with self.lock:
            self.state = state
            self.updated_at = time.time()
            self._last_percent = -1
            if message:
                self._emit({"type": EVENT_STATUS, "stage": state.value, "message": message})

    def mark_ready(self, message: str = "Ready to play"):
        with self.lock:
            self.state = AssetState.READY
            self.updated_at = time.time()
            self.completed_at = time.time()
            self.process = None
            self._emit({"type": EVENT_COMPLETE, "stage": self.state.value, "message": message})

    def mark_failed(self, reason: str):
        with self.lock:
            self.state = AssetState.FAILED
            self.error = reason
            self.updated_at = time.time()
            self.completed_at = time.time()
            self.process = None
            self._emit({"type": EVENT_ERROR, "stage": self.state.value, "message": reason})

    def mark_evicted(self):
        with self.lock:
            self.state = AssetState.EVICTED
            self.updated_at = time.time()
            self.completed_at = time.time()
            self.process = None
            if not self.is_terminal_emitted():
                self._emit({"type": EVENT_ERROR, "stage": self.state.value, "message": "Video removed from cache"})

    def is_in_progress(self) -> bool:
        return self.state in IN_PROGRESS_STATES

    def is_ready(self) -> bool:
        return self.state == AssetState.READY

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    # ------------------------------------------------------------------
    # 进程
    # ------------------------------------------------------------------

    def attach_process(self, start):
        """在任务锁内启动进程并登记句柄

        取消和启动互斥：已取消时不再启动新进程，避免留下孤儿进程。

        Args:
            start: 无参可调用对象，返回 RunningProcess
        """
        with self.lock:
            if self.cancelled:
                raise PipelineCancelled(f"Asset {self.asset_id} was cancelled")
            self.process = start()
            return self.process

    def detach_process(self, handle: RunningProcess):
        with self.lock:
            if self.process is handle:
                self.process = None

    def cancel(self, timeout: float = 10) -> Optional[int]:
        """取消任务并终止当前进程，返回时进程已停止"""
        with self.lock:
            self.cancel_event.set()
            handle = self.process
        if handle is not None:
            return handle.terminate(timeout)
        return None

    # ------------------------------------------------------------------
    # 进度通道
    # ------------------------------------------------------------------

    def _emit(self, event: Dict[str, Any]):
        event.setdefault("asset_id", self.asset_id)
        event["time"] = time.time()
        self.events.append(event)
        self._changed.notify_all()

    def report_progress(self, percent: float, message: Optional[str] = None, **extra):
        """推送进度事件，同一阶段内百分比只增不减"""
        value = int(max(0, min(100, percent)))
        with self.lock:
            if value <= self._last_percent:
                return
            self._last_percent = value
            event = {"type": EVENT_PROGRESS, "stage": self.state.value, "percent": value}
            if message:
                event["message"] = message
            event.update(extra)
            self._emit(event)

    def report_status(self, message: str):
        with self.lock:
            self._emit({"type": EVENT_STATUS, "stage": self.state.value, "message": message})

    def is_terminal_emitted(self) -> bool:
        return bool(self.events) and self.events[-1]["type"] in TERMINAL_EVENTS

    def iter_events(self, keepalive: float = 15.0) -> Iterator[Optional[Dict[str, Any]]]:
        """从头迭代事件，直到终止事件

        等待超过 keepalive 秒没有新事件时产出 None，调用方可借此发送心跳。
        """
        index = 0
        while True:
            with self.lock:
                if index >= len(self.events):
                    self._changed.wait(timeout=keepalive)
                pending = self.events[index:]
                index += len(pending)
            if not pending:
                yield None
                continue
            for event in pending:
                yield event
                if event["type"] in TERMINAL_EVENTS:
                    return

    def to_dict(self) -> Dict[str, Any]:
        """转换为字典（用于 API 响应）"""
        with self.lock:
            last_progress = next(
                (e for e in reversed(self.events) if e["type"] == EVENT_PROGRESS), None
            )
            result = {
                "id": self.asset_id,
                "name": self.name,
                "state": self.state.value,
                "ready": self.state == AssetState.READY,
                "restarts": self.restarts,
                "created_at": self.created_at,
                "updated_at": self.updated_at,
            }
            if last_progress and self.is_in_progress():
                result["percent"] = last_progress["percent"]
            if self.encoder:
                result["encoder"] = self.encoder
            if self.completed_at:
                result["completed_at"] = self.completed_at
            if self.error:
                result["error"] = self.error
            if self.process is not None:
                result["pid"] = self.process.pid
            return result
