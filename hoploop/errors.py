"""
错误定义

按失败来源划分的异常类型。管理器在工作线程边界统一捕获，
记录为 Failed 状态并通过进度通道推送错误消息。
"""


class LoopStreamError(RuntimeError):
    """所有循环流错误的基类。"""


class CatalogUnavailable(LoopStreamError):
    """目录服务（Google Drive）不可用或返回错误，不重试。"""

    def __init__(self, message: str, status_code: int = 502):
        super().__init__(message)
        self.status_code = status_code


class DownloadFailed(LoopStreamError):
    """下载失败，临时文件已丢弃。"""


class ProbeInconclusive(LoopStreamError):
    """ffprobe 输出无法判定，调用方按"无音轨"处理。"""


class NormalizeFailed(LoopStreamError):
    """软件编码路径也失败，本次流水线终止。"""


class SegmentFailed(LoopStreamError):
    """切片失败，不允许使用不完整的切片列表。"""


class ManifestNotReady(LoopStreamError):
    """资源尚未就绪，对外表现为 404。"""


class ProcessCrashed(LoopStreamError):
    """进程被信号意外终止，重启次数耗尽后抛出。"""


class PipelineCancelled(LoopStreamError):
    """流水线被驱逐或关闭操作取消。"""
