"""
外部进程管理模块

启动并监督 ffmpeg / ffprobe 进程：
- 持续读取 stderr，只保留尾部若干字节作为诊断信息
- 可选地逐行把 stdout 交给回调（用于 -progress 进度解析）
- 等待退出时强制超时，超时即失败
- 终止时先发送 SIGTERM，让 ffmpeg 刷新输出
"""

import subprocess
import threading
import logging
from dataclasses import dataclass
from typing import Callable, List, Optional

logger = logging.getLogger(__name__)


@dataclass
class ProcessResult:
    """进程执行结果"""

    returncode: Optional[int]
    diagnostic: str = ""
    stdout: bytes = b""
    timed_out: bool = False
    terminated: bool = False  # 由本进程主动终止

    @property
    def success(self) -> bool:
        return self.returncode == 0 and not self.timed_out and not self.terminated

    @property
    def crashed(self) -> bool:
        """被外部信号杀死（非我们主动终止）"""
        return (
            self.returncode is not None
            and self.returncode < 0
            and not self.terminated
            and not self.timed_out
        )


class _TailBuffer:
    """只保留最后 limit 字节的缓冲区"""

    def __init__(self, limit: int):
        self.limit = limit
        self._data = bytearray()
        self._lock = threading.Lock()

    def append(self, chunk: bytes):
        with self._lock:
            self._data.extend(chunk)
            overflow = len(self._data) - self.limit
            if overflow > 0:
                del self._data[:overflow]

    def text(self) -> str:
        with self._lock:
            return self._data.decode("utf-8", errors="replace")


class RunningProcess:
    """运行中的进程句柄

    由 ProcessRunner.start 创建。后台线程持续读取输出，
    调用方通过 wait() 挂起直到进程退出。
    """

    def __init__(
        self,
        command: List[str],
        working_dir: Optional[str] = None,
        stderr_tail_bytes: int = 4096,
        on_stdout_line: Optional[Callable[[str], None]] = None,
        capture_stdout: bool = False,
    ):
        self.command = command
        self._tail = _TailBuffer(stderr_tail_bytes)
        self._on_stdout_line = on_stdout_line
        self._capture_stdout = capture_stdout
        self._stdout_chunks: List[bytes] = []
        self._terminated = False
        self._lock = threading.Lock()

        self.process = subprocess.Popen(
            command,
            cwd=working_dir,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
        )
        self.pid = self.process.pid

        self._readers = [
            threading.Thread(target=self._read_stderr, daemon=True, name=f"stderr-{self.pid}"),
            threading.Thread(target=self._read_stdout, daemon=True, name=f"stdout-{self.pid}"),
        ]
        for reader in self._readers:
            reader.start()

    def _read_stderr(self):
        stream = self.process.stderr
        try:
            for chunk in iter(lambda: stream.read1(4096), b""):
                self._tail.append(chunk)
        except (OSError, ValueError):
            pass
        finally:
            stream.close()

    def _read_stdout(self):
        stream = self.process.stdout
        try:
            for raw_line in iter(stream.readline, b""):
                if self._capture_stdout:
                    self._stdout_chunks.append(raw_line)
                if self._on_stdout_line:
                    try:
                        self._on_stdout_line(raw_line.decode("utf-8", errors="replace").rstrip())
                    except Exception as e:
                        logger.warning(f"stdout callback failed for PID {self.pid}: {e}")
        except (OSError, ValueError):
            pass
        finally:
            stream.close()

    @property
    def diagnostic(self) -> str:
        """当前已捕获的 stderr 尾部（进程运行中也可读取）"""
        return self._tail.text()

    def is_running(self) -> bool:
        return self.process.poll() is None

    def wait(self, timeout: Optional[float] = None) -> ProcessResult:
        """等待进程退出

        Args:
            timeout: 超时时间（秒），超时后终止进程并返回失败结果

        Returns:
            ProcessResult
        """
        timed_out = False
        try:
            self.process.wait(timeout=timeout)
        except subprocess.TimeoutExpired:
            timed_out = True
            logger.warning(f"Process {self.pid} exceeded {timeout}s, terminating")
            self._stop()

        for reader in self._readers:
            reader.join(timeout=5)

        return ProcessResult(
            returncode=self.process.returncode,
            diagnostic=self.diagnostic,
            stdout=b"".join(self._stdout_chunks),
            timed_out=timed_out,
            terminated=self._terminated,
        )

    def terminate(self, timeout: float = 10) -> Optional[int]:
        """终止进程并等待退出

        先发送 SIGTERM，超时未退出才 kill。返回时进程已确认停止。

        Args:
            timeout: 等待 SIGTERM 生效的时间（秒）

        Returns:
            进程退出码
        """
        with self._lock:
            self._terminated = True
        return self._stop(timeout)

    def _stop(self, timeout: float = 10) -> Optional[int]:
        if self.process.poll() is not None:
            return self.process.returncode
        try:
            self.process.terminate()
            try:
                self.process.wait(timeout=timeout)
            except subprocess.TimeoutExpired:
                logger.warning(f"Process {self.pid} ignored SIGTERM, killing")
                self.process.kill()
                self.process.wait()
            logger.info(f"Stopped process {self.pid} (code {self.process.returncode})")
        except ProcessLookupError:
            pass
        return self.process.returncode


class ProcessRunner:
    """外部进程运行器

    所有 ffmpeg / ffprobe 调用都经过这里，便于测试时替换。
    """

    def __init__(self, stderr_tail_bytes: int = 4096):
        self.stderr_tail_bytes = stderr_tail_bytes

    def start(
        self,
        command: List[str],
        working_dir: Optional[str] = None,
        on_stdout_line: Optional[Callable[[str], None]] = None,
        capture_stdout: bool = False,
    ) -> RunningProcess:
        """启动进程

        Raises:
            OSError: 可执行文件不存在或无法启动
        """
        handle = RunningProcess(
            command,
            working_dir=working_dir,
            stderr_tail_bytes=self.stderr_tail_bytes,
            on_stdout_line=on_stdout_line,
            capture_stdout=capture_stdout,
        )
        logger.debug(f"Started process PID {handle.pid}: {command[0]}")
        return handle

    def run(
        self,
        command: List[str],
        working_dir: Optional[str] = None,
        timeout: Optional[float] = None,
        capture_stdout: bool = False,
    ) -> ProcessResult:
        """启动进程并等待退出"""
        return self.start(command, working_dir, capture_stdout=capture_stdout).wait(timeout)


def get_command_line_string(command: List[str]) -> str:
    """获取命令行字符串（用于日志记录）"""
    return " ".join(command)
