"""
转码流水线

严格按顺序执行：
1. 探测音轨（ffprobe，失败按无音轨处理）
2. 归一化：先尝试硬件编码，失败或超时后回退软件编码
3. 切片：流复制切成 TS 分片，解析出规范切片列表并原子写入

任何阶段失败都会抛出对应的错误，不会留下半成品清单。
"""

import os
import logging
from typing import Callable, List, Optional

from hoploop.errors import NormalizeFailed, PipelineCancelled, ProcessCrashed, SegmentFailed
from .config import LoopConfig
from .ffmpeg import FFmpegRunner, NORMALIZED_FILENAME, SEGMENT_PLAYLIST_FILENAME, parse_progress_line
from .ffprobe import FFprobeRunner
from .playlist import CanonicalManifest
from .process import ProcessResult, ProcessRunner, get_command_line_string
from .task import AssetJob, AssetState

logger = logging.getLogger(__name__)

CANONICAL_FILENAME = "canonical.json"


class TranscodePipeline:
    """转码流水线

    同一个实例可以被多个资源的工作线程并发使用，状态都保存在 AssetJob 上。
    """

    def __init__(
        self,
        config: LoopConfig,
        runner: Optional[ProcessRunner] = None,
        ffprobe: Optional[FFprobeRunner] = None,
        ffmpeg: Optional[FFmpegRunner] = None,
    ):
        self.config = config
        self.runner = runner or ProcessRunner(config.stderr_tail_bytes)
        self.ffprobe = ffprobe or FFprobeRunner(self.runner, config.ffprobe_path, config.probe_timeout)
        self.ffmpeg = ffmpeg or FFmpegRunner(config)

    def run(self, job: AssetJob, source_path: str, derived_dir: str) -> CanonicalManifest:
        """执行完整流水线

        Args:
            job: 资源任务（接收状态和进度）
            source_path: 缓存的源文件
            derived_dir: 派生文件输出目录

        Returns:
            CanonicalManifest

        Raises:
            NormalizeFailed / SegmentFailed / ProcessCrashed / PipelineCancelled
        """
        os.makedirs(derived_dir, exist_ok=True)
        # 清理上一次失败运行留下的文件
        self._clear_dir(derived_dir)

        has_audio = self.ffprobe.has_audio_track(source_path)
        duration = self.ffprobe.get_duration(source_path)
        if not has_audio:
            logger.info(f"No audio track in {source_path}, a silent track will be added")

        job.set_state(AssetState.NORMALIZING, "Encoding video for streaming...")
        normalized_path = self.normalize(job, source_path, derived_dir, has_audio, duration)

        job.set_state(AssetState.SEGMENTING, "Splitting into segments...")
        manifest = self.segment(job, normalized_path, derived_dir)

        if os.path.exists(normalized_path):
            os.remove(normalized_path)
        return manifest

    # ------------------------------------------------------------------
    # 归一化
    # ------------------------------------------------------------------

    def normalize(
        self,
        job: AssetJob,
        source_path: str,
        derived_dir: str,
        has_audio: bool,
        duration: float = 0.0,
    ) -> str:
        """归一化编码，返回输出文件路径"""
        output_path = os.path.join(derived_dir, NORMALIZED_FILENAME)
        tmp_path = f"{output_path}.tmp"

        attempts = []
        if self.config.use_hwaccel:
            attempts.append((True, self.config.hw_normalize_timeout))
        attempts.append((False, self.config.normalize_timeout))

        last_error = ""
        for use_hwaccel, timeout in attempts:
            encoder = self.config.get_effective_video_encoder(use_hwaccel)
            job.encoder = encoder
            command = self.ffmpeg.build_normalize_command(source_path, tmp_path, has_audio, use_hwaccel)

            def on_line(line: str):
                seconds = parse_progress_line(line)
                if seconds >= 0 and duration > 0:
                    job.report_progress(seconds / duration * 100)

            try:
                result = self._run_stage(job, command, timeout, derived_dir, on_line)
            except ProcessCrashed:
                if use_hwaccel:
                    logger.warning(f"Hardware encoder {encoder} keeps crashing for {job.asset_id}, falling back")
                    continue
                raise

            if result.success:
                os.replace(tmp_path, output_path)
                job.report_progress(100)
                logger.info(f"Normalized {job.asset_id} with {encoder}")
                return output_path

            self._remove(tmp_path)
            last_error = self._describe_failure(result, timeout)
            if use_hwaccel:
                logger.warning(f"Hardware encode failed for {job.asset_id} ({last_error}), falling back to {self.config.video_encoder_sw}")
                job.report_status("Hardware encoder unavailable, using software encoder...")
            else:
                logger.error(f"Software encode failed for {job.asset_id}: {last_error}")

        raise NormalizeFailed(f"Encoding failed: {last_error}")

    # ------------------------------------------------------------------
    # 切片
    # ------------------------------------------------------------------

    def segment(self, job: AssetJob, normalized_path: str, derived_dir: str) -> CanonicalManifest:
        """流复制切片并生成规范切片列表"""
        command = self.ffmpeg.build_segment_command(normalized_path, derived_dir)
        result = self._run_stage(job, command, self.config.segment_timeout, derived_dir)
        if not result.success:
            raise SegmentFailed(f"Segmenting failed: {self._describe_failure(result, self.config.segment_timeout)}")

        playlist_path = os.path.join(derived_dir, SEGMENT_PLAYLIST_FILENAME)
        try:
            with open(playlist_path, "r", encoding="utf-8") as f:
                manifest = CanonicalManifest.from_m3u8(f.read(), self.config.segment_duration)
        except (OSError, ValueError) as e:
            raise SegmentFailed(f"Segment playlist unusable: {e}") from e

        missing = [
            name for name in manifest.filenames()
            if not os.path.isfile(os.path.join(derived_dir, name))
        ]
        if missing:
            raise SegmentFailed(f"Missing segment files: {', '.join(missing[:5])}")

        manifest.save(os.path.join(derived_dir, CANONICAL_FILENAME))
        logger.info(
            f"Segmented {job.asset_id}: {manifest.segment_count} segments, "
            f"{manifest.total_duration:.2f}s"
        )
        return manifest

    # ------------------------------------------------------------------
    # 进程执行与崩溃重启
    # ------------------------------------------------------------------

    def _run_stage(
        self,
        job: AssetJob,
        command: List[str],
        timeout: float,
        working_dir: str,
        on_line: Optional[Callable[[str], None]] = None,
    ) -> ProcessResult:
        """运行单个阶段的进程

        被外部信号杀死视为崩溃，按指数退避重启，超过次数后抛出 ProcessCrashed。
        """
        attempt = 0
        while True:
            logger.info(f"Starting FFmpeg for {job.asset_id}: {get_command_line_string(command)}")
            try:
                handle = job.attach_process(
                    lambda: self.runner.start(command, working_dir, on_stdout_line=on_line)
                )
            except OSError as e:
                return ProcessResult(returncode=None, diagnostic=f"Cannot start {command[0]}: {e}")

            try:
                result = handle.wait(timeout)
            finally:
                job.detach_process(handle)

            if job.cancelled:
                raise PipelineCancelled(f"Asset {job.asset_id} was cancelled")
            if not result.crashed:
                return result

            attempt += 1
            if attempt > self.config.max_restarts:
                raise ProcessCrashed(
                    f"{command[0]} crashed {attempt} times (signal {-result.returncode})"
                )
            job.restarts += 1
            delay = self.config.restart_backoff * (2 ** (attempt - 1))
            logger.warning(
                f"{command[0]} for {job.asset_id} killed by signal {-result.returncode}, "
                f"restarting in {delay:.1f}s ({attempt}/{self.config.max_restarts})"
            )
            job.report_status(f"Encoder stopped unexpectedly, restarting ({attempt}/{self.config.max_restarts})...")
            if job.cancel_event.wait(delay):
                raise PipelineCancelled(f"Asset {job.asset_id} was cancelled")

    @staticmethod
    def _describe_failure(result: ProcessResult, timeout: float) -> str:
        if result.timed_out:
            return f"timed out after {timeout}s"
        tail = result.diagnostic.strip().splitlines()[-3:]
        detail = " | ".join(tail) if tail else "no diagnostic output"
        return f"exit code {result.returncode}: {detail}"

    @staticmethod
    def _remove(path: str):
        if os.path.exists(path):
            os.remove(path)

    @staticmethod
    def _clear_dir(path: str):
        for filename in os.listdir(path):
            file_path = os.path.join(path, filename)
            if os.path.isfile(file_path):
                os.remove(file_path)
