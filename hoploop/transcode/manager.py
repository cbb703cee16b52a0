"""
循环流生命周期管理器

负责每个资源的状态机：
- 同一资源同时最多一条流水线，重复请求挂到正在运行的任务上
- 下载 → 归一化 → 切片 → 就绪，任何致命错误进入 Failed
- 驱逐 / 清空 / 关闭时先终止进程，确认停止后再删除文件
"""

import os
import threading
import logging
from typing import Callable, Dict, Iterator, List, Optional, Tuple, Any

from hoploop.asset_cache import AssetCache, SourceAsset
from hoploop.errors import DownloadFailed, LoopStreamError, ManifestNotReady, PipelineCancelled
from .config import LoopConfig
from .pipeline import CANONICAL_FILENAME, TranscodePipeline
from .playlist import CanonicalManifest, LoopPlaylist, create_loop_playlist
from .task import AssetJob, AssetState

logger = logging.getLogger(__name__)

# source_provider(asset_id) -> (元数据, 数据块迭代器)
SourceProvider = Callable[[str], Tuple[Dict[str, Any], Iterator[bytes]]]


class LoopManager:
    """循环流管理器

    进程级状态：所有资源任务和已就绪的循环播放列表都由这里创建和销毁。
    """

    def __init__(
        self,
        config: LoopConfig,
        cache: Optional[AssetCache] = None,
        pipeline: Optional[TranscodePipeline] = None,
        source_provider: Optional[SourceProvider] = None,
    ):
        """初始化管理器

        Args:
            config: 循环流配置
            cache: 资源缓存
            pipeline: 转码流水线
            source_provider: 下载源，签名为 (asset_id) -> (meta, chunks)
        """
        self.config = config
        self.cache = cache or AssetCache(config.cache_dir)
        self.pipeline = pipeline or TranscodePipeline(config)
        self.source_provider = source_provider
        self.jobs: Dict[str, AssetJob] = {}
        self.loops: Dict[str, LoopPlaylist] = {}
        self.lock = threading.RLock()
        self._asset_locks: Dict[str, threading.Lock] = {}

    # ------------------------------------------------------------------
    # 启动 / 关闭
    # ------------------------------------------------------------------

    def startup(self):
        """启动时清空缓存目录，或恢复已切片的资源"""
        if self.config.clear_cache_on_startup:
            self.cache.clear()
            return
        for asset_id in self.cache.list_ids():
            self._restore(asset_id)

    def _restore(self, asset_id: str):
        canonical_path = os.path.join(self.cache.derived_dir(asset_id), CANONICAL_FILENAME)
        if not os.path.isfile(canonical_path):
            return
        try:
            manifest = CanonicalManifest.load(canonical_path)
        except (OSError, ValueError, KeyError) as e:
            logger.warning(f"Ignoring unreadable manifest for {asset_id}: {e}")
            return
        source = self.cache.get(asset_id)
        job = AssetJob(asset_id=asset_id, name=source.name if source else "")
        playlist = create_loop_playlist(asset_id, manifest, self.config, self.cache.derived_dir(asset_id))
        with self.lock:
            self.jobs[asset_id] = job
            self.loops[asset_id] = playlist
        job.mark_ready("Restored from cache")
        logger.info(f"Restored ready asset {asset_id} ({manifest.segment_count} segments)")

    def shutdown(self):
        """取消所有任务并等待进程退出"""
        with self.lock:
            jobs = list(self.jobs.values())
        for job in jobs:
            if job.is_in_progress():
                job.cancel(self.config.stop_timeout)
        for job in jobs:
            self._join_worker(job)
        logger.info(f"Loop manager stopped ({len(jobs)} assets)")

    # ------------------------------------------------------------------
    # 准备
    # ------------------------------------------------------------------

    def _asset_lock(self, asset_id: str) -> threading.Lock:
        with self.lock:
            lock = self._asset_locks.get(asset_id)
            if lock is None:
                lock = self._asset_locks[asset_id] = threading.Lock()
            return lock

    def prepare(self, asset_id: str, name: str = "", retry: bool = False) -> AssetJob:
        """请求资源可播放

        已就绪或正在处理时直接返回现有任务，不会启动第二条流水线。
        Failed 是吸收态，只有 retry=True 时才重新开始。

        Args:
            asset_id: 资源 ID
            name: 显示名称
            retry: 是否重试失败的资源

        Returns:
            AssetJob
        """
        with self._asset_lock(asset_id):
            with self.lock:
                job = self.jobs.get(asset_id)
                if job is not None:
                    if job.is_ready() or job.is_in_progress():
                        return job
                    if job.state == AssetState.FAILED and not retry:
                        return job

                job = AssetJob(asset_id=asset_id, name=name)
                job.state = AssetState.DOWNLOADING
                worker = threading.Thread(
                    target=self._run_job,
                    args=(job,),
                    daemon=True,
                    name=f"LoopWorker-{asset_id[:8]}",
                )
                job.worker = worker
                self.jobs[asset_id] = job
                worker.start()
                logger.info(f"Started pipeline for {asset_id}")
                return job

    def _run_job(self, job: AssetJob):
        asset_id = job.asset_id
        try:
            source_path = self._ensure_source(job)
            job.set_state(AssetState.DOWNLOADED, "Download complete")

            derived_dir = self.cache.derived_dir(asset_id)
            manifest = self.pipeline.run(job, source_path, derived_dir)

            with job.lock:
                if job.cancelled:
                    raise PipelineCancelled(f"Asset {asset_id} was cancelled")
            playlist = create_loop_playlist(asset_id, manifest, self.config, derived_dir)

            with self.lock:
                if job.cancelled or self.jobs.get(asset_id) is not job:
                    raise PipelineCancelled(f"Asset {asset_id} was cancelled")
                self.loops[asset_id] = playlist
                job.mark_ready()
            logger.info(
                f"Asset {asset_id} ready ({playlist.strategy}, "
                f"{manifest.segment_count} segments, {manifest.total_duration:.1f}s per loop)"
            )
        except PipelineCancelled:
            logger.info(f"Pipeline for {asset_id} cancelled")
        except LoopStreamError as e:
            if job.cancelled:
                logger.info(f"Pipeline for {asset_id} stopped during eviction: {e}")
                return
            logger.error(f"Pipeline for {asset_id} failed: {e}")
            job.mark_failed(str(e))
        except Exception as e:
            if job.cancelled:
                return
            logger.exception(f"Unexpected error in pipeline for {asset_id}")
            job.mark_failed(f"Unexpected error: {e}")

    def _ensure_source(self, job: AssetJob) -> str:
        asset_id = job.asset_id
        cached = self.cache.get(asset_id)
        if cached is not None:
            job.name = job.name or cached.name
            job.report_status("Video already cached")
            return cached.file_path

        if self.source_provider is None:
            raise DownloadFailed(f"No download source configured for {asset_id}")

        job.set_state(AssetState.DOWNLOADING, "Fetching metadata...")
        meta, chunks = self.source_provider(asset_id)
        name = meta.get("name", "") or asset_id
        job.name = job.name or name
        job.report_status(f'Downloading "{name}"...')

        last_sent = [-2]

        def on_progress(downloaded: int, total: int):
            if total <= 0:
                return
            percent = int(downloaded * 100 / total)
            # 每 2% 推送一次
            if percent >= last_sent[0] + 2 or percent == 100:
                last_sent[0] = percent
                job.report_progress(percent, downloaded=downloaded, total=total)

        ext = os.path.splitext(name)[1] or ".mp4"
        return self.cache.write(
            asset_id,
            chunks,
            name=name,
            ext=ext,
            mime_type=meta.get("mimeType", ""),
            total_size=int(meta.get("size") or 0),
            on_progress=on_progress,
            should_cancel=lambda: job.cancelled,
        )

    # ------------------------------------------------------------------
    # 驱逐
    # ------------------------------------------------------------------

    def evict(self, asset_id: str) -> bool:
        """删除资源：先终止进程，确认停止后再删除文件

        Returns:
            资源之前是否存在（任务或缓存文件）
        """
        with self._asset_lock(asset_id):
            with self.lock:
                job = self.jobs.get(asset_id)
                self.loops.pop(asset_id, None)
            existed = job is not None or os.path.exists(self.cache.entry_dir(asset_id))

            if job is not None:
                job.cancel(self.config.stop_timeout)
                self._join_worker(job)

            self.cache.delete(asset_id)

            with self.lock:
                # 取消之前完成的工作线程可能已经重新发布了播放列表
                self.loops.pop(asset_id, None)
                if job is not None:
                    job.mark_evicted()
                elif existed:
                    self.jobs[asset_id] = AssetJob(asset_id=asset_id, state=AssetState.EVICTED)
            logger.info(f"Evicted {asset_id}")
            return existed

    def clear_all(self) -> int:
        """驱逐所有资源并清空缓存目录

        Returns:
            驱逐的资源数量
        """
        with self.lock:
            asset_ids = set(self.jobs.keys())
        asset_ids.update(self.cache.list_ids())
        count = 0
        for asset_id in asset_ids:
            if self.evict(asset_id):
                count += 1
        self.cache.clear()
        return count

    def _join_worker(self, job: AssetJob):
        worker = job.worker
        if worker is not None and worker is not threading.current_thread() and worker.is_alive():
            worker.join(timeout=self.config.stop_timeout)
            if worker.is_alive():
                logger.warning(f"Worker for {job.asset_id} did not stop within {self.config.stop_timeout}s")

    # ------------------------------------------------------------------
    # 查询（供 Stream Server 使用，只读）
    # ------------------------------------------------------------------

    def get_job(self, asset_id: str) -> Optional[AssetJob]:
        with self.lock:
            return self.jobs.get(asset_id)

    def get_state(self, asset_id: str) -> AssetState:
        job = self.get_job(asset_id)
        if job is not None:
            return job.state
        if self.cache.exists(asset_id):
            return AssetState.DOWNLOADED
        return AssetState.UNCACHED

    def get_playlist(self, asset_id: str) -> LoopPlaylist:
        """获取就绪资源的循环播放列表

        Raises:
            ManifestNotReady: 资源不是 Ready 状态
        """
        with self.lock:
            playlist = self.loops.get(asset_id)
        if playlist is None:
            raise ManifestNotReady(f"Asset {asset_id} is not ready ({self.get_state(asset_id).value})")
        return playlist

    def get_segment_path(self, asset_id: str, filename: str) -> str:
        """获取切片文件路径，只允许规范清单中的文件名

        Raises:
            ManifestNotReady: 资源未就绪或切片不存在
        """
        playlist = self.get_playlist(asset_id)
        if not playlist.has_segment(filename):
            raise ManifestNotReady(f"Unknown segment {filename!r} for {asset_id}")
        path = os.path.join(self.cache.derived_dir(asset_id), filename)
        if not os.path.isfile(path):
            raise ManifestNotReady(f"Segment {filename!r} missing for {asset_id}")
        return path

    def get_source(self, asset_id: str) -> Optional[SourceAsset]:
        return self.cache.get(asset_id)

    def get_all_jobs(self) -> List[Dict[str, Any]]:
        with self.lock:
            return [job.to_dict() for job in self.jobs.values()]

    def get_status_summary(self) -> Dict[str, Any]:
        with self.lock:
            states: Dict[str, int] = {}
            for job in self.jobs.values():
                states[job.state.value] = states.get(job.state.value, 0) + 1
            return {
                "total_assets": len(self.jobs),
                "ready_assets": len(self.loops),
                "active_assets": sum(1 for job in self.jobs.values() if job.is_in_progress()),
                "states": states,
                "strategy": self.config.strategy,
            }
