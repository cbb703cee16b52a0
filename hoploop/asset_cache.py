"""本地资源缓存。

以资源 ID 为键保存源文件、元数据和派生的 HLS 目录：

    <cache_dir>/<md5(asset_id)[:16]>/
        source.<ext>     源文件
        meta.json        名称 / 大小 / MIME
        hls/             归一化文件、切片、规范清单、循环清单

目录名由哈希得到，不再依赖文件名前缀匹配。写入先落到临时文件再重命名，
失败时删除临时文件，不会留下损坏的缓存条目。
"""

from __future__ import annotations

import hashlib
import json
import logging
import os
import shutil
import threading
from dataclasses import dataclass
from typing import Callable, Iterable, Optional

from hoploop.errors import DownloadFailed, PipelineCancelled

logger = logging.getLogger(__name__)

__all__ = ["AssetCache", "SourceAsset"]

META_FILENAME = "meta.json"
DERIVED_DIRNAME = "hls"
SOURCE_BASENAME = "source"

MIME_TYPES = {
    ".mp4": "video/mp4",
    ".mov": "video/quicktime",
    ".avi": "video/x-msvideo",
    ".webm": "video/webm",
    ".mkv": "video/x-matroska",
    ".m4v": "video/x-m4v",
}


def get_mime_type(path: str) -> str:
    ext = os.path.splitext(path)[1].lower()
    return MIME_TYPES.get(ext, "video/mp4")


@dataclass(frozen=True)
class SourceAsset:
    """已缓存的源文件"""

    asset_id: str
    file_path: str
    size_bytes: int
    container_ext: str
    name: str = ""

    @property
    def mime_type(self) -> str:
        return get_mime_type(self.file_path)


class AssetCache:
    """资源缓存目录。

    同一资源的并发写入由管理器的单任务保证串行，这里只保护目录级操作。
    """

    def __init__(self, cache_dir: str, chunk_size: int = 1024 * 1024):
        self.cache_dir = os.path.abspath(cache_dir)
        self.chunk_size = chunk_size
        self._lock = threading.Lock()
        os.makedirs(self.cache_dir, exist_ok=True)

    # ------------------------------------------------------------------
    # 路径
    # ------------------------------------------------------------------

    @staticmethod
    def _key(asset_id: str) -> str:
        return hashlib.md5(asset_id.encode("utf-8")).hexdigest()[:16]

    def entry_dir(self, asset_id: str) -> str:
        return os.path.join(self.cache_dir, self._key(asset_id))

    def derived_dir(self, asset_id: str) -> str:
        return os.path.join(self.entry_dir(asset_id), DERIVED_DIRNAME)

    def _meta_path(self, asset_id: str) -> str:
        return os.path.join(self.entry_dir(asset_id), META_FILENAME)

    def _load_meta(self, asset_id: str) -> Optional[dict]:
        path = self._meta_path(asset_id)
        if not os.path.exists(path):
            return None
        try:
            with open(path, "r", encoding="utf-8") as fh:
                return json.load(fh)
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning(f"Unreadable cache metadata for {asset_id}: {exc}")
            return None

    # ------------------------------------------------------------------
    # 查询
    # ------------------------------------------------------------------

    def read(self, asset_id: str) -> Optional[str]:
        """返回源文件路径，不存在时返回 None。"""
        meta = self._load_meta(asset_id)
        if not meta:
            return None
        path = os.path.join(self.entry_dir(asset_id), meta.get("file", ""))
        if meta.get("file") and os.path.isfile(path):
            return path
        return None

    def exists(self, asset_id: str) -> bool:
        return self.read(asset_id) is not None

    def get(self, asset_id: str) -> Optional[SourceAsset]:
        path = self.read(asset_id)
        if path is None:
            return None
        meta = self._load_meta(asset_id) or {}
        return SourceAsset(
            asset_id=asset_id,
            file_path=path,
            size_bytes=os.path.getsize(path),
            container_ext=os.path.splitext(path)[1],
            name=meta.get("name", ""),
        )

    def list_ids(self) -> list:
        """列出缓存中所有资源 ID（读取各条目的元数据）。"""
        ids = []
        if not os.path.isdir(self.cache_dir):
            return ids
        for name in sorted(os.listdir(self.cache_dir)):
            meta_path = os.path.join(self.cache_dir, name, META_FILENAME)
            if not os.path.isfile(meta_path):
                continue
            try:
                with open(meta_path, "r", encoding="utf-8") as fh:
                    asset_id = json.load(fh).get("id")
            except (OSError, json.JSONDecodeError):
                continue
            if asset_id and self._key(asset_id) == name:
                ids.append(asset_id)
        return ids

    # ------------------------------------------------------------------
    # 写入 / 删除
    # ------------------------------------------------------------------

    def write(
        self,
        asset_id: str,
        chunks: Iterable[bytes],
        name: str = "",
        ext: str = ".mp4",
        mime_type: str = "",
        total_size: int = 0,
        on_progress: Optional[Callable[[int, int], None]] = None,
        should_cancel: Optional[Callable[[], bool]] = None,
    ) -> str:
        """把数据流写入缓存，成功后原子重命名。

        Args:
            asset_id: 资源 ID
            chunks: 数据块迭代器
            name: 原始文件名
            ext: 扩展名（含点）
            mime_type: MIME 类型
            total_size: 预期大小，用于进度计算，0 表示未知
            on_progress: 进度回调 (已写入字节, 总字节)
            should_cancel: 返回 True 时中止写入

        Returns:
            源文件路径

        Raises:
            DownloadFailed: 数据流出错或写入失败
            PipelineCancelled: 写入过程中被取消
        """
        ext = ext if ext.startswith(".") else f".{ext}"
        entry_dir = self.entry_dir(asset_id)
        os.makedirs(entry_dir, exist_ok=True)
        final_path = os.path.join(entry_dir, f"{SOURCE_BASENAME}{ext.lower()}")
        tmp_path = f"{final_path}.part"

        written = 0
        try:
            with open(tmp_path, "wb") as fh:
                for chunk in chunks:
                    if should_cancel and should_cancel():
                        raise PipelineCancelled(f"Download of {asset_id} cancelled")
                    if not chunk:
                        continue
                    fh.write(chunk)
                    written += len(chunk)
                    if on_progress:
                        on_progress(written, total_size)
            if total_size and written != total_size:
                raise DownloadFailed(
                    f"Incomplete download for {asset_id}: {written}/{total_size} bytes"
                )
            os.replace(tmp_path, final_path)
        except (PipelineCancelled, DownloadFailed):
            self._discard(tmp_path)
            raise
        except Exception as exc:
            self._discard(tmp_path)
            raise DownloadFailed(f"Download of {asset_id} failed: {exc}") from exc

        meta = {
            "id": asset_id,
            "name": name,
            "mimeType": mime_type or get_mime_type(final_path),
            "size": written,
            "file": os.path.basename(final_path),
        }
        meta_tmp = f"{self._meta_path(asset_id)}.tmp"
        with open(meta_tmp, "w", encoding="utf-8") as fh:
            json.dump(meta, fh, ensure_ascii=False, indent=2)
        os.replace(meta_tmp, self._meta_path(asset_id))

        logger.info(f"Cached {asset_id} ({written} bytes) at {final_path}")
        return final_path

    def write_file(self, asset_id: str, source_path: str, name: str = "") -> str:
        """从本地文件复制到缓存。"""
        ext = os.path.splitext(source_path)[1] or ".mp4"

        def _chunks():
            with open(source_path, "rb") as fh:
                for chunk in iter(lambda: fh.read(self.chunk_size), b""):
                    yield chunk

        return self.write(
            asset_id,
            _chunks(),
            name=name or os.path.basename(source_path),
            ext=ext,
            total_size=os.path.getsize(source_path),
        )

    def delete(self, asset_id: str) -> None:
        """删除资源的全部文件（源文件、元数据和派生目录）。"""
        entry_dir = self.entry_dir(asset_id)
        with self._lock:
            if os.path.exists(entry_dir):
                shutil.rmtree(entry_dir, ignore_errors=True)
                logger.info(f"Removed cache entry for {asset_id}")

    def clear(self) -> None:
        """清空整个缓存目录。"""
        with self._lock:
            if os.path.exists(self.cache_dir):
                for name in os.listdir(self.cache_dir):
                    path = os.path.join(self.cache_dir, name)
                    if os.path.isdir(path):
                        shutil.rmtree(path, ignore_errors=True)
                    else:
                        os.remove(path)
            os.makedirs(self.cache_dir, exist_ok=True)
        logger.info(f"Cleared cache directory {self.cache_dir}")

    @staticmethod
    def _discard(path: str) -> None:
        try:
            if os.path.exists(path):
                os.remove(path)
        except OSError as exc:
            logger.warning(f"Failed to discard partial file {path}: {exc}")
