"""Google Drive 目录客户端。

通过 Drive v3 REST 接口（API Key 访问公开分享的文件夹）：
1. 列出文件夹及其直接子文件夹中的视频
2. 获取单个文件的元数据
3. 以流的方式下载文件内容

目录列表由 ``CatalogCache`` 按 TTL 缓存，支持强制刷新。
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Any, Dict, Iterator, List, Optional, Tuple

import requests

from hoploop.errors import CatalogUnavailable

logger = logging.getLogger(__name__)

__all__ = [
    "GoogleDriveClient",
    "CatalogCache",
]


# ============================================================================
# 常量
# ============================================================================

DRIVE_API_URL = "https://www.googleapis.com/drive/v3/files"
FOLDER_MIME_TYPE = "application/vnd.google-apps.folder"
VIDEO_FIELDS = "nextPageToken,files(id,name,mimeType,size,thumbnailLink,videoMediaMetadata)"
PAGE_SIZE = 100
DOWNLOAD_CHUNK_SIZE = 256 * 1024


class GoogleDriveClient:
    """Google Drive v3 客户端（API Key 认证）。"""

    def __init__(self, api_key: str, folder_id: str = "", timeout: int = 15,
                 session: Optional[requests.Session] = None):
        self.api_key = api_key
        self.folder_id = folder_id
        self.timeout = timeout
        self.session = session or requests.Session()

    def _get(self, url: str, params: Dict[str, Any], stream: bool = False) -> requests.Response:
        params = dict(params)
        params["key"] = self.api_key
        try:
            response = self.session.get(url, params=params, timeout=self.timeout, stream=stream)
        except requests.RequestException as exc:
            raise CatalogUnavailable(f"Google Drive unreachable: {exc}") from exc

        if response.status_code >= 400:
            message = self._error_message(response)
            logger.error(f"Google Drive API error ({response.status_code}): {message}")
            response.close()
            raise CatalogUnavailable(message, status_code=response.status_code)
        return response

    @staticmethod
    def _error_message(response: requests.Response) -> str:
        try:
            payload = response.json()
        except ValueError:
            return response.text[:200] or f"HTTP {response.status_code}"
        error = payload.get("error") if isinstance(payload, dict) else None
        if isinstance(error, dict):
            return error.get("message") or f"HTTP {response.status_code}"
        return str(error or f"HTTP {response.status_code}")

    def _query(self, query: str, fields: str) -> List[Dict[str, Any]]:
        files: List[Dict[str, Any]] = []
        page_token: Optional[str] = None
        while True:
            params = {
                "q": query,
                "fields": fields,
                "orderBy": "name",
                "pageSize": PAGE_SIZE,
            }
            if page_token:
                params["pageToken"] = page_token
            payload = self._get(DRIVE_API_URL, params).json()
            if payload.get("error"):
                raise CatalogUnavailable(str(payload["error"]))
            files.extend(payload.get("files", []) or [])
            page_token = payload.get("nextPageToken")
            if not page_token:
                return files

    @staticmethod
    def _to_video(item: Dict[str, Any], folder: Optional[str] = None) -> Dict[str, Any]:
        metadata = item.get("videoMediaMetadata") or {}
        duration_ms = metadata.get("durationMillis")
        return {
            "id": item["id"],
            "name": item.get("name", ""),
            "mimeType": item.get("mimeType", ""),
            "size": int(item["size"]) if item.get("size") else 0,
            "duration": round(int(duration_ms) / 1000) if duration_ms else None,
            "folder": folder,
        }

    def list_videos(self, folder_id: Optional[str] = None) -> List[Dict[str, Any]]:
        """列出文件夹中的视频（含直接子文件夹）。

        Returns:
            [{id, name, mimeType, size, duration, folder}]
        """
        folder_id = folder_id or self.folder_id
        if not folder_id:
            raise CatalogUnavailable("No Google Drive folder configured", status_code=500)

        videos = [
            self._to_video(item)
            for item in self._query(
                f"'{folder_id}' in parents and mimeType contains 'video/' and trashed = false",
                VIDEO_FIELDS,
            )
        ]

        subfolders = self._query(
            f"'{folder_id}' in parents and mimeType = '{FOLDER_MIME_TYPE}' and trashed = false",
            "nextPageToken,files(id,name)",
        )
        for subfolder in subfolders:
            for item in self._query(
                f"'{subfolder['id']}' in parents and mimeType contains 'video/' and trashed = false",
                VIDEO_FIELDS,
            ):
                videos.append(self._to_video(item, folder=subfolder.get("name")))

        logger.info(f"Listed {len(videos)} videos from folder {folder_id}")
        return videos

    def get_metadata(self, file_id: str) -> Dict[str, Any]:
        """获取文件名、大小和 MIME 类型。"""
        payload = self._get(f"{DRIVE_API_URL}/{file_id}", {"fields": "name,size,mimeType"}).json()
        return {
            "name": payload.get("name", ""),
            "size": int(payload["size"]) if payload.get("size") else 0,
            "mimeType": payload.get("mimeType", ""),
        }

    def download(self, file_id: str) -> Tuple[Dict[str, Any], Iterator[bytes]]:
        """打开下载流。

        Returns:
            (元数据, 数据块迭代器)
        """
        meta = self.get_metadata(file_id)
        response = self._get(f"{DRIVE_API_URL}/{file_id}", {"alt": "media"}, stream=True)

        def _chunks() -> Iterator[bytes]:
            try:
                for chunk in response.iter_content(chunk_size=DOWNLOAD_CHUNK_SIZE):
                    yield chunk
            finally:
                response.close()

        return meta, _chunks()


class CatalogCache:
    """按文件夹缓存目录列表。"""

    def __init__(self, client: GoogleDriveClient, ttl: int = 300):
        self.client = client
        self.ttl = ttl
        self._entries: Dict[str, Tuple[float, List[Dict[str, Any]]]] = {}
        self._lock = threading.Lock()

    def list_videos(self, folder_id: Optional[str] = None, force: bool = False) -> List[Dict[str, Any]]:
        key = folder_id or self.client.folder_id
        now = time.time()
        with self._lock:
            cached = self._entries.get(key)
            if cached and not force and now - cached[0] < self.ttl:
                return list(cached[1])

        videos = self.client.list_videos(key)
        with self._lock:
            self._entries[key] = (time.time(), videos)
        return list(videos)

    def invalidate(self) -> None:
        with self._lock:
            self._entries.clear()
