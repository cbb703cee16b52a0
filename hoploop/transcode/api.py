"""
循环流 API 端点

- 播放列表 / 切片：按策略设置缓存头
- 原始文件回退播放：支持 Range 请求
- 准备进度：Server-Sent Events
- 驱逐：删除单个资源或清空缓存
"""

import os
import json
import socket
import logging

from flask import jsonify, request, send_file, Response, stream_with_context

from hoploop.asset_cache import get_mime_type
from hoploop.errors import CatalogUnavailable, ManifestNotReady
from .playlist import MPEGURL_MIMETYPE

logger = logging.getLogger(__name__)

# 全局实例（在 webserver.py 中初始化）
LOOP_MANAGER = None
CATALOG = None


def init_loop_manager(manager, catalog=None):
    """初始化循环流管理器和目录缓存

    Args:
        manager: LoopManager 实例
        catalog: CatalogCache 实例（可选）
    """
    global LOOP_MANAGER, CATALOG
    LOOP_MANAGER = manager
    CATALOG = catalog
    logger.info("Loop manager initialized")


def get_local_ip() -> str:
    """获取局域网 IPv4 地址，供投屏设备访问"""
    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    try:
        # UDP connect 不发送数据，只用来选出默认路由的网卡
        sock.connect(("10.255.255.255", 1))
        return sock.getsockname()[0]
    except OSError:
        return "localhost"
    finally:
        sock.close()


def _sse(event: dict) -> str:
    return f"data: {json.dumps(event, ensure_ascii=False)}\n\n"


def _partial_response(path: str, size: int, start: int, end: int, mimetype: str) -> Response:
    """返回 [start, end] 闭区间的 206 响应"""
    length = end - start + 1

    def generate():
        with open(path, "rb") as f:
            f.seek(start)
            remaining = length
            while remaining > 0:
                chunk = f.read(min(64 * 1024, remaining))
                if not chunk:
                    break
                remaining -= len(chunk)
                yield chunk

    response = Response(generate(), status=206, mimetype=mimetype, direct_passthrough=True)
    response.headers["Content-Range"] = f"bytes {start}-{end}/{size}"
    response.headers["Accept-Ranges"] = "bytes"
    response.headers["Content-Length"] = str(length)
    return response


def _unsatisfiable(file_size: int) -> Response:
    response = Response(status=416)
    response.headers["Content-Range"] = f"bytes */{file_size}"
    return response


def register_routes(app):
    """注册循环流 API 路由

    Args:
        app: Flask 应用实例
    """

    @app.route('/api/info', methods=['GET'])
    def loop_info():
        """服务器信息（局域网地址，供投屏使用）"""
        port = int(os.environ.get("PORT", app.config.get("PORT", 3000)))
        return jsonify({"ip": get_local_ip(), "port": port})

    @app.route('/api/videos', methods=['GET'])
    def loop_videos():
        """视频列表（带缓存状态）"""
        if CATALOG is None:
            return jsonify({"error": "Catalog not configured"}), 500
        if LOOP_MANAGER is None:
            return jsonify({"error": "Loop manager not initialized"}), 500

        force = request.args.get('refresh', '').lower() in ('1', 'true', 'yes')
        try:
            videos = CATALOG.list_videos(request.args.get('folder') or None, force=force)
        except CatalogUnavailable as e:
            logger.error(f"Error listing videos: {e}")
            status = e.status_code if 400 <= e.status_code < 600 else 502
            return jsonify({"error": str(e)}), status

        result = []
        for video in videos:
            item = dict(video)
            state = LOOP_MANAGER.get_state(video["id"])
            item["cached"] = LOOP_MANAGER.cache.exists(video["id"])
            item["state"] = state.value
            result.append(item)
        return jsonify(result)

    @app.route('/api/prepare/<asset_id>', methods=['GET'])
    @app.route('/api/download/<asset_id>', methods=['GET'])
    def loop_prepare(asset_id):
        """准备资源并以 SSE 推送进度

        同一资源的多个请求共享同一条流水线，每个连接都会收到完整的事件历史。
        """
        if LOOP_MANAGER is None:
            return jsonify({"error": "Loop manager not initialized"}), 500

        retry = request.args.get('retry', '').lower() in ('1', 'true', 'yes')
        job = LOOP_MANAGER.prepare(asset_id, retry=retry)

        def generate():
            for event in job.iter_events():
                if event is None:
                    # 心跳，防止代理断开空闲连接
                    yield ": keep-alive\n\n"
                    continue
                yield _sse(event)

        response = Response(stream_with_context(generate()), mimetype='text/event-stream')
        response.headers['Cache-Control'] = 'no-cache'
        response.headers['Connection'] = 'keep-alive'
        response.headers['X-Accel-Buffering'] = 'no'
        return response

    @app.route('/api/status/<asset_id>', methods=['GET'])
    def loop_status(asset_id):
        """资源状态"""
        if LOOP_MANAGER is None:
            return jsonify({"error": "Loop manager not initialized"}), 500

        job = LOOP_MANAGER.get_job(asset_id)
        state = LOOP_MANAGER.get_state(asset_id)
        response = {
            "id": asset_id,
            "state": state.value,
            "ready": state.value == "ready",
            "strategy": LOOP_MANAGER.config.strategy,
            "playlist_url": f"/api/hls/{asset_id}/playlist.m3u8",
            "play_url": f"/api/play/{asset_id}",
        }
        if job is not None:
            response["job"] = job.to_dict()
        return jsonify(response)

    @app.route('/api/hls/<asset_id>/playlist.m3u8', methods=['GET'])
    def loop_playlist(asset_id):
        """循环播放列表

        static 策略可缓存；dynamic 策略禁止缓存，且总是返回完整内容（忽略 Range）。
        """
        if LOOP_MANAGER is None:
            return "Loop manager not initialized", 500

        try:
            playlist = LOOP_MANAGER.get_playlist(asset_id)
        except ManifestNotReady as e:
            return str(e), 404

        response = Response(playlist.render(), mimetype=MPEGURL_MIMETYPE)
        for key, value in playlist.manifest_headers().items():
            response.headers[key] = value
        response.headers['Accept-Ranges'] = 'none'
        response.headers['X-Loop-Strategy'] = playlist.strategy
        response.headers['X-Video-Duration'] = f"{playlist.manifest.total_duration:.3f}"
        return response

    @app.route('/api/hls/<asset_id>/<filename>', methods=['GET'])
    def loop_segment(asset_id, filename):
        """切片文件"""
        if LOOP_MANAGER is None:
            return "Loop manager not initialized", 500

        try:
            playlist = LOOP_MANAGER.get_playlist(asset_id)
            segment_path = LOOP_MANAGER.get_segment_path(asset_id, filename)
        except ManifestNotReady as e:
            return str(e), 404

        response = send_file(segment_path, mimetype='video/mp2t', conditional=True)
        for key, value in playlist.segment_headers().items():
            response.headers[key] = value
        return response

    @app.route('/api/play/<asset_id>', methods=['GET'])
    def loop_play_source(asset_id):
        """原始文件回退播放，支持 Range 请求"""
        if LOOP_MANAGER is None:
            return jsonify({"error": "Loop manager not initialized"}), 500

        source = LOOP_MANAGER.get_source(asset_id)
        if source is None:
            return jsonify({"error": "Video not cached. Download it first."}), 404

        file_path = source.file_path
        file_size = os.path.getsize(file_path)
        mimetype = get_mime_type(file_path)

        # 无法解析或多段的 Range 忽略，返回完整文件
        byte_range = request.range
        if byte_range is not None and byte_range.units == 'bytes' and len(byte_range.ranges) == 1:
            bounds = byte_range.range_for_length(file_size)
            if bounds is None:
                return _unsatisfiable(file_size)
            start, stop = bounds
            return _partial_response(file_path, file_size, start, stop - 1, mimetype)

        response = send_file(file_path, mimetype=mimetype, conditional=False)
        response.headers['Accept-Ranges'] = 'bytes'
        response.headers['Content-Length'] = str(file_size)
        return response

    @app.route('/api/cache/<asset_id>', methods=['DELETE'])
    def loop_evict(asset_id):
        """删除缓存的视频（先停止进程）"""
        if LOOP_MANAGER is None:
            return jsonify({"error": "Loop manager not initialized"}), 500

        existed = LOOP_MANAGER.evict(asset_id)
        return jsonify({"success": True, "existed": existed})

    @app.route('/api/cache', methods=['DELETE'])
    def loop_clear_cache():
        """清空缓存（先停止所有进程）"""
        if LOOP_MANAGER is None:
            return jsonify({"error": "Loop manager not initialized"}), 500

        count = LOOP_MANAGER.clear_all()
        if CATALOG is not None:
            CATALOG.invalidate()
        return jsonify({"success": True, "evicted": count})

    @app.route('/api/tasks', methods=['GET'])
    def loop_tasks():
        """所有资源任务"""
        if LOOP_MANAGER is None:
            return jsonify({"error": "Loop manager not initialized"}), 500

        return jsonify({
            "success": True,
            "tasks": LOOP_MANAGER.get_all_jobs(),
            "summary": LOOP_MANAGER.get_status_summary(),
        })
