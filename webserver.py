#!/usr/bin/env python3
# -*- coding: utf-8 -*-

import os
import sys
import json
import atexit
import signal
import logging
import traceback
from logging.handlers import TimedRotatingFileHandler

# Add current directory to Python path to ensure modules can be imported
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from flask import Flask, jsonify
from flask_cors import CORS
from werkzeug.exceptions import HTTPException

from hoploop.asset_cache import AssetCache
from hoploop.drive_client import CatalogCache, GoogleDriveClient
from hoploop.transcode.api import init_loop_manager, register_routes, get_local_ip
from hoploop.transcode.config import LoopConfig
from hoploop.transcode.manager import LoopManager

# Configure logging
LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()
logging.basicConfig(level=getattr(logging, LOG_LEVEL, logging.INFO),
                    format='%(asctime)s - %(levelname)s - %(message)s')

# 配置较少日志输出的模块
for module in ['urllib3', 'requests', 'werkzeug']:
    logging.getLogger(module).setLevel(logging.WARNING)


class SegmentRequestFilter(logging.Filter):
    """过滤掉切片请求相关的详细日志"""
    def filter(self, record):
        message = record.getMessage()
        if '/api/hls/' in message and '.ts' in message:
            return record.levelno >= logging.WARNING
        return True


logger = logging.getLogger()
logger.addFilter(SegmentRequestFilter())

if not os.path.exists('logs'):
    os.makedirs('logs')

# 添加按日期滚动的文件处理器
file_handler = TimedRotatingFileHandler(
    'logs/webserver.log',
    when='midnight',
    interval=1,
    backupCount=3  # 保留3天日志
)
file_handler.setFormatter(logging.Formatter('%(asctime)s - %(levelname)s - %(message)s'))
file_handler.setLevel(logging.INFO)
logger.addHandler(file_handler)

# Configuration file path
CONFIG_FILE = os.environ.get("CONFIG_FILE", "config/config.json")


def load_config():
    """Load configuration file"""
    config = {
        "port": 3000,
        "google_drive": {
            "api_key": "",
            "folder_id": "",
        },
        "loop": {
            "cache_dir": ".cache",
            "strategy": "static",
            "segment_duration": 6,
            "target_loop_seconds": 21600,
            "use_hwaccel": True,
            "video_encoder": "h264_qsv",
            "video_encoder_sw": "libx264",
        },
    }
    try:
        if os.path.exists(CONFIG_FILE):
            with open(CONFIG_FILE, 'r', encoding='utf-8') as f:
                loaded_config = json.load(f)
                config.update(loaded_config)
                logging.info(f"Loaded configuration file: {CONFIG_FILE}")
        else:
            os.makedirs(os.path.dirname(CONFIG_FILE) or ".", exist_ok=True)
            with open(CONFIG_FILE, 'w', encoding='utf-8') as f:
                json.dump(config, f, ensure_ascii=False, indent=2)
                logging.info(f"Created default configuration file: {CONFIG_FILE}")
    except (OSError, json.JSONDecodeError) as e:
        logging.error(f"Failed to load configuration file: {str(e)}")

    # 环境变量优先
    drive = config.setdefault("google_drive", {})
    if os.environ.get("GOOGLE_API_KEY"):
        drive["api_key"] = os.environ["GOOGLE_API_KEY"]
    if os.environ.get("GOOGLE_DRIVE_FOLDER_ID"):
        drive["folder_id"] = os.environ["GOOGLE_DRIVE_FOLDER_ID"]
    if os.environ.get("PORT"):
        config["port"] = int(os.environ["PORT"])

    return config


def create_app(app_config=None):
    """创建 Flask 应用和循环流管理器"""
    app_config = app_config if app_config is not None else load_config()
    loop_config = LoopConfig.from_app_config(app_config)

    drive_config = app_config.get("google_drive", {}) or {}
    drive_client = GoogleDriveClient(
        api_key=drive_config.get("api_key", ""),
        folder_id=drive_config.get("folder_id", ""),
    )
    catalog = CatalogCache(drive_client, ttl=loop_config.catalog_ttl)

    manager = LoopManager(
        loop_config,
        cache=AssetCache(loop_config.cache_dir),
        source_provider=drive_client.download,
    )
    manager.startup()
    init_loop_manager(manager, catalog)

    app = Flask(__name__, static_folder='public', static_url_path='')
    CORS(app)  # Enable CORS
    app.config["PORT"] = int(app_config.get("port", 3000))
    app.extensions["loop_manager"] = manager
    register_routes(app)

    @app.errorhandler(Exception)
    def handle_exception(e):
        """Handle uncaught exceptions"""
        if isinstance(e, HTTPException):
            return jsonify({"error": e.description}), e.code
        app.logger.error(f"Uncaught exception: {str(e)}")
        app.logger.error(traceback.format_exc())
        return jsonify({"error": str(e)}), 500

    @app.route('/')
    def index():
        """前端页面（存在时）"""
        index_path = os.path.join(app.static_folder, 'index.html')
        if os.path.exists(index_path):
            return app.send_static_file('index.html')
        return jsonify({"name": "Hop Video Loop", "strategy": loop_config.strategy})

    logging.info(f"Loop strategy: {loop_config.strategy}, cache: {manager.cache.cache_dir}")
    return app


def _install_shutdown(manager):
    """退出时终止所有转码进程"""
    atexit.register(manager.shutdown)

    def _handle_signal(signum, frame):
        logging.info(f"Received signal {signum}, shutting down")
        manager.shutdown()
        sys.exit(0)

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)


def _print_banner(port):
    ip = get_local_ip()
    print('')
    print('  ╔══════════════════════════════════════════╗')
    print('  ║         🎬  Hop Video Loop               ║')
    print('  ╠══════════════════════════════════════════╣')
    print(f'  ║  Local:   http://localhost:{port:<14}║')
    print(f'  ║  Network: http://{ip}:{port}'.ljust(45) + '║')
    print('  ╠══════════════════════════════════════════╣')
    print('  ║  Open in Safari for AirPlay              ║')
    print('  ║  TVs must be on the same Wi-Fi network   ║')
    print('  ╚══════════════════════════════════════════╝')
    print('')


if __name__ == '__main__':
    app = create_app()
    _install_shutdown(app.extensions["loop_manager"])
    port = app.config["PORT"]
    _print_banner(port)
    app.run(host='0.0.0.0', port=port, debug=False, threaded=True)
