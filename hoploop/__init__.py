"""
Hop Video Loop

把任意视频源转换为可无限循环播放的 HLS 流，供浏览器和投屏接收端直接拉取。
"""

__version__ = "1.0.0"
