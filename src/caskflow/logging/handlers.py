"""
自定义日志处理器

- ErrorOnlyHandler: 只记录 ERROR/CRITICAL 级别日志
- ColoredConsoleHandler: 彩色控制台输出
"""

import logging
import sys
from logging.handlers import TimedRotatingFileHandler
from typing import TextIO


class ErrorOnlyHandler(TimedRotatingFileHandler):
    """只记录 ERROR 及以上级别的按天轮转文件处理器"""

    def emit(self, record: logging.LogRecord) -> None:
        if record.levelno >= logging.ERROR:
            super().emit(record)


class ColoredConsoleHandler(logging.StreamHandler):
    """
    彩色控制台日志处理器

    终端不支持颜色（非 tty，例如被重定向到文件）时原样输出。
    """

    COLORS = {
        logging.DEBUG: "\033[90m",  # 灰色
        logging.INFO: "\033[0m",  # 默认
        logging.WARNING: "\033[93m",  # 黄色
        logging.ERROR: "\033[91m",  # 红色
        logging.CRITICAL: "\033[91;1m",  # 红色加粗
    }
    RESET = "\033[0m"

    def __init__(self, stream: TextIO | None = None):
        super().__init__(stream or sys.stdout)
        self._supports_color = hasattr(self.stream, "isatty") and self.stream.isatty()

    def format(self, record: logging.LogRecord) -> str:
        message = super().format(record)
        if self._supports_color:
            color = self.COLORS.get(record.levelno, self.RESET)
            return f"{color}{message}{self.RESET}"
        return message
