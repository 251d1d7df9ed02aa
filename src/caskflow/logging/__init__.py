"""
caskflow 日志系统

功能:
- 控制台彩色输出
- 日志文件输出（按大小轮转）
- 分离 error.log（只记录 ERROR/CRITICAL，按天轮转）
"""

from .config import setup_logging
from .handlers import ColoredConsoleHandler, ErrorOnlyHandler

__all__ = [
    "setup_logging",
    "ColoredConsoleHandler",
    "ErrorOnlyHandler",
]
