"""
结构化数据源错误

提供 PackageSourceError 异常类和 ErrorType 枚举，
让调用方区分：可重试 / 需要用户处理 / 直接展示。

Usage:
    from caskflow.errors import FetchError, ErrorType

    try:
        packages = await source.fetch_package_set(Category.FORMULA)
    except TimeoutError as e:
        raise FetchError(
            error_type=ErrorType.TIMEOUT,
            message="加载包列表超时",
            category=Category.FORMULA,
        ) from e
"""

import logging
from enum import Enum
from typing import Any

import httpx

from .types import Category

logger = logging.getLogger(__name__)


class ErrorType(Enum):
    """数据源错误类型"""

    NETWORK = "network"  # 网络不可达、连接中断
    TIMEOUT = "timeout"  # 超时
    NOT_FOUND = "not_found"  # 包不存在
    PERMISSION = "permission"  # 权限不足
    PERMANENT = "permanent"  # 其他不可恢复错误


# 可以“稍后重试”的错误类型
_RETRYABLE = {ErrorType.NETWORK, ErrorType.TIMEOUT}


class PackageSourceError(Exception):
    """
    数据源错误基类

    str(error) 即面向用户的提示文本。
    """

    def __init__(
        self,
        message: str,
        *,
        error_type: ErrorType = ErrorType.PERMANENT,
        category: Category | None = None,
        package: str | None = None,
    ) -> None:
        self.message = message
        self.error_type = error_type
        self.category = category
        self.package = package
        super().__init__(message)

    @property
    def retryable(self) -> bool:
        return self.error_type in _RETRYABLE

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "error": True,
            "error_type": self.error_type.value,
            "message": self.message,
            "retryable": self.retryable,
        }
        if self.category:
            result["category"] = self.category.value
        if self.package:
            result["package"] = self.package
        return result


class FetchError(PackageSourceError):
    """加载/搜索包列表失败（用户主动发起的路径）"""


class MutationError(PackageSourceError):
    """安装/卸载/更新失败"""


def classify_error(
    error: Exception,
    *,
    category: Category | None = None,
    package: str | None = None,
    error_class: type[PackageSourceError] = PackageSourceError,
) -> PackageSourceError:
    """
    将任意异常归类为结构化错误

    - 已是 PackageSourceError -> 原样返回
    - TimeoutError / httpx.TimeoutException -> TIMEOUT
    - ConnectionError / httpx.TransportError -> NETWORK
    - PermissionError -> PERMISSION
    - LookupError / FileNotFoundError -> NOT_FOUND
    - 其他 -> PERMANENT
    """
    if isinstance(error, PackageSourceError):
        return error

    if isinstance(error, (TimeoutError, httpx.TimeoutException)):
        error_type = ErrorType.TIMEOUT
    elif isinstance(error, (ConnectionError, httpx.TransportError)):
        error_type = ErrorType.NETWORK
    elif isinstance(error, PermissionError):
        error_type = ErrorType.PERMISSION
    elif isinstance(error, (LookupError, FileNotFoundError)):
        error_type = ErrorType.NOT_FOUND
    else:
        error_type = ErrorType.PERMANENT

    message = str(error) or error.__class__.__name__
    return error_class(message, error_type=error_type, category=category, package=package)
