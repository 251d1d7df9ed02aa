"""
包变更操作

- task: Operation 数据结构与状态
- queue: 限流、去重、宽限期清理的操作队列
- batch: 窗口化批量执行
"""

from .batch import BatchExecutor, BatchResult
from .queue import OperationQueue, QueueHealth, QueueStats, health_tier
from .task import CANCELLED_MESSAGE, Operation, OperationStatus

__all__ = [
    "Operation",
    "OperationStatus",
    "CANCELLED_MESSAGE",
    "OperationQueue",
    "QueueStats",
    "QueueHealth",
    "health_tier",
    "BatchExecutor",
    "BatchResult",
]
