"""
后台预取

- request: 预取请求、配置与统计
- behavior: 用户行为模型（预测来源）
- scheduler: 优先级 + 网络准入的预取调度器
"""

from .behavior import BehaviorAction, BehaviorModel, BehaviorPattern
from .request import PrefetchConfig, PrefetchRequest, PrefetchStats, RequestOrigin
from .scheduler import PrefetchScheduler

__all__ = [
    "BehaviorAction",
    "BehaviorModel",
    "BehaviorPattern",
    "PrefetchConfig",
    "PrefetchRequest",
    "PrefetchStats",
    "RequestOrigin",
    "PrefetchScheduler",
]
