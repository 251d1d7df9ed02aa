"""
网络质量监测

- conditions: 状况快照与分级规则
- sources: 宿主上报 / 主动探测两种来源
- monitor: 监测器与后台任务准入判断
"""

from .conditions import (
    ConnectionInfo,
    ConnectionType,
    NetworkConditions,
    QualityTier,
    classify_connection,
    classify_latency,
)
from .monitor import NetworkQualityMonitor
from .sources import ActiveProbeSource, HostReportedSource, NetworkQualitySource

__all__ = [
    "ConnectionInfo",
    "ConnectionType",
    "NetworkConditions",
    "QualityTier",
    "classify_connection",
    "classify_latency",
    "NetworkQualityMonitor",
    "NetworkQualitySource",
    "HostReportedSource",
    "ActiveProbeSource",
]
