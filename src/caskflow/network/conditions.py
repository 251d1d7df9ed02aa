"""
网络状况数据结构与分级规则
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


class ConnectionType(Enum):
    WIFI = "wifi"
    CELLULAR = "cellular"
    ETHERNET = "ethernet"
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, value: "ConnectionType | str | None") -> "ConnectionType":
        if isinstance(value, ConnectionType):
            return value
        try:
            return cls((value or "unknown").lower())
        except ValueError:
            return cls.UNKNOWN


class QualityTier(Enum):
    EXCELLENT = "excellent"
    GOOD = "good"
    FAIR = "fair"
    POOR = "poor"


@dataclass(frozen=True)
class ConnectionInfo:
    """
    宿主平台上报的连接元数据

    effective_type 取值参照 Network Information API: 4g / 3g / 2g / slow-2g / unknown
    """

    connection_type: ConnectionType = ConnectionType.UNKNOWN
    effective_type: str = "unknown"
    downlink: float = 10.0  # Mbps
    rtt: float = 100.0  # ms
    save_data: bool = False


@dataclass(frozen=True)
class NetworkConditions:
    """当前网络状况快照"""

    connection_type: ConnectionType
    quality: QualityTier
    bandwidth_mbps: float
    latency_ms: float | None
    data_saver_enabled: bool
    source: str = "host"  # host / probe / manual
    measured_at: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> dict:
        return {
            "connection_type": self.connection_type.value,
            "quality": self.quality.value,
            "bandwidth_mbps": self.bandwidth_mbps,
            "latency_ms": self.latency_ms,
            "data_saver_enabled": self.data_saver_enabled,
            "source": self.source,
            "measured_at": self.measured_at.isoformat(),
        }


# 连接元数据分级阈值
EXCELLENT_MIN_DOWNLINK = 5.0
EXCELLENT_MAX_RTT = 100.0
GOOD_3G_MIN_DOWNLINK = 2.0

# 实测延迟分级阈值（毫秒）
LATENCY_EXCELLENT_MS = 100.0
LATENCY_GOOD_MS = 300.0
LATENCY_FAIR_MS = 1000.0


def classify_connection(info: ConnectionInfo) -> QualityTier:
    """根据宿主上报的连接元数据估算质量等级"""
    effective = (info.effective_type or "unknown").lower()

    if effective == "4g":
        if info.downlink > EXCELLENT_MIN_DOWNLINK and info.rtt < EXCELLENT_MAX_RTT:
            return QualityTier.EXCELLENT
        return QualityTier.GOOD
    if effective == "3g":
        return QualityTier.GOOD if info.downlink > GOOD_3G_MIN_DOWNLINK else QualityTier.FAIR
    if effective in ("2g", "slow-2g"):
        return QualityTier.POOR
    # 宿主没有给出等级，先按 good 处理，由主动探测修正
    return QualityTier.GOOD


def classify_latency(latency_ms: float) -> QualityTier:
    """根据实测往返延迟分级"""
    if latency_ms < LATENCY_EXCELLENT_MS:
        return QualityTier.EXCELLENT
    if latency_ms < LATENCY_GOOD_MS:
        return QualityTier.GOOD
    if latency_ms < LATENCY_FAIR_MS:
        return QualityTier.FAIR
    return QualityTier.POOR


def conditions_from_connection(info: ConnectionInfo) -> NetworkConditions:
    return NetworkConditions(
        connection_type=info.connection_type,
        quality=classify_connection(info),
        bandwidth_mbps=info.downlink,
        latency_ms=info.rtt,
        data_saver_enabled=info.save_data,
        source="host",
    )
