"""
网络质量来源

两种实现，按宿主平台选择:
- HostReportedSource: 宿主平台推送连接元数据（连接类型 / 带宽 / RTT / 省流量）
- ActiveProbeSource: 对轻量端点做一次 HEAD 往返，以实测延迟分级
"""

import logging
import time
from abc import ABC, abstractmethod
from dataclasses import replace
from datetime import datetime

import httpx

from .conditions import (
    ConnectionInfo,
    ConnectionType,
    NetworkConditions,
    QualityTier,
    classify_latency,
    conditions_from_connection,
)

logger = logging.getLogger(__name__)


def _unknown_conditions(source: str) -> NetworkConditions:
    return NetworkConditions(
        connection_type=ConnectionType.UNKNOWN,
        quality=QualityTier.GOOD,
        bandwidth_mbps=0.0,
        latency_ms=None,
        data_saver_enabled=False,
        source=source,
    )


class NetworkQualitySource(ABC):
    """网络质量来源基类"""

    name: str = "source"

    @abstractmethod
    async def measure(self, previous: NetworkConditions | None) -> NetworkConditions:
        """
        采样一次网络状况

        Args:
            previous: 上一次的快照（用于保留本来源无法测得的字段）
        """


class HostReportedSource(NetworkQualitySource):
    """宿主平台上报的连接元数据"""

    name = "host"

    def __init__(self, initial: ConnectionInfo | None = None):
        self._info = initial

    @property
    def info(self) -> ConnectionInfo | None:
        return self._info

    def report(self, info: ConnectionInfo) -> None:
        self._info = info

    async def measure(self, previous: NetworkConditions | None) -> NetworkConditions:
        if self._info is None:
            return previous or _unknown_conditions(self.name)
        return conditions_from_connection(self._info)


class ActiveProbeSource(NetworkQualitySource):
    """
    主动延迟探测

    任何失败（连接错误、超时、非 2xx、无效 URL）都视为 poor。
    """

    name = "probe"

    def __init__(
        self,
        url: str,
        timeout_seconds: float = 5.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.url = url
        self.timeout_seconds = timeout_seconds
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            client_kwargs = {
                "timeout": httpx.Timeout(self.timeout_seconds),
                "follow_redirects": True,
                "headers": {"Cache-Control": "no-cache"},
            }
            if self._transport:
                client_kwargs["transport"] = self._transport
            self._client = httpx.AsyncClient(**client_kwargs)
        return self._client

    async def measure(self, previous: NetworkConditions | None) -> NetworkConditions:
        base = previous or _unknown_conditions(self.name)
        client = self._get_client()

        started = time.perf_counter()
        try:
            response = await client.head(self.url)
            latency_ms = (time.perf_counter() - started) * 1000
            response.raise_for_status()
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            logger.debug(f"Network probe failed: {type(e).__name__}: {e}")
            return replace(
                base, quality=QualityTier.POOR, source=self.name, measured_at=datetime.now()
            )

        tier = classify_latency(latency_ms)
        logger.debug(f"Network probe: {latency_ms:.0f}ms -> {tier.value}")
        return replace(
            base,
            quality=tier,
            latency_ms=round(latency_ms, 1),
            source=self.name,
            measured_at=datetime.now(),
        )

    async def close(self) -> None:
        if self._client and not self._client.is_closed:
            await self._client.aclose()
        self._client = None
