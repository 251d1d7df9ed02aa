"""
网络质量监测器

- 宿主上报连接变化时，按连接元数据重新分级
- 固定间隔（默认 30 秒）主动探测一次，实测结果优先于上报的元数据
- 探测失败按 poor 处理（对带宽敏感的后台任务一律关闭）
- admits(priority) 给出后台任务的准入判断
"""

import asyncio
import logging
from collections.abc import Callable
from dataclasses import replace

from ..types import Priority
from .conditions import ConnectionInfo, NetworkConditions, QualityTier, classify_connection
from .sources import ActiveProbeSource, HostReportedSource, NetworkQualitySource

logger = logging.getLogger(__name__)

ConditionsListener = Callable[[NetworkConditions], None]

# 各质量等级允许的最低优先级
_ADMITTED_PRIORITIES: dict[QualityTier, set[Priority]] = {
    QualityTier.EXCELLENT: {Priority.HIGH, Priority.MEDIUM, Priority.LOW},
    QualityTier.GOOD: {Priority.HIGH, Priority.MEDIUM},
    QualityTier.FAIR: {Priority.HIGH},
    QualityTier.POOR: set(),
}


class NetworkQualityMonitor:
    """
    网络质量监测器

    职责:
    - 维护当前网络状况快照
    - 周期性主动探测
    - 状况变化时通知订阅者（预取调度器据此重新尝试准入）
    """

    def __init__(
        self,
        host_source: HostReportedSource | None = None,
        probe_source: NetworkQualitySource | None = None,
        probe_interval_seconds: float = 30.0,
        initial: NetworkConditions | None = None,
    ):
        """
        Args:
            host_source: 宿主上报来源
            probe_source: 主动探测来源（None 表示不做主动探测）
            probe_interval_seconds: 探测间隔（秒）
            initial: 初始状况（None 表示未知，此时不放行任何后台任务）
        """
        self.host_source = host_source or HostReportedSource()
        self.probe_source = probe_source
        self.probe_interval = probe_interval_seconds

        self._conditions: NetworkConditions | None = initial
        self._listeners: list[ConditionsListener] = []
        self._consecutive_poor_probes = 0

        self._running = False
        self._probe_task: asyncio.Task | None = None

    # ==================== 状况 ====================

    @property
    def conditions(self) -> NetworkConditions | None:
        return self._conditions

    @property
    def consecutive_poor_probes(self) -> int:
        return self._consecutive_poor_probes

    def update_connection(self, info: ConnectionInfo) -> NetworkConditions:
        """宿主上报连接变化（按元数据重新分级）"""
        self.host_source.report(info)
        conditions = NetworkConditions(
            connection_type=info.connection_type,
            quality=classify_connection(info),
            bandwidth_mbps=info.downlink,
            latency_ms=info.rtt,
            data_saver_enabled=info.save_data,
            source="host",
        )
        self._set(conditions)
        return conditions

    def set_conditions(self, conditions: NetworkConditions) -> None:
        """直接设置状况（宿主自行完成分级时使用）"""
        self._set(conditions)

    async def probe_once(self) -> NetworkConditions | None:
        """执行一次主动探测，实测等级覆盖元数据分级"""
        if not self.probe_source:
            return self._conditions

        try:
            measured = await self.probe_source.measure(self._conditions)
        except Exception as e:
            # 来源实现不应抛出，兜底按 poor 处理
            logger.warning(f"Network probe raised {type(e).__name__}: {e}")
            base = self._conditions or await self.host_source.measure(None)
            measured = replace(base, quality=QualityTier.POOR, source="probe")

        # 省流量设置只由宿主给出，探测结果不能覆盖
        info = self.host_source.info
        if info is not None and measured.data_saver_enabled != info.save_data:
            measured = replace(measured, data_saver_enabled=info.save_data)

        if measured.quality == QualityTier.POOR:
            self._consecutive_poor_probes += 1
        else:
            self._consecutive_poor_probes = 0

        self._set(measured)
        return measured

    def _set(self, conditions: NetworkConditions) -> None:
        previous = self._conditions
        self._conditions = conditions

        if previous is None or previous.quality != conditions.quality:
            logger.info(
                f"Network quality: {previous.quality.value if previous else 'unknown'} -> "
                f"{conditions.quality.value} (source={conditions.source})"
            )

        for listener in list(self._listeners):
            try:
                listener(conditions)
            except Exception as e:
                logger.error(f"Network listener error: {e}", exc_info=True)

    # ==================== 订阅 ====================

    def add_listener(self, listener: ConditionsListener) -> None:
        if listener not in self._listeners:
            self._listeners.append(listener)

    def remove_listener(self, listener: ConditionsListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    # ==================== 准入 ====================

    def admits(
        self,
        priority: Priority,
        *,
        active_requests: int = 0,
        max_concurrent: int | None = None,
        respect_data_saver: bool = True,
    ) -> bool:
        """
        后台任务准入判断

        规则（依次）:
        1. 尚无网络状况 -> 拒绝
        2. 开启省流量 -> 拒绝（与优先级无关）
        3. 活跃数已达上限 -> 拒绝
        4. excellent 全部放行；good 拒绝 low；fair 只放行 high；poor 全部拒绝
        """
        conditions = self._conditions
        if conditions is None:
            return False

        if respect_data_saver and conditions.data_saver_enabled:
            return False

        if max_concurrent is not None and active_requests >= max_concurrent:
            return False

        return priority in _ADMITTED_PRIORITIES[conditions.quality]

    # ==================== 生命周期 ====================

    async def start(self) -> None:
        """启动周期探测（启动时立即探测一次）"""
        if self._running:
            return
        self._running = True

        if self._conditions is None:
            self._set(await self.host_source.measure(None))

        if self.probe_source:
            self._probe_task = asyncio.create_task(self._probe_loop())
        logger.info(
            f"NetworkQualityMonitor started (probe={'on' if self.probe_source else 'off'}, "
            f"interval={self.probe_interval}s)"
        )

    async def stop(self) -> None:
        self._running = False

        if self._probe_task:
            self._probe_task.cancel()
            try:
                await self._probe_task
            except asyncio.CancelledError:
                pass
            self._probe_task = None

        if isinstance(self.probe_source, ActiveProbeSource):
            await self.probe_source.close()

        logger.info("NetworkQualityMonitor stopped")

    async def _probe_loop(self) -> None:
        while self._running:
            try:
                await self.probe_once()
                await asyncio.sleep(self.probe_interval)
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Network probe loop error: {e}")
                await asyncio.sleep(self.probe_interval)
