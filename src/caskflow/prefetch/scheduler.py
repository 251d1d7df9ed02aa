"""
预取调度器

为非必要的后台获取做准入控制:
- 严格按优先级出队（high > medium > low），同级 FIFO
- 需要网络准入的请求由 NetworkQualityMonitor.admits 把关
- 任一请求结束（成功或失败）或网络状况变化后立即重新尝试准入，无需轮询
- 三种后台策略: 后台刷新 -> 缓存预热 -> 行为预测，由周期任务按此顺序编排

预取失败只计入统计，不向用户抛出。
"""

import asyncio
import logging
import time
from collections.abc import Callable
from datetime import datetime

from ..cache import CacheStore
from ..network import ConnectionType, NetworkConditions, NetworkQualityMonitor, QualityTier
from ..source import PackageSource
from ..types import Category, PackageSet, Priority
from .behavior import BehaviorModel
from .request import (
    PrefetchConfig,
    PrefetchRequest,
    PrefetchStats,
    RequestIdentity,
    RequestOrigin,
)

logger = logging.getLogger(__name__)

RELATED_DEPENDENCY_LIMIT = 5
RELATED_CONFLICT_LIMIT = 2
SEARCH_RESULT_PREFETCH_LIMIT = 5


class PrefetchScheduler:
    """
    预取调度器

    排队中的请求与活跃请求由本类独占持有，
    同一身份 (类别, 包名列表) 在队列与活跃集合中最多出现一次。
    """

    def __init__(
        self,
        source: PackageSource,
        cache: CacheStore,
        monitor: NetworkQualityMonitor,
        behavior: BehaviorModel | None = None,
        config: PrefetchConfig | None = None,
        *,
        clock: Callable[[], float] = time.time,
        interval_seconds: float = 60.0,
        initial_delay_seconds: float = 5.0,
        warm_throttle_seconds: float = 30.0,
        stale_window_seconds: float = 600.0,
    ):
        """
        Args:
            source: 包数据源
            cache: 缓存（预取结果写入处）
            monitor: 网络质量监测器（准入判断）
            behavior: 行为模型（预测来源）
            config: 预取配置
            clock: 时钟函数，返回 epoch 秒
            interval_seconds: 编排周期
            initial_delay_seconds: 首次编排延迟
            warm_throttle_seconds: 缓存预热最短间隔
            stale_window_seconds: 后台刷新的“即将过期”窗口
        """
        self.source = source
        self.cache = cache
        self.monitor = monitor
        self.behavior = behavior or BehaviorModel(clock=clock)
        self.config = config or PrefetchConfig()

        self.interval_seconds = interval_seconds
        self.initial_delay_seconds = initial_delay_seconds
        self.warm_throttle_seconds = warm_throttle_seconds
        self.stale_window_seconds = stale_window_seconds
        self._clock = clock

        self._queue: list[PrefetchRequest] = []
        self._active: dict[str, PrefetchRequest] = {}
        self._tasks: dict[str, asyncio.Task] = {}
        self._identities: dict[RequestIdentity, str] = {}
        self._cancelled: set[str] = set()

        self._last_warm: float | None = None
        self.stats = PrefetchStats()

        self._running = False
        self._closed = False
        self._loop_task: asyncio.Task | None = None

        self.monitor.add_listener(self._on_network_change)

    # ==================== 入队 ====================

    def queue_prefetch(
        self,
        category: Category,
        packages: list[str] | None = None,
        priority: Priority = Priority.MEDIUM,
        network_aware: bool = True,
        origin: RequestOrigin = RequestOrigin.MANUAL,
    ) -> str | None:
        """
        提交预取请求

        Args:
            category: 类别
            packages: 包名列表（None 表示整个类别）
            priority: 优先级
            network_aware: 是否需要网络准入
            origin: 请求来源

        Returns:
            请求 ID（重复身份返回已有请求的 ID）；空包列表返回 None
        """
        if packages is not None and not packages:
            return None

        request = PrefetchRequest.create(
            category,
            packages,
            priority,
            network_aware=network_aware,
            now=self._clock(),
            origin=origin,
        )
        existing = self._identities.get(request.identity)
        if existing:
            logger.debug(f"Prefetch already queued or active: {existing}")
            return existing

        self._queue.append(request)
        self._identities[request.identity] = request.id
        logger.debug(
            f"Prefetch queued: {request.id} {category.value} "
            f"{'all' if request.is_whole_category else len(request.packages)} "
            f"({priority.value}, {origin.value})"
        )

        self._pump()
        return request.id

    # ==================== 准入 ====================

    def _network_allows(self, priority: Priority, active_requests: int) -> bool:
        conditions = self.monitor.conditions
        if (
            self.config.wifi_only
            and conditions is not None
            and conditions.connection_type == ConnectionType.CELLULAR
        ):
            return False
        return self.monitor.admits(
            priority,
            active_requests=active_requests,
            max_concurrent=self.config.max_concurrent_requests,
            respect_data_saver=self.config.respect_save_data,
        )

    def _is_eligible(self, request: PrefetchRequest) -> bool:
        if not self.config.enabled:
            return False
        if len(self._active) >= self.config.max_concurrent_requests:
            return False
        if not request.network_aware:
            return True
        return self._network_allows(request.priority, len(self._active))

    def should_prefetch(self) -> bool:
        """当前是否允许后台预取（以 high 优先级为准）"""
        if not self.config.enabled:
            return False
        return self._network_allows(Priority.HIGH, len(self._active))

    def _pump(self) -> None:
        """按优先级启动所有可准入的请求，直到达到并发上限"""
        if self._closed or not self._queue:
            return

        # sorted 是稳定排序，同优先级保持入队顺序
        for request in sorted(self._queue, key=lambda r: r.priority.rank):
            if len(self._active) >= self.config.max_concurrent_requests:
                break
            if not self._is_eligible(request):
                continue
            self._queue.remove(request)
            self._start(request)

    def _start(self, request: PrefetchRequest) -> None:
        self._active[request.id] = request
        self.stats.total_requests += 1
        task = asyncio.create_task(self._execute(request))
        # 在启动前就被取消的任务也要释放活跃槽
        task.add_done_callback(lambda _t, r=request: self._finish(r))
        self._tasks[request.id] = task
        logger.debug(f"Prefetch admitted: {request.id} ({request.priority.value})")

    def _on_network_change(self, conditions: NetworkConditions) -> None:
        if self._queue:
            logger.debug(f"Network changed to {conditions.quality.value}, re-evaluating prefetch queue")
            self._pump()

    # ==================== 执行 ====================

    async def _execute(self, request: PrefetchRequest) -> None:
        started = time.perf_counter()
        try:
            if request.is_whole_category:
                data = await self.source.fetch_package_set(request.category)
            else:
                data = await self.source.search_packages(request.category, " ".join(request.packages))
        except asyncio.CancelledError:
            logger.debug(f"Prefetch cancelled: {request.id}")
            raise
        except Exception as e:
            if request.id not in self._cancelled:
                self.stats.record_failure()
                logger.warning(f"Prefetch failed: {request.id} ({request.origin.value}): {e}")
        else:
            # 已取消的请求不再写入任何状态
            if request.id not in self._cancelled:
                self._apply(request, data)
                self.stats.record_success((time.perf_counter() - started) * 1000)

    def _apply(self, request: PrefetchRequest, data: PackageSet) -> None:
        if request.is_whole_category:
            self.cache.put(request.category, data)
            logger.info(f"Prefetched {request.category.value}: {len(data)} packages ({request.origin.value})")
        else:
            merged = self.cache.merge_prefetched(request.category, data)
            logger.debug(f"Prefetched {merged} {request.category.value} packages ({request.origin.value})")

    def _finish(self, request: PrefetchRequest) -> None:
        self._active.pop(request.id, None)
        self._tasks.pop(request.id, None)
        self._cancelled.discard(request.id)
        if self._identities.get(request.identity) == request.id:
            del self._identities[request.identity]
        self._pump()

    # ==================== 取消 ====================

    def cancel_request(self, request_id: str) -> bool:
        for request in self._queue:
            if request.id == request_id:
                self._queue.remove(request)
                self._identities.pop(request.identity, None)
                self.stats.cancelled_requests += 1
                return True

        task = self._tasks.get(request_id)
        if task is None:
            return False
        self._cancelled.add(request_id)
        self.stats.cancelled_requests += 1
        task.cancel()
        return True

    def invalidate(self, category: Category) -> int:
        """
        丢弃该类别正在进行的预取

        变更成功后调用: 变更前发出的获取可能返回旧数据，结果一律不写入缓存。
        排队中的请求保留，它们在变更之后才会发出。
        """
        invalidated = 0
        for request_id, request in list(self._active.items()):
            if request.category != category or request_id in self._cancelled:
                continue
            task = self._tasks.get(request_id)
            if task is None:
                continue
            self._cancelled.add(request_id)
            self.stats.cancelled_requests += 1
            task.cancel()
            invalidated += 1

        if invalidated:
            logger.info(f"Discarded {invalidated} in-flight {category.value} prefetches after mutation")
        return invalidated

    def cancel_all(self) -> int:
        """取消全部活跃请求并清空队列，返回取消数量"""
        queued = len(self._queue)
        for request in self._queue:
            self._identities.pop(request.identity, None)
        self._queue.clear()

        active = 0
        for request_id, task in list(self._tasks.items()):
            if request_id in self._cancelled:
                continue
            self._cancelled.add(request_id)
            task.cancel()
            active += 1

        self.stats.cancelled_requests += queued + active
        if queued or active:
            logger.info(f"Cancelled prefetch: {active} active, {queued} queued")
        return queued + active

    # ==================== 策略 ====================

    def warm_cache(self, force: bool = False) -> list[str]:
        """
        缓存预热

        - 类别无数据: 整类获取
        - 否则在强制或尚未预热过时，按年下载量取前 N 个超过门槛的包
        - 最短间隔 warm_throttle_seconds
        """
        if not force and not self.config.cache_warming_enabled:
            return []

        now = self._clock()
        if self._last_warm is not None and now - self._last_warm < self.warm_throttle_seconds:
            logger.debug("Cache warming throttled")
            return []
        self._last_warm = now

        request_ids = []
        for category in Category:
            data = self.cache.get(category).data
            if data is None:
                request_id = self.queue_prefetch(
                    category, None, Priority.MEDIUM, origin=RequestOrigin.CACHE_WARMING
                )
            elif force or not self.cache.prefetched(category):
                popular = sorted(
                    (p for p in data.packages if p.downloads_365d > self.config.popularity_threshold),
                    key=lambda p: p.downloads_365d,
                    reverse=True,
                )[: self.config.warm_top_n]
                request_id = self.queue_prefetch(
                    category,
                    [p.name for p in popular],
                    Priority.MEDIUM,
                    origin=RequestOrigin.CACHE_WARMING,
                )
            else:
                request_id = None
            if request_id:
                request_ids.append(request_id)
        return request_ids

    def predictive_prefetch(self, at: datetime | None = None) -> list[str]:
        """按行为模型预测并以 low 优先级预取"""
        if not self.config.predictive_enabled:
            return []

        request_ids = []
        for category in Category:
            predictions = self.behavior.predict(
                category,
                self.cache.get(category).data,
                at=at,
                limit=self.config.prediction_limit,
            )
            if not predictions:
                continue
            request_id = self.queue_prefetch(
                category, predictions, Priority.LOW, origin=RequestOrigin.PREDICTIVE
            )
            if request_id:
                logger.debug(f"Predicted {len(predictions)} {category.value} packages")
                request_ids.append(request_id)
        return request_ids

    def background_refresh(self) -> list[str]:
        """已过期或即将过期的类别做整类刷新"""
        if not self.config.background_refresh_enabled:
            return []

        request_ids = []
        for category in Category:
            if not self.cache.will_be_stale_within(category, self.stale_window_seconds):
                continue
            request_id = self.queue_prefetch(
                category, None, Priority.MEDIUM, origin=RequestOrigin.BACKGROUND_REFRESH
            )
            if request_id:
                request_ids.append(request_id)
        return request_ids

    def orchestrate(self) -> dict[str, list[str]]:
        """一次编排: 后台刷新 -> 缓存预热 -> 行为预测"""
        if not self.should_prefetch():
            logger.debug("Prefetch orchestration skipped: network or config does not allow it")
            return {}

        return {
            "background_refresh": self.background_refresh(),
            "cache_warming": self.warm_cache(),
            "predictive": self.predictive_prefetch(),
        }

    async def prefetch_related_packages(self, name: str, category: Category) -> str | None:
        """预取某个包的依赖（前 5 个）与冲突（前 2 个）"""
        try:
            details = await self.source.fetch_package_details(name, category)
        except Exception as e:
            logger.warning(f"Failed to load details for {name} ({category.value}): {e}")
            return None

        related: list[str] = []
        candidates = (
            details.dependencies[:RELATED_DEPENDENCY_LIMIT]
            + details.conflicts[:RELATED_CONFLICT_LIMIT]
        )
        for candidate in candidates:
            if candidate != name and candidate not in related:
                related.append(candidate)

        return self.queue_prefetch(category, related, Priority.LOW, origin=RequestOrigin.RELATED)

    def prefetch_search_results(
        self, category: Category, results: PackageSet, limit: int = SEARCH_RESULT_PREFETCH_LIMIT
    ) -> str | None:
        """预取搜索结果中排在前面、尚未预取过的包"""
        known = self.cache.prefetched(category)
        names = [p.name for p in results.packages if p.name not in known][:limit]
        return self.queue_prefetch(category, names, Priority.LOW, origin=RequestOrigin.SEARCH)

    # ==================== 状态 ====================

    def get_stats(self) -> dict:
        return {
            **self.stats.to_dict(),
            "queued": len(self._queue),
            "active": len(self._active),
        }

    def get_queue_status(self) -> dict:
        by_priority = {p.value: 0 for p in Priority}
        for request in self._queue:
            by_priority[request.priority.value] += 1

        conditions = self.monitor.conditions
        return {
            "queued": [r.to_dict() for r in self._queue],
            "active": [r.to_dict() for r in self._active.values()],
            "queued_by_priority": by_priority,
            "should_prefetch": self.should_prefetch(),
            "network": conditions.to_dict() if conditions else None,
        }

    def get_recommendations(self) -> list[str]:
        """面向用户的预取状况建议"""
        recommendations = []
        conditions = self.monitor.conditions

        if not self.config.enabled:
            recommendations.append("Background prefetching is disabled.")
        if conditions is not None and conditions.data_saver_enabled and self.config.respect_save_data:
            recommendations.append("Data saver is on, so background prefetching is paused.")
        if conditions is not None and conditions.quality == QualityTier.POOR:
            recommendations.append("Network quality is poor. Prefetching resumes when it improves.")

        finished = self.stats.successful_requests + self.stats.failed_requests
        if finished >= 5 and self.stats.success_rate < 50:
            recommendations.append(
                "Most prefetch requests are failing. Check the network connection."
            )
        if self.stats.average_response_time_ms > 3000 and self.config.max_concurrent_requests > 1:
            recommendations.append(
                "Prefetch responses are slow. Consider lowering max_concurrent_requests."
            )
        return recommendations

    def update_config(self, **changes) -> PrefetchConfig:
        """
        更新配置

        只影响之后的准入判断，已运行的请求不受影响。
        """
        unknown = set(changes) - set(PrefetchConfig.model_fields)
        if unknown:
            raise ValueError(f"Unknown prefetch config keys: {', '.join(sorted(unknown))}")

        self.config = PrefetchConfig.model_validate({**self.config.model_dump(), **changes})
        logger.info(f"Prefetch config updated: {', '.join(sorted(changes))}")
        self._pump()
        return self.config

    # ==================== 生命周期 ====================

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._closed = False
        self.monitor.add_listener(self._on_network_change)
        self._loop_task = asyncio.create_task(self._orchestrate_loop())
        logger.info(
            f"PrefetchScheduler started (interval={self.interval_seconds}s, "
            f"max_concurrent={self.config.max_concurrent_requests})"
        )

    async def stop(self) -> None:
        self._running = False
        self._closed = True

        if self._loop_task:
            self._loop_task.cancel()
            try:
                await self._loop_task
            except asyncio.CancelledError:
                pass
            self._loop_task = None

        tasks = list(self._tasks.values())
        self.cancel_all()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        self.monitor.remove_listener(self._on_network_change)
        logger.info("PrefetchScheduler stopped")

    async def _orchestrate_loop(self) -> None:
        try:
            await asyncio.sleep(self.initial_delay_seconds)
        except asyncio.CancelledError:
            return

        while self._running:
            try:
                self.orchestrate()
                await asyncio.sleep(self.interval_seconds)
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Prefetch orchestration error: {e}", exc_info=True)
                await asyncio.sleep(self.interval_seconds)
