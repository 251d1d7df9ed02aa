"""
调度核心门面

把缓存、网络监测、操作队列、行为模型和预取调度器组装在一起，
对 UI 层暴露一组稳定的入口:

- 变更: enqueue_mutation / update_all / execute_batch
- 读取: get_queue_stats / get_queue_health / get_cache_snapshot
- 加载: load_packages / search_packages（必要路径，失败抛 FetchError）
- 信号: record_behavior / report_network
- 配置: update_prefetch_config（持久化）
"""

import asyncio
import logging
import time
from collections.abc import Callable, Coroutine
from typing import Any

from pydantic import ValidationError

from .cache import CacheStore
from .config import Settings, settings
from .errors import FetchError, classify_error
from .network import ActiveProbeSource, ConnectionInfo, NetworkConditions, NetworkQualityMonitor
from .operations import BatchExecutor, BatchResult, Operation, OperationQueue, QueueHealth, QueueStats
from .operations.batch import ProgressCallback
from .prefetch import BehaviorAction, BehaviorModel, PrefetchConfig, PrefetchScheduler
from .source import PackageSource
from .storage import DocumentStore
from .types import Category, MutationKind, PackageSet

logger = logging.getLogger(__name__)

PREFETCH_CONFIG_KEY = "prefetch_config"

# 同一个包被查看到第几次时预取其相关包
RELATED_PREFETCH_VIEW_COUNT = 3


def load_prefetch_config(documents: DocumentStore) -> PrefetchConfig:
    """读取持久化的预取配置，缺失或无效时使用默认值"""
    doc = documents.load(PREFETCH_CONFIG_KEY)
    if not doc:
        return PrefetchConfig()
    try:
        return PrefetchConfig.model_validate(doc)
    except ValidationError as e:
        logger.warning(f"Invalid prefetch config document, using defaults: {e}")
        return PrefetchConfig()


class PackageOrchestrator:
    """
    调度核心

    所有组件显式构造并注入同一个时钟，便于测试。
    """

    def __init__(
        self,
        source: PackageSource,
        *,
        config: Settings | None = None,
        documents: DocumentStore | None = None,
        monitor: NetworkQualityMonitor | None = None,
        clock: Callable[[], float] = time.time,
    ):
        """
        Args:
            source: 包数据源
            config: 运行配置（默认使用全局 settings）
            documents: 持久化存储（默认 config.data_dir）
            monitor: 网络质量监测器（默认启用主动探测）
            clock: 时钟函数，返回 epoch 秒
        """
        self.source = source
        self.settings = config or settings
        self.documents = documents or DocumentStore(self.settings.data_dir)
        self._clock = clock

        self.cache = CacheStore(
            ttl_seconds=self.settings.cache_ttl_seconds,
            clock=clock,
            documents=self.documents,
        )
        self.cache.load()

        self.monitor = monitor or NetworkQualityMonitor(
            probe_source=ActiveProbeSource(
                self.settings.network_probe_url,
                timeout_seconds=self.settings.network_probe_timeout_seconds,
            ),
            probe_interval_seconds=self.settings.network_probe_interval_seconds,
        )

        self.queue = OperationQueue(
            source,
            max_concurrent=self.settings.operation_max_concurrent,
            success_grace_seconds=self.settings.operation_success_grace_seconds,
            failure_grace_seconds=self.settings.operation_failure_grace_seconds,
            stuck_after_seconds=self.settings.stuck_operation_seconds,
            clock=clock,
            on_completed=self._on_operation_completed,
        )
        self.batch = BatchExecutor(self.queue, window_size=self.settings.batch_window_size)

        self.behavior = BehaviorModel(history_limit=self.settings.behavior_history_limit, clock=clock)
        self.prefetch = PrefetchScheduler(
            source,
            self.cache,
            self.monitor,
            self.behavior,
            load_prefetch_config(self.documents),
            clock=clock,
            interval_seconds=self.settings.prefetch_interval_seconds,
            initial_delay_seconds=self.settings.prefetch_initial_delay_seconds,
            warm_throttle_seconds=self.settings.prefetch_warm_throttle_seconds,
            stale_window_seconds=self.settings.prefetch_stale_window_seconds,
        )

        self._background: set[asyncio.Task] = set()

    # ==================== 变更操作 ====================

    async def enqueue_mutation(
        self, kind: MutationKind | str, name: str, category: Category | str
    ) -> str:
        """提交变更，立即返回操作 ID"""
        kind = MutationKind(kind)
        category = Category.parse(category)
        if kind == MutationKind.INSTALL:
            self.behavior.record(BehaviorAction.INSTALL, category, name=name)
        return await self.queue.enqueue(kind, name, category)

    async def update_all(self, category: Category | str) -> str:
        return await self.queue.update_all(Category.parse(category))

    async def execute_batch(
        self,
        kind: MutationKind | str,
        packages: list[str],
        category: Category | str,
        *,
        continue_on_error: bool = True,
        on_progress: ProgressCallback | None = None,
    ) -> list[BatchResult]:
        return await self.batch.execute(
            MutationKind(kind),
            packages,
            Category.parse(category),
            continue_on_error=continue_on_error,
            on_progress=on_progress,
        )

    def get_queue_stats(self) -> QueueStats:
        return self.queue.get_stats()

    def get_queue_health(self) -> QueueHealth:
        return self.queue.get_health()

    def _on_operation_completed(self, operation: Operation) -> None:
        """变更成功后: 丢弃该类别进行中的预取，缓存立即标记过期，并在后台重新加载"""
        self.prefetch.invalidate(operation.category)
        self.cache.clear(operation.category)
        self._spawn(self._refresh(operation.category))

    async def _refresh(self, category: Category) -> None:
        try:
            await self.load_packages(category, force=True)
        except FetchError as e:
            logger.warning(f"Post-mutation refresh failed: {e}")

    # ==================== 缓存 / 加载 ====================

    def get_cache_snapshot(self, category: Category | str) -> dict:
        """{data, stale, age_minutes}"""
        return self.cache.get(Category.parse(category)).to_dict()

    async def load_packages(self, category: Category | str, force: bool = False) -> PackageSet:
        """
        加载包列表（用户主动发起）

        缓存新鲜时直接返回缓存；否则从数据源获取并写入缓存。

        Raises:
            FetchError: 获取失败（不自动重试）
        """
        category = Category.parse(category)
        snapshot = self.cache.get(category)
        if not force and snapshot.has_data and not snapshot.stale:
            return snapshot.data

        try:
            data = await self.source.fetch_package_set(category)
        except Exception as e:
            error = classify_error(e, category=category)
            raise FetchError(
                f"Could not load {category.value} packages: {error.message}",
                error_type=error.error_type,
                category=category,
            ) from e

        self.cache.put(category, data)
        return data

    async def search_packages(self, category: Category | str, query: str) -> PackageSet:
        """
        搜索（用户主动发起）

        Raises:
            FetchError: 搜索失败
        """
        category = Category.parse(category)
        query = query.strip()
        if not query:
            return self.cache.get(category).data or PackageSet()

        self.behavior.record(BehaviorAction.SEARCH, category, query=query)
        try:
            results = await self.source.search_packages(category, query)
        except Exception as e:
            error = classify_error(e, category=category)
            raise FetchError(
                f"Search for '{query}' failed: {error.message}",
                error_type=error.error_type,
                category=category,
            ) from e

        self.cache.put_search(category, query, results)
        self.prefetch.prefetch_search_results(category, results)
        return results

    # ==================== 信号 ====================

    def record_behavior(
        self,
        action: BehaviorAction | str,
        category: Category | str,
        name: str | None = None,
        query: str | None = None,
    ) -> None:
        action = BehaviorAction(action)
        category = Category.parse(category)
        self.behavior.record(action, category, name=name, query=query)

        if (
            action == BehaviorAction.VIEW
            and name
            and self.behavior.view_count(category, name) >= RELATED_PREFETCH_VIEW_COUNT
        ):
            self._spawn(self.prefetch.prefetch_related_packages(name, category))

    def report_network(self, info: ConnectionInfo) -> NetworkConditions:
        return self.monitor.update_connection(info)

    # ==================== 配置 ====================

    def update_prefetch_config(self, **changes) -> PrefetchConfig:
        """更新预取配置并持久化（只影响之后的准入判断）"""
        config = self.prefetch.update_config(**changes)
        self.documents.save(PREFETCH_CONFIG_KEY, config.model_dump())
        return config

    # ==================== 生命周期 ====================

    def _spawn(self, coro: Coroutine[Any, Any, Any]) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    async def start(self) -> None:
        await self.monitor.start()
        await self.prefetch.start()
        logger.info("PackageOrchestrator started")

    async def stop(self) -> None:
        await self.prefetch.stop()
        await self.queue.stop()

        tasks = list(self._background)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        await self.monitor.stop()
        logger.info("PackageOrchestrator stopped")
