"""
包列表缓存

每个类别一条缓存记录:
- 最近一次成功获取的包列表 + 获取时间
- 共享 TTL，过期判断始终基于调用时刻的时钟计算（不缓存布尔值）
- clear 只丢弃时间戳、保留数据（后台重新获取期间旧数据仍可展示）

持久化: 每个类别一个文档（cache_formula / cache_cask），只保存数据和时间戳，
搜索结果、预取结果等会话状态不落盘。
"""

import json
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field

from ..storage import DocumentStore
from ..types import Category, PackageInfo, PackageSet

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 300.0


@dataclass
class CacheEntry:
    """单个类别的缓存记录（仅 CacheStore 内部可变）"""

    data: PackageSet | None = None
    last_fetch: float | None = None

    # 会话状态
    search_query: str | None = None
    search_results: PackageSet | None = None
    prefetched: dict[str, PackageInfo] = field(default_factory=dict)

    def to_document(self) -> dict:
        return {
            "data": self.data.to_dict() if self.data else None,
            "last_fetch": self.last_fetch,
        }


@dataclass(frozen=True)
class CacheSnapshot:
    """缓存快照（只读）"""

    category: Category
    data: PackageSet | None
    last_fetch: float | None
    stale: bool
    age_minutes: int | None

    @property
    def has_data(self) -> bool:
        return self.data is not None

    def to_dict(self) -> dict:
        return {
            "data": self.data,
            "stale": self.stale,
            "age_minutes": self.age_minutes,
        }


class CacheStore:
    """
    按类别的包列表缓存

    职责:
    - 回答“是否有数据”“是否过期”“是否即将过期”
    - put 是唯一会刷新新鲜度的操作
    """

    def __init__(
        self,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        clock: Callable[[], float] = time.time,
        documents: DocumentStore | None = None,
    ):
        """
        Args:
            ttl_seconds: 缓存有效期（秒）
            clock: 时钟函数，返回 epoch 秒
            documents: 持久化存储（None 表示纯内存）
        """
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._documents = documents
        self._entries: dict[Category, CacheEntry] = {c: CacheEntry() for c in Category}

    # ==================== 读取 ====================

    def get(self, category: Category) -> CacheSnapshot:
        entry = self._entries[category]
        return CacheSnapshot(
            category=category,
            data=entry.data,
            last_fetch=entry.last_fetch,
            stale=self._is_stale(entry),
            age_minutes=self.age_minutes(category),
        )

    def is_stale(self, category: Category) -> bool:
        return self._is_stale(self._entries[category])

    def _is_stale(self, entry: CacheEntry) -> bool:
        if entry.last_fetch is None:
            return True
        return self._clock() - entry.last_fetch >= self.ttl_seconds

    def will_be_stale_within(self, category: Category, window_seconds: float) -> bool:
        """在 window_seconds 内是否会过期（已过期同样返回 True）"""
        last_fetch = self._entries[category].last_fetch
        if last_fetch is None:
            return True
        remaining = self.ttl_seconds - (self._clock() - last_fetch)
        return remaining <= window_seconds

    def age_minutes(self, category: Category) -> int | None:
        last_fetch = self._entries[category].last_fetch
        if last_fetch is None:
            return None
        return int(max(0.0, self._clock() - last_fetch) // 60)

    def is_warm(self) -> bool:
        """两个类别都有数据"""
        return all(e.data is not None for e in self._entries.values())

    def last_search(self, category: Category) -> tuple[str, PackageSet] | None:
        entry = self._entries[category]
        if entry.search_query is None or entry.search_results is None:
            return None
        return entry.search_query, entry.search_results

    def prefetched(self, category: Category) -> dict[str, PackageInfo]:
        return dict(self._entries[category].prefetched)

    # ==================== 写入 ====================

    def put(self, category: Category, data: PackageSet) -> None:
        """覆盖数据并刷新时间戳"""
        entry = self._entries[category]
        entry.data = data
        entry.last_fetch = self._clock()
        logger.debug(f"Cache updated: {category.value} ({len(data)} packages)")
        self._persist(category)

    def clear(self, category: Category | None = None) -> None:
        """
        标记为过期

        不清除数据，下一次成功 put 之前旧数据仍然可见。重复调用效果相同。
        """
        categories = [category] if category else list(Category)
        for c in categories:
            self._entries[c].last_fetch = None
            self._persist(c)
        logger.debug(f"Cache cleared: {', '.join(c.value for c in categories)}")

    def put_search(self, category: Category, query: str, results: PackageSet) -> None:
        """记录最近一次搜索（不影响新鲜度）"""
        entry = self._entries[category]
        entry.search_query = query
        entry.search_results = results

    def merge_prefetched(self, category: Category, packages: PackageSet) -> int:
        """合并定向预取得到的包信息，返回合并数量"""
        entry = self._entries[category]
        for pkg in packages.packages:
            entry.prefetched[pkg.name] = pkg
        return len(packages)

    # ==================== 统计 ====================

    def get_stats(self) -> dict:
        stats: dict = {"ttl_seconds": self.ttl_seconds, "categories": {}}
        total = 0
        for category, entry in self._entries.items():
            count = len(entry.data) if entry.data else 0
            total += count
            stats["categories"][category.value] = {
                "has_data": entry.data is not None,
                "package_count": count,
                "prefetched_count": len(entry.prefetched),
                "search_results_count": len(entry.search_results) if entry.search_results else 0,
                "stale": self._is_stale(entry),
                "age_minutes": self.age_minutes(category),
            }
        stats["total_packages"] = total
        stats["is_warm"] = self.is_warm()
        stats["approx_bytes"] = self._estimate_bytes()
        return stats

    def _estimate_bytes(self) -> int:
        """粗略估算缓存占用（序列化后的字节数）"""
        size = 0
        for entry in self._entries.values():
            if entry.data:
                size += len(json.dumps(entry.data.to_dict()))
            if entry.search_results:
                size += len(json.dumps(entry.search_results.to_dict()))
        return size

    # ==================== 持久化 ====================

    @staticmethod
    def document_key(category: Category) -> str:
        return f"cache_{category.value}"

    def load(self) -> int:
        """从持久化存储加载，返回成功加载的类别数"""
        if not self._documents:
            return 0

        loaded = 0
        for category in Category:
            doc = self._documents.load(self.document_key(category))
            if not doc:
                continue
            try:
                data = PackageSet.from_dict(doc["data"]) if doc.get("data") else None
                last_fetch = doc.get("last_fetch")
                entry = self._entries[category]
                entry.data = data
                entry.last_fetch = float(last_fetch) if last_fetch is not None else None
                loaded += 1
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"Ignoring corrupt cache document for {category.value}: {e}")

        if loaded:
            logger.info(f"Loaded {loaded} cache entries from storage")
        return loaded

    def _persist(self, category: Category) -> None:
        if self._documents:
            self._documents.save(self.document_key(category), self._entries[category].to_document())
