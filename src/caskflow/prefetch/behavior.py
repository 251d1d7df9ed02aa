"""
用户行为模型

按 (类别, 小时, 星期) 聚合搜索 / 查看 / 安装信号，用于预测用户接下来可能需要的包。
每个桶内的列表只保留最近 N 条。
"""

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum

from ..types import Category, PackageSet

logger = logging.getLogger(__name__)

DEFAULT_HISTORY_LIMIT = 20

# 每个搜索词最多取几个匹配包，每个已查看/已安装包最多取几个依赖
QUERY_MATCHES_PER_QUERY = 3
DEPENDENCIES_PER_PACKAGE = 2


class BehaviorAction(Enum):
    SEARCH = "search"
    VIEW = "view"
    INSTALL = "install"


# 桶键: (类别, 小时 0-23, 星期 0-6，周一为 0)
PatternKey = tuple[Category, int, int]


@dataclass
class BehaviorPattern:
    category: Category
    hour: int
    day_of_week: int
    search_queries: list[str] = field(default_factory=list)
    viewed_packages: list[str] = field(default_factory=list)
    installed_packages: list[str] = field(default_factory=list)
    frequency: int = 0

    @property
    def key(self) -> PatternKey:
        return (self.category, self.hour, self.day_of_week)

    def copy(self) -> "BehaviorPattern":
        return replace(
            self,
            search_queries=list(self.search_queries),
            viewed_packages=list(self.viewed_packages),
            installed_packages=list(self.installed_packages),
        )

    def to_dict(self) -> dict:
        return {
            "category": self.category.value,
            "hour": self.hour,
            "day_of_week": self.day_of_week,
            "search_queries": list(self.search_queries),
            "viewed_packages": list(self.viewed_packages),
            "installed_packages": list(self.installed_packages),
            "frequency": self.frequency,
        }


def _append_capped(items: list[str], value: str, limit: int) -> None:
    """追加到末尾（已存在则移到末尾），只保留最近 limit 条"""
    if value in items:
        items.remove(value)
    items.append(value)
    if len(items) > limit:
        del items[: len(items) - limit]


def _hour_distance(a: int, b: int) -> int:
    diff = abs(a - b) % 24
    return min(diff, 24 - diff)


class BehaviorModel:
    """
    行为模型

    预测规则:
    - 只看同一星期、小时相差不超过 hour_window 且 frequency > 1 的桶
    - 搜索词: 在当前缓存的包中匹配，每个词取前 3 个
    - 查看/安装过的包: 取其声明的依赖，每个包取前 2 个
    - 去重后截断到 limit
    """

    def __init__(
        self,
        history_limit: int = DEFAULT_HISTORY_LIMIT,
        clock: Callable[[], float] = time.time,
    ):
        self.history_limit = history_limit
        self._clock = clock
        self._patterns: dict[PatternKey, BehaviorPattern] = {}
        self._view_counts: dict[tuple[Category, str], int] = {}

    def _now(self) -> datetime:
        return datetime.fromtimestamp(self._clock())

    def record(
        self,
        action: BehaviorAction,
        category: Category,
        *,
        name: str | None = None,
        query: str | None = None,
        at: datetime | None = None,
    ) -> BehaviorPattern:
        """记录一次用户行为，返回所在桶的快照"""
        moment = at or self._now()
        key = (category, moment.hour, moment.weekday())
        pattern = self._patterns.get(key)
        if pattern is None:
            pattern = BehaviorPattern(category=category, hour=moment.hour, day_of_week=moment.weekday())
            self._patterns[key] = pattern

        pattern.frequency += 1

        if action == BehaviorAction.SEARCH and query:
            _append_capped(pattern.search_queries, query.strip(), self.history_limit)
        elif action == BehaviorAction.VIEW and name:
            _append_capped(pattern.viewed_packages, name, self.history_limit)
            count_key = (category, name)
            self._view_counts[count_key] = self._view_counts.get(count_key, 0) + 1
        elif action == BehaviorAction.INSTALL and name:
            _append_capped(pattern.installed_packages, name, self.history_limit)

        logger.debug(
            f"Behavior recorded: {action.value} {name or query or ''} "
            f"({category.value}, hour={moment.hour}, weekday={moment.weekday()})"
        )
        return pattern.copy()

    def view_count(self, category: Category, name: str) -> int:
        return self._view_counts.get((category, name), 0)

    def patterns(self) -> list[BehaviorPattern]:
        return [p.copy() for p in self._patterns.values()]

    def matching_patterns(
        self, category: Category, *, at: datetime | None = None, hour_window: int = 2
    ) -> list[BehaviorPattern]:
        moment = at or self._now()
        return [
            p
            for p in self._patterns.values()
            if p.category == category
            and p.day_of_week == moment.weekday()
            and _hour_distance(p.hour, moment.hour) <= hour_window
            and p.frequency > 1
        ]

    def predict(
        self,
        category: Category,
        packages: PackageSet | None,
        *,
        at: datetime | None = None,
        limit: int = 10,
        hour_window: int = 2,
    ) -> list[str]:
        """
        预测可能需要的包名

        Args:
            category: 类别
            packages: 当前缓存的包列表（用于搜索词匹配和依赖查找）
            at: 预测时刻（默认当前时钟）
            limit: 最多返回数量
            hour_window: 小时窗口（±）
        """
        if not packages:
            return []

        # 频率高的桶优先
        matching = sorted(
            self.matching_patterns(category, at=at, hour_window=hour_window),
            key=lambda p: p.frequency,
            reverse=True,
        )

        predictions: list[str] = []

        def add(name: str) -> bool:
            if name not in predictions:
                predictions.append(name)
            return len(predictions) >= limit

        for pattern in matching:
            for query in reversed(pattern.search_queries):
                matches = [p.name for p in packages.packages if p.matches(query)]
                for name in matches[:QUERY_MATCHES_PER_QUERY]:
                    if add(name):
                        return predictions

            for name in reversed(pattern.viewed_packages + pattern.installed_packages):
                pkg = packages.find(name)
                if pkg is None:
                    continue
                for dep in pkg.dependencies[:DEPENDENCIES_PER_PACKAGE]:
                    if add(dep):
                        return predictions

        return predictions
