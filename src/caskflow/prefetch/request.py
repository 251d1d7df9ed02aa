"""
预取请求、配置与统计
"""

import uuid
from dataclasses import dataclass
from enum import Enum

from pydantic import BaseModel, Field, field_validator

from ..types import Category, Priority


class RequestOrigin(Enum):
    """请求来源"""

    MANUAL = "manual"
    SEARCH = "search"
    RELATED = "related"
    CACHE_WARMING = "cache_warming"
    PREDICTIVE = "predictive"
    BACKGROUND_REFRESH = "background_refresh"


# 请求身份: (类别, 包名元组；None 表示整个类别)
RequestIdentity = tuple[Category, tuple[str, ...] | None]


@dataclass(frozen=True)
class PrefetchRequest:
    id: str
    category: Category
    packages: tuple[str, ...] | None  # None = 整个类别
    priority: Priority
    network_aware: bool
    created_at: float
    origin: RequestOrigin = RequestOrigin.MANUAL

    @classmethod
    def create(
        cls,
        category: Category,
        packages: list[str] | tuple[str, ...] | None,
        priority: Priority,
        *,
        network_aware: bool,
        now: float,
        origin: RequestOrigin = RequestOrigin.MANUAL,
    ) -> "PrefetchRequest":
        return cls(
            id=f"prefetch_{uuid.uuid4().hex[:12]}",
            category=category,
            packages=tuple(packages) if packages is not None else None,
            priority=priority,
            network_aware=network_aware,
            created_at=now,
            origin=origin,
        )

    @property
    def identity(self) -> RequestIdentity:
        return (self.category, self.packages)

    @property
    def is_whole_category(self) -> bool:
        return self.packages is None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "category": self.category.value,
            "packages": list(self.packages) if self.packages is not None else None,
            "priority": self.priority.value,
            "network_aware": self.network_aware,
            "created_at": self.created_at,
            "origin": self.origin.value,
        }


class PrefetchConfig(BaseModel):
    """预取配置（运行时可调整，只影响之后的准入判断）"""

    enabled: bool = True
    max_concurrent_requests: int = Field(3, description="并发上限，限制在 1-10")
    wifi_only: bool = False
    respect_save_data: bool = True
    popularity_threshold: int = Field(1000, description="缓存预热的年下载量门槛")
    cache_warming_enabled: bool = True
    predictive_enabled: bool = True
    background_refresh_enabled: bool = True
    warm_top_n: int = Field(20, ge=1)
    prediction_limit: int = Field(10, ge=1)

    @field_validator("max_concurrent_requests")
    @classmethod
    def _clamp_concurrency(cls, value: int) -> int:
        return max(1, min(10, value))


@dataclass
class PrefetchStats:
    """预取统计（平均响应时间为真实滑动均值）"""

    total_requests: int = 0
    successful_requests: int = 0
    failed_requests: int = 0
    cancelled_requests: int = 0
    average_response_time_ms: float = 0.0

    def record_success(self, elapsed_ms: float) -> None:
        self.successful_requests += 1
        n = self.successful_requests
        self.average_response_time_ms += (elapsed_ms - self.average_response_time_ms) / n

    def record_failure(self) -> None:
        self.failed_requests += 1

    @property
    def success_rate(self) -> float:
        finished = self.successful_requests + self.failed_requests
        return (self.successful_requests / finished * 100) if finished else 0.0

    def to_dict(self) -> dict:
        return {
            "total_requests": self.total_requests,
            "successful_requests": self.successful_requests,
            "failed_requests": self.failed_requests,
            "cancelled_requests": self.cancelled_requests,
            "average_response_time_ms": round(self.average_response_time_ms, 1),
            "success_rate": round(self.success_rate, 1),
        }
