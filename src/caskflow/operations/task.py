"""
包变更操作定义

定义操作的数据结构和状态
"""

import uuid
from dataclasses import dataclass, replace
from enum import Enum

from ..types import Category, MutationKind


class OperationStatus(Enum):
    """操作状态"""

    PENDING = "pending"  # 等待执行
    RUNNING = "running"  # 执行中
    COMPLETED = "completed"  # 已完成
    FAILED = "failed"  # 失败（含用户取消）

    @property
    def is_terminal(self) -> bool:
        return self in (OperationStatus.COMPLETED, OperationStatus.FAILED)


# 操作身份: (类型, 包名, 类别)
OperationIdentity = tuple[MutationKind, str, Category]

CANCELLED_MESSAGE = "Cancelled by user"

_RUNNING_VERBS = {
    MutationKind.INSTALL: "Installing",
    MutationKind.UNINSTALL: "Uninstalling",
    MutationKind.UPDATE: "Updating",
}


@dataclass
class Operation:
    """
    一次包变更操作

    由 OperationQueue 独占持有并修改，对外只提供 snapshot() 副本。
    时间字段为 epoch 秒（来自队列注入的时钟）。
    """

    id: str
    kind: MutationKind
    package_name: str
    category: Category
    status: OperationStatus = OperationStatus.PENDING
    progress: int = 0  # 0-100
    message: str = ""
    created_at: float = 0.0
    started_at: float | None = None
    ended_at: float | None = None
    attempt_of: str | None = None  # 重试来源操作的 id

    @classmethod
    def create(
        cls,
        kind: MutationKind,
        package_name: str,
        category: Category,
        *,
        now: float,
        attempt_of: str | None = None,
    ) -> "Operation":
        return cls(
            id=f"op_{uuid.uuid4().hex[:12]}",
            kind=kind,
            package_name=package_name,
            category=category,
            message="Waiting in queue",
            created_at=now,
            attempt_of=attempt_of,
        )

    @property
    def identity(self) -> OperationIdentity:
        return (self.kind, self.package_name, self.category)

    @property
    def is_active(self) -> bool:
        return self.status in (OperationStatus.PENDING, OperationStatus.RUNNING)

    @property
    def duration_seconds(self) -> float | None:
        if self.started_at is None or self.ended_at is None:
            return None
        return self.ended_at - self.started_at

    def mark_running(self, now: float) -> None:
        self.status = OperationStatus.RUNNING
        self.started_at = now
        self.progress = 10
        self.message = f"{_RUNNING_VERBS[self.kind]} {self.package_name}..."

    def mark_completed(self, now: float, message: str) -> None:
        self.status = OperationStatus.COMPLETED
        self.ended_at = now
        self.progress = 100
        self.message = message

    def mark_failed(self, now: float, message: str) -> None:
        self.status = OperationStatus.FAILED
        self.ended_at = now
        self.message = message

    def snapshot(self) -> "Operation":
        return replace(self)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "kind": self.kind.value,
            "package_name": self.package_name,
            "category": self.category.value,
            "status": self.status.value,
            "progress": self.progress,
            "message": self.message,
            "created_at": self.created_at,
            "started_at": self.started_at,
            "ended_at": self.ended_at,
            "attempt_of": self.attempt_of,
        }
