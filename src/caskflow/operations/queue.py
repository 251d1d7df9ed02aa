"""
包变更操作队列

负责:
- 接收 install / uninstall / update 请求并排队
- 在并发上限内派发执行，同一身份 (类型, 包名, 类别) 同时最多一个运行中
- 重复提交合并为已有操作
- 终态操作在宽限期后自动移出
- 统计、健康度与剩余时间估算
"""

import asyncio
import logging
import time
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass

from ..errors import MutationError, classify_error
from ..source import PackageSource
from ..types import Category, MutationKind, update_all_name
from .task import CANCELLED_MESSAGE, Operation, OperationIdentity, OperationStatus

logger = logging.getLogger(__name__)

DEFAULT_OPERATION_SECONDS = 30.0

# 列表展示顺序
_STATUS_ORDER = {
    OperationStatus.RUNNING: 0,
    OperationStatus.PENDING: 1,
    OperationStatus.FAILED: 2,
    OperationStatus.COMPLETED: 3,
}


@dataclass(frozen=True)
class QueueStats:
    total: int
    pending: int
    running: int
    completed: int
    failed: int
    success_rate: float  # 0-100
    estimated_time_remaining: float  # 秒

    def to_dict(self) -> dict:
        return {
            "total": self.total,
            "pending": self.pending,
            "running": self.running,
            "completed": self.completed,
            "failed": self.failed,
            "success_rate": self.success_rate,
            "estimated_time_remaining": self.estimated_time_remaining,
        }


@dataclass(frozen=True)
class QueueHealth:
    health: str  # excellent / good / fair / poor
    success_rate: float
    has_stuck_operations: bool
    queue_length: int

    def to_dict(self) -> dict:
        return {
            "health": self.health,
            "success_rate": self.success_rate,
            "has_stuck_operations": self.has_stuck_operations,
            "queue_length": self.queue_length,
        }


def health_tier(success_rate: float) -> str:
    if success_rate >= 95:
        return "excellent"
    if success_rate >= 85:
        return "good"
    if success_rate >= 70:
        return "fair"
    return "poor"


class OperationQueue:
    """
    包变更操作队列

    所有 Operation 由本类持有，状态只在执行流程内部变更。
    """

    def __init__(
        self,
        source: PackageSource,
        max_concurrent: int = 3,
        success_grace_seconds: float = 3.0,
        failure_grace_seconds: float = 10.0,
        stuck_after_seconds: float = 300.0,
        clock: Callable[[], float] = time.time,
        on_completed: Callable[[Operation], None] | None = None,
    ):
        """
        Args:
            source: 包数据源（执行实际变更）
            max_concurrent: 最大并发执行数
            success_grace_seconds: 成功操作保留时间
            failure_grace_seconds: 失败操作保留时间
            stuck_after_seconds: 运行超过该时长视为卡住（只报告，不终止）
            clock: 时钟函数，返回 epoch 秒
            on_completed: 操作成功后的回调（收到快照）
        """
        self.source = source
        self.max_concurrent = max_concurrent
        self.success_grace_seconds = success_grace_seconds
        self.failure_grace_seconds = failure_grace_seconds
        self.stuck_after_seconds = stuck_after_seconds
        self.on_completed = on_completed
        self._clock = clock

        self._operations: dict[str, Operation] = {}
        self._by_identity: dict[OperationIdentity, str] = {}  # 身份 -> 活跃操作 id
        self._pending: deque[str] = deque()
        self._running: set[str] = set()
        self._tasks: dict[str, asyncio.Task] = {}
        self._done: dict[str, asyncio.Event] = {}
        self._cleanup_handles: dict[str, asyncio.TimerHandle] = {}

        # 已完成操作的耗时（用于剩余时间估算）
        self._completed_count = 0
        self._completed_duration_total = 0.0

    # ==================== 提交 ====================

    async def enqueue(
        self,
        kind: MutationKind,
        name: str,
        category: Category,
        *,
        attempt_of: str | None = None,
    ) -> str:
        """
        提交变更操作

        同一身份已有 pending/running 操作时直接返回该操作的 id。

        Returns:
            操作 ID
        """
        identity = (kind, name, category)
        existing = self._by_identity.get(identity)
        if existing:
            logger.debug(f"Coalesced duplicate {kind.value} {name} ({category.value}) -> {existing}")
            return existing

        op = Operation.create(kind, name, category, now=self._clock(), attempt_of=attempt_of)
        self._operations[op.id] = op
        self._by_identity[identity] = op.id
        self._done[op.id] = asyncio.Event()
        self._pending.append(op.id)

        logger.info(f"Queued {kind.value} {name} ({category.value}): {op.id}")
        self._dispatch()
        return op.id

    async def update_all(self, category: Category) -> str:
        """更新该类别下全部过期包"""
        return await self.enqueue(MutationKind.UPDATE, update_all_name(category), category)

    async def wait(self, operation_id: str) -> Operation:
        """等待操作进入终态，返回其快照"""
        op = self._operations.get(operation_id)
        if op is None:
            raise KeyError(f"Unknown operation: {operation_id}")
        if not op.status.is_terminal:
            await self._done[operation_id].wait()
        return op.snapshot()

    # ==================== 派发与执行 ====================

    def _dispatch(self) -> None:
        """在并发上限内按 FIFO 启动等待中的操作"""
        if not self._pending:
            return

        running_identities = {self._operations[i].identity for i in self._running}
        deferred: deque[str] = deque()

        while self._pending and len(self._running) < self.max_concurrent:
            op_id = self._pending.popleft()
            op = self._operations.get(op_id)
            if op is None or op.status != OperationStatus.PENDING:
                continue
            if op.identity in running_identities:
                deferred.append(op_id)
                continue

            self._mark_running(op)
            running_identities.add(op.identity)

        deferred.extend(self._pending)
        self._pending = deferred

    def _mark_running(self, op: Operation) -> None:
        op.mark_running(self._clock())
        self._running.add(op.id)
        self._tasks[op.id] = asyncio.create_task(self._execute(op))
        logger.debug(f"Started {op.id}: {op.kind.value} {op.package_name}")

    async def _execute(self, op: Operation) -> None:
        try:
            message = await self.source.mutate_package(op.kind, op.package_name, op.category)
        except asyncio.CancelledError:
            self._fail(op, "Cancelled")
            raise
        except Exception as e:
            error = classify_error(
                e, category=op.category, package=op.package_name, error_class=MutationError
            )
            self._fail(op, str(error) or type(e).__name__)
        else:
            self._complete(op, message or f"{op.package_name} {op.kind.value} completed")
        finally:
            self._tasks.pop(op.id, None)
            self._dispatch()

    def _complete(self, op: Operation, message: str) -> None:
        op.mark_completed(self._clock(), message)
        if op.duration_seconds is not None:
            self._completed_count += 1
            self._completed_duration_total += op.duration_seconds
        self._settle(op, self.success_grace_seconds)
        logger.info(f"Operation completed: {op.kind.value} {op.package_name} ({op.id})")

        if self.on_completed:
            try:
                self.on_completed(op.snapshot())
            except Exception as e:
                logger.warning(f"on_completed hook failed for {op.id}: {e}")

    def _fail(self, op: Operation, message: str) -> None:
        op.mark_failed(self._clock(), message)
        self._settle(op, self.failure_grace_seconds)
        logger.warning(f"Operation failed: {op.kind.value} {op.package_name} ({op.id}): {message}")

    def _settle(self, op: Operation, grace_seconds: float) -> None:
        """终态收尾: 释放身份与执行槽，唤醒等待者，安排移出"""
        self._running.discard(op.id)
        if self._by_identity.get(op.identity) == op.id:
            del self._by_identity[op.identity]

        event = self._done.get(op.id)
        if event:
            event.set()

        loop = asyncio.get_running_loop()
        self._cleanup_handles[op.id] = loop.call_later(grace_seconds, self._remove, op.id)

    def _remove(self, operation_id: str) -> None:
        self._cleanup_handles.pop(operation_id, None)
        op = self._operations.get(operation_id)
        if op is None or not op.status.is_terminal:
            return
        del self._operations[operation_id]
        self._done.pop(operation_id, None)

    # ==================== 取消 / 重试 / 清理 ====================

    def cancel_all_pending(self) -> int:
        """把所有等待中的操作标记为失败（不会进入运行态）"""
        cancelled = 0
        for op_id in list(self._pending):
            op = self._operations.get(op_id)
            if op is None or op.status != OperationStatus.PENDING:
                continue
            self._fail(op, CANCELLED_MESSAGE)
            cancelled += 1
        self._pending.clear()

        if cancelled:
            logger.info(f"Cancelled {cancelled} pending operations")
        return cancelled

    async def retry(self, operation_id: str) -> str | None:
        """
        重试失败的操作

        以新的 pending 记录重新提交，原记录保持不变。

        Returns:
            新操作 ID；操作不存在或未失败时返回 None
        """
        op = self._operations.get(operation_id)
        if op is None or op.status != OperationStatus.FAILED:
            return None
        return await self.enqueue(op.kind, op.package_name, op.category, attempt_of=op.id)

    async def retry_all_failed(self) -> int:
        """每个失败身份重新提交一次，返回新建的操作数"""
        seen: set[OperationIdentity] = set()
        retried = 0
        for op in list(self._operations.values()):
            if op.status != OperationStatus.FAILED or op.identity in seen:
                continue
            seen.add(op.identity)
            if op.identity in self._by_identity:
                continue
            await self.enqueue(op.kind, op.package_name, op.category, attempt_of=op.id)
            retried += 1

        if retried:
            logger.info(f"Retrying {retried} failed operations")
        return retried

    def clear_terminal(self) -> int:
        """立即移出所有终态操作"""
        terminal = [i for i, op in self._operations.items() if op.status.is_terminal]
        for op_id in terminal:
            handle = self._cleanup_handles.pop(op_id, None)
            if handle:
                handle.cancel()
            self._remove(op_id)
        return len(terminal)

    # ==================== 查询 ====================

    def get_operation(self, operation_id: str) -> Operation | None:
        op = self._operations.get(operation_id)
        return op.snapshot() if op else None

    def list_operations(self) -> list[Operation]:
        """running -> pending -> failed -> completed，同状态新的在前"""
        ops = sorted(
            self._operations.values(),
            key=lambda op: (_STATUS_ORDER[op.status], -op.created_at),
        )
        return [op.snapshot() for op in ops]

    def active_operations(self) -> list[Operation]:
        return [op.snapshot() for op in self._operations.values() if op.is_active]

    def operation_for(self, name: str, category: Category | None = None) -> Operation | None:
        """某个包当前的活跃操作"""
        for op in self._operations.values():
            if not op.is_active or op.package_name != name:
                continue
            if category is None or op.category == category:
                return op.snapshot()
        return None

    def get_stats(self) -> QueueStats:
        counts = {status: 0 for status in OperationStatus}
        for op in self._operations.values():
            counts[op.status] += 1

        completed = counts[OperationStatus.COMPLETED]
        failed = counts[OperationStatus.FAILED]
        finished = completed + failed
        success_rate = (completed / finished * 100) if finished else 100.0

        if self._completed_count:
            average = self._completed_duration_total / self._completed_count
        else:
            average = DEFAULT_OPERATION_SECONDS
        outstanding = counts[OperationStatus.PENDING] + counts[OperationStatus.RUNNING]

        return QueueStats(
            total=len(self._operations),
            pending=counts[OperationStatus.PENDING],
            running=counts[OperationStatus.RUNNING],
            completed=completed,
            failed=failed,
            success_rate=round(success_rate, 1),
            estimated_time_remaining=round(outstanding * average, 1),
        )

    def get_health(self) -> QueueHealth:
        stats = self.get_stats()
        now = self._clock()
        stuck = any(
            op.status == OperationStatus.RUNNING
            and op.started_at is not None
            and now - op.started_at > self.stuck_after_seconds
            for op in self._operations.values()
        )
        return QueueHealth(
            health=health_tier(stats.success_rate),
            success_rate=stats.success_rate,
            has_stuck_operations=stuck,
            queue_length=stats.pending + stats.running,
        )

    # ==================== 生命周期 ====================

    async def stop(self) -> None:
        """取消等待中的操作并中止运行中的操作"""
        self.cancel_all_pending()

        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            logger.info(f"Waiting for {len(tasks)} running operations to cancel...")
            await asyncio.gather(*tasks, return_exceptions=True)

        # 尚未开始执行就被取消的任务不会经过 _execute 的异常分支
        for op_id in list(self._running):
            self._fail(self._operations[op_id], "Cancelled")

        for handle in self._cleanup_handles.values():
            handle.cancel()
        self._cleanup_handles.clear()
