"""
批量操作执行器

把一组包按固定窗口切分: 窗口内并发提交，整个窗口结束后再开始下一个。
每个被尝试的包恰好产生一条结果。
"""

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass

from ..types import Category, MutationKind
from .queue import OperationQueue
from .task import OperationStatus

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BatchResult:
    name: str
    success: bool
    error: str | None = None
    operation_id: str | None = None

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "success": self.success,
            "error": self.error,
            "operation_id": self.operation_id,
        }


# 进度回调: (已完成数, 总数)
ProgressCallback = Callable[[int, int], None]


class BatchExecutor:
    """基于 OperationQueue 的窗口化批量执行"""

    def __init__(self, queue: OperationQueue, window_size: int = 3):
        self.queue = queue
        self.window_size = window_size

    async def execute(
        self,
        kind: MutationKind,
        packages: list[str],
        category: Category,
        *,
        window_size: int | None = None,
        continue_on_error: bool = True,
        on_progress: ProgressCallback | None = None,
    ) -> list[BatchResult]:
        """
        批量执行变更

        Args:
            kind: 变更类型
            packages: 包名列表
            category: 类别
            window_size: 窗口大小（默认使用构造参数）
            continue_on_error: False 时出现失败后不再开始新的窗口，
                当前窗口内已提交的包仍会等到结束并给出结果
            on_progress: 每个包结束后回调

        Returns:
            按提交顺序排列的结果
        """
        size = max(1, window_size or self.window_size)
        total = len(packages)
        results: list[BatchResult] = []
        done = 0

        def report() -> None:
            nonlocal done
            done += 1
            if on_progress:
                try:
                    on_progress(done, total)
                except Exception as e:
                    logger.warning(f"Batch progress callback failed: {e}")

        for start in range(0, total, size):
            window = packages[start : start + size]
            window_results = await asyncio.gather(
                *(self._run_one(kind, name, category, report) for name in window)
            )
            results.extend(window_results)

            if not continue_on_error and any(not r.success for r in window_results):
                skipped = total - len(results)
                if skipped:
                    logger.info(f"Batch {kind.value} stopped after failure, {skipped} packages skipped")
                break

        succeeded = sum(1 for r in results if r.success)
        logger.info(f"Batch {kind.value} finished: {succeeded}/{len(results)} succeeded ({total} requested)")
        return results

    async def _run_one(
        self,
        kind: MutationKind,
        name: str,
        category: Category,
        report: Callable[[], None],
    ) -> BatchResult:
        op_id = await self.queue.enqueue(kind, name, category)
        op = await self.queue.wait(op_id)

        if op.status == OperationStatus.COMPLETED:
            result = BatchResult(name=name, success=True, operation_id=op_id)
        else:
            result = BatchResult(name=name, success=False, error=op.message, operation_id=op_id)
        report()
        return result
