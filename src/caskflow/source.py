"""
外部数据源接口

包数据如何从包管理器获取不属于本核心的职责，这里只约定四个操作。
失败时应抛出 PackageSourceError（其他异常会被 classify_error 归类）。
"""

from typing import Protocol, runtime_checkable

from .types import Category, MutationKind, PackageDetails, PackageSet


@runtime_checkable
class PackageSource(Protocol):
    async def fetch_package_set(self, category: Category) -> PackageSet:
        """获取某一类别的完整包列表（幂等，可能较慢）"""
        ...

    async def mutate_package(self, kind: MutationKind, name: str, category: Category) -> str:
        """执行一次变更，返回面向用户的结果消息"""
        ...

    async def search_packages(self, category: Category, query: str) -> PackageSet:
        """按查询词搜索"""
        ...

    async def fetch_package_details(self, name: str, category: Category) -> PackageDetails:
        """获取依赖/冲突列表"""
        ...
