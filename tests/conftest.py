"""
共享测试工具: 可控时钟、内存数据源、样例包数据
"""

import asyncio
from collections import Counter

import pytest

from caskflow.types import Category, MutationKind, PackageDetails, PackageInfo, PackageSet


class FakeClock:
    """手动推进的时钟（epoch 秒）"""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def formula_set() -> PackageSet:
    packages = [
        PackageInfo("git", "2.44.0", "Distributed revision control system",
                    installed=True, downloads_365d=900_000, dependencies=["gettext", "pcre2"]),
        PackageInfo("wget", "1.24.5", "Internet file retriever",
                    downloads_365d=500_000, dependencies=["openssl@3", "libidn2", "gettext"]),
        PackageInfo("curl", "8.6.0", "Get a file from an HTTP, HTTPS or FTP server",
                    installed=True, outdated=True, downloads_365d=400_000, dependencies=["openssl@3"]),
        PackageInfo("jq", "1.7.1", "Lightweight and flexible command-line JSON processor",
                    downloads_365d=200_000, dependencies=["oniguruma"]),
        PackageInfo("tiny-tool", "0.1.0", "Rarely installed helper", downloads_365d=300),
    ]
    return PackageSet(packages=packages, total_installed=2, total_outdated=1)


def cask_set() -> PackageSet:
    packages = [
        PackageInfo("firefox", "124.0", "Web browser", downloads_365d=700_000),
        PackageInfo("iterm2", "3.4.23", "Terminal emulator", installed=True, downloads_365d=350_000),
        PackageInfo("rare-app", "1.0", "Niche application", downloads_365d=50),
    ]
    return PackageSet(packages=packages, total_installed=1, total_outdated=0)


class FakeSource:
    """
    内存包数据源

    - mutation_failures / fetch_error / search_error: 注入失败
    - mutation_gate / fetch_gate: 设置后调用会阻塞到 Event 被 set
    - 记录每次调用，并统计同一身份的最大并发
    """

    def __init__(self):
        self.package_sets = {Category.FORMULA: formula_set(), Category.CASK: cask_set()}
        self.details: dict[str, PackageDetails] = {}

        self.mutation_failures: dict[str, Exception] = {}
        self.fetch_error: Exception | None = None
        self.search_error: Exception | None = None
        self.details_error: Exception | None = None

        self.mutation_gate: asyncio.Event | None = None
        self.fetch_gate: asyncio.Event | None = None
        self.mutation_delay = 0.0

        self.mutation_calls: list[tuple[MutationKind, str, Category]] = []
        self.fetch_calls: list[Category] = []
        self.search_calls: list[tuple[Category, str]] = []

        self._running: Counter = Counter()
        self.max_running_per_identity = 0
        self.max_running = 0

    async def fetch_package_set(self, category: Category) -> PackageSet:
        self.fetch_calls.append(category)
        if self.fetch_gate:
            await self.fetch_gate.wait()
        else:
            await asyncio.sleep(0)
        if self.fetch_error:
            raise self.fetch_error
        return self.package_sets[category]

    async def mutate_package(self, kind: MutationKind, name: str, category: Category) -> str:
        identity = (kind, name, category)
        self.mutation_calls.append(identity)
        self._running[identity] += 1
        self.max_running_per_identity = max(self.max_running_per_identity, self._running[identity])
        self.max_running = max(self.max_running, sum(self._running.values()))
        try:
            if self.mutation_gate:
                await self.mutation_gate.wait()
            else:
                await asyncio.sleep(self.mutation_delay)
            if name in self.mutation_failures:
                raise self.mutation_failures[name]
            return f"{name} {kind.value} finished"
        finally:
            self._running[identity] -= 1

    async def search_packages(self, category: Category, query: str) -> PackageSet:
        self.search_calls.append((category, query))
        if self.fetch_gate:
            await self.fetch_gate.wait()
        else:
            await asyncio.sleep(0)
        if self.search_error:
            raise self.search_error
        terms = query.split()
        matched = [
            p for p in self.package_sets[category].packages
            if p.name in terms or any(p.matches(t) for t in terms)
        ]
        return PackageSet(packages=matched)

    async def fetch_package_details(self, name: str, category: Category) -> PackageDetails:
        await asyncio.sleep(0)
        if self.details_error:
            raise self.details_error
        if name in self.details:
            return self.details[name]
        pkg = self.package_sets[category].find(name)
        if pkg is None:
            raise LookupError(f"No available package: {name}")
        return PackageDetails(name=name, dependencies=list(pkg.dependencies), conflicts=list(pkg.conflicts))


async def settle(rounds: int = 30) -> None:
    """让事件循环跑若干轮，使已创建的任务推进到下一个挂起点"""
    for _ in range(rounds):
        await asyncio.sleep(0)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def source():
    return FakeSource()


@pytest.fixture(name="settle")
def settle_fixture():
    return settle
