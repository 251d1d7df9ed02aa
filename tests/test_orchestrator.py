"""
PackageOrchestrator 测试: 组件装配、必要路径错误、变更后的缓存失效与刷新
"""

import asyncio

import pytest

from caskflow import PackageOrchestrator
from caskflow.config import Settings
from caskflow.errors import ErrorType, FetchError
from caskflow.network import ConnectionInfo, ConnectionType, NetworkQualityMonitor, QualityTier
from caskflow.operations import OperationStatus
from caskflow.storage import DocumentStore
from caskflow.types import Category, MutationKind, PackageDetails, PackageInfo, PackageSet


@pytest.fixture
def settings(tmp_path):
    return Settings(data_dir=tmp_path, operation_success_grace_seconds=60, operation_failure_grace_seconds=60)


@pytest.fixture
def orchestrator(source, clock, settings, tmp_path):
    return PackageOrchestrator(
        source,
        config=settings,
        documents=DocumentStore(tmp_path),
        monitor=NetworkQualityMonitor(),
        clock=clock,
    )


def excellent_wifi() -> ConnectionInfo:
    return ConnectionInfo(ConnectionType.WIFI, "4g", downlink=50.0, rtt=20.0)


class TestLoading:
    @pytest.mark.asyncio
    async def test_load_uses_fresh_cache(self, orchestrator, source, clock):
        first = await orchestrator.load_packages(Category.FORMULA)
        second = await orchestrator.load_packages("formula")

        assert first is second
        assert source.fetch_calls == [Category.FORMULA]

        clock.advance(300)
        await orchestrator.load_packages(Category.FORMULA)
        assert len(source.fetch_calls) == 2

        await orchestrator.load_packages(Category.FORMULA, force=True)
        assert len(source.fetch_calls) == 3

    @pytest.mark.asyncio
    async def test_load_failure_raises_fetch_error(self, orchestrator, source):
        source.fetch_error = ConnectionError("network unreachable")

        with pytest.raises(FetchError) as exc_info:
            await orchestrator.load_packages(Category.CASK)

        assert exc_info.value.error_type == ErrorType.NETWORK
        assert exc_info.value.category == Category.CASK
        assert "network unreachable" in str(exc_info.value)
        assert exc_info.value.retryable is True

    @pytest.mark.asyncio
    async def test_snapshot_shape(self, orchestrator):
        assert orchestrator.get_cache_snapshot("cask") == {"data": None, "stale": True, "age_minutes": None}

        data = await orchestrator.load_packages(Category.CASK)
        snapshot = orchestrator.get_cache_snapshot(Category.CASK)
        assert snapshot == {"data": data, "stale": False, "age_minutes": 0}

    @pytest.mark.asyncio
    async def test_cache_survives_restart(self, orchestrator, source, clock, settings, tmp_path):
        await orchestrator.load_packages(Category.FORMULA)

        restarted = PackageOrchestrator(
            source,
            config=settings,
            documents=DocumentStore(tmp_path),
            monitor=NetworkQualityMonitor(),
            clock=clock,
        )
        snapshot = restarted.get_cache_snapshot(Category.FORMULA)
        assert snapshot["stale"] is False
        assert snapshot["data"].names() == source.package_sets[Category.FORMULA].names()

    @pytest.mark.asyncio
    async def test_search(self, orchestrator, source, settle):
        results = await orchestrator.search_packages(Category.FORMULA, "  json ")

        assert results.names() == ["jq"]
        assert orchestrator.cache.last_search(Category.FORMULA) == ("json", results)
        assert orchestrator.behavior.patterns()[0].search_queries == ["json"]

    @pytest.mark.asyncio
    async def test_empty_search_returns_cached_data(self, orchestrator, source):
        assert len(await orchestrator.search_packages(Category.FORMULA, "   ")) == 0
        assert source.search_calls == []

    @pytest.mark.asyncio
    async def test_search_failure(self, orchestrator, source):
        source.search_error = TimeoutError()

        with pytest.raises(FetchError) as exc_info:
            await orchestrator.search_packages(Category.FORMULA, "wget")
        assert exc_info.value.error_type == ErrorType.TIMEOUT


class TestMutations:
    @pytest.mark.asyncio
    async def test_success_invalidates_and_refreshes(self, orchestrator, source, settle):
        await orchestrator.load_packages(Category.FORMULA)
        source.fetch_gate = asyncio.Event()

        op = await orchestrator.queue.wait(
            await orchestrator.enqueue_mutation("install", "wget", "formula")
        )
        assert op.status == OperationStatus.COMPLETED

        # 刷新进行中: 已标记过期，旧数据仍可见
        await settle()
        snapshot = orchestrator.get_cache_snapshot(Category.FORMULA)
        assert snapshot["stale"] is True
        assert snapshot["data"] is not None

        source.fetch_gate.set()
        await settle()
        assert orchestrator.get_cache_snapshot(Category.FORMULA)["stale"] is False
        assert source.fetch_calls == [Category.FORMULA, Category.FORMULA]

    @pytest.mark.asyncio
    async def test_in_flight_prefetch_cannot_overwrite_refresh(self, orchestrator, source, settle):
        await orchestrator.load_packages(Category.FORMULA)
        orchestrator.report_network(excellent_wifi())

        # 变更前发出、迟迟未返回的整类预取，返回的是变更前的数据
        release = asyncio.Event()
        fetch = source.fetch_package_set

        async def slow_fetch(category):
            before = source.package_sets[category]
            await release.wait()
            return before

        source.fetch_package_set = slow_fetch
        orchestrator.prefetch.queue_prefetch(Category.FORMULA)
        await settle()
        source.fetch_package_set = fetch

        after = PackageSet(packages=[PackageInfo("wget", installed=True)], total_installed=1)
        source.package_sets[Category.FORMULA] = after
        await orchestrator.queue.wait(
            await orchestrator.enqueue_mutation(MutationKind.INSTALL, "wget", Category.FORMULA)
        )
        await settle()

        release.set()
        await settle()

        snapshot = orchestrator.get_cache_snapshot(Category.FORMULA)
        assert snapshot["data"] is after
        assert snapshot["stale"] is False
        assert orchestrator.prefetch.stats.cancelled_requests == 1

    @pytest.mark.asyncio
    async def test_failure_keeps_cache(self, orchestrator, source, settle):
        await orchestrator.load_packages(Category.FORMULA)
        source.mutation_failures["wget"] = RuntimeError("Error: wget is already installed")

        op = await orchestrator.queue.wait(
            await orchestrator.enqueue_mutation(MutationKind.INSTALL, "wget", Category.FORMULA)
        )
        await settle()

        assert op.message == "Error: wget is already installed"
        assert orchestrator.get_cache_snapshot(Category.FORMULA)["stale"] is False
        assert orchestrator.get_queue_stats().failed == 1
        assert orchestrator.get_queue_health().health == "poor"

    @pytest.mark.asyncio
    async def test_refresh_failure_is_absorbed(self, orchestrator, source, settle):
        await orchestrator.load_packages(Category.CASK)
        source.fetch_error = ConnectionError("offline")

        await orchestrator.queue.wait(await orchestrator.update_all(Category.CASK))
        await settle()

        snapshot = orchestrator.get_cache_snapshot(Category.CASK)
        assert snapshot["stale"] is True
        assert snapshot["data"] is not None

    @pytest.mark.asyncio
    async def test_install_is_recorded_as_behavior(self, orchestrator, source):
        await orchestrator.queue.wait(await orchestrator.enqueue_mutation("install", "jq", "formula"))
        assert orchestrator.behavior.patterns()[0].installed_packages == ["jq"]

    @pytest.mark.asyncio
    async def test_execute_batch(self, orchestrator, source):
        source.mutation_failures["b"] = RuntimeError("b failed")
        progress = []

        results = await orchestrator.execute_batch(
            "uninstall",
            ["a", "b", "c", "d"],
            "cask",
            on_progress=lambda done, total: progress.append(done),
        )

        assert [r.success for r in results] == [True, False, True, True]
        assert progress == [1, 2, 3, 4]


class TestSignals:
    @pytest.mark.asyncio
    async def test_third_view_prefetches_related(self, orchestrator, source, settle):
        source.details["wget"] = PackageDetails("wget", dependencies=["openssl@3", "libidn2"], conflicts=[])
        orchestrator.report_network(excellent_wifi())

        for _ in range(2):
            orchestrator.record_behavior("view", "formula", name="wget")
        await settle()
        assert source.search_calls == []

        orchestrator.record_behavior("view", "formula", name="wget")
        await settle()
        assert source.search_calls == [(Category.FORMULA, "openssl@3 libidn2")]

    def test_report_network(self, orchestrator):
        conditions = orchestrator.report_network(
            ConnectionInfo(ConnectionType.CELLULAR, "3g", downlink=1.0, rtt=500.0, save_data=True)
        )
        assert conditions.quality == QualityTier.FAIR
        assert orchestrator.prefetch.should_prefetch() is False


class TestConfig:
    def test_update_is_persisted(self, orchestrator, source, clock, settings, tmp_path):
        config = orchestrator.update_prefetch_config(max_concurrent_requests=20, wifi_only=True)
        assert config.max_concurrent_requests == 10

        restarted = PackageOrchestrator(
            source,
            config=settings,
            documents=DocumentStore(tmp_path),
            monitor=NetworkQualityMonitor(),
            clock=clock,
        )
        assert restarted.prefetch.config.wifi_only is True
        assert restarted.prefetch.config.max_concurrent_requests == 10

    def test_invalid_config_document_falls_back(self, source, clock, settings, tmp_path):
        (tmp_path / "prefetch_config.json").write_text('{"warm_top_n": -5}', encoding="utf-8")

        orchestrator = PackageOrchestrator(
            source,
            config=settings,
            documents=DocumentStore(tmp_path),
            monitor=NetworkQualityMonitor(),
            clock=clock,
        )
        assert orchestrator.prefetch.config.warm_top_n == 20


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_start_and_stop(self, orchestrator, source):
        await orchestrator.start()
        assert orchestrator.monitor.conditions is not None

        source.mutation_gate = asyncio.Event()
        op_id = await orchestrator.enqueue_mutation("install", "wget", "formula")
        await orchestrator.stop()

        assert orchestrator.queue.get_operation(op_id).status == OperationStatus.FAILED
