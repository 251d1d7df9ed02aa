"""
CLI 测试（typer CliRunner）
"""

import json

import pytest
from typer.testing import CliRunner

from caskflow import main as cli
from caskflow.cache import CacheStore
from caskflow.network import ConnectionType, NetworkConditions, QualityTier
from caskflow.storage import DocumentStore
from caskflow.types import Category

runner = CliRunner()


@pytest.fixture
def data_dir(tmp_path, source):
    cache = CacheStore(documents=DocumentStore(tmp_path))
    cache.put(Category.FORMULA, source.package_sets[Category.FORMULA])
    return tmp_path


class TestStatus:
    def test_status_lists_both_categories(self, data_dir):
        result = runner.invoke(cli.app, ["status", "--data-dir", str(data_dir)])

        assert result.exit_code == 0
        assert "formula" in result.output
        assert "cask" in result.output
        assert "fresh" in result.output
        assert "stale" in result.output

    def test_status_on_empty_dir(self, tmp_path):
        result = runner.invoke(cli.app, ["status", "--data-dir", str(tmp_path / "missing")])
        assert result.exit_code == 0


class TestClearCache:
    def test_clear_one_category(self, data_dir):
        result = runner.invoke(cli.app, ["clear-cache", "formula", "--data-dir", str(data_dir)])
        assert result.exit_code == 0

        doc = json.loads((data_dir / "cache_formula.json").read_text(encoding="utf-8"))
        assert doc["last_fetch"] is None
        assert len(doc["data"]["packages"]) == 5

    def test_unknown_category(self, data_dir):
        result = runner.invoke(cli.app, ["clear-cache", "tap", "--data-dir", str(data_dir)])
        assert result.exit_code != 0


class TestConfig:
    def test_show_defaults(self, tmp_path):
        result = runner.invoke(cli.app, ["config", "--data-dir", str(tmp_path)])

        assert result.exit_code == 0
        assert "max_concurrent_requests" in result.output

    def test_set_values(self, tmp_path):
        result = runner.invoke(
            cli.app,
            [
                "config",
                "--set", "max_concurrent_requests=25",
                "--set", "wifi_only=true",
                "--data-dir", str(tmp_path),
            ],
        )
        assert result.exit_code == 0

        doc = json.loads((tmp_path / "prefetch_config.json").read_text(encoding="utf-8"))
        assert doc["max_concurrent_requests"] == 10
        assert doc["wifi_only"] is True

    @pytest.mark.parametrize("item", ["turbo=1", "wifi_only", "warm_top_n=lots"])
    def test_rejects_bad_settings(self, tmp_path, item):
        result = runner.invoke(cli.app, ["config", "--set", item, "--data-dir", str(tmp_path)])

        assert result.exit_code == 1
        assert not (tmp_path / "prefetch_config.json").exists()


class TestProbe:
    def test_probe_prints_tier(self, monkeypatch):
        class FakeProbe:
            def __init__(self, url, timeout_seconds=5.0):
                self.url = url

            async def measure(self, previous):
                return NetworkConditions(
                    connection_type=ConnectionType.UNKNOWN,
                    quality=QualityTier.GOOD,
                    bandwidth_mbps=0.0,
                    latency_ms=123.4,
                    data_saver_enabled=False,
                    source="probe",
                )

            async def close(self):
                pass

        monkeypatch.setattr(cli, "ActiveProbeSource", FakeProbe)
        result = runner.invoke(cli.app, ["probe", "--url", "https://probe.test/ping"])

        assert result.exit_code == 0
        assert "123.4ms" in result.output
        assert "good" in result.output

    def test_malformed_url_reports_poor(self):
        result = runner.invoke(cli.app, ["probe", "--url", "https://probe.test/" + "a" * 70_000])

        assert result.exit_code == 0
        assert "poor" in result.output
