"""
caskflow CLI 入口

使用 Typer 和 Rich 查看/维护持久化状态:
- status: 各类别缓存状态
- probe: 执行一次网络延迟探测
- config: 查看或修改预取配置
- clear-cache: 把缓存标记为过期
"""

import asyncio
import logging
from datetime import datetime
from pathlib import Path

import typer
from pydantic import ValidationError
from rich.console import Console
from rich.table import Table

from .cache import CacheStore
from .config import settings
from .logging import setup_logging
from .network import ActiveProbeSource, QualityTier
from .orchestrator import PREFETCH_CONFIG_KEY, load_prefetch_config
from .prefetch import PrefetchConfig
from .storage import DocumentStore
from .types import Category

setup_logging(
    log_dir=settings.log_dir_path,
    log_level=settings.log_level,
    log_format=settings.log_format,
    log_file_prefix=settings.log_file_prefix,
    log_max_size_mb=settings.log_max_size_mb,
    log_backup_count=settings.log_backup_count,
    log_to_console=settings.log_to_console,
    log_to_file=settings.log_to_file,
)
logger = logging.getLogger(__name__)

# Typer 应用
app = typer.Typer(
    name="caskflow",
    help="caskflow - 包管理前端的后台调度核心",
    add_completion=False,
)

# Rich 控制台
console = Console()

_TIER_COLORS = {
    QualityTier.EXCELLENT: "green",
    QualityTier.GOOD: "cyan",
    QualityTier.FAIR: "yellow",
    QualityTier.POOR: "red",
}

DataDirOption = typer.Option(None, "--data-dir", help="持久化目录（默认 CASKFLOW_DATA_DIR）")


def _documents(data_dir: Path | None) -> DocumentStore:
    return DocumentStore(data_dir or settings.data_dir)


def _load_cache(documents: DocumentStore) -> CacheStore:
    cache = CacheStore(ttl_seconds=settings.cache_ttl_seconds, documents=documents)
    cache.load()
    return cache


def _parse_category(value: str) -> Category:
    try:
        return Category.parse(value)
    except ValueError as e:
        raise typer.BadParameter(str(e)) from None


@app.command()
def status(data_dir: Path | None = DataDirOption):
    """显示各类别的缓存状态"""
    cache = _load_cache(_documents(data_dir))

    table = Table(title="缓存状态")
    table.add_column("类别", style="cyan")
    table.add_column("包数量")
    table.add_column("上次获取")
    table.add_column("已过去（分钟）")
    table.add_column("状态")

    for category in Category:
        snapshot = cache.get(category)
        last_fetch = (
            datetime.fromtimestamp(snapshot.last_fetch).strftime("%Y-%m-%d %H:%M:%S")
            if snapshot.last_fetch is not None
            else "-"
        )
        table.add_row(
            category.value,
            str(len(snapshot.data)) if snapshot.data else "0",
            last_fetch,
            str(snapshot.age_minutes) if snapshot.age_minutes is not None else "-",
            "[red]stale[/red]" if snapshot.stale else "[green]fresh[/green]",
        )

    console.print(table)


@app.command()
def probe(
    url: str = typer.Option(None, "--url", help="探测端点（默认 CASKFLOW_NETWORK_PROBE_URL）"),
    timeout: float = typer.Option(None, "--timeout", help="超时（秒）"),
):
    """执行一次网络延迟探测"""
    source = ActiveProbeSource(
        url or settings.network_probe_url,
        timeout_seconds=timeout or settings.network_probe_timeout_seconds,
    )

    async def _run():
        try:
            return await source.measure(None)
        finally:
            await source.close()

    conditions = asyncio.run(_run())
    color = _TIER_COLORS[conditions.quality]
    latency = f"{conditions.latency_ms:.1f}ms" if conditions.latency_ms is not None else "n/a"
    console.print(f"延迟: {latency}")
    console.print(f"质量: [{color}]{conditions.quality.value}[/{color}]")


@app.command()
def config(
    set_: list[str] = typer.Option(None, "--set", help="修改配置，格式 key=value，可多次指定"),
    data_dir: Path | None = DataDirOption,
):
    """查看或修改预取配置"""
    documents = _documents(data_dir)
    current = load_prefetch_config(documents)

    if set_:
        changes = {}
        for item in set_:
            key, sep, value = item.partition("=")
            key = key.strip()
            if not sep or not key:
                console.print(f"[red]✗[/red] 无效的设置: {item}（应为 key=value）")
                raise typer.Exit(1)
            if key not in PrefetchConfig.model_fields:
                console.print(f"[red]✗[/red] 未知配置项: {key}")
                raise typer.Exit(1)
            changes[key] = value.strip()

        try:
            current = PrefetchConfig.model_validate({**current.model_dump(), **changes})
        except ValidationError as e:
            console.print(f"[red]✗[/red] 配置无效: {e.error_count()} 个错误")
            for error in e.errors():
                console.print(f"  {'.'.join(str(p) for p in error['loc'])}: {error['msg']}")
            raise typer.Exit(1) from None

        if not documents.save(PREFETCH_CONFIG_KEY, current.model_dump()):
            console.print("[red]✗[/red] 配置保存失败")
            raise typer.Exit(1)
        console.print(f"[green]✓[/green] 已更新: {', '.join(changes)}")

    table = Table(title="预取配置")
    table.add_column("配置项", style="cyan")
    table.add_column("值")
    for key, value in current.model_dump().items():
        table.add_row(key, str(value))
    console.print(table)


@app.command("clear-cache")
def clear_cache(
    category: str = typer.Argument(None, help="formula / cask（默认全部）"),
    data_dir: Path | None = DataDirOption,
):
    """把缓存标记为过期（保留数据）"""
    target = _parse_category(category) if category else None
    cache = _load_cache(_documents(data_dir))
    cache.clear(target)
    console.print(f"[green]✓[/green] 已标记过期: {target.value if target else 'formula, cask'}")


def main():
    app()


if __name__ == "__main__":
    main()
