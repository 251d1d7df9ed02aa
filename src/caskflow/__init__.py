"""
caskflow - 包管理前端的后台调度核心

负责:
- 包变更操作队列（安装/卸载/更新）
- 按类别的包列表缓存（TTL + 过期判断）
- 网络质量监测与准入控制
- 预取调度（缓存预热 / 行为预测 / 后台刷新）
"""


def _resolve_version() -> str:
    """
    解析版本号

    优先读取源码根目录的 pyproject.toml（editable 安装时始终最新），
    否则回退到已安装包的元数据。
    """
    from pathlib import Path

    version = "0.0.0-dev"

    pyproject_path = Path(__file__).parent.parent.parent / "pyproject.toml"
    if pyproject_path.exists():
        try:
            import tomllib

            with open(pyproject_path, "rb") as f:
                return tomllib.load(f)["project"]["version"]
        except (OSError, KeyError, ValueError):
            pass

    try:
        from importlib.metadata import PackageNotFoundError
        from importlib.metadata import version as meta_version

        version = meta_version("caskflow")
    except PackageNotFoundError:
        pass

    return version


__version__ = _resolve_version()

from .orchestrator import PackageOrchestrator  # noqa: E402
from .types import Category, MutationKind, PackageDetails, PackageInfo, PackageSet  # noqa: E402

__all__ = [
    "PackageOrchestrator",
    "Category",
    "MutationKind",
    "PackageDetails",
    "PackageInfo",
    "PackageSet",
    "__version__",
]
