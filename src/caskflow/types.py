"""
包数据类型

外部数据源（包管理器）返回的数据结构，以及贯穿各组件的枚举。
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class Category(Enum):
    """包类别"""

    FORMULA = "formula"  # 命令行工具类
    CASK = "cask"  # 图形应用类

    @classmethod
    def parse(cls, value: "Category | str") -> "Category":
        if isinstance(value, Category):
            return value
        try:
            return cls(value.lower())
        except ValueError:
            raise ValueError(f"Unknown package category: {value!r}") from None


class MutationKind(Enum):
    """变更操作类型"""

    INSTALL = "install"
    UNINSTALL = "uninstall"
    UPDATE = "update"


class Priority(Enum):
    """后台任务优先级"""

    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    @property
    def rank(self) -> int:
        """数值越小越优先"""
        return _PRIORITY_RANK[self]


_PRIORITY_RANK = {Priority.HIGH: 0, Priority.MEDIUM: 1, Priority.LOW: 2}


def update_all_name(category: Category) -> str:
    """“全部更新”操作使用的合成包名"""
    return f"all-{category.value}"


@dataclass
class PackageInfo:
    name: str
    version: str = ""
    description: str = ""
    installed: bool = False
    outdated: bool = False
    downloads_365d: int = 0
    dependencies: list[str] = field(default_factory=list)
    conflicts: list[str] = field(default_factory=list)

    def matches(self, query: str) -> bool:
        """名称或描述包含查询词（不区分大小写）"""
        q = query.lower()
        return q in self.name.lower() or q in self.description.lower()

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "version": self.version,
            "description": self.description,
            "installed": self.installed,
            "outdated": self.outdated,
            "downloads_365d": self.downloads_365d,
            "dependencies": list(self.dependencies),
            "conflicts": list(self.conflicts),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "PackageInfo":
        return cls(
            name=data["name"],
            version=data.get("version", ""),
            description=data.get("description", ""),
            installed=data.get("installed", False),
            outdated=data.get("outdated", False),
            downloads_365d=data.get("downloads_365d", 0),
            dependencies=list(data.get("dependencies", [])),
            conflicts=list(data.get("conflicts", [])),
        )


@dataclass
class PackageSet:
    """某一类别的完整包列表"""

    packages: list[PackageInfo] = field(default_factory=list)
    total_installed: int = 0
    total_outdated: int = 0

    def __len__(self) -> int:
        return len(self.packages)

    def names(self) -> list[str]:
        return [p.name for p in self.packages]

    def find(self, name: str) -> PackageInfo | None:
        for pkg in self.packages:
            if pkg.name == name:
                return pkg
        return None

    def to_dict(self) -> dict:
        return {
            "packages": [p.to_dict() for p in self.packages],
            "total_installed": self.total_installed,
            "total_outdated": self.total_outdated,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "PackageSet":
        return cls(
            packages=[PackageInfo.from_dict(p) for p in data.get("packages", [])],
            total_installed=data.get("total_installed", 0),
            total_outdated=data.get("total_outdated", 0),
        )


@dataclass
class PackageDetails:
    """单个包的依赖/冲突信息（仅用于相关包预取）"""

    name: str
    dependencies: list[str] = field(default_factory=list)
    conflicts: list[str] = field(default_factory=list)
