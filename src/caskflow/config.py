"""
caskflow 配置模块
"""

from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """运行配置（环境变量前缀 CASKFLOW_）"""

    # 路径配置
    data_dir: Path = Field(
        default_factory=lambda: Path.cwd() / "data" / "caskflow",
        description="持久化目录（缓存文档 + 预取配置）",
    )

    # === 缓存 ===
    cache_ttl_seconds: float = Field(default=300, description="包列表缓存 TTL（秒），两个类别共用")

    # === 网络质量监测 ===
    network_probe_url: str = Field(
        default="https://formulae.brew.sh/api/formula/git.json",
        description="主动探测使用的轻量端点",
    )
    network_probe_interval_seconds: float = Field(default=30, description="主动探测间隔（秒）")
    network_probe_timeout_seconds: float = Field(default=5, description="单次探测超时（秒）")

    # === 操作队列 ===
    operation_max_concurrent: int = Field(default=3, description="同时运行的变更操作上限")
    batch_window_size: int = Field(default=3, description="批量操作每个窗口的并发数")
    operation_success_grace_seconds: float = Field(
        default=3, description="成功操作在列表中保留的时间（秒），供 UI 展示结果"
    )
    operation_failure_grace_seconds: float = Field(
        default=10, description="失败操作在列表中保留的时间（秒）"
    )
    stuck_operation_seconds: float = Field(
        default=300, description="运行超过该时长的操作在健康报告中标记为疑似卡死（不会被终止）"
    )

    # === 预取调度 ===
    prefetch_interval_seconds: float = Field(default=60, description="预取编排周期（秒）")
    prefetch_initial_delay_seconds: float = Field(default=5, description="启动后首次编排的延迟（秒）")
    prefetch_warm_throttle_seconds: float = Field(default=30, description="缓存预热最小间隔（秒）")
    prefetch_stale_window_seconds: float = Field(
        default=600, description="后台刷新的预判窗口：即将在该时间内过期的缓存也会刷新"
    )
    behavior_history_limit: int = Field(default=20, description="每个行为桶保留的最近记录数")

    # === 日志配置 ===
    log_level: str = Field(default="INFO", description="日志级别")
    log_dir: str = Field(default="logs", description="日志目录")
    log_file_prefix: str = Field(default="caskflow", description="日志文件前缀")
    log_max_size_mb: int = Field(default=10, description="单个日志文件最大大小（MB）")
    log_backup_count: int = Field(default=7, description="保留的日志文件数量")
    log_format: str = Field(
        default="%(asctime)s - %(name)s - %(levelname)s - %(message)s", description="日志格式"
    )
    log_to_console: bool = Field(default=True, description="是否输出到控制台")
    log_to_file: bool = Field(default=False, description="是否输出到文件")

    model_config = {
        "env_prefix": "CASKFLOW_",
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore",
        # 忽略空字符串环境变量，避免 "" 被解析成数字/布尔值导致启动失败
        "env_ignore_empty": True,
    }

    @property
    def log_dir_path(self) -> Path:
        """日志目录完整路径"""
        return Path(self.log_dir)


# 全局配置实例
settings = Settings()
