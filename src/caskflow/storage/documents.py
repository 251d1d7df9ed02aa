"""
键值文档存储

每个键对应数据目录下的一个 JSON 文件（cache_formula.json、prefetch_config.json ...）。
读写失败只记录日志并返回默认值，不会中断调用方。
"""

import json
import logging
import re
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

_KEY_PATTERN = re.compile(r"^[A-Za-z0-9_\-]+$")


class DocumentStore:
    """JSON 文档存储"""

    def __init__(self, root: Path):
        self.root = Path(root)

    def _path(self, key: str) -> Path:
        if not _KEY_PATTERN.match(key):
            raise ValueError(f"Invalid document key: {key!r}")
        return self.root / f"{key}.json"

    def load(self, key: str) -> dict[str, Any] | None:
        """读取文档，不存在或损坏时返回 None"""
        path = self._path(key)
        if not path.exists():
            return None

        try:
            with open(path, encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            logger.warning(f"Failed to load document {key}: {e}")
            return None

        if not isinstance(data, dict):
            logger.warning(f"Ignoring malformed document {key}: expected object")
            return None
        return data

    def save(self, key: str, data: dict[str, Any]) -> bool:
        """写入文档（先写临时文件再替换），返回是否成功"""
        path = self._path(key)
        tmp_path = path.with_suffix(".json.tmp")

        try:
            self.root.mkdir(parents=True, exist_ok=True)
            with open(tmp_path, "w", encoding="utf-8") as f:
                json.dump(data, f, ensure_ascii=False, indent=2)
            tmp_path.replace(path)
            return True
        except (OSError, TypeError, ValueError) as e:
            logger.warning(f"Failed to save document {key}: {e}")
            return False

    def delete(self, key: str) -> bool:
        try:
            self._path(key).unlink(missing_ok=True)
            return True
        except OSError as e:
            logger.warning(f"Failed to delete document {key}: {e}")
            return False
