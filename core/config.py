"""
core/config.py — YAML 配置

• cfg.get("payments.base_url", default) 按点分路径读取 config.yaml
• 每个键都可被同名大写下划线环境变量覆盖：
      payments.base_url  ->  PAYMENTS_BASE_URL
• 环境变量 CONFIG_FILE 指定其他配置文件
"""

import os
import threading
from typing import Any, Dict

import yaml


DEFAULT_CONFIG_FILE = "config.yaml"
VERSION = "1.0.0"
API_BASE = "/api/v1"


def _env_name(key: str) -> str:
    return str(key or "").replace(".", "_").replace("-", "_").upper()


class Config:
    def __init__(self, path: str = ""):
        self.path = path or os.getenv("CONFIG_FILE", DEFAULT_CONFIG_FILE)
        self.config: Dict[str, Any] = {}
        self._lock = threading.Lock()
        self.reload()

    def reload(self) -> Dict[str, Any]:
        data = {}
        if self.path and os.path.exists(self.path):
            with open(self.path, "r", encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
        if not isinstance(data, dict):
            raise ValueError(f"配置文件格式错误: {self.path}")
        with self._lock:
            self.config = data
        return self.config

    def get(self, key: str, default: Any = None) -> Any:
        env_value = os.getenv(_env_name(key))
        if env_value is not None and env_value != "":
            return env_value
        cursor: Any = self.config
        for part in [x for x in str(key or "").split(".") if x]:
            if not isinstance(cursor, dict) or part not in cursor:
                return default
            cursor = cursor[part]
        return default if cursor is None else cursor

    def get_int(self, key: str, default: int = 0) -> int:
        try:
            return int(self.get(key, default))
        except (TypeError, ValueError):
            return int(default)

    def get_bool(self, key: str, default: bool = False) -> bool:
        value = self.get(key, default)
        if isinstance(value, str):
            return value.strip().lower() in ("1", "true", "yes", "on")
        return bool(value)

    def set(self, key: str, value: Any) -> None:
        keys = [x for x in str(key or "").split(".") if x]
        if not keys:
            return
        with self._lock:
            cursor = self.config
            for part in keys[:-1]:
                current = cursor.get(part)
                if not isinstance(current, dict):
                    cursor[part] = {}
                cursor = cursor[part]
            cursor[keys[-1]] = value


cfg = Config()
