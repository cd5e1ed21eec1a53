"""
core/config.py：YAML 配置加载

• 配置文件默认为 ./config.yaml，可通过 CONFIG_PATH 环境变量覆盖
• 值支持 ${ENV_NAME:-默认值} 形式引用环境变量
• cfg.get("payment.epay.url", "") 按点号路径读取嵌套键
"""

import os
import re
from typing import Any, Dict

import yaml

VERSION = "1.0.0"
API_BASE = "/api/v1"

_ENV_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)(?::-([^}]*))?\}")


def _expand_env(value: Any) -> Any:
    if not isinstance(value, str) or "${" not in value:
        return value

    def _replace(match):
        return os.getenv(match.group(1), match.group(2) or "")

    return _ENV_PATTERN.sub(_replace, value)


class Config:
    def __init__(self, config_path: str = ""):
        self.config_path = config_path or os.getenv("CONFIG_PATH", "config.yaml")
        self.config: Dict[str, Any] = {}
        self.reload()

    def reload(self) -> Dict[str, Any]:
        data = {}
        if os.path.exists(self.config_path):
            with open(self.config_path, "r", encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
        if not isinstance(data, dict):
            raise ValueError(f"配置文件格式错误: {self.config_path}")
        self.config = data
        return self.config

    def get(self, key: str, default: Any = None) -> Any:
        cursor: Any = self.config
        for part in [x for x in str(key or "").split(".") if x]:
            if not isinstance(cursor, dict) or part not in cursor:
                return default
            cursor = cursor[part]
        if cursor is None:
            return default
        return _expand_env(cursor)

    def set(self, key: str, value: Any) -> None:
        keys = [x for x in str(key or "").split(".") if x]
        if not keys:
            return
        cursor = self.config
        for part in keys[:-1]:
            if not isinstance(cursor.get(part), dict):
                cursor[part] = {}
            cursor = cursor[part]
        cursor[keys[-1]] = value


cfg = Config()


def get_bool(key: str, default: bool = False) -> bool:
    value = cfg.get(key, default)
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ("1", "true", "yes", "on")


def get_int(key: str, default: int = 0) -> int:
    try:
        return int(cfg.get(key, default))
    except (TypeError, ValueError):
        return int(default)
