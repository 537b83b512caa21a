"""What the CLI remembers between runs: the API it talked to and who was logged in."""
from __future__ import annotations

import json
import os
import tempfile
from dataclasses import asdict, dataclass, fields
from pathlib import Path
from typing import Any, Dict, Optional

from core.settings import CONFIG_PATH


@dataclass
class AppConfig:
    api_base_url: Optional[str] = None
    last_user_id: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AppConfig":
        known = {item.name for item in fields(cls)}
        return cls(**{key: value for key, value in data.items() if key in known})


def _normalize_url(url: Optional[str]) -> Optional[str]:
    if not url:
        return None
    return url.strip().rstrip("/") or None


def load_config(path: Optional[Path] = None) -> AppConfig:
    """Missing or unreadable files give an empty config."""
    source = path or CONFIG_PATH
    try:
        data = json.loads(source.read_text(encoding="utf-8"))
    except (OSError, ValueError):
        return AppConfig()
    if not isinstance(data, dict):
        return AppConfig()
    return AppConfig.from_dict(data)


def save_config(config: AppConfig, path: Optional[Path] = None) -> None:
    target = path or CONFIG_PATH
    target.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=".config-", suffix=".json", dir=target.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            json.dump(asdict(config), handle, ensure_ascii=False, indent=2, sort_keys=True)
        os.replace(tmp_name, target)
    except BaseException:
        if os.path.exists(tmp_name):
            os.unlink(tmp_name)
        raise


def update_config(path: Optional[Path] = None, **changes: Any) -> AppConfig:
    cfg = load_config(path)
    merged = AppConfig.from_dict({**asdict(cfg), **changes})
    merged.api_base_url = _normalize_url(merged.api_base_url)
    save_config(merged, path)
    return merged


def remember_login(user_id: str, api_base_url: str, path: Optional[Path] = None) -> AppConfig:
    return update_config(path, last_user_id=user_id, api_base_url=api_base_url)


def forget_user(path: Optional[Path] = None) -> AppConfig:
    """Logout: the next run must name its user again."""
    return update_config(path, last_user_id=None)


__all__ = ["AppConfig", "forget_user", "load_config", "remember_login", "save_config", "update_config"]
