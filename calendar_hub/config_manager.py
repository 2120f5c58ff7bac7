from __future__ import annotations

import copy
import errno
import os
import threading
from pathlib import Path
from typing import Any

import yaml

from calendar_hub.models import AppConfig, default_app_config

MASK = "***"
SECRET_FIELDS = (("caldav", "app_specific_password"),)


def merge_settings(current: dict[str, Any], changes: dict[str, Any]) -> dict[str, Any]:
    """Return ``current`` with ``changes`` applied section by section."""
    result = copy.deepcopy(current)
    for name, incoming in changes.items():
        existing = result.get(name)
        if isinstance(existing, dict) and isinstance(incoming, dict):
            result[name] = merge_settings(existing, incoming)
            continue
        result[name] = incoming
    return result


def mask_secrets(settings: dict[str, Any]) -> dict[str, Any]:
    for section, field_name in SECRET_FIELDS:
        values = settings.get(section)
        if isinstance(values, dict) and values.get(field_name):
            values[field_name] = MASK
    return settings


def _write_yaml(path: Path, settings: dict[str, Any]) -> None:
    with path.open("w", encoding="utf-8") as handle:
        yaml.safe_dump(settings, handle, sort_keys=False, allow_unicode=True, default_flow_style=False)


class ConfigManager:
    """YAML-backed settings file shared by the web admin, scheduler and sync engine."""

    def __init__(self, config_path: str | os.PathLike[str]) -> None:
        self.config_path = Path(config_path)
        self._lock = threading.RLock()
        if not self.config_path.exists():
            self.save(default_app_config())

    def load(self) -> AppConfig:
        with self._lock:
            raw = yaml.safe_load(self.config_path.read_text(encoding="utf-8"))
        return AppConfig.from_dict(raw or {})

    def save(self, config: AppConfig) -> None:
        settings = config.to_dict()
        with self._lock:
            self.config_path.parent.mkdir(parents=True, exist_ok=True)
            staging = self.config_path.with_name(self.config_path.name + ".tmp")
            _write_yaml(staging, settings)
            try:
                staging.replace(self.config_path)
            except OSError as exc:
                # A bind-mounted file cannot be swapped out, only rewritten in place.
                if exc.errno != errno.EBUSY:
                    raise
                _write_yaml(self.config_path, settings)
                staging.unlink(missing_ok=True)

    def update(self, changes: dict[str, Any]) -> AppConfig:
        with self._lock:
            config = AppConfig.from_dict(merge_settings(self.load().to_dict(), changes))
            self.save(config)
        return config

    def masked(self) -> dict[str, Any]:
        return mask_secrets(self.load().to_dict())
