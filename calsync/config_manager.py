from __future__ import annotations

import copy
import errno
import os
import threading
from pathlib import Path
from typing import Any

import yaml

from calsync.models import AppConfig, SyncDefinition, default_app_config


def _deep_merge(base: dict[str, Any], updates: dict[str, Any]) -> dict[str, Any]:
    merged = copy.deepcopy(base)
    for key, value in updates.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _dump(config_dict: dict[str, Any], path: Path) -> None:
    with path.open("w", encoding="utf-8") as handle:
        yaml.safe_dump(
            config_dict,
            handle,
            sort_keys=False,
            allow_unicode=True,
            default_flow_style=False,
        )


def _sync_to_dict(sync: SyncDefinition) -> dict[str, Any]:
    return AppConfig(syncs=[sync]).to_dict()["syncs"][0]


class ConfigManager:
    def __init__(self, config_path: str | os.PathLike[str]) -> None:
        self.config_path = Path(config_path)
        self._lock = threading.RLock()
        if not self.config_path.exists():
            self.save(default_app_config())

    def load(self) -> AppConfig:
        with self._lock:
            with self.config_path.open("r", encoding="utf-8") as handle:
                data = yaml.safe_load(handle) or {}
            return AppConfig.from_dict(data)

    def save(self, config: AppConfig) -> None:
        with self._lock:
            self.config_path.parent.mkdir(parents=True, exist_ok=True)
            config_dict = config.to_dict()
            tmp_path = self.config_path.with_suffix(self.config_path.suffix + ".tmp")
            _dump(config_dict, tmp_path)
            try:
                tmp_path.replace(self.config_path)
            except OSError as exc:
                # Bind-mounted single files in containers cannot be replaced atomically.
                if exc.errno != errno.EBUSY:
                    raise
                _dump(config_dict, self.config_path)
                tmp_path.unlink(missing_ok=True)

    def update(self, payload: dict[str, Any]) -> AppConfig:
        with self._lock:
            merged = _deep_merge(self.load().to_dict(), payload)
            config = AppConfig.from_dict(merged)
            self.save(config)
            return config

    def upsert_sync(self, payload: dict[str, Any]) -> SyncDefinition:
        # _deep_merge replaces lists wholesale, so syncs are merged by id here.
        with self._lock:
            current = self.load()
            existing = current.get_sync(str(payload.get("id", "")).strip())
            base = {} if existing is None else _sync_to_dict(existing)
            sync = SyncDefinition.from_dict(_deep_merge(base, payload))
            if existing is None:
                current.syncs.append(sync)
            else:
                current.syncs = [sync if item.id == sync.id else item for item in current.syncs]
            self.save(current)
            return sync

    def remove_sync(self, sync_id: str) -> bool:
        with self._lock:
            current = self.load()
            remaining = [item for item in current.syncs if item.id != sync_id]
            if len(remaining) == len(current.syncs):
                return False
            current.syncs = remaining
            self.save(current)
            return True

    def masked(self, config: AppConfig | None = None) -> dict[str, Any]:
        data = (config if config is not None else self.load()).to_dict()
        if data.get("caldav", {}).get("password"):
            data["caldav"]["password"] = "***"
        return data
