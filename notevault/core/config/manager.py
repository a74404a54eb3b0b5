from __future__ import annotations

import os
from typing import Any, Dict, Optional

from pydantic import ValidationError

from notevault.core.config.io import atomic_write_json, quarantine_corrupt, read_json_file
from notevault.core.config.models import EngineConfigFile, default_engine_config_dict
from notevault.core.config.paths import ConfigFsPaths


class ConfigError(RuntimeError):
    pass


class ConfigManager:
    def __init__(self, *, fs: Optional[ConfigFsPaths] = None, logger=None, read_only: bool = False):
        self.fs = fs or ConfigFsPaths(".")
        self.logger = logger
        self.read_only = read_only
        self._cfg: Optional[EngineConfigFile] = None

    # ---------- public API ----------
    def load_all(self) -> EngineConfigFile:
        os.makedirs(self.fs.config_dir, exist_ok=True)
        os.makedirs(self.fs.backups_dir, exist_ok=True)

        raw = self._load_raw()
        try:
            cfg = EngineConfigFile.model_validate(raw)
        except ValidationError as e:
            if self.logger:
                self.logger.warning(f"engine.json failed validation, using defaults: {e.error_count()} error(s)")
            if not self.read_only:
                quarantine_corrupt(self.fs.engine, self.fs.backups_dir)
            raw = default_engine_config_dict()
            cfg = EngineConfigFile.model_validate(raw)
            if not self.read_only:
                atomic_write_json(self.fs.engine, raw)
        self._cfg = cfg
        return cfg

    def get(self) -> EngineConfigFile:
        if self._cfg is None:
            raise ConfigError("Config not loaded.")
        return self._cfg

    def save(self, data: Dict[str, Any]) -> EngineConfigFile:
        """
        Validate first, then write atomically; an invalid payload never reaches disk.
        """
        if self.read_only:
            raise ConfigError("Config manager is read-only.")
        if not isinstance(data, dict):
            raise ConfigError("Config data must be an object.")
        try:
            cfg = EngineConfigFile.model_validate(data)
        except ValidationError as e:
            raise ConfigError(f"Invalid engine config: {e.error_count()} error(s)") from e
        atomic_write_json(self.fs.engine, cfg.model_dump())
        self._cfg = cfg
        return cfg

    # ---------- internals ----------
    def _load_raw(self) -> Dict[str, Any]:
        rr = read_json_file(self.fs.engine)
        if rr.ok:
            return rr.data
        if rr.error == "missing":
            raw = default_engine_config_dict()
            if not self.read_only:
                atomic_write_json(self.fs.engine, raw)
            return raw
        if self.logger:
            self.logger.warning(f"engine.json unreadable ({rr.error}); recovering with defaults")
        if not self.read_only:
            quarantine_corrupt(self.fs.engine, self.fs.backups_dir)
            atomic_write_json(self.fs.engine, default_engine_config_dict())
        return default_engine_config_dict()
