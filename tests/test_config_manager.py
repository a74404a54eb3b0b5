from __future__ import annotations

import json
import os

import pytest

from notevault.core.config.manager import ConfigError, ConfigManager
from notevault.core.config.models import EngineConfigFile
from notevault.core.config.paths import ConfigFsPaths
from notevault.core.engine import Engine


def test_missing_file_is_written_with_defaults(tmp_path):
    fs = ConfigFsPaths(root=str(tmp_path))
    cfg = ConfigManager(fs=fs).load_all()
    assert cfg == EngineConfigFile()
    with open(fs.engine, "r", encoding="utf-8") as f:
        obj = json.load(f)
    assert obj["storage"]["db_path"] == "runtime/notevault.sqlite"
    assert obj["bulk"]["max_workers"] == 4


def test_corrupt_json_is_quarantined(config_manager):
    fs = config_manager.fs
    with open(fs.engine, "w", encoding="utf-8") as f:
        f.write("{not json")
    cfg = config_manager.load_all()
    assert cfg.search.default_page_size == 20
    backups = os.listdir(fs.backups_dir)
    assert any("engine.json" in b and "corrupt" in b for b in backups)


def test_unknown_fields_fall_back_to_defaults(config_manager):
    fs = config_manager.fs
    with open(fs.engine, "w", encoding="utf-8") as f:
        json.dump({"storage": {"db_path": "x.sqlite", "bogus": 1}}, f)
    cfg = config_manager.load_all()
    assert cfg.storage.db_path == "runtime/notevault.sqlite"
    assert os.listdir(fs.backups_dir)


def test_read_only_manager_never_writes(tmp_path):
    fs = ConfigFsPaths(root=str(tmp_path))
    cm = ConfigManager(fs=fs, read_only=True)
    cm.load_all()
    assert not os.path.exists(fs.engine)
    with pytest.raises(ConfigError):
        cm.save(EngineConfigFile().model_dump())


def test_save_validates_before_writing(config_manager):
    data = config_manager.get().model_dump()
    data["bulk"]["max_workers"] = 1
    data["storage"]["journal_mode"] = "delete"
    cfg = config_manager.save(data)
    assert cfg.bulk.max_workers == 1
    assert cfg.storage.journal_mode == "DELETE"

    bad = cfg.model_dump()
    bad["bulk"]["max_workers"] = 0
    with pytest.raises(ConfigError):
        config_manager.save(bad)
    with open(config_manager.fs.engine, "r", encoding="utf-8") as f:
        assert json.load(f)["bulk"]["max_workers"] == 1
    assert config_manager.get().bulk.max_workers == 1


def test_get_before_load_fails(tmp_config_root):
    with pytest.raises(ConfigError):
        ConfigManager(fs=tmp_config_root).get()


def test_engine_uses_configured_paths(tmp_config_root, clock):
    cm = ConfigManager(fs=tmp_config_root)
    data = cm.load_all().model_dump()
    data["storage"]["db_path"] = "data/vault.sqlite"
    cm.save(data)
    eng = Engine(root=tmp_config_root.root, clock=clock.time)
    assert eng.notes.db_path == os.path.join(tmp_config_root.root, "data", "vault.sqlite")
