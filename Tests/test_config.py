# test_config.py
#
# Config file handling, SyncConfig construction and log sink setup.
#
# Imports
import sys
#
# Third-Party Imports
import pytest
from loguru import logger
#
# Local Imports
from asset_sync import config as config_module
from asset_sync.config import SyncConfig, deep_merge_dicts, get_sync_config, load_settings
from asset_sync.Logging_Config import setup_logger
#
#######################################################################################################################
#
# Functions:

@pytest.fixture(autouse=True)
def fresh_config_cache(monkeypatch):
    monkeypatch.setattr(config_module, "_CONFIG_CACHE", None)


def test_load_settings_creates_default_file(tmp_path):
    path = tmp_path / "nested" / "config.toml"

    settings = load_settings(force_reload=True, config_path=path)

    assert path.exists()
    assert settings["sync"]["batch_size"] == 100
    assert settings["logging"]["log_level"] == "INFO"


def test_load_settings_merges_user_values(tmp_path):
    path = tmp_path / "config.toml"
    path.write_text('[sync]\nbatch_size = 25\n\n[device]\ndevice_id = "laptop"\n', encoding="utf-8")

    settings = load_settings(force_reload=True, config_path=path)

    assert settings["sync"]["batch_size"] == 25
    assert settings["sync"]["page_size"] == 1000
    assert get_sync_config(settings).device_id == "laptop"


def test_broken_toml_falls_back_to_defaults(tmp_path):
    path = tmp_path / "config.toml"
    path.write_text("[sync\nbatch_size = ", encoding="utf-8")

    settings = load_settings(force_reload=True, config_path=path)

    assert settings["sync"]["batch_size"] == 100


def test_deep_merge_dicts_keeps_nested_defaults():
    base = {"sync": {"a": 1, "b": {"c": 2, "d": 3}}, "other": 1}
    merged = deep_merge_dicts(base, {"sync": {"b": {"c": 9}}, "new": True})
    assert merged == {"sync": {"a": 1, "b": {"c": 9, "d": 3}}, "other": 1, "new": True}
    assert base["sync"]["b"]["c"] == 2


def test_get_sync_config_reads_sync_section():
    config = get_sync_config({"sync": {"batch_size": 10, "auth_token": ""}, "device": {"device_id": ""}})
    assert config.batch_size == 10
    assert config.auth_token is None
    assert config.device_id is None


def test_get_sync_config_rejects_invalid_values():
    config = get_sync_config({"sync": {"batch_size": 0}})
    assert config == SyncConfig()


def test_setup_logger_writes_application_log(tmp_path):
    log_file = tmp_path / "logs" / "sync.log"
    try:
        setup_logger(log_level="DEBUG", app_log_path=str(log_file))
        logger.debug("pulled 3 change(s)")
        logger.complete()
        assert "pulled 3 change(s)" in log_file.read_text(encoding="utf-8")
    finally:
        logger.remove()
        logger.add(sys.stderr)

#
# End of test_config.py
#######################################################################################################################
