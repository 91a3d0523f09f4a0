# asset_sync/config.py
# Description: Configuration management for the asset sync client.
#
# Imports
import copy
import tomllib
from pathlib import Path
from typing import Dict, Any, Optional
#
# Third-Party Imports
from loguru import logger
from pydantic import BaseModel, ConfigDict, Field, ValidationError
#
# Local Imports
#
#######################################################################################################################
#
# Functions:

# --- Path to the client's configuration file ---
DEFAULT_CONFIG_PATH = Path.home() / ".config" / "asset_sync" / "config.toml"
BASE_DATA_DIR = Path.home() / ".local" / "share" / "asset_sync"

CONFIG_TOML_CONTENT = """
# Configuration for the asset sync client
# This file is created with defaults on first run. Edit values as needed.

[sync]
server_url = "http://127.0.0.1:8080"
api_version = "v1"
auth_token = ""
request_timeout = 15.0
batch_size = 100
max_concurrent_batches = 3
compression_enabled = true
compression_threshold_bytes = 1024
large_data_threshold = 5000
page_size = 1000
max_concurrent_pages = 2
adaptive_page_size = true
sync_interval_seconds = 120
full_sync_interval_seconds = 3600
retry_attempts = 3
retry_base_delay = 0.5
retry_max_delay = 10.0
page_retry_attempts = 3
page_retry_delay = 1.0
page_delay = 0.05
safe_batch_page_size = 500
fast_path_threshold = 1000
historical_upload_batch_size = 100
error_recovery_delay = 5.0

[database]
sync_db_path = "~/.local/share/asset_sync/asset_sync.db"

[device]
# Leave empty to have one generated and stored in the local database
device_id = ""

[encryption]
# Environment variable holding the passphrase the field key is derived from.
# Without it, sync runs are skipped rather than uploading plaintext.
passphrase_env = "ASSET_SYNC_PASSPHRASE"

[logging]
log_level = "INFO"
log_file = "~/.local/share/asset_sync/logs/asset_sync.log"
json_log_file = ""
"""

try:
    DEFAULT_CONFIG_FROM_TOML: Dict[str, Any] = tomllib.loads(CONFIG_TOML_CONTENT)
except tomllib.TOMLDecodeError as e:
    logger.critical(f"FATAL: Could not parse internal CONFIG_TOML_CONTENT: {e}")
    DEFAULT_CONFIG_FROM_TOML = {}


class SyncConfig(BaseModel):
    """Tunables shared by the sync engine, the batch manager and the API client."""
    model_config = ConfigDict(extra="ignore")

    server_url: str = "http://127.0.0.1:8080"
    api_version: str = "v1"
    auth_token: Optional[str] = None
    device_id: Optional[str] = None
    request_timeout: float = 15.0

    batch_size: int = Field(default=100, ge=1)
    max_concurrent_batches: int = Field(default=3, ge=1)
    compression_enabled: bool = True
    compression_threshold_bytes: int = 1024

    large_data_threshold: int = 5000
    page_size: int = Field(default=1000, ge=1)
    max_concurrent_pages: int = Field(default=2, ge=1)
    adaptive_page_size: bool = True

    sync_interval_seconds: float = 120.0
    full_sync_interval_seconds: float = 3600.0

    retry_attempts: int = Field(default=3, ge=1)
    retry_base_delay: float = 0.5
    retry_max_delay: float = 10.0

    page_retry_attempts: int = Field(default=3, ge=0)
    page_retry_delay: float = 1.0
    page_delay: float = 0.05
    safe_batch_page_size: int = Field(default=500, ge=1)
    fast_path_threshold: int = 1000
    historical_upload_batch_size: int = Field(default=100, ge=1)

    error_recovery_delay: float = 5.0


# --- Helper for deep merging dictionaries ---
def deep_merge_dicts(base: Dict, update: Dict) -> Dict:
    """Recursively merges update_dict into base_dict."""
    merged = copy.deepcopy(base)
    for key, value in update.items():
        if isinstance(value, dict) and key in merged and isinstance(merged[key], dict):
            merged[key] = deep_merge_dicts(merged[key], value)
        else:
            merged[key] = value
    return merged


_CONFIG_CACHE: Optional[Dict[str, Any]] = None


def load_settings(force_reload: bool = False, config_path: Optional[Path] = None) -> Dict[str, Any]:
    """
    Loads settings from ~/.config/asset_sync/config.toml (or `config_path`).
    If the file doesn't exist, it's created with default values.
    """
    global _CONFIG_CACHE
    if _CONFIG_CACHE is not None and not force_reload:
        return _CONFIG_CACHE

    path = config_path or DEFAULT_CONFIG_PATH
    loaded_config = copy.deepcopy(DEFAULT_CONFIG_FROM_TOML)

    if not path.exists():
        logger.info(f"Config file not found at {path}. Creating with default values.")
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with open(path, "w", encoding="utf-8") as f:
                f.write(CONFIG_TOML_CONTENT)
            logger.info(f"Created default config file at {path}")
        except OSError as e:
            logger.error(f"Could not create default config file {path}: {e}. Using internal defaults.")
    else:
        logger.info(f"Attempting to load config from: {path}")
        try:
            with open(path, "rb") as f:
                user_config_from_file = tomllib.load(f)
            loaded_config = deep_merge_dicts(loaded_config, user_config_from_file)
            logger.info(f"Successfully loaded and merged config from {path}")
        except tomllib.TOMLDecodeError as e:
            logger.error(f"Error decoding TOML config file {path}: {e}. Using internal defaults.")
        except OSError as e:
            logger.error(f"Could not read config file {path}: {e}. Using internal defaults.")

    _CONFIG_CACHE = loaded_config
    logger.debug(f"load_settings returning config with top-level keys: {list(loaded_config.keys())}")
    return _CONFIG_CACHE


def get_cli_setting(section: str, key: str, default: Any = None) -> Any:
    """Helper to get a specific setting from the loaded configuration."""
    config = load_settings()
    section_data = config.get(section)
    if isinstance(section_data, dict):
        return section_data.get(key, default)
    return default


def get_sync_config(settings: Optional[Dict[str, Any]] = None) -> SyncConfig:
    """Builds a SyncConfig from the [sync] and [device] sections, falling back to defaults on bad values."""
    settings = settings if settings is not None else load_settings()
    sync_section = dict(settings.get("sync", {}) or {})
    device_id = (settings.get("device", {}) or {}).get("device_id")
    if device_id:
        sync_section["device_id"] = device_id
    if not sync_section.get("auth_token"):
        sync_section["auth_token"] = None
    try:
        return SyncConfig(**sync_section)
    except ValidationError as e:
        logger.warning(f"Invalid [sync] configuration, using defaults: {e}")
        return SyncConfig()


def get_sync_db_path() -> Path:
    default_db_path_str = DEFAULT_CONFIG_FROM_TOML.get("database", {}).get(
        "sync_db_path", str(BASE_DATA_DIR / "asset_sync.db"))
    db_path_str = get_cli_setting("database", "sync_db_path", default_db_path_str)
    return Path(db_path_str).expanduser().resolve()


def get_log_file_path() -> Path:
    default_log = DEFAULT_CONFIG_FROM_TOML.get("logging", {}).get(
        "log_file", str(BASE_DATA_DIR / "logs" / "asset_sync.log"))
    log_file_path = Path(get_cli_setting("logging", "log_file", default_log)).expanduser()
    try:
        log_file_path.parent.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        logger.error(f"Could not create log directory {log_file_path.parent}: {e}")
    return log_file_path

#
# End of config.py
#######################################################################################################################
