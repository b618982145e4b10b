"""Simple YAML configuration loader for VaultScribe."""

import copy
import os
import yaml
from pathlib import Path
from typing import Dict, Any, Optional
import logging

from ..exceptions import ConfigError

logger = logging.getLogger(__name__)

CONFIG_FILENAME = "vaultscribe.yaml"

DEFAULTS: Dict[str, Any] = {
    "storage": {
        "data_directory": "data",
        "database_file": "vaultscribe.db",
        "temp_max_age_hours": 24,
    },
    "security": {
        "secret_store": "file",
        "secrets_directory": "data/secrets",
        "keychain_service": "com.vaultscribe",
        "encryption_key_name": "audio_encryption_key",
    },
    "deepgram": {
        "api_url": "https://api.deepgram.com/v1/listen",
        "api_key_secret": "deepgram_api_key",
        "api_key_env": "DEEPGRAM_API_KEY",
        "timeout_seconds": 120,
        "params": {},
    },
    "retry": {
        "max_attempts": 5,
        "base_delay_seconds": 2.0,
        "jitter": 0.1,
    },
    "export": {
        "ffmpeg_path": "ffmpeg",
        "ffprobe_path": "ffprobe",
        "container": "m4a",
        "codec": "aac",
        "bitrate": "96k",
        "min_duration_seconds": 2.0,
        "timeout_seconds": 300,
    },
    "local_fallback": {
        "enabled": True,
        "consent": "ask",
        "model_size": "small",
        "device": "auto",
        "language": None,
    },
    "segmentation": {
        "segment_seconds": 0,
    },
    "pipeline": {
        "max_concurrent_segments": 4,
        "recover_stale_on_startup": True,
    },
    "logging": {
        "level": "INFO",
        "file_path": "data/logs/vaultscribe.log",
        "console_output": True,
    },
}


def _deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    merged = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def find_config_file(start: Optional[Path] = None) -> Optional[Path]:
    """Look for vaultscribe.yaml in ``start`` and its parents."""
    directory = (start or Path.cwd()).resolve()
    for candidate_dir in [directory, *directory.parents]:
        candidate = candidate_dir / CONFIG_FILENAME
        if candidate.is_file():
            return candidate
    return None


class VaultScribeConfig:
    """VaultScribe configuration loader."""

    def __init__(self, config_path: Optional[str] = None, overrides: Optional[Dict[str, Any]] = None):
        """Initialize configuration loader.

        Args:
            config_path: Path to YAML config file. If None, looks for vaultscribe.yaml
                        in current directory and parent directories, falling back to
                        built-in defaults when none exists.
            overrides: Optional nested mapping merged over the file contents.
        """
        if config_path is not None:
            self.config_file: Optional[Path] = Path(config_path)
            if not self.config_file.exists():
                raise ConfigError(f"Configuration file not found: {self.config_file}")
        else:
            self.config_file = find_config_file()

        if self.config_file is not None:
            logger.info(f"Loading configuration from: {self.config_file}")
            self.base_dir = self.config_file.parent
        else:
            logger.info("No configuration file found, using defaults")
            self.base_dir = Path.cwd()

        self.config = self._load_config(overrides or {})

    def _load_config(self, overrides: Dict[str, Any]) -> Dict[str, Any]:
        """Load and parse YAML configuration file."""
        loaded: Dict[str, Any] = {}
        if self.config_file is not None:
            try:
                with open(self.config_file, 'r', encoding='utf-8') as f:
                    loaded = yaml.safe_load(f) or {}
            except yaml.YAMLError as e:
                raise ConfigError(f"Invalid YAML in configuration file: {e}") from e
            except OSError as e:
                raise ConfigError(f"Failed to read configuration: {e}") from e

            if not isinstance(loaded, dict):
                raise ConfigError("Configuration root must be a mapping")

        config = _deep_merge(DEFAULTS, loaded)
        config = _deep_merge(config, overrides)

        self._resolve_paths(config)
        logger.info("Configuration loaded successfully")
        return config

    def _resolve_paths(self, config: Dict[str, Any]) -> None:
        """Resolve relative paths in configuration relative to config file location."""
        for section, key in (
            ("storage", "data_directory"),
            ("security", "secrets_directory"),
            ("logging", "file_path"),
        ):
            value = config.get(section, {}).get(key)
            if value and not os.path.isabs(value):
                config[section][key] = str(self.base_dir / value)

    def get(self, key_path: str, default: Any = None) -> Any:
        """Get configuration value using dot notation (e.g., 'retry.max_attempts').

        Args:
            key_path: Dot-separated key path (e.g., 'deepgram.api_url')
            default: Default value if key not found

        Returns:
            Configuration value or default
        """
        keys = key_path.split('.')
        value = self.config

        for key in keys:
            if isinstance(value, dict) and key in value:
                value = value[key]
            else:
                return default

        return value

    def set(self, key_path: str, value: Any) -> None:
        """Set configuration value using dot notation.

        Args:
            key_path: Dot-separated path to config value (e.g., 'retry.jitter')
            value: Value to set
        """
        keys = key_path.split('.')
        config_dict = self.config

        for key in keys[:-1]:
            if key not in config_dict:
                config_dict[key] = {}
            config_dict = config_dict[key]

        config_dict[keys[-1]] = value
        logger.debug(f"Configuration key '{key_path}' set to: {value}")

    def get_data_directory(self) -> str:
        """Get data directory path."""
        data_dir = self.get('storage.data_directory', 'data')
        return str(Path(data_dir).absolute())

    def get_database_path(self) -> str:
        """Get SQLite database path (relative names live inside the data directory)."""
        db_file = Path(self.get('storage.database_file', 'vaultscribe.db'))
        if not db_file.is_absolute():
            db_file = Path(self.get_data_directory()) / db_file
        return str(db_file)
