"""
Configuration management for PenBridge.

This module handles loading and accessing configuration values from config.yaml.
It provides a centralized way to manage all settings and makes it easy to
modify behavior without changing code.
"""

import yaml
from pathlib import Path
from typing import Any, Dict
import logging


class ConfigManager:
    """
    Manages configuration loading and access for PenBridge.
    """

    def __init__(self, config_path: str = "config.yaml"):
        """
        Initialize the configuration manager.

        Args:
            config_path: Path to the configuration file
        """
        self.config_path = Path(config_path)
        self._config: Dict[str, Any] = {}
        self._load_config()

    def _load_config(self) -> None:
        """Load configuration from YAML file, falling back to defaults."""
        defaults = self._get_default_config()
        if not self.config_path.exists():
            logging.info(f"Configuration file not found: {self.config_path}; using defaults")
            self._config = defaults
            return

        try:
            with open(self.config_path, 'r', encoding='utf-8') as f:
                loaded = yaml.safe_load(f) or {}
            self._config = self._merge(defaults, loaded)
            logging.info(f"Configuration loaded from {self.config_path}")

        except (OSError, yaml.YAMLError) as e:
            logging.error(f"Failed to load configuration: {e}")
            self._config = defaults

    @classmethod
    def _merge(cls, base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
        """Recursively overlay file values on top of defaults."""
        merged = dict(base)
        for key, value in override.items():
            if isinstance(value, dict) and isinstance(merged.get(key), dict):
                merged[key] = cls._merge(merged[key], value)
            else:
                merged[key] = value
        return merged

    def _get_default_config(self) -> Dict[str, Any]:
        """Get default configuration values as fallback."""
        return {
            "logseq": {
                "host": "http://127.0.0.1:12315",
                "token": "",
                "timeout": 30.0
            },
            "myscript": {
                "api_url": "https://cloud.myscript.com/api/v4.0/iink/batch",
                "application_key": "",
                "hmac_key": "",
                "lang": "en_US",
                "timeout": 30.0
            },
            "reconciliation": {
                "tolerance": 5.0,
                "chunk_size": 200,
                "chunk_write_delay": 0.1
            },
            "transport": {
                "max_retries": 3,
                "backoff_base": 1.0
            },
            "database": {
                "filename": "penbridge.db"
            },
            "paths": {
                "log_file": "penbridge.log"
            },
            "logging": {
                "level": "INFO",
                "format": "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
            }
        }

    def get(self, key_path: str, default: Any = None) -> Any:
        """
        Get a configuration value using dot notation.

        Args:
            key_path: Dot-separated path to the configuration value (e.g., "logseq.host")
            default: Default value if key is not found

        Returns:
            The configuration value

        Examples:
            config.get("reconciliation.tolerance")  # Returns 5.0
            config.get("myscript.lang")  # Returns "en_US"
        """
        keys = key_path.split('.')
        value = self._config

        for key in keys:
            if isinstance(value, dict) and key in value:
                value = value[key]
            else:
                return default

        return value

    def get_section(self, section: str) -> Dict[str, Any]:
        """
        Get an entire configuration section.

        Args:
            section: Name of the configuration section

        Returns:
            Dictionary containing the section configuration
        """
        return self._config.get(section, {})

    def reload(self) -> None:
        """Reload configuration from file."""
        self._load_config()

    # Convenience properties for commonly used values

    @property
    def logseq_host(self) -> str:
        """Get Logseq HTTP API host URL."""
        return self.get("logseq.host", "http://127.0.0.1:12315")

    @property
    def logseq_token(self) -> str:
        """Get Logseq API authorization token."""
        return self.get("logseq.token", "") or ""

    @property
    def logseq_timeout(self) -> float:
        """Get Logseq request timeout."""
        return float(self.get("logseq.timeout", 30.0))

    @property
    def myscript_api_url(self) -> str:
        return self.get("myscript.api_url", "https://cloud.myscript.com/api/v4.0/iink/batch")

    @property
    def myscript_application_key(self) -> str:
        return self.get("myscript.application_key", "") or ""

    @property
    def myscript_hmac_key(self) -> str:
        return self.get("myscript.hmac_key", "") or ""

    @property
    def myscript_lang(self) -> str:
        return self.get("myscript.lang", "en_US")

    @property
    def myscript_timeout(self) -> float:
        return float(self.get("myscript.timeout", 30.0))

    @property
    def tolerance(self) -> float:
        """Get vertical matching tolerance in page units."""
        return float(self.get("reconciliation.tolerance", 5.0))

    @property
    def chunk_size(self) -> int:
        """Get the number of strokes per storage chunk."""
        return int(self.get("reconciliation.chunk_size", 200))

    @property
    def chunk_write_delay(self) -> float:
        """Get the pause between chunk writes, in seconds."""
        return float(self.get("reconciliation.chunk_write_delay", 0.1))

    @property
    def max_retries(self) -> int:
        return int(self.get("transport.max_retries", 3))

    @property
    def backoff_base(self) -> float:
        return float(self.get("transport.backoff_base", 1.0))

    @property
    def database_filename(self) -> str:
        """Get database filename."""
        return self.get("database.filename", "penbridge.db")

    @property
    def log_filename(self) -> str:
        """Get log file name."""
        return self.get("paths.log_file", "penbridge.log")


# Global configuration instance
config = ConfigManager()


def get_config() -> ConfigManager:
    """
    Get the global configuration instance.

    Returns:
        The global ConfigManager instance
    """
    return config
