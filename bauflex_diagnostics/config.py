import copy
import logging
import os

import yaml

logger = logging.getLogger(__name__)


class ConfigError(Exception):
    """Raised when a configuration value is out of range."""


class Config:
    """Configuration manager that loads from YAML and merges with defaults."""

    DEFAULTS = {
        "server": {
            "host": "0.0.0.0",
            "port": 5000,
            "debug": False,
            "max_received_logs": 10000,
        },
        "logger": {
            "max_events": 1000,
            "thresholds": {
                "WARN": 10,
                "ERROR": 5,
                "CRITICAL": 2,
                "FATAL": 1,
            },
            "environment": "development",
            "collector_url": "",
            "forward_timeout": 5.0,
            "local_store_path": ".diagnostics/events.json",
            "local_store_limit": 100,
        },
        "api": {
            "max_calls": 500,
            "slow_threshold_ms": 3000,
            "very_slow_threshold_ms": 10000,
            "error_rate_threshold": 0.2,
            "pattern_window": 10,
            "pattern_min_calls": 5,
            "large_response_bytes": 5 * 1024 * 1024,
        },
        "database": {
            "path": "bauflex.db",
            "max_queries": 500,
            "slow_threshold_ms": 1000,
            "very_slow_threshold_ms": 5000,
            "n_plus_one_window": 20,
            "n_plus_one_limit": 5,
        },
        "state": {
            "max_snapshots": 100,
            "max_state_bytes": 10 * 1024 * 1024,
        },
        "health": {
            "interval_seconds": 60,
            "memory_interval_seconds": 30,
            "memory_ratio_limit": 0.9,
            "memory_warning_ratio": 0.8,
            "max_error_rate": 50.0,
        },
        "schema": {
            "path": "",
        },
    }

    # (section, key) pairs that must hold a positive number
    _POSITIVE = [
        ("server", "max_received_logs"),
        ("logger", "max_events"),
        ("logger", "local_store_limit"),
        ("api", "max_calls"),
        ("api", "slow_threshold_ms"),
        ("api", "very_slow_threshold_ms"),
        ("api", "error_rate_threshold"),
        ("api", "pattern_window"),
        ("api", "pattern_min_calls"),
        ("database", "max_queries"),
        ("database", "slow_threshold_ms"),
        ("database", "very_slow_threshold_ms"),
        ("database", "n_plus_one_window"),
        ("state", "max_snapshots"),
        ("state", "max_state_bytes"),
        ("health", "interval_seconds"),
        ("health", "memory_interval_seconds"),
    ]

    def __init__(self, config_path=None):
        self._config = copy.deepcopy(self.DEFAULTS)

        if config_path is not None:
            try:
                with open(config_path, "r") as f:
                    user_config = yaml.safe_load(f)

                if user_config and isinstance(user_config, dict):
                    self._config = self._deep_merge(self._config, user_config)
                logger.info("Loaded config from %s", config_path)
            except FileNotFoundError:
                logger.warning("Config file %s not found, using defaults", config_path)
            except yaml.YAMLError:
                logger.warning("Invalid YAML in %s, using defaults", config_path)

        self._validate()

    @classmethod
    def from_env(cls):
        """Build a Config from the file named by CONFIG_PATH, if any."""
        return cls(os.environ.get("CONFIG_PATH"))

    @classmethod
    def from_dict(cls, overrides):
        """Build a Config with in-memory overrides merged over the defaults."""
        config = cls()
        config._config = cls._deep_merge(config._config, overrides)
        config._validate()
        return config

    @staticmethod
    def _deep_merge(base, override):
        """Recursively merge override dict into base dict."""
        result = copy.deepcopy(base)
        for key, value in override.items():
            if (
                key in result
                and isinstance(result[key], dict)
                and isinstance(value, dict)
            ):
                result[key] = Config._deep_merge(result[key], value)
            else:
                result[key] = copy.deepcopy(value)
        return result

    def _validate(self):
        for section, key in self._POSITIVE:
            value = self._config[section][key]
            if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
                raise ConfigError(f"{section}.{key} must be a positive number, got {value!r}")
        for level, value in self._config["logger"]["thresholds"].items():
            if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
                raise ConfigError(f"logger.thresholds.{level} must be a positive integer, got {value!r}")

    @property
    def is_production(self):
        return str(self._config["logger"]["environment"]).lower() == "production"

    def get(self, key, default=None):
        """Get a top-level config key."""
        return self._config.get(key, default)

    def __getitem__(self, key):
        return self._config[key]

    def __contains__(self, key):
        return key in self._config
