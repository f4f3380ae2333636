import os
import tempfile

import pytest
import yaml

from bauflex_diagnostics.config import Config, ConfigError


class TestConfig:
    def test_default_config(self):
        """Verify defaults are loaded when no file is given."""
        config = Config()
        assert config["server"]["host"] == "0.0.0.0"
        assert config["server"]["port"] == 5000
        assert config["server"]["max_received_logs"] == 10000
        assert config["logger"]["max_events"] == 1000
        assert config["logger"]["thresholds"] == {"WARN": 10, "ERROR": 5, "CRITICAL": 2, "FATAL": 1}
        assert config["api"]["slow_threshold_ms"] == 3000
        assert config["api"]["very_slow_threshold_ms"] == 10000
        assert config["api"]["error_rate_threshold"] == 0.2
        assert config["database"]["slow_threshold_ms"] == 1000
        assert config["database"]["very_slow_threshold_ms"] == 5000
        assert config["state"]["max_snapshots"] == 100
        assert config["health"]["max_error_rate"] == 50.0
        assert config.is_production is False

    def test_load_from_yaml(self):
        """Write a temp YAML with overrides, verify merge."""
        override = {
            "server": {"port": 8080, "debug": True},
            "api": {"slow_threshold_ms": 2000},
        }
        with tempfile.NamedTemporaryFile(mode="w", suffix=".yaml", delete=False) as f:
            yaml.dump(override, f)
            temp_path = f.name

        try:
            cfg = Config(temp_path)
            assert cfg["server"]["port"] == 8080
            assert cfg["server"]["debug"] is True
            assert cfg["server"]["host"] == "0.0.0.0"  # default preserved
            assert cfg["api"]["slow_threshold_ms"] == 2000
            assert cfg["api"]["very_slow_threshold_ms"] == 10000  # default preserved
        finally:
            os.unlink(temp_path)

    def test_missing_file_uses_defaults(self):
        cfg = Config("/nonexistent/path/config.yaml")
        assert cfg["server"]["port"] == 5000

    def test_invalid_yaml_uses_defaults(self, tmp_path):
        path = tmp_path / "broken.yaml"
        path.write_text("server: [unclosed\n")
        cfg = Config(str(path))
        assert cfg["server"]["port"] == 5000

    def test_deep_merge(self):
        base = {"server": {"host": "localhost", "port": 5000, "debug": False}}
        override = {"server": {"port": 9090}}
        result = Config._deep_merge(base, override)
        assert result["server"]["port"] == 9090
        assert result["server"]["host"] == "localhost"
        assert base["server"]["port"] == 5000

    def test_from_dict(self):
        cfg = Config.from_dict({"logger": {"environment": "production"}})
        assert cfg.is_production is True
        assert cfg["logger"]["max_events"] == 1000

    def test_from_env(self, tmp_path, monkeypatch):
        path = tmp_path / "env.yaml"
        path.write_text(yaml.dump({"server": {"port": 7000}}))
        monkeypatch.setenv("CONFIG_PATH", str(path))
        assert Config.from_env()["server"]["port"] == 7000

    def test_rejects_non_positive_threshold(self):
        with pytest.raises(ConfigError):
            Config.from_dict({"api": {"slow_threshold_ms": 0}})

    def test_rejects_non_numeric_value(self):
        with pytest.raises(ConfigError):
            Config.from_dict({"database": {"max_queries": "many"}})

    def test_rejects_bad_level_threshold(self):
        with pytest.raises(ConfigError):
            Config.from_dict({"logger": {"thresholds": {"WARN": -1}}})

    def test_get_method(self):
        config = Config()
        assert config.get("server")["port"] == 5000
        assert config.get("nonexistent") is None
        assert config.get("nonexistent", "fallback") == "fallback"

    def test_contains(self):
        config = Config()
        assert "server" in config
        assert "health" in config
        assert "nonexistent" not in config
