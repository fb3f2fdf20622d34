"""Tests for configuration loading."""

from __future__ import annotations

from pathlib import Path

import pytest
import yaml

from orpar.config import OrparConfig, apply_env_overrides, load_config


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    monkeypatch.delenv("ORPAR_ENV", raising=False)
    monkeypatch.delenv("ORPAR_WEBHOOK_URL", raising=False)


class TestOrparConfig:
    def test_defaults(self):
        c = OrparConfig()
        assert c.history_limit == 50
        assert c.content_max_chars == 500
        assert c.recent_history == 5
        assert c.fallback_identity == "unknown"
        assert c.require_identity is False
        assert c.publisher == "bus"
        assert not c.is_test

    def test_is_test(self):
        assert OrparConfig(environment="test").is_test


class TestLoadConfig:
    def test_load_missing_file(self, tmp_path: Path):
        c = load_config(tmp_path / "nonexistent.yaml")
        assert c == OrparConfig()

    def test_load_from_file(self, tmp_path: Path):
        config_path = tmp_path / "orpar.yaml"
        config_path.write_text(yaml.dump({
            "history_limit": 10,
            "require_identity": True,
            "publisher": "webhook",
            "webhook_url": "https://hooks.example/orpar",
            "webhook_timeout": 2,
        }))
        c = load_config(config_path)
        assert c.history_limit == 10
        assert c.require_identity is True
        assert c.publisher == "webhook"
        assert c.webhook_timeout == 2.0
        assert c.content_max_chars == 500

    def test_empty_file(self, tmp_path: Path):
        config_path = tmp_path / "orpar.yaml"
        config_path.write_text("")
        assert load_config(config_path) == OrparConfig()

    def test_cwd_default(self, tmp_path: Path, monkeypatch):
        (tmp_path / "orpar.yaml").write_text(yaml.dump({"recent_history": 3}))
        monkeypatch.chdir(tmp_path)
        assert load_config().recent_history == 3

    def test_unknown_key(self, tmp_path: Path):
        config_path = tmp_path / "orpar.yaml"
        config_path.write_text(yaml.dump({"histroy_limit": 10}))
        with pytest.raises(ValueError, match="histroy_limit"):
            load_config(config_path)

    def test_malformed_yaml(self, tmp_path: Path):
        config_path = tmp_path / "orpar.yaml"
        config_path.write_text("history_limit: [1, 2\n")
        with pytest.raises(ValueError, match="invalid YAML"):
            load_config(config_path)

    def test_not_a_mapping(self, tmp_path: Path):
        config_path = tmp_path / "orpar.yaml"
        config_path.write_text(yaml.dump(["a", "b"]))
        with pytest.raises(ValueError):
            load_config(config_path)

    @pytest.mark.parametrize("key,value", [
        ("history_limit", 0),
        ("history_limit", "50"),
        ("require_identity", "yes"),
        ("webhook_timeout", -1),
        ("publisher", 3),
    ])
    def test_bad_values(self, tmp_path: Path, key, value):
        config_path = tmp_path / "orpar.yaml"
        config_path.write_text(yaml.dump({key: value}))
        with pytest.raises(ValueError, match=key):
            load_config(config_path)


class TestEnvOverrides:
    def test_orpar_env(self, monkeypatch):
        monkeypatch.setenv("ORPAR_ENV", "test")
        assert apply_env_overrides(OrparConfig()).is_test

    def test_webhook_url(self, tmp_path: Path, monkeypatch):
        config_path = tmp_path / "orpar.yaml"
        config_path.write_text(yaml.dump({"webhook_url": "https://file.example"}))
        monkeypatch.setenv("ORPAR_WEBHOOK_URL", "https://env.example")
        assert load_config(config_path).webhook_url == "https://env.example"
