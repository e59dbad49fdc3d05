"""Unit tests for the YAML config loader, defaults and env var resolution."""

from __future__ import annotations

from pathlib import Path

import pytest

from cdc_replicator.config.defaults import (
    build_replicator_config,
    load_defaults,
    merge_configs,
)
from cdc_replicator.config.loader import (
    load_replicator_config,
    load_yaml,
    resolve_env_vars,
)
from cdc_replicator.config.models import AckPolicyType

EXAMPLE_CONFIG = Path(__file__).resolve().parents[2] / "examples" / "replicator.yaml"


class TestResolveEnvVars:
    def test_plain_string_unchanged(self):
        assert resolve_env_vars("hello") == "hello"

    def test_substitutes_env_var(self, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.setenv("MY_HOST", "db.prod")
        assert resolve_env_vars("${MY_HOST}") == "db.prod"

    def test_default_when_var_missing(self):
        assert resolve_env_vars("${MISSING_VAR:-fallback}") == "fallback"

    def test_env_var_overrides_default(self, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.setenv("MY_PORT", "9999")
        assert resolve_env_vars("${MY_PORT:-5432}") == "9999"

    def test_empty_default(self):
        assert resolve_env_vars("${MISSING_VAR:-}") == ""

    def test_missing_var_no_default_raises(self):
        with pytest.raises(ValueError, match="UNDEFINED_VAR"):
            resolve_env_vars("${UNDEFINED_VAR}")

    def test_embedded_in_string(self, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.setenv("DB_HOST", "prod-db")
        result = resolve_env_vars("postgresql://${DB_HOST}:5432/inventory")
        assert result == "postgresql://prod-db:5432/inventory"

    def test_recursive_structures(self, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.setenv("DB_PASS", "secret123")
        data = {
            "password": "${DB_PASS}",
            "nested": {"url": "${DB_PASS:-default}"},
            "topics": ["${MISSING:-a.b.c}", "d.e.f"],
        }
        result = resolve_env_vars(data)
        assert result["password"] == "secret123"
        assert result["nested"]["url"] == "secret123"
        assert result["topics"] == ["a.b.c", "d.e.f"]

    def test_non_string_values_unchanged(self):
        data = {"port": 5432, "enabled": True, "ratio": 0.5, "nothing": None}
        assert resolve_env_vars(data) == data

    def test_default_with_colons(self):
        result = resolve_env_vars("${MISSING:-broker:29092}")
        assert result == "broker:29092"


class TestDefaults:
    def test_builtin_defaults_load(self):
        defaults = load_defaults()
        assert defaults["ack_policy"] == "always"
        assert defaults["target"]["database"] == "target_db"

    def test_unknown_defaults_file(self):
        with pytest.raises(FileNotFoundError):
            load_defaults("nope")

    def test_merge_is_deep_and_non_mutating(self):
        base = {"a": {"x": 1, "y": 2}, "b": 1}
        merged = merge_configs(base, {"a": {"y": 3}, "c": 4})
        assert merged == {"a": {"x": 1, "y": 3}, "b": 1, "c": 4}
        assert base == {"a": {"x": 1, "y": 2}, "b": 1}

    def test_build_without_overrides(self):
        cfg = build_replicator_config()
        assert cfg.source.database == "source_db"
        assert cfg.target.max_connections == 20
        assert cfg.kafka.topic_pattern == r"^dbserver1\.inventory\..*"

    def test_build_with_overrides(self):
        cfg = build_replicator_config({"target": {"port": 6543}, "worker_threads": 2})
        assert cfg.target.port == 6543
        assert cfg.target.database == "target_db"
        assert cfg.worker_threads == 2


class TestLoadYaml:
    def test_missing_file(self, tmp_path: Path):
        with pytest.raises(FileNotFoundError):
            load_yaml(tmp_path / "absent.yaml")

    def test_empty_file_is_empty_mapping(self, tmp_path: Path):
        path = tmp_path / "empty.yaml"
        path.write_text("")
        assert load_yaml(path) == {}

    def test_invalid_yaml_reports_position(self, tmp_path: Path):
        path = tmp_path / "bad.yaml"
        path.write_text("source:\n  database: [unclosed\n")
        with pytest.raises(ValueError, match="line"):
            load_yaml(path)

    def test_top_level_list_rejected(self, tmp_path: Path):
        path = tmp_path / "list.yaml"
        path.write_text("- a\n- b\n")
        with pytest.raises(TypeError, match="mapping"):
            load_yaml(path)


class TestLoadReplicatorConfig:
    def test_defaults_only(self):
        cfg = load_replicator_config()
        assert cfg.ack_policy == AckPolicyType.ALWAYS

    def test_example_config_loads(self, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.delenv("TARGET_DB_PORT", raising=False)
        cfg = load_replicator_config(EXAMPLE_CONFIG)
        assert cfg.source.database == "inventory"
        assert cfg.target.database == "inventory_replica"
        assert cfg.target.port == 5433
        assert cfg.ack_policy == AckPolicyType.DEAD_LETTER

    def test_env_overrides_in_file(
        self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ):
        monkeypatch.setenv("REPLICA_HOST", "replica.internal")
        path = tmp_path / "cfg.yaml"
        path.write_text("target:\n  host: ${REPLICA_HOST}\n  database: replica\n")
        cfg = load_replicator_config(path)
        assert cfg.target.host == "replica.internal"
        assert cfg.source.database == "source_db"

    def test_invalid_config_names_source(self, tmp_path: Path):
        path = tmp_path / "cfg.yaml"
        path.write_text("ack_policy: sometimes\n")
        with pytest.raises(ValueError, match="cfg.yaml"):
            load_replicator_config(path)
