"""
Tests for the configuration system: defaults, environment binding,
YAML files, validation and secret masking.
"""

from decimal import Decimal

import pytest

from assetgate.config import (
    SECRET_MASK,
    ConfigError,
    ConfigManager,
    ConfigValidationError,
    ConfigValue,
)


class TestDefaults:
    def test_oracle_defaults(self):
        mgr = ConfigManager()
        assert mgr.get("oracle.max_retries") == 3
        assert mgr.get("oracle.base_delay_ms") == 1000
        assert mgr.get("oracle.max_delay_ms") == 10000

    def test_threshold_table_defaults(self):
        table = ConfigManager().get("verification.threshold_table")
        assert table["gold"] == "99.9"
        assert table["silver"] == "99.0"
        assert set(table) == {"gold", "silver", "platinum", "palladium", "rhodium"}

    def test_defaults_validate_clean(self):
        assert ConfigManager().validate() == []

    def test_managers_are_independent(self):
        a, b = ConfigManager(), ConfigManager()
        a.set("oracle.max_retries", 7)
        assert b.get("oracle.max_retries") == 3


class TestEnvironment:
    """Environment variables win over every other source."""

    def test_int_override(self, monkeypatch):
        monkeypatch.setenv("ASSETGATE_ORACLE_MAX_RETRIES", "5")
        assert ConfigManager().get("oracle.max_retries") == 5

    def test_env_beats_runtime_set(self, monkeypatch):
        mgr = ConfigManager()
        mgr.set("oracle.max_retries", 9)
        monkeypatch.setenv("ASSETGATE_ORACLE_MAX_RETRIES", "2")
        assert mgr.get("oracle.max_retries") == 2

    def test_bool_override(self, monkeypatch):
        monkeypatch.setenv("ASSETGATE_REQUIRE_VERIFICATION", "no")
        assert ConfigManager().get("tokenization.require_verification") is False

    def test_dict_override(self, monkeypatch):
        monkeypatch.setenv("ASSETGATE_VERIFICATION_THRESHOLDS", "gold=99.5, silver=98")
        assert ConfigManager().get("verification.threshold_table") == {"gold": "99.5", "silver": "98"}

    def test_coerce_decimal(self):
        value = ConfigValue(default=Decimal("1"))
        assert value._coerce("99.95") == Decimal("99.95")


class TestFiles:
    def test_load_yaml(self, tmp_path):
        path = tmp_path / "assetgate.yaml"
        path.write_text(
            "oracle:\n"
            "  max_retries: 4\n"
            "  node_url: https://oracle.example\n"
            "verification:\n"
            "  threshold_table:\n"
            "    gold: '99.5'\n",
            encoding="utf-8",
        )
        mgr = ConfigManager()
        mgr.load_from_file(path)

        assert mgr.get("oracle.max_retries") == 4
        assert mgr.get("oracle.node_url") == "https://oracle.example"
        assert mgr.get("verification.threshold_table") == {"gold": "99.5"}
        assert mgr.loaded_paths == [path]

    def test_unknown_keys_ignored(self, tmp_path):
        path = tmp_path / "c.yaml"
        path.write_text("oracle:\n  no_such_key: 1\nbogus: true\n", encoding="utf-8")
        mgr = ConfigManager()
        mgr.load_from_file(path)
        assert mgr.get("oracle.max_retries") == 3

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigError, match="not found"):
            ConfigManager().load_from_file(tmp_path / "absent.yaml")

    def test_malformed_yaml(self, tmp_path):
        path = tmp_path / "bad.yaml"
        path.write_text("oracle: [unclosed\n", encoding="utf-8")
        with pytest.raises(ConfigError, match="Malformed"):
            ConfigManager().load_from_file(path)

    def test_non_mapping(self, tmp_path):
        path = tmp_path / "list.yaml"
        path.write_text("- a\n- b\n", encoding="utf-8")
        with pytest.raises(ConfigError, match="mapping"):
            ConfigManager().load_from_file(path)

    def test_invalid_value_in_file(self, tmp_path):
        path = tmp_path / "c.yaml"
        path.write_text("observability:\n  log_level: loud\n", encoding="utf-8")
        with pytest.raises(ConfigValidationError):
            ConfigManager().load_from_file(path)

    def test_reload_notifies_watchers(self, tmp_path):
        path = tmp_path / "c.yaml"
        path.write_text("oracle:\n  max_retries: 2\n", encoding="utf-8")
        mgr = ConfigManager()
        mgr.load_from_file(path)

        seen = []
        mgr.watch(lambda cfg: seen.append(cfg.oracle.max_retries.get()))
        path.write_text("oracle:\n  max_retries: 6\n", encoding="utf-8")
        mgr.reload()

        assert seen == [6]


class TestValidation:
    def test_set_rejects_invalid(self):
        mgr = ConfigManager()
        with pytest.raises(ConfigValidationError):
            mgr.set("oracle.max_retries", 0)
        with pytest.raises(ConfigValidationError):
            mgr.set("verification.threshold_table", {"gold": "101"})

    def test_invalid_path(self):
        mgr = ConfigManager()
        with pytest.raises(ConfigError):
            mgr.get("oracle.nope")
        with pytest.raises(ConfigError):
            mgr.set("oracle", 1)

    def test_cross_field_check(self):
        mgr = ConfigManager()
        mgr.set("oracle.base_delay_ms", 20000)
        errors = mgr.validate()
        assert any("base_delay_ms" in e for e in errors)

    def test_env_value_revalidated(self, monkeypatch):
        monkeypatch.setenv("ASSETGATE_LOG_LEVEL", "verbose")
        errors = ConfigManager().validate()
        assert any(e.startswith("observability.log_level") for e in errors)

    def test_change_callback(self):
        mgr = ConfigManager()
        changes = []
        mgr.config.oracle.max_retries.on_change(lambda old, new: changes.append((old, new)))
        mgr.set("oracle.max_retries", 4)
        assert changes == [(None, 4)]


class TestSecrets:
    """Secret values are masked everywhere they could leak."""

    def test_to_dict_masks(self):
        mgr = ConfigManager()
        mgr.set("audit.signing_key", "super-secret")
        mgr.set("oracle.access_key", "bearer-xyz")

        dumped = mgr.config.to_dict()
        assert dumped["audit"]["signing_key"] == SECRET_MASK
        assert dumped["oracle"]["access_key"] == SECRET_MASK
        assert "super-secret" not in mgr.config.to_yaml()

        assert mgr.config.to_dict(reveal_secrets=True)["audit"]["signing_key"] == "super-secret"

    def test_empty_secret_not_masked(self):
        assert ConfigManager().config.to_dict()["audit"]["signing_key"] == ""

    def test_is_secret(self):
        mgr = ConfigManager()
        assert mgr.is_secret("audit.signing_key")
        assert not mgr.is_secret("audit.store_path")

    def test_export_schema(self):
        schema = ConfigManager().export_schema()["properties"]
        retries = schema["oracle"]["max_retries"]
        assert retries["type"] == "int"
        assert retries["default"] == 3
        assert retries["env_var"] == "ASSETGATE_ORACLE_MAX_RETRIES"
        assert schema["audit"]["signing_key"]["secret"] is True
