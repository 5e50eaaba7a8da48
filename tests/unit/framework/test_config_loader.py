"""
Unit tests for ConfigLoader.

Tests cover:
- built-in defaults when the YAML file is missing
- YAML values deep-merged over defaults
- environment overrides (LEDGER_SOURCES, cache backend/path, AWS_REGION)
- validation of cache backend and source-failure policy
- the shipped config/sources.yaml loads
"""

import pytest

from ledger_ingest.framework.config_loader import DEFAULT_CONFIG, ConfigLoader, deep_merge


def _write(tmp_path, text: str) -> str:
    path = tmp_path / "sources.yaml"
    path.write_text(text)
    return str(path)


class TestDefaults:
    def test_missing_file_uses_defaults(self, tmp_path) -> None:
        loader = ConfigLoader(str(tmp_path / "absent.yaml"), environ={})
        assert loader.get_fetch_config()["max_retries"] == 3
        assert loader.get_cache_config()["ttl_seconds"] == 1800
        assert loader.get_sources() == ["osmosis", "xrpl", "kaspa", "dydx"]
        assert loader.get_active_modules() == ["MOD-001", "MOD-002"]

    def test_empty_file_uses_defaults(self, tmp_path) -> None:
        loader = ConfigLoader(_write(tmp_path, ""), environ={})
        assert loader.load()["pipeline"]["on_source_failure"] == "fail"

    def test_defaults_not_mutated(self, tmp_path) -> None:
        loader = ConfigLoader(str(tmp_path / "absent.yaml"), environ={"LEDGER_SOURCES": "xrpl"})
        loader.load()
        assert DEFAULT_CONFIG["sources"]["osmosis"]["enabled"] is True


class TestYaml:
    def test_deep_merge_keeps_unset_defaults(self, tmp_path) -> None:
        path = _write(tmp_path, "fetch:\n  max_retries: 5\nsources:\n  kaspa:\n    enabled: false\n")
        loader = ConfigLoader(path, environ={})
        assert loader.get_fetch_config()["max_retries"] == 5
        assert loader.get_fetch_config()["max_delay_seconds"] == 8.0
        assert "kaspa" not in loader.get_sources()
        assert loader.get_source_config("kaspa")["requests_per_second"] == 5

    def test_non_mapping_rejected(self, tmp_path) -> None:
        with pytest.raises(ValueError):
            ConfigLoader(_write(tmp_path, "- a\n- b\n"), environ={}).load()

    def test_invalid_backend_rejected(self, tmp_path) -> None:
        with pytest.raises(ValueError):
            ConfigLoader(_write(tmp_path, "cache:\n  backend: redis\n"), environ={}).load()

    def test_invalid_policy_rejected(self, tmp_path) -> None:
        with pytest.raises(ValueError):
            ConfigLoader(_write(tmp_path, "pipeline:\n  on_source_failure: retry\n"), environ={}).load()

    def test_load_memoized(self, tmp_path) -> None:
        loader = ConfigLoader(str(tmp_path / "absent.yaml"), environ={})
        assert loader.load() is loader.load()

    def test_deep_merge(self) -> None:
        assert deep_merge({"a": {"b": 1, "c": 2}}, {"a": {"c": 3}}) == {"a": {"b": 1, "c": 3}}


class TestEnvOverrides:
    def test_ledger_sources_restricts(self, tmp_path) -> None:
        loader = ConfigLoader(str(tmp_path / "absent.yaml"), environ={"LEDGER_SOURCES": "xrpl, Kaspa"})
        assert loader.get_sources() == ["xrpl", "kaspa"]

    def test_ledger_sources_adds_unknown(self, tmp_path) -> None:
        loader = ConfigLoader(str(tmp_path / "absent.yaml"), environ={"LEDGER_SOURCES": "solana"})
        assert loader.get_sources() == ["solana"]

    def test_empty_override_ignored(self, tmp_path) -> None:
        loader = ConfigLoader(str(tmp_path / "absent.yaml"), environ={"LEDGER_SOURCES": "  "})
        assert len(loader.get_sources()) == 4

    def test_cache_overrides(self, tmp_path) -> None:
        env = {"LEDGER_CACHE_BACKEND": "FILE", "LEDGER_CACHE_PATH": "/tmp/c.json", "AWS_REGION": "eu-west-1"}
        cache = ConfigLoader(str(tmp_path / "absent.yaml"), environ=env).get_cache_config()
        assert cache["backend"] == "file"
        assert cache["path"] == "/tmp/c.json"
        assert cache["region"] == "eu-west-1"

    def test_os_environ_used_by_default(self, tmp_path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("LEDGER_SOURCES", "dydx")
        assert ConfigLoader(str(tmp_path / "absent.yaml")).get_sources() == ["dydx"]


class TestShippedConfig:
    def test_load_actual_sources_yaml(self) -> None:
        """Load the real config/sources.yaml from the project root."""
        loader = ConfigLoader("config/sources.yaml", environ={})
        config = loader.load()
        assert set(config["sources"]) >= {"osmosis", "xrpl", "kaspa", "dydx"}
        assert loader.get_source_config("osmosis")["requests_per_second"] == 2
