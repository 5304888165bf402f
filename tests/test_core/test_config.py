"""
Tests for conductor.core.config
=================================

These tests verify configuration defaults, environment variable overrides
and YAML loading.
"""

import pytest

from conductor.core.config import CacheConfig, ConductorConfig, get_default_config, load_config
from conductor.core.exceptions import ConfigurationError


# =============================================================================
# Test: Defaults
# =============================================================================
class TestDefaults:
    """ConductorConfig default values."""

    def test_execution_defaults(self) -> None:
        config = ConductorConfig()
        assert config.environment == "dev"
        assert config.default_agent_timeout_seconds == 30.0
        assert config.resumption_ttl_seconds == 86400
        assert config.scoring_retry_delay_seconds == 1.0
        assert config.default_score_threshold == 0.7

    def test_cache_defaults(self) -> None:
        cache = ConductorConfig().cache
        assert isinstance(cache, CacheConfig)
        assert cache.enabled is True
        assert cache.default_ttl_seconds == 3600
        assert cache.key_prefix == "conductor:cache:"

    def test_get_default_config(self) -> None:
        assert isinstance(get_default_config(), ConductorConfig)


# =============================================================================
# Test: Environment Variables
# =============================================================================
class TestEnvironment:
    """CONDUCTOR_* environment variables override defaults."""

    def test_flat_override(self, monkeypatch) -> None:
        monkeypatch.setenv("CONDUCTOR_DEFAULT_AGENT_TIMEOUT_SECONDS", "12.5")
        monkeypatch.setenv("CONDUCTOR_LOG_LEVEL", "DEBUG")
        config = ConductorConfig()
        assert config.default_agent_timeout_seconds == 12.5
        assert config.log_level == "DEBUG"

    def test_nested_override(self, monkeypatch) -> None:
        monkeypatch.setenv("CONDUCTOR_CACHE__DEFAULT_TTL_SECONDS", "600")
        assert ConductorConfig().cache.default_ttl_seconds == 600


# =============================================================================
# Test: YAML Loading
# =============================================================================
class TestLoadConfig:
    """load_config() with YAML files."""

    def test_load_valid_file(self, tmp_path) -> None:
        path = tmp_path / "conductor.yaml"
        path.write_text(
            "environment: staging\n"
            "default_score_threshold: 0.8\n"
            "cache:\n"
            "  key_prefix: 'test:'\n"
        )
        config = load_config(str(path))
        assert config.environment == "staging"
        assert config.default_score_threshold == 0.8
        assert config.cache.key_prefix == "test:"

    def test_missing_explicit_file(self, tmp_path) -> None:
        with pytest.raises(FileNotFoundError):
            load_config(str(tmp_path / "nope.yaml"))

    def test_invalid_yaml(self, tmp_path) -> None:
        path = tmp_path / "bad.yaml"
        path.write_text("cache: [unclosed\n")
        with pytest.raises(ConfigurationError):
            load_config(str(path))

    def test_non_mapping(self, tmp_path) -> None:
        path = tmp_path / "list.yaml"
        path.write_text("- a\n- b\n")
        with pytest.raises(ConfigurationError):
            load_config(str(path))

    def test_invalid_values(self, tmp_path) -> None:
        path = tmp_path / "values.yaml"
        path.write_text("default_score_threshold: 7\n")
        with pytest.raises(ConfigurationError) as exc_info:
            load_config(str(path))
        assert exc_info.value.error_code == "CONFIGURATION_ERROR"

    def test_empty_file_uses_defaults(self, tmp_path) -> None:
        path = tmp_path / "empty.yaml"
        path.write_text("")
        assert load_config(str(path)).environment == "dev"
