"""Tests for bridge configuration loading and saving."""

import json
import tempfile
from pathlib import Path
from unittest.mock import patch

import pytest

from repobridge.config import (
    BridgeConfig,
    ChannelNames,
    MutationPolicy,
    RetryPolicy,
    config_to_dict,
    get_config_dir,
    get_config_path,
    load_config,
    load_config_from_dict,
    save_config,
)
from repobridge.exceptions import ConfigLoadError, ConfigSaveError, ConfigValidationError


class TestDefaults:
    """Test default settings."""

    def test_default_config(self):
        """Defaults match the documented values."""
        config = BridgeConfig()
        assert config.query_timeout == 30.0
        assert config.load_timeout == 60.0
        assert config.hung_after == 10.0
        assert config.mutation_policy is MutationPolicy.REPLACE
        assert config.clear_on_success is True
        assert config.channels == ChannelNames()

    def test_default_channel_names(self):
        """Channel names default to the gg:// namespace."""
        names = ChannelNames()
        assert names.repo_config == "gg://repo/config"
        assert names.repo_status == "gg://repo/status"
        assert names.revision_select == "gg://revision/select"


class TestRetryPolicy:
    """Test backoff arithmetic."""

    def test_exponential_delay(self):
        """Delays grow by the multiplier."""
        policy = RetryPolicy(initial_delay=0.5, multiplier=2.0, max_delay=8.0)
        assert [policy.delay_for(n) for n in (1, 2, 3)] == [0.5, 1.0, 2.0]

    def test_delay_capped(self):
        """Delays never exceed max_delay."""
        policy = RetryPolicy(initial_delay=1.0, multiplier=10.0, max_delay=5.0)
        assert policy.delay_for(4) == 5.0

    def test_attempt_zero(self):
        """Attempt numbers below one have no delay."""
        assert RetryPolicy().delay_for(0) == 0.0


class TestLoadFromDict:
    """Test schema mapping with dacite."""

    def test_empty_dict_gives_defaults(self):
        """An empty object yields defaults."""
        assert load_config_from_dict({}) == BridgeConfig()

    def test_nested_values(self):
        """Nested sections and enums are decoded."""
        config = load_config_from_dict(
            {
                "query_timeout": 5,
                "mutation_policy": "reject",
                "retry": {"max_attempts": 5},
                "channels": {"repo_config": "test://config"},
            }
        )
        assert config.query_timeout == 5.0
        assert isinstance(config.query_timeout, float)
        assert config.mutation_policy is MutationPolicy.REJECT
        assert config.retry.max_attempts == 5
        assert config.channels.repo_config == "test://config"
        assert config.channels.repo_status == "gg://repo/status"

    def test_null_timeout_disables(self):
        """A null timeout is allowed."""
        assert load_config_from_dict({"query_timeout": None}).query_timeout is None

    def test_unknown_key_rejected(self):
        """Unknown keys are schema errors."""
        with pytest.raises(ConfigValidationError):
            load_config_from_dict({"query_timout": 5})

    def test_bad_enum_rejected(self):
        """Unknown mutation policies are schema errors."""
        with pytest.raises(ConfigValidationError):
            load_config_from_dict({"mutation_policy": "queue"})

    def test_non_positive_timeout_rejected(self):
        """Timeouts must be positive."""
        with pytest.raises(ConfigValidationError) as exc_info:
            load_config_from_dict({"load_timeout": 0})
        assert exc_info.value.context["field"] == "load_timeout"

    def test_zero_attempts_rejected(self):
        """At least one attempt is required."""
        with pytest.raises(ConfigValidationError):
            load_config_from_dict({"retry": {"max_attempts": 0}})


class TestLoadAndSave:
    """Test file round trips."""

    def test_missing_file_gives_defaults(self):
        """A missing config file is not an error."""
        with tempfile.TemporaryDirectory() as tmpdir:
            config_path = Path(tmpdir) / "config.json"
            with patch("repobridge.config.CONFIG_PATH", config_path):
                assert load_config() == BridgeConfig()

    def test_load_existing_file(self):
        """Values in the file override defaults."""
        with tempfile.TemporaryDirectory() as tmpdir:
            config_path = Path(tmpdir) / "config.json"
            config_path.write_text(json.dumps({"hung_after": 2.5}))

            config = load_config(config_path)

            assert config.hung_after == 2.5

    def test_save_load_roundtrip(self):
        """A saved config loads back unchanged."""
        with tempfile.TemporaryDirectory() as tmpdir:
            config_path = Path(tmpdir) / "nested" / "config.json"
            original = BridgeConfig(
                query_timeout=None,
                mutation_policy=MutationPolicy.REJECT,
                retry=RetryPolicy(max_attempts=4),
            )
            with patch("repobridge.config.CONFIG_PATH", config_path):
                save_config(original)
                assert config_path.exists()
                assert load_config() == original

    def test_config_to_dict_is_json(self):
        """The dict form serializes the enum by value."""
        data = config_to_dict(BridgeConfig())
        assert data["mutation_policy"] == "replace"
        json.dumps(data)

    def test_invalid_json_raises_config_load_error(self):
        """Malformed JSON is a load error with the line number."""
        with tempfile.TemporaryDirectory() as tmpdir:
            config_path = Path(tmpdir) / "config.json"
            config_path.write_text("{not json")

            with pytest.raises(ConfigLoadError) as exc_info:
                load_config(config_path)
            assert exc_info.value.context["line"] == 1

    def test_non_object_raises_validation_error(self):
        """The top level must be an object."""
        with tempfile.TemporaryDirectory() as tmpdir:
            config_path = Path(tmpdir) / "config.json"
            config_path.write_text("[1, 2]")

            with pytest.raises(ConfigValidationError):
                load_config(config_path)

    def test_save_failure_raises_config_save_error(self):
        """Write failures are wrapped."""
        with tempfile.TemporaryDirectory() as tmpdir:
            blocker = Path(tmpdir) / "file"
            blocker.write_text("")
            with pytest.raises(ConfigSaveError):
                save_config(BridgeConfig(), blocker / "config.json")


class TestPathHelpers:
    """Test path accessors."""

    def test_paths(self):
        """The config file lives in the config directory."""
        assert get_config_path().parent == get_config_dir()
        assert get_config_path().name == "config.json"
