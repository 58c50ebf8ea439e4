"""Tests for settings loading and validation."""

import os

import pytest

from speczero.config import LogFormat, Settings, load_settings
from speczero.exceptions import ConfigurationError, ErrorCode


@pytest.fixture(autouse=True)
def _no_speczero_env(monkeypatch):
    for key in list(os.environ):
        if key.startswith("SPECZERO_"):
            monkeypatch.delenv(key)


def test_defaults():
    settings = load_settings(env_file=None)
    assert settings.log_level == "INFO"
    assert settings.log_format is LogFormat.TEXT
    assert settings.specs_folder == "specs"
    assert settings.summary_max_chars == 500
    assert settings.step_timeout_seconds == 0
    assert settings.require_features_for_mandatory is False
    assert (settings.llm_failure_threshold, settings.llm_cooldown_seconds) == (3, 60)


def test_env_prefix(monkeypatch):
    monkeypatch.setenv("SPECZERO_LOG_LEVEL", "debug")
    monkeypatch.setenv("SPECZERO_MAX_PARALLEL_STEPS", "4")
    settings = load_settings(env_file=None)
    assert settings.log_level == "DEBUG"
    assert settings.max_parallel_steps == 4


def test_env_file(tmp_path):
    env_file = tmp_path / ".env"
    env_file.write_text("SPECZERO_LLM_MODEL=anthropic/claude-test\nSPECZERO_LOG_FORMAT=json\n")
    try:
        settings = load_settings(env_file=str(env_file))
    finally:
        # load_dotenv exported both keys into the process environment
        os.environ.pop("SPECZERO_LLM_MODEL", None)
        os.environ.pop("SPECZERO_LOG_FORMAT", None)
    assert settings.llm_model == "anthropic/claude-test"
    assert settings.log_format is LogFormat.JSON


def test_overrides_win():
    assert load_settings(env_file=None, specs_folder="docs/specs/").specs_folder == "docs/specs"


@pytest.mark.parametrize(
    "overrides",
    [
        {"log_level": "LOUD"},
        {"specs_folder": "../outside"},
        {"specs_folder": "  "},
        {"summary_max_chars": 0},
        {"step_timeout_seconds": -1},
    ],
)
def test_invalid_values_raise_configuration_error(overrides):
    with pytest.raises(ConfigurationError) as exc_info:
        load_settings(env_file=None, **overrides)
    assert exc_info.value.error_code == ErrorCode.CONFIGURATION_ERROR


def test_settings_class_raises_raw_validation_error():
    with pytest.raises(ValueError):
        Settings(_env_file=None, log_level="nope")
