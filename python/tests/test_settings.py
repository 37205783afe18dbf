"""Tests for OrchestratorSettings."""

import logging

import pytest
from pydantic import ValidationError

from contentcore.config.settings import OrchestratorSettings, get_settings
from stubs import make_settings


def test_defaults():
    s = make_settings()
    assert s.new_architecture_percentage == 100
    assert s.quality_threshold == 0.7
    assert s.default_fallback_strategy == "default"
    assert s.stage_timeouts() == {"research": 10, "generate": 15, "optimize": 5, "validate": 3}
    assert s.stage_retries() == {"research": 2, "generate": 3, "optimize": 1, "validate": 1}


def test_log_level_normalized():
    s = make_settings(log_level="debug")
    assert s.log_level == "DEBUG"
    assert s.get_log_level() == logging.DEBUG


def test_invalid_log_level():
    with pytest.raises(ValidationError):
        make_settings(log_level="LOUD")


def test_invalid_log_format():
    with pytest.raises(ValidationError):
        make_settings(log_format="xml")


def test_invalid_fallback_strategy():
    with pytest.raises(ValidationError):
        make_settings(default_fallback_strategy="reckless")


def test_percentage_bounds():
    with pytest.raises(ValidationError):
        make_settings(new_architecture_percentage=101)


def test_languages_lowercased():
    assert make_settings(cultural_adaptation_languages=["NO", "Sv"]).cultural_adaptation_languages == ["no", "sv"]


def test_env_prefix(monkeypatch):
    monkeypatch.setenv("CONTENTCORE_NEW_ARCHITECTURE_PERCENTAGE", "25")
    monkeypatch.setenv("CONTENTCORE_ENABLE_HYBRID_COMPARISON", "true")
    s = OrchestratorSettings(_env_file=None)
    assert s.new_architecture_percentage == 25
    assert s.enable_hybrid_comparison is True


def test_low_default_estimate_warns(caplog):
    with caplog.at_level(logging.WARNING, logger="contentcore.config.settings"):
        make_settings(default_quality_estimate=0.5)
    assert "below quality_threshold" in caplog.text


def test_get_settings_is_cached(monkeypatch):
    get_settings.cache_clear()
    monkeypatch.setenv("CONTENTCORE_QUEUE_DEPTH_THRESHOLD", "4")
    try:
        assert get_settings() is get_settings()
        assert get_settings().queue_depth_threshold == 4
    finally:
        get_settings.cache_clear()
