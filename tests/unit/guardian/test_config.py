"""
Tests for configuration management in `guardian/config.py`.

Covers:
- Environment parsing and debug defaults
- Logging level coercion to the expected Literal
- Optional assignment timeout and auto-assign parsing
- Field constraints failing fast
- get_config cache behavior
- AppConfig validation (debug only allowed in development)
"""

from __future__ import annotations

from collections.abc import Iterator

import pytest

from guardian.config import (
    AppConfig,
    GeofenceConfig,
    MatchingConfig,
    config_summary,
    get_config,
    load_config_from_env,
    reset_config_cache,
)

_ENV_KEYS = (
    "ENVIRONMENT",
    "LOG_LEVEL",
    "MATCHING_INTERVAL_SECONDS",
    "MAX_VOLUNTEERS_PER_CASE",
    "ASSIGNMENT_TIMEOUT_SECONDS",
    "AUTO_ASSIGN_VOLUNTEERS",
    "MIN_GEOFENCE_RADIUS",
    "MAX_GEOFENCE_RADIUS",
    "CASE_RETENTION_DAYS",
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch: pytest.MonkeyPatch) -> Iterator[None]:
    """Start every test from defaults with an empty config cache."""
    for key in _ENV_KEYS:
        monkeypatch.delenv(key, raising=False)
    reset_config_cache()
    yield
    reset_config_cache()


def test_load_config_dev_defaults() -> None:
    config = load_config_from_env()

    assert config.environment == "development"
    assert config.debug is True
    assert config.logging.format == "console"
    assert config.matching.max_volunteers_per_case == 10
    assert config.matching.matching_interval_seconds == 60.0
    assert config.matching.assignment_timeout_seconds is None
    assert config.matching.auto_assign is False
    assert config.geofence.min_radius_meters == 50.0
    assert config.geofence.max_radius_meters == 5000.0
    assert config.cases.retention_days == 30


def test_production_uses_json_logging(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("ENVIRONMENT", "prod")
    config = load_config_from_env()

    assert config.environment == "production"
    assert config.debug is False
    assert config.logging.format == "json"


def test_log_level_coercion(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("LOG_LEVEL", "debug")
    assert load_config_from_env().logging.level == "DEBUG"

    monkeypatch.setenv("LOG_LEVEL", "chatty")
    assert load_config_from_env().logging.level == "INFO"


def test_matching_overrides(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("MATCHING_INTERVAL_SECONDS", "15")
    monkeypatch.setenv("MAX_VOLUNTEERS_PER_CASE", "4")
    monkeypatch.setenv("ASSIGNMENT_TIMEOUT_SECONDS", "300")
    monkeypatch.setenv("AUTO_ASSIGN_VOLUNTEERS", "yes")

    matching = load_config_from_env().matching

    assert matching.matching_interval_seconds == 15.0
    assert matching.max_volunteers_per_case == 4
    assert matching.assignment_timeout_seconds == 300.0
    assert matching.auto_assign is True


@pytest.mark.parametrize("raw", ["", "none", "None"])
def test_blank_assignment_timeout_disables_it(monkeypatch: pytest.MonkeyPatch, raw: str) -> None:
    monkeypatch.setenv("ASSIGNMENT_TIMEOUT_SECONDS", raw)
    assert load_config_from_env().matching.assignment_timeout_seconds is None


def test_invalid_values_fail_fast(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("MAX_VOLUNTEERS_PER_CASE", "0")
    with pytest.raises(ValueError):
        load_config_from_env()


def test_radius_bounds_must_be_ordered() -> None:
    with pytest.raises(ValueError, match="min_radius_meters"):
        GeofenceConfig(min_radius_meters=6000, max_radius_meters=5000)


def test_negative_weights_rejected() -> None:
    with pytest.raises(ValueError):
        MatchingConfig(distance_weight=-1)
    with pytest.raises(ValueError):
        MatchingConfig(assignment_timeout_seconds=0)


def test_debug_only_allowed_in_development() -> None:
    with pytest.raises(ValueError, match="debug mode"):
        AppConfig(environment="production", debug=True)


def test_get_config_is_cached(monkeypatch: pytest.MonkeyPatch) -> None:
    first = get_config()
    monkeypatch.setenv("MAX_VOLUNTEERS_PER_CASE", "7")
    assert get_config() is first

    reset_config_cache()
    assert get_config().matching.max_volunteers_per_case == 7


def test_config_summary_sections() -> None:
    summary = config_summary(AppConfig())
    assert set(summary) == {"environment", "geofence", "matching", "cases"}
    assert summary["matching"]["max_volunteers_per_case"] == 10
