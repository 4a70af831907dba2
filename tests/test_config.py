"""
Tests for engine settings and the exception hierarchy.
"""
import sys
import os

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "src"))

import constants as C
from config import DEFAULT_SETTINGS, ENV_PREFIX, EngineSettings, resolve
from exceptions import ConfigurationError, EngineContractError, InsightsEngineError


class TestEngineSettings:

    def test_defaults_mirror_constants(self):
        s = EngineSettings()
        assert s.baseline_window_days == C.BASELINE_WINDOW_DAYS
        assert s.trend_deadband == C.TREND_DEADBAND
        assert s.max_recommendations == C.MAX_RECOMMENDATIONS

    def test_empty_environment_gives_defaults(self):
        assert EngineSettings.from_env({}) == EngineSettings()

    def test_overrides_are_typed(self):
        s = EngineSettings.from_env({
            ENV_PREFIX + "BASELINE_WINDOW_DAYS": "60",
            ENV_PREFIX + "TREND_DEADBAND": "0.08",
        })
        assert s.baseline_window_days == 60
        assert isinstance(s.baseline_window_days, int)
        assert s.trend_deadband == pytest.approx(0.08)

    def test_blank_value_ignored(self):
        s = EngineSettings.from_env({ENV_PREFIX + "MAX_RECOMMENDATIONS": "  "})
        assert s.max_recommendations == C.MAX_RECOMMENDATIONS

    def test_unrelated_variables_ignored(self):
        assert EngineSettings.from_env({"MAX_RECOMMENDATIONS": "1"}) == EngineSettings()

    def test_bad_value_raises(self):
        with pytest.raises(ConfigurationError) as exc:
            EngineSettings.from_env({ENV_PREFIX + "SHRINKAGE_K": "five"})
        assert "SHRINKAGE_K" in str(exc.value)

    def test_frozen(self):
        with pytest.raises(Exception):
            DEFAULT_SETTINGS.max_recommendations = 3

    def test_resolve(self):
        custom = EngineSettings(max_recommendations=3)
        assert resolve(custom) is custom
        assert resolve(None) is DEFAULT_SETTINGS


class TestExceptions:

    def test_hierarchy(self):
        assert issubclass(EngineContractError, InsightsEngineError)
        assert issubclass(ConfigurationError, InsightsEngineError)

    def test_contract_error_context(self):
        err = EngineContractError("corrupt entry field", index=3, field="painLevel")
        assert err.index == 3
        assert err.field == "painLevel"
        assert str(err) == "corrupt entry field (field='painLevel', index=3)"

    def test_plain_message(self):
        assert str(InsightsEngineError("boom")) == "boom"
