"""
Patternwatch: Settings & Model Validation Tests
"""

from datetime import timedelta
from decimal import Decimal

import pytest

from conftest import BASE_TIME


# ═══════════════════════════════════════════════
#  SETTINGS
# ═══════════════════════════════════════════════

class TestSettings:

    def test_defaults(self, settings):
        assert settings.pivot_history_size == 50
        assert settings.confirmed_history_size == 50
        assert settings.recent_confirmed_to_draw == 5
        assert settings.is_production is False

    def test_env_override(self, monkeypatch):
        from patternwatch.config import Settings
        monkeypatch.setenv("PATTERNWATCH_PIVOT_HISTORY_SIZE", "12")
        monkeypatch.setenv("PATTERNWATCH_APP_ENV", "production")

        s = Settings(_env_file=None)
        assert s.pivot_history_size == 12
        assert s.is_production is True

    def test_env_bounds_enforced(self, monkeypatch):
        from pydantic import ValidationError
        from patternwatch.config import Settings
        monkeypatch.setenv("PATTERNWATCH_PIVOT_HISTORY_SIZE", "2")
        with pytest.raises(ValidationError):
            Settings(_env_file=None)

    def test_get_settings_is_cached(self):
        from patternwatch.config import get_settings
        assert get_settings() is get_settings()

    def test_engine_uses_settings_capacities(self, settings):
        from patternwatch.engines.pattern_engine import PatternEngine
        small = settings.model_copy(update={"confirmed_history_size": 3, "pivot_history_size": 7})
        engine = PatternEngine(small)
        state = engine.create_state(engine.parse_params(None))

        assert state.confirmed_patterns.maxlen == 3
        assert state.pivot_capacity == 7


# ═══════════════════════════════════════════════
#  PATTERN PARAMS
# ═══════════════════════════════════════════════

class TestPatternParams:

    def test_defaults(self):
        from patternwatch.models import PatternParams
        p = PatternParams()
        assert p.pivot_strength == 5
        assert p.tolerance == Decimal("2.0")
        assert p.min_pattern_bars == 10
        assert p.max_pattern_bars == 100
        assert p.show_labels and p.detect_reversal and p.detect_continuation
        assert p.min_required_candles == 20

    def test_camel_and_snake_case(self):
        from patternwatch.models import PatternParams
        a = PatternParams.coerce({"pivotStrength": 7, "minPatternBars": 12})
        b = PatternParams.coerce({"pivot_strength": 7, "min_pattern_bars": 12})
        assert a == b
        assert a.model_dump(by_alias=True)["pivotStrength"] == 7

    def test_tolerance_ratio(self):
        from patternwatch.models import PatternParams
        assert PatternParams(tolerance="2.5").tolerance_ratio == Decimal("0.025")

    @pytest.mark.parametrize("strength, expected", [(2, 20), (5, 20), (7, 21), (10, 30)])
    def test_default_buffer_capacity(self, strength, expected):
        from patternwatch.models import PatternParams
        assert PatternParams(pivot_strength=strength).effective_buffer_capacity == expected

    def test_explicit_buffer_capacity(self):
        from patternwatch.models import PatternParams
        assert PatternParams(pivot_strength=2, buffer_capacity=9).effective_buffer_capacity == 9

    def test_buffer_must_hold_pivot_window(self):
        from patternwatch.errors import PreconditionViolation
        from patternwatch.models import PatternParams
        with pytest.raises(PreconditionViolation):
            PatternParams.coerce({"pivotStrength": 5, "bufferCapacity": 10})

    def test_coerce_passes_instances_through(self):
        from patternwatch.models import PatternParams
        p = PatternParams(pivot_strength=3)
        assert PatternParams.coerce(p) is p
        assert PatternParams.coerce(None) == PatternParams()

    def test_coerce_error_details(self):
        from patternwatch.errors import PreconditionViolation
        from patternwatch.models import PatternParams
        with pytest.raises(PreconditionViolation) as exc_info:
            PatternParams.coerce({"maxPatternBars": 10})

        errors = exc_info.value.details["errors"]
        assert errors[0]["loc"] == ("maxPatternBars",)

    def test_coerce_rejects_non_mapping(self):
        from patternwatch.errors import PreconditionViolation
        from patternwatch.models import PatternParams
        with pytest.raises(PreconditionViolation):
            PatternParams.coerce([("pivotStrength", 3)])

    def test_params_are_frozen(self):
        from pydantic import ValidationError
        from patternwatch.models import PatternParams
        p = PatternParams()
        with pytest.raises(ValidationError):
            p.pivot_strength = 9


# ═══════════════════════════════════════════════
#  BARS & ENUMS
# ═══════════════════════════════════════════════

class TestBar:

    def _raw(self, **overrides):
        raw = {
            "openTime": BASE_TIME,
            "closeTime": BASE_TIME + timedelta(minutes=59),
            "open": "100", "high": "102", "low": "99", "close": "101",
            "volume": "5",
        }
        raw.update(overrides)
        return raw

    def test_valid_bar(self):
        from patternwatch.models import Bar
        bar = Bar.model_validate(self._raw())
        assert bar.range == Decimal("3")
        assert bar.close_time > bar.open_time

    @pytest.mark.parametrize("overrides", [
        {"high": "98"},
        {"close": "103"},
        {"open": "98.5"},
        {"volume": "-1"},
        {"closeTime": BASE_TIME - timedelta(minutes=1)},
    ])
    def test_invalid_bar(self, overrides):
        from pydantic import ValidationError
        from patternwatch.models import Bar
        with pytest.raises(ValidationError):
            Bar.model_validate(self._raw(**overrides))


class TestPatternType:

    def test_families_and_bias(self):
        from patternwatch.models import Bias, PatternFamily, PatternType
        assert PatternType.DOUBLE_TOP.family == PatternFamily.REVERSAL
        assert PatternType.BULLISH_FLAG.family == PatternFamily.CONTINUATION
        assert PatternType.SYMMETRICAL_TRIANGLE.default_bias == Bias.NEUTRAL
        assert PatternType.RISING_WEDGE.default_bias == Bias.BEARISH
        assert PatternType.BEARISH_FLAG.is_flag
        assert not PatternType.TRIPLE_BOTTOM.is_flag

    def test_display_names(self):
        from patternwatch.models import PatternType
        assert PatternType.HEAD_AND_SHOULDERS.value == "Head and Shoulders"
        assert len(PatternType) == 13
