"""
Patternwatch: Pydantic Models

I/O schemas for the streaming engines. The upstream feed supplies ``Bar``s,
callers configure instances with ``PatternParams``, and the pattern engine
tags its output with ``PatternType`` / ``Bias``.
"""

from __future__ import annotations

from collections.abc import Mapping
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator
from pydantic.alias_generators import to_camel

from patternwatch.errors import PreconditionViolation

# Bars inspected by the flag detector (pole half + consolidation half).
FLAG_LOOKBACK = 20


# ──────────────────────────────────────────────
# Enums
# ──────────────────────────────────────────────

class Bias(str, Enum):
    """Directional bias of a pattern."""
    BULLISH = "bullish"
    BEARISH = "bearish"
    NEUTRAL = "neutral"


class PatternFamily(str, Enum):
    """Classifier families, toggled independently."""
    REVERSAL = "reversal"
    CONTINUATION = "continuation"


class PatternType(str, Enum):
    """Closed set of chart patterns the engine recognizes."""
    HEAD_AND_SHOULDERS = "Head and Shoulders"
    INVERSE_HEAD_AND_SHOULDERS = "Inverse Head and Shoulders"
    DOUBLE_TOP = "Double Top"
    DOUBLE_BOTTOM = "Double Bottom"
    TRIPLE_TOP = "Triple Top"
    TRIPLE_BOTTOM = "Triple Bottom"
    ASCENDING_TRIANGLE = "Ascending Triangle"
    DESCENDING_TRIANGLE = "Descending Triangle"
    SYMMETRICAL_TRIANGLE = "Symmetrical Triangle"
    RISING_WEDGE = "Rising Wedge"
    FALLING_WEDGE = "Falling Wedge"
    BULLISH_FLAG = "Bullish Flag"
    BEARISH_FLAG = "Bearish Flag"

    @property
    def family(self) -> PatternFamily:
        if self in _REVERSAL_TYPES:
            return PatternFamily.REVERSAL
        return PatternFamily.CONTINUATION

    @property
    def default_bias(self) -> Bias:
        return _DEFAULT_BIAS[self]

    @property
    def is_flag(self) -> bool:
        return self in (PatternType.BULLISH_FLAG, PatternType.BEARISH_FLAG)


_REVERSAL_TYPES = frozenset({
    PatternType.HEAD_AND_SHOULDERS,
    PatternType.INVERSE_HEAD_AND_SHOULDERS,
    PatternType.DOUBLE_TOP,
    PatternType.DOUBLE_BOTTOM,
    PatternType.TRIPLE_TOP,
    PatternType.TRIPLE_BOTTOM,
})

_DEFAULT_BIAS = {
    PatternType.HEAD_AND_SHOULDERS: Bias.BEARISH,
    PatternType.INVERSE_HEAD_AND_SHOULDERS: Bias.BULLISH,
    PatternType.DOUBLE_TOP: Bias.BEARISH,
    PatternType.DOUBLE_BOTTOM: Bias.BULLISH,
    PatternType.TRIPLE_TOP: Bias.BEARISH,
    PatternType.TRIPLE_BOTTOM: Bias.BULLISH,
    PatternType.ASCENDING_TRIANGLE: Bias.BULLISH,
    PatternType.DESCENDING_TRIANGLE: Bias.BEARISH,
    PatternType.SYMMETRICAL_TRIANGLE: Bias.NEUTRAL,
    PatternType.RISING_WEDGE: Bias.BEARISH,
    PatternType.FALLING_WEDGE: Bias.BULLISH,
    PatternType.BULLISH_FLAG: Bias.BULLISH,
    PatternType.BEARISH_FLAG: Bias.BEARISH,
}


# ──────────────────────────────────────────────
# Market Data Models
# ──────────────────────────────────────────────

class Bar(BaseModel):
    """Single immutable OHLCV bar, ordered by ``close_time``."""

    model_config = ConfigDict(frozen=True, alias_generator=to_camel, populate_by_name=True)

    open_time: datetime
    close_time: datetime
    open: Decimal
    high: Decimal
    low: Decimal
    close: Decimal
    volume: Decimal = Field(ge=0)

    @model_validator(mode="after")
    def check_ohlc(self) -> "Bar":
        if self.high < self.low:
            raise ValueError(f"high {self.high} is below low {self.low}")
        if not (self.low <= self.open <= self.high and self.low <= self.close <= self.high):
            raise ValueError("open/close must lie within [low, high]")
        if self.close_time < self.open_time:
            raise ValueError("close_time precedes open_time")
        return self

    @property
    def range(self) -> Decimal:
        return self.high - self.low


# ──────────────────────────────────────────────
# Indicator Parameters
# ──────────────────────────────────────────────

class PatternParams(BaseModel):
    """Typed, validated parameter set for one pattern-engine instance.

    Accepts snake_case names or the camelCase keys used by chart clients
    (``pivotStrength``, ``minPatternBars``...).
    """

    model_config = ConfigDict(
        frozen=True,
        alias_generator=to_camel,
        populate_by_name=True,
        extra="forbid",
    )

    pivot_strength: int = Field(
        default=5, ge=2, le=20,
        description="Bars required on each side to confirm a pivot",
    )
    tolerance: Decimal = Field(
        default=Decimal("2.0"), ge=Decimal("0.5"), le=Decimal("10"),
        description="Price tolerance for pattern matching (percent)",
    )
    min_pattern_bars: int = Field(
        default=10, ge=5, le=100,
        description="Minimum number of bars for pattern formation",
    )
    max_pattern_bars: int = Field(
        default=100, ge=20, le=500,
        description="Maximum number of bars for pattern formation",
    )
    show_labels: bool = Field(default=True, description="Display pattern names and confirmation status")
    detect_reversal: bool = Field(default=True, description="Enable reversal patterns")
    detect_continuation: bool = Field(default=True, description="Enable continuation patterns")
    buffer_capacity: Optional[int] = Field(
        default=None, ge=5,
        description="Bars kept for pivot and flag detection (default max(3 x pivotStrength, 20))",
    )

    @model_validator(mode="after")
    def check_bounds(self) -> "PatternParams":
        if self.min_pattern_bars > self.max_pattern_bars:
            raise ValueError(
                f"minPatternBars ({self.min_pattern_bars}) exceeds maxPatternBars ({self.max_pattern_bars})"
            )
        if self.buffer_capacity is not None and self.buffer_capacity < 2 * self.pivot_strength + 1:
            raise ValueError(
                f"bufferCapacity ({self.buffer_capacity}) cannot hold a pivot window of "
                f"{2 * self.pivot_strength + 1} bars"
            )
        return self

    @property
    def tolerance_ratio(self) -> Decimal:
        return self.tolerance / Decimal(100)

    @property
    def effective_buffer_capacity(self) -> int:
        if self.buffer_capacity is not None:
            return self.buffer_capacity
        return max(3 * self.pivot_strength, FLAG_LOOKBACK)

    @property
    def min_required_candles(self) -> int:
        return self.pivot_strength * 2 + 10

    @classmethod
    def coerce(cls, params: "PatternParams | Mapping[str, Any] | None") -> "PatternParams":
        """Build params from a mapping, raising PreconditionViolation on bad input."""
        if isinstance(params, cls):
            return params
        if params is None:
            return cls()
        if not isinstance(params, Mapping):
            raise PreconditionViolation(f"params must be a mapping, got {type(params).__name__}")
        try:
            return cls.model_validate(dict(params))
        except ValidationError as exc:
            raise PreconditionViolation(
                "invalid pattern parameters",
                details={"errors": exc.errors(include_url=False)},
            ) from exc
