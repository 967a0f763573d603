# Engines: swing detection, indicator protocol, pattern engine, shape emission
from patternwatch.engines.indicator_base import (
    BarResult,
    IndicatorCategory,
    IndicatorState,
    StreamingIndicator,
    TickResult,
)
from patternwatch.engines.pattern_engine import Pattern, PatternEngine, PatternState, Pivot
from patternwatch.engines.shape_emitter import BoxShape, LineShape, MarkerShape, ShapeBatch, emit_shapes
from patternwatch.engines.swing_detector import is_pivot_high, is_pivot_low

__all__ = [
    "BarResult",
    "BoxShape",
    "IndicatorCategory",
    "IndicatorState",
    "LineShape",
    "MarkerShape",
    "Pattern",
    "PatternEngine",
    "PatternState",
    "Pivot",
    "ShapeBatch",
    "StreamingIndicator",
    "TickResult",
    "emit_shapes",
    "is_pivot_high",
    "is_pivot_low",
]
