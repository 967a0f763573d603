"""
Patternwatch: streaming chart-pattern recognition.

Incremental indicators over time-ordered OHLCV bars, led by the pattern
engine (swing detection, geometric classification, pattern lifecycle) and
the shared shape-emission contract chart clients render.
"""

from patternwatch.config import Settings, get_settings
from patternwatch.engines import BarResult, PatternEngine, PatternState, StreamingIndicator
from patternwatch.errors import (
    IndicatorNotFoundError,
    InitCancelled,
    InstanceNotFoundError,
    PatternwatchError,
    PreconditionViolation,
)
from patternwatch.instance_manager import IndicatorInstanceManager
from patternwatch.models import Bar, Bias, PatternParams, PatternType

__version__ = "1.0.0"

__all__ = [
    "Bar",
    "BarResult",
    "Bias",
    "IndicatorInstanceManager",
    "IndicatorNotFoundError",
    "InitCancelled",
    "InstanceNotFoundError",
    "PatternEngine",
    "PatternParams",
    "PatternState",
    "PatternType",
    "PatternwatchError",
    "PreconditionViolation",
    "Settings",
    "StreamingIndicator",
    "get_settings",
]
