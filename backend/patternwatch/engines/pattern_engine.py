"""
Patternwatch: Pattern Detection Engine

Streaming recognition of classic chart patterns from closed OHLCV bars.

Per bar:
  1. append the bar to a bounded buffer
  2. run the swing detector on the bar that is now ``pivot_strength`` old
  3. once warm, advance the lifecycle of active patterns (confirm / expire)
  4. run the enabled classifier families and admit non-overlapping candidates

Reversal patterns (pivot geometry):
  Head & Shoulders (& Inverse), Double Top/Bottom, Triple Top/Bottom

Continuation patterns:
  Ascending/Descending/Symmetrical Triangle, Rising/Falling Wedge (pivots),
  Bull/Bear Flag (raw bars)

Lifecycle: detected -> active -> confirmed | expired. Both exits are terminal.
A pattern confirms when a bar closes beyond its boundary in the direction of
its bias and expires once its first pivot is more than ``2 x max_pattern_bars``
bars old.

All prices are ``Decimal`` so tolerance checks compare exactly.
"""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Optional

import structlog

from patternwatch.config import Settings, get_settings
from patternwatch.engines.indicator_base import IndicatorCategory, IndicatorState, StreamingIndicator
from patternwatch.engines.shape_emitter import ShapeBatch, emit_shapes
from patternwatch.engines.swing_detector import is_pivot_high, is_pivot_low
from patternwatch.errors import PreconditionViolation
from patternwatch.models import FLAG_LOOKBACK, Bar, Bias, PatternParams, PatternType

log = structlog.get_logger(__name__)

FLAT_SLOPE_RATIO = Decimal("0.01")
FLAG_POLE_RATIO = Decimal("0.03")
FLAG_CONSOLIDATION_RATIO = Decimal("0.3")
TRIANGLE_PIVOTS = 4
WEDGE_PIVOTS = 3


# ──────────────────────────────────────────────
# Pattern Data Models
# ──────────────────────────────────────────────

@dataclass(frozen=True)
class Pivot:
    """A confirmed swing point.

    ``bar_index`` is the stream's 0-based bar sequence number, so it stays
    valid after the bar buffer has been trimmed.
    """
    price: Decimal
    time: datetime
    bar_index: int
    is_high: bool

    def to_dict(self) -> dict:
        return {
            "price": self.price,
            "time": self.time.isoformat(),
            "barIndex": self.bar_index,
            "isHigh": self.is_high,
        }


@dataclass
class Pattern:
    """A detected chart pattern holding copies of its pivots."""
    type: PatternType
    bias: Bias
    pivots: tuple[Pivot, ...]
    start_time: datetime
    end_time: datetime
    target_price: Optional[Decimal] = None
    confirmed: bool = False
    active: bool = True
    detected_at: int = 0

    @property
    def key(self) -> tuple:
        return (self.type, tuple(p.bar_index for p in self.pivots))

    @property
    def bar_indices(self) -> frozenset[int]:
        return frozenset(p.bar_index for p in self.pivots)

    @property
    def first_bar_index(self) -> int:
        return min(p.bar_index for p in self.pivots)

    @property
    def support(self) -> Optional[Decimal]:
        lows = [p.price for p in self.pivots if not p.is_high]
        return min(lows) if lows else None

    @property
    def resistance(self) -> Optional[Decimal]:
        highs = [p.price for p in self.pivots if p.is_high]
        return max(highs) if highs else None

    def to_dict(self) -> dict:
        d: dict[str, Any] = {
            "type": self.type.value,
            "bias": self.bias.value,
            "confirmed": self.confirmed,
        }
        if self.target_price is not None:
            d["target"] = self.target_price
        return d


@dataclass
class PatternState(IndicatorState):
    """Rolling buffers and pattern bookkeeping for one stream."""
    bar_buffer: deque = field(default_factory=deque)
    pivot_highs: list[Pivot] = field(default_factory=list)
    pivot_lows: list[Pivot] = field(default_factory=list)
    active_patterns: list[Pattern] = field(default_factory=list)
    confirmed_patterns: deque = field(default_factory=deque)
    retired_keys: dict[tuple, int] = field(default_factory=dict)   # key -> first pivot index
    just_confirmed: list[Pattern] = field(default_factory=list)
    total_detected: int = 0
    total_confirmed: int = 0
    pivot_capacity: int = 50
    pivot_strength: int = 0
    shapes: ShapeBatch = field(default_factory=ShapeBatch)

    def add_pivot(self, pivot: Pivot) -> bool:
        """Append a pivot unless one already exists at its bar index.

        Returns False for duplicates. When the list outgrows ``pivot_capacity``
        the oldest pivots no active pattern references are evicted.
        """
        pivots = self.pivot_highs if pivot.is_high else self.pivot_lows
        if any(p.bar_index == pivot.bar_index for p in pivots):
            return False
        pivots.append(pivot)
        self._trim_pivots(pivots)
        return True

    def _trim_pivots(self, pivots: list[Pivot]) -> None:
        if len(pivots) <= self.pivot_capacity:
            return
        referenced = {p for pattern in self.active_patterns for p in pattern.pivots}
        excess = len(pivots) - self.pivot_capacity
        keep = []
        for p in pivots:
            if excess > 0 and p not in referenced:
                excess -= 1
                continue
            keep.append(p)
        pivots[:] = keep

    def overlaps_active(self, candidate: Pattern) -> bool:
        """True when a pivot-built candidate reuses a pivot of an active pivot-built pattern.

        Flags come from raw bars and their anchors are not swing pivots, so
        they neither claim pivots nor are blocked by claimed ones.
        """
        if candidate.type.is_flag:
            return False
        claimed = candidate.bar_indices
        return any(
            claimed & pattern.bar_indices
            for pattern in self.active_patterns
            if not pattern.type.is_flag
        )

    def retire(self, pattern: Pattern) -> None:
        self.retired_keys[pattern.key] = pattern.first_bar_index

    def prune_retired(self, horizon: int) -> None:
        """Forget retired keys whose first pivot is past the admission horizon."""
        stale = [k for k, first in self.retired_keys.items() if self.bar_index - first > horizon]
        for key in stale:
            del self.retired_keys[key]


# ──────────────────────────────────────────────
# Geometry helpers
# ──────────────────────────────────────────────

def _mean(values: list[Decimal]) -> Decimal:
    return sum(values, Decimal(0)) / Decimal(len(values))


def _within_tolerance(a: Decimal, b: Decimal, ratio: Decimal) -> bool:
    """``|a - b| / mean(a, b) <= ratio``; a zero mean never matches."""
    mean = (a + b) / 2
    if mean == 0:
        return False
    return abs(a - b) / abs(mean) <= ratio


def _all_within_tolerance(prices: list[Decimal], ratio: Decimal) -> bool:
    avg = _mean(prices)
    if avg == 0:
        return False
    return all(abs(p - avg) / abs(avg) <= ratio for p in prices)


def _between(pivots: list[Pivot], start: int, end: int) -> list[Pivot]:
    return [p for p in pivots if start < p.bar_index < end]


def _chronological(*groups: list[Pivot]) -> tuple[Pivot, ...]:
    merged = [p for group in groups for p in group]
    return tuple(sorted(merged, key=lambda p: (p.bar_index, not p.is_high)))


# ──────────────────────────────────────────────
# Engine
# ──────────────────────────────────────────────

class PatternEngine(StreamingIndicator[PatternParams, PatternState]):
    """Streaming chart-pattern detector.

    Usage:
        engine = PatternEngine()
        state = engine.init(history, {"pivotStrength": 5})
        result = engine.on_new_bar(bar, {"pivotStrength": 5}, state)
        payload = result.to_payload()
    """

    id = "pattern-detection"
    name = "Pattern Detection"
    description = (
        "Detects classic chart patterns including Head & Shoulders, Double Tops/Bottoms, "
        "Triangles, Wedges, Flags, and more"
    )
    category = IndicatorCategory.OVERLAY
    params_model = PatternParams
    state_type = PatternState

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()

    def get_min_required_candles(self, params=None) -> int:
        return self.parse_params(params).min_required_candles

    # ──────────────────────────────────────────
    # StreamingIndicator hooks
    # ──────────────────────────────────────────

    def create_state(self, params: PatternParams) -> PatternState:
        return PatternState(
            bar_buffer=deque(maxlen=params.effective_buffer_capacity),
            confirmed_patterns=deque(maxlen=self.settings.confirmed_history_size),
            pivot_capacity=self.settings.pivot_history_size,
            pivot_strength=params.pivot_strength,
        )

    def check_state(self, state: PatternState, params: PatternParams) -> None:
        if (
            state.pivot_strength != params.pivot_strength
            or state.bar_buffer.maxlen != params.effective_buffer_capacity
        ):
            raise PreconditionViolation(
                "pivotStrength and bufferCapacity cannot change once a stream has started",
                details={
                    "pivot_strength": state.pivot_strength,
                    "buffer_capacity": state.bar_buffer.maxlen,
                },
            )

    def step(self, bar: Bar, params: PatternParams, state: PatternState) -> None:
        state.bar_buffer.append(bar)
        state.bar_index += 1
        state.last_close_time = bar.close_time
        state.just_confirmed = []

        self._detect_pivots(state, params.pivot_strength)

        if state.bar_index < params.min_required_candles:
            return

        self._update_active_patterns(state, bar, params)

        if params.detect_reversal:
            self._detect_head_and_shoulders(state, params)
            self._detect_double_tops_bottoms(state, params)
            self._detect_triple_tops_bottoms(state, params)
        if params.detect_continuation:
            self._detect_triangles(state, params)
            self._detect_wedges(state, params)
            self._detect_flags(state, params)

    def emit(self, state: PatternState, params: PatternParams) -> ShapeBatch:
        state.shapes = emit_shapes(
            state.active_patterns,
            state.confirmed_patterns,
            show_labels=params.show_labels,
            recent=self.settings.recent_confirmed_to_draw,
        )
        return state.shapes

    def values(self, state: PatternState, params: PatternParams) -> dict[str, Any]:
        return {
            "activePatterns": len(state.active_patterns),
            "confirmedPatterns": state.total_confirmed,
            "totalDetected": state.total_detected,
        }

    def extras(self, state: PatternState, params: PatternParams) -> dict[str, Any]:
        reported = list(state.active_patterns) + state.just_confirmed
        return {"patterns": [p.to_dict() for p in reported]}

    # ──────────────────────────────────────────
    # Pivots
    # ──────────────────────────────────────────

    def _detect_pivots(self, state: PatternState, strength: int) -> None:
        window = list(state.bar_buffer)
        check = len(window) - strength - 1
        if check < strength:
            return

        bar = window[check]
        seq = state.bar_index - 1 - strength
        if is_pivot_high(window, check, strength, strength):
            if state.add_pivot(Pivot(bar.high, bar.open_time, seq, True)):
                log.debug("pattern_engine.pivot", kind="high", bar_index=seq, price=str(bar.high))
        if is_pivot_low(window, check, strength, strength):
            if state.add_pivot(Pivot(bar.low, bar.open_time, seq, False)):
                log.debug("pattern_engine.pivot", kind="low", bar_index=seq, price=str(bar.low))

    # ──────────────────────────────────────────
    # Admission
    # ──────────────────────────────────────────

    def _admit(self, state: PatternState, params: PatternParams, pattern: Pattern) -> bool:
        """Add ``pattern`` to the active set unless another pattern claims it."""
        if state.overlaps_active(pattern):
            return False
        if pattern.key in state.retired_keys:
            return False
        if state.bar_index - pattern.first_bar_index > params.max_pattern_bars * 2:
            return False
        if pattern.type.is_flag and any(p.type == pattern.type for p in state.active_patterns):
            return False

        pattern.detected_at = state.bar_index
        state.active_patterns.append(pattern)
        state.total_detected += 1
        log.debug(
            "pattern_engine.pattern_detected",
            pattern=pattern.type.value,
            bias=pattern.bias.value,
            pivots=[p.bar_index for p in pattern.pivots],
            target=str(pattern.target_price),
        )
        return True

    def _span_ok(self, params: PatternParams, first: Pivot, last: Pivot) -> bool:
        span = last.bar_index - first.bar_index
        return params.min_pattern_bars <= span <= params.max_pattern_bars

    # ──────────────────────────────────────────
    # Reversal patterns
    # ──────────────────────────────────────────

    def _detect_head_and_shoulders(self, state: PatternState, params: PatternParams) -> None:
        self._scan_head_and_shoulders(state, params, tops=True)
        self._scan_head_and_shoulders(state, params, tops=False)

    def _scan_head_and_shoulders(self, state: PatternState, params: PatternParams, tops: bool) -> None:
        same = state.pivot_highs if tops else state.pivot_lows
        opposite = state.pivot_lows if tops else state.pivot_highs

        for i in range(len(same) - 1, 1, -1):
            left, head, right = same[i - 2], same[i - 1], same[i]
            if not self._span_ok(params, left, right):
                continue
            if tops and (head.price <= left.price or head.price <= right.price):
                continue
            if not tops and (head.price >= left.price or head.price >= right.price):
                continue
            if not _within_tolerance(left.price, right.price, params.tolerance_ratio):
                continue

            neck = _between(opposite, left.bar_index, right.bar_index)
            if len(neck) < 2:
                continue

            neckline = _mean([p.price for p in neck])
            target = neckline - (head.price - neckline)
            pattern = Pattern(
                type=PatternType.HEAD_AND_SHOULDERS if tops else PatternType.INVERSE_HEAD_AND_SHOULDERS,
                bias=Bias.BEARISH if tops else Bias.BULLISH,
                pivots=(left, neck[0], head, neck[-1], right),
                start_time=left.time,
                end_time=right.time,
                target_price=target,
            )
            if self._admit(state, params, pattern):
                return

    def _detect_double_tops_bottoms(self, state: PatternState, params: PatternParams) -> None:
        self._scan_double(state, params, tops=True)
        self._scan_double(state, params, tops=False)

    def _scan_double(self, state: PatternState, params: PatternParams, tops: bool) -> None:
        same = state.pivot_highs if tops else state.pivot_lows
        opposite = state.pivot_lows if tops else state.pivot_highs

        for i in range(len(same) - 1, 0, -1):
            first, second = same[i - 1], same[i]
            if not self._span_ok(params, first, second):
                continue
            if not _within_tolerance(first.price, second.price, params.tolerance_ratio):
                continue

            between = _between(opposite, first.bar_index, second.bar_index)
            if not between:
                continue
            middle = (min if tops else max)(between, key=lambda p: p.price)

            avg = (first.price + second.price) / 2
            target = middle.price - (avg - middle.price)
            pattern = Pattern(
                type=PatternType.DOUBLE_TOP if tops else PatternType.DOUBLE_BOTTOM,
                bias=Bias.BEARISH if tops else Bias.BULLISH,
                pivots=(first, middle, second),
                start_time=first.time,
                end_time=second.time,
                target_price=target,
            )
            if self._admit(state, params, pattern):
                return

    def _detect_triple_tops_bottoms(self, state: PatternState, params: PatternParams) -> None:
        self._scan_triple(state, params, tops=True)
        self._scan_triple(state, params, tops=False)

    def _scan_triple(self, state: PatternState, params: PatternParams, tops: bool) -> None:
        same = state.pivot_highs if tops else state.pivot_lows
        opposite = state.pivot_lows if tops else state.pivot_highs
        extreme = min if tops else max

        for i in range(len(same) - 1, 1, -1):
            first, second, third = same[i - 2], same[i - 1], same[i]
            if not self._span_ok(params, first, third):
                continue
            prices = [first.price, second.price, third.price]
            if not _all_within_tolerance(prices, params.tolerance_ratio):
                continue

            gap1 = _between(opposite, first.bar_index, second.bar_index)
            gap2 = _between(opposite, second.bar_index, third.bar_index)
            if not gap1 or not gap2:
                continue
            mid1 = extreme(gap1, key=lambda p: p.price)
            mid2 = extreme(gap2, key=lambda p: p.price)

            level = extreme(mid1.price, mid2.price)
            target = level - (_mean(prices) - level)
            pattern = Pattern(
                type=PatternType.TRIPLE_TOP if tops else PatternType.TRIPLE_BOTTOM,
                bias=Bias.BEARISH if tops else Bias.BULLISH,
                pivots=(first, mid1, second, mid2, third),
                start_time=first.time,
                end_time=third.time,
                target_price=target,
            )
            if self._admit(state, params, pattern):
                return

    # ──────────────────────────────────────────
    # Continuation patterns
    # ──────────────────────────────────────────

    def _detect_triangles(self, state: PatternState, params: PatternParams) -> None:
        highs = state.pivot_highs[-TRIANGLE_PIVOTS:]
        lows = state.pivot_lows[-TRIANGLE_PIVOTS:]
        if len(highs) < 2 or len(lows) < 2:
            return

        first_high, last_high = highs[0], highs[-1]
        first_low, last_low = lows[0], lows[-1]
        high_slope = last_high.price - first_high.price
        low_slope = last_low.price - first_low.price

        if abs(high_slope) < abs(first_high.price) * FLAT_SLOPE_RATIO and low_slope > 0:
            kind, bias = PatternType.ASCENDING_TRIANGLE, Bias.BULLISH
            resistance = _mean([p.price for p in highs])
            target = resistance + (resistance - first_low.price)
        elif abs(low_slope) < abs(first_low.price) * FLAT_SLOPE_RATIO and high_slope < 0:
            kind, bias = PatternType.DESCENDING_TRIANGLE, Bias.BEARISH
            support = _mean([p.price for p in lows])
            target = support - (first_high.price - support)
        elif high_slope < 0 and low_slope > 0:
            kind, bias = PatternType.SYMMETRICAL_TRIANGLE, Bias.NEUTRAL
            # provisional: apex midpoint until the breakout picks a side
            target = (last_high.price + last_low.price) / 2
        else:
            return

        pivots = _chronological(highs, lows)
        self._admit(state, params, Pattern(
            type=kind,
            bias=bias,
            pivots=pivots,
            start_time=pivots[0].time,
            end_time=pivots[-1].time,
            target_price=target,
        ))

    def _detect_wedges(self, state: PatternState, params: PatternParams) -> None:
        highs = state.pivot_highs[-WEDGE_PIVOTS:]
        lows = state.pivot_lows[-WEDGE_PIVOTS:]
        if len(highs) < 2 or len(lows) < 2:
            return

        first_high, last_high = highs[0], highs[-1]
        first_low, last_low = lows[0], lows[-1]
        high_slope = last_high.price - first_high.price
        low_slope = last_low.price - first_low.price

        if high_slope > 0 and low_slope > 0 and low_slope > high_slope:
            kind, bias = PatternType.RISING_WEDGE, Bias.BEARISH
            target = last_low.price - (last_high.price - first_low.price)
        elif high_slope < 0 and low_slope < 0 and high_slope < low_slope:
            kind, bias = PatternType.FALLING_WEDGE, Bias.BULLISH
            target = last_high.price + (first_high.price - last_low.price)
        else:
            return

        pivots = _chronological(highs, lows)
        self._admit(state, params, Pattern(
            type=kind,
            bias=bias,
            pivots=pivots,
            start_time=pivots[0].time,
            end_time=pivots[-1].time,
            target_price=target,
        ))

    def _detect_flags(self, state: PatternState, params: PatternParams) -> None:
        """Strong pole over the first half of the lookback, tight range over the second."""
        if len(state.bar_buffer) < FLAG_LOOKBACK:
            return

        recent = list(state.bar_buffer)[-FLAG_LOOKBACK:]
        half = FLAG_LOOKBACK // 2
        base = recent[0].close
        if base == 0:
            return

        pole = recent[half].close - base
        if abs(pole) < abs(base) * FLAG_POLE_RATIO:
            return

        flag = recent[half:]
        avg_range = _mean([b.range for b in flag])
        if avg_range >= abs(pole) * FLAG_CONSOLIDATION_RATIO:
            return

        # sequence number of recent[0]
        offset = state.bar_index - FLAG_LOOKBACK
        top_pos = max(range(len(flag)), key=lambda j: (flag[j].high, -j))
        bottom_pos = min(range(len(flag)), key=lambda j: (flag[j].low, j))
        top = Pivot(flag[top_pos].high, flag[top_pos].open_time, offset + half + top_pos, True)
        bottom = Pivot(flag[bottom_pos].low, flag[bottom_pos].open_time, offset + half + bottom_pos, False)

        bullish = pole > 0
        self._admit(state, params, Pattern(
            type=PatternType.BULLISH_FLAG if bullish else PatternType.BEARISH_FLAG,
            bias=Bias.BULLISH if bullish else Bias.BEARISH,
            pivots=_chronological([top], [bottom]),
            start_time=recent[0].open_time,
            end_time=recent[-1].open_time,
            target_price=recent[-1].close + pole,
        ))

    # ──────────────────────────────────────────
    # Lifecycle
    # ──────────────────────────────────────────

    def _update_active_patterns(self, state: PatternState, bar: Bar, params: PatternParams) -> None:
        horizon = params.max_pattern_bars * 2
        still_active: list[Pattern] = []

        for pattern in state.active_patterns:
            if self._check_breakout(pattern, bar.close):
                pattern.confirmed = True
                pattern.active = False
                state.confirmed_patterns.append(pattern)
                state.retire(pattern)
                state.just_confirmed.append(pattern)
                state.total_confirmed += 1
                log.info(
                    "pattern_engine.pattern_confirmed",
                    pattern=pattern.type.value,
                    bias=pattern.bias.value,
                    close=str(bar.close),
                    target=str(pattern.target_price),
                    bar_index=state.bar_index,
                )
            elif state.bar_index - pattern.first_bar_index > horizon:
                pattern.active = False
                state.retire(pattern)
                log.info(
                    "pattern_engine.pattern_expired",
                    pattern=pattern.type.value,
                    first_bar_index=pattern.first_bar_index,
                    bar_index=state.bar_index,
                )
            else:
                still_active.append(pattern)

        state.active_patterns = still_active
        state.prune_retired(horizon)

    def _check_breakout(self, pattern: Pattern, close: Decimal) -> bool:
        """Confirm on a strict close beyond the boundary implied by the bias."""
        support, resistance = pattern.support, pattern.resistance

        if pattern.type == PatternType.SYMMETRICAL_TRIANGLE:
            if support is None or resistance is None:
                return False
            height = resistance - support
            if close > resistance:
                pattern.bias = Bias.BULLISH
                pattern.target_price = resistance + height
                return True
            if close < support:
                pattern.bias = Bias.BEARISH
                pattern.target_price = support - height
                return True
            return False

        if pattern.bias == Bias.BEARISH:
            return support is not None and close < support
        if pattern.bias == Bias.BULLISH:
            return resistance is not None and close > resistance
        return False
