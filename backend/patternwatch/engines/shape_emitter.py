"""
Patternwatch: Shape Emitter

Maps pattern-engine state to renderable geometry: trendlines, pivot markers,
label markers and channel boxes. Everything here is a pure function of its
arguments; calling it twice with the same patterns gives equal batches.

Times are epoch seconds, prices stay ``Decimal``.

Styling:
  confirmed bullish  #00FF00     tentative bullish  #4CAF50
  confirmed bearish  #FF0000     tentative bearish  #F44336
                                 neutral            #2196F3
  solid lines once confirmed, dashed while tentative
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import TYPE_CHECKING, Optional

from patternwatch.models import Bias, PatternType

if TYPE_CHECKING:
    from patternwatch.engines.pattern_engine import Pattern, Pivot

CONFIRMED_COLORS = {Bias.BULLISH: "#00FF00", Bias.BEARISH: "#FF0000"}
TENTATIVE_COLORS = {Bias.BULLISH: "#4CAF50", Bias.BEARISH: "#F44336", Bias.NEUTRAL: "#2196F3"}
DEFAULT_COLOR = "#9E9E9E"

LINE_WIDTH = 2
PIVOT_MARKER_SIZE = 4
LABEL_MARKER_SIZE = 8
LABEL_OFFSET = Decimal("0.02")
CHECKMARK = " ✓"


# ──────────────────────────────────────────────
# Shape Data Models
# ──────────────────────────────────────────────

@dataclass(frozen=True)
class LineShape:
    time1: int
    price1: Decimal
    time2: int
    price2: Decimal
    color: str
    width: int = LINE_WIDTH
    style: str = "solid"       # "solid" | "dashed" | "dotted"
    label: Optional[str] = None

    def to_dict(self) -> dict:
        d = {
            "time1": self.time1,
            "price1": self.price1,
            "time2": self.time2,
            "price2": self.price2,
            "color": self.color,
            "width": self.width,
            "style": self.style,
        }
        if self.label is not None:
            d["label"] = self.label
        return d


@dataclass(frozen=True)
class MarkerShape:
    time: int
    price: Decimal
    shape: str                 # "circle" | "square"
    color: str
    position: str              # "above" | "below"
    size: int
    text: Optional[str] = None

    def to_dict(self) -> dict:
        d = {
            "time": self.time,
            "price": self.price,
            "shape": self.shape,
            "color": self.color,
            "position": self.position,
            "size": self.size,
        }
        if self.text is not None:
            d["text"] = self.text
        return d


@dataclass(frozen=True)
class BoxShape:
    time1: int
    price1: Decimal
    time2: int
    price2: Decimal
    color: str
    style: str = "solid"
    label: Optional[str] = None

    def to_dict(self) -> dict:
        d = {
            "time1": self.time1,
            "price1": self.price1,
            "time2": self.time2,
            "price2": self.price2,
            "color": self.color,
            "style": self.style,
        }
        if self.label is not None:
            d["label"] = self.label
        return d


@dataclass
class ShapeBatch:
    """Shapes for one bar. Replaced wholesale, never patched."""
    lines: list[LineShape] = field(default_factory=list)
    markers: list[MarkerShape] = field(default_factory=list)
    boxes: list[BoxShape] = field(default_factory=list)

    def is_empty(self) -> bool:
        return not (self.lines or self.markers or self.boxes)

    def to_dict(self) -> dict:
        return {
            "lines": [s.to_dict() for s in self.lines],
            "markers": [s.to_dict() for s in self.markers],
            "boxes": [s.to_dict() for s in self.boxes],
        }


# ──────────────────────────────────────────────
# Emission
# ──────────────────────────────────────────────

def emit_shapes(
    active: Iterable[Pattern],
    confirmed: Sequence[Pattern],
    show_labels: bool = True,
    recent: int = 5,
) -> ShapeBatch:
    """Draw every active pattern plus the ``recent`` newest confirmed ones."""
    batch = ShapeBatch()
    for pattern in active:
        draw_pattern(batch, pattern, show_labels)
    if recent > 0:
        for pattern in list(confirmed)[-recent:]:
            draw_pattern(batch, pattern, show_labels)
    return batch


def pattern_color(pattern: Pattern) -> str:
    if pattern.confirmed:
        return CONFIRMED_COLORS.get(pattern.bias, DEFAULT_COLOR)
    return TENTATIVE_COLORS.get(pattern.bias, DEFAULT_COLOR)


def draw_pattern(batch: ShapeBatch, pattern: Pattern, show_labels: bool) -> None:
    if not pattern.pivots:
        return

    color = pattern_color(pattern)
    style = "solid" if pattern.confirmed else "dashed"

    drawer = _DRAWERS.get(pattern.type, _draw_connected)
    drawer(batch, pattern, color, style)

    for pivot in pattern.pivots:
        batch.markers.append(MarkerShape(
            time=_epoch(pivot.time),
            price=pivot.price,
            shape="circle",
            color=color,
            position="above" if pivot.is_high else "below",
            size=PIVOT_MARKER_SIZE,
        ))

    if show_labels:
        prices = [p.price for p in pattern.pivots]
        top = max(prices)
        batch.markers.append(MarkerShape(
            time=_epoch(pattern.pivots[0].time),
            price=top + (top - min(prices)) * LABEL_OFFSET,
            shape="square",
            color=color,
            position="above",
            size=LABEL_MARKER_SIZE,
            text=pattern.type.value + (CHECKMARK if pattern.confirmed else ""),
        ))


# ── Per-family drawers ──

def _draw_head_and_shoulders(batch: ShapeBatch, pattern: Pattern, color: str, style: str) -> None:
    if len(pattern.pivots) < 5:
        return
    left, left_low, head, right_low, right = pattern.pivots[:5]
    batch.lines.append(_line(left_low, right_low, color, style, label="Neckline"))
    batch.lines.append(_line(left, right, color, style))
    batch.lines.append(_line(left, head, color, "dotted", width=1))
    batch.lines.append(_line(head, right, color, "dotted", width=1))


def _draw_double(batch: ShapeBatch, pattern: Pattern, color: str, style: str) -> None:
    if len(pattern.pivots) < 3:
        return
    first, middle, second = pattern.pivots[:3]
    label = "Resistance" if pattern.type == PatternType.DOUBLE_TOP else "Support"
    batch.lines.append(_line(first, second, color, style, label=label))

    t1, t2 = _epoch(first.time), _epoch(second.time)
    batch.lines.append(LineShape(
        time1=t1, price1=middle.price,
        time2=t2 + (t2 - t1) // 2, price2=middle.price,
        color=color, style=style, label="Neckline",
    ))


def _draw_triple(batch: ShapeBatch, pattern: Pattern, color: str, style: str) -> None:
    if len(pattern.pivots) < 5:
        return
    first, mid1, _, mid2, third = pattern.pivots[:5]
    tops = pattern.type == PatternType.TRIPLE_TOP
    label = "Triple Resistance" if tops else "Triple Support"
    batch.lines.append(_line(first, third, color, style, label=label))

    # breakout level: lowest valley for tops, highest peak for bottoms
    level = min(mid1.price, mid2.price) if tops else max(mid1.price, mid2.price)
    t1, t2 = _epoch(first.time), _epoch(third.time)
    batch.lines.append(LineShape(
        time1=_epoch(mid1.time), price1=level,
        time2=t2 + (t2 - t1) // 2, price2=level,
        color=color, style=style, label="Neckline",
    ))


def _draw_converging(batch: ShapeBatch, pattern: Pattern, color: str, style: str) -> None:
    """Upper and lower trendlines, extended half their span toward the apex."""
    highs = [p for p in pattern.pivots if p.is_high]
    lows = [p for p in pattern.pivots if not p.is_high]
    if len(highs) < 2 or len(lows) < 2:
        return

    end = max(_epoch(highs[-1].time), _epoch(lows[-1].time))
    start = min(_epoch(highs[0].time), _epoch(lows[0].time))
    extend_to = end + (end - start) // 2

    for side, label in ((highs, "Resistance"), (lows, "Support")):
        first, last = side[0], side[-1]
        t1, t2 = _epoch(first.time), _epoch(last.time)
        if t2 == t1:
            continue
        slope = (last.price - first.price) / Decimal(t2 - t1)
        batch.lines.append(LineShape(
            time1=t1, price1=first.price,
            time2=extend_to, price2=last.price + slope * Decimal(extend_to - t2),
            color=color, style=style, label=label,
        ))


def _draw_flag(batch: ShapeBatch, pattern: Pattern, color: str, style: str) -> None:
    prices = [p.price for p in pattern.pivots]
    top, bottom = max(prices), min(prices)
    t1, t2 = _epoch(pattern.start_time), _epoch(pattern.end_time)
    batch.boxes.append(BoxShape(
        time1=t1, price1=top, time2=t2, price2=bottom,
        color=color, style=style, label=pattern.type.value,
    ))
    batch.lines.append(LineShape(time1=t1, price1=top, time2=t2, price2=top, color=color, style=style))
    batch.lines.append(LineShape(time1=t1, price1=bottom, time2=t2, price2=bottom, color=color, style=style))


def _draw_connected(batch: ShapeBatch, pattern: Pattern, color: str, style: str) -> None:
    for a, b in zip(pattern.pivots, pattern.pivots[1:]):
        batch.lines.append(_line(a, b, color, style))


_DRAWERS = {
    PatternType.HEAD_AND_SHOULDERS: _draw_head_and_shoulders,
    PatternType.INVERSE_HEAD_AND_SHOULDERS: _draw_head_and_shoulders,
    PatternType.DOUBLE_TOP: _draw_double,
    PatternType.DOUBLE_BOTTOM: _draw_double,
    PatternType.TRIPLE_TOP: _draw_triple,
    PatternType.TRIPLE_BOTTOM: _draw_triple,
    PatternType.ASCENDING_TRIANGLE: _draw_converging,
    PatternType.DESCENDING_TRIANGLE: _draw_converging,
    PatternType.SYMMETRICAL_TRIANGLE: _draw_converging,
    PatternType.RISING_WEDGE: _draw_converging,
    PatternType.FALLING_WEDGE: _draw_converging,
    PatternType.BULLISH_FLAG: _draw_flag,
    PatternType.BEARISH_FLAG: _draw_flag,
}


# ── Helpers ──

def _epoch(ts: datetime) -> int:
    return int(ts.timestamp())


def _line(a: Pivot, b: Pivot, color: str, style: str, width: int = LINE_WIDTH, label: Optional[str] = None) -> LineShape:
    return LineShape(
        time1=_epoch(a.time), price1=a.price,
        time2=_epoch(b.time), price2=b.price,
        color=color, width=width, style=style, label=label,
    )
