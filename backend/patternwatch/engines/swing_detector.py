"""
Patternwatch: Swing Detector

Pure pivot tests over a bar window. A bar is a pivot high when its high is
strictly above every high in the ``left`` bars before it and the ``right``
bars after it; pivot lows mirror that on ``low``. Ties disqualify, so a
plateau never yields a pivot.

Because the test needs ``right`` bars of future context, a pivot at bar T is
only knowable once bar T + right has closed.
"""

from __future__ import annotations

from collections.abc import Sequence

from patternwatch.models import Bar


def _decidable(size: int, index: int, left: int, right: int) -> bool:
    return left >= 0 and right >= 0 and left <= index < size - right


def is_pivot_high(bars: Sequence[Bar], index: int, left: int, right: int) -> bool:
    """True when ``bars[index].high`` is a strict local maximum.

    Indices without enough context on either side return False
    ("not yet decidable", not an error). With highs [1, 2, 3, 2, 1] and
    left=right=2, index 2 is a pivot high; with [1, 2, 3, 3, 1] nothing is.
    """
    if not _decidable(len(bars), index, left, right):
        return False
    candidate = bars[index].high
    for j in range(index - left, index + right + 1):
        if j != index and bars[j].high >= candidate:
            return False
    return True


def is_pivot_low(bars: Sequence[Bar], index: int, left: int, right: int) -> bool:
    """True when ``bars[index].low`` is a strict local minimum."""
    if not _decidable(len(bars), index, left, right):
        return False
    candidate = bars[index].low
    for j in range(index - left, index + right + 1):
        if j != index and bars[j].low <= candidate:
            return False
    return True
