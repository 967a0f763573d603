"""Shared bar factories and engine fixtures."""

from __future__ import annotations

import random
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from patternwatch.config import Settings
from patternwatch.engines.pattern_engine import PatternEngine
from patternwatch.models import Bar

BASE_TIME = datetime(2024, 1, 1, tzinfo=timezone.utc)
INTERVAL = timedelta(hours=1)


def make_bar(i: int, close, spread="1", high=None, low=None) -> Bar:
    """Bar ``i`` of an hourly series; high/low default to close +/- spread."""
    c = Decimal(str(close))
    s = Decimal(str(spread))
    h = Decimal(str(high)) if high is not None else c + s
    lo = Decimal(str(low)) if low is not None else c - s
    open_time = BASE_TIME + INTERVAL * i
    return Bar(
        open_time=open_time,
        close_time=open_time + INTERVAL - timedelta(seconds=1),
        open=c,
        high=h,
        low=lo,
        close=c,
        volume=Decimal(1000 + i),
    )


def make_bars_from_closes(closes, spread="1", start: int = 0) -> list[Bar]:
    return [make_bar(start + i, c, spread) for i, c in enumerate(closes)]


def make_bars_from_highs(highs, start: int = 0) -> list[Bar]:
    """Bars whose high is exactly ``highs[i]`` (close sits one below)."""
    bars = []
    for i, h in enumerate(highs):
        h = Decimal(str(h))
        bars.append(make_bar(start + i, h - 1, high=h, low=h - 2))
    return bars


def random_walk(n: int, seed: int = 42) -> list[Bar]:
    rng = random.Random(seed)
    price = Decimal("100")
    bars = []
    for i in range(n):
        price += Decimal(str(round(rng.uniform(-2, 2), 2)))
        wick_up = Decimal(str(round(rng.uniform(0, 1.5), 2)))
        wick_down = Decimal(str(round(rng.uniform(0, 1.5), 2)))
        bars.append(make_bar(i, price, high=price + wick_up, low=price - wick_down))
    return bars


@pytest.fixture
def settings() -> Settings:
    return Settings(_env_file=None)


@pytest.fixture
def engine(settings) -> PatternEngine:
    return PatternEngine(settings)


def feed(engine: PatternEngine, bars, params, state=None):
    """Stream ``bars`` through ``on_new_bar``; returns (state, last result)."""
    result = None
    for bar in bars:
        result = engine.on_new_bar(bar, params, state)
        state = result.state
    return state, result
