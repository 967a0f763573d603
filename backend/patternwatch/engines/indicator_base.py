"""
Patternwatch: Streaming Indicator Protocol

Every indicator follows the same three-call contract:

  init(history, params)            bulk warm-up, bar by bar, returns a state
  on_new_bar(bar, params, state)   one call per closed bar -> BarResult
  on_new_tick(price, params, state) optional sub-bar hook -> TickResult

``init`` is a fold of the exact per-bar step ``on_new_bar`` uses, so replaying
history and streaming the same bars produce equal states. The state object is
owned by a single stream and handed back to the caller on every call; nothing
here is shared between streams.
"""

from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, ClassVar, Generic, Optional, TypeVar

import structlog
from pydantic import BaseModel, ValidationError

from patternwatch.engines.shape_emitter import ShapeBatch
from patternwatch.errors import InitCancelled, PreconditionViolation
from patternwatch.models import Bar

log = structlog.get_logger(__name__)


class IndicatorCategory(str, Enum):
    """Indicator groupings used by chart clients."""
    TREND = "trend"
    MOMENTUM = "momentum"
    VOLATILITY = "volatility"
    VOLUME = "volume"
    ORDER_FLOW = "order_flow"
    OVERLAY = "overlay"
    CUSTOM = "custom"


@dataclass
class IndicatorState:
    """Per-stream mutable container; subclasses add their rolling buffers."""
    bar_index: int = 0
    last_close_time: Optional[datetime] = None


StateT = TypeVar("StateT", bound=IndicatorState)
ParamsT = TypeVar("ParamsT", bound=BaseModel)


@dataclass
class BarResult(Generic[StateT]):
    """Output of one ``on_new_bar`` call."""
    values: dict[str, Any]
    state: StateT
    shapes: ShapeBatch = field(default_factory=ShapeBatch)
    extras: dict[str, Any] = field(default_factory=dict)
    ready: bool = True  # False while history is shorter than the warm-up

    def to_payload(self) -> dict:
        payload: dict[str, Any] = {"values": dict(self.values)}
        payload.update(self.extras)
        payload.update(self.shapes.to_dict())
        return payload


@dataclass
class TickResult(Generic[StateT]):
    values: dict[str, Any]
    state: StateT


class StreamingIndicator(ABC, Generic[ParamsT, StateT]):
    """Base class for incremental indicators.

    Subclasses implement ``create_state``, ``step``, ``emit`` and ``values``;
    validation, warm-up gating and the init/on_new_bar equivalence live here.
    """

    id: ClassVar[str] = ""
    name: ClassVar[str] = ""
    description: ClassVar[str] = ""
    category: ClassVar[IndicatorCategory] = IndicatorCategory.CUSTOM
    params_model: ClassVar[type[BaseModel]]
    state_type: ClassVar[type[IndicatorState]] = IndicatorState

    # ──────────────────────────────────────────
    # Protocol
    # ──────────────────────────────────────────

    def init(
        self,
        history: Iterable[Bar | Mapping[str, Any]],
        params: ParamsT | Mapping[str, Any] | None = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> StateT:
        """Replay ``history`` bar by bar into a fresh state.

        The returned state is new; abandoning the call through
        ``cancel_event`` raises InitCancelled and leaves nothing behind.
        """
        parsed = self.parse_params(params)
        bars = list(history)
        state = self.create_state(parsed)
        for processed, raw in enumerate(bars):
            if cancel_event is not None and cancel_event.is_set():
                log.info("indicator.init_cancelled", indicator=self.id, processed=processed, total=len(bars))
                raise InitCancelled(processed, len(bars))
            bar = self.validate_bar(raw, state)
            self.step(bar, parsed, state)
        self.emit(state, parsed)
        log.debug("indicator.init_complete", indicator=self.id, bars=len(bars))
        return state

    def on_new_bar(
        self,
        bar: Bar | Mapping[str, Any] | None,
        params: ParamsT | Mapping[str, Any] | None,
        state: Optional[StateT],
    ) -> BarResult[StateT]:
        """Apply one closed bar. Inputs are validated before the state is touched."""
        parsed = self.parse_params(params)
        if state is not None and not isinstance(state, self.state_type):
            raise PreconditionViolation(
                f"{self.id} expects {self.state_type.__name__}, got {type(state).__name__}"
            )
        if state is not None:
            self.check_state(state, parsed)
        checked = self.validate_bar(bar, state)
        if state is None:
            state = self.create_state(parsed)
        self.step(checked, parsed, state)
        shapes = self.emit(state, parsed)
        return BarResult(
            values=self.values(state, parsed),
            state=state,
            shapes=shapes,
            extras=self.extras(state, parsed),
            ready=state.bar_index >= self.get_min_required_candles(parsed),
        )

    def on_new_tick(
        self,
        price: Decimal | float,
        params: ParamsT | Mapping[str, Any] | None,
        state: StateT,
    ) -> TickResult[StateT]:
        """Default tick hook: nothing resolves intra-bar."""
        return TickResult(values={}, state=state)

    def check_state(self, state: StateT, params: ParamsT) -> None:
        """Reject params that no longer fit an existing state. Default: anything goes."""

    def get_min_required_candles(self, params: ParamsT | Mapping[str, Any] | None = None) -> int:
        return 1

    # ──────────────────────────────────────────
    # Hooks
    # ──────────────────────────────────────────

    @abstractmethod
    def create_state(self, params: ParamsT) -> StateT:
        ...

    @abstractmethod
    def step(self, bar: Bar, params: ParamsT, state: StateT) -> None:
        """Advance ``state`` by one bar (no shape emission)."""

    @abstractmethod
    def emit(self, state: StateT, params: ParamsT) -> ShapeBatch:
        """Build the shape batch for the current state and store it on the state."""

    @abstractmethod
    def values(self, state: StateT, params: ParamsT) -> dict[str, Any]:
        ...

    def extras(self, state: StateT, params: ParamsT) -> dict[str, Any]:
        return {}

    # ──────────────────────────────────────────
    # Validation
    # ──────────────────────────────────────────

    def parse_params(self, params: ParamsT | Mapping[str, Any] | None) -> ParamsT:
        return self.params_model.coerce(params)

    def validate_bar(self, bar: Bar | Mapping[str, Any] | None, state: Optional[StateT]) -> Bar:
        """Reject null, malformed, or non-increasing bars."""
        if bar is None:
            raise PreconditionViolation("bar cannot be None")
        if isinstance(bar, Mapping):
            try:
                bar = Bar.model_validate(dict(bar))
            except ValidationError as exc:
                raise PreconditionViolation(
                    "malformed bar",
                    details={"errors": exc.errors(include_url=False)},
                ) from exc
        if not isinstance(bar, Bar):
            raise PreconditionViolation(f"expected Bar, got {type(bar).__name__}")
        if state is not None and state.last_close_time is not None and bar.close_time <= state.last_close_time:
            log.warning(
                "indicator.out_of_order_bar",
                indicator=self.id,
                close_time=bar.close_time.isoformat(),
                last_close_time=state.last_close_time.isoformat(),
            )
            raise PreconditionViolation(
                "bar is not newer than the previous bar",
                details={"close_time": bar.close_time, "last_close_time": state.last_close_time},
            )
        return bar

    def describe(self) -> dict:
        """Registry metadata: identity plus the parameter JSON schema."""
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "category": self.category.value,
            "parameters": self.params_model.model_json_schema(by_alias=True),
        }
