"""
Patternwatch: Indicator Instance Manager

Routes bars to per-(indicator, symbol, interval, params) streams.

Each active instance owns its indicator state exclusively. The directory of
instances is guarded by one lock; every instance carries its own lock so a
stream applies bars strictly one at a time while different streams proceed
in parallel. Bulk ``init`` runs outside the directory lock and only a
completed warm-up is registered.

Usage::

    manager = IndicatorInstanceManager()
    key = manager.activate("pattern-detection", "BTCUSDT", "1h", history, {"pivotStrength": 3})
    result = manager.update(key, bar)
"""

from __future__ import annotations

import hashlib
import json
import threading
from collections import deque
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Optional

import structlog
from structlog.contextvars import bound_contextvars
from pydantic import BaseModel

from patternwatch.config import Settings, get_settings
from patternwatch.engines.indicator_base import BarResult, StreamingIndicator, TickResult
from patternwatch.engines.pattern_engine import PatternEngine
from patternwatch.errors import IndicatorNotFoundError, InstanceNotFoundError, PreconditionViolation
from patternwatch.models import Bar

log = structlog.get_logger(__name__)


# ──────────────────────────────────────────────
# Instance Records
# ──────────────────────────────────────────────

@dataclass
class InstanceResult:
    """One bar's output as kept in an instance's history."""
    timestamp: datetime
    values: dict[str, Any]
    payload: dict[str, Any]
    ready: bool = True


@dataclass
class IndicatorInstance:
    instance_key: str
    indicator_id: str
    symbol: str
    interval: str
    params: BaseModel
    state: Any
    history: deque
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    last_update: Optional[datetime] = None
    bar_count: int = 0
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    @property
    def context_key(self) -> str:
        return context_key(self.symbol, self.interval)

    def to_dict(self) -> dict:
        return {
            "instanceKey": self.instance_key,
            "indicatorId": self.indicator_id,
            "symbol": self.symbol,
            "interval": self.interval,
            "params": self.params.model_dump(mode="json", by_alias=True, exclude_none=True),
            "createdAt": self.created_at.isoformat(),
            "lastUpdate": self.last_update.isoformat() if self.last_update else None,
            "barCount": self.bar_count,
        }


def context_key(symbol: str, interval: str) -> str:
    return f"{symbol}:{interval}"


def params_digest(params: BaseModel) -> str:
    """Short stable digest of a parameter set."""
    canonical = json.dumps(params.model_dump(mode="json", by_alias=True), sort_keys=True)
    return hashlib.md5(canonical.encode()).hexdigest()[:8]


# ──────────────────────────────────────────────
# Manager
# ──────────────────────────────────────────────

class IndicatorInstanceManager:
    """Registry of indicators plus the directory of live instances."""

    def __init__(
        self,
        indicators: Optional[Iterable[StreamingIndicator]] = None,
        settings: Optional[Settings] = None,
    ):
        self.settings = settings or get_settings()
        self._indicators: dict[str, StreamingIndicator] = {}
        self._instances: dict[str, IndicatorInstance] = {}
        self._by_context: dict[str, set[str]] = {}
        self._lock = threading.Lock()

        if indicators is None:
            indicators = [PatternEngine(self.settings)]
        for indicator in indicators:
            self.register(indicator)

    # ── Registry ──

    def register(self, indicator: StreamingIndicator) -> None:
        if not indicator.id:
            raise ValueError(f"{type(indicator).__name__} has no id")
        with self._lock:
            self._indicators[indicator.id] = indicator
        log.info("instance_manager.indicator_registered", indicator=indicator.id)

    def get_indicator(self, indicator_id: str) -> StreamingIndicator:
        try:
            return self._indicators[indicator_id]
        except KeyError:
            raise IndicatorNotFoundError(f"Indicator not found: {indicator_id}") from None

    def list_indicators(self) -> list[dict]:
        return [ind.describe() for ind in self._indicators.values()]

    # ── Activation ──

    def activate(
        self,
        indicator_id: str,
        symbol: str,
        interval: str,
        history: Iterable[Bar | Mapping[str, Any]] = (),
        params: Mapping[str, Any] | BaseModel | None = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> str:
        """Warm up an instance on ``history`` and register it.

        Returns the instance key. Activating an existing key is a no-op that
        returns the same key.
        """
        indicator = self.get_indicator(indicator_id)
        parsed = indicator.parse_params(params)
        key = f"{indicator_id}:{symbol}:{interval}:{params_digest(parsed)}"

        with self._lock:
            if key in self._instances:
                log.debug("instance_manager.already_active", instance_key=key)
                return key

        bars = list(history)
        state = indicator.init(bars, parsed, cancel_event=cancel_event)

        instance = IndicatorInstance(
            instance_key=key,
            indicator_id=indicator_id,
            symbol=symbol,
            interval=interval,
            params=parsed,
            state=state,
            history=deque(maxlen=self.settings.instance_history_size),
            bar_count=len(bars),
        )
        with self._lock:
            if key in self._instances:
                return key
            self._instances[key] = instance
            self._by_context.setdefault(instance.context_key, set()).add(key)

        log.info(
            "instance_manager.activated",
            instance_key=key,
            indicator=indicator_id,
            symbol=symbol,
            interval=interval,
            history_bars=len(bars),
        )
        return key

    def deactivate(self, instance_key: str) -> bool:
        with self._lock:
            instance = self._instances.pop(instance_key, None)
            if instance is None:
                return False
            keys = self._by_context.get(instance.context_key)
            if keys is not None:
                keys.discard(instance_key)
                if not keys:
                    del self._by_context[instance.context_key]
        log.info("instance_manager.deactivated", instance_key=instance_key, bars=instance.bar_count)
        return True

    def deactivate_context(self, symbol: str, interval: str) -> int:
        with self._lock:
            keys = list(self._by_context.get(context_key(symbol, interval), ()))
        return sum(1 for key in keys if self.deactivate(key))

    # ── Updates ──

    def update(self, instance_key: str, bar: Bar | Mapping[str, Any]) -> BarResult:
        """Apply one closed bar to a single instance."""
        instance = self.get_instance(instance_key)
        indicator = self.get_indicator(instance.indicator_id)

        with instance.lock, bound_contextvars(instance_key=instance_key):
            result = indicator.on_new_bar(bar, instance.params, instance.state)
            instance.state = result.state
            instance.bar_count += 1
            instance.last_update = datetime.now(timezone.utc)
            instance.history.append(InstanceResult(
                timestamp=instance.state.last_close_time,
                values=dict(result.values),
                payload=result.to_payload(),
                ready=result.ready,
            ))
        return result

    def update_all_for_context(self, symbol: str, interval: str, bar: Bar | Mapping[str, Any]) -> dict[str, BarResult]:
        """Fan one bar out to every instance on ``symbol``/``interval``.

        A bar one stream rejects does not stop the others; the rejection is
        logged and that stream is left out of the result.
        """
        results: dict[str, BarResult] = {}
        for instance in self.instances_for_context(symbol, interval):
            try:
                results[instance.instance_key] = self.update(instance.instance_key, bar)
            except PreconditionViolation as exc:
                log.warning(
                    "instance_manager.update_rejected",
                    instance_key=instance.instance_key,
                    error=exc.message,
                )
            except InstanceNotFoundError:
                continue
        return results

    def update_with_tick(self, instance_key: str, price: Decimal | float) -> TickResult:
        instance = self.get_instance(instance_key)
        indicator = self.get_indicator(instance.indicator_id)
        with instance.lock:
            result = indicator.on_new_tick(price, instance.params, instance.state)
            instance.state = result.state
        return result

    # ── Queries ──

    def get_instance(self, instance_key: str) -> IndicatorInstance:
        with self._lock:
            instance = self._instances.get(instance_key)
        if instance is None:
            raise InstanceNotFoundError(f"Instance not found: {instance_key}")
        return instance

    def is_active(self, instance_key: str) -> bool:
        with self._lock:
            return instance_key in self._instances

    def instances_for_context(self, symbol: str, interval: str) -> list[IndicatorInstance]:
        with self._lock:
            keys = self._by_context.get(context_key(symbol, interval), set())
            return [self._instances[k] for k in sorted(keys) if k in self._instances]

    def historical_results(self, instance_key: str, count: int = 100) -> list[InstanceResult]:
        instance = self.get_instance(instance_key)
        with instance.lock:
            items = list(instance.history)
        return items[-count:] if count > 0 else []

    def statistics(self) -> dict:
        with self._lock:
            instances = list(self._instances.values())
            contexts = len(self._by_context)
        by_indicator: dict[str, int] = {}
        for inst in instances:
            by_indicator[inst.indicator_id] = by_indicator.get(inst.indicator_id, 0) + 1
        return {
            "totalInstances": len(instances),
            "totalContexts": contexts,
            "registeredIndicators": len(self._indicators),
            "instancesByIndicator": by_indicator,
            "totalBarsProcessed": sum(inst.bar_count for inst in instances),
        }

    def clear(self) -> None:
        with self._lock:
            count = len(self._instances)
            self._instances.clear()
            self._by_context.clear()
        log.info("instance_manager.cleared", instances=count)
