"""
telemetry.py — Fire-and-forget event sinks
===========================================
The engine turns lifecycle effects into plain dict events and hands them to
a TelemetrySink. Sinks must not block and must not raise into the engine;
FanoutSink shields the caller from a misbehaving sink.

Event kinds: ob_detected, ob_rejected, ob_replaced, transition,
limit_placed, limit_cancelled, fill_deferred, position_opened, stop_moved,
trade_closed.
"""

import logging
import threading
from typing import Dict, Iterable, List, Optional, Protocol

import lifecycle as lc
from telegram_notifier import (
    TelegramNotifier,
    format_entry_notification,
    format_exit_notification,
    format_ob_notification,
)

logger = logging.getLogger(__name__)


class TelemetrySink(Protocol):
    def emit(self, event: Dict) -> None: ...


def event_from_effect(symbol: str, bar_index: int, timestamp: float,
                      effect) -> Dict:
    event = {
        "kind": effect.kind,
        "symbol": symbol,
        "bar_index": bar_index,
        "timestamp": timestamp,
    }
    if isinstance(effect, lc.Transition):
        event.update(from_phase=effect.from_phase, to_phase=effect.to_phase,
                     reason=effect.reason)
    elif isinstance(effect, lc.OBDetected):
        event["ob"] = effect.ob.to_dict()
    elif isinstance(effect, lc.OBRejected):
        event.update(ob=effect.ob.to_dict(), reason=effect.reason)
    elif isinstance(effect, lc.OBReplaced):
        event.update(old=effect.old.to_dict(), new=effect.new.to_dict())
    elif isinstance(effect, (lc.LimitPlaced, lc.LimitCancelled, lc.FillDeferred)):
        event.update(direction=effect.order.direction,
                     limit_price=effect.order.limit_price,
                     client_order_id=effect.order.client_order_id)
        if not isinstance(effect, lc.LimitPlaced):
            event["reason"] = effect.reason
    elif isinstance(effect, (lc.PositionOpened, lc.StopMoved)):
        event["position"] = effect.position.to_dict()
    elif isinstance(effect, lc.TradeClosed):
        event["trade"] = effect.trade.to_dict()
    return event


# ============================================================================
# SINKS
# ============================================================================

class NullSink:
    def emit(self, event: Dict) -> None:
        pass


class LoggingSink:
    """Lifecycle events at INFO, per-candle noise (deferrals) at DEBUG."""

    _DEBUG_KINDS = {"fill_deferred", "ob_rejected"}

    def __init__(self, log: Optional[logging.Logger] = None):
        self._log = log or logger

    def emit(self, event: Dict) -> None:
        kind = event["kind"]
        level = logging.DEBUG if kind in self._DEBUG_KINDS else logging.INFO
        if not self._log.isEnabledFor(level):
            return
        detail = {k: v for k, v in event.items()
                  if k not in ("kind", "symbol", "bar_index", "timestamp")}
        self._log.log(level, f"📡 [{event['symbol']}] #{event['bar_index']} {kind} {detail}")


class MemorySink:
    """Keeps every event; used by tests and backtest reports."""

    def __init__(self):
        self._lock = threading.Lock()
        self.events: List[Dict] = []

    def emit(self, event: Dict) -> None:
        with self._lock:
            self.events.append(event)

    def of_kind(self, kind: str) -> List[Dict]:
        with self._lock:
            return [e for e in self.events if e["kind"] == kind]


class TelegramSink:
    """Forwards detections, fills and exits to Telegram."""

    def __init__(self, notifier: TelegramNotifier):
        self._notifier = notifier

    def emit(self, event: Dict) -> None:
        kind = event["kind"]
        symbol = event["symbol"]
        if kind == "ob_detected":
            ob = event["ob"]
            self._notifier.send(format_ob_notification(
                symbol, ob["type"], ob["top"], ob["bottom"], ob["volume_ratio"]))
        elif kind == "position_opened":
            p = event["position"]
            self._notifier.send(format_entry_notification(
                symbol, p["direction"], p["entry"], p["stop_loss"],
                p["take_profit1"], p["take_profit2"], p["margin"]))
        elif kind == "trade_closed":
            t = event["trade"]
            self._notifier.send(format_exit_notification(
                symbol, t["direction"], t["exit_reason"], t["entry"], t["exit"],
                t["pnl"], t["pnl_percent"]))


class FanoutSink:
    def __init__(self, sinks: Iterable[TelemetrySink]):
        self._sinks = list(sinks)

    def emit(self, event: Dict) -> None:
        for sink in self._sinks:
            try:
                sink.emit(event)
            except Exception as e:
                logger.error(f"❌ Telemetry sink {type(sink).__name__} failed: {e}")
