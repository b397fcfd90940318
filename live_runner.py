"""
live_runner.py — Live driver for SymbolEngines
===============================================
One worker thread and one queue per symbol, so each symbol's engine is only
touched by its own sequential handler. The feed calls ``feed(symbol, candle)``
for every closed candle; the worker runs the engine and turns its effects
into exchange orders through OrderSubmitter.

Order flow
  PositionOpened  → LIMIT entry (key = the order's client_order_id), then a
                    reduce-only STOP_MARKET protective stop. If the entry is
                    not acknowledged the position is abandoned.
  TradeClosed     → cancel the resting stop, reduce-only MARKET close of the
                    exited units. The trade is booked to the account only
                    after the close is acknowledged (or the stop is found
                    already executed). Unacknowledged exits are retried on the
                    next candle with the same key.
  StopMoved       → re-place the protective stop at the new level (breakeven
                    after TP1) for the remaining units.
"""

import logging
import queue
import threading
from typing import Dict, Iterable, List, Optional

from circuit_breaker import CircuitBreakerError
from data_manager import Candle
from lifecycle import PositionOpened, StopMoved, TradeClosed
from order_manager import (
    CancelResult, OrderRequest, OrderSubmissionError, OrderSubmitter,
    ORDER_LIMIT, ORDER_MARKET, ORDER_STOP_MARKET, closing_side, normalize_side,
)
from position_manager import Position, Trade
from risk_manager import AccountRiskManager
from strategy import SymbolEngine
from strategy_config import DEFAULT_CONFIG, StrategyConfig
from telegram_notifier import (
    TelegramNotifier, format_started_message, format_stopped_message,
)
from telemetry import LoggingSink, TelemetrySink

logger = logging.getLogger(__name__)

_SUBMIT_ERRORS = (OrderSubmissionError, CircuitBreakerError)


class _SymbolSlot:
    """Per-symbol worker state; only its own worker thread mutates it."""

    def __init__(self, engine: SymbolEngine, queue_size: int):
        self.engine = engine
        self.queue: queue.Queue = queue.Queue(maxsize=queue_size)
        self.thread: Optional[threading.Thread] = None
        self.stop_order_id: Optional[str] = None
        self.stop_position: Optional[Position] = None   # pending stop re-placement
        self.exit_positions: Dict[Trade, Position] = {}


class LiveRunner:

    def __init__(self, symbols: Iterable[str], submitter: OrderSubmitter,
                 cfg: StrategyConfig = DEFAULT_CONFIG,
                 account: Optional[AccountRiskManager] = None,
                 sink: Optional[TelemetrySink] = None,
                 notifier: Optional[TelegramNotifier] = None,
                 queue_size: int = 1000):
        self.cfg = cfg
        self.submitter = submitter
        self.account = account or AccountRiskManager(enabled=cfg.enable_risk_management)
        self.notifier = notifier
        sink = sink or LoggingSink()

        # ── Engines (shared account, one per symbol) ─────────────────────────
        self._slots: Dict[str, _SymbolSlot] = {
            symbol: _SymbolSlot(
                SymbolEngine(symbol, cfg, account=self.account, sink=sink,
                             auto_book=False),
                queue_size)
            for symbol in symbols
        }
        self._stop = threading.Event()
        logger.info(f"✅ LiveRunner created for {', '.join(self._slots)}")

    # ── Access ───────────────────────────────────────────────────────────────

    @property
    def symbols(self) -> List[str]:
        return list(self._slots)

    def engine(self, symbol: str) -> SymbolEngine:
        return self._slots[symbol].engine

    # ── Lifecycle ────────────────────────────────────────────────────────────

    def preload(self, symbol: str, candles: Iterable[Candle]) -> int:
        return self._slots[symbol].engine.preload(candles)

    def start(self) -> None:
        self._stop.clear()
        for symbol, slot in self._slots.items():
            if slot.thread is not None:
                continue
            slot.thread = threading.Thread(
                target=self._worker, args=(symbol,), name=f"engine-{symbol}",
                daemon=True)
            slot.thread.start()
        if self.notifier:
            self.notifier.send(format_started_message(self.symbols))
        logger.info("🚀 LiveRunner started")

    def stop(self, timeout: float = 5.0) -> None:
        """Drain queued candles, then stop the workers."""
        for slot in self._slots.values():
            if slot.thread is not None:
                slot.queue.join()
        self._stop.set()
        for slot in self._slots.values():
            if slot.thread is not None:
                slot.thread.join(timeout=timeout)
                slot.thread = None
        if self.notifier:
            self.notifier.send(format_stopped_message())
        logger.info("🛑 LiveRunner stopped")

    def feed(self, symbol: str, candle: Candle) -> None:
        slot = self._slots.get(symbol)
        if slot is None:
            logger.warning(f"⚠️ Candle for unknown symbol {symbol} ignored")
            return
        slot.queue.put(candle)

    def _worker(self, symbol: str) -> None:
        slot = self._slots[symbol]
        while not self._stop.is_set():
            try:
                candle = slot.queue.get(timeout=1.0)
            except queue.Empty:
                continue
            try:
                self.process(symbol, candle)
            except Exception:
                logger.exception(f"❌ [{symbol}] candle processing failed")
            finally:
                slot.queue.task_done()

    # ── Per-candle handling ──────────────────────────────────────────────────

    def process(self, symbol: str, candle: Candle) -> List[object]:
        """Run one candle through the engine and act on its effects."""
        slot = self._slots[symbol]
        effects = slot.engine.on_candle(candle)

        for effect in effects:
            if isinstance(effect, TradeClosed):
                slot.exit_positions[effect.trade] = effect.position
            elif isinstance(effect, StopMoved):
                slot.stop_position = effect.position

        self._flush_exits(symbol, slot)
        self._flush_stop(symbol, slot)

        for effect in effects:
            if isinstance(effect, PositionOpened):
                self._enter(symbol, slot, effect.position)
        return effects

    def _enter(self, symbol: str, slot: _SymbolSlot, position: Position) -> None:
        entry = OrderRequest(
            symbol=symbol,
            side=normalize_side(position.direction),
            order_type=ORDER_LIMIT,
            quantity=position.quantity,
            price=position.entry,
            client_order_id=position.client_order_id,
        )
        try:
            self.submitter.submit_entry(entry)
        except _SUBMIT_ERRORS as e:
            logger.error(f"❌ [{symbol}] entry not confirmed: {e}")
            self.submitter.release_entry(symbol)
            slot.engine.abandon_position(f"entry failed: {e}")
            return
        if not self._place_stop(symbol, slot, position):
            slot.stop_position = position

    def _place_stop(self, symbol: str, slot: _SymbolSlot, position: Position) -> bool:
        stop = OrderRequest(
            symbol=symbol,
            side=closing_side(position.direction),
            order_type=ORDER_STOP_MARKET,
            quantity=position.quantity * position.remaining_size,
            trigger_price=position.stop_loss,
            reduce_only=True,
            client_order_id=f"{position.client_order_id}-sl-{int(position.partial_exit_done)}",
        )
        try:
            ack = self.submitter.submit_conditional(stop)
        except _SUBMIT_ERRORS as e:
            logger.error(f"❌ [{symbol}] protective stop not placed: {e}")
            return False
        slot.stop_order_id = ack.order_id
        return True

    def _cancel_stop(self, symbol: str, slot: _SymbolSlot) -> Optional[CancelResult]:
        if slot.stop_order_id is None:
            return None
        try:
            result = self.submitter.cancel(symbol, slot.stop_order_id)
        except CircuitBreakerError as e:
            logger.error(f"❌ [{symbol}] stop cancel blocked: {e}")
            return CancelResult.FAILED
        if result is not CancelResult.FAILED:
            slot.stop_order_id = None
        return result

    def _flush_exits(self, symbol: str, slot: _SymbolSlot) -> None:
        engine = slot.engine
        for trade in list(engine.unconfirmed):
            position = slot.exit_positions[trade]
            cancel = self._cancel_stop(symbol, slot)
            if cancel is CancelResult.FAILED:
                logger.warning(f"⚠️ [{symbol}] stop cancel failed, exit retried next candle")
                return

            if cancel is not CancelResult.ALREADY_FILLED:
                close = OrderRequest(
                    symbol=symbol,
                    side=closing_side(position.direction),
                    order_type=ORDER_MARKET,
                    quantity=trade.position_size,
                    reduce_only=True,
                    client_order_id=(f"{position.client_order_id}-x-"
                                     f"{trade.exit_bar_index}-{trade.exit_reason}"),
                )
                try:
                    self.submitter.submit(close)
                except _SUBMIT_ERRORS as e:
                    logger.error(f"❌ [{symbol}] exit not confirmed, retry next candle: {e}")
                    return

            engine.book_trade(trade)
            del slot.exit_positions[trade]
            if trade.is_final:
                self.submitter.release_entry(symbol)
                slot.stop_position = None

    def _flush_stop(self, symbol: str, slot: _SymbolSlot) -> None:
        # Re-place only once the partial exit that moved the stop is booked.
        if slot.stop_position is None or slot.engine.unconfirmed:
            return
        if self._place_stop(symbol, slot, slot.stop_position):
            slot.stop_position = None
