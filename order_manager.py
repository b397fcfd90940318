# ============================================================================
# order_manager.py
# ============================================================================
"""
Order Manager — idempotent submission to the exchange
======================================================

GATEWAY
  ExchangeGateway is the only thing that talks to an exchange:
  place_order / place_conditional_order / cancel_order. Gateways raise
  TransientExchangeError for retryable failures (timeouts, 429, 5xx) and
  ExchangeError for permanent rejects.

SUBMITTER
  OrderSubmitter wraps a gateway with
    - retry + exponential backoff on transient errors (retry.call_with_retry)
    - a CircuitBreaker shared by every call
    - idempotency: each request carries a client_order_id; an acknowledged
      key is answered from cache and never re-sent
    - single flight: at most one outstanding entry per symbol
  Failures surface as OrderSubmissionError; CircuitBreakerError passes
  through unchanged so callers can tell "exchange down" from "rejected".
"""

import logging
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, List, Optional, Protocol

import requests

import config
from circuit_breaker import CircuitBreaker
from retry import call_with_retry

logger = logging.getLogger(__name__)

ORDER_LIMIT       = "LIMIT"
ORDER_MARKET      = "MARKET"
ORDER_STOP_MARKET = "STOP_MARKET"


# ============================================================================
# ERRORS / RESULTS
# ============================================================================

class ExchangeError(Exception):
    """Permanent exchange-side reject."""
    pass


class TransientExchangeError(ExchangeError):
    """Retryable failure (timeout, rate limit, 5xx)."""
    pass


class OrderSubmissionError(Exception):
    def __init__(self, message: str, request: Optional["OrderRequest"] = None):
        super().__init__(message)
        self.request = request


class CancelResult(Enum):
    SUCCESS        = "SUCCESS"
    ALREADY_FILLED = "ALREADY_FILLED"   # executed before the cancel landed
    NOT_FOUND      = "NOT_FOUND"
    FAILED         = "FAILED"


def normalize_side(direction: str) -> str:
    s = str(direction).upper().strip()
    if s in ("LONG", "BUY"):
        return "BUY"
    if s in ("SHORT", "SELL"):
        return "SELL"
    raise ValueError(f"Invalid side '{direction}'. Use LONG/SHORT or BUY/SELL.")


def closing_side(direction: str) -> str:
    return "SELL" if normalize_side(direction) == "BUY" else "BUY"


@dataclass(frozen=True)
class OrderRequest:
    symbol:          str
    side:            str                  # BUY | SELL
    order_type:      str                  # LIMIT | MARKET | STOP_MARKET
    quantity:        float
    client_order_id: str                  # idempotency key
    price:           Optional[float] = None
    trigger_price:   Optional[float] = None
    reduce_only:     bool = False

    def to_dict(self) -> Dict:
        return {
            "symbol": self.symbol,
            "side": self.side,
            "order_type": self.order_type,
            "quantity": self.quantity,
            "price": self.price,
            "trigger_price": self.trigger_price,
            "reduce_only": self.reduce_only,
            "client_order_id": self.client_order_id,
        }


@dataclass(frozen=True)
class OrderAck:
    client_order_id: str
    order_id:        str
    status:          str
    raw:             Dict = field(default_factory=dict, compare=False)


# ============================================================================
# GATEWAY
# ============================================================================

class ExchangeGateway(Protocol):
    def place_order(self, request: OrderRequest) -> Dict: ...

    def place_conditional_order(self, request: OrderRequest) -> Dict: ...

    def cancel_order(self, symbol: str, order_id: str) -> Dict: ...


class PaperGateway:
    """
    In-memory gateway: every order is accepted. LIMIT and MARKET orders are
    reported EXECUTED, stops rest as UNTRIGGERED until cancelled.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._seq = 0
        self.orders: Dict[str, Dict] = {}
        self.calls: List[str] = []

    def _accept(self, request: OrderRequest, status: str) -> Dict:
        with self._lock:
            self._seq += 1
            order_id = f"paper-{self._seq}"
            self.orders[order_id] = {**request.to_dict(), "order_id": order_id,
                                     "status": status}
            return {"order_id": order_id, "status": status}

    def place_order(self, request: OrderRequest) -> Dict:
        self.calls.append(f"place:{request.client_order_id}")
        return self._accept(request, "EXECUTED")

    def place_conditional_order(self, request: OrderRequest) -> Dict:
        self.calls.append(f"conditional:{request.client_order_id}")
        return self._accept(request, "UNTRIGGERED")

    def cancel_order(self, symbol: str, order_id: str) -> Dict:
        self.calls.append(f"cancel:{order_id}")
        with self._lock:
            order = self.orders.get(order_id)
            if order is None:
                return {"status": "NOT_FOUND"}
            if order["status"] == "EXECUTED":
                return {"status": "EXECUTED"}
            order["status"] = "CANCELLED"
            return {"status": "CANCELLED"}


# ============================================================================
# SUBMITTER
# ============================================================================

_TRANSIENT = (TransientExchangeError, requests.RequestException)


class OrderSubmitter:

    def __init__(self, gateway: ExchangeGateway,
                 breaker: Optional[CircuitBreaker] = None,
                 max_attempts: int = config.ORDER_MAX_RETRIES,
                 initial_delay: float = config.ORDER_RETRY_INITIAL_DELAY,
                 max_delay: float = config.ORDER_RETRY_MAX_DELAY,
                 sleep: Optional[Callable[[float], None]] = None):
        self.gateway = gateway
        self.breaker = breaker or CircuitBreaker("exchange", counted=_TRANSIENT)
        self._retry_kwargs = dict(
            exceptions=_TRANSIENT,
            max_attempts=max_attempts,
            initial_delay=initial_delay,
            max_delay=max_delay,
        )
        if sleep is not None:
            self._retry_kwargs["sleep"] = sleep

        self._lock = threading.RLock()
        self._acks: Dict[str, OrderAck] = {}
        self._entries: Dict[str, str] = {}   # symbol → outstanding entry key

        logger.info("✅ OrderSubmitter initialized")

    # ── Internals ────────────────────────────────────────────────────────────

    def _send(self, call: Callable[[OrderRequest], Dict],
              request: OrderRequest) -> OrderAck:
        key = request.client_order_id
        with self._lock:
            cached = self._acks.get(key)
        if cached is not None:
            logger.debug(f"[{request.symbol}] {key} already acknowledged")
            return cached

        try:
            resp = call_with_retry(call, request, circuit_breaker=self.breaker,
                                   **self._retry_kwargs)
        except _TRANSIENT as e:
            raise OrderSubmissionError(f"{key}: exchange unavailable ({e})", request) from e
        except ExchangeError as e:
            raise OrderSubmissionError(f"{key}: rejected ({e})", request) from e

        order_id = resp.get("order_id") if isinstance(resp, dict) else None
        if not order_id:
            raise OrderSubmissionError(f"{key}: malformed response {resp!r}", request)

        ack = OrderAck(key, str(order_id), str(resp.get("status", "NEW")), dict(resp))
        with self._lock:
            self._acks[key] = ack
        logger.info(
            f"📤 [{request.symbol}] {request.order_type} {request.side} "
            f"qty={request.quantity:.6g} key={key} → {ack.order_id} ({ack.status})")
        return ack

    # ── Public API ───────────────────────────────────────────────────────────

    def submit(self, request: OrderRequest) -> OrderAck:
        return self._send(self.gateway.place_order, request)

    def submit_conditional(self, request: OrderRequest) -> OrderAck:
        return self._send(self.gateway.place_conditional_order, request)

    def submit_entry(self, request: OrderRequest) -> OrderAck:
        """Like ``submit`` but refuses a second outstanding entry per symbol."""
        key = request.client_order_id
        with self._lock:
            outstanding = self._entries.get(request.symbol)
            if outstanding is not None and outstanding != key:
                raise OrderSubmissionError(
                    f"{request.symbol}: entry {outstanding} still outstanding", request)
            self._entries[request.symbol] = key
        try:
            return self.submit(request)
        except Exception:
            with self._lock:
                if key not in self._acks:
                    self._entries.pop(request.symbol, None)
            raise

    def release_entry(self, symbol: str) -> None:
        """Free the symbol's entry slot and forget the acks of that position."""
        with self._lock:
            key = self._entries.pop(symbol, None)
            if key is None:
                return
            stale = [k for k in self._acks if k == key or k.startswith(f"{key}-")]
            for k in stale:
                del self._acks[k]
        if stale:
            logger.debug(f"[{symbol}] released {key}, dropped {len(stale)} acks")

    def outstanding_entry(self, symbol: str) -> Optional[str]:
        with self._lock:
            return self._entries.get(symbol)

    def ack_for(self, client_order_id: str) -> Optional[OrderAck]:
        with self._lock:
            return self._acks.get(client_order_id)

    def cancel(self, symbol: str, order_id: str) -> CancelResult:
        try:
            resp = call_with_retry(self.gateway.cancel_order, symbol, order_id,
                                   circuit_breaker=self.breaker, **self._retry_kwargs)
        except ExchangeError as e:
            logger.error(f"❌ [{symbol}] cancel {order_id} failed: {e}")
            return CancelResult.FAILED
        except requests.RequestException as e:
            logger.error(f"❌ [{symbol}] cancel {order_id} failed: {e}")
            return CancelResult.FAILED

        status = str(resp.get("status", "")).upper() if isinstance(resp, dict) else ""
        if status in ("CANCELLED", "CANCELED"):
            return CancelResult.SUCCESS
        if status in ("EXECUTED", "FILLED", "PARTIALLY_EXECUTED"):
            return CancelResult.ALREADY_FILLED
        if status == "NOT_FOUND":
            return CancelResult.NOT_FOUND
        return CancelResult.FAILED
