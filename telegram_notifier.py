"""
Telegram Notifier
=================
- Non-blocking: messages go on a bounded queue drained by one daemon thread
- Rate-limited sends via the Bot HTTP API (requests)
- HTML formatters for block detection, entries, exits and run start/stop
"""

import html
import logging
import queue
import threading
import time
from datetime import datetime, timezone
from typing import Optional

import requests

import config
from retry import retry

logger = logging.getLogger(__name__)

_MIN_SEND_INTERVAL = 1.5   # seconds between Telegram API calls
_MAX_MESSAGE_LEN   = 4096
_SEND_ATTEMPTS     = 3


# ============================================================================
# ASYNC QUEUE-BASED SENDER  (never blocks the calling thread)
# ============================================================================

class TelegramNotifier:

    def __init__(self, bot_token: Optional[str] = config.TELEGRAM_BOT_TOKEN,
                 chat_id: Optional[str] = config.TELEGRAM_CHAT_ID,
                 queue_size: int = 100,
                 min_interval: float = _MIN_SEND_INTERVAL,
                 session: Optional[requests.Session] = None):
        self.bot_token = bot_token
        self.chat_id = chat_id
        self.enabled = bool(bot_token and chat_id)
        self._queue: queue.Queue = queue.Queue(maxsize=queue_size)
        self._min_interval = min_interval
        self._last_send_time = 0.0
        self._session = session or requests.Session()
        self._thread: Optional[threading.Thread] = None
        self._stop = threading.Event()

    def start(self) -> None:
        if not self.enabled or self._thread is not None:
            return
        self._stop.clear()
        self._thread = threading.Thread(
            target=self._worker, name="telegram-sender", daemon=True)
        self._thread.start()
        logger.info("✅ Telegram sender started")

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None

    def send(self, message: str, parse_mode: str = "HTML") -> bool:
        """Enqueue message for async delivery. Returns False if disabled or full."""
        if not self.enabled:
            return False
        try:
            self._queue.put_nowait((message, parse_mode))
            return True
        except queue.Full:
            logger.warning("Telegram send queue full — message dropped")
            return False

    def _worker(self) -> None:
        while not self._stop.is_set():
            try:
                message, parse_mode = self._queue.get(timeout=1.0)
            except queue.Empty:
                continue
            try:
                wait = self._min_interval - (time.time() - self._last_send_time)
                if wait > 0:
                    time.sleep(wait)
                self._post(message, parse_mode)
            finally:
                self._last_send_time = time.time()
                self._queue.task_done()

    def _post(self, message: str, parse_mode: str) -> None:
        text = (message[:4080] + "\n…[truncated]") \
            if len(message) > _MAX_MESSAGE_LEN else message
        url = f"https://api.telegram.org/bot{self.bot_token}/sendMessage"
        try:
            resp = self._deliver(url, {
                "chat_id": self.chat_id,
                "text": text,
                "parse_mode": parse_mode,
                "disable_web_page_preview": True,
            })
            if resp.status_code != 200:
                logger.warning("Telegram send failed: %s - %s",
                               resp.status_code, resp.text[:200])
        except requests.RequestException as e:
            logger.error("Error sending Telegram message: %s", e)

    @retry(exceptions=(requests.ConnectionError, requests.Timeout),
           max_attempts=_SEND_ATTEMPTS, initial_delay=1.0, max_delay=5.0)
    def _deliver(self, url: str, payload: dict) -> requests.Response:
        return self._session.post(url, json=payload, timeout=10)


# ============================================================================
# HELPERS
# ============================================================================

def _ts_now_utc() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M UTC")


def _pnl_emoji(value: float) -> str:
    if value > 0:
        return "🟢"
    elif value < 0:
        return "🔴"
    return "⚪"


def _side_emoji(direction: str) -> str:
    return "🟢" if direction == "LONG" else "🔴"


# ============================================================================
# FORMATTERS
# ============================================================================

def format_ob_notification(symbol: str, direction: str, top: float,
                           bottom: float, volume_ratio: float) -> str:
    return "\n".join([
        f"{_side_emoji(direction)} <b>{html.escape(symbol)} {direction} ORDER BLOCK</b>",
        "━━━━━━━━━━━━━━━━━━━━",
        f"Zone: <code>{bottom:,.6g} – {top:,.6g}</code>",
        f"Mid:  <code>{(top + bottom) / 2:,.6g}</code>",
        f"Vol:  <code>{volume_ratio:.2f}× avg</code>",
    ])


def format_entry_notification(symbol: str, direction: str, entry_price: float,
                              sl_price: float, tp1_price: float, tp2_price: float,
                              margin: float) -> str:
    risk = abs(entry_price - sl_price)
    risk_pct = risk / entry_price * 100 if entry_price > 0 else 0.0
    rr = abs(tp2_price - entry_price) / risk if risk > 0 else 0.0
    return "\n".join([
        f"{_side_emoji(direction)} <b>{html.escape(symbol)} {direction} FILLED</b>",
        "━━━━━━━━━━━━━━━━━━━━",
        f"Entry:  <code>{entry_price:,.6g}</code>",
        f"SL:     <code>{sl_price:,.6g}</code> (risk: {risk_pct:.2f}%)",
        f"TP1:    <code>{tp1_price:,.6g}</code>",
        f"TP2:    <code>{tp2_price:,.6g}</code>",
        f"RR:     <code>{rr:.1f}:1</code>",
        f"Margin: <code>${margin:,.2f}</code>",
    ])


def format_exit_notification(symbol: str, direction: str, exit_type: str,
                             entry_price: float, exit_price: float,
                             pnl: float, pnl_pct: float) -> str:
    emoji = "✅" if pnl > 0 else "❌"
    return "\n".join([
        f"{emoji} <b>{html.escape(symbol)} {exit_type} — {direction}</b>",
        "━━━━━━━━━━━━━━━━━━━━",
        f"Entry: <code>{entry_price:,.6g}</code>",
        f"Exit:  <code>{exit_price:,.6g}</code>",
        f"P&amp;L:   {_pnl_emoji(pnl)} <code>${pnl:+.2f}</code> (<code>{pnl_pct:+.2f}%</code>)",
    ])


def format_started_message(symbols) -> str:
    return (
        "🤖 <b>OB RETEST ENGINE STARTED</b>\n"
        "━━━━━━━━━━━━━━━━━━━━\n"
        f"Symbols: <code>{html.escape(', '.join(symbols))}</code>\n\n"
        f"🕐 {_ts_now_utc()}"
    )


def format_stopped_message() -> str:
    return (
        "🛑 <b>OB RETEST ENGINE STOPPED</b>\n"
        "━━━━━━━━━━━━━━━━━━━━\n"
        f"🕐 {_ts_now_utc()}"
    )
