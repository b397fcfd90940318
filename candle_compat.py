"""
COMPATIBILITY LAYER
===================
Normalises candle payloads from feeds and CSV files into Candle objects,
and back into the short-key dict form (t/o/h/l/c/v, t in ms) that exchange
feeds use.
"""

from datetime import datetime, timezone
from typing import Dict, Iterable, List, Mapping

from data_manager import Candle, CandleFeedError


# Short key -> Candle attribute
_KEY_MAP = {
    't': 'timestamp',
    'o': 'open',
    'h': 'high',
    'l': 'low',
    'c': 'close',
    'v': 'volume',
}

# Timestamps above these are ms / µs rather than seconds
_MS_THRESHOLD = 1e11
_US_THRESHOLD = 1e14


def normalize_timestamp(ts) -> float:
    """Return epoch seconds for a seconds / milliseconds / microseconds value
    or an ISO-8601 string (naive strings are taken as UTC)"""
    if isinstance(ts, str):
        try:
            ts = float(ts)
        except ValueError:
            dt = datetime.fromisoformat(ts.strip().replace("Z", "+00:00"))
            if dt.tzinfo is None:
                dt = dt.replace(tzinfo=timezone.utc)
            return dt.timestamp()
    ts = float(ts)
    if ts >= _US_THRESHOLD:
        return ts / 1_000_000
    if ts >= _MS_THRESHOLD:
        return ts / 1000
    return ts


def candle_from_payload(payload: Mapping) -> Candle:
    """
    Build a Candle from either short keys (t/o/h/l/c/v) or long keys
    (timestamp/open/high/low/close/volume).
    """
    values = {}
    for short, attr in _KEY_MAP.items():
        if short in payload:
            raw = payload[short]
        elif attr in payload:
            raw = payload[attr]
        elif attr == 'timestamp' and 'time' in payload:
            raw = payload['time']
        else:
            raise CandleFeedError(f"Candle payload missing '{attr}': {dict(payload)}")
        try:
            values[attr] = normalize_timestamp(raw) if attr == 'timestamp' else float(raw)
        except (TypeError, ValueError):
            raise CandleFeedError(f"Candle field '{attr}' is not numeric: {raw!r}")

    return Candle(**values)


def candles_from_payloads(payloads: Iterable[Mapping]) -> List[Candle]:
    return [candle_from_payload(p) for p in payloads]


def candle_to_payload(candle: Candle) -> Dict:
    return {
        't': int(candle.timestamp * 1000),  # ms
        'o': candle.open,
        'h': candle.high,
        'l': candle.low,
        'c': candle.close,
        'v': candle.volume,
    }
