"""
RETRY — exponential backoff for exchange calls
===============================================
``retry(...)`` decorates a function; ``call_with_retry`` does the same for a
one-off call. CircuitBreakerError is never retried: an open circuit means the
caller should give up for now, not hammer the exchange.
"""

import time
import random
import logging
from functools import wraps
from typing import Any, Callable, Optional, Tuple, Type

import config
from circuit_breaker import CircuitBreaker, CircuitBreakerError

logger = logging.getLogger(__name__)


def backoff_delay(attempt: int, initial_delay: float, max_delay: float,
                  base: float = 2.0, jitter: float = 0.1) -> float:
    """Delay before retry number ``attempt`` (0-indexed), ± jitter fraction."""
    delay = min(initial_delay * (base ** attempt), max_delay)
    if jitter:
        spread = delay * jitter
        delay += random.uniform(-spread, spread)
    return max(0.0, delay)


def call_with_retry(
    func: Callable,
    *args,
    exceptions: Tuple[Type[Exception], ...] = (Exception,),
    max_attempts: int = config.ORDER_MAX_RETRIES,
    initial_delay: float = config.ORDER_RETRY_INITIAL_DELAY,
    max_delay: float = config.ORDER_RETRY_MAX_DELAY,
    jitter: float = 0.1,
    circuit_breaker: Optional[CircuitBreaker] = None,
    sleep: Optional[Callable[[float], None]] = None,
    **kwargs,
) -> Any:
    name = getattr(func, "__name__", repr(func))
    for attempt in range(max_attempts):
        try:
            if circuit_breaker is not None:
                return circuit_breaker.call(func, *args, **kwargs)
            return func(*args, **kwargs)
        except CircuitBreakerError:
            raise
        except exceptions as e:
            if attempt == max_attempts - 1:
                logger.error(f"❌ {name}: giving up after {max_attempts} attempts ({e})")
                raise
            delay = backoff_delay(attempt, initial_delay, max_delay, jitter=jitter)
            logger.warning(
                f"⚠️ Retry {attempt + 1}/{max_attempts} for {name}: "
                f"{e.__class__.__name__}: {e} (waiting {delay:.2f}s)")
            (sleep or time.sleep)(delay)


def retry(exceptions: Tuple[Type[Exception], ...] = (Exception,),
          max_attempts: int = config.ORDER_MAX_RETRIES,
          initial_delay: float = config.ORDER_RETRY_INITIAL_DELAY,
          max_delay: float = config.ORDER_RETRY_MAX_DELAY,
          circuit_breaker: Optional[CircuitBreaker] = None,
          sleep: Optional[Callable[[float], None]] = None):
    def decorator(func: Callable) -> Callable:
        @wraps(func)
        def wrapper(*args, **kwargs):
            return call_with_retry(
                func, *args,
                exceptions=exceptions,
                max_attempts=max_attempts,
                initial_delay=initial_delay,
                max_delay=max_delay,
                circuit_breaker=circuit_breaker,
                sleep=sleep,
                **kwargs)
        return wrapper
    return decorator
