"""
Metrics module - lightweight in-process metrics for the engine.

Counters, gauges and timing histograms are kept in a module-level registry so
callers (and tests) can read them back with get_metrics(). Timings are also
logged at DEBUG level.
"""

import functools
import logging
import threading
import time
from collections import deque
from typing import Any, Callable, Deque, Dict, TypeVar

logger = logging.getLogger(__name__)

F = TypeVar('F', bound=Callable[..., Any])

# Each histogram keeps only its most recent observations
HISTOGRAM_MAX_SAMPLES = 1024

_lock = threading.Lock()
_counters: Dict[str, float] = {}
_gauges: Dict[str, float] = {}
_histograms: Dict[str, Deque[float]] = {}


def timed_histogram(name: str, description: str = '') -> Callable[[F], F]:
    """
    Decorator that records the execution time of the wrapped function.

    Args:
        name: The name of the histogram the duration is recorded under
        description: Optional description

    Returns:
        A decorator function
    """
    def decorator(fn: F) -> F:
        @functools.wraps(fn)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            start_time = time.perf_counter()
            try:
                return fn(*args, **kwargs)
            finally:
                duration = time.perf_counter() - start_time
                observe(name, duration)
                logger.debug(f"{name}: {duration:.4f}s")

        return wrapper  # type: ignore

    return decorator


def observe(name: str, value: float) -> None:
    """Add one observation to a histogram."""
    with _lock:
        _histograms.setdefault(name, deque(maxlen=HISTOGRAM_MAX_SAMPLES)).append(value)


def set_gauge(name: str, value: float, description: str = '') -> None:
    with _lock:
        _gauges[name] = value


def inc_counter(name: str, value: float = 1.0, description: str = '') -> None:
    with _lock:
        _counters[name] = _counters.get(name, 0.0) + value


def get_metrics() -> Dict[str, Dict[str, Any]]:
    """Return a copy of every recorded metric."""
    with _lock:
        return {
            "counters": dict(_counters),
            "gauges": dict(_gauges),
            "histograms": {k: list(v) for k, v in _histograms.items()},
        }


def reset_metrics() -> None:
    with _lock:
        _counters.clear()
        _gauges.clear()
        _histograms.clear()
