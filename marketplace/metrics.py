"""In-process counters and timings.

One ``Metrics`` instance is built per application and passed to whatever
records into it. Recording is best-effort: it never raises into a request.
"""

import logging
import threading
from collections import Counter, defaultdict

logger = logging.getLogger(__name__)

_MAX_SAMPLES = 1000


def _key(name: str, labels: dict) -> str:
    if not labels:
        return name
    inner = ",".join(f"{k}={labels[k]}" for k in sorted(labels))
    return f"{name}{{{inner}}}"


class Metrics:
    def __init__(self):
        self._lock = threading.Lock()
        self._counters = Counter()
        self._timings = defaultdict(list)

    def increment(self, name: str, amount: int = 1, **labels) -> None:
        try:
            with self._lock:
                self._counters[_key(name, labels)] += amount
        except Exception:
            logger.warning("Failed to record metric %s", name, exc_info=True)

    def observe(self, name: str, value_ms: float, **labels) -> None:
        try:
            with self._lock:
                samples = self._timings[_key(name, labels)]
                samples.append(value_ms)
                if len(samples) > _MAX_SAMPLES:
                    del samples[: len(samples) - _MAX_SAMPLES]
        except Exception:
            logger.warning("Failed to record timing %s", name, exc_info=True)

    def count(self, name: str, **labels) -> int:
        with self._lock:
            return self._counters.get(_key(name, labels), 0)

    def snapshot(self) -> dict:
        with self._lock:
            timings = {
                key: {
                    "count": len(samples),
                    "avg_ms": round(sum(samples) / len(samples), 3),
                    "max_ms": round(max(samples), 3),
                }
                for key, samples in self._timings.items()
                if samples
            }
            return {"counters": dict(self._counters), "timings": timings}
