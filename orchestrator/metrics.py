import time
from collections import Counter
from collections.abc import Iterator
from contextlib import contextmanager
from threading import Lock


class Metrics:
    """Process-wide counters plus cumulative timings.

    A timing named ``step`` is exported as ``step_seconds_total`` and
    ``step_count`` so rates can be derived by whoever scrapes /metrics.
    """

    def __init__(self) -> None:
        self._lock = Lock()
        self._counters: Counter[str] = Counter()
        self._seconds: dict[str, float] = {}

    def inc(self, key: str, amount: int = 1) -> None:
        with self._lock:
            self._counters[key] += amount

    def get(self, key: str) -> int:
        with self._lock:
            return self._counters[key]

    def observe(self, key: str, seconds: float) -> None:
        with self._lock:
            self._seconds[key] = self._seconds.get(key, 0.0) + seconds
            self._counters[f"{key}_count"] += 1

    @contextmanager
    def timed(self, key: str) -> Iterator[None]:
        started = time.monotonic()
        try:
            yield
        finally:
            self.observe(key, time.monotonic() - started)

    def snapshot(self) -> dict[str, float]:
        with self._lock:
            data: dict[str, float] = dict(self._counters)
            for key, total in self._seconds.items():
                data[f"{key}_seconds_total"] = round(total, 6)
            return data


metrics = Metrics()
