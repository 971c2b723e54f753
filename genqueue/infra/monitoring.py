import time
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field

from genqueue.config.logging import get_logger

logger = get_logger(__name__)


@dataclass
class TimerMetrics:
    """Aggregated spans recorded under one timer name."""

    count: int = 0
    total_s: float = 0.0
    min_s: float | None = None
    max_s: float = 0.0
    last_s: float = 0.0

    @property
    def avg_s(self) -> float:
        return self.total_s / self.count if self.count else 0.0

    def record(self, elapsed: float) -> None:
        self.count += 1
        self.total_s += elapsed
        self.last_s = elapsed
        self.max_s = max(self.max_s, elapsed)
        self.min_s = elapsed if self.min_s is None else min(self.min_s, elapsed)

    def as_dict(self) -> dict[str, float | int | None]:
        return {
            "count": self.count,
            "total_s": round(self.total_s, 4),
            "avg_s": round(self.avg_s, 4),
            "min_s": None if self.min_s is None else round(self.min_s, 4),
            "max_s": round(self.max_s, 4),
            "last_s": round(self.last_s, 4),
        }


@dataclass
class PerformanceMonitor:
    """Named start/stop timers.

    Spans longer than ``slow_threshold_s`` are logged as warnings.
    """

    slow_threshold_s: float = 5.0
    _started: dict[str, float] = field(default_factory=dict)
    _metrics: dict[str, TimerMetrics] = field(default_factory=dict)

    def start_timer(self, name: str) -> None:
        self._started[name] = time.perf_counter()

    def stop_timer(self, name: str) -> float | None:
        """Stop ``name`` and return the elapsed seconds, or None if it was never started."""
        started = self._started.pop(name, None)
        if started is None:
            logger.debug("Timer stopped without start", timer=name)
            return None

        elapsed = time.perf_counter() - started
        self._metrics.setdefault(name, TimerMetrics()).record(elapsed)

        if elapsed > self.slow_threshold_s:
            logger.warning(
                "Slow operation",
                timer=name,
                elapsed_s=round(elapsed, 3),
                threshold_s=self.slow_threshold_s,
            )
        return elapsed

    @contextmanager
    def profile(self, name: str) -> Iterator[None]:
        self.start_timer(name)
        try:
            yield
        finally:
            self.stop_timer(name)

    def get_metrics(self, name: str) -> dict[str, float | int | None] | None:
        metrics = self._metrics.get(name)
        return metrics.as_dict() if metrics else None

    def get_all_metrics(self) -> dict[str, dict[str, float | int | None]]:
        return {name: metrics.as_dict() for name, metrics in self._metrics.items()}

    def reset(self) -> None:
        self._started.clear()
        self._metrics.clear()
