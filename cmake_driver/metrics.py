"""
Observability and metrics for the cmake_driver package.

Counts what crosses the wire (requests per type, messages per type, decoded
and rejected frames, cookie mismatches), the lifecycle of the CMake server
process, and how long configure chains and build invocations take.

A driver session may live as long as the editor or service embedding it, so
timings are kept as running aggregates per operation rather than samples.
"""

import time
import logging
import threading
from typing import Dict, Any, Optional
from dataclasses import dataclass
from contextlib import contextmanager

logger = logging.getLogger(__name__)


@dataclass
class TimingSeries:
    """Running aggregate of one timed operation."""
    count: int = 0
    failures: int = 0
    total_ms: float = 0.0
    min_ms: float = float("inf")
    max_ms: float = 0.0
    last_ms: float = 0.0

    def add(self, duration_ms: float, success: bool) -> None:
        self.count += 1
        if not success:
            self.failures += 1
        self.total_ms += duration_ms
        self.min_ms = min(self.min_ms, duration_ms)
        self.max_ms = max(self.max_ms, duration_ms)
        self.last_ms = duration_ms

    def as_dict(self) -> Dict[str, float]:
        return {
            "count": self.count,
            "total_ms": self.total_ms,
            "avg_ms": self.total_ms / self.count,
            "min_ms": self.min_ms,
            "max_ms": self.max_ms,
            "last_ms": self.last_ms,
            "success_rate": (self.count - self.failures) / self.count,
        }


class MetricsCollector:
    """
    Thread-safe counters and timings for one driver process.

    Counter names:
        protocol.requests.<type>, protocol.requests.total
        protocol.messages.<type>
        protocol.frames_decoded, protocol.decode_errors, protocol.cookie_mismatches
        server.process_starts, server.process_stops, server.process_crashes
        <operation>.success, <operation>.failure   (from timings)

    Usage:
        metrics = get_metrics()
        with metrics.timer("build"):
            result = await run_command(...)
        metrics.log_summary()
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._counters: Dict[str, int] = {}
        self._timings: Dict[str, TimingSeries] = {}
        self._started = time.monotonic()

    def increment(self, name: str, amount: int = 1) -> None:
        with self._lock:
            self._counters[name] = self._counters.get(name, 0) + amount

    def get_counter(self, name: str) -> int:
        with self._lock:
            return self._counters.get(name, 0)

    # --- Timings ---

    @contextmanager
    def timer(self, operation: str):
        """Time the enclosed block; an exception marks the run as failed."""
        start = time.perf_counter()
        success = False
        try:
            yield
            success = True
        finally:
            self.record_timing(operation, (time.perf_counter() - start) * 1000, success)

    def record_timing(self, operation: str, duration_ms: float, success: bool = True) -> None:
        outcome = "success" if success else "failure"
        with self._lock:
            self._timings.setdefault(operation, TimingSeries()).add(duration_ms, success)
            key = f"{operation}.{outcome}"
            self._counters[key] = self._counters.get(key, 0) + 1
        logger.debug(f"{operation} took {duration_ms:.0f}ms ({outcome})")

    def get_timing_stats(self, operation: str) -> Optional[Dict[str, float]]:
        """count, total_ms, avg_ms, min_ms, max_ms, last_ms, success_rate; None if never timed."""
        with self._lock:
            series = self._timings.get(operation)
            return series.as_dict() if series else None

    # --- Wire Traffic ---

    def record_request(self, request_type: str) -> None:
        self.increment(f"protocol.requests.{request_type}")
        self.increment("protocol.requests.total")

    def record_message(self, message_type: str) -> None:
        self.increment(f"protocol.messages.{message_type}")

    def record_frame(self) -> None:
        self.increment("protocol.frames_decoded")

    def record_decode_error(self) -> None:
        self.increment("protocol.decode_errors")

    def record_cookie_mismatch(self) -> None:
        self.increment("protocol.cookie_mismatches")

    # --- Server Process ---

    def record_process_start(self) -> None:
        self.increment("server.process_starts")

    def record_process_stop(self) -> None:
        """An exit that followed stop()."""
        self.increment("server.process_stops")

    def record_process_crash(self) -> None:
        """An exit nobody asked for."""
        self.increment("server.process_crashes")

    # --- Export ---

    def _grouped(self, prefix: str) -> Dict[str, int]:
        return {
            name[len(prefix):]: value
            for name, value in self._counters.items()
            if name.startswith(prefix)
        }

    def summary(self) -> Dict[str, Any]:
        """Snapshot of every counter and timing, grouped for logging."""
        with self._lock:
            return {
                "uptime_seconds": round(time.monotonic() - self._started, 2),
                "counters": dict(self._counters),
                "requests": self._grouped("protocol.requests."),
                "messages": self._grouped("protocol.messages."),
                "server": {
                    "process_starts": self._counters.get("server.process_starts", 0),
                    "process_stops": self._counters.get("server.process_stops", 0),
                    "process_crashes": self._counters.get("server.process_crashes", 0),
                },
                "timings": {op: series.as_dict() for op, series in self._timings.items()},
            }

    def log_summary(self, level: int = logging.INFO) -> None:
        logger.log(level, f"cmake_driver metrics: {self.summary()}")

    def reset(self) -> None:
        with self._lock:
            self._counters.clear()
            self._timings.clear()
            self._started = time.monotonic()


_collector: Optional[MetricsCollector] = None
_collector_lock = threading.Lock()


def get_metrics() -> MetricsCollector:
    """The process-wide collector, created on first use."""
    global _collector
    with _collector_lock:
        if _collector is None:
            _collector = MetricsCollector()
        return _collector


def reset_metrics() -> None:
    with _collector_lock:
        if _collector is not None:
            _collector.reset()
