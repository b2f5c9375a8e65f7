"""
Metrics collection for observability.

Tracks call latency, error rates, in-flight depth and handshake attempts.
"""

import time
from dataclasses import dataclass, field
from typing import Dict, Any
from collections import deque
import threading


@dataclass
class LinkMetricsSnapshot:
    """Point-in-time snapshot of all metrics."""

    # Counters
    requests_total: int = 0
    requests_success: int = 0
    requests_failed: int = 0

    # Latency (milliseconds)
    latency_avg_ms: float = 0.0
    latency_p50_ms: float = 0.0
    latency_p95_ms: float = 0.0
    latency_p99_ms: float = 0.0
    latency_min_ms: float = 0.0
    latency_max_ms: float = 0.0

    # In-flight calls
    inflight: int = 0
    inflight_max: int = 0

    # Handshake
    handshake_attempts: int = 0

    # Per-style call counts
    calls_by_style: Dict[str, int] = field(default_factory=dict)

    # Timestamp
    timestamp: float = field(default_factory=time.time)


class Metrics:
    """
    Thread-safe metrics collector for a link.

    Usage:
        metrics = Metrics()

        start = metrics.start_request("add", "promise")
        # ... reply arrives ...
        metrics.end_request(start, success=True)

        snapshot = metrics.snapshot()
        print(f"Avg latency: {snapshot.latency_avg_ms}ms")
    """

    def __init__(self, max_latency_samples: int = 1000):
        self.max_latency_samples = max_latency_samples

        self._lock = threading.Lock()
        self._requests_total = 0
        self._requests_success = 0
        self._requests_failed = 0
        self._handshake_attempts = 0
        self._calls_by_style: Dict[str, int] = {}

        self._inflight = 0
        self._inflight_max = 0

        # Latency samples (circular buffer)
        self._latencies: deque = deque(maxlen=max_latency_samples)

    def start_request(self, function: str, style: str) -> float:
        """
        Start tracking a call.

        Returns start timestamp for later end_request() call.
        """
        with self._lock:
            self._requests_total += 1
            self._calls_by_style[style] = self._calls_by_style.get(style, 0) + 1
            self._inflight += 1
            self._inflight_max = max(self._inflight_max, self._inflight)

        return time.perf_counter()

    def end_request(self, start_time: float, success: bool = True) -> float:
        """
        End tracking a call.

        Returns latency in milliseconds.
        """
        latency_ms = (time.perf_counter() - start_time) * 1000

        with self._lock:
            self._inflight -= 1

            if success:
                self._requests_success += 1
            else:
                self._requests_failed += 1

            self._latencies.append(latency_ms)

        return latency_ms

    def record_handshake_attempt(self):
        with self._lock:
            self._handshake_attempts += 1

    def snapshot(self) -> LinkMetricsSnapshot:
        """Get a point-in-time snapshot of all metrics."""
        with self._lock:
            latencies = list(self._latencies)

            # Calculate percentiles
            if latencies:
                sorted_latencies = sorted(latencies)
                n = len(sorted_latencies)
                p50_idx = int(n * 0.50)
                p95_idx = int(n * 0.95)
                p99_idx = int(n * 0.99)

                latency_avg = sum(latencies) / n
                latency_p50 = sorted_latencies[min(p50_idx, n - 1)]
                latency_p95 = sorted_latencies[min(p95_idx, n - 1)]
                latency_p99 = sorted_latencies[min(p99_idx, n - 1)]
                latency_min = sorted_latencies[0]
                latency_max = sorted_latencies[-1]
            else:
                latency_avg = latency_p50 = latency_p95 = latency_p99 = 0.0
                latency_min = latency_max = 0.0

            return LinkMetricsSnapshot(
                requests_total=self._requests_total,
                requests_success=self._requests_success,
                requests_failed=self._requests_failed,
                latency_avg_ms=latency_avg,
                latency_p50_ms=latency_p50,
                latency_p95_ms=latency_p95,
                latency_p99_ms=latency_p99,
                latency_min_ms=latency_min,
                latency_max_ms=latency_max,
                inflight=self._inflight,
                inflight_max=self._inflight_max,
                handshake_attempts=self._handshake_attempts,
                calls_by_style=dict(self._calls_by_style),
            )

    def reset(self):
        """Reset all metrics."""
        with self._lock:
            self._requests_total = 0
            self._requests_success = 0
            self._requests_failed = 0
            self._handshake_attempts = 0
            self._calls_by_style.clear()
            self._inflight = 0
            self._inflight_max = 0
            self._latencies.clear()

    def to_dict(self) -> Dict[str, Any]:
        """Get metrics as a dictionary (for logging/serialization)."""
        snapshot = self.snapshot()
        return {
            "requests": {
                "total": snapshot.requests_total,
                "success": snapshot.requests_success,
                "failed": snapshot.requests_failed,
                "error_rate": (
                    snapshot.requests_failed / snapshot.requests_total
                    if snapshot.requests_total > 0
                    else 0.0
                ),
                "by_style": snapshot.calls_by_style,
            },
            "latency_ms": {
                "avg": round(snapshot.latency_avg_ms, 2),
                "p50": round(snapshot.latency_p50_ms, 2),
                "p95": round(snapshot.latency_p95_ms, 2),
                "p99": round(snapshot.latency_p99_ms, 2),
                "min": round(snapshot.latency_min_ms, 2),
                "max": round(snapshot.latency_max_ms, 2),
            },
            "inflight": {
                "depth": snapshot.inflight,
                "max_depth": snapshot.inflight_max,
            },
            "handshake": {
                "attempts": snapshot.handshake_attempts,
            },
        }
