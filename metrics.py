# metrics.py – In-process counters, timings and gauges for the disaster pipeline
from __future__ import annotations
import threading
from collections import defaultdict, deque
from typing import Deque, Dict

# Timings kept per metric name
TIMER_WINDOW = 1000


class MetricsCollector:
    def __init__(self):
        self.counters: Dict[str, int] = defaultdict(int)
        self.timers: Dict[str, Deque[float]] = defaultdict(lambda: deque(maxlen=TIMER_WINDOW))
        self.gauges: Dict[str, float] = {}
        self._lock = threading.Lock()

    def increment(self, name: str, value: int = 1):
        with self._lock:
            self.counters[name] += value

    def timing(self, name: str, duration_ms: float):
        with self._lock:
            self.timers[name].append(duration_ms)

    def gauge(self, name: str, value: float):
        with self._lock:
            self.gauges[name] = value

    def reset(self):
        with self._lock:
            self.counters.clear()
            self.timers.clear()
            self.gauges.clear()

    def snapshot(self) -> dict:
        with self._lock:
            counters = dict(self.counters)
            timers = {k: list(v) for k, v in self.timers.items()}
            gauges = dict(self.gauges)
        return {
            "counters": counters,
            "timers": {k: {
                "count": len(v),
                "avg_ms": round(sum(v) / len(v), 2) if v else 0,
                "min_ms": min(v) if v else 0,
                "max_ms": max(v) if v else 0,
            } for k, v in timers.items()},
            "gauges": gauges,
        }


# Global metrics instance
METRICS = MetricsCollector()


class PipelineMetrics:
    """Disaster pipeline metric names over a collector"""

    def __init__(self, collector: MetricsCollector = None):
        self.collector = collector or METRICS

    def record_stage_time(self, stage: str, duration_ms: float):
        self.collector.timing(f"pipeline.stage.{stage}", duration_ms)

    def increment_posts(self, outcome: str):
        """Count posts by outcome (enriched, filtered, rejected, duplicate)"""
        self.collector.increment(f"pipeline.posts.{outcome}")

    def increment_analyzer_fallback(self, reason: str):
        self.collector.increment(f"analyzer.fallback.{reason}")

    def increment_alerts(self, count: int = 1):
        self.collector.increment("spike.alerts_created", count)

    def increment_verifications(self, matched: int):
        self.collector.increment("verification.events_verified", matched)

    def record_notification(self, kind: str, successful: int, failed: int):
        self.collector.increment(f"notifications.{kind}.sent", successful)
        self.collector.increment(f"notifications.{kind}.failed", failed)

    def increment_notification_skipped(self, kind: str, reason: str):
        self.collector.increment(f"notifications.{kind}.skipped.{reason}")

    def set_queue_depth(self, depth: int):
        self.collector.gauge("pipeline.queue_depth", float(depth))

    def get_metrics_summary(self) -> dict:
        return self.collector.snapshot()


PIPELINE_METRICS = PipelineMetrics()
