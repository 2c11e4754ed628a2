# spike_detector.py — Sliding-window clustering of recent events into Alerts
#
# Every cycle looks at the whole window again. A cluster that keeps growing
# produces a new Alert each cycle; duplicate delivery is stopped by the
# notification ledger, not here.

from __future__ import annotations

from collections import OrderedDict
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional

from config import CONFIG, PipelineConfig
from logging_config import get_logger
from metrics import PIPELINE_METRICS
from models import UNKNOWN_LOCATION, Alert, Event, new_id, utc_now
from repository import Repository, RepositoryError

logger = get_logger("spike_detector")


def group_by_location(events: List[Event]) -> Dict[str, List[Event]]:
    """Group events by location, oldest first; events with no location go under 'unknown'."""
    groups: Dict[str, List[Event]] = OrderedDict()
    for event in sorted(events, key=lambda e: e.timestamp):
        groups.setdefault(event.location or UNKNOWN_LOCATION, []).append(event)
    return groups


def cluster_severity(events: List[Event], count_weight: float = 0.1) -> float:
    """min(1, mean severity + count * weight)"""
    if not events:
        return 0.0
    average = sum(e.severity for e in events) / len(events)
    return min(1.0, average + len(events) * count_weight)


def build_alerts(events: List[Event], now: datetime, min_events: int = 3, min_group_size: int = 2,
                 count_weight: float = 0.1) -> List[Alert]:
    """One Alert per qualifying location group. Pure; nothing is persisted."""
    if len(events) < min_events:
        return []

    alerts = []
    for location, group in group_by_location(events).items():
        if len(group) < min_group_size:
            continue
        any_verified = any(e.verified for e in group)
        alerts.append(Alert(
            id=new_id("alt"),
            location=location,
            severity=cluster_severity(group, count_weight),
            event_count=len(group),
            event_refs=[e.id for e in group],
            timestamp=now,
            verified=any_verified,
            verified_at=now if any_verified else None,
        ))
    return alerts


class SpikeDetector:
    """Re-evaluates the sliding window once per orchestration cycle."""

    def __init__(self, repository: Repository, settings: Optional[PipelineConfig] = None,
                 clock: Callable[[], datetime] = utc_now):
        self.repository = repository
        self.settings = settings or CONFIG.pipeline
        self.clock = clock
        self.window = timedelta(minutes=self.settings.spike_window_minutes)

    def detect(self, now: Optional[datetime] = None) -> List[Alert]:
        """Create and persist Alerts for the current window; returns them."""
        now = now or self.clock()
        try:
            recent = self.repository.list_events_since(now - self.window)
        except RepositoryError as e:
            logger.error("spike_window_query_failed", error=str(e))
            return []

        # Only events that existed before this cycle's alerts
        events = [e for e in recent if e.timestamp <= now and e.created_at <= now]
        if len(events) < self.settings.spike_min_events:
            logger.debug("spike_window_below_threshold", events=len(events),
                         threshold=self.settings.spike_min_events)
            return []

        alerts = build_alerts(
            events, now,
            min_events=self.settings.spike_min_events,
            min_group_size=self.settings.spike_min_group_size,
            count_weight=self.settings.spike_count_weight,
        )
        for alert in alerts:
            try:
                self.repository.save_alert(alert)
            except RepositoryError as e:
                logger.error("alert_persist_failed", alert_id=alert.id, error=str(e))
            logger.info("spike_alert_created",
                        alert_id=alert.id,
                        location=alert.location,
                        event_count=alert.event_count,
                        severity=round(alert.severity, 3))

        if alerts:
            PIPELINE_METRICS.increment_alerts(len(alerts))
        return alerts
