# pipeline_orchestrator.py — Main processing cycle and system health
#
# One worker thread drives: drain the ingest queue (one post at a time with a
# fixed delay) -> spike detection -> alert dispatch -> newly verified alerts ->
# system status -> sleep. The verification matcher runs on its own thread and
# reports verified events back through a callback.

from __future__ import annotations

import queue
import threading
import time
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from core.schemas import IngestSchema
from config import CONFIG, PipelineConfig
from enrichment_stages import DUPLICATE, ENRICHED, FILTERED, REJECTED, EnrichmentPipeline
from logging_config import get_logger
from metrics import PIPELINE_METRICS
from models import Event, Post, Verification, new_id, utc_now
from notification_dispatcher import NotificationDispatcher
from repository import Repository, RepositoryError
from spike_detector import SpikeDetector
from verification_matcher import VerificationMatcher

logger = get_logger("pipeline_orchestrator")

HEALTHY = "HEALTHY"
WARNING = "WARNING"
DEGRADED = "DEGRADED"

FALSE_POSITIVE_LIMIT = 0.1
MIN_LOCATION_RATIO = 0.5


def calculate_system_health(analyzed_posts: int, false_positives: int, location_detected: int) -> str:
    """DEGRADED above 10% false positives, WARNING under 50% located, otherwise HEALTHY."""
    if false_positives > analyzed_posts * FALSE_POSITIVE_LIMIT:
        return DEGRADED
    if analyzed_posts > 0 and location_detected / analyzed_posts < MIN_LOCATION_RATIO:
        return WARNING
    return HEALTHY


def enrichment_output(context) -> Dict[str, Any]:
    """The result handed back to whoever submitted the post."""
    if context.outcome == ENRICHED and context.event is not None:
        event = context.event
        return {
            "id": event.id,
            "verified": 1 if event.verified else 0,
            "severity": round(event.severity, 3),
            "location": event.location,
            "eventType": event.event_type,
            "message": "Disaster event created",
        }
    messages = {
        FILTERED: "Post not disaster related",
        DUPLICATE: "Duplicate report ignored",
        REJECTED: "Post rejected",
    }
    message = messages.get(context.outcome, "Post not processed")
    if context.reason and context.outcome == REJECTED:
        message = f"{message}: {context.reason}"
    return {
        "id": context.post.id,
        "verified": 0,
        "severity": 0.0,
        "location": None,
        "eventType": "none",
        "message": message,
    }


class PipelineOrchestrator:
    """Drives enrichment, spike detection and dispatch; tracks statistics and health."""

    def __init__(self, repository: Repository, pipeline: EnrichmentPipeline,
                 dispatcher: NotificationDispatcher,
                 spike_detector: Optional[SpikeDetector] = None,
                 matcher: Optional[VerificationMatcher] = None,
                 settings: Optional[PipelineConfig] = None,
                 clock: Callable[[], datetime] = utc_now):
        self.repository = repository
        self.pipeline = pipeline
        self.dispatcher = dispatcher
        self.settings = settings or CONFIG.pipeline
        self.spike_detector = spike_detector or SpikeDetector(repository, self.settings, clock)
        self.matcher = matcher
        self.clock = clock
        self.schema = IngestSchema()

        self.queue: "queue.Queue[Post]" = queue.Queue(maxsize=self.settings.queue_max_size)
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._cycle_lock = threading.Lock()
        self._last_verified_check = clock()

        self._stats_lock = threading.Lock()
        self._stats = {
            "total_posts": 0,
            "analyzed_posts": 0,
            "false_positives": 0,
            "filtered_posts": 0,
            "duplicate_posts": 0,
            "rejected_posts": 0,
            "location_detected": 0,
            "image_locations": 0,
            "notifications_sent": 0,
            "cycles": 0,
        }

        if self.matcher is not None and self.matcher.on_verified is None:
            self.matcher.on_verified = self._on_event_verified

    # ------------------------------------------------------------------
    # Ingestion
    # ------------------------------------------------------------------

    def build_post(self, raw: Dict[str, Any]) -> Post:
        """Validate an ingestion payload (raises marshmallow.ValidationError) and build a Post."""
        data = self.schema.load(raw)
        return Post(
            id=new_id("post"),
            text=data["text"],
            source=data["source"],
            timestamp=data.get("timestamp") or self.clock(),
            author=data.get("author"),
            images=tuple(data.get("images") or ()),
            location=data.get("location"),
        )

    def submit(self, raw: Dict[str, Any]) -> Post:
        """Validate and enqueue for the next cycle. Raises queue.Full when the queue is at capacity."""
        post = self.build_post(raw)
        try:
            self.queue.put_nowait(post)
        except queue.Full:
            logger.warning("ingest_queue_full", post_id=post.id, max_size=self.settings.queue_max_size)
            raise
        PIPELINE_METRICS.set_queue_depth(self.queue.qsize())
        logger.debug("post_submitted", post_id=post.id, source=post.source)
        return post

    def ingest(self, raw: Dict[str, Any]) -> Dict[str, Any]:
        """Validate and enrich right away; returns the enrichment output."""
        return self.process_post(self.build_post(raw))

    def process_post(self, post: Post, now: Optional[datetime] = None) -> Dict[str, Any]:
        context = self.pipeline.run(post, now)
        with self._stats_lock:
            self._stats["total_posts"] += 1
            if context.failed_stages:
                self._stats["false_positives"] += 1
            if context.outcome == FILTERED:
                self._stats["filtered_posts"] += 1
            elif context.outcome == DUPLICATE:
                self._stats["duplicate_posts"] += 1
            elif context.outcome == REJECTED:
                self._stats["rejected_posts"] += 1
            elif context.outcome == ENRICHED:
                self._stats["analyzed_posts"] += 1
                if context.location:
                    self._stats["location_detected"] += 1
                    if context.location_source == "image":
                        self._stats["image_locations"] += 1
        return enrichment_output(context)

    # ------------------------------------------------------------------
    # Cycle
    # ------------------------------------------------------------------

    def run_cycle(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        """One full pass; returns a summary of what happened."""
        with self._cycle_lock:
            start = time.perf_counter()
            results = self._drain_queue()
            now = now or self.clock()

            alerts = self.spike_detector.detect(now)
            for alert in alerts:
                self._dispatch(lambda a=alert: self.dispatcher.dispatch_alert(a, now=now), alert_id=alert.id)

            newly_verified = self._check_newly_verified(now)

            status = None
            if self.settings.system_status_enabled:
                status = self.get_system_status()
                self._dispatch(lambda: self.dispatcher.dispatch_system_status(status, now=now))

            with self._stats_lock:
                self._stats["cycles"] += 1
            summary = {
                "processed_posts": len(results),
                "alerts_created": len(alerts),
                "alerts_newly_verified": len(newly_verified),
                "health": status["health"] if status else None,
                "duration_ms": round((time.perf_counter() - start) * 1000, 2),
            }
            logger.info("cycle_completed", **summary)
            return summary

    def _drain_queue(self) -> List[Dict[str, Any]]:
        results = []
        while not self._stop.is_set():
            try:
                post = self.queue.get_nowait()
            except queue.Empty:
                break
            try:
                results.append(self.process_post(post))
            except Exception as e:
                with self._stats_lock:
                    self._stats["false_positives"] += 1
                logger.error("post_processing_failed", post_id=post.id, error=str(e))
            finally:
                self.queue.task_done()
            PIPELINE_METRICS.set_queue_depth(self.queue.qsize())
            if not self.queue.empty() and self.settings.inter_post_delay_seconds > 0:
                self._stop.wait(self.settings.inter_post_delay_seconds)
        return results

    def _check_newly_verified(self, now: datetime):
        since, self._last_verified_check = self._last_verified_check, now
        try:
            alerts = self.repository.list_alerts_verified_since(since)
        except RepositoryError as e:
            logger.error("verified_alerts_query_failed", error=str(e))
            return []
        for alert in alerts:
            logger.info("alert_verified_since_last_cycle", alert_id=alert.id, location=alert.location)
        return alerts

    def _dispatch(self, send: Callable[[], Dict[str, Any]], alert_id: Optional[str] = None) -> None:
        try:
            result = send()
        except Exception as e:
            logger.error("dispatch_failed", alert_id=alert_id, error=str(e))
            return
        with self._stats_lock:
            self._stats["notifications_sent"] += result.get("successful", 0)

    def _on_event_verified(self, event: Event, verification: Verification) -> None:
        self._dispatch(lambda: self.dispatcher.dispatch_verification(event, verification),
                       alert_id=event.id)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._worker, daemon=True, name="PipelineOrchestrator")
        self._thread.start()
        if self.matcher is not None:
            self.matcher.start()
        logger.info("orchestrator_started", cycle_interval=self.settings.cycle_interval_seconds)

    def _worker(self) -> None:
        while not self._stop.is_set():
            wait = self.settings.cycle_interval_seconds
            try:
                self.run_cycle()
            except Exception as e:
                logger.error("cycle_failed", error=str(e))
                wait *= 2  # back off after a failed cycle
            self._stop.wait(wait)

    def stop(self, timeout: float = 30.0) -> None:
        """Stop scheduling cycles; the in-flight post and cycle are allowed to finish."""
        self._stop.set()
        if self.matcher is not None:
            self.matcher.stop(timeout=timeout)
        if self._thread and self._thread.is_alive():
            self._thread.join(timeout=timeout)
        logger.info("orchestrator_stopped", queued_posts=self.queue.qsize())

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    # ------------------------------------------------------------------
    # Statistics
    # ------------------------------------------------------------------

    def _count(self, name: str) -> Optional[int]:
        try:
            return getattr(self.repository, name)()
        except RepositoryError as e:
            logger.warning("statistics_query_failed", query=name, error=str(e))
            return None

    def get_statistics(self) -> Dict[str, Any]:
        with self._stats_lock:
            stats = dict(self._stats)
        stats.update({
            "raw_posts": self._count("count_posts"),
            "events": self._count("count_events"),
            "located_events": self._count("count_located_events"),
            "verified_events": self._count("count_verified_events"),
            "alerts": self._count("count_alerts"),
            "verifications": self._count("count_verifications"),
            "queue_depth": self.queue.qsize(),
            "last_updated": self.clock().isoformat(),
        })
        return stats

    def get_system_status(self) -> Dict[str, Any]:
        stats = self.get_statistics()
        return {
            "statistics": stats,
            "health": calculate_system_health(
                stats["analyzed_posts"], stats["false_positives"], stats["location_detected"]),
            "timestamp": stats["last_updated"],
            "running": self.running,
            "verification_matcher_running": self.matcher.running if self.matcher else False,
        }
