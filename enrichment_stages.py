# enrichment_stages.py — Modular Post Enrichment Pipeline
# Turns a raw Post into a scored, located, analyzed Event, one stage at a time.

from __future__ import annotations

import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, List, Optional

# Structured logging setup
from logging_config import get_logger, get_metrics_logger
logger = get_logger("enrichment_stages")
metrics = get_metrics_logger("enrichment_stages")

from analyzer_adapter import AnalysisResult, AnalyzerAdapter, KeywordFallbackAnalyzer
from config import CONFIG, PipelineConfig
from image_location import ImageLocationAnalyzer
from keywords_loader import PRIMARY_LANGUAGE, detect_language, normalize_location
from metrics import PIPELINE_METRICS
from models import Event, Post, new_id, utc_now
from repository import Repository, RepositoryError
from severity_scorer import heuristic_base_severity, score_severity, severity_adjustments
from signal_adapter import SignalAdapter, SignalUnavailableError
from translator import TranslationError

# Outcomes that end processing early
REJECTED = "rejected"
DUPLICATE = "duplicate"
FILTERED = "filtered"
ENRICHED = "enriched"
TERMINAL_OUTCOMES = (REJECTED, DUPLICATE, FILTERED)


def truncate_utf8(text: str, max_bytes: int) -> str:
    """Cut text to at most max_bytes of UTF-8 without splitting a character."""
    encoded = text.encode("utf-8")
    if len(encoded) <= max_bytes:
        return text
    return encoded[:max_bytes].decode("utf-8", errors="ignore")


@dataclass
class EnrichmentContext:
    """Container for the post being enriched and what the stages learned about it."""
    post: Post
    now: datetime
    text: str
    analysis_text: str = ""
    language: str = PRIMARY_LANGUAGE
    translated: bool = False
    truncated: bool = False
    analysis: Optional[AnalysisResult] = None
    location: Optional[str] = None
    location_source: Optional[str] = None
    base_severity: Optional[float] = None
    severity: Optional[float] = None
    adjustments: List[tuple] = field(default_factory=list)
    event: Optional[Event] = None
    persisted: bool = False
    outcome: Optional[str] = None
    reason: Optional[str] = None
    failed_stages: List[str] = field(default_factory=list)

    def stop(self, outcome: str, reason: str) -> None:
        self.outcome = outcome
        self.reason = reason


class EnrichmentStage:
    """Base class for all enrichment stages."""

    def __init__(self, name: str):
        self.name = name
        self.logger = get_logger(f"enrichment_stages.{name}")

    def process(self, context: EnrichmentContext) -> EnrichmentContext:
        """Run this stage; on an unexpected error, log it and pass the context on unchanged."""
        start = time.perf_counter()
        try:
            self.logger.debug("stage_started", post_id=context.post.id, stage=self.name)
            self._enrich(context)
            duration_ms = (time.perf_counter() - start) * 1000
            PIPELINE_METRICS.record_stage_time(self.name, duration_ms)
            self.logger.info("stage_completed",
                             post_id=context.post.id,
                             stage=self.name,
                             duration_ms=round(duration_ms, 2))
        except Exception as e:
            duration_ms = (time.perf_counter() - start) * 1000
            context.failed_stages.append(self.name)
            self.logger.error("stage_failed",
                              post_id=context.post.id,
                              stage=self.name,
                              error=str(e),
                              duration_ms=round(duration_ms, 2))
        return context

    def _enrich(self, context: EnrichmentContext) -> None:
        """Implement the actual enrichment logic in subclasses."""
        raise NotImplementedError("Subclasses must implement _enrich method")


class ValidationStage(EnrichmentStage):
    """Reject empty text, truncate oversized text, drop recent (author, text) duplicates."""

    def __init__(self, repository: Repository, max_text_bytes: int, dedup_window: timedelta):
        super().__init__("validation")
        self.repository = repository
        self.max_text_bytes = max_text_bytes
        self.dedup_window = dedup_window

    def process(self, context: EnrichmentContext) -> EnrichmentContext:
        if not context.text.strip():
            context.stop(REJECTED, "empty text")
            return context
        return super().process(context)

    def _enrich(self, context: EnrichmentContext) -> None:
        text = truncate_utf8(context.text.strip(), self.max_text_bytes)
        if text != context.text.strip():
            context.truncated = True
            self.logger.info("text_truncated", post_id=context.post.id, max_bytes=self.max_text_bytes)
        context.text = text
        context.analysis_text = text

        try:
            duplicate = self.repository.has_recent_duplicate(
                context.post.author, text, context.now - self.dedup_window)
        except RepositoryError as e:
            self.logger.warning("dedup_check_failed", post_id=context.post.id, error=str(e))
            duplicate = False
        if duplicate:
            context.stop(DUPLICATE, "duplicate report within dedup window")


class LanguageRoutingStage(EnrichmentStage):
    """Translate to the primary language when the lexicon says the post is in another one."""

    def __init__(self, analyzer: AnalyzerAdapter):
        super().__init__("language_routing")
        self.analyzer = analyzer

    def _enrich(self, context: EnrichmentContext) -> None:
        context.language = detect_language(context.text)
        if context.language == PRIMARY_LANGUAGE:
            return
        try:
            context.analysis_text = self.analyzer.translate(context.text, context.language)
            context.translated = True
        except TranslationError as e:
            self.logger.warning("translation_failed",
                                post_id=context.post.id,
                                language=context.language,
                                error=str(e))
            context.analysis_text = context.text


class SemanticAnalysisStage(EnrichmentStage):
    """Analyze text; the keyword classifier answers when the analyzer cannot."""

    def __init__(self, analyzer: AnalyzerAdapter, fallback: Optional[AnalyzerAdapter] = None):
        super().__init__("semantic_analysis")
        self.analyzer = analyzer
        self.fallback = fallback or KeywordFallbackAnalyzer()

    def _enrich(self, context: EnrichmentContext) -> None:
        text = context.analysis_text or context.text
        try:
            context.analysis = self.analyzer.analyze(text)
        except Exception as e:
            self.logger.warning("analyzer_failed_using_fallback", post_id=context.post.id, error=str(e))
            PIPELINE_METRICS.increment_analyzer_fallback("stage")
            context.analysis = self.fallback.analyze(text)


class RelevanceFilterStage(EnrichmentStage):
    """Drop posts the analysis says are not about a disaster."""

    def __init__(self):
        super().__init__("relevance_filter")

    def _enrich(self, context: EnrichmentContext) -> None:
        if context.analysis is None:
            context.stop(FILTERED, "analysis unavailable")
        elif not context.analysis.is_disaster_related:
            context.stop(FILTERED, "not disaster related")


class LocationResolutionStage(EnrichmentStage):
    """Text location first, then images, then whatever the source supplied."""

    def __init__(self, image_analyzer: Optional[ImageLocationAnalyzer] = None):
        super().__init__("location_resolution")
        self.image_analyzer = image_analyzer

    def _enrich(self, context: EnrichmentContext) -> None:
        candidates = [("text", lambda: context.analysis.location_guess if context.analysis else None)]
        if context.post.images and self.image_analyzer is not None:
            candidates.append(("image", lambda: self.image_analyzer.locate(context.post.images, context.text)))
        candidates.append(("source", lambda: context.post.location))

        for source, resolve in candidates:
            location = normalize_location(resolve())
            if location:
                context.location = location
                context.location_source = source
                return


class SeverityScoringStage(EnrichmentStage):
    """Base severity from analysis (or keyword tiers) adjusted by external signals."""

    def __init__(self, signal_adapter: Optional[SignalAdapter]):
        super().__init__("severity_scoring")
        self.signal_adapter = signal_adapter

    def _enrich(self, context: EnrichmentContext) -> None:
        base = context.analysis.base_severity if context.analysis else None
        if base is None:
            base = heuristic_base_severity(context.analysis_text or context.text)
        context.base_severity = base
        context.severity = base

        signals = None
        if self.signal_adapter is not None and context.location:
            try:
                signals = self.signal_adapter.get_signals(context.location, context.now)
            except SignalUnavailableError as e:
                self.logger.warning("signals_unavailable", post_id=context.post.id,
                                    location=context.location, error=str(e))
            except Exception as e:
                self.logger.warning("signals_failed", post_id=context.post.id,
                                    location=context.location, error=str(e))

        context.adjustments = severity_adjustments(signals, context.now)
        context.severity = score_severity(base, context.location, signals, context.now)


class PersistStage(EnrichmentStage):
    """Build the Event and save it; a failed write is logged and the event still returned."""

    def __init__(self, repository: Repository):
        super().__init__("persist")
        self.repository = repository

    def process(self, context: EnrichmentContext) -> EnrichmentContext:
        context.event = self.build_event(context)
        return super().process(context)

    @staticmethod
    def build_event(context: EnrichmentContext) -> Event:
        post, analysis = context.post, context.analysis
        severity = context.severity if context.severity is not None else heuristic_base_severity(context.text)
        return Event(
            id=new_id("evt"),
            post_ref=post.id,
            text=context.text,
            source=post.source,
            timestamp=post.timestamp or context.now,
            author=post.author,
            location=context.location,
            severity=severity,
            confidence=analysis.confidence if analysis else 0.0,
            event_type=analysis.event_type if analysis else "general",
            entities=list(analysis.entities) if analysis else [],
            sentiment=analysis.sentiment if analysis else "NEUTRAL",
            key_phrases=list(analysis.key_phrases) if analysis else [],
            images=list(post.images),
            language=context.language,
            analysis_method=analysis.method if analysis else "none",
            created_at=context.now,
        )

    def _enrich(self, context: EnrichmentContext) -> None:
        try:
            self.repository.save_event(context.event)
            context.persisted = True
        except RepositoryError as e:
            self.logger.error("event_persist_failed", post_id=context.post.id,
                              event_id=context.event.id, error=str(e))


class EnrichmentPipeline:
    """Main enrichment pipeline orchestrator."""

    def __init__(self, repository: Repository, analyzer: AnalyzerAdapter,
                 signal_adapter: Optional[SignalAdapter] = None,
                 image_analyzer: Optional[ImageLocationAnalyzer] = None,
                 settings: Optional[PipelineConfig] = None,
                 clock: Callable[[], datetime] = utc_now,
                 stages: Optional[List[EnrichmentStage]] = None):
        self.logger = get_logger("enrichment_pipeline")
        self.repository = repository
        self.analyzer = analyzer
        self.settings = settings or CONFIG.pipeline
        self.clock = clock
        self.stages = stages or self._get_default_stages(analyzer, signal_adapter, image_analyzer)

    def _get_default_stages(self, analyzer, signal_adapter, image_analyzer) -> List[EnrichmentStage]:
        """Get the default enrichment stages in processing order."""
        return [
            ValidationStage(self.repository, self.settings.max_text_bytes,
                            timedelta(hours=self.settings.dedup_window_hours)),
            LanguageRoutingStage(analyzer),
            SemanticAnalysisStage(analyzer),
            RelevanceFilterStage(),
            LocationResolutionStage(image_analyzer),
            SeverityScoringStage(signal_adapter),
            PersistStage(self.repository),
        ]

    def run(self, post: Post, now: Optional[datetime] = None) -> EnrichmentContext:
        """Push one post through every stage and return the final context."""
        start = time.perf_counter()
        now = now or self.clock()
        context = EnrichmentContext(post=post, now=now, text=post.text or "")

        try:
            self.repository.save_post(post)
        except RepositoryError as e:
            self.logger.error("post_persist_failed", post_id=post.id, error=str(e))

        self.logger.info("enrichment_started", post_id=post.id, stages_count=len(self.stages))

        for stage in self.stages:
            context = stage.process(context)
            # Check if the post was stopped by any stage
            if context.outcome in TERMINAL_OUTCOMES:
                PIPELINE_METRICS.increment_posts(context.outcome)
                self.logger.info("post_" + context.outcome,
                                 post_id=post.id,
                                 stage=stage.name,
                                 reason=context.reason)
                return context

        context.outcome = ENRICHED
        PIPELINE_METRICS.increment_posts(ENRICHED)
        duration_ms = (time.perf_counter() - start) * 1000
        metrics.post_enriched(
            post_id=post.id,
            severity=context.event.severity,
            duration_ms=round(duration_ms, 2),
            analysis_method=context.event.analysis_method,
            location=context.location,
            location_source=context.location_source,
            translated=context.translated,
            persisted=context.persisted,
        )
        return context

    def enrich(self, post: Post, now: Optional[datetime] = None) -> Optional[Event]:
        """Enrich a single post. Returns the Event, or None if rejected/filtered."""
        context = self.run(post, now)
        return context.event if context.outcome == ENRICHED else None


def build_enrichment_pipeline(repository: Repository) -> EnrichmentPipeline:
    """Pipeline wired with the analyzer, signal adapter and image analyzer from CONFIG."""
    from analyzer_adapter import build_analyzer
    from signal_adapter import build_signal_adapter

    return EnrichmentPipeline(
        repository=repository,
        analyzer=build_analyzer(),
        signal_adapter=build_signal_adapter(),
        image_analyzer=ImageLocationAnalyzer(),
    )
