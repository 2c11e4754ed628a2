#!/usr/bin/env python3
"""
Tests for the modular post enrichment pipeline.
"""

from datetime import timedelta
from unittest.mock import MagicMock

import pytest

from analyzer_adapter import AnalysisResult, AnalyzerAdapter, FallbackAnalyzer, KeywordFallbackAnalyzer
from config import PipelineConfig
from enrichment_stages import (
    DUPLICATE, ENRICHED, FILTERED, REJECTED, EnrichmentPipeline, truncate_utf8,
)
from models import Post, new_id
from repository import InMemoryRepository, RepositoryError
from signal_adapter import Signals, SignalUnavailableError, StaticSignalAdapter, WeatherWarning
from translator import TranslationError


def _post(text, now, author="reporter", location=None, images=()):
    return Post(id=new_id("post"), text=text, source="twitter", timestamp=now,
                author=author, location=location, images=tuple(images))


class TranslatingAnalyzer(AnalyzerAdapter):
    """Keyword analysis plus a canned translation."""
    name = "stub"

    def __init__(self, translation=None, error=None):
        self.translation = translation
        self.error = error
        self.analyzed = []

    def analyze(self, text):
        self.analyzed.append(text)
        return KeywordFallbackAnalyzer().analyze(text)

    def translate(self, text, from_lang):
        if self.error:
            raise self.error
        return self.translation


class TestEnrichmentScenarios:

    def setup_method(self):
        self.repo = InMemoryRepository()
        self.settings = PipelineConfig(inter_post_delay_seconds=0)

    def _pipeline(self, analyzer=None, signals=None, image_analyzer=None):
        return EnrichmentPipeline(self.repo, analyzer or FallbackAnalyzer(None),
                                  signal_adapter=signals or StaticSignalAdapter(),
                                  image_analyzer=image_analyzer, settings=self.settings)

    def test_flood_with_active_warning(self, now):
        warning = WeatherWarning("Flood warning", now - timedelta(hours=1), now + timedelta(hours=3))
        signals = StaticSignalAdapter(by_location={"Kuala Lumpur": Signals(active_warnings=[warning])})
        pipeline = self._pipeline(signals=signals)

        post = _post("Heavy flooding in downtown Kuala Lumpur, roads blocked", now, location="Kuala Lumpur")
        context = pipeline.run(post, now)

        assert context.outcome == ENRICHED
        assert context.analysis.is_disaster_related
        event = context.event
        assert event.severity >= 0.7
        assert event.severity == pytest.approx(0.9)
        assert event.location == "kuala lumpur"
        assert event.event_type == "flood"
        assert context.adjustments == [("active_weather_warning", 0.4)]
        assert self.repo.get_event(event.id) is not None
        assert self.repo.get_post(post.id) is not None

    def test_sunset_filtered(self, now):
        context = self._pipeline().run(_post("Beautiful sunset today in Langkawi", now), now)
        assert context.outcome == FILTERED
        assert context.event is None
        assert self.repo.count_events() == 0
        assert self.repo.count_posts() == 1

    def test_duplicate_within_window(self, now):
        pipeline = self._pipeline()
        first = pipeline.run(_post("Fire at Ipoh market", now, author="amir"), now)
        second = pipeline.run(_post("Fire at Ipoh market", now + timedelta(hours=3), author="amir"),
                              now + timedelta(hours=3))
        other_author = pipeline.run(_post("Fire at Ipoh market", now, author="siti"), now)

        assert first.outcome == ENRICHED
        assert second.outcome == DUPLICATE
        assert other_author.outcome == ENRICHED
        assert self.repo.count_events() == 2

    def test_duplicate_after_window_accepted(self, now):
        pipeline = self._pipeline()
        pipeline.run(_post("Fire at Ipoh market", now, author="amir"), now)
        later = now + timedelta(hours=24, seconds=1)
        assert pipeline.run(_post("Fire at Ipoh market", later, author="amir"), later).outcome == ENRICHED

    def test_empty_text_rejected(self, now):
        context = self._pipeline().run(_post("   ", now), now)
        assert context.outcome == REJECTED
        assert self.repo.count_events() == 0

    def test_oversized_text_truncated(self, now):
        text = "Flood in Penang " + "ä" * 6000
        context = self._pipeline().run(_post(text, now), now)
        assert context.truncated
        assert context.outcome == ENRICHED
        assert len(context.event.text.encode("utf-8")) <= 5000

    def test_translation_used_for_analysis(self, now):
        analyzer = TranslatingAnalyzer(translation="Severe flood in Shah Alam, help needed")
        context = self._pipeline(analyzer=analyzer).run(
            _post("Banjir teruk di Shah Alam sekarang, tolong", now), now)
        assert context.language == "ms"
        assert context.translated
        assert analyzer.analyzed == ["Severe flood in Shah Alam, help needed"]
        # the stored event keeps the original text
        assert context.event.text == "Banjir teruk di Shah Alam sekarang, tolong"
        assert context.event.language == "ms"

    def test_translation_failure_continues(self, now):
        analyzer = TranslatingAnalyzer(error=TranslationError("service down"))
        context = self._pipeline(analyzer=analyzer).run(
            _post("Banjir teruk di Shah Alam sekarang, tolong", now), now)
        assert not context.translated
        assert analyzer.analyzed == ["Banjir teruk di Shah Alam sekarang, tolong"]
        assert context.outcome == ENRICHED
        assert context.event.location == "selangor"

    def test_analyzer_exception_uses_keyword_fallback(self, now):
        analyzer = MagicMock(spec=AnalyzerAdapter)
        analyzer.analyze.side_effect = RuntimeError("unexpected")
        context = self._pipeline(analyzer=analyzer).run(_post("Earthquake felt in Sabah", now), now)
        assert context.outcome == ENRICHED
        assert context.event.analysis_method == "keyword"
        assert context.event.confidence == 0.5
        assert context.event.severity == pytest.approx(0.7)

    def test_signal_failure_keeps_base(self, now):
        signals = MagicMock()
        signals.get_signals.side_effect = SignalUnavailableError("timeout")
        context = self._pipeline(signals=signals).run(_post("Flood in Penang", now), now)
        assert context.outcome == ENRICHED
        assert context.event.severity == pytest.approx(0.5)

    def test_persist_failure_still_returns_event(self, now):
        repo = MagicMock(wraps=InMemoryRepository())
        repo.save_event.side_effect = RepositoryError("db down")
        pipeline = EnrichmentPipeline(repo, FallbackAnalyzer(None), signal_adapter=StaticSignalAdapter(),
                                      settings=self.settings)
        context = pipeline.run(_post("Flood in Penang", now), now)
        assert context.outcome == ENRICHED
        assert context.event is not None
        assert not context.persisted

    def test_enrich_returns_none_when_filtered(self, now):
        assert self._pipeline().enrich(_post("Great coffee in Ipoh", now), now) is None


class TestLocationResolution:

    def setup_method(self):
        self.repo = InMemoryRepository()

    def _pipeline(self, image_analyzer=None):
        return EnrichmentPipeline(self.repo, FallbackAnalyzer(None), signal_adapter=StaticSignalAdapter(),
                                  image_analyzer=image_analyzer)

    def test_text_location_wins(self, now):
        images = MagicMock()
        context = self._pipeline(images).run(
            _post("Flood in Ipoh", now, location="Penang", images=["https://img.example/1.jpg"]), now)
        assert context.location == "ipoh"
        assert context.location_source == "text"
        images.locate.assert_not_called()

    def test_image_before_source(self, now):
        images = MagicMock()
        images.locate.return_value = "kuching"
        context = self._pipeline(images).run(
            _post("Flood here, water rising fast", now, location="Penang", images=["https://img.example/1.jpg"]),
            now)
        assert context.location == "kuching"
        assert context.location_source == "image"

    def test_images_only_tried_when_present(self, now):
        images = MagicMock()
        context = self._pipeline(images).run(_post("Flood here, water rising fast", now, location="Penang"), now)
        images.locate.assert_not_called()
        assert context.location == "penang"
        assert context.location_source == "source"

    def test_no_location(self, now):
        context = self._pipeline().run(_post("Flood here, water rising fast", now), now)
        assert context.outcome == ENRICHED
        assert context.location is None


def test_truncate_utf8_never_splits_characters():
    text = "é" * 10
    cut = truncate_utf8(text, 5)
    assert cut == "éé"
    assert truncate_utf8("short", 100) == "short"
