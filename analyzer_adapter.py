# analyzer_adapter.py — NLP analysis of disaster reports
# OpenAI-backed analyzer with throttling retries, plus the deterministic keyword
# classifier the pipeline falls back to when the service is unavailable.

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from openai import OpenAI

from config import CONFIG
from keywords_loader import (
    DISASTER_KEYWORDS, SENTIMENT_WORDS,
    classify_event_type, count_words, extract_location, match_keywords, normalize_location,
)
from llm_rate_limiter import RetryErrorType, TokenBucket, retry_with_backoff
from logging_config import get_metrics_logger
from metrics import PIPELINE_METRICS
from models import clamp01
from severity_scorer import heuristic_base_severity
from translator import TranslationError, translate_text

logger = logging.getLogger("analyzer_adapter")
metrics_logger = get_metrics_logger("analyzer_adapter")

ANALYZE_SYSTEM_PROMPT = """You analyze short social media posts that may report disasters in Malaysia.
Return a JSON object with exactly these keys:
  "is_disaster_related": boolean,
  "confidence": number between 0 and 1,
  "entities": list of {"type": "LOCATION"|"PERSON"|"ORGANIZATION"|"DATE"|"OTHER", "text": string, "score": number 0-1},
  "sentiment": "POSITIVE"|"NEGATIVE"|"NEUTRAL"|"MIXED",
  "key_phrases": list of short strings,
  "event_type": one of "earthquake","tsunami","landslide","flood","fire","storm","explosion","collapse","general",
  "base_severity": number between 0 and 1 describing how serious the reported situation is.
Do not add any other keys."""


class AnalyzerUnavailableError(Exception):
    """The analysis service could not produce a result (down, throttled, misconfigured)."""


class AnalyzerThrottledError(Exception):
    """Local request pacing could not grant a slot in time."""
    status_code = 429


@dataclass
class AnalysisResult:
    """Normalized output of an analyzer."""
    is_disaster_related: bool
    confidence: float
    entities: List[Dict[str, Any]] = field(default_factory=list)
    sentiment: str = "NEUTRAL"
    key_phrases: List[str] = field(default_factory=list)
    location_guess: Optional[str] = None
    base_severity: Optional[float] = None
    event_type: str = "general"
    method: str = "keyword"


class AnalyzerAdapter:
    """Interface for analysis/translation services."""

    name = "base"

    def analyze(self, text: str) -> AnalysisResult:
        raise NotImplementedError("Subclasses must implement analyze")

    def translate(self, text: str, from_lang: str) -> str:
        raise TranslationError(f"{self.name} analyzer cannot translate")

    def is_available(self) -> bool:
        return True


def best_location_entity(entities: List[Dict[str, Any]], min_score: float) -> Optional[str]:
    """Highest-scoring LOCATION entity above min_score, lower-cased and canonicalized."""
    best, best_score = None, min_score
    for entity in entities or []:
        if str(entity.get("type", "")).upper() != "LOCATION":
            continue
        try:
            score = float(entity.get("score", 0))
        except (TypeError, ValueError):
            continue
        if score > best_score and entity.get("text"):
            best, best_score = entity["text"], score
    return normalize_location(best) if best else None


class KeywordFallbackAnalyzer(AnalyzerAdapter):
    """Deterministic keyword-scan classifier."""

    name = "keyword"

    def __init__(self, confidence: Optional[float] = None):
        self.confidence = CONFIG.analyzer.fallback_confidence if confidence is None else confidence

    def analyze(self, text: str) -> AnalysisResult:
        matched = match_keywords(text, DISASTER_KEYWORDS)
        related = bool(matched)

        location = extract_location(text)
        entities = [{"type": "LOCATION", "text": location, "score": 1.0}] if location else []

        return AnalysisResult(
            is_disaster_related=related,
            confidence=self.confidence,
            entities=entities,
            sentiment=self._sentiment(text),
            key_phrases=matched,
            location_guess=location,
            base_severity=heuristic_base_severity(text),
            event_type=classify_event_type(text),
            method=self.name,
        )

    @staticmethod
    def _sentiment(text: str) -> str:
        negative = count_words(text, SENTIMENT_WORDS.get("negative", []))
        positive = count_words(text, SENTIMENT_WORDS.get("positive", []))
        if negative > positive:
            return "NEGATIVE"
        if positive > negative:
            return "POSITIVE"
        return "NEUTRAL"


class OpenAIAnalyzer(AnalyzerAdapter):
    """Analyzer backed by an OpenAI chat model returning JSON."""

    name = "openai"

    def __init__(self, client: Optional[OpenAI] = None, model: Optional[str] = None,
                 limiter: Optional[TokenBucket] = None, max_retries: Optional[int] = None,
                 backoff_seconds: Optional[float] = None, timeout: Optional[float] = None,
                 sleep: Callable[[float], None] = time.sleep):
        cfg = CONFIG.analyzer
        if client is None and cfg.openai_api_key:
            client = OpenAI(api_key=cfg.openai_api_key, timeout=cfg.openai_timeout)
        self.client = client
        self.model = model or cfg.openai_model
        self.limiter = limiter or TokenBucket(cfg.requests_per_minute, "analyzer")
        self.max_retries = cfg.max_retries if max_retries is None else max_retries
        self.backoff_seconds = cfg.backoff_seconds if backoff_seconds is None else backoff_seconds
        self.timeout = cfg.openai_timeout if timeout is None else timeout
        self.location_min_score = cfg.location_min_score
        self._sleep = sleep

    def is_available(self) -> bool:
        return self.client is not None

    def _complete(self, text: str) -> Dict[str, Any]:
        if not self.limiter.wait_for_token(timeout=self.timeout):
            raise AnalyzerThrottledError("analyzer request pacing timeout")
        response = self.client.chat.completions.create(
            model=self.model,
            messages=[
                {"role": "system", "content": ANALYZE_SYSTEM_PROMPT},
                {"role": "user", "content": text},
            ],
            temperature=CONFIG.analyzer.temperature,
            response_format={"type": "json_object"},
            timeout=self.timeout,
        )
        return json.loads(response.choices[0].message.content or "{}")

    def analyze(self, text: str) -> AnalysisResult:
        if not self.is_available():
            raise AnalyzerUnavailableError("OpenAI client not initialized (missing OPENAI_API_KEY)")

        start = time.perf_counter()
        attempts = {"count": 0}

        def _call():
            attempts["count"] += 1
            return self._complete(text)

        try:
            payload = retry_with_backoff(
                _call,
                max_retries=self.max_retries,
                base_delay=self.backoff_seconds,
                jitter=False,
                exponential=False,
                retry_on=[RetryErrorType.RATE_LIMIT],
                context="analyzer.analyze",
                sleep=self._sleep,
            )
        except Exception as e:
            metrics_logger.analyzer_request(self.name, "analyze", round((time.perf_counter() - start) * 1000, 2),
                                            success=False, attempts=attempts["count"], error=str(e))
            raise AnalyzerUnavailableError(str(e)) from e

        metrics_logger.analyzer_request(self.name, "analyze", round((time.perf_counter() - start) * 1000, 2),
                                        success=True, attempts=attempts["count"])
        return self._parse(payload, text)

    def _parse(self, payload: Dict[str, Any], text: str) -> AnalysisResult:
        if not isinstance(payload, dict) or "is_disaster_related" not in payload:
            raise AnalyzerUnavailableError("malformed analyzer response")

        entities = [e for e in payload.get("entities") or [] if isinstance(e, dict)]
        base = payload.get("base_severity")
        return AnalysisResult(
            is_disaster_related=bool(payload.get("is_disaster_related")),
            confidence=clamp01(payload.get("confidence"), default=0.8),
            entities=entities,
            sentiment=str(payload.get("sentiment") or "NEUTRAL").upper(),
            key_phrases=[str(p) for p in payload.get("key_phrases") or []],
            location_guess=best_location_entity(entities, self.location_min_score),
            base_severity=clamp01(base) if base is not None else None,
            event_type=str(payload.get("event_type") or classify_event_type(text)),
            method=self.name,
        )

    def translate(self, text: str, from_lang: str) -> str:
        if not self.is_available():
            raise TranslationError("OpenAI client not initialized (missing OPENAI_API_KEY)")
        return translate_text(text, from_lang, client=self.client)


class FallbackAnalyzer(AnalyzerAdapter):
    """
    Primary analyzer with the keyword classifier behind it.

    Any primary failure (unavailable, throttled past its retries, unexpected
    error) yields the keyword result; `AnalysisResult.method` records which
    path answered.
    """

    name = "fallback"

    def __init__(self, primary: Optional[AnalyzerAdapter] = None,
                 fallback: Optional[AnalyzerAdapter] = None):
        self.primary = primary
        self.fallback = fallback or KeywordFallbackAnalyzer()

    def is_available(self) -> bool:
        return True

    def analyze(self, text: str) -> AnalysisResult:
        if self.primary is None or not self.primary.is_available():
            PIPELINE_METRICS.increment_analyzer_fallback("unavailable")
            return self.fallback.analyze(text)
        try:
            return self.primary.analyze(text)
        except AnalyzerUnavailableError as e:
            logger.warning("Analyzer %s unavailable, using keyword fallback: %s", self.primary.name, e)
            PIPELINE_METRICS.increment_analyzer_fallback("error")
        except Exception as e:
            logger.warning("Analyzer %s failed unexpectedly, using keyword fallback: %s", self.primary.name, e)
            PIPELINE_METRICS.increment_analyzer_fallback("unexpected")
        return self.fallback.analyze(text)

    def translate(self, text: str, from_lang: str) -> str:
        if self.primary is None:
            raise TranslationError("no translation service configured")
        return self.primary.translate(text, from_lang)


def build_analyzer() -> AnalyzerAdapter:
    """Analyzer from CONFIG: OpenAI behind the keyword fallback when a key is set."""
    if CONFIG.analyzer.is_configured:
        return FallbackAnalyzer(OpenAIAnalyzer())
    logger.info("OPENAI_API_KEY not set; using keyword analyzer only")
    return FallbackAnalyzer(None)
