"""
Analyzer adapters: OpenAI response parsing, throttling retries and the keyword fallback.
"""

import json
from unittest.mock import MagicMock

import pytest

from analyzer_adapter import (
    AnalyzerUnavailableError, FallbackAnalyzer, KeywordFallbackAnalyzer, OpenAIAnalyzer, best_location_entity,
)
from llm_rate_limiter import RetryErrorType, TokenBucket, calculate_backoff_delay, classify_error_for_retry
from translator import TranslationError


class RateLimitError(Exception):
    status_code = 429


def _completion(payload):
    response = MagicMock()
    response.choices = [MagicMock()]
    response.choices[0].message.content = json.dumps(payload) if isinstance(payload, dict) else payload
    return response


GOOD_PAYLOAD = {
    "is_disaster_related": True,
    "confidence": 0.92,
    "entities": [
        {"type": "LOCATION", "text": "Shah Alam", "score": 0.95},
        {"type": "LOCATION", "text": "Somewhere", "score": 0.6},
        {"type": "PERSON", "text": "Ali", "score": 0.99},
    ],
    "sentiment": "negative",
    "key_phrases": ["flash flood", "section 13"],
    "event_type": "flood",
    "base_severity": 0.65,
}


class TestKeywordFallbackAnalyzer:

    def setup_method(self):
        self.analyzer = KeywordFallbackAnalyzer(confidence=0.5)

    def test_disaster_post(self):
        result = self.analyzer.analyze("Heavy flooding in downtown Kuala Lumpur, people trapped")
        assert result.is_disaster_related
        assert result.confidence == 0.5
        assert result.location_guess == "kuala lumpur"
        assert result.event_type == "flood"
        assert result.base_severity == pytest.approx(0.5)
        assert result.sentiment == "NEGATIVE"
        assert result.method == "keyword"
        assert "flood" in result.key_phrases

    def test_non_disaster_post(self):
        result = self.analyzer.analyze("Beautiful sunset today in Langkawi")
        assert not result.is_disaster_related
        assert result.sentiment == "POSITIVE"

    def test_everyday_words_do_not_block_keyword_match(self):
        result = self.analyzer.analyze("Emergency at the football match in Kuala Lumpur, people trapped and injured")
        assert result.is_disaster_related
        assert {"emergency", "trapped", "injured"} <= set(result.key_phrases)
        assert result.location_guess == "kuala lumpur"

    def test_weak_keyword_is_enough(self):
        # "alert" carries no severity tier but is still a disaster keyword
        assert self.analyzer.analyze("Sale alert at the shopping mall").is_disaster_related

    def test_cannot_translate(self):
        with pytest.raises(TranslationError):
            self.analyzer.translate("banjir", "ms")


class TestBestLocationEntity:

    def test_highest_score_above_threshold(self):
        assert best_location_entity(GOOD_PAYLOAD["entities"], 0.7) == "selangor"

    def test_threshold_is_exclusive(self):
        assert best_location_entity([{"type": "LOCATION", "text": "Ipoh", "score": 0.7}], 0.7) is None

    def test_ignores_junk(self):
        entities = [{"type": "LOCATION", "text": "Ipoh", "score": "n/a"}, {"type": "location", "text": "Perak",
                                                                          "score": 0.9}]
        assert best_location_entity(entities, 0.7) == "perak"


class TestOpenAIAnalyzer:

    def setup_method(self):
        self.client = MagicMock()
        self.delays = []
        self.analyzer = OpenAIAnalyzer(
            client=self.client, model="test-model", limiter=TokenBucket(6000, "test"),
            max_retries=3, backoff_seconds=2.0, timeout=5, sleep=self.delays.append,
        )

    def test_parses_response(self):
        self.client.chat.completions.create.return_value = _completion(GOOD_PAYLOAD)
        result = self.analyzer.analyze("Banjir kilat di Shah Alam")
        assert result.is_disaster_related
        assert result.confidence == pytest.approx(0.92)
        assert result.location_guess == "selangor"
        assert result.sentiment == "NEGATIVE"
        assert result.base_severity == pytest.approx(0.65)
        assert result.event_type == "flood"
        assert result.method == "openai"

        kwargs = self.client.chat.completions.create.call_args.kwargs
        assert kwargs["model"] == "test-model"
        assert kwargs["timeout"] == 5
        assert kwargs["response_format"] == {"type": "json_object"}

    def test_throttling_retried_with_linear_backoff(self):
        self.client.chat.completions.create.side_effect = [
            RateLimitError("too many requests"), RateLimitError("too many requests"), _completion(GOOD_PAYLOAD),
        ]
        result = self.analyzer.analyze("flood")
        assert result.is_disaster_related
        assert self.delays == [2.0, 4.0]

    def test_throttling_exhausted(self):
        self.client.chat.completions.create.side_effect = RateLimitError("429 rate limit")
        with pytest.raises(AnalyzerUnavailableError):
            self.analyzer.analyze("flood")
        assert self.client.chat.completions.create.call_count == 4
        assert self.delays == [2.0, 4.0, 6.0]

    def test_other_errors_not_retried(self):
        self.client.chat.completions.create.side_effect = RuntimeError("connection reset")
        with pytest.raises(AnalyzerUnavailableError):
            self.analyzer.analyze("flood")
        assert self.client.chat.completions.create.call_count == 1

    def test_malformed_response(self):
        self.client.chat.completions.create.return_value = _completion({"sentiment": "NEUTRAL"})
        with pytest.raises(AnalyzerUnavailableError):
            self.analyzer.analyze("flood")

    def test_unconfigured(self):
        analyzer = OpenAIAnalyzer(client=None, limiter=TokenBucket(60, "test"))
        analyzer.client = None
        assert not analyzer.is_available()
        with pytest.raises(AnalyzerUnavailableError):
            analyzer.analyze("flood")

    def test_translate(self):
        self.client.chat.completions.create.return_value = _completion("Flash flood in Shah Alam")
        assert self.analyzer.translate("Banjir kilat di Shah Alam", "ms") == "Flash flood in Shah Alam"

    def test_translate_failure(self):
        self.client.chat.completions.create.side_effect = RuntimeError("boom")
        with pytest.raises(TranslationError):
            self.analyzer.translate("Banjir kilat", "ms")


class TestFallbackAnalyzer:

    def test_no_primary_uses_keywords(self):
        result = FallbackAnalyzer(None).analyze("Gempa kuat di Sabah")
        assert result.method == "keyword"
        assert result.is_disaster_related
        assert result.location_guess == "sabah"

    def test_primary_failure_uses_keywords(self):
        primary = MagicMock()
        primary.name = "openai"
        primary.is_available.return_value = True
        primary.analyze.side_effect = AnalyzerUnavailableError("down")
        result = FallbackAnalyzer(primary).analyze("Flood in Ipoh")
        assert result.method == "keyword"
        assert result.confidence == 0.5

    def test_primary_result_used(self):
        primary = MagicMock()
        primary.is_available.return_value = True
        primary.analyze.return_value = "primary-result"
        assert FallbackAnalyzer(primary).analyze("Flood in Ipoh") == "primary-result"

    def test_translate_without_primary(self):
        with pytest.raises(TranslationError):
            FallbackAnalyzer(None).translate("banjir", "ms")


class TestRetryClassification:

    def test_status_code(self):
        assert classify_error_for_retry(RateLimitError("x")) == RetryErrorType.RATE_LIMIT

    def test_message(self):
        assert classify_error_for_retry(Exception("Read timed out")) == RetryErrorType.TIMEOUT
        assert classify_error_for_retry(Exception("401 Unauthorized")) == RetryErrorType.AUTHENTICATION

    def test_linear_backoff(self):
        assert [calculate_backoff_delay(a, 2.0, jitter=False, exponential=False) for a in range(3)] == [2.0, 4.0, 6.0]
