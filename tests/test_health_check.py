"""Health report folding."""

from unittest.mock import MagicMock, patch

import pytest

from analyzer_adapter import FallbackAnalyzer, KeywordFallbackAnalyzer, OpenAIAnalyzer
from health_check import check_analyzer_health, check_ledger_health, get_health_status
from keywords_loader import get_known_locations
from llm_rate_limiter import TokenBucket
from notification_ledger import RepositoryLedger
from repository import InMemoryRepository


@pytest.fixture
def analyzer_ok():
    with patch("health_check.check_analyzer_health",
               return_value={"openai_configured": True, "keyword_fallback_ready": True}):
        yield


def test_healthy(analyzer_ok):
    repo = InMemoryRepository()
    report = get_health_status(repo, RepositoryLedger(repo))
    assert report["status"] == "healthy"
    assert report["issues"] == []
    assert report["checks"]["repository"]["backend"] == "InMemoryRepository"


def test_repository_down_is_unhealthy(analyzer_ok):
    repo = MagicMock()
    repo.ping.side_effect = RuntimeError("connection refused")
    ledger = MagicMock()
    ledger.name = "redis"
    ledger.is_available.return_value = True
    report = get_health_status(repo, ledger)
    assert report["status"] == "unhealthy"
    assert "connection refused" in report["issues"][0]


def test_ledger_down_is_degraded(analyzer_ok):
    repo = InMemoryRepository()
    ledger = MagicMock()
    ledger.name = "redis"
    ledger.is_available.return_value = False
    report = get_health_status(repo, ledger)
    assert report["status"] == "degraded"
    assert "fails open" in report["checks"]["ledger"]["error"]


def test_pipeline_warning_is_degraded(analyzer_ok):
    repo = InMemoryRepository()
    orchestrator = MagicMock()
    orchestrator.get_system_status.return_value = {
        "running": True, "verification_matcher_running": True, "health": "WARNING", "statistics": {}}
    report = get_health_status(repo, RepositoryLedger(repo), orchestrator)
    assert report["status"] == "degraded"
    assert report["issues"] == ["Pipeline health is WARNING"]


def test_ledger_check_exception():
    ledger = MagicMock()
    ledger.name = "redis"
    ledger.is_available.side_effect = RuntimeError("boom")
    assert check_ledger_health(ledger) == {"available": False, "backend": "redis", "error": "boom"}


def test_analyzer_check_reports_rules():
    check = check_analyzer_health()
    assert check["keyword_fallback_ready"]
    assert check["rules_version"]


def test_analyzer_check_reports_limiter_and_locations():
    limiter = TokenBucket(60, "analyzer")
    limiter.consume()
    analyzer = FallbackAnalyzer(OpenAIAnalyzer(client=None, limiter=limiter))

    check = check_analyzer_health(analyzer)
    assert check["known_locations"] == len(get_known_locations()) > 0
    assert check["rate_limiter"]["service"] == "analyzer"
    assert check["rate_limiter"]["total_requests"] == 1
    assert check["rate_limiter"]["denied_requests"] == 0


def test_analyzer_check_without_limiter():
    assert "rate_limiter" not in check_analyzer_health(KeywordFallbackAnalyzer())
