"""
health_check.py - Dependency and pipeline health checks

Each check returns a plain dict; get_health_status() folds them into one
report with an overall status of healthy / degraded / unhealthy:

- unhealthy: the repository cannot be reached
- degraded:  the ledger is down (dispatch fails open), the pipeline reports
             DEGRADED/WARNING, or no analyzer backend is configured
"""

from datetime import datetime, timezone
from typing import Any, Dict, List

from config import CONFIG
from keywords_loader import DISASTER_KEYWORDS, RULES_VERSION, get_known_locations
from metrics import PIPELINE_METRICS


def check_repository_health(repository) -> Dict[str, Any]:
    """Ping the event store."""
    try:
        connected = bool(repository.ping())
        return {"connected": connected, "backend": type(repository).__name__,
                "error": None if connected else "ping failed"}
    except Exception as e:
        return {"connected": False, "backend": type(repository).__name__, "error": str(e)}


def check_ledger_health(ledger) -> Dict[str, Any]:
    """The notification ledger; an unavailable ledger means duplicate sends are possible."""
    try:
        available = bool(ledger.is_available())
        return {"available": available, "backend": ledger.name,
                "error": None if available else "ledger unavailable, dispatch fails open"}
    except Exception as e:
        return {"available": False, "backend": getattr(ledger, "name", "unknown"), "error": str(e)}


def _analyzer_limiter(analyzer):
    """The primary analyzer's request limiter, when there is one."""
    for candidate in (analyzer, getattr(analyzer, "primary", None)):
        limiter = getattr(candidate, "limiter", None)
        if limiter is not None:
            return limiter
    return None


def check_analyzer_health(analyzer=None) -> Dict[str, Any]:
    # No API call here to avoid spending quota on health checks
    check = {
        "openai_configured": CONFIG.analyzer.is_configured,
        "keyword_fallback_ready": len(DISASTER_KEYWORDS) > 0,
        "keywords_count": len(DISASTER_KEYWORDS),
        "known_locations": len(get_known_locations()),
        "rules_version": RULES_VERSION,
    }
    limiter = _analyzer_limiter(analyzer)
    if limiter is not None:
        check["rate_limiter"] = limiter.get_metrics()
    return check


def check_pipeline_health(orchestrator) -> Dict[str, Any]:
    if orchestrator is None:
        return {"running": False, "health": None, "statistics": {}}
    status = orchestrator.get_system_status()
    return {
        "running": status["running"],
        "verification_matcher_running": status["verification_matcher_running"],
        "health": status["health"],
        "statistics": status["statistics"],
    }


def get_health_status(repository, ledger, orchestrator=None) -> Dict[str, Any]:
    """Full health report for monitoring."""
    issues: List[str] = []
    degraded = False

    repo_check = check_repository_health(repository)
    if not repo_check["connected"]:
        issues.append(f"Repository unavailable: {repo_check['error']}")

    ledger_check = check_ledger_health(ledger)
    if not ledger_check["available"]:
        issues.append(f"Notification ledger unavailable: {ledger_check['error']}")
        degraded = True

    analyzer = orchestrator.pipeline.analyzer if orchestrator is not None else None
    analyzer_check = check_analyzer_health(analyzer)
    if not analyzer_check["openai_configured"]:
        issues.append("OPENAI_API_KEY not set, keyword analysis only")
        degraded = True

    pipeline_check = check_pipeline_health(orchestrator)
    if pipeline_check["health"] not in (None, "HEALTHY"):
        issues.append(f"Pipeline health is {pipeline_check['health']}")
        degraded = True

    if not repo_check["connected"]:
        status = "unhealthy"
    elif degraded:
        status = "degraded"
    else:
        status = "healthy"

    return {
        "status": status,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "environment": CONFIG.app.env,
        "issues": issues,
        "checks": {
            "repository": repo_check,
            "ledger": ledger_check,
            "analyzer": analyzer_check,
            "pipeline": pipeline_check,
        },
        "metrics": PIPELINE_METRICS.get_metrics_summary() if CONFIG.app.metrics_enabled else {},
    }
