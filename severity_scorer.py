# severity_scorer.py — Deterministic severity scoring
# Heuristic base severity from the rule table plus additive signal adjustments.
# Pure functions: no network, no DB writes.

from __future__ import annotations
from datetime import datetime, timedelta
from typing import List, Optional, Tuple

from keywords_loader import (
    SEVERITY_BASE, SEVERITY_BOUNDS, SEVERITY_KEYWORDS, SEVERITY_TIER_WEIGHTS,
    STORM_FORECAST_KEYWORDS, contains_any, match_keywords,
)
from models import clamp01, parse_dt, utc_now

WARNING_BOOST = 0.4
QUAKE_BOOST = 0.3
STORM_FORECAST_BOOST = 0.2
QUAKE_MIN_MAGNITUDE = 4.0
QUAKE_LOOKBACK = timedelta(hours=24)

# --------------------------- utilities ---------------------------

def _clamp(x: float, lo: float, hi: float) -> float:
    return lo if x < lo else hi if x > hi else x

def severity_level(severity: float) -> str:
    if severity >= 0.8: return "CRITICAL"
    if severity >= 0.6: return "HIGH"
    if severity >= 0.4: return "MEDIUM"
    if severity >= 0.2: return "LOW"
    return "MINIMAL"

# --------------------------- base severity ---------------------------

def heuristic_base_severity(text: str) -> float:
    """
    Keyword-tier heuristic used when the analyzer gives no severity:
    base 0.3, +0.4 for a high-tier keyword, +0.2 for medium, +0.1 for low.
    Each tier counts once. Result clamped to [0.1, 1.0].
    """
    score = SEVERITY_BASE
    for tier in ("high", "medium", "low"):
        if match_keywords(text, SEVERITY_KEYWORDS.get(tier, [])):
            score += SEVERITY_TIER_WEIGHTS.get(tier, 0.0)
    lo, hi = SEVERITY_BOUNDS
    return _clamp(score, lo, hi)

# --------------------------- signal adjustments ---------------------------

def _warning_active(warning, now: datetime) -> bool:
    valid_from = parse_dt(getattr(warning, "valid_from", None))
    valid_to = parse_dt(getattr(warning, "valid_to", None))
    if valid_from is None or valid_to is None:
        return False
    return valid_from <= now <= valid_to

def _quake_recent(quake, now: datetime) -> bool:
    when = parse_dt(getattr(quake, "time", None))
    magnitude = getattr(quake, "magnitude", None)
    if when is None or magnitude is None:
        return False
    return timedelta(0) <= now - when <= QUAKE_LOOKBACK and float(magnitude) >= QUAKE_MIN_MAGNITUDE

def severity_adjustments(signals, now: Optional[datetime] = None) -> List[Tuple[str, float]]:
    """Return (reason, delta) pairs that apply for the given signals."""
    if signals is None:
        return []
    now = now or utc_now()
    adjustments: List[Tuple[str, float]] = []

    if any(_warning_active(w, now) for w in (signals.active_warnings or [])):
        adjustments.append(("active_weather_warning", WARNING_BOOST))

    if any(_quake_recent(q, now) for q in (signals.recent_quakes or [])):
        adjustments.append(("recent_seismic_event", QUAKE_BOOST))

    if signals.storm_forecast and contains_any(signals.storm_forecast, STORM_FORECAST_KEYWORDS):
        adjustments.append(("storm_forecast", STORM_FORECAST_BOOST))

    return adjustments

def score_severity(base_severity: float, location: Optional[str], signals,
                   now: Optional[datetime] = None) -> float:
    """
    Final severity for an event at `location`.

    `signals` are the Signal Adapter's readings for that location; pass None
    when the adapter failed, which keeps the base severity unmodified.
    """
    base = clamp01(base_severity)
    if signals is None:
        return base
    total = base + sum(delta for _, delta in severity_adjustments(signals, now))
    return clamp01(total)

__all__ = [
    'heuristic_base_severity', 'severity_adjustments', 'score_severity', 'severity_level',
    'WARNING_BOOST', 'QUAKE_BOOST', 'STORM_FORECAST_BOOST',
]
