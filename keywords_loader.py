"""
keywords_loader.py - Single source of truth for the disaster rule table

Loads config_data/disaster_rules.json once and exposes:
1. Disaster / non-disaster keyword lists (fallback classifier, verification feed filter)
2. Severity keyword tiers (heuristic base severity)
3. Event type mapping and storm forecast keywords (severity scorer)
4. Bilingual language lexicon (language routing)
5. Canonical locations with aliases and coordinates (location extraction, signal lookups)

This is the ONLY file to edit for keyword management.
All other modules import from here so the classifier, the location
extractor and the verification feed stay consistent.
"""

import json
import os
import re
from functools import lru_cache
from typing import Dict, List, Optional, Sequence, Tuple

from unidecode import unidecode

from config_data import RULES_PATH


def _load_rule_data(path: Optional[str] = None) -> Dict:
    """Load the rule table from JSON.

    DISASTER_RULES_PATH overrides the packaged file, which allows a
    deployment to ship a newer table version without a code release.
    """
    path = path or os.getenv("DISASTER_RULES_PATH") or RULES_PATH
    with open(path, "r", encoding="utf-8") as f:
        data = json.load(f)
    if "version" not in data:
        raise ValueError(f"Rule table {path} has no 'version' field")
    return data

RULE_DATA = _load_rule_data()
RULES_VERSION: str = RULE_DATA["version"]

# =====================================================================
# KEYWORD LISTS
# =====================================================================

DISASTER_KEYWORDS: List[str] = RULE_DATA.get("disaster_keywords", [])
SEVERITY_KEYWORDS: Dict[str, List[str]] = RULE_DATA.get("severity_keywords", {})
SEVERITY_BASE: float = float(RULE_DATA.get("severity_base", 0.3))
SEVERITY_TIER_WEIGHTS: Dict[str, float] = RULE_DATA.get(
    "severity_tier_weights", {"high": 0.4, "medium": 0.2, "low": 0.1}
)
SEVERITY_BOUNDS: Tuple[float, float] = tuple(RULE_DATA.get("severity_bounds", [0.1, 1.0]))
STORM_FORECAST_KEYWORDS: List[str] = RULE_DATA.get("storm_forecast_keywords", [])
EVENT_TYPES: List[Dict] = RULE_DATA.get("event_types", [])
DEFAULT_EVENT_TYPE: str = RULE_DATA.get("default_event_type", "general")

_LEXICON = RULE_DATA.get("language_lexicon", {})
PRIMARY_LANGUAGE: str = _LEXICON.get("primary", "en")
LANGUAGE_LEXICON: Dict[str, List[str]] = {k: v for k, v in _LEXICON.items() if k != "primary"}

SENTIMENT_WORDS: Dict[str, List[str]] = RULE_DATA.get("sentiment", {"negative": [], "positive": []})

LOCATIONS: List[Dict] = RULE_DATA.get("locations", [])

# =====================================================================
# MATCHING HELPERS
# =====================================================================

def normalize_text(text: str) -> str:
    """
    Normalize text once for all checks:
      - convert to lowercase
      - strip accents (unidecode)
      - collapse whitespace
    """
    return re.sub(r"\s+", " ", unidecode(text or "").lower()).strip()

@lru_cache(maxsize=256)
def _compile_phrase_regex(phrases: Tuple[str, ...], stem: bool) -> re.Pattern:
    """Compile one alternation per phrase against normalized text.

    With stem=True the last token may carry a suffix ("flood" matches
    "flooding"); otherwise phrases match as whole words only.
    """
    parts: List[str] = []
    for p in phrases:
        p = normalize_text(p)
        if not p:
            continue
        toks = [re.escape(tok) for tok in p.split()]
        tail = r"\w*" if stem else r"\b"
        parts.append(r"\b(" + r"\s+".join(toks) + r")" + tail)
    if not parts:
        return re.compile(r"^\a$")  # never matches
    return re.compile("|".join(parts))

def match_keywords(text: str, keywords: Sequence[str], stem: bool = True) -> List[str]:
    """Return the keywords (in table order) that occur in text."""
    normalized = normalize_text(text)
    if not normalized:
        return []
    matched = []
    for kw in keywords:
        if _compile_phrase_regex((kw,), stem).search(normalized):
            matched.append(kw)
    return matched

def contains_any(text: str, keywords: Sequence[str], stem: bool = True) -> bool:
    normalized = normalize_text(text)
    if not normalized or not keywords:
        return False
    return bool(_compile_phrase_regex(tuple(keywords), stem).search(normalized))

def count_words(text: str, words: Sequence[str]) -> int:
    """Count whole-word occurrences of any of the given words."""
    normalized = normalize_text(text)
    if not normalized or not words:
        return 0
    return len(_compile_phrase_regex(tuple(words), False).findall(normalized))

# =====================================================================
# LANGUAGE, EVENT TYPE, LOCATION
# =====================================================================

def detect_language(text: str) -> str:
    """Return the dominant lexicon language; ties go to the primary language."""
    best_lang, best_hits = PRIMARY_LANGUAGE, count_words(text, LANGUAGE_LEXICON.get(PRIMARY_LANGUAGE, []))
    for lang, words in LANGUAGE_LEXICON.items():
        if lang == PRIMARY_LANGUAGE:
            continue
        hits = count_words(text, words)
        if hits > best_hits:
            best_lang, best_hits = lang, hits
    return best_lang

def classify_event_type(text: str) -> str:
    for entry in EVENT_TYPES:
        if contains_any(text, entry.get("keywords", [])):
            return entry["type"]
    return DEFAULT_EVENT_TYPE

def _alias_index() -> List[Tuple[str, str]]:
    """(alias, canonical name) pairs, longest alias first."""
    pairs = []
    for loc in LOCATIONS:
        for alias in loc.get("aliases", []) or [loc["name"]]:
            pairs.append((normalize_text(alias), loc["name"]))
    pairs.sort(key=lambda p: len(p[0]), reverse=True)
    return pairs

_ALIASES = _alias_index()
_COORDINATES = {loc["name"]: (float(loc["lat"]), float(loc["lon"])) for loc in LOCATIONS
                if "lat" in loc and "lon" in loc}

def extract_location(text: str) -> Optional[str]:
    """Find the first known location mentioned in text (canonical name)."""
    normalized = normalize_text(text)
    if not normalized:
        return None
    for alias, name in _ALIASES:
        if _compile_phrase_regex((alias,), False).search(normalized):
            return name
    return None

def normalize_location(value: Optional[str]) -> Optional[str]:
    """Canonical lower-case location name; unknown names are kept lower-cased."""
    normalized = normalize_text(value or "")
    if not normalized or normalized == "unknown":
        return None
    for alias, name in _ALIASES:
        if normalized == alias:
            return name
    return normalized

def get_location_coordinates(name: Optional[str]) -> Optional[Tuple[float, float]]:
    canonical = normalize_location(name)
    if not canonical:
        return None
    return _COORDINATES.get(canonical)

def get_known_locations() -> List[str]:
    return [loc["name"] for loc in LOCATIONS]

__all__ = [
    'RULES_VERSION', 'DISASTER_KEYWORDS', 'SEVERITY_KEYWORDS',
    'SEVERITY_BASE', 'SEVERITY_TIER_WEIGHTS', 'SEVERITY_BOUNDS', 'STORM_FORECAST_KEYWORDS',
    'PRIMARY_LANGUAGE', 'LANGUAGE_LEXICON', 'SENTIMENT_WORDS',
    'normalize_text', 'match_keywords', 'contains_any', 'count_words',
    'detect_language', 'classify_event_type', 'extract_location',
    'normalize_location', 'get_location_coordinates', 'get_known_locations',
]
