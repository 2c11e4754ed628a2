# verification_matcher.py — Cross-checks events against official and news confirmation feeds
#
# Runs on its own timer thread. A confirmation matches unverified events at the
# same location reported at most `window` before it. Verification is a one-way
# compare-and-swap in the Repository, so a concurrent orchestrator cycle or a
# second matcher instance can never undo or double-apply it.

from __future__ import annotations

import threading
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional

import requests
from bs4 import BeautifulSoup

from config import CONFIG, VerificationConfig
from keywords_loader import DISASTER_KEYWORDS, contains_any, extract_location, normalize_location
from logging_config import get_logger
from metrics import PIPELINE_METRICS
from models import UNKNOWN_LOCATION, Event, Verification, new_id, utc_now
from repository import Repository, RepositoryError

logger = get_logger("verification_matcher")

OFFICIAL_ALERT_CONFIDENCE = 0.9
OFFICIAL_NEWS_CONFIDENCE = 0.8
NEWS_ARTICLE_CONFIDENCE = 0.7
MANUAL_CONFIDENCE = 1.0

OFFICIAL_SELECTORS = {
    "alerts": ".alert, .warning, .emergency",
    "content": ".content, .news, .announcement",
}
NEWS_SELECTORS = {
    "articles": ".story, .article, .news-item",
    "title": "h1, h2, .headline, .title",
    "content": ".content, .story-content, .article-content",
}


@dataclass(frozen=True)
class SourceSpec:
    name: str
    url: str
    kind: str  # "official" | "news"


DEFAULT_SOURCES = (
    SourceSpec("Malaysian Meteorological Department", "https://www.met.gov.my/", "official"),
    SourceSpec("Malaysia Civil Defence Force", "https://www.civildefence.gov.my/", "official"),
    SourceSpec("National Disaster Management Agency", "https://www.nadma.gov.my/", "official"),
    SourceSpec("Fire and Rescue Department Malaysia", "https://www.bomba.gov.my/", "official"),
    SourceSpec("The Star Malaysia", "https://www.thestar.com.my/", "news"),
    SourceSpec("New Straits Times", "https://www.nst.com.my/", "news"),
    SourceSpec("Malay Mail", "https://www.malaymail.com/", "news"),
)


class VerificationSource:
    """A confirmation feed that yields candidate Verifications."""

    name = "base"

    def fetch(self, now: datetime) -> List[Verification]:
        raise NotImplementedError


class HtmlVerificationSource(VerificationSource):
    """Scrapes an official or news page with CSS selectors."""

    def __init__(self, name: str, url: str, kind: str = "official",
                 session: Optional[requests.Session] = None,
                 settings: Optional[VerificationConfig] = None):
        self.name = name
        self.url = url
        self.kind = kind
        self.session = session or requests.Session()
        self.settings = settings or CONFIG.verification

    def fetch(self, now: datetime) -> List[Verification]:
        try:
            resp = self.session.get(self.url, timeout=self.settings.http_timeout,
                                    headers={"User-Agent": self.settings.user_agent})
            resp.raise_for_status()
        except requests.RequestException as e:
            logger.warning("verification_source_failed", source=self.name, error=str(e))
            return []

        soup = BeautifulSoup(resp.text, "html.parser")
        if self.kind == "news":
            found = self._scan_news(soup, now)
        else:
            found = self._scan_official(soup, now)
        logger.info("verification_source_scanned", source=self.name, candidates=len(found))
        return found

    def _candidate(self, text: str, vtype: str, confidence: float, now: datetime) -> Optional[Verification]:
        text = " ".join(text.split()).lower()
        if not text or not contains_any(text, DISASTER_KEYWORDS):
            return None
        location = extract_location(text)
        if not location:
            return None
        return Verification(id=new_id("ver"), source=self.name, type=vtype, location=location,
                            text=text, confidence=confidence, timestamp=now, url=self.url)

    def _scan_official(self, soup: BeautifulSoup, now: datetime) -> List[Verification]:
        found = []
        for selector, vtype, confidence in (
            (OFFICIAL_SELECTORS["alerts"], "official_alert", OFFICIAL_ALERT_CONFIDENCE),
            (OFFICIAL_SELECTORS["content"], "official_news", OFFICIAL_NEWS_CONFIDENCE),
        ):
            for element in soup.select(selector):
                candidate = self._candidate(element.get_text(" "), vtype, confidence, now)
                if candidate:
                    found.append(candidate)
        return found

    def _scan_news(self, soup: BeautifulSoup, now: datetime) -> List[Verification]:
        found = []
        for article in soup.select(NEWS_SELECTORS["articles"]):
            title = " ".join(t.get_text(" ") for t in article.select(NEWS_SELECTORS["title"]))
            content = " ".join(c.get_text(" ") for c in article.select(NEWS_SELECTORS["content"]))
            candidate = self._candidate(f"{title} {content}", "news_article", NEWS_ARTICLE_CONFIDENCE, now)
            if candidate:
                found.append(candidate)
        return found


def default_sources(session: Optional[requests.Session] = None) -> List[VerificationSource]:
    session = session or requests.Session()
    return [HtmlVerificationSource(s.name, s.url, s.kind, session=session) for s in DEFAULT_SOURCES]


VerifiedCallback = Callable[[Event, Verification], None]


class VerificationMatcher:
    """Polls confirmation sources and flips matching events (and their alerts) to verified."""

    def __init__(self, repository: Repository, sources: Optional[List[VerificationSource]] = None,
                 on_verified: Optional[VerifiedCallback] = None,
                 settings: Optional[VerificationConfig] = None,
                 clock: Callable[[], datetime] = utc_now):
        self.repository = repository
        self.settings = settings or CONFIG.verification
        if sources is None:
            sources = default_sources() if self.settings.sources_enabled else []
        self.sources = sources
        self.on_verified = on_verified
        self.window = timedelta(hours=self.settings.window_hours)
        self.clock = clock

        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._run_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Matching
    # ------------------------------------------------------------------

    def run_once(self, now: Optional[datetime] = None) -> int:
        """One poll over every source. Returns the number of events verified."""
        now = now or self.clock()
        with self._run_lock:
            candidates: List[Verification] = []
            for source in self.sources:
                try:
                    candidates.extend(source.fetch(now))
                except Exception as e:
                    logger.error("verification_source_error", source=source.name, error=str(e))

            verified = 0
            for verification in candidates:
                verified += len(self.process_verification(verification))
        logger.info("verification_poll_completed", candidates=len(candidates), events_verified=verified)
        return verified

    def process_verification(self, verification: Verification) -> List[Event]:
        """Match one confirmation against open events; returns the events it verified."""
        location = normalize_location(verification.location)
        matched: List[Event] = []
        if location:
            try:
                # 0 <= verification.timestamp - event.timestamp <= window
                candidates = self.repository.find_verification_candidates(
                    location, verification.timestamp - self.window, verification.timestamp)
            except RepositoryError as e:
                logger.error("verification_candidates_failed", location=location, error=str(e))
                candidates = []
            matched = [event for event in candidates if self._verify(event, verification)]

        record = replace(verification, matched_event_ref=matched[0].id if matched else None)
        try:
            self.repository.save_verification(record)
        except RepositoryError as e:
            logger.error("verification_persist_failed", verification_id=record.id, error=str(e))
        return matched

    def _verify(self, event: Event, verification: Verification) -> bool:
        try:
            flipped = self.repository.mark_event_verified(
                event.id, verification.source, verification.timestamp, verification.confidence)
        except RepositoryError as e:
            logger.error("event_verify_failed", event_id=event.id, error=str(e))
            return False
        if not flipped:
            logger.debug("event_already_verified", event_id=event.id, source=verification.source)
            return False

        event.verified = True
        event.verification_source = verification.source
        event.verification_timestamp = verification.timestamp
        event.verification_confidence = verification.confidence

        self._verify_alerts(event, verification.timestamp)
        PIPELINE_METRICS.increment_verifications(1)
        logger.info("event_verified",
                    event_id=event.id,
                    location=event.location,
                    source=verification.source,
                    verification_type=verification.type,
                    confidence=verification.confidence)

        if self.on_verified is not None:
            try:
                self.on_verified(event, verification)
            except Exception as e:
                logger.error("verification_notification_failed", event_id=event.id, error=str(e))
        return True

    def _verify_alerts(self, event: Event, at: datetime) -> None:
        try:
            alerts = self.repository.list_alerts_for_event(event.id)
        except RepositoryError as e:
            logger.error("alert_lookup_failed", event_id=event.id, error=str(e))
            return
        for alert in alerts:
            try:
                if self.repository.mark_alert_verified(alert.id, at):
                    logger.info("alert_verified", alert_id=alert.id, event_id=event.id)
            except RepositoryError as e:
                logger.error("alert_verify_failed", alert_id=alert.id, error=str(e))

    def verify_manually(self, event_id: str, source: str, verification_type: str = "manual",
                        now: Optional[datetime] = None) -> bool:
        """Operator confirmation; skips the location/time window but not the compare-and-swap."""
        event = self.repository.get_event(event_id)
        if event is None:
            logger.warning("manual_verification_event_not_found", event_id=event_id)
            return False

        verification = Verification(
            id=new_id("ver"),
            source=source,
            type=verification_type,
            location=event.location or UNKNOWN_LOCATION,
            text="Manual verification",
            confidence=MANUAL_CONFIDENCE,
            timestamp=now or self.clock(),
        )
        verified = self._verify(event, verification)
        try:
            self.repository.save_verification(
                replace(verification, matched_event_ref=event.id if verified else None))
        except RepositoryError as e:
            logger.error("verification_persist_failed", verification_id=verification.id, error=str(e))
        return verified

    def get_verification_stats(self) -> Dict:
        history = self.repository.list_verifications()
        source_stats: Dict[str, int] = {}
        for verification in history:
            source_stats[verification.source] = source_stats.get(verification.source, 0) + 1
        return {
            "verified_events": self.repository.count_verified_events(),
            "total_verifications": len(history),
            "source_stats": source_stats,
            "last_verification": history[0].timestamp.isoformat() if history else None,
        }

    # ------------------------------------------------------------------
    # Timer
    # ------------------------------------------------------------------

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._worker, daemon=True, name="VerificationMatcher")
        self._thread.start()
        logger.info("verification_matcher_started", poll_seconds=self.settings.poll_seconds,
                    sources=len(self.sources))

    def _worker(self) -> None:
        while not self._stop.is_set():
            try:
                self.run_once()
            except Exception as e:
                logger.error("verification_poll_failed", error=str(e))
            self._stop.wait(self.settings.poll_seconds)

    def stop(self, timeout: float = 30.0) -> None:
        """Stop scheduling polls; an in-flight poll is allowed to finish."""
        self._stop.set()
        if self._thread and self._thread.is_alive():
            self._thread.join(timeout=timeout)
        logger.info("verification_matcher_stopped")

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()
