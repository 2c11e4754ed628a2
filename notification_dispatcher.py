# notification_dispatcher.py — Subscriber resolution, per-channel sends, at-most-once gating
#
# Alert-scoped kinds are gated by the notification ledger: the (alert_id, kind)
# entry is claimed before any send, so a second dispatch (same or another
# instance) sees it and skips. When the ledger is unavailable the dispatcher
# fails OPEN and sends anyway; that path is logged as `ledger_unavailable_fail_open`
# and accepts possible duplicate delivery during a ledger outage.

from __future__ import annotations

import time
from collections import OrderedDict
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Union

from config import CONFIG
from email_dispatcher import ChannelSendError, SmtpEmailSender
from logging_config import get_logger, get_metrics_logger
from metrics import PIPELINE_METRICS
from models import UNKNOWN_LOCATION, Alert, Event, NotificationKind, Subscriber, Verification, utc_now
from notification_ledger import LedgerUnavailableError, NotificationLedger
from notification_messages import ChannelMessage, build_message
from repository import Repository, RepositoryError
from sms_dispatcher import BrevoSmsSender

logger = get_logger("notification_dispatcher")
metrics = get_metrics_logger("notification_dispatcher")

SubscriberFilter = Callable[[Subscriber], bool]

# Ledger gate outcomes
CLAIMED = "claimed"
ALREADY_SENT = "already_sent"
FAIL_OPEN = "fail_open"


class NotificationDispatcher:
    """Resolves subscribers, formats messages and sends them once per (alert, kind)."""

    def __init__(self, repository: Repository, ledger: NotificationLedger,
                 senders: Optional[Dict[str, Any]] = None,
                 emergency_severity: Optional[float] = None,
                 clock: Callable[[], datetime] = utc_now):
        self.repository = repository
        self.ledger = ledger
        if senders is None:
            senders = {"email": SmtpEmailSender(), "sms": BrevoSmsSender()}
        self.senders = senders
        self.emergency_severity = (CONFIG.pipeline.emergency_severity
                                   if emergency_severity is None else emergency_severity)
        self.clock = clock

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    def dispatch(self, kind: Union[NotificationKind, str], payload: Dict[str, Any],
                 subscriber_filter: Optional[SubscriberFilter] = None,
                 now: Optional[datetime] = None) -> Dict[str, Any]:
        """
        Send `kind` to every matching subscriber.

        payload keys by kind: "alert" (disaster/emergency), "event" and
        "verification" (verification), "status" (system_status).

        Returns {"successful", "failed", "details", "skipped"}; never raises
        for an individual subscriber or channel failure.
        """
        kind = NotificationKind(kind)
        now = now or self.clock()
        start = time.perf_counter()
        message = build_message(kind, payload)
        target_id = self._target_id(kind, payload)
        location = message.attributes.get("location")

        gate = None
        if kind.is_alert_scoped:
            gate = self._claim(target_id, kind, now)
            if gate == ALREADY_SENT:
                logger.info("notification_skipped_duplicate", kind=kind.value, alert_id=target_id)
                PIPELINE_METRICS.increment_notification_skipped(kind.value, "already_sent")
                return {"kind": kind.value, "alert_id": target_id, "successful": 0, "failed": 0,
                        "details": [], "skipped": True, "reason": "already sent"}

        subscribers = self._resolve_subscribers(kind, location, subscriber_filter)
        successful, failed, details, notified = 0, 0, [], []
        for subscriber in subscribers:
            sub_ok = False
            for channel, address in subscriber.channel_addresses():
                detail = self._send_one(subscriber, channel, address, message)
                details.append(detail)
                if detail["success"]:
                    successful += 1
                    sub_ok = True
                else:
                    failed += 1
            if sub_ok:
                notified.append(subscriber)

        if gate == CLAIMED:
            try:
                self.ledger.complete(target_id, kind.value, successful, failed)
            except LedgerUnavailableError as e:
                logger.warning("ledger_complete_failed", kind=kind.value, alert_id=target_id, error=str(e))

        for subscriber in notified:
            try:
                self.repository.update_subscriber_last_notified(subscriber.id, kind.value, now)
            except RepositoryError as e:
                logger.warning("last_notified_update_failed", subscriber_id=subscriber.id, error=str(e))

        PIPELINE_METRICS.record_notification(kind.value, successful, failed)
        metrics.notification_dispatched(kind.value, successful, failed,
                                        round((time.perf_counter() - start) * 1000, 2),
                                        alert_id=target_id, subscribers=len(subscribers),
                                        fail_open=gate == FAIL_OPEN)
        return {"kind": kind.value, "alert_id": target_id, "successful": successful, "failed": failed,
                "details": details, "skipped": False}

    def dispatch_alert(self, alert: Alert, subscriber_filter: Optional[SubscriberFilter] = None,
                       now: Optional[datetime] = None) -> Dict[str, Any]:
        """emergency_alert at or above the emergency threshold, disaster_alert below it."""
        kind = (NotificationKind.EMERGENCY_ALERT if alert.severity >= self.emergency_severity
                else NotificationKind.DISASTER_ALERT)
        return self.dispatch(kind, {"alert": alert}, subscriber_filter, now)

    def dispatch_verification(self, event: Event, verification: Verification,
                              now: Optional[datetime] = None) -> Dict[str, Any]:
        return self.dispatch(NotificationKind.VERIFICATION,
                             {"event": event, "verification": verification}, now=now)

    def dispatch_system_status(self, status: Dict[str, Any], now: Optional[datetime] = None) -> Dict[str, Any]:
        return self.dispatch(NotificationKind.SYSTEM_STATUS, {"status": status}, now=now)

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    @staticmethod
    def _target_id(kind: NotificationKind, payload: Dict[str, Any]) -> Optional[str]:
        if kind.is_alert_scoped:
            return payload["alert"].id
        if kind == NotificationKind.VERIFICATION:
            return payload["event"].id
        return None

    def _claim(self, alert_id: str, kind: NotificationKind, now: datetime) -> str:
        if not self.ledger.is_available():
            logger.warning("ledger_unavailable_fail_open", kind=kind.value, alert_id=alert_id,
                           ledger=self.ledger.name, reason="ledger reported unavailable")
            PIPELINE_METRICS.increment_notification_skipped(kind.value, "ledger_fail_open")
            return FAIL_OPEN
        try:
            claimed = self.ledger.claim(alert_id, kind.value, now)
        except LedgerUnavailableError as e:
            logger.warning("ledger_unavailable_fail_open", kind=kind.value, alert_id=alert_id,
                           ledger=self.ledger.name, reason=str(e))
            PIPELINE_METRICS.increment_notification_skipped(kind.value, "ledger_fail_open")
            return FAIL_OPEN
        return CLAIMED if claimed else ALREADY_SENT

    def _resolve_subscribers(self, kind: NotificationKind, location: Optional[str],
                             subscriber_filter: Optional[SubscriberFilter]) -> List[Subscriber]:
        """Preference subscribers plus location subscribers, merged by id."""
        preference = kind.preference
        merged: "OrderedDict[str, Subscriber]" = OrderedDict()
        try:
            for subscriber in self.repository.list_subscribers(preference):
                merged[subscriber.id] = subscriber
            if location and location != UNKNOWN_LOCATION:
                for subscriber in self.repository.list_subscribers_by_location(location, preference):
                    merged.setdefault(subscriber.id, subscriber)
        except RepositoryError as e:
            logger.error("subscriber_lookup_failed", kind=kind.value, error=str(e))

        subscribers = list(merged.values())
        if subscriber_filter is not None:
            subscribers = [s for s in subscribers if subscriber_filter(s)]
        return subscribers

    def _send_one(self, subscriber: Subscriber, channel: str, address: Optional[str],
                  message: ChannelMessage) -> Dict[str, Any]:
        detail = {"subscriber_id": subscriber.id, "channel": channel, "success": False}
        if not address:
            detail["error"] = "No valid endpoint"
            return detail

        sender = self.senders.get(channel)
        if sender is None:
            detail["error"] = f"No sender for channel {channel}"
            return detail

        try:
            sender.send(address, message.subject, message.body, message.html)
            detail["success"] = True
        except ChannelSendError as e:
            detail["error"] = str(e)
        except Exception as e:
            logger.error("channel_send_unexpected_error", channel=channel,
                         subscriber_id=subscriber.id, error=str(e))
            detail["error"] = str(e)
        return detail
