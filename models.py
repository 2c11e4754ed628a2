# models.py — Domain records shared by the pipeline components
from __future__ import annotations

import uuid
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

UNKNOWN_LOCATION = "unknown"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex}"


def clamp01(value: Any, default: float = 0.0) -> float:
    """Coerce to float and clamp into [0, 1]; NaN and junk fall back to default."""
    try:
        num = float(value)
    except (TypeError, ValueError):
        return default
    if num != num:  # NaN
        return default
    return 0.0 if num < 0.0 else 1.0 if num > 1.0 else num


def parse_dt(obj: Any) -> Optional[datetime]:
    """
    Accepts Python datetime, epoch seconds or common ISO strings (with/without Z).
    Returns timezone-aware UTC.
    """
    if obj is None or obj == "":
        return None
    if isinstance(obj, datetime):
        dt = obj
    elif isinstance(obj, (int, float)):
        dt = datetime.fromtimestamp(obj, tz=timezone.utc)
    elif isinstance(obj, str):
        try:
            dt = datetime.fromisoformat(obj.strip().replace("Z", "+00:00"))
        except ValueError:
            return None
    else:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


class NotificationKind(str, Enum):
    DISASTER_ALERT = "disaster_alert"
    EMERGENCY_ALERT = "emergency_alert"
    VERIFICATION = "verification"
    SYSTEM_STATUS = "system_status"

    @property
    def preference(self) -> str:
        return _PREFERENCE_BY_KIND[self]

    @property
    def is_alert_scoped(self) -> bool:
        return self in (NotificationKind.DISASTER_ALERT, NotificationKind.EMERGENCY_ALERT)


_PREFERENCE_BY_KIND = {
    NotificationKind.DISASTER_ALERT: "disasterAlerts",
    NotificationKind.EMERGENCY_ALERT: "emergencyAlerts",
    NotificationKind.VERIFICATION: "verifications",
    NotificationKind.SYSTEM_STATUS: "systemStatus",
}

PREFERENCE_FLAGS = tuple(_PREFERENCE_BY_KIND.values())


@dataclass(frozen=True)
class Post:
    """Raw incoming report. Immutable once ingested."""
    id: str
    text: str
    source: str
    timestamp: datetime
    author: Optional[str] = None
    images: Tuple[str, ...] = ()
    location: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "text": self.text,
            "author": self.author,
            "source": self.source,
            "timestamp": self.timestamp.isoformat(),
            "images": list(self.images),
            "location": self.location,
        }


@dataclass
class Event:
    """Enriched, scored representation of a disaster-related post."""
    id: str
    post_ref: str
    text: str
    source: str
    timestamp: datetime
    author: Optional[str] = None
    location: Optional[str] = None
    severity: float = 0.0
    confidence: float = 0.0
    event_type: str = "general"
    entities: List[Dict[str, Any]] = field(default_factory=list)
    sentiment: str = "NEUTRAL"
    key_phrases: List[str] = field(default_factory=list)
    images: List[str] = field(default_factory=list)
    language: str = "en"
    analysis_method: str = "keyword"
    created_at: datetime = field(default_factory=utc_now)
    verified: bool = False
    verification_source: Optional[str] = None
    verification_timestamp: Optional[datetime] = None
    verification_confidence: Optional[float] = None

    def __post_init__(self):
        self.severity = clamp01(self.severity)
        self.confidence = clamp01(self.confidence)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        for key in ("timestamp", "created_at", "verification_timestamp"):
            if data[key] is not None:
                data[key] = data[key].isoformat()
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Event":
        values = dict(data)
        for key in ("timestamp", "created_at", "verification_timestamp"):
            values[key] = parse_dt(values.get(key))
        if values.get("created_at") is None:
            values.pop("created_at", None)
        return cls(**{k: v for k, v in values.items() if k in cls.__dataclass_fields__})


@dataclass
class Alert:
    """Cluster of events in one location and time window."""
    id: str
    location: str
    severity: float
    event_count: int
    event_refs: List[str]
    timestamp: datetime
    verified: bool = False
    verified_at: Optional[datetime] = None

    def __post_init__(self):
        self.severity = clamp01(self.severity)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["timestamp"] = self.timestamp.isoformat()
        data["verified_at"] = self.verified_at.isoformat() if self.verified_at else None
        return data


@dataclass(frozen=True)
class Verification:
    """Independent confirmation of a disaster, immutable once created."""
    id: str
    source: str
    type: str
    location: str
    text: str
    confidence: float
    timestamp: datetime
    url: Optional[str] = None
    matched_event_ref: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["timestamp"] = self.timestamp.isoformat()
        return data


@dataclass
class Subscriber:
    """Notification recipient (owned by the repository, read-only to the pipeline)."""
    id: str
    type: str = "email"
    email: Optional[str] = None
    phone: Optional[str] = None
    preferences: Dict[str, bool] = field(default_factory=dict)
    location: Optional[str] = None
    active: bool = True
    last_notified: Dict[str, datetime] = field(default_factory=dict)

    def wants(self, preference: str) -> bool:
        return bool(self.active and self.preferences.get(preference, False))

    def channel_addresses(self) -> List[Tuple[str, Optional[str]]]:
        """(channel, address) pairs this subscriber should be contacted on."""
        if self.type == "both":
            return [("email", self.email), ("sms", self.phone)]
        if self.type == "sms":
            return [("sms", self.phone)]
        return [("email", self.email)]


@dataclass
class LedgerEntry:
    """NotificationLedger record; at most one per (alert_id, kind)."""
    alert_id: str
    kind: str
    sent_at: datetime
    ttl: int
    recipient_count: int = 0
    failed_count: int = 0
    status: str = "pending"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "alertId": self.alert_id,
            "notificationKind": self.kind,
            "sentAt": self.sent_at.isoformat(),
            "recipientCount": self.recipient_count,
            "failedCount": self.failed_count,
            "status": self.status,
            "ttl": self.ttl,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LedgerEntry":
        return cls(
            alert_id=data["alertId"],
            kind=data["notificationKind"],
            sent_at=parse_dt(data.get("sentAt")) or utc_now(),
            ttl=int(data.get("ttl", 0)),
            recipient_count=int(data.get("recipientCount", 0)),
            failed_count=int(data.get("failedCount", 0)),
            status=data.get("status", "completed"),
        )
