# notification_messages.py — Subject/body/attributes for each notification kind
from __future__ import annotations

import html
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from models import Alert, Event, NotificationKind, Verification
from severity_scorer import severity_level

SEVERITY_COLORS = {
    "CRITICAL": "#dc3545",
    "HIGH": "#fd7e14",
    "MEDIUM": "#ffc107",
    "LOW": "#17a2b8",
    "MINIMAL": "#6c757d",
}


@dataclass
class ChannelMessage:
    """What a channel sender receives."""
    subject: str
    body: str
    attributes: Dict[str, Any] = field(default_factory=dict)
    html: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"subject": self.subject, "body": self.body, "attributes": dict(self.attributes)}


def _ts(value) -> str:
    return value.isoformat() if hasattr(value, "isoformat") else str(value or "")


def format_disaster_alert(alert: Alert) -> ChannelMessage:
    level = severity_level(alert.severity)
    status = "✅ VERIFIED" if alert.verified else "⏳ PENDING VERIFICATION"
    body = (
        "🚨 DISASTER ALERT\n\n"
        f"📍 Location: {alert.location}\n"
        f"⚠️  Severity: {level} ({alert.severity:.2f})\n"
        f"📊 Events: {alert.event_count}\n"
        f"🔍 Status: {status}\n"
        f"⏰ Time: {_ts(alert.timestamp)}\n\n"
        f"This alert was generated based on {alert.event_count} social media posts reporting "
        f"disaster-related events in {alert.location}. Please verify with official sources "
        "before taking action.\n\n"
        f"Alert ID: {alert.id}"
    )
    return _message(f"🚨 Disaster Alert: {alert.location}", body, alert.severity, alert.location,
                    alert.verified, _ts(alert.timestamp))


def format_emergency_alert(alert: Alert) -> ChannelMessage:
    body = (
        "🚨 EMERGENCY ALERT\n\n"
        f"📍 Location: {alert.location}\n"
        f"⚠️  Severity: CRITICAL ({alert.severity:.2f})\n"
        f"📊 Events: {alert.event_count}\n"
        f"⏰ Time: {_ts(alert.timestamp)}\n\n"
        f"IMMEDIATE ATTENTION REQUIRED: Multiple disaster reports detected in {alert.location}. "
        "This is a high-priority emergency alert requiring immediate response.\n\n"
        f"Alert ID: {alert.id}"
    )
    return _message(f"🚨 EMERGENCY: {alert.location}", body, alert.severity, alert.location,
                    alert.verified, _ts(alert.timestamp))


def format_verification(event: Event, verification: Verification) -> ChannelMessage:
    location = event.location or "unknown"
    body = (
        "✅ DISASTER VERIFIED\n\n"
        f"📍 Location: {location}\n"
        f"🚨 Disaster Type: {event.event_type}\n"
        f"⚠️  Severity: {severity_level(event.severity)} ({event.severity:.2f})\n"
        f"🏢 Verified By: {verification.source}\n"
        f"🔍 Confidence: {verification.confidence * 100:.1f}%\n"
        f"⏰ Verified At: {_ts(verification.timestamp)}\n\n"
        f"The disaster event has been officially confirmed by {verification.source}. "
        "This is a verified disaster alert.\n\n"
        f"Event ID: {event.id}\n"
        f"Verification ID: {verification.id}"
    )
    return _message(f"✅ Disaster Verified: {location}", body, event.severity, location,
                    True, _ts(verification.timestamp))


def format_system_status(status: Dict[str, Any]) -> ChannelMessage:
    stats = status.get("statistics", {})
    health = status.get("health", "HEALTHY")
    body = (
        "📊 SYSTEM STATUS UPDATE\n\n"
        f"🏥 Health: {health}\n"
        f"📝 Raw Posts: {stats.get('raw_posts', 0)}\n"
        f"🔍 Analyzed Posts: {stats.get('analyzed_posts', 0)}\n"
        f"🚨 Events: {stats.get('events', 0)}\n"
        f"⚠️  Alerts: {stats.get('alerts', 0)}\n"
        f"✅ Verifications: {stats.get('verifications', 0)}\n\n"
        f"Last Updated: {stats.get('last_updated', '')}\n\n"
        f"The disaster detection system is {str(health).lower()}."
    )
    return ChannelMessage(
        subject="📊 System Status Update",
        body=body,
        attributes={"severity": None, "location": None, "verified": None, "health": health},
        html=render_html("📊 System Status Update", body, None, None, stats.get("last_updated")),
    )


def _message(subject: str, body: str, severity: float, location: Optional[str], verified: bool,
             timestamp: Optional[str]) -> ChannelMessage:
    return ChannelMessage(
        subject=subject,
        body=body,
        attributes={"severity": round(severity, 3), "location": location, "verified": bool(verified)},
        html=render_html(subject, body, severity, location, timestamp),
    )


def render_html(subject: str, body: str, severity: Optional[float], location: Optional[str],
                timestamp: Optional[str]) -> str:
    """HTML email body wrapping the plain-text body."""
    level = severity_level(severity) if severity is not None else None
    color = SEVERITY_COLORS.get(level, "#343a40")
    rows = []
    if level:
        rows.append(f"<p><strong>Severity:</strong> <span class=\"severity\">{level}</span></p>")
    if location:
        rows.append(f"<p><strong>Location:</strong> {html.escape(location)}</p>")
    if timestamp:
        rows.append(f"<p><strong>Time:</strong> {html.escape(str(timestamp))}</p>")

    return f"""<!DOCTYPE html>
<html>
<head>
    <meta charset="UTF-8">
    <style>
        body {{ font-family: Arial, sans-serif; line-height: 1.6; color: #333; }}
        .header {{ background-color: {color}; color: white; padding: 20px; text-align: center; }}
        .content {{ padding: 20px; }}
        .alert-box {{ border-left: 4px solid {color}; padding: 15px; background-color: #f8f9fa; margin: 15px 0; }}
        .severity {{ display: inline-block; padding: 5px 10px; background-color: {color}; color: white; border-radius: 3px; font-weight: bold; }}
    </style>
</head>
<body>
    <div class="header"><h1>Disaster Alert System</h1></div>
    <div class="content">
        <h2>{html.escape(subject)}</h2>
        <div class="alert-box">{''.join(rows)}</div>
        <div style="white-space: pre-line;">{html.escape(body)}</div>
        <hr>
        <p><strong>Important:</strong> This is an automated alert. Please verify information with official sources before taking action.</p>
    </div>
</body>
</html>"""


def build_message(kind: NotificationKind, payload: Dict[str, Any]) -> ChannelMessage:
    """Message for `kind` from its payload (alert / event+verification / status)."""
    if kind == NotificationKind.DISASTER_ALERT:
        return format_disaster_alert(payload["alert"])
    if kind == NotificationKind.EMERGENCY_ALERT:
        return format_emergency_alert(payload["alert"])
    if kind == NotificationKind.VERIFICATION:
        return format_verification(payload["event"], payload["verification"])
    if kind == NotificationKind.SYSTEM_STATUS:
        return format_system_status(payload["status"])
    raise ValueError(f"Unknown notification kind: {kind}")
