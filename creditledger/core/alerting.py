"""
Operational alerts.

Anything that touches money and is skipped, capped or found inconsistent is
reported through send_alert(). Alerts are logged at a severity-mapped level
(critical alerts go out as logger.critical so log-based paging picks them up)
and recorded in an in-memory ring buffer that the health route exposes.
"""
from __future__ import annotations

import logging
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Deque, Dict, List, Optional

logger = logging.getLogger(__name__)

MAX_ALERTS = 200


class AlertLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class AlertCategory(str, Enum):
    SYSTEM = "system"
    SECURITY = "security"
    BUSINESS = "business"
    DATABASE = "database"
    EXTERNAL_SERVICE = "external_service"


_LOG_LEVELS = {
    AlertLevel.LOW: logging.INFO,
    AlertLevel.MEDIUM: logging.WARNING,
    AlertLevel.HIGH: logging.ERROR,
    AlertLevel.CRITICAL: logging.CRITICAL,
}


@dataclass
class Alert:
    title: str
    message: str
    level: AlertLevel
    category: AlertCategory
    context: Dict[str, Any] = field(default_factory=dict)
    fingerprint: Optional[str] = None
    ts: float = field(default_factory=time.time)

    def to_dict(self) -> dict:
        return {
            "title": self.title,
            "message": self.message,
            "level": self.level.value,
            "category": self.category.value,
            "context": self.context,
            "fingerprint": self.fingerprint,
            "ts": self.ts,
        }


class AlertTracker:
    """Ring buffer of recent alerts."""

    def __init__(self, max_size: int = MAX_ALERTS):
        self._alerts: Deque[Alert] = deque(maxlen=max_size)
        self._lock = threading.Lock()

    def record(self, alert: Alert) -> None:
        with self._lock:
            self._alerts.append(alert)

    def recent(self, limit: int = 50, min_level: Optional[AlertLevel] = None) -> List[dict]:
        order = list(AlertLevel)
        with self._lock:
            alerts = list(self._alerts)
        if min_level is not None:
            floor = order.index(min_level)
            alerts = [a for a in alerts if order.index(a.level) >= floor]
        if limit <= 0:
            return []
        return [a.to_dict() for a in alerts[-limit:]][::-1]

    def count(self, fingerprint: str) -> int:
        with self._lock:
            return sum(1 for a in self._alerts if a.fingerprint == fingerprint)

    def clear(self) -> None:
        with self._lock:
            self._alerts.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._alerts)


# Module-level singleton
alert_tracker = AlertTracker()


def send_alert(
    title: str,
    message: str,
    level: AlertLevel = AlertLevel.MEDIUM,
    category: AlertCategory = AlertCategory.SYSTEM,
    context: Optional[Dict[str, Any]] = None,
    fingerprint: Optional[str] = None,
) -> Alert:
    """Log an alert and record it in the tracker."""
    alert = Alert(
        title=title,
        message=message,
        level=level,
        category=category,
        context=context or {},
        fingerprint=fingerprint,
    )
    logger.log(
        _LOG_LEVELS[level],
        "ALERT[%s] %s: %s",
        level.value.upper(),
        title,
        message,
        extra={
            "alert.level": level.value,
            "alert.category": category.value,
            "alert.fingerprint": fingerprint,
            **{f"alert.ctx.{k}": v for k, v in alert.context.items()},
        },
    )
    alert_tracker.record(alert)
    return alert
