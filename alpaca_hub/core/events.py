"""
Event sink for connection and command events.

Captures events with timestamps in a bounded buffer for the management API,
and mirrors each one to the log.
"""

import logging
import threading
from collections import deque
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import List, Optional


logger = logging.getLogger(__name__)


class EventCategory:
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    OPEN_FAILED = "open_failed"
    COMMAND_FAILED = "command_failed"
    ENABLED = "enabled"
    DISABLED = "disabled"


_WARNING_CATEGORIES = {EventCategory.DISCONNECTED, EventCategory.OPEN_FAILED, EventCategory.COMMAND_FAILED}


@dataclass
class Event:
    """A single device event."""
    timestamp: str
    device: str
    category: str
    result_code: Optional[int]
    message: str

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return asdict(self)


class EventSink:
    """
    Thread-safe, write-only event sink.

    Maintains a circular buffer of events with configurable max size.
    """

    DEFAULT_MAX_EVENTS = 300

    def __init__(self, max_events: int = DEFAULT_MAX_EVENTS):
        self._events: deque = deque(maxlen=max_events)
        self._lock = threading.Lock()
        self._counts = {}

    def notify(self, device_id: str, category: str, result_code: Optional[int] = None, message: str = "") -> None:
        """Record an event. Never raises."""
        event = Event(
            timestamp=datetime.now().isoformat(timespec="milliseconds"),
            device=str(device_id),
            category=category,
            result_code=result_code,
            message=message,
        )

        level = logging.WARNING if category in _WARNING_CATEGORIES else logging.INFO
        code = f" (code {result_code})" if result_code is not None else ""
        logger.log(level, f"[{device_id}] {category}{code}: {message}")

        with self._lock:
            self._events.append(event)
            self._counts[category] = self._counts.get(category, 0) + 1

    def get_events(self, limit: int = 100, device: Optional[str] = None) -> List[dict]:
        """
        Get recent events, oldest first.

        Args:
            limit: Maximum number of events to return.
            device: Only events of this device.
        """
        with self._lock:
            events = list(self._events)
        if device is not None:
            events = [e for e in events if e.device == device]
        if len(events) > limit:
            events = events[-limit:]
        return [e.to_dict() for e in events]

    def get_stats(self) -> dict:
        with self._lock:
            return {
                "total_events": len(self._events),
                "max_events": self._events.maxlen,
                "by_category": dict(self._counts),
            }

    def clear(self) -> None:
        with self._lock:
            self._events.clear()
            self._counts.clear()
