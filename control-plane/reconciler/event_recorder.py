#!/usr/bin/env python3
"""
Event Recorder

Keeps an audit trail of controller decisions per object, logged as they are
recorded and queryable through the REST API.
"""

import logging
import threading
from collections import deque
from datetime import datetime
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)

EVENT_NORMAL = "Normal"
EVENT_WARNING = "Warning"

REASON_SUCCESSFUL_CREATE_OR_UPDATE = "SuccessfulCreateOrUpdate"
REASON_FAILED_UPDATE = "FailedUpdate"
REASON_SUCCESSFUL_DELETE = "SuccessfulDelete"
REASON_FAILED_DELETE = "FailedDelete"


class EventRecorder:
    """Bounded in-memory event log."""

    def __init__(self, max_events: int = 1000):
        self.start_time = datetime.now()
        self._events = deque(maxlen=max_events)
        self._lock = threading.Lock()

    def event(self, kind: str, key: str, event_type: str, reason: str, message: str):
        record = {
            "timestamp": datetime.now().isoformat(),
            "kind": kind,
            "object": key,
            "type": event_type,
            "reason": reason,
            "message": message,
        }
        with self._lock:
            self._events.append(record)
        if event_type == EVENT_WARNING:
            logger.warning(f"{kind} {key}: {reason}: {message}")
        else:
            logger.info(f"{kind} {key}: {reason}: {message}")

    def events(self, key: Optional[str] = None, event_type: Optional[str] = None) -> List[Dict[str, Any]]:
        with self._lock:
            records = list(self._events)
        if key is not None:
            records = [r for r in records if r["object"] == key]
        if event_type is not None:
            records = [r for r in records if r["type"] == event_type]
        return records

    def generate_report(self) -> Dict[str, Any]:
        records = self.events()
        return {
            "uptime_seconds": (datetime.now() - self.start_time).total_seconds(),
            "total_events": len(records),
            "warnings": sum(1 for r in records if r["type"] == EVENT_WARNING),
            "recent_warnings": [r for r in records if r["type"] == EVENT_WARNING][-5:],
        }
