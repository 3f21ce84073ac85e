from __future__ import annotations

from typing import Callable, List

import structlog

from .mapping_store import Clock, utc_now
from .schemas import AuditEvent
from .storage import AUDIT_KEY, KeyValueStorage, Unsubscribe, read_json_list, write_json


logger = structlog.get_logger(__name__)

MAX_EVENTS = 1000
EVENT_TIME_FORMAT = "%Y-%m-%d %I:%M %p"


def format_event_time(clock: Clock) -> str:
    # Local wall-clock time, e.g. "2025-01-31 02:35 PM"
    return clock().astimezone().strftime(EVENT_TIME_FORMAT)


class AuditLog:
    """Activity stream of user actions, newest first, capped at ``MAX_EVENTS``."""

    def __init__(self, storage: KeyValueStorage, clock: Clock = utc_now, key: str = AUDIT_KEY):
        self.storage = storage
        self.clock = clock
        self.key = key

    def list(self) -> List[AuditEvent]:
        out: List[AuditEvent] = []
        for raw in read_json_list(self.storage, self.key):
            if not isinstance(raw, dict):
                continue
            out.append(
                AuditEvent(
                    timestamp=str(raw.get("timestamp", "")),
                    user=str(raw.get("user", "")),
                    action=str(raw.get("action", "")),
                    details=str(raw.get("details", "")),
                )
            )
        return out

    def append(self, action: str, details: str, user: str = "You") -> AuditEvent:
        event = AuditEvent(timestamp=format_event_time(self.clock), user=user, action=action, details=details)
        events = [event] + self.list()
        write_json(self.storage, self.key, [e.to_dict() for e in events[:MAX_EVENTS]])
        logger.debug("Audit event recorded", action=action)
        return event

    def clear(self) -> None:
        self.storage.remove(self.key)

    def subscribe(self, handler: Callable[[List[AuditEvent]], None]) -> Unsubscribe:
        def on_change(key: str) -> None:
            if key == self.key:
                handler(self.list())

        return self.storage.subscribe(on_change)
