"""
Clinic Events — notification envelope and hub.

The engine announces state changes (status transitions, allowance usage,
bookings, package and cycle changes) as ClinicEvents.  Delivery (email,
SMS, UI refresh) belongs to whoever subscribes; the hub only fans events
out and keeps a per-patient log that the API exposes for polling.
"""

from __future__ import annotations

import logging
import uuid
from collections import defaultdict, deque
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Optional

from pydantic import BaseModel, Field

from clinicflow import settings

logger = logging.getLogger("engine.events")


class ClinicEventType(str, Enum):
    """All event types the engine emits."""

    STATUS_CHANGED = "STATUS_CHANGED"
    SESSION_BALANCE_CHANGED = "SESSION_BALANCE_CHANGED"
    APPOINTMENT_BOOKED = "APPOINTMENT_BOOKED"
    APPOINTMENT_RESCHEDULED = "APPOINTMENT_RESCHEDULED"
    APPOINTMENT_TRANSFERRED = "APPOINTMENT_TRANSFERRED"
    APPOINTMENT_DELETED = "APPOINTMENT_DELETED"
    PACKAGE_PURCHASED = "PACKAGE_PURCHASED"
    PACKAGE_REMOVED = "PACKAGE_REMOVED"
    BILLING_CREATED = "BILLING_CREATED"
    CYCLE_ROLLED_OVER = "CYCLE_ROLLED_OVER"


def _new_uuid() -> str:
    return str(uuid.uuid4())


def _now() -> datetime:
    return datetime.now(timezone.utc)


class ClinicEvent(BaseModel):
    """Envelope for a single engine notification."""

    event_id: str = Field(default_factory=_new_uuid)
    event_type: ClinicEventType
    patient_id: Optional[str] = None
    appointment_id: Optional[str] = None
    payload: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=_now)

    # ── Convenience factories ──

    @classmethod
    def status_changed(
        cls,
        patient_id: str,
        appointment_id: str,
        old_status: str,
        new_status: str,
    ) -> ClinicEvent:
        return cls(
            event_type=ClinicEventType.STATUS_CHANGED,
            patient_id=patient_id,
            appointment_id=appointment_id,
            payload={"old_status": old_status, "new_status": new_status},
        )

    @classmethod
    def session_balance_changed(
        cls,
        patient_id: str,
        appointment_id: str,
        allowance: dict[str, Any],
        was_free: bool,
    ) -> ClinicEvent:
        return cls(
            event_type=ClinicEventType.SESSION_BALANCE_CHANGED,
            patient_id=patient_id,
            appointment_id=appointment_id,
            payload={"allowance": allowance, "was_free": was_free},
        )


Subscriber = Callable[[ClinicEvent], Any]


class NotificationHub:
    """
    Fans ClinicEvents out to subscribers.

    A failing subscriber is logged and skipped; ``publish`` never raises
    because of one.
    """

    def __init__(self, keep_log: bool = True, log_limit: int | None = None) -> None:
        self._subscribers: list[Subscriber] = []
        self._keep_log = keep_log
        # patient_id → most recent events, oldest first
        limit = log_limit if log_limit is not None else settings.EVENT_LOG_LIMIT
        self._event_log: dict[str, deque[ClinicEvent]] = defaultdict(lambda: deque(maxlen=limit))

    def subscribe(self, subscriber: Subscriber) -> None:
        self._subscribers.append(subscriber)
        logger.info("Registered event subscriber: %s", getattr(subscriber, "__name__", subscriber))

    def unsubscribe(self, subscriber: Subscriber) -> None:
        if subscriber in self._subscribers:
            self._subscribers.remove(subscriber)

    def publish(self, event: ClinicEvent) -> int:
        """Deliver to every subscriber. Returns how many succeeded."""
        if self._keep_log and event.patient_id:
            self._event_log[event.patient_id].append(event)

        delivered = 0
        for subscriber in list(self._subscribers):
            try:
                subscriber(event)
                delivered += 1
            except Exception as exc:
                logger.error(
                    "Subscriber failed for %s (patient %s): %s",
                    event.event_type.value, event.patient_id, exc,
                )
        return delivered

    def get_events(
        self, patient_id: str, event_type: ClinicEventType | None = None
    ) -> list[ClinicEvent]:
        events = self._event_log.get(patient_id, [])
        if event_type is not None:
            events = [e for e in events if e.event_type == event_type]
        return list(events)

    def clear(self, patient_id: str | None = None) -> None:
        """Clear logged events. If patient_id is None, clear everything."""
        if patient_id:
            self._event_log.pop(patient_id, None)
        else:
            self._event_log.clear()
