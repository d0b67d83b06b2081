from __future__ import annotations

import json
import logging
import threading
from datetime import datetime
from typing import Any, Callable

from sqlalchemy import select
from sqlalchemy.orm import Session

from rental_escrow.models.rental_models import AuditLog, BookingRequest, NotificationQueue

EVENTS_LOGGER = logging.getLogger("rental_escrow.events")

BOOKING_REQUESTED = "booking_requested"
BOOKING_RESCHEDULED = "booking_rescheduled"
BOOKING_APPROVED = "booking_approved"
PICKUP_INSPECTION_REQUIRED = "pickup_inspection_required"
RENTAL_STARTED = "rental_started"
RETURN_INITIATED = "return_initiated"
RETURN_SUBMITTED = "return_submitted"
RENTAL_COMPLETED = "rental_completed"
CLAIM_WINDOW_EXPIRED = "claim_window_expired"
CLAIM_FILED = "claim_filed"
CLAIM_DISPUTED = "claim_disputed"
CLAIM_RESOLVED = "claim_resolved"
BOOKING_CANCELLED = "booking_cancelled"

Listener = Callable[[dict], None]

_LISTENERS_LOCK = threading.Lock()
_LISTENERS: list[Listener] = []


def subscribe(listener: Listener) -> None:
    with _LISTENERS_LOCK:
        if listener not in _LISTENERS:
            _LISTENERS.append(listener)


def unsubscribe(listener: Listener) -> None:
    with _LISTENERS_LOCK:
        if listener in _LISTENERS:
            _LISTENERS.remove(listener)


def log_audit(db: Session, entity_type: str, entity_id: int, action: str, details: str | None = None, user_id: int | None = None, now: datetime | None = None) -> None:
    db.add(
        AuditLog(
            EntityType=entity_type,
            EntityID=entity_id,
            Action=action,
            Details=details,
            UserID=user_id,
            CreatedAt=now or datetime.now(),
        )
    )


def emit_event(
    db: Session,
    booking: BookingRequest,
    event_type: str,
    actor_id: int | None,
    now: datetime,
    payload: dict[str, Any] | None = None,
) -> dict:
    """Queue a domain event in the caller's transaction.

    The row becomes visible to the notifier only if the transition commits.
    The returned dict is what ``dispatch_events`` hands to in-process
    listeners after the commit.
    """
    body = dict(payload or {})
    body.setdefault("equipmentID", booking.EquipmentID)
    body.setdefault("renterID", booking.RenterID)
    body.setdefault("ownerID", booking.OwnerID)
    db.add(
        NotificationQueue(
            BookingID=booking.BookingID,
            EventType=event_type,
            ActorID=actor_id,
            NewStatus=booking.Status,
            Payload=json.dumps(body, default=str),
            CreatedAt=now,
        )
    )
    log_audit(db, "BookingRequest", booking.BookingID, event_type, f"status={booking.Status}", user_id=actor_id, now=now)
    return {
        "type": event_type,
        "bookingID": booking.BookingID,
        "newStatus": booking.Status,
        "actorID": actor_id,
        "payload": body,
        "createdAt": now,
    }


def dispatch_events(events: list[dict]) -> None:
    with _LISTENERS_LOCK:
        listeners = list(_LISTENERS)
    for event in events:
        EVENTS_LOGGER.info("Event %s booking=%s status=%s", event["type"], event["bookingID"], event["newStatus"])
        for listener in listeners:
            try:
                listener(event)
            except Exception:
                EVENTS_LOGGER.exception("Event listener failed for %s on booking %s", event["type"], event["bookingID"])


def list_pending_notifications(db: Session) -> list[dict]:
    notifications = db.execute(
        select(NotificationQueue)
        .where(NotificationQueue.SentAt.is_(None))
        .order_by(NotificationQueue.NotificationID)
    ).scalars().all()
    return [serialize_notification(n) for n in notifications]


def mark_notification_sent(db: Session, notification_id: int, now: datetime) -> dict | None:
    notification = db.get(NotificationQueue, notification_id)
    if notification is None:
        return None
    if notification.SentAt is None:
        notification.SentAt = now
        db.commit()
    return serialize_notification(notification)


def serialize_notification(notification: NotificationQueue) -> dict:
    try:
        payload = json.loads(notification.Payload or "{}")
    except (ValueError, json.JSONDecodeError):
        payload = {}
    return {
        "notificationID": notification.NotificationID,
        "bookingID": notification.BookingID,
        "type": notification.EventType,
        "actorID": notification.ActorID,
        "newStatus": notification.NewStatus,
        "payload": payload,
        "createdAt": notification.CreatedAt,
        "sentAt": notification.SentAt,
    }
