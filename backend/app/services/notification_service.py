"""
Notification service: turns committed domain events into deliveries.

Deliveries are planned synchronously against the notification gate, then
handed to FastAPI BackgroundTasks and posted to the delivery webhook. A
failed delivery is logged and recorded; it never undoes the transition that
caused it.
"""
import logging
from typing import Callable, Dict, List, Optional
import httpx
from fastapi import BackgroundTasks
from sqlalchemy.orm import Session
from app.core.config import settings
from app.db.session import SessionLocal
from app.models.activity import Activity
from app.models.notification import Channel, EventType, NotificationLog
from app.models.obligation import Obligation
from app.models.person import Person
from app.services.events import DomainEvent, drain_events
from app.services.notification_gate import should_notify

logger = logging.getLogger(__name__)


def plan_deliveries(events: List[DomainEvent], db: Session) -> List[Dict]:
    """One delivery per (event, eligible channel)."""
    deliveries = []
    for event in events:
        person = db.query(Person).filter(Person.id == event.person_id).first()
        if not person:
            continue
        activity = db.query(Activity).filter(Activity.id == event.activity_id).first()
        for channel in Channel:
            if not should_notify(person.id, event.event_type, channel, db):
                continue
            delivery = {
                "event_type": event.event_type.value,
                "channel": channel.value,
                "person_id": person.id,
                "person_name": person.name,
                "address": person.email if channel == Channel.EMAIL else person.phone,
                "activity_id": event.activity_id,
                "scheduled_at": activity.scheduled_at.isoformat() if activity else None,
                "location": activity.location if activity else None,
            }
            if event.obligation_id is not None:
                delivery.update(_obligation_payload(event.obligation_id, db))
            deliveries.append(delivery)
    return deliveries


def _obligation_payload(obligation_id: int, db: Session) -> Dict:
    from app.services.ledger_service import payment_request_link, payment_request_note

    obligation = db.query(Obligation).filter(Obligation.id == obligation_id).first()
    if not obligation:
        return {"obligation_id": obligation_id}
    return {
        "obligation_id": obligation.id,
        "amount": f"{obligation.amount:.2f}",
        "payment_note": payment_request_note(obligation),
        "payment_link": payment_request_link(obligation),
    }


async def dispatch_deliveries(deliveries: List[Dict], session_factory: Callable[[], Session] = SessionLocal):
    """Post each delivery to the webhook and log the outcome. Never raises."""
    if not deliveries:
        return
    if not settings.NOTIFY_WEBHOOK_URL:
        logger.debug(f"NOTIFY_WEBHOOK_URL not configured. Skipping {len(deliveries)} deliveries.")
        return

    results = []
    async with httpx.AsyncClient(timeout=settings.NOTIFY_TIMEOUT_SECONDS) as client:
        for delivery in deliveries:
            error_message = None
            try:
                response = await client.post(settings.NOTIFY_WEBHOOK_URL, json=delivery)
                response.raise_for_status()
            except httpx.HTTPStatusError as e:
                error_message = f"HTTP {e.response.status_code}: {e.response.text[:200]}"
            except httpx.HTTPError as e:
                error_message = str(e) or e.__class__.__name__
            if error_message:
                logger.error(
                    f"Delivery of {delivery['event_type']} via {delivery['channel']} "
                    f"to person {delivery['person_id']} failed: {error_message}"
                )
            results.append((delivery, error_message))

    _log_results(results, session_factory)


def _log_results(results, session_factory: Callable[[], Session]) -> None:
    db = session_factory()
    try:
        for delivery, error_message in results:
            db.add(NotificationLog(
                event_type=EventType(delivery["event_type"]),
                channel=Channel(delivery["channel"]),
                person_id=delivery["person_id"],
                activity_id=delivery["activity_id"],
                success=error_message is None,
                error_message=error_message
            ))
        db.commit()
    except Exception as e:
        db.rollback()
        logger.error(f"Failed to write notification log: {e}", exc_info=True)
    finally:
        db.close()


def announce(db: Session, background_tasks: Optional[BackgroundTasks]) -> List[Dict]:
    """
    Drain events buffered by the last committed unit of work and schedule delivery.

    Call only after the transition committed. Returns the planned deliveries.
    """
    events = drain_events(db)
    if not events:
        return []
    deliveries = plan_deliveries(events, db)
    logger.info(f"{len(events)} events produced {len(deliveries)} deliveries")
    if deliveries and background_tasks is not None:
        background_tasks.add_task(dispatch_deliveries, deliveries)
    return deliveries


def list_notification_log(activity_id: int, db: Session, limit: int = 100) -> List[NotificationLog]:
    """Delivery attempts for one activity, newest first."""
    return db.query(NotificationLog).filter(
        NotificationLog.activity_id == activity_id
    ).order_by(NotificationLog.id.desc()).limit(limit).all()
