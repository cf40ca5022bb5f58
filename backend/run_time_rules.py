"""
Apply date-driven activity transitions and queue due payment reminders.

Meant to run from cron every few minutes:
    python run_time_rules.py
"""
import sys
import os
import asyncio

# Add the backend directory to Python path
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from app.core.exceptions import DomainError
from app.core.utils import utcnow
from app.db.session import SessionLocal
from app.models.activity import Activity, ActivityStatus
from app.services.ledger_service import collect_payment_reminders
from app.services.notification_service import announce, dispatch_deliveries
from app.services.roster_service import apply_time_rules, due_for_time_rules


def sweep():
    """Run time rules for every due activity, then reminders for locked ones."""
    db = SessionLocal()
    now = utcnow()
    deliveries = []
    try:
        due = due_for_time_rules(db, now=now)
        for activity_id in due:
            try:
                activity = apply_time_rules(activity_id, db, now=now)
                print(f"Activity {activity_id}: {activity.status.value}")
            except DomainError as e:
                print(f"Activity {activity_id} skipped: {e.message}")
            deliveries.extend(announce(db, None))

        locked = db.query(Activity.id).filter(
            Activity.status == ActivityStatus.CONFIRMED,
            Activity.roster_locked.is_(True),
            Activity.payment_deadline.isnot(None)
        ).all()
        for (activity_id,) in locked:
            reminded = collect_payment_reminders(activity_id, db, now=now)
            if reminded:
                print(f"Activity {activity_id}: {len(reminded)} payment reminders")
            deliveries.extend(announce(db, None))

        print(f"Sweep completed: {len(due)} activities checked, {len(deliveries)} deliveries")
    finally:
        db.close()

    if deliveries:
        asyncio.run(dispatch_deliveries(deliveries))


if __name__ == "__main__":
    sweep()
