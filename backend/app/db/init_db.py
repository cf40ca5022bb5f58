"""
Database initialization script.
"""
from app.db.session import init_db

# Import all models so SQLAlchemy can register them
from app.models import (  # noqa: F401
    Person, Group, GroupMember, Activity, Membership, Obligation,
    ReconciliationRecord, NotificationPreference, NotificationLog
)

if __name__ == "__main__":
    print("Initializing database...")
    init_db()
    print("Database initialized successfully!")
