"""
Main API router that includes all route modules.
"""
from fastapi import APIRouter
from app.api.routes import (
    people, groups, activities, obligations, reconciliation, notifications
)

api_router = APIRouter()

# Include all route modules
api_router.include_router(people.router)
api_router.include_router(groups.router)
api_router.include_router(activities.router)
api_router.include_router(obligations.router)
api_router.include_router(reconciliation.router)
api_router.include_router(notifications.router)
