"""API v1 aggregated router.

All v1 endpoints are registered here and mounted under /api/v1 in main.py.
"""

from fastapi import APIRouter

from api.routes import appointment_triggers, enrollments, events, health, workflows

api_v1_router = APIRouter()

# Health
api_v1_router.include_router(
    health.router,
    tags=["Health"],
)

# Business events (trigger intake)
api_v1_router.include_router(
    events.router,
    prefix="/events",
    tags=["Events"],
)

# Workflows
api_v1_router.include_router(
    workflows.router,
    prefix="/workflows",
    tags=["Workflows"],
)

# Enrollments
api_v1_router.include_router(
    enrollments.router,
    prefix="/enrollments",
    tags=["Enrollments"],
)

# Appointment trigger audit trail
api_v1_router.include_router(
    appointment_triggers.router,
    prefix="/appointment-triggers",
    tags=["Appointment Triggers"],
)
