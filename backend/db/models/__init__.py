"""Database models for the clinic workflow engine.

This module imports all models to ensure they are registered
with SQLAlchemy's declarative base.
"""

from db.models.workflow import Workflow
from db.models.enrollment import Enrollment
from db.models.execution_log import ExecutionLog
from db.models.appointment_trigger import AppointmentTrigger

__all__ = [
    "Workflow",
    "Enrollment",
    "ExecutionLog",
    "AppointmentTrigger",
]
