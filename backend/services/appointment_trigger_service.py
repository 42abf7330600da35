"""Appointment trigger service: the audit trail of routed appointment events."""

import logging
from typing import Optional, Sequence

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from core.constants import MS_PER_DAY
from core.exceptions import NotFoundError
from core.utils import now_ms
from db.models.appointment_trigger import AppointmentTrigger
from services.base import BaseService

logger = logging.getLogger(__name__)

UNCLASSIFIED = "unclassified"


class AppointmentTriggerService(BaseService[AppointmentTrigger]):
    """Read access to AppointmentTrigger rows. Rows are written only by the router."""

    def __init__(self, db: AsyncSession):
        super().__init__(AppointmentTrigger, db)

    async def get_by_appointment(
        self, organization_id: str, appointment_id: str
    ) -> Sequence[AppointmentTrigger]:
        """Every routed event of one appointment (scheduled, completed), oldest first.

        Raises:
            NotFoundError: the appointment was never routed
        """
        rows = await self.db.execute(
            select(AppointmentTrigger)
            .where(
                AppointmentTrigger.organization_id == organization_id,
                AppointmentTrigger.appointment_id == appointment_id,
            )
            .order_by(AppointmentTrigger.triggered_at.asc())
        )
        triggers = rows.scalars().all()
        if not triggers:
            raise NotFoundError(f"No routed events for appointment {appointment_id}")
        return triggers

    async def get_recent(
        self,
        organization_id: str,
        limit: int = 50,
        client_id: Optional[str] = None,
    ) -> tuple[Sequence[AppointmentTrigger], int]:
        return await self.list(
            organization_id=organization_id,
            limit=limit,
            order_by="triggered_at",
            filters={"client_id": client_id},
        )

    async def get_stats(
        self,
        organization_id: str,
        recent_days: int = 7,
        now: Optional[int] = None,
    ) -> dict:
        """Totals over the organization's routed appointment events.

        ``recent_triggers`` counts events routed in the last `recent_days`.
        """
        now = now if now is not None else now_ms()
        rows = await self.db.execute(
            select(
                AppointmentTrigger.appointment_type,
                AppointmentTrigger.enrollment_ids,
                AppointmentTrigger.triggered_at,
            ).where(AppointmentTrigger.organization_id == organization_id)
        )

        cutoff = now - recent_days * MS_PER_DAY
        stats = {
            "total_triggers": 0,
            "triggers_by_type": {},
            "total_enrollments": 0,
            "recent_triggers": 0,
        }
        for appointment_type, enrollment_ids, triggered_at in rows.all():
            key = appointment_type or UNCLASSIFIED
            stats["total_triggers"] += 1
            stats["triggers_by_type"][key] = stats["triggers_by_type"].get(key, 0) + 1
            stats["total_enrollments"] += len(enrollment_ids or [])
            if triggered_at > cutoff:
                stats["recent_triggers"] += 1
        return stats
