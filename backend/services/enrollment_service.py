"""Enrollment service: operator actions and execution history."""

import logging
from typing import Optional, Sequence

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from db.models.enrollment import Enrollment
from db.models.execution_log import ExecutionLog
from services.base import BaseService
from workflow.state_machine import EnrollmentStateMachine

logger = logging.getLogger(__name__)


class EnrollmentService(BaseService[Enrollment]):
    """Pause / resume / cancel enrollments and read their logs."""

    def __init__(self, db: AsyncSession):
        super().__init__(Enrollment, db)
        self.machine = EnrollmentStateMachine(db)

    async def pause(self, enrollment_id: str, organization_id: str) -> Enrollment:
        return await self.machine.pause(enrollment_id, organization_id)

    async def resume(self, enrollment_id: str, organization_id: str) -> Enrollment:
        return await self.machine.resume(enrollment_id, organization_id)

    async def cancel(self, enrollment_id: str, organization_id: str) -> Enrollment:
        return await self.machine.cancel(enrollment_id, organization_id)

    async def list_enrollments(
        self,
        organization_id: str,
        workflow_id: Optional[str] = None,
        client_id: Optional[str] = None,
        status: Optional[str] = None,
        offset: int = 0,
        limit: int = 50,
    ) -> tuple[Sequence[Enrollment], int]:
        return await self.list(
            organization_id=organization_id,
            offset=offset,
            limit=limit,
            order_by="enrolled_at",
            filters={"workflow_id": workflow_id, "client_id": client_id, "status": status},
        )

    async def get_logs(
        self,
        enrollment_id: str,
        organization_id: str,
        offset: int = 0,
        limit: int = 100,
    ) -> tuple[Sequence[ExecutionLog], int]:
        """Execution history of one enrollment, oldest first."""
        enrollment = await self.get_or_404(enrollment_id, organization_id)
        rows = await self.db.execute(
            select(ExecutionLog)
            .where(ExecutionLog.enrollment_id == enrollment.id)
            .order_by(ExecutionLog.executed_at.asc(), ExecutionLog.created_at.asc())
            .offset(offset)
            .limit(limit)
        )
        total = await self.db.execute(
            select(func.count())
            .select_from(ExecutionLog)
            .where(ExecutionLog.enrollment_id == enrollment.id)
        )
        return rows.scalars().all(), total.scalar() or 0
