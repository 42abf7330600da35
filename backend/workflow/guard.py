"""Duplicate-enrollment guard.

Keeps a client from being re-enrolled in the same workflow every time
a matching event arrives inside the cooldown window (for example a
"leave us a review" workflow after every appointment).
"""

import logging
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from core.constants import DUPLICATE_BLOCKING_STATUSES, MS_PER_DAY
from core.utils import now_ms
from db.database import begin_immediate
from db.models.enrollment import Enrollment
from db.models.workflow import Workflow

logger = logging.getLogger(__name__)


class DuplicateEnrollmentGuard:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def can_enroll(
        self,
        organization_id: str,
        workflow_id: str,
        client_id: str,
        lookback_days: int,
        now: Optional[int] = None,
    ) -> bool:
        """Whether a new enrollment of `client_id` in `workflow_id` is permitted.

        Only the most recent enrollment of the pair is considered. It
        blocks when it started within `lookback_days` and is active,
        paused or completed; cancelled and failed enrollments never block.
        """
        now = now if now is not None else now_ms()
        latest = (
            await self.session.execute(
                select(Enrollment.id, Enrollment.status, Enrollment.enrolled_at)
                .where(
                    Enrollment.organization_id == organization_id,
                    Enrollment.workflow_id == workflow_id,
                    Enrollment.client_id == client_id,
                )
                .order_by(Enrollment.enrolled_at.desc())
                .limit(1)
            )
        ).first()

        if latest is None:
            return True

        cutoff = now - lookback_days * MS_PER_DAY
        if latest.enrolled_at >= cutoff and latest.status in DUPLICATE_BLOCKING_STATUSES:
            logger.info(
                "Client %s already enrolled in workflow %s (enrollment %s, %s)",
                client_id, workflow_id, latest.id, latest.status,
            )
            return False
        return True

    async def lock(self, workflow_id: str) -> None:
        """Hold the enrollment lock of `workflow_id` until the transaction ends.

        Guard checks and the inserts they allow run one at a time per
        workflow: SQLite takes the database write lock, other backends
        lock the workflow row.
        """
        await begin_immediate(self.session)
        await self.session.execute(
            select(Workflow.id).where(Workflow.id == workflow_id).with_for_update()
        )

    async def permits(self, workflow, client_id: str, now: Optional[int] = None) -> bool:
        """Apply the guard with the workflow's own settings.

        Takes the workflow's enrollment lock first, so the answer holds
        until the caller commits.
        """
        if not workflow.prevent_duplicates:
            return True
        await self.lock(workflow.id)
        return await self.can_enroll(
            workflow.organization_id,
            workflow.id,
            client_id,
            workflow.duplicate_prevention_days,
            now,
        )
