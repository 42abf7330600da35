"""Workflow rollup counters.

All updates are single atomic UPDATE statements computed from the
stored values, so concurrent workers never lose an increment.
"""

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from db.models.workflow import Workflow


class WorkflowRollups:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def enrollment_started(self, workflow_id: str) -> None:
        await self._update(workflow_id, total_runs=Workflow.total_runs + 1)

    async def enrollment_completed(self, workflow_id: str, duration_ms: int, now: int) -> None:
        # Running mean over completed enrollments
        await self._update(
            workflow_id,
            successful_runs=Workflow.successful_runs + 1,
            average_execution_time=(
                Workflow.average_execution_time * Workflow.successful_runs + duration_ms
            ) / (Workflow.successful_runs + 1),
            last_run=now,
        )

    async def enrollment_failed(self, workflow_id: str, now: int) -> None:
        await self._update(
            workflow_id,
            failed_runs=Workflow.failed_runs + 1,
            last_run=now,
        )

    async def _update(self, workflow_id: str, **values) -> None:
        await self.session.execute(
            update(Workflow)
            .where(Workflow.id == workflow_id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
