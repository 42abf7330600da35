"""Execution log writer: the append-only audit trail of step attempts."""

import logging
from dataclasses import dataclass, field
from typing import Any, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from core.constants import StepLogStatus
from core.exceptions import LogWriteError
from db.models.execution_log import ExecutionLog

logger = logging.getLogger(__name__)


@dataclass
class ExecutionLogEntry:
    """One step attempt, as handed to the writer."""
    organization_id: str
    workflow_id: str
    enrollment_id: str
    client_id: str
    step_id: Optional[str]
    action: str
    status: StepLogStatus
    executed_at: int
    duration_ms: int = 0
    attempt: int = 1
    message: Optional[str] = None
    error: Optional[str] = None
    metadata: dict[str, Any] = field(default_factory=dict)


class ExecutionLogWriter:
    """Insert log rows inside the caller's transaction.

    ``record`` flushes immediately so a failed write surfaces before the
    caller advances the enrollment; the row becomes durable with the
    caller's commit, together with the enrollment update it justifies.
    """

    def __init__(self, session: AsyncSession):
        self.session = session

    async def record(self, entry: ExecutionLogEntry) -> ExecutionLog:
        row = ExecutionLog(
            organization_id=entry.organization_id,
            workflow_id=entry.workflow_id,
            enrollment_id=entry.enrollment_id,
            client_id=entry.client_id,
            step_id=entry.step_id,
            action=entry.action,
            status=StepLogStatus(entry.status).value,
            executed_at=entry.executed_at,
            duration_ms=entry.duration_ms,
            attempt=entry.attempt,
            message=entry.message,
            error=entry.error,
            meta=entry.metadata or None,
        )
        self.session.add(row)
        try:
            await self.session.flush()
        except SQLAlchemyError as exc:
            logger.error(
                "Execution log write failed for enrollment %s step %s: %s",
                entry.enrollment_id, entry.step_id, exc,
            )
            raise LogWriteError(f"Could not record step {entry.step_id}: {exc}") from exc

        logger.debug(
            "Logged step %s (%s) for enrollment %s: %s",
            entry.step_id, entry.action, entry.enrollment_id, row.status,
        )
        return row
