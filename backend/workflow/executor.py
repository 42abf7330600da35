"""Step executor: runs the current step of one enrollment.

``execute`` performs the step's effect through the capability
interfaces and returns a ``StepOutcome`` describing the log row to
write and the enrollment state that follows. It does not touch the
database; the dispatcher writes the log row first and applies the
outcome afterwards, so an enrollment never advances past a step whose
attempt is not on record.

Outcome rules:
- success: advance to the next action by order (or the branch target);
  due now, or after the action's post_delay; nothing left -> completed
- delay: advance, due after the delay; a trailing delay leaves a final
  no-op pass that completes the enrollment
- timeout / transient provider error: ``retrying`` and rescheduled while
  the retry strategy allows, otherwise ``failed``
- permanent provider error: ``failed``
- malformed action: ``skipped`` and advance

Anything else raised here is an engine error and is handled at the
dispatcher's worker boundary.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from core.constants import EnrollmentStatus, MessageKind, StepLogStatus
from core.exceptions import PermanentProviderError, ProviderError, TransientProviderError
from core.utils import now_ms
from integrations.capabilities import Capabilities
from workflow.conditions import evaluate
from workflow.definitions import (
    AddNoteAction,
    ConditionalAction,
    CreateAppointmentAction,
    DelayAction,
    InvalidAction,
    RemoveTagAction,
    SendEmailAction,
    SendSmsAction,
    TagAction,
    WorkflowPlan,
)
from workflow.facts import FactSheet, render_template
from workflow.log_writer import ExecutionLogEntry
from workflow.retry_strategies import RETRY_PRESETS, RetryStrategy

logger = logging.getLogger(__name__)

ACTIVE = EnrollmentStatus.ACTIVE.value
COMPLETED = EnrollmentStatus.COMPLETED.value
FAILED = EnrollmentStatus.FAILED.value


# ─── Step Outcome ─────────────────────────────────────────────

@dataclass
class StepOutcome:
    """What one executor invocation decided."""
    action: str
    step_id: Optional[str]
    log_status: Optional[StepLogStatus]
    status: str
    current_step: Optional[str]
    next_execution_at: Optional[int]
    attempt: int = 1
    attempt_count: int = 0
    duration_ms: int = 0
    message: Optional[str] = None
    error: Optional[str] = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def writes_log(self) -> bool:
        return self.log_status is not None

    @property
    def is_terminal(self) -> bool:
        return self.status in (COMPLETED, FAILED)

    def enrollment_values(self, now: int) -> dict:
        """Column values to apply to the enrollment."""
        values = {
            "status": self.status,
            "current_step": self.current_step,
            "next_execution_at": self.next_execution_at,
            "attempt_count": self.attempt_count,
        }
        if self.status == COMPLETED:
            values.update(completed_at=now, next_execution_at=None)
        elif self.status == FAILED:
            values.update(failed_at=now, next_execution_at=None)
        return values

    def log_entry(self, enrollment, now: int) -> ExecutionLogEntry:
        return ExecutionLogEntry(
            organization_id=enrollment.organization_id,
            workflow_id=enrollment.workflow_id,
            enrollment_id=enrollment.id,
            client_id=enrollment.client_id,
            step_id=self.step_id,
            action=self.action,
            status=self.log_status,
            executed_at=now,
            duration_ms=self.duration_ms,
            attempt=self.attempt,
            message=self.message,
            error=self.error,
            metadata=self.metadata,
        )


# ─── Step Executor ────────────────────────────────────────────

class StepExecutor:
    """Executes the pending step of an enrollment through the capabilities."""

    def __init__(
        self,
        capabilities: Capabilities,
        step_timeout: float = 30.0,
        retry_strategy: Optional[RetryStrategy] = None,
        clock: Callable[[], int] = now_ms,
    ):
        self.capabilities = capabilities
        self.step_timeout = step_timeout
        self.retry_strategy = retry_strategy or RetryStrategy.fixed()
        self.clock = clock

    async def execute(self, enrollment, workflow, now: Optional[int] = None) -> StepOutcome:
        """Run ``enrollment.current_step`` of `workflow`.

        Args:
            enrollment: Enrollment row (read only here)
            workflow: Workflow row the enrollment belongs to
            now: Epoch ms treated as the current time

        Returns:
            StepOutcome with the log row and next enrollment state
        """
        now = now if now is not None else self.clock()
        plan = WorkflowPlan.from_workflow(workflow)

        if enrollment.current_step is None:
            # Nothing left: zero-action workflows and trailing delays end here
            return StepOutcome(
                action="complete",
                step_id=None,
                log_status=None,
                status=COMPLETED,
                current_step=None,
                next_execution_at=None,
                message="No steps remaining",
            )

        action = plan.get(enrollment.current_step)
        if action is None:
            logger.warning(
                "Enrollment %s points at step %s which workflow %s no longer has",
                enrollment.id, enrollment.current_step, workflow.id,
            )
            return StepOutcome(
                action="unknown",
                step_id=enrollment.current_step,
                log_status=StepLogStatus.SKIPPED,
                status=COMPLETED,
                current_step=None,
                next_execution_at=None,
                error=f"Step '{enrollment.current_step}' not found in workflow",
                message="Step missing from workflow definition; enrollment ended",
            )

        attempt = (enrollment.attempt_count or 0) + 1
        started = time.monotonic()

        if isinstance(action, InvalidAction):
            outcome = self._advance(
                plan, action, now,
                log_status=StepLogStatus.SKIPPED,
                message="Invalid step configuration; skipped",
                error=action.error,
            )
        else:
            try:
                outcome = await self._run(action, plan, enrollment, now)
            except (asyncio.TimeoutError, TimeoutError, ProviderError) as exc:
                outcome = self._failure(action, attempt, exc, now)

        outcome.attempt = attempt
        outcome.duration_ms = int((time.monotonic() - started) * 1000)
        logger.info(
            "Step %s (%s) of enrollment %s -> %s",
            outcome.step_id, outcome.action, enrollment.id,
            outcome.log_status.value if outcome.log_status else "none",
        )
        return outcome

    # ─── Dispatch by action type ───────────────────────────

    async def _run(self, action, plan: WorkflowPlan, enrollment, now: int) -> StepOutcome:
        if isinstance(action, DelayAction):
            return self._advance(
                plan, action, now,
                delay_ms=action.config.to_ms(),
                message=f"Waiting {action.config.value:g} {action.config.unit}",
                metadata={"resume_at": now + action.config.to_ms()},
            )
        if isinstance(action, SendSmsAction):
            return await self._send_sms(action, plan, enrollment, now)
        if isinstance(action, SendEmailAction):
            return await self._send_email(action, plan, enrollment, now)
        if isinstance(action, TagAction):
            return await self._tag(action, plan, enrollment, now)
        if isinstance(action, RemoveTagAction):
            return await self._remove_tag(action, plan, enrollment, now)
        if isinstance(action, ConditionalAction):
            return await self._conditional(action, plan, enrollment, now)
        if isinstance(action, CreateAppointmentAction):
            return await self._create_appointment(action, plan, enrollment, now)
        if isinstance(action, AddNoteAction):
            return await self._add_note(action, plan, enrollment, now)
        raise TypeError(f"Unhandled action type: {type(action).__name__}")

    async def _send_sms(self, action: SendSmsAction, plan, enrollment, now) -> StepOutcome:
        facts = await self._facts(enrollment)
        phone = facts.get("phone")
        if not phone:
            raise PermanentProviderError("Client has no phone number")
        content = render_template(action.config.message, facts)
        result = await self._call(
            self.capabilities.messaging.send(
                MessageKind.SMS, str(phone), content,
                organization_id=enrollment.organization_id,
            )
        )
        self._raise_for_delivery(result)
        return self._advance(
            plan, action, now,
            message=f"SMS sent to {phone}",
            metadata={"content": content, "provider_message_id": result.provider_message_id},
        )

    async def _send_email(self, action: SendEmailAction, plan, enrollment, now) -> StepOutcome:
        facts = await self._facts(enrollment)
        email = facts.get("email")
        if not email:
            raise PermanentProviderError("Client has no email address")
        subject = render_template(action.config.subject, facts)
        body = render_template(action.config.body, facts)
        result = await self._call(
            self.capabilities.messaging.send(
                MessageKind.EMAIL, str(email), body,
                subject=subject,
                organization_id=enrollment.organization_id,
            )
        )
        self._raise_for_delivery(result)
        return self._advance(
            plan, action, now,
            message=f"Email sent to {email}",
            metadata={"subject": subject, "provider_message_id": result.provider_message_id},
        )

    async def _tag(self, action: TagAction, plan, enrollment, now) -> StepOutcome:
        await self._call(
            self.capabilities.clients.apply_tag(
                enrollment.organization_id, enrollment.client_id, action.config.tag
            )
        )
        return self._advance(
            plan, action, now,
            message=f"Tag '{action.config.tag}' applied",
            metadata={"tag": action.config.tag},
        )

    async def _remove_tag(self, action: RemoveTagAction, plan, enrollment, now) -> StepOutcome:
        await self._call(
            self.capabilities.clients.remove_tag(
                enrollment.organization_id,
                enrollment.client_id,
                tag=action.config.tag,
                remove_all=action.config.remove_all,
            )
        )
        message = "All tags removed" if action.config.remove_all else f"Tag '{action.config.tag}' removed"
        return self._advance(
            plan, action, now,
            message=message,
            metadata={"tag": action.config.tag, "remove_all": action.config.remove_all},
        )

    async def _conditional(self, action: ConditionalAction, plan, enrollment, now) -> StepOutcome:
        facts = await self._facts(enrollment)
        matched = evaluate(action.config.conditions, facts, now)
        target = action.config.on_true if matched else action.config.on_false
        metadata = {"matched": matched, "branch": target}

        if target is not None and plan.get(target) is None:
            return StepOutcome(
                action=action.type,
                step_id=action.id,
                log_status=StepLogStatus.SKIPPED,
                status=COMPLETED,
                current_step=None,
                next_execution_at=None,
                message="Branch target missing; enrollment ended",
                error=f"Unknown successor step '{target}'",
                metadata=metadata,
            )

        if matched:
            return self._advance(
                plan, action, now, target_id=target,
                message="Conditions matched", metadata=metadata,
            )
        return self._advance(
            plan, action, now, target_id=target, end=target is None,
            message="Conditions not matched", metadata=metadata,
        )

    async def _create_appointment(self, action: CreateAppointmentAction, plan, enrollment, now) -> StepOutcome:
        config = action.config
        start_at = now + config.offset.to_ms()
        created = await self._call(
            self.capabilities.appointments.create_appointment(
                enrollment.organization_id,
                enrollment.client_id,
                appointment_type=config.appointment_type,
                start_at=start_at,
                duration_minutes=config.duration_minutes,
                idempotency_key=f"{enrollment.id}:{action.id}",
                title=config.title,
                notes=config.notes,
            )
        )
        return self._advance(
            plan, action, now,
            message=f"{config.appointment_type} appointment created",
            metadata={"appointment_id": created.appointment_id, "start_at": created.start_at},
        )

    async def _add_note(self, action: AddNoteAction, plan, enrollment, now) -> StepOutcome:
        facts = await self._facts(enrollment)
        content = render_template(action.config.content, facts)
        await self._call(
            self.capabilities.clients.add_note(
                enrollment.organization_id, enrollment.client_id, content
            )
        )
        return self._advance(plan, action, now, message="Note added", metadata={"content": content})

    # ─── Helpers ───────────────────────────────────────────

    async def _call(self, coro):
        """Await a capability call under the per-step timeout."""
        return await asyncio.wait_for(coro, timeout=self.step_timeout)

    async def _facts(self, enrollment) -> FactSheet:
        snapshot = FactSheet((enrollment.meta or {}).get("facts") or {})
        fresh = await self._call(
            self.capabilities.clients.get_facts(enrollment.organization_id, enrollment.client_id)
        )
        return snapshot.merged(fresh)

    @staticmethod
    def _raise_for_delivery(result) -> None:
        if result.success:
            return
        error = result.error or "Message delivery failed"
        if result.retryable:
            raise TransientProviderError(error)
        raise PermanentProviderError(error)

    def _advance(
        self,
        plan: WorkflowPlan,
        action,
        now: int,
        *,
        target_id: Optional[str] = None,
        end: bool = False,
        delay_ms: int = 0,
        log_status: StepLogStatus = StepLogStatus.EXECUTED,
        message: Optional[str] = None,
        error: Optional[str] = None,
        metadata: Optional[dict] = None,
    ) -> StepOutcome:
        if end:
            following = None
        elif target_id is not None:
            following = plan.get(target_id)
        else:
            following = plan.next_after(action.id)

        wait_ms = delay_ms + (action.post_delay.to_ms() if action.post_delay else 0)

        if following is None and not delay_ms:
            status, current_step, next_execution_at = COMPLETED, None, None
        else:
            status = ACTIVE
            current_step = following.id if following else None
            next_execution_at = now + wait_ms

        return StepOutcome(
            action=action.type,
            step_id=action.id,
            log_status=log_status,
            status=status,
            current_step=current_step,
            next_execution_at=next_execution_at,
            attempt_count=0,
            message=message,
            error=error,
            metadata=metadata or {},
        )

    def _strategy_for(self, action) -> RetryStrategy:
        retry = getattr(action, "retry", None)
        if not retry:
            return self.retry_strategy
        preset = retry.get("preset")
        if preset:
            return RETRY_PRESETS.get(preset, self.retry_strategy)
        try:
            return RetryStrategy.from_dict(retry, default=self.retry_strategy)
        except (TypeError, ValueError) as exc:
            logger.warning("Invalid retry config on step %s: %s", action.id, exc)
            return self.retry_strategy

    def _failure(self, action, attempt: int, exc: Exception, now: int) -> StepOutcome:
        strategy = self._strategy_for(action)
        if isinstance(exc, (asyncio.TimeoutError, TimeoutError)):
            error = f"Step timed out after {self.step_timeout:g}s"
        else:
            error = str(exc) or type(exc).__name__

        if strategy.should_retry(attempt, exc):
            delay_ms = strategy.compute_delay_ms(attempt)
            return StepOutcome(
                action=action.type,
                step_id=action.id,
                log_status=StepLogStatus.RETRYING,
                status=ACTIVE,
                current_step=action.id,
                next_execution_at=now + delay_ms,
                attempt_count=attempt,
                message=f"Attempt {attempt}/{strategy.max_attempts} failed; retrying in {delay_ms // 1000}s",
                error=error,
            )

        return StepOutcome(
            action=action.type,
            step_id=action.id,
            log_status=StepLogStatus.FAILED,
            status=FAILED,
            current_step=action.id,
            next_execution_at=None,
            attempt_count=attempt,
            message=f"Step failed after {attempt} attempt(s)",
            error=error,
        )
