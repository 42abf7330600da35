"""Constants and enums for the clinic workflow engine."""

from enum import Enum


class WorkflowStatus(str, Enum):
    """Workflow lifecycle status. Only ACTIVE workflows enroll clients."""

    DRAFT = "draft"
    ACTIVE = "active"
    INACTIVE = "inactive"
    ARCHIVED = "archived"


class WorkflowTrigger(str, Enum):
    """Business event kind a workflow listens for."""

    NEW_CLIENT = "new_client"
    APPOINTMENT_COMPLETED = "appointment_completed"
    APPOINTMENT_SCHEDULED = "appointment_scheduled"
    MANUAL = "manual"

    # Service-specific triggers, derived from the appointment type
    MORPHEUS8 = "morpheus8"
    TOXINS = "toxins"
    FILLER = "filler"
    CONSULTATION = "consultation"


SERVICE_TRIGGERS = frozenset({
    WorkflowTrigger.MORPHEUS8.value,
    WorkflowTrigger.TOXINS.value,
    WorkflowTrigger.FILLER.value,
    WorkflowTrigger.CONSULTATION.value,
})


class EventKind(str, Enum):
    """Kinds of business events accepted by the trigger router."""

    NEW_CLIENT = "new_client"
    APPOINTMENT_COMPLETED = "appointment_completed"
    APPOINTMENT_SCHEDULED = "appointment_scheduled"
    MANUAL = "manual"


class EnrollmentStatus(str, Enum):
    """Lifecycle of one client's participation in one workflow."""

    ACTIVE = "active"
    PAUSED = "paused"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"


TERMINAL_ENROLLMENT_STATUSES = frozenset({
    EnrollmentStatus.COMPLETED.value,
    EnrollmentStatus.CANCELLED.value,
    EnrollmentStatus.FAILED.value,
})

# Statuses that block a new enrollment inside the duplicate-prevention window
DUPLICATE_BLOCKING_STATUSES = frozenset({
    EnrollmentStatus.ACTIVE.value,
    EnrollmentStatus.PAUSED.value,
    EnrollmentStatus.COMPLETED.value,
})


class StepLogStatus(str, Enum):
    """Outcome recorded for a single step attempt."""

    EXECUTED = "executed"
    FAILED = "failed"
    SKIPPED = "skipped"
    RETRYING = "retrying"


class ActionType(str, Enum):
    """Step types a workflow action can take."""

    SEND_SMS = "send_sms"
    SEND_EMAIL = "send_email"
    DELAY = "delay"
    TAG = "tag"
    REMOVE_TAG = "remove_tag"
    CONDITIONAL = "conditional"
    CREATE_APPOINTMENT = "create_appointment"
    ADD_NOTE = "add_note"


class ConditionOperator(str, Enum):
    """Comparison operators available to workflow conditions."""

    EQUALS = "equals"
    NOT_EQUALS = "not_equals"
    CONTAINS = "contains"
    GREATER_THAN = "greater_than"
    LESS_THAN = "less_than"
    GREATER_THAN_OR_EQUAL = "greater_than_or_equal"
    LESS_THAN_OR_EQUAL = "less_than_or_equal"
    IS_EMPTY = "is_empty"
    IS_NOT_EMPTY = "is_not_empty"
    DATE_BEFORE = "date_before"
    DATE_AFTER = "date_after"
    DAYS_AGO = "days_ago"
    HAS_TAG = "has_tag"
    NOT_HAS_TAG = "not_has_tag"


class DelayUnit(str, Enum):
    """Units accepted by delay durations."""

    SECONDS = "seconds"
    MINUTES = "minutes"
    HOURS = "hours"
    DAYS = "days"
    WEEKS = "weeks"
    MONTHS = "months"


class MessageKind(str, Enum):
    """Transport used by the messaging capability."""

    SMS = "sms"
    EMAIL = "email"


# ─── Time ─────────────────────────────────────────────────────

MS_PER_SECOND = 1000
MS_PER_MINUTE = 60 * MS_PER_SECOND
MS_PER_HOUR = 60 * MS_PER_MINUTE
MS_PER_DAY = 24 * MS_PER_HOUR

DELAY_UNIT_MS = {
    DelayUnit.SECONDS.value: MS_PER_SECOND,
    DelayUnit.MINUTES.value: MS_PER_MINUTE,
    DelayUnit.HOURS.value: MS_PER_HOUR,
    DelayUnit.DAYS.value: MS_PER_DAY,
    DelayUnit.WEEKS.value: 7 * MS_PER_DAY,
    DelayUnit.MONTHS.value: 30 * MS_PER_DAY,
}
