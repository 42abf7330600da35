"""Workflow definition types.

Workflow conditions and actions are stored as JSON on the Workflow row
and parsed here into typed models. Actions form a tagged union on
``type``, one model per step kind, so the step executor can dispatch on
the concrete class instead of probing free-form config dicts.

Stored action shape:
{
    "id": "step_2",                 # optional, defaults to "step_{order}"
    "type": "send_sms",
    "order": 2,
    "config": { "message": "Hi {{first_name}}!" },
    "post_delay": { "value": 2, "unit": "hours" },   # optional
    "retry": { "policy": "fixed", "max_attempts": 3, "base_delay": 300 }   # optional
}

Parsing is lenient: an action whose config fails validation becomes an
``InvalidAction`` that the executor logs as skipped, so one bad step
never blocks the rest of the workflow. ``validate_definition`` is the
strict variant used when a workflow is saved.
"""

import logging
from typing import Annotated, Any, Iterator, Literal, Optional, Union

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    TypeAdapter,
    ValidationError as PydanticValidationError,
    field_validator,
    model_validator,
)

from core.constants import DELAY_UNIT_MS, ConditionOperator, DelayUnit
from core.exceptions import DefinitionError
from workflow.facts import normalize_key

logger = logging.getLogger(__name__)


# ─── Durations ────────────────────────────────────────────────

class Duration(BaseModel):
    """A delay length. Unknown units fall back to days; a month is 30 days."""

    model_config = ConfigDict(extra="ignore")

    value: float = Field(
        default=0,
        ge=0,
        validation_alias=AliasChoices("value", "delay", "amount", "duration"),
    )
    unit: str = DelayUnit.DAYS.value

    @model_validator(mode="before")
    @classmethod
    def _shorthand(cls, data: Any) -> Any:
        # 3 -> 3 days, {"minutes": 1440} -> 1440 minutes
        if isinstance(data, (int, float)) and not isinstance(data, bool):
            return {"value": data, "unit": DelayUnit.DAYS.value}
        if isinstance(data, dict) and not any(
            k in data for k in ("value", "delay", "amount", "duration")
        ):
            for unit in DELAY_UNIT_MS:
                if unit in data:
                    return {"value": data[unit], "unit": unit}
        return data

    @field_validator("unit", mode="before")
    @classmethod
    def _known_unit(cls, value: Any) -> str:
        unit = str(value or "").strip().lower()
        if unit in DELAY_UNIT_MS:
            return unit
        if f"{unit}s" in DELAY_UNIT_MS:
            return f"{unit}s"
        return DelayUnit.DAYS.value

    def to_ms(self) -> int:
        return int(self.value * DELAY_UNIT_MS[self.unit])


# ─── Conditions ───────────────────────────────────────────────

class Condition(BaseModel):
    """One (field, operator, value) clause. The value is kept as a string."""

    model_config = ConfigDict(extra="ignore")

    field: str = ""
    operator: str
    value: Optional[str] = None

    @field_validator("operator", mode="before")
    @classmethod
    def _normalize_operator(cls, value: Any) -> Any:
        return normalize_key(value) if isinstance(value, str) else value

    @field_validator("value", mode="before")
    @classmethod
    def _stringify(cls, value: Any) -> Optional[str]:
        if value is None:
            return None
        if isinstance(value, bool):
            return "true" if value else "false"
        if isinstance(value, (list, tuple)):
            return ",".join(str(v) for v in value)
        return str(value)

    @property
    def is_known_operator(self) -> bool:
        return self.operator in ConditionOperator._value2member_map_


# ─── Action configs ───────────────────────────────────────────

class SendSmsConfig(BaseModel):
    model_config = ConfigDict(extra="ignore")

    message: str = Field(
        min_length=1,
        validation_alias=AliasChoices("message", "body", "content", "text"),
    )


class SendEmailConfig(BaseModel):
    model_config = ConfigDict(extra="ignore")

    subject: str = ""
    body: str = Field(
        min_length=1,
        validation_alias=AliasChoices("body", "message", "content", "html"),
    )


class TagConfig(BaseModel):
    model_config = ConfigDict(extra="ignore")

    tag: str = Field(min_length=1, validation_alias=AliasChoices("tag", "tag_name", "tagName", "name"))


class RemoveTagConfig(BaseModel):
    model_config = ConfigDict(extra="ignore")

    tag: Optional[str] = Field(default=None, validation_alias=AliasChoices("tag", "tag_name", "tagName", "name"))
    remove_all: bool = Field(default=False, validation_alias=AliasChoices("remove_all", "removeAll"))

    @model_validator(mode="after")
    def _tag_or_all(self) -> "RemoveTagConfig":
        if not self.remove_all and not self.tag:
            raise ValueError("remove_tag needs a tag or remove_all=true")
        return self


class ConditionalConfig(BaseModel):
    """Branch on fresh client facts.

    A missing ``on_true`` continues with the next action by order; a
    missing ``on_false`` ends the enrollment.
    """

    model_config = ConfigDict(extra="ignore")

    conditions: list[Condition] = Field(default_factory=list)
    on_true: Optional[str] = Field(default=None, validation_alias=AliasChoices("on_true", "onTrue", "true_step"))
    on_false: Optional[str] = Field(default=None, validation_alias=AliasChoices("on_false", "onFalse", "false_step"))


class CreateAppointmentConfig(BaseModel):
    model_config = ConfigDict(extra="ignore")

    appointment_type: str = Field(
        min_length=1,
        validation_alias=AliasChoices("appointment_type", "appointmentType", "type"),
    )
    offset: Duration = Field(default_factory=Duration)
    duration_minutes: int = Field(default=30, gt=0, validation_alias=AliasChoices("duration_minutes", "durationMinutes"))
    title: Optional[str] = None
    notes: Optional[str] = None


class AddNoteConfig(BaseModel):
    model_config = ConfigDict(extra="ignore")

    content: str = Field(min_length=1, validation_alias=AliasChoices("content", "note", "text"))


# ─── Actions ──────────────────────────────────────────────────

_BASE_KEYS = {"id", "type", "order", "name", "post_delay", "postDelay", "retry", "config"}


class ActionBase(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    order: int
    name: Optional[str] = None
    post_delay: Optional[Duration] = Field(default=None, validation_alias=AliasChoices("post_delay", "postDelay"))
    retry: Optional[dict] = None

    @model_validator(mode="before")
    @classmethod
    def _fill_defaults(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        data = dict(data)
        if not data.get("id") and data.get("order") is not None:
            data["id"] = f"step_{data['order']}"
        if "config" not in data:
            # Flat form: {"type": "delay", "order": 1, "value": 1440, "unit": "minutes"}
            data["config"] = {k: v for k, v in data.items() if k not in _BASE_KEYS}
        return data


class SendSmsAction(ActionBase):
    type: Literal["send_sms"]
    config: SendSmsConfig


class SendEmailAction(ActionBase):
    type: Literal["send_email"]
    config: SendEmailConfig


class DelayAction(ActionBase):
    type: Literal["delay"]
    config: Duration


class TagAction(ActionBase):
    type: Literal["tag"]
    config: TagConfig


class RemoveTagAction(ActionBase):
    type: Literal["remove_tag"]
    config: RemoveTagConfig


class ConditionalAction(ActionBase):
    type: Literal["conditional"]
    config: ConditionalConfig


class CreateAppointmentAction(ActionBase):
    type: Literal["create_appointment"]
    config: CreateAppointmentConfig


class AddNoteAction(ActionBase):
    type: Literal["add_note"]
    config: AddNoteConfig


Action = Annotated[
    Union[
        SendSmsAction,
        SendEmailAction,
        DelayAction,
        TagAction,
        RemoveTagAction,
        ConditionalAction,
        CreateAppointmentAction,
        AddNoteAction,
    ],
    Field(discriminator="type"),
]

_ACTION_ADAPTER: TypeAdapter = TypeAdapter(Action)


class InvalidAction(BaseModel):
    """Placeholder for a stored action that failed validation."""

    id: str
    order: int
    type: str = "unknown"
    error: str
    post_delay: Optional[Duration] = None
    retry: Optional[dict] = None


# ─── Parsing ──────────────────────────────────────────────────

def _coerce_order(value: Any, fallback: int) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return fallback


def parse_action(raw: Any, position: int = 0):
    """Parse one stored action into its typed model or an InvalidAction."""
    try:
        return _ACTION_ADAPTER.validate_python(raw)
    except PydanticValidationError as exc:
        data = raw if isinstance(raw, dict) else {}
        order = _coerce_order(data.get("order"), position)
        action_id = str(data.get("id") or f"step_{order}")
        error = "; ".join(
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in exc.errors()
        )
        logger.warning(
            "Invalid action %s (type=%s): %s", action_id, data.get("type"), error
        )
        return InvalidAction(
            id=action_id,
            order=order,
            type=str(data.get("type") or "unknown"),
            error=error,
        )


def parse_condition(raw: Any) -> Optional[Condition]:
    """Parse one stored condition. Malformed clauses return None."""
    if isinstance(raw, Condition):
        return raw
    try:
        return Condition.model_validate(raw)
    except PydanticValidationError as exc:
        logger.warning("Invalid condition %r: %s", raw, exc.errors())
        return None


class WorkflowPlan:
    """Actions of one workflow, sorted by ``order``, with step navigation."""

    def __init__(self, actions: list):
        self.actions = sorted(actions, key=lambda a: a.order)
        self._positions = {a.id: i for i, a in enumerate(self.actions)}

    @classmethod
    def from_definition(cls, raw_actions: Optional[list]) -> "WorkflowPlan":
        return cls([parse_action(raw, i) for i, raw in enumerate(raw_actions or [])])

    @classmethod
    def from_workflow(cls, workflow) -> "WorkflowPlan":
        return cls.from_definition(workflow.actions)

    def __len__(self) -> int:
        return len(self.actions)

    def __iter__(self) -> Iterator:
        return iter(self.actions)

    def first(self):
        return self.actions[0] if self.actions else None

    def get(self, step_id: Optional[str]):
        if step_id is None:
            return None
        pos = self._positions.get(step_id)
        return self.actions[pos] if pos is not None else None

    def next_after(self, step_id: str):
        pos = self._positions.get(step_id)
        if pos is None or pos + 1 >= len(self.actions):
            return None
        return self.actions[pos + 1]


def validate_definition(raw_actions: Optional[list], raw_conditions: Optional[list]) -> None:
    """Strict check used when a workflow is saved.

    Raises:
        DefinitionError: listing every invalid action/condition and any
            duplicated action ``order`` or id.
    """
    problems: list[str] = []

    plan = WorkflowPlan.from_definition(raw_actions)
    for action in plan:
        if isinstance(action, InvalidAction):
            problems.append(f"action {action.id}: {action.error}")
        elif isinstance(action, ConditionalAction):
            for cond in action.config.conditions:
                if not cond.is_known_operator:
                    problems.append(f"action {action.id}: unknown operator '{cond.operator}'")
            for target in (action.config.on_true, action.config.on_false):
                if target is not None and plan.get(target) is None:
                    problems.append(f"action {action.id}: unknown successor step '{target}'")

    orders = [a.order for a in plan]
    if len(orders) != len(set(orders)):
        problems.append("action order values must be unique")
    ids = [a.id for a in plan]
    if len(ids) != len(set(ids)):
        problems.append("action ids must be unique")

    for i, raw in enumerate(raw_conditions or []):
        cond = parse_condition(raw)
        if cond is None:
            problems.append(f"condition {i}: malformed clause")
        elif not cond.is_known_operator:
            problems.append(f"condition {i}: unknown operator '{cond.operator}'")

    if problems:
        raise DefinitionError("Invalid workflow definition: " + "; ".join(problems))


