"""Dry run of a workflow against a FactSheet.

Nothing is sent or written: the preview evaluates the enrollment
conditions clause by clause and walks the action plan the way the
executor would for these facts, rendering message templates and
following conditional branches. ``offset_ms`` on each step is the time
since enrollment at which the step would run.
"""

from typing import Optional

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
    parse_condition,
)
from workflow.facts import FactSheet, render_template


def explain_conditions(conditions: Optional[list], facts: FactSheet, now: int) -> list[dict]:
    """One entry per stored clause with whether it holds for `facts`."""
    explained = []
    for raw in conditions or []:
        clause = parse_condition(raw)
        if clause is None:
            explained.append({"field": None, "operator": None, "value": None, "met": False})
            continue
        explained.append({
            "field": clause.field,
            "operator": clause.operator,
            "value": clause.value,
            "met": evaluate([clause], facts, now),
        })
    return explained


def preview_steps(plan: WorkflowPlan, facts: FactSheet, now: int) -> list[dict]:
    """The steps an enrollment with `facts` would run, in order."""
    steps: list[dict] = []
    visited: set[str] = set()
    offset = 0
    action = plan.first()

    while action is not None and action.id not in visited:
        visited.add(action.id)
        entry = {"step_id": action.id, "type": action.type, "order": action.order, "offset_ms": offset}
        steps.append(entry)
        following = plan.next_after(action.id)

        if isinstance(action, InvalidAction):
            entry["error"] = action.error
            break
        if isinstance(action, DelayAction):
            offset += action.config.to_ms()
        elif isinstance(action, SendSmsAction):
            entry["content"] = render_template(action.config.message, facts)
        elif isinstance(action, SendEmailAction):
            entry["subject"] = render_template(action.config.subject, facts)
            entry["content"] = render_template(action.config.body, facts)
        elif isinstance(action, (TagAction, RemoveTagAction)):
            entry["tag"] = action.config.tag
        elif isinstance(action, AddNoteAction):
            entry["content"] = render_template(action.config.content, facts)
        elif isinstance(action, CreateAppointmentAction):
            entry["appointment_type"] = action.config.appointment_type
            entry["start_offset_ms"] = action.config.offset.to_ms()
        elif isinstance(action, ConditionalAction):
            matched = evaluate(action.config.conditions, facts, now)
            target = action.config.on_true if matched else action.config.on_false
            entry.update(matched=matched, branch=target)
            if target is not None:
                following = plan.get(target)
                if following is None:
                    entry["error"] = f"Unknown successor step '{target}'"
            elif not matched:
                following = None

        if action.post_delay:
            offset += action.post_delay.to_ms()
        action = following

    return steps
