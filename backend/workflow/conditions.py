"""Condition evaluator.

``evaluate(conditions, facts)`` is pure and total: it never raises.
A malformed clause or an unknown operator makes that clause non-matching
and is logged, so a bad workflow definition cannot stall routing.

Semantics:
- clauses are AND-ed; an empty list matches
- a field missing from the FactSheet makes its clause false, except
  ``is_empty`` which is true
- string comparisons are case-insensitive
- ``days_ago`` compares whole days elapsed since the field. A bare value
  means "at least N days ago"; a prefix picks the direction
  (``<=7``, ``>=30``, ``<3``, ``>1``, ``=0``)
- ``has_tag`` / ``not_has_tag`` always read the ``tags`` fact
"""

import logging
import operator as op
import re
from datetime import date, datetime, timezone
from typing import Any, Iterable, Optional, Union

from core.constants import MS_PER_DAY, ConditionOperator
from core.utils import now_ms
from workflow.definitions import Condition, parse_condition
from workflow.facts import FactSheet

logger = logging.getLogger(__name__)

_DAYS_AGO_PATTERN = re.compile(r"^\s*(<=|>=|<|>|=)?\s*(-?\d+(?:\.\d+)?)\s*$")

_COMPARATORS = {
    "<=": op.le,
    ">=": op.ge,
    "<": op.lt,
    ">": op.gt,
    "=": op.eq,
}


def evaluate(
    conditions: Optional[Iterable[Union[Condition, dict]]],
    facts: FactSheet,
    now: Optional[int] = None,
) -> bool:
    """Return True when every clause holds for `facts`.

    Args:
        conditions: Condition models or their stored dict form
        facts: Client/appointment snapshot
        now: Epoch ms used by relative-date operators (defaults to the clock)
    """
    current = now if now is not None else now_ms()
    for raw in conditions or []:
        clause = parse_condition(raw)
        if clause is None:
            return False
        try:
            if not _evaluate_clause(clause, facts, current):
                return False
        except Exception as exc:  # total by contract
            logger.warning(
                "Condition %s %s %r could not be evaluated: %s",
                clause.field, clause.operator, clause.value, exc,
            )
            return False
    return True


def _evaluate_clause(clause: Condition, facts: FactSheet, now: int) -> bool:
    name = clause.operator
    expected = clause.value

    if name == ConditionOperator.HAS_TAG.value:
        return expected is not None and expected.strip().lower() in facts.tags
    if name == ConditionOperator.NOT_HAS_TAG.value:
        return expected is not None and expected.strip().lower() not in facts.tags

    present, actual = facts.lookup(clause.field)

    if name == ConditionOperator.IS_EMPTY.value:
        return not present or _is_empty(actual)
    if name == ConditionOperator.IS_NOT_EMPTY.value:
        return present and not _is_empty(actual)

    if not present:
        return False

    if name == ConditionOperator.EQUALS.value:
        return _equals(actual, expected)
    if name == ConditionOperator.NOT_EQUALS.value:
        return not _equals(actual, expected)
    if name == ConditionOperator.CONTAINS.value:
        return _contains(actual, expected)

    if name == ConditionOperator.GREATER_THAN.value:
        return _compare_numbers(actual, expected, op.gt)
    if name == ConditionOperator.LESS_THAN.value:
        return _compare_numbers(actual, expected, op.lt)
    if name == ConditionOperator.GREATER_THAN_OR_EQUAL.value:
        return _compare_numbers(actual, expected, op.ge)
    if name == ConditionOperator.LESS_THAN_OR_EQUAL.value:
        return _compare_numbers(actual, expected, op.le)

    if name == ConditionOperator.DATE_BEFORE.value:
        return _compare_dates(actual, expected, op.lt)
    if name == ConditionOperator.DATE_AFTER.value:
        return _compare_dates(actual, expected, op.gt)
    if name == ConditionOperator.DAYS_AGO.value:
        return _days_ago(actual, expected, now)

    logger.warning("Unknown condition operator '%s' on field '%s'", name, clause.field)
    return False


# ─── Helpers ──────────────────────────────────────────────────

def _is_empty(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return value.strip() == ""
    if isinstance(value, (list, tuple, set, dict)):
        return len(value) == 0
    return False


def _to_number(value: Any) -> Optional[float]:
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float)):
        return float(value)
    try:
        return float(str(value).strip())
    except ValueError:
        return None


def _scalar_equals(actual: Any, expected: str) -> bool:
    a_num, e_num = _to_number(actual), _to_number(expected)
    if a_num is not None and e_num is not None:
        return a_num == e_num
    if isinstance(actual, bool):
        actual = "true" if actual else "false"
    return str(actual).strip().lower() == expected.strip().lower()


def _equals(actual: Any, expected: Optional[str]) -> bool:
    if expected is None:
        return _is_empty(actual)
    if isinstance(actual, (list, tuple, set)):
        return any(_scalar_equals(item, expected) for item in actual)
    return _scalar_equals(actual, expected)


def _contains(actual: Any, expected: Optional[str]) -> bool:
    if expected is None or actual is None:
        return False
    needle = expected.strip().lower()
    if isinstance(actual, (list, tuple, set)):
        return any(needle in str(item).lower() for item in actual)
    return needle in str(actual).lower()


def _compare_numbers(actual: Any, expected: Optional[str], cmp) -> bool:
    a_num, e_num = _to_number(actual), _to_number(expected)
    if a_num is None or e_num is None:
        return False
    return cmp(a_num, e_num)


def to_epoch_ms(value: Any) -> Optional[int]:
    """Epoch ms from an int/float (taken as ms), datetime, date or ISO string."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return int(value)
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return int(value.timestamp() * 1000)
    if isinstance(value, date):
        return int(datetime(value.year, value.month, value.day, tzinfo=timezone.utc).timestamp() * 1000)

    text = str(value).strip()
    if not text:
        return None
    if re.fullmatch(r"-?\d+", text):
        return int(text)
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        return to_epoch_ms(datetime.fromisoformat(text))
    except ValueError:
        pass
    try:
        return to_epoch_ms(date.fromisoformat(text))
    except ValueError:
        return None


def _compare_dates(actual: Any, expected: Optional[str], cmp) -> bool:
    a_ms, e_ms = to_epoch_ms(actual), to_epoch_ms(expected)
    if a_ms is None or e_ms is None:
        return False
    return cmp(a_ms, e_ms)


def _days_ago(actual: Any, expected: Optional[str], now: int) -> bool:
    when = to_epoch_ms(actual)
    match = _DAYS_AGO_PATTERN.match(expected or "")
    if when is None or match is None:
        return False
    comparator = _COMPARATORS[match.group(1) or ">="]
    elapsed_days = (now - when) // MS_PER_DAY
    return comparator(elapsed_days, float(match.group(2)))
