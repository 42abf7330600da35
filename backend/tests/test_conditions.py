"""Tests for the condition evaluator."""

import pytest

from core.constants import MS_PER_DAY
from workflow.conditions import evaluate, to_epoch_ms
from workflow.facts import FactSheet

NOW = 1_700_000_000_000


def facts(**values) -> FactSheet:
    return FactSheet(values)


def cond(field, operator, value=None) -> dict:
    return {"field": field, "operator": operator, "value": value}


@pytest.mark.unit
class TestBasics:
    def test_empty_conditions_match(self):
        assert evaluate([], facts()) is True
        assert evaluate(None, facts()) is True

    def test_clauses_are_anded(self):
        sheet = facts(appointment_type="Botox", client_status="active")
        both = [cond("appointment_type", "equals", "botox"), cond("client_status", "equals", "active")]
        one_off = [cond("appointment_type", "equals", "botox"), cond("client_status", "equals", "lead")]
        assert evaluate(both, sheet, NOW) is True
        assert evaluate(one_off, sheet, NOW) is False

    def test_unknown_operator_is_false(self):
        assert evaluate([cond("x", "resembles", "y")], facts(x="y"), NOW) is False

    def test_malformed_clause_is_false(self):
        assert evaluate([{"field": "x"}], facts(x="y"), NOW) is False
        assert evaluate(["not-a-clause"], facts(x="y"), NOW) is False

    def test_missing_field_is_false(self):
        assert evaluate([cond("loyalty_points", "greater_than", "1")], facts(), NOW) is False
        assert evaluate([cond("loyalty_points", "not_equals", "1")], facts(), NOW) is False

    def test_camel_case_field_names(self):
        sheet = facts(appointmentType="Filler")
        assert evaluate([cond("appointment_type", "equals", "filler")], sheet, NOW) is True
        assert evaluate([cond("appointmentType", "equals", "FILLER")], sheet, NOW) is True


@pytest.mark.unit
class TestStringOperators:
    def test_equals_is_case_insensitive(self):
        assert evaluate([cond("appointment_type", "equals", "BOTOX")], facts(appointment_type="botox"), NOW)

    def test_not_equals(self):
        assert evaluate([cond("appointment_type", "not_equals", "filler")], facts(appointment_type="botox"), NOW)

    def test_contains(self):
        sheet = facts(appointment_type="Botox Touch-up")
        assert evaluate([cond("appointment_type", "contains", "touch")], sheet, NOW)
        assert not evaluate([cond("appointment_type", "contains", "filler")], sheet, NOW)

    def test_equals_numeric_strings(self):
        assert evaluate([cond("visits", "equals", "3")], facts(visits=3.0), NOW)


@pytest.mark.unit
class TestNumericOperators:
    @pytest.mark.parametrize("operator,value,expected", [
        ("greater_than", "4", True),
        ("greater_than", "5", False),
        ("less_than", "6", True),
        ("greater_than_or_equal", "5", True),
        ("less_than_or_equal", "4", False),
    ])
    def test_comparisons(self, operator, value, expected):
        assert evaluate([cond("visits", operator, value)], facts(visits=5), NOW) is expected

    def test_non_numeric_is_false(self):
        assert evaluate([cond("visits", "greater_than", "many")], facts(visits=5), NOW) is False


@pytest.mark.unit
class TestEmptiness:
    def test_is_empty_on_missing_field(self):
        assert evaluate([cond("email", "is_empty")], facts(), NOW) is True

    def test_is_empty_on_blank(self):
        assert evaluate([cond("email", "is_empty")], facts(email="  "), NOW) is True
        assert evaluate([cond("email", "is_empty")], facts(email="a@b.c"), NOW) is False

    def test_is_not_empty(self):
        assert evaluate([cond("email", "is_not_empty")], facts(email="a@b.c"), NOW) is True
        assert evaluate([cond("email", "is_not_empty")], facts(), NOW) is False


@pytest.mark.unit
class TestTags:
    def test_has_tag(self):
        sheet = facts(tags=["VIP", "botox"])
        assert evaluate([cond("tags", "has_tag", "vip")], sheet, NOW)
        assert not evaluate([cond("tags", "has_tag", "filler")], sheet, NOW)

    def test_not_has_tag_with_no_tags(self):
        assert evaluate([cond("tags", "not_has_tag", "vip")], facts(), NOW) is True

    def test_comma_separated_tags(self):
        assert evaluate([cond("tags", "has_tag", "lead")], facts(tags="vip, lead"), NOW)


@pytest.mark.unit
class TestDates:
    def test_date_before_and_after(self):
        sheet = facts(last_visit="2023-01-15T10:00:00Z")
        assert evaluate([cond("last_visit", "date_before", "2023-02-01")], sheet, NOW)
        assert evaluate([cond("last_visit", "date_after", "2023-01-01")], sheet, NOW)
        assert not evaluate([cond("last_visit", "date_after", "2023-02-01")], sheet, NOW)

    def test_days_ago_bare_value_means_at_least(self):
        sheet = facts(last_visit=NOW - 40 * MS_PER_DAY)
        assert evaluate([cond("last_visit", "days_ago", "30")], sheet, NOW)
        assert not evaluate([cond("last_visit", "days_ago", "60")], sheet, NOW)

    def test_days_ago_with_prefix(self):
        sheet = facts(last_visit=NOW - 3 * MS_PER_DAY)
        assert evaluate([cond("last_visit", "days_ago", "<=7")], sheet, NOW)
        assert not evaluate([cond("last_visit", "days_ago", ">7")], sheet, NOW)
        assert evaluate([cond("last_visit", "days_ago", "=3")], sheet, NOW)

    def test_unparseable_date_is_false(self):
        assert not evaluate([cond("last_visit", "date_before", "someday")], facts(last_visit="yesterday"), NOW)

    def test_to_epoch_ms(self):
        assert to_epoch_ms(1234) == 1234
        assert to_epoch_ms("1970-01-02") == MS_PER_DAY
        assert to_epoch_ms("1970-01-01T00:00:01Z") == 1000
        assert to_epoch_ms("") is None
        assert to_epoch_ms(True) is None
