import pytest

from crm_automation.services.condition_evaluator import (
    evaluate_condition,
    evaluate_conditions,
    resolve_path,
)


def _cond(field: str, operator: str, value=None, logical_operator: str = "AND") -> dict:
    return {"field": field, "operator": operator, "value": value, "logical_operator": logical_operator}


SNAPSHOT = {
    "deal": {
        "title": "Acme renewal",
        "value": 25000,
        "currency": "USD",
        "tags": ["vip", "renewal"],
        "notes": "",
        "owner": {"_id": "user-7", "email": "owner@example.com"},
        "lines": [{"sku": "A-1"}, {"sku": "B-2"}],
    },
    "entity_type": "deal",
}


def test_resolve_path_walks_dicts_and_list_indexes():
    assert resolve_path(SNAPSHOT, "deal.owner.email") == "owner@example.com"
    assert resolve_path(SNAPSHOT, "deal.lines.1.sku") == "B-2"
    assert resolve_path(SNAPSHOT, "deal.lines.9.sku") is None
    assert resolve_path(SNAPSHOT, "deal.lines.first") is None
    assert resolve_path(SNAPSHOT, "deal.title.length") is None
    assert resolve_path(SNAPSHOT, "") is None


@pytest.mark.parametrize(
    ("condition", "expected"),
    [
        (_cond("deal.currency", "equals", "USD"), True),
        (_cond("deal.currency", "not_equals", "USD"), False),
        (_cond("deal.value", "greater_than", 10000), True),
        (_cond("deal.value", "greater_than", "10000"), True),
        (_cond("deal.value", "less_than", 25000), False),
        (_cond("deal.value", "greater_or_equal", 25000), True),
        (_cond("deal.value", "less_or_equal", 24999.5), False),
        (_cond("deal.title", "contains", "renew"), True),
        (_cond("deal.tags", "contains", "vip"), True),
        (_cond("deal.tags", "not_contains", "churn"), True),
        (_cond("deal.title", "starts_with", "Acme"), True),
        (_cond("deal.title", "ends_with", "Acme"), False),
        (_cond("deal.notes", "is_empty"), True),
        (_cond("deal.missing", "is_empty"), True),
        (_cond("deal.tags", "is_not_empty"), True),
        (_cond("deal.currency", "in_list", ["EUR", "USD"]), True),
        (_cond("deal.currency", "not_in_list", ["EUR", "USD"]), False),
    ],
)
def test_operators(condition, expected):
    assert evaluate_condition(condition, SNAPSHOT) is expected


def test_numeric_operators_are_false_for_non_numeric_operands():
    assert evaluate_condition(_cond("deal.title", "greater_than", 5), SNAPSHOT) is False
    assert evaluate_condition(_cond("deal.value", "less_than", "lots"), SNAPSHOT) is False
    assert evaluate_condition(_cond("deal.missing", "less_than", 5), SNAPSHOT) is False


def test_list_operators_require_a_list_value():
    assert evaluate_condition(_cond("deal.currency", "in_list", "USD"), SNAPSHOT) is False
    assert evaluate_condition(_cond("deal.currency", "not_in_list", "EUR"), SNAPSHOT) is False


def test_unknown_operator_is_false():
    assert evaluate_condition(_cond("deal.currency", "matches_regex", "U.D"), SNAPSHOT) is False


def test_empty_condition_list_matches():
    assert evaluate_conditions([], SNAPSHOT) is True
    assert evaluate_conditions(None, SNAPSHOT) is True


def test_conditions_fold_left_without_precedence():
    true_cond = _cond("deal.currency", "equals", "USD")
    false_cond = _cond("deal.currency", "equals", "EUR")

    # (false AND true) OR true -> true
    conditions = [
        {**false_cond, "logical_operator": "AND"},
        {**true_cond, "logical_operator": "OR"},
        true_cond,
    ]
    assert evaluate_conditions(conditions, SNAPSHOT) is True

    # (true OR false) AND false -> false
    conditions = [
        {**true_cond, "logical_operator": "OR"},
        {**false_cond, "logical_operator": "AND"},
        false_cond,
    ]
    assert evaluate_conditions(conditions, SNAPSHOT) is False


def test_last_condition_logical_operator_is_ignored():
    conditions = [_cond("deal.currency", "equals", "USD", logical_operator="OR")]
    assert evaluate_conditions(conditions, SNAPSHOT) is True
