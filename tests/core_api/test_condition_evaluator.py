import pytest

from triage_cli.core_api import condition_evaluator
from triage_cli.core_api.exceptions import RuleValidationError
from triage_cli.features.rule_management.models import ConditionGroupModel, ConditionModel


def cond(field, operator, value=None, **kwargs):
    return ConditionModel(field=field, operator=operator, value=value, **kwargs)


@pytest.mark.parametrize(
    "condition,expected",
    [
        (cond("from", "contains", "ALICE@example.com"), True),
        (cond("from", "contains", "ALICE@example.com", case_sensitive=True), False),
        (cond("subject", "equals", "hello"), True),
        (cond("subject", "starts_with", "He"), True),
        (cond("subject", "ends_with", "lo"), True),
        (cond("subject", "matches_regex", r"^h\w+o$"), True),
        (cond("sender_domain", "equals", "example.com"), True),
        (cond("to", "contains", "me@"), True),
        (cond("body_snippet", "contains", "saying"), True),
        (cond("has_label", "equals", "inbox"), True),
        (cond("has_label", "equals", "Work"), False),
        (cond("is_read", "equals", "false"), True),
        (cond("has_attachment", "equals", "true"), False),
        (cond("received_at", "after", "2024-04-30T00:00:00Z"), True),
        (cond("received_at", "before", "2024-04-30T00:00:00Z"), False),
        (cond("subject", "exists"), True),
        (cond("subject", "not_equals", "hello"), False),
        (cond("subject", "not_equals", "Goodbye"), True),
        (cond("subject", "not_contains", "ELL"), False),
        (cond("subject", "not_contains", "ELL", case_sensitive=True), True),
        (cond("has_label", "not_equals", "inbox"), False),
        (cond("has_label", "not_contains", "work"), True),
    ],
)
def test_leaf_operators(make_email, condition, expected):
    assert condition_evaluator.evaluate(condition, make_email()) is expected


def test_missing_values_do_not_match(make_email):
    email = make_email(subject=None, labels=[], received_at=None)
    assert condition_evaluator.evaluate(cond("subject", "contains", "x"), email) is False
    assert condition_evaluator.evaluate(cond("subject", "exists"), email) is False
    assert condition_evaluator.evaluate(cond("has_label", "exists"), email) is False
    assert condition_evaluator.evaluate(cond("received_at", "after", "2020-01-01"), email) is False
    # A missing field never matches; an empty label list has no label equal to "Work"
    assert condition_evaluator.evaluate(cond("subject", "not_contains", "x"), email) is False
    assert condition_evaluator.evaluate(cond("has_label", "not_equals", "Work"), email) is True


def test_groups_combine_children(make_email):
    email = make_email()
    yes = cond("subject", "contains", "hello")
    no = cond("subject", "contains", "invoice")
    assert condition_evaluator.evaluate(ConditionGroupModel(op="AND", conditions=[yes, no]), email) is False
    assert condition_evaluator.evaluate(ConditionGroupModel(op="OR", conditions=[no, yes]), email) is True
    assert condition_evaluator.evaluate(ConditionGroupModel(op="NOT", conditions=[no]), email) is True


def test_and_short_circuits(make_email):
    broken = ConditionModel.model_construct(field="priority_score", operator="equals", value="1")
    tree = ConditionGroupModel.model_construct(op="AND", conditions=[cond("subject", "contains", "nope"), broken])
    assert condition_evaluator.evaluate(tree, make_email()) is False


def test_unknown_field_is_a_configuration_error(make_email):
    broken = ConditionModel.model_construct(field="priority_score", operator="equals", value="1", case_sensitive=False)
    with pytest.raises(RuleValidationError):
        condition_evaluator.evaluate(broken, make_email())


def test_evaluate_does_not_mutate_email(make_email):
    email = make_email()
    before = email.model_dump()
    condition_evaluator.evaluate(cond("has_label", "contains", "box"), email)
    assert email.model_dump() == before


def test_explain_reports_every_leaf(make_email):
    tree = ConditionGroupModel(
        op="AND", conditions=[cond("subject", "contains", "nope"), cond("from", "contains", "alice")]
    )
    results = condition_evaluator.explain(tree, make_email())
    assert [r["matched"] for r in results] == [False, True]
    assert "does not match" in results[0]["reason"]


def test_describe_renders_tree():
    tree = ConditionGroupModel(
        op="AND",
        conditions=[
            cond("from", "contains", "news"),
            ConditionGroupModel(op="NOT", conditions=[cond("has_label", "exists")]),
        ],
    )
    assert condition_evaluator.describe(tree) == '(from contains "news" AND NOT (has label exists))'
