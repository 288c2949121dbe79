import pytest
from pydantic import ValidationError

from triage_cli.features.rule_management.models import (
    ACTION_ADAPTER,
    AsyncActionModel,
    BatchItemModel,
    ConditionGroupModel,
    ConditionModel,
    ForwardAction,
    RuleModel,
)


def _rule(**overrides):
    data = {
        "owner_id": "owner-1",
        "name": "Test Rule",
        "conditions": [{"field": "from", "operator": "contains", "value": "news@example.com"}],
        "actions": [{"type": "archive"}],
    }
    data.update(overrides)
    return RuleModel(**data)


def test_flat_condition_list_is_folded_into_group():
    rule = _rule(
        conditions=[
            {"field": "from", "operator": "contains", "value": "a"},
            {"field": "subject", "operator": "contains", "value": "b"},
        ],
        condition_conjunction="OR",
    )
    assert isinstance(rule.conditions, ConditionGroupModel)
    assert rule.conditions.op == "OR"
    assert len(rule.conditions.conditions) == 2


def test_nested_condition_tree_is_accepted():
    rule = _rule(
        conditions={
            "op": "AND",
            "conditions": [
                {"field": "sender_domain", "operator": "equals", "value": "example.com"},
                {"op": "NOT", "conditions": [{"field": "is_read", "operator": "equals", "value": True}]},
            ],
        }
    )
    inner = rule.conditions.conditions[1]
    assert inner.op == "NOT"
    assert inner.conditions[0].value == "true"


def test_not_group_requires_exactly_one_child():
    with pytest.raises(ValidationError):
        ConditionGroupModel(
            op="NOT",
            conditions=[
                {"field": "from", "operator": "contains", "value": "a"},
                {"field": "from", "operator": "contains", "value": "b"},
            ],
        )


@pytest.mark.parametrize(
    "condition",
    [
        {"field": "is_read", "operator": "contains", "value": "true"},
        {"field": "received_at", "operator": "equals", "value": "2024-01-01"},
        {"field": "subject", "operator": "contains", "value": ""},
        {"field": "subject", "operator": "matches_regex", "value": "([unclosed"},
        {"field": "received_at", "operator": "before", "value": "yesterday"},
        {"field": "has_attachment", "operator": "equals", "value": "maybe"},
        {"field": "unknown_field", "operator": "equals", "value": "x"},
    ],
)
def test_invalid_conditions_are_rejected(condition):
    with pytest.raises(ValidationError):
        ConditionModel(**condition)


def test_exists_needs_no_value():
    condition = ConditionModel(field="has_label", operator="exists")
    assert condition.value is None


def test_actions_are_a_closed_union():
    with pytest.raises(ValidationError):
        _rule(actions=[{"type": "snooze", "until": "tomorrow"}])
    with pytest.raises(ValidationError):
        _rule(actions=[{"type": "add_label"}])


def test_action_adapter_dispatches_on_type():
    action = ACTION_ADAPTER.validate_python({"type": "forward", "to_address": "boss@example.com"})
    assert isinstance(action, ForwardAction)
    assert action.synchronous is False
    assert ACTION_ADAPTER.validate_python({"type": "archive"}).synchronous is True


def test_forward_rejects_bad_address():
    with pytest.raises(ValidationError):
        _rule(actions=[{"type": "forward", "to_address": "not-an-address"}])


def test_stop_processing_is_moved_last_and_limited_to_one():
    rule = _rule(actions=[{"type": "stop_processing"}, {"type": "archive"}])
    assert [a.type for a in rule.actions] == ["archive", "stop_processing"]
    assert rule.stops_processing
    assert [a.type for a in rule.runnable_actions] == ["archive"]

    with pytest.raises(ValidationError):
        _rule(actions=[{"type": "stop_processing"}, {"type": "stop_processing"}])


def test_rule_requires_actions_and_bounded_fields():
    with pytest.raises(ValidationError):
        _rule(actions=[])
    with pytest.raises(ValidationError):
        _rule(name="   ")
    with pytest.raises(ValidationError):
        _rule(priority=-1)
    with pytest.raises(ValidationError):
        _rule(unexpected="field")


def test_async_action_type_must_match_payload():
    with pytest.raises(ValidationError):
        AsyncActionModel(
            owner_id="owner-1",
            email_id="msg-1",
            action_type="archive",
            action_data={"type": "forward", "to_address": "a@example.com"},
        )


def test_batch_item_accepts_camel_case_and_snake_case():
    assert BatchItemModel(emailId="m1", action="archive").email_id == "m1"
    assert BatchItemModel(email_id="m1", action="add_label", label_id="L1").label_id == "L1"


def test_reply_is_async_and_mark_spam_is_sync():
    reply = ACTION_ADAPTER.validate_python({"type": "reply", "reply_body": "Thanks {{sender_name}}"})
    assert reply.synchronous is False
    assert reply.reply_subject is None
    assert ACTION_ADAPTER.validate_python({"type": "mark_spam"}).synchronous is True
    with pytest.raises(ValidationError):
        ACTION_ADAPTER.validate_python({"type": "reply", "reply_body": ""})


def test_negated_operators_require_a_value():
    assert ConditionModel(field="from", operator="not_contains", value="boss").operator == "not_contains"
    with pytest.raises(ValidationError):
        ConditionModel(field="subject", operator="not_equals")
    with pytest.raises(ValidationError):
        ConditionModel(field="is_read", operator="not_equals", value="true")


def test_conjunction_with_condition_tree_is_rejected():
    tree = {"op": "AND", "conditions": [{"field": "subject", "operator": "exists"}]}
    with pytest.raises(ValidationError, match="condition_conjunction only applies"):
        _rule(conditions=tree, condition_conjunction="OR")
