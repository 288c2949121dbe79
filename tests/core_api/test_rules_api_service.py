from datetime import timedelta
from unittest.mock import patch

import pytest

from triage_cli.core_api import rules_api_service
from triage_cli.core_api.exceptions import (
    GmailApiError,
    InvalidParameterError,
    RuleConflictError,
    RuleNotFoundError,
    RuleValidationError,
)
from triage_cli.features.rule_management.models import RuleModel
from tests.conftest import BASE_TIME, OTHER_OWNER, OWNER, RecordingProvider

VALID_RULE = {
    "name": "Archive Newsletters",
    "conditions": [{"field": "from", "operator": "contains", "value": "newsletter@x.com"}],
    "actions": [{"type": "archive"}],
}


def _rule(name, priority, created_offset, rule_id):
    return RuleModel(
        id=rule_id,
        owner_id=OWNER,
        name=name,
        priority=priority,
        conditions=[{"field": "subject", "operator": "exists"}],
        actions=[{"type": "archive"}],
        created_at=BASE_TIME + timedelta(minutes=created_offset),
    )


# --- Ordering ---


def test_sort_rules_orders_by_priority_then_created_at_then_id():
    a = _rule("a", priority=5, created_offset=0, rule_id="c")
    b = _rule("b", priority=0, created_offset=9, rule_id="z")
    c = _rule("c", priority=5, created_offset=0, rule_id="a")
    d = _rule("d", priority=5, created_offset=-1, rule_id="y")
    ordered = rules_api_service.sort_rules([a, b, c, d])
    assert [r.name for r in ordered] == ["b", "d", "c", "a"]
    # Input order never matters
    assert rules_api_service.sort_rules([d, c, b, a]) == ordered


# --- CRUD ---


def test_create_rule_stores_valid_rule(store):
    rule = rules_api_service.create_rule(store, OWNER, dict(VALID_RULE))
    assert rule.owner_id == OWNER
    assert store.get_rule(OWNER, rule.id).name == "Archive Newsletters"


def test_create_rule_ignores_server_managed_fields(store):
    data = dict(VALID_RULE, id="chosen-id", execution_count=42)
    rule = rules_api_service.create_rule(store, OWNER, data)
    assert rule.id != "chosen-id"
    assert rule.execution_count == 0


def test_create_rule_rejects_invalid_rule_and_stores_nothing(store):
    data = dict(VALID_RULE, conditions=[{"field": "subject", "operator": "matches_regex", "value": "(["}])
    with pytest.raises(RuleValidationError) as exc_info:
        rules_api_service.create_rule(store, OWNER, data)
    assert exc_info.value.errors
    assert store.count_rules(OWNER) == 0


def test_create_rule_rejects_other_owner_and_duplicates(store):
    with pytest.raises(InvalidParameterError):
        rules_api_service.create_rule(store, OWNER, dict(VALID_RULE, owner_id=OTHER_OWNER))
    rules_api_service.create_rule(store, OWNER, dict(VALID_RULE))
    with pytest.raises(RuleConflictError):
        rules_api_service.create_rule(store, OWNER, dict(VALID_RULE, name="archive newsletters"))


def test_create_rule_enforces_per_owner_limit(store):
    with patch.object(rules_api_service.app_config, "MAX_RULES_PER_OWNER", 1):
        rules_api_service.create_rule(store, OWNER, dict(VALID_RULE))
        with pytest.raises(InvalidParameterError):
            rules_api_service.create_rule(store, OWNER, dict(VALID_RULE, name="Second"))
        # Other owners have their own allowance
        rules_api_service.create_rule(store, OTHER_OWNER, dict(VALID_RULE))


def test_get_rule_by_id_or_name(store, make_rule):
    rule = make_rule(name="Receipts")
    assert rules_api_service.get_rule(store, OWNER, rule.id).id == rule.id
    assert rules_api_service.get_rule(store, OWNER, "receipts").id == rule.id
    with pytest.raises(RuleNotFoundError):
        rules_api_service.get_rule(store, OTHER_OWNER, rule.id)


def test_update_rule_revalidates_and_saves(store, make_rule):
    rule = make_rule(name="Receipts", priority=3)
    updated = rules_api_service.update_rule(store, OWNER, rule.id, {"priority": 1, "is_enabled": False})
    assert updated.priority == 1
    assert updated.created_at == rule.created_at
    assert updated.updated_at > rule.updated_at
    assert store.get_rule(OWNER, rule.id).is_enabled is False

    with pytest.raises(RuleValidationError):
        rules_api_service.update_rule(store, OWNER, rule.id, {"actions": []})
    with pytest.raises(InvalidParameterError):
        rules_api_service.update_rule(store, OWNER, rule.id, {"owner_id": OTHER_OWNER})


def test_update_rule_rename_conflict(store, make_rule):
    make_rule(name="First")
    second = make_rule(name="Second")
    with pytest.raises(RuleConflictError):
        rules_api_service.update_rule(store, OWNER, second.id, {"name": "FIRST"})
    # Changing only the case of its own name is allowed
    assert rules_api_service.update_rule(store, OWNER, second.id, {"name": "SECOND"}).name == "SECOND"



def test_update_rule_switches_conjunction_of_stored_group(store, make_rule):
    rule = make_rule(
        name="Either",
        conditions=[
            {"field": "subject", "operator": "contains", "value": "invoice"},
            {"field": "from", "operator": "contains", "value": "billing@"},
        ],
    )
    assert rule.conditions.op == "AND"

    updated = rules_api_service.update_rule(store, OWNER, rule.id, {"condition_conjunction": "OR"})

    assert updated.conditions.op == "OR"
    assert len(updated.conditions.conditions) == 2
    assert store.get_rule(OWNER, rule.id).conditions.op == "OR"


def test_update_rule_rejects_conjunction_it_cannot_apply(store, make_rule):
    read = {"field": "is_read", "operator": "equals", "value": "true"}
    rule = make_rule(name="Negated", conditions={"op": "NOT", "conditions": [read]})
    with pytest.raises(RuleValidationError, match="top-level AND/OR group"):
        rules_api_service.update_rule(store, OWNER, rule.id, {"condition_conjunction": "OR"})
    with pytest.raises(RuleValidationError, match="must be 'AND' or 'OR'"):
        rules_api_service.update_rule(store, OWNER, rule.id, {"condition_conjunction": "XOR"})
    assert store.get_rule(OWNER, rule.id).conditions.op == "NOT"


def test_delete_rule(store, make_rule):
    rule = make_rule(name="Temp")
    assert rules_api_service.delete_rule(store, OWNER, "Temp") is True
    assert store.get_rule(OWNER, rule.id) is None
    with pytest.raises(RuleNotFoundError):
        rules_api_service.delete_rule(store, OWNER, rule.id)


# --- Matching and execution ---


def test_stop_processing_prevents_lower_priority_rules(store, provider, make_email, make_rule):
    newsletter = make_rule(
        name="Newsletter",
        priority=0,
        conditions=[{"field": "from", "operator": "contains", "value": "newsletter@x.com"}],
        actions=[{"type": "add_label", "label_name": "Newsletter"}, {"type": "archive"}, {"type": "stop_processing"}],
    )
    make_rule(
        name="Invoices",
        priority=1,
        conditions=[{"field": "subject", "operator": "contains", "value": "invoice"}],
        actions=[{"type": "add_label", "label_name": "Finance"}],
    )
    email = make_email(from_address="newsletter@x.com", subject="invoice attached")

    result = rules_api_service.process_email(store, provider, OWNER, email)

    assert provider.calls == [
        ("modify_labels", "msg-1", ("Newsletter",), ()),
        ("archive", "msg-1"),
    ]
    assert result["matched_rule_ids"] == [newsletter.id]
    assert result["stopped_by_rule_id"] == newsletter.id
    assert result["rules_evaluated"] == 1
    executions = store.list_executions(OWNER)
    assert len(executions) == 1
    assert executions[0].rule_id == newsletter.id
    assert executions[0].matched is True
    assert executions[0].actions_executed == 2


def test_process_email_logs_every_evaluated_rule(store, provider, make_email, make_rule):
    hit = make_rule(name="Hit", priority=0)
    miss = make_rule(name="Miss", priority=1, conditions=[{"field": "subject", "operator": "contains", "value": "zzz"}])
    make_rule(name="Disabled", priority=2, is_enabled=False)

    result = rules_api_service.process_email(store, provider, OWNER, make_email())

    assert result["rules_evaluated"] == 2
    assert result["actions_executed"] == 1
    by_rule = {e.rule_id: e for e in store.list_executions(OWNER)}
    assert set(by_rule) == {hit.id, miss.id}
    assert by_rule[miss.id].matched is False
    assert store.get_rule(OWNER, hit.id).execution_count == 1
    assert store.get_rule(OWNER, miss.id).execution_count == 0


def test_process_email_queues_forward_without_calling_provider(store, provider, make_email, make_rule):
    make_rule(actions=[{"type": "forward", "to_address": "boss@example.com"}, {"type": "mark_read"}])

    result = rules_api_service.process_email(store, provider, OWNER, make_email())

    assert result["actions_queued"] == 1
    assert provider.calls_for("forward") == []
    pending = store.list_async_actions(OWNER, status="pending")
    assert len(pending) == 1
    assert pending[0].action_data.to_address == "boss@example.com"


def test_process_email_records_provider_failure_and_continues(store, make_email, make_rule):
    failing = RecordingProvider(failures={("archive", "msg-1"): GmailApiError("Gmail is down")})
    rule = make_rule(actions=[{"type": "archive"}, {"type": "mark_read"}])

    result = rules_api_service.process_email(store, failing, OWNER, make_email())

    assert failing.calls_for("mark_read") == [("mark_read", "msg-1", True)]
    assert result["errors"][0]["rule_id"] == rule.id
    execution = store.list_executions(OWNER)[0]
    assert execution.success is False
    assert "Gmail is down" in execution.error_message
    assert execution.actions_executed == 1


def test_process_email_only_sees_own_rules(store, provider, make_email, make_rule):
    make_rule(owner_id=OTHER_OWNER)
    result = rules_api_service.process_email(store, provider, OWNER, make_email())
    assert result["rules_evaluated"] == 0
    assert provider.calls == []


def test_test_rule_previews_without_side_effects(make_email):
    preview = rules_api_service.test_rule(
        dict(VALID_RULE, actions=[{"type": "stop_processing"}, {"type": "archive"}]),
        make_email(from_address="newsletter@x.com"),
    )
    assert preview["matches"] is True
    assert [a["type"] for a in preview["actions_that_would_execute"]] == ["archive", "stop_processing"]
    assert preview["condition_results"][0]["matched"] is True

    miss = rules_api_service.test_rule(dict(VALID_RULE), {"email_id": "x", "from_address": "someone@else.com"})
    assert miss["matches"] is False
    assert miss["actions_that_would_execute"] == []


def test_process_mailbox_dry_run_plans_only(store, make_email, make_rule):
    mailbox = RecordingProvider(messages=[make_email("m1"), make_email("m2", subject="Other")])
    make_rule(actions=[{"type": "archive"}, {"type": "forward", "to_address": "a@example.com"}])

    summary = rules_api_service.process_mailbox(store, mailbox, OWNER, dry_run=True)

    assert summary["total_emails_scanned"] == 2
    assert summary["emails_matching_any_rule"] == 1
    assert summary["actions_planned"] == {"archive": 1, "forward": 1}
    assert mailbox.calls_for("archive") == []
    assert store.list_executions(OWNER) == []
    assert store.list_async_actions(OWNER) == []


def test_process_mailbox_reports_fetch_failures(store, make_email, make_rule):
    mailbox = RecordingProvider(messages=[make_email("m1")])
    make_rule(actions=[{"type": "archive"}])

    summary = rules_api_service.process_mailbox(store, mailbox, OWNER, email_ids=["m1", "missing"])

    assert summary["actions_executed"] == 1
    assert summary["errors"][0]["email_id"] == "missing"
    assert summary["errors"][0]["error_type"] == "DETAIL_FETCH_FAILURE"


# --- Stats and defaults ---


def test_get_rule_stats(store, provider, make_email, make_rule):
    hit = make_rule(name="Hit")
    make_rule(name="Miss", conditions=[{"field": "subject", "operator": "contains", "value": "zzz"}])
    rules_api_service.process_email(store, provider, OWNER, make_email())

    stats = rules_api_service.get_rule_stats(store, OWNER)
    assert stats["total_rules"] == 2
    assert stats["total_executions"] == 2
    assert stats["matched_executions"] == 1
    assert stats["failed_executions"] == 0
    assert [r["id"] for r in stats["most_active_rules"]] == [hit.id]


def test_install_default_rules_is_idempotent(store):
    first = rules_api_service.install_default_rules(store, OWNER)
    assert len(first["installed"]) == len(rules_api_service.DEFAULT_RULE_TEMPLATES)
    second = rules_api_service.install_default_rules(store, OWNER)
    assert second["installed"] == []
    assert sorted(second["skipped"]) == sorted(first["installed"])
    assert store.count_rules(OWNER, enabled_only=True) == len(first["installed"]) - 1
