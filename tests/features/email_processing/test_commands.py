import json
from unittest.mock import MagicMock, patch

import pytest
from click.testing import CliRunner

from triage_cli import cli_entry
from triage_cli.core_api.exceptions import EmailNotFoundError, TriageError
from triage_cli.features.rule_management.models import AsyncActionModel, ForwardAction
from tests.conftest import OWNER, RecordingProvider


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture(autouse=True)
def mock_logging_setup_for_email_cli_tests():
    with patch("triage_cli.cli_entry.setup_logging") as mock_setup:
        mock_logger = MagicMock()
        mock_setup.return_value = mock_logger
        yield mock_logger


@pytest.fixture
def mailbox(make_email):
    return RecordingProvider(
        messages=[
            make_email("m1", from_address="news@example.com", subject="Weekly digest"),
            make_email("m2", subject="Lunch?"),
        ]
    )


@pytest.fixture
def invoke(runner, store, mailbox):
    def _invoke(args, obj_overrides=None, **kwargs):
        obj = {"store": store, "provider": mailbox, "owner_id": OWNER, "provider_factory": lambda owner_id: mailbox}
        obj.update(obj_overrides or {})
        return runner.invoke(cli_entry.triage, args, obj=obj, **kwargs)

    return _invoke


def _json_tail(output):
    """Parses the JSON envelope, skipping any human-readable lines printed before it."""
    try:
        return json.loads(output[output.index("{"):])
    except (ValueError, json.JSONDecodeError) as e:
        pytest.fail(f"Failed to decode JSON: {e}\nOutput was:\n{output}")


# --- emails group ---


def test_emails_group_requires_connection(runner, store):
    # No provider and no Gmail service in context; the pre-load must not find one either.
    with patch("triage_cli.core_api.gmail_api_service.get_authenticated_service", return_value=None):
        result = runner.invoke(cli_entry.triage, ["emails", "process", "--dry-run"], obj={"store": store})
    assert result.exit_code != 0
    assert "triage is not connected to Gmail" in result.output


def test_emails_process_dry_run_json(invoke, make_rule, mailbox, store):
    make_rule(conditions=[{"field": "from", "operator": "contains", "value": "news@"}], actions=[{"type": "archive"}])

    result = invoke(["emails", "process", "--dry-run", "--scan-limit", "10", "--output-format", "json"])

    assert result.exit_code == 0
    data = _json_tail(result.output)["data"]
    assert data["total_emails_scanned"] == 2
    assert data["emails_matching_any_rule"] == 1
    assert data["actions_planned"] == {"archive": 1}
    assert mailbox.calls_for("archive") == []
    assert store.list_executions(OWNER) == []


def test_emails_process_runs_rules_for_ids(invoke, make_rule, mailbox):
    make_rule(conditions=[{"field": "from", "operator": "contains", "value": "news@"}], actions=[{"type": "archive"}])

    result = invoke(["emails", "process", "--ids", "m1,m2"])

    assert result.exit_code == 0
    assert "Actions Executed: 1" in result.output
    assert mailbox.calls_for("archive") == [("archive", "m1")]


def test_emails_process_confirmation_declined(invoke, make_rule, mailbox):
    make_rule(actions=[{"type": "archive"}])
    result = invoke(["emails", "process", "--ids", "m1", "--confirm"], input="n\n")
    assert result.exit_code == 0
    assert "Action aborted by user." in result.output
    assert mailbox.calls == []


# --- emails bulk ---


def test_emails_bulk_partial_success_json(invoke, mailbox):
    mailbox.failures["m2"] = EmailNotFoundError("Message m2 not found")
    items = [{"emailId": "m1", "action": "mark_read"}, {"emailId": "m2", "action": "mark_read"}]

    result = invoke(["emails", "bulk", "--actions-json", json.dumps(items), "--output-format", "json"])

    assert result.exit_code == 0
    envelope = _json_tail(result.output)
    assert envelope["status"] == "partial_success"
    assert envelope["data"]["successful"] == 1
    assert envelope["data"]["errors"] == ["m2: Message m2 not found"]


def test_emails_bulk_ids_and_action(invoke, mailbox):
    result = invoke(["emails", "bulk", "--ids", "m1,m2", "--action", "add_label", "--label-id", "Label_1"])
    assert result.exit_code == 0
    assert "2 succeeded, 0 failed" in result.output
    assert ("modify_labels", "m2", ("Label_1",), ()) in mailbox.calls


def test_emails_bulk_invalid_request(invoke, mailbox):
    result = invoke(["emails", "bulk", "--ids", "m1", "--action", "add_label", "--output-format", "json"])
    assert result.exit_code == 1
    envelope = _json_tail(result.output)
    assert envelope["error_details"]["code"] == "VALIDATION_ERROR"
    assert "label ID required" in envelope["error_details"]["details"]
    assert mailbox.calls == []


def test_emails_bulk_trash_requires_confirmation(invoke, mailbox):
    result = invoke(["emails", "bulk", "--ids", "m1", "--action", "trash"], input="n\n")
    assert result.exit_code == 0
    assert "Action aborted by user." in result.output
    assert mailbox.calls_for("trash") == []

    result = invoke(["emails", "bulk", "--ids", "m1", "--action", "trash", "--yes"])
    assert result.exit_code == 0
    assert mailbox.calls_for("trash") == [("trash", "m1")]


# --- outbox ---


def _enqueue_forward(store, email_id="m1"):
    return store.enqueue_async_action(
        AsyncActionModel(
            owner_id=OWNER,
            email_id=email_id,
            action_type="forward",
            action_data=ForwardAction(to_address="boss@example.com"),
        )
    )


def test_outbox_process_and_stats(invoke, store, mailbox):
    _enqueue_forward(store)

    processed = invoke(["outbox", "process", "--output-format", "json"])
    assert processed.exit_code == 0
    assert _json_tail(processed.output)["data"]["processed"] == 1
    assert mailbox.calls_for("forward") == [("forward", "m1", "boss@example.com")]

    stats = invoke(["outbox", "stats"])
    assert stats.exit_code == 0
    assert "completed: 1" in stats.output
    assert "pending: 0" in stats.output


def test_outbox_sweep_without_stale_rows(invoke, store):
    _enqueue_forward(store)
    result = invoke(["outbox", "sweep", "--timeout", "60"])
    assert result.exit_code == 0
    assert "Swept 0 stale actions" in result.output


# --- owner isolation ---


def test_emails_process_for_other_owner_uses_their_provider(runner, store, make_rule, make_email):
    alice_mailbox = RecordingProvider(messages=[make_email("m1")], owner_id="alice")
    built_for = []

    def factory(owner_id):
        built_for.append(owner_id)
        return alice_mailbox

    make_rule(owner_id="alice", actions=[{"type": "archive"}])
    default_service = MagicMock(name="default-login-service")

    with patch(
        "triage_cli.core_api.gmail_api_service.get_authenticated_service", return_value=default_service
    ) as mock_preload:
        result = runner.invoke(
            cli_entry.triage,
            ["--owner", "alice", "emails", "process", "--ids", "m1"],
            obj={"store": store, "provider_factory": factory},
        )

    assert result.exit_code == 0, result.output
    mock_preload.assert_not_called()
    assert built_for == ["alice"]
    assert alice_mailbox.calls_for("archive") == [("archive", "m1")]
    default_service.users.assert_not_called()


def test_emails_group_other_owner_without_token(runner, store):
    def factory(owner_id):
        raise TriageError(f"Token file not found for {owner_id}")

    result = runner.invoke(
        cli_entry.triage,
        ["--owner", "bob", "emails", "process", "--dry-run"],
        obj={"store": store, "provider_factory": factory},
    )
    assert result.exit_code != 0
    assert "triage is not connected to Gmail" in result.output
