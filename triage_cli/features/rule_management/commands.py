import click
import json
from typing import Optional

from triage_cli.core_api import condition_evaluator, rules_api_service
from triage_cli.core_api.exceptions import (
    RuleNotFoundError,
    RuleValidationError,
    TriageError,
)
from triage_cli.core.cli_utils import (
    _confirm_action,
    _error_code,
    _get_store,
    _load_json_argument,
    _output_error,
    _write_json_response,
)

OUTPUT_FORMAT_OPTION = click.option(
    "--output-format",
    type=click.Choice(["human", "json"]),
    default="human",
    show_default=True,
    help="Output format for results and errors.",
)

EXAMPLE_RULE = {
    "name": "Archive newsletters",
    "description": "Optional description",
    "is_enabled": True,
    "priority": 10,
    "conditions": {
        "op": "AND",
        "conditions": [{"field": "from", "operator": "contains", "value": "newsletter@example.com"}],
    },
    "actions": [{"type": "add_label", "label_name": "Newsletter"}, {"type": "archive"}, {"type": "stop_processing"}],
}


def _describe_action(action) -> str:
    if action.type in ("add_label", "remove_label"):
        return f"{action.type} '{action.label_name}'"
    if action.type == "forward":
        return f"forward to {action.to_address} (async)"
    if action.type == "reply":
        return "reply to sender (async)"
    if action.type == "mark_read" and not action.read:
        return "mark_unread"
    return action.type


def _echo_rule(rule, position: Optional[int] = None) -> None:
    header = f"--- Rule {position} " if position is not None else "--- Rule "
    click.echo(f"\n{header}({'Enabled' if rule.is_enabled else 'Disabled'}) ---")
    click.echo(f" ID: {rule.id}")
    click.echo(f" Name: {rule.name}")
    if rule.description:
        click.echo(f" Description: {rule.description}")
    click.echo(f" Priority: {rule.priority}")
    if rule.system_type:
        click.echo(f" System Type: {rule.system_type}")
    click.echo(f" Conditions: {condition_evaluator.describe(rule.conditions)}")
    click.echo(" Actions:")
    for action in rule.actions:
        click.echo(f" - {_describe_action(action)}")
    click.echo(f" Executions: {rule.execution_count}")


def _validation_details(e: RuleValidationError) -> str:
    return json.dumps(e.errors, indent=2)


@click.group("rules")
@click.pass_context
def rules_group(ctx):
    """Manage triage rules."""
    logger = ctx.obj.get("logger")
    if logger:
        logger.debug("Rules command group invoked.")


@rules_group.command("list")
@click.option("--enabled-only", is_flag=True, help="Only list enabled rules.")
@OUTPUT_FORMAT_OPTION
@click.pass_context
def list_rules_cmd(ctx, enabled_only, output_format):
    """Lists rules in the order they are evaluated."""
    logger = ctx.obj.get("logger")
    cmd_name = "triage rules list"
    owner_id = ctx.obj["owner_id"]
    if logger:
        logger.info(f"Executing '{cmd_name}' for owner {owner_id}")

    try:
        rules = rules_api_service.list_rules(_get_store(ctx), owner_id, enabled_only=enabled_only)
    except TriageError as e:
        _output_error(ctx, output_format, cmd_name, f"Error loading rules: {e.message}", _error_code(e), str(e.original_exception or e))
        return

    if not rules:
        if output_format == "json":
            _write_json_response("success", cmd_name, "No rules configured yet.", data=[])
        else:
            click.echo("No rules configured yet.")
        return

    if output_format == "json":
        rules_data = [rule.model_dump(mode="json") for rule in rules]
        _write_json_response("success", cmd_name, f"Successfully listed {len(rules_data)} rules.", data=rules_data)
    else:
        click.echo("Configured Rules (evaluation order):")
        for i, rule in enumerate(rules):
            _echo_rule(rule, i + 1)
    if logger:
        logger.info(f"Listed {len(rules)} rules.")


@rules_group.command("add")
@click.option("--rule-json", help="Rule definition as a JSON string or path to a JSON file.")
@OUTPUT_FORMAT_OPTION
@click.pass_context
def add_rule_cmd(ctx, rule_json, output_format):
    """Adds a new rule from a JSON definition."""
    logger = ctx.obj.get("logger")
    cmd_name = "triage rules add"

    if not rule_json:
        msg = "Error: --rule-json option is required to define the rule."
        if output_format == "human":
            click.echo(msg)
            click.echo("\nExample JSON structure for a rule:")
            click.echo(json.dumps(EXAMPLE_RULE, indent=2))
            ctx.exit(1)
        _output_error(ctx, output_format, cmd_name, msg, "MISSING_PARAMETER", "--rule-json is required.")
        return

    try:
        rule_data = _load_json_argument(rule_json)
    except (IOError, json.JSONDecodeError) as e:
        _output_error(
            ctx, output_format, cmd_name,
            f"Error: Could not parse --rule-json. Not valid JSON or readable file: {e}",
            "INVALID_INPUT_JSON", str(e),
        )
        return

    try:
        added_rule = rules_api_service.create_rule(_get_store(ctx), ctx.obj["owner_id"], rule_data)
    except RuleValidationError as e:
        if output_format == "human":
            click.echo(f"Validation details:\n{_validation_details(e)}")
        _output_error(ctx, output_format, cmd_name, "Error: Rule data is invalid.", "VALIDATION_ERROR", _validation_details(e))
        return
    except TriageError as e:
        _output_error(ctx, output_format, cmd_name, f"Error adding rule: {e.message}", _error_code(e))
        return

    msg = f"Rule '{added_rule.name}' (ID: {added_rule.id}) added successfully."
    if output_format == "json":
        _write_json_response("success", cmd_name, msg, data=added_rule.model_dump(mode="json"))
    else:
        click.echo(msg)
    if logger:
        logger.info(f"Rule '{added_rule.name}' added.")


@rules_group.command("update")
@click.option("--id", "rule_identifier", required=True, help="ID or Name of the rule to update.")
@click.option("--patch-json", default=None, help="Fields to change, as a JSON string or path to a JSON file.")
@click.option("--enable/--disable", "enabled", default=None, help="Enable or disable the rule.")
@click.option("--priority", type=int, default=None, help="New priority (lower runs first).")
@OUTPUT_FORMAT_OPTION
@click.pass_context
def update_rule_cmd(ctx, rule_identifier, patch_json, enabled, priority, output_format):
    """Updates fields of an existing rule."""
    logger = ctx.obj.get("logger")
    cmd_name = "triage rules update"

    patch = {}
    if patch_json:
        try:
            patch = _load_json_argument(patch_json)
        except (IOError, json.JSONDecodeError) as e:
            _output_error(ctx, output_format, cmd_name, f"Error: Could not parse --patch-json: {e}", "INVALID_INPUT_JSON", str(e))
            return
        if not isinstance(patch, dict):
            _output_error(ctx, output_format, cmd_name, "Error: --patch-json must be a JSON object.", "INVALID_INPUT_JSON")
            return
    if enabled is not None:
        patch["is_enabled"] = enabled
    if priority is not None:
        patch["priority"] = priority
    if not patch:
        _output_error(
            ctx, output_format, cmd_name,
            "Nothing to update. Use --patch-json, --enable/--disable or --priority.",
            "MISSING_PARAMETER",
        )
        return

    try:
        updated = rules_api_service.update_rule(_get_store(ctx), ctx.obj["owner_id"], rule_identifier, patch)
    except RuleValidationError as e:
        _output_error(ctx, output_format, cmd_name, "Error: Updated rule is invalid.", "VALIDATION_ERROR", _validation_details(e))
        return
    except TriageError as e:
        _output_error(ctx, output_format, cmd_name, f"Error updating rule: {e.message}", _error_code(e))
        return

    msg = f"Rule '{updated.name}' (ID: {updated.id}) updated successfully."
    if output_format == "json":
        _write_json_response("success", cmd_name, msg, data=updated.model_dump(mode="json"))
    else:
        click.echo(msg)
    if logger:
        logger.info(msg)


@rules_group.command("delete")
@click.option("--id", "rule_identifier", required=True, help="ID or Name of the rule to delete.")
@click.option("--yes", "-y", is_flag=True, help="Automatically answer yes to confirmation prompts.")
@OUTPUT_FORMAT_OPTION
@click.pass_context
def delete_rule_cmd(ctx, rule_identifier, yes, output_format):
    """Deletes a rule by its ID or Name."""
    logger = ctx.obj.get("logger")
    cmd_name = "triage rules delete"
    if logger:
        logger.info(f"Attempting to delete rule: {rule_identifier}")

    confirmed, confirm_msg = _confirm_action(
        prompt_message=f"Are you sure you want to delete the rule '{rule_identifier}'?",
        yes_flag=yes,
    )
    if yes and confirmed:
        click.echo(click.style(confirm_msg, fg="green"))
    if not confirmed:
        if output_format == "json":
            _write_json_response("aborted_by_user", cmd_name, confirm_msg)
        else:
            click.echo(confirm_msg)
        return

    try:
        rules_api_service.delete_rule(_get_store(ctx), ctx.obj["owner_id"], rule_identifier)
    except RuleNotFoundError as e:
        if output_format == "json":
            _output_error(ctx, output_format, cmd_name, e.message, "RULE_NOT_FOUND")
        else:
            click.secho(e.message, fg="yellow")
        return
    except TriageError as e:
        _output_error(ctx, output_format, cmd_name, f"Error deleting rule: {e.message}", _error_code(e), str(e.original_exception or e))
        return

    msg = f"Rule '{rule_identifier}' deleted successfully."
    if output_format == "json":
        _write_json_response("success", cmd_name, msg, data={"deleted_identifier": rule_identifier})
    else:
        click.echo(msg)
    if logger:
        logger.info(f"Rule '{rule_identifier}' deleted.")


@rules_group.command("test")
@click.option("--id", "rule_identifier", default=None, help="ID or Name of a stored rule to test.")
@click.option("--rule-json", default=None, help="Unsaved rule definition (JSON string or file) to test instead.")
@click.option("--email-json", required=True, help="Sample email as a JSON string or path to a JSON file.")
@OUTPUT_FORMAT_OPTION
@click.pass_context
def test_rule_cmd(ctx, rule_identifier, rule_json, email_json, output_format):
    """Shows whether a rule would match a sample email, and why. Changes nothing."""
    cmd_name = "triage rules test"
    if bool(rule_identifier) == bool(rule_json):
        _output_error(ctx, output_format, cmd_name, "Provide exactly one of --id or --rule-json.", "INVALID_PARAMETER")
        return

    try:
        sample_email = _load_json_argument(email_json)
        rule = (
            rules_api_service.get_rule(_get_store(ctx), ctx.obj["owner_id"], rule_identifier)
            if rule_identifier
            else _load_json_argument(rule_json)
        )
    except (IOError, json.JSONDecodeError) as e:
        _output_error(ctx, output_format, cmd_name, f"Error: Could not parse input JSON: {e}", "INVALID_INPUT_JSON", str(e))
        return
    except TriageError as e:
        _output_error(ctx, output_format, cmd_name, e.message, _error_code(e))
        return

    try:
        result = rules_api_service.test_rule(rule, sample_email)
    except RuleValidationError as e:
        _output_error(ctx, output_format, cmd_name, e.message, "VALIDATION_ERROR", _validation_details(e))
        return

    if output_format == "json":
        _write_json_response("success", cmd_name, "Rule test completed.", data=result)
        return

    verdict = click.style("MATCHES", fg="green") if result["matches"] else click.style("DOES NOT MATCH", fg="yellow")
    click.echo(f"Rule '{result['rule_name']}' {verdict}")
    click.echo(f"Conditions: {result['conditions']}")
    for condition_result in result["condition_results"]:
        mark = "+" if condition_result["matched"] else "-"
        click.echo(f" {mark} {condition_result['reason']}")
    if result["actions_that_would_execute"]:
        click.echo("Actions that would execute:")
        for action in result["actions_that_would_execute"]:
            click.echo(f" - {action['type']}")


@rules_group.command("stats")
@OUTPUT_FORMAT_OPTION
@click.pass_context
def rule_stats_cmd(ctx, output_format):
    """Shows rule and execution statistics."""
    cmd_name = "triage rules stats"
    try:
        stats = rules_api_service.get_rule_stats(_get_store(ctx), ctx.obj["owner_id"])
    except TriageError as e:
        _output_error(ctx, output_format, cmd_name, f"Error reading stats: {e.message}", _error_code(e))
        return

    if output_format == "json":
        _write_json_response("success", cmd_name, "Rule statistics.", data=stats)
        return
    click.echo(f"Rules: {stats['total_rules']} ({stats['enabled_rules']} enabled)")
    click.echo(
        f"Executions: {stats['total_executions']} total, {stats['matched_executions']} matched, "
        f"{stats['successful_executions']} successful, {stats['failed_executions']} failed"
    )
    if stats["most_active_rules"]:
        click.echo("Most active rules:")
        for entry in stats["most_active_rules"]:
            click.echo(f" - {entry['name']}: {entry['execution_count']} time(s)")


@rules_group.command("install-defaults")
@OUTPUT_FORMAT_OPTION
@click.pass_context
def install_defaults_cmd(ctx, output_format):
    """Installs the built-in rule templates that are not already present."""
    cmd_name = "triage rules install-defaults"
    try:
        result = rules_api_service.install_default_rules(_get_store(ctx), ctx.obj["owner_id"])
    except TriageError as e:
        _output_error(ctx, output_format, cmd_name, f"Error installing default rules: {e.message}", _error_code(e))
        return

    msg = f"Installed {len(result['installed'])} default rules ({len(result['skipped'])} already present)."
    if output_format == "json":
        _write_json_response("success", cmd_name, msg, data=result)
    else:
        click.echo(msg)
        for name in result["installed"]:
            click.echo(f" + {name}")
