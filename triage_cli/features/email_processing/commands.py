import click
import json
import signal
import threading

from triage_cli.core import config as app_config
from triage_cli.core_api import batch_action_service, rules_api_service
from triage_cli.core_api.exceptions import RuleValidationError, TriageError
from triage_cli.core_api.outbox_processor import OutboxProcessor, RetryPolicy
from triage_cli.core.cli_utils import (
    _confirm_action,
    _error_code,
    _get_provider,
    _get_provider_factory,
    _get_store,
    _load_json_argument,
    _output_error,
    _write_json_response,
)
from triage_cli.features.rule_management.models import BATCH_ACTION_TYPES

OUTPUT_FORMAT_OPTION = click.option(
    "--output-format",
    type=click.Choice(["human", "json"]),
    default="human",
    show_default=True,
)


def _parse_ids(ids_str: str) -> list:
    if not ids_str:
        return []
    return [id_val.strip() for id_val in ids_str.split(",") if id_val.strip()]


# --- Emails ---
@click.group("emails")
@click.pass_context
def emails_group(ctx):
    """Run rules and bulk actions against your mailbox."""
    logger = ctx.obj.get("logger")
    if _get_provider(ctx) is None:
        if logger:
            logger.error("emails_group: no provider client in context. 'triage login' has not been run.")
        click.secho("triage is not connected to Gmail. Please run `triage login` first.", fg="yellow")
        ctx.abort()
    elif logger:
        logger.debug("emails_group: provider client found in context.")


@emails_group.command("process")
@click.option("--ids", "message_ids_str", default=None, help="Comma-separated message IDs to process.")
@click.option("--query", "-q", default=None, help="Gmail query selecting the emails to process.")
@click.option("--scan-limit", type=int, default=None, help="Maximum number of emails to process.")
@click.option("--dry-run", is_flag=True, help="Only report which rules match; change nothing.")
@click.option("--confirm", "user_must_confirm", is_flag=True, help="Ask for confirmation before modifying emails.")
@click.option("--yes", "-y", is_flag=True, help="Automatically answer yes to the confirmation prompt.")
@OUTPUT_FORMAT_OPTION
@click.pass_context
def process_cmd(ctx, message_ids_str, query, scan_limit, dry_run, user_must_confirm, yes, output_format):
    """Runs your enabled rules against emails, in priority order."""
    logger = ctx.obj.get("logger")
    cmd_name = "triage emails process"
    email_ids = _parse_ids(message_ids_str) or None
    params_provided = {"ids": email_ids, "query": query, "scan_limit": scan_limit, "dry_run": dry_run}
    if logger:
        logger.info(f"Executing '{cmd_name}' with params: {params_provided}")

    if email_ids is None and not query and not scan_limit:
        click.secho(
            "Warning: no --ids, --query or --scan-limit given. Rules will run against your entire mailbox.",
            fg="yellow",
        )

    if not dry_run and user_must_confirm:
        confirmed, confirm_msg = _confirm_action(
            prompt_message="Are you sure you want to run rules and potentially modify emails?",
            yes_flag=yes,
        )
        if yes and confirmed:
            click.echo(click.style(confirm_msg, fg="green"))
        if not confirmed:
            if output_format == "json":
                _write_json_response("aborted_by_user", cmd_name, confirm_msg, data={"action_taken": False})
            else:
                click.echo(confirm_msg)
            return

    try:
        summary = rules_api_service.process_mailbox(
            _get_store(ctx),
            _get_provider(ctx),
            ctx.obj["owner_id"],
            query=query,
            email_ids=email_ids,
            scan_limit=scan_limit,
            dry_run=dry_run,
        )
    except TriageError as e:
        _output_error(ctx, output_format, cmd_name, f"Error during '{cmd_name}': {e.message}", _error_code(e), str(e))
        return

    if output_format == "json":
        _write_json_response("success", cmd_name, "Rule processing completed.", data=summary)
        return

    click.echo("\n--- Rule Processing Summary ---")
    click.echo(f"Dry Run: {'Yes' if summary['dry_run'] else 'No'}")
    click.echo(f"Total Emails Scanned: {summary['total_emails_scanned']}")
    click.echo(f"Emails Matching Any Rule: {summary['emails_matching_any_rule']}")
    if summary["dry_run"]:
        click.echo("\nActions Planned:")
        if not summary["actions_planned"]:
            click.echo(" No actions would be taken.")
        for action_type, count in summary["actions_planned"].items():
            click.echo(f" - {action_type}: {count}")
    else:
        click.echo(f"Actions Executed: {summary['actions_executed']}")
        click.echo(f"Actions Queued: {summary['actions_queued']}")
    if summary["errors"]:
        click.secho("\nErrors Encountered:", fg="red")
        for err_item in summary["errors"]:
            click.echo(f" - {err_item}")
    click.echo("--- End of Summary ---")


@emails_group.command("bulk")
@click.option("--actions-json", default=None, help="List of {emailId, action, labelId} items (JSON string or file).")
@click.option("--ids", "message_ids_str", default=None, help="Comma-separated message IDs (with --action).")
@click.option("--action", type=click.Choice(BATCH_ACTION_TYPES), default=None, help="Action to apply to every --ids message.")
@click.option("--label-id", default=None, help="Label for add_label/remove_label.")
@click.option("--yes", "-y", is_flag=True, help="Automatically answer yes to confirmation prompts.")
@OUTPUT_FORMAT_OPTION
@click.pass_context
def bulk_cmd(ctx, actions_json, message_ids_str, action, label_id, yes, output_format):
    """Applies a bulk action to many emails, reporting per-email results."""
    logger = ctx.obj.get("logger")
    cmd_name = "triage emails bulk"

    if actions_json:
        try:
            items = _load_json_argument(actions_json)
        except (IOError, json.JSONDecodeError) as e:
            _output_error(ctx, output_format, cmd_name, f"Error: Could not parse --actions-json: {e}", "INVALID_INPUT_JSON", str(e))
            return
        if not isinstance(items, list):
            _output_error(ctx, output_format, cmd_name, "Error: --actions-json must be a JSON list.", "INVALID_INPUT_JSON")
            return
    elif message_ids_str and action:
        items = [{"emailId": email_id, "action": action, "labelId": label_id} for email_id in _parse_ids(message_ids_str)]
    else:
        _output_error(ctx, output_format, cmd_name, "Provide --actions-json, or --ids together with --action.", "MISSING_PARAMETER")
        return

    trash_count = sum(1 for item in items if isinstance(item, dict) and item.get("action") == "trash")
    if trash_count:
        confirmed, confirm_msg = _confirm_action(
            prompt_message=f"Are you sure you want to move {trash_count} email(s) to Trash?",
            yes_flag=yes,
        )
        if yes and confirmed:
            click.echo(click.style(confirm_msg, fg="green"))
        if not confirmed:
            if output_format == "json":
                _write_json_response("aborted_by_user", cmd_name, confirm_msg, data={"action_taken": False})
            else:
                click.echo(confirm_msg)
            return

    try:
        result = batch_action_service.run_bulk_action(_get_provider(ctx), items)
    except RuleValidationError as e:
        _output_error(ctx, output_format, cmd_name, "Error: Bulk request is invalid.", "VALIDATION_ERROR", json.dumps(e.errors, indent=2))
        return
    except TriageError as e:
        _output_error(ctx, output_format, cmd_name, f"Error during bulk action: {e.message}", _error_code(e))
        return

    msg = f"Bulk action finished: {result['successful']} succeeded, {result['failed']} failed."
    if logger:
        logger.info(msg)
    if output_format == "json":
        _write_json_response("success" if not result["failed"] else "partial_success", cmd_name, msg, data=result)
        return
    click.echo(msg)
    for error in result["errors"]:
        click.secho(f" - {error}", fg="red")


# --- Outbox ---
def _get_processor(ctx, concurrency=None) -> OutboxProcessor:
    return OutboxProcessor(_get_store(ctx), _get_provider_factory(ctx), policy=RetryPolicy(), concurrency=concurrency)


@click.group("outbox")
@click.pass_context
def outbox_group(ctx):
    """Inspect and drain the queue of asynchronous rule actions."""
    logger = ctx.obj.get("logger")
    if logger:
        logger.debug("Outbox command group invoked.")


@outbox_group.command("process")
@click.option("--max-batch", type=int, default=app_config.OUTBOX_BATCH_SIZE, show_default=True, help="Rows to claim.")
@click.option("--concurrency", type=int, default=None, help="Rows executed at the same time.")
@OUTPUT_FORMAT_OPTION
@click.pass_context
def outbox_process_cmd(ctx, max_batch, concurrency, output_format):
    """Claims and executes one batch of due actions."""
    cmd_name = "triage outbox process"
    try:
        stats = _get_processor(ctx, concurrency).process_pending_actions(max_batch=max_batch)
    except TriageError as e:
        _output_error(ctx, output_format, cmd_name, f"Error processing outbox: {e.message}", _error_code(e))
        return

    msg = (
        f"Claimed {stats['claimed']}: {stats['processed']} completed, {stats['retried']} will retry, "
        f"{stats['failed']} failed."
    )
    if output_format == "json":
        _write_json_response("success", cmd_name, msg, data=stats)
    else:
        click.echo(msg)


@outbox_group.command("worker")
@click.option(
    "--poll-interval", type=float, default=app_config.OUTBOX_POLL_INTERVAL_SECONDS, show_default=True,
    help="Seconds to wait when the outbox is empty.",
)
@click.option("--max-batch", type=int, default=app_config.OUTBOX_BATCH_SIZE, show_default=True)
@click.option("--concurrency", type=int, default=None)
@click.pass_context
def outbox_worker_cmd(ctx, poll_interval, max_batch, concurrency):
    """Runs the outbox worker until interrupted (Ctrl+C or SIGTERM)."""
    logger = ctx.obj.get("logger")
    stop_event = threading.Event()

    def _request_stop(signum, frame):
        if logger:
            logger.info(f"Received signal {signum}; finishing in-flight actions.")
        stop_event.set()

    signal.signal(signal.SIGINT, _request_stop)
    signal.signal(signal.SIGTERM, _request_stop)

    click.echo(f"Outbox worker running (poll every {poll_interval:g}s). Press Ctrl+C to stop.")
    totals = _get_processor(ctx, concurrency).run_forever(
        poll_interval=poll_interval, stop_event=stop_event, max_batch=max_batch
    )
    click.echo(f"Outbox worker stopped. Totals: {totals}")


@outbox_group.command("sweep")
@click.option(
    "--timeout", "timeout_seconds", type=float, default=app_config.STALE_PROCESSING_TIMEOUT_SECONDS,
    show_default=True, help="Seconds after which a claimed action counts as stale.",
)
@OUTPUT_FORMAT_OPTION
@click.pass_context
def outbox_sweep_cmd(ctx, timeout_seconds, output_format):
    """Returns actions stuck in 'processing' to the queue."""
    cmd_name = "triage outbox sweep"
    try:
        stats = _get_processor(ctx).sweep_stale(timeout_seconds)
    except TriageError as e:
        _output_error(ctx, output_format, cmd_name, f"Error sweeping outbox: {e.message}", _error_code(e))
        return

    msg = f"Swept {stats['swept']} stale actions: {stats['retried']} requeued, {stats['failed']} failed."
    if output_format == "json":
        _write_json_response("success", cmd_name, msg, data=stats)
    else:
        click.echo(msg)


@outbox_group.command("stats")
@click.option("--all-owners", is_flag=True, help="Count actions of every owner.")
@OUTPUT_FORMAT_OPTION
@click.pass_context
def outbox_stats_cmd(ctx, all_owners, output_format):
    """Shows how many queued actions are in each status."""
    cmd_name = "triage outbox stats"
    owner_id = None if all_owners else ctx.obj["owner_id"]
    try:
        stats = _get_processor(ctx).get_stats(owner_id)
    except TriageError as e:
        _output_error(ctx, output_format, cmd_name, f"Error reading outbox stats: {e.message}", _error_code(e))
        return

    if output_format == "json":
        _write_json_response("success", cmd_name, "Outbox statistics.", data=stats)
        return
    for status, count in stats.items():
        click.echo(f"{status}: {count}")
