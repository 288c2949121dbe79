import click
import json
import logging
import sys
from typing import Any, Optional, Tuple

logger = logging.getLogger(__name__)


def _confirm_action(
    prompt_message: str,
    yes_flag: bool,
    default_abort_message: str = "Action aborted by user.",
    log_confirmation_bypass: bool = True,
) -> Tuple[bool, str]:
    """
    Prompts user for confirmation or bypasses if yes_flag is True.
    Returns a tuple: (bool_confirmed_or_bypassed, message_to_display_or_log).
    """
    if yes_flag:
        bypass_message = f"Confirmation bypassed by --yes flag for: {prompt_message}"
        if log_confirmation_bypass:
            logger.info(f"Confirmation bypassed by --yes flag for prompt: '{prompt_message}'")
        return True, bypass_message

    if not click.confirm(prompt_message, default=False, abort=False):
        logger.info(f"User aborted action for prompt: '{prompt_message}'")
        return False, default_abort_message

    logger.info(f"User confirmed action for prompt: '{prompt_message}'")
    return True, ""


def _write_json_response(
    status: str,
    command_executed: str,
    message: str,
    data: Any = None,
    error_details: Optional[dict] = None,
) -> None:
    """Writes the standard JSON envelope used by every --output-format json command."""
    response_obj = {
        "status": status,
        "command_executed": command_executed,
        "message": message,
        "data": data,
        "error_details": error_details,
    }
    sys.stdout.write(json.dumps(response_obj, indent=2, default=str) + "\n")


def _load_json_argument(value: str) -> Any:
    """Parses a CLI argument that is either inline JSON or a path to a JSON file."""
    try:
        return json.loads(value)
    except json.JSONDecodeError:
        with open(value, "r") as f:
            return json.load(f)


def _output_error(
    ctx: click.Context,
    output_format: str,
    command_executed: str,
    message: str,
    code: str,
    details: Optional[str] = None,
) -> None:
    """Reports a command failure in the requested format and exits with status 1."""
    logger.error(f"'{command_executed}' failed: {message}")
    if output_format == "json":
        _write_json_response(
            "error",
            command_executed,
            message,
            error_details={"code": code, "details": details or message},
        )
    else:
        click.secho(message, fg="red")
    ctx.exit(1)


def _error_code(error: Exception) -> str:
    """RuleNotFoundError -> RULE_NOT_FOUND_ERROR"""
    name = error.__class__.__name__
    return "".join(f"_{c}" if c.isupper() and i else c for i, c in enumerate(name)).upper()


def _get_store(ctx: click.Context):
    """Returns the rule store for this invocation, opening it on first use."""
    if ctx.obj.get("store") is None:
        from triage_cli.core_api.rule_store import RuleStore

        ctx.obj["store"] = RuleStore(ctx.obj.get("database_url"))
    return ctx.obj["store"]


def _get_provider_factory(ctx: click.Context):
    """Returns the per-owner provider factory, defaulting to the Gmail one."""
    if ctx.obj.get("provider_factory") is None:
        from triage_cli.core_api.provider import gmail_provider_factory

        ctx.obj["provider_factory"] = gmail_provider_factory
    return ctx.obj["provider_factory"]


def _get_provider(ctx: click.Context):
    """Returns the provider client for the current owner, or None if Gmail is not connected.

    The pre-loaded login service belongs to the default owner only; any other
    owner gets a client built from their own token.
    """
    if ctx.obj.get("provider") is not None:
        return ctx.obj["provider"]

    from triage_cli.core import config as app_config
    from triage_cli.core_api.exceptions import TriageError
    from triage_cli.core_api.provider import GmailProviderClient

    owner_id = ctx.obj.get("owner_id") or app_config.DEFAULT_OWNER_ID
    if owner_id == app_config.DEFAULT_OWNER_ID:
        service = ctx.obj.get("gmail_service")
        if not service:
            return None
        ctx.obj["provider"] = GmailProviderClient(service)
        return ctx.obj["provider"]

    try:
        ctx.obj["provider"] = _get_provider_factory(ctx)(owner_id)
    except TriageError as e:
        logger.warning(f"Could not build a provider for owner '{owner_id}': {e}")
        return None
    return ctx.obj["provider"]
