import click
import logging
import os

from triage_cli.core import config as app_config
from triage_cli.core.logging_setup import setup_logging
from triage_cli.core_api.exceptions import TriageError

from triage_cli.features.email_processing.commands import emails_group, outbox_group
from triage_cli.features.rule_management.commands import rules_group


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose (DEBUG level) logging.")
@click.option(
    "--owner",
    "owner_id",
    envvar="TRIAGE_OWNER",
    default=None,
    help="Mailbox owner whose rules and actions to use.",
)
@click.option(
    "--database-url",
    envvar="TRIAGE_DATABASE_URL",
    default=None,
    help="SQLAlchemy URL of the rule store (defaults to a SQLite file in the data directory).",
)
@click.pass_context
def triage(ctx, verbose, owner_id, database_url):
    """
    triage: rule-based email triage for Gmail.

    Define rules once; triage matches them against incoming mail in priority
    order, runs quick actions immediately and queues slow ones for the
    outbox worker.
    """
    log_level = logging.DEBUG if verbose else logging.INFO
    running_tests = "PYTEST_CURRENT_TEST" in os.environ or os.environ.get("TRIAGE_TEST_MODE") == "1"
    logger = setup_logging(log_level=log_level, testing_mode=running_tests)

    # Keep anything the caller (e.g. a test runner) already put in ctx.obj
    ctx.ensure_object(dict)
    ctx.obj["logger"] = logger
    ctx.obj["owner_id"] = owner_id or ctx.obj.get("owner_id") or app_config.DEFAULT_OWNER_ID
    ctx.obj["database_url"] = database_url or ctx.obj.get("database_url") or app_config.DATABASE_URL

    if ctx.obj["owner_id"] != app_config.DEFAULT_OWNER_ID:
        logger.debug(f"Owner '{ctx.obj['owner_id']}' uses its own token. Skipping default-token pre-load.")
    elif "gmail_service" not in ctx.obj and "provider" not in ctx.obj:
        from triage_cli.core_api.gmail_api_service import get_authenticated_service

        try:
            service = get_authenticated_service(interactive_auth_ok=False)
            if service:
                ctx.obj["gmail_service"] = service
                logger.info("Successfully pre-loaded Gmail service non-interactively.")
            else:
                logger.info("Non-interactive Gmail service pre-load did not return a service. Login may be required.")
        except TriageError as e:
            logger.warning(f"TriageError during non-interactive service pre-load: {e}. Login may be required.")
    else:
        logger.debug("Provider already present in context. Skipping non-interactive pre-load.")

    logger.debug(
        f"triage started. Verbose: {verbose}, Owner: {ctx.obj['owner_id']}, Testing Mode: {running_tests}, "
        f"ctx.obj keys: {list(ctx.obj.keys())}"
    )


triage.add_command(rules_group)
triage.add_command(emails_group)
triage.add_command(outbox_group)


@triage.command()
@click.pass_context
def login(ctx):
    """Logs into Gmail and stores an authentication token for the current owner."""
    logger = ctx.obj.get("logger", logging.getLogger(__name__))
    from triage_cli.core_api.gmail_api_service import get_authenticated_service
    from triage_cli.core_api.provider import token_file_for_owner

    owner_id = ctx.obj["owner_id"]
    logger.info(f"Attempting Gmail login for owner '{owner_id}'...")
    try:
        service = get_authenticated_service(token_file=token_file_for_owner(owner_id))
    except TriageError as e:
        logger.error(f"Login failed: {e}", exc_info=True)
        click.secho(f"Login failed: {e.message}", fg="red")
        ctx.exit(1)
        return

    if not service:
        logger.error("Login failed. get_authenticated_service returned no service.")
        click.secho("Login failed. Could not establish Gmail service.", fg="red")
        ctx.exit(1)
        return

    if owner_id == app_config.DEFAULT_OWNER_ID:
        ctx.obj["gmail_service"] = service
    logger.info("Login successful! triage is connected to Gmail.")
    click.echo("Login successful! triage is connected to Gmail.")


if __name__ == "__main__":
    triage(obj={})
