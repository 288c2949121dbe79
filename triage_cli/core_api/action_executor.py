# triage_cli/core_api/action_executor.py
import logging
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeoutError
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

from triage_cli.core import config as app_config
from triage_cli.features.rule_management.models import (
    ACTION_TYPES,
    AsyncActionModel,
    RuleModel,
)
from .exceptions import InvalidParameterError, TriageError

logger = logging.getLogger(__name__)


# --- Plan types ---


@dataclass
class RuleEvaluation:
    """One rule evaluated against one email. Becomes one execution log row."""

    rule: RuleModel
    matched: bool
    error: Optional[str] = None


@dataclass
class PlannedRule:
    rule: RuleModel
    actions: list  # runnable actions in rule order; never contains stop_processing


@dataclass
class MatchPlan:
    email_id: str
    evaluations: List[RuleEvaluation] = field(default_factory=list)
    entries: List[PlannedRule] = field(default_factory=list)
    stopped_by_rule_id: Optional[str] = None


@dataclass
class RuleOutcome:
    actions_executed: int = 0
    actions_queued: int = 0
    errors: List[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.errors

    @property
    def error_message(self) -> Optional[str]:
        return "; ".join(self.errors) if self.errors else None


# --- Dispatch ---

ACTION_HANDLERS: Dict[str, Callable] = {
    "add_label": lambda provider, email_id, action: provider.modify_labels(email_id, add=[action.label_name]),
    "remove_label": lambda provider, email_id, action: provider.modify_labels(email_id, remove=[action.label_name]),
    "archive": lambda provider, email_id, action: provider.archive(email_id),
    "mark_read": lambda provider, email_id, action: provider.mark_read(email_id, read=action.read),
    "trash": lambda provider, email_id, action: provider.trash(email_id),
    "forward": lambda provider, email_id, action: provider.forward(email_id, action.to_address),
    "reply": lambda provider, email_id, action: provider.reply(email_id, action.reply_body, subject=action.reply_subject),
    "mark_spam": lambda provider, email_id, action: provider.mark_spam(email_id),
}

# Every action kind except the stop marker must have a handler.
_missing_handlers = set(ACTION_TYPES) - set(ACTION_HANDLERS) - {"stop_processing"}
if _missing_handlers:
    raise RuntimeError(f"No handler registered for action types: {sorted(_missing_handlers)}")


def run_action(provider, email_id: str, action) -> None:
    """Performs one action against the provider. Used inline and by the outbox."""
    handler = ACTION_HANDLERS.get(action.type)
    if handler is None:
        raise InvalidParameterError(f"Action type '{action.type}' cannot be executed.")
    handler(provider, email_id, action)


def _run_with_timeout(provider, email_id: str, action, timeout: float) -> None:
    # One worker per call: a call that never returns keeps only its own thread.
    executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="triage-sync")
    future = executor.submit(run_action, provider, email_id, action)
    try:
        future.result(timeout=timeout)
    except FutureTimeoutError:
        raise TimeoutError(f"{action.type} timed out after {timeout:g}s")
    finally:
        executor.shutdown(wait=False)


def execute_plan(
    store,
    provider,
    owner_id: str,
    email_id: str,
    plan: MatchPlan,
    call_timeout: Optional[float] = None,
) -> Dict[str, RuleOutcome]:
    """
    Runs every planned action for one email, rule by rule, in order.

    Synchronous actions hit the provider inline under call_timeout. A failure
    is recorded against its rule and the remaining actions still run.
    Asynchronous actions are written to the outbox as 'pending' rows.
    Returns a RuleOutcome per planned rule id.
    """
    timeout = call_timeout if call_timeout is not None else app_config.SYNC_ACTION_TIMEOUT_SECONDS
    outcomes: Dict[str, RuleOutcome] = {}

    for entry in plan.entries:
        outcome = outcomes.setdefault(entry.rule.id, RuleOutcome())
        for action in entry.actions:
            if not action.synchronous:
                try:
                    queued = store.enqueue_async_action(
                        AsyncActionModel(
                            owner_id=owner_id,
                            rule_id=entry.rule.id,
                            email_id=email_id,
                            action_type=action.type,
                            action_data=action,
                        )
                    )
                    outcome.actions_queued += 1
                    logger.debug(f"Queued {action.type} for email {email_id} (async action {queued.id}).")
                except TriageError as e:
                    logger.error(f"Could not queue {action.type} for email {email_id}: {e}", exc_info=True)
                    outcome.errors.append(f"{action.type}: {e.message}")
                continue

            try:
                _run_with_timeout(provider, email_id, action, timeout)
                outcome.actions_executed += 1
                logger.debug(f"Executed {action.type} on email {email_id} for rule '{entry.rule.name}'.")
            except TimeoutError as e:
                logger.warning(f"Rule '{entry.rule.name}': {e} on email {email_id}.")
                outcome.errors.append(str(e))
            except TriageError as e:
                logger.warning(f"Rule '{entry.rule.name}': {action.type} failed on email {email_id}: {e}")
                outcome.errors.append(f"{action.type}: {e.message}")
            except Exception as e:
                logger.error(
                    f"Unexpected error running {action.type} on email {email_id}: {e}", exc_info=True
                )
                outcome.errors.append(f"{action.type}: {e}")

    return outcomes
