# triage_cli/core_api/rules_api_service.py
import logging
import time
from collections import defaultdict
from typing import Any, Dict, List, Optional, Union

from pydantic import ValidationError

from triage_cli.core import config as app_config
from triage_cli.features.rule_management.models import (
    EmailContext,
    ExecutionModel,
    RuleModel,
    utcnow,
)
from . import condition_evaluator
from .action_executor import MatchPlan, PlannedRule, RuleEvaluation, execute_plan
from .exceptions import (
    InvalidParameterError,
    RuleConflictError,
    RuleNotFoundError,
    RuleValidationError,
    TriageError,
)

logger = logging.getLogger(__name__)

# Fields a caller may never set through create/update.
_SERVER_MANAGED_FIELDS = ("id", "owner_id", "execution_count", "last_executed_at", "created_at", "updated_at")


# --- Ordering ---
def rule_sort_key(rule: RuleModel):
    """Lower priority value first, then oldest, then id. Total and deterministic."""
    return (rule.priority, rule.created_at, rule.id)


def sort_rules(rules: List[RuleModel]) -> List[RuleModel]:
    return sorted(rules, key=rule_sort_key)


# --- Validation helpers ---
def _format_validation_errors(e: ValidationError) -> List[str]:
    errors = []
    for err in e.errors():
        location = ".".join(str(part) for part in err.get("loc", ()))
        errors.append(f"{location}: {err.get('msg')}" if location else err.get("msg", ""))
    return errors


def _build_rule(data: Dict[str, Any]) -> RuleModel:
    try:
        return RuleModel(**data)
    except ValidationError as e:
        errors = _format_validation_errors(e)
        logger.warning(f"Rule validation failed: {errors}")
        raise RuleValidationError(f"Invalid rule: {'; '.join(errors)}", errors=errors, original_exception=e)


def _coerce_email(email: Union[EmailContext, Dict[str, Any]]) -> EmailContext:
    if isinstance(email, EmailContext):
        return email
    try:
        return EmailContext(**email)
    except ValidationError as e:
        errors = _format_validation_errors(e)
        raise RuleValidationError(f"Invalid email: {'; '.join(errors)}", errors=errors, original_exception=e)


# --- Rule CRUD ---
def create_rule(store, owner_id: str, rule_data: Dict[str, Any]) -> RuleModel:
    """
    Validates and stores a new rule for owner_id.

    Raises:
        InvalidParameterError: owner mismatch or per-owner rule limit reached.
        RuleValidationError: the rule is malformed. Nothing is stored.
        RuleConflictError: the owner already has a rule with this name.
    """
    if not owner_id:
        raise InvalidParameterError("owner_id is required to create a rule.")
    if not isinstance(rule_data, dict):
        raise InvalidParameterError("Rule data must be a JSON object.")
    supplied_owner = rule_data.get("owner_id")
    if supplied_owner is not None and supplied_owner != owner_id:
        raise InvalidParameterError("A rule cannot be created for another owner.")

    data = {k: v for k, v in rule_data.items() if k not in _SERVER_MANAGED_FIELDS}
    data["owner_id"] = owner_id
    rule = _build_rule(data)

    if store.count_rules(owner_id) >= app_config.MAX_RULES_PER_OWNER:
        raise InvalidParameterError(
            f"Rule limit reached: an owner may have at most {app_config.MAX_RULES_PER_OWNER} rules."
        )
    existing = store.find_rule_by_name(owner_id, rule.name)
    if existing:
        raise RuleConflictError(f"A rule with the name '{rule.name}' already exists (ID: {existing.id}).")

    store.insert_rule(rule)
    logger.info(f"Rule '{rule.name}' (ID: {rule.id}) created for owner {owner_id}.")
    return rule


def get_rule(store, owner_id: str, rule_id_or_name: str) -> RuleModel:
    """Looks a rule up by ID, then by name. Raises RuleNotFoundError."""
    if not rule_id_or_name:
        raise InvalidParameterError("Rule ID or name must be provided.")
    rule = store.get_rule(owner_id, rule_id_or_name) or store.find_rule_by_name(owner_id, rule_id_or_name)
    if rule is None:
        raise RuleNotFoundError(f"Rule '{rule_id_or_name}' not found.")
    return rule


def list_rules(store, owner_id: str, enabled_only: bool = False) -> List[RuleModel]:
    return sort_rules(store.list_rules(owner_id, enabled_only=enabled_only))


def _with_conjunction(conditions: Dict[str, Any], conjunction: Any) -> Dict[str, Any]:
    """Switches the top-level AND/OR group of a stored condition tree to the new conjunction."""
    if conjunction not in ("AND", "OR"):
        raise RuleValidationError(f"condition_conjunction must be 'AND' or 'OR', got {conjunction!r}.")
    if conditions.get("op") not in ("AND", "OR"):
        raise RuleValidationError(
            "condition_conjunction can only change a top-level AND/OR group; send 'conditions' instead."
        )
    return dict(conditions, op=conjunction)


def update_rule(store, owner_id: str, rule_id_or_name: str, patch: Dict[str, Any]) -> RuleModel:
    """Applies a partial update and re-validates the whole rule before saving."""
    if not isinstance(patch, dict) or not patch:
        raise InvalidParameterError("An update must change at least one field.")
    for key in _SERVER_MANAGED_FIELDS:
        if key in patch:
            raise InvalidParameterError(f"Field '{key}' cannot be updated.")

    existing = get_rule(store, owner_id, rule_id_or_name)
    merged = existing.model_dump(mode="json")
    merged.update(patch)
    if "condition_conjunction" in patch and "conditions" not in patch:
        merged["conditions"] = _with_conjunction(merged["conditions"], merged.pop("condition_conjunction"))
    merged["updated_at"] = utcnow()
    updated = _build_rule(merged)

    if updated.name.lower() != existing.name.lower():
        clash = store.find_rule_by_name(owner_id, updated.name)
        if clash and clash.id != existing.id:
            raise RuleConflictError(f"A rule with the name '{updated.name}' already exists (ID: {clash.id}).")

    if not store.save_rule(updated):
        raise RuleNotFoundError(f"Rule '{rule_id_or_name}' not found.")
    logger.info(f"Rule '{updated.name}' (ID: {updated.id}) updated. Fields: {sorted(patch)}")
    return updated


def delete_rule(store, owner_id: str, rule_id_or_name: str) -> bool:
    """Deletes a rule by its ID or name. Raises RuleNotFoundError."""
    rule = get_rule(store, owner_id, rule_id_or_name)
    if not store.delete_rule(owner_id, rule.id):
        raise RuleNotFoundError(f"Rule '{rule_id_or_name}' not found.")
    logger.info(f"Rule '{rule.name}' (ID: {rule.id}) deleted.")
    return True


# --- Matching ---
def _plan_for(rules: List[RuleModel], email: EmailContext) -> MatchPlan:
    plan = MatchPlan(email_id=email.email_id)
    for rule in sort_rules(rules):
        try:
            matched = condition_evaluator.evaluate(rule.conditions, email)
        except RuleValidationError as e:
            logger.error(f"Rule '{rule.name}' (ID: {rule.id}) could not be evaluated: {e}", exc_info=True)
            plan.evaluations.append(RuleEvaluation(rule=rule, matched=False, error=e.message))
            continue
        plan.evaluations.append(RuleEvaluation(rule=rule, matched=matched))
        logger.debug(f"Rule '{rule.name}' vs email {email.email_id}: match={matched}")
        if not matched:
            continue
        plan.entries.append(PlannedRule(rule=rule, actions=rule.runnable_actions))
        if rule.stops_processing:
            plan.stopped_by_rule_id = rule.id
            logger.debug(f"Rule '{rule.name}' stops processing for email {email.email_id}.")
            break
    return plan


def match_and_plan(store, owner_id: str, email: Union[EmailContext, Dict[str, Any]]) -> MatchPlan:
    """Evaluates the owner's enabled rules in order and plans the actions to run. No side effects."""
    email = _coerce_email(email)
    return _plan_for(store.list_rules(owner_id, enabled_only=True), email)


def test_rule(
    rule: Union[RuleModel, Dict[str, Any]], sample_email: Union[EmailContext, Dict[str, Any]]
) -> Dict[str, Any]:
    """Previews one rule against a sample email. Stores nothing and calls no provider."""
    if not isinstance(rule, RuleModel):
        data = dict(rule)
        data.setdefault("owner_id", app_config.DEFAULT_OWNER_ID)
        rule = _build_rule(data)
    email = _coerce_email(sample_email)

    matches = condition_evaluator.evaluate(rule.conditions, email)
    return {
        "rule_id": rule.id,
        "rule_name": rule.name,
        "matches": matches,
        "conditions": condition_evaluator.describe(rule.conditions),
        "condition_results": condition_evaluator.explain(rule.conditions, email),
        "actions_that_would_execute": (
            [a.model_dump(mode="json") for a in rule.actions] if matches else []
        ),
    }


test_rule.__test__ = False  # keep pytest from collecting it when imported into test modules


def process_email(
    store,
    provider,
    owner_id: str,
    email: Union[EmailContext, Dict[str, Any]],
    triggered_by: str = "email_sync",
    call_timeout: Optional[float] = None,
) -> Dict[str, Any]:
    """
    Runs the owner's rules against one email.

    Writes one execution record per evaluated rule and bumps the hit counters
    of matched rules. Provider failures are reported in the summary, not raised.
    """
    email = _coerce_email(email)
    started = time.monotonic()
    plan = match_and_plan(store, owner_id, email)
    outcomes = execute_plan(store, provider, owner_id, email.email_id, plan, call_timeout=call_timeout)
    elapsed_ms = int((time.monotonic() - started) * 1000)

    now = utcnow()
    executions = []
    errors = []
    for evaluation in plan.evaluations:
        outcome = outcomes.get(evaluation.rule.id)
        error_message = evaluation.error or (outcome.error_message if outcome else None)
        if error_message:
            errors.append({"rule_id": evaluation.rule.id, "email_id": email.email_id, "details": error_message})
        executions.append(
            ExecutionModel(
                rule_id=evaluation.rule.id,
                email_id=email.email_id,
                owner_id=owner_id,
                matched=evaluation.matched,
                actions_executed=outcome.actions_executed if outcome else 0,
                actions_queued=outcome.actions_queued if outcome else 0,
                success=error_message is None,
                error_message=error_message,
                execution_time_ms=elapsed_ms,
                triggered_by=triggered_by,
                created_at=now,
            )
        )
    store.insert_executions(executions)
    store.record_rule_hits(owner_id, [entry.rule.id for entry in plan.entries], now)

    summary = {
        "email_id": email.email_id,
        "rules_evaluated": len(plan.evaluations),
        "rules_matched": len(plan.entries),
        "matched_rule_ids": [entry.rule.id for entry in plan.entries],
        "actions_executed": sum(o.actions_executed for o in outcomes.values()),
        "actions_queued": sum(o.actions_queued for o in outcomes.values()),
        "stopped_by_rule_id": plan.stopped_by_rule_id,
        "errors": errors,
        "execution_time_ms": elapsed_ms,
    }
    logger.info(
        f"Processed email {email.email_id}: {summary['rules_matched']}/{summary['rules_evaluated']} rules matched, "
        f"{summary['actions_executed']} executed, {summary['actions_queued']} queued, {len(errors)} errors."
    )
    return summary


def process_mailbox(
    store,
    provider,
    owner_id: str,
    query: Optional[str] = None,
    email_ids: Optional[List[str]] = None,
    scan_limit: Optional[int] = None,
    dry_run: bool = False,
    triggered_by: str = "manual",
) -> Dict[str, Any]:
    """
    Fetches emails (by explicit IDs, or by listing the mailbox with an optional
    query) and runs process_email on each. With dry_run, rules are only
    matched and the planned actions are counted.
    """
    logger.info(f"Starting rule processing. Dry run: {dry_run}. Query: '{query}'. Explicit IDs: {len(email_ids or [])}")
    summary: Dict[str, Any] = {
        "total_emails_scanned": 0,
        "emails_matching_any_rule": 0,
        "actions_executed": 0,
        "actions_queued": 0,
        "actions_planned": defaultdict(int),
        "dry_run": dry_run,
        "errors": [],
    }

    if email_ids is None:
        email_ids = []
        next_page_token = None
        while scan_limit is None or len(email_ids) < scan_limit:
            batch_size = 50 if scan_limit is None else min(50, scan_limit - len(email_ids))
            try:
                page = provider.list_messages(query=query, max_results=batch_size, page_token=next_page_token)
            except TriageError as e:
                logger.error(f"Error listing emails: {e}", exc_info=True)
                summary["errors"].append({"error_type": "EMAIL_FETCH_FAILURE", "details": e.message})
                break
            stubs = page.get("messages", [])
            email_ids.extend(stub["id"] for stub in stubs)
            next_page_token = page.get("nextPageToken")
            if not stubs or not next_page_token:
                break
    elif scan_limit is not None:
        email_ids = email_ids[:scan_limit]

    rules = store.list_rules(owner_id, enabled_only=True)
    for email_id in email_ids:
        summary["total_emails_scanned"] += 1
        try:
            email = provider.get_message(email_id)
        except TriageError as e:
            logger.error(f"Could not fetch email {email_id}: {e}", exc_info=True)
            summary["errors"].append({"email_id": email_id, "error_type": "DETAIL_FETCH_FAILURE", "details": e.message})
            continue

        if dry_run:
            plan = _plan_for(rules, email)
            if plan.entries:
                summary["emails_matching_any_rule"] += 1
            for entry in plan.entries:
                for action in entry.actions:
                    summary["actions_planned"][action.type] += 1
            continue

        result = process_email(store, provider, owner_id, email, triggered_by=triggered_by)
        if result["rules_matched"]:
            summary["emails_matching_any_rule"] += 1
        summary["actions_executed"] += result["actions_executed"]
        summary["actions_queued"] += result["actions_queued"]
        summary["errors"].extend(result["errors"])

    summary["actions_planned"] = dict(summary["actions_planned"])
    logger.info(f"Rule processing finished. Results: {summary}")
    return summary


# --- Stats ---
def get_rule_stats(store, owner_id: str) -> Dict[str, Any]:
    totals = store.execution_totals(owner_id)
    most_active = [
        r for r in store.most_active_rules(owner_id, limit=10) if r.execution_count > 0
    ]
    return {
        "total_rules": store.count_rules(owner_id),
        "enabled_rules": store.count_rules(owner_id, enabled_only=True),
        "total_executions": totals["total"],
        "matched_executions": totals["matched"],
        "successful_executions": totals["successful"],
        "failed_executions": totals["failed"],
        "most_active_rules": [
            {
                "id": r.id,
                "name": r.name,
                "execution_count": r.execution_count,
                "last_executed_at": r.last_executed_at,
            }
            for r in most_active
        ],
    }


# --- Built-in templates ---
DEFAULT_RULE_TEMPLATES: Dict[str, Dict[str, Any]] = {
    "IMPORTANT_SENDER": {
        "name": "Important Sender",
        "description": "Mark emails from important senders as read",
        "priority": 10,
        "is_enabled": False,
        "conditions": [{"field": "from", "operator": "equals", "value": "important@company.com"}],
        "actions": [{"type": "mark_read"}],
    },
    "NEWSLETTER_ARCHIVE": {
        "name": "Archive Newsletters",
        "description": "Automatically archive emails from newsletters",
        "priority": 100,
        "system_type": "newsletter",
        "conditions": [
            {"field": "from", "operator": "contains", "value": "noreply"},
            {"field": "body_snippet", "operator": "contains", "value": "unsubscribe"},
        ],
        "actions": [{"type": "archive"}, {"type": "mark_read"}],
    },
    "MARKETING_LABEL": {
        "name": "Label Marketing Emails",
        "description": "Label promotional emails from marketing",
        "priority": 100,
        "system_type": "marketing",
        "conditions": [
            {"field": "subject", "operator": "contains", "value": "sale"},
            {"field": "body_snippet", "operator": "contains", "value": "unsubscribe"},
        ],
        "actions": [{"type": "add_label", "label_name": "Marketing"}],
    },
}


def install_default_rules(store, owner_id: str) -> Dict[str, List[str]]:
    """Creates the built-in rules the owner does not already have (matched by name)."""
    installed, skipped = [], []
    for template in DEFAULT_RULE_TEMPLATES.values():
        if store.find_rule_by_name(owner_id, template["name"]):
            skipped.append(template["name"])
            continue
        rule = create_rule(store, owner_id, template)
        installed.append(rule.name)
    logger.info(f"Default rules for {owner_id}: installed {installed}, skipped {skipped}.")
    return {"installed": installed, "skipped": skipped}
