# triage_cli/core_api/condition_evaluator.py
import logging
import re
from datetime import datetime, timezone
from functools import lru_cache
from typing import Any, Dict, List, Optional

from triage_cli.features.rule_management.models import (
    ConditionGroupModel,
    ConditionModel,
    NEGATED_OPERATORS,
    EmailContext,
    parse_iso_datetime,
)
from .exceptions import RuleValidationError

logger = logging.getLogger(__name__)


def _sender_domain(email: EmailContext) -> Optional[str]:
    if not email.from_address or "@" not in email.from_address:
        return None
    # "Name <user@example.com>" and bare addresses both end with the domain
    return email.from_address.rsplit("@", 1)[1].strip().rstrip(">").lower() or None


_FIELD_RESOLVERS = {
    "from": lambda email: email.from_address,
    "to": lambda email: ", ".join(email.to_addresses) if email.to_addresses else None,
    "subject": lambda email: email.subject,
    "body_snippet": lambda email: email.body_snippet,
    "sender_domain": _sender_domain,
    "has_label": lambda email: list(email.labels),
    "is_read": lambda email: email.is_read,
    "has_attachment": lambda email: email.has_attachment,
    "received_at": lambda email: email.received_at,
}


@lru_cache(maxsize=512)
def _compiled(pattern: str, case_sensitive: bool):
    return re.compile(pattern, 0 if case_sensitive else re.IGNORECASE)


def _as_utc(value: datetime) -> datetime:
    return value.replace(tzinfo=timezone.utc) if value.tzinfo is None else value


def _resolve(condition: ConditionModel, email: EmailContext) -> Any:
    resolver = _FIELD_RESOLVERS.get(condition.field)
    if resolver is None:
        # Only reachable by bypassing model validation; never treat as a silent non-match.
        raise RuleValidationError(f"Unknown condition field '{condition.field}'.")
    return resolver(email)


def _string_matches(operator: str, field_value: str, condition: ConditionModel) -> bool:
    if operator == "matches_regex":
        return _compiled(condition.value, condition.case_sensitive).search(field_value) is not None
    if condition.case_sensitive:
        haystack, needle = field_value, condition.value
    else:
        haystack, needle = field_value.lower(), condition.value.lower()
    if operator == "equals":
        return haystack == needle
    if operator == "contains":
        return needle in haystack
    if operator == "starts_with":
        return haystack.startswith(needle)
    if operator == "ends_with":
        return haystack.endswith(needle)
    raise RuleValidationError(f"Operator '{operator}' cannot be applied to text.")


def evaluate_condition(condition: ConditionModel, email: EmailContext) -> bool:
    """Evaluates one leaf predicate against the email."""
    field_value = _resolve(condition, email)
    operator = condition.operator

    if operator == "exists":
        if isinstance(field_value, list):
            return len(field_value) > 0
        if isinstance(field_value, str):
            return field_value.strip() != ""
        return field_value is not None

    if condition.field in ("is_read", "has_attachment"):
        return bool(field_value) == (condition.value.strip().lower() == "true")

    if condition.field == "received_at":
        if field_value is None:
            return False
        threshold = parse_iso_datetime(condition.value)
        received = _as_utc(field_value)
        return received < threshold if operator == "before" else received > threshold

    positive = NEGATED_OPERATORS.get(operator)
    if condition.field == "has_label":
        if positive:
            return not any(_string_matches(positive, label, condition) for label in field_value)
        return any(_string_matches(operator, label, condition) for label in field_value)

    if field_value is None:
        return False
    if positive:
        return not _string_matches(positive, str(field_value), condition)
    return _string_matches(operator, str(field_value), condition)


def evaluate(conditions, email: EmailContext) -> bool:
    """
    Evaluates a condition tree against an email.

    AND/OR short-circuit left to right. Pure: no I/O, no mutation of either argument.
    Raises RuleValidationError for a node the evaluator does not understand.
    """
    if isinstance(conditions, ConditionModel):
        return evaluate_condition(conditions, email)
    if isinstance(conditions, ConditionGroupModel):
        if conditions.op == "AND":
            return all(evaluate(child, email) for child in conditions.conditions)
        if conditions.op == "OR":
            return any(evaluate(child, email) for child in conditions.conditions)
        if conditions.op == "NOT":
            return not evaluate(conditions.conditions[0], email)
        raise RuleValidationError(f"Unknown condition group operator '{conditions.op}'.")
    raise RuleValidationError(f"Unsupported condition node: {conditions!r}")


def _iter_leaves(conditions):
    if isinstance(conditions, ConditionGroupModel):
        for child in conditions.conditions:
            yield from _iter_leaves(child)
    else:
        yield conditions


def explain(conditions, email: EmailContext) -> List[Dict[str, Any]]:
    """Per-leaf results for previews. Every leaf is evaluated; nothing short-circuits."""
    results = []
    for leaf in _iter_leaves(conditions):
        matched = evaluate_condition(leaf, email)
        field_value = _resolve(leaf, email)
        shown = leaf.value if leaf.value is not None else ""
        verb = "matches" if matched else "does not match"
        results.append(
            {
                "condition": leaf.model_dump(mode="json"),
                "matched": matched,
                "reason": f"Field '{leaf.field}' ({field_value}) {verb} {leaf.operator} '{shown}'",
            }
        )
    return results


def describe(conditions) -> str:
    """Human-readable rendering of a condition tree."""
    if isinstance(conditions, ConditionGroupModel):
        if conditions.op == "NOT":
            return f"NOT ({describe(conditions.conditions[0])})"
        parts = [describe(child) for child in conditions.conditions]
        if len(parts) == 1:
            return parts[0]
        return "(" + f" {conditions.op} ".join(parts) + ")"
    field_name = conditions.field.replace("_", " ")
    operator_name = conditions.operator.replace("_", " ")
    if conditions.operator == "exists":
        return f"{field_name} exists"
    return f'{field_name} {operator_name} "{conditions.value}"'
