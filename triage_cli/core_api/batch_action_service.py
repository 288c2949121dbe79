# triage_cli/core_api/batch_action_service.py
import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Dict, List, Optional, Tuple, Union

from pydantic import ValidationError

from triage_cli.core import config as app_config
from triage_cli.features.rule_management.models import (
    BATCH_ACTION_TYPES,
    LABEL_BATCH_ACTIONS,
    BatchItemModel,
    BatchItemResult,
)
from .exceptions import RuleValidationError, TriageError

logger = logging.getLogger(__name__)

BatchItem = Union[BatchItemModel, Dict[str, Any]]


def _field(item: BatchItem, *names: str) -> Any:
    if isinstance(item, BatchItemModel):
        return getattr(item, names[0])
    if isinstance(item, dict):
        for name in names:
            if name in item:
                return item[name]
    return None


def validate_batch_actions(items: List[BatchItem]) -> Dict[str, Any]:
    """Checks a bulk request before anything is sent to the provider. Returns {'valid', 'errors'}."""
    errors: List[str] = []
    if not items:
        errors.append("No actions provided")
    elif len(items) > app_config.BATCH_MAX_ITEMS:
        errors.append(f"Too many actions (max {app_config.BATCH_MAX_ITEMS})")

    for index, item in enumerate(items or []):
        email_id = _field(item, "email_id", "emailId")
        action = _field(item, "action")
        label_id = _field(item, "label_id", "labelId")
        if not isinstance(email_id, str) or not email_id.strip():
            errors.append(f"Item {index}: invalid email ID")
        if action not in BATCH_ACTION_TYPES:
            errors.append(f"Item {index}: invalid action '{action}'")
        elif action in LABEL_BATCH_ACTIONS and not label_id:
            errors.append(f"Item {index}: label ID required for {action} action")

    return {"valid": not errors, "errors": errors}


def _to_models(items: List[BatchItem]) -> List[BatchItemModel]:
    models = []
    for index, item in enumerate(items):
        if isinstance(item, BatchItemModel):
            models.append(item)
            continue
        try:
            models.append(BatchItemModel(**item))
        except (ValidationError, TypeError) as e:
            raise RuleValidationError(f"Item {index} is not a valid batch action: {e}", original_exception=e)
    return models


def _call_group(provider, action: str, label_id: Optional[str], email_ids: List[str]):
    if action == "mark_read":
        return provider.batch_mark_read(email_ids, read=True)
    if action == "mark_unread":
        return provider.batch_mark_read(email_ids, read=False)
    if action == "archive":
        return provider.batch_archive(email_ids)
    if action == "trash":
        return provider.batch_trash(email_ids)
    if action == "add_label":
        return provider.batch_modify_labels(email_ids, add=[label_id])
    if action == "remove_label":
        return provider.batch_modify_labels(email_ids, remove=[label_id])
    raise RuleValidationError(f"Invalid action '{action}'")


def _call_single(provider, action: str, label_id: Optional[str], email_id: str) -> None:
    if action == "mark_read":
        provider.mark_read(email_id, read=True)
    elif action == "mark_unread":
        provider.mark_read(email_id, read=False)
    elif action == "archive":
        provider.archive(email_id)
    elif action == "trash":
        provider.trash(email_id)
    elif action == "add_label":
        provider.modify_labels(email_id, add=[label_id])
    elif action == "remove_label":
        provider.modify_labels(email_id, remove=[label_id])
    else:
        raise RuleValidationError(f"Invalid action '{action}'")


def _run_individually(provider, action, label_id, indexed) -> List[Tuple[int, BatchItemResult]]:
    results = []
    for index, item in indexed:
        try:
            _call_single(provider, action, label_id, item.email_id)
            results.append((index, BatchItemResult(email_id=item.email_id, action=action, success=True)))
        except TriageError as e:
            results.append(
                (index, BatchItemResult(email_id=item.email_id, action=action, success=False, error=e.message))
            )
        except Exception as e:
            logger.error(f"Unexpected error running {action} on {item.email_id}: {e}", exc_info=True)
            results.append((index, BatchItemResult(email_id=item.email_id, action=action, success=False, error=str(e))))
    return results


def _run_chunk(provider, chunk: List[Tuple[int, BatchItemModel]]) -> List[Tuple[int, BatchItemResult]]:
    """Executes one chunk grouped by (action, label). Returns (input index, result) pairs."""
    groups: Dict[Tuple[str, Optional[str]], List[Tuple[int, BatchItemModel]]] = {}
    for index, item in chunk:
        groups.setdefault((item.action, item.label_id), []).append((index, item))

    results: List[Tuple[int, BatchItemResult]] = []
    for (action, label_id), indexed in groups.items():
        email_ids = [item.email_id for _, item in indexed]
        try:
            item_results = _call_group(provider, action, label_id, email_ids)
            if len(item_results) != len(indexed):
                raise TriageError(f"Provider returned {len(item_results)} results for {len(indexed)} items.")
        except Exception as e:
            logger.warning(f"Batched {action} for {len(indexed)} emails failed ({e}); retrying one by one.")
            results.extend(_run_individually(provider, action, label_id, indexed))
            continue
        for (index, item), item_result in zip(indexed, item_results):
            results.append(
                (
                    index,
                    BatchItemResult(
                        email_id=item.email_id, action=action, success=item_result.success, error=item_result.error
                    ),
                )
            )
    return results


def execute_batch_actions(
    provider,
    items: List[BatchItem],
    chunk_size: Optional[int] = None,
    concurrency: Optional[int] = None,
) -> List[BatchItemResult]:
    """
    Applies bulk actions and returns exactly one result per item, in input order.

    Items are split into provider-sized chunks that run concurrently. Within a
    chunk, items sharing (action, label) use one batched provider call; if that
    call fails as a whole, its items are retried one by one so a single bad
    email never fails its neighbours.
    """
    models = _to_models(items)
    if not models:
        return []
    size = max(1, min(chunk_size or app_config.BATCH_CHUNK_SIZE, provider.max_batch_size))
    indexed = list(enumerate(models))
    chunks = [indexed[i:i + size] for i in range(0, len(indexed), size)]
    workers = max(1, min(concurrency or app_config.BATCH_CONCURRENCY, len(chunks)))
    logger.info(f"Executing {len(models)} batch actions in {len(chunks)} chunks (concurrency {workers}).")

    results: List[Optional[BatchItemResult]] = [None] * len(models)
    with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="triage-batch") as pool:
        for chunk_results in pool.map(lambda chunk: _run_chunk(provider, chunk), chunks):
            for index, result in chunk_results:
                results[index] = result
    return results


def create_optimistic_updates(items: List[BatchItem]) -> Dict[str, Dict[str, Any]]:
    """Per-email field deltas a client can apply before the provider confirms."""
    updates: Dict[str, Dict[str, Any]] = {}
    for item in _to_models(items):
        delta = updates.setdefault(item.email_id, {})
        if item.action == "mark_read":
            delta["is_read"] = True
        elif item.action == "mark_unread":
            delta["is_read"] = False
        elif item.action == "archive":
            delta["archived"] = True
        elif item.action == "trash":
            delta["trashed"] = True
        elif item.action == "add_label":
            delta.setdefault("labels", {}).setdefault("add", []).append(item.label_id)
        elif item.action == "remove_label":
            delta.setdefault("labels", {}).setdefault("remove", []).append(item.label_id)
    return updates


def run_bulk_action(provider, items: List[BatchItem]) -> Dict[str, Any]:
    """Validates, executes and summarises a bulk request. Raises RuleValidationError for a bad request."""
    validation = validate_batch_actions(items)
    if not validation["valid"]:
        logger.warning(f"Rejected bulk request: {validation['errors']}")
        raise RuleValidationError(
            f"Invalid bulk request: {'; '.join(validation['errors'])}", errors=validation["errors"]
        )

    results = execute_batch_actions(provider, items)
    failed = [r for r in results if not r.success]
    summary = {
        "processed": len(results),
        "successful": len(results) - len(failed),
        "failed": len(failed),
        "results": [r.model_dump() for r in results],
        "errors": [f"{r.email_id}: {r.error}" for r in failed],
        "optimistic_updates": create_optimistic_updates(items),
    }
    logger.info(f"Bulk action finished: {summary['successful']} succeeded, {summary['failed']} failed.")
    return summary
