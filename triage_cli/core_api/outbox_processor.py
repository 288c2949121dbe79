# triage_cli/core_api/outbox_processor.py
"""
Background execution of queued (asynchronous) rule actions.

Outbox rows move through pending -> processing -> completed | failed, with
processing -> pending for retries, throttling and releases. All of those
moves are decided by next_state(); the processor only persists its result
with a compare-and-set on the previous status.
"""
import logging
import random
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional

from triage_cli.core import config as app_config
from triage_cli.features.rule_management.models import AsyncActionModel, utcnow
from .action_executor import run_action
from .exceptions import (
    FatalExecutionError,
    InvalidParameterError,
    InvalidStateTransitionError,
    RateLimitedError,
    TriageError,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetryPolicy:
    max_retries: int = app_config.OUTBOX_MAX_RETRIES
    backoff_base: float = app_config.BACKOFF_BASE_SECONDS
    backoff_max: float = app_config.BACKOFF_MAX_SECONDS
    jitter: float = app_config.BACKOFF_JITTER


def backoff_delay(attempt: int, policy: RetryPolicy, rng=random) -> float:
    """Seconds to wait before attempt+1: min(base * 2**attempt, max), then +/- jitter."""
    delay = min(policy.backoff_base * (2 ** attempt), policy.backoff_max)
    if policy.jitter:
        delay *= 1 + rng.uniform(-policy.jitter, policy.jitter)
    return max(delay, 0.0)


# outcome -> statuses it may be applied to
_TRANSITION_SOURCES = {
    "claim": ("pending",),
    "succeed": ("processing",),
    "fail_retryable": ("processing",),
    "fail_fatal": ("processing",),
    "rate_limited": ("processing",),
    "release": ("processing",),
    "stale": ("processing",),
}
OUTCOMES = tuple(_TRANSITION_SOURCES)


def next_state(
    row: AsyncActionModel,
    outcome: str,
    now: datetime,
    policy: RetryPolicy,
    error: Optional[str] = None,
    retry_after: Optional[float] = None,
    rng=random,
) -> AsyncActionModel:
    """
    Returns the row as it must look after `outcome`. Never mutates `row`.

    - fail_retryable / stale: back to pending with retry_count + 1 while
      retry_count < max_retries, otherwise failed.
    - rate_limited: back to pending with throttle_count + 1; retry_count is
      untouched. Delayed by retry_after, or by backoff over throttle_count.
    - release: back to pending with no counter change.

    Raises InvalidStateTransitionError for an unknown outcome or a status
    the outcome cannot be applied to.
    """
    sources = _TRANSITION_SOURCES.get(outcome)
    if sources is None:
        raise InvalidStateTransitionError(f"Unknown outbox outcome '{outcome}'.")
    if row.status not in sources:
        raise InvalidStateTransitionError(
            f"Cannot apply '{outcome}' to async action {row.id} in status '{row.status}'."
        )

    changes: Dict = {"updated_at": now}
    if outcome == "claim":
        changes.update(status="processing", claimed_at=now)
    elif outcome == "succeed":
        changes.update(status="completed", completed_at=now, error_message=None)
    elif outcome == "fail_fatal":
        changes.update(status="failed", completed_at=now, error_message=error)
    elif outcome in ("fail_retryable", "stale"):
        if outcome == "stale" and error is None:
            error = "Processing claim expired before the action finished."
        if row.retry_count < policy.max_retries:
            changes.update(
                status="pending",
                retry_count=row.retry_count + 1,
                error_message=error,
                claimed_at=None,
                available_at=now + timedelta(seconds=backoff_delay(row.retry_count, policy, rng)),
            )
        else:
            changes.update(status="failed", completed_at=now, error_message=error)
    elif outcome == "rate_limited":
        delay = retry_after if retry_after is not None else backoff_delay(row.throttle_count, policy, rng)
        changes.update(
            status="pending",
            throttle_count=row.throttle_count + 1,
            error_message=error,
            claimed_at=None,
            available_at=now + timedelta(seconds=delay),
        )
    elif outcome == "release":
        changes.update(status="pending", claimed_at=None)
    return row.model_copy(update=changes)


class OutboxProcessor:
    """
    Drains the async action outbox.

    provider_factory(owner_id) must return a ProviderClient for that owner;
    it is called at most once per owner per drain, and clients are never
    shared across owners.
    """

    def __init__(
        self,
        store,
        provider_factory: Callable,
        policy: Optional[RetryPolicy] = None,
        concurrency: Optional[int] = None,
        clock: Callable[[], datetime] = utcnow,
        rng=random,
    ):
        self.store = store
        self.provider_factory = provider_factory
        self.policy = policy or RetryPolicy()
        self.concurrency = concurrency or app_config.OUTBOX_CONCURRENCY
        self.clock = clock
        self.rng = rng

    def _apply(self, row: AsyncActionModel, outcome: str, error: Optional[str] = None, retry_after=None) -> str:
        """Persists the transition. Returns the stats bucket it belongs to."""
        new_row = next_state(row, outcome, self.clock(), self.policy, error=error, retry_after=retry_after, rng=self.rng)
        # A processing row is only ours while the claim timestamp is the one we hold.
        if not self.store.compare_and_set_action(
            new_row, expected_status=row.status, expected_claimed_at=row.claimed_at
        ):
            logger.warning(f"Async action {row.id} changed underneath us; '{outcome}' not applied.")
            return "conflicts"

        if new_row.status == "completed":
            logger.info(f"Async action {row.id} ({row.action_type} on {row.email_id}) completed.")
            return "processed"
        if new_row.status == "failed":
            logger.error(f"Async action {row.id} ({row.action_type}) failed permanently: {error}")
            return "failed"
        if outcome == "release":
            logger.info(f"Async action {row.id} released back to pending.")
            return "released"
        logger.warning(
            f"Async action {row.id} ({row.action_type}) will retry at {new_row.available_at.isoformat()} "
            f"(retry_count={new_row.retry_count}, throttle_count={new_row.throttle_count}): {error}"
        )
        return "retried"

    def _process_one(self, row: AsyncActionModel, provider_for, stop_event) -> str:
        if stop_event is not None and stop_event.is_set():
            return self._apply(row, "release")
        try:
            provider = provider_for(row.owner_id)
            run_action(provider, row.email_id, row.action_data)
        except RateLimitedError as e:
            return self._apply(row, "rate_limited", error=e.message, retry_after=e.retry_after)
        except (FatalExecutionError, InvalidParameterError) as e:
            return self._apply(row, "fail_fatal", error=e.message)
        except TriageError as e:
            return self._apply(row, "fail_retryable", error=e.message)
        except Exception as e:
            logger.error(f"Unexpected error executing async action {row.id}: {e}", exc_info=True)
            return self._apply(row, "fail_retryable", error=str(e) or e.__class__.__name__)
        return self._apply(row, "succeed")

    def process_pending_actions(
        self, max_batch: Optional[int] = None, stop_event: Optional[threading.Event] = None
    ) -> Dict[str, int]:
        """
        Claims up to max_batch due rows and executes them concurrently.

        One row's failure never affects its siblings. If stop_event is set
        while the batch runs, rows that have not started yet are released
        back to pending; rows already running finish normally.
        """
        stats = {"claimed": 0, "processed": 0, "failed": 0, "retried": 0, "released": 0, "conflicts": 0}
        if stop_event is not None and stop_event.is_set():
            return stats

        claimed = self.store.claim_pending_actions(max_batch or app_config.OUTBOX_BATCH_SIZE, now=self.clock())
        stats["claimed"] = len(claimed)
        if not claimed:
            logger.debug("No pending async actions to process.")
            return stats
        logger.info(f"Claimed {len(claimed)} async actions.")

        providers: Dict[str, object] = {}
        providers_lock = threading.Lock()

        def provider_for(owner_id: str):
            with providers_lock:
                if owner_id not in providers:
                    providers[owner_id] = self.provider_factory(owner_id)
                return providers[owner_id]

        with ThreadPoolExecutor(
            max_workers=min(self.concurrency, len(claimed)), thread_name_prefix="triage-outbox"
        ) as pool:
            futures = [pool.submit(self._process_one, row, provider_for, stop_event) for row in claimed]
            for future in futures:
                stats[future.result()] += 1

        logger.info(f"Outbox batch finished: {stats}")
        return stats

    def sweep_stale(self, timeout_seconds: Optional[float] = None) -> Dict[str, int]:
        """Returns rows stuck in 'processing' past the timeout to pending (or failed when out of retries)."""
        timeout = timeout_seconds if timeout_seconds is not None else app_config.STALE_PROCESSING_TIMEOUT_SECONDS
        stale_rows = self.store.find_stale_processing(self.clock() - timedelta(seconds=timeout))
        stats = {"swept": len(stale_rows), "retried": 0, "failed": 0, "conflicts": 0}
        for row in stale_rows:
            stats[self._apply(row, "stale")] += 1
        if stale_rows:
            logger.warning(f"Swept {len(stale_rows)} stale async actions: {stats}")
        return stats

    def run_forever(
        self,
        poll_interval: Optional[float] = None,
        stop_event: Optional[threading.Event] = None,
        max_batch: Optional[int] = None,
    ) -> Dict[str, int]:
        """Sweeps, drains and sleeps until stop_event is set. Returns running totals."""
        interval = poll_interval if poll_interval is not None else app_config.OUTBOX_POLL_INTERVAL_SECONDS
        stop_event = stop_event or threading.Event()
        totals = {"claimed": 0, "processed": 0, "failed": 0, "retried": 0, "released": 0, "conflicts": 0}
        logger.info(f"Outbox worker started (poll interval {interval:g}s, concurrency {self.concurrency}).")

        while not stop_event.is_set():
            try:
                self.sweep_stale()
                stats = self.process_pending_actions(max_batch=max_batch, stop_event=stop_event)
            except TriageError as e:
                logger.error(f"Outbox worker iteration failed: {e}", exc_info=True)
                stop_event.wait(interval)
                continue
            for key, value in stats.items():
                totals[key] += value
            if stats["claimed"] == 0:
                stop_event.wait(interval)

        logger.info(f"Outbox worker stopped. Totals: {totals}")
        return totals

    def get_stats(self, owner_id: Optional[str] = None) -> Dict[str, int]:
        return self.store.count_actions_by_status(owner_id)
