# triage_cli/core_api/rule_store.py
"""
Persistence for rules, the execution log and the async action outbox.

Backed by SQLAlchemy so any SQL database works; the default is a SQLite file
in the data directory. Every rule and execution query is owner-scoped. The
outbox claim is the only system-wide operation: it flips rows from 'pending'
to 'processing' with a conditional UPDATE, so concurrent workers (threads or
processes) can never claim the same row twice.
"""
import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    create_engine,
    func,
    select,
    update,
)
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from triage_cli.core import config as app_config
from triage_cli.features.rule_management.models import (
    AsyncActionModel,
    ExecutionModel,
    RuleModel,
    utcnow,
)
from .exceptions import RuleConflictError, RuleStorageError

logger = logging.getLogger(__name__)

Base = declarative_base()


class RuleRecord(Base):
    __tablename__ = "rules"

    id = Column(String(36), primary_key=True)
    owner_id = Column(String(255), nullable=False, index=True)
    name = Column(String(100), nullable=False)
    name_key = Column(String(100), nullable=False)  # lower-cased name, for uniqueness
    description = Column(Text)
    is_enabled = Column(Boolean, nullable=False, default=True)
    priority = Column(Integer, nullable=False, default=0)
    conditions = Column(JSON, nullable=False)
    actions = Column(JSON, nullable=False)
    system_type = Column(String(50))
    execution_count = Column(Integer, nullable=False, default=0)
    last_executed_at = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        UniqueConstraint("owner_id", "name_key", name="uix_rule_owner_name"),
    )


class ExecutionRecord(Base):
    """Append-only. Nothing in this module updates or deletes these rows."""

    __tablename__ = "rule_executions"

    id = Column(String(36), primary_key=True)
    rule_id = Column(String(36), nullable=False, index=True)
    email_id = Column(String(255), nullable=False)
    owner_id = Column(String(255), nullable=False, index=True)
    matched = Column(Boolean, nullable=False)
    actions_executed = Column(Integer, nullable=False, default=0)
    actions_queued = Column(Integer, nullable=False, default=0)
    success = Column(Boolean, nullable=False)
    error_message = Column(Text)
    execution_time_ms = Column(Integer, nullable=False, default=0)
    triggered_by = Column(String(20), nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False)


class AsyncActionRecord(Base):
    __tablename__ = "async_actions"

    id = Column(String(36), primary_key=True)
    owner_id = Column(String(255), nullable=False, index=True)
    rule_id = Column(String(36))
    email_id = Column(String(255), nullable=False)
    action_type = Column(String(50), nullable=False)
    action_data = Column(JSON, nullable=False)
    status = Column(String(20), nullable=False, default="pending")
    retry_count = Column(Integer, nullable=False, default=0)
    throttle_count = Column(Integer, nullable=False, default=0)
    error_message = Column(Text)
    available_at = Column(DateTime(timezone=True), nullable=False)
    claimed_at = Column(DateTime(timezone=True))
    completed_at = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=False)

    __table_args__ = (Index("ix_async_actions_status_available", "status", "available_at"),)


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes; everything we write is UTC.
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _engine_kwargs(database_url: str) -> dict:
    if not database_url.startswith("sqlite"):
        return {}
    kwargs = {"connect_args": {"check_same_thread": False, "timeout": 30}}
    if database_url in ("sqlite://", "sqlite:///:memory:"):
        kwargs["poolclass"] = StaticPool
    return kwargs


def _rule_to_model(record: RuleRecord) -> RuleModel:
    return RuleModel(
        id=record.id,
        owner_id=record.owner_id,
        name=record.name,
        description=record.description,
        is_enabled=record.is_enabled,
        priority=record.priority,
        conditions=record.conditions,
        actions=record.actions,
        system_type=record.system_type,
        execution_count=record.execution_count,
        last_executed_at=_aware(record.last_executed_at),
        created_at=_aware(record.created_at),
        updated_at=_aware(record.updated_at),
    )


def _rule_columns(rule: RuleModel) -> dict:
    return {
        "owner_id": rule.owner_id,
        "name": rule.name,
        "name_key": rule.name.lower(),
        "description": rule.description,
        "is_enabled": rule.is_enabled,
        "priority": rule.priority,
        "conditions": rule.conditions.model_dump(mode="json"),
        "actions": [a.model_dump(mode="json") for a in rule.actions],
        "system_type": rule.system_type,
        "execution_count": rule.execution_count,
        "last_executed_at": rule.last_executed_at,
        "created_at": rule.created_at,
        "updated_at": rule.updated_at,
    }


def _execution_to_model(record: ExecutionRecord) -> ExecutionModel:
    return ExecutionModel(
        id=record.id,
        rule_id=record.rule_id,
        email_id=record.email_id,
        owner_id=record.owner_id,
        matched=record.matched,
        actions_executed=record.actions_executed,
        actions_queued=record.actions_queued,
        success=record.success,
        error_message=record.error_message,
        execution_time_ms=record.execution_time_ms,
        triggered_by=record.triggered_by,
        created_at=_aware(record.created_at),
    )


def _async_to_model(record: AsyncActionRecord) -> AsyncActionModel:
    return AsyncActionModel(
        id=record.id,
        owner_id=record.owner_id,
        rule_id=record.rule_id,
        email_id=record.email_id,
        action_type=record.action_type,
        action_data=record.action_data,
        status=record.status,
        retry_count=record.retry_count,
        throttle_count=record.throttle_count,
        error_message=record.error_message,
        available_at=_aware(record.available_at),
        claimed_at=_aware(record.claimed_at),
        completed_at=_aware(record.completed_at),
        created_at=_aware(record.created_at),
        updated_at=_aware(record.updated_at),
    )


_MUTABLE_OUTBOX_FIELDS = (
    "status",
    "retry_count",
    "throttle_count",
    "error_message",
    "available_at",
    "claimed_at",
    "completed_at",
    "updated_at",
)


class RuleStore:
    """SQLAlchemy-backed store. One instance may be shared between threads."""

    def __init__(self, database_url: Optional[str] = None, engine=None):
        url = database_url or app_config.DATABASE_URL
        self.engine = engine or create_engine(url, **_engine_kwargs(url))
        try:
            Base.metadata.create_all(self.engine)
        except SQLAlchemyError as e:
            logger.error(f"Failed to initialise schema at {url}: {e}", exc_info=True)
            raise RuleStorageError(f"Could not initialise rule store: {e}", original_exception=e)
        self._session_factory = sessionmaker(bind=self.engine, expire_on_commit=False)
        logger.debug(f"Rule store ready ({self.engine.url.render_as_string(hide_password=True)}).")

    @contextmanager
    def _session(self):
        """One transaction. IntegrityError propagates so callers can map it; other DB errors are wrapped."""
        session = self._session_factory()
        try:
            yield session
            session.commit()
        except IntegrityError:
            session.rollback()
            raise
        except SQLAlchemyError as e:
            session.rollback()
            logger.error(f"Database error: {e}", exc_info=True)
            raise RuleStorageError(f"Database error: {e}", original_exception=e)
        finally:
            session.close()

    # --- Rules ---

    def insert_rule(self, rule: RuleModel) -> RuleModel:
        try:
            with self._session() as session:
                session.add(RuleRecord(id=rule.id, **_rule_columns(rule)))
        except IntegrityError as e:
            raise RuleConflictError(
                f"A rule with the name '{rule.name}' already exists.", original_exception=e
            )
        return rule

    def save_rule(self, rule: RuleModel) -> bool:
        """Overwrites an existing rule of the same owner. Returns False if it does not exist."""
        try:
            with self._session() as session:
                result = session.execute(
                    update(RuleRecord)
                    .where(RuleRecord.id == rule.id, RuleRecord.owner_id == rule.owner_id)
                    .values(**_rule_columns(rule))
                )
                return result.rowcount == 1
        except IntegrityError as e:
            raise RuleConflictError(
                f"A rule with the name '{rule.name}' already exists.", original_exception=e
            )

    def get_rule(self, owner_id: str, rule_id: str) -> Optional[RuleModel]:
        with self._session() as session:
            record = session.execute(
                select(RuleRecord).where(RuleRecord.owner_id == owner_id, RuleRecord.id == rule_id)
            ).scalar_one_or_none()
            return _rule_to_model(record) if record else None

    def find_rule_by_name(self, owner_id: str, name: str) -> Optional[RuleModel]:
        with self._session() as session:
            record = session.execute(
                select(RuleRecord).where(
                    RuleRecord.owner_id == owner_id, RuleRecord.name_key == name.strip().lower()
                )
            ).scalar_one_or_none()
            return _rule_to_model(record) if record else None

    def list_rules(self, owner_id: str, enabled_only: bool = False) -> List[RuleModel]:
        """Unordered; callers sequence rules with rules_api_service.sort_rules."""
        query = select(RuleRecord).where(RuleRecord.owner_id == owner_id)
        if enabled_only:
            query = query.where(RuleRecord.is_enabled.is_(True))
        with self._session() as session:
            return [_rule_to_model(r) for r in session.execute(query).scalars()]

    def count_rules(self, owner_id: str, enabled_only: bool = False) -> int:
        query = select(func.count()).select_from(RuleRecord).where(RuleRecord.owner_id == owner_id)
        if enabled_only:
            query = query.where(RuleRecord.is_enabled.is_(True))
        with self._session() as session:
            return session.execute(query).scalar_one()

    def delete_rule(self, owner_id: str, rule_id: str) -> bool:
        with self._session() as session:
            record = session.execute(
                select(RuleRecord).where(RuleRecord.owner_id == owner_id, RuleRecord.id == rule_id)
            ).scalar_one_or_none()
            if record is None:
                return False
            session.delete(record)
            return True

    def record_rule_hits(self, owner_id: str, rule_ids: Iterable[str], when: datetime) -> None:
        rule_ids = list(rule_ids)
        if not rule_ids:
            return
        with self._session() as session:
            session.execute(
                update(RuleRecord)
                .where(RuleRecord.owner_id == owner_id, RuleRecord.id.in_(rule_ids))
                .values(execution_count=RuleRecord.execution_count + 1, last_executed_at=when)
            )

    # --- Execution log ---

    def insert_executions(self, executions: List[ExecutionModel]) -> None:
        if not executions:
            return
        with self._session() as session:
            session.add_all(ExecutionRecord(**e.model_dump()) for e in executions)

    def list_executions(
        self, owner_id: str, rule_id: Optional[str] = None, limit: int = 100
    ) -> List[ExecutionModel]:
        query = select(ExecutionRecord).where(ExecutionRecord.owner_id == owner_id)
        if rule_id:
            query = query.where(ExecutionRecord.rule_id == rule_id)
        query = query.order_by(ExecutionRecord.created_at.desc()).limit(limit)
        with self._session() as session:
            return [_execution_to_model(r) for r in session.execute(query).scalars()]

    def execution_totals(self, owner_id: str) -> Dict[str, int]:
        with self._session() as session:
            rows = session.execute(
                select(ExecutionRecord.matched, ExecutionRecord.success, func.count())
                .where(ExecutionRecord.owner_id == owner_id)
                .group_by(ExecutionRecord.matched, ExecutionRecord.success)
            ).all()
        totals = {"total": 0, "matched": 0, "successful": 0, "failed": 0}
        for matched, success, count in rows:
            totals["total"] += count
            if matched:
                totals["matched"] += count
            if success:
                totals["successful"] += count
            else:
                totals["failed"] += count
        return totals

    def most_active_rules(self, owner_id: str, limit: int = 10) -> List[RuleModel]:
        query = (
            select(RuleRecord)
            .where(RuleRecord.owner_id == owner_id)
            .order_by(RuleRecord.execution_count.desc(), RuleRecord.created_at.asc())
            .limit(limit)
        )
        with self._session() as session:
            return [_rule_to_model(r) for r in session.execute(query).scalars()]

    # --- Async action outbox ---

    def enqueue_async_action(self, action: AsyncActionModel) -> AsyncActionModel:
        """Single insert. No provider I/O happens on this path."""
        columns = action.model_dump(exclude={"action_data"})
        columns["action_data"] = action.action_data.model_dump(mode="json")
        with self._session() as session:
            session.add(AsyncActionRecord(**columns))
        return action

    def get_async_action(self, action_id: str) -> Optional[AsyncActionModel]:
        with self._session() as session:
            record = session.get(AsyncActionRecord, action_id)
            return _async_to_model(record) if record else None

    def list_async_actions(
        self, owner_id: Optional[str] = None, status: Optional[str] = None, limit: int = 100
    ) -> List[AsyncActionModel]:
        query = select(AsyncActionRecord)
        if owner_id:
            query = query.where(AsyncActionRecord.owner_id == owner_id)
        if status:
            query = query.where(AsyncActionRecord.status == status)
        query = query.order_by(AsyncActionRecord.created_at.asc()).limit(limit)
        with self._session() as session:
            return [_async_to_model(r) for r in session.execute(query).scalars()]

    def claim_pending_actions(self, limit: int, now: Optional[datetime] = None) -> List[AsyncActionModel]:
        """
        Atomically moves up to `limit` due 'pending' rows to 'processing' and returns them.

        Candidates are read first, then each is claimed with
        UPDATE ... WHERE id = :id AND status = 'pending'. A rowcount of 0 means
        another worker got there first; that row is skipped.
        """
        now = now or utcnow()
        with self._session() as session:
            candidate_ids = session.execute(
                select(AsyncActionRecord.id)
                .where(AsyncActionRecord.status == "pending", AsyncActionRecord.available_at <= now)
                .order_by(AsyncActionRecord.created_at.asc())
                .limit(limit)
            ).scalars().all()

        claimed: List[AsyncActionModel] = []
        for action_id in candidate_ids:
            with self._session() as session:
                result = session.execute(
                    update(AsyncActionRecord)
                    .where(AsyncActionRecord.id == action_id, AsyncActionRecord.status == "pending")
                    .values(status="processing", claimed_at=now, updated_at=now)
                )
                if result.rowcount != 1:
                    logger.debug(f"Async action {action_id} was claimed by another worker.")
                    continue
                claimed.append(_async_to_model(session.get(AsyncActionRecord, action_id)))
        return claimed

    def compare_and_set_action(
        self,
        action: AsyncActionModel,
        expected_status: str,
        expected_claimed_at: Optional[datetime] = None,
    ) -> bool:
        """
        Persists the mutable outbox fields only if the stored row still has
        expected_status (and, when given, the claim timestamp the caller holds).
        """
        values = {name: getattr(action, name) for name in _MUTABLE_OUTBOX_FIELDS}
        conditions = [AsyncActionRecord.id == action.id, AsyncActionRecord.status == expected_status]
        if expected_claimed_at is not None:
            conditions.append(AsyncActionRecord.claimed_at == expected_claimed_at)
        with self._session() as session:
            result = session.execute(update(AsyncActionRecord).where(*conditions).values(**values))
            return result.rowcount == 1

    def find_stale_processing(self, claimed_before: datetime) -> List[AsyncActionModel]:
        with self._session() as session:
            records = session.execute(
                select(AsyncActionRecord).where(
                    AsyncActionRecord.status == "processing",
                    AsyncActionRecord.claimed_at < claimed_before,
                )
            ).scalars()
            return [_async_to_model(r) for r in records]

    def count_actions_by_status(self, owner_id: Optional[str] = None) -> Dict[str, int]:
        query = select(AsyncActionRecord.status, func.count()).group_by(AsyncActionRecord.status)
        if owner_id:
            query = query.where(AsyncActionRecord.owner_id == owner_id)
        counts = {"pending": 0, "processing": 0, "completed": 0, "failed": 0}
        with self._session() as session:
            for status, count in session.execute(query).all():
                counts[status] = count
        return counts
