import threading
from datetime import datetime, timedelta, timezone

import pytest

from triage_cli.core_api.exceptions import EmailNotFoundError, GmailApiError
from triage_cli.core_api.provider import ProviderClient
from triage_cli.core_api.rule_store import RuleStore
from triage_cli.features.rule_management.models import EmailContext, RuleModel

OWNER = "owner-1"
OTHER_OWNER = "owner-2"
BASE_TIME = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


class RecordingProvider(ProviderClient):
    """
    In-memory ProviderClient that records every call.

    `failures` maps an email id (or a (method, email_id) pair) to the
    exception that call should raise. `fail_batches` makes every batched
    call fail as a whole.
    """

    def __init__(self, messages=None, failures=None, fail_batches=False, owner_id=OWNER):
        self.owner_id = owner_id
        self.messages = {m.email_id: m for m in (messages or [])}
        self.failures = dict(failures or {})
        self.fail_batches = fail_batches
        self.calls = []
        self.batch_calls = []
        self._lock = threading.Lock()

    def _record(self, method, email_id, *args):
        with self._lock:
            self.calls.append((method, email_id) + args)
        error = self.failures.get((method, email_id)) or self.failures.get(email_id)
        if error is not None:
            raise error

    def calls_for(self, method):
        return [c for c in self.calls if c[0] == method]

    def list_messages(self, query=None, max_results=100, page_token=None):
        ids = list(self.messages)[:max_results]
        return {"messages": [{"id": i} for i in ids], "nextPageToken": None}

    def get_message(self, email_id):
        self._record("get_message", email_id)
        if email_id not in self.messages:
            raise EmailNotFoundError(f"Message {email_id} not found")
        return self.messages[email_id]

    def modify_labels(self, email_id, add=None, remove=None):
        self._record("modify_labels", email_id, tuple(add or ()), tuple(remove or ()))

    def archive(self, email_id):
        self._record("archive", email_id)

    def trash(self, email_id):
        self._record("trash", email_id)

    def mark_read(self, email_id, read=True):
        self._record("mark_read", email_id, read)

    def forward(self, email_id, to_address):
        self._record("forward", email_id, to_address)

    def reply(self, email_id, body, subject=None):
        self._record("reply", email_id, body, subject)

    def mark_spam(self, email_id):
        self._record("mark_spam", email_id)

    def _batch(self, name, email_ids):
        with self._lock:
            self.batch_calls.append((name, tuple(email_ids)))
        if self.fail_batches:
            raise GmailApiError(f"{name} endpoint unavailable")

    def batch_modify_labels(self, email_ids, add=None, remove=None):
        self._batch("batch_modify_labels", email_ids)
        return super().batch_modify_labels(email_ids, add=add, remove=remove)

    def batch_archive(self, email_ids):
        self._batch("batch_archive", email_ids)
        return super().batch_archive(email_ids)

    def batch_trash(self, email_ids):
        self._batch("batch_trash", email_ids)
        return super().batch_trash(email_ids)

    def batch_mark_read(self, email_ids, read=True):
        self._batch("batch_mark_read", email_ids)
        return super().batch_mark_read(email_ids, read=read)


@pytest.fixture
def store(tmp_path):
    return RuleStore(f"sqlite:///{tmp_path / 'triage-test.db'}")


@pytest.fixture
def provider():
    return RecordingProvider()


@pytest.fixture
def make_email():
    def _make(email_id="msg-1", **overrides):
        data = {
            "email_id": email_id,
            "thread_id": f"thread-{email_id}",
            "from_address": "Alice <alice@example.com>",
            "to_addresses": ["me@example.com"],
            "subject": "Hello",
            "body_snippet": "Just saying hi",
            "labels": ["INBOX", "UNREAD"],
            "is_read": False,
            "received_at": BASE_TIME,
            "has_attachment": False,
        }
        data.update(overrides)
        return EmailContext(**data)

    return _make


@pytest.fixture
def make_rule(store):
    """Inserts a rule straight into the store. created_at defaults to BASE_TIME + offset minutes."""
    counter = {"n": 0}

    def _make(name=None, priority=0, conditions=None, actions=None, owner_id=OWNER, created_offset=None, **extra):
        counter["n"] += 1
        offset = counter["n"] if created_offset is None else created_offset
        created_at = BASE_TIME + timedelta(minutes=offset)
        rule = RuleModel(
            owner_id=owner_id,
            name=name or f"Rule {counter['n']}",
            priority=priority,
            conditions=conditions or [{"field": "subject", "operator": "contains", "value": "hello"}],
            actions=actions or [{"type": "mark_read"}],
            created_at=created_at,
            updated_at=created_at,
            **extra,
        )
        return store.insert_rule(rule)

    return _make
