# triage_cli/core_api/provider.py
"""
The mail-provider capability consumed by the engine.

Everything that touches a mailbox goes through a ProviderClient that is
handed in by the caller, so tests use a fake and each owner gets their own
client. GmailProviderClient is the shipped implementation.
"""
import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from triage_cli.core import config as app_config
from triage_cli.features.rule_management.models import EmailContext
from . import gmail_api_service
from .exceptions import InvalidParameterError, TriageError

logger = logging.getLogger(__name__)


@dataclass
class ItemResult:
    """Outcome of one message within a batched provider call."""

    email_id: str
    success: bool
    error: Optional[str] = None


class ProviderClient(ABC):
    """Mailbox operations for a single owner."""

    max_batch_size: int = 100

    @abstractmethod
    def list_messages(
        self, query: Optional[str] = None, max_results: int = 100, page_token: Optional[str] = None
    ) -> Dict[str, Any]:
        """Returns {'messages': [{'id': ...}, ...], 'nextPageToken': ...}."""

    @abstractmethod
    def get_message(self, email_id: str) -> EmailContext:
        pass

    @abstractmethod
    def modify_labels(
        self, email_id: str, add: Optional[List[str]] = None, remove: Optional[List[str]] = None
    ) -> None:
        pass

    @abstractmethod
    def archive(self, email_id: str) -> None:
        pass

    @abstractmethod
    def trash(self, email_id: str) -> None:
        pass

    @abstractmethod
    def mark_read(self, email_id: str, read: bool = True) -> None:
        pass

    @abstractmethod
    def forward(self, email_id: str, to_address: str) -> None:
        pass

    @abstractmethod
    def reply(self, email_id: str, body: str, subject: Optional[str] = None) -> None:
        """Replies to the sender in the message's thread. body may hold {{variables}}."""

    @abstractmethod
    def mark_spam(self, email_id: str) -> None:
        pass

    # Batched variants. The defaults fall back to one call per message;
    # implementations override them with a real batch call where one exists.

    def _per_item(self, email_ids: List[str], call) -> List[ItemResult]:
        results = []
        for email_id in email_ids:
            try:
                call(email_id)
                results.append(ItemResult(email_id=email_id, success=True))
            except TriageError as e:
                results.append(ItemResult(email_id=email_id, success=False, error=e.message))
        return results

    def batch_modify_labels(
        self, email_ids: List[str], add: Optional[List[str]] = None, remove: Optional[List[str]] = None
    ) -> List[ItemResult]:
        return self._per_item(email_ids, lambda email_id: self.modify_labels(email_id, add=add, remove=remove))

    def batch_archive(self, email_ids: List[str]) -> List[ItemResult]:
        return self._per_item(email_ids, self.archive)

    def batch_trash(self, email_ids: List[str]) -> List[ItemResult]:
        return self._per_item(email_ids, self.trash)

    def batch_mark_read(self, email_ids: List[str], read: bool = True) -> List[ItemResult]:
        return self._per_item(email_ids, lambda email_id: self.mark_read(email_id, read=read))


def _parse_address_list(value: str) -> List[str]:
    return [part.strip() for part in value.split(",") if part.strip()]


def gmail_message_to_email_context(message: Dict[str, Any]) -> EmailContext:
    """Builds an EmailContext from a Gmail message resource (metadata or full format)."""
    headers = {
        h.get("name", "").lower(): h.get("value", "")
        for h in message.get("payload", {}).get("headers", [])
    }
    labels = message.get("labelIds", [])

    received_at = None
    if message.get("internalDate"):
        received_at = datetime.fromtimestamp(int(message["internalDate"]) / 1000, tz=timezone.utc)

    def _has_attachment(part: Dict[str, Any]) -> bool:
        if part.get("filename"):
            return True
        return any(_has_attachment(child) for child in part.get("parts", []))

    return EmailContext(
        email_id=message["id"],
        thread_id=message.get("threadId"),
        from_address=headers.get("from") or None,
        to_addresses=_parse_address_list(headers.get("to", "")),
        subject=headers.get("subject") or None,
        body_snippet=message.get("snippet") or None,
        labels=labels,
        is_read="UNREAD" not in labels,
        received_at=received_at,
        has_attachment=_has_attachment(message.get("payload", {})),
    )


class GmailProviderClient(ProviderClient):
    """ProviderClient over a google-api-python-client Gmail service."""

    def __init__(self, service: Any, create_missing_labels: bool = True):
        if not service:
            raise InvalidParameterError("GmailProviderClient requires a Gmail service.")
        self.service = service
        self.create_missing_labels = create_missing_labels

    def _label_ids(self, names: Optional[List[str]], create_missing: bool) -> List[str]:
        ids = []
        for name in names or []:
            if create_missing:
                ids.append(gmail_api_service.resolve_label_id(self.service, name, create_missing=True))
                continue
            label_id = gmail_api_service.get_label_id(self.service, name)
            if label_id:
                ids.append(label_id)
            else:
                logger.info(f"Label '{name}' does not exist; nothing to remove.")
        return ids

    def list_messages(self, query=None, max_results=100, page_token=None):
        return gmail_api_service.list_messages(
            self.service, query_string=query, max_results=max_results, page_token=page_token
        )

    def get_message(self, email_id: str) -> EmailContext:
        message = gmail_api_service.get_message_details(self.service, email_id, email_format="metadata")
        return gmail_message_to_email_context(message)

    def modify_labels(self, email_id, add=None, remove=None):
        gmail_api_service.modify_message_labels(
            self.service,
            email_id,
            add_label_ids=self._label_ids(add, self.create_missing_labels),
            remove_label_ids=self._label_ids(remove, False),
        )

    def archive(self, email_id):
        gmail_api_service.modify_message_labels(self.service, email_id, remove_label_ids=["INBOX"])

    def trash(self, email_id):
        gmail_api_service.trash_message(self.service, email_id)

    def mark_read(self, email_id, read=True):
        if read:
            gmail_api_service.modify_message_labels(self.service, email_id, remove_label_ids=["UNREAD"])
        else:
            gmail_api_service.modify_message_labels(self.service, email_id, add_label_ids=["UNREAD"])

    def forward(self, email_id, to_address):
        gmail_api_service.forward_message(self.service, email_id, to_address)

    def reply(self, email_id, body, subject=None):
        gmail_api_service.reply_to_message(self.service, email_id, body, subject=subject)

    def mark_spam(self, email_id):
        gmail_api_service.modify_message_labels(
            self.service, email_id, add_label_ids=["SPAM"], remove_label_ids=["INBOX"]
        )

    def _batch(self, email_ids, add_ids=None, remove_ids=None) -> List[ItemResult]:
        errors = gmail_api_service.batch_modify_labels_per_message(
            self.service, email_ids, add_label_ids=add_ids, remove_label_ids=remove_ids
        )
        return [
            ItemResult(email_id=email_id, success=error is None, error=error.message if error else None)
            for email_id, error in zip(email_ids, errors)
        ]

    def batch_modify_labels(self, email_ids, add=None, remove=None):
        return self._batch(
            email_ids,
            add_ids=self._label_ids(add, self.create_missing_labels),
            remove_ids=self._label_ids(remove, False),
        )

    def batch_archive(self, email_ids):
        return self._batch(email_ids, remove_ids=["INBOX"])

    def batch_trash(self, email_ids):
        return self._batch(email_ids, add_ids=["TRASH"], remove_ids=["INBOX"])

    def batch_mark_read(self, email_ids, read=True):
        if read:
            return self._batch(email_ids, remove_ids=["UNREAD"])
        return self._batch(email_ids, add_ids=["UNREAD"])


def token_file_for_owner(owner_id: str) -> Path:
    """The default owner uses the login token; other owners get one token file each."""
    if owner_id == app_config.DEFAULT_OWNER_ID:
        return Path(app_config.TOKEN_FILE)
    safe_owner = re.sub(r"[^A-Za-z0-9_.@-]", "_", owner_id)
    return Path(app_config.DATA_DIR) / "tokens" / f"{safe_owner}.json"


def gmail_provider_factory(owner_id: str) -> GmailProviderClient:
    """Builds a fresh, non-interactive Gmail client for one owner."""
    service = gmail_api_service.get_g_service_client_from_token(
        str(token_file_for_owner(owner_id)),
        str(app_config.CREDENTIALS_FILE),
        app_config.SCOPES,
    )
    return GmailProviderClient(service)
