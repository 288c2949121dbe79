import base64
import json
import logging
import re
import weakref
from email.message import EmailMessage
from email.utils import parseaddr
from pathlib import Path
from typing import Optional, List, Dict, Any

from google.auth.transport.requests import Request
from google.oauth2.credentials import Credentials
from google_auth_oauthlib.flow import InstalledAppFlow
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from triage_cli.core import config as app_config
from .exceptions import (
    EmailNotFoundError,
    FatalExecutionError,
    GmailApiError,
    InvalidParameterError,
    RateLimitedError,
    TriageError,
)

logger = logging.getLogger(__name__)

_RATE_LIMIT_REASONS = {"rateLimitExceeded", "userRateLimitExceeded"}


# --- Error translation ---
def _error_reasons(error: HttpError) -> List[str]:
    try:
        payload = json.loads(error.content.decode("utf-8") if isinstance(error.content, bytes) else error.content)
    except (ValueError, TypeError, AttributeError):
        return []
    details = payload.get("error", {}) if isinstance(payload, dict) else {}
    return [item.get("reason") for item in details.get("errors", []) if isinstance(item, dict)]


def _retry_after(error: HttpError) -> Optional[float]:
    value = error.resp.get("retry-after") if error.resp is not None else None
    try:
        return float(value) if value is not None else None
    except (TypeError, ValueError):
        return None


def _translate_http_error(error: HttpError, context: str) -> TriageError:
    """
    Maps a Gmail HttpError onto the retry classes the outbox understands.

    429 and quota 403s are rate limits, 404/410 mean the message is gone,
    any other 4xx is permanent, and 5xx is transient.
    """
    status = error.resp.status if error.resp is not None else 0
    if status == 429 or (status == 403 and _RATE_LIMIT_REASONS.intersection(_error_reasons(error))):
        return RateLimitedError(
            f"Gmail rate limit hit while {context}: {status}",
            retry_after=_retry_after(error),
            original_exception=error,
        )
    if status in (404, 410):
        return EmailNotFoundError(f"Message not found while {context}: {status}", original_exception=error)
    if 400 <= status < 500:
        return FatalExecutionError(f"Gmail rejected request while {context}: {status}", original_exception=error)
    return GmailApiError(f"API error while {context}: {status}", original_exception=error)


def _execute(request: Any, context: str) -> Any:
    """Runs one API request, translating failures into triage exceptions."""
    try:
        return request.execute()
    except HttpError as error:
        logger.error(f"API error while {context}: {error.resp.status} - {error.content}", exc_info=True)
        raise _translate_http_error(error, context)
    except TriageError:
        raise
    except Exception as e:
        # Transport failures (timeouts, connection resets) are transient.
        logger.error(f"Transport error while {context}: {e}", exc_info=True)
        raise GmailApiError(f"Transport error while {context}: {e}", original_exception=e)


# --- Authentication ---
def get_authenticated_service(interactive_auth_ok: bool = True, token_file: Optional[Path] = None):
    """
    Authenticates with Gmail using OAuth 2.0 and returns a service object.
    Handles token loading, refreshing, and the initial OAuth flow if necessary.

    Args:
        interactive_auth_ok (bool): If False and interactive authentication (e.g., browser)
                                   would be required, returns None instead of starting it.
        token_file (Path): Where the token is read from and saved to. Defaults to TOKEN_FILE.

    Returns:
        Optional[googleapiclient.discovery.Resource]: The Gmail service object, or None
                                                     if non-interactive auth was requested
                                                     but is not possible.
    """
    creds = None
    token_file_path = Path(token_file or app_config.TOKEN_FILE)
    credentials_file_path = Path(app_config.CREDENTIALS_FILE)

    if token_file_path.exists():
        try:
            creds = Credentials.from_authorized_user_file(str(token_file_path), app_config.SCOPES)
        except (ValueError, OSError) as e:
            logger.warning(f"Could not load token from {token_file_path}: {e}. Will attempt re-authentication.")
            creds = None

    if not creds or not creds.valid:
        if creds and creds.expired and creds.refresh_token:
            logger.info("Gmail access token is expired. Attempting to refresh.")
            try:
                creds.refresh(Request())
            except Exception as e:
                logger.error(f"Failed to refresh Gmail token: {e}. Re-authentication required.", exc_info=True)
                creds = None

        if not creds:
            if not interactive_auth_ok:
                logger.info("Non-interactive authentication requested, but interactive flow would be required.")
                return None

            logger.info("No valid Gmail credentials found. Starting OAuth flow.")
            if not credentials_file_path.exists():
                err_msg = f"Credentials file not found at {credentials_file_path}. Cannot authenticate."
                logger.error(err_msg)
                raise TriageError(err_msg + " Please ensure 'credentials.json' is present and run login.")
            try:
                flow = InstalledAppFlow.from_client_secrets_file(str(credentials_file_path), app_config.SCOPES)
                creds = flow.run_local_server(
                    port=0,
                    prompt="consent",
                    authorization_prompt_message="triage needs to authorize Gmail access. Please follow browser instructions.",
                )
            except Exception as e:
                logger.error(f"OAuth flow failed: {e}", exc_info=True)
                raise TriageError(f"OAuth authorization failed: {e}", original_exception=e)

        if creds:
            try:
                token_file_path.parent.mkdir(parents=True, exist_ok=True)
                with open(token_file_path, "w") as token_file_handle:
                    token_file_handle.write(creds.to_json())
                logger.info(f"Gmail access token stored successfully at: {token_file_path}")
            except IOError as e:
                logger.error(f"Failed to save token file at {token_file_path}: {e}", exc_info=True)

    if not creds:
        logger.warning("Failed to obtain valid Gmail credentials.")
        return None

    return _build_service(creds, str(token_file_path))


def get_g_service_client_from_token(
    token_file_path_str: str,
    credentials_file_path_str: str,
    scopes: List[str],
) -> Any:
    """
    Gets an authenticated Gmail API service client non-interactively using stored tokens.
    Refreshes the token if expired and saves the refreshed token.

    Raises:
        TriageError: If the token file is missing, invalid, or refresh fails.
        GmailApiError: If the API errors while building the service.
    """
    logger.debug(f"Attempting to get Gmail service client from token file: {token_file_path_str}")
    token_file = Path(token_file_path_str)
    creds_file = Path(credentials_file_path_str)

    if not token_file.exists():
        msg = f"Token file not found at {token_file}. Run 'triage login' first."
        logger.error(msg)
        raise TriageError(msg)

    try:
        creds = Credentials.from_authorized_user_file(str(token_file), scopes)
    except (ValueError, OSError) as e:
        logger.error(f"Failed to load credentials from token file {token_file}: {e}", exc_info=True)
        raise TriageError(f"Could not load token from {token_file}: {e}", original_exception=e)

    if not creds.valid:
        if creds.expired and creds.refresh_token:
            logger.info(f"Access token from {token_file} is expired. Attempting refresh.")
            if not creds_file.exists():
                logger.warning(f"Credentials file ({creds_file}) not found, which may be needed for token refresh.")
            try:
                creds.refresh(Request())
                logger.info(f"Access token refreshed successfully using token from {token_file}.")
                try:
                    with open(token_file, "w") as tf:
                        tf.write(creds.to_json())
                except IOError as e_io:
                    logger.error(f"Failed to save refreshed token to {token_file}: {e_io}", exc_info=True)
            except Exception as e_refresh:
                logger.error(f"Failed to refresh access token from {token_file}: {e_refresh}", exc_info=True)
                raise TriageError(
                    f"Token refresh failed for {token_file}. Re-authentication via 'triage login' may be required.",
                    original_exception=e_refresh,
                )
        else:
            msg = (
                f"Token from {token_file} is invalid and cannot be refreshed "
                f"(expired: {creds.expired}, has_refresh: {bool(creds.refresh_token)})."
            )
            logger.error(msg)
            raise TriageError(msg + " Re-authentication via 'triage login' may be required.")

    return _build_service(creds, str(token_file))


def _build_service(creds: Credentials, token_source: str) -> Any:
    try:
        service = build("gmail", "v1", credentials=creds, cache_discovery=False)
        logger.debug(f"Gmail API service client built using token from {token_source}.")
        return service
    except HttpError as error:
        logger.error(f"API error building Gmail service: {error.resp.status} - {error.content}", exc_info=True)
        raise GmailApiError(f"API error building Gmail service: {error.resp.status}", original_exception=error)
    except Exception as e:
        logger.error(f"Unexpected error building Gmail service: {e}", exc_info=True)
        raise TriageError(f"Unexpected error building Gmail service: {e}", original_exception=e)


# --- Label Operations ---
# One cache per service object, dropped with it, so two owners' clients never
# see each other's labels.
_label_caches: "weakref.WeakKeyDictionary[Any, Dict[str, str]]" = weakref.WeakKeyDictionary()
_system_labels = [
    "INBOX",
    "SPAM",
    "TRASH",
    "UNREAD",
    "IMPORTANT",
    "STARRED",
    "SENT",
    "DRAFT",
    "CATEGORY_PERSONAL",
    "CATEGORY_SOCIAL",
    "CATEGORY_PROMOTIONS",
    "CATEGORY_UPDATES",
    "CATEGORY_FORUMS",
]


def _clear_label_cache_for_testing():
    """ONLY FOR TESTING: Clears the internal label caches."""
    _label_caches.clear()


def _populate_label_cache(service: Any) -> Dict[str, str]:
    """Fetches labels and stores name->id, id->id and id->name entries."""
    if not service:
        raise InvalidParameterError("Gmail service not available for populating label cache.")
    logger.debug("Populating Gmail label cache...")
    results = _execute(service.users().labels().list(userId="me"), "fetching labels")
    cache: Dict[str, str] = {}
    for lbl in results.get("labels", []):
        cache[lbl["name"].lower()] = lbl["id"]
        cache[lbl["id"]] = lbl["id"]
        cache[f"name_for_{lbl['id']}"] = lbl["name"]
    _label_caches[service] = cache
    logger.debug(f"Label cache populated. Size: {len(cache)} entries.")
    return cache


def get_label_id(service: Any, label_name_or_id: str) -> Optional[str]:
    """Gets the ID of a label given its name or confirms an ID. Caches results."""
    if not service:
        raise InvalidParameterError("Gmail service not available for get_label_id.")
    if not label_name_or_id:
        raise InvalidParameterError("Label name or ID cannot be empty.")

    if label_name_or_id.upper() in _system_labels:
        return label_name_or_id.upper()

    cache = _label_caches.get(service) or _populate_label_cache(service)
    found_id = cache.get(label_name_or_id) or cache.get(label_name_or_id.lower())
    if not found_id:
        logger.debug(f"Label '{label_name_or_id}' not in cache. Forcing refresh.")
        cache = _populate_label_cache(service)
        found_id = cache.get(label_name_or_id) or cache.get(label_name_or_id.lower())
        if not found_id:
            logger.warning(f"Label '{label_name_or_id}' still not found after cache refresh.")
    return found_id


def get_label_name_from_id(service: Any, label_id: str) -> Optional[str]:
    """Gets the display name of a label given its ID. Caches results."""
    if not service:
        raise InvalidParameterError("Gmail service not available for get_label_name_from_id.")
    if not label_id:
        raise InvalidParameterError("Label ID cannot be empty for get_label_name_from_id.")

    if label_id.upper() in _system_labels:
        return label_id.upper()

    cache_key = f"name_for_{label_id}"
    cache = _label_caches.get(service)
    if not cache or cache_key not in cache:
        cache = _populate_label_cache(service)
    found_name = cache.get(cache_key)
    if not found_name:
        logger.warning(f"Label name for ID '{label_id}' not found after cache refresh.")
    return found_name


def create_label(service: Any, label_name: str) -> str:
    """Creates a user label and returns its ID."""
    body = {"name": label_name, "labelListVisibility": "labelShow", "messageListVisibility": "show"}
    created = _execute(service.users().labels().create(userId="me", body=body), f"creating label '{label_name}'")
    _label_caches.pop(service, None)
    logger.info(f"Created Gmail label '{label_name}' ({created['id']}).")
    return created["id"]


def resolve_label_id(service: Any, label_name_or_id: str, create_missing: bool = False) -> str:
    """Like get_label_id, but raises FatalExecutionError (or creates the label) when it is unknown."""
    label_id = get_label_id(service, label_name_or_id)
    if label_id:
        return label_id
    if create_missing:
        return create_label(service, label_name_or_id)
    raise FatalExecutionError(f"Label '{label_name_or_id}' does not exist.")


# --- Message Read Operations ---
def list_messages(
    service: Any,
    query_string: Optional[str] = None,
    max_results: int = 100,
    page_token: Optional[str] = None,
) -> Dict[str, Any]:
    """Lists messages matching the query. Returns dict with 'messages' and 'nextPageToken'."""
    if not service:
        raise InvalidParameterError("Gmail service not available for list_messages.")

    list_params: Dict[str, Any] = {"userId": "me", "maxResults": max_results}
    if query_string:
        list_params["q"] = query_string
    if page_token:
        list_params["pageToken"] = page_token

    logger.debug(f"API: Listing messages with params: {list_params}")
    results = _execute(service.users().messages().list(**list_params), "listing messages")
    return {
        "messages": results.get("messages", []),
        "nextPageToken": results.get("nextPageToken"),
    }


def get_message_details(service: Any, message_id: str, email_format: str = "metadata") -> Dict[str, Any]:
    """Gets a specific message by its ID."""
    if not service:
        raise InvalidParameterError("Gmail service not available for get_message_details.")
    if not message_id:
        raise InvalidParameterError("Message ID cannot be empty.")

    actual_format = email_format.lower()
    if actual_format not in ("full", "metadata", "raw"):
        logger.warning(f"Invalid email_format '{email_format}' for get_message_details. Defaulting to 'metadata'.")
        actual_format = "metadata"

    logger.debug(f"API: Getting message details for ID: {message_id}, Format: {actual_format}")
    return _execute(
        service.users().messages().get(userId="me", id=message_id, format=actual_format),
        f"getting message {message_id}",
    )


# --- Message Write Operations ---
def _label_body(add_label_ids: Optional[List[str]], remove_label_ids: Optional[List[str]]) -> Dict[str, Any]:
    body: Dict[str, Any] = {}
    if add_label_ids:
        body["addLabelIds"] = list(add_label_ids)
    if remove_label_ids:
        body["removeLabelIds"] = list(remove_label_ids)
    return body


def modify_message_labels(
    service: Any,
    message_id: str,
    add_label_ids: Optional[List[str]] = None,
    remove_label_ids: Optional[List[str]] = None,
) -> None:
    """Adds and removes label IDs on one message."""
    if not service:
        raise InvalidParameterError("Gmail service not available for modify_message_labels.")
    body = _label_body(add_label_ids, remove_label_ids)
    if not body:
        logger.debug(f"No label changes requested for message {message_id}.")
        return
    logger.debug(f"API: Modifying labels for message {message_id}: {body}")
    _execute(
        service.users().messages().modify(userId="me", id=message_id, body=body),
        f"modifying labels of message {message_id}",
    )


def trash_message(service: Any, message_id: str) -> None:
    """Moves one message to Trash."""
    if not service:
        raise InvalidParameterError("Gmail service not available for trash_message.")
    logger.debug(f"API: Trashing message {message_id}")
    _execute(service.users().messages().trash(userId="me", id=message_id), f"trashing message {message_id}")


def _header(message: Dict[str, Any], name: str) -> str:
    for header in message.get("payload", {}).get("headers", []):
        if header.get("name", "").lower() == name.lower():
            return header.get("value", "")
    return ""


def forward_message(service: Any, message_id: str, to_address: str) -> Dict[str, Any]:
    """Sends a forward of the message's snippet to to_address. Returns the sent message resource."""
    if not service:
        raise InvalidParameterError("Gmail service not available for forward_message.")
    original = get_message_details(service, message_id, email_format="metadata")

    forward = EmailMessage()
    forward["To"] = to_address
    forward["Subject"] = f"Fwd: {_header(original, 'Subject')}"
    forward.set_content(
        "---------- Forwarded message ----------\n"
        f"From: {_header(original, 'From')}\n"
        f"Date: {_header(original, 'Date')}\n"
        f"Subject: {_header(original, 'Subject')}\n\n"
        f"{original.get('snippet', '')}\n"
    )
    raw = base64.urlsafe_b64encode(forward.as_bytes()).decode("ascii")
    body: Dict[str, Any] = {"raw": raw}
    if original.get("threadId"):
        body["threadId"] = original["threadId"]

    logger.info(f"API: Forwarding message {message_id} to {to_address}")
    return _execute(
        service.users().messages().send(userId="me", body=body),
        f"forwarding message {message_id}",
    )


_TEMPLATE_VARIABLE = re.compile(r"\{\{\s*(\w+)\s*\}\}")


def render_reply_template(template: str, variables: Dict[str, str]) -> str:
    """Substitutes {{name}} placeholders. Unknown placeholders are left as written."""
    return _TEMPLATE_VARIABLE.sub(lambda m: variables.get(m.group(1), m.group(0)), template)


def _reply_variables(message: Dict[str, Any]) -> Dict[str, str]:
    sender_name, sender_email = parseaddr(_header(message, "From"))
    return {
        "sender_name": sender_name or "there",
        "sender_email": sender_email,
        "subject": _header(message, "Subject"),
        "date": _header(message, "Date"),
        "snippet": message.get("snippet", ""),
    }


def reply_to_message(
    service: Any, message_id: str, body_template: str, subject: Optional[str] = None
) -> Dict[str, Any]:
    """
    Replies to the sender of message_id in the same thread.

    body_template is rendered with render_reply_template. The subject defaults to
    "Re: <original subject>". Raises FatalExecutionError when the message has no
    sender address to reply to.
    """
    if not service:
        raise InvalidParameterError("Gmail service not available for reply_to_message.")
    original = get_message_details(service, message_id, email_format="metadata")

    _, reply_address = parseaddr(_header(original, "Reply-To") or _header(original, "From"))
    if not reply_address:
        raise FatalExecutionError(f"Cannot reply to message {message_id}: sender address not found.")

    original_subject = _header(original, "Subject")
    if not subject:
        subject = original_subject if original_subject.lower().startswith("re:") else f"Re: {original_subject}"

    reply = EmailMessage()
    reply["To"] = reply_address
    reply["Subject"] = subject
    original_message_id = _header(original, "Message-ID")
    if original_message_id:
        reply["In-Reply-To"] = original_message_id
        reply["References"] = original_message_id
    reply.set_content(render_reply_template(body_template, _reply_variables(original)))
    raw = base64.urlsafe_b64encode(reply.as_bytes()).decode("ascii")
    body: Dict[str, Any] = {"raw": raw}
    if original.get("threadId"):
        body["threadId"] = original["threadId"]

    logger.info(f"API: Replying to message {message_id} ({reply_address})")
    return _execute(
        service.users().messages().send(userId="me", body=body),
        f"replying to message {message_id}",
    )


def batch_modify_labels_per_message(
    service: Any,
    message_ids: List[str],
    add_label_ids: Optional[List[str]] = None,
    remove_label_ids: Optional[List[str]] = None,
) -> List[Optional[TriageError]]:
    """
    Modifies labels on several messages in one HTTP batch request.

    Unlike messages.batchModify, each sub-request reports its own outcome, so
    the result is one entry per input id (None on success, the translated
    error otherwise), in input order. Raises only if the batch itself fails.
    """
    if not service:
        raise InvalidParameterError("Gmail service not available for batch_modify_labels_per_message.")
    if not message_ids:
        return []
    body = _label_body(add_label_ids, remove_label_ids)
    if not body:
        logger.debug("batch_modify_labels_per_message called with no label changes. No action taken.")
        return [None] * len(message_ids)

    errors: Dict[str, TriageError] = {}

    def _on_response(request_id, response, exception):
        if exception is None:
            return
        message_id = message_ids[int(request_id)]
        if isinstance(exception, HttpError):
            errors[request_id] = _translate_http_error(exception, f"modifying labels of message {message_id}")
        else:
            errors[request_id] = GmailApiError(
                f"Error modifying labels of message {message_id}: {exception}", original_exception=exception
            )

    batch = service.new_batch_http_request(callback=_on_response)
    for index, message_id in enumerate(message_ids):
        batch.add(
            service.users().messages().modify(userId="me", id=message_id, body=body),
            request_id=str(index),
        )
    logger.info(f"API: Batch modifying labels for {len(message_ids)} messages. Request body: {body}")
    _execute(batch, f"batch modifying labels of {len(message_ids)} messages")

    if errors:
        logger.warning(f"{len(errors)} of {len(message_ids)} messages failed in batch label modification.")
    return [errors.get(str(index)) for index in range(len(message_ids))]
