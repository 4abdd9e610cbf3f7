"""Gmail API integration: message listing, batched metadata fetch, history deltas, bulk modify."""
import logging
import os
import pickle
import re
import time
from dataclasses import dataclass, field
from email.utils import parseaddr
from typing import Callable, Optional, List

from google.auth.exceptions import RefreshError
from google.auth.transport.requests import Request
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from .config import settings
from .email_store import EmailRecord, find_category
from .retry import http_status, is_retryable, retry_after

logger = logging.getLogger(__name__)

METADATA_HEADERS = ["From", "Subject", "List-Unsubscribe"]
DETAIL_BATCH_LIMIT = 100
MODIFY_BATCH_LIMIT = 1000


class GmailAuthRequiredError(Exception):
    """Stored Gmail token is missing or can no longer be refreshed. The user must reconnect."""

    status = 401


class HistoryExpiredError(Exception):
    """The stored historyId is older than Gmail keeps history for; a full sync is required."""


@dataclass
class MessagePage:
    ids: List[str]
    next_page_token: Optional[str]


@dataclass
class DetailBatch:
    records: List[EmailRecord]
    failed_ids: List[str] = field(default_factory=list)
    # set when any item came back 429 inside an otherwise successful batch
    rate_limited: bool = False
    retry_after_s: Optional[float] = None


@dataclass
class HistoryChanges:
    added: List[str]
    deleted: List[str]
    new_history_id: str
    label_changes: dict = field(default_factory=dict)  # message_id -> (added, removed)

    @property
    def is_empty(self) -> bool:
        return not (self.added or self.deleted or self.label_changes)


def _resolve_path(path: str) -> str:
    if os.path.isabs(path):
        return path
    backend_dir = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
    return os.path.join(backend_dir, path)


def token_path_for_account(account_id: int) -> str:
    return os.path.join(_resolve_path(settings.token_dir), f"token_{account_id}.pickle")


def load_credentials(account_id: int):
    """Load and, if needed, refresh the stored OAuth credentials for an account."""
    token_path = token_path_for_account(account_id)
    if not os.path.exists(token_path):
        raise GmailAuthRequiredError(f"No Gmail token for account {account_id}. Reconnect the account.")
    with open(token_path, "rb") as token:
        creds = pickle.load(token)
    if creds and creds.valid:
        return creds
    if creds and creds.expired and creds.refresh_token:
        try:
            creds.refresh(Request())
        except RefreshError as e:
            raise GmailAuthRequiredError(
                f"Gmail token for account {account_id} expired and refresh failed. Reconnect the account."
            ) from e
        with open(token_path, "wb") as token:
            pickle.dump(creds, token)
        try:
            os.chmod(token_path, 0o600)
        except OSError:
            pass
        return creds
    raise GmailAuthRequiredError(f"Gmail authorization required for account {account_id}.")


def get_gmail_client(account_id: int) -> "GmailClient":
    creds = load_credentials(account_id)
    service = build("gmail", "v1", credentials=creds, cache_discovery=False)
    return GmailClient(service, account_id=account_id)


def _get_header(headers: Optional[list], name: str) -> Optional[str]:
    if not headers:
        return None
    lname = name.lower()
    for h in headers:
        if (h.get("name") or "").lower() == lname:
            return h.get("value") or None
    return None


def parse_email_address(header: Optional[str]) -> tuple[str, Optional[str]]:
    """
    Split a From header into (email, name).

    Handles "John Doe <john@example.com>", "<john@example.com>" and bare addresses.
    """
    if not header:
        return "unknown@unknown.com", None
    name, addr = parseaddr(header)
    if addr and "@" in addr:
        return addr.lower(), (name.strip() or None)
    return header.strip().lower(), None


def parse_unsubscribe_header(header: Optional[str]) -> Optional[str]:
    """Best link from List-Unsubscribe: https, then http, then mailto."""
    if not header:
        return None
    urls = re.findall(r"<([^>]+)>", header)
    for prefix in ("https://", "http://", "mailto:"):
        for url in urls:
            if url.startswith(prefix):
                return url
    return None


def _has_attachments(payload: dict) -> bool:
    for part in payload.get("parts") or []:
        if part.get("filename"):
            return True
        if _has_attachments(part):
            return True
    return False


def _safe_int(value) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0


def parse_message(message: dict) -> Optional[EmailRecord]:
    """Turn a messages.get (format=metadata) response into an EmailRecord."""
    if not message or not message.get("id"):
        return None
    payload = message.get("payload") or {}
    headers = payload.get("headers")
    from_email, from_name = parse_email_address(_get_header(headers, "From"))
    labels = list(message.get("labelIds") or [])
    return EmailRecord(
        message_id=message["id"],
        thread_id=message.get("threadId") or "",
        subject=_get_header(headers, "Subject"),
        snippet=message.get("snippet") or None,
        from_email=from_email,
        from_name=from_name,
        labels=labels,
        category=find_category(labels),
        size_bytes=_safe_int(message.get("sizeEstimate")),
        has_attachments=_has_attachments(payload),
        internal_date=_safe_int(message.get("internalDate")),
        synced_at=int(time.time() * 1000),
        unsubscribe_link=parse_unsubscribe_header(_get_header(headers, "List-Unsubscribe")),
    )


def _direct(fn):
    return fn()


class GmailClient:
    """
    One method per upstream request, except fetch_history_changes which pages
    through history and runs each page request through `call`.
    Callers wrap methods in with_retry themselves.
    """

    def __init__(self, service, account_id: Optional[int] = None):
        self.service = service
        self.account_id = account_id

    def get_current_history_id(self) -> str:
        profile = self.service.users().getProfile(userId="me").execute()
        return str(profile.get("historyId") or "0")

    def get_quick_stats(self) -> int:
        """
        Estimated message count: profile total (which excludes SPAM and TRASH)
        plus the SPAM and TRASH label totals, since sync includes both.
        """
        profile = self.service.users().getProfile(userId="me").execute()
        total = _safe_int(profile.get("messagesTotal"))
        for label_id in ("SPAM", "TRASH"):
            try:
                label = self.service.users().labels().get(userId="me", id=label_id).execute()
            except HttpError as e:
                logger.warning(f"Could not get count for label {label_id}: {e}")
                continue
            total += _safe_int(label.get("messagesTotal"))
        return total

    def list_message_ids(self, page_token: Optional[str] = None, max_results: Optional[int] = None) -> MessagePage:
        result = (
            self.service.users()
            .messages()
            .list(
                userId="me",
                maxResults=max_results or settings.gmail_list_page_size,
                pageToken=page_token or None,
                includeSpamTrash=True,
                fields="messages(id),nextPageToken",
            )
            .execute()
        )
        ids = [m["id"] for m in result.get("messages", []) if m.get("id")]
        return MessagePage(ids=ids, next_page_token=result.get("nextPageToken") or None)

    def fetch_message_details(self, message_ids: List[str]) -> DetailBatch:
        """
        Fetch metadata for up to DETAIL_BATCH_LIMIT messages in one HTTP batch request.

        Per-item failures are reported in failed_ids; per-item 429s also set
        rate_limited, with the largest Retry-After seen. When every item failed
        with a retryable error the first such error is raised, so the whole
        batch can be replayed by the caller's retry wrapper.
        """
        if not message_ids:
            return DetailBatch(records=[])
        responses: dict[str, dict] = {}
        errors: dict[str, Exception] = {}

        def _callback(request_id, response, exception):
            if exception is not None:
                errors[request_id] = exception
            else:
                responses[request_id] = response

        batch = self.service.new_batch_http_request(callback=_callback)
        for mid in message_ids:
            batch.add(
                self.service.users()
                .messages()
                .get(userId="me", id=mid, format="metadata", metadataHeaders=METADATA_HEADERS),
                request_id=mid,
            )
        batch.execute()

        if errors and not responses:
            first = next(iter(errors.values()))
            if all(is_retryable(e) for e in errors.values()):
                raise first
            if isinstance(first, HttpError) and first.resp.status in (401, 403):
                raise first

        records = []
        failed = []
        for mid in message_ids:
            if mid in responses:
                record = parse_message(responses[mid])
                if record is not None:
                    records.append(record)
                    continue
            failed.append(mid)
        rate_limited = False
        wait_s = None
        for e in errors.values():
            if http_status(e) == 429:
                rate_limited = True
                hint = retry_after(e)
                if hint is not None and (wait_s is None or hint > wait_s):
                    wait_s = hint
        if failed:
            logger.warning(f"Gmail detail fetch: {len(failed)}/{len(message_ids)} messages failed")
        return DetailBatch(records=records, failed_ids=failed, rate_limited=rate_limited, retry_after_s=wait_s)

    def fetch_history_changes(
        self,
        start_history_id: str,
        call: Optional[Callable] = None,
    ) -> HistoryChanges:
        """
        Merge history since start_history_id into added/deleted ids.

        A message added then deleted (or the reverse) only keeps its last state.
        Label changes on messages not re-fetched are collected too.
        Raises HistoryExpiredError when Gmail no longer has that history.
        """
        call = call or _direct
        added: dict[str, None] = {}
        deleted: dict[str, None] = {}
        labels: dict[str, tuple[set, set]] = {}
        new_history_id = start_history_id
        page_token = None
        seen_tokens = set()

        while True:
            try:
                result = call(
                    lambda: self.service.users()
                    .history()
                    .list(
                        userId="me",
                        startHistoryId=start_history_id,
                        maxResults=settings.gmail_history_max_results,
                        pageToken=page_token,
                        historyTypes=["messageAdded", "messageDeleted", "labelAdded", "labelRemoved"],
                    )
                    .execute()
                )
            except HttpError as e:
                if e.resp.status == 404 or "start history id" in str(e).lower():
                    raise HistoryExpiredError(f"historyId {start_history_id} is no longer available") from e
                raise

            for record in result.get("history", []):
                for item in record.get("messagesAdded", []):
                    mid = (item.get("message") or {}).get("id")
                    if mid:
                        added[mid] = None
                        deleted.pop(mid, None)
                for item in record.get("messagesDeleted", []):
                    mid = (item.get("message") or {}).get("id")
                    if mid:
                        deleted[mid] = None
                        added.pop(mid, None)
                        labels.pop(mid, None)
                for key, adding in (("labelsAdded", True), ("labelsRemoved", False)):
                    for item in record.get(key, []):
                        mid = (item.get("message") or {}).get("id")
                        if not mid or mid in added or mid in deleted:
                            continue
                        plus, minus = labels.setdefault(mid, (set(), set()))
                        for label_id in item.get("labelIds") or []:
                            if adding:
                                plus.add(label_id)
                                minus.discard(label_id)
                            else:
                                minus.add(label_id)
                                plus.discard(label_id)

            if result.get("historyId"):
                new_history_id = str(result["historyId"])
            next_token = result.get("nextPageToken")
            if not next_token:
                break
            if next_token in seen_tokens:
                logger.warning("Gmail history pagination returned a repeated page token; stopping early")
                break
            seen_tokens.add(next_token)
            page_token = next_token

        label_changes = {
            mid: (sorted(plus), sorted(minus))
            for mid, (plus, minus) in labels.items()
            if (plus or minus) and mid not in added
        }
        logger.info(
            f"Gmail history since {start_history_id}: {len(added)} added, {len(deleted)} deleted, "
            f"{len(label_changes)} label changes"
        )
        return HistoryChanges(
            added=list(added),
            deleted=list(deleted),
            new_history_id=new_history_id,
            label_changes=label_changes,
        )

    def get_message_ids_by_query(self, query: str, max_results: int = 500, page_token: Optional[str] = None) -> MessagePage:
        result = (
            self.service.users()
            .messages()
            .list(
                userId="me",
                q=query,
                maxResults=min(500, max_results),
                pageToken=page_token or None,
                includeSpamTrash=True,
            )
            .execute()
        )
        ids = [m["id"] for m in result.get("messages", []) if m.get("id")]
        return MessagePage(ids=ids, next_page_token=result.get("nextPageToken") or None)

    def batch_delete(self, message_ids: List[str]) -> None:
        """Permanently delete up to 1000 messages."""
        if not message_ids:
            return
        if len(message_ids) > MODIFY_BATCH_LIMIT:
            raise ValueError(f"Cannot delete more than {MODIFY_BATCH_LIMIT} messages at once")
        self.service.users().messages().batchDelete(userId="me", body={"ids": list(message_ids)}).execute()

    def trash(self, message_ids: List[str]) -> None:
        """Move up to 1000 messages to trash in one batchModify."""
        if not message_ids:
            return
        if len(message_ids) > MODIFY_BATCH_LIMIT:
            raise ValueError(f"Cannot trash more than {MODIFY_BATCH_LIMIT} messages at once")
        self.service.users().messages().batchModify(
            userId="me",
            body={"ids": list(message_ids), "addLabelIds": ["TRASH"], "removeLabelIds": ["INBOX"]},
        ).execute()
