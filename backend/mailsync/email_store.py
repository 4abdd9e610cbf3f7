"""
Per-account local email store: one SQLite file per mailbox holding message
metadata (`emails`) and per-sender rollups (`senders`).

Only the sync and bulk-action workers write here; routes read.
"""
import json
import logging
import os
import threading
from dataclasses import asdict, dataclass, field
from typing import Iterable, Optional

from sqlalchemy import (
    Column,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    create_engine,
    delete,
    event,
    func,
    insert,
    select,
    update,
)
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.engine import Engine

from .config import settings

logger = logging.getLogger(__name__)

# SQLite caps bound parameters per statement; keep IN (...) lists below it.
_IN_CHUNK = 500

metadata = MetaData()

emails_table = Table(
    "emails",
    metadata,
    Column("message_id", String, primary_key=True),
    Column("thread_id", String),
    Column("subject", Text),
    Column("snippet", Text),
    Column("from_email", String, nullable=False, index=True),
    Column("from_name", String),
    Column("labels", Text),  # JSON list of label ids
    Column("category", String, index=True),
    Column("size_bytes", Integer, default=0),
    Column("has_attachments", Integer, default=0),
    Column("is_unread", Integer, default=0, index=True),
    Column("is_starred", Integer, default=0),
    Column("is_trash", Integer, default=0, index=True),
    Column("is_spam", Integer, default=0),
    Column("is_important", Integer, default=0),
    Column("internal_date", Integer, index=True),  # epoch millis from Gmail
    Column("synced_at", Integer),
    Column("unsubscribe_link", Text),
)

senders_table = Table(
    "senders",
    metadata,
    Column("email", String, primary_key=True),
    Column("name", String),
    Column("count", Integer),
    Column("total_size", Integer),
    Column("first_date", Integer),
    Column("latest_date", Integer),
)


@dataclass(frozen=True)
class EmailRecord:
    message_id: str
    thread_id: str = ""
    subject: Optional[str] = None
    snippet: Optional[str] = None
    from_email: str = "unknown@unknown.com"
    from_name: Optional[str] = None
    labels: list = field(default_factory=list)
    category: Optional[str] = None
    size_bytes: int = 0
    has_attachments: bool = False
    internal_date: int = 0
    synced_at: int = 0
    unsubscribe_link: Optional[str] = None

    def to_row(self) -> dict:
        row = asdict(self)
        labels = list(self.labels or [])
        row["labels"] = json.dumps(labels)
        row["has_attachments"] = 1 if self.has_attachments else 0
        row.update(label_flags(labels))
        return row


def find_category(labels: Iterable[str]) -> Optional[str]:
    labels = list(labels or [])
    for label in labels:
        if label.startswith("CATEGORY_"):
            return label
    for special in ("SENT", "SPAM", "TRASH"):
        if special in labels:
            return special
    return None


def label_flags(labels: Iterable[str]) -> dict:
    labels = set(labels or [])
    return {
        "is_unread": int("UNREAD" in labels),
        "is_starred": int("STARRED" in labels),
        "is_trash": int("TRASH" in labels),
        "is_spam": int("SPAM" in labels),
        "is_important": int("IMPORTANT" in labels),
    }


def _chunks(items: list, size: int):
    for i in range(0, len(items), size):
        yield items[i:i + size]


class EmailStore:
    def __init__(self, engine: Engine, account_id: Optional[int] = None):
        self.engine = engine
        self.account_id = account_id
        metadata.create_all(engine)

    @classmethod
    def from_path(cls, path: str, account_id: Optional[int] = None) -> "EmailStore":
        engine = create_engine(f"sqlite:///{path}", connect_args={"check_same_thread": False})

        @event.listens_for(engine, "connect")
        def _pragmas(dbapi_connection, connection_record):
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA journal_mode=WAL;")
            cursor.execute("PRAGMA synchronous=NORMAL;")
            cursor.close()

        return cls(engine, account_id=account_id)

    def clear(self) -> None:
        with self.engine.begin() as conn:
            conn.execute(delete(emails_table))
            conn.execute(delete(senders_table))

    def insert_emails(self, records: list[EmailRecord]) -> int:
        """Upsert records by message_id. Returns the number written."""
        if not records:
            return 0
        rows = [r.to_row() for r in records]
        stmt = sqlite_insert(emails_table)
        stmt = stmt.on_conflict_do_update(
            index_elements=[emails_table.c.message_id],
            set_={c.name: stmt.excluded[c.name] for c in emails_table.columns if c.name != "message_id"},
        )
        with self.engine.begin() as conn:
            conn.execute(stmt, rows)
        return len(rows)

    def delete_by_ids(self, message_ids: list[str]) -> int:
        deleted = 0
        with self.engine.begin() as conn:
            for chunk in _chunks(list(message_ids), _IN_CHUNK):
                result = conn.execute(delete(emails_table).where(emails_table.c.message_id.in_(chunk)))
                deleted += result.rowcount or 0
        return deleted

    def mark_trashed(self, message_ids: list[str]) -> int:
        """Flag rows as trashed after a provider trash, keeping labels consistent."""
        changes = {mid: (["TRASH"], ["INBOX"]) for mid in message_ids}
        return self.apply_label_changes(changes)

    def apply_label_changes(self, changes: dict) -> int:
        """
        changes: message_id -> (labels_added, labels_removed).
        Recomputes category and flags. Rows missing locally are skipped.
        """
        if not changes:
            return 0
        updated = 0
        with self.engine.begin() as conn:
            ids = list(changes.keys())
            current = {}
            for chunk in _chunks(ids, _IN_CHUNK):
                for mid, labels in conn.execute(
                    select(emails_table.c.message_id, emails_table.c.labels).where(
                        emails_table.c.message_id.in_(chunk)
                    )
                ):
                    current[mid] = labels
            for mid, raw in current.items():
                added, removed = changes[mid]
                try:
                    labels = json.loads(raw or "[]")
                except ValueError:
                    labels = []
                removed = set(removed)
                label_set = [label for label in dict.fromkeys(list(labels) + list(added)) if label not in removed]
                values = {"labels": json.dumps(label_set), "category": find_category(label_set)}
                values.update(label_flags(label_set))
                conn.execute(update(emails_table).where(emails_table.c.message_id == mid).values(**values))
                updated += 1
        return updated

    def rebuild_sender_aggregates(self) -> int:
        """Recompute senders from emails. Returns the number of senders."""
        e = emails_table.c
        agg = (
            select(
                e.from_email,
                func.max(e.from_name),
                func.count(),
                func.coalesce(func.sum(e.size_bytes), 0),
                func.min(e.internal_date),
                func.max(e.internal_date),
            )
            .group_by(e.from_email)
        )
        with self.engine.begin() as conn:
            conn.execute(delete(senders_table))
            conn.execute(
                insert(senders_table).from_select(
                    ["email", "name", "count", "total_size", "first_date", "latest_date"], agg
                )
            )
            total = conn.execute(select(func.count()).select_from(senders_table)).scalar_one()
        return int(total)

    def count(self) -> int:
        with self.engine.connect() as conn:
            return int(conn.execute(select(func.count()).select_from(emails_table)).scalar_one())

    def message_ids(self) -> set[str]:
        with self.engine.connect() as conn:
            return {row[0] for row in conn.execute(select(emails_table.c.message_id))}

    def top_senders(self, limit: int = 20) -> list[dict]:
        s = senders_table.c
        with self.engine.connect() as conn:
            rows = conn.execute(select(senders_table).order_by(s.count.desc(), s.email).limit(limit))
            return [dict(r._mapping) for r in rows]

    def close(self) -> None:
        self.engine.dispose()


_stores: dict[int, EmailStore] = {}
_stores_lock = threading.Lock()


def email_store_path(account_id: int, base_dir: Optional[str] = None) -> str:
    base = base_dir or settings.email_store_dir
    if not os.path.isabs(base):
        backend_dir = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
        base = os.path.join(backend_dir, base)
    os.makedirs(base, exist_ok=True)
    return os.path.join(base, f"emails_{account_id}.db")


def open_email_store(account_id: int) -> EmailStore:
    """Cached store for the account; created on first use."""
    with _stores_lock:
        store = _stores.get(account_id)
        if store is None:
            store = EmailStore.from_path(email_store_path(account_id), account_id=account_id)
            _stores[account_id] = store
        return store


def close_all_email_stores() -> None:
    with _stores_lock:
        for store in _stores.values():
            store.close()
        _stores.clear()
