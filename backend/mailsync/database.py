"""Database engine and sessions.

Route handlers, queue workers, the scheduler and Alembic all use the sync
Session (psycopg on Postgres, WAL-mode SQLite locally).
"""

from __future__ import annotations

from sqlalchemy import create_engine, event
from sqlalchemy.engine import URL
from sqlalchemy.engine.url import make_url
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import NullPool

from .config import settings


def _is_sqlite(url: URL) -> bool:
    return url.drivername.startswith("sqlite")


raw_url: URL = make_url(settings.database_url)
is_transaction_pooler: bool = (raw_url.port == 6543)

# SQLite: NullPool so each thread gets its own connection.
# check_same_thread=False allows different threads to open connections.
sync_connect_args: dict = {}
if _is_sqlite(raw_url):
    timeout_s = max(0.0, float(settings.sqlite_busy_timeout_ms) / 1000.0)
    sync_connect_args = {"check_same_thread": False, "timeout": timeout_s}
    sync_engine = create_engine(
        raw_url,
        connect_args=sync_connect_args,
        poolclass=NullPool,
    )

    @event.listens_for(sync_engine, "connect")
    def _set_sqlite_pragmas(dbapi_connection, connection_record):
        """
        - WAL: queue workers write checkpoints while routes read progress
        - busy_timeout: wait for locks instead of failing immediately
        """
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA journal_mode=WAL;")
        cursor.execute("PRAGMA synchronous=NORMAL;")
        cursor.execute(f"PRAGMA busy_timeout={int(settings.sqlite_busy_timeout_ms)};")
        cursor.execute("PRAGMA foreign_keys=ON;")
        cursor.close()
else:
    # If user provided plain postgresql://..., force psycopg.
    sync_url = raw_url
    if sync_url.drivername == "postgresql":
        sync_url = sync_url.set(drivername="postgresql+psycopg")
    # Supavisor transaction mode does not support prepared statements.
    if is_transaction_pooler:
        sync_connect_args = {"prepare_threshold": None}
    sync_engine = create_engine(
        sync_url,
        connect_args=sync_connect_args,
        pool_pre_ping=True,
        pool_size=max(1, int(settings.db_pool_size)),
        max_overflow=max(0, int(settings.db_max_overflow)),
        pool_timeout=max(1, int(settings.db_pool_timeout_s)),
        pool_recycle=max(0, int(settings.db_pool_recycle_s)),
    )

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=sync_engine)


def init_db():
    """
    Create tables for local SQLite databases.

    We avoid implicit `create_all()` on Postgres; schema should be managed via Alembic.
    """
    if not _is_sqlite(raw_url):
        return
    from .models import Base
    Base.metadata.create_all(bind=sync_engine)

