import logging
import sqlite3
import threading
import time
from pathlib import Path

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session, declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from boardroom.config.loader import (
    get_database_url,
    get_pool_settings,
    get_sqlite_settings,
)

_DEFAULT_SQLITE_BUSY_TIMEOUT_MS = 30000
_DEFAULT_SQLITE_JOURNAL_MODE = "WAL"
_DEFAULT_SQLITE_SYNCHRONOUS = "NORMAL"
_DEFAULT_SQLITE_WRITE_RETRIES = 5
_DEFAULT_SQLITE_RETRY_BACKOFF_MS = 200
_DEFAULT_POOL_SIZE = 20
_DEFAULT_MAX_OVERFLOW = 40
_DEFAULT_POOL_TIMEOUT_SECONDS = 15
_DEFAULT_POOL_RECYCLE_SECONDS = 1800


def _coerce_positive_int(value, fallback):
    try:
        candidate = int(value)
        return candidate if candidate > 0 else fallback
    except Exception:  # noqa: BLE001
        return fallback


def _get_sqlite_settings() -> dict:
    sqlite_config = get_sqlite_settings()
    journal_mode = sqlite_config.get("journal_mode") or _DEFAULT_SQLITE_JOURNAL_MODE
    synchronous = sqlite_config.get("synchronous") or _DEFAULT_SQLITE_SYNCHRONOUS
    return {
        "journal_mode": str(journal_mode),
        "synchronous": str(synchronous),
        "busy_timeout_ms": _coerce_positive_int(
            sqlite_config.get("busy_timeout_ms"), _DEFAULT_SQLITE_BUSY_TIMEOUT_MS
        ),
        "write_retries": _coerce_positive_int(
            sqlite_config.get("write_retries"), _DEFAULT_SQLITE_WRITE_RETRIES
        ),
        "retry_backoff_ms": _coerce_positive_int(
            sqlite_config.get("retry_backoff_ms"), _DEFAULT_SQLITE_RETRY_BACKOFF_MS
        ),
    }


def _get_pool_settings() -> dict:
    pool_config = get_pool_settings()
    return {
        "pool_size": _coerce_positive_int(
            pool_config.get("pool_size"), _DEFAULT_POOL_SIZE
        ),
        "max_overflow": _coerce_positive_int(
            pool_config.get("max_overflow"), _DEFAULT_MAX_OVERFLOW
        ),
        "pool_timeout": _coerce_positive_int(
            pool_config.get("pool_timeout_seconds"), _DEFAULT_POOL_TIMEOUT_SECONDS
        ),
        "pool_recycle": _coerce_positive_int(
            pool_config.get("pool_recycle_seconds"), _DEFAULT_POOL_RECYCLE_SECONDS
        ),
    }


def _is_memory_sqlite(database_url: str) -> bool:
    if not database_url.startswith("sqlite"):
        return False
    db_url = make_url(database_url)
    return not db_url.database or db_url.database == ":memory:"


def _ensure_sqlite_directory(database_url: str) -> None:
    if not database_url.startswith("sqlite") or _is_memory_sqlite(database_url):
        return
    db_path = Path(make_url(database_url).database)
    if not db_path.is_absolute():
        db_path = Path.cwd() / db_path
    db_path.parent.mkdir(parents=True, exist_ok=True)


DATABASE_URL = get_database_url()

logger = logging.getLogger("database")

_ensure_sqlite_directory(DATABASE_URL)

connect_args = {}
_sqlite_settings = None
if DATABASE_URL.startswith("sqlite"):
    _sqlite_settings = _get_sqlite_settings()
    connect_args["check_same_thread"] = False
    connect_args["timeout"] = max(1, _sqlite_settings["busy_timeout_ms"] / 1000)

if _is_memory_sqlite(DATABASE_URL):
    # Handlers run in the threadpool; every thread must see the same database.
    engine = create_engine(
        DATABASE_URL, connect_args=connect_args, poolclass=StaticPool
    )
else:
    _pool_settings = _get_pool_settings()
    engine = create_engine(
        DATABASE_URL,
        connect_args=connect_args,
        pool_size=_pool_settings["pool_size"],
        max_overflow=_pool_settings["max_overflow"],
        pool_timeout=_pool_settings["pool_timeout"],
        pool_recycle=_pool_settings["pool_recycle"],
        pool_pre_ping=True,
        pool_use_lifo=True,
    )


@event.listens_for(Engine, "connect")
def _set_sqlite_pragma(dbapi_connection, _connection_record) -> None:
    if not isinstance(dbapi_connection, sqlite3.Connection):
        return
    settings = _sqlite_settings or _get_sqlite_settings()
    cursor = dbapi_connection.cursor()
    cursor.execute(f"PRAGMA journal_mode={settings['journal_mode']}")
    cursor.execute(f"PRAGMA synchronous={settings['synchronous']}")
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.execute(f"PRAGMA busy_timeout={settings['busy_timeout_ms']}")
    cursor.close()


_SQLITE_WRITE_LOCK = threading.RLock()


def is_sqlite_locked_error(exc: OperationalError) -> bool:
    message = str(exc).lower()
    return "database is locked" in message or "database table is locked" in message


class QueuedSession(Session):
    """Serialises SQLite writes through one process-wide lock.

    A commit that hits a busy database is rolled back and re-raised; the
    rolled-back statements are gone, so only the caller can redo the work.
    """

    def commit(self) -> None:
        with _SQLITE_WRITE_LOCK:
            try:
                return super().commit()
            except OperationalError as exc:
                if is_sqlite_locked_error(exc):
                    super().rollback()
                raise

    def flush(self, objects=None) -> None:
        with _SQLITE_WRITE_LOCK:
            return super().flush(objects)


def run_unit_of_work(session_factory, work, *args):
    """Run ``work(db, *args)`` in a fresh session, re-running it on a locked database."""
    settings = _sqlite_settings or _get_sqlite_settings()
    retries = max(1, settings["write_retries"])
    backoff = max(1, settings["retry_backoff_ms"]) / 1000
    for attempt in range(1, retries + 1):
        db = session_factory()
        try:
            return work(db, *args)
        except OperationalError as exc:
            if not is_sqlite_locked_error(exc) or attempt >= retries:
                raise
            logger.warning(
                "SQLite database locked; retrying unit of work (attempt %s/%s)",
                attempt,
                retries,
            )
        finally:
            db.close()
        time.sleep(backoff * attempt)


SessionLocal = sessionmaker(
    autocommit=False,
    autoflush=False,
    bind=engine,
    class_=QueuedSession if DATABASE_URL.startswith("sqlite") else Session,
)

Base = declarative_base()
