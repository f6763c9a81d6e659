"""SQLAlchemy engine, session factory and helpers."""

from collections.abc import Generator
from contextlib import contextmanager
from typing import Any

from sqlalchemy import create_engine, event
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from whatsdesk.config import settings

Base = declarative_base()


def _is_sqlite(url: str) -> bool:
    return url.startswith("sqlite")


def build_engine(database_url: str, echo: bool = False):
    """Create an engine; SQLite connections get WAL, foreign keys and a busy timeout."""
    engine = create_engine(
        database_url,
        connect_args={"check_same_thread": False} if _is_sqlite(database_url) else {},
        echo=echo,
    )

    if _is_sqlite(database_url):

        @event.listens_for(engine, "connect")
        def set_sqlite_pragma(dbapi_connection: Any, connection_record: Any) -> None:
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute("PRAGMA synchronous=NORMAL")
            cursor.execute("PRAGMA busy_timeout=5000")
            cursor.close()

    return engine


engine = build_engine(settings.database_url, echo=settings.sql_echo)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def get_db() -> Generator[Session, None, None]:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@contextmanager
def get_db_context(session_factory=None) -> Generator[Session, None, None]:
    """Session scope for code running outside a request: commit on success, rollback on error."""
    db = (session_factory or SessionLocal)()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def init_db(bind=None) -> None:
    """Create all tables."""
    import whatsdesk.models  # noqa: F401

    Base.metadata.create_all(bind=bind or engine)


def dialect_name(db: Session) -> str:
    return db.get_bind().dialect.name


def dialect_insert(db: Session, model):
    """INSERT construct supporting ON CONFLICT for the session's dialect."""
    if dialect_name(db) == "postgresql":
        return pg_insert(model)
    return sqlite_insert(model)
