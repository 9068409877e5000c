"""
Central SQLAlchemy models and engine utilities.

One row per note session, one row per attachment (payload included) and a
small key/value table for durable application markers.
"""

import logging
from typing import Optional

from sqlalchemy import (
    TIMESTAMP,
    Column,
    ForeignKey,
    Index,
    Integer,
    LargeBinary,
    String,
    Text,
    create_engine,
    event,
)
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker

from .config import Config

logger = logging.getLogger(__name__)

Base = declarative_base()


class NoteSessionRecord(Base):
    """
    Durable copy of a note session.

    ``position`` keeps the collection order (0 = newest / front).
    """
    __tablename__ = "note_sessions"

    id = Column(String(36), primary_key=True)
    position = Column(Integer, nullable=False)
    title = Column(Text, nullable=False, default="")
    content = Column(Text, nullable=False, default="")

    # Last generation record + side conversation, stored as JSON
    result_json = Column(Text, nullable=True)
    conversation_json = Column(Text, nullable=True)

    status = Column(String(20), nullable=False, default="idle")
    error = Column(Text, nullable=True)
    mode = Column(String(50), nullable=True)
    created_at = Column(TIMESTAMP, nullable=True)

    __table_args__ = (
        Index("idx_note_sessions_position", "position"),
        Index("idx_note_sessions_created", "created_at"),
    )


class AttachmentRecord(Base):
    """Attachment payloads. Display handles are never stored."""
    __tablename__ = "note_attachments"

    id = Column(String(36), primary_key=True)
    session_id = Column(
        String(36), ForeignKey("note_sessions.id", ondelete="CASCADE"), nullable=False, index=True
    )
    position = Column(Integer, nullable=False)
    filename = Column(Text, nullable=False)
    mime_type = Column(String(255), nullable=False)
    kind = Column(String(20), nullable=False)
    data = Column(LargeBinary, nullable=False)


class AppState(Base):
    """Durable key/value markers (first-run marker, scheduler last-run date)."""
    __tablename__ = "app_state"

    key = Column(String(100), primary_key=True)
    value = Column(Text, nullable=True)


def get_database_url() -> str:
    """
    Get database URL from environment, defaulting to SQLite.

    Returns:
        Database connection string
    """
    if Config.DATABASE_URL:
        return Config.DATABASE_URL

    db_path = Config.sqlite_path()
    logger.warning("DATABASE_URL not set, using SQLite database at %s", db_path)
    return f"sqlite:///{db_path}"


def create_engine_for_url(database_url: Optional[str] = None) -> Engine:
    """Build a SQLAlchemy engine for the given URL (or default environment)."""
    url = database_url or get_database_url()
    connect_args = {}
    if url.startswith("sqlite"):
        # Saves run on a worker thread (asyncio.to_thread)
        connect_args["check_same_thread"] = False

    engine = create_engine(
        url,
        future=True,
        echo=False,
        pool_pre_ping=True,
        connect_args=connect_args,
    )

    if engine.dialect.name == "sqlite":
        event.listen(engine, "connect", _set_sqlite_pragmas)

    return engine


def create_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(
        bind=engine,
        autocommit=False,
        autoflush=False,
        expire_on_commit=False,
        future=True,
    )


def _set_sqlite_pragmas(dbapi_connection, connection_record):
    """
    Apply SQLite pragmas for better consistency (WAL, foreign keys).
    """
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.close()
