"""
SQLAlchemy-backed persistence for the note session collection.

The whole collection is loaded at start-up and written back with full-replace
semantics, so deletions need no tombstones. Persistence is best-effort: the
gateway never raises past its boundary, it logs and reports failure instead.
"""

from __future__ import annotations

import asyncio
import json
import logging
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, Generator, List, Optional, Sequence

from pydantic import ValidationError
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from ..config import Config
from ..database import (
    AppState,
    AttachmentRecord,
    Base,
    NoteSessionRecord,
    create_engine_for_url,
    create_session_factory,
)
from .attachments import AttachmentRegistry, classify
from .models import (
    DEFAULT_MODE,
    AttachmentKind,
    AttachmentRef,
    ChatMessage,
    GenerationResult,
    NoteMode,
    NoteSession,
    NoteStatus,
    SaveStatus,
)

logger = logging.getLogger(__name__)

INITIALIZED_KEY = "sessions_initialized"


def _persisted_status(status: Any) -> NoteStatus:
    """Status as it may be stored: never PROCESSING."""
    try:
        value = NoteStatus(status)
    except ValueError:
        return NoteStatus.IDLE
    return NoteStatus.IDLE if value == NoteStatus.PROCESSING else value


def _coerce_mode(value: Any) -> NoteMode:
    try:
        return NoteMode(value)
    except ValueError:
        return DEFAULT_MODE


def _serialize_history(history: List[ChatMessage]) -> Optional[str]:
    if not history:
        return None
    return json.dumps([m.model_dump(mode="json") for m in history])


def _deserialize_history(value: Optional[str]) -> List[ChatMessage]:
    if not value:
        return []
    try:
        return [ChatMessage.model_validate(item) for item in json.loads(value)]
    except (TypeError, ValueError, ValidationError):
        logger.warning("Discarding unreadable conversation history")
        return []


def _deserialize_result(value: Optional[str]) -> Optional[GenerationResult]:
    if not value:
        return None
    try:
        return GenerationResult.model_validate_json(value)
    except (ValueError, ValidationError):
        logger.warning("Discarding unreadable generation result")
        return None


def _attachment_from_record(row: AttachmentRecord) -> AttachmentRef:
    try:
        kind = AttachmentKind(row.kind)
    except ValueError:
        kind = classify(row.filename, row.mime_type)
    return AttachmentRef(
        id=row.id,
        filename=row.filename,
        mime_type=row.mime_type,
        kind=kind,
        data=bytes(row.data),
    )


def _session_from_record(row: NoteSessionRecord, attachments: List[AttachmentRef]) -> NoteSession:
    status = NoteStatus.IDLE
    try:
        status = NoteStatus(row.status)
    except ValueError:
        pass
    error = row.error
    if status == NoteStatus.PROCESSING:
        # Interrupted mid-generation: never resurrect a stuck session
        status, error = NoteStatus.IDLE, None

    return NoteSession(
        id=row.id,
        title=row.title or "",
        content=row.content or "",
        attachments=attachments,
        result=_deserialize_result(row.result_json),
        status=status,
        error=error or None,
        created_at=row.created_at or datetime.now(),
        mode=_coerce_mode(row.mode),
        conversation_history=_deserialize_history(row.conversation_json),
    )


class PersistenceGateway:
    """
    Durable storage adapter for the session collection.

    Display handles are stripped on save and regenerated (through the
    AttachmentRegistry) on load.
    """

    def __init__(
        self,
        db_path: Optional[Path] = None,
        database_url: Optional[str] = None,
        attachments: Optional[AttachmentRegistry] = None,
    ):
        self.engine, self.session_factory = self._configure_engine(db_path, database_url)
        self.attachments = attachments
        Base.metadata.create_all(bind=self.engine)

    def load_all(self) -> Optional[List[NoteSession]]:
        """
        Load every stored session in collection order.

        Returns:
            None if storage was never initialized (first run) or could not be
            read; otherwise the (possibly empty) list of sessions.
        """
        try:
            with self._session_scope() as db:
                if db.get(AppState, INITIALIZED_KEY) is None:
                    return None

                by_session: Dict[str, List[AttachmentRef]] = {}
                for row in db.query(AttachmentRecord).order_by(
                    AttachmentRecord.session_id, AttachmentRecord.position
                ):
                    by_session.setdefault(row.session_id, []).append(_attachment_from_record(row))

                rows = db.query(NoteSessionRecord).order_by(NoteSessionRecord.position).all()
                sessions = [_session_from_record(r, by_session.get(r.id, [])) for r in rows]
        except Exception:
            logger.exception("Failed to load note sessions from storage")
            return None

        if self.attachments is not None:
            for session in sessions:
                session.attachments = self.attachments.rehydrate(session.attachments)
        return sessions

    def save_all(self, sessions: Sequence[NoteSession]) -> bool:
        """
        Replace the stored collection with ``sessions``.

        Returns:
            True on success, False (after logging) on any failure.
        """
        try:
            with self._session_scope() as db:
                db.query(AttachmentRecord).delete(synchronize_session=False)
                db.query(NoteSessionRecord).delete(synchronize_session=False)
                # Flush deletes before inserting rows that may reuse the same ids
                db.flush()

                for position, session in enumerate(sessions):
                    db.add(
                        NoteSessionRecord(
                            id=session.id,
                            position=position,
                            title=session.title,
                            content=session.content,
                            result_json=session.result.model_dump_json() if session.result else None,
                            conversation_json=_serialize_history(session.conversation_history),
                            status=_persisted_status(session.status).value,
                            error=session.error,
                            mode=_coerce_mode(session.mode).value,
                            created_at=session.created_at,
                        )
                    )
                    for a_position, attachment in enumerate(session.attachments):
                        db.add(
                            AttachmentRecord(
                                id=attachment.id,
                                session_id=session.id,
                                position=a_position,
                                filename=attachment.filename,
                                mime_type=attachment.mime_type,
                                kind=AttachmentKind(attachment.kind).value,
                                data=attachment.data,
                            )
                        )
                db.merge(AppState(key=INITIALIZED_KEY, value=datetime.now().isoformat()))
            return True
        except Exception:
            logger.exception("Failed to save %d note sessions", len(sessions))
            return False

    def get_state(self, key: str) -> Optional[str]:
        try:
            with self._session_scope() as db:
                row = db.get(AppState, key)
                return row.value if row else None
        except Exception:
            logger.exception("Failed to read app state %s", key)
            return None

    def set_state(self, key: str, value: str) -> bool:
        try:
            with self._session_scope() as db:
                db.merge(AppState(key=key, value=value))
            return True
        except Exception:
            logger.exception("Failed to write app state %s", key)
            return False

    def _configure_engine(
        self,
        db_path: Optional[Path],
        database_url: Optional[str],
    ) -> tuple[Engine, sessionmaker]:
        if database_url:
            engine = create_engine_for_url(database_url)
        elif db_path:
            resolved = Path(db_path).resolve()
            engine = create_engine_for_url(f"sqlite:///{resolved}")
        else:
            engine = create_engine_for_url()
        return engine, create_session_factory(engine)

    @contextmanager
    def _session_scope(self) -> Generator[Session, None, None]:
        session = self.session_factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()


class AutoSaveScheduler:
    """
    Debounced auto-save on the asyncio event loop.

    Every trigger() restarts the delay, so a burst of edits results in a
    single write. save_now() cancels the pending write and saves at once.
    """

    def __init__(
        self,
        gateway: PersistenceGateway,
        snapshot: Callable[[], List[NoteSession]],
        delay_seconds: Optional[float] = None,
    ):
        self._gateway = gateway
        self._snapshot = snapshot
        self._delay = Config.AUTOSAVE_DELAY_SECONDS if delay_seconds is None else delay_seconds
        self._task: Optional[asyncio.Task] = None
        self._lock: Optional[asyncio.Lock] = None
        self.status = SaveStatus.SAVED

    @property
    def pending(self) -> bool:
        return self._task is not None and not self._task.done()

    def trigger(self) -> None:
        """Schedule a save after the debounce delay. Resets if called again."""
        self.cancel()
        self.status = SaveStatus.SAVING
        self._task = asyncio.get_running_loop().create_task(self._delayed_save())

    def cancel(self) -> None:
        """Cancel any pending save."""
        if self._task is not None:
            self._task.cancel()
            self._task = None

    async def save_now(self) -> bool:
        """Save immediately, canceling any pending debounce."""
        self.cancel()
        return await self._save()

    async def _delayed_save(self) -> None:
        try:
            await asyncio.sleep(self._delay)
        except asyncio.CancelledError:
            # Rescheduled or flushed by save_now()
            return
        # Past this point the write is committed to; cancel() must not interrupt it
        self._task = None
        await self._save()

    async def _save(self) -> bool:
        if self._lock is None:
            self._lock = asyncio.Lock()
        async with self._lock:
            self.status = SaveStatus.SAVING
            sessions = self._snapshot()
            ok = await asyncio.to_thread(self._gateway.save_all, sessions)
            if not ok:
                self.status = SaveStatus.ERROR
            else:
                self.status = SaveStatus.SAVING if self.pending else SaveStatus.SAVED
            return ok
