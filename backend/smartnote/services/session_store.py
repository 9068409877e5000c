"""
In-memory note session store.

The store is the single owner of the session collection and the active-session
pointer. Every mutation is synchronous; callers on the event loop never see a
half-applied update. Updates are always keyed by session id so that results of
long-running generations land on the session they were started for.

Invariants kept after every operation:
- the collection is never empty and ``active_id`` references a stored session
- display handles are live exactly while their attachment is reachable
- stored content never carries search-highlight markup
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Callable, Iterable, List, Optional, Sequence

from .attachments import AttachmentRegistry
from .models import (
    DEFAULT_MODE,
    AttachmentRef,
    NoteMode,
    NoteSession,
    NoteStatus,
    generate_id,
)
from .reconciler import default_content, strip_highlight

logger = logging.getLogger(__name__)

IMMUTABLE_FIELDS = frozenset({"id", "created_at"})
UPDATABLE_FIELDS = frozenset(NoteSession.model_fields) - IMMUTABLE_FIELDS

Listener = Callable[[], None]


def matches_query(session: NoteSession, query: str) -> bool:
    """
    Case-insensitive AND match of whitespace-separated tokens.

    Every token must appear in the title, the raw content or the last
    generated text. An empty query matches everything.
    """
    keywords = (query or "").lower().split()
    if not keywords:
        return True
    title = (session.title or "").lower()
    content = (session.content or "").lower()
    generated = (session.result.generated_text if session.result else "").lower()
    return all(k in title or k in content or k in generated for k in keywords)


class NoteSessionStore:
    """Authoritative collection of note sessions (newest first)."""

    def __init__(
        self,
        attachments: Optional[AttachmentRegistry] = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.attachments = attachments or AttachmentRegistry()
        self._clock = clock
        self._sessions: List[NoteSession] = []
        self._active_id: Optional[str] = None
        self._listeners: List[Listener] = []

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def init(self, loaded: Optional[Sequence[NoteSession]]) -> bool:
        """
        Adopt sessions loaded from storage.

        Returns:
            True when no sessions were available and a fresh default session
            was synthesized (the caller should persist it right away).
        """
        self.dispose()
        if loaded:
            self._sessions = list(loaded)
            for session in self._sessions:
                session.attachments = [
                    a if self.attachments.is_live(a.display_handle) else self.attachments.attach_handle(a)
                    for a in session.attachments
                ]
            self._active_id = self._sessions[0].id
            return False

        fresh = self._new_session()
        self._sessions = [fresh]
        self._active_id = fresh.id
        return True

    def dispose(self) -> None:
        """Release every display handle and forget all sessions."""
        for session in self._sessions:
            self.attachments.revoke_all(session.attachments)
        self._sessions = []
        self._active_id = None

    def subscribe(self, listener: Listener) -> None:
        """Register a callback invoked after every collection mutation."""
        if listener not in self._listeners:
            self._listeners.append(listener)

    def _notify(self) -> None:
        for listener in self._listeners:
            try:
                listener()
            except Exception:
                logger.exception("Session store listener failed")

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    @property
    def sessions(self) -> List[NoteSession]:
        return list(self._sessions)

    @property
    def active_id(self) -> Optional[str]:
        self._ensure_active()
        return self._active_id

    @property
    def active_session(self) -> NoteSession:
        self._ensure_active()
        return self.get(self._active_id)

    def get(self, session_id: str) -> Optional[NoteSession]:
        return next((s for s in self._sessions if s.id == session_id), None)

    def index_of(self, session_id: str) -> int:
        return next((i for i, s in enumerate(self._sessions) if s.id == session_id), -1)

    def search(self, query: str) -> List[NoteSession]:
        """Sessions in collection order that match ``query``."""
        return [s for s in self._sessions if matches_query(s, query)]

    def snapshot(self) -> List[NoteSession]:
        """Deep copy of the collection for persistence off the event loop."""
        return [s.model_copy(deep=True) for s in self._sessions]

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def create(self, title: str = "", mode: NoteMode = DEFAULT_MODE, content: Optional[str] = None) -> str:
        """Insert a new session at the front and make it active."""
        session = self._new_session(title=title, mode=mode)
        if content is not None:
            session.content = strip_highlight(content)
        self._sessions.insert(0, session)
        self._active_id = session.id
        self._notify()
        return session.id

    def update(self, session_id: str, **fields: Any) -> bool:
        """
        Shallow-merge ``fields`` into the session with ``session_id``.

        Returns:
            False (and changes nothing) if no such session exists, which is
            the case when a generation finishes after its session was deleted.

        Raises:
            ValueError: for unknown field names or immutable fields, or a
                pydantic ValidationError when a value has the wrong type.
        """
        invalid = set(fields) - UPDATABLE_FIELDS
        if invalid:
            raise ValueError(f"Cannot update fields: {', '.join(sorted(invalid))}")

        index = self.index_of(session_id)
        if index < 0:
            logger.info("Ignoring update for unknown session %s", session_id)
            return False

        current = self._sessions[index]
        # model_copy does not validate, so check the merged session first
        candidate = NoteSession.model_validate({**dict(current), **fields})
        updates = {name: getattr(candidate, name) for name in fields}
        if "content" in updates:
            updates["content"] = strip_highlight(updates["content"])
        if "attachments" in updates:
            updates["attachments"] = self._reconcile_attachments(current.attachments, updates["attachments"])

        self._sessions[index] = current.model_copy(update=updates)
        self._notify()
        return True

    def delete(self, session_id: str) -> bool:
        """
        Remove a session and revoke its display handles.

        If the active session is removed, the session that preceded it becomes
        active (or the first remaining one). Removing the last session
        synthesizes a fresh default session.
        """
        index = self.index_of(session_id)
        if index < 0:
            return False

        removed = self._sessions.pop(index)
        self.attachments.revoke_all(removed.attachments)

        if not self._sessions:
            fresh = self._new_session()
            self._sessions = [fresh]
            self._active_id = fresh.id
        elif self._active_id == session_id:
            next_index = index - 1 if index > 0 else 0
            self._active_id = self._sessions[min(next_index, len(self._sessions) - 1)].id

        self._notify()
        return True

    def duplicate(self, session_id: str) -> Optional[str]:
        """Clone a session to the front of the collection. The active session is unchanged."""
        source = self.get(session_id)
        if source is None:
            return None

        clone = source.model_copy(
            deep=True,
            update={
                "id": generate_id(),
                "title": f"{source.title} (Copy)" if source.title else "Untitled Copy",
                "created_at": self._clock(),
                "status": NoteStatus.IDLE,
                "error": None,
                "conversation_history": [],
            },
        )
        # Payload bytes are immutable once attached, so the clone shares them
        clone.attachments = self.attachments.rehydrate(
            a.model_copy(update={"id": generate_id()})
            for a in source.attachments
        )
        self._sessions.insert(0, clone)
        self._notify()
        return clone.id

    def set_active(self, session_id: str) -> bool:
        if self.get(session_id) is None:
            return False
        self._active_id = session_id
        return True

    def add_attachments(self, session_id: str, files: Iterable[tuple[str, str, bytes]]) -> List[AttachmentRef]:
        """Attach ``(filename, mime_type, data)`` files to a session."""
        session = self.get(session_id)
        if session is None:
            return []
        added = [self.attachments.create_attachment(name, mime, data) for name, mime, data in files]
        self.update(session_id, attachments=[*session.attachments, *added])
        return added

    def remove_attachment(self, session_id: str, index: int) -> bool:
        session = self.get(session_id)
        if session is None or not 0 <= index < len(session.attachments):
            return False
        remaining = list(session.attachments)
        remaining.pop(index)
        return self.update(session_id, attachments=remaining)

    def reset_result(self, session_id: str) -> bool:
        """Explicitly clear the last generation record."""
        return self.update(session_id, result=None, status=NoteStatus.IDLE, error=None)

    def dismiss_error(self, session_id: str) -> bool:
        return self.update(session_id, error=None)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _new_session(self, title: str = "", mode: NoteMode = DEFAULT_MODE) -> NoteSession:
        now = self._clock()
        return NoteSession(title=title, content=default_content(now), created_at=now, mode=mode)

    def _reconcile_attachments(
        self, previous: List[AttachmentRef], incoming: Iterable[AttachmentRef]
    ) -> List[AttachmentRef]:
        incoming = list(incoming)
        kept_handles = {a.display_handle for a in incoming if a.display_handle}
        for attachment in previous:
            if attachment.display_handle not in kept_handles:
                self.attachments.revoke(attachment.display_handle)
        return [
            a if self.attachments.is_live(a.display_handle) else self.attachments.attach_handle(a)
            for a in incoming
        ]

    def _ensure_active(self) -> None:
        """Self-heal the active pointer if it no longer references a session."""
        if self._active_id is not None and self.get(self._active_id) is not None:
            return
        if not self._sessions:
            fresh = self._new_session()
            self._sessions = [fresh]
            self._notify()
        self._active_id = self._sessions[0].id
