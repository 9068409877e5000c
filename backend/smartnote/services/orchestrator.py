"""
Generation orchestration for note sessions.

Drives the per-session status state machine:

    IDLE / SUCCESS / ERROR --generate--> PROCESSING --ok--> SUCCESS
                                                   \\-fail-> ERROR

At most one generation is in flight per session. The target session id is
captured when generation starts, so a result always lands on the session it
was requested for, whatever the user did in the meantime. If that session
was deleted before the result arrived, the result is dropped.
"""

from __future__ import annotations

import asyncio
import base64
import logging
from datetime import datetime
from typing import Callable, List, Optional

from .generator import GenerationService
from .models import (
    BinarySegment,
    ChatMessage,
    Citation,
    GenerationRequest,
    GenerationResponse,
    GenerationResult,
    NoteSession,
    NoteStatus,
)
from .reconciler import append_generation, markdown_to_markup, strip_highlight, to_segments
from .session_store import NoteSessionStore

logger = logging.getLogger(__name__)

DEFAULT_TITLE_PREFIX = "Smart Note"


def format_citations(citations: List[Citation]) -> str:
    """Trailing markdown "Sources" section for the given citations."""
    if not citations:
        return ""
    lines = ["", "", "---", "**Sources:**"]
    for number, citation in enumerate(citations, start=1):
        lines.append(f"{number}. [{citation.title or citation.uri}]({citation.uri})")
    return "\n".join(lines)


def build_request(session: NoteSession) -> GenerationRequest:
    """
    Assemble the generation payload for a session.

    Note content is flattened into text/image segments; every attachment
    becomes one base64 binary segment after them.
    """
    return GenerationRequest(
        content_segments=to_segments(strip_highlight(session.content)),
        attachment_segments=[
            BinarySegment(
                mime_type=a.mime_type,
                data=base64.b64encode(a.data).decode("ascii"),
                filename=a.filename,
                kind=a.kind,
            )
            for a in session.attachments
        ],
        mode=session.mode,
    )


class GenerationOrchestrator:
    def __init__(
        self,
        store: NoteSessionStore,
        generator: GenerationService,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self._store = store
        self._generator = generator
        self._clock = clock
        self._in_flight: set[str] = set()

    def is_generating(self, session_id: str) -> bool:
        return session_id in self._in_flight

    async def generate(self, session_id: str) -> bool:
        """
        Generate a note for ``session_id`` and append it to the session content.

        Returns:
            True if a result was merged into the session. Failures are recorded
            on the session (status ERROR + error message), never raised.
        """
        session = self._store.get(session_id)
        if session is None:
            return False
        if session_id in self._in_flight or session.status == NoteStatus.PROCESSING:
            logger.info("Generation already in progress for session %s", session_id)
            return False

        self._in_flight.add(session_id)
        self._store.update(session_id, status=NoteStatus.PROCESSING, error=None)
        try:
            # Base64 encoding of attachments happens off the event loop
            request = await asyncio.to_thread(build_request, session)
            response = await self._generator.generate(request)
        except Exception as e:
            logger.warning("Generation failed for session %s: %s", session_id, e)
            self._store.update(
                session_id, status=NoteStatus.ERROR, error=str(e) or e.__class__.__name__
            )
            return False
        else:
            return self._merge(session_id, response)
        finally:
            self._in_flight.discard(session_id)

    def _merge(self, session_id: str, response: GenerationResponse) -> bool:
        current = self._store.get(session_id)
        if current is None:
            logger.warning("Session %s was deleted during generation; dropping result", session_id)
            return False

        now = self._clock()
        display_text = response.generated_text + format_citations(response.citations)
        fields = {
            # Content as it is now, so edits made while generating are kept
            "content": append_generation(current.content, markdown_to_markup(display_text), now),
            "result": GenerationResult(
                generated_text=response.generated_text,
                generated_at=now,
                citations=response.citations,
            ),
            "status": NoteStatus.SUCCESS,
            "error": None,
        }
        if not current.title:
            fields["title"] = f"{DEFAULT_TITLE_PREFIX} {now:%Y-%m-%d}"
        return self._store.update(session_id, **fields)

    async def send_chat_message(self, session_id: str, text: str) -> Optional[ChatMessage]:
        """
        Ask a follow-up question about a session.

        The user's message is recorded immediately; the reply (or an error
        message flagged ``is_error``) is appended when the collaborator answers.
        """
        if not text or not text.strip():
            raise ValueError("Message cannot be empty")
        session = self._store.get(session_id)
        if session is None:
            return None

        history = list(session.conversation_history)
        self._store.update(
            session_id, conversation_history=[*history, ChatMessage(speaker="user", text=text)]
        )

        try:
            request = await asyncio.to_thread(build_request, session)
            answer = await self._generator.chat(request, history, text)
            reply = ChatMessage(speaker="model", text=answer)
        except Exception as e:
            logger.warning("Chat failed for session %s: %s", session_id, e)
            reply = ChatMessage(
                speaker="model", text=f"Sorry, I encountered an error: {e}", is_error=True
            )

        current = self._store.get(session_id)
        if current is not None:
            self._store.update(
                session_id, conversation_history=[*current.conversation_history, reply]
            )
        return reply

    def clear_conversation(self, session_id: str) -> bool:
        return self._store.update(session_id, conversation_history=[])
