"""
Tests for the SQLAlchemy persistence gateway and the debounced auto-save
in smartnote/services/persistence.py.

Uses a temporary SQLite database per test.
"""
from __future__ import annotations

import asyncio
from datetime import datetime
from pathlib import Path

import pytest
from sqlalchemy.orm import Session

from smartnote.database import NoteSessionRecord
from smartnote.services.attachments import AttachmentRegistry
from smartnote.services.models import (
    AttachmentRef,
    ChatMessage,
    Citation,
    GenerationResult,
    NoteMode,
    NoteSession,
    NoteStatus,
    SaveStatus,
)
from smartnote.services.persistence import AutoSaveScheduler, PersistenceGateway


@pytest.fixture()
def registry():
    return AttachmentRegistry()


@pytest.fixture()
def gateway(tmp_path: Path, registry):
    return PersistenceGateway(db_path=tmp_path / "sessions.db", attachments=registry)


def _session(**kwargs) -> NoteSession:
    kwargs.setdefault("created_at", datetime(2024, 5, 6, 9, 0))
    return NoteSession(**kwargs)


# ============================================================================
# Gateway Tests
# ============================================================================


def test_load_all_on_first_run_returns_none(gateway):
    """A never-initialized store is distinguishable from an empty one."""
    assert gateway.load_all() is None


def test_save_then_load_round_trips_sessions(gateway, registry):
    """Order, content, results, conversation and attachment payloads survive."""
    sessions = [
        _session(
            title="First",
            content="<p>hello</p>",
            mode=NoteMode.RESEARCH,
            status=NoteStatus.SUCCESS,
            result=GenerationResult(
                generated_text="# Note",
                generated_at=datetime(2024, 5, 6, 9, 30),
                citations=[Citation(uri="https://example.com", title="Example")],
            ),
            conversation_history=[ChatMessage(speaker="user", text="why?")],
            attachments=[
                AttachmentRef(
                    filename="a.png",
                    mime_type="image/png",
                    kind="image",
                    data=b"\x89PNG",
                    display_handle="blob:smartnote/stale",
                )
            ],
        ),
        _session(title="Second", status=NoteStatus.ERROR, error="boom"),
    ]

    assert gateway.save_all(sessions) is True
    loaded = gateway.load_all()

    assert [s.id for s in loaded] == [s.id for s in sessions]
    first, second = loaded
    assert first.title == "First"
    assert first.content == "<p>hello</p>"
    assert first.mode == NoteMode.RESEARCH
    assert first.result.generated_text == "# Note"
    assert first.result.citations[0].uri == "https://example.com"
    assert first.conversation_history[0].text == "why?"
    assert first.created_at == datetime(2024, 5, 6, 9, 0)
    assert second.status == NoteStatus.ERROR
    assert second.error == "boom"

    attachment = first.attachments[0]
    assert attachment.data == b"\x89PNG"
    assert attachment.display_handle != "blob:smartnote/stale"
    assert registry.resolve(attachment.display_handle) == (b"\x89PNG", "image/png")


def test_processing_status_is_never_persisted(gateway):
    """A session saved mid-generation loads as idle."""
    gateway.save_all([_session(status=NoteStatus.PROCESSING)])

    (loaded,) = gateway.load_all()

    assert loaded.status == NoteStatus.IDLE
    assert loaded.error is None


def test_stored_processing_row_loads_as_idle(gateway):
    """A row written as processing (crash mid-generation) loads idle without its error."""
    gateway.save_all([])
    with Session(gateway.engine) as db:
        db.add(
            NoteSessionRecord(
                id="stuck",
                position=0,
                title="Stuck",
                content="<p>draft</p>",
                status="processing",
                error="boom",
                mode="general",
                created_at=datetime(2024, 5, 6, 9, 0),
            )
        )
        db.commit()

    (loaded,) = gateway.load_all()

    assert loaded.id == "stuck"
    assert loaded.status == NoteStatus.IDLE
    assert loaded.error is None
    assert loaded.content == "<p>draft</p>"


def test_save_all_replaces_collection(gateway):
    """Sessions missing from a save are deleted (full replace)."""
    keep, drop = _session(title="keep"), _session(title="drop")
    gateway.save_all([keep, drop])

    gateway.save_all([keep])

    assert [s.title for s in gateway.load_all()] == ["keep"]


def test_save_all_empty_collection_is_not_first_run(gateway):
    """After saving an empty collection, load returns [] rather than None."""
    gateway.save_all([])

    assert gateway.load_all() == []


def test_save_all_reports_failure_without_raising(gateway, monkeypatch):
    """Storage errors are logged and reported as False."""

    def _broken_factory():
        raise RuntimeError("disk full")

    monkeypatch.setattr(gateway, "session_factory", _broken_factory)

    assert gateway.save_all([_session()]) is False
    assert gateway.load_all() is None


def test_app_state_round_trip(gateway):
    assert gateway.get_state("last_weekly_summary_date") is None

    assert gateway.set_state("last_weekly_summary_date", "2024-05-10") is True

    assert gateway.get_state("last_weekly_summary_date") == "2024-05-10"


def test_gateway_accepts_database_url(tmp_path: Path):
    gateway = PersistenceGateway(database_url=f"sqlite:///{tmp_path / 'url.db'}")

    assert gateway.save_all([_session(title="via url")]) is True
    assert gateway.load_all()[0].title == "via url"


# ============================================================================
# Auto-save Tests
# ============================================================================


class _RecordingGateway:
    def __init__(self, results=None):
        self.saved: list[list[str]] = []
        self._results = list(results or [])

    def save_all(self, sessions):
        self.saved.append([s.title for s in sessions])
        return self._results.pop(0) if self._results else True


def test_autosave_debounces_bursts():
    """Many triggers within the delay produce a single write."""
    gateway = _RecordingGateway()
    titles = ["a"]
    autosave = AutoSaveScheduler(gateway, lambda: [_session(title=t) for t in titles], delay_seconds=0.05)

    async def scenario():
        for i in range(5):
            titles[0] = f"edit {i}"
            autosave.trigger()
            await asyncio.sleep(0.005)
        assert autosave.status == SaveStatus.SAVING
        await asyncio.sleep(0.2)

    asyncio.run(scenario())

    assert gateway.saved == [["edit 4"]]
    assert autosave.status == SaveStatus.SAVED


def test_save_now_cancels_pending_debounce():
    """An immediate save replaces the pending one."""
    gateway = _RecordingGateway()
    autosave = AutoSaveScheduler(gateway, lambda: [_session(title="x")], delay_seconds=0.05)

    async def scenario():
        autosave.trigger()
        assert autosave.pending
        assert await autosave.save_now() is True
        assert not autosave.pending
        await asyncio.sleep(0.2)

    asyncio.run(scenario())

    assert len(gateway.saved) == 1


def test_autosave_failure_sets_error_status_until_next_success():
    gateway = _RecordingGateway(results=[False, True])
    autosave = AutoSaveScheduler(gateway, lambda: [], delay_seconds=0.01)

    async def scenario():
        assert await autosave.save_now() is False
        assert autosave.status == SaveStatus.ERROR
        autosave.trigger()
        await asyncio.sleep(0.1)

    asyncio.run(scenario())

    assert autosave.status == SaveStatus.SAVED
    assert len(gateway.saved) == 2
