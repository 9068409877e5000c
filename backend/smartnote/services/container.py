"""
Dependency injection container for backend services.

We store a single Services instance on the Flask app (app.extensions["services"]).
Routes can then fetch dependencies via get_services() which makes route tests able
to inject fakes without importing/initializing global singletons.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from flask import current_app

from ..runtime import CoreRuntime
from .attachments import AttachmentRegistry
from .generator import GenerationService
from .orchestrator import GenerationOrchestrator
from .persistence import AutoSaveScheduler, PersistenceGateway
from .session_store import NoteSessionStore
from .weekly import WeeklyAggregator, WeeklySummaryScheduler


@dataclass(frozen=True)
class Services:
    attachments: AttachmentRegistry
    store: NoteSessionStore
    gateway: PersistenceGateway
    autosave: AutoSaveScheduler
    generator: GenerationService
    orchestrator: GenerationOrchestrator
    weekly: WeeklyAggregator
    weekly_scheduler: WeeklySummaryScheduler
    runtime: CoreRuntime


def create_services(
    *,
    database_url: Optional[str] = None,
    db_path: Optional[Path] = None,
    generator: Optional[GenerationService] = None,
    autosave_delay: Optional[float] = None,
) -> Services:
    """
    Build the production Services container.

    Args:
        database_url: Optional override for database URL (useful for tests).
        db_path: Optional SQLite file path, used when no URL is given.
        generator: Optional generation collaborator (tests pass a fake).
        autosave_delay: Optional debounce override in seconds.
    """
    attachments = AttachmentRegistry()
    store = NoteSessionStore(attachments=attachments)
    gateway = PersistenceGateway(db_path=db_path, database_url=database_url, attachments=attachments)
    autosave = AutoSaveScheduler(gateway, store.snapshot, delay_seconds=autosave_delay)
    generator = generator or GenerationService()
    orchestrator = GenerationOrchestrator(store, generator)
    weekly = WeeklyAggregator(store, orchestrator)
    weekly_scheduler = WeeklySummaryScheduler(weekly, gateway)
    runtime = CoreRuntime(store, gateway, autosave, weekly_scheduler)
    return Services(
        attachments=attachments,
        store=store,
        gateway=gateway,
        autosave=autosave,
        generator=generator,
        orchestrator=orchestrator,
        weekly=weekly,
        weekly_scheduler=weekly_scheduler,
        runtime=runtime,
    )


def get_services() -> Services:
    """
    Fetch the Services container from the current Flask app.

    Raises:
        RuntimeError if services have not been attached to the app.
    """
    services = current_app.extensions.get("services")
    if services is None:
        raise RuntimeError('Services not configured. Expected app.extensions["services"].')
    return services
