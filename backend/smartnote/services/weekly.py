"""
Weekly summary: aggregate this work week's notes into one synthetic session.
"""

from __future__ import annotations

import asyncio
import html
import logging
from datetime import datetime, time, timedelta
from typing import Callable, List, Optional, Tuple

from ..config import Config
from .models import NoteMode, NoteSession, WeeklySummaryOutcome
from .orchestrator import GenerationOrchestrator
from .persistence import PersistenceGateway
from .reconciler import original_input
from .session_store import NoteSessionStore

logger = logging.getLogger(__name__)

WEEKLY_SUMMARY_TITLE = "Weekly Summary"
LAST_RUN_KEY = "last_weekly_summary_date"


def work_week_window(now: datetime) -> Tuple[datetime, datetime]:
    """
    Monday 00:00 through Friday 23:59:59.999999 of the week containing ``now``.

    Both ends are inclusive. Weekend days belong to the week that just ended.
    """
    monday = now.date() - timedelta(days=now.weekday())
    start = datetime.combine(monday, time.min, tzinfo=now.tzinfo)
    end = datetime.combine(monday + timedelta(days=4), time.max, tzinfo=now.tzinfo)
    return start, end


def is_weekly_summary(session: NoteSession) -> bool:
    return session.title == WEEKLY_SUMMARY_TITLE or session.mode == NoteMode.WEEKLY


class WeeklyAggregator:
    """Read-only view over the store that feeds the week's notes to the orchestrator."""

    def __init__(
        self,
        store: NoteSessionStore,
        orchestrator: GenerationOrchestrator,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self._store = store
        self._orchestrator = orchestrator
        self._clock = clock

    def select_sessions(self, now: Optional[datetime] = None) -> List[NoteSession]:
        """Qualifying sessions, oldest first."""
        start, end = work_week_window(now or self._clock())
        selected = [
            s
            for s in self._store.sessions
            if start <= s.created_at <= end and not is_weekly_summary(s)
        ]
        return sorted(selected, key=lambda s: s.created_at)

    def build_document(self, sessions: List[NoteSession], now: Optional[datetime] = None) -> str:
        """Aggregated markup: each session's own input under a dated heading."""
        start, end = work_week_window(now or self._clock())
        parts = [
            f"<h1>{WEEKLY_SUMMARY_TITLE} {start:%Y-%m-%d} - {end:%Y-%m-%d}</h1>",
        ]
        for session in sessions:
            parts.append(
                f"<h3>Date: {session.created_at:%Y-%m-%d} - "
                f"Title: {html.escape(session.display_title)}</h3>"
            )
            parts.append(f"<div>{original_input(session.content)}</div>")
            parts.append("<hr>")
        return "".join(parts)

    async def summarize(self, now: Optional[datetime] = None) -> WeeklySummaryOutcome:
        """
        Create a summary session for the current work week and generate it.

        No generation happens when no session qualifies.
        """
        now = now or self._clock()
        sessions = self.select_sessions(now)
        if not sessions:
            logger.info("No notes this week, nothing to summarize")
            return WeeklySummaryOutcome(status="nothing_to_summarize")

        session_id = self._store.create(
            title=WEEKLY_SUMMARY_TITLE,
            mode=NoteMode.WEEKLY,
            content=self.build_document(sessions, now),
        )
        logger.info("Summarizing %d notes into session %s", len(sessions), session_id)

        if await self._orchestrator.generate(session_id):
            return WeeklySummaryOutcome(
                status="generated", session_id=session_id, source_count=len(sessions)
            )

        current = self._store.get(session_id)
        return WeeklySummaryOutcome(
            status="failed",
            session_id=session_id,
            source_count=len(sessions),
            error=current.error if current else "Summary session was deleted",
        )


class WeeklySummaryScheduler:
    """
    Fires the weekly summary once per scheduled day.

    The last-run date is stored durably and written before the summary runs,
    so a restart at the scheduled minute does not produce a second summary.
    """

    def __init__(
        self,
        aggregator: WeeklyAggregator,
        gateway: PersistenceGateway,
        weekday: Optional[int] = None,
        hour: Optional[int] = None,
        minute: Optional[int] = None,
        interval_seconds: Optional[float] = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self._aggregator = aggregator
        self._gateway = gateway
        self.weekday = Config.WEEKLY_SUMMARY_WEEKDAY if weekday is None else weekday
        self.hour = Config.WEEKLY_SUMMARY_HOUR if hour is None else hour
        self.minute = Config.WEEKLY_SUMMARY_MINUTE if minute is None else minute
        self.interval = (
            Config.WEEKLY_SCHEDULER_INTERVAL_SECONDS if interval_seconds is None else interval_seconds
        )
        self._clock = clock
        self._task: Optional[asyncio.Task] = None

    def is_due(self, now: datetime) -> bool:
        return (now.weekday(), now.hour, now.minute) == (self.weekday, self.hour, self.minute)

    async def check(self, now: Optional[datetime] = None) -> Optional[WeeklySummaryOutcome]:
        """Run the summary if it is due and has not run today."""
        now = now or self._clock()
        if not self.is_due(now):
            return None

        today = now.date().isoformat()
        if await asyncio.to_thread(self._gateway.get_state, LAST_RUN_KEY) == today:
            return None
        await asyncio.to_thread(self._gateway.set_state, LAST_RUN_KEY, today)

        logger.info("Weekly summary due (%s), starting", today)
        outcome = await self._aggregator.summarize(now)
        logger.info("Weekly summary finished: %s", outcome.status)
        return outcome

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.get_running_loop().create_task(self._run())

    def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            self._task = None

    async def _run(self) -> None:
        while True:
            try:
                await self.check()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Weekly summary check failed")
            await asyncio.sleep(self.interval)
