"""
Service / facade layer.

This module wires the engine together and is the single entry point the
HTTP layer (or any other caller) uses. It is intentionally free of SQL:
stores are passed in, so tests can hand it in-memory doubles and
production uses the psycopg repositories from `build_service()`.

Key responsibilities:
- protect the system (query limits, window caps)
- route source writes through the repositories so change notifications
  reach the regeneration queue
- expose the status transitions and the derived statistics
"""

import logging
from datetime import date, datetime, timedelta
from typing import Dict, List, Optional

from errors import NotFoundError
from local_time import day_bounds, local_now
from models import (
    CalendarEvent,
    EventQuery,
    EventStats,
    HistoryEntry,
    LoggedEntry,
    SourceChange,
    SourceKind,
    TimelineStats,
)
from repo_events import EventStore, PgEventRepo
from repo_history import LedgerStore, PgHistoryRepo
from repo_sources import PgSourceRepo, SourceStore
from service_generator import EventGenerator
from service_regen import RegenerationCoordinator, RegenerationQueue
from service_stats import AdherenceCalculator
from service_status import DOSE_KINDS, StatusService
from settings import settings

logger = logging.getLogger(__name__)


class EventService:
    """Business rules + orchestration over injected stores.

    Example usage:
        svc = build_service()
        svc.save_source(medication)
        svc.process_regeneration()
        svc.get_day("profile-1", date.today())
    """

    def __init__(
        self,
        events: EventStore,
        sources: Dict[SourceKind, SourceStore],
        ledgers: Dict[SourceKind, LedgerStore],
        clock=local_now,
    ):
        self.events = events
        self.sources = sources
        self.ledgers = ledgers
        self.clock = clock

        self.generator = EventGenerator(events)
        self.coordinator = RegenerationCoordinator(
            events, self.generator, sources, ledgers, clock=clock
        )
        self.queue = RegenerationQueue(self.coordinator)
        for repo in sources.values():
            repo.subscribe(self.queue)

        self.status = StatusService(events, ledgers, sources, clock=clock)
        self.stats = AdherenceCalculator(
            events,
            list(ledgers.values()),
            [sources[k] for k in (SourceKind.MEDICATION, SourceKind.SUPPLEMENT) if k in sources],
            clock=clock,
        )

    # --- source entities -------------------------------------------------

    def _repo(self, kind: SourceKind) -> SourceStore:
        repo = self.sources.get(kind)
        if repo is None:
            raise NotFoundError(f"No repository for {kind.value}")
        return repo

    def save_source(self, entity) -> SourceChange:
        """Persist a source entity. Regeneration is queued, not run inline."""

        return self._repo(SourceKind(entity.kind)).save(entity)

    def delete_source(self, kind: SourceKind, source_id: str) -> bool:
        deleted = self._repo(kind).delete(source_id)
        if not deleted:
            raise NotFoundError(f"{kind.value} {source_id} not found")
        return deleted

    def record_logged(self, entry: LoggedEntry) -> CalendarEvent:
        return self.generator.record_logged_event(entry)

    def process_regeneration(self) -> int:
        """Drain queued schedule changes. Returns how many were applied."""

        applied = self.queue.drain()
        if len(self.queue):
            logger.warning("%d schedule changes left queued after failures", len(self.queue))
        if self.queue.dead_letters:
            logger.warning("%d schedule changes dead-lettered so far", len(self.queue.dead_letters))
        return applied

    def refresh_profile(self, profile_id: str) -> Dict[str, int]:
        return self.coordinator.refresh_profile(profile_id)

    # --- reads -----------------------------------------------------------

    def get_events(self, q: EventQuery) -> List[CalendarEvent]:
        """Events matching `q`, with `limit` capped by configured limits."""

        q = q.model_copy(update={"limit": max(1, min(q.limit, settings.max_event_query_limit))})
        return self.events.query(q)

    def get_day(self, profile_id: str, day: date) -> List[CalendarEvent]:
        start, end = day_bounds(day)
        return self.get_events(EventQuery(profile_id=profile_id, start=start, end=end))

    def get_event(self, event_id: str) -> CalendarEvent:
        event = self.events.get_by_id(event_id)
        if event is None:
            raise NotFoundError(f"Event {event_id} not found")
        return event

    def dose_history(self, event_id: str) -> List[HistoryEntry]:
        """Every ledger revision for the dose behind `event_id`, oldest first.

        Empty for event types that keep no ledger.
        """

        event = self.get_event(event_id)
        kind = DOSE_KINDS.get(event.event_type)
        if kind is None or kind not in self.ledgers:
            return []
        return self.ledgers[kind].revisions(event.source_id, event.scheduled_time)

    def get_by_source(self, source_id: str) -> List[CalendarEvent]:
        """Every event of one source entity, newest first."""

        return self.events.get_by_source(source_id)

    def get_stats(self, profile_id: str, start: datetime, end: datetime) -> EventStats:
        return self.events.get_stats(profile_id, start, end)

    def get_overdue(self, profile_id: str) -> List[CalendarEvent]:
        return self.stats.overdue(profile_id)

    def get_upcoming(self, profile_id: str, hours: Optional[int] = None) -> List[CalendarEvent]:
        return self.stats.upcoming_doses(profile_id, hours=hours)

    def timeline_stats(self, profile_id: str) -> TimelineStats:
        return self.stats.timeline_stats(profile_id)

    def adherence_for_source(self, profile_id: str, source_id: str, days: int = 30):
        now = self.clock()
        return self.stats.adherence(profile_id, now - timedelta(days=days), now, source_id)

    # --- actions ---------------------------------------------------------

    def complete(self, event_id: str, notes: Optional[str] = None) -> CalendarEvent:
        return self.status.complete(event_id, notes)

    def skip(self, event_id: str, notes: Optional[str] = None) -> CalendarEvent:
        return self.status.skip(event_id, notes)

    def postpone(self, event_id: str, minutes: Optional[int] = None) -> CalendarEvent:
        return self.status.postpone(event_id, minutes)

    def sweep_missed(self, profile_id: str) -> int:
        return self.status.sweep_missed(self.stats, profile_id)

    def health_check(self) -> None:
        """Perform a lightweight store ping."""

        self.events.ping()


def build_service() -> EventService:
    """Production wiring: psycopg repositories for every store."""

    return EventService(
        events=PgEventRepo(),
        sources={kind: PgSourceRepo(kind) for kind in SourceKind},
        ledgers={
            SourceKind.MEDICATION: PgHistoryRepo(SourceKind.MEDICATION),
            SourceKind.SUPPLEMENT: PgHistoryRepo(SourceKind.SUPPLEMENT),
        },
    )
