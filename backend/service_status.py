"""
Status state machine for calendar events.

Legal transitions:
    pending -> completed | skipped | missed
    pending -> (postponed) : original closed, new pending event N minutes later

Side effects on dose events (`medication_due`, `supplement_due`):
- completed: `taken` ledger row with `actual_time = now`, stock -1 (floor 0)
- skipped:   `skipped` ledger row
- missed:    `missed` ledger row (system sweep only)
- postponed: `postponed` ledger row for the original time
Other event types only change `status`/`completed_time`.

Every transition on one scheduled dose runs under a per-dose lock, and the
event leaves `pending` through a compare-and-set before anything else is
written. Only the writer that wins it records the ledger row and touches
stock, so the latest ledger revision always agrees with the event and a
repeated "complete" never decrements twice. If the ledger write fails
after its retries, the event is put back to `pending` and the error
propagates; stock is a convenience and its failure is only logged.
"""

import logging
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional

from errors import InvalidTransitionError, NotFoundError, StoreError
from local_time import local_now
from models import (
    CalendarEvent,
    DoseMetadata,
    DoseStatus,
    EventPatch,
    EventStatus,
    EventType,
    SourceKind,
)
from repo_events import EventStore
from repo_history import LedgerStore
from repo_sources import SourceStore
from service_regen import KeyedLock, with_retries
from service_stats import AdherenceCalculator
from settings import settings

logger = logging.getLogger(__name__)

DOSE_KINDS = {
    EventType.MEDICATION_DUE: SourceKind.MEDICATION,
    EventType.SUPPLEMENT_DUE: SourceKind.SUPPLEMENT,
}


def dose_key(event: CalendarEvent) -> str:
    return f"{event.source_id}@{event.scheduled_time.isoformat()}"


class StatusService:
    """Applies user and system actions to events.

    Example usage:
        svc = StatusService(events, ledgers, sources)
        svc.complete(event_id)
    """

    def __init__(
        self,
        events: EventStore,
        ledgers: Dict[SourceKind, LedgerStore],
        sources: Dict[SourceKind, SourceStore],
        clock: Callable[[], datetime] = local_now,
        locks: Optional[KeyedLock] = None,
    ):
        self.events = events
        self.ledgers = ledgers
        self.sources = sources
        self.clock = clock
        self.locks = locks or KeyedLock()

    def _load(self, event_id: str) -> CalendarEvent:
        event = self.events.get_by_id(event_id)
        if event is None:
            raise NotFoundError(f"Event {event_id} not found")
        return event

    def _record(self, event: CalendarEvent, status: DoseStatus, actual_time=None, notes=None) -> None:
        kind = DOSE_KINDS.get(event.event_type)
        if kind is None:
            return
        with_retries(
            f"record {status.value} for {event.source_id}",
            lambda: self.ledgers[kind].upsert_status(
                event.profile_id, event.source_id, event.scheduled_time, status, actual_time, notes
            ),
        )

    def _close(self, event: CalendarEvent, patch: EventPatch) -> Optional[CalendarEvent]:
        """Compare-and-set the event out of `pending`. None if another writer got there first."""

        return self.events.update(event.id, patch, expected_status=EventStatus.PENDING)

    def _raced(self, event_id: str, action: str) -> InvalidTransitionError:
        current = self._load(event_id)
        return InvalidTransitionError(
            f"Event {event_id} became {current.status.value} concurrently; cannot {action} it"
        )

    def _reopen(self, event: CalendarEvent, closed_as: EventStatus) -> None:
        """Undo `_close` after the ledger write behind it failed."""

        restored = self.events.update(
            event.id,
            EventPatch(status=EventStatus.PENDING, completed_time=None, metadata=event.metadata),
            expected_status=closed_as,
        )
        if restored is None:
            logger.error("Could not reopen event %s after a failed ledger write", event.id)

    def _transition(
        self,
        event_id: str,
        target: EventStatus,
        ledger_status: DoseStatus,
        now: datetime,
        notes: Optional[str] = None,
    ) -> CalendarEvent:
        event = self._load(event_id)
        with self.locks.hold(dose_key(event)):
            event = self._load(event_id)
            if event.status == target:
                return event
            if event.status != EventStatus.PENDING:
                raise InvalidTransitionError(
                    f"Event {event_id} is {event.status.value}; cannot mark it {target.value}"
                )

            completed_time = now if target == EventStatus.COMPLETED else None
            updated = self._close(event, EventPatch(status=target, completed_time=completed_time))
            if updated is None:
                # another process resolved it and owns the side effects
                current = self._load(event_id)
                if current.status == target:
                    return current
                raise self._raced(event_id, f"mark {target.value}")
            actual_time = now if ledger_status == DoseStatus.TAKEN else None
            try:
                self._record(event, ledger_status, actual_time, notes)
            except StoreError:
                self._reopen(event, target)
                raise

        if target == EventStatus.COMPLETED:
            self._decrement_stock(updated)
        return updated

    def _decrement_stock(self, event: CalendarEvent) -> None:
        kind = DOSE_KINDS.get(event.event_type)
        if kind is None or kind not in self.sources:
            return
        try:
            remaining = self.sources[kind].decrement_quantity(event.source_id)
        except StoreError as e:
            # the taken row is already written; stock is a convenience
            logger.warning("Stock decrement for %s failed: %s", event.source_id, e)
            return
        if remaining is not None:
            logger.debug("Stock for %s now %d", event.source_id, remaining)

    def complete(
        self, event_id: str, notes: Optional[str] = None, now: Optional[datetime] = None
    ) -> CalendarEvent:
        return self._transition(
            event_id, EventStatus.COMPLETED, DoseStatus.TAKEN, now or self.clock(), notes
        )

    def skip(
        self, event_id: str, notes: Optional[str] = None, now: Optional[datetime] = None
    ) -> CalendarEvent:
        return self._transition(
            event_id, EventStatus.SKIPPED, DoseStatus.SKIPPED, now or self.clock(), notes
        )

    def mark_missed(self, event_id: str, now: Optional[datetime] = None) -> CalendarEvent:
        """System transition used by the overdue sweep; not a user action."""

        return self._transition(event_id, EventStatus.MISSED, DoseStatus.MISSED, now or self.clock())

    def postpone(
        self,
        event_id: str,
        minutes: Optional[int] = None,
        notes: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> CalendarEvent:
        """Move a pending obligation `minutes` later. Returns the new pending event.

        Refused when the source already has an occurrence at the new time,
        since the two doses would collapse into one.
        """

        now = now or self.clock()
        minutes = settings.postpone_minutes if minutes is None else minutes
        if minutes <= 0:
            raise InvalidTransitionError("Postponement must be a positive number of minutes")

        event = self._load(event_id)
        with self.locks.hold(dose_key(event)):
            event = self._load(event_id)
            if event.status != EventStatus.PENDING:
                raise InvalidTransitionError(
                    f"Event {event_id} is {event.status.value}; cannot postpone it"
                )

            new_time = event.scheduled_time + timedelta(minutes=minutes)
            if self.events.find_existing(event.source_id, event.event_type, new_time) is not None:
                raise InvalidTransitionError(
                    f"{event.source_id} already has an occurrence at {new_time}; pick another time"
                )

            closing = {"status": EventStatus.COMPLETED, "completed_time": now}
            metadata = event.metadata
            if isinstance(metadata, DoseMetadata):
                closing["metadata"] = metadata.model_copy(update={"rescheduled_to": new_time})
                metadata = metadata.model_copy(
                    update={"rescheduled_from": event.scheduled_time, "rescheduled_to": None}
                )
            if self._close(event, EventPatch(**closing)) is None:
                raise self._raced(event_id, "postpone")

            candidate = CalendarEvent(
                profile_id=event.profile_id,
                event_type=event.event_type,
                source_id=event.source_id,
                title=event.title,
                scheduled_time=new_time,
                end_time=event.end_time + timedelta(minutes=minutes) if event.end_time else None,
                metadata=metadata,
            )
            try:
                rescheduled = with_retries(
                    f"reschedule {event.source_id}",
                    lambda: self.events.create(candidate)
                    or self.events.find_existing(event.source_id, event.event_type, new_time),
                )
            except StoreError:
                self._reopen(event, EventStatus.COMPLETED)
                raise
            if rescheduled is None or rescheduled.id != candidate.id:
                # another writer put an occurrence there in the meantime
                self._reopen(event, EventStatus.COMPLETED)
                raise InvalidTransitionError(
                    f"{event.source_id} already has an occurrence at {new_time}; pick another time"
                )

            # postponed rows count in no metric; written once the new event exists
            self._record(event, DoseStatus.POSTPONED, notes=notes)

        logger.info("Postponed %s from %s to %s", event.source_id, event.scheduled_time, new_time)
        return rescheduled

    def sweep_missed(
        self,
        calculator: AdherenceCalculator,
        profile_id: str,
        now: Optional[datetime] = None,
    ) -> int:
        """Mark doses pending past the grace window as missed. Returns how many."""

        now = now or self.clock()
        overdue = calculator.overdue(
            profile_id, now, grace_minutes=settings.missed_grace_minutes, today_only=False
        )
        marked = 0
        for event in overdue:
            try:
                self.mark_missed(event.id, now)
                marked += 1
            except (NotFoundError, InvalidTransitionError):
                # resolved by someone else between the query and the update
                continue
        if marked:
            logger.info("Marked %d overdue doses missed for profile %s", marked, profile_id)
        return marked
