"""In-memory stand-ins for the event store, ledgers and source repositories."""

from datetime import datetime
from typing import Dict, List, Optional

import pytest

from errors import StoreError
from models import (
    CalendarEvent,
    ChangeKind,
    DoseStatus,
    EventPatch,
    EventQuery,
    EventStats,
    EventStatus,
    EventType,
    HistoryEntry,
    Medication,
    SourceChange,
    SourceKind,
)
from repo_sources import ChangePublisher, schedule_signature
from service_events import EventService
from settings import settings

NOW = datetime(2024, 1, 1, 7, 0)


class InMemoryEventStore:
    def __init__(self):
        self.rows: Dict[str, CalendarEvent] = {}

    def find_existing(self, source_id, event_type, scheduled_time) -> Optional[CalendarEvent]:
        key = (source_id, EventType(event_type), scheduled_time)
        for event in self.rows.values():
            if event.key == key:
                return event.model_copy()
        return None

    def create(self, event: CalendarEvent) -> Optional[CalendarEvent]:
        if self.find_existing(event.source_id, event.event_type, event.scheduled_time) is not None:
            return None
        self.rows[event.id] = event.model_copy()
        return event

    def get_by_id(self, event_id):
        event = self.rows.get(event_id)
        return event.model_copy() if event else None

    def get_by_source(self, source_id) -> List[CalendarEvent]:
        events = [e for e in self.rows.values() if e.source_id == source_id]
        return sorted(events, key=lambda e: e.scheduled_time, reverse=True)

    def update(self, event_id, patch: EventPatch, expected_status=None):
        row = self.rows.get(event_id)
        if row is None or (expected_status is not None and row.status != expected_status):
            return None
        fields = {name: getattr(patch, name) for name in patch.model_fields_set}
        self.rows[event_id] = row.model_copy(update=fields)
        return self.rows[event_id].model_copy()

    def delete_future_pending(self, source_id, after: datetime) -> int:
        doomed = [
            e.id
            for e in self.rows.values()
            if e.source_id == source_id and e.status == EventStatus.PENDING and e.scheduled_time > after
        ]
        for event_id in doomed:
            del self.rows[event_id]
        return len(doomed)

    def delete_by_source(self, source_id) -> int:
        doomed = [e.id for e in self.rows.values() if e.source_id == source_id]
        for event_id in doomed:
            del self.rows[event_id]
        return len(doomed)

    def query(self, q: EventQuery) -> List[CalendarEvent]:
        out = []
        for e in self.rows.values():
            if e.profile_id != q.profile_id:
                continue
            if q.start is not None and e.scheduled_time < q.start:
                continue
            if q.end is not None and e.scheduled_time >= q.end:
                continue
            if q.statuses and e.status not in q.statuses:
                continue
            if q.event_types and e.event_type not in q.event_types:
                continue
            out.append(e.model_copy())
        return sorted(out, key=lambda e: e.scheduled_time)[: q.limit]

    def get_stats(self, profile_id, start, end) -> EventStats:
        events = self.query(EventQuery(profile_id=profile_id, start=start, end=end, limit=10**6))
        counts = {s: sum(1 for e in events if e.status == s) for s in EventStatus}
        return EventStats(
            total=len(events),
            completed=counts[EventStatus.COMPLETED],
            missed=counts[EventStatus.MISSED],
            skipped=counts[EventStatus.SKIPPED],
            pending=counts[EventStatus.PENDING],
        )

    def ping(self) -> None:
        return None

    def keys(self):
        return [e.key for e in self.rows.values()]


class FlakyEventStore(InMemoryEventStore):
    """Raises StoreError on the Nth create call, once."""

    def __init__(self, fail_on_call: int):
        super().__init__()
        self.fail_on_call = fail_on_call
        self.calls = 0

    def create(self, event):
        self.calls += 1
        if self.calls == self.fail_on_call:
            raise StoreError("connection reset")
        return super().create(event)


class InMemoryLedger:
    def __init__(self):
        self.rows: List[HistoryEntry] = []

    def upsert_status(self, profile_id, source_id, scheduled_time, status, actual_time=None, notes=None):
        matches = self.revisions(source_id, scheduled_time)
        latest = matches[-1] if matches else None
        if latest is not None and latest.status == status:
            return latest
        entry = HistoryEntry(
            id=len(self.rows) + 1,
            profile_id=profile_id,
            source_id=source_id,
            scheduled_time=scheduled_time,
            actual_time=actual_time,
            status=status,
            notes=notes,
        )
        self.rows.append(entry)
        return entry

    def revisions(self, source_id, scheduled_time):
        return [r for r in self.rows if r.source_id == source_id and r.scheduled_time == scheduled_time]

    def query_by_date_range(self, profile_id, start=None, end=None, source_id=None):
        latest: Dict[tuple, HistoryEntry] = {}
        for r in self.rows:
            if r.profile_id != profile_id:
                continue
            if start is not None and r.scheduled_time < start:
                continue
            if end is not None and r.scheduled_time >= end:
                continue
            if source_id is not None and r.source_id != source_id:
                continue
            latest[(r.source_id, r.scheduled_time)] = r
        return sorted(latest.values(), key=lambda r: r.scheduled_time, reverse=True)

    def delete_by_source(self, source_id) -> int:
        before = len(self.rows)
        self.rows = [r for r in self.rows if r.source_id != source_id]
        return before - len(self.rows)

    def add(self, profile_id, source_id, scheduled_time, status):
        """Test helper: append a revision without the idempotency check."""

        self.rows.append(
            HistoryEntry(
                id=len(self.rows) + 1,
                profile_id=profile_id,
                source_id=source_id,
                scheduled_time=scheduled_time,
                status=DoseStatus(status),
            )
        )


class InMemorySourceRepo(ChangePublisher):
    def __init__(self, kind: SourceKind):
        super().__init__()
        self.kind = kind
        self.entities = {}
        self.fail_decrement = False

    def get_by_id(self, source_id):
        return self.entities.get(source_id)

    def get_all_by_profile(self, profile_id, include_inactive=False):
        return [
            e
            for e in self.entities.values()
            if e.profile_id == profile_id and (include_inactive or e.is_active)
        ]

    def save(self, entity) -> SourceChange:
        existing = self.entities.get(entity.id)
        self.entities[entity.id] = entity
        if existing is None:
            change = SourceChange(
                kind=self.kind, source_id=entity.id, profile_id=entity.profile_id, change=ChangeKind.CREATED
            )
        else:
            change = SourceChange(
                kind=self.kind,
                source_id=entity.id,
                profile_id=entity.profile_id,
                change=ChangeKind.UPDATED,
                schedule_changed=schedule_signature(existing) != schedule_signature(entity),
            )
        self.publish(change)
        return change

    def delete(self, source_id) -> bool:
        existing = self.entities.pop(source_id, None)
        if existing is None:
            return False
        self.publish(
            SourceChange(
                kind=self.kind, source_id=source_id, profile_id=existing.profile_id, change=ChangeKind.DELETED
            )
        )
        return True

    def decrement_quantity(self, source_id):
        if self.fail_decrement:
            raise StoreError("stock table locked")
        entity = self.entities.get(source_id)
        if entity is None or entity.current_quantity is None:
            return None
        remaining = max(entity.current_quantity - 1, 0)
        self.entities[source_id] = entity.model_copy(update={"current_quantity": remaining})
        return remaining


@pytest.fixture(autouse=True)
def fast_retries(monkeypatch):
    monkeypatch.setattr(settings, "retry_backoff_seconds", 0.0)


@pytest.fixture
def events():
    return InMemoryEventStore()


@pytest.fixture
def ledgers():
    return {SourceKind.MEDICATION: InMemoryLedger(), SourceKind.SUPPLEMENT: InMemoryLedger()}


@pytest.fixture
def sources():
    return {kind: InMemorySourceRepo(kind) for kind in SourceKind}


@pytest.fixture
def service(events, sources, ledgers):
    return EventService(events, sources, ledgers, clock=lambda: NOW)


def make_medication(**overrides) -> Medication:
    fields = dict(
        id="med-1",
        profile_id="p1",
        name="Metformin",
        dosage="500mg",
        form="Tablet",
        time_of_day=["08:00", "20:00"],
        current_quantity=10,
        created_at=datetime(2024, 1, 1, 0, 0),
    )
    fields.update(overrides)
    return Medication(**fields)
