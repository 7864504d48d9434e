import threading
import time
from datetime import date, datetime, timedelta

import pytest

from conftest import InMemoryEventStore, InMemoryLedger, make_medication
from errors import InvalidTransitionError, NotFoundError, StoreError
from models import (
    Appointment,
    DoseStatus,
    EventStatus,
    EventType,
    LoggedEntry,
    SourceKind,
)
from service_generator import EventGenerator
from service_stats import AdherenceCalculator
from service_status import StatusService
from settings import settings


@pytest.fixture
def seeded(events, ledgers, sources):
    med = make_medication()
    sources[SourceKind.MEDICATION].save(med)
    EventGenerator(events).generate(med, date(2024, 1, 1), date(2024, 1, 2))
    status = StatusService(events, ledgers, sources, clock=lambda: datetime(2024, 1, 1, 8, 5))
    return med, status


def _event_at(events, when):
    return next(e for e in events.rows.values() if e.scheduled_time == when)


def test_complete_writes_taken_row_and_decrements_stock(events, ledgers, sources, seeded):
    med, status = seeded
    morning = _event_at(events, datetime(2024, 1, 1, 8, 0))

    done = status.complete(morning.id)

    assert done.status == EventStatus.COMPLETED
    assert done.completed_time == datetime(2024, 1, 1, 8, 5)
    assert sources[SourceKind.MEDICATION].get_by_id(med.id).current_quantity == 9
    rows = ledgers[SourceKind.MEDICATION].rows
    assert len(rows) == 1
    assert rows[0].status == DoseStatus.TAKEN
    assert rows[0].actual_time == datetime(2024, 1, 1, 8, 5)

    # regenerating the same window neither duplicates nor resets it
    assert EventGenerator(events).generate(med, date(2024, 1, 1), date(2024, 1, 2)) == 0
    assert events.get_by_id(morning.id).status == EventStatus.COMPLETED


def test_repeated_complete_does_not_decrement_twice(events, ledgers, sources, seeded):
    med, status = seeded
    morning = _event_at(events, datetime(2024, 1, 1, 8, 0))

    status.complete(morning.id)
    again = status.complete(morning.id)

    assert again.status == EventStatus.COMPLETED
    assert sources[SourceKind.MEDICATION].get_by_id(med.id).current_quantity == 9
    assert len(ledgers[SourceKind.MEDICATION].rows) == 1


def test_stock_never_goes_negative(events, ledgers, sources):
    med = make_medication(current_quantity=0, time_of_day=["08:00"])
    sources[SourceKind.MEDICATION].save(med)
    EventGenerator(events).generate(med, date(2024, 1, 1), date(2024, 1, 1))
    status = StatusService(events, ledgers, sources)

    status.complete(next(iter(events.rows)), now=datetime(2024, 1, 1, 8, 0))
    assert sources[SourceKind.MEDICATION].get_by_id(med.id).current_quantity == 0


def test_stock_failure_keeps_taken_status(events, ledgers, sources, seeded):
    _, status = seeded
    sources[SourceKind.MEDICATION].fail_decrement = True
    morning = _event_at(events, datetime(2024, 1, 1, 8, 0))

    done = status.complete(morning.id)

    assert done.status == EventStatus.COMPLETED
    assert ledgers[SourceKind.MEDICATION].rows[-1].status == DoseStatus.TAKEN


def test_skip_records_skipped(events, ledgers, seeded):
    _, status = seeded
    evening = _event_at(events, datetime(2024, 1, 1, 20, 0))

    skipped = status.skip(evening.id, notes="felt nauseous")

    assert skipped.status == EventStatus.SKIPPED
    assert skipped.completed_time is None
    row = ledgers[SourceKind.MEDICATION].rows[-1]
    assert row.status == DoseStatus.SKIPPED
    assert row.notes == "felt nauseous"


def test_resolved_events_reject_other_transitions(events, seeded):
    _, status = seeded
    morning = _event_at(events, datetime(2024, 1, 1, 8, 0))
    status.complete(morning.id)

    with pytest.raises(InvalidTransitionError):
        status.skip(morning.id)
    with pytest.raises(InvalidTransitionError):
        status.postpone(morning.id)


def test_unknown_event_raises_not_found(seeded):
    _, status = seeded
    with pytest.raises(NotFoundError):
        status.complete("does-not-exist")


def test_non_dose_events_leave_the_ledger_alone(events, ledgers, sources):
    appt = Appointment(id="a1", profile_id="p1", title="Dentist", scheduled_time=datetime(2024, 1, 1, 9, 0))
    event = EventGenerator(events).generate_appointment(appt)
    status = StatusService(events, ledgers, sources)

    assert status.complete(event.id, now=datetime(2024, 1, 1, 10, 0)).status == EventStatus.COMPLETED
    assert all(not ledger.rows for ledger in ledgers.values())


def test_postpone_creates_new_pending_event(events, ledgers, seeded):
    _, status = seeded
    morning = _event_at(events, datetime(2024, 1, 1, 8, 0))

    moved = status.postpone(morning.id, minutes=30)

    assert moved.status == EventStatus.PENDING
    assert moved.scheduled_time == datetime(2024, 1, 1, 8, 30)
    assert moved.metadata.rescheduled_from == datetime(2024, 1, 1, 8, 0)

    original = events.get_by_id(morning.id)
    assert original.status == EventStatus.COMPLETED
    assert original.metadata.rescheduled_to == datetime(2024, 1, 1, 8, 30)

    row = ledgers[SourceKind.MEDICATION].revisions(morning.source_id, morning.scheduled_time)[-1]
    assert row.status == DoseStatus.POSTPONED


def test_postpone_uses_configured_default(events, seeded, monkeypatch):
    monkeypatch.setattr(settings, "postpone_minutes", 15)
    _, status = seeded
    morning = _event_at(events, datetime(2024, 1, 1, 8, 0))

    assert status.postpone(morning.id).scheduled_time == datetime(2024, 1, 1, 8, 15)


def test_postpone_rejects_non_positive_minutes(events, seeded):
    _, status = seeded
    morning = _event_at(events, datetime(2024, 1, 1, 8, 0))
    with pytest.raises(InvalidTransitionError):
        status.postpone(morning.id, minutes=0)
    assert events.get_by_id(morning.id).status == EventStatus.PENDING


def test_postponed_dose_counts_once_in_adherence(events, ledgers, sources, seeded):
    _, status = seeded
    morning = _event_at(events, datetime(2024, 1, 1, 8, 0))

    moved = status.postpone(morning.id, minutes=30)
    status.complete(moved.id, now=datetime(2024, 1, 1, 8, 35))

    calc = AdherenceCalculator(events, list(ledgers.values()))
    adherence = calc.adherence("p1", datetime(2024, 1, 1), datetime(2024, 1, 2))
    assert (adherence.taken, adherence.total, adherence.percentage) == (1, 1, 100)


def test_sweep_marks_only_doses_past_grace(events, ledgers, sources, seeded, monkeypatch):
    monkeypatch.setattr(settings, "missed_grace_minutes", 60)
    _, status = seeded
    calc = AdherenceCalculator(events, list(ledgers.values()))
    now = datetime(2024, 1, 1, 10, 0)

    assert status.sweep_missed(calc, "p1", now=now) == 1
    assert _event_at(events, datetime(2024, 1, 1, 8, 0)).status == EventStatus.MISSED
    assert _event_at(events, datetime(2024, 1, 1, 20, 0)).status == EventStatus.PENDING
    assert ledgers[SourceKind.MEDICATION].rows[-1].status == DoseStatus.MISSED

    # a second sweep finds nothing left to do
    assert status.sweep_missed(calc, "p1", now=now + timedelta(minutes=5)) == 0


def test_postpone_onto_an_existing_slot_is_refused(events, ledgers, seeded):
    _, status = seeded
    morning = _event_at(events, datetime(2024, 1, 1, 8, 0))
    evening = _event_at(events, datetime(2024, 1, 1, 20, 0))

    with pytest.raises(InvalidTransitionError):
        status.postpone(morning.id, minutes=720)

    assert events.get_by_id(morning.id).status == EventStatus.PENDING
    assert events.get_by_id(morning.id).metadata.rescheduled_to is None
    assert events.get_by_id(evening.id) == evening
    assert len(events.rows) == 4
    assert ledgers[SourceKind.MEDICATION].rows == []


class ResolvedElsewhereStore(InMemoryEventStore):
    """Another process skips the event between our read and our write."""

    def update(self, event_id, patch, expected_status=None):
        if expected_status == EventStatus.PENDING and self.rows[event_id].status == EventStatus.PENDING:
            self.rows[event_id] = self.rows[event_id].model_copy(update={"status": EventStatus.SKIPPED})
        return super().update(event_id, patch, expected_status)


class DownLedger(InMemoryLedger):
    def upsert_status(self, *args, **kwargs):
        raise StoreError("ledger unavailable")


class SlowLedger(InMemoryLedger):
    def upsert_status(self, *args, **kwargs):
        time.sleep(0.05)
        return super().upsert_status(*args, **kwargs)


def _seed(events, sources):
    med = make_medication(time_of_day=["08:00"])
    sources[SourceKind.MEDICATION].save(med)
    EventGenerator(events).generate(med, date(2024, 1, 1), date(2024, 1, 1))
    return _event_at(events, datetime(2024, 1, 1, 8, 0))


def _quantity(sources):
    return sources[SourceKind.MEDICATION].get_by_id("med-1").current_quantity


def test_losing_the_status_race_writes_nothing(ledgers, sources):
    store = ResolvedElsewhereStore()
    morning = _seed(store, sources)
    status = StatusService(store, ledgers, sources, clock=lambda: datetime(2024, 1, 1, 8, 5))

    with pytest.raises(InvalidTransitionError):
        status.complete(morning.id)

    assert store.get_by_id(morning.id).status == EventStatus.SKIPPED
    assert ledgers[SourceKind.MEDICATION].rows == []
    assert _quantity(sources) == 10


def test_losing_postpone_creates_no_event(ledgers, sources):
    store = ResolvedElsewhereStore()
    morning = _seed(store, sources)
    status = StatusService(store, ledgers, sources, clock=lambda: datetime(2024, 1, 1, 8, 5))

    with pytest.raises(InvalidTransitionError):
        status.postpone(morning.id, minutes=30)

    assert [e.scheduled_time for e in store.rows.values()] == [datetime(2024, 1, 1, 8, 0)]
    assert ledgers[SourceKind.MEDICATION].rows == []


def test_postpone_reopens_when_the_new_slot_is_taken_meanwhile(ledgers, sources):
    class SlotTakenStore(InMemoryEventStore):
        def create(self, event):
            if event.scheduled_time == datetime(2024, 1, 1, 8, 30):
                super().create(event.model_copy(update={"id": "other-writer"}))
            return super().create(event)

    store = SlotTakenStore()
    morning = _seed(store, sources)
    status = StatusService(store, ledgers, sources, clock=lambda: datetime(2024, 1, 1, 8, 5))

    with pytest.raises(InvalidTransitionError):
        status.postpone(morning.id, minutes=30)

    original = store.get_by_id(morning.id)
    assert original.status == EventStatus.PENDING
    assert original.completed_time is None
    assert original.metadata.rescheduled_to is None
    assert ledgers[SourceKind.MEDICATION].rows == []


def test_failed_ledger_write_puts_the_event_back(events, sources):
    morning = _seed(events, sources)
    status = StatusService(
        events,
        {SourceKind.MEDICATION: DownLedger()},
        sources,
        clock=lambda: datetime(2024, 1, 1, 8, 5),
    )

    with pytest.raises(StoreError):
        status.complete(morning.id)

    reopened = events.get_by_id(morning.id)
    assert reopened.status == EventStatus.PENDING
    assert reopened.completed_time is None
    assert _quantity(sources) == 10


def _race(*actions):
    barrier = threading.Barrier(len(actions))
    errors = []

    def run(action):
        barrier.wait()
        try:
            action()
        except InvalidTransitionError as e:
            errors.append(e)

    threads = [threading.Thread(target=run, args=(a,)) for a in actions]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    return errors


def test_concurrent_complete_and_skip_agree_with_the_ledger(events, sources):
    ledger = SlowLedger()
    morning = _seed(events, sources)
    status = StatusService(
        events, {SourceKind.MEDICATION: ledger}, sources, clock=lambda: datetime(2024, 1, 1, 8, 5)
    )

    errors = _race(lambda: status.complete(morning.id), lambda: status.skip(morning.id))

    assert len(errors) == 1
    assert len(ledger.rows) == 1
    final = events.get_by_id(morning.id).status
    if final == EventStatus.COMPLETED:
        assert ledger.rows[0].status == DoseStatus.TAKEN
        assert _quantity(sources) == 9
    else:
        assert final == EventStatus.SKIPPED
        assert ledger.rows[0].status == DoseStatus.SKIPPED
        assert _quantity(sources) == 10


def test_concurrent_complete_and_postpone(events, sources):
    ledger = SlowLedger()
    morning = _seed(events, sources)
    status = StatusService(
        events, {SourceKind.MEDICATION: ledger}, sources, clock=lambda: datetime(2024, 1, 1, 8, 5)
    )

    _race(lambda: status.complete(morning.id), lambda: status.postpone(morning.id, minutes=30))

    moved = events.find_existing("med-1", EventType.MEDICATION_DUE, datetime(2024, 1, 1, 8, 30))
    assert len(ledger.rows) == 1
    if moved is None:
        assert ledger.rows[0].status == DoseStatus.TAKEN
        assert _quantity(sources) == 9
    else:
        assert moved.status == EventStatus.PENDING
        assert ledger.rows[0].status == DoseStatus.POSTPONED
        assert _quantity(sources) == 10


def test_completing_a_logged_event_again_is_a_no_op(events, ledgers, sources):
    logged = EventGenerator(events).record_logged_event(
        LoggedEntry(profile_id="p1", event_type="activity", start_time=datetime(2024, 1, 1, 7, 0))
    )
    status = StatusService(events, ledgers, sources)

    assert status.complete(logged.id).status == EventStatus.COMPLETED
    with pytest.raises(InvalidTransitionError):
        status.skip(logged.id)
    assert all(not ledger.rows for ledger in ledgers.values())
