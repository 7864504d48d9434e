"""
Event generation: expands a source entity's schedule into concrete
`CalendarEvent` rows.

Generation is additive and idempotent. Each candidate occurrence is looked
up by `(source_id, event_type, scheduled_time)` and only inserted when
absent; existing rows are never modified, whatever their status. Running a
pass twice, or resuming one that failed halfway, therefore leaves exactly
one event per occurrence.

Logged entries (activities, symptoms, gratitude notes) are the exception:
they are stored already completed, and logging one again replaces its event.
"""

import logging
import threading
from datetime import date, datetime, timedelta
from typing import Optional, Tuple

from local_time import at_slot, iter_days, local_day
from models import (
    ActivityMetadata,
    Appointment,
    AppointmentMetadata,
    CalendarEvent,
    DoseMetadata,
    EventStatus,
    EventType,
    GratitudeMetadata,
    LoggedEntry,
    Medication,
    Reminder,
    ReminderMetadata,
    ReminderType,
    SymptomMetadata,
    Supplement,
)
from recurrence import is_due_on
from repo_events import EventStore
from settings import settings

logger = logging.getLogger(__name__)

REMINDER_TITLES = {
    ReminderType.SUPPLEMENT: "Supplement Check-in",
    ReminderType.ACTIVITY: "Activity Check-in",
    ReminderType.GRATITUDE: "Gratitude Journal",
    ReminderType.SYMPTOM: "Symptom Check-in",
}

LOGGED_DEFAULTS = {
    EventType.ACTIVITY: ("Activity", ActivityMetadata),
    EventType.GRATITUDE: ("Gratitude Journal", GratitudeMetadata),
    EventType.SYMPTOM: ("Symptom", SymptomMetadata),
}


def event_type_for(entity) -> EventType:
    if isinstance(entity, Medication):
        return EventType.MEDICATION_DUE
    if isinstance(entity, Supplement):
        return EventType.SUPPLEMENT_DUE
    if isinstance(entity, Reminder):
        return EventType.REMINDER
    if isinstance(entity, Appointment):
        return EventType.APPOINTMENT
    raise TypeError(f"Unsupported source entity: {type(entity).__name__}")


def build_event(entity, scheduled_time: datetime) -> CalendarEvent:
    """Candidate pending event for one occurrence of a recurring entity."""

    event_type = event_type_for(entity)
    if isinstance(entity, Medication):
        title = "Medication" if entity.hide_name else entity.name
        metadata = DoseMetadata(event_type=event_type.value, dosage=entity.dosage, form=entity.form)
    elif isinstance(entity, Supplement):
        title = entity.name
        metadata = DoseMetadata(event_type=event_type.value, dosage=entity.dosage, form=entity.form)
    else:
        title = REMINDER_TITLES.get(entity.type, "Reminder")
        metadata = ReminderMetadata(reminder_type=entity.type)

    return CalendarEvent(
        profile_id=entity.profile_id,
        event_type=event_type,
        source_id=entity.id,
        title=title,
        scheduled_time=scheduled_time,
        metadata=metadata,
    )


def forward_window(entity, now: datetime) -> Tuple[date, date]:
    """Rolling generation window for `entity` starting at `now`'s local day.

    Medications and supplements look `dose_window_days` ahead, reminders
    `reminder_window_days`.
    """

    days = settings.reminder_window_days if isinstance(entity, Reminder) else settings.dose_window_days
    start = local_day(now)
    return start, start + timedelta(days=days)


class EventGenerator:
    """Populates the event store from source entities.

    Example usage:
        gen = EventGenerator(PgEventRepo())
        gen.generate(medication, date(2024, 1, 1), date(2024, 1, 2))
    """

    def __init__(self, events: EventStore):
        self.events = events

    def generate(
        self,
        entity,
        window_start: date,
        window_end: date,
        not_before: Optional[datetime] = None,
        cancel: Optional[threading.Event] = None,
    ) -> int:
        """Create the missing events for `entity` in `[window_start, window_end]`.

        Occurrences earlier than `not_before` are skipped. Setting `cancel`
        stops the pass at the next day boundary; everything created so far
        stays and a later pass picks up the rest.

        Returns the number of events created.
        """

        if isinstance(entity, Appointment):
            return 1 if self.generate_appointment(entity, not_before=not_before) else 0
        if not entity.is_active:
            return 0

        event_type = event_type_for(entity)
        anchor = local_day(entity.created_at)
        created = 0

        for day in iter_days(window_start, window_end):
            if cancel is not None and cancel.is_set():
                logger.info(
                    "Generation for %s cancelled at %s after %d events", entity.id, day, created
                )
                break
            if not is_due_on(entity.frequency_rule, day, anchor):
                continue

            for slot in entity.time_of_day:
                scheduled_time = at_slot(day, slot)
                if not_before is not None and scheduled_time < not_before:
                    continue
                if self.events.find_existing(entity.id, event_type, scheduled_time) is not None:
                    continue
                if self.events.create(build_event(entity, scheduled_time)) is not None:
                    created += 1

        if created:
            logger.info(
                "Generated %d %s events for %s (%s..%s)",
                created,
                event_type.value,
                entity.id,
                window_start,
                window_end,
            )
        return created

    def generate_appointment(
        self, appointment: Appointment, not_before: Optional[datetime] = None
    ) -> Optional[CalendarEvent]:
        """Create the single event for an appointment if it does not exist yet.

        Returns the newly created event, or None when nothing was created
        (inactive, already present, or earlier than `not_before`).
        """

        if not appointment.is_active:
            return None
        if not_before is not None and appointment.scheduled_time < not_before:
            return None
        if self.events.find_existing(
            appointment.id, EventType.APPOINTMENT, appointment.scheduled_time
        ) is not None:
            return None

        event = CalendarEvent(
            profile_id=appointment.profile_id,
            event_type=EventType.APPOINTMENT,
            source_id=appointment.id,
            title=appointment.title,
            scheduled_time=appointment.scheduled_time,
            end_time=appointment.scheduled_time + timedelta(minutes=appointment.duration),
            metadata=AppointmentMetadata(
                doctor_name=appointment.doctor_name,
                specialty=appointment.specialty,
                location=appointment.location,
                reason=appointment.reason,
            ),
        )
        created = self.events.create(event)
        if created is not None:
            logger.info("Scheduled appointment %s at %s", appointment.id, appointment.scheduled_time)
        return created

    def record_logged_event(self, entry: LoggedEntry) -> CalendarEvent:
        """Store a logged entry as one completed event at its start time.

        The entry is its own source: any event previously stored for it is
        replaced, so editing a logged activity moves its calendar event.
        """

        event_type = EventType(entry.event_type)
        default_title, default_metadata = LOGGED_DEFAULTS[event_type]
        replaced = self.events.delete_by_source(entry.id)

        event = CalendarEvent(
            profile_id=entry.profile_id,
            event_type=event_type,
            source_id=entry.id,
            title=entry.title or default_title,
            scheduled_time=entry.start_time,
            end_time=entry.end_time,
            status=EventStatus.COMPLETED,
            completed_time=entry.start_time,
            metadata=entry.metadata or default_metadata(),
        )
        created = self.events.create(event) or self.events.find_existing(
            entry.id, event_type, entry.start_time
        )
        logger.info(
            "Recorded %s %s at %s%s",
            event_type.value,
            entry.id,
            entry.start_time,
            " (replaced)" if replaced else "",
        )
        return created
