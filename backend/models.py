"""
Pydantic models used across the backend.

Source entities (medications, supplements, appointments, reminders) are
owned by their repositories; the engine only reads them. `CalendarEvent`
is the unit of work the engine writes, and `HistoryEntry` is a row of the
append-only dose ledger.

Guidelines:
- Keep models minimal and stable. Business rules live in the services.
- All scheduled times are `LocalDateTime` (floating local time).
- Use `parse_source()` at boundaries so rule errors surface as
  `RuleValidationError` instead of a raw pydantic error.
"""

from datetime import date
from enum import Enum
from typing import Annotated, List, Literal, Optional, Union
from uuid import uuid4

from pydantic import AfterValidator, BaseModel, Field, TypeAdapter, ValidationError, field_validator, model_validator

from errors import RuleValidationError
from local_time import LocalDateTime, local_now, parse_slot


def _new_id() -> str:
    return str(uuid4())


class Frequency(str, Enum):
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    CUSTOM = "custom"


class EventType(str, Enum):
    MEDICATION_DUE = "medication_due"
    SUPPLEMENT_DUE = "supplement_due"
    APPOINTMENT = "appointment"
    ACTIVITY = "activity"
    REMINDER = "reminder"
    GRATITUDE = "gratitude"
    SYMPTOM = "symptom"


DOSE_EVENT_TYPES = frozenset({EventType.MEDICATION_DUE, EventType.SUPPLEMENT_DUE})


class EventStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    MISSED = "missed"
    SKIPPED = "skipped"


class DoseStatus(str, Enum):
    TAKEN = "taken"
    MISSED = "missed"
    SKIPPED = "skipped"
    POSTPONED = "postponed"


class SourceKind(str, Enum):
    MEDICATION = "medication"
    SUPPLEMENT = "supplement"
    APPOINTMENT = "appointment"
    REMINDER = "reminder"


class ReminderType(str, Enum):
    SUPPLEMENT = "supplement"
    ACTIVITY = "activity"
    GRATITUDE = "gratitude"
    SYMPTOM = "symptom"


class RecurrenceRule(BaseModel):
    """iCalendar-style recurrence.

    - `interval` counts days (daily/custom), weeks (weekly) or is ignored
      (monthly). Defaults to 1.
    - `days_of_week` uses 0 = Sunday ... 6 = Saturday and only matters for
      weekly rules, where it must be non-empty.
    - `end_date` is inclusive: the rule is inactive for dates after it.
    """

    frequency: Frequency
    interval: int = Field(default=1, ge=1)
    days_of_week: List[int] = Field(default_factory=list)
    end_date: Optional[date] = None

    @field_validator("days_of_week")
    @classmethod
    def _check_days(cls, days: List[int]) -> List[int]:
        if any(d < 0 or d > 6 for d in days):
            raise ValueError("days_of_week entries must be within 0..6")
        return sorted(set(days))

    @model_validator(mode="after")
    def _weekly_needs_days(self) -> "RecurrenceRule":
        if self.frequency == Frequency.WEEKLY and not self.days_of_week:
            raise ValueError("Weekly rules must list at least one day in days_of_week")
        return self


def _check_slots(slots: List[str]) -> List[str]:
    if not slots:
        raise ValueError("time_of_day needs at least one HH:MM slot")
    if len(set(slots)) != len(slots):
        raise ValueError("time_of_day slots must be unique")
    for slot in slots:
        parse_slot(slot)
    return sorted(slots)


TimeSlots = Annotated[List[str], AfterValidator(_check_slots)]


class ScheduledSource(BaseModel):
    """Fields shared by every recurring source entity."""

    id: str = Field(default_factory=_new_id)
    profile_id: str
    frequency_rule: Optional[RecurrenceRule] = None
    time_of_day: TimeSlots
    is_active: bool = True
    created_at: LocalDateTime = Field(default_factory=local_now)


class Medication(ScheduledSource):
    kind: Literal["medication"] = "medication"
    name: str
    dosage: Optional[str] = None
    form: Optional[str] = None
    refill_threshold: int = 7
    current_quantity: Optional[int] = None
    notes: Optional[str] = None
    hide_name: bool = False


class Supplement(ScheduledSource):
    kind: Literal["supplement"] = "supplement"
    name: str
    dosage: Optional[str] = None
    form: Optional[str] = None
    low_stock_threshold: int = 10
    current_quantity: Optional[int] = None
    notes: Optional[str] = None


class Reminder(ScheduledSource):
    kind: Literal["reminder"] = "reminder"
    type: ReminderType


class Appointment(BaseModel):
    """Single-occurrence source; bypasses recurrence expansion."""

    kind: Literal["appointment"] = "appointment"
    id: str = Field(default_factory=_new_id)
    profile_id: str
    title: str
    doctor_name: Optional[str] = None
    specialty: Optional[str] = None
    location: Optional[str] = None
    scheduled_time: LocalDateTime
    duration: int = Field(default=30, ge=0)
    reason: Optional[str] = None
    is_active: bool = True
    created_at: LocalDateTime = Field(default_factory=local_now)


SourceEntity = Annotated[
    Union[Medication, Supplement, Appointment, Reminder], Field(discriminator="kind")
]

_source_adapter = TypeAdapter(SourceEntity)


def parse_source(data: dict) -> Union[Medication, Supplement, Appointment, Reminder]:
    """Validate a raw dict into the matching source entity model."""

    try:
        return _source_adapter.validate_python(data)
    except ValidationError as e:
        raise RuleValidationError(str(e)) from e


# --- event metadata: one variant per event type ---------------------------


class DoseMetadata(BaseModel):
    event_type: Literal["medication_due", "supplement_due"]
    dosage: Optional[str] = None
    form: Optional[str] = None
    rescheduled_from: Optional[LocalDateTime] = None
    rescheduled_to: Optional[LocalDateTime] = None


class AppointmentMetadata(BaseModel):
    event_type: Literal["appointment"] = "appointment"
    doctor_name: Optional[str] = None
    specialty: Optional[str] = None
    location: Optional[str] = None
    reason: Optional[str] = None


class ReminderMetadata(BaseModel):
    event_type: Literal["reminder"] = "reminder"
    reminder_type: ReminderType


class ActivityMetadata(BaseModel):
    event_type: Literal["activity"] = "activity"
    value: Optional[float] = None
    unit: Optional[str] = None
    notes: Optional[str] = None


class GratitudeMetadata(BaseModel):
    event_type: Literal["gratitude"] = "gratitude"
    positivity_level: Optional[int] = Field(default=None, ge=1, le=5)


class SymptomMetadata(BaseModel):
    event_type: Literal["symptom"] = "symptom"
    severity: Optional[int] = None


EventMetadata = Annotated[
    Union[
        DoseMetadata,
        AppointmentMetadata,
        ReminderMetadata,
        ActivityMetadata,
        GratitudeMetadata,
        SymptomMetadata,
    ],
    Field(discriminator="event_type"),
]


class CalendarEvent(BaseModel):
    """One concrete dated obligation.

    Unique per `(source_id, event_type, scheduled_time)`; the store enforces it.
    """

    id: str = Field(default_factory=_new_id)
    profile_id: str
    event_type: EventType
    source_id: str
    title: str
    scheduled_time: LocalDateTime
    end_time: Optional[LocalDateTime] = None
    status: EventStatus = EventStatus.PENDING
    completed_time: Optional[LocalDateTime] = None
    metadata: Optional[EventMetadata] = None

    @model_validator(mode="after")
    def _metadata_matches_type(self) -> "CalendarEvent":
        if self.metadata is not None and self.metadata.event_type != self.event_type.value:
            raise ValueError(
                f"metadata for {self.metadata.event_type} attached to a {self.event_type.value} event"
            )
        return self

    @property
    def key(self):
        return (self.source_id, self.event_type, self.scheduled_time)


class LoggedEntry(BaseModel):
    """Something the user recorded after the fact (an activity, a symptom,
    a gratitude note). It becomes a single already-completed event whose
    `source_id` is the entry id; logging the same entry again replaces it.
    """

    id: str = Field(default_factory=_new_id)
    profile_id: str
    event_type: Literal["activity", "gratitude", "symptom"]
    title: Optional[str] = None
    start_time: LocalDateTime
    end_time: Optional[LocalDateTime] = None
    metadata: Optional[EventMetadata] = None

    @model_validator(mode="after")
    def _check_shape(self) -> "LoggedEntry":
        if self.end_time is not None and self.end_time < self.start_time:
            raise ValueError("end_time must not be before start_time")
        if self.metadata is not None and self.metadata.event_type != self.event_type:
            raise ValueError(
                f"metadata for {self.metadata.event_type} attached to a {self.event_type} entry"
            )
        return self


class EventPatch(BaseModel):
    """Partial update applied by the status state machine. Unset fields are left alone."""

    status: Optional[EventStatus] = None
    completed_time: Optional[LocalDateTime] = None
    metadata: Optional[EventMetadata] = None


class EventQuery(BaseModel):
    profile_id: str
    start: Optional[LocalDateTime] = None
    end: Optional[LocalDateTime] = None
    statuses: List[EventStatus] = Field(default_factory=list)
    event_types: List[EventType] = Field(default_factory=list)
    limit: int = 1000


class HistoryEntry(BaseModel):
    """A ledger revision. The latest revision per `(source_id, scheduled_time)` wins."""

    id: Optional[int] = None
    profile_id: str
    source_id: str
    scheduled_time: LocalDateTime
    actual_time: Optional[LocalDateTime] = None
    status: DoseStatus
    notes: Optional[str] = None


class ChangeKind(str, Enum):
    CREATED = "created"
    UPDATED = "updated"
    DELETED = "deleted"


class SourceChange(BaseModel):
    """Notification published by a source repository after a commit."""

    kind: SourceKind
    source_id: str
    profile_id: str
    change: ChangeKind
    schedule_changed: bool = True


# --- read-side aggregates ---------------------------------------------------


class Adherence(BaseModel):
    total: int
    taken: int
    percentage: int


class DayProgress(BaseModel):
    taken: int
    total: int


class EventStats(BaseModel):
    total: int = 0
    completed: int = 0
    missed: int = 0
    skipped: int = 0
    pending: int = 0


class MissedCount(BaseModel):
    source_id: str
    count: int


class BestHour(BaseModel):
    hour: int
    count: int


class RefillForecast(BaseModel):
    source_id: str
    name: str
    days_left: int
    below_threshold: bool


class TimelineStats(BaseModel):
    adherence_rate: int
    current_streak: int
    today: DayProgress
    upcoming_doses: int
