"""
Adherence, streak and overdue metrics.

Everything here is a read-side aggregation recomputed from stored state on
every call; nothing is cached. The `compute_*` functions are pure and take
ledger rows, `AdherenceCalculator` fetches the rows and applies them.

Ledger rows with status `postponed` are ignored by every metric: the
rescheduled dose produces its own `taken`/`missed` row later.
"""

from collections import Counter, defaultdict
from datetime import date, datetime, timedelta
from typing import Callable, Dict, Iterable, List, Optional, Sequence

from local_time import day_bounds, local_day, local_now
from models import (
    Adherence,
    BestHour,
    CalendarEvent,
    DOSE_EVENT_TYPES,
    DayProgress,
    DoseStatus,
    EventQuery,
    EventStatus,
    HistoryEntry,
    Medication,
    MissedCount,
    RefillForecast,
    TimelineStats,
)
from repo_events import EventStore
from repo_history import LedgerStore
from repo_sources import SourceStore
from settings import settings


def _actionable(entries: Iterable[HistoryEntry]) -> List[HistoryEntry]:
    return [e for e in entries if e.status != DoseStatus.POSTPONED]


def _percentage(part: int, whole: int) -> int:
    if whole <= 0:
        return 0
    # round half up, as the dashboards always have
    return (part * 200 + whole) // (whole * 2)


def compute_adherence(entries: Iterable[HistoryEntry]) -> Adherence:
    """`taken / non-postponed` as a whole percentage; 0 when nothing counts."""

    rows = _actionable(entries)
    taken = sum(1 for e in rows if e.status == DoseStatus.TAKEN)
    return Adherence(total=len(rows), taken=taken, percentage=_percentage(taken, len(rows)))


def compute_streak(entries: Iterable[HistoryEntry], today: date) -> int:
    """Consecutive fully-taken days counted backward from yesterday.

    Today never counts. The walk stops at the first day with no rows or
    with any row that is not `taken`.
    """

    by_day: Dict[date, List[HistoryEntry]] = defaultdict(list)
    for e in _actionable(entries):
        day = local_day(e.scheduled_time)
        if day < today:
            by_day[day].append(e)

    streak = 0
    day = today - timedelta(days=1)
    while True:
        rows = by_day.get(day)
        if not rows or any(e.status != DoseStatus.TAKEN for e in rows):
            return streak
        streak += 1
        day -= timedelta(days=1)


def compute_day_progress(entries: Iterable[HistoryEntry], day: date) -> DayProgress:
    rows = [e for e in _actionable(entries) if local_day(e.scheduled_time) == day]
    taken = sum(1 for e in rows if e.status == DoseStatus.TAKEN)
    return DayProgress(taken=taken, total=len(rows))


def compute_most_missed(entries: Iterable[HistoryEntry], limit: int = 5) -> List[MissedCount]:
    counts = Counter(e.source_id for e in entries if e.status == DoseStatus.MISSED)
    ranked = sorted(counts.items(), key=lambda item: (-item[1], item[0]))
    return [MissedCount(source_id=s, count=c) for s, c in ranked[:limit]]


def compute_best_hour(entries: Iterable[HistoryEntry]) -> Optional[BestHour]:
    """Hour of day (by scheduled time) with the most `taken` doses."""

    counts = Counter(e.scheduled_time.hour for e in entries if e.status == DoseStatus.TAKEN)
    if not counts:
        return None
    hour, count = min(counts.items(), key=lambda item: (-item[1], item[0]))
    return BestHour(hour=hour, count=count)


def compute_refill_forecast(entities: Iterable) -> List[RefillForecast]:
    """Days of stock left for each active source that tracks quantity, soonest first."""

    out = []
    for entity in entities:
        if not entity.is_active or entity.current_quantity is None:
            continue
        per_day = len(entity.time_of_day) or 1
        threshold = entity.refill_threshold if isinstance(entity, Medication) else entity.low_stock_threshold
        out.append(
            RefillForecast(
                source_id=entity.id,
                name=entity.name,
                days_left=entity.current_quantity // per_day,
                below_threshold=entity.current_quantity <= threshold,
            )
        )
    return sorted(out, key=lambda f: (f.days_left, f.name))


class AdherenceCalculator:
    """Derived statistics for a profile.

    `ledgers` are read together, so medication and supplement doses count
    alike. `stock_sources` feed the refill forecast.
    """

    def __init__(
        self,
        events: EventStore,
        ledgers: Sequence[LedgerStore],
        stock_sources: Sequence[SourceStore] = (),
        clock: Callable[[], datetime] = local_now,
    ):
        self.events = events
        self.ledgers = list(ledgers)
        self.stock_sources = list(stock_sources)
        self.clock = clock

    def _entries(
        self,
        profile_id: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        source_id: Optional[str] = None,
    ) -> List[HistoryEntry]:
        rows: List[HistoryEntry] = []
        for ledger in self.ledgers:
            rows.extend(ledger.query_by_date_range(profile_id, start, end, source_id))
        return rows

    def adherence(
        self, profile_id: str, start: datetime, end: datetime, source_id: Optional[str] = None
    ) -> Adherence:
        """Adherence over `[start, end)`, optionally for a single source."""

        return compute_adherence(self._entries(profile_id, start, end, source_id))

    def streak(self, profile_id: str, now: Optional[datetime] = None) -> int:
        today = local_day(now or self.clock())
        return compute_streak(self._entries(profile_id, end=day_bounds(today)[0]), today)

    def today_progress(self, profile_id: str, now: Optional[datetime] = None) -> DayProgress:
        today = local_day(now or self.clock())
        start, end = day_bounds(today)
        return compute_day_progress(self._entries(profile_id, start, end), today)

    def overdue(
        self,
        profile_id: str,
        now: Optional[datetime] = None,
        grace_minutes: int = 0,
        today_only: bool = True,
    ) -> List[CalendarEvent]:
        """Pending dose events scheduled before `now - grace_minutes`.

        By default only today's events are considered; the missed sweep
        passes `today_only=False` to catch doses left over from earlier days.
        """

        now = now or self.clock()
        start = day_bounds(local_day(now))[0] if today_only else None
        return self.events.query(
            EventQuery(
                profile_id=profile_id,
                start=start,
                end=now - timedelta(minutes=grace_minutes),
                statuses=[EventStatus.PENDING],
                event_types=sorted(DOSE_EVENT_TYPES, key=lambda t: t.value),
                limit=settings.max_event_query_limit,
            )
        )

    def upcoming_doses(
        self, profile_id: str, now: Optional[datetime] = None, hours: Optional[int] = None
    ) -> List[CalendarEvent]:
        now = now or self.clock()
        hours = settings.upcoming_hours if hours is None else hours
        return self.events.query(
            EventQuery(
                profile_id=profile_id,
                start=now,
                end=now + timedelta(hours=hours),
                statuses=[EventStatus.PENDING],
                event_types=sorted(DOSE_EVENT_TYPES, key=lambda t: t.value),
                limit=settings.max_event_query_limit,
            )
        )

    def most_missed(self, profile_id: str, limit: int = 5) -> List[MissedCount]:
        return compute_most_missed(self._entries(profile_id), limit)

    def best_hour(self, profile_id: str) -> Optional[BestHour]:
        return compute_best_hour(self._entries(profile_id))

    def refill_forecast(self, profile_id: str) -> List[RefillForecast]:
        entities = []
        for repo in self.stock_sources:
            entities.extend(repo.get_all_by_profile(profile_id))
        return compute_refill_forecast(entities)

    def timeline_stats(self, profile_id: str, now: Optional[datetime] = None) -> TimelineStats:
        """Dashboard snapshot: recent adherence, streak, today and upcoming doses."""

        now = now or self.clock()
        window_start = now - timedelta(days=settings.adherence_window_days)
        return TimelineStats(
            adherence_rate=self.adherence(profile_id, window_start, now).percentage,
            current_streak=self.streak(profile_id, now),
            today=self.today_progress(profile_id, now),
            upcoming_doses=len(self.upcoming_doses(profile_id, now)),
        )
